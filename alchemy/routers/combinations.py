from typing import Optional

from fastapi import APIRouter, Depends, Query, Request

from alchemy.authentication.caller import caller_id, require_caller
from alchemy.manager import EngineManager, get_engine
from alchemy.models.dc_models import CombinationCreateModel, CombinationUpdateModel
from alchemy.models.schema_models import CombinationSchema
from alchemy.rate_limit import WRITE_LIMIT, limiter
from alchemy.services.combination_db import pair_key

combinations_router = APIRouter(prefix="/combinations", dependencies=[Depends(require_caller)])


class CombinationAPI:
    @staticmethod
    @combinations_router.post("", response_model=CombinationSchema)
    @limiter.limit(WRITE_LIMIT)
    async def create_combination(
        request: Request,
        body: CombinationCreateModel,
        engine: EngineManager = Depends(get_engine),
    ):
        return await engine.store.create_combination(
            body.input_a,
            body.input_b,
            body.result_name,
            body.result_glyph,
            caller_id=caller_id(request),
        )

    @staticmethod
    @combinations_router.put("", response_model=CombinationSchema)
    @limiter.limit(WRITE_LIMIT)
    async def update_combination(
        request: Request,
        body: CombinationUpdateModel,
        engine: EngineManager = Depends(get_engine),
    ):
        key = pair_key(body.key, body.input_a, body.input_b)
        return await engine.store.update_combination(key, body.result_name, body.result_glyph)

    @staticmethod
    @combinations_router.delete("", response_model=CombinationSchema)
    @limiter.limit(WRITE_LIMIT)
    async def delete_combination(
        request: Request,
        key: Optional[str] = Query(None),
        a: Optional[str] = Query(None),
        b: Optional[str] = Query(None),
        engine: EngineManager = Depends(get_engine),
    ):
        return await engine.store.delete_combination(pair_key(key, a, b))
