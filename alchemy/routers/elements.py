from fastapi import APIRouter, Depends, Query, Request

from alchemy.authentication.caller import require_caller
from alchemy.errors import InvalidInputError
from alchemy.manager import EngineManager, get_engine
from alchemy.models.dc_models import ElementChangeReportModel, ElementUpdateModel
from alchemy.models.schema_models import ElementDetailSchema, ElementIndexSchema
from alchemy.rate_limit import WRITE_LIMIT, limiter

elements_router = APIRouter()


class ElementAPI:
    @staticmethod
    @elements_router.get("/elements", response_model=ElementIndexSchema)
    async def list_elements(
        letter: str = Query("all"),
        page: int = Query(1, ge=1),
        limit: int = Query(100, ge=1, le=200),
        search: str = Query(""),
        engine: EngineManager = Depends(get_engine),
    ):
        return await engine.store.element_index(letter=letter, page=page, limit=limit, search=search)

    @staticmethod
    @elements_router.get("/element/{name}", response_model=ElementDetailSchema)
    async def get_element(name: str, engine: EngineManager = Depends(get_engine)):
        return await engine.store.element_detail(name)

    @staticmethod
    @elements_router.put(
        "/element/{name}",
        response_model=ElementChangeReportModel,
        dependencies=[Depends(require_caller)],
    )
    @limiter.limit(WRITE_LIMIT)
    async def update_element(
        request: Request,
        name: str,
        body: ElementUpdateModel,
        engine: EngineManager = Depends(get_engine),
    ):
        """Rename and/or reglyph an element everywhere it appears."""
        if body.new_name is None and body.new_glyph is None:
            raise InvalidInputError("Provide new_name, new_glyph or both")
        if body.new_name is not None:
            return await engine.store.rename_element(name, body.new_name, body.new_glyph)
        return await engine.store.reglyph_element(name, body.new_glyph)

    @staticmethod
    @elements_router.delete(
        "/element/{name}",
        response_model=ElementChangeReportModel,
        dependencies=[Depends(require_caller)],
    )
    @limiter.limit(WRITE_LIMIT)
    async def delete_element(
        request: Request,
        name: str,
        engine: EngineManager = Depends(get_engine),
    ):
        return await engine.store.delete_element(name)
