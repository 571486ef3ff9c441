from fastapi import APIRouter, Depends, Request

from alchemy.authentication.caller import caller_id
from alchemy.manager import EngineManager, get_engine
from alchemy.models.dc_models import CombineRequestModel, CombineResponseModel
from alchemy.rate_limit import WRITE_LIMIT, limiter

combine_router = APIRouter()


class CombineAPI:
    @staticmethod
    @combine_router.post("/combine", response_model=CombineResponseModel)
    @limiter.limit(WRITE_LIMIT)
    async def combine(
        request: Request,
        body: CombineRequestModel,
        engine: EngineManager = Depends(get_engine),
    ):
        """Combine two elements. Safety refusals come back as a normal result."""
        outcome = await engine.orchestrator.combine(body.a, body.b, caller_id(request))
        return outcome.to_response()
