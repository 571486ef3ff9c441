from fastapi import APIRouter, Depends, Query, Request

from alchemy.authentication.caller import require_caller
from alchemy.manager import EngineManager, get_engine
from alchemy.models.dc_models import (
    CommitReportModel,
    ManualPathwayRequestModel,
    ManualPathwayResponseModel,
    PathCommitRequestModel,
    PathGenerateRequestModel,
    PathGenerateResponseModel,
    ShortestPathResponseModel,
)
from alchemy.rate_limit import AI_GENERATION_LIMIT, WRITE_LIMIT, limiter

paths_router = APIRouter(prefix="/paths", dependencies=[Depends(require_caller)])


class PathAPI:
    @staticmethod
    @paths_router.post("/generate", response_model=PathGenerateResponseModel)
    @limiter.limit(AI_GENERATION_LIMIT)
    async def generate(
        request: Request,
        body: PathGenerateRequestModel,
        engine: EngineManager = Depends(get_engine),
    ):
        return await engine.composer.generate_paths(body.target, body.count)

    @staticmethod
    @paths_router.post("/commit", response_model=CommitReportModel)
    @limiter.limit(WRITE_LIMIT)
    async def commit(
        request: Request,
        body: PathCommitRequestModel,
        engine: EngineManager = Depends(get_engine),
    ):
        return await engine.composer.commit_path(body.path, body.target_name, body.target_glyph)

    @staticmethod
    @paths_router.post("/manual", response_model=ManualPathwayResponseModel)
    @limiter.limit(AI_GENERATION_LIMIT)
    async def manual(
        request: Request,
        body: ManualPathwayRequestModel,
        engine: EngineManager = Depends(get_engine),
    ):
        return await engine.composer.commit_manual_pathway(body.steps, body.final_element)

    @staticmethod
    @paths_router.get("/shortest", response_model=ShortestPathResponseModel)
    async def shortest(
        target: str = Query(..., min_length=1),
        engine: EngineManager = Depends(get_engine),
    ):
        return await engine.composer.shortest_path(target)
