from apscheduler.schedulers.asyncio import AsyncIOScheduler
import logging
from contextlib import asynccontextmanager
from fastapi import FastAPI, Request
from fastapi.exceptions import RequestValidationError
from fastapi.responses import JSONResponse
from slowapi.errors import RateLimitExceeded
from sqlalchemy.ext.asyncio import AsyncEngine

from alchemy.errors import AlchemyError, InvalidInputError
from alchemy.load_secrets import use_count_flush_seconds
from alchemy.manager import EngineManager, build_default_manager
from alchemy.rate_limit import limiter, rate_limit_exceeded_handler
from alchemy.routers import combinations, combine, elements, paths

logging.basicConfig(level=logging.INFO)
logging.getLogger("aiosqlite").setLevel(logging.WARNING)
logging.getLogger("httpx").setLevel(logging.WARNING)


async def alchemy_error_handler(request: Request, exc: AlchemyError) -> JSONResponse:
    headers = {}
    if exc.retry_after is not None:
        headers["Retry-After"] = str(exc.retry_after)
    if exc.status_code >= 500:
        logging.error(f"{request.method} {request.url.path} failed: {exc.kind} ({exc.message})")
    return JSONResponse(status_code=exc.status_code, content=exc.to_dict(), headers=headers)


async def validation_error_handler(request: Request, exc: RequestValidationError) -> JSONResponse:
    fields = ", ".join(".".join(str(part) for part in error["loc"]) for error in exc.errors())
    error = InvalidInputError(f"Invalid request: {fields}")
    return JSONResponse(status_code=error.status_code, content=error.to_dict())


async def unexpected_error_handler(request: Request, exc: Exception) -> JSONResponse:
    logging.exception(f"Unhandled error on {request.method} {request.url.path}: {exc}")
    error = AlchemyError("Internal server error")
    return JSONResponse(status_code=error.status_code, content=error.to_dict())


def create_app(
    engine_manager: EngineManager | None = None,
    db_engine: AsyncEngine | None = None,
    start_scheduler: bool = True,
) -> FastAPI:
    """Build the application.

    Without arguments the database, Redis and model gateway come from the
    environment (see ``alchemy.load_secrets``).
    """

    @asynccontextmanager
    async def lifespan(app):
        """Create tables, seed the starter elements and start the use-count flush job."""
        nonlocal engine_manager, db_engine
        if engine_manager is None:
            from alchemy.db import Session
            from alchemy.create_postgres_engine import engine

            engine_manager = build_default_manager(Session)
            if db_engine is None:
                db_engine = engine
        if db_engine is not None:
            await engine_manager.store.create_tables(db_engine)
        await engine_manager.store.seed_starters()
        app.state.engine = engine_manager

        scheduler = AsyncIOScheduler()
        if start_scheduler:
            scheduler.add_job(
                engine_manager.use_counts.flush,
                "interval",
                seconds=use_count_flush_seconds,
            )
            scheduler.start()
        logging.info("Start Server")
        try:
            yield
        finally:
            if scheduler.running:
                scheduler.shutdown()
            await engine_manager.close()
            logging.info("Stop Server")

    app = FastAPI(lifespan=lifespan)
    app.state.limiter = limiter
    app.add_exception_handler(RateLimitExceeded, rate_limit_exceeded_handler)
    app.add_exception_handler(AlchemyError, alchemy_error_handler)
    app.add_exception_handler(RequestValidationError, validation_error_handler)
    app.add_exception_handler(Exception, unexpected_error_handler)
    app.include_router(combine.combine_router)
    app.include_router(paths.paths_router)
    app.include_router(elements.elements_router)
    app.include_router(combinations.combinations_router)
    return app


app = create_app()
