import logging
import os
from contextlib import asynccontextmanager

from fastapi import FastAPI, Request
from fastapi.responses import JSONResponse

from conditions.cache import load_condition_cache, reset_condition_cache
from core import db, schema
from core.errors import ObsError
from observations import router as observations_router
from observations import service as observations_service

logger = logging.getLogger(__name__)


def _env_flag(name: str) -> bool:
    return os.environ.get(name, "").strip() not in {"", "0", "false", "False"}


@asynccontextmanager
async def lifespan(_: FastAPI):
    # Initialize the DB pool once per process.
    await db.init_pool()
    try:
        async with db.pool().acquire() as conn:
            if _env_flag("OBS_CREATE_TABLES"):
                await schema.create_tables(conn)
            reset_condition_cache(await load_condition_cache(conn))
        yield
    finally:
        await db.close_pool()


app = FastAPI(lifespan=lifespan)


@app.exception_handler(ObsError)
async def obs_error_handler(_: Request, exc: ObsError) -> JSONResponse:
    if exc.status_code >= 500:
        logger.error("request_failed error=%s", exc)
    return JSONResponse(status_code=exc.status_code, content={"detail": str(exc)})


app.include_router(observations_router.router, tags=["observations"])


@app.get("/health")
def health() -> dict:
    return {"status": "ok"}


@app.get("/")
def root() -> dict:
    return {
        "banner": "This is an instance of the Path Transparency Observatory observation store.",
        "obs": observations_service.base_url().rstrip("/") + "/obs",
    }
