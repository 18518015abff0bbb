"""FastAPI application: lifespan wiring and error rendering."""

import logging
import os
from collections.abc import AsyncGenerator
from contextlib import asynccontextmanager

from dotenv import load_dotenv

load_dotenv()

from fastapi import FastAPI, Request
from fastapi.middleware.cors import CORSMiddleware
from fastapi.responses import JSONResponse
from pymongo.errors import ConnectionFailure, PyMongoError

from formai.api.exceptions import ApiError
from formai.api.response import fail
from formai.api.routes import health, jobs
from formai.db.mongo import close_database
from formai.llm import LLMError
from formai.services.generation_config_store import (
    MongoGenerationConfigStore,
    get_generation_config_store,
)
from formai.services.job_runner import PermanentJobError, get_job_runner

logger = logging.getLogger(__name__)


@asynccontextmanager
async def lifespan(app: FastAPI) -> AsyncGenerator[None, None]:
    runner = get_job_runner()
    try:
        await runner.store.start()
        config_store = get_generation_config_store()
        if isinstance(config_store, MongoGenerationConfigStore):
            await config_store.ensure_indexes()
    except PyMongoError as e:
        logger.warning(f"Store startup failed, continuing without indexes: {e}")

    if runner.background_enabled:
        await runner.start()

    yield

    await runner.stop()
    await runner.store.stop()
    await close_database()


app = FastAPI(
    title="FormAI Jobs API",
    description="Background AI form processing with chunked long-form generation",
    version="1.0.0",
    lifespan=lifespan,
)

app.add_middleware(
    CORSMiddleware,
    allow_origins=os.getenv("CORS_ORIGINS", "http://localhost:5173,http://127.0.0.1:5173").split(","),
    allow_credentials=True,
    allow_methods=["*"],
    allow_headers=["*"],
)


@app.exception_handler(ApiError)
async def api_error_handler(request: Request, exc: ApiError) -> JSONResponse:
    return fail(exc.status_code, exc.code, str(exc))


@app.exception_handler(PermanentJobError)
async def permanent_job_error_handler(request: Request, exc: PermanentJobError) -> JSONResponse:
    """An inline job its handler refused to run."""
    return fail(422, "JOB_REJECTED", str(exc))


@app.exception_handler(ConnectionFailure)
async def database_unavailable_handler(request: Request, exc: ConnectionFailure) -> JSONResponse:
    # ServerSelectionTimeoutError is a ConnectionFailure too
    logger.error(f"MongoDB unavailable: {exc}")
    return fail(503, "DATABASE_UNAVAILABLE", "Database is not available. Please try again later.")


@app.exception_handler(LLMError)
async def llm_error_handler(request: Request, exc: LLMError) -> JSONResponse:
    logger.error(f"Inline generation failed: {exc}")
    return fail(503, "AI_SERVICE_ERROR", "AI service is temporarily unavailable. Please try again.")


app.include_router(health.router)
app.include_router(jobs.router, prefix="/api")
