# main.py
# ------------------------------------------------------------------------------------
#  FastAPI service for the Ideogram relay:
#  - POST /tools/generate                 -> generate now (blocks on Ideogram)
#  - POST /tools/edit                     -> inpaint now
#  - POST /tools/generate-async           -> queue a prediction
#  - POST /tools/edit-async               -> queue an edit prediction
#  - GET  /tools/predictions/{id}         -> poll (queued|processing|completed|failed|cancelled)
#  - POST /tools/predictions/{id}/cancel  -> cancel while queued
#  - GET  /tools/predictions/stats        -> counts per status
#  - GET  /files/{key}                    -> stream a saved image (local or R2)
#  - GET  /debug/config                   -> runtime config (DEBUG only)
#  Predictions live in memory only; a restart forgets them.
# ------------------------------------------------------------------------------------

import logging
import os
from contextlib import asynccontextmanager
from typing import Optional

import uvicorn
from botocore.exceptions import BotoCoreError, ClientError
from fastapi import APIRouter, Depends, FastAPI, HTTPException, Request
from fastapi.exceptions import RequestValidationError
from fastapi.middleware.cors import CORSMiddleware
from fastapi.responses import FileResponse, JSONResponse, StreamingResponse

from constants import SERVICE_NAME, SERVICE_VERSION, ErrorCode
from errors import (
    IdeogramError,
    invalid_aspect_ratio_error,
    invalid_prompt_error,
    missing_api_key_error,
    validation_error,
)
from ideogram_client import IdeogramClient
from prediction_store import PredictionStore
from schemas import EditAsyncInput, EditInput, GenerateAsyncInput, GenerateInput
from settings import Settings, config_errors, get_settings
from storage import StorageService
from tools import Tools, make_processor

logger = logging.getLogger(__name__)


def configure_logging(level: str) -> None:
    logging.basicConfig(
        level=level.upper(),
        format="%(asctime)s %(levelname)s %(name)s: %(message)s",
    )


def build_client(settings: Settings) -> Optional[IdeogramClient]:
    if not settings.ideogram_api_key:
        logger.warning("IDEOGRAM_API_KEY is not set; generation requests will fail")
        return None
    return IdeogramClient(
        api_key=settings.ideogram_api_key,
        base_url=settings.ideogram_api_base,
        timeout=settings.request_timeout_ms / 1000,
    )


def build_store(settings: Settings) -> PredictionStore:
    return PredictionStore(
        max_queue_size=settings.prediction_max_queue_size,
        prediction_timeout=settings.prediction_timeout_seconds,
        cleanup_age=settings.prediction_cleanup_age_seconds,
        enable_auto_cleanup=settings.prediction_auto_cleanup,
        cleanup_interval=settings.prediction_cleanup_interval_seconds,
    )


async def _reject_without_client(prediction):
    raise missing_api_key_error()


# ---------- Dependencies ----------

def get_tools(request: Request) -> Tools:
    return request.app.state.tools


def get_storage(request: Request) -> StorageService:
    return request.app.state.storage


# ---------- Routers ----------

def make_tools_router() -> APIRouter:
    router = APIRouter(prefix="/tools", tags=["tools"])

    @router.post("/generate")
    async def generate(payload: GenerateInput, tools: Tools = Depends(get_tools)):
        return await tools.generate(payload)

    @router.post("/edit")
    async def edit(payload: EditInput, tools: Tools = Depends(get_tools)):
        return await tools.edit(payload)

    @router.post("/generate-async")
    async def generate_async(payload: GenerateAsyncInput, tools: Tools = Depends(get_tools)):
        return tools.generate_async(payload)

    @router.post("/edit-async")
    async def edit_async(payload: EditAsyncInput, tools: Tools = Depends(get_tools)):
        return tools.edit_async(payload)

    # declared before /predictions/{prediction_id}
    @router.get("/predictions/stats")
    def prediction_stats(tools: Tools = Depends(get_tools)):
        return tools.prediction_stats()

    @router.get("/predictions/{prediction_id}")
    def get_prediction(prediction_id: str, tools: Tools = Depends(get_tools)):
        return tools.get_prediction(prediction_id)

    @router.post("/predictions/{prediction_id}/cancel")
    def cancel_prediction(prediction_id: str, tools: Tools = Depends(get_tools)):
        return tools.cancel_prediction(prediction_id)

    return router


def make_files_router() -> APIRouter:
    router = APIRouter()

    @router.get("/files/{key:path}")
    def stream_file(key: str, storage: StorageService = Depends(get_storage)):
        path = storage.local_path(key)
        if path is not None:
            if not os.path.isfile(path):
                raise HTTPException(status_code=404, detail="file not found")
            return FileResponse(path)

        if storage.r2 is not None and not key.startswith("local/"):
            try:
                chunks, content_type = storage.r2.get_object_stream(key)
            except (ClientError, BotoCoreError):
                raise HTTPException(status_code=404, detail="object not found")
            return StreamingResponse(chunks, media_type=content_type)

        raise HTTPException(status_code=404, detail="file not found")

    return router


# ---------- Error mapping ----------

def _status_for(exc: IdeogramError) -> int:
    if exc.status_code >= 400:
        return exc.status_code
    # transport-level failures carry status 0
    return 504 if exc.code == ErrorCode.TIMEOUT else 502


async def ideogram_error_handler(request: Request, exc: IdeogramError):
    return JSONResponse(status_code=_status_for(exc), content=exc.to_tool_error())


async def request_validation_handler(request: Request, exc: RequestValidationError):
    errors = exc.errors()
    first = errors[0] if errors else {"loc": ("body",), "msg": "Invalid input"}
    field = ".".join(str(p) for p in first.get("loc", ()) if p != "body") or "input"
    reason = first.get("msg", "Invalid input")
    fields = [
        {"field": ".".join(str(p) for p in e.get("loc", ()) if p != "body"), "message": e.get("msg")}
        for e in errors
    ]
    if field == "prompt":
        err = invalid_prompt_error(reason)
    elif field == "aspect_ratio":
        err = invalid_aspect_ratio_error(str(first.get("input", "")))
    else:
        err = validation_error(field, reason)
    err.details["errors"] = fields
    return JSONResponse(status_code=422, content=err.to_tool_error())


# ---------- App factory ----------

def create_app(
    settings: Optional[Settings] = None,
    client: Optional[IdeogramClient] = None,
    storage: Optional[StorageService] = None,
    store: Optional[PredictionStore] = None,
) -> FastAPI:
    settings = settings or get_settings()
    configure_logging(settings.log_level)

    @asynccontextmanager
    async def lifespan(app: FastAPI):
        ideogram = client or build_client(settings)
        files = storage or StorageService.from_settings(settings)
        predictions = store or build_store(settings)
        predictions.set_processor(
            make_processor(ideogram, files) if ideogram else _reject_without_client
        )

        app.state.settings = settings
        app.state.client = ideogram
        app.state.storage = files
        app.state.store = predictions
        app.state.tools = Tools(ideogram, predictions, files)
        logger.info(
            "Service started storage=%s api_key=%s",
            settings.storage, ideogram.masked_api_key() if ideogram else "unset",
        )
        try:
            yield
        finally:
            predictions.dispose()
            logger.info("Service stopped")

    app = FastAPI(title="Ideogram Relay API", version=SERVICE_VERSION, lifespan=lifespan)

    # In prod, tighten CORS_ORIGINS to your domains
    app.add_middleware(
        CORSMiddleware,
        allow_origins=settings.cors_origins.split(","),
        allow_credentials=True,
        allow_methods=["*"],
        allow_headers=["*"],
    )
    app.add_exception_handler(IdeogramError, ideogram_error_handler)
    app.add_exception_handler(RequestValidationError, request_validation_handler)
    app.include_router(make_tools_router())
    app.include_router(make_files_router())

    @app.get("/health")
    def health(request: Request):
        return {
            "ok": True,
            "service": SERVICE_NAME,
            "version": SERVICE_VERSION,
            "storage": settings.storage,
            "api_key_configured": request.app.state.client is not None,
            "queue": request.app.state.store.get_stats().model_dump(),
        }

    @app.get("/")
    def index():
        return {
            "service": SERVICE_NAME,
            "storage": settings.storage,
            "public_base": settings.public_base_url,
        }

    if settings.debug:
        @app.get("/debug/config")
        def debug_config():
            return {
                "IDEOGRAM_API_KEY": settings.masked_api_key() if settings.ideogram_api_key else None,
                "IDEOGRAM_API_BASE": settings.ideogram_api_base,
                "STORAGE": settings.storage,
                "LOCAL_SAVE_DIR": settings.local_save_dir,
                "R2_ENDPOINT_URL": settings.r2_endpoint_url,
                "R2_PUBLIC_BASE": settings.r2_public_base,
                "R2_BUCKET": settings.r2_bucket,
                "MAX_CONCURRENT_REQUESTS": settings.max_concurrent_requests,
                "PREDICTION_MAX_QUEUE_SIZE": settings.prediction_max_queue_size,
                "PREDICTION_TIMEOUT_SECONDS": settings.prediction_timeout_seconds,
                "LOG_LEVEL": settings.log_level,
            }

    return app


if __name__ == "__main__":
    problems = config_errors()
    if problems:
        logging.basicConfig(level="ERROR")
        for problem in problems:
            logger.error("Invalid configuration: %s", problem)
        raise SystemExit(1)
    _settings = get_settings()
    uvicorn.run(create_app(_settings), host=_settings.host, port=_settings.port)
