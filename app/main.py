import logging
from contextlib import asynccontextmanager

from fastapi import FastAPI, Depends
from fastapi.middleware.cors import CORSMiddleware

from app.config import Settings, settings
from app.database import create_tables, async_session
from app.dependencies import verify_api_key
from app.routers.media import router as media_router
from app.routers.photos import router as photos_router
from app.routers.suggestions import router as suggestions_router
from app.routers.system import router as system_router
from app.services.analysis_client import AnalysisClient
from app.services.gemini import GeminiClient
from app.services.media_store import MediaStore
from app.services.orchestrator import Orchestrator
from app.services.suggestion_client import SuggestionClient
from app.services.transform_client import PollPolicy, TransformClient
from app.utils.exceptions import register_exception_handlers

logging.basicConfig(
    level=getattr(logging, settings.log_level.upper(), logging.INFO),
    format="%(asctime)s %(levelname)s %(name)s: %(message)s",
)
logger = logging.getLogger(__name__)


def build_orchestrator(store: MediaStore, config: Settings) -> Orchestrator:
    """Wire the AI clients from configuration; nothing below reads global settings."""
    gemini = GeminiClient(
        api_key=config.gemini_api_key,
        model=config.gemini_model,
        base_url=config.gemini_base_url,
        timeout=config.http_timeout_seconds,
    )
    transform_client = TransformClient(
        api_key=config.fal_api_key,
        queue_url=config.fal_queue_url,
        storage_url=config.fal_storage_url,
        timeout=config.http_timeout_seconds,
        inline_limit_bytes=config.inline_image_limit_bytes,
        inline_compress_threshold_bytes=config.inline_compress_threshold_bytes,
        compression_target_bytes=config.compression_target_bytes,
        quality_levels=config.compression_quality_levels,
        image_poll=PollPolicy(
            config.image_poll_interval_seconds, config.image_poll_max_attempts, config.poll_backoff_factor
        ),
        video_poll=PollPolicy(
            config.video_poll_interval_seconds, config.video_poll_max_attempts, config.poll_backoff_factor
        ),
        default_video_duration=config.default_video_duration_seconds,
    )
    return Orchestrator(
        store=store,
        analysis_client=AnalysisClient(
            gemini,
            jpeg_quality=config.analysis_jpeg_quality,
            temperature=config.analysis_temperature,
            max_output_tokens=config.analysis_max_output_tokens,
        ),
        suggestion_client=SuggestionClient(
            gemini,
            temperature=config.suggestion_temperature,
            max_output_tokens=config.suggestion_max_output_tokens,
        ),
        transform_client=transform_client,
    )


@asynccontextmanager
async def lifespan(app: FastAPI):
    await create_tables()
    # jobs left in flight by a previous process are cancelled, not resumed
    await app.state.store.cancel_stale_jobs()
    if not settings.gemini_api_key or not settings.fal_api_key:
        logger.warning("API keys missing; pipelines will fall back to mock results")
    yield
    await app.state.orchestrator.shutdown()


app = FastAPI(
    title="Bananagram API",
    description="Photo analysis, AI transformation suggestions and generative media jobs",
    version="0.1.0",
    lifespan=lifespan,
)

app.state.store = MediaStore(async_session)
app.state.orchestrator = build_orchestrator(app.state.store, settings)

app.add_middleware(
    CORSMiddleware,
    allow_origins=settings.cors_origins,
    allow_credentials=True,
    allow_methods=["*"],
    allow_headers=["*"],
)

register_exception_handlers(app)

_api_key_dep = [Depends(verify_api_key)]

app.include_router(photos_router, prefix="/api/v1", dependencies=_api_key_dep)
app.include_router(suggestions_router, prefix="/api/v1", dependencies=_api_key_dep)
app.include_router(media_router, prefix="/api/v1", dependencies=_api_key_dep)
app.include_router(system_router, prefix="/api/v1", dependencies=_api_key_dep)


@app.get("/health")
async def health_check():
    return {"status": "success", "data": {"service": "bananagram-api", "version": "0.1.0"}, "message": None}
