import logging

from toon_engine.core.database import init_db
from toon_engine.core.log_config import configure_logging
from toon_engine.core.settings import settings
from toon_engine.services.job_processor import ConversionRuntime, build_runtime, wait_for_background_jobs

logger = logging.getLogger(__name__)


def startup() -> ConversionRuntime:
    configure_logging()
    if settings.db_auto_create:
        init_db()
    if not settings.gemini_api_key:
        if settings.is_production:
            raise RuntimeError("GEMINI_API_KEY is not set")
        logger.warning("startup.gemini_key_missing environment=%s", settings.environment)

    runtime = build_runtime()
    logger.info(
        "startup.ready environment=%s model=%s quality_gate=%s blob_store=%s",
        settings.environment,
        settings.gemini_image_model,
        runtime.quality_gate is not None,
        type(runtime.blob_store).__name__,
    )
    return runtime


async def shutdown(runtime: ConversionRuntime) -> None:
    await wait_for_background_jobs()
    aclose = getattr(runtime.model, "aclose", None)
    if aclose is not None:
        await aclose()
