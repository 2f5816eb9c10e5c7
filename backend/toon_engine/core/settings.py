import os


def _getenv(name: str, default: str | None = None) -> str | None:
    value = os.getenv(name)
    if value is None:
        return default
    value = value.strip()
    return value if value else default


def _getenv_bool(name: str, default: bool = False) -> bool:
    raw = _getenv(name)
    if raw is None:
        return default
    return raw.lower() in {"1", "true", "yes", "y", "on"}


def _getenv_int(name: str, default: int) -> int:
    raw = _getenv(name)
    if raw is None:
        return default
    try:
        return int(raw)
    except ValueError:
        return default


def _getenv_float(name: str, default: float) -> float:
    raw = _getenv(name)
    if raw is None:
        return default
    try:
        return float(raw)
    except ValueError:
        return default


class Settings:
    def __init__(self) -> None:
        self.environment = (_getenv("ENVIRONMENT", "development") or "development").lower()
        self.database_url = _getenv("DATABASE_URL", "sqlite:///./toon_engine.db") or "sqlite:///./toon_engine.db"
        self.db_auto_create = _getenv_bool("DB_AUTO_CREATE", default=True)
        self.log_level = (_getenv("LOG_LEVEL", "INFO") or "INFO").upper()

        # Unset means the in-process memory store.
        self.blob_store_root = _getenv("BLOB_STORE_ROOT")

        self.gemini_api_key = _getenv("GEMINI_API_KEY")
        self.gemini_base_url = (
            _getenv("GEMINI_BASE_URL", "https://generativelanguage.googleapis.com/v1beta")
            or "https://generativelanguage.googleapis.com/v1beta"
        )
        self.gemini_image_model = _getenv("GEMINI_IMAGE_MODEL", "gemini-2.5-flash-image") or "gemini-2.5-flash-image"
        self.gemini_image_timeout_s = _getenv_float("GEMINI_IMAGE_TIMEOUT_S", 60.0)

        self.quality_gate_enabled = _getenv_bool("QUALITY_GATE_ENABLED", default=True)
        self.quality_api_key = _getenv("QUALITY_API_KEY") or self.gemini_api_key
        self.quality_base_url = (
            _getenv("QUALITY_BASE_URL", "https://generativelanguage.googleapis.com/v1beta/openai/")
            or "https://generativelanguage.googleapis.com/v1beta/openai/"
        )
        self.quality_model = _getenv("QUALITY_MODEL", "gemini-2.5-flash") or "gemini-2.5-flash"
        self.quality_timeout_s = _getenv_float("QUALITY_TIMEOUT_S", 15.0)

        self.daily_free_credits = _getenv_int("DAILY_FREE_CREDITS", 3)
        self.anonymous_daily_limit = _getenv_int("ANONYMOUS_DAILY_LIMIT", 3)
        self.signup_bonus_credits = _getenv_int("SIGNUP_BONUS_CREDITS", 10)

        self.job_max_images = _getenv_int("JOB_MAX_IMAGES", 10)
        self.job_max_base64_length = _getenv_int("JOB_MAX_BASE64_LENGTH", 10 * 1024 * 1024)
        self.job_image_delay_s = _getenv_float("JOB_IMAGE_DELAY_S", 2.0)
        self.job_retry_backoff_s = _getenv_float("JOB_RETRY_BACKOFF_S", 1.0)
        self.job_pending_timeout_s = _getenv_int("JOB_PENDING_TIMEOUT_S", 60)
        self.job_processing_timeout_s = _getenv_int("JOB_PROCESSING_TIMEOUT_S", 5 * 60)

    @property
    def is_production(self) -> bool:
        return self.environment == "production"

    @property
    def quality_gate_configured(self) -> bool:
        return bool(self.quality_gate_enabled and self.quality_api_key)


settings = Settings()
