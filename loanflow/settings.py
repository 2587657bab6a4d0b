import os
from dotenv import load_dotenv

load_dotenv()

class Settings:
    API_KEY: str = os.getenv("API_KEY", "")
    CORS_ORIGINS: str = os.getenv("CORS_ORIGINS", "*")

    REDIS_URL: str = os.getenv("REDIS_URL", "redis://localhost:6379/0")
    # "memory" keeps state in-process (single worker); "redis" shares it across instances
    SESSION_BACKEND: str = os.getenv("SESSION_BACKEND", "memory").lower()
    RATE_LIMIT_BACKEND: str = os.getenv("RATE_LIMIT_BACKEND", "memory").lower()

    # Provider (DSP) boundary
    PROVIDER_BASE_URL: str = os.getenv("PROVIDER_BASE_URL", "https://api.staging.dspfin.com/los/api/v1")
    DSP_SECRET_KEY: str = os.getenv("DSP_SECRET_KEY", "")
    DSP_CHANNEL_CODE: str = os.getenv("DSP_CHANNEL_CODE", "")
    PROVIDER_TIMEOUT_SEC: float = float(os.getenv("PROVIDER_TIMEOUT_SEC", "30"))
    PROVIDER_LONG_TIMEOUT_SEC: float = float(os.getenv("PROVIDER_LONG_TIMEOUT_SEC", "60"))

    # Admission control
    RATE_LIMIT_PER_MINUTE: int = int(os.getenv("RATE_LIMIT_PER_MINUTE", "30"))
    RATE_LIMIT_PER_HOUR: int = int(os.getenv("RATE_LIMIT_PER_HOUR", "300"))
    RATE_LIMIT_MINUTE_BLOCK_SEC: int = int(os.getenv("RATE_LIMIT_MINUTE_BLOCK_SEC", "300"))
    RATE_LIMIT_HOUR_BLOCK_SEC: int = int(os.getenv("RATE_LIMIT_HOUR_BLOCK_SEC", "3600"))

    # Sessions
    SESSION_RESTORE_MAX_AGE_SEC: int = int(os.getenv("SESSION_RESTORE_MAX_AGE_SEC", "86400"))
    SESSION_INACTIVITY_SEC: int = int(os.getenv("SESSION_INACTIVITY_SEC", "1800"))
    SESSION_LOCK_TTL_MS: int = int(os.getenv("SESSION_LOCK_TTL_MS", "10000"))
    MAX_HISTORY_FOR_LLM: int = int(os.getenv("MAX_HISTORY_FOR_LLM", "20"))

    # "guided" drives the step machine, "assistant" routes intent-resolved actions
    INTERACTION_MODE: str = os.getenv("INTERACTION_MODE", "guided").lower()

    # Frustration recovery
    FRUSTRATION_FAILED_ATTEMPTS: int = int(os.getenv("FRUSTRATION_FAILED_ATTEMPTS", "3"))
    FRUSTRATION_REPEAT_WINDOW: int = int(os.getenv("FRUSTRATION_REPEAT_WINDOW", "3"))

    # Mandate defaults used by the guided flow
    MANDATE_DEFAULT_AMOUNT: float = float(os.getenv("MANDATE_DEFAULT_AMOUNT", "100000"))
    MANDATE_TENURE_YEARS: int = int(os.getenv("MANDATE_TENURE_YEARS", "10"))
    MANDATE_TYPE: str = os.getenv("MANDATE_TYPE", "API_MANDATE")
    REDIRECT_URL: str = os.getenv("REDIRECT_URL", "https://www.voltmoney.in")

    # Intent resolution (OpenAI-compatible endpoint, expects base url to include /v1)
    LLM_BASE_URL: str = os.getenv("LLM_BASE_URL", "").rstrip("/")
    LLM_API_KEY: str = os.getenv("LLM_API_KEY", "")
    LLM_MODEL: str = os.getenv("LLM_MODEL", "gpt-4o-mini")
    LLM_REQUEST_TIMEOUT_SEC: float = float(os.getenv("LLM_REQUEST_TIMEOUT_SEC", "15"))
    LLM_TEMPERATURE: float = float(os.getenv("LLM_TEMPERATURE", "0.2"))

    ENABLE_PII_REDACTION: bool = os.getenv("ENABLE_PII_REDACTION", "true").lower() == "true"

settings = Settings()
