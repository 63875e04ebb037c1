from urllib.parse import urlsplit

from pydantic import field_validator, model_validator
from pydantic_settings import BaseSettings, SettingsConfigDict
from dotenv import load_dotenv

load_dotenv()

LOCALHOST_NAMES = {"localhost", "127.0.0.1", "::1", "[::1]"}


def validate_api_url(url) -> dict:
    """
    Validate the remote API base URL.

    Only http and https are accepted, and plain http only for localhost.

    Returns:
        {"valid": True, "url": "<trimmed url>"} or {"valid": False, "error": "..."}
    """
    if not url or not isinstance(url, str):
        return {"valid": False, "error": "URL must be a non-empty string"}

    url = url.strip()
    if not url:
        return {"valid": False, "error": "URL must be a non-empty string"}

    try:
        parsed = urlsplit(url)
    except ValueError:
        return {"valid": False, "error": "Invalid URL format"}

    if not parsed.scheme or not parsed.netloc:
        return {"valid": False, "error": "Invalid URL format"}

    if parsed.scheme not in ("http", "https"):
        return {"valid": False, "error": "Only HTTP and HTTPS protocols are allowed"}

    if parsed.scheme == "http":
        hostname = (parsed.hostname or "").lower()
        if hostname not in LOCALHOST_NAMES:
            return {
                "valid": False,
                "error": "HTTP is only allowed for localhost. Use HTTPS for remote domains.",
            }

    return {"valid": True, "url": url}


class Settings(BaseSettings):
    PROJECT_NAME: str = "Notification Sync"
    ENVIRONMENT: str = "development"

    # Remote notification service
    API_BASE_URL: str = "http://localhost:8090"
    FETCH_TIMEOUT_MS: int = 10000
    POLL_INTERVAL_MINUTES: float = 1

    # Local persistence
    DATABASE_URL: str = "sqlite:///./notisync.db"
    NOTIFICATIONS_STORAGE_KEY: str = "notifications"
    INSTALLATION_ID_KEY: str = "installationId"

    # Circuit breaker (remote calls)
    FAILURE_THRESHOLD: int = 3
    INITIAL_BACKOFF_MS: int = 5000
    MAX_BACKOFF_MS: int = 5 * 60 * 1000

    # Resilient store (local persistence)
    STORAGE_RETRY_ATTEMPTS: int = 3
    STORAGE_INITIAL_BACKOFF_MS: int = 100
    STORAGE_MAX_BACKOFF_MS: int = 5000
    STORAGE_ERROR_THRESHOLD: int = 3

    # Error tracking
    SENTRY_DSN: str = ""

    model_config = SettingsConfigDict(case_sensitive=True, env_file=".env", extra="ignore")

    @field_validator("API_BASE_URL")
    @classmethod
    def check_api_base_url(cls, value: str) -> str:
        result = validate_api_url(value)
        if not result["valid"]:
            raise ValueError(result["error"])
        return result["url"].rstrip("/")

    @field_validator(
        "FAILURE_THRESHOLD",
        "STORAGE_RETRY_ATTEMPTS",
        "STORAGE_ERROR_THRESHOLD",
        "FETCH_TIMEOUT_MS",
        "INITIAL_BACKOFF_MS",
        "MAX_BACKOFF_MS",
        "STORAGE_INITIAL_BACKOFF_MS",
        "STORAGE_MAX_BACKOFF_MS",
    )
    @classmethod
    def check_positive(cls, value: int) -> int:
        if value < 1:
            raise ValueError("must be at least 1")
        return value

    @field_validator("POLL_INTERVAL_MINUTES")
    @classmethod
    def check_poll_interval(cls, value: float) -> float:
        if value <= 0:
            raise ValueError("must be greater than 0")
        return value

    @model_validator(mode="after")
    def check_backoff_bounds(self) -> "Settings":
        if self.MAX_BACKOFF_MS < self.INITIAL_BACKOFF_MS:
            raise ValueError("MAX_BACKOFF_MS must not be less than INITIAL_BACKOFF_MS")
        if self.STORAGE_MAX_BACKOFF_MS < self.STORAGE_INITIAL_BACKOFF_MS:
            raise ValueError("STORAGE_MAX_BACKOFF_MS must not be less than STORAGE_INITIAL_BACKOFF_MS")
        return self


settings = Settings()
