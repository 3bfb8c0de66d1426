from pydantic_settings import BaseSettings, SettingsConfigDict
from functools import lru_cache
from typing import Dict, Optional
import pydantic


class Settings(BaseSettings):
    """
    Manages all loader settings.
    Reads from DEPLOAD_* environment variables (and .env file).
    """

    # --- Core Application Configuration ---
    ENVIRONMENT: str = "development"
    LOG_LEVEL: str = "INFO"

    # --- Fetch Mechanism ---
    MAX_WORKERS: int = pydantic.Field(default=8, ge=1)
    REQUEST_TIMEOUT: float = pydantic.Field(default=30.0, gt=0)
    USER_AGENT: str = "depload/0.1"

    # Global cache switch. When False, every unit is fetched with a
    # cache-busting query parameter regardless of its own "cache" flag.
    CACHE_ENABLED: bool = True

    # --- Session ---
    # Upper bound on a whole load session; None waits forever.
    SESSION_TIMEOUT: Optional[float] = None

    @pydantic.computed_field
    @property
    def HTTP_HEADERS(self) -> Dict[str, str]:
        """
        Headers sent with every HTTP fetch.
        """
        return {"User-Agent": self.USER_AGENT, "Accept": "*/*"}

    model_config = SettingsConfigDict(
        env_prefix="DEPLOAD_",
        env_file=".env",
        env_file_encoding='utf-8',
        case_sensitive=False,
        extra="ignore",
    )


@lru_cache()
def get_settings() -> Settings:
    """
    Returns a cached instance of the Settings object.
    Using @lru_cache ensures the .env file is read only once.
    """
    return Settings()


settings = get_settings()
