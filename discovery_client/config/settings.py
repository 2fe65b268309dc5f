from pydantic_settings import BaseSettings, SettingsConfigDict
from pydantic import Field, SecretStr, field_validator
from typing import Optional
from dotenv import load_dotenv, find_dotenv

# Load environment variables from .env file (searching parent directories)
load_dotenv(find_dotenv(usecwd=True))


class Settings(BaseSettings):
    """
    Discovery client settings.

    Every field has an environment-sourced default; keyword arguments passed
    to the constructor override the environment:

        settings = Settings(REGISTRY_API_KEY="k", REGISTRY_REGION="us-west-2")
    """

    model_config = SettingsConfigDict(
        env_file=".env",
        env_file_encoding="utf-8",
        case_sensitive=False,
        extra="ignore"
    )

    # ═══════════════════════════════════════════════════════════════════
    # Registry Connection
    # ═══════════════════════════════════════════════════════════════════
    REGISTRY_API_KEY: SecretStr
    REGISTRY_URL: str = "http://localhost:8500"
    REGISTRY_REGION: Optional[str] = None
    REGISTRY_MAX_CONNECTIONS: int = Field(default=50, ge=1)

    # ═══════════════════════════════════════════════════════════════════
    # Retry / Backoff
    # ═══════════════════════════════════════════════════════════════════
    REGISTRY_TIMEOUT_MS: int = Field(default=5000, gt=0, description="Per-attempt deadline")
    REGISTRY_RETRIES: int = Field(default=3, ge=0, description="Max attempts after the first")
    REGISTRY_BACKOFF_BASE_MS: int = Field(default=200, ge=0)
    REGISTRY_BACKOFF_MAX_MS: int = Field(default=10000, ge=0)
    REGISTRY_IDEMPOTENT_UPSERT: bool = True

    # ═══════════════════════════════════════════════════════════════════
    # Resolution Cache
    # ═══════════════════════════════════════════════════════════════════
    REGISTRY_CACHE_TTL: float = Field(default=30.0, gt=0, description="Seconds an entry stays fresh")
    REGISTRY_CACHE_CAPACITY: int = Field(default=1024, ge=1)

    # ═══════════════════════════════════════════════════════════════════
    # Circuit Breaker
    # ═══════════════════════════════════════════════════════════════════
    REGISTRY_BREAKER_THRESHOLD: int = Field(default=5, ge=1)
    REGISTRY_BREAKER_COOLDOWN: float = Field(default=30.0, gt=0)
    REGISTRY_BREAKER_MAX_COOLDOWN: float = Field(default=300.0, gt=0)

    # ═══════════════════════════════════════════════════════════════════
    # Logging
    # ═══════════════════════════════════════════════════════════════════
    LOG_LEVEL: str = "INFO"
    LOG_JSON: bool = False

    @field_validator("REGISTRY_API_KEY")
    @classmethod
    def api_key_not_blank(cls, v: SecretStr) -> SecretStr:
        if not v.get_secret_value().strip():
            raise ValueError("REGISTRY_API_KEY must not be blank")
        return v

    @field_validator("REGISTRY_URL")
    @classmethod
    def strip_trailing_slash(cls, v: str) -> str:
        return v.rstrip("/")

    @property
    def timeout_seconds(self) -> float:
        return self.REGISTRY_TIMEOUT_MS / 1000.0

    @property
    def backoff_base_seconds(self) -> float:
        return self.REGISTRY_BACKOFF_BASE_MS / 1000.0

    @property
    def backoff_max_seconds(self) -> float:
        return self.REGISTRY_BACKOFF_MAX_MS / 1000.0


def get_settings(**overrides) -> Settings:
    """Build a settings instance from the environment plus explicit overrides."""
    return Settings(**overrides)
