
from functools import lru_cache

from pydantic_settings import BaseSettings, SettingsConfigDict
from pydantic import Field, field_validator

# Common Config for all settings classes to pick up .env
settings_config = SettingsConfigDict(
    env_file=".env",
    env_file_encoding="utf-8",
    extra="ignore"
)

class LMSSettings(BaseSettings):
    domain: str = Field(..., alias="LMS_DOMAIN")
    client_id: str = Field(..., alias="LMS_CLIENT_ID")
    client_secret: str = Field(..., alias="LMS_CLIENT_SECRET")
    username: str = Field(..., alias="LMS_USERNAME")
    password: str = Field(..., alias="LMS_PASSWORD")
    scope: str = Field("api", alias="LMS_SCOPE")
    use_https: bool = Field(True, alias="LMS_USE_HTTPS")

    model_config = settings_config

    @field_validator("domain", "client_id", "client_secret", "username", "password")
    @classmethod
    def _not_blank(cls, value: str) -> str:
        value = value.strip()
        if not value:
            raise ValueError("must be a non-empty string")
        return value

    @property
    def base_url(self) -> str:
        if "://" in self.domain:
            return self.domain.rstrip("/")
        scheme = "https" if self.use_https else "http"
        return f"{scheme}://{self.domain.rstrip('/')}"

class GatewaySettings(BaseSettings):
    request_timeout: float = Field(30.0, alias="LMS_REQUEST_TIMEOUT")
    max_retries: int = Field(2, alias="LMS_MAX_RETRIES", ge=0)
    retry_backoff: float = Field(0.5, alias="LMS_RETRY_BACKOFF", ge=0)
    token_ttl_fallback: int = Field(3600, alias="LMS_TOKEN_TTL_FALLBACK", gt=0)

    model_config = settings_config

class BulkSettings(BaseSettings):
    batch_size: int = Field(3, alias="BULK_BATCH_SIZE", gt=0)
    batch_pause: float = Field(0.5, alias="BULK_BATCH_PAUSE", ge=0)
    allow_ambiguous_target: bool = Field(False, alias="BULK_ALLOW_AMBIGUOUS_TARGET")
    resolver_page_size: int = Field(50, alias="RESOLVER_PAGE_SIZE", ge=50)
    resolver_allow_fallback: bool = Field(True, alias="RESOLVER_ALLOW_FALLBACK")

    model_config = settings_config

class AppSettings(BaseSettings):
    env: str = Field("development", alias="APP_ENV")
    log_level: str = Field("INFO", alias="LOG_LEVEL")

    # Credentials load separately through get_lms_settings()
    gateway: GatewaySettings = Field(default_factory=GatewaySettings)
    bulk: BulkSettings = Field(default_factory=BulkSettings)

    model_config = settings_config

@lru_cache(maxsize=1)
def get_lms_settings() -> LMSSettings:
    """
    Load platform credentials. Raises pydantic.ValidationError when any
    required value is missing or blank, which aborts application startup.
    """
    return LMSSettings()

settings = AppSettings()
