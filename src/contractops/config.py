from __future__ import annotations
from pydantic_settings import BaseSettings, SettingsConfigDict
from pydantic import Field

class COSettings(BaseSettings):
    model_config = SettingsConfigDict(env_prefix="CO_", env_file=".env", extra="ignore")

    esignatures_api_key: str | None = Field(default=None)
    esignatures_base_url: str = Field(default="https://esignatures.com/api")
    webhook_secret: str | None = Field(default=None)
    site_url: str = Field(default="http://localhost:8000")
    default_platform: str = Field(default="esignatures")

    request_timeout_s: float = Field(default=30.0, ge=1.0, le=180.0)
    provider_deadline_s: float = Field(default=90.0, ge=1.0, le=600.0)
    max_retries: int = Field(default=3, ge=0, le=10)
    max_rps: float = Field(default=5.0, ge=0.0, le=100.0)

    milestone_limit: int = Field(default=5, ge=0, le=100)
    actor_contact_id: int | None = Field(default=None)

    otlp_endpoint: str | None = Field(default=None)
    service_name: str = Field(default="contractops")

    @property
    def webhook_url(self) -> str:
        return f"{self.site_url.rstrip('/')}/signatures/webhook"

def get_settings() -> COSettings:
    return COSettings()
