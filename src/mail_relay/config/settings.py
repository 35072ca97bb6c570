"""Application settings."""

from functools import lru_cache
import os
from pathlib import Path

from pydantic import Field
from pydantic_settings import BaseSettings, SettingsConfigDict

PROJECT_ROOT = Path(__file__).resolve().parents[3]


class Settings(BaseSettings):
    """Runtime settings loaded from environment variables."""

    app_name: str = "mail-relay"
    app_env: str = "dev"
    database_url: str = ""

    # Outbound identity.
    from_domain: str = "relay.local"
    relay_address: str = "relay@relay.local"
    subject_tag: str = "[Relay]"
    signup_url: str = "https://relay.local/register"

    sendgrid_api_key: str = ""
    sendgrid_base_url: str = "https://api.sendgrid.com/v3"

    # Task-execution backend.
    backend_api_base: str = "https://api.manus.ai/v1"
    backend_api_key: str = ""
    backend_agent_profile: str = ""
    backend_mail_domain: str = "manus.bot"

    webhook_key_ttl_s: float = Field(default=3600.0, gt=0)
    webhook_tolerance_s: int = Field(default=300, ge=1)
    webhook_public_url: str = ""

    http_timeout_s: float = Field(default=15.0, ge=0.5)
    http_max_retries: int = Field(default=1, ge=0)
    http_backoff_s: float = Field(default=0.2, ge=0.0)

    model_config = SettingsConfigDict(
        env_prefix="MAIL_RELAY_",
        extra="ignore",
        env_file=(PROJECT_ROOT / ".env", PROJECT_ROOT / ".env.local"),
        env_file_encoding="utf-8",
    )

    def resolved_database_url(self) -> str:
        return self.database_url or os.getenv("DATABASE_URL", "")

    def noreply_address(self) -> str:
        return f"noreply@{self.from_domain}"

    def workflow_address(self, workflow: str) -> str:
        return f"{workflow}@{self.from_domain}"


@lru_cache(maxsize=1)
def get_settings() -> Settings:
    return Settings()
