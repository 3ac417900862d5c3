"""Environment-driven settings for the research relay service."""

from functools import lru_cache

from pydantic import Field
from pydantic_settings import BaseSettings, SettingsConfigDict

from research_relay.sanitize import sanitize

DEFAULT_SITE_URL = "http://localhost:5173"
WEBHOOK_PATH = "/api/research/webhook"


class Settings(BaseSettings):
    # Chat completions (OpenRouter or any OpenAI-compatible endpoint)
    openrouter_api_key: str = ""
    openrouter_base_url: str = "https://openrouter.ai/api/v1"
    planner_model: str = "openrouter/auto"
    writer_model: str = "openrouter/auto"
    app_title: str = "Research Assistant"

    # Web search (Serper-compatible)
    serper_api_key: str = ""
    search_url: str = "https://google.serper.dev/search"
    search_result_count: int = 5
    max_sub_queries: int = Field(default=10, ge=1)

    # Delivery
    public_site_url: str = DEFAULT_SITE_URL
    webhook_secret: str = ""
    webhook_url: str = ""  # defaults to PUBLIC_SITE_URL + WEBHOOK_PATH when a secret is set

    # Inbound
    api_key: str = ""
    cors_origins: str = "*"

    # Result store
    redis_url: str = ""  # empty selects the in-process store
    result_ttl_seconds: int = 0  # 0 keeps records until the store evicts them

    model_config = SettingsConfigDict(env_file=".env", env_file_encoding="utf-8", extra="ignore")

    @property
    def site_url(self) -> str:
        return sanitize(self.public_site_url) or DEFAULT_SITE_URL

    @property
    def callback_url(self) -> str:
        """Where completed results are POSTed; empty disables the webhook step."""
        if self.webhook_url:
            return sanitize(self.webhook_url)
        if self.webhook_secret:
            return f"{self.site_url.rstrip('/')}{WEBHOOK_PATH}"
        return ""

    @property
    def cors_origin_list(self) -> list[str]:
        return [o.strip() for o in self.cors_origins.split(",") if o.strip()]


@lru_cache(maxsize=1)
def get_settings() -> Settings:
    """Cached settings for production; pass a Settings instance explicitly in tests."""
    return Settings()
