from __future__ import annotations

from functools import lru_cache

from pydantic_settings import BaseSettings, SettingsConfigDict


class Settings(BaseSettings):
    host: str = "0.0.0.0"
    port: int = 3001
    log_level: str = "info"
    tm_base_url: str = "https://shop.tekmetric.com"
    upstream_timeout_seconds: float | None = None
    upstream_connect_timeout_seconds: float | None = None
    supabase_url: str = ""
    supabase_anon_key: str = ""
    supabase_token_table: str = "shop_tokens"
    credential_store_timeout_seconds: float = 10.0
    allowed_origins: str = "*"
    token_cache_ttl_seconds: float = 300.0

    model_config = SettingsConfigDict(
        env_prefix="",
        env_file=".env",
        extra="ignore",
    )

    @property
    def credential_store_configured(self) -> bool:
        return bool(self.supabase_url.strip() and self.supabase_anon_key.strip())

    @property
    def allowed_origins_list(self) -> list[str]:
        values = _split_csv(self.allowed_origins)
        return values or ["*"]


def _split_csv(value: str | None) -> list[str]:
    if not value:
        return []
    return [item.strip() for item in value.split(",") if item.strip()]


@lru_cache
def get_settings() -> Settings:
    return Settings()
