from functools import lru_cache

from pydantic_settings import BaseSettings, SettingsConfigDict


class Settings(BaseSettings):
    model_config = SettingsConfigDict(env_prefix="CREDITS_", env_file=".env", extra="ignore")

    # Empty means in-memory storage.
    database_url: str = ""

    stripe_secret_key: str = ""
    stripe_webhook_secret: str = ""
    frontend_url: str = "http://localhost:5173"
    test_mode: bool = False

    currency: str = "EGP"
    lock_timeout_seconds: float = 5.0
    provider_timeout_seconds: int = 20

    log_level: str = "INFO"
    # Path prefix the app is mounted under, e.g. "/api" behind the serverless handler.
    root_path: str = ""


@lru_cache
def get_settings() -> Settings:
    return Settings()
