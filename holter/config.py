from functools import lru_cache

from pydantic import Field
from pydantic_settings import BaseSettings, SettingsConfigDict


class Settings(BaseSettings):
    model_config = SettingsConfigDict(env_file=".env", env_file_encoding="utf-8", extra="ignore")

    listen_address: str = Field(default="127.0.0.1:9090", alias="HOLTER_LISTEN_ADDRESS")
    database_url: str | None = Field(default=None, alias="HOLTER_DATABASE_URL")
    probe_timeout_seconds: float = Field(default=5.0, gt=0, alias="HOLTER_PROBE_TIMEOUT_SECONDS")
    log_level: str = Field(default="INFO", alias="HOLTER_LOG_LEVEL")


@lru_cache(maxsize=1)
def get_settings() -> Settings:
    return Settings()
