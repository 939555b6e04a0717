from __future__ import annotations

from pydantic import Field
from pydantic_settings import BaseSettings, SettingsConfigDict


class Settings(BaseSettings):
    model_config = SettingsConfigDict(env_file=".env", env_file_encoding="utf-8", extra="ignore")

    pg_dsn: str | None = Field(default=None, alias="PG_DSN")
    pg_schema: str = Field(default="public", alias="PG_SCHEMA")

    # Without NATS progress is published on an in-process broker.
    nats_url: str | None = Field(default=None, alias="NATS_URL")
    progress_subject_prefix: str = Field(default="knowledge.sources", alias="PROGRESS_SUBJECT_PREFIX")

    fetch_timeout_s: float = Field(default=20.0, gt=0, alias="FETCH_TIMEOUT_S")
    crawl_workers: int = Field(default=4, ge=1, alias="CRAWL_WORKERS")
    max_concurrent_crawls: int = Field(default=4, ge=1, alias="MAX_CONCURRENT_CRAWLS")
    max_page_limit: int = Field(default=100, ge=1, alias="MAX_PAGE_LIMIT")
    default_page_limit: int = Field(default=10, ge=1, alias="DEFAULT_PAGE_LIMIT")
    user_agent: str = Field(default="site-knowledge-pipeline/0.0", alias="USER_AGENT")

    chunk_max_tokens: int = Field(default=800, gt=0, alias="CHUNK_MAX_TOKENS")
    chunk_overlap_chars: int = Field(default=100, ge=0, alias="CHUNK_OVERLAP_CHARS")

    log_level: str = Field(default="INFO", alias="LOG_LEVEL")
    log_json: bool = Field(default=False, alias="LOG_JSON")


def load_settings() -> Settings:
    return Settings()
