import pytest
from pydantic import ValidationError

from site_knowledge_pipeline.config import Settings


def test_settings_parses_aliased_fields() -> None:
    settings = Settings.model_validate(
        {
            "PG_DSN": "postgresql://u:p@localhost:5432/kb",
            "NATS_URL": "nats://localhost:4222",
            "MAX_PAGE_LIMIT": "25",
            "CHUNK_OVERLAP_CHARS": "0",
            "LOG_JSON": "true",
        }
    )
    assert settings.pg_dsn == "postgresql://u:p@localhost:5432/kb"
    assert settings.nats_url == "nats://localhost:4222"
    assert settings.max_page_limit == 25
    assert settings.chunk_overlap_chars == 0
    assert settings.log_json is True


def test_settings_defaults() -> None:
    settings = Settings.model_validate({})
    assert settings.chunk_max_tokens == 800
    assert settings.chunk_overlap_chars == 100
    assert settings.progress_subject_prefix == "knowledge.sources"


def test_settings_rejects_non_positive_limits() -> None:
    with pytest.raises(ValidationError):
        Settings.model_validate({"CRAWL_WORKERS": "0"})
