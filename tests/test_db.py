import pytest
from psycopg.conninfo import conninfo_to_dict
from pydantic import SecretStr

from site_knowledge_pipeline.config import Settings
from site_knowledge_pipeline.db import PostgresConfig


def test_build_dsn_accepts_plain_password_string() -> None:
    dsn = PostgresConfig(
        host="localhost",
        db="research",
        user="user",
        password="pass",
    ).build_dsn()
    assert conninfo_to_dict(dsn) == {
        "host": "localhost",
        "port": "5432",
        "dbname": "research",
        "user": "user",
        "password": "pass",
    }


def test_build_dsn_accepts_secretstr_password_with_special_characters() -> None:
    dsn = PostgresConfig(
        host="localhost",
        db="research",
        user="user",
        password=SecretStr("p@ss word'"),
    ).build_dsn()
    assert conninfo_to_dict(dsn)["password"] == "p@ss word'"


def test_build_dsn_prefers_explicit_dsn() -> None:
    cfg = PostgresConfig(dsn="postgresql://x@db/kb", host="ignored")
    assert cfg.build_dsn() == "postgresql://x@db/kb"


def test_build_dsn_reports_missing_fields() -> None:
    with pytest.raises(ValueError, match="POSTGRES_HOST, POSTGRES_DB"):
        PostgresConfig(user="u", password="p").build_dsn()


def test_from_settings_carries_schema() -> None:
    settings = Settings.model_validate({"PG_DSN": "postgresql://x@db/kb", "PG_SCHEMA": "knowledge"})
    cfg = PostgresConfig.from_settings(settings)
    assert (cfg.build_dsn(), cfg.schema) == ("postgresql://x@db/kb", "knowledge")
