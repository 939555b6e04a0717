from __future__ import annotations

import hashlib
from collections.abc import Iterable
from dataclasses import dataclass
from functools import cached_property
from pathlib import Path

import psycopg
from psycopg import sql

from site_knowledge_pipeline.logging_config import get_logger

log = get_logger(__name__)


@dataclass(frozen=True)
class Migration:
    version: str
    path: Path

    @cached_property
    def sql(self) -> str:
        return self.path.read_text(encoding="utf-8")

    @property
    def checksum(self) -> str:
        return hashlib.sha256(self.sql.encode("utf-8")).hexdigest()


def discover_migrations(directory: Path | None = None) -> list[Migration]:
    directory = directory or Path(__file__).resolve().parent / "sql"
    return [Migration(version=p.stem, path=p) for p in sorted(directory.glob("*.sql"))]


def _prepare(conn: psycopg.Connection, schema: str) -> None:
    conn.execute(sql.SQL("create schema if not exists {}").format(sql.Identifier(schema)))
    conn.execute(sql.SQL("set search_path to {}").format(sql.Identifier(schema)))
    conn.execute("set timezone to 'UTC'")
    conn.execute(
        """
        create table if not exists schema_migrations (
          version text primary key,
          checksum text,
          applied_at timestamptz not null default now()
        )
        """
    )


def _applied(conn: psycopg.Connection) -> dict[str, str | None]:
    rows = conn.execute("select version, checksum from schema_migrations").fetchall()
    return {r[0]: r[1] for r in rows}


def apply_migrations(
    dsn: str,
    *,
    schema: str = "public",
    migrations: Iterable[Migration] | None = None,
) -> list[str]:
    """
    Applies pending migrations into ``schema`` and returns the versions applied.

    Each migration commits together with its ``schema_migrations`` row, so a failed
    file leaves nothing behind and is retried on the next call. Applied files whose
    contents changed since are reported, not re-run.
    """
    if migrations is None:
        migrations = discover_migrations()

    applied: list[str] = []
    with psycopg.connect(dsn, autocommit=True) as conn:
        _prepare(conn, schema)
        done = _applied(conn)

        for mig in migrations:
            if mig.version in done:
                recorded = done[mig.version]
                if recorded and recorded != mig.checksum:
                    log.warning("migration_changed_after_apply", version=mig.version, schema=schema)
                continue
            with conn.transaction():
                conn.execute(mig.sql)
                conn.execute(
                    "insert into schema_migrations(version, checksum) values (%s, %s)",
                    (mig.version, mig.checksum),
                )
            log.info("migration_applied", version=mig.version, schema=schema)
            applied.append(mig.version)

    return applied
