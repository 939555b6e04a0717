from __future__ import annotations

from collections.abc import Callable, Iterator
from contextlib import AbstractContextManager, contextmanager
from dataclasses import dataclass
from functools import partial
from typing import TYPE_CHECKING

import psycopg
from psycopg.conninfo import make_conninfo
from pydantic import SecretStr

if TYPE_CHECKING:
    from site_knowledge_pipeline.config import Settings

# What the Postgres store calls once per operation.
ConnectionFactory = Callable[[], AbstractContextManager[psycopg.Connection]]


@dataclass(frozen=True)
class PostgresConfig:
    dsn: str | None = None
    host: str | None = None
    port: int = 5432
    db: str | None = None
    user: str | None = None
    password: SecretStr | str | None = None
    schema: str = "public"

    @classmethod
    def from_settings(cls, settings: Settings) -> PostgresConfig:
        return cls(dsn=settings.pg_dsn, schema=settings.pg_schema)

    def build_dsn(self) -> str:
        """``dsn`` as given, else a libpq conninfo string built from the discrete fields."""
        if self.dsn:
            return self.dsn
        required = {
            "POSTGRES_HOST": self.host,
            "POSTGRES_DB": self.db,
            "POSTGRES_USER": self.user,
            "POSTGRES_PASSWORD": self.password,
        }
        missing = [name for name, value in required.items() if not value]
        if missing:
            raise ValueError(f"Missing Postgres config: {', '.join(missing)} (or set PG_DSN)")
        password = self.password.get_secret_value() if isinstance(self.password, SecretStr) else self.password
        return make_conninfo(host=self.host, port=self.port, dbname=self.db, user=self.user, password=password)

    def connection_factory(self) -> ConnectionFactory:
        return partial(connect, self.build_dsn(), schema=self.schema)


@contextmanager
def connect(dsn: str, *, schema: str = "public") -> Iterator[psycopg.Connection]:
    """
    Autocommit connection: single statements commit on their own, multi-statement
    writes are grouped with ``conn.transaction()``.
    """
    with psycopg.connect(dsn, options=f"-c search_path={schema} -c timezone=UTC", autocommit=True) as conn:
        yield conn
