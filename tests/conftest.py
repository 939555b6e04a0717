from __future__ import annotations

import os
import uuid
from collections.abc import Callable, Generator

import psycopg
import pytest

from site_knowledge_pipeline.db import PostgresConfig, connect
from site_knowledge_pipeline.memory_store import InMemoryKnowledgeStore
from site_knowledge_pipeline.migrations.runner import apply_migrations
from site_knowledge_pipeline.store import KnowledgeStore, PostgresKnowledgeStore


@pytest.fixture(scope="session")
def pg_dsn() -> str:
    dsn = os.environ.get("PG_DSN")
    if not dsn:
        pytest.skip("PG_DSN not set; skipping DB integration tests")
    return dsn


@pytest.fixture(scope="session")
def pg_schema(pg_dsn: str) -> Generator[str, None, None]:
    schema = f"test_{uuid.uuid4().hex[:10]}"
    apply_migrations(pg_dsn, schema=schema)
    yield schema
    with psycopg.connect(pg_dsn, autocommit=True) as conn:
        conn.execute(f'drop schema if exists "{schema}" cascade')


@pytest.fixture()
def conn(pg_dsn: str, pg_schema: str) -> Generator[psycopg.Connection, None, None]:
    with connect(pg_dsn, schema=pg_schema) as c:
        yield c


@pytest.fixture(params=["memory", "postgres"])
def store(request: pytest.FixtureRequest) -> KnowledgeStore:
    """Every store implementation; the Postgres one only when PG_DSN is set."""
    if request.param == "memory":
        return InMemoryKnowledgeStore()
    dsn = request.getfixturevalue("pg_dsn")
    schema = request.getfixturevalue("pg_schema")
    return PostgresKnowledgeStore(PostgresConfig(dsn=dsn, schema=schema).connection_factory())


def _pdf(lines: list[str], title: str | None = None) -> bytes:
    """Single-page PDF with one Helvetica text line per entry, offsets computed by hand."""
    ops = ["BT", "/F1 12 Tf", "72 720 Td"]
    for i, line in enumerate(lines):
        if i:
            ops.append("0 -16 Td")
        ops.append(f"({line}) Tj")
    ops.append("ET")
    content = "\n".join(ops).encode("latin-1")

    objects = [
        b"<< /Type /Catalog /Pages 2 0 R >>",
        b"<< /Type /Pages /Kids [3 0 R] /Count 1 >>",
        b"<< /Type /Page /Parent 2 0 R /MediaBox [0 0 612 792] /Contents 4 0 R"
        b" /Resources << /Font << /F1 5 0 R >> >> >>",
        b"<< /Length %d >>\nstream\n" % len(content) + content + b"\nendstream",
        b"<< /Type /Font /Subtype /Type1 /BaseFont /Helvetica >>",
    ]
    if title is not None:
        objects.append(f"<< /Title ({title}) >>".encode("latin-1"))

    out = b"%PDF-1.4\n"
    offsets = []
    for number, body in enumerate(objects, start=1):
        offsets.append(len(out))
        out += b"%d 0 obj\n" % number + body + b"\nendobj\n"
    xref = len(out)
    out += b"xref\n0 %d\n0000000000 65535 f \n" % (len(objects) + 1)
    out += b"".join(b"%010d 00000 n \n" % off for off in offsets)
    info = b" /Info %d 0 R" % len(objects) if title is not None else b""
    out += b"trailer\n<< /Size %d /Root 1 0 R%s >>\nstartxref\n%d\n%%%%EOF\n" % (len(objects) + 1, info, xref)
    return out


@pytest.fixture()
def make_pdf() -> Callable[..., bytes]:
    return _pdf
