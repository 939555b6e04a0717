from __future__ import annotations

from typing import Any

import psycopg

from site_knowledge_pipeline.models import CrawlMode, KnowledgeSource, SourceStatus

_COLUMNS = """
  id::text, agent_id, url, mode, page_limit, run_id::text,
  status, pages_found, pages_processed, error_message, title,
  created_at, updated_at, version
"""


def _row_to_source(row: tuple[Any, ...]) -> KnowledgeSource:
    return KnowledgeSource(
        source_id=row[0],
        agent_id=row[1],
        url=row[2],
        mode=CrawlMode(row[3]),
        page_limit=row[4],
        run_id=row[5],
        status=SourceStatus(row[6]),
        pages_found=row[7],
        pages_processed=row[8],
        error_message=row[9],
        title=row[10],
        created_at=row[11],
        updated_at=row[12],
        version=row[13],
    )


class SourceRepository:
    def __init__(self, conn: psycopg.Connection):
        self._conn = conn

    def insert(self, source: KnowledgeSource) -> KnowledgeSource:
        row = self._conn.execute(
            f"""
            insert into knowledge_sources (
              id, agent_id, url, mode, page_limit, run_id,
              status, pages_found, pages_processed, error_message, title
            ) values (
              %s::uuid, %s, %s, %s, %s, %s::uuid,
              %s, %s, %s, %s, %s
            )
            returning {_COLUMNS}
            """,
            (
                source.source_id,
                source.agent_id,
                source.url,
                str(source.mode),
                source.page_limit,
                source.run_id,
                str(source.status),
                source.pages_found,
                source.pages_processed,
                source.error_message,
                source.title,
            ),
        ).fetchone()
        return _row_to_source(row)

    def get(self, source_id: str) -> KnowledgeSource | None:
        row = self._conn.execute(
            f"select {_COLUMNS} from knowledge_sources where id=%s::uuid",
            (source_id,),
        ).fetchone()
        return _row_to_source(row) if row else None

    def lock(self, source_id: str, run_id: str | None = None) -> KnowledgeSource | None:
        """
        Row-locks the source for the rest of the current transaction.

        With ``run_id`` the row is only returned while that run still owns it.
        """
        if run_id is None:
            row = self._conn.execute(
                f"select {_COLUMNS} from knowledge_sources where id=%s::uuid for update",
                (source_id,),
            ).fetchone()
        else:
            row = self._conn.execute(
                f"""
                select {_COLUMNS} from knowledge_sources
                where id=%s::uuid and run_id=%s::uuid
                for update
                """,
                (source_id, run_id),
            ).fetchone()
        return _row_to_source(row) if row else None

    def list_for_agent(self, agent_id: str) -> list[KnowledgeSource]:
        rows = self._conn.execute(
            f"""
            select {_COLUMNS} from knowledge_sources
            where agent_id=%s
            order by created_at desc, id
            """,
            (agent_id,),
        ).fetchall()
        return [_row_to_source(r) for r in rows]

    def update_state(
        self,
        source_id: str,
        *,
        status: SourceStatus,
        error_message: str | None = None,
        pages_found: int | None = None,
        pages_processed: int | None = None,
    ) -> KnowledgeSource:
        row = self._conn.execute(
            f"""
            update knowledge_sources
            set status=%s,
                error_message=%s,
                pages_found=coalesce(%s, pages_found),
                pages_processed=coalesce(%s, pages_processed),
                updated_at=now(), version=version + 1
            where id=%s::uuid
            returning {_COLUMNS}
            """,
            (str(status), error_message, pages_found, pages_processed, source_id),
        ).fetchone()
        return _row_to_source(row)

    def set_title(self, source_id: str, title: str | None) -> KnowledgeSource:
        row = self._conn.execute(
            f"""
            update knowledge_sources
            set title=coalesce(%s, title), updated_at=now(), version=version + 1
            where id=%s::uuid
            returning {_COLUMNS}
            """,
            (title, source_id),
        ).fetchone()
        return _row_to_source(row)

    def increment_found(self, source_id: str) -> KnowledgeSource:
        row = self._conn.execute(
            f"""
            update knowledge_sources
            set pages_found=pages_found + 1, updated_at=now(), version=version + 1
            where id=%s::uuid
            returning {_COLUMNS}
            """,
            (source_id,),
        ).fetchone()
        return _row_to_source(row)

    def increment_processed(self, source_id: str) -> KnowledgeSource:
        row = self._conn.execute(
            f"""
            update knowledge_sources
            set pages_processed=least(pages_processed + 1, pages_found),
                updated_at=now(), version=version + 1
            where id=%s::uuid
            returning {_COLUMNS}
            """,
            (source_id,),
        ).fetchone()
        return _row_to_source(row)

    def reset(self, source_id: str, *, run_id: str) -> KnowledgeSource:
        row = self._conn.execute(
            f"""
            update knowledge_sources
            set status='pending', pages_found=0, pages_processed=0,
                error_message=null, run_id=%s::uuid, updated_at=now(), version=version + 1
            where id=%s::uuid
            returning {_COLUMNS}
            """,
            (run_id, source_id),
        ).fetchone()
        return _row_to_source(row)

    def delete(self, source_id: str) -> bool:
        cur = self._conn.execute("delete from knowledge_sources where id=%s::uuid", (source_id,))
        return cur.rowcount > 0

    def count_by_status(self, agent_id: str) -> dict[str, int]:
        rows = self._conn.execute(
            """
            select status, count(*)
            from knowledge_sources
            where agent_id=%s
            group by status
            order by status
            """,
            (agent_id,),
        ).fetchall()
        return {r[0]: r[1] for r in rows}
