from __future__ import annotations

from typing import Any

import psycopg

from site_knowledge_pipeline.models import DiscoveredPage, PageStatus

_COLUMNS = """
  id::text, source_id::text, url, title, status, error_message,
  created_at, updated_at, version
"""


def _row_to_page(row: tuple[Any, ...]) -> DiscoveredPage:
    return DiscoveredPage(
        page_id=row[0],
        source_id=row[1],
        url=row[2],
        title=row[3],
        status=PageStatus(row[4]),
        error_message=row[5],
        created_at=row[6],
        updated_at=row[7],
        version=row[8],
    )


class PageRepository:
    def __init__(self, conn: psycopg.Connection):
        self._conn = conn

    def insert(self, page: DiscoveredPage) -> DiscoveredPage | None:
        """Returns None when the url is already recorded for the source."""
        row = self._conn.execute(
            f"""
            insert into discovered_pages (id, source_id, url, title, status)
            values (%s::uuid, %s::uuid, %s, %s, %s)
            on conflict (source_id, url) do nothing
            returning {_COLUMNS}
            """,
            (page.page_id, page.source_id, page.url, page.title, str(page.status)),
        ).fetchone()
        return _row_to_page(row) if row else None

    def get(self, page_id: str) -> DiscoveredPage | None:
        row = self._conn.execute(
            f"select {_COLUMNS} from discovered_pages where id=%s::uuid",
            (page_id,),
        ).fetchone()
        return _row_to_page(row) if row else None

    def start(self, page_id: str) -> DiscoveredPage | None:
        row = self._conn.execute(
            f"""
            update discovered_pages
            set status='processing', updated_at=now(), version=version + 1
            where id=%s::uuid and status='pending'
            returning {_COLUMNS}
            """,
            (page_id,),
        ).fetchone()
        return _row_to_page(row) if row else None

    def finish(
        self,
        page_id: str,
        *,
        status: PageStatus,
        title: str | None = None,
        error_message: str | None = None,
    ) -> DiscoveredPage | None:
        """Moves a non-terminal page to ``status``; None if it was already terminal."""
        row = self._conn.execute(
            f"""
            update discovered_pages
            set status=%s, title=coalesce(%s, title), error_message=%s,
                updated_at=now(), version=version + 1
            where id=%s::uuid and status in ('pending', 'processing')
            returning {_COLUMNS}
            """,
            (str(status), title, error_message, page_id),
        ).fetchone()
        return _row_to_page(row) if row else None

    def list_for_source(self, source_id: str) -> list[DiscoveredPage]:
        rows = self._conn.execute(
            f"""
            select {_COLUMNS} from discovered_pages
            where source_id=%s::uuid
            order by created_at, url
            """,
            (source_id,),
        ).fetchall()
        return [_row_to_page(r) for r in rows]

    def delete_for_source(self, source_id: str) -> int:
        cur = self._conn.execute("delete from discovered_pages where source_id=%s::uuid", (source_id,))
        return cur.rowcount

    def count_failed_for_agent(self, agent_id: str) -> int:
        row = self._conn.execute(
            """
            select count(*)
            from discovered_pages p
            join knowledge_sources s on s.id = p.source_id
            where s.agent_id=%s and p.status='failed'
            """,
            (agent_id,),
        ).fetchone()
        return int(row[0]) if row else 0
