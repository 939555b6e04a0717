from __future__ import annotations

import json
from typing import Iterable

import psycopg

from site_knowledge_pipeline.models import KnowledgeChunk, OriginType


class ChunkRepository:
    def __init__(self, conn: psycopg.Connection):
        self._conn = conn

    def replace_chunks(
        self,
        *,
        origin_id: str,
        origin_type: OriginType,
        chunks: Iterable[KnowledgeChunk],
    ) -> int:
        """
        Replace-all semantics for one origin's chunk set, in a single transaction.
        """
        written = 0
        with self._conn.transaction():
            self._conn.execute(
                "delete from knowledge_chunks where origin_id=%s and origin_type=%s",
                (origin_id, str(origin_type)),
            )
            for c in chunks:
                self._conn.execute(
                    """
                    insert into knowledge_chunks (
                      origin_id, origin_type, agent_id, chunk_index,
                      chunk_text, token_count, metadata_json
                    ) values (
                      %s, %s, %s, %s,
                      %s, %s, %s::jsonb
                    )
                    """,
                    (
                        c.origin_id,
                        str(c.origin_type),
                        c.agent_id,
                        c.chunk_index,
                        c.chunk_text,
                        c.token_count,
                        json.dumps(c.metadata),
                    ),
                )
                written += 1
        return written

    def list_chunks(self, *, origin_id: str, origin_type: OriginType) -> list[KnowledgeChunk]:
        rows = self._conn.execute(
            """
            select origin_id, origin_type, chunk_index, chunk_text, token_count,
                   agent_id, metadata_json, created_at
            from knowledge_chunks
            where origin_id=%s and origin_type=%s
            order by chunk_index
            """,
            (origin_id, str(origin_type)),
        ).fetchall()
        return [
            KnowledgeChunk(
                origin_id=r[0],
                origin_type=OriginType(r[1]),
                chunk_index=r[2],
                chunk_text=r[3],
                token_count=r[4],
                agent_id=r[5],
                metadata=r[6] or {},
                created_at=r[7],
            )
            for r in rows
        ]

    def delete_for_source(self, source_id: str) -> int:
        """Deletes the source-level chunks and the chunks of every page discovered for it."""
        cur = self._conn.execute(
            """
            delete from knowledge_chunks
            where (origin_type='source' and origin_id=%s)
               or (
                 origin_type='page'
                 and origin_id in (
                   select id::text from discovered_pages where source_id=%s::uuid
                 )
               )
            """,
            (source_id, source_id),
        )
        return cur.rowcount

    def totals_for_agent(self, agent_id: str) -> tuple[int, int]:
        row = self._conn.execute(
            """
            select count(*), coalesce(sum(token_count), 0)
            from knowledge_chunks
            where agent_id=%s
            """,
            (agent_id,),
        ).fetchone()
        return (int(row[0]), int(row[1])) if row else (0, 0)
