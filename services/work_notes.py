"""Read-only access to the authoritative work note store."""

from __future__ import annotations

import logging
from dataclasses import dataclass, field
from datetime import datetime
from typing import Dict, List, Optional

from database import connect

logger = logging.getLogger(__name__)


@dataclass
class WorkNote:
    work_id: str
    title: str
    content_raw: str
    category: Optional[str]
    created_at: str
    updated_at: str
    person_ids: List[str] = field(default_factory=list)
    dept_name: Optional[str] = None

    @property
    def created_at_bucket(self) -> str:
        """Creation date as YYYY-MM-DD."""
        return created_at_bucket(self.created_at)


def created_at_bucket(timestamp: str) -> str:
    value = timestamp.replace("Z", "+00:00")
    try:
        return datetime.fromisoformat(value).strftime("%Y-%m-%d")
    except ValueError:
        return timestamp[:10]


class WorkNoteRepository:
    """Reads notes with their person associations."""

    def __init__(self, db_path: Optional[str] = None) -> None:
        self.db_path = db_path

    async def find_by_id(self, work_id: str) -> Optional[WorkNote]:
        notes = await self.find_by_ids([work_id])
        return notes[0] if notes else None

    async def find_by_ids(self, work_ids: List[str]) -> List[WorkNote]:
        """Fetch notes in the order of ``work_ids``; unknown ids are skipped."""
        if not work_ids:
            return []
        placeholders = ",".join("?" for _ in work_ids)
        async with connect(self.db_path) as conn:
            async with conn.execute(
                f"SELECT * FROM work_notes WHERE work_id IN ({placeholders})", tuple(work_ids)
            ) as cursor:
                rows = await cursor.fetchall()
            persons = await self._persons_for(conn, [row["work_id"] for row in rows])

        by_id = {row["work_id"]: row for row in rows}
        notes = []
        for work_id in work_ids:
            row = by_id.get(work_id)
            if row is None:
                continue
            person_ids, dept_name = persons.get(work_id, ([], None))
            notes.append(self._row_to_note(row, person_ids, dept_name))
        return notes

    async def iter_batches(self, batch_size: int = 10, after: Optional[WorkNote] = None) -> List[WorkNote]:
        """One keyset page of notes ordered by (created_at, work_id), starting after ``after``."""
        async with connect(self.db_path) as conn:
            if after is not None:
                query = (
                    "SELECT * FROM work_notes "
                    "WHERE created_at > ? OR (created_at = ? AND work_id > ?) "
                    "ORDER BY created_at ASC, work_id ASC LIMIT ?"
                )
                params = (after.created_at, after.created_at, after.work_id, batch_size)
            else:
                query = "SELECT * FROM work_notes ORDER BY created_at ASC, work_id ASC LIMIT ?"
                params = (batch_size,)
            async with conn.execute(query, params) as cursor:
                rows = await cursor.fetchall()
            persons = await self._persons_for(conn, [row["work_id"] for row in rows])
        return [
            self._row_to_note(row, *persons.get(row["work_id"], ([], None)))
            for row in rows
        ]

    async def count(self) -> int:
        async with connect(self.db_path) as conn:
            async with conn.execute("SELECT COUNT(*) FROM work_notes") as cursor:
                row = await cursor.fetchone()
        return row[0]

    async def _persons_for(self, conn, work_ids: List[str]) -> Dict[str, tuple]:
        if not work_ids:
            return {}
        placeholders = ",".join("?" for _ in work_ids)
        async with conn.execute(
            f"""
            SELECT wnp.work_id, wnp.person_id, p.dept_name
            FROM work_note_person wnp
            LEFT JOIN persons p ON p.person_id = wnp.person_id
            WHERE wnp.work_id IN ({placeholders})
            ORDER BY wnp.work_id, wnp.person_id
            """,
            tuple(work_ids),
        ) as cursor:
            rows = await cursor.fetchall()

        result: Dict[str, tuple] = {}
        for row in rows:
            person_ids, dept_name = result.get(row["work_id"], ([], None))
            person_ids.append(row["person_id"])
            # Department of the first associated person
            result[row["work_id"]] = (person_ids, dept_name or row["dept_name"])
        return result

    @staticmethod
    def _row_to_note(row, person_ids: List[str], dept_name: Optional[str]) -> WorkNote:
        return WorkNote(
            work_id=row["work_id"],
            title=row["title"],
            content_raw=row["content_raw"] or "",
            category=row["category"],
            created_at=row["created_at"],
            updated_at=row["updated_at"],
            person_ids=list(person_ids),
            dept_name=dept_name,
        )
