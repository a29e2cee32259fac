"""PDF ingestion job store.

Each upload becomes one job row that moves PENDING -> PROCESSING and then
exactly once to READY (with a draft) or ERROR (with a message). Terminal rows
are never modified again; polling only reads them.
"""

from __future__ import annotations

import json
import logging
import os
from dataclasses import dataclass
from datetime import datetime, timedelta, timezone
from enum import Enum
from typing import Any, Callable, Dict, List, Optional

from database import connect
from services.errors import JobStateError, NotFoundError, ValidationError
from services.ids import EntropySource, pdf_job_id

logger = logging.getLogger(__name__)


class JobStatus(str, Enum):
    """Valid states for an ingestion job."""

    PENDING = "PENDING"
    PROCESSING = "PROCESSING"
    READY = "READY"
    ERROR = "ERROR"

    @property
    def is_terminal(self) -> bool:
        return self in (JobStatus.READY, JobStatus.ERROR)


@dataclass
class IngestionJob:
    """Representation of a pdf_jobs row."""

    job_id: str
    source_ref: str
    status: str
    draft: Optional[Dict[str, Any]]
    references: List[Dict[str, Any]]
    error_message: Optional[str]
    metadata: Dict[str, Any]
    created_at: str
    updated_at: str

    def to_api(self) -> Dict[str, Any]:
        """Return the polling payload. ``references`` is always a list."""
        payload: Dict[str, Any] = {
            "jobId": self.job_id,
            "status": self.status,
            "references": list(self.references or []),
            "createdAt": self.created_at,
            "updatedAt": self.updated_at,
        }
        if self.draft is not None:
            payload["draft"] = self.draft
        if self.error_message is not None:
            payload["errorMessage"] = self.error_message
        return payload


class IngestionJobStore:
    """SQLite-backed store for PDF ingestion jobs."""

    def __init__(
        self,
        db_path: Optional[str] = None,
        *,
        clock: Callable[[], datetime] = lambda: datetime.now(timezone.utc),
        entropy: EntropySource = os.urandom,
    ) -> None:
        self.db_path = db_path
        self._clock = clock
        self._entropy = entropy

    def _now(self) -> str:
        return self._clock().isoformat()

    # ------------------------------------------------------------------
    # Public API
    # ------------------------------------------------------------------
    async def create(self, source_ref: str, metadata: Optional[Dict[str, Any]] = None) -> IngestionJob:
        """Insert a PENDING job and return it."""
        job_id = pdf_job_id(self._entropy)
        now = self._now()
        async with connect(self.db_path) as conn:
            await conn.execute(
                """
                INSERT INTO pdf_jobs (job_id, source_ref, status, metadata_json, created_at, updated_at)
                VALUES (?, ?, ?, ?, ?, ?)
                """,
                (job_id, source_ref, JobStatus.PENDING.value, json.dumps(metadata or {}), now, now),
            )
            await conn.commit()
        logger.info(f"Created ingestion job {job_id} for {source_ref}")
        return await self._require(job_id)

    async def get(self, job_id: str) -> Optional[IngestionJob]:
        async with connect(self.db_path) as conn:
            async with conn.execute("SELECT * FROM pdf_jobs WHERE job_id = ?", (job_id,)) as cursor:
                row = await cursor.fetchone()
        return self._row_to_job(row) if row else None

    async def mark_processing(self, job_id: str) -> IngestionJob:
        return await self._transition(
            job_id,
            JobStatus.PROCESSING,
            from_statuses=(JobStatus.PENDING,),
        )

    async def mark_ready(
        self,
        job_id: str,
        draft: Dict[str, Any],
        references: Optional[List[Dict[str, Any]]] = None,
    ) -> IngestionJob:
        if draft is None:
            raise ValidationError("A READY job requires a draft")
        return await self._transition(
            job_id,
            JobStatus.READY,
            from_statuses=(JobStatus.PENDING, JobStatus.PROCESSING),
            draft_json=json.dumps(draft),
            references_json=json.dumps(references or []),
        )

    async def mark_error(self, job_id: str, error_message: str) -> IngestionJob:
        if not error_message:
            raise ValidationError("An ERROR job requires an error message")
        return await self._transition(
            job_id,
            JobStatus.ERROR,
            from_statuses=(JobStatus.PENDING, JobStatus.PROCESSING),
            error_message=error_message,
        )

    async def delete_older_than(self, days: int) -> int:
        """Purge terminal jobs created more than ``days`` ago."""
        cutoff = (self._clock() - timedelta(days=days)).isoformat()
        async with connect(self.db_path) as conn:
            cur = await conn.execute(
                "DELETE FROM pdf_jobs WHERE created_at < ? AND status IN (?, ?)",
                (cutoff, JobStatus.READY.value, JobStatus.ERROR.value),
            )
            deleted = cur.rowcount
            await conn.commit()
        if deleted:
            logger.info(f"Purged {deleted} ingestion jobs older than {days} days")
        return deleted

    # ------------------------------------------------------------------
    # Internal helpers
    # ------------------------------------------------------------------
    async def _transition(
        self,
        job_id: str,
        status: JobStatus,
        *,
        from_statuses: tuple,
        draft_json: Optional[str] = None,
        references_json: Optional[str] = None,
        error_message: Optional[str] = None,
    ) -> IngestionJob:
        placeholders = ",".join("?" for _ in from_statuses)
        async with connect(self.db_path) as conn:
            cur = await conn.execute(
                f"""
                UPDATE pdf_jobs
                SET status = ?, draft_json = ?, references_json = ?, error_message = ?, updated_at = ?
                WHERE job_id = ? AND status IN ({placeholders})
                """,
                (
                    status.value,
                    draft_json,
                    references_json,
                    error_message,
                    self._now(),
                    job_id,
                    *[s.value for s in from_statuses],
                ),
            )
            changed = cur.rowcount > 0
            await conn.commit()

        if not changed:
            job = await self.get(job_id)
            if job is None:
                raise NotFoundError("Ingestion job", job_id)
            raise JobStateError(
                f"Ingestion job {job_id} cannot move from {job.status} to {status.value}",
                {"status": job.status},
            )
        logger.debug(f"Ingestion job {job_id} -> {status.value}")
        return await self._require(job_id)

    async def _require(self, job_id: str) -> IngestionJob:
        job = await self.get(job_id)
        if job is None:
            raise NotFoundError("Ingestion job", job_id)
        return job

    def _row_to_job(self, row) -> IngestionJob:
        return IngestionJob(
            job_id=row["job_id"],
            source_ref=row["source_ref"],
            status=row["status"],
            draft=json.loads(row["draft_json"]) if row["draft_json"] else None,
            references=json.loads(row["references_json"]) if row["references_json"] else [],
            error_message=row["error_message"],
            metadata=json.loads(row["metadata_json"]) if row["metadata_json"] else {},
            created_at=row["created_at"],
            updated_at=row["updated_at"],
        )


_job_store: Optional[IngestionJobStore] = None


def get_ingestion_job_store() -> IngestionJobStore:
    """Get global ingestion job store instance."""
    global _job_store
    if _job_store is None:
        _job_store = IngestionJobStore()
    return _job_store
