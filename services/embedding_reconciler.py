"""
Embedding reconciler.

Keeps the derived vector record of a work note in step with the note itself.
Each call recomputes the record wholesale from the current note state (or
deletes it) and reports the outcome instead of raising, so callers can hand
failures to the retry queue.
"""

from __future__ import annotations

import logging
from dataclasses import dataclass, field
from typing import Any, Dict, List, Optional

from services.embeddings import Embeddings, get_embeddings
from services.errors import NotFoundError, describe_error
from services.retry_queue import OperationType
from services.vector_index import VectorIndex, build_note_metadata, get_vector_index
from services.work_notes import WorkNote, WorkNoteRepository

logger = logging.getLogger(__name__)


@dataclass
class ReconcileResult:
    success: bool
    error_message: Optional[str] = None
    error_details: Optional[Dict[str, Any]] = None

    @property
    def transient(self) -> bool:
        """Whether retrying the same reconciliation can succeed."""
        return (self.error_details or {}).get("transient", True) is not False

    @classmethod
    def ok(cls) -> "ReconcileResult":
        return cls(success=True)

    @classmethod
    def failed(cls, exc: BaseException) -> "ReconcileResult":
        return cls(success=False, error_message=str(exc) or type(exc).__name__, error_details=describe_error(exc))


@dataclass
class ReindexResult:
    total: int = 0
    processed: int = 0
    succeeded: int = 0
    failed: int = 0
    errors: List[Dict[str, str]] = field(default_factory=list)

    def to_api(self) -> Dict[str, Any]:
        return {
            "total": self.total,
            "processed": self.processed,
            "succeeded": self.succeeded,
            "failed": self.failed,
            "errors": self.errors,
        }


def embedding_text(title: str, content: str) -> str:
    return f"{title}\n\n{content}"


class EmbeddingReconciler:
    """Pushes note state into the vector index."""

    def __init__(
        self,
        vector_index: Optional[VectorIndex] = None,
        notes: Optional[WorkNoteRepository] = None,
        embeddings: Optional[Embeddings] = None,
    ):
        self.embeddings = embeddings or get_embeddings()
        self.vector_index = vector_index or get_vector_index()
        self.notes = notes or WorkNoteRepository()

    async def upsert_note(
        self,
        work_id: str,
        title: str,
        content: str,
        person_ids: List[str],
        category: Optional[str],
        created_at_bucket: str,
        dept_name: Optional[str] = None,
    ) -> ReconcileResult:
        """Embed the note text and replace its vector record."""
        try:
            vector = await self.embeddings.embed(embedding_text(title, content))
            metadata = build_note_metadata(work_id, person_ids, category, created_at_bucket, dept_name)
            await self.vector_index.upsert(work_id, vector, metadata)
        except Exception as e:
            logger.warning(f"Vector upsert failed for note {work_id}: {e}")
            return ReconcileResult.failed(e)
        return ReconcileResult.ok()

    async def delete_note(self, work_id: str) -> ReconcileResult:
        try:
            await self.vector_index.delete(work_id)
        except Exception as e:
            logger.warning(f"Vector delete failed for note {work_id}: {e}")
            return ReconcileResult.failed(e)
        return ReconcileResult.ok()

    async def sync_note(self, note: WorkNote) -> ReconcileResult:
        return await self.upsert_note(
            note.work_id,
            note.title,
            note.content_raw,
            note.person_ids,
            note.category,
            note.created_at_bucket,
            note.dept_name,
        )

    async def reconcile(self, work_id: str, operation: OperationType) -> ReconcileResult:
        """Bring the vector record for ``work_id`` in line with the note store.

        A create/update whose note has since been deleted reconciles as a delete.
        """
        operation = OperationType(operation)
        if operation is OperationType.DELETE:
            return await self.delete_note(work_id)

        try:
            note = await self.notes.find_by_id(work_id)
        except Exception as e:
            logger.warning(f"Could not load note {work_id} for reconciliation: {e}")
            return ReconcileResult.failed(e)

        if note is None:
            logger.info(f"Note {work_id} no longer exists; removing its vector record")
            return await self.delete_note(work_id)
        return await self.sync_note(note)

    async def reindex_one(self, work_id: str) -> ReconcileResult:
        note = await self.notes.find_by_id(work_id)
        if note is None:
            raise NotFoundError("Work note", work_id)
        return await self.sync_note(note)

    async def reindex_all(self, batch_size: int = 10) -> ReindexResult:
        """Re-embed every note, page by page. Failures are reported, not queued."""
        result = ReindexResult(total=await self.notes.count())
        last: Optional[WorkNote] = None

        while True:
            batch = await self.notes.iter_batches(batch_size=batch_size, after=last)
            if not batch:
                break
            for note in batch:
                outcome = await self.sync_note(note)
                result.processed += 1
                if outcome.success:
                    result.succeeded += 1
                else:
                    result.failed += 1
                    result.errors.append({"workId": note.work_id, "error": outcome.error_message or ""})
            last = batch[-1]

        logger.info(
            f"Reindex complete: {result.succeeded}/{result.processed} succeeded, {result.failed} failed"
        )
        return result


_reconciler: Optional[EmbeddingReconciler] = None


def get_embedding_reconciler() -> EmbeddingReconciler:
    """Get global reconciler instance."""
    global _reconciler
    if _reconciler is None:
        _reconciler = EmbeddingReconciler()
    return _reconciler
