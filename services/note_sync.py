"""
Hooks called after a work note is created, updated or deleted.

The note mutation has already been committed when these run. A failed
reconciliation is logged and handed to the retry queue (straight to dead
letter when retrying cannot help); it never propagates back to the request
that changed the note.
"""

from __future__ import annotations

import logging
from typing import Optional

from fastapi import BackgroundTasks

from services.embedding_reconciler import EmbeddingReconciler, ReconcileResult, get_embedding_reconciler
from services.retry_queue import OperationType, RetryQueueStore, get_retry_queue

logger = logging.getLogger(__name__)


class NoteSyncService:
    def __init__(
        self,
        reconciler: Optional[EmbeddingReconciler] = None,
        retry_queue: Optional[RetryQueueStore] = None,
    ):
        self.reconciler = reconciler or get_embedding_reconciler()
        self.retry_queue = retry_queue or get_retry_queue()

    async def after_create(self, work_id: str) -> bool:
        return await self._sync(work_id, OperationType.CREATE)

    async def after_update(self, work_id: str) -> bool:
        return await self._sync(work_id, OperationType.UPDATE)

    async def after_delete(self, work_id: str) -> bool:
        return await self._sync(work_id, OperationType.DELETE)

    async def _sync(self, work_id: str, operation: OperationType) -> bool:
        """Reconcile once; enqueue a retry on failure. Returns True if the index is in sync."""
        try:
            result = await self.reconciler.reconcile(work_id, operation)
        except Exception as e:
            logger.exception(f"Unexpected error reconciling note {work_id} ({operation.value})")
            result = ReconcileResult.failed(e)

        if result.success:
            return True

        logger.warning(
            f"Embedding sync failed for note {work_id} ({operation.value}): {result.error_message}"
        )
        try:
            await self.retry_queue.enqueue(
                work_id,
                operation,
                result.error_message or "Unknown error",
                result.error_details,
                dead_letter=not result.transient,
            )
        except Exception:
            # Nothing left to hand the failure to; the note itself is already saved
            logger.exception(f"Could not enqueue embedding retry for note {work_id} ({operation.value})")
        return False

    def dispatch(self, background_tasks: BackgroundTasks, work_id: str, operation: OperationType) -> None:
        """Schedule reconciliation to run after the response is sent."""
        operation = OperationType(operation)
        hooks = {
            OperationType.CREATE: self.after_create,
            OperationType.UPDATE: self.after_update,
            OperationType.DELETE: self.after_delete,
        }
        background_tasks.add_task(hooks[operation], work_id)
        logger.debug(f"Dispatched embedding sync for note {work_id} ({operation.value})")


_note_sync: Optional[NoteSyncService] = None


def get_note_sync_service() -> NoteSyncService:
    """Get global note sync service instance."""
    global _note_sync
    if _note_sync is None:
        _note_sync = NoteSyncService()
    return _note_sync
