"""
Retry sweep for failed embedding reconciliations.

There is no loop here: each call to ``run_sweep`` processes one batch of due
items and returns. It is driven externally, by the admin endpoint or by
``scripts/run_retry_sweep.py`` from cron.
"""

from __future__ import annotations

import logging
from dataclasses import asdict, dataclass
from datetime import datetime, timedelta
from typing import Any, Dict, Optional

from config import settings
from services.embedding_reconciler import EmbeddingReconciler, ReconcileResult, get_embedding_reconciler
from services.retry_queue import RetryQueueItem, RetryQueueStore, RetryStatus, get_retry_queue

logger = logging.getLogger(__name__)


@dataclass
class SweepResult:
    processed: int = 0
    succeeded: int = 0
    retried: int = 0
    dead_lettered: int = 0
    skipped: int = 0
    recovered: int = 0

    def to_api(self) -> Dict[str, Any]:
        data = asdict(self)
        data["deadLettered"] = data.pop("dead_lettered")
        return data


class RetryScheduler:
    def __init__(
        self,
        retry_queue: Optional[RetryQueueStore] = None,
        reconciler: Optional[EmbeddingReconciler] = None,
    ):
        self.retry_queue = retry_queue or get_retry_queue()
        self.reconciler = reconciler or get_embedding_reconciler()

    async def run_sweep(self, batch_size: Optional[int] = None) -> SweepResult:
        """Process up to ``batch_size`` due items, each independently of the others."""
        batch_size = batch_size or settings.retry_batch_size
        result = SweepResult()

        result.recovered = await self.retry_queue.recover_stale_claims()
        items = await self.retry_queue.get_due_items(limit=batch_size)
        logger.info(f"Embedding retry sweep: {len(items)} due item(s)")

        for item in items:
            try:
                await self._process(item, result)
            except Exception:
                # Store failure for this item; it stays claimed until stale recovery
                logger.exception(f"Embedding retry sweep failed on item {item.id}")
                result.skipped += 1

        await self._warn_stale_dead_letters()
        logger.info(
            f"Embedding retry sweep done: processed={result.processed} succeeded={result.succeeded} "
            f"retried={result.retried} dead_lettered={result.dead_lettered} skipped={result.skipped}"
        )
        return result

    async def _process(self, item: RetryQueueItem, result: SweepResult) -> None:
        if not await self.retry_queue.claim(item.id):
            logger.debug(f"Retry item {item.id} already claimed; skipping")
            result.skipped += 1
            return

        result.processed += 1
        try:
            outcome = await self.reconciler.reconcile(item.work_id, item.operation_type)
        except Exception as e:
            logger.exception(f"Unexpected error retrying note {item.work_id}")
            outcome = ReconcileResult.failed(e)

        if outcome.success:
            result.succeeded += 1
            if await self.retry_queue.complete(item):
                logger.info(f"Embedding retry {item.id} for note {item.work_id} succeeded")
            return

        status = await self.retry_queue.record_failure(
            item,
            outcome.error_message or "Unknown error",
            outcome.error_details,
            permanent=not outcome.transient,
        )
        if status is RetryStatus.DEAD_LETTER:
            result.dead_lettered += 1
        else:
            result.retried += 1

    async def _warn_stale_dead_letters(self) -> None:
        stats = await self.retry_queue.stats()
        oldest = stats.get("oldestDeadLetterAt")
        if not oldest:
            return
        threshold = timedelta(hours=settings.dead_letter_stale_after_hours)
        age = self.retry_queue.now() - datetime.fromisoformat(oldest)
        if age >= threshold:
            logger.warning(
                f"{stats['deadLetter']} embedding retry item(s) in dead letter; "
                f"oldest since {oldest}, needs manual retry"
            )


_scheduler: Optional[RetryScheduler] = None


def get_retry_scheduler() -> RetryScheduler:
    """Get global retry scheduler instance."""
    global _scheduler
    if _scheduler is None:
        _scheduler = RetryScheduler()
    return _scheduler
