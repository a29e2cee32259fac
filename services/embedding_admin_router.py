"""
Embedding Admin Router

Operator endpoints for the embedding retry queue: inspect dead-letter items,
requeue them, trigger a sweep, and rebuild vector records on demand.
"""

import logging
from typing import Any, Dict, List, Optional

from fastapi import APIRouter, Depends, Query
from pydantic import BaseModel

from config import settings
from services.embedding_reconciler import EmbeddingReconciler, get_embedding_reconciler
from services.errors import ConflictError, NotFoundError
from services.retry_queue import RetryQueueStore, RetryStatus, get_retry_queue
from services.retry_scheduler import RetryScheduler, get_retry_scheduler

logger = logging.getLogger(__name__)

router = APIRouter(prefix="/api/admin", tags=["embedding-admin"])


class RetryItemResponse(BaseModel):
    id: str
    workId: str
    workTitle: Optional[str] = None
    operationType: str
    attemptCount: int
    maxAttempts: int
    nextRetryAt: Optional[str] = None
    status: str
    errorMessage: Optional[str] = None
    errorDetails: Optional[Any] = None
    createdAt: str
    updatedAt: str
    deadLetterAt: Optional[str] = None


class DeadLetterListResponse(BaseModel):
    items: List[RetryItemResponse]
    total: int
    limit: int
    offset: int


class RetryActionResponse(BaseModel):
    success: bool
    message: str
    item: Optional[RetryItemResponse] = None


class SweepResponse(BaseModel):
    processed: int
    succeeded: int
    retried: int
    deadLettered: int
    skipped: int
    recovered: int


class EmbeddingStatsResponse(BaseModel):
    pending: int
    retrying: int
    deadLetter: int
    oldestDeadLetterAt: Optional[str] = None


class ReindexResponse(BaseModel):
    success: bool
    workId: str
    errorMessage: Optional[str] = None


class ReindexAllResponse(BaseModel):
    total: int
    processed: int
    succeeded: int
    failed: int
    errors: List[Dict[str, str]]


@router.get("/embedding-failures", response_model=DeadLetterListResponse)
async def list_embedding_failures(
    limit: int = Query(50, ge=1, le=200),
    offset: int = Query(0, ge=0),
    retry_queue: RetryQueueStore = Depends(get_retry_queue),
):
    """List dead-letter items, most recent first."""
    items, total = await retry_queue.list_dead_letter(limit=limit, offset=offset)
    return {
        "items": [item.to_api() for item in items],
        "total": total,
        "limit": limit,
        "offset": offset,
    }


@router.get("/embedding-failures/{item_id}", response_model=RetryItemResponse)
async def get_embedding_failure(item_id: str, retry_queue: RetryQueueStore = Depends(get_retry_queue)):
    item = await retry_queue.get(item_id)
    if item is None:
        raise NotFoundError("Retry item", item_id)
    return item.to_api()


@router.post("/embedding-failures/{item_id}/retry", response_model=RetryActionResponse)
async def retry_embedding_failure(item_id: str, retry_queue: RetryQueueStore = Depends(get_retry_queue)):
    """Return a dead-letter item to pending so the next sweep picks it up."""
    item = await retry_queue.get(item_id)
    if item is None:
        raise NotFoundError("Retry item", item_id)
    if item.status != RetryStatus.DEAD_LETTER.value:
        raise ConflictError(
            f"Retry item {item_id} is {item.status}; only dead_letter items can be retried",
            {"status": item.status},
        )

    if not await retry_queue.reset_to_pending(item_id):
        raise ConflictError(f"Retry item {item_id} changed state; try again")

    refreshed = await retry_queue.get(item_id)
    return {
        "success": True,
        "message": "Item requeued for retry",
        "item": refreshed.to_api() if refreshed else None,
    }


@router.post("/embedding-retries/sweep", response_model=SweepResponse)
async def run_embedding_sweep(
    batch_size: Optional[int] = Query(None, alias="batchSize", ge=1, le=500),
    scheduler: RetryScheduler = Depends(get_retry_scheduler),
):
    result = await scheduler.run_sweep(batch_size or settings.retry_batch_size)
    return result.to_api()


@router.get("/embedding-stats", response_model=EmbeddingStatsResponse)
async def embedding_stats(retry_queue: RetryQueueStore = Depends(get_retry_queue)):
    return await retry_queue.stats()


@router.post("/reindex/{work_id}", response_model=ReindexResponse)
async def reindex_note(work_id: str, reconciler: EmbeddingReconciler = Depends(get_embedding_reconciler)):
    result = await reconciler.reindex_one(work_id)
    if not result.success:
        logger.warning(f"Manual reindex failed for note {work_id}: {result.error_message}")
    return {"success": result.success, "workId": work_id, "errorMessage": result.error_message}


@router.post("/reindex-all", response_model=ReindexAllResponse)
async def reindex_all_notes(
    batch_size: int = Query(10, alias="batchSize", ge=1, le=100),
    reconciler: EmbeddingReconciler = Depends(get_embedding_reconciler),
):
    """Re-embed every note. Per-note failures are reported in the response."""
    result = await reconciler.reindex_all(batch_size=batch_size)
    return result.to_api()
