"""Embedding retry queue.

Failed vector reconciliations are persisted here so they survive restarts and
are retried with exponential backoff by the retry scheduler. Items that
exhaust ``max_attempts``, or whose failure cannot succeed on retry, move to
``dead_letter`` and stay there, error intact, until an operator requeues them.

Enqueue is idempotent per (work_id, operation_type): a partial unique index
over live rows plus ``INSERT OR IGNORE`` makes the check-and-insert a single
statement, so concurrent failures for the same note converge on one row.
A failure that lands on an existing live row bumps its ``revision``; an
in-flight attempt only removes the row if the revision it started from is
still current.
"""

from __future__ import annotations

import json
import logging
import os
from dataclasses import dataclass
from datetime import datetime, timedelta, timezone
from enum import Enum
from typing import Any, Callable, Dict, List, Optional, Tuple

from config import settings
from database import connect
from services.ids import EntropySource, retry_id

logger = logging.getLogger(__name__)

Clock = Callable[[], datetime]

INTERRUPTED_ATTEMPT_MESSAGE = "Retry attempt was interrupted before it completed"


class RetryStatus(str, Enum):
    """Valid states for a retry queue item."""

    PENDING = "pending"
    RETRYING = "retrying"
    DEAD_LETTER = "dead_letter"


class OperationType(str, Enum):
    """Note mutations that trigger reconciliation."""

    CREATE = "create"
    UPDATE = "update"
    DELETE = "delete"


def backoff_delay(attempt: int, base: int = 2) -> int:
    """Seconds to wait before ``attempt``: 0 for the first, then base**attempt."""
    if attempt <= 0:
        return 0
    return base ** attempt


def utcnow() -> datetime:
    return datetime.now(timezone.utc)


def _iso(value: datetime) -> str:
    return value.astimezone(timezone.utc).isoformat()


@dataclass
class RetryQueueItem:
    """Representation of a retry queue row."""

    id: str
    work_id: str
    operation_type: str
    attempt_count: int
    max_attempts: int
    next_retry_at: Optional[str]
    status: str
    error_message: Optional[str]
    error_details: Optional[Any]
    created_at: str
    updated_at: str
    dead_letter_at: Optional[str]
    work_title: Optional[str] = None
    revision: int = 0

    def to_api(self) -> Dict[str, Any]:
        """Return a payload for admin API responses."""
        return {
            "id": self.id,
            "workId": self.work_id,
            "workTitle": self.work_title,
            "operationType": self.operation_type,
            "attemptCount": self.attempt_count,
            "maxAttempts": self.max_attempts,
            "nextRetryAt": self.next_retry_at,
            "status": self.status,
            "errorMessage": self.error_message,
            "errorDetails": self.error_details,
            "createdAt": self.created_at,
            "updatedAt": self.updated_at,
            "deadLetterAt": self.dead_letter_at,
        }


class RetryQueueStore:
    """SQLite-backed store for failed reconciliation attempts."""

    def __init__(
        self,
        db_path: Optional[str] = None,
        *,
        max_attempts: Optional[int] = None,
        backoff_base: Optional[int] = None,
        clock: Clock = utcnow,
        entropy: EntropySource = os.urandom,
    ) -> None:
        self.db_path = db_path
        self.max_attempts = max_attempts or settings.retry_max_attempts
        self.backoff_base = backoff_base or settings.retry_backoff_base
        self._clock = clock
        self._entropy = entropy

    def now(self) -> datetime:
        return self._clock()

    # ------------------------------------------------------------------
    # Public API
    # ------------------------------------------------------------------
    async def enqueue(
        self,
        work_id: str,
        operation: OperationType,
        error_message: str,
        error_details: Optional[Any] = None,
        *,
        dead_letter: bool = False,
    ) -> str:
        """Record a failed reconciliation; returns the id of the item holding it.

        With ``dead_letter=True`` the failure is stored directly in dead letter.
        """
        operation = OperationType(operation)
        if dead_letter:
            return await self._insert_dead_letter(work_id, operation, error_message, error_details)

        now = self._clock()
        next_retry_at = now + timedelta(seconds=backoff_delay(0, self.backoff_base))
        new_id = retry_id(self._entropy)

        async with connect(self.db_path) as conn:
            cur = await conn.execute(
                """
                INSERT OR IGNORE INTO embedding_retry_queue (
                    id, work_id, operation_type, attempt_count, max_attempts,
                    next_retry_at, status, error_message, error_details,
                    created_at, updated_at
                )
                VALUES (?, ?, ?, 0, ?, ?, ?, ?, ?, ?, ?)
                """,
                (
                    new_id,
                    work_id,
                    operation.value,
                    self.max_attempts,
                    _iso(next_retry_at),
                    RetryStatus.PENDING.value,
                    error_message,
                    _dump(error_details),
                    _iso(now),
                    _iso(now),
                ),
            )
            if cur.rowcount > 0:
                await conn.commit()
                logger.info(f"Queued embedding retry {new_id} for {work_id} ({operation.value})")
                return new_id

            # updated_at is left alone: for a retrying row it marks the claim
            await conn.execute(
                """
                UPDATE embedding_retry_queue
                SET revision = revision + 1, error_message = ?, error_details = ?
                WHERE work_id = ? AND operation_type = ? AND status != ?
                """,
                (
                    error_message,
                    _dump(error_details),
                    work_id,
                    operation.value,
                    RetryStatus.DEAD_LETTER.value,
                ),
            )
            async with conn.execute(
                """
                SELECT id FROM embedding_retry_queue
                WHERE work_id = ? AND operation_type = ? AND status != ?
                LIMIT 1
                """,
                (work_id, operation.value, RetryStatus.DEAD_LETTER.value),
            ) as cursor:
                row = await cursor.fetchone()
            await conn.commit()

        if row is None:
            # The live row was resolved between the insert and the update
            return await self.enqueue(work_id, operation, error_message, error_details)
        logger.debug(f"Embedding retry for {work_id} ({operation.value}) already queued as {row['id']}")
        return row["id"]

    async def get(self, item_id: str) -> Optional[RetryQueueItem]:
        async with connect(self.db_path) as conn:
            async with conn.execute(
                """
                SELECT r.*, w.title AS work_title
                FROM embedding_retry_queue r
                LEFT JOIN work_notes w ON w.work_id = r.work_id
                WHERE r.id = ?
                """,
                (item_id,),
            ) as cursor:
                row = await cursor.fetchone()
        return self._row_to_item(row) if row else None

    async def get_due_items(self, limit: int = 10, now: Optional[datetime] = None) -> List[RetryQueueItem]:
        """Pending items whose next_retry_at has passed, oldest due first."""
        now = now or self._clock()
        async with connect(self.db_path) as conn:
            async with conn.execute(
                """
                SELECT r.*, w.title AS work_title
                FROM embedding_retry_queue r
                LEFT JOIN work_notes w ON w.work_id = r.work_id
                WHERE r.status = ? AND r.next_retry_at <= ?
                ORDER BY r.next_retry_at ASC, r.created_at ASC
                LIMIT ?
                """,
                (RetryStatus.PENDING.value, _iso(now), limit),
            ) as cursor:
                rows = await cursor.fetchall()
        return [self._row_to_item(row) for row in rows]

    async def claim(self, item_id: str) -> bool:
        """Transition pending -> retrying; False if someone else got there first."""
        now = _iso(self._clock())
        async with connect(self.db_path) as conn:
            cur = await conn.execute(
                """
                UPDATE embedding_retry_queue
                SET status = ?, updated_at = ?
                WHERE id = ? AND status = ?
                """,
                (RetryStatus.RETRYING.value, now, item_id, RetryStatus.PENDING.value),
            )
            claimed = cur.rowcount > 0
            await conn.commit()
        return claimed

    async def record_failure(
        self,
        item: RetryQueueItem,
        error_message: str,
        error_details: Optional[Any] = None,
        *,
        permanent: bool = False,
    ) -> RetryStatus:
        """Apply backoff after a failed attempt, or promote to dead_letter.

        A ``permanent`` failure goes to dead letter regardless of attempts left.
        """
        attempt_count = min(item.attempt_count + 1, item.max_attempts)
        now = self._clock()

        async with connect(self.db_path) as conn:
            if permanent or attempt_count >= item.max_attempts:
                await conn.execute(
                    """
                    UPDATE embedding_retry_queue
                    SET status = ?, attempt_count = ?, next_retry_at = NULL,
                        error_message = ?, error_details = ?,
                        dead_letter_at = ?, updated_at = ?
                    WHERE id = ?
                    """,
                    (
                        RetryStatus.DEAD_LETTER.value,
                        attempt_count,
                        error_message,
                        _dump(error_details),
                        _iso(now),
                        _iso(now),
                        item.id,
                    ),
                )
                await conn.commit()
                reason = "non-retryable failure" if permanent else f"{attempt_count} attempts"
                logger.error(
                    f"Embedding retry {item.id} for {item.work_id} ({item.operation_type}) "
                    f"moved to dead letter after {reason}: {error_message}"
                )
                return RetryStatus.DEAD_LETTER

            next_retry_at = now + timedelta(seconds=backoff_delay(attempt_count, self.backoff_base))
            await conn.execute(
                """
                UPDATE embedding_retry_queue
                SET status = ?, attempt_count = ?, next_retry_at = ?,
                    error_message = ?, error_details = ?, updated_at = ?
                WHERE id = ?
                """,
                (
                    RetryStatus.PENDING.value,
                    attempt_count,
                    _iso(next_retry_at),
                    error_message,
                    _dump(error_details),
                    _iso(now),
                    item.id,
                ),
            )
            await conn.commit()
        logger.warning(
            f"Embedding retry {item.id} for {item.work_id} failed "
            f"(attempt {attempt_count}/{item.max_attempts}), next at {_iso(next_retry_at)}"
        )
        return RetryStatus.PENDING

    async def complete(self, item: RetryQueueItem) -> bool:
        """Remove an item after a successful attempt.

        If a newer failure was recorded on the row while the attempt ran, the
        row is put back to pending, due now, and False is returned.
        """
        now = _iso(self._clock())
        async with connect(self.db_path) as conn:
            cur = await conn.execute(
                "DELETE FROM embedding_retry_queue WHERE id = ? AND revision = ?",
                (item.id, item.revision),
            )
            if cur.rowcount > 0:
                await conn.commit()
                return True
            await conn.execute(
                """
                UPDATE embedding_retry_queue
                SET status = ?, attempt_count = 0, next_retry_at = ?, updated_at = ?
                WHERE id = ? AND status = ?
                """,
                (RetryStatus.PENDING.value, now, now, item.id, RetryStatus.RETRYING.value),
            )
            await conn.commit()
        logger.info(
            f"Embedding retry {item.id} for {item.work_id} superseded during its attempt; requeued"
        )
        return False

    async def delete(self, item_id: str) -> None:
        async with connect(self.db_path) as conn:
            await conn.execute("DELETE FROM embedding_retry_queue WHERE id = ?", (item_id,))
            await conn.commit()

    async def list_dead_letter(self, limit: int = 50, offset: int = 0) -> Tuple[List[RetryQueueItem], int]:
        """Dead-letter items, most recent first, with the total count."""
        async with connect(self.db_path) as conn:
            async with conn.execute(
                """
                SELECT r.*, w.title AS work_title
                FROM embedding_retry_queue r
                LEFT JOIN work_notes w ON w.work_id = r.work_id
                WHERE r.status = ?
                ORDER BY r.dead_letter_at DESC, r.id ASC
                LIMIT ? OFFSET ?
                """,
                (RetryStatus.DEAD_LETTER.value, limit, offset),
            ) as cursor:
                rows = await cursor.fetchall()
            async with conn.execute(
                "SELECT COUNT(*) FROM embedding_retry_queue WHERE status = ?",
                (RetryStatus.DEAD_LETTER.value,),
            ) as cursor:
                total = (await cursor.fetchone())[0]
        return [self._row_to_item(row) for row in rows], total

    async def count_dead_letter(self) -> int:
        _, total = await self.list_dead_letter(limit=0)
        return total

    async def reset_to_pending(self, item_id: str) -> bool:
        """Admin requeue of a dead-letter item; False if it is not dead-lettered.

        If a newer live item already exists for the same note and operation,
        the dead-letter row is folded into it (deleted) instead of revived.
        """
        now = _iso(self._clock())
        async with connect(self.db_path) as conn:
            async with conn.execute(
                "SELECT work_id, operation_type FROM embedding_retry_queue WHERE id = ? AND status = ?",
                (item_id, RetryStatus.DEAD_LETTER.value),
            ) as cursor:
                row = await cursor.fetchone()
            if row is None:
                return False

            async with conn.execute(
                """
                SELECT id FROM embedding_retry_queue
                WHERE work_id = ? AND operation_type = ? AND status != ?
                """,
                (row["work_id"], row["operation_type"], RetryStatus.DEAD_LETTER.value),
            ) as cursor:
                live = await cursor.fetchone()
            if live is not None:
                await conn.execute("DELETE FROM embedding_retry_queue WHERE id = ?", (item_id,))
                await conn.commit()
                logger.info(f"Dead-letter item {item_id} superseded by live retry {live['id']}")
                return True

            cur = await conn.execute(
                """
                UPDATE embedding_retry_queue
                SET status = ?, attempt_count = 0, next_retry_at = ?,
                    dead_letter_at = NULL, updated_at = ?
                WHERE id = ? AND status = ?
                """,
                (RetryStatus.PENDING.value, now, now, item_id, RetryStatus.DEAD_LETTER.value),
            )
            changed = cur.rowcount > 0
            await conn.commit()
        if changed:
            logger.info(f"Dead-letter item {item_id} requeued by admin")
        return changed

    async def recover_stale_claims(self, older_than_seconds: Optional[int] = None) -> int:
        """Release items left in 'retrying' by a crashed sweep.

        The interrupted attempt counts as a failure: the item returns to
        'pending' (due now) or, with no attempts left, moves to dead letter.
        """
        seconds = older_than_seconds if older_than_seconds is not None else settings.retry_stale_claim_seconds
        now = _iso(self._clock())
        cutoff = _iso(self._clock() - timedelta(seconds=seconds))
        async with connect(self.db_path) as conn:
            cur = await conn.execute(
                """
                UPDATE embedding_retry_queue
                SET attempt_count = MIN(attempt_count + 1, max_attempts),
                    status = CASE WHEN attempt_count + 1 >= max_attempts THEN ? ELSE ? END,
                    next_retry_at = CASE WHEN attempt_count + 1 >= max_attempts THEN NULL ELSE ? END,
                    dead_letter_at = CASE WHEN attempt_count + 1 >= max_attempts THEN ? ELSE NULL END,
                    error_message = ?,
                    updated_at = ?
                WHERE status = ? AND updated_at <= ?
                """,
                (
                    RetryStatus.DEAD_LETTER.value,
                    RetryStatus.PENDING.value,
                    now,
                    now,
                    INTERRUPTED_ATTEMPT_MESSAGE,
                    now,
                    RetryStatus.RETRYING.value,
                    cutoff,
                ),
            )
            recovered = cur.rowcount
            await conn.commit()
        if recovered:
            logger.warning(f"Recovered {recovered} stale embedding retry claims")
        return recovered

    async def stats(self) -> Dict[str, Any]:
        async with connect(self.db_path) as conn:
            async with conn.execute(
                "SELECT status, COUNT(*) AS n FROM embedding_retry_queue GROUP BY status"
            ) as cursor:
                counts = {row["status"]: row["n"] for row in await cursor.fetchall()}
            async with conn.execute(
                "SELECT MIN(dead_letter_at) FROM embedding_retry_queue WHERE status = ?",
                (RetryStatus.DEAD_LETTER.value,),
            ) as cursor:
                oldest = (await cursor.fetchone())[0]
        return {
            "pending": counts.get(RetryStatus.PENDING.value, 0),
            "retrying": counts.get(RetryStatus.RETRYING.value, 0),
            "deadLetter": counts.get(RetryStatus.DEAD_LETTER.value, 0),
            "oldestDeadLetterAt": oldest,
        }

    # ------------------------------------------------------------------
    # Internal helpers
    # ------------------------------------------------------------------
    async def _insert_dead_letter(
        self,
        work_id: str,
        operation: OperationType,
        error_message: str,
        error_details: Optional[Any],
    ) -> str:
        now = _iso(self._clock())
        item_id = retry_id(self._entropy)
        async with connect(self.db_path) as conn:
            await conn.execute(
                """
                INSERT INTO embedding_retry_queue (
                    id, work_id, operation_type, attempt_count, max_attempts,
                    next_retry_at, status, error_message, error_details,
                    created_at, updated_at, dead_letter_at
                )
                VALUES (?, ?, ?, 0, ?, NULL, ?, ?, ?, ?, ?, ?)
                """,
                (
                    item_id,
                    work_id,
                    operation.value,
                    self.max_attempts,
                    RetryStatus.DEAD_LETTER.value,
                    error_message,
                    _dump(error_details),
                    now,
                    now,
                    now,
                ),
            )
            await conn.commit()
        logger.error(
            f"Embedding sync for {work_id} ({operation.value}) failed with a non-retryable error; "
            f"stored as dead letter {item_id}: {error_message}"
        )
        return item_id

    def _row_to_item(self, row) -> RetryQueueItem:
        details = row["error_details"]
        if details:
            try:
                details = json.loads(details)
            except ValueError:
                pass
        keys = row.keys()
        return RetryQueueItem(
            id=row["id"],
            work_id=row["work_id"],
            operation_type=row["operation_type"],
            attempt_count=row["attempt_count"],
            max_attempts=row["max_attempts"],
            next_retry_at=row["next_retry_at"],
            status=row["status"],
            error_message=row["error_message"],
            error_details=details,
            created_at=row["created_at"],
            updated_at=row["updated_at"],
            dead_letter_at=row["dead_letter_at"],
            work_title=row["work_title"] if "work_title" in keys else None,
            revision=row["revision"],
        )


def _dump(details: Optional[Any]) -> Optional[str]:
    if details is None:
        return None
    return json.dumps(details, default=str)


_retry_queue: Optional[RetryQueueStore] = None


def get_retry_queue() -> RetryQueueStore:
    """Get global retry queue instance."""
    global _retry_queue
    if _retry_queue is None:
        _retry_queue = RetryQueueStore()
    return _retry_queue
