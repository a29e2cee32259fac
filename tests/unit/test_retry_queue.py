"""Tests for the embedding retry queue store."""

import asyncio
import sqlite3
from datetime import datetime, timedelta

import pytest

from services.retry_queue import (
    INTERRUPTED_ATTEMPT_MESSAGE,
    OperationType,
    RetryQueueStore,
    RetryStatus,
    backoff_delay,
)


@pytest.fixture()
def store(db_path, clock):
    return RetryQueueStore(db_path, max_attempts=3, backoff_base=2, clock=clock)


def _parse(ts):
    return datetime.fromisoformat(ts)


def _live_rows(db_path, work_id, operation):
    conn = sqlite3.connect(db_path)
    count = conn.execute(
        "SELECT COUNT(*) FROM embedding_retry_queue "
        "WHERE work_id = ? AND operation_type = ? AND status != 'dead_letter'",
        (work_id, operation),
    ).fetchone()[0]
    conn.close()
    return count


async def _fail(store, item_id, message="index unavailable"):
    item = await store.get(item_id)
    assert await store.claim(item_id)
    return await store.record_failure(item, message, {"type": "VectorIndexError", "transient": True})


def test_backoff_delays_for_first_attempts():
    assert [backoff_delay(n) for n in range(4)] == [0, 2, 4, 8]
    delays = [backoff_delay(n) for n in range(10)]
    assert delays == sorted(delays)


def test_backoff_uses_configured_base():
    assert backoff_delay(0, base=3) == 0
    assert backoff_delay(2, base=3) == 9


async def test_enqueue_creates_pending_item_due_now(store, clock):
    item_id = await store.enqueue("WORK-1", OperationType.CREATE, "timeout", {"transient": True})

    assert item_id.startswith("RETRY-")
    item = await store.get(item_id)
    assert item.status == RetryStatus.PENDING.value
    assert item.attempt_count == 0
    assert item.max_attempts == 3
    assert item.error_message == "timeout"
    assert item.error_details == {"transient": True}
    assert _parse(item.next_retry_at) == clock()

    due = await store.get_due_items(limit=10)
    assert [d.id for d in due] == [item_id]


async def test_enqueue_is_idempotent_per_note_and_operation(store, db_path):
    first = await store.enqueue("WORK-1", OperationType.UPDATE, "boom")
    second = await store.enqueue("WORK-1", OperationType.UPDATE, "boom again")
    other_op = await store.enqueue("WORK-1", OperationType.DELETE, "boom")

    assert first == second
    assert other_op != first
    assert _live_rows(db_path, "WORK-1", "update") == 1


async def test_enqueue_after_dead_letter_creates_new_item(store, clock, db_path):
    first = await store.enqueue("WORK-1", OperationType.UPDATE, "boom")
    for delay in (0, 2, 4):
        clock.advance(delay)
        await _fail(store, first)
    assert (await store.get(first)).status == RetryStatus.DEAD_LETTER.value

    second = await store.enqueue("WORK-1", OperationType.UPDATE, "boom")
    assert second != first
    assert _live_rows(db_path, "WORK-1", "update") == 1


async def test_failures_follow_backoff_then_dead_letter(store, clock):
    item_id = await store.enqueue("WORK-1", OperationType.CREATE, "first failure")

    status = await _fail(store, item_id)
    item = await store.get(item_id)
    assert status is RetryStatus.PENDING
    assert item.attempt_count == 1
    assert _parse(item.next_retry_at) == clock() + timedelta(seconds=2)
    assert await store.get_due_items() == []

    clock.advance(2)
    assert [d.id for d in await store.get_due_items()] == [item_id]
    await _fail(store, item_id)
    item = await store.get(item_id)
    assert item.attempt_count == 2
    assert _parse(item.next_retry_at) == clock() + timedelta(seconds=4)

    clock.advance(4)
    status = await _fail(store, item_id, "final error")
    item = await store.get(item_id)
    assert status is RetryStatus.DEAD_LETTER
    assert item.status == RetryStatus.DEAD_LETTER.value
    assert item.attempt_count == item.max_attempts == 3
    assert item.error_message == "final error"
    assert _parse(item.dead_letter_at) == clock()

    clock.advance(3600)
    assert await store.get_due_items() == []


async def test_claim_is_exclusive(store):
    item_id = await store.enqueue("WORK-1", OperationType.CREATE, "boom")

    assert await store.claim(item_id) is True
    assert await store.claim(item_id) is False
    assert (await store.get(item_id)).status == RetryStatus.RETRYING.value
    assert await store.get_due_items() == []


async def test_stale_claims_count_as_failed_attempt(store, clock):
    item_id = await store.enqueue("WORK-1", OperationType.CREATE, "boom")
    await store.claim(item_id)

    assert await store.recover_stale_claims(older_than_seconds=600) == 0

    clock.advance(601)
    assert await store.recover_stale_claims(older_than_seconds=600) == 1
    item = await store.get(item_id)
    assert item.status == RetryStatus.PENDING.value
    assert item.attempt_count == 1
    assert item.error_message == INTERRUPTED_ATTEMPT_MESSAGE
    assert _parse(item.next_retry_at) == clock()


async def test_repeatedly_interrupted_item_reaches_dead_letter(store, clock):
    item_id = await store.enqueue("WORK-1", OperationType.CREATE, "boom")
    for _ in range(3):
        assert await store.claim(item_id)
        clock.advance(601)
        assert await store.recover_stale_claims(older_than_seconds=600) == 1

    item = await store.get(item_id)
    assert item.status == RetryStatus.DEAD_LETTER.value
    assert item.attempt_count == 3
    assert item.next_retry_at is None
    assert _parse(item.dead_letter_at) == clock()
    assert await store.claim(item_id) is False


async def test_reset_to_pending_only_from_dead_letter(store, clock):
    item_id = await store.enqueue("WORK-1", OperationType.UPDATE, "boom")
    assert await store.reset_to_pending(item_id) is False
    assert await store.reset_to_pending("RETRY-missing") is False

    for delay in (0, 2, 4):
        clock.advance(delay)
        await _fail(store, item_id)

    clock.advance(86400)
    assert await store.reset_to_pending(item_id) is True
    item = await store.get(item_id)
    assert item.status == RetryStatus.PENDING.value
    assert item.attempt_count == 0
    assert item.dead_letter_at is None
    assert _parse(item.next_retry_at) == clock()

    # A failure after the reset starts the backoff sequence again
    await _fail(store, item_id)
    item = await store.get(item_id)
    assert item.attempt_count == 1
    assert _parse(item.next_retry_at) == clock() + timedelta(seconds=2)


async def test_reset_folds_into_existing_live_item(store, clock):
    dead = await store.enqueue("WORK-1", OperationType.UPDATE, "boom")
    for delay in (0, 2, 4):
        clock.advance(delay)
        await _fail(store, dead)
    live = await store.enqueue("WORK-1", OperationType.UPDATE, "boom again")

    assert await store.reset_to_pending(dead) is True
    assert await store.get(dead) is None
    assert (await store.get(live)).status == RetryStatus.PENDING.value


async def test_list_dead_letter_paginates_and_joins_title(store, clock, note_factory):
    note_factory("WORK-1", title="Budget planning")
    ids = []
    for work_id in ("WORK-1", "WORK-2", "WORK-3"):
        item_id = await store.enqueue(work_id, OperationType.CREATE, "boom")
        for delay in (0, 2, 4):
            clock.advance(delay)
            await _fail(store, item_id)
        ids.append(item_id)
    await store.enqueue("WORK-4", OperationType.CREATE, "still pending")

    page, total = await store.list_dead_letter(limit=2, offset=0)
    assert total == 3
    assert [item.id for item in page] == [ids[2], ids[1]]

    rest, _ = await store.list_dead_letter(limit=2, offset=2)
    assert [item.id for item in rest] == [ids[0]]
    assert rest[0].work_title == "Budget planning"
    assert rest[0].to_api()["workTitle"] == "Budget planning"
    assert await store.count_dead_letter() == 3


async def test_delete_and_stats(store, clock):
    kept = await store.enqueue("WORK-1", OperationType.CREATE, "boom")
    removed = await store.enqueue("WORK-2", OperationType.CREATE, "boom")
    dead = await store.enqueue("WORK-3", OperationType.DELETE, "boom")
    for delay in (0, 2, 4):
        clock.advance(delay)
        await _fail(store, dead)

    await store.delete(removed)
    assert await store.get(removed) is None

    stats = await store.stats()
    assert stats["pending"] == 1
    assert stats["retrying"] == 0
    assert stats["deadLetter"] == 1
    assert stats["oldestDeadLetterAt"] == (await store.get(dead)).dead_letter_at
    assert await store.get(kept) is not None


async def test_concurrent_duplicate_failures_share_one_live_item(store, db_path):
    ids = await asyncio.gather(
        *(store.enqueue("WORK-1", OperationType.UPDATE, f"failure {n}") for n in range(8))
    )

    assert len(set(ids)) == 1
    assert _live_rows(db_path, "WORK-1", "update") == 1


async def test_failure_on_live_item_bumps_revision(store):
    item_id = await store.enqueue("WORK-1", OperationType.UPDATE, "first")
    assert (await store.get(item_id)).revision == 0

    assert await store.enqueue("WORK-1", OperationType.UPDATE, "second", {"transient": True}) == item_id
    item = await store.get(item_id)
    assert item.revision == 1
    assert item.error_message == "second"
    assert item.error_details == {"transient": True}


async def test_complete_removes_item_when_nothing_newer_arrived(store):
    item_id = await store.enqueue("WORK-1", OperationType.UPDATE, "boom")
    item = await store.get(item_id)
    await store.claim(item_id)

    assert await store.complete(item) is True
    assert await store.get(item_id) is None


async def test_complete_requeues_item_superseded_during_attempt(store, clock):
    item_id = await store.enqueue("WORK-1", OperationType.UPDATE, "boom")
    clock.advance(1)
    await _fail(store, item_id)
    clock.advance(2)
    item = await store.get(item_id)
    assert await store.claim(item_id)

    # A newer note update fails while the retry is running
    assert await store.enqueue("WORK-1", OperationType.UPDATE, "newer update failed") == item_id

    assert await store.complete(item) is False
    requeued = await store.get(item_id)
    assert requeued.status == RetryStatus.PENDING.value
    assert requeued.attempt_count == 0
    assert _parse(requeued.next_retry_at) == clock()
    assert [d.id for d in await store.get_due_items()] == [item_id]


async def test_enqueue_non_retryable_failure_goes_straight_to_dead_letter(store, clock, db_path):
    item_id = await store.enqueue(
        "WORK-1", OperationType.UPDATE, "rejected", {"transient": False}, dead_letter=True
    )

    item = await store.get(item_id)
    assert item.status == RetryStatus.DEAD_LETTER.value
    assert item.attempt_count == 0
    assert item.next_retry_at is None
    assert _parse(item.dead_letter_at) == clock()
    assert item.error_details == {"transient": False}
    assert _live_rows(db_path, "WORK-1", "update") == 0
    assert await store.get_due_items() == []

    assert await store.reset_to_pending(item_id) is True
    assert [d.id for d in await store.get_due_items()] == [item_id]


async def test_permanent_failure_skips_remaining_attempts(store):
    item_id = await store.enqueue("WORK-1", OperationType.CREATE, "boom")
    item = await store.get(item_id)
    await store.claim(item_id)

    status = await store.record_failure(item, "malformed", {"transient": False}, permanent=True)

    assert status is RetryStatus.DEAD_LETTER
    item = await store.get(item_id)
    assert item.status == RetryStatus.DEAD_LETTER.value
    assert item.attempt_count == 1
    assert item.error_message == "malformed"
