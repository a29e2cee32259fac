"""
Database connection management and schema for the work note sync service.

This module provides:
- Async SQLite connections (aiosqlite) configured for concurrent access
- Idempotent schema creation for the retry queue, PDF jobs and vector tables
- The read-side work note tables the reconciler depends on
"""

import logging
from contextlib import asynccontextmanager
from pathlib import Path
from typing import AsyncIterator, Optional, Union

import aiosqlite

from config import settings

logger = logging.getLogger(__name__)

SCHEMA = [
    # Authoritative note store. Written by the CRUD layer, read here.
    """
    CREATE TABLE IF NOT EXISTS work_notes (
        work_id TEXT PRIMARY KEY,
        title TEXT NOT NULL,
        content_raw TEXT NOT NULL DEFAULT '',
        category TEXT,
        created_at TEXT NOT NULL DEFAULT (strftime('%Y-%m-%dT%H:%M:%fZ', 'now')),
        updated_at TEXT NOT NULL DEFAULT (strftime('%Y-%m-%dT%H:%M:%fZ', 'now'))
    )
    """,
    """
    CREATE TABLE IF NOT EXISTS persons (
        person_id TEXT PRIMARY KEY,
        name TEXT NOT NULL,
        dept_name TEXT
    )
    """,
    """
    CREATE TABLE IF NOT EXISTS work_note_person (
        work_id TEXT NOT NULL,
        person_id TEXT NOT NULL,
        PRIMARY KEY (work_id, person_id)
    )
    """,
    "CREATE INDEX IF NOT EXISTS idx_work_notes_created_at ON work_notes (created_at)",
    # Embedding retry queue. No FK to work_notes: delete retries outlive the note.
    # revision is bumped whenever a newer failure lands on an existing live row.
    """
    CREATE TABLE IF NOT EXISTS embedding_retry_queue (
        id TEXT PRIMARY KEY,
        work_id TEXT NOT NULL,
        operation_type TEXT NOT NULL CHECK (operation_type IN ('create', 'update', 'delete')),
        attempt_count INTEGER NOT NULL DEFAULT 0,
        max_attempts INTEGER NOT NULL DEFAULT 3,
        next_retry_at TEXT,
        status TEXT NOT NULL DEFAULT 'pending' CHECK (status IN ('pending', 'retrying', 'dead_letter')),
        error_message TEXT,
        error_details TEXT,
        created_at TEXT NOT NULL,
        updated_at TEXT NOT NULL,
        dead_letter_at TEXT,
        revision INTEGER NOT NULL DEFAULT 0
    )
    """,
    # At most one live (non dead-letter) row per note and operation
    """
    CREATE UNIQUE INDEX IF NOT EXISTS uq_retry_queue_live_item
    ON embedding_retry_queue (work_id, operation_type)
    WHERE status != 'dead_letter'
    """,
    """
    CREATE INDEX IF NOT EXISTS idx_retry_queue_next_retry
    ON embedding_retry_queue (status, next_retry_at)
    """,
    """
    CREATE INDEX IF NOT EXISTS idx_retry_queue_dead_letter
    ON embedding_retry_queue (dead_letter_at)
    WHERE status = 'dead_letter'
    """,
    # PDF ingestion jobs. The CHECK mirrors the terminal-outcome invariant.
    """
    CREATE TABLE IF NOT EXISTS pdf_jobs (
        job_id TEXT PRIMARY KEY,
        source_ref TEXT NOT NULL,
        status TEXT NOT NULL CHECK (status IN ('PENDING', 'PROCESSING', 'READY', 'ERROR')),
        draft_json TEXT,
        references_json TEXT,
        error_message TEXT,
        metadata_json TEXT,
        created_at TEXT NOT NULL,
        updated_at TEXT NOT NULL,
        CHECK ((status = 'READY') = (draft_json IS NOT NULL)),
        CHECK ((status = 'ERROR') = (error_message IS NOT NULL))
    )
    """,
    "CREATE INDEX IF NOT EXISTS idx_pdf_jobs_created_at ON pdf_jobs (created_at)",
    # Derived vector index
    """
    CREATE TABLE IF NOT EXISTS note_vectors (
        id TEXT PRIMARY KEY,
        embedding TEXT NOT NULL,
        dim INTEGER NOT NULL,
        metadata TEXT NOT NULL DEFAULT '{}',
        updated_at TEXT NOT NULL
    )
    """,
]


def resolve_db_path(db_path: Optional[Union[str, Path]] = None) -> str:
    return str(db_path or settings.db_path)


@asynccontextmanager
async def connect(db_path: Optional[Union[str, Path]] = None) -> AsyncIterator[aiosqlite.Connection]:
    """Open a configured connection; one per store call."""
    path = resolve_db_path(db_path)
    conn = await aiosqlite.connect(path, timeout=30.0)
    try:
        conn.row_factory = aiosqlite.Row
        await conn.execute("PRAGMA journal_mode=WAL")
        await conn.execute("PRAGMA busy_timeout=5000")
        await conn.execute("PRAGMA synchronous=NORMAL")
        yield conn
    finally:
        await conn.close()


async def init_db(db_path: Optional[Union[str, Path]] = None) -> None:
    """Create all tables and indexes if they do not exist."""
    path = resolve_db_path(db_path)
    Path(path).parent.mkdir(parents=True, exist_ok=True)
    async with connect(path) as conn:
        for statement in SCHEMA:
            await conn.execute(statement)
        await conn.commit()
    logger.info(f"Database initialized at {path}")
