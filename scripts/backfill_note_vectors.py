#!/usr/bin/env python3
"""
Rebuild vector records for all existing work notes.

Embedding provider is configured via env (EMBEDDINGS_PROVIDER/OLLAMA_EMBEDDINGS_URL).
Failures are reported, not queued; rerun or use the retry queue for those notes.

Usage:
  python scripts/backfill_note_vectors.py --db worknotes.db --batch-size 50
  EMBEDDINGS_PROVIDER=none python scripts/backfill_note_vectors.py
"""
import argparse
import asyncio

from config import settings
from database import init_db
from error_monitoring import setup_logging
from services.embedding_reconciler import EmbeddingReconciler
from services.embeddings import Embeddings
from services.vector_index import VectorIndex
from services.work_notes import WorkNoteRepository


async def backfill(db_path, batch_size):
    await init_db(db_path)
    embeddings = Embeddings()
    reconciler = EmbeddingReconciler(
        vector_index=VectorIndex(db_path, embeddings),
        notes=WorkNoteRepository(db_path),
        embeddings=embeddings,
    )
    return await reconciler.reindex_all(batch_size=batch_size)


def main():
    ap = argparse.ArgumentParser(description='Backfill note vectors')
    ap.add_argument('--db', default=str(settings.db_path), help='Path to SQLite DB')
    ap.add_argument('--batch-size', type=int, default=10, help='Notes per page')
    args = ap.parse_args()

    setup_logging()
    result = asyncio.run(backfill(args.db, args.batch_size))
    for error in result.errors:
        print(f"WARN: embedding failed for note {error['workId']}: {error['error']}")
    print(f"Backfill complete: {result.succeeded} vectors stored out of {result.total} notes")
    return 0 if result.failed == 0 else 1


if __name__ == '__main__':
    raise SystemExit(main())
