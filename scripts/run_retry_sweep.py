#!/usr/bin/env python3
"""
Run one embedding retry sweep. Meant to be invoked periodically (cron).

Usage:
  python scripts/run_retry_sweep.py
  python scripts/run_retry_sweep.py --db worknotes.db --batch-size 25
  python scripts/run_retry_sweep.py --purge-jobs-days 7

  */5 * * * * cd /srv/worknotes && python scripts/run_retry_sweep.py
"""
import argparse
import asyncio

from config import settings
from database import init_db
from error_monitoring import setup_logging
from services.embedding_reconciler import EmbeddingReconciler
from services.embeddings import Embeddings
from services.ingestion_jobs import IngestionJobStore
from services.retry_queue import RetryQueueStore
from services.retry_scheduler import RetryScheduler
from services.vector_index import VectorIndex
from services.work_notes import WorkNoteRepository



async def run(db_path, batch_size, purge_jobs_days):
    await init_db(db_path)
    embeddings = Embeddings()
    reconciler = EmbeddingReconciler(
        vector_index=VectorIndex(db_path, embeddings),
        notes=WorkNoteRepository(db_path),
        embeddings=embeddings,
    )
    scheduler = RetryScheduler(RetryQueueStore(db_path), reconciler)
    result = await scheduler.run_sweep(batch_size)

    if purge_jobs_days:
        await IngestionJobStore(db_path).delete_older_than(purge_jobs_days)
    return result


def main():
    ap = argparse.ArgumentParser(description='Retry failed embedding reconciliations')
    ap.add_argument('--db', default=str(settings.db_path), help='Path to SQLite DB')
    ap.add_argument('--batch-size', type=int, default=settings.retry_batch_size, help='Max due items to process')
    ap.add_argument('--purge-jobs-days', type=int, default=0,
                    help='Also delete finished PDF jobs older than N days (0 = keep)')
    args = ap.parse_args()

    setup_logging()
    result = asyncio.run(run(args.db, args.batch_size, args.purge_jobs_days))
    print(
        f"Sweep complete: processed={result.processed} succeeded={result.succeeded} "
        f"retried={result.retried} dead_lettered={result.dead_lettered} skipped={result.skipped}"
    )
    return 0


if __name__ == '__main__':
    raise SystemExit(main())
