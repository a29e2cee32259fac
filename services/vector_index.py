# ──────────────────────────────────────────────────────────────────────────────
# File: services/vector_index.py
# ──────────────────────────────────────────────────────────────────────────────
"""
Vector index client for work notes.

The index holds one record per note id: an embedding plus small metadata
(person ids, department, category, creation-date bucket). Records are always
replaced wholesale. Vectors are stored as JSON in SQLite (``note_vectors``)
and ranked by cosine similarity with numpy.

Any failure talking to the index is raised as VectorIndexError (retryable);
inputs the index can never accept raise MalformedInputError.
"""
from __future__ import annotations

import json
import logging
import sqlite3
from dataclasses import dataclass, field
from datetime import datetime, timezone
from typing import Dict, List, Optional

import numpy as np

from database import connect
from services.embeddings import Embeddings, get_embeddings
from services.errors import MalformedInputError, VectorIndexError

logger = logging.getLogger(__name__)

# Metadata string fields are capped so records stay small and comparable
METADATA_MAX_BYTES = 60


@dataclass
class VectorMatch:
    id: str
    score: float
    metadata: Dict[str, str] = field(default_factory=dict)


def truncate_to_bytes(value: str, max_bytes: int = METADATA_MAX_BYTES) -> str:
    """Truncate to at most ``max_bytes`` of UTF-8 without splitting a character."""
    encoded = value.encode("utf-8")
    if len(encoded) <= max_bytes:
        return value
    return encoded[:max_bytes].decode("utf-8", errors="ignore")


def encode_person_ids(person_ids: List[str], max_bytes: int = METADATA_MAX_BYTES) -> str:
    """Comma-join person ids, keeping only whole ids that fit in ``max_bytes``."""
    kept: List[str] = []
    length = 0
    for person_id in person_ids:
        addition = len(person_id.encode("utf-8")) + (1 if kept else 0)
        if length + addition > max_bytes:
            break
        kept.append(person_id)
        length += addition
    return ",".join(kept)


def decode_person_ids(encoded: str) -> List[str]:
    return encoded.split(",") if encoded else []


def build_note_metadata(
    work_id: str,
    person_ids: List[str],
    category: Optional[str],
    created_at_bucket: str,
    dept_name: Optional[str] = None,
) -> Dict[str, str]:
    metadata = {"work_id": work_id, "created_at_bucket": created_at_bucket}
    if person_ids:
        metadata["person_ids"] = encode_person_ids(person_ids)
    if dept_name:
        metadata["dept_name"] = truncate_to_bytes(dept_name)
    if category:
        metadata["category"] = truncate_to_bytes(category)
    return metadata


class VectorIndex:
    """SQLite-backed vector index with a remote-style async interface."""

    def __init__(self, db_path: Optional[str] = None, embeddings: Optional[Embeddings] = None):
        self.db_path = db_path
        self.embeddings = embeddings or get_embeddings()

    async def upsert(self, record_id: str, vector: List[float], metadata: Dict[str, str]) -> None:
        if not record_id:
            raise MalformedInputError("Vector record id is required")
        values = np.asarray(vector, dtype=float)
        if values.ndim != 1 or values.size == 0 or not np.all(np.isfinite(values)):
            raise MalformedInputError(f"Invalid vector for record {record_id}")

        now = datetime.now(timezone.utc).isoformat()
        try:
            async with connect(self.db_path) as conn:
                await conn.execute(
                    """
                    INSERT INTO note_vectors (id, embedding, dim, metadata, updated_at)
                    VALUES (?, ?, ?, ?, ?)
                    ON CONFLICT(id) DO UPDATE SET
                        embedding = excluded.embedding,
                        dim = excluded.dim,
                        metadata = excluded.metadata,
                        updated_at = excluded.updated_at
                    """,
                    (record_id, json.dumps(values.tolist()), int(values.size), json.dumps(metadata), now),
                )
                await conn.commit()
        except sqlite3.Error as e:
            raise VectorIndexError(f"Vector upsert failed for {record_id}: {e}") from e
        logger.debug(f"Upserted vector {record_id} ({values.size} dims)")

    async def delete(self, record_id: str) -> None:
        try:
            async with connect(self.db_path) as conn:
                await conn.execute("DELETE FROM note_vectors WHERE id = ?", (record_id,))
                await conn.commit()
        except sqlite3.Error as e:
            raise VectorIndexError(f"Vector delete failed for {record_id}: {e}") from e
        logger.debug(f"Deleted vector {record_id}")

    async def query(self, text: str, top_k: int = 10, score_threshold: float = 0.0) -> List[VectorMatch]:
        """Return up to ``top_k`` records with cosine score >= ``score_threshold``, best first."""
        query_vec = np.asarray(await self.embeddings.embed(text), dtype=float)
        try:
            async with connect(self.db_path) as conn:
                async with conn.execute(
                    "SELECT id, embedding, metadata FROM note_vectors WHERE dim = ?",
                    (int(query_vec.size),),
                ) as cursor:
                    rows = await cursor.fetchall()
        except sqlite3.Error as e:
            raise VectorIndexError(f"Vector query failed: {e}") from e

        if not rows:
            return []

        matrix = np.asarray([json.loads(row["embedding"]) for row in rows], dtype=float)
        norms = np.linalg.norm(matrix, axis=1) * np.linalg.norm(query_vec)
        norms[norms == 0] = np.inf
        scores = matrix @ query_vec / norms

        order = np.argsort(-scores)
        matches: List[VectorMatch] = []
        for idx in order:
            score = float(scores[idx])
            if score < score_threshold or len(matches) >= top_k:
                break
            row = rows[idx]
            matches.append(VectorMatch(id=row["id"], score=score, metadata=json.loads(row["metadata"])))
        return matches

    async def get(self, record_id: str) -> Optional[VectorMatch]:
        async with connect(self.db_path) as conn:
            async with conn.execute(
                "SELECT id, metadata FROM note_vectors WHERE id = ?", (record_id,)
            ) as cursor:
                row = await cursor.fetchone()
        if not row:
            return None
        return VectorMatch(id=row["id"], score=1.0, metadata=json.loads(row["metadata"]))


_vector_index: Optional[VectorIndex] = None


def get_vector_index() -> VectorIndex:
    """Get global vector index instance."""
    global _vector_index
    if _vector_index is None:
        _vector_index = VectorIndex()
    return _vector_index
