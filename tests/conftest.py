"""Shared fixtures: a temporary schema-initialised database, a controllable clock, sample PDFs."""

import os
import sqlite3
from datetime import datetime, timedelta, timezone

import fitz
import pytest

from config import settings
from database import SCHEMA
from services.embeddings import Embeddings


class FakeClock:
    def __init__(self, start: datetime):
        self.current = start

    def __call__(self) -> datetime:
        return self.current

    def advance(self, seconds: float) -> None:
        self.current += timedelta(seconds=seconds)


@pytest.fixture()
def db_path(tmp_path, monkeypatch):
    """Create a temporary database with the full schema."""
    path = tmp_path / "worknotes.db"
    conn = sqlite3.connect(path)
    for statement in SCHEMA:
        conn.execute(statement)
    conn.commit()
    conn.close()

    monkeypatch.setattr(settings, "db_path", path)
    return str(path)


@pytest.fixture()
def clock():
    return FakeClock(datetime(2026, 3, 2, 9, 0, 0, tzinfo=timezone.utc))


@pytest.fixture()
def embeddings():
    return Embeddings(provider="none", dim=16)


@pytest.fixture()
def note_factory(db_path):
    """Insert work notes (and their persons) directly into the note tables."""

    def create(work_id, title="Weekly report", content="Body", category=None,
               person_ids=(), dept_name=None, created_at="2026-03-01T10:00:00Z"):
        conn = sqlite3.connect(db_path)
        conn.execute(
            "INSERT INTO work_notes (work_id, title, content_raw, category, created_at, updated_at) "
            "VALUES (?, ?, ?, ?, ?, ?)",
            (work_id, title, content, category, created_at, created_at),
        )
        for person_id in person_ids:
            conn.execute(
                "INSERT OR IGNORE INTO persons (person_id, name, dept_name) VALUES (?, ?, ?)",
                (person_id, f"Person {person_id}", dept_name),
            )
            conn.execute(
                "INSERT INTO work_note_person (work_id, person_id) VALUES (?, ?)",
                (work_id, person_id),
            )
        conn.commit()
        conn.close()
        return work_id

    return create


def make_pdf(text="Quarterly budget review with the finance team."):
    doc = fitz.open()
    page = doc.new_page()
    if text:
        page.insert_text((72, 72), text)
    data = doc.tobytes()
    doc.close()
    return data


@pytest.fixture()
def pdf_bytes():
    return make_pdf()


@pytest.fixture()
def empty_pdf_bytes():
    return make_pdf(text="")


@pytest.fixture()
def encrypted_pdf_bytes():
    doc = fitz.open()
    page = doc.new_page()
    page.insert_text((72, 72), "Confidential minutes")
    data = doc.tobytes(
        encryption=fitz.PDF_ENCRYPT_AES_256,
        owner_pw="owner-secret",
        user_pw="user-secret",
    )
    doc.close()
    return data


@pytest.fixture()
def corrupt_pdf_bytes():
    return b"This is not a PDF document at all. " * 10


@pytest.fixture()
def large_pdf_bytes():
    """A readable PDF of roughly 5 MB (text page plus an incompressible attachment)."""
    doc = fitz.open()
    page = doc.new_page()
    page.insert_text((72, 72), "Quarterly budget review with the finance team.")
    doc.embfile_add("appendix.bin", os.urandom(4_900_000))
    data = doc.tobytes()
    doc.close()
    return data
