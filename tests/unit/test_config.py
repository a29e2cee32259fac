"""Tests for settings loading and validation."""

import pytest
from pydantic import ValidationError

from config import Settings


def test_defaults():
    config = Settings(_env_file=None)
    assert config.retry_max_attempts == 3
    assert config.retry_backoff_base == 2
    assert config.max_pdf_size_bytes == 10 * 1024 * 1024
    assert config.similar_notes_top_k == 3


def test_env_aliases(monkeypatch, tmp_path):
    monkeypatch.setenv("SQLITE_DB", str(tmp_path / "alt.db"))
    monkeypatch.setenv("RETRY_MAX_ATTEMPTS", "5")
    monkeypatch.setenv("ENV", "production")
    config = Settings(_env_file=None)
    assert config.db_path == tmp_path / "alt.db"
    assert config.retry_max_attempts == 5
    assert config.is_production
    assert not config.is_development


@pytest.mark.parametrize(
    "overrides",
    [{"retry_max_attempts": 0}, {"retry_backoff_base": 0}, {"embeddings_provider": "openai"}],
)
def test_invalid_settings_are_rejected(overrides):
    with pytest.raises(ValidationError):
        Settings(_env_file=None, **overrides)
