"""Tests for AI draft generation."""

from unittest.mock import AsyncMock, patch

import pytest

from services.draft_service import (
    MAX_CONTEXT_CHARS,
    AIDraftService,
    DraftHints,
    SimilarNote,
    build_context_prompt,
    build_draft_prompt,
)
from services.errors import DraftGenerationError


SIMILAR = [SimilarNote("WORK-1", "Q1 budget review", "Spend was on track.", "Planning", 0.83)]


def test_prompts_include_hints_and_context():
    hints = DraftHints(category="Planning", dept_name="Finance")

    plain = build_draft_prompt("Review the Q2 budget", hints)
    assert "Review the Q2 budget" in plain
    assert "Category hint: Planning" in plain
    assert "Department context: Finance" in plain
    assert "Q1 budget review" not in plain

    contextual = build_context_prompt("Review the Q2 budget", SIMILAR, hints)
    assert "[Note 1] Q1 budget review" in contextual
    assert "similarity: 0.83" in contextual


def test_reference_carries_truncated_content():
    note = SimilarNote("WORK-2", "Long note", "x" * 5000, None, 0.912345)

    assert SIMILAR[0].to_reference() == {
        "workId": "WORK-1",
        "title": "Q1 budget review",
        "content": "Spend was on track.",
        "category": "Planning",
        "similarityScore": 0.83,
    }
    reference = note.to_reference()
    assert len(reference["content"]) == MAX_CONTEXT_CHARS
    assert reference["similarityScore"] == 0.9123


async def test_generate_draft_without_context_uses_plain_prompt():
    response = {
        "title": " Q2 budget ",
        "content": "Review spend",
        "category": None,
        "todos": [{"title": "Send summary", "description": "", "dueDateSuggestion": None}],
    }
    with patch("services.draft_service.ollama_generate_json", AsyncMock(return_value=response)) as generate:
        draft = await AIDraftService().generate_draft("text", [], DraftHints(category="Planning"))

    prompt = generate.await_args.args[0]
    assert "similar to the new material" not in prompt
    assert draft.title == "Q2 budget"
    assert draft.category == "Planning"
    assert draft.todos[0].title == "Send summary"


async def test_generate_draft_with_context_uses_context_prompt():
    response = {"title": "T", "content": "C", "category": "Ops", "todos": None}
    with patch("services.draft_service.ollama_generate_json", AsyncMock(return_value=response)) as generate:
        draft = await AIDraftService().generate_draft("text", SIMILAR)

    assert "similar to the new material" in generate.await_args.args[0]
    assert draft.todos == []


@pytest.mark.parametrize("response", [{"content": "no title"}, {"title": "", "content": "x"}, {"title": "t"}])
async def test_invalid_draft_raises_generation_error(response):
    with patch("services.draft_service.ollama_generate_json", AsyncMock(return_value=response)):
        with pytest.raises(DraftGenerationError):
            await AIDraftService().generate_draft("text")
