"""
AI draft generation for work notes.

Builds a prompt from extracted document text (optionally with similar existing
notes as context), asks the local LLM for a JSON draft and validates it into a
``WorkNoteDraft``.
"""

from __future__ import annotations

import logging
from dataclasses import dataclass, field
from typing import Any, Dict, List, Optional

from pydantic import BaseModel, Field, ValidationError as PydanticValidationError, field_validator

from llm_utils import ollama_generate_json
from services.errors import DraftGenerationError

logger = logging.getLogger(__name__)

# Keep prompts within the context window of small local models
MAX_INPUT_CHARS = 12000
MAX_CONTEXT_CHARS = 1000


class DraftTodo(BaseModel):
    title: str
    description: str = ""
    dueDateSuggestion: Optional[str] = None


class WorkNoteDraft(BaseModel):
    title: str
    content: str
    category: Optional[str] = None
    todos: List[DraftTodo] = Field(default_factory=list)

    @field_validator("title", "content")
    @classmethod
    def not_blank(cls, v: str) -> str:
        if not v or not v.strip():
            raise ValueError("must not be empty")
        return v.strip()

    @field_validator("todos", mode="before")
    @classmethod
    def none_to_list(cls, v):
        return v or []


@dataclass
class SimilarNote:
    work_id: str
    title: str
    content: str
    category: Optional[str]
    similarity_score: float

    def to_reference(self) -> Dict[str, Any]:
        return {
            "workId": self.work_id,
            "title": self.title,
            "content": self.content[:MAX_CONTEXT_CHARS],
            "category": self.category,
            "similarityScore": round(self.similarity_score, 4),
        }


@dataclass
class DraftHints:
    category: Optional[str] = None
    person_ids: List[str] = field(default_factory=list)
    dept_name: Optional[str] = None


DRAFT_INSTRUCTIONS = """Analyse it and write a structured work note:
1. A concise title
2. Well organised content (markdown allowed)
3. A suggested category
4. 3-5 related todo items with a suggested due date

Return JSON only, in exactly this shape:
{
  "title": "...",
  "content": "...",
  "category": "...",
  "todos": [
    {"title": "...", "description": "...", "dueDateSuggestion": "YYYY-MM-DD or null"}
  ]
}"""


def _hint_lines(hints: DraftHints) -> str:
    lines = []
    if hints.category:
        lines.append(f"Category hint: {hints.category}")
    if hints.dept_name:
        lines.append(f"Department context: {hints.dept_name}")
    return ("\n\n" + "\n".join(lines)) if lines else ""


def build_draft_prompt(text: str, hints: Optional[DraftHints] = None) -> str:
    hints = hints or DraftHints()
    return (
        "You are an assistant that structures work notes.\n\n"
        "The user supplied the following unstructured text about their work:\n\n"
        f"{text[:MAX_INPUT_CHARS]}{_hint_lines(hints)}\n\n"
        f"{DRAFT_INSTRUCTIONS}"
    )


def build_context_prompt(text: str, similar_notes: List[SimilarNote], hints: Optional[DraftHints] = None) -> str:
    hints = hints or DraftHints()
    context = "\n\n".join(
        f"[Note {i}] {note.title} (category: {note.category or 'none'}, "
        f"similarity: {note.similarity_score:.2f})\n{note.content[:MAX_CONTEXT_CHARS]}"
        for i, note in enumerate(similar_notes, start=1)
    )
    return (
        "You are an assistant that structures work notes.\n\n"
        "Here are existing notes similar to the new material. Follow their "
        "style, terminology and categories where they fit:\n\n"
        f"{context}\n\n"
        "The user supplied the following unstructured text about their work:\n\n"
        f"{text[:MAX_INPUT_CHARS]}{_hint_lines(hints)}\n\n"
        f"{DRAFT_INSTRUCTIONS}"
    )


class AIDraftService:
    """Generates work note drafts through the local LLM."""

    async def generate_draft(
        self,
        text: str,
        similar_notes: Optional[List[SimilarNote]] = None,
        hints: Optional[DraftHints] = None,
    ) -> WorkNoteDraft:
        """Draft from ``text``; uses the context prompt only when similar notes exist."""
        hints = hints or DraftHints()
        if similar_notes:
            prompt = build_context_prompt(text, similar_notes, hints)
        else:
            prompt = build_draft_prompt(text, hints)

        raw = await ollama_generate_json(prompt)
        try:
            draft = WorkNoteDraft.model_validate(raw)
        except PydanticValidationError as e:
            logger.warning(f"AI draft failed validation: {e.error_count()} error(s)")
            raise DraftGenerationError("AI returned an invalid draft: title and content are required") from e

        if not draft.category and hints.category:
            draft.category = hints.category
        logger.info(f"Generated draft '{draft.title}' with {len(draft.todos)} todos")
        return draft


_draft_service: Optional[AIDraftService] = None


def get_draft_service() -> AIDraftService:
    """Get global draft service instance."""
    global _draft_service
    if _draft_service is None:
        _draft_service = AIDraftService()
    return _draft_service
