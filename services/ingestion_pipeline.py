"""
PDF ingestion pipeline.

Runs one upload synchronously to a terminal job state:

    validate -> create job (PENDING) -> PROCESSING -> extract text
    -> similar notes (best effort) -> AI draft -> READY | ERROR

Validation failures are raised before a job exists. Everything after job
creation ends in exactly one terminal write, and the failure (if any) is
returned alongside the job so the router can choose a status code.
"""

from __future__ import annotations

import logging
from dataclasses import dataclass
from typing import Dict, List, Optional

from config import settings
from services.draft_service import AIDraftService, DraftHints, SimilarNote, get_draft_service
from services.errors import (
    DomainError,
    DraftGenerationError,
    PayloadTooLargeError,
    PdfProcessingError,
    RateLimitError,
    UploadValidationError,
)
from services.ingestion_jobs import IngestionJob, IngestionJobStore, JobStatus, get_ingestion_job_store
from services.pdf_extraction import PdfExtractor, get_pdf_extractor
from services.vector_index import VectorIndex, get_vector_index
from services.work_notes import WorkNoteRepository

logger = logging.getLogger(__name__)

PDF_CONTENT_TYPE = "application/pdf"
MAX_HINT_LENGTH = 100
MAX_PERSON_IDS = 50
MAX_PERSON_ID_LENGTH = 64
INTERNAL_ERROR_MESSAGE = "An internal error occurred while processing the PDF"


class InternalPipelineError(DomainError):
    code = "INTERNAL_ERROR"
    status_code = 500


@dataclass
class UploadRequest:
    filename: str
    content_type: Optional[str]
    data: bytes
    hints: DraftHints


@dataclass
class PipelineOutcome:
    job: IngestionJob
    error: Optional[DomainError] = None

    @property
    def status_code(self) -> int:
        return self.error.status_code if self.error else 200


def parse_person_ids(raw: Optional[str]) -> List[str]:
    if not raw:
        return []
    return [part.strip() for part in raw.split(",") if part.strip()]


def validate_upload(
    filename: Optional[str],
    content_type: Optional[str],
    data: bytes,
    category: Optional[str] = None,
    person_ids: Optional[str] = None,
    dept_name: Optional[str] = None,
    max_size: Optional[int] = None,
) -> UploadRequest:
    """Reject bad uploads before any job row exists."""
    max_size = max_size or settings.max_pdf_size_bytes
    declared = (content_type or "").split(";")[0].strip().lower()
    if declared != PDF_CONTENT_TYPE:
        raise UploadValidationError(
            "Only PDF files are accepted",
            {"contentType": content_type},
        )
    if not data:
        raise UploadValidationError("Uploaded file is empty")
    if len(data) > max_size:
        raise PayloadTooLargeError(
            f"File exceeds the maximum size of {max_size} bytes",
            {"size": len(data), "maxSize": max_size},
        )

    for name, value in (("category", category), ("deptName", dept_name)):
        if value is not None and len(value.strip()) > MAX_HINT_LENGTH:
            raise UploadValidationError(f"{name} must be at most {MAX_HINT_LENGTH} characters")

    ids = parse_person_ids(person_ids)
    if len(ids) > MAX_PERSON_IDS:
        raise UploadValidationError(f"At most {MAX_PERSON_IDS} personIds are allowed")
    if any(len(pid) > MAX_PERSON_ID_LENGTH for pid in ids):
        raise UploadValidationError(f"personIds must be at most {MAX_PERSON_ID_LENGTH} characters each")

    hints = DraftHints(
        category=(category or "").strip() or None,
        person_ids=ids,
        dept_name=(dept_name or "").strip() or None,
    )
    return UploadRequest(filename=filename or "upload.pdf", content_type=declared, data=data, hints=hints)


class IngestionPipeline:
    def __init__(
        self,
        jobs: Optional[IngestionJobStore] = None,
        extractor: Optional[PdfExtractor] = None,
        vector_index: Optional[VectorIndex] = None,
        notes: Optional[WorkNoteRepository] = None,
        drafts: Optional[AIDraftService] = None,
    ):
        self.jobs = jobs or get_ingestion_job_store()
        self.extractor = extractor or get_pdf_extractor()
        self.vector_index = vector_index or get_vector_index()
        self.notes = notes or WorkNoteRepository()
        self.drafts = drafts or get_draft_service()

    async def run(self, upload: UploadRequest) -> PipelineOutcome:
        job = await self.jobs.create(
            upload.filename,
            {
                "category": upload.hints.category,
                "personIds": upload.hints.person_ids,
                "deptName": upload.hints.dept_name,
                "size": len(upload.data),
            },
        )

        try:
            return await self._process(job, upload)
        except Exception as e:
            logger.exception(f"Unexpected failure in ingestion job {job.job_id}")
            current = await self.jobs.get(job.job_id)
            if current is not None and JobStatus(current.status).is_terminal:
                return PipelineOutcome(current, InternalPipelineError(INTERNAL_ERROR_MESSAGE))
            failed = await self.jobs.mark_error(job.job_id, INTERNAL_ERROR_MESSAGE)
            return PipelineOutcome(failed, InternalPipelineError(INTERNAL_ERROR_MESSAGE, {"type": type(e).__name__}))

    async def _process(self, job: IngestionJob, upload: UploadRequest) -> PipelineOutcome:
        await self.jobs.mark_processing(job.job_id)

        try:
            text = await self.extractor.extract_text(upload.data)
        except PdfProcessingError as e:
            logger.warning(f"Ingestion job {job.job_id}: extraction failed: {e.message}")
            failed = await self.jobs.mark_error(job.job_id, e.message)
            return PipelineOutcome(failed, e)

        similar = await self.find_similar_notes(text)

        try:
            draft = await self.drafts.generate_draft(text, similar, upload.hints)
        except (DraftGenerationError, RateLimitError) as e:
            logger.warning(f"Ingestion job {job.job_id}: draft generation failed: {e.message}")
            failed = await self.jobs.mark_error(job.job_id, e.message)
            return PipelineOutcome(failed, e)

        ready = await self.jobs.mark_ready(
            job.job_id,
            draft.model_dump(),
            [note.to_reference() for note in similar],
        )
        logger.info(f"Ingestion job {job.job_id} ready with {len(similar)} reference(s)")
        return PipelineOutcome(ready)

    async def find_similar_notes(self, text: str) -> List[SimilarNote]:
        """Top-K similar notes; any failure degrades to no context."""
        try:
            matches = await self.vector_index.query(
                text,
                top_k=settings.similar_notes_top_k,
                score_threshold=settings.similar_notes_score_threshold,
            )
            best: Dict[str, float] = {}
            for match in matches:
                work_id = match.metadata.get("work_id") or match.id
                if match.score > best.get(work_id, float("-inf")):
                    best[work_id] = match.score

            ranked = sorted(best, key=best.get, reverse=True)
            notes = await self.notes.find_by_ids(ranked)
        except Exception as e:
            logger.warning(f"Similar note search failed; drafting without context: {e}")
            return []

        return [
            SimilarNote(
                work_id=note.work_id,
                title=note.title,
                content=note.content_raw,
                category=note.category,
                similarity_score=best[note.work_id],
            )
            for note in notes
        ]


_pipeline: Optional[IngestionPipeline] = None


def get_ingestion_pipeline() -> IngestionPipeline:
    """Get global ingestion pipeline instance."""
    global _pipeline
    if _pipeline is None:
        _pipeline = IngestionPipeline()
    return _pipeline
