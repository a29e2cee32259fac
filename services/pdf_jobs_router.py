"""
PDF Jobs Router

Upload a PDF and get back an AI-drafted work note. The upload request drives
the job to READY or ERROR before responding; the GET endpoint only reads the
stored job.
"""

import logging
from typing import Any, Dict, List, Optional

from fastapi import APIRouter, Depends, File, Form, UploadFile
from fastapi.responses import JSONResponse
from pydantic import BaseModel

from services.errors import NotFoundError
from services.ingestion_jobs import IngestionJobStore, get_ingestion_job_store
from services.ingestion_pipeline import IngestionPipeline, get_ingestion_pipeline, validate_upload

logger = logging.getLogger(__name__)

router = APIRouter(prefix="/api/pdf-jobs", tags=["pdf-jobs"])


class PdfJobResponse(BaseModel):
    """Polling payload for an ingestion job"""
    jobId: str
    status: str
    draft: Optional[Dict[str, Any]] = None
    references: List[Dict[str, Any]] = []
    errorMessage: Optional[str] = None
    createdAt: str
    updatedAt: str


@router.post("", response_model=PdfJobResponse)
async def upload_pdf(
    file: UploadFile = File(...),
    category: Optional[str] = Form(None),
    personIds: Optional[str] = Form(None),
    deptName: Optional[str] = Form(None),
    pipeline: IngestionPipeline = Depends(get_ingestion_pipeline),
):
    """
    Create an ingestion job from an uploaded PDF and run it to completion.

    Returns 200 with the draft when the job is READY. When the job ends in
    ERROR the same body is returned with the matching error status.
    """
    data = await file.read()
    upload = validate_upload(
        file.filename,
        file.content_type,
        data,
        category=category,
        person_ids=personIds,
        dept_name=deptName,
    )
    outcome = await pipeline.run(upload)
    if outcome.error is not None:
        logger.info(f"PDF job {outcome.job.job_id} ended in ERROR ({outcome.error.code})")
    return JSONResponse(status_code=outcome.status_code, content=outcome.job.to_api())


@router.get("/{job_id}", response_model=PdfJobResponse)
async def get_pdf_job(job_id: str, jobs: IngestionJobStore = Depends(get_ingestion_job_store)):
    job = await jobs.get(job_id)
    if job is None:
        raise NotFoundError("PDF job", job_id)
    return JSONResponse(content=job.to_api())
