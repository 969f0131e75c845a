"""Pydantic request and response models for the Caverna API.

Selections are accepted as :class:`~caverna.core.validation.SelectionRequest`
bodies directly; the models here cover everything else.

Models
------
GenerateResponse
    Response of ``POST /api/generate``: the job id and its status.
JobResponse
    Public view of a job for ``GET /api/status/{job_id}`` and listings.
    ``public_url`` is only present for COMPLETE jobs.
CleanupRequest
    Payload for ``POST /api/admin/cleanup``.
"""

from __future__ import annotations

from datetime import datetime
from typing import Any

from pydantic import BaseModel, ConfigDict, Field

from caverna.core.job_store import GenerationJob, JobStatus


class GenerateResponse(BaseModel):
    job_id: str
    status: JobStatus


class JobResponse(BaseModel):
    """Client-facing view of a :class:`GenerationJob`.

    Attributes:
        job_id: Opaque job identifier.
        status: ``PENDING``, ``COMPLETE`` or ``FAILED``.
        public_url: URL of the stored image; set only when COMPLETE.
        error_message: Failure reason; set only when FAILED.
        service_used: Provider that handled the last dispatch.
        generation_time_ms: Provider time for a COMPLETE job.
        attempts: Dispatch attempts so far (1 plus the number of retries).
    """

    job_id: str
    status: JobStatus
    public_url: str | None = None
    error_message: str | None = None
    service_used: str | None = None
    generation_time_ms: int | None = None
    attempts: int
    selection: dict[str, Any] = Field(default_factory=dict)
    created_at: datetime
    completed_at: datetime | None = None

    @classmethod
    def from_job(cls, job: GenerationJob) -> JobResponse:
        return cls(
            job_id=job.job_id,
            status=job.status,
            public_url=job.public_url if job.status is JobStatus.COMPLETE else None,
            error_message=job.error_message if job.status is JobStatus.FAILED else None,
            service_used=job.service_used,
            generation_time_ms=job.generation_time_ms,
            attempts=job.attempts,
            selection=job.selection,
            created_at=job.created_at,
            completed_at=job.completed_at,
        )


class JobListResponse(BaseModel):
    jobs: list[JobResponse]
    limit: int
    offset: int


class CompiledPromptResponse(BaseModel):
    positive_prompt: str
    negative_prompt: str
    fingerprint: str
    compiled_prompt: str = Field(
        ...,
        description="Single-string form: positive prompt, then 'NEGATIVE PROMPT: ...'.",
    )


class CleanupRequest(BaseModel):
    """Request body for ``POST /api/admin/cleanup``.

    Attributes:
        older_than_days: Delete terminal jobs created more than this many
            days ago.
        status: ``COMPLETE`` or ``FAILED``; omit to match both.  ``PENDING``
            is rejected.
    """

    model_config = ConfigDict(populate_by_name=True)

    older_than_days: float = Field(..., ge=0, alias="olderThanDays")
    status: JobStatus | None = None


class CleanupResponse(BaseModel):
    deleted: int


class WatchdogResponse(BaseModel):
    expired: list[str]


class ProviderEnabledRequest(BaseModel):
    """Request body for ``POST /api/admin/providers/{name}/enabled``."""

    enabled: bool
