"""Caverna Image Engine - FastAPI Application.

This module defines the application factory, all REST API routes, and the
``main()`` CLI function that launches the uvicorn server.

Architecture
------------
- **Orchestration** is performed by
  :class:`~caverna.core.orchestrator.GenerationOrchestrator`, created in the
  lifespan handler and stored on ``app.state``.
- **Generation is asynchronous**: ``POST /api/generate`` returns a job id at
  once and clients poll ``GET /api/status/{job_id}``.
- **Stored images** are served from the gallery directory by FastAPI's
  ``StaticFiles`` at ``public_base_url``.
- **Ownership** comes from the ``X-User-Id`` header.  Authentication is
  handled upstream.
- A background **watchdog** task fails jobs that stay PENDING past
  ``max_pending_seconds``.

Endpoints
---------
========  =============================  ===================================
Method    Path                           Purpose
========  =============================  ===================================
GET       ``/health``                    Liveness
GET       ``/api/options``               Full catalog dump
GET       ``/api/options/compatible``    Options left for a partial selection
POST      ``/api/validate``              Validate a selection
POST      ``/api/prompt/compile``        Preview the rendered prompt
POST      ``/api/generate``              Submit (or coalesce) a job
GET       ``/api/status/{job_id}``       Job status
GET       ``/api/jobs``                  Caller's jobs, newest first
POST      ``/api/jobs/{job_id}/retry``   Retry a FAILED job
DELETE    ``/api/jobs/{job_id}``         Delete a job and its image
POST      ``/api/admin/cleanup``         Bulk-delete old terminal jobs
POST      ``/api/admin/watchdog``        Run the stale-PENDING sweep now
GET       ``/api/admin/providers``       Provider health and circuit state
POST      ``.../{name}/reset``           Force a provider's circuit CLOSED
POST      ``.../{name}/enabled``         Enable or disable a provider
GET       ``/api/stats``                 Aggregate counts
========  =============================  ===================================

Usage
-----
CLI (installed entry point)::

    caverna

Direct invocation::

    python -m caverna.api.main
"""

from __future__ import annotations

import asyncio
import logging
from collections.abc import AsyncIterator
from contextlib import asynccontextmanager, suppress

from fastapi import APIRouter, Depends, FastAPI, Header, HTTPException, Query, Request
from fastapi.middleware.cors import CORSMiddleware
from fastapi.staticfiles import StaticFiles

from caverna import __version__
from caverna.api.models import (
    CleanupRequest,
    CleanupResponse,
    CompiledPromptResponse,
    GenerateResponse,
    JobListResponse,
    JobResponse,
    ProviderEnabledRequest,
    WatchdogResponse,
)
from caverna.core.config import CavernaConfig, config
from caverna.core.errors import (
    InvalidJobStateError,
    JobNotFoundError,
    ProviderNotFoundError,
    SelectionValidationError,
)
from caverna.core.job_store import JobStatus
from caverna.core.orchestrator import GenerationOrchestrator
from caverna.core.validation import SelectionRequest, ValidationResult

logger = logging.getLogger(__name__)

router = APIRouter()


# ---------------------------------------------------------------------------
# Dependencies.
# ---------------------------------------------------------------------------


def get_orchestrator(request: Request) -> GenerationOrchestrator:
    return request.app.state.orchestrator


def get_owner_id(x_user_id: str = Header(default="anonymous")) -> str:
    """Requesting user, taken from the ``X-User-Id`` header."""
    return x_user_id.strip() or "anonymous"


def _validation_error(exc: SelectionValidationError) -> HTTPException:
    result = exc.result
    return HTTPException(
        status_code=400,
        detail={
            "message": str(exc),
            "errors": result.errors,
            "warnings": result.warnings,
            "suggestions": result.suggestions,
        },
    )


# ---------------------------------------------------------------------------
# Catalog and prompt routes.
# ---------------------------------------------------------------------------


@router.get("/health")
def health() -> dict:
    return {"status": "ok", "version": __version__}


@router.get("/api/options")
def get_options(orchestrator: GenerationOrchestrator = Depends(get_orchestrator)) -> dict:
    """Return the full catalog: poses, outfits, footwear, props and frames."""
    return orchestrator.catalog.dump()


@router.get("/api/options/compatible")
def get_compatible_options(
    pose: str | None = None,
    outfit: str | None = None,
    frame_type: str | None = Query(default=None, alias="frameType"),
    orchestrator: GenerationOrchestrator = Depends(get_orchestrator),
) -> dict:
    """Narrow the option lists given the fields already chosen.

    Only the categories constrained by the supplied query parameters are
    returned (outfits and props for a pose, footwear for an outfit, frames
    for a frame type).
    """
    return orchestrator.catalog.compatible_options(pose=pose, outfit=outfit, frame_type=frame_type)


@router.post("/api/validate", response_model=ValidationResult)
def validate_selection(
    selection: SelectionRequest,
    orchestrator: GenerationOrchestrator = Depends(get_orchestrator),
) -> ValidationResult:
    """Validate a selection.  Always 200; check ``is_valid`` in the body."""
    return orchestrator.validate(selection)


@router.post("/api/prompt/compile", response_model=CompiledPromptResponse)
def compile_prompt(
    selection: SelectionRequest,
    orchestrator: GenerationOrchestrator = Depends(get_orchestrator),
) -> CompiledPromptResponse:
    """Preview the rendered prompt without generating an image.

    Raises:
        HTTPException: 400 if the selection is invalid.
    """
    try:
        rendered = orchestrator.compile_prompt(selection)
    except SelectionValidationError as exc:
        raise _validation_error(exc) from exc
    return CompiledPromptResponse(
        positive_prompt=rendered.positive_prompt,
        negative_prompt=rendered.negative_prompt,
        fingerprint=rendered.fingerprint,
        compiled_prompt=rendered.combined(),
    )


# ---------------------------------------------------------------------------
# Job routes.
# ---------------------------------------------------------------------------


@router.post("/api/generate", response_model=GenerateResponse, status_code=202)
def generate(
    selection: SelectionRequest,
    owner_id: str = Depends(get_owner_id),
    orchestrator: GenerationOrchestrator = Depends(get_orchestrator),
) -> GenerateResponse:
    """Submit a generation request.

    Returns immediately with the job id.  Identical requests from the same
    user while a job is in flight return that job's id.

    Raises:
        HTTPException: 400 if the selection is invalid (no job is created).
    """
    try:
        job_id = orchestrator.submit(owner_id, selection)
    except SelectionValidationError as exc:
        raise _validation_error(exc) from exc
    job = orchestrator.get_status(job_id)
    return GenerateResponse(job_id=job.job_id, status=job.status)


@router.get("/api/status/{job_id}", response_model=JobResponse)
def get_status(
    job_id: str,
    orchestrator: GenerationOrchestrator = Depends(get_orchestrator),
) -> JobResponse:
    """Return the job's status.

    Raises:
        HTTPException: 404 if the job is not found.
    """
    try:
        job = orchestrator.get_status(job_id)
    except JobNotFoundError as exc:
        raise HTTPException(status_code=404, detail=str(exc)) from exc
    return JobResponse.from_job(job)


@router.get("/api/jobs", response_model=JobListResponse)
def list_jobs(
    status: JobStatus | None = None,
    limit: int = Query(default=50, ge=1, le=200),
    offset: int = Query(default=0, ge=0),
    owner_id: str = Depends(get_owner_id),
    orchestrator: GenerationOrchestrator = Depends(get_orchestrator),
) -> JobListResponse:
    jobs = orchestrator.list_jobs(owner_id, status=status, limit=limit, offset=offset)
    return JobListResponse(
        jobs=[JobResponse.from_job(job) for job in jobs],
        limit=limit,
        offset=offset,
    )


@router.post("/api/jobs/{job_id}/retry", response_model=JobResponse)
def retry_job(
    job_id: str,
    orchestrator: GenerationOrchestrator = Depends(get_orchestrator),
) -> JobResponse:
    """Retry a FAILED job with its stored prompt.

    Raises:
        HTTPException: 404 if the job is not found, 409 if it is not FAILED
            or the same selection is already in flight.
    """
    try:
        job = orchestrator.retry(job_id)
    except JobNotFoundError as exc:
        raise HTTPException(status_code=404, detail=str(exc)) from exc
    except InvalidJobStateError as exc:
        raise HTTPException(status_code=409, detail=str(exc)) from exc
    return JobResponse.from_job(job)


@router.delete("/api/jobs/{job_id}")
def delete_job(
    job_id: str,
    orchestrator: GenerationOrchestrator = Depends(get_orchestrator),
) -> dict:
    """Delete a job record and its stored image.

    Raises:
        HTTPException: 404 if the job is not found.
    """
    try:
        job = orchestrator.delete_job(job_id)
    except JobNotFoundError as exc:
        raise HTTPException(status_code=404, detail=str(exc)) from exc
    return {"success": True, "job_id": job.job_id}


# ---------------------------------------------------------------------------
# Admin routes.
# ---------------------------------------------------------------------------


@router.post("/api/admin/cleanup", response_model=CleanupResponse)
def cleanup_jobs(
    req: CleanupRequest,
    orchestrator: GenerationOrchestrator = Depends(get_orchestrator),
) -> CleanupResponse:
    """Bulk-delete terminal jobs.  PENDING jobs are never deleted.

    Raises:
        HTTPException: 400 if ``status`` is PENDING.
    """
    try:
        deleted = orchestrator.cleanup(req.older_than_days, req.status)
    except ValueError as exc:
        raise HTTPException(status_code=400, detail=str(exc)) from exc
    return CleanupResponse(deleted=deleted)


@router.post("/api/admin/watchdog", response_model=WatchdogResponse)
def run_watchdog(orchestrator: GenerationOrchestrator = Depends(get_orchestrator)) -> WatchdogResponse:
    return WatchdogResponse(expired=orchestrator.expire_stale_jobs())


@router.get("/api/admin/providers")
def list_provider_health(orchestrator: GenerationOrchestrator = Depends(get_orchestrator)) -> list[dict]:
    """Call statistics and circuit breaker state per provider, in failover order."""
    return orchestrator.provider_health()


@router.post("/api/admin/providers/{name}/reset")
def reset_provider_circuit(
    name: str,
    orchestrator: GenerationOrchestrator = Depends(get_orchestrator),
) -> dict:
    """Force the provider's circuit CLOSED.

    Raises:
        HTTPException: 404 if no configured provider has this name.
    """
    try:
        return orchestrator.reset_circuit(name)
    except ProviderNotFoundError as exc:
        raise HTTPException(status_code=404, detail=str(exc)) from exc


@router.post("/api/admin/providers/{name}/enabled")
def set_provider_enabled(
    name: str,
    req: ProviderEnabledRequest,
    orchestrator: GenerationOrchestrator = Depends(get_orchestrator),
) -> dict:
    try:
        return orchestrator.set_provider_enabled(name, req.enabled)
    except ProviderNotFoundError as exc:
        raise HTTPException(status_code=404, detail=str(exc)) from exc


@router.get("/api/stats")
def get_stats(orchestrator: GenerationOrchestrator = Depends(get_orchestrator)) -> dict:
    """Aggregate job counts by status and provider, plus prompt cache stats."""
    return orchestrator.stats()


# ---------------------------------------------------------------------------
# Application lifecycle and factory.
# ---------------------------------------------------------------------------


async def _watchdog_loop(orchestrator: GenerationOrchestrator, interval: float) -> None:
    """Periodically fail jobs that have been PENDING too long."""
    while True:
        await asyncio.sleep(interval)
        try:
            expired = await asyncio.to_thread(orchestrator.expire_stale_jobs)
            if expired:
                logger.warning("Watchdog expired %d stale jobs.", len(expired))
        except Exception:
            logger.exception("Watchdog sweep failed.")


def create_app(
    cfg: CavernaConfig | None = None,
    orchestrator: GenerationOrchestrator | None = None,
) -> FastAPI:
    """Build the FastAPI application.

    Args:
        cfg: Configuration; the global ``config`` by default.
        orchestrator: Pre-built orchestrator.  When omitted one is built from
            *cfg* on startup.  Either way it is shut down on exit.
    """
    cfg = cfg or config

    @asynccontextmanager
    async def lifespan(app: FastAPI) -> AsyncIterator[None]:
        # --- Startup -------------------------------------------------------
        app.state.orchestrator = orchestrator or GenerationOrchestrator.from_config(cfg)
        watchdog = asyncio.create_task(
            _watchdog_loop(app.state.orchestrator, cfg.watchdog_interval_seconds)
        )
        logger.info("Caverna engine started.")

        yield  # Application runs here.

        # --- Shutdown ------------------------------------------------------
        watchdog.cancel()
        with suppress(asyncio.CancelledError):
            await watchdog
        await asyncio.to_thread(app.state.orchestrator.shutdown)
        logger.info("Caverna engine stopped.")

    app = FastAPI(
        title="Caverna Image Engine",
        description="Validated, cached, asynchronous character image generation.",
        version=__version__,
        lifespan=lifespan,
    )

    app.add_middleware(
        CORSMiddleware,
        allow_origins=["*"],
        allow_credentials=True,
        allow_methods=["*"],
        allow_headers=["*"],
    )

    app.include_router(router)

    # Serve stored images where the local asset store says they live.
    if cfg.public_base_url.startswith("/"):
        app.mount(
            cfg.public_base_url.rstrip("/"),
            StaticFiles(directory=str(cfg.gallery_dir)),
            name="gallery",
        )

    return app


app = create_app()


# ---------------------------------------------------------------------------
# CLI entry point.
# ---------------------------------------------------------------------------


def main() -> None:
    """Launch the uvicorn ASGI server.

    Reads host, port and log level from :data:`~caverna.core.config.config`
    (``CAVERNA_SERVER_HOST``, ``CAVERNA_SERVER_PORT``, ``CAVERNA_LOG_LEVEL``).

    This function is registered as the ``caverna`` console script in
    ``pyproject.toml``.
    """
    import uvicorn

    uvicorn.run(
        "caverna.api.main:app",
        host=config.server_host,
        port=config.server_port,
        log_level=config.log_level,
        reload=False,
    )


if __name__ == "__main__":
    main()
