"""Generation lifecycle orchestration.

:class:`GenerationOrchestrator` owns every :class:`GenerationJob`.  It binds a
validated, rendered prompt to the configured rendering providers and, on
success, to a stored artifact.

Lifecycle
---------
::

    submit() ──> PENDING ──(provider ok + stored)──> COMPLETE
                    │
                    ├──(provider failed / timed out)──> FAILED
                    └──(watchdog: pending too long)───> FAILED
    retry(): FAILED ──> PENDING   (same job id, attempts + 1)

COMPLETE and FAILED are terminal for provider results: a second result, or a
result from a superseded dispatch attempt, is logged and ignored.

Concurrency
-----------
``submit`` only validates, renders through the prompt cache and performs the
coalescing lookup, then returns.  The provider call runs on a thread pool.
The "find a PENDING job, else create one" step runs under a striped lock
keyed by ``(owner_id, fingerprint)``; the job store's partial unique index
backs this up across processes.

Dispatch
--------
Providers are tried in configured order, skipping disabled ones and those
whose circuit is OPEN (:mod:`caverna.core.health`).  Each call runs on its
own thread under ``provider_timeout``, measured from the moment the call
starts, and is retried with exponential backoff while the error is retryable
(:mod:`caverna.core.retry`).  A call that times out keeps one of the
provider's ``max_calls_per_provider`` slots until it returns; when every slot
is held the provider reports itself busy without being called.  When one
provider is exhausted the next one is tried.  Every exception in the dispatch
path resolves the job to FAILED, so no job is left PENDING by a crash.
"""

from __future__ import annotations

import logging
import sqlite3
import threading
import time
import uuid
from collections.abc import Callable, Sequence
from concurrent.futures import Future, ThreadPoolExecutor
from concurrent.futures import wait as wait_futures
from dataclasses import dataclass
from datetime import datetime, timedelta
from typing import TYPE_CHECKING, Any

from .catalog import Catalog, load_catalog
from .config import CavernaConfig
from .errors import (
    AssetStorageError,
    InvalidJobStateError,
    JobNotFoundError,
    ProviderError,
    ProviderNotFoundError,
    SelectionValidationError,
)
from .health import CircuitPolicy, ProviderHealth
from .job_store import TERMINAL_STATUSES, GenerationJob, JobStatus, JobStore, utcnow
from .prompt_builder import PromptTemplateEngine, RenderedPrompt, normalize_selection
from .prompt_cache import PromptCache
from .retry import RetryPolicy, execute_with_retry, normalize_error
from .storage import AssetStorage, LocalAssetStorage
from .validation import CompatibilityValidator, SelectionRequest, ValidationResult

if TYPE_CHECKING:
    from caverna.providers.base import ProviderBase, ProviderResult

logger = logging.getLogger(__name__)

_LOCK_STRIPES = 64


@dataclass
class GenerationOutcome:
    """Result of one dispatch, applied to the job by :meth:`on_provider_result`.

    ``attempt`` is the job's dispatch attempt number at the time the dispatch
    started; results carrying an older attempt are ignored.
    """

    success: bool
    attempt: int = 1
    artifact_bytes: bytes | None = None
    error: str | None = None
    service_used: str | None = None
    generation_time_ms: int | None = None


class GenerationOrchestrator:
    """Own the lifecycle of generation jobs.

    Args:
        catalog: Reference data for validation and rendering.
        job_store: Persistence for job records.
        storage: Asset handoff for finished artifacts.
        providers: Rendering providers in failover order.
        prompt_cache: Cache of rendered prompts; a fresh 1000-entry cache by
            default.
        retry_policy: Backoff policy applied per provider.
        circuit_policy: Thresholds for each provider's circuit breaker.
        provider_timeout: Seconds allowed for one provider call, counted
            from when the call starts.
        max_calls_per_provider: Calls that may run at once against one
            provider, including timed-out calls that have not returned.
        max_pending_seconds: Watchdog threshold for PENDING jobs.
        worker_threads: Size of the dispatch pool.
        reuse_completed_jobs: Return the newest COMPLETE job for an
            identical request instead of generating again.
        sleep: Sleep function used between retries (injectable for tests).
        clock: UTC time source (injectable for tests).
        monotonic: Monotonic time source for the circuit breakers.
    """

    def __init__(
        self,
        catalog: Catalog,
        job_store: JobStore,
        storage: AssetStorage,
        providers: Sequence[ProviderBase],
        *,
        prompt_cache: PromptCache | None = None,
        retry_policy: RetryPolicy | None = None,
        circuit_policy: CircuitPolicy | None = None,
        provider_timeout: float = 120.0,
        max_calls_per_provider: int = 8,
        max_pending_seconds: float = 900.0,
        worker_threads: int = 4,
        reuse_completed_jobs: bool = False,
        sleep: Callable[[float], None] = time.sleep,
        clock: Callable[[], datetime] = utcnow,
        monotonic: Callable[[], float] = time.monotonic,
    ) -> None:
        if not providers:
            raise ValueError("at least one provider is required")

        self.catalog = catalog
        self.validator = CompatibilityValidator(catalog)
        self.engine = PromptTemplateEngine(catalog)
        self.prompt_cache = prompt_cache or PromptCache()
        self.job_store = job_store
        self.storage = storage
        self.providers = list(providers)
        self.retry_policy = retry_policy or RetryPolicy()
        self.provider_timeout = provider_timeout
        self.max_calls_per_provider = max_calls_per_provider
        self.max_pending_seconds = max_pending_seconds
        self.reuse_completed_jobs = reuse_completed_jobs
        self._sleep = sleep
        self._clock = clock

        self._key_locks = [threading.Lock() for _ in range(_LOCK_STRIPES)]
        self._futures: dict[str, Future] = {}
        self._futures_lock = threading.Lock()
        self._executor = ThreadPoolExecutor(
            max_workers=worker_threads, thread_name_prefix="caverna-dispatch"
        )
        policy = circuit_policy or CircuitPolicy()
        self._health = {
            provider.name: ProviderHealth(provider.name, policy, monotonic)
            for provider in self.providers
        }
        self._call_slots = {
            provider.name: threading.BoundedSemaphore(max_calls_per_provider)
            for provider in self.providers
        }
        self._closed = False

        logger.info(
            "Orchestrator ready (providers=%s, workers=%d, timeout=%.0fs).",
            [p.name for p in self.providers],
            worker_threads,
            provider_timeout,
        )

    @classmethod
    def from_config(
        cls,
        config: CavernaConfig,
        *,
        catalog: Catalog | None = None,
        providers: Sequence[ProviderBase] | None = None,
        storage: AssetStorage | None = None,
    ) -> GenerationOrchestrator:
        """Build an orchestrator wired to the configured store, cache and providers."""
        from caverna.providers import provider_registry

        if catalog is None:
            catalog = load_catalog(config.catalog_path)
        if providers is None:
            providers = [provider_registry.instantiate(name, config) for name in config.providers]
        if storage is None:
            storage = LocalAssetStorage(config.gallery_dir, config.public_base_url)

        return cls(
            catalog=catalog,
            job_store=JobStore(config.jobs_db_path),
            storage=storage,
            providers=providers,
            prompt_cache=PromptCache(
                max_entries=config.prompt_cache_max_entries,
                ttl_seconds=config.prompt_cache_ttl_seconds,
            ),
            retry_policy=RetryPolicy.from_config(config),
            circuit_policy=CircuitPolicy.from_config(config),
            provider_timeout=config.provider_timeout_seconds,
            max_calls_per_provider=config.provider_max_in_flight,
            max_pending_seconds=config.max_pending_seconds,
            worker_threads=config.worker_threads,
            reuse_completed_jobs=config.reuse_completed_jobs,
        )

    # -- Validation and rendering -------------------------------------------

    def validate(self, selection: SelectionRequest | dict[str, Any]) -> ValidationResult:
        return self.validator.validate(_as_selection(selection))

    def compile_prompt(self, selection: SelectionRequest | dict[str, Any]) -> RenderedPrompt:
        """Validate *selection* and return its rendered prompt.

        Raises:
            SelectionValidationError: If the selection is invalid.
        """
        selection = _as_selection(selection)
        result = self.validator.validate(selection)
        if not result.is_valid:
            raise SelectionValidationError(result)
        return self.prompt_cache.get_or_render(selection, self.engine.render)

    # -- Job lifecycle --------------------------------------------------------

    def submit(self, owner_id: str, selection: SelectionRequest | dict[str, Any]) -> str:
        """Create or coalesce a generation job and return its id at once.

        Raises:
            SelectionValidationError: If the selection is invalid.  No job
                is created.
        """
        selection = _as_selection(selection)
        rendered = self.compile_prompt(selection)
        fingerprint = rendered.fingerprint

        with self._key_lock(owner_id, fingerprint):
            existing = self.job_store.find_active(owner_id, fingerprint)
            if existing is not None:
                logger.info("Coalesced request for %s into job %s", owner_id, existing.job_id)
                return existing.job_id

            if self.reuse_completed_jobs:
                finished = self.job_store.find_latest_complete(owner_id, fingerprint)
                if finished is not None:
                    logger.info("Reusing completed job %s for %s", finished.job_id, owner_id)
                    return finished.job_id

            now = self._clock()
            job = GenerationJob(
                job_id=uuid.uuid4().hex,
                owner_id=owner_id,
                fingerprint=fingerprint,
                status=JobStatus.PENDING,
                selection=normalize_selection(selection),
                positive_prompt=rendered.positive_prompt,
                negative_prompt=rendered.negative_prompt,
                created_at=now,
                dispatched_at=now,
                attempts=1,
            )
            try:
                self.job_store.insert(job)
            except sqlite3.IntegrityError:
                # Another process won the race for this key.
                existing = self.job_store.find_active(owner_id, fingerprint)
                if existing is None:
                    raise
                logger.info("Coalesced request for %s into job %s", owner_id, existing.job_id)
                return existing.job_id

            self._schedule(job)

        logger.info("Created job %s for %s (fingerprint %s)", job.job_id, owner_id, fingerprint[:12])
        return job.job_id

    def get_status(self, job_id: str) -> GenerationJob:
        """Return the job, failing it first if it has been PENDING too long.

        Raises:
            JobNotFoundError: If *job_id* is unknown.
        """
        job = self._get(job_id)
        if job.status is JobStatus.PENDING:
            cutoff = self._clock() - timedelta(seconds=self.max_pending_seconds)
            if job.dispatched_at < cutoff and self._expire(job, cutoff):
                job = self._get(job_id)
        return job

    def on_provider_result(self, job_id: str, outcome: GenerationOutcome) -> None:
        """Apply a dispatch outcome to the job, at most once.

        Results for terminal jobs, unknown jobs, or superseded dispatch
        attempts are logged and ignored.
        """
        job = self.job_store.get(job_id)
        if job is None:
            logger.info("Ignoring provider result for unknown job %s", job_id)
            return
        if job.is_terminal:
            logger.info("Ignoring duplicate provider result for %s job %s", job.status.value, job_id)
            return
        if outcome.attempt != job.attempts:
            logger.info(
                "Ignoring stale provider result for job %s (attempt %d, current %d)",
                job_id,
                outcome.attempt,
                job.attempts,
            )
            return

        if not outcome.success:
            error = outcome.error or "provider failed without an error message"
            if self.job_store.mark_failed(
                job_id, error, attempt=outcome.attempt, service_used=outcome.service_used
            ):
                logger.info("Job %s FAILED: %s", job_id, error)
            else:
                logger.info("Job %s changed state before its failure was recorded", job_id)
            return

        if not outcome.artifact_bytes:
            self.job_store.mark_failed(
                job_id, "provider returned no artifact", attempt=outcome.attempt
            )
            return

        try:
            public_url = self.storage.store(outcome.artifact_bytes, f"{job_id}-{outcome.attempt}")
        except AssetStorageError as e:
            logger.exception("Storing the artifact for job %s failed", job_id)
            self.job_store.mark_failed(
                job_id,
                f"asset storage failed: {e}",
                attempt=outcome.attempt,
                service_used=outcome.service_used,
            )
            return

        applied = self.job_store.mark_complete(
            job_id,
            attempt=outcome.attempt,
            public_url=public_url,
            service_used=outcome.service_used,
            generation_time_ms=outcome.generation_time_ms,
            completed_at=self._clock(),
        )
        if applied:
            logger.info(
                "Job %s COMPLETE via %s in %sms", job_id, outcome.service_used, outcome.generation_time_ms
            )
        else:
            logger.info("Job %s changed state while storing its artifact; discarding it", job_id)
            self._delete_asset(public_url)

    def retry(self, job_id: str) -> GenerationJob:
        """Re-dispatch a FAILED job with its stored prompt.

        The same record moves back to PENDING; no new job is created.

        Raises:
            JobNotFoundError: If *job_id* is unknown.
            InvalidJobStateError: If the job is not FAILED, or another job for
                the same owner and selection is already in flight.
        """
        job = self._get(job_id)
        if job.status is not JobStatus.FAILED:
            raise InvalidJobStateError(
                f"job {job_id} is {job.status.value}; only FAILED jobs can be retried"
            )

        with self._key_lock(job.owner_id, job.fingerprint):
            active = self.job_store.find_active(job.owner_id, job.fingerprint)
            if active is not None:
                raise InvalidJobStateError(
                    f"job {active.job_id} is already in flight for this selection"
                )
            try:
                updated = self.job_store.requeue(job_id, dispatched_at=self._clock())
            except sqlite3.IntegrityError as e:
                raise InvalidJobStateError(
                    f"another job is already in flight for job {job_id}'s selection"
                ) from e
            if updated is None:
                raise InvalidJobStateError(f"job {job_id} is no longer FAILED")
            self._schedule(updated)

        logger.info("Retrying job %s (attempt %d)", job_id, updated.attempts)
        return updated

    def cleanup(self, older_than_days: float, status: JobStatus | str | None = None) -> int:
        """Delete terminal jobs created more than *older_than_days* ago.

        PENDING jobs are never deleted.  Stored assets of deleted jobs are
        removed as well.

        Args:
            older_than_days: Age threshold in days (0 deletes every matching
                terminal job).
            status: ``COMPLETE``, ``FAILED``, or ``None`` for both.

        Returns:
            Number of deleted jobs.

        Raises:
            ValueError: For a negative age, an unknown status, or PENDING.
        """
        if older_than_days < 0:
            raise ValueError("older_than_days must not be negative")

        if status is None:
            statuses = TERMINAL_STATUSES
        else:
            wanted = JobStatus(status)
            if wanted is JobStatus.PENDING:
                raise ValueError("PENDING jobs are never cleaned up")
            statuses = (wanted,)

        cutoff = self._clock() - timedelta(days=older_than_days)
        deleted = self.job_store.delete_terminal_older_than(cutoff, statuses)
        for job in deleted:
            if job.public_url:
                self._delete_asset(job.public_url)

        logger.info(
            "Cleanup removed %d jobs older than %s days (status=%s)",
            len(deleted),
            older_than_days,
            status or "any terminal",
        )
        return len(deleted)

    def delete_job(self, job_id: str) -> GenerationJob:
        """Remove a job record and its stored asset.

        A result arriving later for a deleted job is ignored.

        Raises:
            JobNotFoundError: If *job_id* is unknown.
        """
        job = self.job_store.delete(job_id)
        if job is None:
            raise JobNotFoundError(job_id)
        if job.public_url:
            self._delete_asset(job.public_url)
        logger.info("Deleted job %s (%s)", job_id, job.status.value)
        return job

    def list_jobs(
        self,
        owner_id: str,
        *,
        status: JobStatus | str | None = None,
        limit: int = 50,
        offset: int = 0,
    ) -> list[GenerationJob]:
        """The owner's jobs, newest first."""
        return self.job_store.list_for_owner(
            owner_id,
            status=JobStatus(status) if status is not None else None,
            limit=limit,
            offset=offset,
        )

    def expire_stale_jobs(self, max_pending_seconds: float | None = None) -> list[str]:
        """Fail every job that has been PENDING longer than the threshold.

        Returns:
            Ids of the jobs that were failed.
        """
        threshold = self.max_pending_seconds if max_pending_seconds is None else max_pending_seconds
        cutoff = self._clock() - timedelta(seconds=threshold)
        expired = [
            job.job_id
            for job in self.job_store.list_stale_pending(cutoff)
            if self._expire(job, cutoff, threshold)
        ]
        return expired

    def stats(self) -> dict[str, Any]:
        stats = self.job_store.stats()
        with self._futures_lock:
            in_flight = sum(1 for future in self._futures.values() if not future.done())
        stats["in_flight"] = in_flight
        stats["providers"] = [provider.name for provider in self.providers]
        stats["provider_health"] = self.provider_health()
        stats["prompt_cache"] = self.prompt_cache.stats()
        return stats

    # -- Provider health ------------------------------------------------------

    def provider_health(self) -> list[dict[str, Any]]:
        """Call statistics and circuit state per provider, in failover order."""
        return [self._health[provider.name].snapshot() for provider in self.providers]

    def reset_circuit(self, name: str) -> dict[str, Any]:
        """Force the provider's circuit CLOSED.

        Raises:
            ProviderNotFoundError: If no configured provider has *name*.
        """
        health = self._provider_health(name)
        health.breaker.reset()
        return health.snapshot()

    def set_provider_enabled(self, name: str, enabled: bool) -> dict[str, Any]:
        """Include or exclude a provider from failover.

        Raises:
            ProviderNotFoundError: If no configured provider has *name*.
        """
        health = self._provider_health(name)
        health.enabled = enabled
        logger.info("Provider %s %s", name, "enabled" if enabled else "disabled")
        return health.snapshot()

    def wait(self, job_id: str, timeout: float | None = None) -> GenerationJob:
        """Block until the in-process dispatch for *job_id* finishes.

        Returns the job as it stands afterwards (it may still be PENDING if
        *timeout* elapsed).
        """
        with self._futures_lock:
            future = self._futures.get(job_id)
        if future is not None:
            wait_futures([future], timeout=timeout)
        return self._get(job_id)

    def shutdown(self, wait: bool = True) -> None:
        """Stop the dispatch pools and close the providers."""
        if self._closed:
            return
        self._closed = True
        self._executor.shutdown(wait=wait, cancel_futures=not wait)
        for provider in self.providers:
            try:
                provider.close()
            except Exception:
                logger.exception("Error closing provider %s", provider.name)
        logger.info("Orchestrator shut down.")

    # -- Dispatch -------------------------------------------------------------

    def _schedule(self, job: GenerationJob) -> None:
        future = self._executor.submit(
            self._dispatch, job.job_id, job.positive_prompt, job.negative_prompt, job.attempts
        )
        with self._futures_lock:
            self._futures[job.job_id] = future

        def _forget(done: Future, job_id: str = job.job_id) -> None:
            with self._futures_lock:
                if self._futures.get(job_id) is done:
                    del self._futures[job_id]

        future.add_done_callback(_forget)

    def _dispatch(self, job_id: str, positive_prompt: str, negative_prompt: str, attempt: int) -> None:
        """Run the providers for one dispatch and apply the outcome."""
        try:
            outcome = self._render_with_failover(job_id, positive_prompt, negative_prompt, attempt)
        except Exception as e:
            logger.exception("Dispatch for job %s crashed", job_id)
            outcome = GenerationOutcome(
                success=False, attempt=attempt, error=f"dispatch failed: {type(e).__name__}: {e}"
            )

        try:
            self.on_provider_result(job_id, outcome)
        except Exception as e:
            logger.exception("Applying the result for job %s failed", job_id)
            self.job_store.mark_failed(
                job_id, f"internal error while completing job: {e}", attempt=attempt
            )

    def _render_with_failover(
        self, job_id: str, positive_prompt: str, negative_prompt: str, attempt: int
    ) -> GenerationOutcome:
        errors: list[str] = []
        last_provider: str | None = None

        for provider in self.providers:
            if not self._health[provider.name].enabled:
                errors.append(f"{provider.name}: disabled")
                continue

            last_provider = provider.name
            started = time.monotonic()
            result = execute_with_retry(
                lambda p=provider: self._call_provider(p, positive_prompt, negative_prompt),
                self.retry_policy,
                operation_name=f"{provider.name} job {job_id}",
                sleep=self._sleep,
            )
            if result.success:
                return GenerationOutcome(
                    success=True,
                    attempt=attempt,
                    artifact_bytes=result.result.artifact_bytes,
                    service_used=provider.name,
                    generation_time_ms=int((time.monotonic() - started) * 1000),
                )

            logger.error(
                "Provider %s exhausted for job %s after %d attempts: %s",
                provider.name,
                job_id,
                len(result.attempts),
                result.error,
            )
            errors.append(f"{provider.name}: {result.error}")

        return GenerationOutcome(
            success=False,
            attempt=attempt,
            error="; ".join(errors) or "no provider produced an image",
            service_used=last_provider,
        )

    def _call_provider(
        self, provider: ProviderBase, positive_prompt: str, negative_prompt: str
    ) -> ProviderResult:
        """One provider call under the timeout.  Failures raise ProviderError.

        The call runs on its own thread and the timeout starts when it starts.
        A timed-out call is abandoned but keeps its slot until it returns.
        """
        health = self._health[provider.name]
        if not health.breaker.allow_request():
            raise ProviderError(
                f"circuit open, next trial in {health.breaker.remaining_recovery():.0f}s",
                retryable=False,
            )

        slots = self._call_slots[provider.name]
        if not slots.acquire(blocking=False):
            raise ProviderError(
                f"{provider.name} busy: {self.max_calls_per_provider} calls still running"
            )

        call = _ProviderCall(provider, positive_prompt, negative_prompt, on_done=slots.release)
        started = time.monotonic()
        try:
            call.start()
        except RuntimeError:
            slots.release()
            raise

        if not call.done.wait(self.provider_timeout):
            message = f"{provider.name} timed out after {self.provider_timeout:g}s"
            health.record_failure(message)
            raise ProviderError(message)

        if call.error is not None:
            health.record_failure(str(normalize_error(call.error)))
            raise call.error

        result = call.result
        if result is None:
            health.record_failure("no result")
            raise ProviderError(f"{provider.name} returned no result")
        if not result.success:
            error = result.error or f"{provider.name} failed"
            health.record_failure(error)
            raise ProviderError(error, retryable=result.retryable, retry_after=result.retry_after)
        if not result.artifact_bytes:
            health.record_failure("no artifact")
            raise ProviderError(f"{provider.name} returned no artifact")

        health.record_success((time.monotonic() - started) * 1000)
        return result

    # -- Internals ------------------------------------------------------------

    def _get(self, job_id: str) -> GenerationJob:
        job = self.job_store.get(job_id)
        if job is None:
            raise JobNotFoundError(job_id)
        return job

    def _expire(self, job: GenerationJob, cutoff: datetime, threshold: float | None = None) -> bool:
        threshold = self.max_pending_seconds if threshold is None else threshold
        message = f"generation timed out after {threshold:g}s without a provider result"
        expired = self.job_store.mark_failed(job.job_id, message, dispatched_before=cutoff)
        if expired:
            logger.warning(
                "Watchdog failed job %s for %s: PENDING since %s",
                job.job_id,
                job.owner_id,
                job.dispatched_at.isoformat(),
            )
        return expired

    def _provider_health(self, name: str) -> ProviderHealth:
        health = self._health.get(name)
        if health is None:
            raise ProviderNotFoundError(name)
        return health

    def _key_lock(self, owner_id: str, fingerprint: str) -> threading.Lock:
        return self._key_locks[hash((owner_id, fingerprint)) % _LOCK_STRIPES]

    def _delete_asset(self, public_url: str) -> None:
        try:
            self.storage.delete(public_url)
        except AssetStorageError:
            logger.exception("Could not delete asset %s", public_url)


class _ProviderCall:
    """One provider render on its own daemon thread."""

    def __init__(
        self,
        provider: ProviderBase,
        positive_prompt: str,
        negative_prompt: str,
        on_done: Callable[[], None],
    ) -> None:
        self.provider = provider
        self.positive_prompt = positive_prompt
        self.negative_prompt = negative_prompt
        self.done = threading.Event()
        self.result: ProviderResult | None = None
        self.error: Exception | None = None
        self._on_done = on_done
        self._thread = threading.Thread(
            target=self._run, name=f"caverna-provider-{provider.name}", daemon=True
        )

    def start(self) -> None:
        self._thread.start()

    def _run(self) -> None:
        try:
            self.result = self.provider.render(self.positive_prompt, self.negative_prompt)
        except Exception as e:
            self.error = e
        finally:
            self._on_done()
            self.done.set()


def _as_selection(selection: SelectionRequest | dict[str, Any]) -> SelectionRequest:
    if isinstance(selection, SelectionRequest):
        return selection
    return SelectionRequest.model_validate(selection)
