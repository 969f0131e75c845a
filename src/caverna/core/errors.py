"""Exception taxonomy for the Caverna Image Engine.

Validation and not-found conditions are raised synchronously to the
immediate caller.  Provider failures are resolved into job state by the
orchestrator and never reach the submitter.
"""

from __future__ import annotations

from typing import TYPE_CHECKING

if TYPE_CHECKING:
    from caverna.core.validation import ValidationResult


class CavernaError(Exception):
    """Base class for all engine errors."""


class SelectionValidationError(CavernaError):
    """A selection failed the compatibility rules.

    The full :class:`ValidationResult` is attached so callers can surface
    every error, warning, and suggestion rather than just the message.
    """

    def __init__(self, result: ValidationResult) -> None:
        self.result = result
        super().__init__("; ".join(result.errors) or "invalid selection")


class NotFoundError(CavernaError):
    """A referenced entity does not exist."""


class JobNotFoundError(NotFoundError):
    """Unknown generation job id."""

    def __init__(self, job_id: str) -> None:
        self.job_id = job_id
        super().__init__(f"job not found: {job_id}")


class CatalogLookupError(NotFoundError):
    """A catalog id that passed validation could not be resolved."""

    def __init__(self, category: str, option_id: str) -> None:
        self.category = category
        self.option_id = option_id
        super().__init__(f"unknown {category} id: {option_id}")


class ProviderNotFoundError(NotFoundError):
    """No configured provider has this name."""

    def __init__(self, name: str) -> None:
        self.name = name
        super().__init__(f"provider not found: {name}")


class InvalidJobStateError(CavernaError):
    """The requested transition is not allowed from the job's current state."""


class ProviderError(CavernaError):
    """An external rendering provider failed.

    Attributes:
        retryable: Whether another attempt against the same provider may
            succeed.
        retry_after: Optional provider hint, in seconds, for the next attempt.
    """

    def __init__(
        self,
        message: str,
        *,
        retryable: bool = True,
        retry_after: float | None = None,
    ) -> None:
        super().__init__(message)
        self.retryable = retryable
        self.retry_after = retry_after


class AssetStorageError(CavernaError):
    """The asset store could not persist or remove an artifact."""
