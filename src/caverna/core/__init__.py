"""Core engine for character image generation requests.

Architecture Overview
---------------------
Components, leaf first:

1. **Catalog** (catalog.py): read-only poses, outfits, footwear, props and
   frame templates, plus the compatibility edges between them.
2. **Validation** (validation.py): pure compatibility checks producing
   errors, warnings and suggestions.
3. **Prompt builder** (prompt_builder.py): deterministic prompt rendering
   and selection fingerprints.
4. **Prompt cache** (prompt_cache.py): LRU/TTL cache keyed by fingerprint.
5. **Orchestrator** (orchestrator.py): job lifecycle, coalescing, dispatch
   with retry and failover, watchdog and cleanup.  Persists through
   job_store.py and hands artifacts to storage.py.

Usage Example
-------------
    from caverna.core import GenerationOrchestrator, config

    orchestrator = GenerationOrchestrator.from_config(config)
    job_id = orchestrator.submit("user-1", {
        "pose": "arms-crossed",
        "outfit": "hoodie-sweatpants",
        "footwear": "air-jordan-1-chicago",
    })
    job = orchestrator.wait(job_id)
"""

from caverna.core.catalog import Catalog, load_catalog
from caverna.core.config import CavernaConfig, config
from caverna.core.errors import (
    AssetStorageError,
    CatalogLookupError,
    CavernaError,
    InvalidJobStateError,
    JobNotFoundError,
    NotFoundError,
    ProviderError,
    ProviderNotFoundError,
    SelectionValidationError,
)
from caverna.core.job_store import GenerationJob, JobStatus, JobStore
from caverna.core.orchestrator import GenerationOrchestrator, GenerationOutcome
from caverna.core.prompt_builder import (
    PromptTemplateEngine,
    RenderedPrompt,
    compute_fingerprint,
    normalize_selection,
)
from caverna.core.prompt_cache import CacheEntry, PromptCache
from caverna.core.storage import AssetStorage, LocalAssetStorage
from caverna.core.validation import CompatibilityValidator, SelectionRequest, ValidationResult

__all__ = [
    "AssetStorage",
    "AssetStorageError",
    "CacheEntry",
    "Catalog",
    "CatalogLookupError",
    "CavernaConfig",
    "CavernaError",
    "CompatibilityValidator",
    "GenerationJob",
    "GenerationOrchestrator",
    "GenerationOutcome",
    "InvalidJobStateError",
    "JobNotFoundError",
    "JobStatus",
    "JobStore",
    "LocalAssetStorage",
    "NotFoundError",
    "PromptCache",
    "PromptTemplateEngine",
    "ProviderError",
    "ProviderNotFoundError",
    "RenderedPrompt",
    "SelectionRequest",
    "SelectionValidationError",
    "ValidationResult",
    "compute_fingerprint",
    "config",
    "load_catalog",
    "normalize_selection",
]
