"""Configuration management for the Caverna Image Engine.

This module provides centralized configuration management using Pydantic Settings.
All configuration is loaded from environment variables with the CAVERNA_ prefix,
allowing easy customization without code changes.

Environment Variable Loading
-----------------------------
Configuration values are loaded in the following priority order:
1. Environment variables (CAVERNA_* prefix)
2. .env file in the project root
3. Default values defined in CavernaConfig

Example .env file:
    CAVERNA_PROVIDERS=["diffusion", "mock"]
    CAVERNA_PROVIDER_TIMEOUT_SECONDS=120
    CAVERNA_MAX_PENDING_SECONDS=900
    CAVERNA_DATA_DIR=data

Global Configuration Instance
------------------------------
A global `config` instance is created automatically at module import time.
This ensures a single source of truth for all configuration values across
the application.

Usage Example
-------------
    from caverna.core.config import config

    print(config.jobs_db_path)
    print(config.providers)

Directory Management
--------------------
The configuration automatically creates required directories on initialization:
- data_dir: jobs database and other runtime state
- gallery_dir: stored generation artifacts (served as static files)
- models_dir: cache for diffusion model weights

Dispatch and Watchdog
---------------------
Provider calls are wrapped in a timeout and retried with exponential backoff
(``dispatch_*`` settings).  A PENDING job older than ``max_pending_seconds``
is resolved to FAILED by the watchdog, which sweeps every
``watchdog_interval_seconds``.

See Also
--------
- CavernaConfig: Full configuration class documentation
"""

from pathlib import Path
from typing import Literal

from pydantic import Field
from pydantic_settings import BaseSettings, SettingsConfigDict


class CavernaConfig(BaseSettings):
    """Main configuration for the Caverna Image Engine.

    Values are loaded from environment variables with the CAVERNA_ prefix,
    with fallback to defaults defined here.

    Attributes
    ----------
    Paths:
        data_dir : Path
            Directory for runtime state (jobs database)
        gallery_dir : Path
            Directory where the local asset store writes artifacts
        catalog_path : Path | None
            Optional catalog JSON overriding the packaged reference data
        models_dir : Path
            Cache directory for diffusion model weights

    Server:
        server_host : str
            Bind address for uvicorn
        server_port : int
            Port for uvicorn (1024-65535)
        public_base_url : str
            URL prefix under which stored artifacts are published
        log_level : str
            Log level passed to uvicorn

    Prompt cache:
        prompt_cache_max_entries : int
            LRU capacity
        prompt_cache_ttl_seconds : float | None
            Optional entry lifetime; None disables expiry

    Generation:
        providers : list[str]
            Provider names in failover order (first is preferred)
        provider_timeout_seconds : float
            Upper bound for a single provider call
        dispatch_max_attempts : int
            Attempts per provider before failing over
        dispatch_base_delay_seconds, dispatch_max_delay_seconds,
        dispatch_backoff_multiplier, dispatch_jitter : float
            Exponential backoff parameters
        provider_max_in_flight : int
            Calls allowed to run at once per provider, including calls
            abandoned after a timeout
        circuit_failure_threshold, circuit_success_threshold : int
        circuit_recovery_seconds, circuit_window_seconds : float
            Per-provider circuit breaker thresholds
        max_pending_seconds : float
            Watchdog threshold for PENDING jobs
        watchdog_interval_seconds : float
            How often the API runs the watchdog sweep
        worker_threads : int
            Size of the dispatch thread pool
        reuse_completed_jobs : bool
            Return an existing COMPLETE job for an identical request

    Diffusion provider:
        diffusion_model_id, torch_dtype, device, num_inference_steps,
        guidance_scale, image_width, image_height,
        enable_attention_slicing, enable_model_cpu_offload

    Notes
    -----
    - All directories are created automatically if they don't exist
    - Configuration is immutable after initialization
    """

    model_config = SettingsConfigDict(
        env_file=".env",
        env_file_encoding="utf-8",
        env_prefix="CAVERNA_",
        case_sensitive=False,
    )

    # Paths
    data_dir: Path = Field(
        default=Path("data"),
        description="Directory for runtime state (jobs database)",
    )
    gallery_dir: Path = Field(
        default=Path("data/gallery"),
        description="Directory where generated images are stored",
    )
    catalog_path: Path | None = Field(
        default=None,
        description="Catalog JSON file overriding the packaged reference data",
    )
    models_dir: Path = Field(
        default=Path("models"),
        description="Directory to cache diffusion models",
    )

    # Server settings
    server_host: str = Field(
        default="0.0.0.0",
        description="Server bind address (0.0.0.0 for local network)",
    )
    server_port: int = Field(
        default=8080,
        description="Server port",
        ge=1024,
        le=65535,
    )
    public_base_url: str = Field(
        default="/static/gallery",
        description="URL prefix under which stored images are published",
    )
    log_level: Literal["critical", "error", "warning", "info", "debug"] = Field(
        default="info",
        description="Log level passed to uvicorn",
    )

    # Prompt cache
    prompt_cache_max_entries: int = Field(default=1000, ge=1)
    prompt_cache_ttl_seconds: float | None = Field(
        default=None,
        description="Cache entry lifetime in seconds (None = no expiry)",
        gt=0,
    )

    # Generation lifecycle
    providers: list[str] = Field(
        default_factory=lambda: ["mock"],
        description="Provider names in failover order",
        min_length=1,
    )
    provider_timeout_seconds: float = Field(default=120.0, gt=0)
    dispatch_max_attempts: int = Field(default=3, ge=1, le=10)
    dispatch_base_delay_seconds: float = Field(default=1.0, ge=0)
    dispatch_max_delay_seconds: float = Field(default=30.0, ge=0)
    dispatch_backoff_multiplier: float = Field(default=2.0, ge=1)
    dispatch_jitter: float = Field(
        default=0.1,
        description="Fraction of the computed delay added as random jitter",
        ge=0,
        le=1,
    )
    provider_max_in_flight: int = Field(
        default=8,
        description="Concurrent calls per provider; hung calls hold a slot until they return",
        ge=1,
    )
    circuit_failure_threshold: int = Field(
        default=5,
        description="Failed calls within the window that open a provider's circuit",
        ge=1,
    )
    circuit_recovery_seconds: float = Field(
        default=30.0,
        description="Time an open circuit waits before allowing a trial call",
        ge=0,
    )
    circuit_success_threshold: int = Field(default=2, ge=1)
    circuit_window_seconds: float = Field(default=60.0, gt=0)
    max_pending_seconds: float = Field(
        default=900.0,
        description="PENDING jobs older than this are failed by the watchdog",
        gt=0,
    )
    watchdog_interval_seconds: float = Field(default=30.0, gt=0)
    worker_threads: int = Field(default=4, ge=1, le=64)
    reuse_completed_jobs: bool = Field(
        default=False,
        description="Return an existing COMPLETE job for an identical request",
    )

    # Mock provider
    mock_delay_seconds: float = Field(default=1.0, ge=0)
    mock_failure_rate: float = Field(default=0.0, ge=0, le=1)

    # Diffusion provider
    diffusion_model_id: str = Field(
        default="stabilityai/sdxl-turbo",
        description="HuggingFace model ID for the local diffusion provider",
    )
    torch_dtype: Literal["bfloat16", "float16", "float32"] = Field(
        default="bfloat16",
        description="Torch dtype for model inference",
    )
    device: str = Field(
        default="cuda",
        description="Device to run inference on (cuda/cpu)",
    )
    num_inference_steps: int = Field(default=4, ge=1, le=100)
    guidance_scale: float = Field(default=0.0, ge=0)
    image_width: int = Field(default=1024, ge=256, le=2048)
    image_height: int = Field(default=1024, ge=256, le=2048)
    enable_attention_slicing: bool = Field(
        default=False,
        description="Enable attention slicing for lower VRAM usage",
    )
    enable_model_cpu_offload: bool = Field(
        default=False,
        description="Enable CPU offloading for memory-constrained setups",
    )

    def __init__(self, **kwargs):
        """Initialize configuration and create required directories.

        Args:
            **kwargs: Configuration overrides (typically from environment variables)
        """
        super().__init__(**kwargs)

        self.data_dir.mkdir(parents=True, exist_ok=True)
        self.gallery_dir.mkdir(parents=True, exist_ok=True)
        self.models_dir.mkdir(parents=True, exist_ok=True)

    @property
    def jobs_db_path(self) -> Path:
        """Location of the SQLite jobs database."""
        return self.data_dir / "jobs.db"


# Global configuration instance
# Created at import time; loads values from CAVERNA_* environment variables
# and the .env file.
config = CavernaConfig()
