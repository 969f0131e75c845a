"""Local HuggingFace diffusers provider.

This module provides :class:`DiffusionProvider`, which runs a text-to-image
diffusers pipeline in-process.  ``torch`` and ``diffusers`` are imported
lazily so the rest of the engine runs without them; install the
``diffusion`` extra to use this provider.

Key Responsibilities
--------------------
- **Lazy model loading**: the pipeline is loaded on the first ``render()``.
- **Turbo-model enforcement**: models whose HuggingFace ID contains
  ``"turbo"`` (case-insensitive) have ``guidance_scale`` forced to 0.0.
- **Deterministic generation**: the seed is derived from the prompt digest,
  so the same prompt pair reproduces the same image.
- **CUDA memory management**: ``close()`` drops the pipeline, runs the
  garbage collector and empties the CUDA cache.

A CUDA out-of-memory error is reported as a non-retryable failure so the
orchestrator fails over instead of hammering the same device.
"""

from __future__ import annotations

import gc
import hashlib
import logging
import threading
from io import BytesIO

from caverna.core.config import CavernaConfig

from .base import ProviderBase, ProviderResult, provider_registry

logger = logging.getLogger(__name__)

_DTYPE_MAP: dict | None = None


def _get_dtype_map() -> dict:
    """Return the dtype string -> ``torch.dtype`` mapping, importing torch lazily."""
    global _DTYPE_MAP
    if _DTYPE_MAP is None:
        import torch

        _DTYPE_MAP = {
            "bfloat16": torch.bfloat16,
            "float16": torch.float16,
            "float32": torch.float32,
        }
    return _DTYPE_MAP


def seed_for_prompt(positive_prompt: str, negative_prompt: str) -> int:
    """Stable 32-bit seed derived from the prompt pair."""
    digest = hashlib.sha256(f"{positive_prompt}\x00{negative_prompt}".encode("utf-8")).digest()
    return int.from_bytes(digest[:4], "big")


@provider_registry.register
class DiffusionProvider(ProviderBase):
    """Run a diffusers text-to-image pipeline on the local device.

    Attributes:
        _pipeline: The loaded diffusers pipeline, or ``None``.
        _lock: Serialises pipeline calls; one pipeline cannot run two
            generations at once.
    """

    name = "diffusion"
    description = "Local HuggingFace diffusers pipeline"

    def __init__(self, config: CavernaConfig) -> None:
        super().__init__(config)
        self.model_id = config.diffusion_model_id
        self._pipeline = None
        self._lock = threading.Lock()

    # -- Model lifecycle ----------------------------------------------------

    def load_model(self) -> None:
        """Load the configured pipeline if it is not loaded yet.

        Raises:
            RuntimeError: If the model cannot be loaded.
        """
        if self._pipeline is not None:
            return

        import torch
        from diffusers import AutoPipelineForText2Image

        torch_dtype = _get_dtype_map().get(self.config.torch_dtype, torch.bfloat16)

        logger.info(
            "Loading model '%s' (dtype=%s, device=%s, cache=%s).",
            self.model_id,
            self.config.torch_dtype,
            self.config.device,
            self.config.models_dir,
        )

        try:
            pipeline = AutoPipelineForText2Image.from_pretrained(
                self.model_id,
                torch_dtype=torch_dtype,
                cache_dir=str(self.config.models_dir),
            )

            if self.config.enable_model_cpu_offload:
                pipeline.enable_sequential_cpu_offload()
                logger.info("Sequential CPU offloading enabled.")
            else:
                pipeline = pipeline.to(self.config.device)

            if self.config.enable_attention_slicing:
                pipeline.enable_attention_slicing()
                logger.info("Attention slicing enabled.")

            self._pipeline = pipeline
            logger.info("Model '%s' loaded successfully.", self.model_id)

        except Exception:
            self._pipeline = None
            logger.exception("Failed to load model '%s'.", self.model_id)
            raise

    def close(self) -> None:
        """Unload the pipeline and free GPU memory.  Safe to call twice."""
        if self._pipeline is None:
            return

        logger.info("Unloading model '%s'.", self.model_id)
        del self._pipeline
        self._pipeline = None
        gc.collect()

        try:
            import torch

            if torch.cuda.is_available():
                torch.cuda.empty_cache()
                logger.info("CUDA cache cleared after unloading '%s'.", self.model_id)
        except ImportError:
            pass

    @property
    def is_loaded(self) -> bool:
        return self._pipeline is not None

    # -- Rendering ----------------------------------------------------------

    def render(self, positive_prompt: str, negative_prompt: str) -> ProviderResult:
        with self._lock:
            try:
                self.load_model()
            except ImportError as e:
                return ProviderResult.failed(
                    f"diffusion provider unavailable: {e}", retryable=False
                )

            import torch

            guidance_scale = self.config.guidance_scale
            if "turbo" in self.model_id.lower() and guidance_scale != 0.0:
                logger.warning(
                    "Turbo model detected ('%s'), forcing guidance_scale from %.1f to 0.0.",
                    self.model_id,
                    guidance_scale,
                )
                guidance_scale = 0.0

            seed = seed_for_prompt(positive_prompt, negative_prompt)
            generator = torch.Generator(device=self.config.device).manual_seed(seed)

            pipeline_kwargs: dict = {
                "prompt": positive_prompt,
                "width": self.config.image_width,
                "height": self.config.image_height,
                "num_inference_steps": self.config.num_inference_steps,
                "guidance_scale": guidance_scale,
                "generator": generator,
            }
            # Turbo pipelines ignore the negative prompt when guidance is off
            if negative_prompt and guidance_scale > 0.0:
                pipeline_kwargs["negative_prompt"] = negative_prompt

            try:
                output = self._pipeline(**pipeline_kwargs)
            except torch.cuda.OutOfMemoryError as e:
                logger.error("CUDA out of memory while rendering with '%s'.", self.model_id)
                return ProviderResult.failed(f"out of GPU memory: {e}", retryable=False)

            image = output.images[0]
            buffer = BytesIO()
            image.save(buffer, format="PNG")
            logger.info("Image generated successfully (seed=%d).", seed)
            return ProviderResult.ok(buffer.getvalue())
