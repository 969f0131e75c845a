"""Placeholder provider for development, demos and tests.

Renders a solid-colour PNG whose colour is derived from the prompt digest,
so the same prompt always yields the same bytes.  ``mock_delay_seconds``
simulates provider latency and ``mock_failure_rate`` injects retryable
failures.
"""

from __future__ import annotations

import hashlib
import logging
import random
import time
from io import BytesIO

from PIL import Image, ImageDraw

from caverna.core.config import CavernaConfig

from .base import ProviderBase, ProviderResult, provider_registry

logger = logging.getLogger(__name__)

_MOCK_SIZE = (64, 64)


@provider_registry.register
class MockProvider(ProviderBase):
    name = "mock"
    description = "Deterministic placeholder images rendered with Pillow"

    def __init__(self, config: CavernaConfig, rng: random.Random | None = None) -> None:
        super().__init__(config)
        self.delay_seconds = config.mock_delay_seconds
        self.failure_rate = config.mock_failure_rate
        self._rng = rng or random.Random()

    def render(self, positive_prompt: str, negative_prompt: str) -> ProviderResult:
        if self.delay_seconds > 0:
            time.sleep(self.delay_seconds)

        if self.failure_rate > 0 and self._rng.random() < self.failure_rate:
            logger.info("Mock provider injecting a failure.")
            return ProviderResult.failed("mock provider simulated failure", retryable=True)

        digest = hashlib.sha256(f"{positive_prompt}\x00{negative_prompt}".encode("utf-8")).digest()
        colour = (digest[0], digest[1], digest[2])
        accent = (255 - digest[0], 255 - digest[1], 255 - digest[2])

        image = Image.new("RGB", _MOCK_SIZE, colour)
        draw = ImageDraw.Draw(image)
        draw.rectangle((16, 16, 47, 47), outline=accent, width=2)

        buffer = BytesIO()
        image.save(buffer, format="PNG")
        return ProviderResult.ok(buffer.getvalue())
