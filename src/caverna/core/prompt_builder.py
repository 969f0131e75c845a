"""Deterministic prompt rendering for character image selections.

A validated selection is turned into a positive prompt, a matching negative
prompt, and a fingerprint that identifies the selection.  Rendering is a
pure function of the selection and the catalog: the same selection always
produces byte-identical text, whatever order its fields were set in.

Positive Prompt Structure
-------------------------
Sections are separated by double newlines::

    [Fixed: character foundation]

    [Pose fragment]

    [Outfit fragment]

    [Footwear fragment]

    [Prop fragment]                     (only when a prop is selected)

    [Frame block]                       (only for onboarding/sequence frames)

    [Fixed: cave environment foundation]

    [Technical settings for the frame type]

    [Fixed: brand accuracy]

    [Fixed: texture / resolution boost]

The negative prompt is a comma-joined list: the global safeguards, the
hands/anatomy/quality/consistency lists, a frame-type negative for onboarding
and sequence frames, then the negative fragment of every selected option.

Fingerprints
------------
The fingerprint is a SHA-256 digest of the normalised selection, not of the
rendered text.  Changing the wording below does not change any fingerprint.

Usage
-----
::

    engine = PromptTemplateEngine(catalog)
    rendered = engine.render(SelectionRequest(
        pose="arms-crossed",
        outfit="hoodie-sweatpants",
        footwear="air-jordan-1-chicago",
    ))
    rendered.positive_prompt
    rendered.combined()   # single-field form for providers without a negative input
"""

from __future__ import annotations

import hashlib
import json
import logging
from typing import Any

from pydantic import BaseModel, ConfigDict

from .catalog import Catalog, FrameTemplate
from .errors import CatalogLookupError
from .validation import SelectionRequest

logger = logging.getLogger(__name__)

# ---------------------------------------------------------------------------
# Fixed character and brand sections.
# These define the identity of the character.  Variation comes only from
# the catalog options.
# ---------------------------------------------------------------------------

_CHARACTER_FOUNDATION = (
    "CAPITAO CAVERNA CHARACTER FOUNDATION:\n"
    "A confident gray and cream anthropomorphic wolf with intense red eyes, standing upright.\n"
    "PROPORTIONS: Athletic humanoid build, six feet tall, broad shoulders tapering to a "
    "defined waist, upright posture.\n"
    "FACE: Sharp wolf muzzle with a black nose, pointed ears alert and forward, intelligent "
    "red eyes, a slight confident smile.\n"
    "FUR: Gray coat with a cream chest, belly and inner arms, natural fur texture with "
    "subtle muscle definition.\n"
    "HANDS: Cream-coloured hands with exactly five fingers each, correct thumb placement, "
    "natural spacing.\n"
    "CONSISTENCY: Same proportions, colouring and silhouette in every pose and outfit."
)

_ENVIRONMENT_FOUNDATION = (
    "CAVE ENVIRONMENT FOUNDATION:\n"
    "Physically-based render of cathedral-scale granite and limestone architecture.\n"
    "STRUCTURE: Massive stone pillars, natural archways with visible geological strata, "
    "surfaces worn by water erosion.\n"
    "LIGHTING: Warm amber crystal formations as the key light (2700K-3000K), strong "
    "chiaroscuro, volumetric rays through crystal clusters.\n"
    "DETAILS: Stalactites and stalagmites with mineral deposits, underground pools "
    "reflecting crystal light, faint ancient paintings on distant walls.\n"
    "RENDERING: Subsurface scattering on crystals, bump-mapped rock, light atmospheric mist."
)

_BRAND_ACCURACY = (
    "BRAND ACCURACY:\n"
    "Consistent character design and brand palette (gray #808080, cream #F5F5DC, red eyes "
    "#DC143C), recognisable silhouette, brand-compliant styling in every variation."
)

_TEXTURE_BOOST = (
    "TEXTURE / RESOLUTION BOOST:\n"
    "Ultra-high resolution (4K minimum), individual fur strand definition, realistic fabric "
    "physics, global illumination, HDR lighting, PBR materials, crisp anti-aliased edges."
)

_TECHNICAL_SPECS: dict[str, str] = {
    "standard": (
        "Ultra-high-resolution, physically-based render, photorealistic quality, "
        "4K resolution minimum"
    ),
    "onboarding": (
        "Cinematic quality rendering, dramatic lighting, narrative composition, "
        "enhanced detail for storytelling"
    ),
    "sequence": (
        "Consistent lighting and composition across frames, narrative continuity, "
        "smooth visual flow"
    ),
}

_NEGATIVE_GLOBAL = (
    "deformed hands, extra fingers, missing fingers, malformed limbs, disproportionate body "
    "parts, unrealistic anatomy, blurry features, low resolution, artifacts, floating objects, "
    "disconnected body parts, unnatural poses, inconsistent lighting, oversaturation, "
    "incorrect brand colors, character inconsistency"
)

_NEGATIVE_HANDS = (
    "malformed hands, incorrect finger count, unnatural hand positioning"
)
_NEGATIVE_ANATOMY = "incorrect proportions, floating limbs"
_NEGATIVE_QUALITY = "pixelated, poor quality, amateur art, sketch-like, unfinished"
_NEGATIVE_CONSISTENCY = "wrong proportions, inconsistent features"

_FRAME_TYPE_NEGATIVES: dict[str, str] = {
    "onboarding": (
        "non-narrative composition, inconsistent storytelling elements, poor cinematic quality"
    ),
    "sequence": (
        "inconsistent lighting across frames, character proportion changes, "
        "environmental discontinuity"
    ),
}

# Canonical field order for normalisation and fingerprinting.
_SELECTION_FIELDS: tuple[str, ...] = (
    "pose",
    "outfit",
    "footwear",
    "prop",
    "frame_type",
    "frame_id",
)


class RenderedPrompt(BaseModel):
    """A rendered prompt pair and the fingerprint of the selection behind it."""

    model_config = ConfigDict(frozen=True)

    positive_prompt: str
    negative_prompt: str
    fingerprint: str

    def combined(self) -> str:
        """Single-string form for providers that accept one prompt field."""
        return f"{self.positive_prompt}\n\nNEGATIVE PROMPT: {self.negative_prompt}"


def normalize_selection(selection: SelectionRequest | dict[str, Any]) -> dict[str, str | None]:
    """Return the canonical ordered structure for *selection*.

    Every field is present, in a fixed order, with ``None`` standing in for
    an absent optional.  ``frame_type`` defaults to ``"standard"`` and
    ``frame_id`` is dropped (set to ``None``) for standard frames, since it is
    ignored there.

    Args:
        selection: A :class:`SelectionRequest` or a plain mapping with the
            same keys (camelCase aliases accepted).

    Returns:
        Dictionary keyed by pose, outfit, footwear, prop, frame_type,
        frame_id in that order.
    """
    if not isinstance(selection, SelectionRequest):
        selection = SelectionRequest.model_validate(selection)

    normalized: dict[str, str | None] = {
        name: getattr(selection, name) for name in _SELECTION_FIELDS
    }
    if normalized["frame_type"] is None:
        normalized["frame_type"] = "standard"
    if normalized["frame_type"] == "standard":
        normalized["frame_id"] = None
    return normalized


def compute_fingerprint(selection: SelectionRequest | dict[str, Any]) -> str:
    """SHA-256 hex digest of the normalised selection.

    The structure is serialised as compact JSON with the fixed key order, so
    two selections that differ only in how they were built hash identically.
    """
    normalized = normalize_selection(selection)
    payload = json.dumps(normalized, separators=(",", ":"), ensure_ascii=False)
    return hashlib.sha256(payload.encode("utf-8")).hexdigest()


def _frame_block(frame: FrameTemplate) -> str:
    lines = [
        f"EXACT LOCATION: {frame.location}",
        f"CHARACTER POSITIONING: {frame.positioning}",
        f"LIMB METRICS: {frame.limb_metrics}",
        f"POSE SPECIFICS: {frame.pose_specifics}",
        f"FACIAL EXPRESSION: {frame.facial_expression}",
        f"LIGHTING ON CHARACTER: {frame.lighting}",
        f"CAMERA: {frame.camera}",
        f"ENVIRONMENTAL TOUCHES: {frame.environmental_touches}",
    ]
    if frame.continuity_notes:
        lines.append(f"CONTINUITY: {frame.continuity_notes}")
    return "\n".join(lines)


class PromptTemplateEngine:
    """Render validated selections into prompt pairs.

    The engine does not re-validate.  Callers must run
    :class:`~caverna.core.validation.CompatibilityValidator` first; an id
    that still fails to resolve raises :class:`CatalogLookupError`.

    Args:
        catalog: Reference data used to look up prompt fragments.
    """

    def __init__(self, catalog: Catalog) -> None:
        self.catalog = catalog

    def render(self, selection: SelectionRequest | dict[str, Any]) -> RenderedPrompt:
        """Render *selection* into a :class:`RenderedPrompt`.

        Raises:
            CatalogLookupError: If a selected id is not in the catalog.
        """
        normalized = normalize_selection(selection)
        frame_type = normalized["frame_type"] or "standard"

        pose = self._lookup("pose", normalized["pose"])
        outfit = self._lookup("outfit", normalized["outfit"])
        footwear = self._lookup("footwear", normalized["footwear"])
        prop = self._lookup("prop", normalized["prop"]) if normalized["prop"] else None
        frame = (
            self._lookup("frame", normalized["frame_id"])
            if frame_type != "standard" and normalized["frame_id"]
            else None
        )

        # --- Positive prompt ---------------------------------------------
        parts: list[str] = [
            _CHARACTER_FOUNDATION,
            pose.prompt_fragment,
            outfit.prompt_fragment,
            footwear.prompt_fragment,
        ]
        if prop is not None:
            parts.append(prop.prompt_fragment)
        if frame is not None:
            parts.append(_frame_block(frame))
        parts.append(_ENVIRONMENT_FOUNDATION)
        parts.append(_TECHNICAL_SPECS.get(frame_type, _TECHNICAL_SPECS["standard"]))
        parts.append(_BRAND_ACCURACY)
        parts.append(_TEXTURE_BOOST)

        # --- Negative prompt ---------------------------------------------
        negatives: list[str] = [
            _NEGATIVE_GLOBAL,
            _NEGATIVE_HANDS,
            _NEGATIVE_ANATOMY,
            _NEGATIVE_QUALITY,
            _NEGATIVE_CONSISTENCY,
        ]
        if frame_type in _FRAME_TYPE_NEGATIVES:
            negatives.append(_FRAME_TYPE_NEGATIVES[frame_type])
        for option in (pose, outfit, footwear, prop):
            if option is not None and option.negative_fragment:
                negatives.append(option.negative_fragment)

        return RenderedPrompt(
            positive_prompt="\n\n".join(part.strip() for part in parts if part.strip()),
            negative_prompt=", ".join(negatives),
            fingerprint=compute_fingerprint(normalized),
        )

    def _lookup(self, category: str, option_id: str | None):
        option = self.catalog.get(category, option_id)
        if option is None:
            logger.error("Unvalidated selection reached the prompt engine: %s=%s", category, option_id)
            raise CatalogLookupError(category, str(option_id))
        return option
