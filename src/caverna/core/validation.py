"""Compatibility validation for character image selections.

A selection is checked against the catalog before anything else touches it.
The validator is a pure function of ``(catalog, selection)``: it performs no
I/O, mutates nothing, and always returns the same :class:`ValidationResult`
for the same input.

Rules are applied in a fixed order and every applicable error is collected:

1. Required fields (pose, outfit, footwear) are present.
2. Every supplied id exists in its catalog category.
3. The outfit is compatible with the pose.
4. The footwear is compatible with the outfit.  The footwear's own outfit
   list is advisory and only produces a warning.
5. A selected prop can be held in the pose.
6. Onboarding and sequence frames need a frame id from the matching
   sequence, plus any props the frame requires.  A frame id sent with a
   standard frame is ignored with a warning.

Compatibility checks only run when both ends of the edge resolved, so an
unknown pose reports ``unknown pose id`` and nothing pose-related beyond it.
"""

from __future__ import annotations

import logging
from typing import Literal

from pydantic import BaseModel, ConfigDict, Field, field_validator

from .catalog import Catalog

logger = logging.getLogger(__name__)

REQUIRED_FIELDS: tuple[str, ...] = ("pose", "outfit", "footwear")
SEQUENCED_FRAME_TYPES: tuple[str, ...] = ("onboarding", "sequence")


class SelectionRequest(BaseModel):
    """A user-supplied, possibly partial, parameter selection.

    Required fields are optional at the type level so that a missing value
    surfaces as a validation error naming the field rather than a schema
    error.  Blank strings are treated as absent.
    """

    model_config = ConfigDict(frozen=True, populate_by_name=True, extra="ignore")

    pose: str | None = None
    outfit: str | None = None
    footwear: str | None = None
    prop: str | None = None
    frame_type: Literal["standard", "onboarding", "sequence"] | None = Field(
        default=None, alias="frameType"
    )
    frame_id: str | None = Field(default=None, alias="frameId")

    @field_validator("pose", "outfit", "footwear", "prop", "frame_id", "frame_type", mode="before")
    @classmethod
    def _blank_is_none(cls, value):
        if isinstance(value, str):
            value = value.strip()
            if not value:
                return None
        return value


class ValidationResult(BaseModel):
    """Outcome of validating one selection.

    Attributes:
        is_valid: ``True`` when ``errors`` is empty.
        errors: Human-readable reasons in rule order.
        warnings: Non-blocking observations.
        suggestions: Corrective option ids, de-duplicated, first seen first.
    """

    is_valid: bool
    errors: list[str] = Field(default_factory=list)
    warnings: list[str] = Field(default_factory=list)
    suggestions: list[str] = Field(default_factory=list)


class CompatibilityValidator:
    """Check selections against the compatibility edges of a catalog.

    Args:
        catalog: Reference data.  Injected so tests can use a small fixture
            catalog.
    """

    def __init__(self, catalog: Catalog) -> None:
        self.catalog = catalog

    def validate(self, selection: SelectionRequest) -> ValidationResult:
        """Validate *selection* and return every applicable error.

        Args:
            selection: The selection to check.

        Returns:
            A :class:`ValidationResult`; ``is_valid`` is ``False`` whenever
            at least one error was recorded.
        """
        errors: list[str] = []
        warnings: list[str] = []
        suggestions: list[str] = []

        def suggest(ids) -> None:
            for option_id in ids:
                if option_id not in suggestions:
                    suggestions.append(option_id)

        # --- Rule 1: required fields -------------------------------------
        for field_name in REQUIRED_FIELDS:
            if getattr(selection, field_name) is None:
                errors.append(f"missing required parameter: {field_name}")
                suggest(self.catalog.ids(field_name))

        # --- Rule 2: ids exist -------------------------------------------
        pose = self._resolve("pose", selection.pose, errors, suggest)
        outfit = self._resolve("outfit", selection.outfit, errors, suggest)
        footwear = self._resolve("footwear", selection.footwear, errors, suggest)
        prop = self._resolve("prop", selection.prop, errors, suggest)

        frame_type = selection.frame_type or "standard"
        frame = None
        if frame_type in SEQUENCED_FRAME_TYPES:
            frame = self._resolve("frame", selection.frame_id, errors, suggest)

        # --- Rule 3: outfit fits pose ------------------------------------
        if pose is not None and outfit is not None:
            if outfit.id not in pose.compatible_outfits:
                errors.append("outfit incompatible with pose")
                suggest(pose.compatible_outfits)

        # --- Rule 4: footwear fits outfit --------------------------------
        if outfit is not None and footwear is not None:
            if footwear.id not in outfit.compatible_footwear:
                errors.append("footwear incompatible with outfit")
                suggest(outfit.compatible_footwear)
            elif footwear.compatible_outfits and outfit.id not in footwear.compatible_outfits:
                warnings.append(f"{footwear.name} is not a recommended match for {outfit.name}")

        # --- Rule 5: prop fits pose --------------------------------------
        if prop is not None and pose is not None:
            if pose.id not in prop.compatible_poses:
                errors.append("prop incompatible with pose")
                suggest(
                    candidate.id
                    for candidate in self.catalog.options("prop")
                    if pose.id in candidate.compatible_poses  # type: ignore[union-attr]
                )

        # --- Rule 6: frames ----------------------------------------------
        if frame_type in SEQUENCED_FRAME_TYPES:
            if selection.frame_id is None:
                errors.append(f"frame_id is required for {frame_type} frames")
                suggest(f.id for f in self.catalog.frames_for_type(frame_type))
            elif frame is not None:
                if frame.frame_type != frame_type:
                    errors.append(f"frame {frame.id} does not belong to {frame_type} sequence")
                    suggest(f.id for f in self.catalog.frames_for_type(frame_type))
                for required in frame.required_props:
                    if selection.prop != required:
                        errors.append(f"frame {frame.id} requires prop {required}")
                        suggest([required])
        elif selection.frame_id is not None:
            warnings.append(f"frame_id {selection.frame_id} is ignored for standard frames")

        result = ValidationResult(
            is_valid=not errors,
            errors=errors,
            warnings=warnings,
            suggestions=suggestions,
        )
        if not result.is_valid:
            logger.debug("Selection rejected: %s", "; ".join(errors))
        return result

    def _resolve(self, category: str, option_id: str | None, errors: list[str], suggest):
        """Look up *option_id*; record an unknown-id error when it is missing."""
        if option_id is None:
            return None
        option = self.catalog.get(category, option_id)
        if option is None:
            errors.append(f"unknown {category} id: {option_id}")
            suggest(self.catalog.ids(category))
        return option
