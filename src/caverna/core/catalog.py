"""Read-only registry of selectable generation parameters.

The catalog holds every option a user can pick when composing a character
image (poses, outfits, footwear, props, and frame templates) together with
the compatibility edges between them:

- a pose lists the outfits it can be combined with
- an outfit lists the footwear it can be combined with
- footwear lists the outfits it looks right with (advisory only)
- a prop lists the poses it can be held in
- a frame template lists the props it requires

Reference data ships with the package in ``data/catalog.json`` and can be
replaced per deployment via ``CavernaConfig.catalog_path``.  It is loaded
once at startup and never mutated afterwards, so a single :class:`Catalog`
instance is safely shared across concurrent requests without locking.

Lookups of unknown ids return ``None`` (or an empty tuple) rather than
raising; callers treat absence as a validation error.
"""

from __future__ import annotations

import json
import logging
from pathlib import Path
from typing import Literal, Union

from pydantic import BaseModel, ConfigDict, Field

logger = logging.getLogger(__name__)

_PACKAGED_CATALOG = Path(__file__).resolve().parent.parent / "data" / "catalog.json"

Category = Literal["pose", "outfit", "footwear", "prop", "frame"]
FrameType = Literal["standard", "onboarding", "sequence"]

CATEGORIES: tuple[str, ...] = ("pose", "outfit", "footwear", "prop", "frame")


class _Option(BaseModel):
    model_config = ConfigDict(frozen=True)

    id: str = Field(..., min_length=1)
    name: str
    description: str = ""


class PoseOption(_Option):
    category: Literal["primary", "onboarding", "sequence"] = "primary"
    compatible_outfits: tuple[str, ...] = ()
    prompt_fragment: str
    negative_fragment: str = ""


class OutfitOption(_Option):
    compatible_footwear: tuple[str, ...] = ()
    prompt_fragment: str
    negative_fragment: str = ""


class FootwearOption(_Option):
    brand: str | None = None
    model: str | None = None
    compatible_outfits: tuple[str, ...] = ()
    prompt_fragment: str
    negative_fragment: str = ""


class PropOption(_Option):
    category: Literal["onboarding", "general", "sequence"] = "general"
    compatible_poses: tuple[str, ...] = ()
    prompt_fragment: str
    negative_fragment: str = ""


class FrameTemplate(_Option):
    """A fixed shot in an onboarding or story sequence."""

    sequence: str
    location: str
    positioning: str
    limb_metrics: str
    pose_specifics: str
    facial_expression: str
    lighting: str
    camera: str
    environmental_touches: str
    voiceover: str | None = None
    required_props: tuple[str, ...] = ()
    continuity_notes: str | None = None

    @property
    def frame_type(self) -> str:
        """Frame type encoded in the sequence tag (``onboarding-welcome`` -> ``onboarding``)."""
        return self.sequence.split("-", 1)[0]


ParameterOption = Union[PoseOption, OutfitOption, FootwearOption, PropOption, FrameTemplate]

# (source category, target category) -> attribute on the source option
_EDGES: dict[tuple[str, str], str] = {
    ("pose", "outfit"): "compatible_outfits",
    ("outfit", "footwear"): "compatible_footwear",
    ("footwear", "outfit"): "compatible_outfits",
    ("prop", "pose"): "compatible_poses",
    ("frame", "prop"): "required_props",
}

_JSON_KEYS: dict[str, tuple[str, type[BaseModel]]] = {
    "pose": ("poses", PoseOption),
    "outfit": ("outfits", OutfitOption),
    "footwear": ("footwear", FootwearOption),
    "prop": ("props", PropOption),
    "frame": ("frames", FrameTemplate),
}


class Catalog:
    """Immutable lookups over the parameter options.

    Args:
        poses, outfits, footwear, props, frames: Option sequences in display
            order.

    Raises:
        ValueError: If an id appears twice within one category.
    """

    def __init__(
        self,
        poses: list[PoseOption] | tuple[PoseOption, ...] = (),
        outfits: list[OutfitOption] | tuple[OutfitOption, ...] = (),
        footwear: list[FootwearOption] | tuple[FootwearOption, ...] = (),
        props: list[PropOption] | tuple[PropOption, ...] = (),
        frames: list[FrameTemplate] | tuple[FrameTemplate, ...] = (),
    ) -> None:
        self._options: dict[str, dict[str, ParameterOption]] = {}
        for category, items in (
            ("pose", poses),
            ("outfit", outfits),
            ("footwear", footwear),
            ("prop", props),
            ("frame", frames),
        ):
            index: dict[str, ParameterOption] = {}
            for item in items:
                if item.id in index:
                    raise ValueError(f"duplicate {category} id in catalog: {item.id}")
                index[item.id] = item
            self._options[category] = index

    # -- Lookups ------------------------------------------------------------

    def get(self, category: str, option_id: str | None) -> ParameterOption | None:
        """Return the option with *option_id*, or ``None`` if it is unknown."""
        if option_id is None:
            return None
        return self._options.get(category, {}).get(option_id)

    def pose(self, option_id: str | None) -> PoseOption | None:
        return self.get("pose", option_id)  # type: ignore[return-value]

    def outfit(self, option_id: str | None) -> OutfitOption | None:
        return self.get("outfit", option_id)  # type: ignore[return-value]

    def footwear(self, option_id: str | None) -> FootwearOption | None:
        return self.get("footwear", option_id)  # type: ignore[return-value]

    def prop(self, option_id: str | None) -> PropOption | None:
        return self.get("prop", option_id)  # type: ignore[return-value]

    def frame(self, option_id: str | None) -> FrameTemplate | None:
        return self.get("frame", option_id)  # type: ignore[return-value]

    def options(self, category: str) -> tuple[ParameterOption, ...]:
        """Return all options of a category in catalog order."""
        if category not in self._options:
            raise KeyError(f"unknown catalog category: {category}")
        return tuple(self._options[category].values())

    def ids(self, category: str) -> tuple[str, ...]:
        return tuple(option.id for option in self.options(category))

    def compatible_ids(self, category: str, option_id: str, target_category: str) -> tuple[str, ...]:
        """Return the ids in *target_category* linked from one option.

        Args:
            category: Category of the source option (e.g. ``"pose"``).
            option_id: Id of the source option.
            target_category: Category on the other end of the edge
                (e.g. ``"outfit"``).

        Returns:
            The linked ids in declaration order, or an empty tuple when the
            source id is unknown.

        Raises:
            KeyError: If the two categories are not connected.
        """
        attr = _EDGES.get((category, target_category))
        if attr is None:
            raise KeyError(f"no compatibility edge from {category} to {target_category}")
        option = self.get(category, option_id)
        if option is None:
            return ()
        return tuple(getattr(option, attr))

    def frames_for_type(self, frame_type: str) -> tuple[FrameTemplate, ...]:
        """Frame templates whose sequence tag matches *frame_type*."""
        if frame_type == "standard":
            return ()
        return tuple(
            frame
            for frame in self._options["frame"].values()
            if frame.frame_type == frame_type  # type: ignore[union-attr]
        )

    def compatible_options(
        self,
        *,
        pose: str | None = None,
        outfit: str | None = None,
        frame_type: str | None = None,
    ) -> dict[str, list[dict]]:
        """Narrow the choices given the fields already selected.

        Only categories that the supplied fields constrain are present in
        the result.  Unknown ids constrain nothing.
        """
        compatible: dict[str, list[dict]] = {}

        selected_pose = self.pose(pose)
        if selected_pose is not None:
            compatible["outfits"] = [
                o.model_dump() for o in self.options("outfit") if o.id in selected_pose.compatible_outfits
            ]
            compatible["props"] = [
                p.model_dump()
                for p in self.options("prop")
                if selected_pose.id in p.compatible_poses  # type: ignore[union-attr]
            ]

        selected_outfit = self.outfit(outfit)
        if selected_outfit is not None:
            compatible["footwear"] = [
                f.model_dump()
                for f in self.options("footwear")
                if f.id in selected_outfit.compatible_footwear
            ]

        if frame_type:
            compatible["frames"] = [f.model_dump() for f in self.frames_for_type(frame_type)]

        return compatible

    def dump(self) -> dict[str, list[dict]]:
        """Full catalog as JSON-serialisable data, keyed like ``catalog.json``."""
        return {
            json_key: [option.model_dump() for option in self.options(category)]
            for category, (json_key, _model) in _JSON_KEYS.items()
        }

    def __len__(self) -> int:
        return sum(len(index) for index in self._options.values())


def catalog_from_dict(data: dict) -> Catalog:
    """Build a :class:`Catalog` from parsed ``catalog.json`` content."""
    kwargs = {}
    for _category, (json_key, model) in _JSON_KEYS.items():
        kwargs[json_key] = [model.model_validate(raw) for raw in data.get(json_key, [])]
    return Catalog(**kwargs)


def load_catalog(path: Path | str | None = None) -> Catalog:
    """Load reference data from *path*, or the packaged catalog when ``None``.

    Unlike the forgiving JSON helpers used for runtime state, a missing or
    malformed catalog is a deployment error and is raised to the caller.

    Raises:
        FileNotFoundError: If *path* does not exist.
        ValueError: If the JSON is malformed or contains duplicate ids.
        pydantic.ValidationError: If an option is missing required fields.
    """
    source = Path(path) if path is not None else _PACKAGED_CATALOG
    with open(source, encoding="utf-8") as handle:
        data = json.load(handle)
    catalog = catalog_from_dict(data)
    logger.info("Loaded catalog from %s (%d options).", source, len(catalog))
    return catalog
