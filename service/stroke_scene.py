"""Vector scene construction for one animation frame."""

from __future__ import annotations

from dataclasses import dataclass
from typing import Sequence, Tuple

from domain.stroke_animation import (
    INVALID_STROKE_CODE,
    RGBA,
    AnimationConfig,
    RenderValidationError,
    RevealState,
    Stroke,
)
from service.stroke_geometry import StrokeGeometry

GUIDE_LAYER = "guide"
INK_LAYER = "ink"


@dataclass(frozen=True)
class ScenePath:
    """A round-capped, round-joined, unfilled stroke.

    ``reveal_fraction`` below 1 asks the backend to draw only the leading
    part of the path by arc length.
    """

    stroke_id: str
    geometry: StrokeGeometry
    color_rgba: RGBA
    width: float
    reveal_fraction: float = 1.0


@dataclass(frozen=True)
class SceneLayer:
    """Named group of paths, composited as one unit."""

    name: str
    paths: Tuple[ScenePath, ...]


@dataclass(frozen=True)
class VectorScene:
    """Backend-agnostic frame description, back to front, without background."""

    view_box: Tuple[float, float, float, float]
    layers: Tuple[SceneLayer, ...]


def build_scene(
    reveal_state: RevealState,
    strokes: Sequence[Stroke],
    geometries: Sequence[StrokeGeometry],
    config: AnimationConfig,
) -> VectorScene:
    """Build the guide and ink layers for a reveal state."""
    if len(strokes) != len(geometries):
        raise RenderValidationError(
            INVALID_STROKE_CODE, "strokes and geometries differ in length", "strokes"
        )
    drawn_count = reveal_state.fully_drawn_count
    if drawn_count > len(strokes):
        raise RenderValidationError(
            INVALID_STROKE_CODE,
            "reveal state names more strokes than exist",
            "fully_drawn_stroke_ids",
        )

    layers: list[SceneLayer] = []
    if config.guide_rgba is not None:
        layers.append(
            SceneLayer(
                name=GUIDE_LAYER,
                paths=tuple(
                    ScenePath(
                        stroke_id=stroke.stroke_id,
                        geometry=geometry,
                        color_rgba=config.guide_rgba,
                        width=config.stroke_width,
                    )
                    for stroke, geometry in zip(strokes, geometries)
                ),
            )
        )

    ink_paths = [
        ScenePath(
            stroke_id=strokes[index].stroke_id,
            geometry=geometries[index],
            color_rgba=config.stroke_rgba,
            width=config.stroke_width,
        )
        for index in range(drawn_count)
    ]
    if reveal_state.partial_stroke_id is not None:
        if drawn_count >= len(strokes):
            raise RenderValidationError(
                INVALID_STROKE_CODE,
                "partial stroke follows the last stroke",
                "partial_stroke_id",
            )
        partial = strokes[drawn_count]
        if partial.stroke_id != reveal_state.partial_stroke_id:
            raise RenderValidationError(
                INVALID_STROKE_CODE,
                f"partial stroke {reveal_state.partial_stroke_id!r} is out of order",
                "partial_stroke_id",
            )
        ink_paths.append(
            ScenePath(
                stroke_id=partial.stroke_id,
                geometry=geometries[drawn_count],
                color_rgba=config.stroke_rgba,
                width=config.stroke_width,
                reveal_fraction=reveal_state.partial_fraction,
            )
        )
    layers.append(SceneLayer(name=INK_LAYER, paths=tuple(ink_paths)))

    return VectorScene(view_box=config.view_box, layers=tuple(layers))


def build_completed_scene(
    strokes: Sequence[Stroke],
    geometries: Sequence[StrokeGeometry],
    config: AnimationConfig,
) -> VectorScene:
    """Build the scene of the finished glyph."""
    completed = RevealState(
        fully_drawn_stroke_ids=tuple(stroke.stroke_id for stroke in strokes),
        partial_stroke_id=None,
        partial_fraction=0.0,
    )
    return build_scene(completed, strokes, geometries, config)
