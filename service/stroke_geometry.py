"""Stroke path flattening, arc length and arc-length truncation."""

from __future__ import annotations

from dataclasses import dataclass
from typing import Sequence, Tuple

import numpy as np
from svg.path import Close, Line, Move, parse_path

from domain.stroke_animation import (
    INVALID_PATH_CODE,
    RenderValidationError,
    Stroke,
    StrokePath,
)

# Fixed per-segment sample count bounds the chord error of curves and arcs
# independently of how many segments a stroke has.
CURVE_SAMPLES_PER_SEGMENT = 32


@dataclass(frozen=True, eq=False)
class StrokeGeometry:
    """Piecewise-linear rendition of one stroke path.

    Each subpath is an (N, 2) float array of points. ``length`` is the sum
    of the polyline lengths and is the value reported as the stroke length,
    so measured length and truncated geometry always agree.
    """

    subpaths: Tuple[np.ndarray, ...]
    length: float

    def truncate(self, fraction: float) -> "StrokeGeometry":
        """Return the leading ``fraction`` of the path by arc length."""
        if fraction >= 1.0:
            return self
        if fraction <= 0.0 or self.length <= 0.0:
            return StrokeGeometry(subpaths=(), length=0.0)

        remaining = self.length * fraction
        kept: list[np.ndarray] = []
        for points in self.subpaths:
            if remaining <= 0.0:
                break
            cumulative = cumulative_lengths(points)
            subpath_length = float(cumulative[-1])
            if subpath_length <= remaining:
                kept.append(points)
                remaining -= subpath_length
                continue
            kept.append(cut_polyline(points, cumulative, remaining))
            break
        return StrokeGeometry(subpaths=tuple(kept), length=self.length * fraction)


def cumulative_lengths(points: np.ndarray) -> np.ndarray:
    """Return the arc length at every vertex of a polyline."""
    if len(points) < 2:
        return np.zeros(len(points))
    steps = np.hypot(*np.diff(points, axis=0).T)
    return np.concatenate(([0.0], np.cumsum(steps)))


def cut_polyline(
    points: np.ndarray, cumulative: np.ndarray, target_length: float
) -> np.ndarray:
    """Cut a polyline at ``target_length``, interpolating the last vertex."""
    end_index = int(np.searchsorted(cumulative, target_length, side="right"))
    end_index = min(max(end_index, 1), len(points) - 1)
    start_length = cumulative[end_index - 1]
    step_length = cumulative[end_index] - start_length
    ratio = 0.0 if step_length <= 0 else (target_length - start_length) / step_length
    tail = points[end_index - 1] + (points[end_index] - points[end_index - 1]) * ratio
    return np.vstack((points[:end_index], tail))


def complex_points_to_array(points: Sequence[complex]) -> np.ndarray:
    """Convert svg.path complex points into an (N, 2) array."""
    return np.array([(point.real, point.imag) for point in points], dtype=np.float64)


def flatten_path(
    path_data: str, samples_per_segment: int = CURVE_SAMPLES_PER_SEGMENT
) -> StrokeGeometry:
    """Flatten SVG path data into polylines.

    Lines are kept exact; curves and arcs are sampled at
    ``samples_per_segment`` uniform parameter steps. Degenerate input
    (empty data, lone move-to, repeated points) yields length 0.
    """
    if samples_per_segment < 1:
        raise RenderValidationError(
            INVALID_PATH_CODE,
            "samples_per_segment must be positive",
            "samples_per_segment",
        )
    try:
        path = parse_path(path_data)
    except Exception as exc:
        raise RenderValidationError(
            INVALID_PATH_CODE, f"invalid path data: {path_data!r}", "path_data"
        ) from exc

    subpaths: list[list[complex]] = []
    current: list[complex] = []
    for segment in path:
        if isinstance(segment, Move):
            if current:
                subpaths.append(current)
            current = [segment.end]
            continue
        if not current:
            current = [segment.start]
        if isinstance(segment, (Line, Close)):
            current.append(segment.end)
            continue
        current.extend(
            segment.point(step / samples_per_segment)
            for step in range(1, samples_per_segment + 1)
        )
    if current:
        subpaths.append(current)

    arrays = tuple(complex_points_to_array(points) for points in subpaths)
    total_length = float(sum(cumulative_lengths(points)[-1] for points in arrays))
    return StrokeGeometry(subpaths=arrays, length=total_length)


def measure_stroke_length(path_data: str) -> float:
    """Return the arc length of a stroke path (0 for degenerate paths)."""
    return flatten_path(path_data).length


def measure_strokes(
    stroke_paths: Sequence[StrokePath],
) -> Tuple[Tuple[Stroke, ...], Tuple[StrokeGeometry, ...]]:
    """Measure every stroke once, keeping the input order."""
    strokes: list[Stroke] = []
    geometries: list[StrokeGeometry] = []
    for stroke_path in stroke_paths:
        geometry = flatten_path(stroke_path.path_data)
        strokes.append(
            Stroke(
                stroke_id=stroke_path.stroke_id,
                path_data=stroke_path.path_data,
                length=geometry.length,
            )
        )
        geometries.append(geometry)
    return tuple(strokes), tuple(geometries)


def total_stroke_length(strokes: Sequence[Stroke]) -> float:
    """Sum stroke lengths in drawing order."""
    total = 0.0
    for stroke in strokes:
        total += stroke.length
    return total
