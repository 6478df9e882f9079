"""Timing plan and per-frame stroke reveal allocation."""

from __future__ import annotations

from dataclasses import dataclass
import math
from typing import Iterator, Sequence, Tuple

from domain.stroke_animation import (
    INVALID_CONFIG_CODE,
    INVALID_TIMING_CODE,
    AnimationConfig,
    RenderValidationError,
    RevealState,
    Stroke,
    TimingMode,
)
from service.stroke_geometry import total_stroke_length

HOLD_SECONDS = 1


@dataclass(frozen=True)
class TimingPlan:
    """Frame schedule for one stroke animation.

    ``total_frames`` covers the drawing phase; ``hold_frames`` more frames
    of the finished glyph follow before the loop restarts.
    """

    total_length: float
    total_duration_ms: float
    total_frames: int
    hold_frames: int
    frame_delay_ms: float

    def __post_init__(self) -> None:
        if self.total_frames <= 0:
            raise RenderValidationError(
                INVALID_CONFIG_CODE, "total_frames must be positive", "total_frames"
            )
        if self.hold_frames < 0:
            raise RenderValidationError(
                INVALID_CONFIG_CODE, "hold_frames must be non-negative", "hold_frames"
            )
        if self.frame_delay_ms <= 0:
            raise RenderValidationError(
                INVALID_CONFIG_CODE,
                "frame_delay_ms must be positive",
                "frame_delay_ms",
            )

    @property
    def frame_count(self) -> int:
        """Number of frames handed to the encoder."""
        return self.total_frames + self.hold_frames


def ms_to_frames_ceil(milliseconds: float, fps: int) -> int:
    """Convert milliseconds to frames, rounding up."""
    return max(1, int(math.ceil(milliseconds * fps / 1000.0)))


def compute_duration_ms(stroke_count: int, config: AnimationConfig) -> float:
    """Return the drawing-phase duration for the configured timing mode."""
    if config.timing_mode == TimingMode.FIXED:
        return float(config.fixed_duration_ms)
    if config.timing_mode == TimingMode.RELATIVE:
        return float(config.base_ms + stroke_count * config.per_stroke_ms)
    raise RenderValidationError(
        INVALID_TIMING_CODE,
        f"unsupported timing mode: {config.timing_mode!r}",
        "timing_mode",
    )


def build_timing_plan(
    total_length: float, stroke_count: int, config: AnimationConfig
) -> TimingPlan:
    """Build the frame schedule for a stroke set.

    Relative timing scales with the stroke count, never with path length.
    An empty glyph still gets one drawing frame.
    """
    if stroke_count < 0:
        raise RenderValidationError(
            INVALID_CONFIG_CODE, "stroke_count must be non-negative", "stroke_count"
        )
    duration_ms = compute_duration_ms(stroke_count, config)
    return TimingPlan(
        total_length=total_length,
        total_duration_ms=duration_ms,
        total_frames=ms_to_frames_ceil(duration_ms, config.fps),
        hold_frames=config.fps * HOLD_SECONDS,
        frame_delay_ms=1000.0 / config.fps,
    )


def compute_global_progress(
    frame_index: int, total_frames: int, total_length: float
) -> float:
    """Return the drawn arc length at a frame, clamped for the hold phase."""
    if frame_index >= total_frames:
        return total_length
    return total_length * frame_index / total_frames


def allocate_reveal_state(
    frame_index: int,
    total_frames: int,
    strokes: Sequence[Stroke],
    total_length: float | None = None,
) -> RevealState:
    """Decide which strokes are drawn, fully or partially, at a frame.

    A stroke ending exactly at the current progress is fully drawn and no
    stroke is reported partial. Zero-length strokes are fully drawn as
    soon as every earlier stroke is.
    """
    if total_frames <= 0:
        raise RenderValidationError(
            INVALID_CONFIG_CODE, "total_frames must be positive", "total_frames"
        )
    if frame_index < 0:
        raise RenderValidationError(
            INVALID_CONFIG_CODE, "frame_index must be non-negative", "frame_index"
        )
    if total_length is None:
        total_length = total_stroke_length(strokes)
    progress = compute_global_progress(frame_index, total_frames, total_length)

    drawn: list[str] = []
    cumulative = 0.0
    for stroke in strokes:
        stroke_end = cumulative + stroke.length
        if stroke_end <= progress:
            drawn.append(stroke.stroke_id)
            cumulative = stroke_end
            continue
        if cumulative < progress:
            fraction = (progress - cumulative) / stroke.length
            return RevealState(
                fully_drawn_stroke_ids=tuple(drawn),
                partial_stroke_id=stroke.stroke_id,
                partial_fraction=min(fraction, math.nextafter(1.0, 0.0)),
            )
        break

    return RevealState(
        fully_drawn_stroke_ids=tuple(drawn),
        partial_stroke_id=None,
        partial_fraction=0.0,
    )


def iter_reveal_states(
    plan: TimingPlan, strokes: Sequence[Stroke]
) -> Iterator[Tuple[int, RevealState]]:
    """Yield (frame_index, reveal state) for every encoded frame."""
    for frame_index in range(plan.frame_count):
        yield frame_index, allocate_reveal_state(
            frame_index, plan.total_frames, strokes, plan.total_length
        )
