"""Domain types and parsing for render_stroke_animation."""

from __future__ import annotations

from dataclasses import dataclass
from enum import Enum
import math
from typing import Tuple

from PIL import ImageColor

INVALID_COLOR_CODE = "stroke_animation.input.invalid_color"
INVALID_CONFIG_CODE = "stroke_animation.input.invalid_config"
INVALID_TIMING_CODE = "stroke_animation.input.invalid_timing"
INVALID_STROKE_CODE = "stroke_animation.input.invalid_stroke"
INVALID_PATH_CODE = "stroke_animation.input.invalid_path"
INPUT_FILE_CODE = "stroke_animation.input.file_error"
RASTERIZE_CODE = "stroke_animation.render.rasterize_failed"
CANCELLED_CODE = "stroke_animation.render.cancelled"
FRAME_SHAPE_CODE = "stroke_animation.internal.frame_shape"

DEFAULT_FIXED_DURATION_MS = 2000
DEFAULT_PER_STROKE_MS = 200
DEFAULT_BASE_MS = 500
DEFAULT_FPS = 20
DEFAULT_GIF_SIZE = 200
DEFAULT_STROKE_WIDTH = 3.0
DEFAULT_VIEW_BOX = (0.0, 0.0, 109.0, 109.0)
WHITE_RGBA = (255, 255, 255, 255)
TRANSPARENT_RGBA = (0, 0, 0, 0)
DEFAULT_STROKE_RGBA = (0, 0, 0, 255)
DEFAULT_GUIDE_RGBA = (221, 221, 221, 255)
GUIDE_DISABLED_TOKEN = "none"

RGBA = Tuple[int, int, int, int]


class RenderValidationError(ValueError):
    """Validation error with a stable error code."""

    def __init__(self, code: str, message: str, field_name: str | None = None) -> None:
        super().__init__(message)
        self.code = code
        self.field_name = field_name


class RenderPipelineError(RuntimeError):
    """Runtime error with a stable error code."""

    def __init__(
        self,
        code: str,
        message: str,
        stroke_id: str | None = None,
        frame_index: int | None = None,
    ) -> None:
        super().__init__(message)
        self.code = code
        self.stroke_id = stroke_id
        self.frame_index = frame_index


class EncodingInvariantError(AssertionError):
    """A frame reached the encoder in a shape the pipeline never produces."""

    def __init__(self, message: str) -> None:
        super().__init__(message)
        self.code = FRAME_SHAPE_CODE


class TimingMode(str, Enum):
    """Policies for the total animation duration."""

    FIXED = "fixed"
    RELATIVE = "relative"


@dataclass(frozen=True)
class StrokePath:
    """Unmeasured stroke as handed over by the stroke extractor."""

    stroke_id: str
    path_data: str


@dataclass(frozen=True)
class Stroke:
    """A measured stroke; order in its owning sequence is the drawing order."""

    stroke_id: str
    path_data: str
    length: float

    def __post_init__(self) -> None:
        if not math.isfinite(self.length) or self.length < 0:
            raise RenderValidationError(
                INVALID_STROKE_CODE,
                f"stroke {self.stroke_id!r} has invalid length {self.length!r}",
                "length",
            )


@dataclass(frozen=True)
class RevealState:
    """Which strokes are visible in one frame."""

    fully_drawn_stroke_ids: Tuple[str, ...]
    partial_stroke_id: str | None
    partial_fraction: float

    def __post_init__(self) -> None:
        if self.partial_stroke_id is None:
            if self.partial_fraction != 0.0:
                raise RenderValidationError(
                    INVALID_STROKE_CODE,
                    "partial_fraction requires a partial stroke",
                    "partial_fraction",
                )
            return
        if not 0.0 < self.partial_fraction < 1.0:
            raise RenderValidationError(
                INVALID_STROKE_CODE,
                f"partial_fraction out of range: {self.partial_fraction!r}",
                "partial_fraction",
            )

    @property
    def fully_drawn_count(self) -> int:
        """Number of leading strokes drawn in full."""
        return len(self.fully_drawn_stroke_ids)


@dataclass(frozen=True)
class AnimationConfig:
    """Validated configuration for one render request."""

    timing_mode: TimingMode = TimingMode.FIXED
    fixed_duration_ms: int = DEFAULT_FIXED_DURATION_MS
    per_stroke_ms: int = DEFAULT_PER_STROKE_MS
    base_ms: int = DEFAULT_BASE_MS
    fps: int = DEFAULT_FPS
    width: int = DEFAULT_GIF_SIZE
    height: int | None = None
    background_rgba: RGBA = WHITE_RGBA
    stroke_rgba: RGBA = DEFAULT_STROKE_RGBA
    guide_rgba: RGBA | None = DEFAULT_GUIDE_RGBA
    stroke_width: float = DEFAULT_STROKE_WIDTH
    view_box: Tuple[float, float, float, float] = DEFAULT_VIEW_BOX

    def __post_init__(self) -> None:
        if self.height is None:
            object.__setattr__(self, "height", self.width)
        if not isinstance(self.timing_mode, TimingMode):
            raise RenderValidationError(
                INVALID_TIMING_CODE, "timing_mode is invalid", "timing_mode"
            )
        if self.fps <= 0:
            raise RenderValidationError(INVALID_CONFIG_CODE, "fps must be positive", "fps")
        if self.width <= 0:
            raise RenderValidationError(
                INVALID_CONFIG_CODE, "width must be positive", "width"
            )
        if self.height <= 0:
            raise RenderValidationError(
                INVALID_CONFIG_CODE, "height must be positive", "height"
            )
        if self.fixed_duration_ms <= 0:
            raise RenderValidationError(
                INVALID_CONFIG_CODE,
                "fixed_duration_ms must be positive",
                "fixed_duration_ms",
            )
        if self.per_stroke_ms < 0:
            raise RenderValidationError(
                INVALID_CONFIG_CODE,
                "per_stroke_ms must be non-negative",
                "per_stroke_ms",
            )
        if self.base_ms < 0:
            raise RenderValidationError(
                INVALID_CONFIG_CODE, "base_ms must be non-negative", "base_ms"
            )
        if not math.isfinite(self.stroke_width) or self.stroke_width <= 0:
            raise RenderValidationError(
                INVALID_CONFIG_CODE, "stroke_width must be positive", "stroke_width"
            )
        if len(self.view_box) != 4 or self.view_box[2] <= 0 or self.view_box[3] <= 0:
            raise RenderValidationError(
                INVALID_CONFIG_CODE, "view_box is invalid", "view_box"
            )
        for field_name in ("background_rgba", "stroke_rgba", "guide_rgba"):
            color_value = getattr(self, field_name)
            if color_value is None and field_name == "guide_rgba":
                continue
            validate_rgba(color_value, field_name)

    @property
    def is_transparent(self) -> bool:
        """Return True when frames keep their alpha channel."""
        return self.background_rgba[3] == 0

    @property
    def guide_enabled(self) -> bool:
        """Return True when the guide layer is drawn."""
        return self.guide_rgba is not None


def validate_rgba(color_value: RGBA | None, field_name: str) -> None:
    """Raise when a color is not a 4-channel 8-bit tuple."""
    if color_value is None or len(color_value) != 4:
        raise RenderValidationError(
            INVALID_COLOR_CODE, f"{field_name} is invalid", field_name
        )
    for channel in color_value:
        if channel < 0 or channel > 255:
            raise RenderValidationError(
                INVALID_COLOR_CODE, f"{field_name} channel out of range", field_name
            )


def parse_color_to_rgba(color_value: str, field_name: str = "color") -> RGBA:
    """Parse a color token (name, #hex or 'transparent') into an RGBA tuple."""
    normalized = color_value.strip()
    if normalized.lower() == "transparent":
        return TRANSPARENT_RGBA
    try:
        parsed = ImageColor.getrgb(normalized)
    except ValueError as exc:
        raise RenderValidationError(
            INVALID_COLOR_CODE, f"invalid color value: {color_value!r}", field_name
        ) from exc
    if len(parsed) == 4:
        return (parsed[0], parsed[1], parsed[2], parsed[3])
    return (parsed[0], parsed[1], parsed[2], 255)


def parse_guide_color(color_value: str) -> RGBA | None:
    """Parse the guide color; 'none' disables the guide layer."""
    if color_value.strip().lower() == GUIDE_DISABLED_TOKEN:
        return None
    return parse_color_to_rgba(color_value, "guide_rgba")


def parse_timing_mode(value: str) -> TimingMode:
    """Parse a timing mode name into a TimingMode."""
    normalized = value.strip().lower()
    try:
        return TimingMode(normalized)
    except ValueError as exc:
        raise RenderValidationError(
            INVALID_TIMING_CODE, f"invalid timing mode: {value!r}", "timing_mode"
        ) from exc


def parse_view_box(value: str) -> Tuple[float, float, float, float]:
    """Parse an SVG viewBox attribute."""
    parts = value.replace(",", " ").split()
    if len(parts) != 4:
        raise RenderValidationError(
            INVALID_CONFIG_CODE, f"invalid viewBox: {value!r}", "view_box"
        )
    try:
        min_x, min_y, box_width, box_height = (float(part) for part in parts)
    except ValueError as exc:
        raise RenderValidationError(
            INVALID_CONFIG_CODE, f"invalid viewBox: {value!r}", "view_box"
        ) from exc
    if box_width <= 0 or box_height <= 0:
        raise RenderValidationError(
            INVALID_CONFIG_CODE, f"invalid viewBox: {value!r}", "view_box"
        )
    return (min_x, min_y, box_width, box_height)
