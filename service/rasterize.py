"""Pillow rasterization and background compositing for vector scenes."""

from __future__ import annotations

from dataclasses import dataclass
from enum import Enum
from typing import Tuple

import numpy as np
from PIL import Image, ImageDraw

from domain.stroke_animation import (
    INVALID_CONFIG_CODE,
    RGBA,
    RenderValidationError,
    validate_rgba,
)
from service.stroke_scene import ScenePath, VectorScene

BYTES_PER_PIXEL = 4
SUPERSAMPLE_FACTOR = 4
MAX_CANVAS_SIDE = 2048


class FitPolicy(str, Enum):
    """Scaling policies from scene coordinates to pixels."""

    CONTAIN = "contain"


@dataclass(frozen=True)
class PixelBuffer:
    """Row-major, top-to-bottom RGBA pixels."""

    width: int
    height: int
    data: bytes

    def __post_init__(self) -> None:
        expected = self.width * self.height * BYTES_PER_PIXEL
        if len(self.data) != expected:
            raise RenderValidationError(
                INVALID_CONFIG_CODE,
                f"pixel buffer holds {len(self.data)} bytes, expected {expected}",
                "data",
            )

    @property
    def shape(self) -> Tuple[int, int, int]:
        """Return (height, width, channels)."""
        return (self.height, self.width, BYTES_PER_PIXEL)

    def to_image(self) -> Image.Image:
        """Wrap the pixels as an RGBA image."""
        return Image.frombytes("RGBA", (self.width, self.height), self.data)


def compute_contain_transform(
    view_box: Tuple[float, float, float, float], width: int, height: int
) -> Tuple[float, float, float]:
    """Return (scale, offset_x, offset_y) fitting the view box inside the frame."""
    min_x, min_y, box_width, box_height = view_box
    scale = min(width / box_width, height / box_height)
    offset_x = (width - box_width * scale) / 2.0 - min_x * scale
    offset_y = (height - box_height * scale) / 2.0 - min_y * scale
    return scale, offset_x, offset_y


def select_supersample(width: int, height: int) -> int:
    """Pick the largest supersample factor keeping the canvas bounded."""
    return max(1, min(SUPERSAMPLE_FACTOR, MAX_CANVAS_SIDE // max(width, height)))


def draw_scene_path(
    draw_context: ImageDraw.ImageDraw,
    scene_path: ScenePath,
    scale: float,
    offset: np.ndarray,
) -> None:
    """Draw one stroke with round caps and joins."""
    geometry = scene_path.geometry.truncate(scene_path.reveal_fraction)
    line_width = max(1, int(round(scene_path.width * scale)))
    radius = line_width / 2.0
    for points in geometry.subpaths:
        if len(points) == 0:
            continue
        pixels = points * scale + offset
        coordinates = [(float(x_value), float(y_value)) for x_value, y_value in pixels]
        if len(coordinates) > 1:
            draw_context.line(
                coordinates,
                fill=scene_path.color_rgba,
                width=line_width,
                joint="curve",
            )
        for x_value, y_value in (coordinates[0], coordinates[-1]):
            draw_context.ellipse(
                (x_value - radius, y_value - radius, x_value + radius, y_value + radius),
                fill=scene_path.color_rgba,
            )


def render_scene_image(
    scene: VectorScene,
    width: int,
    height: int,
    fit: FitPolicy = FitPolicy.CONTAIN,
    supersample: int | None = None,
) -> Image.Image:
    """Render a scene onto a transparent RGBA image of the target size.

    Layers are drawn on separate supersampled canvases and alpha composited
    back to front, then box-filtered down for antialiasing.
    """
    if width <= 0 or height <= 0:
        raise RenderValidationError(
            INVALID_CONFIG_CODE, "width and height must be positive", "width"
        )
    if supersample is None:
        supersample = select_supersample(width, height)
    if supersample < 1:
        raise RenderValidationError(
            INVALID_CONFIG_CODE, "supersample must be positive", "supersample"
        )
    if fit != FitPolicy.CONTAIN:
        raise RenderValidationError(
            INVALID_CONFIG_CODE, f"unsupported fit policy: {fit!r}", "fit"
        )

    canvas_size = (width * supersample, height * supersample)
    scale, offset_x, offset_y = compute_contain_transform(
        scene.view_box, canvas_size[0], canvas_size[1]
    )
    offset = np.array((offset_x, offset_y))

    canvas = Image.new("RGBA", canvas_size, (0, 0, 0, 0))
    for layer in scene.layers:
        if not layer.paths:
            continue
        layer_image = Image.new("RGBA", canvas_size, (0, 0, 0, 0))
        layer_draw = ImageDraw.Draw(layer_image)
        for scene_path in layer.paths:
            draw_scene_path(layer_draw, scene_path, scale, offset)
        canvas.alpha_composite(layer_image)

    if supersample == 1:
        return canvas
    return canvas.resize((width, height), Image.Resampling.BOX)


def apply_background(image: Image.Image, background_rgba: RGBA) -> Image.Image:
    """Flatten onto an opaque color, or keep alpha for a transparent background."""
    validate_rgba(background_rgba, "background_rgba")
    if background_rgba[3] == 0:
        return image
    opaque = (background_rgba[0], background_rgba[1], background_rgba[2], 255)
    flattened = Image.new("RGBA", image.size, opaque)
    flattened.alpha_composite(image)
    return flattened


def rasterize_scene(
    scene: VectorScene,
    width: int,
    height: int,
    background_rgba: RGBA,
    fit: FitPolicy = FitPolicy.CONTAIN,
) -> PixelBuffer:
    """Rasterize a scene over its background into a fixed-size RGBA buffer."""
    frame_image = apply_background(
        render_scene_image(scene, width, height, fit), background_rgba
    )
    return PixelBuffer(width=width, height=height, data=frame_image.tobytes())
