#!/usr/bin/env -S uv run
# /// script
# requires-python = ">=3.11"
# dependencies = [
#   "pillow>=10",
#   "numpy>=1.26",
#   "svg.path>=6.2",
#   "lxml>=4.9"
# ]
# ///
"""Render stroke-order animations (GIF) and static PNGs from glyph SVGs."""

from __future__ import annotations

import argparse
from collections import deque
from concurrent import futures
from dataclasses import dataclass, replace
from enum import Enum
from io import BytesIO
import logging
import os
import sys
import threading
from typing import Callable, Iterable, Iterator, Sequence, Tuple

from lxml import etree
from PIL import Image

from domain.stroke_animation import (
    CANCELLED_CODE,
    DEFAULT_FIXED_DURATION_MS,
    DEFAULT_FPS,
    DEFAULT_BASE_MS,
    DEFAULT_GIF_SIZE,
    DEFAULT_PER_STROKE_MS,
    INPUT_FILE_CODE,
    INVALID_CONFIG_CODE,
    RASTERIZE_CODE,
    TRANSPARENT_RGBA,
    WHITE_RGBA,
    AnimationConfig,
    EncodingInvariantError,
    RenderPipelineError,
    RenderValidationError,
    RevealState,
    Stroke,
    StrokePath,
    parse_color_to_rgba,
    parse_guide_color,
    parse_timing_mode,
    parse_view_box,
)
from service.gif_encoder import EncoderBackend, create_gif_sink, parse_encoder_backend
from service.rasterize import PixelBuffer, rasterize_scene, render_scene_image
from service.render_plan import build_timing_plan, iter_reveal_states
from service.stroke_geometry import StrokeGeometry, measure_strokes, total_stroke_length
from service.stroke_scene import build_completed_scene, build_scene

LOGGER = logging.getLogger("render_stroke_animation")

SVG_NAMESPACE = "http://www.w3.org/2000/svg"
KVG_NAMESPACE = "http://kanjivg.tagaini.net"
SQUARE_PNG_SIZE = 1024
CARD_WIDTH = 1200
CARD_HEIGHT = 630
CARD_GLYPH_HEIGHT = 500
DEFAULT_INPUT_DIR = "kanji_svg"
DEFAULT_CUSTOM_OUT_DIR = "kanji_custom"
SQUARE_PNG_DIR = "kanji_png"
CARD_PNG_DIR = "kanji_png_og"
GIF_DIR = "kanji_gif"
BATCH_SIZE = 20
FRAMES_IN_FLIGHT_PER_WORKER = 2
CODEPOINT_FILE_DIGITS = 5


class OutputFormat(str, Enum):
    """Single-output formats for custom mode."""

    PNG = "png"
    GIF = "gif"


@dataclass(frozen=True)
class CliRequest:
    """Parsed CLI request and runtime options."""

    input_dir: str
    file_name: str | None
    output_format: OutputFormat | None
    out_dir: str
    config: AnimationConfig
    encoder: EncoderBackend
    workers: int
    frame_workers: int

    @property
    def custom_mode(self) -> bool:
        return self.output_format is not None


def configure_logging() -> None:
    """Configure logging for CLI output."""
    logging.basicConfig(level=logging.INFO, format="%(message)s")


def normalize_stroke_paths(
    stroke_paths: Sequence[StrokePath | str],
) -> Tuple[StrokePath, ...]:
    """Accept StrokePath values or bare path data, keeping the order."""
    normalized: list[StrokePath] = []
    for index_value, stroke_path in enumerate(stroke_paths):
        if isinstance(stroke_path, StrokePath):
            normalized.append(stroke_path)
        else:
            normalized.append(
                StrokePath(stroke_id=f"stroke-{index_value + 1}", path_data=stroke_path)
            )
    return tuple(normalized)


def load_strokes(
    stroke_paths: Sequence[StrokePath | str],
) -> Tuple[Tuple[Stroke, ...], Tuple[StrokeGeometry, ...]]:
    """Measure strokes, reporting malformed path data with its stroke id."""
    strokes: list[Stroke] = []
    geometries: list[StrokeGeometry] = []
    for stroke_path in normalize_stroke_paths(stroke_paths):
        try:
            measured, measured_geometries = measure_strokes((stroke_path,))
        except RenderValidationError as exc:
            raise RenderPipelineError(
                RASTERIZE_CODE,
                f"stroke {stroke_path.stroke_id}: {str(exc).strip()}",
                stroke_id=stroke_path.stroke_id,
            ) from exc
        strokes.extend(measured)
        geometries.extend(measured_geometries)
    return tuple(strokes), tuple(geometries)


def render_frame(
    frame_index: int,
    reveal_state: RevealState,
    strokes: Sequence[Stroke],
    geometries: Sequence[StrokeGeometry],
    config: AnimationConfig,
) -> PixelBuffer:
    """Build and rasterize one frame for its reveal state."""
    scene = build_scene(reveal_state, strokes, geometries, config)
    try:
        return rasterize_scene(scene, config.width, config.height, config.background_rgba)
    except Exception as exc:
        stroke_id = reveal_state.partial_stroke_id
        if stroke_id is None and reveal_state.fully_drawn_stroke_ids:
            stroke_id = reveal_state.fully_drawn_stroke_ids[-1]
        raise RenderPipelineError(
            RASTERIZE_CODE,
            f"frame {frame_index} (stroke {stroke_id}): {str(exc).strip()}",
            stroke_id=stroke_id,
            frame_index=frame_index,
        ) from exc


def ensure_not_cancelled(cancel_event: threading.Event | None, frame_index: int) -> None:
    """Raise when the render request has been cancelled."""
    if cancel_event is not None and cancel_event.is_set():
        raise RenderPipelineError(
            CANCELLED_CODE,
            f"render cancelled before frame {frame_index}",
            frame_index=frame_index,
        )


def iter_frames_sequential(
    render_one: Callable[[int, RevealState], PixelBuffer],
    reveal_states: Iterable[Tuple[int, RevealState]],
    cancel_event: threading.Event | None,
) -> Iterator[PixelBuffer]:
    """Render frames one after another."""
    for frame_index, reveal_state in reveal_states:
        ensure_not_cancelled(cancel_event, frame_index)
        yield render_one(frame_index, reveal_state)


def iter_frames_parallel(
    render_one: Callable[[int, RevealState], PixelBuffer],
    reveal_states: Iterable[Tuple[int, RevealState]],
    workers: int,
    cancel_event: threading.Event | None,
) -> Iterator[PixelBuffer]:
    """Render frames on a worker pool, yielding them in index order.

    At most ``workers * FRAMES_IN_FLIGHT_PER_WORKER`` frames are pending.
    """
    max_pending = workers * FRAMES_IN_FLIGHT_PER_WORKER
    pending: deque[futures.Future[PixelBuffer]] = deque()
    remaining = iter(reveal_states)
    exhausted = False
    with futures.ThreadPoolExecutor(max_workers=workers) as executor:
        try:
            while not exhausted or pending:
                while not exhausted and len(pending) < max_pending:
                    next_state = next(remaining, None)
                    if next_state is None:
                        exhausted = True
                        break
                    frame_index, reveal_state = next_state
                    ensure_not_cancelled(cancel_event, frame_index)
                    pending.append(executor.submit(render_one, frame_index, reveal_state))
                if pending:
                    yield pending.popleft().result()
        finally:
            for future in pending:
                future.cancel()


def render_animation(
    stroke_paths: Sequence[StrokePath | str],
    config: AnimationConfig,
    encoder: EncoderBackend = EncoderBackend.PILLOW,
    frame_workers: int = 1,
    cancel_event: threading.Event | None = None,
) -> bytes:
    """Render the stroke-by-stroke drawing of a glyph as a looping GIF.

    Strokes are drawn in the given order. The returned bytes are a complete
    GIF; on any failure an exception is raised and nothing is returned.
    """
    if frame_workers <= 0:
        raise RenderValidationError(
            INVALID_CONFIG_CODE, "frame_workers must be positive", "frame_workers"
        )
    strokes, geometries = load_strokes(stroke_paths)
    plan = build_timing_plan(total_stroke_length(strokes), len(strokes), config)
    LOGGER.debug(
        "stroke_animation.render.plan: strokes=%d frames=%d hold=%d delay_ms=%.1f",
        len(strokes),
        plan.total_frames,
        plan.hold_frames,
        plan.frame_delay_ms,
    )

    def render_one(frame_index: int, reveal_state: RevealState) -> PixelBuffer:
        return render_frame(frame_index, reveal_state, strokes, geometries, config)

    reveal_states = iter_reveal_states(plan, strokes)
    if frame_workers == 1:
        frames = iter_frames_sequential(render_one, reveal_states, cancel_event)
    else:
        frames = iter_frames_parallel(
            render_one, reveal_states, frame_workers, cancel_event
        )

    sink = create_gif_sink(
        encoder, config.width, config.height, config.fps, config.is_transparent
    )
    try:
        return sink.encode(frames)
    finally:
        frames.close()


def encode_png(image: Image.Image) -> bytes:
    """Encode an image as PNG bytes."""
    output = BytesIO()
    image.save(output, format="PNG")
    return output.getvalue()


def render_static_png(
    stroke_paths: Sequence[StrokePath | str], config: AnimationConfig
) -> bytes:
    """Render the completed glyph as a PNG."""
    strokes, geometries = load_strokes(stroke_paths)
    scene = build_completed_scene(strokes, geometries, config)
    frame = rasterize_scene(scene, config.width, config.height, config.background_rgba)
    return encode_png(frame.to_image())


def render_card_png(
    stroke_paths: Sequence[StrokePath | str],
    config: AnimationConfig,
    card_size: Tuple[int, int] = (CARD_WIDTH, CARD_HEIGHT),
    glyph_height: int = CARD_GLYPH_HEIGHT,
    card_rgba: Tuple[int, int, int, int] = WHITE_RGBA,
) -> bytes:
    """Render the completed glyph centered on a social card."""
    strokes, geometries = load_strokes(stroke_paths)
    scene = build_completed_scene(strokes, geometries, config)
    view_box = config.view_box
    glyph_width = max(1, int(round(glyph_height * view_box[2] / view_box[3])))
    glyph_image = render_scene_image(scene, glyph_width, glyph_height)
    card = Image.new("RGBA", card_size, card_rgba)
    card.alpha_composite(
        glyph_image,
        ((card_size[0] - glyph_width) // 2, (card_size[1] - glyph_height) // 2),
    )
    return encode_png(card)


def preprocess_svg(content: str) -> str:
    """Drop any prolog before <svg and declare the kvg namespace if missing."""
    svg_start = content.find("<svg")
    if svg_start > 0:
        content = content[svg_start:]
    if "xmlns:kvg" not in content:
        content = content.replace("<svg", f'<svg xmlns:kvg="{KVG_NAMESPACE}"', 1)
    return content


def extract_stroke_paths(
    svg_content: str,
) -> Tuple[Tuple[StrokePath, ...], Tuple[float, float, float, float] | None]:
    """Extract stroke paths in document order plus the root viewBox."""
    try:
        root = etree.fromstring(preprocess_svg(svg_content).encode("utf-8"))
    except etree.XMLSyntaxError as exc:
        raise RenderValidationError(
            INPUT_FILE_CODE, f"invalid SVG: {str(exc).strip()}", "svg"
        ) from exc

    stroke_paths: list[StrokePath] = []
    for element in root.iter(f"{{{SVG_NAMESPACE}}}path"):
        path_data = element.get("d")
        if not path_data:
            continue
        stroke_id = element.get("id") or f"stroke-{len(stroke_paths) + 1}"
        stroke_paths.append(StrokePath(stroke_id=stroke_id, path_data=path_data))

    view_box_value = root.get("viewBox")
    view_box = parse_view_box(view_box_value) if view_box_value else None
    return tuple(stroke_paths), view_box


def read_utf8_text_strict(file_path: str) -> str:
    """Read a UTF-8 file with strict decoding."""
    try:
        with open(file_path, "rb") as file_handle:
            file_bytes = file_handle.read()
    except FileNotFoundError as exc:
        raise RenderValidationError(
            INPUT_FILE_CODE, f"input file not found: {file_path}", "file"
        ) from exc

    try:
        return file_bytes.decode("utf-8", errors="strict")
    except UnicodeDecodeError as exc:
        raise RenderValidationError(
            INPUT_FILE_CODE,
            f"input file is not valid UTF-8 at byte offset {exc.start}",
            "file",
        ) from exc


def codepoint_file_name(character: str) -> str:
    """Return the glyph file name for a character, e.g. '04e00.svg'."""
    if not character:
        raise RenderValidationError(INVALID_CONFIG_CODE, "kanji must not be empty", "kanji")
    return f"{ord(character[0]):0{CODEPOINT_FILE_DIGITS}x}.svg"


def resolve_input_file(input_dir: str, file_name: str) -> str:
    """Resolve a file name as given, with .svg appended, or zero-padded."""
    candidates = [
        file_name,
        f"{file_name}.svg",
        f"{file_name.rjust(CODEPOINT_FILE_DIGITS, '0')}.svg",
    ]
    for candidate in candidates:
        if os.path.isfile(os.path.join(input_dir, candidate)):
            return candidate
    raise RenderValidationError(
        INPUT_FILE_CODE,
        f"file {file_name} (or {candidates[1]}, {candidates[2]}) not found",
        "file",
    )


def list_input_files(input_dir: str, file_name: str | None) -> list[str]:
    """List the SVG files to process."""
    if not os.path.isdir(input_dir):
        raise RenderValidationError(
            INPUT_FILE_CODE, f"input directory not found: {input_dir}", "input_dir"
        )
    if file_name is not None:
        return [resolve_input_file(input_dir, file_name)]
    return sorted(
        entry_name
        for entry_name in os.listdir(input_dir)
        if entry_name.lower().endswith(".svg")
    )


def write_bytes(target_path: str, payload: bytes) -> None:
    """Write bytes, creating the parent directory."""
    os.makedirs(os.path.dirname(target_path) or ".", exist_ok=True)
    with open(target_path, "wb") as file_handle:
        file_handle.write(payload)
    LOGGER.debug("stroke_animation.output.written: %s", target_path)


def process_file(file_name: str, request: CliRequest) -> None:
    """Render the requested outputs for one glyph SVG."""
    content = read_utf8_text_strict(os.path.join(request.input_dir, file_name))
    stroke_paths, view_box = extract_stroke_paths(content)
    config = request.config
    if view_box is not None:
        config = replace(config, view_box=view_box)
    basename = os.path.splitext(file_name)[0]

    if request.custom_mode:
        if request.output_format == OutputFormat.PNG:
            target = os.path.join(request.out_dir, f"{basename}.png")
            write_bytes(
                target,
                render_static_png(stroke_paths, replace(config, guide_rgba=None)),
            )
        else:
            target = os.path.join(request.out_dir, f"{basename}.gif")
            write_bytes(
                target,
                render_animation(
                    stroke_paths,
                    config,
                    encoder=request.encoder,
                    frame_workers=request.frame_workers,
                ),
            )
        return

    square_config = replace(
        config,
        width=SQUARE_PNG_SIZE,
        height=SQUARE_PNG_SIZE,
        background_rgba=TRANSPARENT_RGBA,
        guide_rgba=None,
    )
    write_bytes(
        os.path.join(request.out_dir, SQUARE_PNG_DIR, f"{basename}.png"),
        render_static_png(stroke_paths, square_config),
    )
    write_bytes(
        os.path.join(request.out_dir, CARD_PNG_DIR, f"{basename}.png"),
        render_card_png(stroke_paths, square_config),
    )
    write_bytes(
        os.path.join(request.out_dir, GIF_DIR, f"{basename}.gif"),
        render_animation(
            stroke_paths,
            config,
            encoder=request.encoder,
            frame_workers=request.frame_workers,
        ),
    )


def process_file_logged(file_name: str, request: CliRequest) -> bool:
    """Process one file; log and report failure instead of raising."""
    try:
        process_file(file_name, request)
    except (RenderValidationError, RenderPipelineError) as exc:
        LOGGER.error("%s: %s: %s", exc.code, file_name, str(exc).strip())
        return False
    except EncodingInvariantError:
        raise
    except Exception as exc:
        LOGGER.error(
            "stroke_animation.unhandled_error: %s: %s", file_name, str(exc).strip()
        )
        return False
    return True


def process_files(file_names: Sequence[str], request: CliRequest) -> int:
    """Process files on a bounded worker pool; return the failure count."""
    failures = 0
    completed = 0
    with futures.ThreadPoolExecutor(max_workers=request.workers) as executor:
        for start in range(0, len(file_names), BATCH_SIZE):
            batch = file_names[start : start + BATCH_SIZE]
            for succeeded in executor.map(
                lambda name: process_file_logged(name, request), batch
            ):
                if not succeeded:
                    failures += 1
            completed += len(batch)
            if len(file_names) > BATCH_SIZE:
                LOGGER.info(
                    "stroke_animation.batch.progress: %d / %d",
                    completed,
                    len(file_names),
                )
    return failures


def positive_int(value: str) -> int:
    """argparse type for positive integers."""
    try:
        parsed = int(value)
    except ValueError as exc:
        raise argparse.ArgumentTypeError(f"expected an integer, got {value!r}") from exc
    if parsed <= 0:
        raise argparse.ArgumentTypeError(f"expected a positive integer, got {value!r}")
    return parsed


def non_negative_int(value: str) -> int:
    """argparse type for non-negative integers."""
    try:
        parsed = int(value)
    except ValueError as exc:
        raise argparse.ArgumentTypeError(f"expected an integer, got {value!r}") from exc
    if parsed < 0:
        raise argparse.ArgumentTypeError(f"expected a non-negative integer, got {value!r}")
    return parsed


CUSTOM_OPTIONS = (
    "format",
    "width",
    "height",
    "out",
    "bg",
    "color",
    "guide",
    "duration",
    "fps",
    "timing",
    "stroke_duration",
    "base_duration",
)


def parse_args(argv: Sequence[str]) -> CliRequest:
    """Parse CLI arguments into a CliRequest."""
    parser = argparse.ArgumentParser(
        prog="render_stroke_animation.py",
        description=(
            "Without customization options, writes a square PNG, a social card "
            "PNG and an animated GIF per glyph. With any customization option, "
            "writes the single --format output."
        ),
    )
    parser.add_argument("--input-dir", default=DEFAULT_INPUT_DIR)
    target_group = parser.add_mutually_exclusive_group()
    target_group.add_argument("--file", default=None, help="single SVG, e.g. 04e00.svg")
    target_group.add_argument("--kanji", "-k", default=None, help="single character")
    parser.add_argument("--format", choices=[item.value for item in OutputFormat])
    parser.add_argument("--width", type=positive_int)
    parser.add_argument("--height", type=positive_int)
    parser.add_argument("--out", default=None)
    parser.add_argument("--bg", default=None, help="white (default), transparent or #RRGGBB")
    parser.add_argument("--color", default=None, help="stroke color (default #000000)")
    parser.add_argument("--guide", default=None, help="guide color or 'none'")
    parser.add_argument("--duration", type=positive_int, default=None, help="ms, fixed timing")
    parser.add_argument("--fps", type=positive_int, default=None)
    parser.add_argument("--timing", default=None, help="fixed (default) or relative")
    parser.add_argument(
        "--stroke-duration", type=non_negative_int, default=None, help="ms per stroke"
    )
    parser.add_argument(
        "--base-duration", type=non_negative_int, default=None, help="ms, relative timing"
    )
    parser.add_argument(
        "--encoder", default=EncoderBackend.PILLOW.value, help="pillow (default) or ffmpeg"
    )
    parser.add_argument("--workers", type=positive_int, default=BATCH_SIZE)
    parser.add_argument("--frame-workers", type=positive_int, default=1)

    parsed = parser.parse_args(argv)
    custom_mode = any(getattr(parsed, name) is not None for name in CUSTOM_OPTIONS)
    output_format = OutputFormat(parsed.format) if parsed.format else None
    if custom_mode and output_format is None:
        raise RenderValidationError(
            INVALID_CONFIG_CODE, "customization options require --format", "format"
        )

    width = parsed.width or parsed.height
    height = parsed.height or parsed.width
    if output_format == OutputFormat.PNG:
        width = width or SQUARE_PNG_SIZE
        height = height or SQUARE_PNG_SIZE
    else:
        width = width or DEFAULT_GIF_SIZE
        height = height or DEFAULT_GIF_SIZE

    file_name = parsed.file
    if parsed.kanji is not None:
        file_name = codepoint_file_name(parsed.kanji)

    config = AnimationConfig(
        timing_mode=parse_timing_mode(parsed.timing or "fixed"),
        fixed_duration_ms=(
            parsed.duration if parsed.duration is not None else DEFAULT_FIXED_DURATION_MS
        ),
        per_stroke_ms=(
            parsed.stroke_duration
            if parsed.stroke_duration is not None
            else DEFAULT_PER_STROKE_MS
        ),
        base_ms=parsed.base_duration if parsed.base_duration is not None else DEFAULT_BASE_MS,
        fps=parsed.fps if parsed.fps is not None else DEFAULT_FPS,
        width=width,
        height=height,
        background_rgba=parse_color_to_rgba(parsed.bg or "white", "background_rgba"),
        stroke_rgba=parse_color_to_rgba(parsed.color or "#000000", "stroke_rgba"),
        guide_rgba=parse_guide_color(parsed.guide or "#dddddd"),
    )

    if parsed.out is not None:
        out_dir = parsed.out
    elif custom_mode:
        out_dir = os.path.join(os.getcwd(), DEFAULT_CUSTOM_OUT_DIR)
    else:
        out_dir = os.getcwd()

    return CliRequest(
        input_dir=parsed.input_dir,
        file_name=file_name,
        output_format=output_format,
        out_dir=out_dir,
        config=config,
        encoder=parse_encoder_backend(parsed.encoder),
        workers=parsed.workers,
        frame_workers=parsed.frame_workers,
    )


def main() -> int:
    """CLI entrypoint."""
    configure_logging()

    try:
        request = parse_args(sys.argv[1:])
        file_names = list_input_files(request.input_dir, request.file_name)
        LOGGER.info(
            "stroke_animation.batch.start: %d file(s), mode=%s",
            len(file_names),
            "custom" if request.custom_mode else "default",
        )
        if request.custom_mode:
            config = request.config
            LOGGER.info(
                "stroke_animation.batch.settings: format=%s size=%dx%d timing=%s",
                request.output_format,
                config.width,
                config.height,
                config.timing_mode.value,
            )
        failures = process_files(file_names, request)
        if failures:
            LOGGER.error("stroke_animation.batch.failed: %d file(s)", failures)
            return 1
        LOGGER.info("stroke_animation.batch.done")
        return 0
    except RenderValidationError as exc:
        LOGGER.error("%s: %s", exc.code, str(exc).strip())
        return 1
    except RenderPipelineError as exc:
        LOGGER.error("%s: %s", exc.code, str(exc).strip())
        return 1
    except Exception as exc:
        LOGGER.error("stroke_animation.unhandled_error: %s", str(exc).strip())
        return 1


if __name__ == "__main__":
    raise SystemExit(main())
