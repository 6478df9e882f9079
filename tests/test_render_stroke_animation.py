"""Pipeline and CLI tests for render_stroke_animation."""

from __future__ import annotations

from io import BytesIO
from pathlib import Path
import subprocess
import sys
import threading
from typing import List

import pytest
from PIL import Image

import render_stroke_animation
from domain.stroke_animation import (
    CANCELLED_CODE,
    INPUT_FILE_CODE,
    RASTERIZE_CODE,
    AnimationConfig,
    RenderPipelineError,
    RenderValidationError,
    RevealState,
    StrokePath,
    TimingMode,
)
from service.rasterize import PixelBuffer
from service.render_plan import build_timing_plan, iter_reveal_states
from service.stroke_geometry import measure_strokes, total_stroke_length

REPO_ROOT = Path(__file__).resolve().parents[1]
SCRIPT_PATH = REPO_ROOT / "render_stroke_animation.py"

KANJI_SVG = """<?xml version="1.0" encoding="UTF-8"?>
<!DOCTYPE svg PUBLIC "-//W3C//DTD SVG 1.0//EN" "http://www.w3.org/TR/2001/REC-SVG-20010904/DTD/svg10.dtd">
<!-- glyph data -->
<svg xmlns="http://www.w3.org/2000/svg" width="109" height="109" viewBox="0 0 109 109">
<g id="kvg:StrokePaths_04e8c" style="fill:none;stroke:#000000;stroke-width:3;stroke-linecap:round;stroke-linejoin:round;">
<g id="kvg:04e8c" kvg:element="二">
  <path id="kvg:04e8c-s1" kvg:type="㇐" d="M27.25,28.5c2,0.5,4.5,0.75,7,0.5c10-0.75,27.5-3.5,41.25-3.75"/>
  <path id="kvg:04e8c-s2" kvg:type="㇐" d="M13,79.5c3,1,6.75,1.25,10,1c16.12-1.25,50.25-4.25,70.5-3.5"/>
</g>
</g>
</svg>
"""

TWO_STROKES = (
    StrokePath(stroke_id="a", path_data="M 10 30 L 99 30"),
    StrokePath(stroke_id="b", path_data="M 10 80 L 99 80"),
)


def run_render_stroke_animation(
    args: List[str], cwd: Path
) -> subprocess.CompletedProcess[str]:
    """Run render_stroke_animation.py with the provided arguments."""
    return subprocess.run(
        [sys.executable, str(SCRIPT_PATH), *args],
        cwd=cwd,
        text=True,
        capture_output=True,
        check=False,
    )


def write_glyph(input_dir: Path, file_name: str = "04e8c.svg") -> Path:
    """Write a KanjiVG-style glyph into an input directory."""
    input_dir.mkdir(parents=True, exist_ok=True)
    target = input_dir / file_name
    target.write_text(KANJI_SVG, encoding="utf-8")
    return target


def small_config(**overrides: object) -> AnimationConfig:
    """A small, fast configuration for pipeline tests."""
    values: dict = {"width": 40, "fps": 10, "fixed_duration_ms": 500}
    values.update(overrides)
    return AnimationConfig(**values)


def test_render_animation_returns_looping_gif() -> None:
    """A rendered animation is a complete looping GIF of the target size."""
    payload = render_stroke_animation.render_animation(TWO_STROKES, small_config())
    with Image.open(BytesIO(payload)) as image:
        assert image.format == "GIF"
        assert image.size == (40, 40)
        assert image.info["loop"] == 0
        assert image.info["duration"] == 100
        assert image.n_frames > 1


def test_render_animation_accepts_bare_path_data() -> None:
    """Bare path strings are numbered in their given order."""
    normalized = render_stroke_animation.normalize_stroke_paths(
        ["M 0 0 L 1 1", TWO_STROKES[0]]
    )
    assert normalized[0] == StrokePath(stroke_id="stroke-1", path_data="M 0 0 L 1 1")
    assert normalized[1] is TWO_STROKES[0]


def test_empty_glyph_renders_blank_animation() -> None:
    """A glyph without strokes still yields a valid animation."""
    payload = render_stroke_animation.render_animation((), small_config())
    with Image.open(BytesIO(payload)) as image:
        assert image.size == (40, 40)
        assert image.n_frames >= 1


def test_malformed_stroke_names_stroke() -> None:
    """Malformed path data aborts the request and names the stroke."""
    strokes = (TWO_STROKES[0], StrokePath(stroke_id="broken", path_data="10 10 L 20 20"))
    with pytest.raises(RenderPipelineError) as exc_info:
        render_stroke_animation.render_animation(strokes, small_config())
    assert exc_info.value.code == RASTERIZE_CODE
    assert exc_info.value.stroke_id == "broken"


def test_cancelled_render_produces_nothing() -> None:
    """A set cancel event abandons the render."""
    cancel_event = threading.Event()
    cancel_event.set()
    with pytest.raises(RenderPipelineError) as exc_info:
        render_stroke_animation.render_animation(
            TWO_STROKES, small_config(), cancel_event=cancel_event
        )
    assert exc_info.value.code == CANCELLED_CODE


def test_rasterize_failure_names_frame_and_stroke(
    monkeypatch: pytest.MonkeyPatch,
) -> None:
    """A frame the renderer rejects aborts with its index and stroke."""
    real_rasterize_scene = render_stroke_animation.rasterize_scene
    rasterized_frames: list[int] = []

    def rasterize_until_frame_three(*args: object) -> PixelBuffer:
        if len(rasterized_frames) == 3:
            raise RuntimeError("renderer rejected scene")
        rasterized_frames.append(len(rasterized_frames))
        return real_rasterize_scene(*args)

    monkeypatch.setattr(
        render_stroke_animation, "rasterize_scene", rasterize_until_frame_three
    )
    payload = None
    with pytest.raises(RenderPipelineError) as exc_info:
        payload = render_stroke_animation.render_animation(TWO_STROKES, small_config())
    assert payload is None
    assert exc_info.value.code == RASTERIZE_CODE
    assert exc_info.value.frame_index == 3
    # Frame 3 of 5 is 60% of the total length: "a" drawn, "b" partial.
    assert exc_info.value.stroke_id == "b"


def test_rasterize_failure_in_hold_names_last_stroke(
    monkeypatch: pytest.MonkeyPatch,
) -> None:
    """Without a partial stroke the last drawn stroke is reported."""

    def reject_scene(*args: object) -> PixelBuffer:
        raise RuntimeError("renderer rejected scene")

    monkeypatch.setattr(render_stroke_animation, "rasterize_scene", reject_scene)
    strokes, geometries = measure_strokes(TWO_STROKES)
    hold_state = RevealState(("a", "b"), None, 0.0)
    with pytest.raises(RenderPipelineError) as exc_info:
        render_stroke_animation.render_frame(
            7, hold_state, strokes, geometries, small_config()
        )
    assert exc_info.value.code == RASTERIZE_CODE
    assert exc_info.value.frame_index == 7
    assert exc_info.value.stroke_id == "b"


def test_parallel_frames_are_yielded_in_order() -> None:
    """Worker-pool rendering hands frames over in index order."""
    blank = RevealState((), None, 0.0)

    def render_one(frame_index: int, reveal_state: RevealState) -> PixelBuffer:
        return PixelBuffer(width=1, height=1, data=bytes((frame_index, 0, 0, 255)))

    frames = render_stroke_animation.iter_frames_parallel(
        render_one, ((index, blank) for index in range(25)), 4, None
    )
    assert [frame.data[0] for frame in frames] == list(range(25))


def test_parallel_render_matches_sequential() -> None:
    """Frame workers do not change the rendered frames."""
    config = small_config(timing_mode=TimingMode.RELATIVE, base_ms=100, per_stroke_ms=100)
    strokes, geometries = measure_strokes(TWO_STROKES)
    plan = build_timing_plan(total_stroke_length(strokes), len(strokes), config)

    def render_one(frame_index: int, reveal_state: RevealState) -> PixelBuffer:
        return render_stroke_animation.render_frame(
            frame_index, reveal_state, strokes, geometries, config
        )

    sequential = list(
        render_stroke_animation.iter_frames_sequential(
            render_one, iter_reveal_states(plan, strokes), None
        )
    )
    parallel = list(
        render_stroke_animation.iter_frames_parallel(
            render_one, iter_reveal_states(plan, strokes), 3, None
        )
    )
    assert len(sequential) == plan.frame_count
    assert [frame.data for frame in parallel] == [frame.data for frame in sequential]
    assert len({frame.shape for frame in sequential}) == 1


def test_frame_workers_must_be_positive() -> None:
    """A worker count of zero is a configuration error."""
    with pytest.raises(RenderValidationError):
        render_stroke_animation.render_animation(
            TWO_STROKES, small_config(), frame_workers=0
        )


def test_extract_stroke_paths_keeps_document_order() -> None:
    """Strokes come out in document order with ids and the viewBox."""
    stroke_paths, view_box = render_stroke_animation.extract_stroke_paths(KANJI_SVG)
    assert [stroke.stroke_id for stroke in stroke_paths] == [
        "kvg:04e8c-s1",
        "kvg:04e8c-s2",
    ]
    assert stroke_paths[0].path_data.startswith("M27.25,28.5")
    assert view_box == (0.0, 0.0, 109.0, 109.0)


def test_preprocess_svg_declares_kvg_namespace() -> None:
    """Prolog is dropped and the kvg prefix is declared."""
    processed = render_stroke_animation.preprocess_svg(KANJI_SVG)
    assert processed.startswith("<svg")
    assert 'xmlns:kvg="http://kanjivg.tagaini.net"' in processed


def test_invalid_svg_is_rejected() -> None:
    """Unparseable SVG is an input error."""
    with pytest.raises(RenderValidationError) as exc_info:
        render_stroke_animation.extract_stroke_paths("<svg><path d='M0 0'></svg>")
    assert exc_info.value.code == INPUT_FILE_CODE


def test_static_png_and_card() -> None:
    """Static exports have their fixed sizes and backgrounds."""
    config = AnimationConfig(width=64, background_rgba=(0, 0, 0, 0), guide_rgba=None)
    png_bytes = render_stroke_animation.render_static_png(TWO_STROKES, config)
    with Image.open(BytesIO(png_bytes)) as image:
        assert image.size == (64, 64)
        assert image.mode == "RGBA"
        assert image.getpixel((0, 0))[3] == 0

    card_bytes = render_stroke_animation.render_card_png(TWO_STROKES, config)
    with Image.open(BytesIO(card_bytes)) as card:
        assert card.size == (1200, 630)
        assert card.getpixel((0, 0)) == (255, 255, 255, 255)


def test_codepoint_file_name() -> None:
    """Characters map to zero-padded lowercase hex file names."""
    assert render_stroke_animation.codepoint_file_name("一") == "04e00.svg"
    assert render_stroke_animation.codepoint_file_name("二") == "04e8c.svg"


def test_resolve_input_file_variants(tmp_path: Path) -> None:
    """File lookup tries the name, .svg, then zero padding."""
    write_glyph(tmp_path, "04e8c.svg")
    assert render_stroke_animation.resolve_input_file(str(tmp_path), "04e8c.svg") == "04e8c.svg"
    assert render_stroke_animation.resolve_input_file(str(tmp_path), "04e8c") == "04e8c.svg"
    assert render_stroke_animation.resolve_input_file(str(tmp_path), "4e8c") == "04e8c.svg"
    with pytest.raises(RenderValidationError):
        render_stroke_animation.resolve_input_file(str(tmp_path), "4e00")


def test_parse_args_defaults_height_to_width() -> None:
    """Custom mode mirrors a single dimension onto the other."""
    request = render_stroke_animation.parse_args(
        ["--format", "gif", "--width", "300", "--timing", "relative"]
    )
    assert request.custom_mode
    assert (request.config.width, request.config.height) == (300, 300)
    assert request.config.timing_mode == TimingMode.RELATIVE
    assert request.out_dir.endswith("kanji_custom")


def test_parse_args_requires_format_for_customization() -> None:
    """Customization options without --format are rejected."""
    with pytest.raises(RenderValidationError):
        render_stroke_animation.parse_args(["--color", "red"])


def test_cli_custom_gif(tmp_path: Path) -> None:
    """Custom mode writes a single GIF for a character."""
    input_dir = tmp_path / "svg"
    out_dir = tmp_path / "out"
    write_glyph(input_dir)
    result = run_render_stroke_animation(
        [
            "--input-dir",
            str(input_dir),
            "--kanji",
            "二",
            "--format",
            "gif",
            "--width",
            "48",
            "--fps",
            "5",
            "--duration",
            "400",
            "--guide",
            "none",
            "--color",
            "#aa0000",
            "--out",
            str(out_dir),
        ],
        tmp_path,
    )
    assert result.returncode == 0, result.stderr
    with Image.open(out_dir / "04e8c.gif") as image:
        assert image.size == (48, 48)
        assert image.info["duration"] == 200


def test_cli_custom_png_has_no_guide(tmp_path: Path) -> None:
    """Static PNGs show the ink only, whatever guide color is configured."""
    input_dir = tmp_path / "svg"
    out_dir = tmp_path / "out"
    write_glyph(input_dir)
    result = run_render_stroke_animation(
        [
            "--input-dir",
            str(input_dir),
            "--file",
            "04e8c.svg",
            "--format",
            "png",
            "--width",
            "64",
            "--guide",
            "#ff0000",
            "--out",
            str(out_dir),
        ],
        tmp_path,
    )
    assert result.returncode == 0, result.stderr
    with Image.open(out_dir / "04e8c.png") as image:
        assert image.size == (64, 64)
        pixels = list(image.convert("RGB").getdata())
    assert any(pixel != (255, 255, 255) for pixel in pixels)
    assert all(red == green == blue for red, green, blue in pixels)


def test_cli_default_mode_writes_three_outputs(tmp_path: Path) -> None:
    """Default mode writes the square PNG, the card and the GIF."""
    input_dir = tmp_path / "svg"
    write_glyph(input_dir)
    result = run_render_stroke_animation(
        ["--input-dir", str(input_dir), "--file", "04e8c"], tmp_path
    )
    assert result.returncode == 0, result.stderr
    with Image.open(tmp_path / "kanji_png" / "04e8c.png") as square:
        assert square.size == (1024, 1024)
    with Image.open(tmp_path / "kanji_png_og" / "04e8c.png") as card:
        assert card.size == (1200, 630)
    with Image.open(tmp_path / "kanji_gif" / "04e8c.gif") as animation:
        assert animation.size == (200, 200)
        assert animation.info["loop"] == 0


def test_cli_missing_file(tmp_path: Path) -> None:
    """A missing glyph file fails with a stable error code."""
    input_dir = tmp_path / "svg"
    write_glyph(input_dir)
    result = run_render_stroke_animation(
        ["--input-dir", str(input_dir), "--file", "0ffff", "--format", "png"], tmp_path
    )
    assert result.returncode == 1
    assert INPUT_FILE_CODE in result.stderr


def test_cli_invalid_timing(tmp_path: Path) -> None:
    """An unknown timing mode fails before rendering."""
    input_dir = tmp_path / "svg"
    write_glyph(input_dir)
    result = run_render_stroke_animation(
        ["--input-dir", str(input_dir), "--format", "gif", "--timing", "sometimes"],
        tmp_path,
    )
    assert result.returncode == 1
    assert "stroke_animation.input.invalid_timing" in result.stderr
    assert not (tmp_path / "kanji_custom").exists()
