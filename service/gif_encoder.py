"""Animated GIF encoder sinks fed with ordered RGBA frames."""

from __future__ import annotations

from enum import Enum
from io import BytesIO
import os
import shutil
import subprocess
import tempfile
from typing import BinaryIO, Iterable

from PIL import GifImagePlugin, Image

from domain.stroke_animation import (
    INVALID_CONFIG_CODE,
    EncodingInvariantError,
    RenderPipelineError,
    RenderValidationError,
)
from service.rasterize import PixelBuffer

FFMPEG_NOT_FOUND_CODE = "stroke_animation.ffmpeg.not_found"
FFMPEG_EXEC_CODE = "stroke_animation.ffmpeg.exec_error"
FFMPEG_PROCESS_CODE = "stroke_animation.ffmpeg.process_failed"

LOOP_FOREVER = 0
ALPHA_THRESHOLD = 128
TRANSPARENT_INDEX = 255
PALETTE_SIZE = 256
OPAQUE_DISPOSAL = 1
TRANSPARENT_DISPOSAL = 2
FFMPEG_OUTPUT_NAME = "animation.gif"
GIF_TRAILER = b";"


class EncoderBackend(str, Enum):
    """Available GIF encoder implementations."""

    PILLOW = "pillow"
    FFMPEG = "ffmpeg"


def parse_encoder_backend(value: str) -> EncoderBackend:
    """Parse an encoder backend name."""
    normalized = value.strip().lower()
    try:
        return EncoderBackend(normalized)
    except ValueError as exc:
        raise RenderValidationError(
            INVALID_CONFIG_CODE, f"invalid encoder: {value!r}", "encoder"
        ) from exc


def check_frame_shape(frame: PixelBuffer, width: int, height: int) -> None:
    """Raise when a frame does not match the sink's fixed size."""
    if frame.width != width or frame.height != height:
        raise EncodingInvariantError(
            f"frame is {frame.width}x{frame.height}, encoder expects {width}x{height}"
        )


def to_opaque_palette_frame(image: Image.Image) -> Image.Image:
    """Quantize an opaque RGBA frame to a 256-color palette image."""
    return image.convert("RGB").quantize(colors=PALETTE_SIZE)


def to_transparent_palette_frame(image: Image.Image) -> Image.Image:
    """Quantize an RGBA frame, mapping low-alpha pixels to the reserved index.

    GIF transparency is binary: pixels below ALPHA_THRESHOLD become fully
    transparent and the rest keep their color fully opaque.
    """
    paletted = image.convert("RGB").quantize(colors=PALETTE_SIZE - 1)
    palette = paletted.getpalette()[: (PALETTE_SIZE - 1) * 3]
    palette.extend([0] * (PALETTE_SIZE * 3 - len(palette)))
    paletted.putpalette(palette)
    transparent_mask = image.getchannel("A").point(
        lambda alpha: 255 if alpha < ALPHA_THRESHOLD else 0
    )
    paletted.paste(TRANSPARENT_INDEX, mask=transparent_mask)
    paletted.info["transparency"] = TRANSPARENT_INDEX
    return paletted


class PillowGifSink:
    """In-process GIF encoder writing frames through Pillow's GIF plugin."""

    def __init__(
        self,
        width: int,
        height: int,
        delay_ms: float,
        transparent: bool,
        loop: int = LOOP_FOREVER,
    ) -> None:
        if width <= 0 or height <= 0:
            raise RenderValidationError(
                INVALID_CONFIG_CODE, "width and height must be positive", "width"
            )
        if delay_ms <= 0:
            raise RenderValidationError(
                INVALID_CONFIG_CODE, "delay_ms must be positive", "delay_ms"
            )
        self.width = width
        self.height = height
        self.delay_ms = delay_ms
        self.transparent = transparent
        self.loop = loop

    def convert_frame(self, frame: PixelBuffer) -> Image.Image:
        check_frame_shape(frame, self.width, self.height)
        image = frame.to_image()
        if self.transparent:
            return to_transparent_palette_frame(image)
        return to_opaque_palette_frame(image)

    def frame_params(self) -> dict:
        """Per-frame graphic control options; every frame carries its palette."""
        params = {
            "duration": int(round(self.delay_ms)),
            "disposal": TRANSPARENT_DISPOSAL if self.transparent else OPAQUE_DISPOSAL,
            "include_color_table": True,
        }
        if self.transparent:
            params["transparency"] = TRANSPARENT_INDEX
        return params

    def write(self, frames: Iterable[PixelBuffer], output: BinaryIO) -> int:
        """Write each frame to ``output`` as it arrives; return the frame count.

        The logical screen header is written with the first frame, so no
        frame is held once its image data has been written.
        """
        params = self.frame_params()
        frame_count = 0
        for frame in frames:
            palette_frame = self.convert_frame(frame)
            if frame_count == 0:
                header, _ = GifImagePlugin.getheader(
                    palette_frame,
                    info={
                        "loop": self.loop,
                        "duration": params["duration"],
                        "optimize": False,
                    },
                )
                for chunk in header:
                    output.write(chunk)
            for chunk in GifImagePlugin.getdata(palette_frame, **params):
                output.write(chunk)
            frame_count += 1
        if frame_count == 0:
            raise EncodingInvariantError("encoder received no frames")
        output.write(GIF_TRAILER)
        return frame_count

    def encode(self, frames: Iterable[PixelBuffer]) -> bytes:
        """Consume frames in order and return the finished GIF bytes."""
        output = BytesIO()
        self.write(frames, output)
        return output.getvalue()


def ensure_ffmpeg_available() -> str:
    """Ensure ffmpeg is installed and executable; return its path."""
    ffmpeg_path = shutil.which("ffmpeg")
    if not ffmpeg_path:
        raise RenderPipelineError(FFMPEG_NOT_FOUND_CODE, "ffmpeg not on PATH")
    try:
        subprocess.run(
            [ffmpeg_path, "-version"],
            stdout=subprocess.DEVNULL,
            stderr=subprocess.DEVNULL,
            check=True,
        )
    except Exception as exc:
        raise RenderPipelineError(
            FFMPEG_EXEC_CODE, "ffmpeg exists but could not be executed"
        ) from exc
    return ffmpeg_path


def build_palette_filter(transparent: bool) -> str:
    """Build the two-pass palette filter graph."""
    if transparent:
        return (
            "[0:v]split[frames][source];"
            "[source]palettegen=reserve_transparent=1[palette];"
            f"[frames][palette]paletteuse=alpha_threshold={ALPHA_THRESHOLD}[out]"
        )
    return (
        "[0:v]split[frames][source];"
        "[source]palettegen=reserve_transparent=0[palette];"
        "[frames][palette]paletteuse[out]"
    )


def build_ffmpeg_gif_command(
    ffmpeg_path: str,
    width: int,
    height: int,
    fps: int,
    transparent: bool,
    loop: int,
    output_path: str,
) -> list[str]:
    """Build the ffmpeg command for a raw RGBA frame stream."""
    return [
        ffmpeg_path,
        "-y",
        "-loglevel",
        "error",
        "-f",
        "rawvideo",
        "-pix_fmt",
        "rgba",
        "-s",
        f"{width}x{height}",
        "-r",
        str(fps),
        "-i",
        "-",
        "-filter_complex",
        build_palette_filter(transparent),
        "-map",
        "[out]",
        "-loop",
        str(loop),
        "-f",
        "gif",
        output_path,
    ]


class FfmpegGifSink:
    """GIF encoder streaming raw frames into an ffmpeg process."""

    def __init__(
        self,
        width: int,
        height: int,
        fps: int,
        transparent: bool,
        loop: int = LOOP_FOREVER,
    ) -> None:
        if width <= 0 or height <= 0:
            raise RenderValidationError(
                INVALID_CONFIG_CODE, "width and height must be positive", "width"
            )
        if fps <= 0:
            raise RenderValidationError(INVALID_CONFIG_CODE, "fps must be positive", "fps")
        self.width = width
        self.height = height
        self.fps = fps
        self.transparent = transparent
        self.loop = loop

    def encode(self, frames: Iterable[PixelBuffer]) -> bytes:
        """Pipe frames to ffmpeg in order and return the finished GIF bytes."""
        ffmpeg_path = ensure_ffmpeg_available()
        with tempfile.TemporaryDirectory() as temp_dir:
            output_path = os.path.join(temp_dir, FFMPEG_OUTPUT_NAME)
            command = build_ffmpeg_gif_command(
                ffmpeg_path,
                self.width,
                self.height,
                self.fps,
                self.transparent,
                self.loop,
                output_path,
            )
            try:
                ffmpeg_process = subprocess.Popen(
                    command,
                    stdin=subprocess.PIPE,
                    stdout=subprocess.DEVNULL,
                    stderr=subprocess.PIPE,
                )
            except FileNotFoundError as exc:
                raise RenderPipelineError(FFMPEG_NOT_FOUND_CODE, "ffmpeg not found") from exc
            if not ffmpeg_process.stdin:
                raise RenderPipelineError(FFMPEG_PROCESS_CODE, "ffmpeg stdin unavailable")

            frame_count = 0
            try:
                for frame in frames:
                    check_frame_shape(frame, self.width, self.height)
                    try:
                        ffmpeg_process.stdin.write(frame.data)
                    except BrokenPipeError as exc:
                        raise RenderPipelineError(
                            FFMPEG_PROCESS_CODE, "ffmpeg closed its input early"
                        ) from exc
                    frame_count += 1
                if frame_count == 0:
                    raise EncodingInvariantError("encoder received no frames")

                ffmpeg_process.stdin.close()
                stderr_bytes = (
                    ffmpeg_process.stderr.read() if ffmpeg_process.stderr else b""
                )
                return_code = ffmpeg_process.wait()
                if return_code != 0:
                    stderr_text = stderr_bytes.decode("utf-8", errors="replace").strip()
                    raise RenderPipelineError(
                        FFMPEG_PROCESS_CODE,
                        f"ffmpeg failed with exit code {return_code}. {stderr_text}",
                    )
            finally:
                try:
                    if ffmpeg_process.stdin and not ffmpeg_process.stdin.closed:
                        ffmpeg_process.stdin.close()
                except Exception:
                    pass
                try:
                    if ffmpeg_process.poll() is None:
                        ffmpeg_process.kill()
                        ffmpeg_process.wait()
                except Exception:
                    pass

            with open(output_path, "rb") as file_handle:
                return file_handle.read()


def create_gif_sink(
    backend: EncoderBackend,
    width: int,
    height: int,
    fps: int,
    transparent: bool,
) -> PillowGifSink | FfmpegGifSink:
    """Create the encoder sink for a backend."""
    if backend == EncoderBackend.PILLOW:
        return PillowGifSink(width, height, 1000.0 / fps, transparent)
    if backend == EncoderBackend.FFMPEG:
        return FfmpegGifSink(width, height, fps, transparent)
    raise RenderValidationError(
        INVALID_CONFIG_CODE, f"unsupported encoder: {backend!r}", "encoder"
    )
