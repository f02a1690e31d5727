"""
Video transform engine backed by ffmpeg.

The whole plan becomes a single ffmpeg invocation: trim maps to input
seeking, watermarks to a drawtext or overlay filter, and encode to codec
and container flags. Faults are classified from what ffmpeg could do, not
from its messages: a file ffprobe cannot read is the input's fault, a
failing encode of a readable file is the environment's.
"""

import logging
import subprocess
import time
from pathlib import Path
from typing import List, Optional, Tuple

from media_pipeline.config import FFPROBE_TIMEOUT_SECONDS, VIDEO_JOB_TIMEOUT_SECONDS
from media_pipeline.core.engines.base import EngineResult, TransformEngine
from media_pipeline.core.errors import (
    EngineFault,
    ErrorCode,
    FaultKind,
    MissingInputFault,
    TimeoutFault,
    UnsupportedFormatFault,
)
from media_pipeline.core.operations import (
    ImageWatermark,
    MediaKind,
    OperationPlan,
    Position,
    TextWatermark,
    Trim,
)
from media_pipeline.core.utils.ffmpeg import (
    FFmpegError,
    FFmpegNotFoundError,
    VideoProbe,
    ffmpeg_command,
    probe_video,
    run_ffmpeg,
)

logger = logging.getLogger(__name__)

DEFAULT_CRF = 23
DEFAULT_FONT_SIZE = 24

CONTAINER_EXTENSIONS = {"mp4": ".mp4", "avi": ".avi", "mov": ".mov", "mkv": ".mkv", "webm": ".webm"}
CONTAINER_MUXERS = {"mp4": "mp4", "avi": "avi", "mov": "mov", "mkv": "matroska", "webm": "webm"}

# drawtext / overlay coordinates per position
_TEXT_POSITIONS = {
    Position.TOP_LEFT: ("{m}", "{m}"),
    Position.TOP: ("(w-text_w)/2", "{m}"),
    Position.TOP_RIGHT: ("w-text_w-{m}", "{m}"),
    Position.LEFT: ("{m}", "(h-text_h)/2"),
    Position.CENTER: ("(w-text_w)/2", "(h-text_h)/2"),
    Position.RIGHT: ("w-text_w-{m}", "(h-text_h)/2"),
    Position.BOTTOM_LEFT: ("{m}", "h-text_h-{m}"),
    Position.BOTTOM: ("(w-text_w)/2", "h-text_h-{m}"),
    Position.BOTTOM_RIGHT: ("w-text_w-{m}", "h-text_h-{m}"),
}

_OVERLAY_POSITIONS = {
    Position.TOP_LEFT: ("{m}", "{m}"),
    Position.TOP: ("(W-w)/2", "{m}"),
    Position.TOP_RIGHT: ("W-w-{m}", "{m}"),
    Position.LEFT: ("{m}", "(H-h)/2"),
    Position.CENTER: ("(W-w)/2", "(H-h)/2"),
    Position.RIGHT: ("W-w-{m}", "(H-h)/2"),
    Position.BOTTOM_LEFT: ("{m}", "H-h-{m}"),
    Position.BOTTOM: ("(W-w)/2", "H-h-{m}"),
    Position.BOTTOM_RIGHT: ("W-w-{m}", "H-h-{m}"),
}


def quality_to_crf(quality: Optional[int], scale: int = 51) -> int:
    """Map 1-100 quality onto a CRF scale where lower is better."""
    if quality is None:
        return DEFAULT_CRF if scale == 51 else round(DEFAULT_CRF * scale / 51)
    return max(0, min(scale, round(scale - quality * scale / 100)))


def escape_drawtext(text: str) -> str:
    """Escape characters that carry meaning inside an ffmpeg filter argument."""
    for char in ("\\", ":", "'", "%", ",", "[", "]", ";"):
        text = text.replace(char, "\\" + char)
    return text


def _codec_args(fmt: str, quality: Optional[int]) -> List[str]:
    if fmt == "webm":
        return [
            "-c:v", "libvpx-vp9", "-crf", str(quality_to_crf(quality, scale=63)), "-b:v", "0",
            "-c:a", "libopus",
        ]
    args = [
        "-c:v", "libx264", "-preset", "medium", "-crf", str(quality_to_crf(quality)),
        "-pix_fmt", "yuv420p",
        "-c:a", "aac", "-b:a", "128k",
    ]
    if fmt in ("mp4", "mov"):
        args += ["-movflags", "+faststart"]
    return args


def text_filter(op: TextWatermark) -> str:
    x, y = _TEXT_POSITIONS[op.position]
    margin = str(op.margin)
    color = "0x" + op.color.lstrip("#")
    return (
        f"drawtext=text='{escape_drawtext(op.text)}'"
        f":fontsize={op.font_size or DEFAULT_FONT_SIZE}"
        f":fontcolor={color}@{op.opacity:g}"
        f":x={x.format(m=margin)}:y={y.format(m=margin)}"
    )


def overlay_filter(op: ImageWatermark) -> str:
    x, y = _OVERLAY_POSITIONS[op.position]
    margin = str(op.margin)
    return (
        f"[1:v]format=rgba,colorchannelmixer=aa={op.opacity:g}[wm];"
        f"[wm][0:v]scale2ref=w='iw*{op.scale:g}':h='ow/mdar'[wm_scaled][base];"
        f"[base][wm_scaled]overlay={x.format(m=margin)}:{y.format(m=margin)}[v]"
    )


class VideoEngine(TransformEngine):
    """ffmpeg implementation of trim, watermark and encode."""

    kind = MediaKind.VIDEO

    def __init__(self, timeout: float = VIDEO_JOB_TIMEOUT_SECONDS, probe_timeout: float = FFPROBE_TIMEOUT_SECONDS):
        self.timeout = timeout
        self.probe_timeout = probe_timeout

    def probe(self, path: Path) -> VideoProbe:
        if not path.exists():
            raise MissingInputFault(f"Video not found: {path.name}")
        try:
            return probe_video(path, timeout=self.probe_timeout)
        except FFmpegNotFoundError as exc:
            raise EngineFault(str(exc), FaultKind.ENVIRONMENT, ErrorCode.ENGINE_UNAVAILABLE) from exc
        except subprocess.TimeoutExpired as exc:
            raise TimeoutFault(f"ffprobe timed out on {path.name}") from exc
        except FFmpegError as exc:
            raise EngineFault(
                f"Unreadable or corrupted video: {path.name}",
                FaultKind.INPUT,
                ErrorCode.CORRUPTED_INPUT,
                details={"stderr": exc.stderr[-500:]} if exc.stderr else None,
            ) from exc

    def inspect(self, path: Path) -> EngineResult:
        info = self.probe(path)
        return EngineResult(
            output_path=path,
            format=path.suffix.lstrip(".").lower(),
            applied_operations=(),
            width=info.width,
            height=info.height,
            duration=info.duration,
            codec=info.codec,
            fps=info.fps,
        )

    def build_command(
        self,
        source: Path,
        plan: OperationPlan,
        output_path: Path,
        has_audio: bool = True,
    ) -> Tuple[List[str], List[str]]:
        """The ffmpeg argument list for ``plan`` and the descriptors it applies."""
        args: List[str] = []
        applied: List[str] = []
        trim: Optional[Trim] = None
        watermark = None

        for op in plan.operations[:-1]:
            if isinstance(op, Trim):
                trim = op
            elif isinstance(op, (TextWatermark, ImageWatermark)):
                watermark = op
            else:
                raise EngineFault(
                    f"Operation {op.kind} is not supported for video",
                    FaultKind.INPUT,
                    ErrorCode.UNSUPPORTED_OPERATION,
                )

        if trim is not None:
            args += ["-ss", f"{trim.start_time:g}"]
        args += ["-i", str(source)]
        if trim is not None:
            args += ["-t", f"{trim.duration:g}"]
            applied.append(trim.describe())

        if isinstance(watermark, ImageWatermark):
            args += ["-i", watermark.image_path]
            args += ["-filter_complex", overlay_filter(watermark), "-map", "[v]"]
            if has_audio:
                args += ["-map", "0:a?"]
            applied.append(watermark.describe())
        elif isinstance(watermark, TextWatermark):
            args += ["-vf", text_filter(watermark)]
            applied.append(watermark.describe())

        encode = plan.encode
        if encode.format not in CONTAINER_EXTENSIONS:
            raise UnsupportedFormatFault(f"Cannot encode video as {encode.format}")
        args += _codec_args(encode.format, encode.quality)
        if not has_audio:
            args += ["-an"]
        args += ["-f", CONTAINER_MUXERS[encode.format], str(output_path)]
        crf = quality_to_crf(encode.quality, scale=63 if encode.format == "webm" else 51)
        applied.append(f"format:{encode.format}:crf{crf}")

        return ffmpeg_command(*args), applied

    def apply(
        self,
        source: Path,
        plan: OperationPlan,
        output_dir: Path,
        output_stem: str,
        deadline: Optional[float] = None,
    ) -> EngineResult:
        info = self.probe(source)
        timeout = self.timeout
        if deadline is not None:
            remaining = deadline - time.monotonic()
            if remaining <= 0:
                raise TimeoutFault("Video processing ran out of time before encoding")
            timeout = min(timeout, remaining)

        output_dir.mkdir(parents=True, exist_ok=True)
        output_path = output_dir / f"{output_stem}{CONTAINER_EXTENSIONS.get(plan.output_format, '.mp4')}"
        cmd, applied = self.build_command(source, plan, output_path, has_audio=info.has_audio)

        try:
            run_ffmpeg(cmd, timeout=timeout)
        except FFmpegNotFoundError as exc:
            raise EngineFault(str(exc), FaultKind.ENVIRONMENT, ErrorCode.ENGINE_UNAVAILABLE) from exc
        except subprocess.TimeoutExpired as exc:
            raise TimeoutFault(f"Video processing exceeded {timeout:.0f}s") from exc
        except FFmpegError as exc:
            # The source probed fine, so blame the execution environment
            raise EngineFault(
                f"ffmpeg failed with status {exc.returncode}",
                FaultKind.ENVIRONMENT,
                ErrorCode.ENGINE_ERROR,
                details={"stderr": exc.stderr[-500:]} if exc.stderr else None,
            ) from exc

        result = self.probe(output_path)
        logger.debug("Transformed %s -> %s (%s)", source.name, output_path.name, ", ".join(applied))
        return EngineResult(
            output_path=output_path,
            format=plan.output_format,
            applied_operations=tuple(applied),
            width=result.width,
            height=result.height,
            duration=result.duration,
            codec=result.codec,
            fps=result.fps,
            metadata={
                "source_duration": info.duration,
                "source_codec": info.codec,
                "source_resolution": f"{info.width}x{info.height}",
                "bitrate": result.bitrate,
            },
        )
