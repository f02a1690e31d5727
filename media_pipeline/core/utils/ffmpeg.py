"""
FFmpeg and ffprobe helpers.

Commands are run as argument lists, never through a shell. Failures raise
``FFmpegError`` carrying the exit code and filtered stderr so callers can
classify them without parsing messages.
"""

import json
import logging
import re
import subprocess
from dataclasses import dataclass
from fractions import Fraction
from pathlib import Path
from typing import Optional

from media_pipeline.config import FFMPEG_BINARY, FFPROBE_BINARY, FFPROBE_TIMEOUT_SECONDS

logger = logging.getLogger(__name__)

# Known benign warnings that should be filtered from stderr
BENIGN_WARNING_PATTERNS = [
    r"\[av1 @ .*\] Your platform doesn't suppport hardware accelerated AV1 decoding",
    r"\[av1 @ .*\] Failed to get pixel format",
    r"\[.*\] .* does not support hardware acceleration",
    r"\[.*\] .* hardware acceleration disabled",
    r"deprecated pixel format used",
]


class FFmpegError(RuntimeError):
    """An ffmpeg or ffprobe process exited unsuccessfully."""

    def __init__(self, message: str, returncode: Optional[int] = None, stderr: str = ""):
        self.returncode = returncode
        self.stderr = stderr
        super().__init__(message)


class FFmpegNotFoundError(FFmpegError):
    """The ffmpeg or ffprobe binary is not installed."""


@dataclass(frozen=True)
class VideoProbe:
    duration: float
    width: int
    height: int
    codec: str
    fps: float
    bitrate: int
    format_name: str
    has_audio: bool

    @property
    def aspect_ratio(self) -> float:
        return self.width / self.height if self.height else 0.0


def filter_benign_warnings(stderr: str) -> tuple[str, list[str]]:
    """
    Filter out known benign warnings from FFmpeg stderr.

    Returns:
        Tuple of (filtered_stderr, filtered_warnings_list).
    """
    filtered_lines = []
    filtered_warnings = []

    for line in stderr.split("\n"):
        if any(re.search(p, line, re.IGNORECASE) for p in BENIGN_WARNING_PATTERNS):
            filtered_warnings.append(line)
        else:
            filtered_lines.append(line)

    return "\n".join(filtered_lines), filtered_warnings


def run_ffmpeg(
    cmd: list[str],
    log_level: str = "error",
    timeout: Optional[float] = None,
) -> subprocess.CompletedProcess:
    """
    Run an FFmpeg command.

    Args:
        cmd: FFmpeg command as list of arguments, starting with the binary.
        log_level: FFmpeg log level inserted when the command sets none.
        timeout: Seconds before the process is killed.

    Raises:
        FFmpegNotFoundError: If the binary is missing.
        FFmpegError: If FFmpeg exits with a non-zero status.
        subprocess.TimeoutExpired: If the timeout elapses.
    """
    if "-loglevel" not in cmd:
        insert_pos = 2 if len(cmd) > 1 and cmd[1] == "-y" else 1
        cmd = cmd[:insert_pos] + ["-loglevel", log_level] + cmd[insert_pos:]

    logger.debug("Running: %s", " ".join(cmd))
    try:
        result = subprocess.run(cmd, capture_output=True, text=True, timeout=timeout)
    except FileNotFoundError as exc:
        raise FFmpegNotFoundError(f"{cmd[0]} is not installed") from exc

    stderr = result.stderr or ""
    if stderr:
        stderr, warnings = filter_benign_warnings(stderr)
        if warnings:
            logger.debug(f"Filtered {len(warnings)} benign FFmpeg warnings")

    if result.returncode != 0:
        logger.error(f"FFmpeg failed ({result.returncode}): {stderr.strip()}")
        raise FFmpegError(
            f"FFmpeg exited with status {result.returncode}",
            returncode=result.returncode,
            stderr=stderr,
        )

    return result


def ffmpeg_command(*args: str) -> list[str]:
    return [FFMPEG_BINARY, "-y", *args]


def _parse_rate(value: Optional[str]) -> float:
    if not value or value in ("0/0", "N/A"):
        return 0.0
    try:
        return float(Fraction(value))
    except (ValueError, ZeroDivisionError):
        return 0.0


def probe_video(path: Path, timeout: float = FFPROBE_TIMEOUT_SECONDS) -> VideoProbe:
    """
    Read container and stream metadata with ffprobe.

    Raises:
        FFmpegNotFoundError: If ffprobe is missing.
        FFmpegError: If the file cannot be parsed or has no video stream.
    """
    cmd = [
        FFPROBE_BINARY,
        "-v", "error",
        "-print_format", "json",
        "-show_format",
        "-show_streams",
        str(path),
    ]
    try:
        result = subprocess.run(cmd, capture_output=True, text=True, timeout=timeout)
    except FileNotFoundError as exc:
        raise FFmpegNotFoundError(f"{FFPROBE_BINARY} is not installed") from exc

    if result.returncode != 0:
        raise FFmpegError(
            f"ffprobe could not read {path.name}",
            returncode=result.returncode,
            stderr=result.stderr or "",
        )

    try:
        data = json.loads(result.stdout or "{}")
    except json.JSONDecodeError as exc:
        raise FFmpegError(f"ffprobe returned invalid JSON for {path.name}") from exc

    streams = data.get("streams", [])
    video = next((s for s in streams if s.get("codec_type") == "video"), None)
    if video is None:
        raise FFmpegError(f"No video stream found in {path.name}")

    fmt = data.get("format", {})
    duration = float(fmt.get("duration") or video.get("duration") or 0.0)

    return VideoProbe(
        duration=duration,
        width=int(video.get("width") or 0),
        height=int(video.get("height") or 0),
        codec=video.get("codec_name", "unknown"),
        fps=_parse_rate(video.get("avg_frame_rate") or video.get("r_frame_rate")),
        bitrate=int(fmt.get("bit_rate") or 0),
        format_name=fmt.get("format_name", ""),
        has_audio=any(s.get("codec_type") == "audio" for s in streams),
    )
