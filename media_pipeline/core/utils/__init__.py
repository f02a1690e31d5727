"""
Utility modules for FFmpeg execution and media probing.
"""

from media_pipeline.core.utils.ffmpeg import (
    FFmpegError,
    FFmpegNotFoundError,
    VideoProbe,
    ffmpeg_command,
    filter_benign_warnings,
    probe_video,
    run_ffmpeg,
)

__all__ = [
    "FFmpegError",
    "FFmpegNotFoundError",
    "VideoProbe",
    "ffmpeg_command",
    "filter_benign_warnings",
    "probe_video",
    "run_ffmpeg",
]
