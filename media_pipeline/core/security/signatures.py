"""
Magic-number and dangerous-content signatures.

Only the first few kilobytes of a file are ever inspected.
"""

from typing import Callable, Dict, Optional

_Matcher = Callable[[bytes], bool]


def _starts(*prefixes: bytes) -> _Matcher:
    return lambda head: any(head.startswith(p) for p in prefixes)


def _ftyp_brand(*brands: bytes) -> _Matcher:
    # ISO base media: size(4) "ftyp" brand(4)
    return lambda head: head[4:8] == b"ftyp" and head[8:12] in brands


def _is_webp(head: bytes) -> bool:
    return head[0:4] == b"RIFF" and head[8:12] == b"WEBP"


def _is_avi(head: bytes) -> bool:
    return head[0:4] == b"RIFF" and head[8:12] == b"AVI "


def _is_mp4(head: bytes) -> bool:
    return b"ftyp" in head[:100] or head[4:8] in (b"mdat", b"moov")


def _is_quicktime(head: bytes) -> bool:
    return head[4:8] in (b"ftyp", b"moov", b"mdat", b"wide", b"free", b"skip")


IMAGE_SIGNATURES: Dict[str, _Matcher] = {
    "image/jpeg": _starts(b"\xff\xd8\xff"),
    "image/jpg": _starts(b"\xff\xd8\xff"),
    "image/png": _starts(b"\x89PNG\r\n\x1a\n"),
    "image/webp": _is_webp,
    "image/bmp": _starts(b"BM"),
    "image/tiff": _starts(b"II*\x00", b"MM\x00*"),
    "image/gif": _starts(b"GIF87a", b"GIF89a"),
    "image/avif": _ftyp_brand(b"avif", b"avis"),
    "image/heic": _ftyp_brand(b"heic", b"heix", b"hevc", b"hevx", b"mif1", b"msf1"),
    "image/heif": _ftyp_brand(b"heic", b"heix", b"hevc", b"hevx", b"mif1", b"msf1"),
}

VIDEO_SIGNATURES: Dict[str, _Matcher] = {
    "video/mp4": _is_mp4,
    "video/x-m4v": _is_mp4,
    "video/3gpp": _is_mp4,
    "video/quicktime": _is_quicktime,
    "video/x-msvideo": _is_avi,
    "video/avi": _is_avi,
    "video/webm": _starts(b"\x1a\x45\xdf\xa3"),
    "video/x-matroska": _starts(b"\x1a\x45\xdf\xa3"),
    "video/x-flv": _starts(b"FLV"),
    "video/x-ms-wmv": _starts(b"\x30\x26\xb2\x75\x8e\x66\xcf\x11"),
    "video/mpeg": _starts(b"\x00\x00\x01\xba", b"\x00\x00\x01\xb3"),
}

# Executable and archive headers, checked at offset 0
EXECUTABLE_PREFIXES = (b"MZ", b"PK\x03\x04", b"\x7fELF")

# Markup and script markers, searched case-insensitively
SCRIPT_MARKERS = (
    b"<!doctype",
    b"<html",
    b"<script",
    b"javascript:",
    b"vbscript:",
    b"<?php",
)


def matches_signature(media_type: str, head: bytes, table: Dict[str, _Matcher]) -> bool:
    """True when ``head`` fits the magic number for ``media_type``, or none is known."""
    matcher = table.get(media_type)
    if matcher is None:
        return True
    return matcher(head)


def find_dangerous_signature(head: bytes) -> Optional[str]:
    """Return the first dangerous marker found in ``head``, if any."""
    for prefix in EXECUTABLE_PREFIXES:
        if head.startswith(prefix):
            return prefix.decode("latin-1")
    lowered = head.lower()
    for marker in SCRIPT_MARKERS:
        if marker in lowered:
            return marker.decode("ascii")
    return None
