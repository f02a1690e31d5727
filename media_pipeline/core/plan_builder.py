"""
Operation Plan Builder.

Decodes the loosely-typed operation map sent by a client into a canonical,
ordered, range-checked ``OperationPlan``. The output order never depends on
the order of keys in the request:

    rotate -> flip -> flop -> crop -> resize -> color -> filters
           -> blur -> sharpen -> watermark -> encode

Rotation changes the frame before crop coordinates are read, crop precedes
resize so its coordinates refer to the source frame, and the watermark goes
on last so nothing distorts it.
"""

import logging
import re
from dataclasses import dataclass
from pathlib import Path
from typing import Any, Dict, List, Mapping, Optional, Type

from pydantic import BaseModel
from pydantic import ValidationError as PydanticValidationError

from media_pipeline.config import WATERMARK_DIR
from media_pipeline.core.errors import ErrorCode, UnsupportedFormatFault, ValidationFault
from media_pipeline.core.operations import (
    DEFAULT_IMAGE_QUALITY,
    DEFAULT_PNG_COMPRESSION,
    FILTER_ORDER,
    FORMAT_ALIASES,
    IMAGE_OUTPUT_FORMATS,
    MAX_IMAGE_OPERATIONS,
    MAX_VIDEO_OPERATIONS,
    VIDEO_OUTPUT_FORMATS,
    Blur,
    ColorAdjust,
    Crop,
    Encode,
    Filter,
    FilterName,
    Flip,
    Flop,
    ImageWatermark,
    MediaKind,
    OperationPlan,
    Resize,
    Rotate,
    Sharpen,
    TextWatermark,
    Trim,
    clamp_crop,
    rotated_dimensions,
)
from media_pipeline.core.security.constants import IMAGE_CONVERSION_MATRIX

logger = logging.getLogger(__name__)

# Encode settings shape the output but are not counted as operations
ENCODE_KEYS = frozenset({"format", "quality", "compression", "progressive", "lossless"})
COLOR_KEYS = ("brightness", "contrast", "saturation", "hue", "gamma")

IMAGE_KEYS = frozenset({
    "rotate", "flip", "flop", "crop", "resize",
    *COLOR_KEYS,
    *(f.value for f in FilterName),
    "blur", "sharpen", "watermark",
}) | ENCODE_KEYS

VIDEO_KEYS = frozenset({"trim", "watermark", "format", "quality"})

MAX_OPERATIONS = {
    MediaKind.IMAGE: MAX_IMAGE_OPERATIONS,
    MediaKind.VIDEO: MAX_VIDEO_OPERATIONS,
}

# Default output format per source media type
IMAGE_DEFAULT_FORMATS = {
    "image/jpeg": "jpeg",
    "image/jpg": "jpeg",
    "image/png": "png",
    "image/webp": "webp",
    "image/avif": "avif",
    "image/gif": "png",
    "image/bmp": "png",
    "image/tiff": "png",
    "image/heic": "jpeg",
    "image/heif": "jpeg",
}

VIDEO_DEFAULT_FORMATS = {
    "video/mp4": "mp4",
    "video/x-m4v": "mp4",
    "video/quicktime": "mov",
    "video/webm": "webm",
    "video/x-matroska": "mkv",
    "video/x-msvideo": "avi",
    "video/avi": "avi",
}

_CAMEL_BOUNDARY = re.compile(r"(?<!^)(?=[A-Z])")


@dataclass(frozen=True)
class FileContext:
    """What is known about the source when a plan is built."""

    size: int
    media_type: str
    width: Optional[int] = None
    height: Optional[int] = None
    duration: Optional[float] = None
    watermark_dir: Path = WATERMARK_DIR


# -----------------------------------------------------------------------------
# Helpers
# -----------------------------------------------------------------------------

def _snake(key: str) -> str:
    return _CAMEL_BOUNDARY.sub("_", key).lower()


def _snake_keys(value: Mapping[str, Any]) -> Dict[str, Any]:
    return {_snake(str(k)): v for k, v in value.items()}


def _is_present(value: Any) -> bool:
    return value is not None and value is not False


def _first_error(exc: PydanticValidationError) -> str:
    err = exc.errors()[0]
    loc = ".".join(str(part) for part in err.get("loc", ()) if part != "kind")
    msg = err.get("msg", "Invalid value")
    return f"{loc}: {msg}" if loc else msg


def _parse(model: Type[BaseModel], data: Dict[str, Any], code: ErrorCode, field: str) -> Any:
    try:
        return model.model_validate(data)
    except PydanticValidationError as exc:
        raise ValidationFault(
            f"Invalid {field} parameters ({_first_error(exc)})",
            code,
            field=field,
        ) from exc


def _require_mapping(value: Any, code: ErrorCode, field: str) -> Dict[str, Any]:
    if not isinstance(value, Mapping):
        raise ValidationFault(f"{field} must be an object", code, field=field)
    return _snake_keys(value)


def _require_number(value: Any, field: str) -> float:
    if isinstance(value, bool) or not isinstance(value, (int, float)):
        raise ValidationFault(
            f"{field} must be a number",
            ErrorCode.INVALID_OPERATIONS,
            field=field,
        )
    return float(value)


def _require_flag(value: Any, field: str) -> None:
    if value is not True:
        raise ValidationFault(
            f"{field} must be true or omitted",
            ErrorCode.INVALID_OPERATIONS,
            field=field,
        )


def normalize_format(value: Any) -> str:
    if not isinstance(value, str) or not value.strip():
        raise UnsupportedFormatFault("Output format must be a non-empty string", details={"field": "format"})
    fmt = value.strip().lower().lstrip(".")
    return FORMAT_ALIASES.get(fmt, fmt)


def count_operations(raw: Mapping[str, Any]) -> int:
    """Number of requested transformations, encode settings excluded."""
    return sum(1 for key, value in raw.items() if key not in ENCODE_KEYS and _is_present(value))


# -----------------------------------------------------------------------------
# Entry point
# -----------------------------------------------------------------------------

def build_plan(
    kind: MediaKind,
    raw_operations: Optional[Mapping[str, Any]],
    context: FileContext,
) -> OperationPlan:
    """
    Build the canonical plan for one job.

    Raises:
        ValidationFault: Unknown keys, too many operations or out-of-range values.
        UnsupportedFormatFault: Output format not supported for this source.
    """
    if raw_operations is None:
        raw_operations = {}
    if not isinstance(raw_operations, Mapping):
        raise ValidationFault("Operations must be an object", ErrorCode.INVALID_OPERATIONS, field="operations")

    raw = {str(k): v for k, v in raw_operations.items()}
    allowed = IMAGE_KEYS if kind == MediaKind.IMAGE else VIDEO_KEYS
    unknown = sorted(k for k in raw if k not in allowed)
    if unknown:
        raise ValidationFault(
            f"Unsupported operations for {kind.value}: {', '.join(unknown)}",
            ErrorCode.UNSUPPORTED_OPERATION,
            field="operations",
            details={"supported": sorted(allowed)},
        )

    count = count_operations(raw)
    limit = MAX_OPERATIONS[kind]
    if count > limit:
        raise ValidationFault(
            f"Too many operations. Maximum: {limit}",
            ErrorCode.TOO_MANY_OPERATIONS,
            field="operations",
            details={"requested": count, "maximum": limit},
        )

    if kind == MediaKind.IMAGE:
        operations = _image_operations(raw, context)
    else:
        operations = _video_operations(raw, context)

    plan = OperationPlan(media_kind=kind, operations=tuple(operations), requested_count=count)
    logger.debug("Built %s plan: %s", kind.value, plan.descriptors())
    return plan


# -----------------------------------------------------------------------------
# Images
# -----------------------------------------------------------------------------

def _image_operations(raw: Dict[str, Any], context: FileContext) -> List[Any]:
    ops: List[Any] = []
    width, height = context.width, context.height

    rotate = raw.get("rotate")
    if _is_present(rotate):
        if isinstance(rotate, Mapping):
            op = _parse(Rotate, _snake_keys(rotate), ErrorCode.INVALID_OPERATIONS, "rotate")
        else:
            op = _parse(Rotate, {"angle": _require_number(rotate, "rotate")}, ErrorCode.INVALID_OPERATIONS, "rotate")
        ops.append(op)
        if width and height:
            width, height = rotated_dimensions(width, height, op.angle)

    for key, op_cls in (("flip", Flip), ("flop", Flop)):
        if _is_present(raw.get(key)):
            _require_flag(raw[key], key)
            ops.append(op_cls())

    if _is_present(raw.get("crop")):
        data = _require_mapping(raw["crop"], ErrorCode.INVALID_CROP, "crop")
        data.setdefault("x", data.pop("left", 0))
        data.setdefault("y", data.pop("top", 0))
        crop = _parse(Crop, data, ErrorCode.INVALID_CROP, "crop")
        if width and height:
            clamped = clamp_crop(crop, width, height)
            if clamped != crop:
                logger.info("Clamped crop %s to %s", crop.describe(), clamped.describe())
            crop = clamped
            width, height = crop.width, crop.height
        ops.append(crop)

    if _is_present(raw.get("resize")):
        data = _require_mapping(raw["resize"], ErrorCode.INVALID_RESIZE, "resize")
        ops.append(_parse(Resize, data, ErrorCode.INVALID_RESIZE, "resize"))

    color = {k: raw[k] for k in COLOR_KEYS if _is_present(raw.get(k))}
    if color:
        for key, value in color.items():
            _require_number(value, key)
        ops.append(_parse(ColorAdjust, color, ErrorCode.INVALID_OPERATIONS, "color"))

    for name in FILTER_ORDER:
        if _is_present(raw.get(name.value)):
            _require_flag(raw[name.value], name.value)
            ops.append(Filter(name=name))

    blur = raw.get("blur")
    if _is_present(blur):
        sigma = blur.get("sigma") if isinstance(blur, Mapping) else blur
        ops.append(_parse(Blur, {"sigma": _require_number(sigma, "blur")}, ErrorCode.INVALID_OPERATIONS, "blur"))

    sharpen = raw.get("sharpen")
    if _is_present(sharpen):
        if sharpen is True:
            ops.append(Sharpen())
        else:
            value = sharpen.get("intensity", sharpen.get("sigma")) if isinstance(sharpen, Mapping) else sharpen
            ops.append(
                _parse(Sharpen, {"intensity": _require_number(value, "sharpen")}, ErrorCode.INVALID_OPERATIONS, "sharpen")
            )

    if _is_present(raw.get("watermark")):
        ops.append(_watermark(raw["watermark"], context.watermark_dir))

    ops.append(_image_encode(raw, context))
    return ops


def _image_encode(raw: Dict[str, Any], context: FileContext) -> Encode:
    source_type = context.media_type.lower()
    if _is_present(raw.get("format")):
        fmt = normalize_format(raw["format"])
    else:
        fmt = IMAGE_DEFAULT_FORMATS.get(source_type, "jpeg")

    if fmt not in IMAGE_OUTPUT_FORMATS:
        raise UnsupportedFormatFault(
            f"Unsupported output format: {fmt}. Supported: {', '.join(IMAGE_OUTPUT_FORMATS)}",
            details={"field": "format"},
        )

    allowed = IMAGE_CONVERSION_MATRIX.get(source_type, IMAGE_OUTPUT_FORMATS)
    if fmt not in allowed:
        raise UnsupportedFormatFault(
            f"Cannot convert {source_type} to {fmt}",
            code=ErrorCode.UNSUPPORTED_CONVERSION,
            details={"field": "format", "allowed": list(allowed)},
        )

    # Only one of quality and compression applies to a given format
    unused = "quality" if fmt == "png" else "compression"
    if _is_present(raw.get(unused)):
        raise ValidationFault(
            f"{unused} does not apply to {fmt} output",
            ErrorCode.INVALID_OPERATIONS,
            field=unused,
        )

    data: Dict[str, Any] = {"format": fmt}
    if fmt == "png":
        data["compression"] = raw.get("compression", DEFAULT_PNG_COMPRESSION)
    else:
        data["quality"] = raw.get("quality", DEFAULT_IMAGE_QUALITY[fmt])
    if _is_present(raw.get("progressive")):
        data["progressive"] = raw["progressive"]
    if _is_present(raw.get("lossless")):
        data["lossless"] = raw["lossless"]
    return _parse(Encode, data, ErrorCode.INVALID_OPERATIONS, "format")


# -----------------------------------------------------------------------------
# Videos
# -----------------------------------------------------------------------------

def _video_operations(raw: Dict[str, Any], context: FileContext) -> List[Any]:
    ops: List[Any] = []

    if _is_present(raw.get("trim")):
        data = _require_mapping(raw["trim"], ErrorCode.INVALID_TRIM, "trim")
        trim = _parse(Trim, data, ErrorCode.INVALID_TRIM, "trim")
        if context.duration and trim.end_time > context.duration:
            raise ValidationFault(
                f"Trim end {trim.end_time:g}s exceeds video duration {context.duration:g}s",
                ErrorCode.INVALID_TRIM,
                field="trim",
            )
        ops.append(trim)

    if _is_present(raw.get("watermark")):
        ops.append(_watermark(raw["watermark"], context.watermark_dir))

    source_type = context.media_type.lower()
    if _is_present(raw.get("format")):
        fmt = normalize_format(raw["format"])
    else:
        fmt = VIDEO_DEFAULT_FORMATS.get(source_type, "mp4")
    if fmt not in VIDEO_OUTPUT_FORMATS:
        raise UnsupportedFormatFault(
            f"Unsupported output format: {fmt}. Supported: {', '.join(VIDEO_OUTPUT_FORMATS)}",
            details={"field": "format"},
        )

    data: Dict[str, Any] = {"format": fmt}
    if raw.get("quality") is not None:
        data["quality"] = raw["quality"]
    ops.append(_parse(Encode, data, ErrorCode.INVALID_OPERATIONS, "quality"))
    return ops


# -----------------------------------------------------------------------------
# Shared
# -----------------------------------------------------------------------------

def _resolve_watermark(name: str, watermark_dir: Path) -> Path:
    """Watermark images are referenced by name inside ``watermark_dir``."""
    root = watermark_dir.resolve()
    path = (root / name).resolve()
    if not path.is_relative_to(root):
        raise ValidationFault("Watermark image path not allowed", ErrorCode.INVALID_WATERMARK, field="watermark")
    if not path.is_file():
        raise ValidationFault("Watermark image not found", ErrorCode.INVALID_WATERMARK, field="watermark")
    return path


def _watermark(value: Any, watermark_dir: Path):
    data = _require_mapping(value, ErrorCode.INVALID_WATERMARK, "watermark")
    image_path = data.pop("image", None) or data.pop("image_path", None)
    text = data.get("text")

    if text is not None and image_path:
        raise ValidationFault(
            "Watermark must be either text or an image, not both",
            ErrorCode.INVALID_WATERMARK,
            field="watermark",
        )

    if image_path:
        data["image_path"] = str(_resolve_watermark(str(image_path), watermark_dir))
        data.pop("font_size", None)
        data.pop("color", None)
        return _parse(ImageWatermark, data, ErrorCode.INVALID_WATERMARK, "watermark")

    if text is None:
        raise ValidationFault(
            "Watermark requires text or an image",
            ErrorCode.INVALID_WATERMARK,
            field="watermark",
        )
    return _parse(TextWatermark, data, ErrorCode.INVALID_WATERMARK, "watermark")
