"""
Image transform engine backed by OpenCV and numpy.

Images are held as BGR or BGRA uint8 arrays from decode to encode. Each
operation handler takes an array and returns the new array plus the
descriptor of what it actually did (a clamped crop reports the clamped
region).
"""

import logging
import time
from pathlib import Path
from typing import Callable, Dict, List, Optional, Tuple

import cv2
import numpy as np

from media_pipeline.core.engines.base import EngineResult, TransformEngine
from media_pipeline.core.errors import (
    EngineFault,
    ErrorCode,
    FaultKind,
    MissingInputFault,
    ResourceExhaustionFault,
    ResourceLimitFault,
    TimeoutFault,
    UnsupportedFormatFault,
)
from media_pipeline.core.operations import (
    DEFAULT_IMAGE_QUALITY,
    DEFAULT_PNG_COMPRESSION,
    MAX_IMAGE_DIMENSION,
    Blur,
    ColorAdjust,
    Crop,
    Encode,
    Filter,
    FilterName,
    Fit,
    ImageWatermark,
    MediaKind,
    OperationPlan,
    Position,
    Resize,
    Rotate,
    Sharpen,
    TextWatermark,
    clamp_crop,
    rotated_dimensions,
)

logger = logging.getLogger(__name__)

MIN_IMAGE_DIMENSION = 1

FORMAT_EXTENSIONS = {"jpeg": ".jpg", "png": ".png", "webp": ".webp", "avif": ".avif"}

# Sepia matrix rearranged for BGR in / BGR out
SEPIA_KERNEL = np.array(
    [
        [0.131, 0.534, 0.272],
        [0.168, 0.686, 0.349],
        [0.189, 0.769, 0.393],
    ],
    dtype=np.float32,
)

FONT = cv2.FONT_HERSHEY_SIMPLEX

Image = np.ndarray
Handler = Callable[[Image, object], Tuple[Image, str]]


# -----------------------------------------------------------------------------
# Array helpers
# -----------------------------------------------------------------------------

def hex_to_bgr(color: str) -> Tuple[int, int, int]:
    value = color.lstrip("#")
    r, g, b = (int(value[i:i + 2], 16) for i in (0, 2, 4))
    return b, g, r


def _split_alpha(img: Image) -> Tuple[Image, Optional[np.ndarray]]:
    if img.ndim == 3 and img.shape[2] == 4:
        return np.ascontiguousarray(img[:, :, :3]), img[:, :, 3]
    return img, None


def _merge_alpha(bgr: Image, alpha) -> Image:
    if alpha is None:
        return bgr
    return np.dstack([bgr, alpha])


def _border_value(img: Image, bgr: Tuple[int, int, int], alpha: int = 255) -> Tuple[int, ...]:
    if img.shape[2] == 4:
        return (*bgr, alpha)
    return bgr


def _anchor(position: Position, free_w: int, free_h: int) -> Tuple[int, int]:
    """Top-left offset that places content of leftover size free_w x free_h at ``position``."""
    value = position.value
    if "left" in value:
        x = 0
    elif "right" in value:
        x = free_w
    else:
        x = free_w // 2
    if value.startswith("top"):
        y = 0
    elif value.startswith("bottom"):
        y = free_h
    else:
        y = free_h // 2
    return x, y


def _margin_anchor(position: Position, width: int, height: int, mark_w: int, mark_h: int, margin: int) -> Tuple[int, int]:
    x, y = _anchor(position, max(0, width - mark_w - 2 * margin), max(0, height - mark_h - 2 * margin))
    if position != Position.CENTER:
        x, y = x + margin, y + margin
    else:
        x, y = (width - mark_w) // 2, (height - mark_h) // 2
    return max(0, min(x, width - mark_w)), max(0, min(y, height - mark_h))


def _to_8bit_color(img: Image) -> Image:
    if img.dtype == np.uint16:
        img = (img / 257).astype(np.uint8)
    elif img.dtype != np.uint8:
        img = cv2.normalize(img, None, 0, 255, cv2.NORM_MINMAX).astype(np.uint8)
    if img.ndim == 2:
        return cv2.cvtColor(img, cv2.COLOR_GRAY2BGR)
    if img.shape[2] == 1:
        return cv2.cvtColor(img, cv2.COLOR_GRAY2BGR)
    return img


def _flatten_alpha(img: Image, background: Tuple[int, int, int] = (255, 255, 255)) -> Image:
    bgr, alpha = _split_alpha(img)
    if alpha is None:
        return img
    a = (alpha.astype(np.float32) / 255.0)[:, :, None]
    bg = np.empty_like(bgr, dtype=np.float32)
    bg[:] = background
    return (bgr.astype(np.float32) * a + bg * (1 - a)).round().astype(np.uint8)


# -----------------------------------------------------------------------------
# Operation handlers
# -----------------------------------------------------------------------------

def rotate(img: Image, op: Rotate) -> Tuple[Image, str]:
    turns = op.angle % 360
    if turns == 0:
        return img, op.describe()
    if turns == 90:
        return cv2.rotate(img, cv2.ROTATE_90_CLOCKWISE), op.describe()
    if turns == 180:
        return cv2.rotate(img, cv2.ROTATE_180), op.describe()
    if turns == 270:
        return cv2.rotate(img, cv2.ROTATE_90_COUNTERCLOCKWISE), op.describe()

    h, w = img.shape[:2]
    new_w, new_h = rotated_dimensions(w, h, op.angle)
    # OpenCV angles are counter-clockwise; positive angles here turn clockwise
    matrix = cv2.getRotationMatrix2D((w / 2, h / 2), -turns, 1.0)
    matrix[0, 2] += new_w / 2 - w / 2
    matrix[1, 2] += new_h / 2 - h / 2
    out = cv2.warpAffine(
        img,
        matrix,
        (new_w, new_h),
        flags=cv2.INTER_LINEAR,
        borderMode=cv2.BORDER_CONSTANT,
        borderValue=_border_value(img, hex_to_bgr(op.background)),
    )
    return out, op.describe()


def flip(img: Image, op) -> Tuple[Image, str]:
    return cv2.flip(img, 0), op.describe()


def flop(img: Image, op) -> Tuple[Image, str]:
    return cv2.flip(img, 1), op.describe()


def crop(img: Image, op: Crop) -> Tuple[Image, str]:
    h, w = img.shape[:2]
    region = clamp_crop(op, w, h)
    out = img[region.y:region.y + region.height, region.x:region.x + region.width].copy()
    return out, region.describe()


def _scaled(img: Image, width: int, height: int) -> Image:
    h, w = img.shape[:2]
    interpolation = cv2.INTER_AREA if width * height < w * h else cv2.INTER_LANCZOS4
    return cv2.resize(img, (max(1, width), max(1, height)), interpolation=interpolation)


def resize(img: Image, op: Resize) -> Tuple[Image, str]:
    h, w = img.shape[:2]
    target_w, target_h = op.width, op.height
    if target_w is None:
        target_w = max(1, round(w * target_h / h))
    if target_h is None:
        target_h = max(1, round(h * target_w / w))

    if op.fit == Fit.FILL:
        out = _scaled(img, target_w, target_h)
    elif op.fit in (Fit.INSIDE, Fit.CONTAIN):
        scale = min(target_w / w, target_h / h)
        out = _scaled(img, round(w * scale), round(h * scale))
        if op.fit == Fit.CONTAIN:
            oh, ow = out.shape[:2]
            x, y = _anchor(op.position, target_w - ow, target_h - oh)
            canvas = np.zeros((target_h, target_w, img.shape[2]), dtype=img.dtype)
            canvas[y:y + oh, x:x + ow] = out
            out = canvas
    else:
        scale = max(target_w / w, target_h / h)
        out = _scaled(img, max(target_w, round(w * scale)), max(target_h, round(h * scale)))
        if op.fit == Fit.COVER:
            oh, ow = out.shape[:2]
            x, y = _anchor(op.position, ow - target_w, oh - target_h)
            out = out[y:y + target_h, x:x + target_w].copy()

    oh, ow = out.shape[:2]
    if ow > MAX_IMAGE_DIMENSION or oh > MAX_IMAGE_DIMENSION:
        raise ResourceLimitFault(
            f"Resized image {ow}x{oh} exceeds {MAX_IMAGE_DIMENSION}px",
            code=ErrorCode.IMAGE_TOO_LARGE,
        )
    return out, op.describe()


def adjust_color(img: Image, op: ColorAdjust) -> Tuple[Image, str]:
    bgr, alpha = _split_alpha(img)

    if op.brightness is not None or op.saturation is not None or op.hue is not None:
        hsv = cv2.cvtColor(bgr, cv2.COLOR_BGR2HSV).astype(np.float32)
        if op.hue is not None:
            degrees = ((op.hue % 360) + 360) % 360
            # OpenCV stores hue as 0-179
            hsv[:, :, 0] = (hsv[:, :, 0] + degrees / 2) % 180
        if op.saturation is not None:
            hsv[:, :, 1] *= min(2.0, max(0.0, 1 + op.saturation / 100))
        if op.brightness is not None:
            hsv[:, :, 2] *= max(0.0, 1 + op.brightness / 100)
        hsv[:, :, 1:] = np.clip(hsv[:, :, 1:], 0, 255)
        bgr = cv2.cvtColor(hsv.astype(np.uint8), cv2.COLOR_HSV2BGR)

    if op.contrast is not None:
        factor = min(3.0, max(0.1, 1 + op.contrast / 100))
        bgr = np.clip((bgr.astype(np.float32) - 128) * factor + 128, 0, 255).astype(np.uint8)

    if op.gamma is not None:
        table = (np.power(np.arange(256) / 255.0, 1.0 / op.gamma) * 255).round().astype(np.uint8)
        bgr = cv2.LUT(bgr, table)

    return _merge_alpha(bgr, alpha), op.describe()


def apply_filter(img: Image, op: Filter) -> Tuple[Image, str]:
    bgr, alpha = _split_alpha(img)
    if op.name == FilterName.GRAYSCALE:
        gray = cv2.cvtColor(bgr, cv2.COLOR_BGR2GRAY)
        bgr = cv2.cvtColor(gray, cv2.COLOR_GRAY2BGR)
    elif op.name == FilterName.SEPIA:
        toned = cv2.transform(bgr.astype(np.float32), SEPIA_KERNEL)
        bgr = np.clip(toned, 0, 255).astype(np.uint8)
    elif op.name == FilterName.NEGATE:
        bgr = 255 - bgr
    elif op.name == FilterName.NORMALIZE:
        channels = [
            cv2.normalize(channel, None, 0, 255, cv2.NORM_MINMAX)
            for channel in cv2.split(bgr)
        ]
        bgr = cv2.merge(channels)
    return _merge_alpha(bgr, alpha), op.describe()


def blur(img: Image, op: Blur) -> Tuple[Image, str]:
    return cv2.GaussianBlur(img, (0, 0), sigmaX=op.sigma), op.describe()


def sharpen(img: Image, op: Sharpen) -> Tuple[Image, str]:
    blurred = cv2.GaussianBlur(img, (0, 0), sigmaX=op.intensity)
    return cv2.addWeighted(img, 1.5, blurred, -0.5, 0), op.describe()


def text_watermark(img: Image, op: TextWatermark) -> Tuple[Image, str]:
    h, w = img.shape[:2]
    font_size = op.font_size or int(min(72, max(12, w / 20)))
    thickness = max(1, font_size // 15)
    # Hershey simplex glyphs are ~22px tall at scale 1.0
    scale = font_size / 22.0
    (text_w, text_h), baseline = cv2.getTextSize(op.text, FONT, scale, thickness)
    x, y = _margin_anchor(op.position, w, h, min(text_w, w), min(text_h + baseline, h), op.margin)

    overlay = img.copy()
    cv2.putText(
        overlay,
        op.text,
        (x, y + text_h),
        FONT,
        scale,
        _border_value(img, hex_to_bgr(op.color)),
        thickness,
        cv2.LINE_AA,
    )
    return cv2.addWeighted(overlay, op.opacity, img, 1 - op.opacity, 0), op.describe()


def image_watermark(img: Image, op: ImageWatermark, mark: Image) -> Tuple[Image, str]:
    h, w = img.shape[:2]
    mh, mw = mark.shape[:2]
    target_w = max(1, int(min(w, h) * op.scale))
    target_h = max(1, round(mh * target_w / mw))
    if target_h > h or target_w > w:
        shrink = min(w / target_w, h / target_h)
        target_w, target_h = max(1, int(target_w * shrink)), max(1, int(target_h * shrink))
    mark = _scaled(mark, target_w, target_h)

    mark_bgr, mark_alpha = _split_alpha(mark)
    if mark_alpha is None:
        weight = np.full((target_h, target_w, 1), op.opacity, dtype=np.float32)
    else:
        weight = (mark_alpha.astype(np.float32) / 255.0 * op.opacity)[:, :, None]

    x, y = _margin_anchor(op.position, w, h, target_w, target_h, op.margin)
    out = img.copy()
    roi = out[y:y + target_h, x:x + target_w, :3].astype(np.float32)
    blended = roi * (1 - weight) + mark_bgr.astype(np.float32) * weight
    out[y:y + target_h, x:x + target_w, :3] = np.clip(blended, 0, 255).astype(np.uint8)
    return out, op.describe()


# -----------------------------------------------------------------------------
# Engine
# -----------------------------------------------------------------------------

def _check_deadline(deadline: Optional[float], step: str) -> None:
    if deadline is not None and time.monotonic() > deadline:
        raise TimeoutFault(f"Image processing ran out of time before {step}")


class ImageEngine(TransformEngine):
    """OpenCV implementation of the image operation set."""

    kind = MediaKind.IMAGE

    def __init__(self, max_dimension: int = MAX_IMAGE_DIMENSION, min_dimension: int = MIN_IMAGE_DIMENSION):
        self.max_dimension = max_dimension
        self.min_dimension = min_dimension
        self._handlers: Dict[str, Handler] = {
            "rotate": rotate,
            "flip": flip,
            "flop": flop,
            "crop": crop,
            "resize": resize,
            "color": adjust_color,
            "filter": apply_filter,
            "blur": blur,
            "sharpen": sharpen,
            "watermark_text": text_watermark,
            "watermark_image": lambda img, op: image_watermark(img, op, self.load(Path(op.image_path))),
        }

    def load(self, path: Path) -> Image:
        """Decode ``path`` into a BGR or BGRA uint8 array."""
        try:
            data = np.fromfile(str(path), dtype=np.uint8)
        except FileNotFoundError as exc:
            raise MissingInputFault(f"Image not found: {path.name}") from exc

        if data.size == 0:
            raise EngineFault(f"Image is empty: {path.name}", FaultKind.INPUT, ErrorCode.CORRUPTED_INPUT)

        try:
            img = cv2.imdecode(data, cv2.IMREAD_UNCHANGED)
        except cv2.error as exc:
            raise EngineFault(f"Could not decode {path.name}", FaultKind.INPUT, ErrorCode.CORRUPTED_INPUT) from exc
        if img is None:
            raise UnsupportedFormatFault(
                f"Unsupported or corrupted image: {path.name}",
                code=ErrorCode.CORRUPTED_INPUT,
            )
        return _to_8bit_color(img)

    def _check_dimensions(self, img: Image) -> None:
        h, w = img.shape[:2]
        if w > self.max_dimension or h > self.max_dimension:
            raise ResourceLimitFault(
                f"Image dimensions {w}x{h} exceed {self.max_dimension}px",
                code=ErrorCode.IMAGE_TOO_LARGE,
            )
        if w < self.min_dimension or h < self.min_dimension:
            raise ResourceLimitFault(
                f"Image dimensions {w}x{h} are below {self.min_dimension}px",
                code=ErrorCode.IMAGE_TOO_SMALL,
            )

    def inspect(self, path: Path) -> EngineResult:
        img = self.load(path)
        h, w = img.shape[:2]
        return EngineResult(
            output_path=path,
            format=path.suffix.lstrip(".").lower(),
            applied_operations=(),
            width=w,
            height=h,
            channels=img.shape[2],
            has_alpha=img.shape[2] == 4,
        )

    def apply(
        self,
        source: Path,
        plan: OperationPlan,
        output_dir: Path,
        output_stem: str,
        deadline: Optional[float] = None,
    ) -> EngineResult:
        img = self.load(source)
        self._check_dimensions(img)
        source_h, source_w = img.shape[:2]
        applied: List[str] = []

        try:
            for op in plan.operations[:-1]:
                _check_deadline(deadline, op.kind)
                handler = self._handlers.get(op.kind)
                if handler is None:
                    raise EngineFault(
                        f"Operation {op.kind} is not supported for images",
                        FaultKind.INPUT,
                        ErrorCode.UNSUPPORTED_OPERATION,
                    )
                img, descriptor = handler(img, op)
                applied.append(descriptor)

            _check_deadline(deadline, "encode")
            output_path, descriptor = self.encode(img, plan.encode, output_dir, output_stem)
            applied.append(descriptor)
        except MemoryError as exc:
            raise ResourceExhaustionFault("Out of memory while transforming image") from exc
        except cv2.error as exc:
            raise EngineFault(f"OpenCV error: {exc}", FaultKind.ENVIRONMENT, ErrorCode.ENGINE_ERROR) from exc

        h, w = img.shape[:2]
        logger.debug("Transformed %s -> %s (%s)", source.name, output_path.name, ", ".join(applied))
        return EngineResult(
            output_path=output_path,
            format=plan.encode.format,
            applied_operations=tuple(applied),
            width=w,
            height=h,
            channels=img.shape[2],
            has_alpha=img.shape[2] == 4 and plan.encode.format != "jpeg",
            metadata={"source_width": source_w, "source_height": source_h},
        )

    def encode(self, img: Image, op: Encode, output_dir: Path, output_stem: str) -> Tuple[Path, str]:
        fmt = op.format
        ext = FORMAT_EXTENSIONS.get(fmt)
        if ext is None:
            raise UnsupportedFormatFault(f"Cannot encode images as {fmt}")

        params: List[int] = []
        if fmt == "jpeg":
            img = _flatten_alpha(img)
            params = [cv2.IMWRITE_JPEG_QUALITY, op.quality or DEFAULT_IMAGE_QUALITY["jpeg"]]
            if op.progressive:
                params += [cv2.IMWRITE_JPEG_PROGRESSIVE, 1]
        elif fmt == "png":
            compression = op.compression if op.compression is not None else DEFAULT_PNG_COMPRESSION
            params = [cv2.IMWRITE_PNG_COMPRESSION, compression]
        elif fmt == "webp":
            # OpenCV switches WebP to lossless above 100
            params = [cv2.IMWRITE_WEBP_QUALITY, 101 if op.lossless else (op.quality or DEFAULT_IMAGE_QUALITY["webp"])]
        elif fmt == "avif":
            flag = getattr(cv2, "IMWRITE_AVIF_QUALITY", None)
            if flag is None:
                raise UnsupportedFormatFault("AVIF encoding is not available in this OpenCV build")
            params = [flag, 100 if op.lossless else (op.quality or DEFAULT_IMAGE_QUALITY["avif"])]

        ok, buffer = cv2.imencode(ext, img, params)
        if not ok:
            raise UnsupportedFormatFault(f"Encoding to {fmt} failed")

        output_dir.mkdir(parents=True, exist_ok=True)
        output_path = output_dir / f"{output_stem}{ext}"
        buffer.tofile(str(output_path))
        return output_path, op.describe()
