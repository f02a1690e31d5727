"""
Typed operation variants and the immutable operation plan.

A plan is an ordered tuple of operations tagged by ``kind``. Parameter
ranges are declared on the fields, so an operation that exists is an
operation whose parameters are in range.
"""

import math
import re
from enum import Enum
from typing import Annotated, List, Literal, Optional, Tuple, Union

from pydantic import BaseModel, ConfigDict, Field, field_validator, model_validator

from media_pipeline.core.errors import ErrorCode, ValidationFault


class MediaKind(str, Enum):
    IMAGE = "image"
    VIDEO = "video"


# -----------------------------------------------------------------------------
# Limits
# -----------------------------------------------------------------------------

MAX_IMAGE_OPERATIONS = 5
MAX_VIDEO_OPERATIONS = 2

MAX_IMAGE_DIMENSION = 10000
MIN_TRIM_SECONDS = 1.0
MAX_TRIM_SECONDS = 3600.0

HEX_COLOR_PATTERN = re.compile(r"^#[0-9a-fA-F]{6}$")

IMAGE_OUTPUT_FORMATS = ("jpeg", "png", "webp", "avif")
VIDEO_OUTPUT_FORMATS = ("mp4", "avi", "mov", "mkv", "webm")

FORMAT_ALIASES = {"jpg": "jpeg", "tif": "tiff", "quicktime": "mov"}

DEFAULT_IMAGE_QUALITY = {"jpeg": 85, "webp": 80, "avif": 60}
DEFAULT_PNG_COMPRESSION = 9


class Fit(str, Enum):
    COVER = "cover"
    CONTAIN = "contain"
    FILL = "fill"
    INSIDE = "inside"
    OUTSIDE = "outside"


class Position(str, Enum):
    CENTER = "center"
    TOP = "top"
    BOTTOM = "bottom"
    LEFT = "left"
    RIGHT = "right"
    TOP_LEFT = "top-left"
    TOP_RIGHT = "top-right"
    BOTTOM_LEFT = "bottom-left"
    BOTTOM_RIGHT = "bottom-right"


class FilterName(str, Enum):
    GRAYSCALE = "grayscale"
    SEPIA = "sepia"
    NEGATE = "negate"
    NORMALIZE = "normalize"


# Filters always run in this order
FILTER_ORDER = (FilterName.GRAYSCALE, FilterName.SEPIA, FilterName.NEGATE, FilterName.NORMALIZE)


class _Operation(BaseModel):
    model_config = ConfigDict(frozen=True, extra="forbid")


# -----------------------------------------------------------------------------
# Geometry
# -----------------------------------------------------------------------------

class Rotate(_Operation):
    kind: Literal["rotate"] = "rotate"
    angle: float = Field(..., ge=-360, le=360)
    background: str = Field(default="#ffffff")

    @field_validator("background")
    @classmethod
    def _hex_background(cls, v: str) -> str:
        if not HEX_COLOR_PATTERN.match(v):
            raise ValueError("background must be a #RRGGBB color")
        return v

    def describe(self) -> str:
        return f"rotate:{self.angle:g}°"


class Flip(_Operation):
    """Mirror top to bottom."""

    kind: Literal["flip"] = "flip"

    def describe(self) -> str:
        return "flip"


class Flop(_Operation):
    """Mirror left to right."""

    kind: Literal["flop"] = "flop"

    def describe(self) -> str:
        return "flop"


class Crop(_Operation):
    kind: Literal["crop"] = "crop"
    x: int = Field(..., ge=0)
    y: int = Field(..., ge=0)
    width: int = Field(..., ge=1, le=MAX_IMAGE_DIMENSION)
    height: int = Field(..., ge=1, le=MAX_IMAGE_DIMENSION)

    def describe(self) -> str:
        return f"crop:{self.width}x{self.height}+{self.x}+{self.y}"


class Resize(_Operation):
    kind: Literal["resize"] = "resize"
    width: Optional[int] = Field(default=None, ge=1, le=MAX_IMAGE_DIMENSION)
    height: Optional[int] = Field(default=None, ge=1, le=MAX_IMAGE_DIMENSION)
    fit: Fit = Fit.COVER
    position: Position = Position.CENTER

    @model_validator(mode="after")
    def _one_dimension(self) -> "Resize":
        if self.width is None and self.height is None:
            raise ValueError("resize needs a width or a height")
        return self

    def describe(self) -> str:
        return f"resize:{self.width or 'auto'}x{self.height or 'auto'}"


# -----------------------------------------------------------------------------
# Color & filters
# -----------------------------------------------------------------------------

class ColorAdjust(_Operation):
    kind: Literal["color"] = "color"
    brightness: Optional[float] = Field(default=None, ge=-100, le=100)
    contrast: Optional[float] = Field(default=None, ge=-100, le=100)
    saturation: Optional[float] = Field(default=None, ge=-100, le=100)
    hue: Optional[float] = Field(default=None, ge=-360, le=360)
    gamma: Optional[float] = Field(default=None, ge=0.1, le=3.0)

    def describe(self) -> str:
        parts = []
        for name in ("brightness", "contrast", "saturation", "hue", "gamma"):
            value = getattr(self, name)
            if value is not None:
                parts.append(f"{name}:{value:g}")
        return ",".join(parts)


class Filter(_Operation):
    kind: Literal["filter"] = "filter"
    name: FilterName

    def describe(self) -> str:
        return self.name.value


class Blur(_Operation):
    kind: Literal["blur"] = "blur"
    sigma: float = Field(..., ge=0.3, le=1000)

    def describe(self) -> str:
        return f"blur:{self.sigma:g}"


class Sharpen(_Operation):
    kind: Literal["sharpen"] = "sharpen"
    intensity: float = Field(default=1.0, ge=0.5, le=10)

    def describe(self) -> str:
        return f"sharpen:{self.intensity:g}"


# -----------------------------------------------------------------------------
# Watermark
# -----------------------------------------------------------------------------

class TextWatermark(_Operation):
    kind: Literal["watermark_text"] = "watermark_text"
    text: str = Field(..., min_length=1, max_length=100)
    position: Position = Position.BOTTOM_RIGHT
    opacity: float = Field(default=0.5, ge=0.1, le=1.0)
    font_size: Optional[int] = Field(default=None, ge=8, le=200)
    color: str = "#ffffff"
    margin: int = Field(default=20, ge=0, le=1000)

    @field_validator("text")
    @classmethod
    def _visible_text(cls, v: str) -> str:
        if not v.strip():
            raise ValueError("watermark text must not be blank")
        return v

    @field_validator("color")
    @classmethod
    def _hex_color(cls, v: str) -> str:
        if not HEX_COLOR_PATTERN.match(v):
            raise ValueError("color must be a #RRGGBB color")
        return v

    def describe(self) -> str:
        return f'watermark:text:"{self.text[:20]}"'


class ImageWatermark(_Operation):
    kind: Literal["watermark_image"] = "watermark_image"
    image_path: str = Field(..., min_length=1)
    position: Position = Position.BOTTOM_RIGHT
    opacity: float = Field(default=0.7, ge=0.1, le=1.0)
    scale: float = Field(default=0.2, gt=0, le=1.0)
    margin: int = Field(default=20, ge=0, le=1000)

    def describe(self) -> str:
        return "watermark:image"


# -----------------------------------------------------------------------------
# Video
# -----------------------------------------------------------------------------

class Trim(_Operation):
    kind: Literal["trim"] = "trim"
    start_time: float = Field(..., ge=0)
    end_time: float = Field(..., gt=0)

    @model_validator(mode="after")
    def _span(self) -> "Trim":
        span = self.end_time - self.start_time
        if span < MIN_TRIM_SECONDS:
            raise ValueError(f"trim must cover at least {MIN_TRIM_SECONDS:g} second")
        if span > MAX_TRIM_SECONDS:
            raise ValueError(f"trim cannot exceed {MAX_TRIM_SECONDS:g} seconds")
        return self

    @property
    def duration(self) -> float:
        return self.end_time - self.start_time

    def describe(self) -> str:
        return f"trim:{self.start_time:g}-{self.end_time:g}"


# -----------------------------------------------------------------------------
# Encode
# -----------------------------------------------------------------------------

class Encode(_Operation):
    """Terminal step of every plan."""

    kind: Literal["encode"] = "encode"
    format: str
    quality: Optional[int] = Field(default=None, ge=1, le=100)
    compression: Optional[int] = Field(default=None, ge=0, le=9)
    progressive: bool = False
    lossless: bool = False

    def describe(self) -> str:
        if self.format == "png":
            return f"format:png:c{self.compression if self.compression is not None else DEFAULT_PNG_COMPRESSION}"
        if self.quality is None:
            return f"format:{self.format}"
        return f"format:{self.format}:q{self.quality}"


Operation = Annotated[
    Union[
        Rotate,
        Flip,
        Flop,
        Crop,
        Resize,
        ColorAdjust,
        Filter,
        Blur,
        Sharpen,
        TextWatermark,
        ImageWatermark,
        Trim,
        Encode,
    ],
    Field(discriminator="kind"),
]


class OperationPlan(BaseModel):
    """Immutable, ordered sequence of operations for one job."""

    model_config = ConfigDict(frozen=True)

    media_kind: MediaKind
    operations: Tuple[Operation, ...]
    # Number of client-requested transformations (encode settings excluded)
    requested_count: int = Field(default=0, ge=0)

    @property
    def encode(self) -> Encode:
        last = self.operations[-1]
        if not isinstance(last, Encode):
            raise ValueError("plan does not end with an encode step")
        return last

    @property
    def output_format(self) -> str:
        return self.encode.format

    def descriptors(self) -> List[str]:
        return [op.describe() for op in self.operations]

    def __len__(self) -> int:
        return len(self.operations)


# -----------------------------------------------------------------------------
# Geometry shared by the plan builder and the image engine
# -----------------------------------------------------------------------------

def rotated_dimensions(width: int, height: int, angle: float) -> Tuple[int, int]:
    """Canvas size after rotating a ``width`` x ``height`` frame by ``angle`` degrees."""
    turns = angle % 360
    if turns == 0 or turns == 180:
        return width, height
    if turns == 90 or turns == 270:
        return height, width
    rad = math.radians(turns)
    cos, sin = abs(math.cos(rad)), abs(math.sin(rad))
    return (
        int(math.ceil(width * cos + height * sin)),
        int(math.ceil(width * sin + height * cos)),
    )


def clamp_crop(crop: Crop, width: int, height: int) -> Crop:
    """
    Clamp a crop region to the largest rectangle that fits a frame.

    Raises:
        ValidationFault: INVALID_CROP if the origin lies outside the frame.
    """
    if crop.x >= width or crop.y >= height:
        raise ValidationFault(
            f"Crop origin ({crop.x}, {crop.y}) is outside the {width}x{height} frame",
            ErrorCode.INVALID_CROP,
            field="crop",
        )
    clamped_w = min(crop.width, width - crop.x)
    clamped_h = min(crop.height, height - crop.y)
    if clamped_w == crop.width and clamped_h == crop.height:
        return crop
    return Crop(x=crop.x, y=crop.y, width=clamped_w, height=clamped_h)
