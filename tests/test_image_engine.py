"""
Tests for the OpenCV image engine.

Run with: pytest tests/test_image_engine.py -v
"""

import time

import cv2
import numpy as np
import pytest

from media_pipeline.core.engines import ImageEngine
from media_pipeline.core.engines.image import (
    adjust_color,
    apply_filter,
    crop,
    flop,
    hex_to_bgr,
    resize,
    rotate,
    text_watermark,
)
from media_pipeline.core.errors import ErrorCode, MissingInputFault, TimeoutFault, UnsupportedFormatFault
from media_pipeline.core.operations import (
    ColorAdjust,
    Crop,
    Filter,
    FilterName,
    Fit,
    Flop,
    MediaKind,
    Resize,
    Rotate,
    TextWatermark,
)
from media_pipeline.core.plan_builder import FileContext, build_plan


def _canvas(width: int = 60, height: int = 40) -> np.ndarray:
    img = np.zeros((height, width, 3), dtype=np.uint8)
    img[:, : width // 2] = (255, 0, 0)
    return img


class TestGeometry:
    def test_rotate_quarter_turn_swaps_dimensions(self):
        out, descriptor = rotate(_canvas(), Rotate(angle=90))
        assert out.shape[:2] == (60, 40)
        assert descriptor == "rotate:90°"

    def test_rotate_arbitrary_angle_expands_canvas(self):
        out, _ = rotate(_canvas(), Rotate(angle=45, background="#00ff00"))
        assert out.shape[0] > 40 and out.shape[1] > 60
        assert tuple(out[0, 0]) == (0, 255, 0)

    def test_flop_mirrors_horizontally(self):
        out, _ = flop(_canvas(), Flop())
        assert tuple(out[0, 0]) == (0, 0, 0)
        assert tuple(out[0, -1]) == (255, 0, 0)

    def test_crop_clamps_to_image(self):
        out, descriptor = crop(np.zeros((40, 40, 3), dtype=np.uint8), Crop(x=10, y=0, width=100, height=100))
        assert out.shape[:2] == (40, 30)
        assert descriptor == "crop:30x40+10+0"


class TestResize:
    @pytest.mark.parametrize(
        "fit, expected",
        [
            (Fit.COVER, (20, 20)),
            (Fit.CONTAIN, (20, 20)),
            (Fit.FILL, (20, 20)),
            (Fit.INSIDE, (13, 20)),
            (Fit.OUTSIDE, (20, 30)),
        ],
    )
    def test_fit_modes(self, fit, expected):
        out, _ = resize(_canvas(60, 40), Resize(width=20, height=20, fit=fit))
        assert out.shape[:2] == expected

    def test_single_dimension_keeps_aspect(self):
        out, descriptor = resize(_canvas(60, 40), Resize(width=30))
        assert out.shape[:2] == (20, 30)
        assert descriptor == "resize:30xauto"


class TestColor:
    def test_grayscale_equalizes_channels(self):
        out, _ = apply_filter(_canvas(), Filter(name=FilterName.GRAYSCALE))
        b, g, r = out[0, 0]
        assert b == g == r

    def test_negate(self):
        out, _ = apply_filter(_canvas(), Filter(name=FilterName.NEGATE))
        assert tuple(out[0, 0]) == (0, 255, 255)

    def test_alpha_is_preserved(self):
        img = np.dstack([_canvas(), np.full((40, 60), 128, dtype=np.uint8)])
        out, _ = adjust_color(img, ColorAdjust(brightness=20, gamma=1.2))
        assert out.shape[2] == 4
        assert (out[:, :, 3] == 128).all()

    def test_hex_to_bgr(self):
        assert hex_to_bgr("#102030") == (0x30, 0x20, 0x10)

    def test_text_watermark_changes_pixels(self):
        img = np.zeros((100, 200, 3), dtype=np.uint8)
        out, descriptor = text_watermark(img, TextWatermark(text="hello", opacity=1.0))
        assert out.any()
        assert descriptor == 'watermark:text:"hello"'


class TestImageEngine:
    def test_apply_writes_artifact(self, tmp_path, png_file):
        engine = ImageEngine()
        plan = build_plan(
            MediaKind.IMAGE,
            {"rotate": 90, "resize": {"width": 24}, "sepia": True, "format": "jpeg", "quality": 70},
            FileContext(size=png_file.stat().st_size, media_type="image/png", width=64, height=48),
        )
        result = engine.apply(png_file, plan, tmp_path / "out", "img-0000abcd")

        assert result.output_path == tmp_path / "out" / "img-0000abcd.jpg"
        assert result.output_path.stat().st_size > 0
        assert (result.width, result.height) == (24, 32)
        assert result.format == "jpeg"
        assert result.applied_operations == ("rotate:90°", "resize:24xauto", "sepia", "format:jpeg:q70")
        assert result.metadata == {"source_width": 64, "source_height": 48}

        decoded = cv2.imread(str(result.output_path))
        assert decoded.shape[:2] == (32, 24)

    def test_retry_overwrites_previous_output(self, tmp_path, png_file):
        engine = ImageEngine()
        plan = build_plan(MediaKind.IMAGE, {"flip": True}, FileContext(size=2048, media_type="image/png"))
        first = engine.apply(png_file, plan, tmp_path, "img-0000abcd")
        second = engine.apply(png_file, plan, tmp_path, "img-0000abcd")
        assert first.output_path == second.output_path
        assert len(list(tmp_path.glob("img-0000abcd.*"))) == 1

    def test_image_watermark(self, tmp_path, png_file, watermark_dir):
        engine = ImageEngine()
        context = FileContext(size=2048, media_type="image/png", watermark_dir=watermark_dir)
        plan = build_plan(MediaKind.IMAGE, {"watermark": {"image": "logo.png", "position": "top-left"}}, context)
        result = engine.apply(png_file, plan, tmp_path / "out", "img-0000abcd")
        assert result.applied_operations[0] == "watermark:image"
        assert (result.width, result.height) == (64, 48)

    def test_inspect(self, png_file):
        info = ImageEngine().inspect(png_file)
        assert (info.width, info.height) == (64, 48)
        assert info.has_alpha is False

    def test_missing_source(self, tmp_path):
        with pytest.raises(MissingInputFault):
            ImageEngine().load(tmp_path / "gone.png")

    def test_undecodable_source(self, tmp_path):
        junk = tmp_path / "junk.png"
        junk.write_bytes(b"\x89PNG\r\n\x1a\n" + b"\x00" * 200)
        with pytest.raises(UnsupportedFormatFault) as exc_info:
            ImageEngine().load(junk)
        assert exc_info.value.code == ErrorCode.CORRUPTED_INPUT

    def test_passed_deadline_stops_before_writing(self, tmp_path, png_file):
        plan = build_plan(MediaKind.IMAGE, {"flip": True}, FileContext(size=2048, media_type="image/png"))
        with pytest.raises(TimeoutFault):
            ImageEngine().apply(png_file, plan, tmp_path, "img-0000abcd", deadline=time.monotonic() - 1)
        assert list(tmp_path.glob("img-0000abcd.*")) == []
