"""
Tests for operation plan construction.

Run with: pytest tests/test_plan_builder.py -v
"""

import pytest

from media_pipeline.core.errors import ErrorCode, UnsupportedFormatFault, ValidationFault
from media_pipeline.core.operations import (
    Crop,
    Encode,
    Filter,
    ImageWatermark,
    MediaKind,
    Resize,
    Rotate,
    TextWatermark,
    Trim,
    clamp_crop,
    rotated_dimensions,
)
from media_pipeline.core.plan_builder import FileContext, build_plan, count_operations

PNG = FileContext(size=2048, media_type="image/png", width=40, height=40)
JPEG = FileContext(size=2048, media_type="image/jpeg")
MP4 = FileContext(size=4 * 1024 * 1024, media_type="video/mp4", width=1280, height=720, duration=60.0)


def _kinds(plan):
    return [op.kind for op in plan.operations]


class TestImagePlans:
    def test_canonical_order_ignores_request_order(self):
        forward = build_plan(
            MediaKind.IMAGE,
            {"rotate": 90, "resize": {"width": 20}, "grayscale": True, "format": "webp"},
            PNG,
        )
        backward = build_plan(
            MediaKind.IMAGE,
            {"format": "webp", "grayscale": True, "resize": {"width": 20}, "rotate": 90},
            PNG,
        )
        assert forward == backward
        assert _kinds(forward) == ["rotate", "resize", "filter", "encode"]

    def test_encode_is_always_last(self):
        plan = build_plan(MediaKind.IMAGE, {}, PNG)
        assert _kinds(plan) == ["encode"]
        assert plan.encode.format == "png"
        assert plan.encode.compression == 9
        assert plan.requested_count == 0

    def test_default_format_follows_source(self):
        plan = build_plan(MediaKind.IMAGE, {"flip": True}, JPEG)
        assert plan.output_format == "jpeg"
        assert plan.encode.quality == 85

    def test_format_alias(self):
        plan = build_plan(MediaKind.IMAGE, {"format": "JPG", "quality": 70}, PNG)
        assert plan.encode == Encode(format="jpeg", quality=70)

    @pytest.mark.parametrize(
        "raw, field",
        [
            ({"format": "png", "quality": 80}, "quality"),
            ({"quality": 80}, "quality"),
            ({"format": "jpeg", "compression": 6}, "compression"),
            ({"format": "webp", "compression": 6}, "compression"),
        ],
    )
    def test_setting_for_other_format_is_rejected(self, raw, field):
        with pytest.raises(ValidationFault) as exc_info:
            build_plan(MediaKind.IMAGE, raw, PNG)
        assert exc_info.value.code == ErrorCode.INVALID_OPERATIONS
        assert exc_info.value.details["field"] == field

    def test_filters_run_in_fixed_order(self):
        plan = build_plan(MediaKind.IMAGE, {"negate": True, "sepia": True, "grayscale": True}, PNG)
        filters = [op.name.value for op in plan.operations if isinstance(op, Filter)]
        assert filters == ["grayscale", "sepia", "negate"]

    def test_color_adjustments_merge(self):
        plan = build_plan(MediaKind.IMAGE, {"brightness": 10, "contrast": -5}, PNG)
        assert _kinds(plan) == ["color", "encode"]
        assert plan.requested_count == 2

    def test_camel_case_keys(self):
        plan = build_plan(
            MediaKind.IMAGE,
            {"watermark": {"text": "(c) 2024", "fontSize": 18, "position": "top-left"}},
            PNG,
        )
        mark = plan.operations[0]
        assert isinstance(mark, TextWatermark)
        assert mark.font_size == 18

    def test_crop_is_clamped_to_frame(self):
        plan = build_plan(MediaKind.IMAGE, {"crop": {"x": 0, "y": 0, "width": 100, "height": 100}}, PNG)
        assert plan.operations[0] == Crop(x=0, y=0, width=40, height=40)

    def test_crop_follows_rotation(self):
        context = FileContext(size=2048, media_type="image/png", width=60, height=30)
        plan = build_plan(
            MediaKind.IMAGE,
            {"rotate": 90, "crop": {"x": 0, "y": 0, "width": 100, "height": 100}},
            context,
        )
        assert plan.operations[1] == Crop(x=0, y=0, width=30, height=60)

    def test_crop_origin_outside_frame(self):
        with pytest.raises(ValidationFault) as exc_info:
            build_plan(MediaKind.IMAGE, {"crop": {"x": 50, "y": 0, "width": 10, "height": 10}}, PNG)
        assert exc_info.value.code == ErrorCode.INVALID_CROP

    def test_crop_unclamped_without_dimensions(self):
        plan = build_plan(MediaKind.IMAGE, {"crop": {"left": 5, "top": 5, "width": 500, "height": 500}}, JPEG)
        assert plan.operations[0] == Crop(x=5, y=5, width=500, height=500)

    def test_encode_keys_not_counted(self):
        raw = {"format": "png", "quality": 50, "compression": 3, "rotate": 90}
        assert count_operations(raw) == 1

    def test_too_many_operations(self):
        raw = {
            "rotate": 90,
            "flip": True,
            "flop": True,
            "grayscale": True,
            "blur": 2,
            "sharpen": True,
        }
        with pytest.raises(ValidationFault) as exc_info:
            build_plan(MediaKind.IMAGE, raw, PNG)
        assert exc_info.value.code == ErrorCode.TOO_MANY_OPERATIONS
        assert exc_info.value.details["requested"] == 6

    def test_false_flags_are_ignored(self):
        plan = build_plan(MediaKind.IMAGE, {"flip": False, "grayscale": None}, PNG)
        assert _kinds(plan) == ["encode"]

    def test_unknown_key(self):
        with pytest.raises(ValidationFault) as exc_info:
            build_plan(MediaKind.IMAGE, {"explode": True}, PNG)
        assert exc_info.value.code == ErrorCode.UNSUPPORTED_OPERATION

    @pytest.mark.parametrize(
        "raw, code",
        [
            ({"rotate": 400}, ErrorCode.INVALID_OPERATIONS),
            ({"rotate": "ninety"}, ErrorCode.INVALID_OPERATIONS),
            ({"resize": {}}, ErrorCode.INVALID_RESIZE),
            ({"resize": {"width": 20000}}, ErrorCode.INVALID_RESIZE),
            ({"resize": {"width": 10, "fit": "stretch"}}, ErrorCode.INVALID_RESIZE),
            ({"brightness": 150}, ErrorCode.INVALID_OPERATIONS),
            ({"blur": 0.1}, ErrorCode.INVALID_OPERATIONS),
            ({"flip": "yes"}, ErrorCode.INVALID_OPERATIONS),
            ({"quality": 0, "format": "jpeg"}, ErrorCode.INVALID_OPERATIONS),
            ({"watermark": {"text": "   "}}, ErrorCode.INVALID_WATERMARK),
            ({"watermark": {"text": "x", "opacity": 2}}, ErrorCode.INVALID_WATERMARK),
        ],
    )
    def test_out_of_range(self, raw, code):
        with pytest.raises(ValidationFault) as exc_info:
            build_plan(MediaKind.IMAGE, raw, PNG)
        assert exc_info.value.code == code

    def test_unsupported_output_format(self):
        with pytest.raises(UnsupportedFormatFault) as exc_info:
            build_plan(MediaKind.IMAGE, {"format": "gif"}, PNG)
        assert exc_info.value.status_code == 415

    def test_unsupported_conversion(self):
        context = FileContext(size=2048, media_type="image/tiff")
        with pytest.raises(UnsupportedFormatFault) as exc_info:
            build_plan(MediaKind.IMAGE, {"format": "avif"}, context)
        assert exc_info.value.code == ErrorCode.UNSUPPORTED_CONVERSION

    def test_descriptors(self):
        plan = build_plan(MediaKind.IMAGE, {"rotate": 90, "resize": {"width": 20}}, PNG)
        assert plan.descriptors() == ["rotate:90°", "resize:20xauto", "format:png:c9"]


class TestWatermarks:
    def test_image_watermark_resolved_inside_directory(self, watermark_dir):
        context = FileContext(size=2048, media_type="image/png", watermark_dir=watermark_dir)
        plan = build_plan(MediaKind.IMAGE, {"watermark": {"image": "logo.png", "opacity": 0.5}}, context)
        mark = plan.operations[0]
        assert isinstance(mark, ImageWatermark)
        assert mark.image_path == str((watermark_dir / "logo.png").resolve())

    @pytest.mark.parametrize("name", ["../photo.png", "/etc/passwd", "missing.png"])
    def test_image_watermark_outside_directory(self, watermark_dir, name):
        context = FileContext(size=2048, media_type="image/png", watermark_dir=watermark_dir)
        with pytest.raises(ValidationFault) as exc_info:
            build_plan(MediaKind.IMAGE, {"watermark": {"image": name}}, context)
        assert exc_info.value.code == ErrorCode.INVALID_WATERMARK

    def test_text_and_image_together(self, watermark_dir):
        context = FileContext(size=2048, media_type="image/png", watermark_dir=watermark_dir)
        with pytest.raises(ValidationFault) as exc_info:
            build_plan(MediaKind.IMAGE, {"watermark": {"image": "logo.png", "text": "hi"}}, context)
        assert exc_info.value.code == ErrorCode.INVALID_WATERMARK


class TestVideoPlans:
    def test_trim_and_watermark(self):
        plan = build_plan(
            MediaKind.VIDEO,
            {"watermark": {"text": "demo"}, "trim": {"startTime": 5, "endTime": 20}},
            MP4,
        )
        assert _kinds(plan) == ["trim", "watermark_text", "encode"]
        assert plan.operations[0] == Trim(start_time=5, end_time=20)
        assert plan.output_format == "mp4"
        assert plan.requested_count == 2

    def test_default_format_from_source(self):
        context = FileContext(size=4096, media_type="video/quicktime")
        assert build_plan(MediaKind.VIDEO, {}, context).output_format == "mov"

    def test_trim_past_duration(self):
        with pytest.raises(ValidationFault) as exc_info:
            build_plan(MediaKind.VIDEO, {"trim": {"start_time": 10, "end_time": 90}}, MP4)
        assert exc_info.value.code == ErrorCode.INVALID_TRIM

    @pytest.mark.parametrize(
        "trim",
        [
            {"start_time": 10, "end_time": 10.5},
            {"start_time": 20, "end_time": 10},
            {"start_time": -1, "end_time": 10},
        ],
    )
    def test_invalid_trim_span(self, trim):
        with pytest.raises(ValidationFault) as exc_info:
            build_plan(MediaKind.VIDEO, {"trim": trim}, MP4)
        assert exc_info.value.code == ErrorCode.INVALID_TRIM

    def test_image_operations_rejected(self):
        with pytest.raises(ValidationFault) as exc_info:
            build_plan(MediaKind.VIDEO, {"rotate": 90}, MP4)
        assert exc_info.value.code == ErrorCode.UNSUPPORTED_OPERATION

    def test_unsupported_container(self):
        with pytest.raises(UnsupportedFormatFault):
            build_plan(MediaKind.VIDEO, {"format": "flv"}, MP4)

    def test_quality_out_of_range(self):
        with pytest.raises(ValidationFault):
            build_plan(MediaKind.VIDEO, {"quality": 101}, MP4)


class TestGeometry:
    @pytest.mark.parametrize(
        "angle, expected",
        [(0, (60, 30)), (90, (30, 60)), (180, (60, 30)), (-90, (30, 60)), (45, (64, 64))],
    )
    def test_rotated_dimensions(self, angle, expected):
        assert rotated_dimensions(60, 30, angle) == expected

    def test_clamp_crop_unchanged_when_inside(self):
        crop = Crop(x=2, y=2, width=10, height=10)
        assert clamp_crop(crop, 40, 40) is crop

    def test_clamp_crop_partial(self):
        assert clamp_crop(Crop(x=30, y=35, width=20, height=20), 40, 40) == Crop(x=30, y=35, width=10, height=5)

    def test_rotate_accepts_mapping(self):
        plan = build_plan(MediaKind.IMAGE, {"rotate": {"angle": 30, "background": "#000000"}}, PNG)
        assert plan.operations[0] == Rotate(angle=30, background="#000000")

    def test_resize_defaults(self):
        plan = build_plan(MediaKind.IMAGE, {"resize": {"height": 10}}, PNG)
        op = plan.operations[0]
        assert isinstance(op, Resize)
        assert op.fit.value == "cover"
        assert op.position.value == "center"
