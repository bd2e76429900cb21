import pytest

from photo_pipeline.core.exceptions import ValidationError, ValidationReason
from photo_pipeline.pipeline.validation import validate


def test_valid_jpeg_returns_source_meta(image_factory):
    data = image_factory(640, 480)

    meta = validate(data, "image/jpeg", declared_size=len(data), name="shirt.jpg")

    assert meta.name == "shirt.jpg"
    assert meta.mime_type == "image/jpeg"
    assert meta.byte_size == len(data)
    assert (meta.pixel_width, meta.pixel_height) == (640, 480)


def test_png_and_webp_are_accepted(image_factory):
    assert validate(image_factory(300, 300, fmt="PNG"), "image/png").mime_type == "image/png"
    assert validate(image_factory(300, 300, fmt="WEBP"), "image/webp").mime_type == "image/webp"


def test_image_jpg_alias_is_accepted(image_factory):
    assert validate(image_factory(300, 300), "image/jpg").mime_type == "image/jpeg"


def test_unsupported_declared_type(image_factory):
    with pytest.raises(ValidationError) as exc_info:
        validate(image_factory(300, 300), "application/pdf")

    assert exc_info.value.reason == ValidationReason.UNSUPPORTED_TYPE
    assert exc_info.value.kind == "ValidationError.UnsupportedType"


def test_missing_declared_type_is_unsupported(image_factory):
    with pytest.raises(ValidationError) as exc_info:
        validate(image_factory(300, 300), None)
    assert exc_info.value.reason == ValidationReason.UNSUPPORTED_TYPE


def test_declared_size_over_limit_is_too_large(image_factory):
    data = image_factory(300, 300)

    with pytest.raises(ValidationError) as exc_info:
        validate(data, "image/jpeg", declared_size=11 * 1024 * 1024)

    assert exc_info.value.kind == "ValidationError.TooLarge"


def test_actual_size_over_limit_is_too_large(image_factory):
    data = image_factory(300, 300)

    with pytest.raises(ValidationError) as exc_info:
        validate(data, "image/jpeg", declared_size=10, max_bytes=len(data) - 1)

    assert exc_info.value.reason == ValidationReason.TOO_LARGE


def test_tiny_file_is_too_small():
    with pytest.raises(ValidationError) as exc_info:
        validate(b"\xff\xd8\xff" + b"\x00" * 20, "image/jpeg")
    assert exc_info.value.reason == ValidationReason.TOO_SMALL


def test_garbage_bytes_are_corrupt():
    with pytest.raises(ValidationError) as exc_info:
        validate(b"not an image at all " * 100, "image/jpeg")
    assert exc_info.value.reason == ValidationReason.CORRUPT_IMAGE


def test_truncated_jpeg_is_corrupt(image_factory):
    data = image_factory(640, 480)

    with pytest.raises(ValidationError) as exc_info:
        validate(data[:2000], "image/jpeg")

    assert exc_info.value.reason == ValidationReason.CORRUPT_IMAGE


def test_decoded_format_outside_allow_list(image_factory):
    gif = image_factory(300, 300, fmt="GIF", mode="L")

    with pytest.raises(ValidationError) as exc_info:
        validate(gif, "image/jpeg")

    assert exc_info.value.reason == ValidationReason.UNSUPPORTED_TYPE


def test_small_dimensions_rejected(image_factory):
    with pytest.raises(ValidationError) as exc_info:
        validate(image_factory(199, 400), "image/jpeg")
    assert exc_info.value.reason == ValidationReason.DIMENSIONS_TOO_SMALL


def test_checks_run_in_order(image_factory):
    # Wrong type and too small: type wins
    with pytest.raises(ValidationError) as exc_info:
        validate(b"x" * 10, "text/plain")
    assert exc_info.value.reason == ValidationReason.UNSUPPORTED_TYPE

    # Too large and undecodable: size wins
    with pytest.raises(ValidationError) as exc_info:
        validate(b"x" * 2048, "image/png", declared_size=50 * 1024 * 1024)
    assert exc_info.value.reason == ValidationReason.TOO_LARGE
