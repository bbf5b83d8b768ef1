import pytest

from phototool.extensions import (
    is_supported_ingest_ext,
    is_supported_scan_ext,
    picker_filter_extensions,
)


@pytest.mark.parametrize("ext", [".jpg", ".JPEG", "jpg", ".heic", ".DNG", ".tif"])
def test_supported(ext):
    assert is_supported_ingest_ext(ext) is True


@pytest.mark.parametrize("ext", ["", ".", ".raw", ".txt", ".mp4"])
def test_unsupported(ext):
    assert is_supported_ingest_ext(ext) is False


def test_whitespace_trimmed():
    assert is_supported_ingest_ext("  .PNG  ") is True


def test_scan_matches_ingest():
    for ext in [".jpg", ".webp", ".raw", "", "TIFF"]:
        assert is_supported_scan_ext(ext) == is_supported_ingest_ext(ext)


def test_picker_includes_upper_case_heic_dng():
    exts = picker_filter_extensions()
    assert ".heic" in exts and ".HEIC" in exts
    assert ".dng" in exts and ".DNG" in exts


def test_picker_sorted_and_distinct():
    exts = picker_filter_extensions()
    assert exts == sorted(set(exts))
    assert len(exts) == 11
    assert ".JPG" not in exts