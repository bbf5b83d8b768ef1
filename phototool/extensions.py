"""File extensions eligible for ingest, scan and import."""

from __future__ import annotations

SUPPORTED_INGEST_EXTS = frozenset(
    {".jpg", ".jpeg", ".png", ".gif", ".webp", ".tif", ".tiff", ".heic", ".dng"}
)

# Offered to the file picker in both lower and upper case.
_UPPERCASE_VARIANT_EXTS = frozenset({".heic", ".dng"})


def is_supported_ingest_ext(ext: str) -> bool:
    """Report whether an extension (with or without a dot, any case) is supported."""
    e = ext.strip().lower()
    if not e:
        return False
    if not e.startswith("."):
        e = "." + e
    return e in SUPPORTED_INGEST_EXTS


def is_supported_scan_ext(ext: str) -> bool:
    """Scan uses the same rules as ingest."""
    return is_supported_ingest_ext(ext)


def picker_filter_extensions() -> list[str]:
    """Return the sorted, distinct extensions for a file picker filter."""
    out = set(SUPPORTED_INGEST_EXTS)
    out.update(ext.upper() for ext in SUPPORTED_INGEST_EXTS & _UPPERCASE_VARIANT_EXTS)
    return sorted(out)