"""Canonical library layout: day directories and suggested file names."""

from __future__ import annotations

import os
from datetime import datetime, timezone

_HASH_PREFIX_LEN = 12


def _as_utc(moment: datetime) -> datetime:
    """Return *moment* in UTC; naive datetimes are taken to be UTC already."""
    if moment.tzinfo is None:
        return moment.replace(tzinfo=timezone.utc)
    return moment.astimezone(timezone.utc)


def canonical_day_dir(root: str, capture_utc: datetime) -> str:
    """Return ``{root}/{YYYY}/{MM}/{DD}`` for the capture time in UTC."""
    t = _as_utc(capture_utc)
    joined = os.path.join(root, f"{t.year:04d}", f"{t.month:02d}", f"{t.day:02d}")
    return os.path.normpath(joined)


def suggested_filename(capture_utc: datetime, hash_hex_full: str, ext: str) -> str:
    """Build ``{YYYYMMDD-HHMMSS}_{hashPrefix}{ext}`` using UTC.

    The extension is lowercased and gets a leading dot if missing; the hash is
    lowercased and shortened to its first 12 characters.
    """
    ext = ext.lower()
    if ext and not ext.startswith("."):
        ext = "." + ext
    t = _as_utc(capture_utc)
    stamp = (
        f"{t.year:04d}{t.month:02d}{t.day:02d}-"
        f"{t.hour:02d}{t.minute:02d}{t.second:02d}"
    )
    prefix = hash_hex_full.lower()[:_HASH_PREFIX_LEN]
    return f"{stamp}_{prefix}{ext}"