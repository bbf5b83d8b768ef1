"""Register images that already live under the library root, without copying."""

from __future__ import annotations

import logging
import os
import sqlite3

from phototool.ingest import (
    CameraReader,
    CameraStrings,
    CaptureReader,
    Catalog,
    IngestOutcome,
    UniqueConstraintError,
    file_mtime_capture,
    file_sha256_hex,
    no_camera,
    unix_seconds,
)

logger = logging.getLogger(__name__)


def register_in_place_path(
    catalog: Catalog,
    library_root: str,
    abs_path: str,
    dry_run: bool = False,
    read_capture: CaptureReader = file_mtime_capture,
    read_camera: CameraReader = no_camera,
) -> IngestOutcome:
    """Register one file under *library_root* and report how it was classified.

    Hashing and dedup match ingest. When the row at this path already has the
    same content but a different capture time, the capture time is updated
    (only counted in a dry run).
    """
    lib_root = os.path.normpath(library_root)
    abs_path = os.path.normpath(abs_path)

    try:
        rel_path = os.path.relpath(abs_path, lib_root).replace(os.sep, "/")
    except ValueError as exc:
        logger.error("import: rel to library path=%s library=%s err=%s", abs_path, lib_root, exc)
        return IngestOutcome.FAILED

    try:
        capture = read_capture(abs_path)
    except (OSError, ValueError) as exc:
        logger.error("import: read capture path=%s err=%s", abs_path, exc)
        return IngestOutcome.FAILED
    try:
        camera = read_camera(abs_path)
    except (OSError, ValueError) as exc:
        logger.warning("import: read camera path=%s err=%s", abs_path, exc)
        camera = CameraStrings()
    capture_unix = unix_seconds(capture)

    try:
        with open(abs_path, "rb") as f:
            hash_hex = file_sha256_hex(f)
    except OSError as exc:
        logger.error("import: hash path=%s err=%s", abs_path, exc)
        return IngestOutcome.FAILED

    try:
        by_hash = catalog.asset_row_by_content_hash(hash_hex)
    except sqlite3.Error as exc:
        logger.error("import: hash lookup path=%s err=%s", abs_path, exc)
        return IngestOutcome.FAILED

    if by_hash is not None:
        same_path = by_hash.rel_path.replace("\\", "/") == rel_path
        if same_path and by_hash.capture_time_unix != capture_unix:
            if dry_run:
                return IngestOutcome.UPDATED
            try:
                catalog.update_asset_capture_time(by_hash.id, capture_unix)
            except sqlite3.Error as exc:
                logger.error("import: backfill capture path=%s id=%s err=%s", abs_path, by_hash.id, exc)
                return IngestOutcome.FAILED
            return IngestOutcome.UPDATED
        return IngestOutcome.SKIPPED_DUPLICATE

    try:
        by_path = catalog.active_asset_by_rel_path(rel_path)
    except sqlite3.Error as exc:
        logger.error("import: path lookup path=%s err=%s", abs_path, exc)
        return IngestOutcome.FAILED
    if by_path is not None:
        if by_path.content_hash != hash_hex:
            logger.error(
                "import: rel_path occupied by different content; resolve manually "
                "rel_path=%s db_hash=%s disk_hash=%s",
                rel_path,
                by_path.content_hash,
                hash_hex,
            )
            return IngestOutcome.FAILED
        return IngestOutcome.SKIPPED_DUPLICATE

    if dry_run:
        return IngestOutcome.ADDED

    try:
        catalog.insert_asset(
            hash_hex,
            rel_path,
            capture_unix,
            unix_seconds(_now()),
            camera.make,
            camera.model,
        )
    except UniqueConstraintError as exc:
        if exc.on_content_hash:
            return IngestOutcome.SKIPPED_DUPLICATE
        if exc.on_rel_path:
            logger.error("import: rel_path unique conflict after insert race rel_path=%s err=%s", rel_path, exc)
        else:
            logger.error("import: insert asset path=%s rel_path=%s err=%s", abs_path, rel_path, exc)
        return IngestOutcome.FAILED
    except sqlite3.Error as exc:
        logger.error("import: insert asset path=%s rel_path=%s err=%s", abs_path, rel_path, exc)
        return IngestOutcome.FAILED
    return IngestOutcome.ADDED


def _now():
    from datetime import datetime, timezone

    return datetime.now(timezone.utc)