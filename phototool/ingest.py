"""Copy source images into canonical library storage and register them in a catalog.

Deduplication uses the full-byte SHA-256 digest (lowercase hex) stored as the
asset's content hash. The capture time and the digest are read from one open
source file; the destination path is derived only once the digest is known.
A copy that cannot be registered is removed again, except when a concurrent
writer already owns the same canonical path.
"""

from __future__ import annotations

import enum
import hashlib
import io
import logging
import math
import os
import shutil
import sqlite3
import threading
import time
from dataclasses import dataclass
from datetime import datetime, timezone
from typing import BinaryIO, Callable, Iterable, NamedTuple

from phototool.paths import canonical_day_dir, suggested_filename

logger = logging.getLogger(__name__)

_CHUNK = 1 << 16


class IngestOutcome(enum.Enum):
    """How a single file was classified."""

    ADDED = "added"
    SKIPPED_DUPLICATE = "skipped_duplicate"
    UPDATED = "updated"
    FAILED = "failed"


@dataclass
class OperationSummary:
    """Counts of outcomes over a batch."""

    added: int = 0
    skipped_duplicate: int = 0
    updated: int = 0
    failed: int = 0

    def record(self, outcome: IngestOutcome) -> None:
        """Count one outcome."""
        if outcome is IngestOutcome.ADDED:
            self.added += 1
        elif outcome is IngestOutcome.SKIPPED_DUPLICATE:
            self.skipped_duplicate += 1
        elif outcome is IngestOutcome.UPDATED:
            self.updated += 1
        else:
            self.failed += 1


@dataclass(frozen=True)
class CameraStrings:
    """Camera make and model read from image metadata."""

    make: str = ""
    model: str = ""


@dataclass(frozen=True)
class IngestResult:
    """Outcome of one file and the asset id it resolved to (0 when none)."""

    outcome: IngestOutcome
    asset_id: int = 0


@dataclass(frozen=True)
class AssetRow:
    """One row of the assets table."""

    id: int
    content_hash: str
    rel_path: str
    capture_time_unix: int
    created_at_unix: int


class UniqueConstraintError(Exception):
    """An insert violated a UNIQUE constraint of the catalog."""

    @property
    def on_content_hash(self) -> bool:
        msg = str(self).lower()
        return "content_hash" in msg or "idx_assets_content_hash" in msg

    @property
    def on_rel_path(self) -> bool:
        msg = str(self)
        return "rel_path" in msg or "idx_assets_rel_path_active" in msg


_SCHEMA = """
CREATE TABLE IF NOT EXISTS assets (
    id INTEGER PRIMARY KEY AUTOINCREMENT,
    content_hash TEXT NOT NULL,
    rel_path TEXT NOT NULL,
    capture_time_unix INTEGER NOT NULL,
    created_at_unix INTEGER NOT NULL,
    camera_make TEXT,
    camera_model TEXT,
    deleted_at_unix INTEGER
);
CREATE UNIQUE INDEX IF NOT EXISTS idx_assets_content_hash ON assets(content_hash);
CREATE UNIQUE INDEX IF NOT EXISTS idx_assets_rel_path_active
    ON assets(rel_path) WHERE deleted_at_unix IS NULL;
"""

_ROW_COLUMNS = "id, content_hash, rel_path, capture_time_unix, created_at_unix"


class Catalog:
    """SQLite-backed asset catalog, safe to share between threads."""

    def __init__(self, path: str = ":memory:") -> None:
        self._conn = sqlite3.connect(path, check_same_thread=False, isolation_level=None)
        self._lock = threading.RLock()
        with self._lock:
            self._conn.executescript(_SCHEMA)

    @property
    def connection(self) -> sqlite3.Connection:
        return self._conn

    def close(self) -> None:
        with self._lock:
            self._conn.close()

    def __enter__(self) -> Catalog:
        return self

    def __exit__(self, *exc: object) -> None:
        self.close()

    def _one(self, sql: str, params: tuple) -> AssetRow | None:
        with self._lock:
            row = self._conn.execute(sql, params).fetchone()
        return AssetRow(*row) if row else None

    def asset_id_by_content_hash(self, content_hash: str) -> int | None:
        """Return the id of the row holding *content_hash*, deleted or not."""
        row = self.asset_row_by_content_hash(content_hash)
        return row.id if row else None

    def asset_row_by_content_hash(self, content_hash: str) -> AssetRow | None:
        return self._one(
            f"SELECT {_ROW_COLUMNS} FROM assets WHERE content_hash = ?", (content_hash,)
        )

    def active_asset_by_rel_path(self, rel_path: str) -> AssetRow | None:
        return self._one(
            f"SELECT {_ROW_COLUMNS} FROM assets "
            "WHERE rel_path = ? AND deleted_at_unix IS NULL",
            (rel_path,),
        )

    def insert_asset(
        self,
        content_hash: str,
        rel_path: str,
        capture_unix: int,
        created_at_unix: int,
        camera_make: str = "",
        camera_model: str = "",
    ) -> int:
        """Insert a row and return its id; raise UniqueConstraintError on conflicts."""
        try:
            with self._lock:
                cur = self._conn.execute(
                    "INSERT INTO assets (content_hash, rel_path, capture_time_unix, "
                    "created_at_unix, camera_make, camera_model) VALUES (?, ?, ?, ?, ?, ?)",
                    (
                        content_hash,
                        rel_path,
                        capture_unix,
                        created_at_unix,
                        camera_make or None,
                        camera_model or None,
                    ),
                )
                return int(cur.lastrowid)
        except sqlite3.IntegrityError as exc:
            if "UNIQUE constraint failed" in str(exc):
                raise UniqueConstraintError(str(exc)) from exc
            raise

    def update_asset_capture_time(self, asset_id: int, capture_unix: int) -> None:
        with self._lock:
            self._conn.execute(
                "UPDATE assets SET capture_time_unix = ? WHERE id = ?",
                (capture_unix, asset_id),
            )

    def all_assets(self) -> list[AssetRow]:
        with self._lock:
            rows = self._conn.execute(
                f"SELECT {_ROW_COLUMNS} FROM assets ORDER BY id"
            ).fetchall()
        return [AssetRow(*r) for r in rows]

    def count_assets(self) -> int:
        with self._lock:
            (n,) = self._conn.execute("SELECT COUNT(*) FROM assets").fetchone()
        return int(n)


CaptureReader = Callable[[str], datetime]
CameraReader = Callable[[str], CameraStrings]


def file_mtime_capture(path: str) -> datetime:
    """Use the file's modification time (UTC) as its capture time."""
    return datetime.fromtimestamp(os.stat(path).st_mtime, tz=timezone.utc)


def no_camera(path: str) -> CameraStrings:
    """Report no camera information."""
    return CameraStrings()


def unix_seconds(moment: datetime) -> int:
    if moment.tzinfo is None:
        moment = moment.replace(tzinfo=timezone.utc)
    return math.floor(moment.timestamp())


def file_sha256_hex(fileobj: BinaryIO) -> str:
    """Return the lowercase hex SHA-256 of everything left to read in *fileobj*."""
    digest = hashlib.sha256()
    for chunk in iter(lambda: fileobj.read(_CHUNK), b""):
        digest.update(chunk)
    return digest.hexdigest()


def _source_size(src: BinaryIO) -> int:
    try:
        return os.fstat(src.fileno()).st_size
    except (AttributeError, io.UnsupportedOperation):
        pos = src.tell()
        size = src.seek(0, io.SEEK_END)
        src.seek(pos)
        return size


def copy_to_file(src: BinaryIO, dest_path: str) -> None:
    """Copy *src* to *dest_path*, syncing and checking the size; raise OSError on failure."""
    os.makedirs(os.path.dirname(dest_path) or ".", exist_ok=True)
    want = _source_size(src)
    with open(dest_path, "wb") as dst:
        try:
            shutil.copyfileobj(src, dst, _CHUNK)
            dst.flush()
            os.fsync(dst.fileno())
        except OSError:
            dst.close()
            _remove_quietly(dest_path)
            raise
    got = os.stat(dest_path).st_size
    if got != want:
        _remove_quietly(dest_path)
        raise OSError(f"copy size mismatch: got {got} want {want}")


def _remove_quietly(path: str) -> None:
    try:
        os.remove(path)
    except OSError:
        pass


class CollisionResolution(NamedTuple):
    asset_id: int
    skip: bool
    remove_dest: bool


def resolve_unique_ingest_collision(
    catalog: Catalog, content_hash: str, rel_path: str
) -> CollisionResolution:
    """Interpret a UNIQUE violation after a failed insert.

    ``skip`` means the file counts as a duplicate; ``remove_dest`` means the
    copy at the attempted path is an orphan and should be deleted.
    """
    by_hash = catalog.asset_row_by_content_hash(content_hash)
    if by_hash is not None and by_hash.rel_path.replace("\\", "/") == rel_path.replace("\\", "/"):
        return CollisionResolution(by_hash.id, True, False)
    by_path = catalog.active_asset_by_rel_path(rel_path)
    if by_path is not None and by_path.content_hash == content_hash:
        return CollisionResolution(by_path.id, True, False)
    if by_hash is not None:
        return CollisionResolution(by_hash.id, True, True)
    return CollisionResolution(0, False, True)


_dest_locks: dict[str, threading.Lock] = {}
_dest_locks_guard = threading.Lock()


def _dest_lock(dest_abs: str) -> threading.Lock:
    key = os.path.normpath(dest_abs)
    with _dest_locks_guard:
        return _dest_locks.setdefault(key, threading.Lock())


def _failed() -> IngestResult:
    return IngestResult(IngestOutcome.FAILED, 0)


class Ingester:
    """Runs the ingest pipeline against one catalog and library root."""

    def __init__(
        self,
        catalog: Catalog,
        library_root: str,
        read_capture: CaptureReader = file_mtime_capture,
        read_camera: CameraReader = no_camera,
        clock: Callable[[], float] = time.time,
    ) -> None:
        self.catalog = catalog
        self.library_root = os.path.normpath(library_root)
        self._read_capture = read_capture
        self._read_camera = read_camera
        self._clock = clock

    def ingest(self, source_paths: Iterable[str]) -> OperationSummary:
        """Process each path in order; failures are counted and do not stop the batch."""
        return self.ingest_paths(source_paths, False)

    def ingest_paths(self, source_paths: Iterable[str], dry_run: bool = False) -> OperationSummary:
        """Like ingest, optionally as a dry run (hash and read-only dedup only)."""
        summary = OperationSummary()
        dry_seen: set[str] | None = set() if dry_run else None
        for path in source_paths:
            summary.record(self._ingest_one(path, dry_run, dry_seen).outcome)
        return summary

    def ingest_path(
        self, src_path: str, dry_run: bool = False, dry_seen: set[str] | None = None
    ) -> IngestResult:
        """Process one file.

        In a dry run nothing is copied or inserted; *dry_seen* collects the
        hashes already counted as added so later identical bytes count as
        duplicates, matching a live run.
        """
        return self._ingest_one(src_path, dry_run, dry_seen)

    def ingest_with_asset_ids(
        self, source_paths: Iterable[str]
    ) -> tuple[OperationSummary, list[int]]:
        """Ingest and return, per path, the resolved asset id or 0 on failure."""
        summary = OperationSummary()
        ids: list[int] = []
        for path in source_paths:
            result = self._ingest_one(path, False, None)
            summary.record(result.outcome)
            ids.append(result.asset_id)
        return summary, ids

    def _ingest_one(
        self, src_path: str, dry_run: bool, dry_seen: set[str] | None
    ) -> IngestResult:
        src_path = os.path.normpath(src_path)
        try:
            capture = self._read_capture(src_path)
        except (OSError, ValueError) as exc:
            logger.error("ingest: read capture path=%s err=%s", src_path, exc)
            return _failed()
        try:
            camera = self._read_camera(src_path)
        except (OSError, ValueError) as exc:
            logger.warning("ingest: read camera path=%s err=%s", src_path, exc)
            camera = CameraStrings()

        try:
            src = open(src_path, "rb")
        except OSError as exc:
            logger.error("ingest: open source path=%s err=%s", src_path, exc)
            return _failed()
        with src:
            try:
                hash_hex = file_sha256_hex(src)
            except OSError as exc:
                logger.error("ingest: hash path=%s err=%s", src_path, exc)
                return _failed()

            try:
                existing = self.catalog.asset_id_by_content_hash(hash_hex)
            except sqlite3.Error as exc:
                logger.error("ingest: dedup lookup path=%s err=%s", src_path, exc)
                return _failed()
            if existing is not None:
                return IngestResult(IngestOutcome.SKIPPED_DUPLICATE, existing)

            if dry_run:
                if dry_seen is not None:
                    if hash_hex in dry_seen:
                        return IngestResult(IngestOutcome.SKIPPED_DUPLICATE, 0)
                    dry_seen.add(hash_hex)
                return IngestResult(IngestOutcome.ADDED, 0)

            ext = os.path.splitext(src_path)[1]
            day_dir = canonical_day_dir(self.library_root, capture)
            dest_abs = os.path.join(day_dir, suggested_filename(capture, hash_hex, ext))

            with _dest_lock(dest_abs):
                return self._copy_and_register(src, src_path, dest_abs, hash_hex, capture, camera)

    def _copy_and_register(
        self,
        src: BinaryIO,
        src_path: str,
        dest_abs: str,
        hash_hex: str,
        capture: datetime,
        camera: CameraStrings,
    ) -> IngestResult:
        try:
            existing = self.catalog.asset_id_by_content_hash(hash_hex)
        except sqlite3.Error as exc:
            logger.error("ingest: dedup lookup under dest lock path=%s err=%s", src_path, exc)
            return _failed()
        if existing is not None:
            return IngestResult(IngestOutcome.SKIPPED_DUPLICATE, existing)

        try:
            src.seek(0)
            copy_to_file(src, dest_abs)
        except OSError as exc:
            logger.error("ingest: copy path=%s dest=%s err=%s", src_path, dest_abs, exc)
            return _failed()

        try:
            rel_path = os.path.relpath(dest_abs, self.library_root).replace(os.sep, "/")
        except ValueError as exc:
            _remove_quietly(dest_abs)
            logger.error("ingest: rel path library=%s dest=%s err=%s", self.library_root, dest_abs, exc)
            return _failed()

        try:
            new_id = self.catalog.insert_asset(
                hash_hex,
                rel_path,
                unix_seconds(capture),
                int(self._clock()),
                camera.make,
                camera.model,
            )
        except UniqueConstraintError as exc:
            return self._resolve_collision(exc, src_path, dest_abs, hash_hex, rel_path)
        except sqlite3.Error as exc:
            _remove_quietly(dest_abs)
            logger.error("ingest: insert asset path=%s rel_path=%s err=%s", src_path, rel_path, exc)
            return _failed()
        return IngestResult(IngestOutcome.ADDED, new_id)

    def _resolve_collision(
        self,
        insert_err: UniqueConstraintError,
        src_path: str,
        dest_abs: str,
        hash_hex: str,
        rel_path: str,
    ) -> IngestResult:
        try:
            resolution = resolve_unique_ingest_collision(self.catalog, hash_hex, rel_path)
        except sqlite3.Error as exc:
            _remove_quietly(dest_abs)
            logger.error("ingest: resolve unique collision path=%s err=%s", src_path, exc)
            return _failed()
        if resolution.remove_dest:
            _remove_quietly(dest_abs)
        if resolution.skip:
            return IngestResult(IngestOutcome.SKIPPED_DUPLICATE, resolution.asset_id)
        logger.error(
            "ingest: insert asset path=%s rel_path=%s err=%s", src_path, rel_path, insert_err
        )
        return _failed()