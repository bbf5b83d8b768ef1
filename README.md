# phototool

A small photo-library toolkit: a canonical on-disk layout, ingest into a
SQLite catalog with deduplication by content hash, in-place registration of
files already in the library, and a WSGI app that serves share links with a
per-client rate limit. It depends only on the Python standard library
(Python 3.10 or later).

## Modules

- `phototool.paths`
  - `canonical_day_dir(root, capture_utc)` returns `{root}/YYYY/MM/DD` for the UTC capture time.
    Naive datetimes are taken as UTC.
  - `suggested_filename(capture_utc, hash_hex_full, ext)` returns
    `YYYYMMDD-HHMMSS_{first 12 hash chars}{ext}`. The hash and the extension are lowercased, and
    the extension gets a leading dot if it has none.
- `phototool.extensions`
  - `is_supported_ingest_ext(ext)` and `is_supported_scan_ext(ext)` accept `.jpg .jpeg .png .gif
    .webp .tif .tiff .heic .dng`, in any case, with or without the dot.
  - `picker_filter_extensions()` returns the sorted list for a file picker, which also holds
    `.HEIC` and `.DNG`.
- `phototool.ingest`
  - `Catalog(path=":memory:")` is a thread-safe SQLite catalog with an `assets` table. It has
    unique indexes on `content_hash` and on the active `rel_path`, and can be used as a context
    manager.
  - `Ingester(catalog, library_root, read_capture=..., read_camera=..., clock=...)` copies sources
    into the library at `canonical_day_dir` / `suggested_filename` and records them. By default
    the capture time is the file's modification time and no camera make or model is recorded.
    Pass your own `read_capture(path) -> datetime` and `read_camera(path) -> CameraStrings` to
    change this.
    - `ingest(paths)` and `ingest_paths(paths, dry_run)` return an `OperationSummary` with
      `added`, `skipped_duplicate`, `updated` and `failed` counts. A failure is counted and the
      batch goes on.
    - `ingest_path(path, dry_run, dry_seen)` returns an `IngestResult` holding an
      `IngestOutcome` and an asset id.
    - `ingest_with_asset_ids(paths)` returns the summary and one asset id per path, with 0 for
      a path that failed.
    - In a dry run nothing is copied or inserted. Within one batch, repeated bytes are still
      classified as duplicates.
  - Copies to the same destination are serialised across threads. A copy that cannot be
    registered is removed again. After a unique-constraint race,
    `resolve_unique_ingest_collision` decides whether the file counts as a duplicate and whether
    the copy is an orphan.
  - `copy_to_file(src, dest_path)` and `file_sha256_hex(fileobj)` are also available on their
    own.
- `phototool.register_import`
  - `register_in_place_path(catalog, library_root, abs_path, dry_run, read_capture, read_camera)`
    registers a file that already sits under the library root and returns an `IngestOutcome`.
    - If the row at that path has the same bytes but a different capture time, the capture time
      is updated and the outcome is `UPDATED`.
    - If the path is already recorded with different bytes, the outcome is `FAILED`.
- `phototool.share_paths`
  - `share_http_path(token)` returns `/s/{token}`.
  - `share_image_http_path(token)` returns `/i/{token}`.
  - `share_package_member_image_path(token, position)` returns `/i/{token}/{position}`, with a
    negative position taken as 0.
- `phototool.share_handler`
  - `ShareApp(resolver, library_root, page_renderer=None)` is a WSGI app. It serves GET and HEAD
    requests for:
    - `/s/{token}`, an HTML page for a single photo or a package;
    - `/i/{token}`, the image bytes of a single share;
    - `/i/{token}/{position}`, the image bytes of a package member.

    Every miss, including other methods and extra path segments, answers with the same
    `404 Not Found\n`. Successful HTML responses carry a strict `Content-Security-Policy`,
    `Referrer-Policy: no-referrer` and `X-Content-Type-Options: nosniff`.
  - `ShareResolver` is the abstract lookup you implement, with `resolve_package`,
    `resolve_default` and `asset_file`. It returns `PackageShare`, `DefaultShare` and `AssetFile`
    values, and share payloads are `SharePayload` values.
  - `rating_view_model(rating)` returns the star markup and the label: `"Rating: N"` for 1–5,
    otherwise `"Unrated"`.
  - `content_type_for_share_image(mime, head, name)` picks a stored `image/*` MIME type first,
    then the type sniffed from the file's bytes, then the type from the file extension, and
    otherwise `application/octet-stream`.
  - `new_http_app(resolver, library_root)` wraps `ShareApp` in the default rate limit.
- `phototool.ratelimit`
  - `RateLimitedApp(inner, cfg)` is WSGI middleware that answers `429 Too Many Requests\n` once a
    client IP runs out of tokens. The client is keyed by `REMOTE_ADDR` only; forwarded headers
    are ignored.
  - `TokenBucket` and `IPRateLimiter` do the counting. `IPRateLimiter` holds at most 4096 client
    keys.
  - `RateLimitConfig(rate, burst)` sets the limit, and `default_share_rate_limit()` gives 12 per
    second with a burst of 80.
  - `client_ip_key(remote_addr)` returns the host part of a remote address.
- `phototool.loopback`
  - `Loopback(app, host="127.0.0.1", port=0, clipboard_host=None)` serves a WSGI app from a
    background thread.
    - `ensure_running()` starts it and returns the base URL, such as `http://127.0.0.1:8765`.
      If a port is in use it tries up to 10 consecutive ports.
    - `close()` stops it.

## Example

```python
from datetime import datetime, timezone
from phototool.paths import canonical_day_dir, suggested_filename
from phototool.share_paths import share_http_path
from phototool.ingest import Catalog, Ingester

when = datetime(2024, 3, 9, 15, 4, 5, tzinfo=timezone.utc)
canonical_day_dir("/data/lib", when)                  # '/data/lib/2024/03/09' on POSIX
suggested_filename(when, "ABCDEF0123456789", ".JPG")  # '20240309-150405_abcdef012345.jpg'
share_http_path("abcXYZ-_")                           # '/s/abcXYZ-_'

with Catalog("/data/lib/catalog.db") as catalog:
    summary = Ingester(catalog, "/data/lib").ingest(["/import/a.jpg", "/import/b.jpg"])
    print(summary.added, summary.skipped_duplicate, summary.failed)
```

The following serves shares from your own resolver:

```python
from phototool.share_handler import AssetFile, DefaultShare, ShareResolver, new_http_app
from phototool.loopback import Loopback

class MyResolver(ShareResolver):
    def resolve_package(self, token):
        return None

    def resolve_default(self, token):
        return DefaultShare(asset_id=1) if token == "token" else None

    def asset_file(self, asset_id):
        return AssetFile("2024/03/09/photo.jpg", "image/jpeg")

server = Loopback(new_http_app(MyResolver(), "/data/lib"))
print(server.ensure_running() + "/s/token")
server.close()
```

## What it does not do

- There is no command-line program and no graphical interface. Everything is used from Python.
- Capture times are not read from EXIF or other embedded metadata. The default reader uses the
  file's modification time. Camera make and model are recorded only if you supply a reader.
- There is no storage of share links. Creating tokens and storing or revoking share links is
  left to your `ShareResolver`, and so is deciding which assets may still be shared.
- The catalog has only the `assets` table. It has no ratings, tags, albums, rejection or trash
  management.

## Install and test

```
pip install .
pip install ".[test]"
pytest
```