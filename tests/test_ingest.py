import io
import os
from concurrent.futures import ThreadPoolExecutor
from datetime import datetime, timezone

import pytest

from phototool.ingest import (
    Catalog,
    IngestOutcome,
    Ingester,
    OperationSummary,
    UniqueConstraintError,
    copy_to_file,
    file_sha256_hex,
    resolve_unique_ingest_collision,
)

HASH_A = "a" * 64
HASH_B = "b" * 64
HASH_C = "c" * 64


def write_image(path, seed, mtime):
    os.makedirs(os.path.dirname(path), exist_ok=True)
    with open(path, "wb") as f:
        f.write(b"\xff\xd8\xff\xe0" + bytes([seed, seed ^ 1, seed]) * 16 + b"\xff\xd9")
    ts = mtime.timestamp()
    os.utime(path, (ts, ts))


@pytest.fixture
def catalog():
    with Catalog() as cat:
        yield cat


@pytest.fixture
def lib(tmp_path):
    root = tmp_path / "lib"
    root.mkdir()
    return str(root)


@pytest.fixture
def src_dir(tmp_path):
    d = tmp_path / "in"
    d.mkdir()
    return d


def test_unique_content_hash_error(catalog):
    catalog.insert_asset(HASH_A, "2000/01/01/a.jpg", 1, 1)
    with pytest.raises(UniqueConstraintError) as info:
        catalog.insert_asset(HASH_A, "2000/01/01/b.jpg", 1, 1)
    assert info.value.on_content_hash
    assert not info.value.on_rel_path


def test_unique_rel_path_is_not_content_hash(catalog):
    rel = "2000/01/01/same_rel.jpg"
    catalog.insert_asset(HASH_B, rel, 1, 1)
    with pytest.raises(UniqueConstraintError) as info:
        catalog.insert_asset(HASH_C, rel, 1, 1)
    assert not info.value.on_content_hash
    assert info.value.on_rel_path


def test_injected_capture_drives_canonical_path(catalog, lib, src_dir):
    src = str(src_dir / "exif_time.jpg")
    write_image(src, 0x66, datetime(2030, 1, 1, 12, tzinfo=timezone.utc))
    shot = datetime(2017, 8, 9, 14, 30, tzinfo=timezone.utc)
    ingester = Ingester(catalog, lib, read_capture=lambda p: shot)
    summary = ingester.ingest([src])
    assert summary == OperationSummary(added=1)
    (row,) = catalog.all_assets()
    assert row.capture_time_unix == int(shot.timestamp())
    assert row.rel_path.startswith("2017/08/09/")


def test_duplicate_path_skips_second(catalog, lib, src_dir):
    src = str(src_dir / "a.jpg")
    mt = datetime(2020, 6, 1, 15, 4, 5, tzinfo=timezone.utc)
    write_image(src, 0x11, mt)
    ingester = Ingester(catalog, lib)

    assert ingester.ingest([src]) == OperationSummary(added=1)
    assert catalog.count_assets() == 1
    assert ingester.ingest([src]) == OperationSummary(skipped_duplicate=1)
    assert catalog.count_assets() == 1

    (row,) = catalog.all_assets()
    assert len(row.content_hash) == 64
    assert row.capture_time_unix == int(mt.timestamp())
    assert row.created_at_unix > 0
    assert row.rel_path.startswith("2020/06/01/")
    assert row.rel_path.endswith("_" + row.content_hash[:12] + ".jpg")
    assert os.path.isfile(os.path.join(lib, row.rel_path))


def test_batch_mixed_success_and_failure(catalog, lib, src_dir):
    mt = datetime(2018, 7, 4, 12, tzinfo=timezone.utc)
    ok1 = str(src_dir / "ok1.jpg")
    ok2 = str(src_dir / "ok2.jpg")
    write_image(ok1, 0x77, mt)
    write_image(ok2, 0x88, mt)
    missing = str(src_dir / "nope.jpg")
    summary = Ingester(catalog, lib).ingest([ok1, missing, ok2])
    assert summary == OperationSummary(added=2, failed=1)
    assert catalog.count_assets() == 2


def test_batch_multiple_files(catalog, lib, src_dir):
    mt = datetime(2019, 12, 31, 23, 0, 1, tzinfo=timezone.utc)
    paths = []
    for i, name in enumerate("abc"):
        p = str(src_dir / "batch" / f"{name}.jpg")
        write_image(p, 0x20 + i, mt)
        paths.append(p)
    assert Ingester(catalog, lib).ingest(paths) == OperationSummary(added=3)
    assert catalog.count_assets() == 3


def test_ingest_with_asset_ids_duplicate_matches_first(catalog, lib, src_dir):
    src = str(src_dir / "a.jpg")
    write_image(src, 0x22, datetime(2020, 6, 1, 15, 4, 5, tzinfo=timezone.utc))
    summary, ids = Ingester(catalog, lib).ingest_with_asset_ids([src, src])
    assert summary == OperationSummary(added=1, skipped_duplicate=1)
    assert ids[0] != 0
    assert ids[1] == ids[0]


def test_ingest_with_asset_ids_failed_path_zero(catalog, lib):
    summary, ids = Ingester(catalog, lib).ingest_with_asset_ids(["/no/such/file/ever.jpg"])
    assert summary == OperationSummary(failed=1)
    assert ids == [0]


def test_dry_run_no_writes(catalog, lib, src_dir):
    src = str(src_dir / "a.jpg")
    write_image(src, 0x33, datetime(2020, 6, 1, 15, 4, 5, tzinfo=timezone.utc))
    ingester = Ingester(catalog, lib)

    result = ingester.ingest_path(src, True, None)
    assert result.outcome is IngestOutcome.ADDED
    assert result.asset_id == 0
    assert catalog.count_assets() == 0

    assert ingester.ingest([src]).added == 1
    assert catalog.count_assets() == 1

    again = ingester.ingest_path(src, True, None)
    assert again.outcome is IngestOutcome.SKIPPED_DUPLICATE


def test_dry_run_matches_live_same_bytes_two_paths(catalog, lib, src_dir):
    mt = datetime(2022, 3, 4, 5, 6, 7, tzinfo=timezone.utc)
    a = str(src_dir / "a.jpg")
    b = str(src_dir / "b.jpg")
    write_image(a, 0x77, mt)
    write_image(b, 0x77, mt)
    ingester = Ingester(catalog, lib)
    dry = ingester.ingest_paths([a, b], True)
    live = ingester.ingest_paths([a, b], False)
    assert dry == live
    assert live == OperationSummary(added=1, skipped_duplicate=1)


def test_dry_run_matches_live_unique(catalog, lib, src_dir):
    src = str(src_dir / "a.jpg")
    write_image(src, 0x44, datetime(2021, 1, 2, 3, 4, 5, tzinfo=timezone.utc))
    ingester = Ingester(catalog, lib)
    dry = ingester.ingest_paths([src], True)
    live = ingester.ingest_paths([src], False)
    assert dry == live == OperationSummary(added=1)


def test_concurrent_same_source_one_row_file_survives(catalog, lib, src_dir):
    src = str(src_dir / "race.jpg")
    write_image(src, 0x55, datetime(2020, 6, 1, 15, 4, 5, tzinfo=timezone.utc))
    ingester = Ingester(catalog, lib)
    n = 16
    with ThreadPoolExecutor(max_workers=n) as pool:
        results = list(pool.map(lambda _: ingester.ingest([src]), range(n)))
    acc = OperationSummary(
        added=sum(r.added for r in results),
        skipped_duplicate=sum(r.skipped_duplicate for r in results),
        updated=sum(r.updated for r in results),
        failed=sum(r.failed for r in results),
    )
    assert acc == OperationSummary(added=1, skipped_duplicate=n - 1)
    (row,) = catalog.all_assets()
    assert os.path.isfile(os.path.join(lib, row.rel_path))


def test_resolve_collision_same_hash_same_path(catalog):
    asset_id = catalog.insert_asset(HASH_A, "2020/x.jpg", 1, 1)
    assert resolve_unique_ingest_collision(catalog, HASH_A, "2020/x.jpg") == (asset_id, True, False)


def test_resolve_collision_same_hash_other_path(catalog):
    asset_id = catalog.insert_asset(HASH_A, "2020/x.jpg", 1, 1)
    assert resolve_unique_ingest_collision(catalog, HASH_A, "2020/y.jpg") == (asset_id, True, True)


def test_resolve_collision_path_held_by_other_hash(catalog):
    catalog.insert_asset(HASH_B, "2020/x.jpg", 1, 1)
    assert resolve_unique_ingest_collision(catalog, HASH_A, "2020/x.jpg") == (0, False, True)


def test_resolve_collision_nothing_found(catalog):
    assert resolve_unique_ingest_collision(catalog, HASH_A, "2020/x.jpg") == (0, False, True)


def test_copy_to_file_creates_dirs_and_copies(tmp_path):
    data = b"photo bytes" * 100
    dest = tmp_path / "deep" / "er" / "out.jpg"
    copy_to_file(io.BytesIO(data), str(dest))
    assert dest.read_bytes() == data


def test_file_sha256_hex_known_value():
    assert (
        file_sha256_hex(io.BytesIO(b"abc"))
        == "ba7816bf8f01cfea414140de5dae2223b00361a396177a9cb410ff61f20015ad"
    )


def test_summary_record_counts_each_outcome():
    summary = OperationSummary()
    for outcome in (
        IngestOutcome.ADDED,
        IngestOutcome.ADDED,
        IngestOutcome.SKIPPED_DUPLICATE,
        IngestOutcome.UPDATED,
        IngestOutcome.FAILED,
    ):
        summary.record(outcome)
    assert summary == OperationSummary(added=2, skipped_duplicate=1, updated=1, failed=1)