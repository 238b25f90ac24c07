import logging
import os
from pathlib import Path

import pytest

import nicc.cache.evictor as evictor_mod
from nicc.cache.evictor import CacheEvictor, parse_expiry
from nicc.cache.scanner import CacheSnapshot, DirectoryScanner, FileRecord


def _entry(root: Path, entry: str, name: str, size: int, created_at: float = 0.0) -> FileRecord:
    path = root / entry / name
    path.parent.mkdir(parents=True, exist_ok=True)
    path.write_bytes(b"x" * size)
    return FileRecord(str(path), str(path.parent), size, created_at, name)


def _snapshot(*records: FileRecord) -> CacheSnapshot:
    return CacheSnapshot(files=list(records), total_size=sum(r.size for r in records))


@pytest.fixture
def root(tmp_path):
    d = tmp_path / "images"
    d.mkdir()
    return d


@pytest.fixture
def evictor(root):
    return CacheEvictor(DirectoryScanner(str(root), concurrency_limit=4))


# -- expiry parsing --

def test_parse_expiry_reads_second_field():
    assert parse_expiry("60.1700000000000.etag.webp") == 1700000000000
    assert parse_expiry("a.100.jpg") == 100


@pytest.mark.parametrize("name", ["noext", "a.b.jpg", "a..jpg", "a.-5.jpg", "a.12x.jpg"])
def test_parse_expiry_rejects_malformed(name, caplog):
    caplog.set_level(logging.WARNING, logger="nicc.evictor")
    assert parse_expiry(name) is None
    assert "Could not parse expiration" in caplog.text


# -- TTL policy --

@pytest.mark.anyio
async def test_ttl_deletes_only_expired_entry(root, evictor):
    a = _entry(root, "a", "a.100.jpg", 50)
    b = _entry(root, "b", "b.5000.jpg", 50)
    snapshot = _snapshot(a, b)

    deleted = await evictor.delete_outdated(snapshot, now_ms=200)

    assert deleted == 1
    assert not (root / "a").exists()
    assert (root / "b" / "b.5000.jpg").exists()
    assert [f.name for f in snapshot.files] == ["b.5000.jpg"]


@pytest.mark.anyio
async def test_ttl_expiry_equal_to_now_is_kept(root, evictor):
    a = _entry(root, "a", "a.200.jpg", 1)
    assert await evictor.delete_outdated(_snapshot(a), now_ms=200) == 0
    assert (root / "a").exists()


@pytest.mark.anyio
async def test_ttl_never_deletes_unparsable_names(root, evictor):
    a = _entry(root, "a", "nonsense.jpg", 1)
    b = _entry(root, "b", "no-dots", 1)
    assert await evictor.delete_outdated(_snapshot(a, b), now_ms=10**15) == 0
    assert (root / "a").exists()
    assert (root / "b").exists()


@pytest.mark.anyio
async def test_ttl_deletes_shared_parent_once(root, evictor, monkeypatch):
    a1 = _entry(root, "a", "60.100.e1.webp", 1)
    a2 = _entry(root, "a", "60.100.e2.avif", 1)
    calls: list[str] = []
    real_remove = evictor_mod._remove_path

    def counting_remove(target):
        calls.append(target)
        real_remove(target)

    monkeypatch.setattr(evictor_mod, "_remove_path", counting_remove)
    assert await evictor.delete_outdated(_snapshot(a1, a2), now_ms=200) == 1
    assert calls == [str(root / "a")]


@pytest.mark.anyio
async def test_ttl_file_in_root_removes_file_not_root(root, evictor):
    loose = root / "60.100.e.jpg"
    loose.write_bytes(b"x")
    record = FileRecord(str(loose), str(root), 1, 0.0, loose.name)

    assert await evictor.delete_outdated(_snapshot(record), now_ms=200) == 1
    assert root.is_dir()
    assert not loose.exists()


@pytest.mark.anyio
async def test_ttl_count_is_scheduled_even_if_delete_fails(root, evictor, monkeypatch, caplog):
    a = _entry(root, "a", "a.1.jpg", 1)
    b = _entry(root, "b", "b.1.jpg", 1)
    real_remove = evictor_mod._remove_path

    def failing_remove(target):
        if target.endswith(os.sep + "a"):
            raise PermissionError("denied")
        real_remove(target)

    monkeypatch.setattr(evictor_mod, "_remove_path", failing_remove)
    caplog.set_level(logging.ERROR, logger="nicc.evictor")

    assert await evictor.delete_outdated(_snapshot(a, b), now_ms=200) == 2
    assert "Failed to delete" in caplog.text
    assert (root / "a").exists()
    assert not (root / "b").exists()


@pytest.mark.anyio
async def test_ttl_tolerates_entry_already_gone(root, evictor):
    a = _entry(root, "a", "a.1.jpg", 1)
    (root / "a" / "a.1.jpg").unlink()
    (root / "a").rmdir()
    assert await evictor.delete_outdated(_snapshot(a), now_ms=200) == 1


@pytest.mark.anyio
async def test_run_ttl_pass_scans_and_deletes(root, evictor, monkeypatch):
    _entry(root, "old", "60.1.e.jpg", 3)
    _entry(root, "new", "60.99999999999999.e.jpg", 3)
    assert await evictor.run_ttl_pass() == 1
    assert sorted(os.listdir(root)) == ["new"]


@pytest.mark.anyio
async def test_run_ttl_pass_reports_failure_for_missing_root(tmp_path, caplog):
    evictor = CacheEvictor(DirectoryScanner(str(tmp_path / "missing")))
    caplog.set_level(logging.ERROR, logger="nicc.evictor")
    assert await evictor.run_ttl_pass() is None
    assert "TTL pass aborted" in caplog.text


@pytest.mark.anyio
async def test_run_capacity_pass_reports_failure_for_missing_root(tmp_path, caplog):
    evictor = CacheEvictor(DirectoryScanner(str(tmp_path / "missing")))
    caplog.set_level(logging.ERROR, logger="nicc.evictor")
    assert await evictor.run_capacity_pass(100) is None
    assert "Capacity pass aborted" in caplog.text


# -- capacity policy --

@pytest.mark.anyio
async def test_capacity_under_limit_is_noop(root, evictor):
    a = _entry(root, "a", "a.1.jpg", 100)
    assert await evictor.delete_over_limit(_snapshot(a), limit=100) == 0
    assert (root / "a").exists()


@pytest.mark.anyio
async def test_capacity_continues_until_excess_covered(root, evictor):
    small = _entry(root, "small", "s.1.jpg", 100, created_at=1.0)
    big = _entry(root, "big", "b.1.jpg", 200, created_at=2.0)

    freed = await evictor.delete_over_limit(_snapshot(small, big), limit=150)

    assert freed == 300
    assert not (root / "small").exists()
    assert not (root / "big").exists()


@pytest.mark.anyio
async def test_capacity_takes_shortest_oldest_prefix(root, evictor):
    newest = _entry(root, "c", "c.1.jpg", 300, created_at=3.0)
    oldest = _entry(root, "a", "a.1.jpg", 100, created_at=1.0)
    middle = _entry(root, "b", "b.1.jpg", 200, created_at=2.0)
    snapshot = _snapshot(newest, oldest, middle)

    freed = await evictor.delete_over_limit(snapshot, limit=400)

    assert freed == 300
    assert not (root / "a").exists()
    assert not (root / "b").exists()
    assert (root / "c").exists()
    assert [f.name for f in snapshot.files] == ["c.1.jpg"]
    assert snapshot.total_size == 300


@pytest.mark.anyio
async def test_capacity_overshoot_is_accepted(root, evictor):
    huge = _entry(root, "a", "a.1.jpg", 1000, created_at=1.0)
    other = _entry(root, "b", "b.1.jpg", 10, created_at=2.0)
    assert await evictor.delete_over_limit(_snapshot(huge, other), limit=1000) == 1000
    assert (root / "b").exists()


@pytest.mark.anyio
async def test_capacity_reports_total_despite_delete_failure(root, evictor, monkeypatch, caplog):
    a = _entry(root, "a", "a.1.jpg", 100, created_at=1.0)
    b = _entry(root, "b", "b.1.jpg", 100, created_at=2.0)

    def failing_remove(target):
        raise OSError("disk on fire")

    monkeypatch.setattr(evictor_mod, "_remove_path", failing_remove)
    caplog.set_level(logging.ERROR, logger="nicc.evictor")
    assert await evictor.delete_over_limit(_snapshot(a, b), limit=50) == 200
    assert caplog.text.count("Failed to delete") == 2


@pytest.mark.anyio
async def test_capacity_second_pass_is_noop(root, evictor, monkeypatch):
    monkeypatch.setattr("nicc.cache.scanner._created_at", lambda st: st.st_mtime)
    for i, size in enumerate([100, 100, 100, 100]):
        rec = _entry(root, f"e{i}", f"{i}.1.jpg", size)
        os.utime(rec.path, (1000 + i, 1000 + i))

    first = await evictor.run_capacity_pass(250)
    assert first == 200
    assert sorted(os.listdir(root)) == ["e2", "e3"]

    assert await evictor.run_capacity_pass(250) == 0
    assert sorted(os.listdir(root)) == ["e2", "e3"]


@pytest.mark.anyio
async def test_capacity_pass_at_exact_limit_deletes_nothing(root, evictor):
    _entry(root, "a", "a.1.jpg", 120, created_at=1.0)
    _entry(root, "b", "b.1.jpg", 80, created_at=2.0)

    assert await evictor.run_capacity_pass(200) == 0
    assert sorted(os.listdir(root)) == ["a", "b"]


@pytest.mark.anyio
async def test_capacity_total_counts_siblings_removed_with_entry(root, evictor):
    old = _entry(root, "a", "a.1.jpg", 100, created_at=1.0)
    sibling = _entry(root, "a", "a.2.jpg", 50, created_at=5.0)
    keep = _entry(root, "b", "b.1.jpg", 300, created_at=2.0)
    snapshot = _snapshot(old, sibling, keep)

    assert await evictor.delete_over_limit(snapshot, limit=400) == 100
    assert not (root / "a").exists()
    assert [f.name for f in snapshot.files] == ["b.1.jpg"]
    assert snapshot.total_size == 300
