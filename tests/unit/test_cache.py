"""
Unit tests for the local snapshot cache.
"""

import json
import os
import time
from datetime import datetime, timezone
from pathlib import Path

import pytest

from sitesnap.core.exceptions import CacheLockTimeout, IntegrityError, SnapshotNotFoundLocally
from sitesnap.snapshot.cache import CacheLock, LocalCache
from sitesnap.snapshot.canonical import hash_bytes
from sitesnap.snapshot.models import (
    ContentBlock,
    Manifest,
    ManifestEntry,
    Snapshot,
    SnapshotState,
)

REGULAR = 0o100644
SYMLINK = 0o120777


def stage(staging: Path, data: bytes) -> ContentBlock:
    block_hash = hash_bytes(data)
    path = staging / block_hash
    path.parent.mkdir(parents=True, exist_ok=True)
    path.write_bytes(data)
    return ContentBlock(hash=block_hash, size=len(data), path=path)


def make_snapshot(manifest: Manifest, snapshot_id: str = "a1b2c3", **kwargs) -> Snapshot:
    return Snapshot(
        id=snapshot_id,
        project="myblog",
        description="test",
        created_at=datetime(2024, 1, 1, tzinfo=timezone.utc),
        manifest_hash=manifest.content_hash(),
        db_dump_hash=manifest.db_dump_hash,
        state=SnapshotState.PACKAGED,
        **kwargs,
    )


def save_simple(cache: LocalCache, snapshot_id: str = "a1b2c3", content: bytes = b"hello", **kwargs) -> Snapshot:
    with cache.staging(snapshot_id) as staging:
        block = stage(staging, content)
        manifest = Manifest(entries=[ManifestEntry("index.php", block.hash, block.size, REGULAR)])
        snapshot = make_snapshot(manifest, snapshot_id, **kwargs)
        cache.save(snapshot, manifest, [block])
    return snapshot


class TestLocalCache:
    """Tests for LocalCache."""

    def test_save_and_load(self, cache):
        snapshot = save_simple(cache)

        assert cache.is_cached(snapshot.id)
        loaded = cache.load(snapshot.id)
        assert loaded.project == "myblog"
        assert loaded.manifest_hash == snapshot.manifest_hash
        assert cache.load_manifest(snapshot.id).paths() == ["index.php"]

    def test_layout(self, cache):
        snapshot = save_simple(cache)
        block_hash = hash_bytes(b"hello")

        assert (cache.root / "snapshots" / snapshot.id / "meta.json").is_file()
        assert (cache.root / "snapshots" / snapshot.id / "manifest.json").is_file()
        assert (cache.root / "blocks" / block_hash[:2] / block_hash).is_file()
        assert (cache.root / "index.jsonl").is_file()

    def test_staging_removed_after_save(self, cache):
        save_simple(cache)

        assert list(cache.staging_dir.iterdir()) == []

    def test_staging_removed_on_failure(self, cache):
        with pytest.raises(RuntimeError):
            with cache.staging("abc") as staging:
                (staging / "partial").write_bytes(b"x")
                raise RuntimeError("boom")

        assert list(cache.staging_dir.iterdir()) == []
        assert not cache.is_cached("abc")

    def test_load_unknown(self, cache):
        with pytest.raises(SnapshotNotFoundLocally):
            cache.load("doesnotexist")

    def test_invalid_id_not_cached(self, cache):
        assert not cache.is_cached("../etc")
        with pytest.raises(SnapshotNotFoundLocally):
            cache.load("../etc")

    def test_missing_block_rejected(self, cache, tmp_path):
        manifest = Manifest(entries=[ManifestEntry("a.txt", hash_bytes(b"nope"), 4, REGULAR)])

        with pytest.raises(IntegrityError):
            cache.save(make_snapshot(manifest), manifest, [])

        assert not cache.is_cached("a1b2c3")

    def test_blocks_shared_between_snapshots(self, cache):
        save_simple(cache, "first")
        save_simple(cache, "second")

        assert len(list(cache.blocks_dir.glob("*/*"))) == 1

    def test_list_snapshots(self, cache):
        save_simple(cache, "first")
        save_simple(cache, "second", content=b"other")

        ids = [e.id for e in cache.list_snapshots()]
        assert sorted(ids) == ["first", "second"]

    def test_rebuild_index(self, cache):
        save_simple(cache, "first")
        (cache.root / "index.jsonl").unlink()

        assert cache.list_snapshots() == []
        assert cache.rebuild_index() == 1
        assert [e.id for e in cache.list_snapshots()] == ["first"]

    def test_mark_pushed(self, cache):
        save_simple(cache)

        cache.mark_pushed("a1b2c3", "team")

        loaded = cache.load("a1b2c3")
        assert loaded.state == SnapshotState.PUSHED
        assert loaded.pushed_to == ["team"]
        assert cache.list_snapshots()[0].state == "pushed"

    def test_delete_prunes_unreferenced_blocks(self, cache):
        save_simple(cache, "first", content=b"one")
        save_simple(cache, "second", content=b"two")

        removed = cache.delete("first")

        assert removed == 1
        assert not cache.is_cached("first")
        assert cache.has_block(hash_bytes(b"two"))
        assert not cache.has_block(hash_bytes(b"one"))

    def test_delete_unknown(self, cache):
        with pytest.raises(SnapshotNotFoundLocally):
            cache.delete("nothing")

    def test_put_block_bytes_verifies_hash(self, cache):
        with pytest.raises(IntegrityError):
            cache.put_block_bytes(hash_bytes(b"a"), b"b")

        block = cache.put_block_bytes(hash_bytes(b"a"), b"a")
        assert cache.has_block(block.hash)

    def test_verify_detects_corruption(self, cache):
        save_simple(cache)
        cache.block_path(hash_bytes(b"hello")).write_bytes(b"tampered")

        assert cache.verify("a1b2c3") == [hash_bytes(b"hello")]

    def test_resave_with_different_content_rejected(self, cache):
        save_simple(cache, "same", content=b"one")

        with pytest.raises(IntegrityError):
            save_simple(cache, "same", content=b"two")

    def test_small_snapshots_for(self, cache, tmp_path):
        site = tmp_path / "site"
        site.mkdir()
        save_simple(cache, "trimmed", small=True, source_path=str(site.resolve()))
        save_simple(cache, "full", content=b"x", source_path=str(site.resolve()))

        assert [e.id for e in cache.small_snapshots_for(site)] == ["trimmed"]

    def test_materialize(self, cache, tmp_path):
        with cache.staging("m") as staging:
            content = stage(staging, b"<?php\n")
            link = stage(staging, b"index.php")
            db = stage(staging, b'{"type":"table"}\n')
            manifest = Manifest(
                entries=[
                    ManifestEntry("index.php", content.hash, content.size, 0o100600),
                    ManifestEntry("alias.php", link.hash, link.size, SYMLINK),
                ],
                db_dump_hash=db.hash,
            )
            cache.save(make_snapshot(manifest, "m"), manifest, [content, link, db])

        out = tmp_path / "out"
        written = cache.materialize("m", out / "files", out / "database.ndjson")

        assert written == 2
        assert (out / "files" / "index.php").read_bytes() == b"<?php\n"
        assert os.readlink(out / "files" / "alias.php") == "index.php"
        assert (out / "database.ndjson").read_bytes() == b'{"type":"table"}\n'
        assert (os.stat(out / "files" / "index.php").st_mode & 0o777) == 0o600

    def test_materialize_refuses_writes_through_symlinked_directory(self, cache, tmp_path):
        outside = tmp_path / "outside"
        outside.mkdir()
        with cache.staging("m") as staging:
            content = stage(staging, b"<?php\n")
            link = stage(staging, str(outside).encode("utf-8"))
            manifest = Manifest(
                entries=[
                    ManifestEntry("out", link.hash, link.size, SYMLINK),
                    ManifestEntry("out/x.php", content.hash, content.size, REGULAR),
                ],
            )
            cache.save(make_snapshot(manifest, "m"), manifest, [content, link])

        with pytest.raises(IntegrityError, match="resolves outside"):
            cache.materialize("m", tmp_path / "restored")

        assert not (outside / "x.php").exists()


class TestCacheLock:
    """Tests for the lock file."""

    def test_timeout(self, tmp_path):
        lock_path = tmp_path / ".lock"
        lock_path.write_text("12345")

        lock = CacheLock(lock_path, timeout=0.1, stale_seconds=600)
        with pytest.raises(CacheLockTimeout):
            lock.acquire()

    def test_stale_lock_broken(self, tmp_path):
        lock_path = tmp_path / ".lock"
        lock_path.write_text("12345")
        old = time.time() - 3600
        os.utime(lock_path, (old, old))

        lock = CacheLock(lock_path, timeout=1.0, stale_seconds=60)
        with lock.hold():
            assert lock_path.read_text() == str(os.getpid())

        assert not lock_path.exists()

    def test_released_on_error(self, tmp_path):
        lock = CacheLock(tmp_path / ".lock")

        with pytest.raises(ValueError):
            with lock.hold():
                raise ValueError("x")

        assert not (tmp_path / ".lock").exists()
