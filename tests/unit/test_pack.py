"""
Unit tests for snapshot archive pack/unpack.
"""

import json
import zipfile

import pytest

from sitesnap.core.exceptions import IntegrityError, PackagingError
from sitesnap.snapshot.cache import LocalCache
from sitesnap.snapshot.models import SnapshotOptions, SnapshotState
from sitesnap.snapshot.pack import SnapshotPacker, SnapshotUnpacker, get_encryption_key


@pytest.fixture
def packed_snapshot(orchestrator, site_tree):
    options = SnapshotOptions(path=site_tree, project="myblog", description="Archive me")
    return orchestrator.create(options)


class TestSnapshotPacker:
    """Tests for SnapshotPacker."""

    def test_archive_contents(self, cache, packed_snapshot, tmp_path):
        archive = SnapshotPacker(cache, packed_snapshot.id).pack(tmp_path / "out" / "snap")

        assert archive.suffix == ".zip"
        with zipfile.ZipFile(archive) as zf:
            names = set(zf.namelist())
            meta = json.loads(zf.read("meta.json"))
            pack_meta = json.loads(zf.read("_pack_meta.json"))

        manifest = cache.load_manifest(packed_snapshot.id)
        assert {"meta.json", "manifest.json", "_pack_meta.json"} <= names
        assert {f"blocks/{h}" for h in manifest.block_hashes()} <= names
        assert meta["id"] == packed_snapshot.id
        assert "local" not in meta
        assert pack_meta["encrypted"] is False

    def test_unpack_into_fresh_cache(self, cache, packed_snapshot, tmp_path):
        archive = SnapshotPacker(cache, packed_snapshot.id).pack(tmp_path / "snap.zip")
        other = LocalCache(tmp_path / "other")

        snapshot = SnapshotUnpacker(archive).unpack(other)

        assert snapshot.id == packed_snapshot.id
        assert other.load(snapshot.id).state == SnapshotState.LOCALLY_EXISTING
        assert other.load_manifest(snapshot.id).path_hashes() == cache.load_manifest(snapshot.id).path_hashes()
        assert other.verify(snapshot.id) == []

    def test_encrypted_round_trip(self, cache, packed_snapshot, tmp_path):
        archive = SnapshotPacker(cache, packed_snapshot.id, encrypt=True, encryption_key=b"passphrase").pack(
            tmp_path / "snap.zip"
        )

        assert archive.name == "snap.zip.enc"
        assert not zipfile.is_zipfile(archive)

        other = LocalCache(tmp_path / "other")
        snapshot = SnapshotUnpacker(archive, decryption_key=b"passphrase").unpack(other)
        assert other.is_cached(snapshot.id)

    def test_wrong_key(self, cache, packed_snapshot, tmp_path):
        archive = SnapshotPacker(cache, packed_snapshot.id, encrypt=True, encryption_key=b"right").pack(
            tmp_path / "snap.zip"
        )

        with pytest.raises(IntegrityError):
            SnapshotUnpacker(archive, decryption_key=b"wrong").unpack(LocalCache(tmp_path / "other"))

    def test_encrypt_requires_key(self, cache, packed_snapshot):
        with pytest.raises(PackagingError):
            SnapshotPacker(cache, packed_snapshot.id, encrypt=True)

    def test_missing_block_in_archive(self, cache, packed_snapshot, tmp_path):
        archive = SnapshotPacker(cache, packed_snapshot.id).pack(tmp_path / "snap.zip")
        stripped = tmp_path / "stripped.zip"
        with zipfile.ZipFile(archive) as src, zipfile.ZipFile(stripped, "w") as dst:
            dropped = False
            for name in src.namelist():
                if name.startswith("blocks/") and not dropped:
                    dropped = True
                    continue
                dst.writestr(name, src.read(name))

        other = LocalCache(tmp_path / "other")
        with pytest.raises(IntegrityError):
            SnapshotUnpacker(stripped).unpack(other)
        assert not other.is_cached(packed_snapshot.id)

    def test_missing_archive(self, tmp_path):
        with pytest.raises(PackagingError):
            SnapshotUnpacker(tmp_path / "nope.zip")


class TestGetEncryptionKey:
    """Tests for get_encryption_key."""

    def test_from_env(self, monkeypatch):
        monkeypatch.setenv("SITESNAP_ENCRYPTION_KEY", "s3cret")

        assert get_encryption_key() == b"s3cret"

    def test_from_file(self, tmp_path):
        key_file = tmp_path / "key"
        key_file.write_bytes(b"filekey\n")

        assert get_encryption_key("file", key_file_path=str(key_file)) == b"filekey"

    def test_absent(self):
        assert get_encryption_key() is None
