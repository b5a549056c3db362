"""
Local snapshot cache.

Directory structure:
    {root}/
        index.jsonl                 one line per complete snapshot
        .lock                       exclusive writer lock
        blocks/ab/abcdef...         content blocks shared across snapshots
        snapshots/{id}/meta.json
        snapshots/{id}/manifest.json
        staging/{id}-{rand}/        packaging output in progress

A snapshot directory only ever appears through a rename of a fully written
temp directory, so an existing directory is always a complete entry.
"""

import contextlib
import errno
import json
import logging
import os
import re
import shutil
import stat
import time
import uuid
from dataclasses import dataclass
from pathlib import Path
from typing import Any, Dict, Iterable, Iterator, List, Optional

from ..core.exceptions import CacheLockTimeout, IntegrityError, SnapshotNotFoundLocally
from .canonical import hash_bytes, hash_file
from .models import ContentBlock, Manifest, Snapshot, SnapshotState

logger = logging.getLogger(__name__)

_ID_PATTERN = re.compile(r"^[A-Za-z0-9_-]+$")
_HASH_PATTERN = re.compile(r"^[0-9a-f]{64}$")


def _atomic_write_bytes(path: Path, data: bytes) -> None:
    """Write a file via temp file + os.replace in the same directory."""
    path.parent.mkdir(parents=True, exist_ok=True)
    tmp = path.parent / f".{path.name}.tmp-{uuid.uuid4().hex[:8]}"
    try:
        with open(tmp, "wb") as f:
            f.write(data)
            f.flush()
            os.fsync(f.fileno())
        os.replace(tmp, path)
    finally:
        if tmp.exists():
            tmp.unlink()


def _atomic_write_json(path: Path, data: Any) -> None:
    _atomic_write_bytes(path, json.dumps(data, indent=2, ensure_ascii=False).encode("utf-8"))


class CacheLock:
    """
    Exclusive inter-process lock backed by an O_CREAT|O_EXCL lock file.

    A lock file older than ``stale_seconds`` is assumed to belong to a dead
    process and is broken.
    """

    def __init__(self, path: Path, timeout: float = 30.0, stale_seconds: float = 600.0):
        self.path = Path(path)
        self.timeout = timeout
        self.stale_seconds = stale_seconds

    @contextlib.contextmanager
    def hold(self) -> Iterator[None]:
        self.acquire()
        try:
            yield
        finally:
            self.release()

    def acquire(self) -> None:
        self.path.parent.mkdir(parents=True, exist_ok=True)
        start = time.monotonic()
        while True:
            try:
                fd = os.open(str(self.path), os.O_CREAT | os.O_EXCL | os.O_WRONLY, 0o640)
                os.write(fd, str(os.getpid()).encode("utf-8"))
                os.close(fd)
                logger.debug(f"Acquired cache lock {self.path}")
                return
            except OSError as e:
                if e.errno != errno.EEXIST:
                    raise
            self._break_if_stale()
            if time.monotonic() - start > self.timeout:
                raise CacheLockTimeout(
                    f"Timed out after {self.timeout:.0f}s waiting for cache lock {self.path}",
                    operation="lock",
                )
            time.sleep(0.05)

    def _break_if_stale(self) -> None:
        try:
            age = time.time() - self.path.stat().st_mtime
        except FileNotFoundError:
            return
        if age > self.stale_seconds:
            logger.warning(f"Breaking stale cache lock {self.path} ({age:.0f}s old)")
            with contextlib.suppress(FileNotFoundError):
                self.path.unlink()

    def release(self) -> None:
        with contextlib.suppress(FileNotFoundError):
            self.path.unlink()
            logger.debug(f"Released cache lock {self.path}")


@dataclass
class CacheIndexEntry:
    """Entry in the cache index: enough to list snapshots without opening them."""
    id: str
    project: str
    description: str
    created_at: str
    state: str
    repository: Optional[str] = None
    small: bool = False
    size: int = 0
    source_path: Optional[str] = None

    def to_dict(self) -> Dict[str, Any]:
        return {
            "id": self.id,
            "project": self.project,
            "description": self.description,
            "created_at": self.created_at,
            "state": self.state,
            "repository": self.repository,
            "small": self.small,
            "size": self.size,
            "source_path": self.source_path,
        }

    @classmethod
    def from_dict(cls, data: Dict[str, Any]) -> "CacheIndexEntry":
        return cls(
            id=data["id"],
            project=data.get("project", ""),
            description=data.get("description", ""),
            created_at=data.get("created_at", ""),
            state=data.get("state", SnapshotState.PACKAGED.value),
            repository=data.get("repository"),
            small=data.get("small", False),
            size=data.get("size", 0),
            source_path=data.get("source_path"),
        )

    @classmethod
    def from_snapshot(cls, snapshot: Snapshot) -> "CacheIndexEntry":
        return cls(
            id=snapshot.id,
            project=snapshot.project,
            description=snapshot.description,
            created_at=snapshot.created_at.isoformat() if snapshot.created_at else "",
            state=snapshot.state.value,
            repository=snapshot.repository,
            small=snapshot.small,
            size=snapshot.size,
            source_path=snapshot.source_path,
        )


class CacheIndex:
    """
    In-memory index of cached snapshots, backed by a JSONL file.

    Callers must hold the cache lock around load/modify/save sequences.
    """

    def __init__(self, path: Path):
        self.path = Path(path)
        self._entries: Dict[str, CacheIndexEntry] = {}

    def load(self) -> None:
        self._entries = {}
        if not self.path.exists():
            logger.debug(f"Index file does not exist: {self.path}")
            return

        with open(self.path, "r", encoding="utf-8") as f:
            for line_num, line in enumerate(f, 1):
                line = line.strip()
                if not line:
                    continue
                try:
                    entry = CacheIndexEntry.from_dict(json.loads(line))
                except (ValueError, KeyError) as e:
                    logger.warning(f"Skipping bad index entry at line {line_num}: {e}")
                    continue
                self._entries[entry.id] = entry

    def save(self) -> None:
        lines = [
            json.dumps(entry.to_dict(), ensure_ascii=False) + "\n"
            for entry in sorted(self._entries.values(), key=lambda e: (e.created_at, e.id))
        ]
        _atomic_write_bytes(self.path, "".join(lines).encode("utf-8"))

    def put(self, entry: CacheIndexEntry) -> None:
        self._entries[entry.id] = entry

    def remove(self, snapshot_id: str) -> None:
        self._entries.pop(snapshot_id, None)

    def get(self, snapshot_id: str) -> Optional[CacheIndexEntry]:
        return self._entries.get(snapshot_id)

    def entries(self) -> List[CacheIndexEntry]:
        return sorted(self._entries.values(), key=lambda e: (e.created_at, e.id))


class LocalCache:
    """
    Durable on-disk store of snapshots and their content blocks.
    """

    def __init__(
        self,
        root: Path,
        lock_timeout: float = 30.0,
        stale_lock_seconds: float = 600.0,
    ):
        """
        Initialize the cache.

        Args:
            root: Cache root directory (created if missing)
            lock_timeout: Seconds to wait for the writer lock
            stale_lock_seconds: Age after which a lock file is considered abandoned
        """
        self.root = Path(root)
        self.blocks_dir = self.root / "blocks"
        self.snapshots_dir = self.root / "snapshots"
        self.staging_dir = self.root / "staging"
        for directory in (self.blocks_dir, self.snapshots_dir, self.staging_dir):
            directory.mkdir(parents=True, exist_ok=True)

        self.lock = CacheLock(self.root / ".lock", timeout=lock_timeout, stale_seconds=stale_lock_seconds)
        self.index = CacheIndex(self.root / "index.jsonl")

    # ------------------------------------------------------------------
    # Blocks
    # ------------------------------------------------------------------

    def block_path(self, block_hash: str) -> Path:
        if not _HASH_PATTERN.match(block_hash or ""):
            raise IntegrityError(f"Invalid block hash: {block_hash!r}")
        return self.blocks_dir / block_hash[:2] / block_hash

    def has_block(self, block_hash: str) -> bool:
        return self.block_path(block_hash).is_file()

    def get_block(self, block_hash: str) -> ContentBlock:
        path = self.block_path(block_hash)
        if not path.is_file():
            raise IntegrityError(f"Block {block_hash} missing from cache")
        return ContentBlock(hash=block_hash, size=path.stat().st_size, path=path)

    def put_block_bytes(self, block_hash: str, data: bytes) -> ContentBlock:
        """Store bytes under their hash, verifying the hash first."""
        actual = hash_bytes(data)
        if actual != block_hash:
            raise IntegrityError(f"Block hash mismatch: expected {block_hash}, got {actual}")
        path = self.block_path(block_hash)
        if not path.is_file():
            _atomic_write_bytes(path, data)
        return ContentBlock(hash=block_hash, size=len(data), path=path)

    def _adopt_block(self, block: ContentBlock) -> None:
        """Move (or copy) a staged block into the block store."""
        target = self.block_path(block.hash)
        if target.is_file():
            return
        target.parent.mkdir(parents=True, exist_ok=True)
        source = Path(block.path)
        if self._is_staged(source):
            os.replace(source, target)
            return
        tmp = target.parent / f".{target.name}.tmp-{uuid.uuid4().hex[:8]}"
        try:
            shutil.copyfile(source, tmp)
            os.replace(tmp, target)
        finally:
            if tmp.exists():
                tmp.unlink()

    def _is_staged(self, path: Path) -> bool:
        try:
            path.resolve().relative_to(self.staging_dir.resolve())
        except ValueError:
            return False
        return True

    # ------------------------------------------------------------------
    # Staging
    # ------------------------------------------------------------------

    @contextlib.contextmanager
    def staging(self, snapshot_id: str) -> Iterator[Path]:
        """
        Yield a private staging directory for packaging output.

        The directory is removed afterwards whether packaging succeeded
        (blocks were adopted by save()) or failed/was cancelled.
        """
        self._snapshot_dir(snapshot_id)
        path = self.staging_dir / f"{snapshot_id}-{uuid.uuid4().hex[:8]}"
        path.mkdir(parents=True)
        try:
            yield path
        finally:
            shutil.rmtree(path, ignore_errors=True)

    # ------------------------------------------------------------------
    # Snapshots
    # ------------------------------------------------------------------

    def _snapshot_dir(self, snapshot_id: str) -> Path:
        if not _ID_PATTERN.match(snapshot_id or ""):
            raise SnapshotNotFoundLocally(
                f"Invalid snapshot id: {snapshot_id!r}", snapshot_id=snapshot_id
            )
        return self.snapshots_dir / snapshot_id

    def is_cached(self, snapshot_id: str) -> bool:
        if not _ID_PATTERN.match(snapshot_id or ""):
            return False
        return (self.snapshots_dir / snapshot_id / "meta.json").is_file()

    def save(self, snapshot: Snapshot, manifest: Manifest, blocks: Iterable[ContentBlock]) -> None:
        """
        Persist a snapshot atomically.

        Blocks are adopted first; the snapshot directory is then written to a
        temp directory and renamed into place.

        Raises:
            IntegrityError: If a referenced block is missing, or the id is
                already cached with different content
        """
        snapshot_dir = self._snapshot_dir(snapshot.id)

        with self.lock.hold():
            for block in blocks:
                self._adopt_block(block)

            missing = [h for h in manifest.block_hashes() if not self.has_block(h)]
            if missing:
                raise IntegrityError(
                    f"{len(missing)} block(s) missing for snapshot, e.g. {missing[0]}",
                    operation="save",
                    snapshot_id=snapshot.id,
                )

            if snapshot_dir.exists():
                existing = Manifest.load(snapshot_dir / "manifest.json")
                if existing.content_hash() != manifest.content_hash():
                    raise IntegrityError(
                        "Snapshot id already cached with different content",
                        operation="save",
                        snapshot_id=snapshot.id,
                    )
                _atomic_write_json(snapshot_dir / "meta.json", snapshot.to_dict())
            else:
                tmp_dir = self.snapshots_dir / f".tmp-{snapshot.id}-{uuid.uuid4().hex[:8]}"
                tmp_dir.mkdir()
                try:
                    manifest.save(tmp_dir / "manifest.json")
                    _atomic_write_json(tmp_dir / "meta.json", snapshot.to_dict())
                    os.rename(tmp_dir, snapshot_dir)
                finally:
                    if tmp_dir.exists():
                        shutil.rmtree(tmp_dir, ignore_errors=True)

            self.index.load()
            self.index.put(CacheIndexEntry.from_snapshot(snapshot))
            self.index.save()

        logger.info(f"Cached snapshot {snapshot.id} ({len(manifest)} files)")

    def load(self, snapshot_id: str) -> Snapshot:
        meta_path = self._snapshot_dir(snapshot_id) / "meta.json"
        if not meta_path.is_file():
            raise SnapshotNotFoundLocally(
                "Snapshot not found locally.", operation="load", snapshot_id=snapshot_id
            )
        with open(meta_path, "r", encoding="utf-8") as f:
            return Snapshot.from_dict(json.load(f))

    def load_manifest(self, snapshot_id: str) -> Manifest:
        manifest_path = self._snapshot_dir(snapshot_id) / "manifest.json"
        if not manifest_path.is_file():
            raise SnapshotNotFoundLocally(
                "Snapshot not found locally.", operation="load", snapshot_id=snapshot_id
            )
        return Manifest.load(manifest_path)

    def mark_pushed(self, snapshot_id: str, repository: str) -> Snapshot:
        """Record a successful registration with a repository."""
        with self.lock.hold():
            snapshot = self.load(snapshot_id)
            snapshot.state = SnapshotState.PUSHED
            snapshot.repository = repository
            if repository not in snapshot.pushed_to:
                snapshot.pushed_to.append(repository)
            _atomic_write_json(self._snapshot_dir(snapshot_id) / "meta.json", snapshot.to_dict())

            self.index.load()
            self.index.put(CacheIndexEntry.from_snapshot(snapshot))
            self.index.save()
        return snapshot

    def list_snapshots(self) -> List[CacheIndexEntry]:
        self.index.load()
        return self.index.entries()

    def rebuild_index(self) -> int:
        """Rebuild index.jsonl from the snapshot directories."""
        with self.lock.hold():
            self.index = CacheIndex(self.index.path)
            for meta_path in sorted(self.snapshots_dir.glob("*/meta.json")):
                if meta_path.parent.name.startswith("."):
                    continue
                with open(meta_path, "r", encoding="utf-8") as f:
                    snapshot = Snapshot.from_dict(json.load(f))
                self.index.put(CacheIndexEntry.from_snapshot(snapshot))
            self.index.save()
            return len(self.index.entries())

    def delete(self, snapshot_id: str) -> int:
        """
        Delete a cached snapshot and any blocks no longer referenced.

        Returns:
            Number of blocks removed
        """
        snapshot_dir = self._snapshot_dir(snapshot_id)
        with self.lock.hold():
            if not snapshot_dir.exists():
                raise SnapshotNotFoundLocally(
                    "Snapshot not found locally.", operation="delete", snapshot_id=snapshot_id
                )
            trash = self.snapshots_dir / f".trash-{snapshot_id}-{uuid.uuid4().hex[:8]}"
            os.rename(snapshot_dir, trash)
            shutil.rmtree(trash, ignore_errors=True)

            self.index.load()
            self.index.remove(snapshot_id)
            self.index.save()

            removed = self._prune_blocks()

        logger.info(f"Deleted cached snapshot {snapshot_id} ({removed} unreferenced blocks removed)")
        return removed

    def _prune_blocks(self) -> int:
        referenced = set()
        for manifest_path in self.snapshots_dir.glob("*/manifest.json"):
            referenced.update(Manifest.load(manifest_path).block_hashes())
        removed = 0
        for block_file in self.blocks_dir.glob("*/*"):
            if block_file.name.startswith("."):
                continue
            if block_file.name not in referenced:
                block_file.unlink()
                removed += 1
        return removed

    def verify(self, snapshot_id: str) -> List[str]:
        """Return hashes of blocks whose content no longer matches."""
        manifest = self.load_manifest(snapshot_id)
        corrupt = []
        for block_hash in manifest.block_hashes():
            path = self.block_path(block_hash)
            if not path.is_file() or hash_file(path) != block_hash:
                corrupt.append(block_hash)
        return corrupt

    def small_snapshots_for(self, site_path: Path) -> List[CacheIndexEntry]:
        """Cached small snapshots that trimmed the database of a given site."""
        key = str(Path(site_path).resolve())
        return [e for e in self.list_snapshots() if e.small and e.source_path == key]

    def materialize(
        self,
        snapshot_id: str,
        files_dest: Path,
        db_dest: Optional[Path] = None,
    ) -> int:
        """
        Rebuild a snapshot's file tree (and optionally its database export).

        Args:
            snapshot_id: Cached snapshot id
            files_dest: Directory to write the file tree into
            db_dest: File to write the database export to

        Returns:
            Number of manifest entries written
        """
        manifest = self.load_manifest(snapshot_id)
        files_dest = Path(files_dest)
        files_dest.mkdir(parents=True, exist_ok=True)
        root = os.path.realpath(files_dest)

        written = 0
        for entry in manifest:
            target = files_dest / entry.path
            # an earlier symlink entry must not redirect later entries outside the tree
            parent = os.path.realpath(target.parent)
            if os.path.commonpath([root, parent]) != root:
                raise IntegrityError(
                    f"Entry {entry.path} resolves outside {files_dest}",
                    operation="materialize",
                    snapshot_id=snapshot_id,
                )
            target.parent.mkdir(parents=True, exist_ok=True)
            if entry.is_symlink:
                link_target = self.block_path(entry.hash).read_bytes().decode("utf-8", errors="surrogateescape")
                if target.is_symlink() or target.exists():
                    target.unlink()
                os.symlink(link_target, target)
            elif entry.is_regular:
                if target.is_symlink():
                    target.unlink()
                shutil.copyfile(self.block_path(entry.hash), target)
                os.chmod(target, stat.S_IMODE(entry.mode))
            else:
                logger.warning(f"Not recreating special file {entry.path}")
                continue
            written += 1

        if db_dest is not None and manifest.db_dump_hash:
            db_dest = Path(db_dest)
            db_dest.parent.mkdir(parents=True, exist_ok=True)
            shutil.copyfile(self.block_path(manifest.db_dump_hash), db_dest)

        return written
