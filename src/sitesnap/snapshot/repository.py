"""
Repository clients: where snapshots are published and pulled from.

A repository stores content blocks by hash and a metadata record per
snapshot id. Registration of an id is single-writer-wins: the first writer
creates the record, later writers either match its manifest hash (no-op) or
get RemoteConflict.
"""

import errno
import json
import logging
import os
import uuid
from abc import ABC, abstractmethod
from pathlib import Path
from typing import Any, Callable, Dict, List, Optional

from ..config.config_loader import RepositoryRecord
from ..core.exceptions import (
    IntegrityError,
    NetworkError,
    RemoteConflict,
    RepositoryNotConfigured,
    SnapshotNotFoundRemotely,
)
from .canonical import hash_bytes

logger = logging.getLogger(__name__)


class RepositoryClient(ABC):
    """
    Abstract base class for snapshot repositories.

    Transport failures that may succeed on retry raise NetworkError.
    """

    def __init__(self, name: str):
        self.name = name

    @abstractmethod
    def exists(self, snapshot_id: str) -> bool:
        pass

    @abstractmethod
    def has_block(self, block_hash: str) -> bool:
        pass

    @abstractmethod
    def put_block(self, block_hash: str, data: bytes) -> bool:
        """
        Upload a block; idempotent.

        Returns:
            True if the block was written, False if it was already present

        Raises:
            IntegrityError: If data does not hash to block_hash
        """
        pass

    @abstractmethod
    def register(self, snapshot_id: str, metadata: Dict[str, Any]) -> bool:
        """
        Atomically register snapshot metadata.

        Returns:
            True if this call created the record, False if an identical
            record (same manifest_hash) already existed

        Raises:
            RemoteConflict: If the id exists with a different manifest_hash
        """
        pass

    @abstractmethod
    def fetch_metadata(self, snapshot_id: str) -> Dict[str, Any]:
        """
        Raises:
            SnapshotNotFoundRemotely: If the id is not registered
        """
        pass

    @abstractmethod
    def fetch_block(self, block_hash: str) -> bytes:
        """
        Raises:
            IntegrityError: If the block is missing or its content does not match
        """
        pass

    @abstractmethod
    def search(self, project: Optional[str] = None) -> List[Dict[str, Any]]:
        """Metadata of registered snapshots, optionally for one project."""
        pass

    def __repr__(self) -> str:
        return f"{type(self).__name__}({self.name!r})"


class DirectoryRepository(RepositoryClient):
    """
    Repository over a shared directory (local disk, NFS or SMB mount).

    Layout:
        {root}/blocks/ab/abcdef...
        {root}/snapshots/{id}.json
    """

    def __init__(self, name: str, root: Path):
        super().__init__(name)
        self.root = Path(root)
        self.blocks_dir = self.root / "blocks"
        self.snapshots_dir = self.root / "snapshots"

    def _ensure_layout(self) -> None:
        try:
            self.blocks_dir.mkdir(parents=True, exist_ok=True)
            self.snapshots_dir.mkdir(parents=True, exist_ok=True)
        except OSError as e:
            raise self._network_error("prepare", e) from e

    def _network_error(self, operation: str, error: OSError) -> NetworkError:
        return NetworkError(
            f"Repository I/O failed at {self.root}: {error}",
            operation=operation,
            repository=self.name,
        )

    def _block_path(self, block_hash: str) -> Path:
        return self.blocks_dir / block_hash[:2] / block_hash

    def _record_path(self, snapshot_id: str) -> Path:
        if not snapshot_id or "/" in snapshot_id or "\\" in snapshot_id or snapshot_id.startswith("."):
            raise SnapshotNotFoundRemotely(
                f"Invalid snapshot id: {snapshot_id!r}", repository=self.name
            )
        return self.snapshots_dir / f"{snapshot_id}.json"

    def exists(self, snapshot_id: str) -> bool:
        try:
            return self._record_path(snapshot_id).is_file()
        except OSError as e:
            raise self._network_error("exists", e) from e

    def has_block(self, block_hash: str) -> bool:
        try:
            return self._block_path(block_hash).is_file()
        except OSError as e:
            raise self._network_error("has_block", e) from e

    def put_block(self, block_hash: str, data: bytes) -> bool:
        actual = hash_bytes(data)
        if actual != block_hash:
            raise IntegrityError(
                f"Refusing to upload block: expected {block_hash}, got {actual}",
                operation="put_block",
                repository=self.name,
            )
        target = self._block_path(block_hash)
        if target.is_file():
            return False

        self._ensure_layout()
        tmp = target.parent / f".{block_hash}.tmp-{uuid.uuid4().hex[:8]}"
        try:
            target.parent.mkdir(parents=True, exist_ok=True)
            with open(tmp, "wb") as f:
                f.write(data)
                f.flush()
                os.fsync(f.fileno())
            os.replace(tmp, target)
        except OSError as e:
            raise self._network_error("put_block", e) from e
        finally:
            if tmp.exists():
                tmp.unlink()
        logger.debug(f"Uploaded block {block_hash[:12]} ({len(data)} bytes) to {self.name}")
        return True

    def register(self, snapshot_id: str, metadata: Dict[str, Any]) -> bool:
        self._ensure_layout()
        target = self._record_path(snapshot_id)
        tmp = self.snapshots_dir / f".{snapshot_id}.tmp-{uuid.uuid4().hex[:8]}"
        payload = json.dumps(metadata, indent=2, ensure_ascii=False, sort_keys=True).encode("utf-8")

        try:
            with open(tmp, "wb") as f:
                f.write(payload)
                f.flush()
                os.fsync(f.fileno())
            try:
                # link() fails if the target exists: first writer wins
                os.link(tmp, target)
                created = True
            except FileExistsError:
                created = False
        except OSError as e:
            if e.errno == errno.EEXIST:
                created = False
            else:
                raise self._network_error("register", e) from e
        finally:
            if tmp.exists():
                tmp.unlink()

        if created:
            logger.info(f"Registered snapshot {snapshot_id} with {self.name}")
            return True

        existing = self.fetch_metadata(snapshot_id)
        local_hash = metadata.get("manifest_hash")
        remote_hash = existing.get("manifest_hash")
        if remote_hash != local_hash:
            raise RemoteConflict(
                "Snapshot id already registered with different content",
                local_hash=local_hash,
                remote_hash=remote_hash,
                operation="register",
                snapshot_id=snapshot_id,
                repository=self.name,
            )
        logger.info(f"Snapshot {snapshot_id} already registered with {self.name}")
        return False

    def fetch_metadata(self, snapshot_id: str) -> Dict[str, Any]:
        path = self._record_path(snapshot_id)
        try:
            with open(path, "r", encoding="utf-8") as f:
                return json.load(f)
        except FileNotFoundError:
            raise SnapshotNotFoundRemotely(
                "Snapshot not found in repository",
                operation="fetch_metadata",
                snapshot_id=snapshot_id,
                repository=self.name,
            )
        except ValueError as e:
            raise IntegrityError(
                f"Corrupt metadata record: {e}",
                operation="fetch_metadata",
                snapshot_id=snapshot_id,
                repository=self.name,
            ) from e
        except OSError as e:
            raise self._network_error("fetch_metadata", e) from e

    def fetch_block(self, block_hash: str) -> bytes:
        try:
            data = self._block_path(block_hash).read_bytes()
        except FileNotFoundError:
            raise IntegrityError(
                f"Block {block_hash} missing from repository",
                operation="fetch_block",
                repository=self.name,
            )
        except OSError as e:
            raise self._network_error("fetch_block", e) from e

        actual = hash_bytes(data)
        if actual != block_hash:
            raise IntegrityError(
                f"Block hash mismatch: expected {block_hash}, got {actual}",
                operation="fetch_block",
                repository=self.name,
            )
        return data

    def search(self, project: Optional[str] = None) -> List[Dict[str, Any]]:
        if not self.snapshots_dir.is_dir():
            return []
        results = []
        try:
            paths = sorted(self.snapshots_dir.glob("*.json"))
        except OSError as e:
            raise self._network_error("search", e) from e
        for path in paths:
            try:
                with open(path, "r", encoding="utf-8") as f:
                    record = json.load(f)
            except ValueError as e:
                logger.warning(f"Skipping unreadable record {path.name}: {e}")
                continue
            except OSError as e:
                raise self._network_error("search", e) from e
            if project is None or record.get("project") == project:
                results.append(record)
        results.sort(key=lambda r: (r.get("created_at") or "", r.get("id", "")))
        return results


RepositoryFactory = Callable[[RepositoryRecord], RepositoryClient]

_REPOSITORY_TYPES: Dict[str, RepositoryFactory] = {}


def register_repository_type(type_name: str, factory: RepositoryFactory) -> None:
    """Make a repository type available to build_repository()."""
    _REPOSITORY_TYPES[type_name] = factory


def _directory_factory(record: RepositoryRecord) -> RepositoryClient:
    if not record.path:
        raise RepositoryNotConfigured(
            f"Repository '{record.name}' has no path", repository=record.name
        )
    return DirectoryRepository(record.name, Path(record.path).expanduser())


register_repository_type("directory", _directory_factory)


def build_repository(record: RepositoryRecord) -> RepositoryClient:
    """
    Build a client for a configured repository.

    Raises:
        RepositoryNotConfigured: If the repository type is unknown
    """
    factory = _REPOSITORY_TYPES.get(record.type)
    if factory is None:
        raise RepositoryNotConfigured(
            f"Unknown repository type '{record.type}'", repository=record.name
        )
    return factory(record)
