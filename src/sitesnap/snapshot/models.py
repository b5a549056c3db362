"""
Core data models for site snapshots.

Defines the Snapshot record, its content Manifest, content blocks and the
option/credential objects passed into packaging.
"""

import json
import stat
import uuid
from dataclasses import dataclass, field
from datetime import datetime
from enum import Enum
from pathlib import Path
from typing import Any, Dict, Iterator, List, Optional

from .canonical import compute_manifest_hash


class SnapshotState(str, Enum):
    """Lifecycle state of a snapshot within create/push/pull."""
    CREATED = "created"
    PACKAGED = "packaged"
    LOCALLY_EXISTING = "locally_existing"
    FRESHLY_PACKAGED = "freshly_packaged"
    REGISTERING = "registering"
    PUSHED = "pushed"
    PUSH_FAILED = "push_failed"


class RuleSource(str, Enum):
    """Where an exclusion rule came from."""
    EXPLICIT = "explicit"
    UPLOADS = "uploads"


def new_snapshot_id() -> str:
    """Allocate a new snapshot identifier."""
    return uuid.uuid4().hex


def check_relative_path(path: str) -> None:
    """
    Reject manifest paths that could land outside the site root.

    Paths must be relative POSIX paths without empty, "." or ".." segments.

    Raises:
        ValueError: If the path is not a plain relative path
    """
    if not path or path.startswith("/") or "\x00" in path:
        raise ValueError(f"Unsafe manifest path: {path!r}")
    if any(part in ("", ".", "..") for part in path.split("/")):
        raise ValueError(f"Unsafe manifest path: {path!r}")


def _parse_datetime(value: Any) -> Optional[datetime]:
    if isinstance(value, str):
        return datetime.fromisoformat(value.replace("Z", "+00:00"))
    return value


@dataclass
class Author:
    """Person credited with creating a snapshot."""
    name: str = ""
    email: str = ""

    def to_dict(self) -> Dict[str, Any]:
        return {"name": self.name, "email": self.email}

    @classmethod
    def from_dict(cls, data: Optional[Dict[str, Any]]) -> "Author":
        if not data:
            return cls()
        return cls(name=data.get("name", ""), email=data.get("email", ""))


@dataclass
class DbCredentials:
    """
    Connection parameters for the site database.

    Attributes:
        name: Database name (for the sqlite driver, the database file path)
        host: Database host
        user: Database user
        password: Database password
        driver: 'sqlite', or an ODBC driver name used through pyodbc
        port: Optional port
    """
    name: str
    host: Optional[str] = None
    user: Optional[str] = None
    password: Optional[str] = None
    driver: str = "sqlite"
    port: Optional[int] = None

    def describe(self) -> str:
        """Human-readable location without the password."""
        if self.driver == "sqlite":
            return f"sqlite:{self.name}"
        location = self.host or "localhost"
        if self.port:
            location = f"{location}:{self.port}"
        return f"{self.driver}://{self.user or ''}@{location}/{self.name}"


@dataclass
class SnapshotOptions:
    """
    Options for creating a snapshot from a site.

    Attributes:
        path: Site root directory
        project: Project slug
        description: Human description
        db: Database credentials (None to snapshot files only)
        no_scrub: Skip personal data scrubbing (caller owns the consequence)
        small: Trim data to a small sample; alters the local database
        exclude: Explicit exclude patterns relative to the site root
        exclude_uploads: Also exclude the uploads directory
        repository: Repository name recorded on the snapshot
        include_files: Whether to package the file tree at all
    """
    path: Path
    project: str
    description: str
    db: Optional[DbCredentials] = None
    no_scrub: bool = False
    small: bool = False
    exclude: List[str] = field(default_factory=list)
    exclude_uploads: bool = False
    repository: Optional[str] = None
    include_files: bool = True


@dataclass(frozen=True)
class ExclusionRule:
    """A path pattern plus where it came from."""
    pattern: str
    source: RuleSource = RuleSource.EXPLICIT


@dataclass(frozen=True)
class ManifestEntry:
    """
    One file-tree entry of a snapshot.

    Attributes:
        path: POSIX path relative to the site root
        hash: SHA256 of the content (link target text for symlinks)
        size: Byte size of the content
        mode: Full st_mode, so the file type can be recovered
    """
    path: str
    hash: str
    size: int
    mode: int

    @property
    def is_symlink(self) -> bool:
        return stat.S_ISLNK(self.mode)

    @property
    def is_regular(self) -> bool:
        return stat.S_ISREG(self.mode)

    @property
    def is_special(self) -> bool:
        return not (self.is_symlink or self.is_regular)

    def to_dict(self) -> Dict[str, Any]:
        return {
            "path": self.path,
            "hash": self.hash,
            "size": self.size,
            "mode": self.mode,
        }

    @classmethod
    def from_dict(cls, data: Dict[str, Any]) -> "ManifestEntry":
        return cls(
            path=data["path"],
            hash=data["hash"],
            size=int(data["size"]),
            mode=int(data["mode"]),
        )


@dataclass
class Manifest:
    """
    Content manifest of a snapshot.

    Entries are kept sorted by path; paths are unique.
    """
    entries: List[ManifestEntry] = field(default_factory=list)
    db_dump_hash: Optional[str] = None

    def __post_init__(self):
        self.entries = sorted(self.entries, key=lambda e: e.path)
        seen = set()
        for entry in self.entries:
            check_relative_path(entry.path)
            if entry.path in seen:
                raise ValueError(f"Duplicate manifest path: {entry.path}")
            seen.add(entry.path)

    def __iter__(self) -> Iterator[ManifestEntry]:
        return iter(self.entries)

    def __len__(self) -> int:
        return len(self.entries)

    def paths(self) -> List[str]:
        return [e.path for e in self.entries]

    def get(self, path: str) -> Optional[ManifestEntry]:
        for entry in self.entries:
            if entry.path == path:
                return entry
        return None

    def block_hashes(self) -> List[str]:
        """Distinct block hashes referenced by this manifest (files and database)."""
        hashes = {e.hash for e in self.entries if not e.is_special}
        if self.db_dump_hash:
            hashes.add(self.db_dump_hash)
        return sorted(hashes)

    def files_size(self) -> int:
        return sum(e.size for e in self.entries)

    def path_hashes(self) -> Dict[str, str]:
        return {e.path: e.hash for e in self.entries}

    def content_hash(self) -> str:
        """Top-level content hash used for remote conflict detection."""
        return compute_manifest_hash(
            [e.to_dict() for e in self.entries],
            self.db_dump_hash,
        )

    def to_dict(self) -> Dict[str, Any]:
        return {
            "entries": [e.to_dict() for e in self.entries],
            "db_dump_hash": self.db_dump_hash,
            "content_hash": self.content_hash(),
        }

    @classmethod
    def from_dict(cls, data: Dict[str, Any]) -> "Manifest":
        return cls(
            entries=[ManifestEntry.from_dict(e) for e in data.get("entries", [])],
            db_dump_hash=data.get("db_dump_hash"),
        )

    def save(self, path: Path) -> None:
        """Save manifest to a JSON file."""
        with open(path, "w", encoding="utf-8") as f:
            json.dump(self.to_dict(), f, indent=2, ensure_ascii=False)

    @classmethod
    def load(cls, path: Path) -> "Manifest":
        with open(path, "r", encoding="utf-8") as f:
            return cls.from_dict(json.load(f))


@dataclass(frozen=True)
class ContentBlock:
    """
    Hash-addressed unit of packaged content.

    Attributes:
        hash: SHA256 of the bytes
        size: Byte size
        path: File currently holding the bytes (staging or cache)
    """
    hash: str
    size: int
    path: Path

    def read_bytes(self) -> bytes:
        return Path(self.path).read_bytes()


@dataclass
class Snapshot:
    """
    An identified package of a site's files and database at a point in time.

    Attributes:
        id: Unique identifier, immutable once allocated
        project: Project slug
        description: Human description
        created_at: When the snapshot was created (UTC)
        repository: Owning repository name
        scrubbed: Whether personal data was scrubbed from the database export
        small: Whether the snapshot was trimmed to a small sample
        size: Total bytes of file content plus database export
        manifest_hash: Top-level content hash of the manifest
        db_dump_hash: Block hash of the database export, if any
        author: Who created the snapshot
        contains_files: Whether the file tree was packaged
        contains_db: Whether the database was packaged
        table_prefix: Table prefix the scrub rules were applied with
        state: Local lifecycle state (not published remotely)
        pushed_to: Repositories the snapshot was registered with (local only)
        source_path: Site root it was captured from (local only)
    """
    id: str
    project: str
    description: str
    created_at: datetime
    repository: Optional[str] = None
    scrubbed: bool = True
    small: bool = False
    size: int = 0
    manifest_hash: str = ""
    db_dump_hash: Optional[str] = None
    author: Author = field(default_factory=Author)
    contains_files: bool = True
    contains_db: bool = False
    table_prefix: Optional[str] = None
    schema_version: int = 1
    state: SnapshotState = SnapshotState.CREATED
    pushed_to: List[str] = field(default_factory=list)
    source_path: Optional[str] = None

    def metadata(self) -> Dict[str, Any]:
        """Metadata published to a repository (no local-only fields)."""
        return {
            "id": self.id,
            "project": self.project,
            "description": self.description,
            "created_at": self.created_at.isoformat() if self.created_at else None,
            "repository": self.repository,
            "scrubbed": self.scrubbed,
            "small": self.small,
            "size": self.size,
            "manifest_hash": self.manifest_hash,
            "db_dump_hash": self.db_dump_hash,
            "author": self.author.to_dict(),
            "contains_files": self.contains_files,
            "contains_db": self.contains_db,
            "table_prefix": self.table_prefix,
            "schema_version": self.schema_version,
        }

    def to_dict(self) -> Dict[str, Any]:
        """Full record, including the local section."""
        data = self.metadata()
        data["local"] = {
            "state": self.state.value,
            "pushed_to": list(self.pushed_to),
            "source_path": self.source_path,
        }
        return data

    @classmethod
    def from_dict(cls, data: Dict[str, Any]) -> "Snapshot":
        local = data.get("local") or {}
        return cls(
            id=data["id"],
            project=data["project"],
            description=data.get("description", ""),
            created_at=_parse_datetime(data.get("created_at")),
            repository=data.get("repository"),
            scrubbed=data.get("scrubbed", True),
            small=data.get("small", False),
            size=data.get("size", 0),
            manifest_hash=data.get("manifest_hash", ""),
            db_dump_hash=data.get("db_dump_hash"),
            author=Author.from_dict(data.get("author")),
            contains_files=data.get("contains_files", True),
            contains_db=data.get("contains_db", False),
            table_prefix=data.get("table_prefix"),
            schema_version=data.get("schema_version", 1),
            state=SnapshotState(local.get("state", SnapshotState.CREATED.value)),
            pushed_to=list(local.get("pushed_to", [])),
            source_path=local.get("source_path"),
        )
