"""
Snapshot module for packaging, caching and publishing site snapshots.

This module provides:
- Snapshot, Manifest and ContentBlock models
- Canonical hashing: stable, platform-independent content hashes
- Exclusion filtering of the site file tree
- Packager, Scrubber and database export (sitesnap.snapshot.packager, .scrub, .db_export)
- LocalCache and repository clients (sitesnap.snapshot.cache, .repository)
- SnapshotOrchestrator: create, push and pull (sitesnap.snapshot.orchestrator)
- Pack/unpack: offline archives with optional encryption (sitesnap.snapshot.pack)
"""

from .models import (
    Author,
    ContentBlock,
    DbCredentials,
    Manifest,
    ManifestEntry,
    Snapshot,
    SnapshotOptions,
    SnapshotState,
)
from .canonical import canonicalize, compute_manifest_hash
from .exclusion import ExclusionFilter

__all__ = [
    "Author",
    "ContentBlock",
    "DbCredentials",
    "Manifest",
    "ManifestEntry",
    "Snapshot",
    "SnapshotOptions",
    "SnapshotState",
    "canonicalize",
    "compute_manifest_hash",
    "ExclusionFilter",
]
