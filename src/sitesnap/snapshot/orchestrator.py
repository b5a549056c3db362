"""
Snapshot orchestrator: create, push and pull.

State flow of a push:

    created -> packaged -> (locally_existing | freshly_packaged)
            -> registering -> pushed

push_failed is reachable from any network step; re-running push on the same
id resumes from block upload (blocks already in the repository are skipped).
"""

import logging
import time
from concurrent.futures import ThreadPoolExecutor
from dataclasses import dataclass, field
from datetime import datetime, timezone
from pathlib import Path
from typing import Any, Callable, Dict, List, Optional

from ..core.exceptions import (
    IntegrityError,
    NetworkError,
    RemoteConflict,
    RepositoryNotConfigured,
    SitesnapError,
    ValidationError,
)
from ..core.logging import SnapshotLogAdapter
from ..core.retry import RetryConfig, calculate_delay, retry_with_backoff
from ..validation import validate_description, validate_slug
from .cache import LocalCache
from .canonical import hash_bytes
from .models import (
    Author,
    ContentBlock,
    Manifest,
    Snapshot,
    SnapshotOptions,
    SnapshotState,
    new_snapshot_id,
)
from .packager import Packager
from .repository import RepositoryClient

logger = logging.getLogger(__name__)

_NETWORK_STATES = (
    SnapshotState.LOCALLY_EXISTING,
    SnapshotState.FRESHLY_PACKAGED,
    SnapshotState.REGISTERING,
)


@dataclass
class PushReport:
    """Report of a push operation."""
    started_at: datetime
    repository: Optional[str] = None
    snapshot_id: Optional[str] = None
    completed_at: Optional[datetime] = None
    state: SnapshotState = SnapshotState.CREATED
    created: bool = False
    already_registered: bool = False

    blocks_total: int = 0
    blocks_uploaded: int = 0
    blocks_skipped: int = 0
    bytes_uploaded: int = 0

    error: Optional[SitesnapError] = None

    @property
    def ok(self) -> bool:
        return self.error is None

    def to_dict(self) -> Dict[str, Any]:
        return {
            "operation": "push",
            "snapshot_id": self.snapshot_id,
            "repository": self.repository,
            "state": self.state.value,
            "created": self.created,
            "already_registered": self.already_registered,
            "started_at": self.started_at.isoformat() if self.started_at else None,
            "completed_at": self.completed_at.isoformat() if self.completed_at else None,
            "blocks": {
                "total": self.blocks_total,
                "uploaded": self.blocks_uploaded,
                "skipped": self.blocks_skipped,
                "bytes_uploaded": self.bytes_uploaded,
            },
            "error": _error_dict(self.error),
        }

    def summary(self) -> str:
        """Get a human-readable summary."""
        lines = [
            f"Push Report ({self.state.value})",
            f"  Snapshot: {self.snapshot_id or '-'}",
            f"  Repository: {self.repository or '-'}",
        ]
        if self.completed_at:
            lines.append(f"  Duration: {(self.completed_at - self.started_at).total_seconds():.1f}s")
        if self.already_registered:
            lines.append("  Already registered with identical content; nothing uploaded")
        else:
            lines.extend([
                f"  Blocks: {self.blocks_total}",
                f"    Uploaded: {self.blocks_uploaded} ({self.bytes_uploaded} bytes)",
                f"    Already present: {self.blocks_skipped}",
            ])
        if self.error is not None:
            lines.append(f"  Error: {self.error}")
        return "\n".join(lines)


@dataclass
class PullReport:
    """Report of a pull operation."""
    started_at: datetime
    snapshot_id: str
    repository: Optional[str] = None
    completed_at: Optional[datetime] = None
    state: Optional[SnapshotState] = None
    already_cached: bool = False

    blocks_total: int = 0
    blocks_fetched: int = 0
    blocks_reused: int = 0
    bytes_fetched: int = 0

    error: Optional[SitesnapError] = None

    @property
    def ok(self) -> bool:
        return self.error is None

    def to_dict(self) -> Dict[str, Any]:
        return {
            "operation": "pull",
            "snapshot_id": self.snapshot_id,
            "repository": self.repository,
            "state": self.state.value if self.state else None,
            "already_cached": self.already_cached,
            "started_at": self.started_at.isoformat() if self.started_at else None,
            "completed_at": self.completed_at.isoformat() if self.completed_at else None,
            "blocks": {
                "total": self.blocks_total,
                "fetched": self.blocks_fetched,
                "reused": self.blocks_reused,
                "bytes_fetched": self.bytes_fetched,
            },
            "error": _error_dict(self.error),
        }

    def summary(self) -> str:
        lines = [
            f"Pull Report ({self.state.value if self.state else 'failed'})",
            f"  Snapshot: {self.snapshot_id}",
            f"  Repository: {self.repository or '-'}",
        ]
        if self.already_cached:
            lines.append("  Already cached locally; nothing fetched")
        else:
            lines.extend([
                f"  Blocks: {self.blocks_total}",
                f"    Fetched: {self.blocks_fetched} ({self.bytes_fetched} bytes)",
                f"    Reused from cache: {self.blocks_reused}",
            ])
        if self.error is not None:
            lines.append(f"  Error: {self.error}")
        return "\n".join(lines)


def _error_dict(error: Optional[SitesnapError]) -> Optional[Dict[str, Any]]:
    if error is None:
        return None
    data: Dict[str, Any] = {"type": type(error).__name__, "message": error.message}
    data.update(error.context())
    return data


def _now() -> datetime:
    return datetime.now(timezone.utc)


class SnapshotOrchestrator:
    """
    Coordinates packaging, the local cache and a repository.

    All collaborators are injected; the orchestrator holds no global state.
    """

    def __init__(
        self,
        cache: LocalCache,
        packager: Packager,
        repository: Optional[RepositoryClient] = None,
        author: Optional[Author] = None,
        retry_config: Optional[RetryConfig] = None,
        max_workers: int = 4,
        log: Optional[SnapshotLogAdapter] = None,
        sleep: Callable[[float], None] = time.sleep,
    ):
        """
        Initialize the orchestrator.

        Args:
            cache: Local snapshot cache
            packager: Packager for new snapshots
            repository: Repository to push to / pull from (None for local-only use)
            author: Author recorded on new snapshots
            retry_config: Backoff policy for network calls
            max_workers: Concurrent block transfers
            log: Logger adapter carrying base context
            sleep: Sleep function (injectable for tests)
        """
        self.cache = cache
        self.packager = packager
        self.repository = repository
        self.author = author or Author()
        self.retry_config = retry_config or RetryConfig()
        self.max_workers = max(1, max_workers)
        self.sleep = sleep
        base = log or SnapshotLogAdapter(logger)
        self.log = base.bind(repository=repository.name if repository else None)

    # ------------------------------------------------------------------
    # Create
    # ------------------------------------------------------------------

    def create(self, options: SnapshotOptions) -> Snapshot:
        """
        Package a site into a new cached snapshot.

        Raises:
            ValidationError: Invalid project slug or description (no id allocated)
            PackagingError: Unreadable files or database
        """
        project = validate_slug(options.project).unwrap()
        description = validate_description(options.description).unwrap()
        root = Path(options.path)

        snapshot_id = new_snapshot_id()
        log = self.log.bind(snapshot_id=snapshot_id, operation="create")

        if options.small and options.db is not None:
            log.warning(
                "Small mode will permanently delete rows from the local database "
                f"{options.db.describe()}"
            )
        elif options.db is not None and not options.small:
            trimmed = self.cache.small_snapshots_for(root)
            if trimmed:
                log.warning(
                    f"The database at {root} was trimmed by {len(trimmed)} earlier small "
                    f"snapshot(s) (latest {trimmed[-1].id}); this snapshot will not contain "
                    "the deleted rows"
                )
        if options.no_scrub and options.db is not None:
            log.warning("Scrubbing disabled: personal data will be included in the snapshot")

        log.info(f"Creating snapshot of {root} for project {project}")
        with self.cache.staging(snapshot_id) as staging:
            exclusions = self.packager.build_filter(options)
            try:
                result = self.packager.package(root, exclusions, options.db, options, staging)
            except SitesnapError as e:
                raise e.with_context(operation="create", snapshot_id=snapshot_id)

            snapshot = Snapshot(
                id=snapshot_id,
                project=project,
                description=description,
                created_at=_now(),
                repository=options.repository,
                scrubbed=not options.no_scrub,
                small=options.small,
                size=result.size,
                manifest_hash=result.manifest.content_hash(),
                db_dump_hash=result.manifest.db_dump_hash,
                author=self.author,
                contains_files=options.include_files,
                contains_db=options.db is not None,
                table_prefix=self.packager.table_prefix if options.db is not None else None,
                state=SnapshotState.PACKAGED,
                source_path=str(root.resolve()),
            )
            self.cache.save(snapshot, result.manifest, result.blocks)

        log.info(f"Snapshot packaged: {len(result.manifest)} files, {snapshot.size} bytes")
        return snapshot

    # ------------------------------------------------------------------
    # Push
    # ------------------------------------------------------------------

    def push(
        self,
        snapshot_id: Optional[str] = None,
        options: Optional[SnapshotOptions] = None,
    ) -> PushReport:
        """
        Publish a snapshot, creating it first when no id is given.

        Never raises SitesnapError; failures are reported on PushReport.error.
        """
        report = PushReport(
            started_at=_now(),
            repository=self.repository.name if self.repository else None,
            snapshot_id=snapshot_id,
        )
        try:
            if self.repository is None:
                raise RepositoryNotConfigured("No repository to push to", operation="push")
            self._push(snapshot_id, options, report)
        except SitesnapError as e:
            report.error = e.with_context(
                operation="push",
                snapshot_id=report.snapshot_id,
                repository=report.repository,
            )
            if report.state in _NETWORK_STATES:
                report.state = SnapshotState.PUSH_FAILED
            self.log.bind(snapshot_id=report.snapshot_id, operation="push").error(f"Push failed: {e}")
        finally:
            report.completed_at = _now()
        return report

    def _push(self, snapshot_id: Optional[str], options: Optional[SnapshotOptions], report: PushReport) -> None:
        repo = self.repository

        if snapshot_id is None:
            if options is None:
                raise ValidationError("Snapshot options are required to create a snapshot")
            if options.repository is None:
                options.repository = repo.name
            snapshot = self.create(options)
            report.created = True
            report.snapshot_id = snapshot.id
            report.state = SnapshotState.FRESHLY_PACKAGED
        else:
            snapshot = self.cache.load(snapshot_id)
            report.state = SnapshotState.LOCALLY_EXISTING

        log = self.log.bind(snapshot_id=snapshot.id, operation="push")
        manifest = self.cache.load_manifest(snapshot.id)
        snapshot.repository = repo.name
        publication = self.publication(snapshot, manifest)

        if self._call(lambda: repo.exists(snapshot.id), "exists"):
            remote = self._call(lambda: repo.fetch_metadata(snapshot.id), "fetch_metadata")
            if remote.get("manifest_hash") != snapshot.manifest_hash:
                raise RemoteConflict(
                    "Snapshot id already registered with different content",
                    local_hash=snapshot.manifest_hash,
                    remote_hash=remote.get("manifest_hash"),
                )
            log.info("Already registered with identical content")
            report.already_registered = True
            self.cache.mark_pushed(snapshot.id, repo.name)
            report.state = SnapshotState.PUSHED
            return

        hashes = manifest.block_hashes()
        report.blocks_total = len(hashes)
        with ThreadPoolExecutor(max_workers=self.max_workers) as executor:
            present = list(executor.map(
                lambda h: self._call(lambda: repo.has_block(h), "has_block"), hashes
            ))
            missing = [h for h, found in zip(hashes, present) if not found]
            report.blocks_skipped = len(hashes) - len(missing)
            log.info(f"Uploading {len(missing)} of {len(hashes)} blocks")
            sizes = list(executor.map(self._upload_block, missing))

        report.blocks_uploaded = sum(1 for s in sizes if s is not None)
        report.bytes_uploaded = sum(s for s in sizes if s is not None)

        report.state = SnapshotState.REGISTERING
        self._register(snapshot.id, publication)
        self.cache.mark_pushed(snapshot.id, repo.name)
        report.state = SnapshotState.PUSHED
        log.info(f"Pushed: {report.blocks_uploaded} blocks uploaded")

    def _upload_block(self, block_hash: str) -> Optional[int]:
        data = self.cache.get_block(block_hash).read_bytes()
        written = self._call(lambda: self.repository.put_block(block_hash, data), "put_block")
        return len(data) if written else None

    def _register(self, snapshot_id: str, publication: Dict[str, Any]) -> bool:
        """
        Register with the repository.

        A NetworkError leaves it unknown whether the record landed, so the
        repository is re-checked before another attempt.
        """
        repo = self.repository
        attempts = max(1, self.retry_config.max_attempts)
        for attempt in range(attempts):
            try:
                return repo.register(snapshot_id, publication)
            except NetworkError as e:
                self.log.bind(snapshot_id=snapshot_id, operation="register").warning(
                    f"Register attempt {attempt + 1}/{attempts} failed: {e}"
                )
                if attempt == attempts - 1:
                    raise
                self.sleep(calculate_delay(attempt, self.retry_config))
                if self._call(lambda: repo.exists(snapshot_id), "exists"):
                    remote = self._call(lambda: repo.fetch_metadata(snapshot_id), "fetch_metadata")
                    if remote.get("manifest_hash") == publication.get("manifest_hash"):
                        return False
                    raise RemoteConflict(
                        "Snapshot id registered concurrently with different content",
                        local_hash=publication.get("manifest_hash"),
                        remote_hash=remote.get("manifest_hash"),
                    )
        return False

    @staticmethod
    def publication(snapshot: Snapshot, manifest: Manifest) -> Dict[str, Any]:
        """Record published to the repository: metadata plus the manifest."""
        data = snapshot.metadata()
        data["manifest"] = manifest.to_dict()
        return data

    # ------------------------------------------------------------------
    # Pull
    # ------------------------------------------------------------------

    def pull(self, snapshot_id: str) -> PullReport:
        """
        Fetch a snapshot from the repository into the local cache.

        Never raises SitesnapError; failures are reported on PullReport.error.
        """
        report = PullReport(
            started_at=_now(),
            snapshot_id=snapshot_id,
            repository=self.repository.name if self.repository else None,
        )
        try:
            if self.cache.is_cached(snapshot_id):
                report.already_cached = True
                report.state = self.cache.load(snapshot_id).state
                return report
            if self.repository is None:
                raise RepositoryNotConfigured("No repository to pull from", operation="pull")
            self._pull(snapshot_id, report)
        except SitesnapError as e:
            report.error = e.with_context(
                operation="pull", snapshot_id=snapshot_id, repository=report.repository
            )
            self.log.bind(snapshot_id=snapshot_id, operation="pull").error(f"Pull failed: {e}")
        finally:
            report.completed_at = _now()
        return report

    def _pull(self, snapshot_id: str, report: PullReport) -> None:
        repo = self.repository
        log = self.log.bind(snapshot_id=snapshot_id, operation="pull")

        record = self._call(lambda: repo.fetch_metadata(snapshot_id), "fetch_metadata")
        manifest = self._verify_record(snapshot_id, record)

        hashes = manifest.block_hashes()
        missing = [h for h in hashes if not self.cache.has_block(h)]
        report.blocks_total = len(hashes)
        report.blocks_reused = len(hashes) - len(missing)
        log.info(f"Fetching {len(missing)} of {len(hashes)} blocks")

        with self.cache.staging(snapshot_id) as staging:
            with ThreadPoolExecutor(max_workers=self.max_workers) as executor:
                blocks = list(executor.map(lambda h: self._fetch_block(h, staging), missing))
            report.blocks_fetched = len(blocks)
            report.bytes_fetched = sum(b.size for b in blocks)

            record = {k: v for k, v in record.items() if k != "manifest"}
            snapshot = Snapshot.from_dict(record)
            snapshot.repository = repo.name
            snapshot.state = SnapshotState.LOCALLY_EXISTING
            snapshot.pushed_to = [repo.name]
            self.cache.save(snapshot, manifest, blocks)
        report.state = SnapshotState.LOCALLY_EXISTING
        log.info(f"Pulled {len(manifest)} files")

    def _fetch_block(self, block_hash: str, staging: Path) -> ContentBlock:
        """Fetch one block into staging; save() moves it into the cache under the lock."""
        data = self._call(lambda: self.repository.fetch_block(block_hash), "fetch_block")
        if hash_bytes(data) != block_hash:
            raise IntegrityError(f"Fetched block does not match its hash {block_hash}")
        path = staging / block_hash
        path.write_bytes(data)
        return ContentBlock(hash=block_hash, size=len(data), path=path)

    @staticmethod
    def _verify_record(snapshot_id: str, record: Dict[str, Any]) -> Manifest:
        if record.get("id") != snapshot_id:
            raise IntegrityError(f"Repository returned record for {record.get('id')!r}")
        if "manifest" not in record:
            raise IntegrityError("Repository record has no manifest")
        try:
            manifest = Manifest.from_dict(record["manifest"])
        except (KeyError, TypeError, ValueError) as e:
            raise IntegrityError(f"Repository manifest is malformed: {e}") from e
        if manifest.content_hash() != record.get("manifest_hash"):
            raise IntegrityError("Repository manifest does not match its content hash")
        return manifest

    # ------------------------------------------------------------------

    def _call(self, operation: Callable[[], Any], name: str) -> Any:
        return retry_with_backoff(
            operation,
            self.retry_config,
            retry_on=(NetworkError,),
            operation_name=name,
            sleep=self.sleep,
        )
