"""
Snapshot packager.

Turns a site root plus optional database credentials into a Manifest and a
set of hash-addressed content blocks written to a staging directory:

    staging/
        blocks/{hash}        one file per distinct content
        tmp/                 partial writes

File hashing runs on a bounded thread pool; the database export is a single
sequential unit of work.
"""

import logging
import os
import stat
import uuid
from concurrent.futures import ThreadPoolExecutor
from dataclasses import dataclass, field
from itertools import islice
from pathlib import Path
from typing import Any, Dict, Iterator, List, Optional, Tuple

from ..core.exceptions import PackagingError, SitesnapError
from .canonical import EMPTY_HASH, hash_bytes, hash_file, hash_stream
from .db_export import DatabaseSource, TableDump, open_database, write_table
from .exclusion import DEFAULT_UPLOADS_DIR, ExclusionFilter
from .models import ContentBlock, DbCredentials, Manifest, ManifestEntry, SnapshotOptions
from .scrub import DEFAULT_TABLE_PREFIX, Scrubber

logger = logging.getLogger(__name__)

DEFAULT_MAX_WORKERS = 4
DEFAULT_SMALL_ROW_LIMIT = 500
DEFAULT_SMALL_BINARY_LIMIT = 4096


@dataclass
class PackageResult:
    """Output of a packaging run."""
    manifest: Manifest
    blocks: List[ContentBlock] = field(default_factory=list)
    db_block: Optional[ContentBlock] = None
    trimmed_rows: Dict[str, int] = field(default_factory=dict)

    @property
    def size(self) -> int:
        total = self.manifest.files_size()
        if self.db_block is not None:
            total += self.db_block.size
        return total


def _require_utf8(relative: str, path: str) -> None:
    # names that are not valid UTF-8 arrive surrogate-escaped and cannot go into a manifest
    try:
        relative.encode("utf-8")
    except UnicodeEncodeError as e:
        raise PackagingError(
            f"File name is not valid UTF-8: {os.fsencode(path)!r}", operation="package"
        ) from e


@dataclass
class _WalkItem:
    relative: str
    path: Path
    st: os.stat_result


@dataclass
class _PendingTrim:
    table: str
    key_column: str
    last_kept: Any


class SmallTrimmer:
    """
    Reduces a table dump to a small sample.

    Keeps the first ``row_limit`` rows (the export is in key order) and cuts
    str/bytes values down to ``binary_limit``.
    """

    def __init__(self, row_limit: int = DEFAULT_SMALL_ROW_LIMIT, binary_limit: int = DEFAULT_SMALL_BINARY_LIMIT):
        self.row_limit = row_limit
        self.binary_limit = binary_limit

    def trim_table(self, table: TableDump) -> Tuple[TableDump, Optional[_PendingTrim]]:
        """
        Trim one table.

        Returns:
            The trimmed dump, and the local deletion to apply afterwards (None
            when nothing was dropped or the table has no single-column key)
        """
        rows_iter = iter(table.rows)
        kept = [self._truncate_row(row) for row in islice(rows_iter, self.row_limit)]
        has_more = next(rows_iter, None) is not None
        close = getattr(rows_iter, "close", None)
        if close is not None:
            close()

        pending = None
        if has_more:
            key_idx = table.column_index(table.primary_key) if table.primary_key else None
            if key_idx is not None and kept:
                pending = _PendingTrim(table.name, table.primary_key, kept[-1][key_idx])
            else:
                logger.info(f"Table {table.name} has no single-column key; trimmed in export only")

        trimmed = TableDump(
            name=table.name,
            columns=list(table.columns),
            primary_key=table.primary_key,
            rows=kept,
        )
        return trimmed, pending

    def _truncate_row(self, row: List[Any]) -> List[Any]:
        return [self._truncate(value) for value in row]

    def _truncate(self, value: Any) -> Any:
        if isinstance(value, (str, bytes, bytearray)) and len(value) > self.binary_limit:
            return value[: self.binary_limit]
        return value


class Packager:
    """
    Builds the manifest and content blocks for a snapshot.
    """

    def __init__(
        self,
        max_workers: int = DEFAULT_MAX_WORKERS,
        follow_symlinks: bool = False,
        small_row_limit: int = DEFAULT_SMALL_ROW_LIMIT,
        small_binary_limit: int = DEFAULT_SMALL_BINARY_LIMIT,
        uploads_dir: str = DEFAULT_UPLOADS_DIR,
        table_prefix: str = DEFAULT_TABLE_PREFIX,
        scrubber: Optional[Scrubber] = None,
    ):
        """
        Initialize the packager.

        Args:
            max_workers: Threads used for hashing and copying files
            follow_symlinks: Descend into symlinked directories
            small_row_limit: Rows kept per table in small mode
            small_binary_limit: Max length of str/bytes values in small mode
            uploads_dir: Uploads directory used by exclude_uploads
            table_prefix: Site table prefix for scrub rules
            scrubber: Scrubber to use (defaults to the built-in rules)
        """
        self.max_workers = max(1, max_workers)
        self.follow_symlinks = follow_symlinks
        self.trimmer = SmallTrimmer(small_row_limit, small_binary_limit)
        self.uploads_dir = uploads_dir
        self.table_prefix = table_prefix
        self.scrubber = scrubber or Scrubber(table_prefix=table_prefix)

    def build_filter(self, options: SnapshotOptions) -> ExclusionFilter:
        return ExclusionFilter(
            patterns=options.exclude,
            exclude_uploads=options.exclude_uploads,
            uploads_dir=self.uploads_dir,
        )

    def package(
        self,
        root_path: Path,
        exclusions: ExclusionFilter,
        db_credentials: Optional[DbCredentials],
        options: SnapshotOptions,
        staging_dir: Path,
    ) -> PackageResult:
        """
        Package a site into the staging directory.

        Raises:
            PackagingError: On any unreadable path or database failure
        """
        root = Path(root_path)
        if not root.is_dir():
            raise PackagingError(f"Site root is not a directory: {root}", operation="package")

        staging = Path(staging_dir)
        (staging / "blocks").mkdir(parents=True, exist_ok=True)
        (staging / "tmp").mkdir(parents=True, exist_ok=True)

        entries: List[ManifestEntry] = []
        blocks: Dict[str, ContentBlock] = {}

        if options.include_files:
            items = list(self._walk(root, exclusions))
            logger.info(f"Packaging {len(items)} entries from {root}")
            with ThreadPoolExecutor(max_workers=self.max_workers) as executor:
                for entry, block in executor.map(lambda item: self._store_entry(item, staging), items):
                    entries.append(entry)
                    if block is not None:
                        blocks[block.hash] = block

        db_block = None
        trimmed_rows: Dict[str, int] = {}
        if db_credentials is not None:
            db_block, trimmed_rows = self._export_database(db_credentials, options, staging)
            blocks[db_block.hash] = db_block

        manifest = Manifest(entries=entries, db_dump_hash=db_block.hash if db_block else None)
        return PackageResult(
            manifest=manifest,
            blocks=list(blocks.values()),
            db_block=db_block,
            trimmed_rows=trimmed_rows,
        )

    # ------------------------------------------------------------------
    # File tree
    # ------------------------------------------------------------------

    def _walk(self, root: Path, exclusions: ExclusionFilter) -> Iterator[_WalkItem]:
        """Yield included non-directory entries, pruning excluded directories."""
        root_st = root.stat()
        visited = {(root_st.st_dev, root_st.st_ino)}
        stack: List[Tuple[Path, str]] = [(root, "")]

        while stack:
            directory, prefix = stack.pop()
            try:
                with os.scandir(directory) as it:
                    children = sorted(it, key=lambda d: d.name)
            except OSError as e:
                raise PackagingError(f"Cannot read directory {directory}: {e}", operation="package") from e

            for child in children:
                relative = f"{prefix}{child.name}"
                try:
                    st = child.stat(follow_symlinks=False)
                    if stat.S_ISDIR(st.st_mode):
                        if exclusions.should_descend(relative):
                            visited.add((st.st_dev, st.st_ino))
                            stack.append((Path(child.path), relative + "/"))
                        continue

                    if stat.S_ISLNK(st.st_mode) and self.follow_symlinks and child.is_dir(follow_symlinks=True):
                        if not exclusions.should_descend(relative):
                            continue
                        target_st = child.stat(follow_symlinks=True)
                        key = (target_st.st_dev, target_st.st_ino)
                        if key in visited:
                            logger.warning(f"Skipping symlink cycle at {relative}")
                            continue
                        visited.add(key)
                        stack.append((Path(child.path), relative + "/"))
                        continue
                except OSError as e:
                    raise PackagingError(f"Cannot stat {child.path}: {e}", operation="package") from e

                if exclusions.should_include(relative):
                    _require_utf8(relative, child.path)
                    yield _WalkItem(relative=relative, path=Path(child.path), st=st)

    def _store_entry(self, item: _WalkItem, staging: Path) -> Tuple[ManifestEntry, Optional[ContentBlock]]:
        mode = item.st.st_mode
        try:
            if stat.S_ISLNK(mode):
                target = os.readlink(item.path).encode("utf-8", errors="surrogateescape")
                block = self._stage_bytes(target, staging)
            elif stat.S_ISREG(mode):
                block = self._stage_file(item.path, staging)
            else:
                return ManifestEntry(path=item.relative, hash=EMPTY_HASH, size=0, mode=mode), None
        except OSError as e:
            raise PackagingError(f"Cannot read {item.path}: {e}", operation="package") from e

        return ManifestEntry(path=item.relative, hash=block.hash, size=block.size, mode=mode), block

    def _stage_file(self, path: Path, staging: Path) -> ContentBlock:
        tmp = staging / "tmp" / uuid.uuid4().hex
        with open(path, "rb") as src, open(tmp, "wb") as dst:
            result = hash_stream(src, sink=dst)
        return self._finish_block(tmp, result["hash"], result["size"], staging)

    def _stage_bytes(self, data: bytes, staging: Path) -> ContentBlock:
        tmp = staging / "tmp" / uuid.uuid4().hex
        tmp.write_bytes(data)
        return self._finish_block(tmp, hash_bytes(data), len(data), staging)

    @staticmethod
    def _finish_block(tmp: Path, block_hash: str, size: int, staging: Path) -> ContentBlock:
        target = staging / "blocks" / block_hash
        os.replace(tmp, target)
        return ContentBlock(hash=block_hash, size=size, path=target)

    # ------------------------------------------------------------------
    # Database
    # ------------------------------------------------------------------

    def _export_database(
        self,
        credentials: DbCredentials,
        options: SnapshotOptions,
        staging: Path,
    ) -> Tuple[ContentBlock, Dict[str, int]]:
        source = open_database(credentials)
        try:
            with source:
                block, pending = self._write_export(source, options, staging)
                trimmed = self._apply_trims(source, pending) if pending else {}
        except SitesnapError:
            raise
        except source.errors as e:
            raise PackagingError(
                f"Database export failed for {credentials.describe()}: {e}",
                operation="export_database",
            ) from e
        return block, trimmed

    def _write_export(
        self,
        source: DatabaseSource,
        options: SnapshotOptions,
        staging: Path,
    ) -> Tuple[ContentBlock, List[_PendingTrim]]:
        tmp = staging / "tmp" / f"database-{uuid.uuid4().hex}.ndjson"
        pending: List[_PendingTrim] = []
        total_rows = 0

        with open(tmp, "wb") as sink:
            for name in source.list_tables():
                table = source.read_table(name)
                if not options.no_scrub:
                    table = self.scrubber.scrub_table(table)
                if options.small:
                    table, trim = self.trimmer.trim_table(table)
                    if trim is not None:
                        pending.append(trim)
                rows = write_table(table, sink)
                total_rows += rows
                logger.debug(f"Exported {name}: {rows} rows")

        block = self._finish_block(tmp, hash_file(tmp), tmp.stat().st_size, staging)
        logger.info(f"Database export: {total_rows} rows, {block.size} bytes")
        return block, pending

    def _apply_trims(self, source: DatabaseSource, pending: List[_PendingTrim]) -> Dict[str, int]:
        """Delete rows dropped by small mode from the local database."""
        logger.warning(
            f"Small mode: deleting rows beyond the first {self.trimmer.row_limit} "
            f"from {len(pending)} table(s) in the local database"
        )
        deleted: Dict[str, int] = {}
        for trim in pending:
            deleted[trim.table] = source.delete_rows_after(trim.table, trim.key_column, trim.last_kept)
            logger.info(f"Trimmed {deleted[trim.table]} rows from {trim.table}")
        return deleted
