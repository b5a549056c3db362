"""
Logical database export for snapshots.

A DatabaseSource reads table schemas and rows from the live site database.
The export is a stream of TableDumps serialized as canonical NDJSON:

    {"columns":[...],"name":"wp_users","primary_key":"ID","type":"table"}
    {"table":"wp_users","type":"row","values":[1,"admin",...]}

Rows are read in primary-key order (or all-column order when a table has
no single-column key) so the same data always exports to the same bytes.
String values are written exactly as stored, without Unicode normalization.
"""

import json
import logging
import sqlite3
from abc import ABC, abstractmethod
from dataclasses import dataclass, field
from pathlib import Path
from typing import Any, BinaryIO, Dict, Iterable, Iterator, List, Optional, Tuple

from ..core.exceptions import PackagingError
from .canonical import canonicalize, decode_value
from .models import DbCredentials

logger = logging.getLogger(__name__)


@dataclass
class ColumnInfo:
    """Information about a database column."""
    name: str
    data_type: str = ""
    is_primary_key: bool = False
    ordinal: int = 0


@dataclass
class TableSchema:
    """Schema information for a database table."""
    name: str
    columns: List[ColumnInfo] = field(default_factory=list)

    @property
    def column_names(self) -> List[str]:
        return [c.name for c in sorted(self.columns, key=lambda c: c.ordinal)]

    @property
    def primary_key(self) -> Optional[str]:
        """Single-column primary key, or None (no key or composite key)."""
        keys = [c.name for c in self.columns if c.is_primary_key]
        return keys[0] if len(keys) == 1 else None


@dataclass
class TableDump:
    """
    Exported content of one table.

    ``rows`` may be a lazy iterator while streaming; exports read back from
    NDJSON hold lists.
    """
    name: str
    columns: List[str]
    primary_key: Optional[str] = None
    rows: Iterable[List[Any]] = field(default_factory=list)

    def column_index(self, column: str) -> Optional[int]:
        try:
            return self.columns.index(column)
        except ValueError:
            return None

    def header(self) -> Dict[str, Any]:
        return {
            "type": "table",
            "name": self.name,
            "columns": list(self.columns),
            "primary_key": self.primary_key,
        }


@dataclass
class DatabaseExport:
    """A full logical export: an ordered sequence of table dumps."""
    tables: List[TableDump] = field(default_factory=list)

    def __iter__(self) -> Iterator[TableDump]:
        return iter(self.tables)

    def get(self, name: str) -> Optional[TableDump]:
        for table in self.tables:
            if table.name == name:
                return table
        return None

    def to_bytes(self) -> bytes:
        lines = []
        for table in self.tables:
            lines.extend(encode_table(table))
        return b"".join(lines)

    @classmethod
    def from_bytes(cls, data: bytes) -> "DatabaseExport":
        return read_export(data.decode("utf-8").splitlines())

    @classmethod
    def load(cls, path: Path) -> "DatabaseExport":
        with open(path, "r", encoding="utf-8") as f:
            return read_export(f)


def encode_table(table: TableDump) -> Iterator[bytes]:
    """Encode one table dump as canonical NDJSON lines."""
    yield (canonicalize(table.header(), normalize_unicode=False) + "\n").encode("utf-8")
    for row in table.rows:
        line = {"type": "row", "table": table.name, "values": list(row)}
        yield (canonicalize(line, normalize_unicode=False) + "\n").encode("utf-8")


def write_table(table: TableDump, sink: BinaryIO) -> int:
    """Stream one table dump into a binary sink; returns rows written."""
    count = -1
    for line in encode_table(table):
        sink.write(line)
        count += 1
    return count


def read_export(lines: Iterable[str]) -> DatabaseExport:
    """Parse NDJSON export lines back into a DatabaseExport."""
    export = DatabaseExport()
    current: Optional[TableDump] = None

    for line_num, line in enumerate(lines, 1):
        line = line.strip()
        if not line:
            continue
        data = json.loads(line)
        if data.get("type") == "table":
            current = TableDump(
                name=data["name"],
                columns=list(data["columns"]),
                primary_key=data.get("primary_key"),
                rows=[],
            )
            export.tables.append(current)
        elif data.get("type") == "row":
            if current is None or data.get("table") != current.name:
                raise ValueError(f"Row for unknown table at line {line_num}")
            current.rows.append([decode_value(v) for v in data["values"]])
        else:
            raise ValueError(f"Unknown export line type at line {line_num}")

    return export


class DatabaseSource(ABC):
    """
    Abstract base class for live database access during packaging.

    Sources are read-mostly; the only write is delete_rows_after(), used by
    small mode to trim the local working database.
    """

    # Driver exceptions that packaging reports as PackagingError
    errors: Tuple[type, ...] = ()

    @abstractmethod
    def list_tables(self) -> List[str]:
        """Return base table names in a stable order."""
        pass

    @abstractmethod
    def describe_table(self, table: str) -> TableSchema:
        pass

    @abstractmethod
    def iter_rows(self, schema: TableSchema) -> Iterator[List[Any]]:
        """Yield rows of a table in a deterministic order."""
        pass

    @abstractmethod
    def delete_rows_after(self, table: str, key_column: str, last_kept: Any) -> int:
        """
        Delete rows whose key sorts after ``last_kept``.

        Returns:
            Number of rows deleted
        """
        pass

    @abstractmethod
    def close(self) -> None:
        pass

    def __enter__(self) -> "DatabaseSource":
        return self

    def __exit__(self, exc_type, exc, tb) -> None:
        self.close()

    def read_table(self, table: str) -> TableDump:
        """Describe a table and return a lazily-read dump of it."""
        schema = self.describe_table(table)
        return TableDump(
            name=table,
            columns=schema.column_names,
            primary_key=schema.primary_key,
            rows=self.iter_rows(schema),
        )

    def _order_clause(self, schema: TableSchema) -> str:
        if schema.primary_key:
            return f" ORDER BY {self.quote(schema.primary_key)}"
        if schema.columns:
            return " ORDER BY " + ", ".join(
                str(i) for i in range(1, len(schema.columns) + 1)
            )
        return ""

    def quote(self, identifier: str) -> str:
        return '"' + identifier.replace('"', '""') + '"'


class SqliteSource(DatabaseSource):
    """DatabaseSource over a SQLite database file."""

    errors = (sqlite3.Error,)

    def __init__(self, db_path: Path):
        self.db_path = Path(db_path)
        if not self.db_path.is_file():
            raise PackagingError(f"Database file not found: {self.db_path}", operation="export_database")
        try:
            # mode=rw never creates a missing database
            self.conn = sqlite3.connect(self.db_path.resolve().as_uri() + "?mode=rw", uri=True)
        except sqlite3.Error as e:
            raise PackagingError(f"Cannot open database {self.db_path}: {e}", operation="export_database") from e
        logger.debug(f"Connected to SQLite database: {self.db_path}")

    def list_tables(self) -> List[str]:
        cursor = self.conn.execute(
            "SELECT name FROM sqlite_master "
            "WHERE type = 'table' AND name NOT LIKE 'sqlite_%' ORDER BY name"
        )
        return [row[0] for row in cursor.fetchall()]

    def describe_table(self, table: str) -> TableSchema:
        cursor = self.conn.execute(f"PRAGMA table_info({self.quote(table)})")
        schema = TableSchema(name=table)
        for cid, name, data_type, _notnull, _default, pk in cursor.fetchall():
            schema.columns.append(ColumnInfo(
                name=name,
                data_type=data_type or "",
                is_primary_key=bool(pk),
                ordinal=cid,
            ))
        return schema

    def iter_rows(self, schema: TableSchema) -> Iterator[List[Any]]:
        columns = ", ".join(self.quote(c) for c in schema.column_names)
        sql = f"SELECT {columns} FROM {self.quote(schema.name)}{self._order_clause(schema)}"
        cursor = self.conn.execute(sql)
        try:
            for row in cursor:
                yield list(row)
        finally:
            cursor.close()

    def delete_rows_after(self, table: str, key_column: str, last_kept: Any) -> int:
        cursor = self.conn.execute(
            f"DELETE FROM {self.quote(table)} WHERE {self.quote(key_column)} > ?",
            (last_kept,),
        )
        self.conn.commit()
        return cursor.rowcount

    def close(self) -> None:
        if self.conn:
            self.conn.close()
            self.conn = None
            logger.debug("Closed SQLite connection")


class OdbcSource(DatabaseSource):
    """
    DatabaseSource over any ODBC data source (MySQL, MariaDB, SQL Server).

    Uses the ODBC catalog functions (tables/columns/primaryKeys) so no
    dialect-specific INFORMATION_SCHEMA queries are needed.
    """

    def __init__(self, credentials: DbCredentials, timeout: int = 15):
        import pyodbc

        self._pyodbc = pyodbc
        self.errors = (pyodbc.Error,)
        self.credentials = credentials
        try:
            self.conn = pyodbc.connect(self.build_connection_string(credentials), timeout=timeout)
        except pyodbc.Error as e:
            raise PackagingError(
                f"Cannot connect to database {credentials.describe()}: {e}",
                operation="export_database",
            ) from e
        self._quote_char = (self.conn.getinfo(pyodbc.SQL_IDENTIFIER_QUOTE_CHAR) or '"').strip() or '"'
        logger.debug(f"Connected to {credentials.describe()}")

    @staticmethod
    def build_connection_string(credentials: DbCredentials) -> str:
        server = credentials.host or "localhost"
        if credentials.port:
            server = f"{server},{credentials.port}"
        parts = [
            f"Driver={{{credentials.driver}}}",
            f"Server={server}",
            f"Database={credentials.name}",
        ]
        if credentials.user:
            parts.append(f"UID={credentials.user}")
        if credentials.password:
            parts.append(f"PWD={credentials.password}")
        parts.append("TrustServerCertificate=yes")
        return ";".join(parts)

    def quote(self, identifier: str) -> str:
        q = self._quote_char
        if q == "[":
            return "[" + identifier.replace("]", "]]") + "]"
        return q + identifier.replace(q, q + q) + q

    def list_tables(self) -> List[str]:
        cursor = self.conn.cursor()
        try:
            names = [row.table_name for row in cursor.tables(tableType="TABLE")]
        finally:
            cursor.close()
        return sorted(names)

    def describe_table(self, table: str) -> TableSchema:
        cursor = self.conn.cursor()
        try:
            schema = TableSchema(name=table)
            for row in cursor.columns(table=table):
                schema.columns.append(ColumnInfo(
                    name=row.column_name,
                    data_type=row.type_name,
                    ordinal=row.ordinal_position,
                ))
            keys = {row.column_name for row in cursor.primaryKeys(table=table)}
        finally:
            cursor.close()
        for column in schema.columns:
            column.is_primary_key = column.name in keys
        return schema

    def iter_rows(self, schema: TableSchema) -> Iterator[List[Any]]:
        columns = ", ".join(self.quote(c) for c in schema.column_names)
        sql = f"SELECT {columns} FROM {self.quote(schema.name)}{self._order_clause(schema)}"
        cursor = self.conn.cursor()
        try:
            cursor.execute(sql)
            while True:
                batch = cursor.fetchmany(1000)
                if not batch:
                    break
                for row in batch:
                    yield list(row)
        finally:
            cursor.close()

    def delete_rows_after(self, table: str, key_column: str, last_kept: Any) -> int:
        cursor = self.conn.cursor()
        try:
            cursor.execute(
                f"DELETE FROM {self.quote(table)} WHERE {self.quote(key_column)} > ?",
                (last_kept,),
            )
            deleted = cursor.rowcount
            self.conn.commit()
        except self._pyodbc.Error:
            self.conn.rollback()
            raise
        finally:
            cursor.close()
        return deleted

    def close(self) -> None:
        if self.conn:
            self.conn.close()
            self.conn = None
            logger.debug("Closed ODBC connection")


def open_database(credentials: DbCredentials) -> DatabaseSource:
    """
    Open a DatabaseSource for the given credentials.

    Raises:
        PackagingError: If the database is unreachable
    """
    if credentials.driver == "sqlite":
        return SqliteSource(Path(credentials.name))
    return OdbcSource(credentials)
