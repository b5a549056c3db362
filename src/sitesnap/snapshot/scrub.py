"""
Deterministic scrubbing of personal data from database exports.

Each rule names a table, a sensitive column, the column holding the row key
and the kind of value. The replacement is derived from (kind, key) alone, so
the same user id yields the same synthetic email in every table that
references it, while the original value is never reproduced.

Scrubbing runs over the exported rows and never touches the live database.
"""

import hashlib
import logging
from dataclasses import dataclass
from typing import Any, Callable, Dict, List, Optional, Sequence, Tuple

from ..core.exceptions import ScrubError
from .db_export import DatabaseExport, TableDump

logger = logging.getLogger(__name__)

DEFAULT_TABLE_PREFIX = "wp_"
COLLISION_SUFFIX = "-scrubbed"


@dataclass(frozen=True)
class ScrubRule:
    """
    One sensitive column of one table.

    Attributes:
        table: Table name without the site table prefix
        column: Column whose values are replaced
        key_column: Column whose value seeds the synthetic replacement
        kind: Kind of synthetic value (email, login, name, ...)
        when: Optional (column, value) restricting the rule to matching rows
    """
    table: str
    column: str
    key_column: str
    kind: str
    when: Optional[Tuple[str, str]] = None


def _digest(kind: str, key: str) -> str:
    return hashlib.sha256(f"sitesnap:{kind}:{key}".encode("utf-8")).hexdigest()


SYNTHETIC_GENERATORS: Dict[str, Callable[[str], str]] = {
    "email": lambda key: f"user{key}@example.com",
    "login": lambda key: f"user{key}",
    "name": lambda key: f"User {key}",
    "first_name": lambda key: f"Firstname{key}",
    "last_name": lambda key: f"Lastname{key}",
    "url": lambda key: f"https://example.com/user{key}",
    "password": lambda key: "$scrubbed$" + _digest("password", key)[:32],
    "secret": lambda key: _digest("secret", key)[:32],
    "ip": lambda key: f"192.0.2.{int(_digest('ip', key)[:4], 16) % 254 + 1}",
    "text": lambda key: f"Scrubbed text {key}",
}


DEFAULT_SCRUB_RULES: List[ScrubRule] = [
    ScrubRule("users", "user_login", "ID", "login"),
    ScrubRule("users", "user_nicename", "ID", "login"),
    ScrubRule("users", "user_email", "ID", "email"),
    ScrubRule("users", "user_url", "ID", "url"),
    ScrubRule("users", "display_name", "ID", "name"),
    ScrubRule("users", "user_pass", "ID", "password"),
    ScrubRule("users", "user_activation_key", "ID", "secret"),
    ScrubRule("usermeta", "meta_value", "user_id", "first_name", when=("meta_key", "first_name")),
    ScrubRule("usermeta", "meta_value", "user_id", "last_name", when=("meta_key", "last_name")),
    ScrubRule("usermeta", "meta_value", "user_id", "login", when=("meta_key", "nickname")),
    ScrubRule("usermeta", "meta_value", "user_id", "text", when=("meta_key", "description")),
    ScrubRule("usermeta", "meta_value", "user_id", "secret", when=("meta_key", "session_tokens")),
    ScrubRule("comments", "comment_author", "user_id", "name"),
    ScrubRule("comments", "comment_author_email", "user_id", "email"),
    ScrubRule("comments", "comment_author_url", "user_id", "url"),
    ScrubRule("comments", "comment_author_IP", "comment_ID", "ip"),
]


def synthetic_value(kind: str, key: Any, original: Any = None) -> Any:
    """
    Build the synthetic replacement for a sensitive value.

    None stays None. If the synthetic value equals the original, a suffix is
    appended so the original never survives.
    """
    if original is None:
        return None
    generator = SYNTHETIC_GENERATORS.get(kind)
    if generator is None:
        raise ScrubError(f"Unknown scrub kind: {kind}", operation="scrub")
    value = generator(str(key))
    if isinstance(original, (bytes, bytearray)):
        encoded = value.encode("utf-8")
        if encoded == bytes(original):
            encoded += COLLISION_SUFFIX.encode("utf-8")
        return encoded
    if value == str(original):
        value += COLLISION_SUFFIX
    return value


@dataclass
class _BoundRule:
    """A ScrubRule resolved against one table's column positions."""
    rule: ScrubRule
    column_idx: int
    key_idx: int
    when_idx: Optional[int] = None


class Scrubber:
    """
    Replaces sensitive column values in a DatabaseExport.

    Creates new table dumps; the input export is not modified.
    """

    def __init__(
        self,
        rules: Optional[Sequence[ScrubRule]] = None,
        table_prefix: str = DEFAULT_TABLE_PREFIX,
        enabled: bool = True,
    ):
        """
        Initialize the scrubber.

        Args:
            rules: Scrub rules (defaults to DEFAULT_SCRUB_RULES)
            table_prefix: Site table prefix prepended to rule table names
            enabled: False disables scrubbing entirely (the no_scrub option)
        """
        self.rules = list(rules) if rules is not None else list(DEFAULT_SCRUB_RULES)
        self.table_prefix = table_prefix or ""
        self.enabled = enabled

        self._rules_by_table: Dict[str, List[ScrubRule]] = {}
        for rule in self.rules:
            if rule.kind not in SYNTHETIC_GENERATORS:
                raise ScrubError(f"Unknown scrub kind {rule.kind!r} for {rule.table}.{rule.column}")
            name = self.table_prefix + rule.table
            self._rules_by_table.setdefault(name, []).append(rule)

    def targets(self, table_name: str) -> bool:
        return self.enabled and table_name in self._rules_by_table

    def scrub(self, export: DatabaseExport) -> DatabaseExport:
        """
        Scrub a full export.

        Returns the input unchanged when scrubbing is disabled.
        """
        if not self.enabled:
            return export
        return DatabaseExport(tables=[self.scrub_table(t) for t in export.tables])

    def scrub_table(self, table: TableDump) -> TableDump:
        """
        Scrub one table dump.

        Raises:
            ScrubError: If a targeted table lacks a rule's column or key column
        """
        if not self.targets(table.name):
            return table

        bound = [self._bind(rule, table) for rule in self._rules_by_table[table.name]]
        logger.debug(
            f"Scrubbing {table.name}: "
            + ", ".join(sorted({b.rule.column for b in bound}))
        )

        if isinstance(table.rows, list):
            rows: Any = [self._scrub_row(row, bound) for row in table.rows]
        else:
            rows = (self._scrub_row(row, bound) for row in table.rows)

        return TableDump(
            name=table.name,
            columns=list(table.columns),
            primary_key=table.primary_key,
            rows=rows,
        )

    def _bind(self, rule: ScrubRule, table: TableDump) -> _BoundRule:
        column_idx = table.column_index(rule.column)
        key_idx = table.column_index(rule.key_column)
        if column_idx is None or key_idx is None:
            missing = rule.column if column_idx is None else rule.key_column
            raise ScrubError(
                f"Cannot scrub {table.name}.{rule.column}: column {missing!r} not in export",
                operation="scrub",
            )
        when_idx = None
        if rule.when is not None:
            when_idx = table.column_index(rule.when[0])
            if when_idx is None:
                raise ScrubError(
                    f"Cannot scrub {table.name}.{rule.column}: column {rule.when[0]!r} not in export",
                    operation="scrub",
                )
        return _BoundRule(rule=rule, column_idx=column_idx, key_idx=key_idx, when_idx=when_idx)

    def _scrub_row(self, row: Sequence[Any], bound: List[_BoundRule]) -> List[Any]:
        result = list(row)
        for b in bound:
            if b.when_idx is not None and _as_text(row[b.when_idx]) != b.rule.when[1]:
                continue
            result[b.column_idx] = synthetic_value(b.rule.kind, row[b.key_idx], row[b.column_idx])
        return result


def _as_text(value: Any) -> Optional[str]:
    if isinstance(value, (bytes, bytearray)):
        return bytes(value).decode("utf-8", errors="replace")
    return None if value is None else str(value)
