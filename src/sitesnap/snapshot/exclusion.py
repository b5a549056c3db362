"""
Path exclusion rules for snapshot packaging.

Exclusion is evaluated before any file is opened: the packager asks
should_descend() for directories and should_include() for files, so excluded
content never enters the hashing or scrubbing pipeline.
"""

import fnmatch
import logging
import posixpath
from typing import Iterable, List, Optional

from .models import ExclusionRule, RuleSource

logger = logging.getLogger(__name__)

DEFAULT_UPLOADS_DIR = "uploads"

_GLOB_CHARS = set("*?[")


def normalize_path(path: Optional[str]) -> str:
    """
    Normalize a relative path for comparison.

    Backslashes become '/', '.' segments and '..' pairs are resolved, and
    leading './' or '/' plus trailing '/' are stripped. Returns '' for paths
    that are empty, name the root itself, or escape it.
    """
    if not path:
        return ""
    value = str(path).replace("\\", "/").strip()
    if not value:
        return ""
    value = posixpath.normpath(value).lstrip("/")
    if value in ("", ".") or value == ".." or value.startswith("../"):
        return ""
    return value


def _is_glob(pattern: str) -> bool:
    return any(ch in _GLOB_CHARS for ch in pattern)


class ExclusionFilter:
    """
    Decides whether a path relative to the site root belongs in a snapshot.

    Rules, in order:
    1. A path matching any explicit exclude pattern is excluded
    2. With exclude_uploads, the uploads directory is an implicit pattern
    3. Everything else is included
    """

    def __init__(
        self,
        patterns: Optional[Iterable[str]] = None,
        exclude_uploads: bool = False,
        uploads_dir: str = DEFAULT_UPLOADS_DIR,
    ):
        """
        Initialize the filter.

        Args:
            patterns: Explicit exclude patterns (prefix or glob, root-relative)
            exclude_uploads: Whether to exclude the uploads directory
            uploads_dir: Uploads directory relative to the site root
        """
        self.rules: List[ExclusionRule] = []

        for pattern in patterns or []:
            self._add_rule(pattern, RuleSource.EXPLICIT)

        if exclude_uploads:
            self._add_rule(uploads_dir, RuleSource.UPLOADS)

    def _add_rule(self, pattern: str, source: RuleSource) -> None:
        normalized = normalize_path(pattern)
        if not normalized:
            # Inert: matches nothing
            logger.debug(f"Ignoring exclude pattern {pattern!r}: does not name a path under the root")
            return
        self.rules.append(ExclusionRule(pattern=normalized, source=source))

    def matching_rule(self, relative_path: str) -> Optional[ExclusionRule]:
        """Return the first rule excluding the path, if any."""
        path = normalize_path(relative_path)
        if not path:
            return None

        # A glob that matches a parent directory excludes its contents too
        parts = path.split("/")
        ancestors = ["/".join(parts[:i]) for i in range(1, len(parts) + 1)]

        for source in (RuleSource.EXPLICIT, RuleSource.UPLOADS):
            for rule in self.rules:
                if rule.source != source:
                    continue
                if path == rule.pattern or path.startswith(rule.pattern + "/"):
                    return rule
                if _is_glob(rule.pattern) and any(
                    fnmatch.fnmatchcase(candidate, rule.pattern) for candidate in ancestors
                ):
                    return rule
        return None

    def should_include(self, relative_path: str) -> bool:
        return self.matching_rule(relative_path) is None

    def should_descend(self, relative_dir: str) -> bool:
        """Whether the walker may list a directory at all."""
        return self.should_include(relative_dir)

    def __repr__(self) -> str:
        patterns = ", ".join(f"{r.pattern}({r.source.value})" for r in self.rules)
        return f"ExclusionFilter([{patterns}])"
