"""
Configuration loader for sitesnap.

Configuration is a YAML file at $SITESNAP_CONFIG, or config.yaml under
$SITESNAP_HOME (default ~/.sitesnap). Every key is optional:

    repositories:
      - name: team
        type: directory
        path: /mnt/shared/snapshots
    cache_dir: ~/.sitesnap/cache
    author: {name: Jane, email: jane@example.com}
    uploads_dir: wp-content/uploads
    table_prefix: wp_
    max_workers: 4
    retry: {max_attempts: 4, initial_delay_ms: 500}
    small: {row_limit: 500, binary_limit: 4096}
    lock: {timeout_seconds: 30, stale_seconds: 600}
"""

import logging
import os
from dataclasses import dataclass, field
from pathlib import Path
from typing import Any, Dict, List, Optional

import yaml

from ..core.exceptions import ConfigError, RepositoryNotConfigured
from ..core.retry import RetryConfig
from ..snapshot.models import Author

logger = logging.getLogger(__name__)

DEFAULT_HOME = "~/.sitesnap"
DEFAULT_REPOSITORY_NAME = "default"


@dataclass
class RepositoryRecord:
    """A configured repository: where snapshots are published."""
    name: str
    type: str = "directory"
    path: Optional[str] = None
    options: Dict[str, Any] = field(default_factory=dict)

    @classmethod
    def from_dict(cls, data: Dict[str, Any]) -> "RepositoryRecord":
        if not isinstance(data, dict) or not data.get("name"):
            raise ConfigError(f"Repository entry needs a name: {data!r}")
        extra = {k: v for k, v in data.items() if k not in ("name", "type", "path")}
        return cls(
            name=str(data["name"]),
            type=str(data.get("type", "directory")),
            path=data.get("path"),
            options=extra,
        )


@dataclass
class RepositoryResolution:
    """
    Outcome of resolving a repository name.

    Attributes:
        record: The chosen repository
        explicit: Whether the caller named it (False when the default was used)
    """
    record: RepositoryRecord
    explicit: bool

    @property
    def name(self) -> str:
        return self.record.name


def default_config_path() -> Path:
    explicit = os.environ.get("SITESNAP_CONFIG")
    if explicit:
        return Path(explicit).expanduser()
    home = os.environ.get("SITESNAP_HOME", DEFAULT_HOME)
    return Path(home).expanduser() / "config.yaml"


class SitesnapConfig:
    """
    Configuration for sitesnap.

    Loads the YAML file if present, then applies environment overrides.
    """

    def __init__(self, config_path: Optional[Path] = None, data: Optional[Dict[str, Any]] = None):
        """
        Initialize configuration.

        Args:
            config_path: Path to YAML config file (defaults to default_config_path())
            data: Already-parsed configuration (skips file loading)
        """
        self.config_path = Path(config_path) if config_path else default_config_path()
        if data is not None:
            self.config = dict(data)
        else:
            self.config = self._load_config()
        self._apply_env_overrides()
        self.repositories = self._parse_repositories()

    def _load_config(self) -> Dict[str, Any]:
        if not self.config_path.exists():
            logger.debug(f"No config file at {self.config_path}, using defaults")
            return {}

        logger.info(f"Loading config from: {self.config_path}")
        try:
            with open(self.config_path, "r", encoding="utf-8") as f:
                config = yaml.safe_load(f)
        except yaml.YAMLError as e:
            raise ConfigError(f"Invalid YAML in {self.config_path}: {e}") from e

        if config is None:
            return {}
        if not isinstance(config, dict):
            raise ConfigError(f"Config file {self.config_path} must contain a mapping")
        return config

    def _apply_env_overrides(self) -> None:
        cache_dir = os.environ.get("SITESNAP_CACHE_DIR")
        if cache_dir:
            self.config["cache_dir"] = cache_dir

        repository_path = os.environ.get("SITESNAP_REPOSITORY_PATH")
        if repository_path and not self.config.get("repositories"):
            self.config["repositories"] = [
                {"name": DEFAULT_REPOSITORY_NAME, "type": "directory", "path": repository_path}
            ]

    def _parse_repositories(self) -> List[RepositoryRecord]:
        raw = self.config.get("repositories") or []
        if not isinstance(raw, list):
            raise ConfigError("'repositories' must be a list")
        records = [RepositoryRecord.from_dict(item) for item in raw]
        names = [r.name for r in records]
        duplicates = sorted({n for n in names if names.count(n) > 1})
        if duplicates:
            raise ConfigError(f"Duplicate repository names: {', '.join(duplicates)}")
        return records

    @property
    def home(self) -> Path:
        return self.config_path.parent

    @property
    def cache_dir(self) -> Path:
        value = self.config.get("cache_dir")
        if value:
            return Path(value).expanduser()
        return self.home / "cache"

    @property
    def author(self) -> Author:
        return Author.from_dict(self.config.get("author"))

    @property
    def uploads_dir(self) -> str:
        return self.get("uploads_dir", "uploads")

    @property
    def table_prefix(self) -> str:
        return self.get("table_prefix", "wp_")

    @property
    def max_workers(self) -> int:
        return int(self.get("max_workers", 4))

    @property
    def retry(self) -> RetryConfig:
        return RetryConfig.from_dict(self.config.get("retry"))

    @property
    def small_row_limit(self) -> int:
        return int(self.get("small.row_limit", 500))

    @property
    def small_binary_limit(self) -> int:
        return int(self.get("small.binary_limit", 4096))

    @property
    def lock_timeout(self) -> float:
        return float(self.get("lock.timeout_seconds", 30))

    @property
    def stale_lock_seconds(self) -> float:
        return float(self.get("lock.stale_seconds", 600))

    def get(self, key: str, default: Any = None) -> Any:
        """Get a configuration value by dotted key."""
        value: Any = self.config
        for k in key.split("."):
            if isinstance(value, dict):
                value = value.get(k)
            else:
                return default
        return value if value is not None else default

    def resolve_repository(self, name: Optional[str] = None) -> RepositoryResolution:
        """
        Pick the repository to publish to.

        An explicit name must match a configured repository. Without a name,
        the first configured repository is the default.

        Raises:
            RepositoryNotConfigured: If no repository matches
        """
        if name:
            for record in self.repositories:
                if record.name == name:
                    return RepositoryResolution(record=record, explicit=True)
            raise RepositoryNotConfigured(
                f"Repository '{name}' is not configured", repository=name
            )

        if not self.repositories:
            raise RepositoryNotConfigured(
                "No repository configured. Add one to "
                f"{self.config_path} or set SITESNAP_REPOSITORY_PATH."
            )
        return RepositoryResolution(record=self.repositories[0], explicit=False)
