"""Configuration loading and validation for commit-indexer."""

import json
import logging
from dataclasses import dataclass, field
from datetime import datetime, timedelta, timezone
from pathlib import Path

logger = logging.getLogger(__name__)

DEFAULT_CONFIG_DIR = Path.home() / ".commit-indexer"
DEFAULT_CONFIG_PATH = DEFAULT_CONFIG_DIR / "config.json"
DEFAULT_DB_PATH = DEFAULT_CONFIG_DIR / "commits.db"

# Average month length used to turn history_in_months into a duration
_DAYS_PER_MONTH = 30


@dataclass
class Config:
    """Application configuration."""

    db_path: Path = field(default_factory=lambda: DEFAULT_DB_PATH)
    window_duration_days: int = 0
    earliest_history: datetime | None = None
    history_in_months: int = 12
    default_enabled: bool = True
    rate_limit_per_second: float = 10.0
    rate_limit_burst: int = 1
    max_failures: int = 10
    repositories: dict[str, Path] = field(default_factory=dict)
    visible_paths: dict[str, list[str]] = field(default_factory=dict)
    disabled_repositories: set[str] = field(default_factory=set)

    @property
    def window_duration(self) -> timedelta:
        """Window duration as a timedelta (zero means a single unbounded window)."""
        return timedelta(days=self.window_duration_days)

    def max_historical_time(self, now: datetime) -> datetime:
        """Earliest point in time a freshly bootstrapped repository is indexed from.

        Args:
            now: Reference time used when no explicit floor is configured.

        Returns:
            ``earliest_history`` if set, otherwise ``now`` minus
            ``history_in_months``.
        """
        if self.earliest_history is not None:
            return self.earliest_history
        return now - timedelta(days=_DAYS_PER_MONTH * self.history_in_months)

    def is_repository_enabled(self, name: str) -> bool:
        """Check whether a repository should be enabled when first bootstrapped.

        Args:
            name: Repository name as configured under ``repositories``.

        Returns:
            False if the repository is listed in ``disabled_repositories``,
            otherwise ``default_enabled``.
        """
        if name in self.disabled_repositories:
            return False
        return self.default_enabled


def _expand_path(p: str | Path) -> Path:
    """Expand ~ in a path."""
    return Path(p).expanduser()


def parse_timestamp(value: str | None) -> datetime | None:
    """Parse an ISO date or datetime string into an aware UTC datetime."""
    if not value:
        return None
    parsed = datetime.fromisoformat(value)
    if parsed.tzinfo is None:
        parsed = parsed.replace(tzinfo=timezone.utc)
    return parsed.astimezone(timezone.utc)


def load_config(path: Path | None = None) -> Config:
    """Load configuration from a JSON file, falling back to defaults.

    Args:
        path: Path to config file. Defaults to ~/.commit-indexer/config.json.

    Returns:
        Loaded Config instance with all paths expanded.
    """
    config_path = path or DEFAULT_CONFIG_PATH

    if config_path.exists():
        logger.info("Loading config from %s", config_path)
        with open(config_path) as f:
            data = json.load(f)
    else:
        logger.info("No config file found at %s, using defaults", config_path)
        data = {}

    repositories = {
        name: _expand_path(p) for name, p in data.get("repositories", {}).items()
    }
    visible_paths = {
        name: list(paths) for name, paths in data.get("visible_paths", {}).items()
    }

    window_duration_days = int(data.get("window_duration_days", 0))
    if window_duration_days < 0:
        logger.warning(
            "Negative window_duration_days (%d) in config, using 0",
            window_duration_days,
        )
        window_duration_days = 0

    config = Config(
        db_path=_expand_path(data.get("db_path", str(DEFAULT_DB_PATH))),
        window_duration_days=window_duration_days,
        earliest_history=parse_timestamp(data.get("earliest_history")),
        history_in_months=data.get("history_in_months", 12),
        default_enabled=data.get("default_enabled", True),
        rate_limit_per_second=data.get("rate_limit_per_second", 10.0),
        rate_limit_burst=data.get("rate_limit_burst", 1),
        max_failures=data.get("max_failures", 10),
        repositories=repositories,
        visible_paths=visible_paths,
        disabled_repositories=set(data.get("disabled_repositories", [])),
    )

    return config


def save_config(config: Config, path: Path | None = None) -> None:
    """Save configuration to a JSON file, preserving unknown keys.

    Reads the existing file first (if present) so that keys not managed
    by this application are kept intact.

    Args:
        config: The Config instance to persist.
        path: Path to config file. Defaults to ~/.commit-indexer/config.json.
    """
    config_path = path or DEFAULT_CONFIG_PATH

    # Read existing data to preserve unknown keys
    existing: dict = {}
    if config_path.exists():
        with open(config_path) as f:
            existing = json.load(f)

    existing["db_path"] = str(config.db_path)
    existing["window_duration_days"] = config.window_duration_days
    existing["earliest_history"] = (
        config.earliest_history.isoformat() if config.earliest_history else None
    )
    existing["history_in_months"] = config.history_in_months
    existing["default_enabled"] = config.default_enabled
    existing["rate_limit_per_second"] = config.rate_limit_per_second
    existing["rate_limit_burst"] = config.rate_limit_burst
    existing["max_failures"] = config.max_failures
    existing["repositories"] = {
        name: str(p) for name, p in config.repositories.items()
    }
    existing["visible_paths"] = config.visible_paths
    existing["disabled_repositories"] = sorted(config.disabled_repositories)

    config_path.parent.mkdir(parents=True, exist_ok=True)
    with open(config_path, "w") as f:
        json.dump(existing, f, indent=2)
        f.write("\n")

    logger.info("Saved config to %s", config_path)
