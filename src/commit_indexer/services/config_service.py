"""Configuration service for commit-indexer.

Provides a high-level interface for loading, saving, and querying configuration.
"""

import logging
from pathlib import Path

from commit_indexer.config import Config, load_config, save_config

logger = logging.getLogger(__name__)


class ConfigService:
    """Service for managing application configuration."""

    def load(self, path: Path | None = None) -> Config:
        """Load configuration from disk.

        Args:
            path: Optional config file path. Defaults to ~/.commit-indexer/config.json.

        Returns:
            Loaded Config instance.
        """
        return load_config(path)

    def save(self, config: Config, path: Path | None = None) -> None:
        """Save configuration to disk, preserving unknown keys.

        Args:
            config: Config instance to save.
            path: Optional config file path.
        """
        save_config(config, path)

    def add_repository(
        self, config: Config, name: str, repo_path: Path, path: Path | None = None
    ) -> None:
        """Register a repository in the config and persist it.

        Args:
            config: Application configuration, updated in place.
            name: Repository name.
            repo_path: Path to the repository's working tree.
            path: Optional config file path.
        """
        if name in config.repositories:
            logger.info(
                "Repository '%s' already configured, updating path to %s",
                name,
                repo_path,
            )
        config.repositories[name] = repo_path.expanduser().resolve()
        save_config(config, path)

    def get_repository_names(self, config: Config) -> list[str]:
        """Get all configured repository names, sorted."""
        return sorted(config.repositories)
