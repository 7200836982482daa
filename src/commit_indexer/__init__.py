"""commit-indexer: incremental, windowed index of repository commit history."""

__version__ = "0.1.0"
