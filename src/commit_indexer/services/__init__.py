"""Service layer for commit-indexer.

Wraps the indexer, stores and configuration for use by the CLI and by
anything that runs passes on a schedule.
"""

from commit_indexer.services.config_service import ConfigService
from commit_indexer.services.indexing_service import IndexingService
from commit_indexer.services.status_service import StatusService

__all__ = ["ConfigService", "IndexingService", "StatusService"]
