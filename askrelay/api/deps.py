import logging
from functools import lru_cache

from google.cloud.sql.connector import Connector

from askrelay.config import get_settings
from askrelay.services.history import (
    CloudSqlHistoryRepository,
    HistorySink,
    HistoryWriter,
    MemoryHistoryRepository,
)
from askrelay.services.upstream import UpstreamClient

settings = get_settings() # Get settings at module level


# --- Upstream provider ---

@lru_cache()
def get_upstream_client() -> UpstreamClient:
    """Provides the process-wide UpstreamClient (created once, closed on shutdown)."""
    logging.info("Initializing UpstreamClient...")
    return UpstreamClient(settings)


# --- History store ---

@lru_cache()
def get_connector() -> Connector:
    """Initializes and provides a Cloud SQL Connector instance."""
    logging.info("Initializing Cloud SQL Connector...")
    return Connector()


@lru_cache()
def get_history_repo() -> HistorySink:
    """Provides the configured history repository."""
    if settings.history_backend == "memory":
        logging.info("Initializing in-memory history repository...")
        return MemoryHistoryRepository()
    connector = get_connector() if settings.cloud_sql_instance else None
    logging.info("Initializing CloudSqlHistoryRepository...")
    return CloudSqlHistoryRepository(settings=settings, connector=connector)


@lru_cache()
def get_history_writer() -> HistoryWriter:
    """Provides the background writer that persists finished answers."""
    return HistoryWriter(get_history_repo())
