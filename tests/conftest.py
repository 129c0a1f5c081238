"""Shared fixtures. The environment is primed before any askrelay import so
that module-level settings load without a real .env file."""

import os

os.environ.setdefault("UPSTREAM_API_KEY", "test-key")
os.environ.setdefault("UPSTREAM_URL", "https://upstream.test/v1/chat/completions")
os.environ.setdefault("HISTORY_BACKEND", "memory")

import pytest

from askrelay.config import Settings
from askrelay.services.history import HistoryWriter, MemoryHistoryRepository


@pytest.fixture
def settings() -> Settings:
    return Settings(
        _env_file=None,
        UPSTREAM_API_KEY="test-key",
        UPSTREAM_URL="https://upstream.test/v1/chat/completions",
        UPSTREAM_MODEL="deepseek/deepseek-chat",
    )


@pytest.fixture
def memory_repo() -> MemoryHistoryRepository:
    return MemoryHistoryRepository()


@pytest.fixture
def writer(memory_repo: MemoryHistoryRepository) -> HistoryWriter:
    return HistoryWriter(memory_repo)
