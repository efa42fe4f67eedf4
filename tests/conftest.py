"""
Pytest configuration and fixtures for Encore tests.

Every test runs against a fresh configuration rooted in a temporary
directory, with the process-wide serializer, store, ignore policy and
context manager reset.
"""

import logging
from pathlib import Path
from typing import Generator

import pytest
import structlog

from encore import serializer, typedesc
from encore.config import EncoreConfig, set_config
from encore.context import ContextManager, get_context_manager, set_context_manager
from encore.ignore import set_ignore_policy
from encore.interceptor import uninstall_interceptors
from encore.mocker import Mocker, MockStrategy
from encore.storage import set_storage


class MemoryMockStore:
    """In-memory mock store; keeps mockers in record order."""

    def __init__(self) -> None:
        self.mockers: list[Mocker] = []

    def record_mocker(self, mocker: Mocker) -> None:
        self.mockers.append(mocker.model_copy(deep=True))

    def replay_mocker(self, query: Mocker, strategy: MockStrategy = MockStrategy.FIND_LAST) -> Mocker | None:
        for mocker in reversed(self.mockers):
            if mocker.operation_name != query.operation_name:
                continue
            if strategy == MockStrategy.FIND_LAST and mocker.target_request.body != query.target_request.body:
                continue
            return mocker
        return None

    def check_response_mocker(self, mocker: Mocker | None) -> bool:
        return mocker is not None and bool(mocker.target_response.body)


@pytest.fixture(autouse=True)
def encore_config(tmp_path: Path) -> Generator[EncoreConfig, None, None]:
    """Install a temporary configuration and reset process-wide state."""
    config = EncoreConfig(storage_dir=tmp_path / ".encore")
    set_config(config)
    set_storage(None)
    set_ignore_policy(None)
    set_context_manager(None)
    serializer.install(None)
    typedesc.clear_cache()

    yield config

    uninstall_interceptors()
    set_config(None)
    set_storage(None)
    set_ignore_policy(None)
    set_context_manager(None)
    serializer.install(None)

    # init() and the CLI bind a handler to the stream captured for this test
    structlog.reset_defaults()
    encore_logger = logging.getLogger("encore")
    encore_logger.handlers.clear()
    encore_logger.setLevel(logging.NOTSET)
    encore_logger.propagate = True


@pytest.fixture
def memory_store() -> MemoryMockStore:
    """An in-memory store installed as the process-wide store."""
    store = MemoryMockStore()
    set_storage(store)
    return store


@pytest.fixture
def context_manager() -> ContextManager:
    """The process-wide context manager."""
    return get_context_manager()
