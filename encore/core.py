"""
Core Encore functionality - init, record/replay sessions and shutdown.
"""

from __future__ import annotations

import uuid
from collections.abc import Iterator
from contextlib import contextmanager

import structlog

from encore.config import EncoreConfig, get_config, set_config
from encore.context import ExecutionContext, get_context_manager
from encore.interceptor import install_interceptors, uninstall_interceptors
from encore.logs import configure_logging
from encore.serializer import Serializer, get_serializer, install
from encore.storage import MockStore, SqliteMockStore, set_storage

logger = structlog.get_logger(__name__)

_initialized: bool = False


def init(
    config: EncoreConfig | None = None,
    serializer: Serializer | None = None,
    storage: MockStore | None = None,
) -> EncoreConfig:
    """
    Initialize Encore.

    Call this once at startup, before any intercepted call runs. It
    installs the serializer facade, opens the mock store and patches every
    configured dynamic class.

    Args:
        config: Optional configuration override
        serializer: Optional serializer facade (the stock JSON + protobuf
            set otherwise)
        storage: Optional mock store (SQLite under ``storage_dir`` otherwise)

    Returns:
        The active configuration

    Example:
        >>> import encore
        >>> encore.init()
        >>> with encore.record():
        ...     service.lookup("id-1")
    """
    global _initialized

    if config:
        set_config(config)

    cfg = get_config()
    configure_logging(json_output=cfg.log_json, level="DEBUG" if cfg.enable_debug else "INFO")

    if serializer is not None:
        install(serializer)
    get_serializer()

    if storage is None:
        cfg.ensure_storage_dir()
        storage = SqliteMockStore(cfg.get_db_path())
    set_storage(storage)

    if _initialized:
        uninstall_interceptors()
    install_interceptors(cfg)

    _initialized = True
    logger.info("encore.init", storage_dir=str(cfg.storage_dir), dynamic_classes=len(cfg.dynamic_classes))
    return cfg


def stop() -> None:
    """Uninstall interceptors; recorded mocks stay in the store."""
    global _initialized
    uninstall_interceptors()
    _initialized = False


@contextmanager
def record(record_id: str | None = None) -> Iterator[ExecutionContext]:
    """
    Record intercepted calls made inside the block.

    Example:
        >>> with encore.record() as context:
        ...     service.lookup("id-1")
        >>> context.record_id
        'rc_...'
    """
    with get_context_manager().session(record_id=record_id) as context:
        yield context


@contextmanager
def replay(record_id: str, replay_id: str | None = None) -> Iterator[ExecutionContext]:
    """Serve intercepted calls inside the block from the mocks of ``record_id``."""
    replay_id = replay_id or f"rp_{uuid.uuid4().hex[:12]}"
    with get_context_manager().session(record_id=record_id, replay_id=replay_id) as context:
        yield context


def get_current_context() -> ExecutionContext | None:
    """Get the active execution context."""
    return get_context_manager().current_context()


def is_replay_mode() -> bool:
    """Check if we're currently in replay mode."""
    return get_context_manager().need_replay()
