"""
Invalid-operation markers and the mock ignore policy.
"""

from __future__ import annotations

import threading

import structlog

from encore.config import EncoreConfig, get_config

logger = structlog.get_logger(__name__)


class IgnorePolicy:
    """
    Tracks call sites whose serialization failed, and operations whose
    replayed mocks should not be substituted.
    """

    def __init__(self, config: EncoreConfig | None = None):
        self._config = config
        self._invalid_operations: set[str] = set()
        self._lock = threading.Lock()

    @property
    def config(self) -> EncoreConfig:
        return self._config or get_config()

    def invalid_operation(self, signature: str) -> bool:
        return signature in self._invalid_operations

    def add_invalid_operation(self, signature: str) -> None:
        with self._lock:
            if signature in self._invalid_operations:
                return
            self._invalid_operations.add(signature)
        logger.info("ignore.invalid_operation", signature=signature)

    def ignore_mock_result(self, type_name: str, method_name: str) -> bool:
        """True when ``Type.method`` (or the bare method) is excluded."""
        excluded = self.config.exclude_operations
        if not excluded:
            return False
        return f"{type_name}.{method_name}" in excluded or method_name in excluded

    def clear(self) -> None:
        with self._lock:
            self._invalid_operations.clear()


# Global ignore policy instance
_ignore_policy: IgnorePolicy | None = None


def get_ignore_policy() -> IgnorePolicy:
    """Get the global ignore policy."""
    global _ignore_policy
    if _ignore_policy is None:
        _ignore_policy = IgnorePolicy()
    return _ignore_policy


def set_ignore_policy(policy: IgnorePolicy | None) -> None:
    """Set the global ignore policy (None resets it)."""
    global _ignore_policy
    _ignore_policy = policy
