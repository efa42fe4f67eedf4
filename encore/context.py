"""
Execution contexts and the self-expiring store that holds them.
"""

from __future__ import annotations

import contextvars
import threading
import time
import uuid
from collections.abc import Callable, Iterator
from contextlib import contextmanager
from dataclasses import dataclass, field
from typing import Any

import structlog

from encore.config import EncoreConfig, get_config

logger = structlog.get_logger(__name__)

CLEANUP_THRESHOLD = 10
RECORD_TTL_SECONDS = 60

# Shared by both sweep passes; only ever acquired without blocking
_sweep_lock = threading.Lock()

_current_context_id: contextvars.ContextVar[str | None] = contextvars.ContextVar(
    "encore_current_context_id", default=None
)


@dataclass
class ExecutionContext:
    """Correlation state for one unit of work."""

    record_id: str
    replay_id: str | None = None
    created_at: float = field(default_factory=time.time)
    method_signature_hashes: set[int] = field(default_factory=set)
    cached_replay_results: dict[str, Any] = field(default_factory=dict)
    attachments: dict[str, Any] = field(default_factory=dict)

    def is_record(self) -> bool:
        return self.replay_id is None

    def is_replay(self) -> bool:
        return self.replay_id is not None

    def clear(self) -> None:
        self.method_signature_hashes.clear()
        self.cached_replay_results.clear()
        self.attachments.clear()


class ContextStore:
    """
    Context id -> ExecutionContext, with opportunistic expiry.

    Removed contexts move to a cold store (allocated on the first lookup
    miss) so late callbacks can still read them. Both stores are swept
    inside ``remove`` once they exceed CLEANUP_THRESHOLD entries; entries
    whose age reaches RECORD_TTL_SECONDS are cleared and dropped. A sweep
    that cannot take the lock is skipped.
    """

    def __init__(self, clock: Callable[[], float] = time.time):
        self.clock = clock
        self._primary: dict[str, ExecutionContext] = {}
        self._cold: dict[str, ExecutionContext] | None = None

    def __len__(self) -> int:
        return len(self._primary)

    def __contains__(self, context_id: object) -> bool:
        return context_id in self._primary

    @property
    def cold_size(self) -> int:
        return len(self._cold) if self._cold is not None else 0

    def get(self, context_id: str | None) -> ExecutionContext | None:
        context = self._primary.get(context_id) if context_id is not None else None
        if context is not None:
            return context

        if self._cold is None:
            self._cold = {}
        if context_id is None:
            return None
        return self._cold.get(context_id)

    def put(self, context: ExecutionContext) -> None:
        self._primary[context.record_id] = context

    def remove(self, context_id: str) -> ExecutionContext | None:
        context = self._primary.pop(context_id, None)
        self._sweep()
        if self._cold is not None and context is not None:
            self._cold[context_id] = context
        return context

    def _sweep(self) -> None:
        now = self.clock()
        if self._cold is not None and len(self._cold) > CLEANUP_THRESHOLD:
            self._evict_expired(self._cold, now, "cold")
        if len(self._primary) > CLEANUP_THRESHOLD:
            self._evict_expired(self._primary, now, "primary")

    def _evict_expired(self, store: dict[str, ExecutionContext], now: float, name: str) -> None:
        if not _sweep_lock.acquire(blocking=False):
            return
        try:
            expired = [
                context_id
                for context_id, context in list(store.items())
                if now - context.created_at >= RECORD_TTL_SECONDS
            ]
            for context_id in expired:
                context = store.pop(context_id, None)
                if context is not None:
                    context.clear()
            if expired:
                logger.debug("context.sweep", store=name, evicted=len(expired), remaining=len(store))
        finally:
            _sweep_lock.release()


class ContextManager:
    """
    Execution-context provider.

    The current context id travels in a ContextVar, so it follows threads
    started with copied contexts and asyncio tasks.
    """

    def __init__(self, store: ContextStore | None = None, config: EncoreConfig | None = None):
        self.store = store or ContextStore()
        self._config = config

    @property
    def config(self) -> EncoreConfig:
        return self._config or get_config()

    def enter(
        self,
        record_id: str | None = None,
        replay_id: str | None = None,
    ) -> contextvars.Token[str | None]:
        """Create a context, store it and make it current."""
        context = self._open(record_id, replay_id)
        return _current_context_id.set(context.record_id)

    def _open(self, record_id: str | None, replay_id: str | None) -> ExecutionContext:
        context = ExecutionContext(
            record_id=record_id or f"rc_{uuid.uuid4().hex[:12]}",
            replay_id=replay_id,
            created_at=self.store.clock(),
        )
        self.store.put(context)
        return context

    def exit(self, token: contextvars.Token[str | None]) -> None:
        """Unbind the current context and remove it from the store."""
        context_id = _current_context_id.get()
        _current_context_id.reset(token)
        if context_id is not None:
            self.store.remove(context_id)

    @contextmanager
    def session(
        self,
        record_id: str | None = None,
        replay_id: str | None = None,
    ) -> Iterator[ExecutionContext]:
        """
        Run a block inside a fresh execution context.

        Example:
            >>> with get_context_manager().session() as context:
            ...     service.lookup("id-1")
        """
        context = self._open(record_id, replay_id)
        token = _current_context_id.set(context.record_id)
        try:
            yield context
        finally:
            self.exit(token)

    def current_context_id(self) -> str | None:
        return _current_context_id.get()

    def current_context(self) -> ExecutionContext | None:
        return self.store.get(_current_context_id.get())

    def get(self, context_id: str | None) -> ExecutionContext | None:
        return self.store.get(context_id)

    def need_record_or_replay(self) -> bool:
        if not self.config.enabled:
            return False
        return self.current_context() is not None

    def need_record(self) -> bool:
        context = self.current_context()
        return self.config.enabled and context is not None and context.is_record()

    def need_replay(self) -> bool:
        context = self.current_context()
        return self.config.enabled and context is not None and context.is_replay()


# Global context manager instance
_context_manager: ContextManager | None = None


def get_context_manager() -> ContextManager:
    """Get the global context manager."""
    global _context_manager
    if _context_manager is None:
        _context_manager = ContextManager()
    return _context_manager


def set_context_manager(manager: ContextManager | None) -> None:
    """Set the global context manager (None resets it)."""
    global _context_manager
    _context_manager = manager
