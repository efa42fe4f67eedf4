"""
Record/replay engine for one intercepted call.

The hook layer builds a ``CallExtractor`` per invocation, then either
calls ``record_response`` with the real result (record mode) or
``replay`` to fetch a recorded one (replay mode). Neither ever raises into
the instrumented application.
"""

from __future__ import annotations

import asyncio
import concurrent.futures
import hashlib
import inspect
import typing
from collections.abc import Callable, Mapping, Sequence
from typing import Any

import structlog

from encore import typedesc
from encore.config import EncoreConfig, get_config
from encore.context import ContextManager, ExecutionContext, get_context_manager
from encore.expression import generate_key
from encore.ignore import IgnorePolicy, get_ignore_policy
from encore.mocker import Mocker, MockResult, MockStrategy, create_dynamic_class
from encore.protobuf import FORMAT_ATTRIBUTE, PROTOBUF_FORMAT, ProtoJsonSerializer, is_protobuf_object
from encore.serializer import DEFAULT_SERIALIZER, Serializer, get_serializer
from encore.storage import MockStore, get_storage

logger = structlog.get_logger(__name__)

NEED_RECORD_TITLE = "dynamic.need_record"
NEED_REPLAY_TITLE = "dynamic.need_replay"

_FUTURE_TYPES = (concurrent.futures.Future, asyncio.Future)


def stable_hash(text: str) -> int:
    """Process-independent 64-bit hash of ``text``."""
    return int.from_bytes(hashlib.sha256(text.encode()).digest()[:8], "big", signed=True)


def owner_name(method: Callable[..., Any], owner: Any = None) -> str:
    """Qualified name of the class (or module) a method belongs to."""
    if owner is not None:
        return owner if isinstance(owner, str) else typedesc.type_name(owner)
    func = getattr(method, "__func__", method)
    module = getattr(func, "__module__", None) or "builtins"
    class_path = getattr(func, "__qualname__", "").rpartition(".")[0]
    return f"{module}.{class_path}" if class_path else module


def parameter_names(method: Callable[..., Any]) -> list[str]:
    """Parameter names, without the receiver."""
    try:
        names = list(inspect.signature(method).parameters)
    except (TypeError, ValueError):
        return []
    if names and names[0] in ("self", "cls"):
        names = names[1:]
    return names


def return_type(method: Callable[..., Any]) -> Any:
    """Raw declared return type of ``method``, or None when unknown."""
    try:
        hint = typing.get_type_hints(method).get("return")
    except Exception:
        return None
    return typedesc.raw_type(hint) if hint is not None else None


def result_size(result: Any) -> int:
    if typedesc.is_collection(result) or isinstance(result, (Mapping, *typedesc.ARRAY_TYPES)):
        return len(result)
    return 0


class CallExtractor:
    """Captures or substitutes the result of one intercepted call."""

    def __init__(
        self,
        method: Callable[..., Any],
        args: Sequence[Any],
        key_expression: str | None = None,
        actual_type: type | str | None = None,
        *,
        owner: Any = None,
        config: EncoreConfig | None = None,
        serializer: Serializer | None = None,
        store: MockStore | None = None,
        ignore_policy: IgnorePolicy | None = None,
        context_manager: ContextManager | None = None,
    ):
        self.config = config or get_config()
        self.serializer = serializer or get_serializer()
        self.ignore_policy = ignore_policy or get_ignore_policy()
        self.context_manager = context_manager or get_context_manager()
        self.proto_serializer = ProtoJsonSerializer()
        self._store = store

        self.type_name = owner_name(method, owner)
        self.method_name = getattr(method, "__name__", repr(method))
        self.args = tuple(args)
        self.actual_type = actual_type
        self.method_return_type = return_type(method)
        self.dynamic_signature = self._dynamic_signature()
        # Completion callbacks may run on other threads, after the session has
        # exited; they find the context and its ids by what was captured here
        self.context_id = self.context_manager.current_context_id()
        current = self.context_manager.get(self.context_id)
        self.replay_id = current.replay_id if current is not None else None
        self.method_key = self._build_method_key(method, key_expression)

        self.result: Any = None
        self.result_type: str | None = None
        self.serialized_result: str | None = None
        self.method_signature_key: str | None = None
        self.method_signature_key_hash: int | None = None

    @property
    def store(self) -> MockStore:
        if self._store is None:
            self._store = get_storage()
        return self._store

    @property
    def context(self) -> ExecutionContext | None:
        return self.context_manager.get(self.context_id)

    # =========================================================================
    # Record
    # =========================================================================

    def record_response(self, response: Any) -> None:
        """Record ``response`` (or, for futures, its eventual outcome)."""
        if self.ignore_policy.invalid_operation(self.dynamic_signature):
            logger.warning(
                NEED_RECORD_TITLE,
                reason="do not record invalid operation, can not serialize args or response",
                signature=self.dynamic_signature,
            )
            return

        if isinstance(response, _FUTURE_TYPES):
            response.add_done_callback(self._on_future_done)
            return

        self.result = response
        if not self._need_record():
            return

        self.result_type = self._build_result_type(typedesc.describe(response))
        mocker = self._make_mocker()
        if is_protobuf_object(response):
            mocker.target_response.attributes[FORMAT_ATTRIBUTE] = PROTOBUF_FORMAT
            self.serialized_result = self._serialize_protobuf(response)
        else:
            self.serialized_result = self._serialize(response)

        if response is not None and self.serialized_result is None:
            return

        mocker.target_response.body = self.serialized_result
        try:
            self.store.record_mocker(mocker)
        except Exception as exc:
            logger.warning(
                NEED_RECORD_TITLE,
                reason="can not record mocker",
                operation=mocker.operation_name,
                error=str(exc),
            )
            return

        logger.debug("dynamic.record", operation=mocker.operation_name, type=self.result_type)
        self._cache_method_signature()

    def _on_future_done(self, future: Any) -> None:
        try:
            if future.cancelled():
                logger.debug(NEED_RECORD_TITLE, reason="future cancelled", signature=self.dynamic_signature)
                return
            exc = future.exception()
            self.record_response(exc if exc is not None else future.result())
        except Exception as exc:
            logger.warning(NEED_RECORD_TITLE, reason="future callback failed", error=str(exc))

    def _need_record(self) -> bool:
        """
        Skip calls already recorded in this context with the same result
        shape, and results larger than the configured limit.
        """
        context = self.context
        if context is not None:
            self.method_signature_key = self._build_duplicate_method_key()
            self.method_signature_key_hash = stable_hash(self.method_signature_key)
            if self.method_signature_key_hash in context.method_signature_hashes:
                if self.config.enable_debug:
                    logger.warning(
                        NEED_RECORD_TITLE,
                        reason="do not record method, same method signature exists",
                        method_signature=self.method_signature_key,
                    )
                return False

        if self.result is None or isinstance(self.result, BaseException):
            return True

        try:
            size = result_size(self.result)
            if size > self.config.result_size_limit:
                logger.warning(
                    NEED_RECORD_TITLE,
                    reason="do not record method, result size exceeds limit",
                    size=size,
                    limit=self.config.result_size_limit,
                    method_signature=self.method_signature_key,
                )
                return False
        except Exception as exc:
            logger.warning(NEED_RECORD_TITLE, reason="can not compute result size", error=str(exc))
        return True

    def _build_duplicate_method_key(self) -> str:
        if self.result is None:
            return f"{self.type_name}_{self.method_name}_{self.method_key}_no_result"
        return f"{self.type_name}_{self.method_name}_{self.method_key}_has_result_{self._result_key()}"

    def _result_key(self) -> str:
        name = typedesc.type_name(type(self.result))
        if typedesc.is_collection(self.result) or isinstance(self.result, (Mapping, *typedesc.ARRAY_TYPES)):
            return f"{name}{len(self.result)}"
        return name

    def _cache_method_signature(self) -> None:
        context = self.context
        if context is not None and self.method_signature_key_hash is not None:
            context.method_signature_hashes.add(self.method_signature_key_hash)

    def _build_result_type(self, descriptor: str | None) -> str | None:
        if not descriptor or typedesc.SEPARATOR in descriptor:
            return descriptor

        if self.actual_type is not None and self.actual_type is not object:
            actual = self.actual_type if isinstance(self.actual_type, str) else typedesc.type_name(self.actual_type)
            return f"{descriptor}{typedesc.SEPARATOR}{actual}"

        entity = self.config.get_dynamic_entity(self.dynamic_signature)
        if entity is None or not entity.actual_type:
            return descriptor
        return f"{descriptor}{typedesc.SEPARATOR}{entity.actual_type}"

    # =========================================================================
    # Replay
    # =========================================================================

    def replay(self) -> MockResult:
        """Look up the recorded result for this call."""
        if self.ignore_policy.invalid_operation(self.dynamic_signature):
            logger.warning(
                NEED_REPLAY_TITLE,
                reason="do not replay invalid operation, can not serialize args or response",
                signature=self.dynamic_signature,
            )
            return MockResult.IGNORE

        key = self._build_cache_key()
        context = self.context
        cached_results = context.cached_replay_results if context is not None else {}

        replay_result = cached_results.get(key) if key is not None else None
        if replay_result is None:
            replay_mocker = self._find_mocker()
            if self.store.check_response_mocker(replay_mocker):
                replay_result = self._deserialize_result(replay_mocker)
            replay_result = self._restore_response(replay_result)
            # No key, no cache: calls without arguments may return different values
            if key is not None and replay_result is not None:
                cached_results[key] = replay_result

        ignore_mock_result = self.ignore_policy.ignore_mock_result(self.type_name, self.method_name)
        return MockResult.success(ignore_mock_result, replay_result)

    def _find_mocker(self) -> Mocker | None:
        try:
            return self.store.replay_mocker(self._make_mocker(), MockStrategy.FIND_LAST)
        except Exception as exc:
            logger.warning(NEED_REPLAY_TITLE, reason="can not query mock store", error=str(exc))
            return None

    def _deserialize_result(self, mocker: Mocker) -> Any:
        response = mocker.target_response
        if response.get_attribute(FORMAT_ATTRIBUTE) == PROTOBUF_FORMAT:
            try:
                return self.proto_serializer.deserialize(response.body or "", typedesc.resolve(response.type))
            except Exception as exc:
                logger.warning("serializer.deserialize", type=response.type, error=str(exc))
                return None
        return self.serializer.deserialize(response.body, response.type, DEFAULT_SERIALIZER)

    def _restore_response(self, result: Any) -> Any:
        """Wrap ``result`` in a resolved future when the method returns one."""
        declared = self.method_return_type
        if not isinstance(declared, type):
            return result

        if issubclass(declared, asyncio.Future):
            try:
                loop = asyncio.get_running_loop()
            except RuntimeError:
                logger.warning(NEED_REPLAY_TITLE, reason="no running event loop for replayed future")
                return result
            future: Any = loop.create_future()
        elif issubclass(declared, concurrent.futures.Future):
            future = concurrent.futures.Future()
        else:
            return result

        if isinstance(result, BaseException):
            future.set_exception(result)
        else:
            future.set_result(result)
        return future

    def _build_cache_key(self) -> str | None:
        if self.method_key:
            return f"{self.type_name}_{self.method_name}_{self.method_key}"
        return None

    # =========================================================================
    # Keys and serialization
    # =========================================================================

    def _dynamic_signature(self) -> str:
        if not self.args:
            return self.type_name + self.method_name
        return self.type_name + self.method_name + str(len(self.args))

    def _build_method_key(self, method: Callable[..., Any], key_expression: str | None) -> str | None:
        if not self.args:
            return None

        names = parameter_names(method)
        if key_expression:
            key = generate_key(key_expression, names, self.args)
            if key is not None:
                return key

        entity = self.config.get_dynamic_entity(self.dynamic_signature)
        if entity is not None and entity.additional_signature:
            key = generate_key(entity.additional_signature, names, self.args)
            if key is not None:
                return key

        return self._serialize(self.args)

    def _make_mocker(self) -> Mocker:
        mocker = create_dynamic_class(self.type_name, self.method_name)
        mocker.record_id = self.context_id
        mocker.replay_id = self.replay_id
        mocker.target_request.body = self.method_key
        mocker.target_response.body = self.serialized_result
        mocker.target_response.type = self.result_type
        return mocker

    def _serialize(self, value: Any) -> str | None:
        if self.ignore_policy.invalid_operation(self.dynamic_signature):
            return None
        try:
            return self.serializer.serialize_with_exception(value, DEFAULT_SERIALIZER)
        except Exception as exc:
            self._mark_invalid(value, exc)
            return None

    def _serialize_protobuf(self, value: Any) -> str | None:
        try:
            return self.proto_serializer.serialize(value)
        except Exception as exc:
            self._mark_invalid(value, exc)
            return None

    def _mark_invalid(self, value: Any, exc: Exception) -> None:
        self.ignore_policy.add_invalid_operation(self.dynamic_signature)
        logger.warning(
            "serializer.serialize",
            reason="can not serialize object",
            type=typedesc.error_description(value),
            error=str(exc),
        )
