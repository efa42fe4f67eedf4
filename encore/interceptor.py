"""
Interceptors for configured methods.

Two ways to route a call through the record/replay engine:

- ``@mockable`` on functions and methods you own;
- ``DynamicClassInterceptor``, which monkey-patches a method named by a
  ``DynamicClassEntity`` in the configuration (installed for every entry
  by ``install_interceptors``).

In record mode the real call runs and its result (or exception) is
recorded. In replay mode the recorded result is returned instead and the
real call is skipped. Engine failures are logged and never change what
the call itself returns or raises.
"""

from __future__ import annotations

import functools
import inspect
import typing
from typing import Any, Callable

import structlog

from encore import typedesc
from encore.config import DynamicClassEntity, EncoreConfig, get_config
from encore.context import ContextManager, get_context_manager
from encore.errors import TypeResolutionError
from encore.extractor import CallExtractor, owner_name, parameter_names

logger = structlog.get_logger(__name__)

_MISS = object()


def find_entity(func: Callable[..., Any], config: EncoreConfig | None = None) -> DynamicClassEntity | None:
    """The configured entity naming ``func``, if any."""
    cfg = config or get_config()
    owner = owner_name(func)
    name = getattr(func, "__name__", None)
    for entity in cfg.dynamic_classes:
        if entity.clazz_name != owner or not entity.operation or entity.operation != name:
            continue
        if entity.parameter_types and entity.parameter_types != _annotated_parameter_types(func):
            continue
        return entity
    return None


def _annotated_parameter_types(func: Callable[..., Any]) -> str:
    try:
        hints = typing.get_type_hints(func)
    except Exception:
        return ""
    names = parameter_names(func)
    return ",".join(typedesc.type_name(typedesc.raw_type(hints[name])) for name in names if name in hints)


def need_record_or_replay(
    func: Callable[..., Any] | None,
    config: EncoreConfig | None = None,
    context_manager: ContextManager | None = None,
) -> bool:
    """True when ``func`` is a configured site and the current context records or replays."""
    if func is None:
        return False
    manager = context_manager or get_context_manager()
    if not manager.need_record_or_replay():
        return False
    return find_entity(func, config) is not None


def _call_args(func: Callable[..., Any], args: tuple[Any, ...], kwargs: dict[str, Any]) -> tuple[Any, ...]:
    """Positional view of a call, defaults applied and receiver dropped."""
    bound = inspect.signature(func).bind(*args, **kwargs)
    bound.apply_defaults()
    values = list(bound.arguments.items())
    if values and values[0][0] in ("self", "cls"):
        values = values[1:]
    return tuple(value for _, value in values)


def _start(
    func: Callable[..., Any],
    args: tuple[Any, ...],
    kwargs: dict[str, Any],
    key: str | None,
    actual_type: type | str | None,
    owner: Any,
) -> tuple[CallExtractor | None, Any]:
    """Build the extractor and, in replay mode, look up the mock."""
    try:
        manager = get_context_manager()
        if not manager.need_record_or_replay():
            return None, _MISS

        extractor = CallExtractor(func, _call_args(func, args, kwargs), key, actual_type, owner=owner)
        if manager.need_replay():
            result = extractor.replay()
            if result.not_ignore_mock_result:
                return extractor, result.value
        return extractor, _MISS
    except Exception as exc:
        logger.warning("interceptor.intercept", function=getattr(func, "__qualname__", repr(func)), error=str(exc))
        return None, _MISS


def _record(extractor: CallExtractor | None, value: Any) -> None:
    if extractor is None or not extractor.context_manager.need_record():
        return
    try:
        extractor.record_response(value)
    except Exception as exc:
        logger.warning("interceptor.record", signature=extractor.dynamic_signature, error=str(exc))


def _replayed(value: Any) -> Any:
    if isinstance(value, BaseException):
        raise value
    return value


def wrap(
    func: Callable[..., Any],
    key: str | None = None,
    actual_type: type | str | None = None,
    owner: Any = None,
) -> Callable[..., Any]:
    """Route calls to ``func`` through the record/replay engine."""
    if inspect.iscoroutinefunction(func):

        @functools.wraps(func)
        async def async_wrapper(*args: Any, **kwargs: Any) -> Any:
            extractor, mocked = _start(func, args, kwargs, key, actual_type, owner)
            if mocked is not _MISS:
                return _replayed(mocked)
            try:
                result = await func(*args, **kwargs)
            except Exception as exc:
                _record(extractor, exc)
                raise
            _record(extractor, result)
            return result

        return async_wrapper

    @functools.wraps(func)
    def wrapper(*args: Any, **kwargs: Any) -> Any:
        extractor, mocked = _start(func, args, kwargs, key, actual_type, owner)
        if mocked is not _MISS:
            return _replayed(mocked)
        try:
            result = func(*args, **kwargs)
        except Exception as exc:
            _record(extractor, exc)
            raise
        _record(extractor, result)
        return result

    return wrapper


def mockable(
    key: str | None = None,
    actual_type: type | str | None = None,
) -> Callable[[Callable[..., Any]], Callable[..., Any]]:
    """
    Mark a function or method for record/replay.

    Args:
        key: Key expression selecting the argument(s) that identify a
            call, e.g. ``"#user_id"`` or ``"$1.id"``
        actual_type: Element type appended to bare result descriptors

    Example:
        >>> class UserService:
        ...     @mockable(key="#user_id")
        ...     def load(self, user_id: str) -> dict[str, str]:
        ...         ...
    """

    def decorator(func: Callable[..., Any]) -> Callable[..., Any]:
        return wrap(func, key=key, actual_type=actual_type)

    return decorator


class DynamicClassInterceptor:
    """Patches the method a configured entity names."""

    def __init__(self, entity: DynamicClassEntity, config: EncoreConfig | None = None):
        self.entity = entity
        self._config = config
        self._owner: type | None = None
        self._original: Any = None
        self._installed = False

    @property
    def installed(self) -> bool:
        return self._installed

    def install(self) -> None:
        """Install the interceptor by monkey-patching the owning class."""
        if self._installed or not self.entity.operation:
            return

        try:
            owner = typedesc.locate(self.entity.clazz_name)
        except TypeResolutionError as exc:
            logger.warning("interceptor.install", entity=self.entity.clazz_name, error=str(exc))
            return

        original = owner.__dict__.get(self.entity.operation)
        if original is None:
            logger.warning(
                "interceptor.install",
                entity=self.entity.clazz_name,
                reason=f"no method {self.entity.operation!r}",
            )
            return

        wrapper_type: Callable[[Any], Any] | None = None
        func = original
        if isinstance(original, (staticmethod, classmethod)):
            wrapper_type = type(original)
            func = original.__func__

        wrapped = self._wrap(func)
        setattr(owner, self.entity.operation, wrapper_type(wrapped) if wrapper_type else wrapped)

        self._owner = owner
        self._original = original
        self._installed = True
        logger.debug("interceptor.install", entity=self.entity.clazz_name, operation=self.entity.operation)

    def _wrap(self, func: Callable[..., Any]) -> Callable[..., Any]:
        config = self._config
        wrapped = wrap(func, owner=self.entity.clazz_name)

        if inspect.iscoroutinefunction(func):

            @functools.wraps(func)
            async def async_gate(*args: Any, **kwargs: Any) -> Any:
                if not need_record_or_replay(func, config):
                    return await func(*args, **kwargs)
                return await wrapped(*args, **kwargs)

            return async_gate

        @functools.wraps(func)
        def gate(*args: Any, **kwargs: Any) -> Any:
            if not need_record_or_replay(func, config):
                return func(*args, **kwargs)
            return wrapped(*args, **kwargs)

        return gate

    def uninstall(self) -> None:
        """Remove the interceptor and restore the original method."""
        if not self._installed or self._owner is None:
            return

        setattr(self._owner, self.entity.operation, self._original)
        self._owner = None
        self._original = None
        self._installed = False


# Installed interceptors, in install order
_interceptors: list[DynamicClassInterceptor] = []


def get_interceptors() -> list[DynamicClassInterceptor]:
    return list(_interceptors)


def install_interceptors(config: EncoreConfig | None = None) -> None:
    """Install an interceptor for every configured entity with an operation."""
    cfg = config or get_config()
    for entity in cfg.dynamic_classes:
        if not entity.operation:
            continue
        interceptor = DynamicClassInterceptor(entity, config)
        interceptor.install()
        if interceptor.installed:
            _interceptors.append(interceptor)


def uninstall_interceptors() -> None:
    """Uninstall all interceptors."""
    while _interceptors:
        _interceptors.pop().uninstall()
