"""
Type descriptors: reversible string encodings of a value's runtime shape.

A descriptor is one of:

    module.Type                          plain type
    module.Type-module.Arg               one type parameter
    module.Type-module.Key,module.Value  two type parameters
    module.Seq-module.Inner,E1,E2,...    sequence of sequences, one element
                                         type per inner sequence

``describe`` builds a descriptor from a value and ``resolve`` turns a
descriptor back into a type handle (a class, or a subscripted alias such as
``dict[str, int]``) that a serializer can decode into. Descriptors are
persisted next to recorded results, so their format is a stable contract.

Generic user classes are not introspected. A class whose instances should be
described with their type arguments registers, ahead of time, how to reach
the value held by each type parameter:

    registry.builder(Page).parameter("T", "items", sequence=True).register()

    describe(Page(items=[1, 2], total=2))  # "app.models.Page-builtins.int"
"""

from __future__ import annotations

import array
import collections
import importlib
import operator
from collections.abc import Callable, Collection, Mapping
from dataclasses import dataclass
from typing import Any, Generic, TypeVar, get_args, get_origin

import structlog

from encore.errors import TypeResolutionError

logger = structlog.get_logger(__name__)

T = TypeVar("T")

SEPARATOR = "-"
COMMA = ","
# Stand-in for a mapping key or value that is None
DEFAULT_TYPE_NAME = "builtins.str"

_NULL_WORDS = frozenset({"None", "null"})
_SEQUENCE_NAMES = frozenset(
    {
        "builtins.list",
        "builtins.set",
        "builtins.frozenset",
        "builtins.tuple",
        "collections.deque",
    }
)
# Collections that are values, not containers of elements
_NOT_COLLECTIONS = (str, bytes, bytearray, memoryview, array.array, Mapping)
ARRAY_TYPES = (bytes, bytearray, memoryview, array.array)

# Builtin containers do not expose __parameters__
_BUILTIN_ARITY: dict[type, int] = {
    list: 1,
    set: 1,
    frozenset: 1,
    tuple: 1,
    collections.deque: 1,
    dict: 2,
    collections.OrderedDict: 2,
    collections.defaultdict: 2,
}

# Append-only, keyed by descriptor string
_TYPE_CACHE: dict[str, Any] = {}


@dataclass(frozen=True)
class Maybe(Generic[T]):
    """Zero-or-one value holder, the runtime shape of an optional result."""

    value: T | None = None

    @classmethod
    def of(cls, value: T) -> Maybe[T]:
        return cls(value)

    @classmethod
    def empty(cls) -> Maybe[Any]:
        return cls()

    def is_present(self) -> bool:
        return self.value is not None


# =============================================================================
# Generic registry
# =============================================================================


@dataclass(frozen=True)
class TypeParameterBinding:
    """How to reach the value that determines one type parameter."""

    name: str
    accessor: Callable[[Any], Any]
    sequence: bool = False


class GenericTypeBuilder:
    """Collects the parameter bindings of one generic class."""

    def __init__(self, registry: GenericRegistry, cls: type):
        self._registry = registry
        self._cls = cls
        self._bindings: list[TypeParameterBinding] = []

    def parameter(
        self,
        name: str,
        accessor: str | Callable[[Any], Any],
        *,
        sequence: bool = False,
    ) -> GenericTypeBuilder:
        """
        Bind a type parameter to the value that carries it.

        Args:
            name: Type parameter name, for diagnostics ("T", "K")
            accessor: Attribute name or callable returning the held value
            sequence: The held value is a sequence of the parameter type
                (a ``list[T]`` field) rather than a single value
        """
        if isinstance(accessor, str):
            accessor = operator.attrgetter(accessor)
        self._bindings.append(TypeParameterBinding(name, accessor, sequence))
        return self

    def register(self) -> type:
        self._registry.register(self._cls, *self._bindings)
        return self._cls


class GenericRegistry:
    """Explicit type-parameter accessors for generic user classes."""

    def __init__(self) -> None:
        self._bindings: dict[type, tuple[TypeParameterBinding, ...]] = {}

    def builder(self, cls: type) -> GenericTypeBuilder:
        return GenericTypeBuilder(self, cls)

    def register(self, cls: type, *bindings: TypeParameterBinding) -> None:
        if len(bindings) not in (1, 2):
            raise ValueError(
                f"{type_name(cls)} must bind one or two type parameters, got {len(bindings)}"
            )
        self._bindings[cls] = tuple(bindings)

    def unregister(self, cls: type) -> None:
        self._bindings.pop(cls, None)

    def bindings(self, cls: type) -> tuple[TypeParameterBinding, ...] | None:
        """Bindings for ``cls``, falling back to its nearest registered ancestor."""
        for klass in cls.__mro__:
            found = self._bindings.get(klass)
            if found is not None:
                return found
        return None


registry = GenericRegistry()


# =============================================================================
# Helpers
# =============================================================================


def type_name(obj: Any) -> str:
    """Qualified name of a class (or of a typing special form)."""
    qualname = getattr(obj, "__qualname__", None) or getattr(obj, "_name", None)
    if qualname is None:
        return repr(obj)
    module = getattr(obj, "__module__", None)
    return f"{module}.{qualname}" if module else qualname


def raw_type(handle: Any) -> Any:
    """The class behind a type handle (``list`` for ``list[int]``)."""
    return get_origin(handle) or handle


def type_arity(cls: Any) -> int:
    """Number of type parameters ``cls`` takes."""
    bindings = registry.bindings(cls) if isinstance(cls, type) else None
    if bindings is not None:
        return len(bindings)
    if cls in _BUILTIN_ARITY:
        return _BUILTIN_ARITY[cls]
    parameters = getattr(cls, "__parameters__", ())
    return len(parameters) if isinstance(parameters, tuple) else 0


def is_collection(value: Any) -> bool:
    """True for sequence-like containers (lists, tuples, sets, deques, views)."""
    return isinstance(value, Collection) and not isinstance(value, _NOT_COLLECTIONS)


def is_collection_name(name: str | None) -> bool:
    """True when ``name`` locates a sequence-like container class."""
    if not name:
        return False
    if name in _SEQUENCE_NAMES:
        return True
    try:
        cls = locate(name)
    except TypeResolutionError:
        return False
    return issubclass(cls, Collection) and not issubclass(cls, _NOT_COLLECTIONS)


def to_nested_collection(value: Any) -> Collection[Any] | None:
    """Return ``value`` if it is a non-empty sequence of sequences (or Nones)."""
    if not is_collection(value) or len(value) == 0:
        return None
    for inner in value:
        if inner is None:
            continue
        if not is_collection(inner):
            return None
    return value


def error_description(value: Any) -> str | None:
    """Best-effort type description of a value that failed to serialize."""
    try:
        if isinstance(value, tuple):
            return COMMA.join(type_name(type(item)) for item in value)
        return describe(value)
    except Exception:
        return type_name(type(value))


def locate(name: str) -> type:
    """
    Import the class a qualified name points at.

    Raises:
        TypeResolutionError: No importable module/attribute pair matches
    """
    parts = name.split(".")
    if len(parts) == 1:
        parts = ["builtins", name]

    for split in range(len(parts) - 1, 0, -1):
        module_name = ".".join(parts[:split])
        try:
            obj: Any = importlib.import_module(module_name)
        except (ImportError, ValueError, TypeError):
            continue
        try:
            for attr in parts[split:]:
                obj = getattr(obj, attr)
        except AttributeError as exc:
            raise TypeResolutionError(name) from exc
        if not isinstance(obj, type):
            raise TypeResolutionError(name, f"{name} is not a type")
        return obj

    raise TypeResolutionError(name)


# =============================================================================
# describe
# =============================================================================


def describe(value: Any) -> str | None:
    """Build the descriptor of a value's runtime shape (None for None)."""
    if value is None:
        return None

    if get_origin(value) is not None:
        return _describe_parameterized(value)

    if isinstance(value, Mapping):
        return _describe_mapping(value)

    if isinstance(value, Maybe):
        return _describe_maybe(value)

    if is_collection(value):
        return _describe_collection(value)

    if isinstance(value, type):
        return type_name(value)

    bindings = registry.bindings(type(value))
    if bindings is not None:
        return _describe_generic(value, bindings)

    return type_name(type(value))


def _describe_mapping(value: Mapping[Any, Any]) -> str:
    name = type_name(type(value))
    if not value:
        return name

    arity = type_arity(type(value))
    if arity == 0:
        return name

    # Only the first entry is inspected
    key, item = next(iter(value.items()))
    item_name = DEFAULT_TYPE_NAME if item is None else describe(item)
    if arity == 1:
        return f"{name}{SEPARATOR}{item_name}"

    key_name = DEFAULT_TYPE_NAME if key is None else type_name(type(key))
    return f"{name}{SEPARATOR}{key_name}{COMMA}{item_name}"


def _describe_maybe(value: Maybe[Any]) -> str:
    name = type_name(type(value))
    if value.value is None:
        return name
    return f"{name}{SEPARATOR}{describe(value.value)}"


def _describe_collection(value: Collection[Any]) -> str:
    """
    Describe a sequence.

    list[str]        -> builtins.list-builtins.str
    list[list[...]]  -> builtins.list-builtins.list,builtins.str,builtins.int
    """
    name = type_name(type(value))
    if len(value) == 0:
        return name

    parts: list[str] = []
    inner_type_added = False
    for inner in value:
        if inner is None:
            continue

        if not is_collection(inner):
            return f"{name}{SEPARATOR}{describe(inner)}"

        if not inner_type_added:
            parts.append(type_name(type(inner)))
            inner_type_added = True

        # Elements of one inner sequence are assumed to share a type
        for element in inner:
            if element is None:
                continue
            parts.append(type_name(type(element)))
            break

    return f"{name}{SEPARATOR}{COMMA.join(parts)}"


def _describe_parameterized(handle: Any) -> str:
    name = type_name(get_origin(handle))
    args = get_args(handle)
    if args and args[0] is not None:
        return f"{name}{SEPARATOR}{describe(args[0])}"
    return name


def _describe_generic(value: Any, bindings: tuple[TypeParameterBinding, ...]) -> str:
    parts: list[str] = []
    for binding in bindings:
        try:
            held = binding.accessor(value)
        except Exception as exc:
            logger.warning(
                "typedesc.describe",
                reason="type parameter accessor failed",
                type=type_name(type(value)),
                parameter=binding.name,
                error=repr(exc),
            )
            held = None

        nested = describe(held)
        if binding.sequence:
            nested = _strip_sequence_names(nested)
        parts.append(nested or "")

    return f"{type_name(type(value))}{SEPARATOR}{COMMA.join(parts)}"


def _strip_sequence_names(descriptor: str | None) -> str:
    """
    Drop sequence wrappers so the descriptor names the held type.

    app.Page-builtins.list-builtins.str would otherwise decode as a page of
    lists; builtins.list-builtins.str becomes builtins.str.
    """
    if not descriptor:
        return ""
    kept = [
        part
        for part in descriptor.split(SEPARATOR)
        if part not in _NULL_WORDS and not is_collection_name(part)
    ]
    return SEPARATOR.join(kept)


# =============================================================================
# resolve
# =============================================================================


def resolve(descriptor: str | None) -> Any:
    """
    Turn a descriptor back into a type handle.

    Returns None for an empty descriptor, for a lone separator, and when the
    raw type cannot be located. Never raises.
    """
    if not descriptor or descriptor == SEPARATOR:
        return None

    cached = _TYPE_CACHE.get(descriptor)
    if cached is not None:
        return cached

    raw_name, _, arguments = descriptor.partition(SEPARATOR)
    try:
        raw = locate(raw_name)
        handle = _parameterize(raw, arguments) if arguments else raw
    except TypeResolutionError as exc:
        logger.warning("typedesc.resolve", descriptor=descriptor, error=str(exc))
        return None
    except Exception as exc:
        logger.warning("typedesc.resolve", descriptor=descriptor, error=repr(exc))
        return None

    _TYPE_CACHE[descriptor] = handle
    return handle


def _parameterize(raw: type, arguments: str) -> Any:
    arity = type_arity(raw)
    if arity == 1:
        args: tuple[Any, ...] = (_resolve_argument(arguments),)
    elif arity == 2:
        first, _, second = arguments.partition(COMMA)
        args = (_resolve_argument(first), _resolve_argument(second))
    else:
        return raw

    if raw is tuple:
        return tuple[args[0], ...]
    try:
        return raw[args] if len(args) > 1 else raw[args[0]]
    except TypeError:
        # Registered arity on a class that does not support subscription
        return raw


def _resolve_argument(descriptor: str) -> Any:
    handle = resolve(descriptor)
    return Any if handle is None else handle


def clear_cache() -> None:
    """Forget resolved descriptors (tests only; the cache is append-only at runtime)."""
    _TYPE_CACHE.clear()
