"""
Serialization facade.

Dispatches to named string serializers and handles the two shapes a plain
serializer cannot round-trip from a descriptor alone:

- sequences of sequences, whose inner sequences are serialized one by one
  and joined with ``SERIALIZE_SEPARATOR`` so each can be decoded against its
  own element type;
- dict value views, which are decoded as lists and rewrapped.

Build the facade once at startup and install it before recording or
replaying:

    serializer = Serializer.builder(JsonSerializer()).build()
    install(serializer)
"""

from __future__ import annotations

import re
from collections.abc import Collection, Iterable, Mapping
from functools import lru_cache
from types import MappingProxyType
from typing import Any, Protocol, runtime_checkable

import pydantic_core
import structlog
from google.protobuf import json_format
from google.protobuf.message import Message
from pydantic import TypeAdapter

from encore import typedesc
from encore.errors import (
    DeserializationError,
    SerializationError,
    SerializerNotConfiguredError,
    TypeResolutionError,
)
from encore.protobuf import ProtoJsonSerializer

logger = structlog.get_logger(__name__)

# Exceptions always go through this serializer
DEFAULT_SERIALIZER = "json"
SERIALIZE_SEPARATOR = "A@R#E$X"
EMPTY_LIST_JSON = "[]"
NULL_STRING = "null"

_DICT_VALUES_TYPE = "builtins.dict_values"
_LIST_TYPE = "builtins.list"
_EXCEPTION_SUFFIX = re.compile(r"(Error|Exception)$")
_LOG_VALUE_LIMIT = 200


@runtime_checkable
class StringSerializer(Protocol):
    """A pluggable value <-> string codec."""

    name: str
    is_default: bool

    def serialize(self, value: Any) -> str: ...

    def deserialize(self, text: str, type_handle: Any) -> Any: ...


@lru_cache(maxsize=1024)
def _type_adapter(type_handle: Any) -> TypeAdapter[Any]:
    return TypeAdapter(type_handle)


def _to_json_fallback(value: Any) -> Any:
    if isinstance(value, Message):
        return json_format.MessageToDict(value)
    if typedesc.is_collection(value):
        return list(value)
    if isinstance(value, Mapping):
        return dict(value)
    raise SerializationError(typedesc.type_name(type(value)))


class JsonSerializer:
    """JSON codec backed by pydantic."""

    name = DEFAULT_SERIALIZER
    is_default = True

    def serialize(self, value: Any) -> str:
        if isinstance(value, BaseException):
            payload = {"message": str(value), "args": list(value.args)}
            return pydantic_core.to_json(payload, fallback=repr).decode()
        return pydantic_core.to_json(value, fallback=_to_json_fallback).decode()

    def deserialize(self, text: str, type_handle: Any) -> Any:
        raw = typedesc.raw_type(type_handle)
        if isinstance(raw, type) and issubclass(raw, BaseException):
            payload = pydantic_core.from_json(text)
            args = payload.get("args") or [payload.get("message", "")]
            return raw(*args)
        return _type_adapter(type_handle).validate_json(text)


class SerializerBuilder:
    """Collects serializers; exactly one must be the default."""

    def __init__(self, serializers: StringSerializer | Iterable[StringSerializer]):
        self._default: StringSerializer | None = None
        self._serializers: dict[str, StringSerializer] = {}

        if isinstance(serializers, StringSerializer):
            self._default = serializers
            return

        for serializer in serializers:
            if serializer.is_default:
                self._default = serializer
                continue
            self._serializers[serializer.name] = serializer

    def add_serializer(self, name: str, serializer: StringSerializer) -> SerializerBuilder:
        self._serializers[name] = serializer
        return self

    def build(self) -> Serializer:
        if self._default is None:
            logger.error("serializer.build", reason="default serializer is not set")
            raise SerializerNotConfiguredError()
        return Serializer(self._default, MappingProxyType(dict(self._serializers)))


class Serializer:
    """Process-wide serialization facade over named string serializers."""

    def __init__(
        self,
        default_serializer: StringSerializer,
        serializers: Mapping[str, StringSerializer],
    ):
        self._default = default_serializer
        self._serializers = serializers

    @staticmethod
    def builder(serializers: StringSerializer | Iterable[StringSerializer]) -> SerializerBuilder:
        return SerializerBuilder(serializers)

    @property
    def serializers(self) -> Mapping[str, StringSerializer]:
        return self._serializers

    def get(self, name: str | None = None) -> StringSerializer:
        """Named serializer, or the default when the name is None or unknown."""
        if name is None:
            return self._default
        return self._serializers.get(name, self._default)

    # =========================================================================
    # Serialize
    # =========================================================================

    def serialize(self, value: Any, serializer: str | None = None) -> str | None:
        """Serialize ``value``; failures are logged and yield None."""
        try:
            return self.serialize_with_exception(value, serializer)
        except Exception as exc:
            logger.warning(
                "serializer.serialize",
                reason="can not serialize object",
                type=typedesc.error_description(value),
                error=str(exc),
            )
            return None

    def serialize_with_exception(self, value: Any, serializer: str | None = None) -> str | None:
        """
        Serialize ``value``, raising on failure.

        Raises:
            SerializationError: The selected serializer rejected the value
        """
        if value is None:
            return None

        if isinstance(value, BaseException):
            serializer = DEFAULT_SERIALIZER

        nested = typedesc.to_nested_collection(value)
        if nested is not None:
            return self._serialize_nested(nested, serializer)

        try:
            return self.get(serializer).serialize(value)
        except SerializationError:
            raise
        except Exception as exc:
            raise SerializationError(typedesc.error_description(value), exc) from exc

    def _serialize_nested(self, nested: Collection[Any], serializer: str | None) -> str:
        chunks: list[str] = []
        for inner in nested:
            if inner is None:
                chunks.append(NULL_STRING)
            elif len(inner) == 0:
                chunks.append(EMPTY_LIST_JSON)
            else:
                chunks.append(self.serialize_with_exception(inner, serializer) or NULL_STRING)
        return SERIALIZE_SEPARATOR.join(chunks)

    # =========================================================================
    # Deserialize
    # =========================================================================

    def deserialize(self, text: str | None, type_name: str | None, serializer: str | None = None) -> Any:
        """
        Deserialize against a descriptor.

        Args:
            text: Serialized value
            type_name: Descriptor, e.g. builtins.list-builtins.list,builtins.str
            serializer: Serializer name (None selects the default)
        """
        if not text or not type_name:
            return None

        if _EXCEPTION_SUFFIX.search(type_name):
            serializer = DEFAULT_SERIALIZER

        if type_name.startswith(_DICT_VALUES_TYPE):
            return self._restore_dict_values(text, type_name, serializer)

        type_names = type_name.split(typedesc.SEPARATOR)
        if len(type_names) > 1 and typedesc.is_collection_name(type_names[0]):
            inner_type_names = type_names[1].split(typedesc.COMMA)
            if typedesc.is_collection_name(inner_type_names[0]):
                return self._deserialize_nested(text, type_names[0], inner_type_names, serializer)

        return self.deserialize_type(text, typedesc.resolve(type_name), serializer)

    def deserialize_type(self, text: str | None, type_handle: Any, serializer: str | None = None) -> Any:
        """Deserialize against a resolved type handle; failures yield None."""
        if not text or type_handle is None:
            return None

        try:
            return self.get(serializer).deserialize(text, type_handle)
        except Exception as exc:
            error = DeserializationError(typedesc.describe(type_handle), exc)
            logger.warning(
                "serializer.deserialize",
                reason="can not deserialize value",
                value=text[:_LOG_VALUE_LIMIT],
                type=error.type_name,
                error=str(error),
            )
            return None

    def _deserialize_nested(
        self,
        text: str,
        collection_type: str,
        inner_type_names: list[str],
        serializer: str | None,
    ) -> Collection[Any] | None:
        """
        Rebuild a sequence of sequences.

        ``inner_type_names`` is [inner container, element type 1, element
        type 2, ...]; each non-empty, non-null chunk consumes the next
        element type.
        """
        try:
            outer_cls = typedesc.locate(collection_type)
            inner_cls = typedesc.locate(inner_type_names[0])
        except TypeResolutionError as exc:
            logger.warning("serializer.deserialize", type=collection_type, error=str(exc))
            return None

        items: list[Any] = []
        element_index = 1
        for chunk in text.split(SERIALIZE_SEPARATOR):
            if chunk == EMPTY_LIST_JSON:
                items.append(inner_cls())
                continue

            if chunk == NULL_STRING:
                items.append(None)
                continue

            if len(inner_type_names) > element_index:
                element_type = (
                    f"{inner_type_names[0]}{typedesc.SEPARATOR}{inner_type_names[element_index]}"
                )
                items.append(self.deserialize_type(chunk, typedesc.resolve(element_type), serializer))
                element_index += 1

        return outer_cls(items)

    def _restore_dict_values(self, text: str, type_name: str, serializer: str | None) -> Any:
        list_type = type_name.replace(_DICT_VALUES_TYPE, _LIST_TYPE, 1)
        items = self.deserialize_type(text, typedesc.resolve(list_type), serializer)
        if items is None:
            return {}.values()
        return dict(enumerate(items)).values()


# Process-wide instance
_serializer: Serializer | None = None


def install(serializer: Serializer | None) -> None:
    """Make ``serializer`` the process-wide facade (None resets to the stock set)."""
    global _serializer
    _serializer = serializer


def get_serializer() -> Serializer:
    """Get the process-wide facade, building the stock one on first use."""
    global _serializer
    if _serializer is None:
        _serializer = Serializer.builder([JsonSerializer(), ProtoJsonSerializer()]).build()
    return _serializer
