"""
Protocol-buffer aware JSON serializer.
"""

from __future__ import annotations

from typing import Any, get_args

import pydantic_core
from google.protobuf import json_format
from google.protobuf.message import Message

from encore import typedesc
from encore.errors import DeserializationError, SerializationError

PROTOBUF_FORMAT = "protobuf"
FORMAT_ATTRIBUTE = "Format"


def is_protobuf_object(value: Any) -> bool:
    """True for a message, or a non-empty collection whose first element is one."""
    if value is None:
        return False
    if typedesc.is_collection(value):
        if len(value) == 0:
            return False
        return is_protobuf_object(next(iter(value)))
    return isinstance(value, Message)


class ProtoJsonSerializer:
    """Serializes messages (and collections of messages) with protobuf's JSON mapping."""

    name = PROTOBUF_FORMAT
    is_default = False

    def serialize(self, value: Any) -> str:
        if isinstance(value, Message):
            return json_format.MessageToJson(value, indent=None)
        if typedesc.is_collection(value):
            return pydantic_core.to_json([json_format.MessageToDict(message) for message in value]).decode()
        raise SerializationError(typedesc.error_description(value))

    def deserialize(self, text: str, type_handle: Any) -> Any:
        raw = typedesc.raw_type(type_handle)
        if isinstance(raw, type) and issubclass(raw, Message):
            return json_format.Parse(text, raw())

        args = get_args(type_handle)
        element = args[0] if args else None
        if not (isinstance(element, type) and issubclass(element, Message)):
            raise DeserializationError(typedesc.describe(type_handle))

        messages = [json_format.ParseDict(item, element()) for item in pydantic_core.from_json(text)]
        return raw(messages)
