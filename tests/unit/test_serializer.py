"""
Unit tests for the serialization facade.

Tests cover:
- Builder configuration and serializer lookup
- JSON serialization of plain values and exceptions
- Nested sequence splitting and rebuilding
- Dict value views
- Failure handling and logging
"""

from typing import Any

import pytest
from structlog.testing import capture_logs

from encore.errors import SerializationError, SerializerNotConfiguredError
from encore.protobuf import ProtoJsonSerializer
from encore.serializer import (
    SERIALIZE_SEPARATOR,
    JsonSerializer,
    Serializer,
    get_serializer,
    install,
)
from encore.typedesc import describe


class Opaque:
    """A value no serializer understands."""


class UpperSerializer:
    name = "upper"
    is_default = False

    def serialize(self, value: Any) -> str:
        return str(value).upper()

    def deserialize(self, text: str, type_handle: Any) -> Any:
        return text.lower()


@pytest.fixture
def facade() -> Serializer:
    return Serializer.builder(JsonSerializer()).build()


# =============================================================================
# Builder
# =============================================================================


class TestBuilder:
    """Test building and installing the facade."""

    def test_single_default(self, facade: Serializer) -> None:
        assert isinstance(facade.get(), JsonSerializer)

    def test_list_picks_default(self) -> None:
        facade = Serializer.builder([UpperSerializer(), JsonSerializer()]).build()
        assert isinstance(facade.get(), JsonSerializer)
        assert isinstance(facade.get("upper"), UpperSerializer)

    def test_add_serializer_chains(self) -> None:
        facade = Serializer.builder(JsonSerializer()).add_serializer("shout", UpperSerializer()).build()
        assert facade.serialize("abc", "shout") == "ABC"

    def test_unknown_name_falls_back_to_default(self, facade: Serializer) -> None:
        assert facade.get("missing") is facade.get()

    def test_missing_default_raises(self) -> None:
        with pytest.raises(SerializerNotConfiguredError):
            Serializer.builder([ProtoJsonSerializer()]).build()

    def test_stock_facade_registers_protobuf(self) -> None:
        assert isinstance(get_serializer().get("protobuf"), ProtoJsonSerializer)

    def test_install_replaces_process_facade(self, facade: Serializer) -> None:
        install(facade)
        assert get_serializer() is facade


# =============================================================================
# Serialize / deserialize
# =============================================================================


class TestJson:
    """Test plain JSON round trips through descriptors."""

    def test_none(self, facade: Serializer) -> None:
        assert facade.serialize(None) is None
        assert facade.deserialize(None, "builtins.str") is None
        assert facade.deserialize("1", "") is None

    def test_list(self, facade: Serializer) -> None:
        value = ["a", "b"]
        text = facade.serialize(value)
        assert text == '["a","b"]'
        assert facade.deserialize(text, describe(value)) == value

    def test_mapping(self, facade: Serializer) -> None:
        value = {"a": 1, "b": 2}
        assert facade.deserialize(facade.serialize(value), describe(value)) == value

    def test_set(self, facade: Serializer) -> None:
        value = {1, 2, 3}
        assert facade.deserialize(facade.serialize(value), describe(value)) == value

    def test_exception_round_trip(self, facade: Serializer) -> None:
        error = ValueError("bad input", 3)
        restored = facade.deserialize(facade.serialize(error), describe(error))
        assert isinstance(restored, ValueError)
        assert restored.args == ("bad input", 3)

    def test_exception_ignores_requested_serializer(self) -> None:
        facade = Serializer.builder(JsonSerializer()).add_serializer("upper", UpperSerializer()).build()
        assert facade.serialize(KeyError("k"), "upper") == '{"message":"\'k\'","args":["k"]}'


class TestNestedSequences:
    """Test sequences of sequences."""

    def test_chunks_are_joined(self, facade: Serializer) -> None:
        text = facade.serialize([[], ["a"], None])
        assert text == SERIALIZE_SEPARATOR.join(["[]", '["a"]', "null"])

    def test_round_trip(self, facade: Serializer) -> None:
        value = [[], ["a"], None, [1, 2]]
        descriptor = describe(value)
        assert descriptor == "builtins.list-builtins.list,builtins.str,builtins.int"
        assert facade.deserialize(facade.serialize(value), descriptor) == value

    def test_extra_chunks_are_dropped(self, facade: Serializer) -> None:
        text = SERIALIZE_SEPARATOR.join(['["a"]', '["b"]'])
        assert facade.deserialize(text, "builtins.list-builtins.list,builtins.str") == [["a"]]

    def test_unknown_outer_type(self, facade: Serializer) -> None:
        with capture_logs() as logs:
            assert facade.deserialize("[]", "nowhere.Seq-builtins.list,builtins.str") is None
        assert logs


class TestDictValues:
    """Test dict value views."""

    def test_round_trip(self, facade: Serializer) -> None:
        value = {"x": 1, "y": 2}.values()
        descriptor = describe(value)
        assert descriptor == "builtins.dict_values-builtins.int"

        restored = facade.deserialize(facade.serialize(value), descriptor)
        assert type(restored) is type(value)
        assert list(restored) == [1, 2]

    def test_undecodable_is_empty(self, facade: Serializer) -> None:
        restored = facade.deserialize("not json", "builtins.dict_values-builtins.int")
        assert list(restored) == []


class TestFailures:
    """Test that failures are logged and degrade to None."""

    def test_serialize_logs_and_returns_none(self, facade: Serializer) -> None:
        with capture_logs() as logs:
            assert facade.serialize(Opaque()) is None
        assert logs[0]["event"] == "serializer.serialize"
        assert logs[0]["log_level"] == "warning"

    def test_serialize_with_exception_raises(self, facade: Serializer) -> None:
        with pytest.raises(SerializationError):
            facade.serialize_with_exception(Opaque())

    def test_deserialize_mismatch_returns_none(self, facade: Serializer) -> None:
        with capture_logs() as logs:
            assert facade.deserialize('"abc"', "builtins.list-builtins.int") is None
        assert logs[0]["event"] == "serializer.deserialize"

    def test_unknown_descriptor_returns_none(self, facade: Serializer) -> None:
        assert facade.deserialize("1", "nowhere.Missing") is None
