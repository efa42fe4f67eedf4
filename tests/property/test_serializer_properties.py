"""
Property tests for descriptor-driven serialization.

For any value of a supported shape, serializing it and deserializing
against its own descriptor gives back an equal value, and serializing the
result again gives back the same text.
"""

from typing import Any

from hypothesis import HealthCheck, given, settings
from hypothesis import strategies as st

from encore.serializer import get_serializer
from encore.typedesc import describe, resolve

MAX_SAFE_INT = 2**53 - 1

names = st.text(alphabet="abcdefghijklmnopqrstuvwxyz0123456789-_ .", max_size=12)
ints = st.integers(min_value=-MAX_SAFE_INT, max_value=MAX_SAFE_INT)

# Sequences hold a single element type; descriptors only sample the first element
flat_lists = st.lists(ints, max_size=8) | st.lists(names, max_size=8)

# Inner sequences may differ in element type; each records its own
nested_lists = st.lists(
    st.lists(ints, max_size=5) | st.lists(names, max_size=5),
    min_size=1,
    max_size=6,
)

mappings = st.dictionaries(names, ints, max_size=8) | st.dictionaries(
    names, st.lists(ints, max_size=4), max_size=6
)

values = flat_lists | nested_lists | mappings

# The autouse configuration fixture only resets process-wide state
relaxed = settings(suppress_health_check=[HealthCheck.function_scoped_fixture])


class TestRoundTrip:
    """Test serialize/deserialize against the value's own descriptor."""

    @relaxed
    @given(value=values)
    def test_value_survives_round_trip(self, value: Any) -> None:
        serializer = get_serializer()
        text = serializer.serialize(value)

        assert serializer.deserialize(text, describe(value)) == value

    @relaxed
    @given(value=values)
    def test_reserialization_is_stable(self, value: Any) -> None:
        serializer = get_serializer()
        text = serializer.serialize(value)
        restored = serializer.deserialize(text, describe(value))

        assert serializer.serialize(restored) == text

    @relaxed
    @given(value=nested_lists | mappings)
    def test_descriptor_resolves(self, value: Any) -> None:
        descriptor = describe(value)

        assert resolve(descriptor) is not None
        assert resolve(descriptor) is resolve(descriptor)
