"""
Mock record data structures.
"""

from __future__ import annotations

import time
import uuid
from enum import Enum
from typing import Any, ClassVar

from pydantic import BaseModel, Field

from encore.context import ExecutionContext


class MockCategory(str, Enum):
    """Kinds of recorded calls."""

    DYNAMIC_CLASS = "dynamic_class"


class MockStrategy(str, Enum):
    """How a replay query is matched against recorded mocks."""

    # Same operation and request body, newest first
    FIND_LAST = "find_last"
    # Same operation, any request body, newest first
    TRY_FIND_LAST_VALUE = "try_find_last_value"


class Target(BaseModel):
    """One side (request or response) of a recorded call."""

    body: str | None = None
    type: str | None = None
    attributes: dict[str, str] = Field(default_factory=dict)

    def get_attribute(self, name: str) -> str | None:
        return self.attributes.get(name)


class Mocker(BaseModel):
    """A recorded call: request key, response payload and its descriptor."""

    id: str = Field(default_factory=lambda: f"mk_{uuid.uuid4().hex[:12]}")
    category: MockCategory = MockCategory.DYNAMIC_CLASS
    record_id: str | None = None
    replay_id: str | None = None
    operation_name: str
    target_request: Target = Field(default_factory=Target)
    target_response: Target = Field(default_factory=Target)
    creation_time: int = Field(default_factory=lambda: int(time.time() * 1000))

    def to_dict(self) -> dict[str, Any]:
        return self.model_dump(mode="json")

    @classmethod
    def from_dict(cls, data: dict[str, Any]) -> Mocker:
        return cls.model_validate(data)


def create_dynamic_class(
    type_name: str,
    method_name: str,
    context: ExecutionContext | None = None,
) -> Mocker:
    """Build an empty dynamic-class mocker bound to ``context``."""
    return Mocker(
        category=MockCategory.DYNAMIC_CLASS,
        record_id=context.record_id if context else None,
        replay_id=context.replay_id if context else None,
        operation_name=f"{type_name}.{method_name}",
    )


class MockResult:
    """Outcome of a replay lookup."""

    IGNORE: ClassVar[MockResult]

    __slots__ = ("ignore_mock_result", "value", "ignored")

    def __init__(self, ignore_mock_result: bool, value: Any, ignored: bool = False):
        self.ignore_mock_result = ignore_mock_result
        self.value = value
        self.ignored = ignored

    @classmethod
    def success(cls, ignore_mock_result: bool, value: Any) -> MockResult:
        return cls(ignore_mock_result, value)

    @property
    def not_ignore_mock_result(self) -> bool:
        return not self.ignored and not self.ignore_mock_result

    def __repr__(self) -> str:
        return (
            f"MockResult(ignore_mock_result={self.ignore_mock_result!r}, "
            f"value={self.value!r}, ignored={self.ignored!r})"
        )


MockResult.IGNORE = MockResult(True, None, ignored=True)
