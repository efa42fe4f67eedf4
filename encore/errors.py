"""
Exception hierarchy for Encore.

These are raised only by the internal throwing variants (for example
``Serializer.serialize_with_exception``). The public record/replay entry
points catch them, log, and degrade, so an instrumented application never
sees one.
"""

from __future__ import annotations

from typing import Any

# Type resolution: 1xxx
ERROR_TYPE_RESOLUTION = 1001

# Serialization: 2xxx
ERROR_SERIALIZE = 2001
ERROR_DESERIALIZE = 2002
ERROR_SERIALIZER_NOT_CONFIGURED = 2003

# Storage: 3xxx
ERROR_STORAGE = 3001

# Key expressions: 4xxx
ERROR_EXPRESSION = 4001


class EncoreError(Exception):
    """Base class for all Encore errors."""

    code: int = 0

    def __init__(self, message: str, **context: Any):
        super().__init__(message)
        self.message = message
        self.context = context

    def __str__(self) -> str:
        return f"[E{self.code}] {self.message}"

    def to_dict(self) -> dict[str, Any]:
        return {
            "error_type": self.__class__.__name__,
            "message": self.message,
            "code": self.code,
            "context": self.context,
        }


class TypeResolutionError(EncoreError, LookupError):
    """Raised when a type name cannot be located."""

    code = ERROR_TYPE_RESOLUTION

    def __init__(self, type_name: str, message: str | None = None):
        super().__init__(message or f"Cannot locate type: {type_name}", type_name=type_name)
        self.type_name = type_name


class SerializationError(EncoreError):
    """Raised when a value cannot be converted to a string."""

    code = ERROR_SERIALIZE

    def __init__(self, description: str | None, cause: BaseException | None = None):
        super().__init__(
            f"Cannot serialize object: {description}, cause: {cause!r}",
            description=description,
        )
        self.description = description


class DeserializationError(EncoreError):
    """Raised when a string cannot be decoded into the requested type."""

    code = ERROR_DESERIALIZE

    def __init__(self, type_name: str | None, cause: BaseException | None = None):
        super().__init__(
            f"Cannot deserialize value to type {type_name}, cause: {cause!r}",
            type_name=type_name,
        )
        self.type_name = type_name


class SerializerNotConfiguredError(EncoreError):
    """Raised when a serializer facade is built without a default serializer."""

    code = ERROR_SERIALIZER_NOT_CONFIGURED

    def __init__(self, message: str = "Default serializer is not set"):
        super().__init__(message)


class StorageError(EncoreError):
    """Raised when the mock store fails to read or write."""

    code = ERROR_STORAGE

    def __init__(self, operation: str, underlying_error: str):
        super().__init__(
            f"Mock store {operation} failed: {underlying_error}",
            operation=operation,
        )
        self.operation = operation
        self.underlying_error = underlying_error


class ExpressionError(EncoreError):
    """Raised when a method key expression cannot be evaluated."""

    code = ERROR_EXPRESSION

    def __init__(self, expression: str, reason: str):
        super().__init__(f"Cannot evaluate key expression {expression!r}: {reason}", expression=expression)
        self.expression = expression
        self.reason = reason
