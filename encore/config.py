"""
Configuration for Encore.
"""

from __future__ import annotations

import os
from pathlib import Path

from pydantic import BaseModel, Field

DEFAULT_RESULT_SIZE_LIMIT = 1000


class DynamicClassEntity(BaseModel):
    """
    One configured interception site.

    Attributes:
        clazz_name: Qualified name of the owning class (module.QualName)
        operation: Method name; empty means the entry names the class only
        parameter_types: Comma-separated qualified names of the method's
            parameter types, used to tell overloads-by-arity apart
        additional_signature: Supplemental key expression ("$1.id") used
            instead of serializing every argument
        actual_type: Type name appended to bare result descriptors, for
            methods whose runtime result hides its element type
    """

    clazz_name: str
    operation: str = ""
    parameter_types: str | None = None
    additional_signature: str | None = None
    actual_type: str | None = None

    @property
    def signature(self) -> str:
        """Dynamic signature this entry is keyed by."""
        if not self.parameter_types:
            return self.clazz_name + self.operation
        return self.clazz_name + self.operation + str(len(self.parameter_types.split(",")))


class EncoreConfig(BaseModel):
    """Configuration options for Encore."""

    # Storage settings
    storage_dir: Path = Field(
        default_factory=lambda: Path.cwd() / ".encore",
        description="Directory to store recorded mocks",
    )
    database_name: str = "mocks.db"

    # Recording settings
    enabled: bool = True
    enable_debug: bool = False
    result_size_limit: int = DEFAULT_RESULT_SIZE_LIMIT  # Skip results with more elements

    # Interception sites
    dynamic_classes: list[DynamicClassEntity] = Field(default_factory=list)
    exclude_operations: set[str] = Field(default_factory=set)

    # Logging
    log_json: bool = False

    @classmethod
    def from_env(cls) -> EncoreConfig:
        """Load configuration from environment variables."""
        config = cls()

        if storage_dir := os.environ.get("ENCORE_STORAGE_DIR"):
            config.storage_dir = Path(storage_dir)

        if enabled := os.environ.get("ENCORE_ENABLED"):
            config.enabled = enabled.lower() in ("true", "1", "yes")

        if debug := os.environ.get("ENCORE_DEBUG"):
            config.enable_debug = debug.lower() in ("true", "1", "yes")

        if size_limit := os.environ.get("ENCORE_RESULT_SIZE_LIMIT"):
            config.result_size_limit = int(size_limit)

        return config

    def get_dynamic_entity(self, signature: str) -> DynamicClassEntity | None:
        """Find the configured entity for a dynamic signature."""
        for entity in self.dynamic_classes:
            if entity.signature == signature:
                return entity
        return None

    def get_db_path(self) -> Path:
        """Get the full path to the database file."""
        return self.storage_dir / self.database_name

    def ensure_storage_dir(self) -> None:
        """Create storage directory if it doesn't exist."""
        self.storage_dir.mkdir(parents=True, exist_ok=True)


# Global config instance
_config: EncoreConfig | None = None


def get_config() -> EncoreConfig:
    """Get the global configuration."""
    global _config
    if _config is None:
        _config = EncoreConfig.from_env()
    return _config


def set_config(config: EncoreConfig | None) -> None:
    """Set the global configuration (None resets to the environment defaults)."""
    global _config
    _config = config
