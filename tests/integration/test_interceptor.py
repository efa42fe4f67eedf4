"""
Integration tests for interception: ``@mockable``, dynamic-class
interceptors and the top-level record/replay API.

Tests cover:
- Recording inside a session and replaying without the real call
- Exceptions recorded and re-raised on replay
- Coroutine functions
- Installing and uninstalling configured dynamic classes
- init/stop and the record/replay context managers
"""

from __future__ import annotations

import asyncio
from pathlib import Path
from typing import Any

import pytest
from structlog.testing import capture_logs

import encore
from encore.config import DynamicClassEntity, EncoreConfig, set_config
from encore.errors import StorageError
from encore.interceptor import (
    DynamicClassInterceptor,
    find_entity,
    get_interceptors,
    install_interceptors,
    mockable,
    need_record_or_replay,
)
from encore.mocker import Mocker
from encore.storage import SqliteMockStore, get_storage, set_storage


class Pricing:
    def __init__(self) -> None:
        self.calls = 0

    @mockable(key="#sku")
    def quote(self, sku: str, quantity: int = 1) -> list[int]:
        self.calls += 1
        return [quantity * 10]

    @mockable()
    def fail(self, sku: str) -> str:
        self.calls += 1
        raise ValueError(f"unknown {sku}")

    @mockable()
    async def fetch(self, sku: str) -> list[str]:
        self.calls += 1
        await asyncio.sleep(0)
        return [sku, sku.upper()]


class Catalog:
    def __init__(self) -> None:
        self.calls = 0

    def find(self, name: str) -> list[str]:
        self.calls += 1
        return [name, name.upper()]

    @staticmethod
    def normalize(name: str) -> str:
        return name.strip()

    async def search(self, name: str) -> list[str]:
        self.calls += 1
        return [name]


CATALOG = f"{Catalog.__module__}.{Catalog.__qualname__}"


def _entity(operation: str, parameter_types: str = "builtins.str") -> DynamicClassEntity:
    return DynamicClassEntity(clazz_name=CATALOG, operation=operation, parameter_types=parameter_types)


@pytest.fixture
def catalog_config(encore_config: EncoreConfig) -> EncoreConfig:
    config = encore_config.model_copy(
        update={"dynamic_classes": [_entity("find"), _entity("normalize"), _entity("search")]}
    )
    set_config(config)
    return config


class FailingStore:
    def record_mocker(self, mocker: Mocker) -> None:
        raise StorageError("record", "disk full")

    def replay_mocker(self, query: Mocker, strategy: Any = None) -> Mocker | None:
        raise StorageError("replay", "disk full")

    def check_response_mocker(self, mocker: Mocker | None) -> bool:
        return mocker is not None


# =============================================================================
# @mockable
# =============================================================================


class TestMockable:
    """Test decorated functions."""

    def test_no_recording_outside_session(self, memory_store: Any) -> None:
        pricing = Pricing()
        assert pricing.quote("sku-1") == [10]
        assert memory_store.mockers == []

    def test_record_then_replay(self, memory_store: Any) -> None:
        with encore.record() as context:
            assert Pricing().quote("sku-1", 2) == [20]

        (mocker,) = memory_store.mockers
        assert mocker.operation_name == f"{__name__}.Pricing.quote"
        assert mocker.target_request.body == "sku-1"
        assert mocker.target_response.type == "builtins.list-builtins.int"

        replayed = Pricing()
        with encore.replay(context.record_id):
            # The key only names the sku, so the quantity does not matter
            assert replayed.quote("sku-1", 7) == [20]
        assert replayed.calls == 0

    def test_replay_miss_returns_none(self, memory_store: Any) -> None:
        pricing = Pricing()
        with encore.replay("never-recorded"):
            assert pricing.quote("sku-9") is None
        assert pricing.calls == 0

    def test_exception_recorded_and_replayed(self, memory_store: Any) -> None:
        with encore.record() as context:
            with pytest.raises(ValueError, match="unknown sku-1"):
                Pricing().fail("sku-1")

        assert memory_store.mockers[0].target_response.type == "builtins.ValueError"

        replayed = Pricing()
        with encore.replay(context.record_id):
            with pytest.raises(ValueError, match="unknown sku-1"):
                replayed.fail("sku-1")
        assert replayed.calls == 0

    async def test_coroutine_record_then_replay(self, memory_store: Any) -> None:
        with encore.record() as context:
            assert await Pricing().fetch("tea") == ["tea", "TEA"]

        replayed = Pricing()
        with encore.replay(context.record_id):
            assert await replayed.fetch("tea") == ["tea", "TEA"]
        assert replayed.calls == 0

    def test_disabled_config_skips_engine(self, memory_store: Any, tmp_path: Path) -> None:
        set_config(EncoreConfig(storage_dir=tmp_path, enabled=False))
        with encore.record():
            assert Pricing().quote("sku-1") == [10]
        assert memory_store.mockers == []

    def test_store_failure_does_not_break_call(self) -> None:
        set_storage(FailingStore())
        pricing = Pricing()

        with capture_logs() as logs:
            with encore.record():
                assert pricing.quote("sku-1") == [10]
            with encore.replay("rec-1"):
                assert pricing.quote("sku-1") is None

        assert any(log["event"] == "dynamic.need_record" for log in logs)
        assert any(log["event"] == "dynamic.need_replay" for log in logs)


# =============================================================================
# Dynamic classes
# =============================================================================


class TestFindEntity:
    """Test matching configured entities against functions."""

    def test_matches_owner_operation_and_parameter_types(self) -> None:
        entity = _entity("find")
        config = EncoreConfig(dynamic_classes=[entity])
        assert find_entity(Catalog.find, config) is entity

    def test_parameter_type_mismatch(self) -> None:
        config = EncoreConfig(dynamic_classes=[_entity("find", "builtins.int")])
        assert find_entity(Catalog.find, config) is None

    def test_empty_parameter_types_match_any_overload(self) -> None:
        config = EncoreConfig(dynamic_classes=[_entity("find", "")])
        assert find_entity(Catalog.find, config) is not None

    def test_need_record_or_replay(self, context_manager: Any) -> None:
        config = EncoreConfig(dynamic_classes=[_entity("find")])

        assert not need_record_or_replay(None, config)
        assert not need_record_or_replay(Catalog.find, config)

        with context_manager.session():
            assert need_record_or_replay(Catalog.find, config)
            assert not need_record_or_replay(Catalog.normalize, config)


class TestDynamicClassInterceptor:
    """Test patching configured methods."""

    def test_install_and_uninstall(self) -> None:
        original = Catalog.__dict__["find"]
        interceptor = DynamicClassInterceptor(_entity("find"))

        interceptor.install()
        try:
            assert interceptor.installed
            assert Catalog.__dict__["find"] is not original
            assert Catalog().find("tea") == ["tea", "TEA"]
        finally:
            interceptor.uninstall()

        assert not interceptor.installed
        assert Catalog.__dict__["find"] is original

    def test_install_keeps_staticmethod(self) -> None:
        interceptor = DynamicClassInterceptor(_entity("normalize"))
        interceptor.install()
        try:
            assert isinstance(Catalog.__dict__["normalize"], staticmethod)
            assert Catalog.normalize(" tea ") == "tea"
        finally:
            interceptor.uninstall()

    @pytest.mark.parametrize(
        "entity",
        [
            DynamicClassEntity(clazz_name="nowhere.Missing", operation="find"),
            DynamicClassEntity(clazz_name=CATALOG, operation="missing"),
        ],
    )
    def test_install_unknown_target(self, entity: DynamicClassEntity) -> None:
        interceptor = DynamicClassInterceptor(entity)
        with capture_logs() as logs:
            interceptor.install()

        assert not interceptor.installed
        assert logs[0]["event"] == "interceptor.install"

    def test_install_interceptors_skips_class_entries(self, catalog_config: EncoreConfig) -> None:
        config = catalog_config.model_copy(
            update={"dynamic_classes": [*catalog_config.dynamic_classes, DynamicClassEntity(clazz_name=CATALOG)]}
        )
        install_interceptors(config)
        assert len(get_interceptors()) == 3

    def test_record_then_replay(self, catalog_config: EncoreConfig, memory_store: Any) -> None:
        install_interceptors(catalog_config)

        with encore.record() as context:
            assert Catalog().find("tea") == ["tea", "TEA"]
            assert Catalog().find("tea") == ["tea", "TEA"]
            assert Catalog.normalize(" tea ") == "tea"

        # The repeated call records nothing new
        assert [m.operation_name for m in memory_store.mockers] == [f"{CATALOG}.find", f"{CATALOG}.normalize"]

        replayed = Catalog()
        with encore.replay(context.record_id):
            assert replayed.find("tea") == ["tea", "TEA"]
            assert Catalog.normalize(" tea ") == "tea"
        assert replayed.calls == 0

    async def test_coroutine_method(self, catalog_config: EncoreConfig, memory_store: Any) -> None:
        install_interceptors(catalog_config)

        with encore.record() as context:
            assert await Catalog().search("tea") == ["tea"]

        replayed = Catalog()
        with encore.replay(context.record_id):
            assert await replayed.search("tea") == ["tea"]
        assert replayed.calls == 0

    def test_excluded_operation_calls_through(self, catalog_config: EncoreConfig, memory_store: Any) -> None:
        set_config(catalog_config.model_copy(update={"exclude_operations": {f"{CATALOG}.find"}}))
        install_interceptors()

        with encore.record() as context:
            Catalog().find("tea")

        replayed = Catalog()
        with encore.replay(context.record_id):
            assert replayed.find("tea") == ["tea", "TEA"]
        assert replayed.calls == 1


# =============================================================================
# Top-level API
# =============================================================================


class TestCore:
    """Test init/stop and the session helpers."""

    def test_init_with_store(self, catalog_config: EncoreConfig, memory_store: Any) -> None:
        assert encore.init(catalog_config, storage=memory_store) is catalog_config
        assert get_storage() is memory_store
        assert len(get_interceptors()) == 3

        encore.init(catalog_config, storage=memory_store)
        assert len(get_interceptors()) == 3

        encore.stop()
        assert get_interceptors() == []

    def test_init_opens_sqlite_store(self, encore_config: EncoreConfig) -> None:
        encore.init()

        store = get_storage()
        assert isinstance(store, SqliteMockStore)
        assert store.db_path == encore_config.get_db_path()
        assert encore_config.storage_dir.is_dir()

    def test_sessions(self) -> None:
        assert encore.get_current_context() is None
        assert not encore.is_replay_mode()

        with encore.record() as context:
            assert context.record_id.startswith("rc_")
            assert encore.get_current_context() is context
            assert not encore.is_replay_mode()

        with encore.replay(context.record_id) as replaying:
            assert replaying.replay_id is not None
            assert replaying.replay_id.startswith("rp_")
            assert encore.is_replay_mode()

        assert encore.get_current_context() is None

    def test_record_and_replay_through_sqlite(self, catalog_config: EncoreConfig) -> None:
        encore.init(catalog_config)

        with encore.record("rec-sqlite"):
            Catalog().find("tea")

        replayed = Catalog()
        with encore.replay("rec-sqlite"):
            assert replayed.find("tea") == ["tea", "TEA"]
        assert replayed.calls == 0
