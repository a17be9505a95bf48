"""Tests for settings parsing and the frozen scheduler configuration."""

from __future__ import annotations

from dataclasses import FrozenInstanceError

import pytest

from flowsched.config import Settings
from flowsched.errors import UnknownNodeTypeError, UnknownProviderError
from flowsched.registry import ExecutionMode, Provider, build_scheduler_config


def _settings(**values) -> Settings:
    return Settings(_env_file=None, **values)


class TestSettings:
    def test_sqlite_dialect_and_embedded_worker(self):
        s = _settings(FLOW_DB_URL="sqlite+aiosqlite:///./x.db")
        assert s.is_sqlite
        assert s.WORKER_EMBEDDED is True
        assert s.sync_db_url() == "sqlite:///./x.db"

    def test_postgres_dialect_runs_worker_separately(self):
        s = _settings(FLOW_DB_URL="postgresql+asyncpg://u:p@db:5432/flow")
        assert s.is_postgres
        assert s.WORKER_EMBEDDED is False
        assert s.sync_db_url() == "postgresql://u:p@db:5432/flow"

    def test_explicit_worker_embedded_kept(self):
        s = _settings(FLOW_DB_URL="postgresql+asyncpg://u:p@db/flow", WORKER_EMBEDDED=True)
        assert s.WORKER_EMBEDDED is True

    @pytest.mark.parametrize("raw,expected", [(0, 1), (-4, 1), (5000, 1000), (25, 25)])
    def test_repeat_ceiling_is_clamped(self, raw, expected):
        assert _settings(MAX_REPEAT_COUNT=raw).MAX_REPEAT_COUNT == expected

    def test_json_maps_from_strings(self):
        s = _settings(
            NODE_COSTS='{"i2v-rh": 5}',
            PROVIDER_MAX_CONCURRENT='{"runninghub": 3}',
            PROVIDER_API_KEYS="",
        )
        assert s.NODE_COSTS == {"i2v-rh": 5}
        assert s.PROVIDER_MAX_CONCURRENT == {"runninghub": 3}
        assert s.PROVIDER_API_KEYS == {}

    def test_webhook_base_url(self):
        assert _settings(APP_URL="https://flows.example/").webhook_base_url == "https://flows.example/api/webhook"


class TestSchedulerConfig:
    def test_provider_aliases_in_maps(self):
        config = build_scheduler_config(_settings(
            PROVIDER_MAX_CONCURRENT={"kapi": 2, "runninghub": 0},
            PROVIDER_API_KEYS={"rhub": "rh-key", "kie": ""},
            PROVIDER_BASE_URLS={"jcut": "https://sandbox.jsoncut.test"},
        ))
        assert config.ceiling(Provider.KIE) == 2
        assert config.ceiling(Provider.RUNNINGHUB) == 0
        assert config.ceiling(Provider.JSONCUT) == config.default_max_concurrent
        assert dict(config.fallback_api_keys) == {Provider.RUNNINGHUB: "rh-key"}
        assert config.provider(Provider.JSONCUT).base_url == "https://sandbox.jsoncut.test"

    def test_unknown_provider_alias_rejected(self):
        with pytest.raises(UnknownProviderError):
            build_scheduler_config(_settings(PROVIDER_MAX_CONCURRENT={"acme": 1}))

    def test_costs_and_node_types(self):
        config = build_scheduler_config(_settings(NODE_COSTS={"i2v-rh": 5}))
        assert config.unit_cost("i2v-rh") == 5.0
        assert config.unit_cost("text-input") == 0.0
        assert config.node_type("i2v-rh").mode is ExecutionMode.PROVIDER
        assert config.node_type("text-input").mode is ExecutionMode.LOCAL
        with pytest.raises(UnknownNodeTypeError):
            config.node_type("teleport")

    def test_callback_url(self):
        config = build_scheduler_config(_settings(APP_URL="https://flows.example/"))
        assert config.callback_url(Provider.KIE) == "https://flows.example/api/webhook?source=kie"

    def test_config_is_frozen(self):
        config = build_scheduler_config(_settings())
        with pytest.raises(FrozenInstanceError):
            config.max_repeat_count = 3
        assert config.with_overrides(max_repeat_count=3).max_repeat_count == 3
        assert config.max_repeat_count == 100
