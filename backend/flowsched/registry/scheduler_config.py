"""Immutable scheduler configuration.

Built once at startup from ``Settings`` by ``build_scheduler_config`` and
handed to every component.  Nothing in here changes while the process runs.
"""

from __future__ import annotations

from dataclasses import dataclass, field, replace
from types import MappingProxyType
from typing import Mapping

from flowsched.config import Settings
from flowsched.errors import UnknownNodeTypeError, UnknownProviderError
from flowsched.registry.node_types import BUILTIN_NODE_TYPES, NodeTypeSpec
from flowsched.registry.providers import DEFAULT_PROVIDERS, Provider, ProviderSpec


@dataclass(frozen=True)
class SchedulerConfig:
    node_types: Mapping[str, NodeTypeSpec]
    providers: Mapping[Provider, ProviderSpec]
    app_url: str = "http://127.0.0.1:8000"
    default_max_concurrent: int = 50
    max_concurrent: Mapping[Provider, int] = field(default_factory=dict)
    node_costs: Mapping[str, float] = field(default_factory=dict)
    fallback_api_keys: Mapping[Provider, str] = field(default_factory=dict, repr=False)
    credential_encryption_key: str = field(default="", repr=False)
    max_repeat_count: int = 100
    chain_repeat_iterations: bool = True
    slot_ttl_seconds: int = 3600
    stale_processing_seconds: int = 300
    provider_timeout_seconds: float = 120.0
    poll_enabled: bool = True
    poll_interval_seconds: float = 10.0
    poll_max_attempts: int = 60
    store_results: bool = False
    artifacts_dir: str = "./artifacts"

    def node_type(self, name: str) -> NodeTypeSpec:
        try:
            return self.node_types[name]
        except KeyError:
            raise UnknownNodeTypeError(name) from None

    def provider(self, provider: Provider) -> ProviderSpec:
        try:
            return self.providers[provider]
        except KeyError:
            raise UnknownProviderError(str(provider)) from None

    def ceiling(self, provider: Provider) -> int:
        """Concurrent-call ceiling for *provider*; 0 means unlimited."""
        return self.max_concurrent.get(provider, self.default_max_concurrent)

    def unit_cost(self, node_type: str) -> float:
        return float(self.node_costs.get(node_type, 0))

    def callback_url(self, provider: Provider) -> str:
        return f"{self.app_url.rstrip('/')}/api/webhook?source={provider.value}"

    def with_overrides(self, **changes) -> "SchedulerConfig":
        """Return a copy with *changes* applied (used by tests and admin tooling)."""
        return replace(self, **changes)


def _provider_map(raw: Mapping[str, object]) -> dict[Provider, object]:
    return {Provider.from_source(name): value for name, value in raw.items()}


def build_scheduler_config(
    settings: Settings,
    extra_node_types: tuple[NodeTypeSpec, ...] = (),
) -> SchedulerConfig:
    """Freeze *settings* into a ``SchedulerConfig``."""
    node_types = {spec.name: spec for spec in BUILTIN_NODE_TYPES + extra_node_types}

    providers = dict(DEFAULT_PROVIDERS)
    for provider, base_url in _provider_map(settings.PROVIDER_BASE_URLS).items():
        providers[provider] = replace(providers[provider], base_url=str(base_url))

    return SchedulerConfig(
        node_types=MappingProxyType(node_types),
        providers=MappingProxyType(providers),
        app_url=settings.APP_URL,
        default_max_concurrent=settings.DEFAULT_MAX_CONCURRENT,
        max_concurrent=MappingProxyType(
            {p: int(v) for p, v in _provider_map(settings.PROVIDER_MAX_CONCURRENT).items()}
        ),
        node_costs=MappingProxyType({k: float(v) for k, v in settings.NODE_COSTS.items()}),
        fallback_api_keys=MappingProxyType(
            {p: str(v) for p, v in _provider_map(settings.PROVIDER_API_KEYS).items() if v}
        ),
        credential_encryption_key=settings.CREDENTIAL_ENCRYPTION_KEY,
        max_repeat_count=settings.MAX_REPEAT_COUNT,
        chain_repeat_iterations=settings.CHAIN_REPEAT_ITERATIONS,
        slot_ttl_seconds=settings.SLOT_TTL_SECONDS,
        stale_processing_seconds=settings.STALE_PROCESSING_SECONDS,
        provider_timeout_seconds=settings.PROVIDER_TIMEOUT_SECONDS,
        poll_enabled=settings.POLL_ENABLED,
        poll_interval_seconds=settings.POLL_INTERVAL_SECONDS,
        poll_max_attempts=settings.POLL_MAX_ATTEMPTS,
        store_results=settings.STORE_RESULTS,
        artifacts_dir=settings.ARTIFACTS_DIR,
    )
