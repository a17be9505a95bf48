"""Static registries: providers, node types and the frozen scheduler config."""

from flowsched.registry.node_types import ExecutionMode, LocalKind, NodeTypeSpec
from flowsched.registry.providers import Provider, ProviderSpec
from flowsched.registry.scheduler_config import SchedulerConfig, build_scheduler_config

__all__ = [
    "ExecutionMode",
    "LocalKind",
    "NodeTypeSpec",
    "Provider",
    "ProviderSpec",
    "SchedulerConfig",
    "build_scheduler_config",
]
