"""Event-driven Lambda handlers: termination, health monitor, etcd backup."""

from __future__ import annotations

from k8s_bootstrap.aws import Services
from k8s_bootstrap.config import Config
from k8s_bootstrap.registry import MembershipRegistry


def build_runtime(cfg=None, services=None):
    """Resolve config, service adapters and registry for a handler invocation."""
    cfg = cfg or Config()
    services = services or Services.from_config(cfg)
    registry = MembershipRegistry(services.members, services.fleet, cfg.cluster_name)
    return cfg, services, registry
