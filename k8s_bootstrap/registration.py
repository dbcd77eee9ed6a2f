#!/usr/bin/env python3
"""
@format
Register a freshly joined control-plane node with the membership registry
and the API server load balancer.

Both registrations are retried independently and failure only logs a
warning: the node is already serving and an operator (or the next boot)
can repair a missing record.
"""

from __future__ import annotations

from typing import Optional

from k8s_bootstrap.aws import FleetManager
from k8s_bootstrap.common import log_info, log_warn
from k8s_bootstrap.metrics import MetricsLogger
from k8s_bootstrap.registry import Member, MemberId, MembershipRegistry
from k8s_bootstrap.retry import retry_with_backoff


def register_etcd_member(cfg, registry: MembershipRegistry, local,
                         member_id: Optional[MemberId] = None,
                         metrics: Optional[MetricsLogger] = None) -> bool:
    """
    Record this node's etcd member in the registry.

    Args:
        local: Local node tooling (``node.LocalNode`` or a test double).
        member_id: Known member id; discovered from etcdctl when omitted.

    Returns:
        True if registered, False if it failed (warning logged).
    """
    identity = local.identity
    try:
        if member_id is None:
            member_id = local.local_member_id()
        if member_id is None:
            log_warn("⚠ Could not determine local etcd member id; skipping registration")
            return False

        member = Member(
            cluster_id=cfg.cluster_name,
            member_id=MemberId(member_id),
            instance_id=identity.instance_id,
            private_ip=identity.private_ip,
            hostname=identity.hostname,
        )
        retry_with_backoff(
            lambda: registry.register(member),
            "register etcd member",
            max_retries=cfg.max_retries,
            base_delay=cfg.retry_base_delay,
            metrics=metrics,
        )
    except Exception as exc:
        log_warn(f"⚠ etcd member registration failed: {exc}")
        return False
    return True


def register_load_balancer(cfg, fleet: FleetManager, instance_id: str,
                           metrics: Optional[MetricsLogger] = None) -> bool:
    """Add this instance to the API server target group. Returns success."""
    try:
        retry_with_backoff(
            lambda: fleet.register_target(instance_id, cfg.api_port),
            "register load balancer target",
            max_retries=cfg.max_retries,
            base_delay=cfg.retry_base_delay,
            metrics=metrics,
        )
    except Exception as exc:
        log_warn(f"⚠ Load balancer registration failed: {exc}")
        return False
    log_info("✓ Registered with API server load balancer", instance_id=instance_id)
    return True


def deregister_load_balancer(cfg, fleet: FleetManager, instance_id: str) -> None:
    try:
        fleet.deregister_target(instance_id, cfg.api_port)
        log_info("Deregistered from API server load balancer", instance_id=instance_id)
    except Exception as exc:
        log_warn(f"⚠ Load balancer deregistration failed: {exc}")
