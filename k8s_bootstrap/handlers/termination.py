#!/usr/bin/env python3
"""
@format
Termination handler: evict a dying control plane from etcd before the
instance goes away.

Invoked by EventBridge for ``EC2 Instance-terminate Lifecycle Action``
events on the control plane Auto Scaling group. The lifecycle hook holds
the instance in Terminating:Wait until this handler completes the action:

    CONTINUE  — member removed (or nothing to remove), termination proceeds
    ABANDON   — removal unsafe or failed, the instance is kept

Quorum always wins: if removing the member would leave fewer than
``MIN_HEALTHY_NODES_FOR_REMOVAL`` healthy control planes, the handler
abandons without touching etcd or the registry.
"""

from __future__ import annotations

import time
from dataclasses import dataclass
from typing import Optional

from k8s_bootstrap.common import log_error, log_info, log_warn, setup_logging
from k8s_bootstrap.handlers import build_runtime
from k8s_bootstrap.metrics import COUNT, MILLISECONDS, MetricsLogger, create_metrics_logger
from k8s_bootstrap.node import MEMBER_NOT_FOUND, MEMBER_REMOVED, NODE_DRAINED, NODE_NOT_FOUND
from k8s_bootstrap.registry import Member, MemberStatus, MembershipRegistry
from k8s_bootstrap.remote import run_remote
from k8s_bootstrap.retry import RetriableError, retry_with_backoff

CONTINUE = "CONTINUE"
ABANDON = "ABANDON"


class NodeDrainError(RetriableError):
    """Draining the node through a healthy peer failed."""


class EtcdRemovalError(RetriableError):
    """Removing the etcd member through a healthy peer failed."""


class QuorumRiskError(Exception):
    """Removing this member would leave etcd without a safe majority."""


@dataclass
class LifecycleEvent:
    instance_id: Optional[str]
    hook_name: Optional[str]
    asg_name: Optional[str]
    token: Optional[str]

    @classmethod
    def from_event(cls, event: dict) -> "LifecycleEvent":
        detail = event.get("detail", {}) or {}
        return cls(
            instance_id=detail.get("EC2InstanceId"),
            hook_name=detail.get("LifecycleHookName"),
            asg_name=detail.get("AutoScalingGroupName"),
            token=detail.get("LifecycleActionToken"),
        )


class TerminationHandler:
    """Decide CONTINUE or ABANDON for one terminating instance."""

    def __init__(self, cfg, services, registry: MembershipRegistry,
                 metrics: Optional[MetricsLogger] = None,
                 request_id: Optional[str] = None):
        self.cfg = cfg
        self.services = services
        self.registry = registry
        self.metrics = metrics
        self.request_id = request_id

    def handle(self, event: dict) -> dict:
        start = time.monotonic()
        lifecycle = LifecycleEvent.from_event(event)
        if not lifecycle.instance_id:
            log_error("No instance ID in lifecycle event")
            return {"statusCode": 400, "body": "No instance ID"}

        instance_id = lifecycle.instance_id
        log_info("Processing instance termination", instance_id=instance_id)

        try:
            described = self._retry(
                lambda: self.services.fleet.describe_instance(instance_id),
                f"describe instance {instance_id}",
            )
            if described is None:
                log_warn(f"⚠ Instance {instance_id} not found, continuing")
                return self._finish(lifecycle, CONTINUE, 200,
                                    "Instance not found, continuing", start)

            member = self._retry(
                lambda: self.registry.lookup_by_instance(instance_id),
                f"look up etcd member for {instance_id}",
            )
            if (member is None or member.status is not MemberStatus.ACTIVE
                    or not member.member_id):
                log_info("No active etcd member record, continuing",
                         instance_id=instance_id)
                return self._finish(lifecycle, CONTINUE, 200,
                                    "Not an etcd member, continuing", start)

            self.check_quorum_safety(instance_id)
            self.drain(member)
            self.heartbeat(lifecycle)

            if self.remove_member(member):
                self.record_status(member, MemberStatus.REMOVED)
                self._metric("EtcdMemberRemovalSuccess")
                return self._finish(lifecycle, CONTINUE, 200, "Success", start)

            self.record_status(member, MemberStatus.REMOVAL_FAILED)
            self._metric("EtcdMemberRemovalFailure")
            return self._finish(lifecycle, ABANDON, 500,
                                "etcd removal failed, abandoning termination", start)

        except QuorumRiskError as exc:
            log_error(f"Quorum risk, abandoning termination: {exc}",
                      instance_id=instance_id)
            self._metric("QuorumRiskDetected")
            return self._finish(lifecycle, ABANDON, 409, f"Quorum risk: {exc}", start)

        except Exception as exc:
            log_error(f"Unexpected error, abandoning termination: {exc}",
                      instance_id=instance_id)
            return self._finish(lifecycle, ABANDON, 500, f"Error: {exc}", start)

    def check_quorum_safety(self, instance_id: str) -> list[str]:
        """
        Raises:
            QuorumRiskError: If too few healthy control planes would remain.
        """
        healthy = self._retry(
            lambda: self.registry.lookup_healthy_control_plane_instances(
                exclude_instance_id=instance_id
            ),
            "list healthy control planes",
        )
        minimum = self.cfg.min_healthy_nodes_for_removal
        log_info(f"Healthy control planes after removal: {len(healthy)} (minimum {minimum})",
                 healthy=healthy)
        if len(healthy) < minimum:
            raise QuorumRiskError(
                f"only {len(healthy)} healthy control plane(s) would remain, "
                f"need at least {minimum}"
            )
        return healthy

    def drain(self, member: Member) -> bool:
        """Drain the node through a healthy peer. Failure never blocks removal."""
        node_name = member.hostname or member.private_ip
        try:
            retry_with_backoff(
                lambda: self._run_on_peer(
                    member.instance_id, "drain-node",
                    expect=(NODE_DRAINED, NODE_NOT_FOUND),
                    error=NodeDrainError,
                    timeout=self.cfg.drain_timeout + 60,
                    node_name=node_name,
                ),
                f"drain node {node_name}",
                max_retries=self.cfg.max_retries,
                base_delay=self.cfg.retry_base_delay,
                retriable_exceptions=(NodeDrainError,),
                metrics=self.metrics,
            )
        except Exception as exc:
            log_warn(f"⚠ Drain of {node_name} failed, continuing with removal: {exc}")
            self._metric("NodeDrainFailure")
            return False
        self._metric("NodeDrainSuccess")
        return True

    def heartbeat(self, lifecycle: LifecycleEvent) -> bool:
        """Keep the termination hook open after a slow drain."""
        if not lifecycle.hook_name or not lifecycle.asg_name:
            return False
        return self.services.fleet.record_lifecycle_heartbeat(
            hook_name=lifecycle.hook_name,
            asg_name=lifecycle.asg_name,
            instance_id=lifecycle.instance_id,
            token=lifecycle.token,
        )

    def remove_member(self, member: Member) -> bool:
        """Remove the etcd member through a healthy peer; 'not found' is success."""
        try:
            marker = retry_with_backoff(
                lambda: self._run_on_peer(
                    member.instance_id, "remove-member",
                    expect=(MEMBER_REMOVED, MEMBER_NOT_FOUND),
                    error=EtcdRemovalError,
                    timeout=self.cfg.ssm_command_timeout,
                    member_id=str(member.member_id),
                ),
                f"remove etcd member {member.member_id}",
                max_retries=self.cfg.max_retries,
                base_delay=self.cfg.retry_base_delay,
                retriable_exceptions=(EtcdRemovalError,),
                metrics=self.metrics,
            )
        except Exception as exc:
            log_error(f"etcd member removal failed: {exc}", member_id=str(member.member_id))
            return False
        log_info(f"✓ etcd member {member.member_id}: {marker}")
        return True

    def record_status(self, member: Member, status: MemberStatus) -> bool:
        """
        Persist the removal outcome. A registry failure is logged, never fatal:
        the etcd membership change has already happened either way.
        """
        try:
            self._retry(
                lambda: self.registry.mark_removed(member, status, self.request_id),
                f"mark member {member.member_id} {status.value}",
            )
        except Exception as exc:
            log_warn(f"⚠ Could not record {status.value} for member {member.member_id}: {exc}",
                     instance_id=member.instance_id)
            return False
        return True

    def _retry(self, operation, name: str):
        return retry_with_backoff(
            operation, name,
            max_retries=self.cfg.max_retries,
            base_delay=self.cfg.retry_base_delay,
            metrics=self.metrics,
        )

    def _run_on_peer(self, terminating_instance: str, mode: str, *, expect: tuple,
                     error: type, timeout: int, **options) -> str:
        try:
            peers = self.registry.lookup_healthy_control_plane_instances(
                exclude_instance_id=terminating_instance
            )
        except Exception as exc:
            raise error(f"could not list healthy control planes for {mode}: {exc}") from exc
        if not peers:
            raise error(f"no healthy control plane available for {mode}")
        try:
            marker, _ = run_remote(
                self.services.commands, self.cfg, peers[0], mode,
                expect=expect, timeout=timeout, **options,
            )
        except Exception as exc:
            raise error(f"{mode} via {peers[0]} failed: {exc}") from exc
        return marker

    def _finish(self, lifecycle: LifecycleEvent, result: str, status_code: int,
                body: str, start: float) -> dict:
        try:
            self.services.fleet.complete_lifecycle_action(
                hook_name=lifecycle.hook_name,
                asg_name=lifecycle.asg_name,
                instance_id=lifecycle.instance_id,
                token=lifecycle.token,
                result=result,
            )
        except Exception as exc:
            log_error(f"Failed to complete lifecycle action: {exc}",
                      instance_id=lifecycle.instance_id, result=result)
        if self.metrics:
            self.metrics.put_metric(
                "LifecycleHandlerDuration",
                int((time.monotonic() - start) * 1000),
                MILLISECONDS,
            )
            self.metrics.flush()
        return {"statusCode": status_code, "body": body, "result": result}

    def _metric(self, name: str) -> None:
        if self.metrics:
            self.metrics.put_metric(name, 1, COUNT)


def handler(event, context):
    """Lambda entry point for lifecycle termination events."""
    setup_logging(context)
    cfg, services, registry = build_runtime()
    metrics = create_metrics_logger(f"{cfg.metrics_namespace}/Etcd", context)
    request_id = getattr(context, "aws_request_id", None)
    return TerminationHandler(cfg, services, registry, metrics, request_id).handle(event)
