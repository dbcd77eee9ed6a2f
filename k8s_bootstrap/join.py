#!/usr/bin/env python3
"""
@format
Node join state machine.

Runs once on every booting node. Control planes walk

    DETECT_MODE → (RESTORE | INIT | JOIN) → REGISTER_ETCD
                → REGISTER_LOAD_BALANCER → COMPLETE

and workers walk WAIT_FOR_CLUSTER → JOIN → COMPLETE. Any stage may fall to
FAILED, which runs cleanup (release held locks, leave the load balancer,
``kubeadm reset``, stop kubelet) and makes the process exit non-zero.

Every transition is checked against ``TRANSITIONS``, logged as
``BOOTSTRAP_STAGE=<stage>`` and recorded in the status file.
"""

from __future__ import annotations

import enum
import time
from typing import Callable, Optional

from k8s_bootstrap import params as p
from k8s_bootstrap.aws import Services
from k8s_bootstrap.common import (
    StepRunner, StepStatus, log_error, log_info, log_warn, write_status,
)
from k8s_bootstrap.lock import CLUSTER_INIT_LOCK, DistributedLock, LockStatus
from k8s_bootstrap.metrics import COUNT, MILLISECONDS, MetricsLogger
from k8s_bootstrap.node import ETCD_HEALTHY, ETCD_UNHEALTHY
from k8s_bootstrap.registration import (
    deregister_load_balancer, register_etcd_member, register_load_balancer,
)
from k8s_bootstrap.registry import MembershipRegistry
from k8s_bootstrap.remote import run_remote
from k8s_bootstrap.restore import RestoreOrchestrator, RestoreOutcome
from k8s_bootstrap.retry import poll_until, retry_with_backoff
from k8s_bootstrap.rotation import CredentialRotation


class Stage(str, enum.Enum):
    DETECT_MODE = "detect-mode"
    WAIT_FOR_CLUSTER = "wait-for-cluster"
    RESTORE = "restore"
    INIT = "init"
    JOIN = "join"
    REGISTER_ETCD = "register-etcd"
    REGISTER_LOAD_BALANCER = "register-load-balancer"
    COMPLETE = "complete"
    FAILED = "failed"


TERMINAL = frozenset({Stage.COMPLETE, Stage.FAILED})

TRANSITIONS: dict[Stage, frozenset] = {
    Stage.DETECT_MODE: frozenset({Stage.RESTORE, Stage.INIT, Stage.JOIN, Stage.COMPLETE}),
    Stage.WAIT_FOR_CLUSTER: frozenset({Stage.JOIN, Stage.COMPLETE}),
    Stage.RESTORE: frozenset({Stage.COMPLETE, Stage.JOIN}),
    Stage.INIT: frozenset({Stage.JOIN, Stage.REGISTER_ETCD}),
    Stage.JOIN: frozenset({Stage.REGISTER_ETCD, Stage.COMPLETE}),
    Stage.REGISTER_ETCD: frozenset({Stage.REGISTER_LOAD_BALANCER}),
    Stage.REGISTER_LOAD_BALANCER: frozenset({Stage.COMPLETE}),
    Stage.COMPLETE: frozenset(),
    Stage.FAILED: frozenset(),
}


class BootstrapError(Exception):
    """A bootstrap stage failed and the node cannot continue."""


def can_transition(current: Stage, target: Stage) -> bool:
    if target is Stage.FAILED:
        return current not in TERMINAL
    return target in TRANSITIONS[current]


# =============================================================================
# Base State Machine
# =============================================================================

class NodeBootstrap:
    """Drive a node through its bootstrap stages."""

    control_plane = True
    initial_stage = Stage.DETECT_MODE

    def __init__(self, cfg, services: Services, local, registry: MembershipRegistry,
                 *, rotation: Optional[CredentialRotation] = None,
                 metrics: Optional[MetricsLogger] = None,
                 sleep: Optional[Callable[[float], None]] = None):
        self.cfg = cfg
        self.services = services
        self.params = services.params
        self.local = local
        self.registry = registry
        self.metrics = metrics
        self.lock = DistributedLock(services.locks)
        self.rotation = rotation or CredentialRotation(
            cfg, services, registry, local.identity.instance_id, metrics=metrics
        )
        self._sleep = sleep or time.sleep
        self.stage = self.initial_stage
        self.history: list[Stage] = [self.initial_stage]
        self.statuses: list[StepStatus] = []
        self.error: Optional[str] = None
        self._held_locks: set[str] = set()
        self._lb_registered = False
        self._published_initialized = False

    # -------------------------------------------------------------------------
    # Driver
    # -------------------------------------------------------------------------

    def handlers(self) -> dict:
        raise NotImplementedError

    def run(self) -> Stage:
        """Run stages until COMPLETE or FAILED. Returns the terminal stage."""
        start = time.monotonic()
        log_info(f"BOOTSTRAP_STAGE={self.stage.value}", bootstrap_stage=self.stage.value)
        handlers = self.handlers()

        while self.stage not in TERMINAL:
            current = self.stage
            step = StepRunner(current.value)
            try:
                with step:
                    target = handlers[current]()
                    step.details["next_stage"] = target.value
            except Exception as exc:
                self.error = f"{current.value}: {exc}"
                log_error(f"Stage {current.value} failed: {exc}",
                          bootstrap_stage=current.value)
                target = Stage.FAILED
            finally:
                self._record(step.status, len(self.history))
            self.transition(target)

        if self.stage is Stage.FAILED:
            self.cleanup()

        duration_ms = int((time.monotonic() - start) * 1000)
        if self.metrics:
            self.metrics.put_metric(
                "BootstrapSuccess" if self.stage is Stage.COMPLETE else "BootstrapFailure",
                1, COUNT,
            )
            self.metrics.put_metric("BootstrapDuration", duration_ms, MILLISECONDS)
            self.metrics.flush()
        return self.stage

    def transition(self, target: Stage) -> None:
        if not can_transition(self.stage, target):
            self.error = f"invalid transition {self.stage.value} -> {target.value}"
            log_error(self.error, bootstrap_stage=self.stage.value)
            target = Stage.FAILED
        self.stage = target
        self.history.append(target)
        log_info(f"BOOTSTRAP_STAGE={target.value}", bootstrap_stage=target.value)

    def _record(self, status: StepStatus, index: int) -> None:
        self.statuses.append(status)
        write_status(self.statuses, self.cfg.status_file)
        p.publish_step_status(self.params, {
            "step": status.step_name,
            "index": index,
            "status": status.status,
            "duration": status.duration_seconds,
            "instance_id": self.local.identity.instance_id,
        })

    # -------------------------------------------------------------------------
    # Shared helpers
    # -------------------------------------------------------------------------

    def read_param(self, name: str) -> Optional[str]:
        """Read one cluster parameter, retrying transient SSM errors."""
        return retry_with_backoff(
            lambda: self.params.get(name),
            f"read {name}",
            max_retries=self.cfg.max_retries,
            base_delay=self.cfg.retry_base_delay,
            metrics=self.metrics,
            sleep=self._sleep,
        )

    def wait_for_initialized(self, timeout: float) -> bool:
        return bool(poll_until(
            self._initialized_published,
            timeout=timeout,
            interval=self.cfg.init_wait_interval,
            description="cluster initialization",
            sleep=self._sleep,
        ))

    def _initialized_published(self) -> bool:
        try:
            return p.is_true(self.read_param(p.INITIALIZED))
        except Exception as exc:
            log_warn(f"⚠ Could not read {p.INITIALIZED}, polling again: {exc}")
            return False

    def join_with_refresh(self) -> None:
        """
        Join once; on failure refresh credentials, reset and retry exactly once.

        Raises:
            BootstrapParameterError: If parameters are missing or sentinels.
            BootstrapError: If the second attempt fails too.
        """
        try:
            self.rotation.ensure_fresh(include_certificate_key=self.control_plane)
        except Exception as exc:
            log_warn(f"⚠ Credential freshness check failed, trying existing credentials: {exc}")

        if self._attempt_join(1):
            return

        log_warn("kubeadm join failed, requesting credential refresh before retry")
        try:
            outcome = self.rotation.refresh()
            log_info(f"Credential refresh outcome: {outcome.value}")
        except Exception as exc:
            log_warn(f"⚠ Credential refresh failed, retrying with existing credentials: {exc}")
        self.local.reset()

        if self._attempt_join(2):
            return
        raise BootstrapError("kubeadm join failed after credential refresh")

    def _attempt_join(self, attempt: int) -> bool:
        bootstrap = retry_with_backoff(
            lambda: p.BootstrapParameters.load(self.params, control_plane=self.control_plane),
            "load bootstrap parameters",
            max_retries=self.cfg.max_retries,
            base_delay=self.cfg.retry_base_delay,
            metrics=self.metrics,
            sleep=self._sleep,
        )
        bootstrap.validate(control_plane=self.control_plane)
        log_info(f"=== kubeadm join attempt {attempt}/2 ===", endpoint=bootstrap.endpoint)
        ok = self.local.join(bootstrap, self.control_plane)
        if ok:
            log_info(f"✓ kubeadm join succeeded on attempt {attempt}")
        return ok

    def cleanup(self) -> None:
        """
        Best-effort teardown after FAILED so the next boot starts clean.

        Once this node has published ``cluster/initialized=true`` it is the
        cluster's control plane, so only its locks are released.
        """
        log_warn("Running failed-bootstrap cleanup")
        for lock_name in sorted(self._held_locks):
            try:
                self.lock.release(lock_name)
            except Exception as exc:
                log_warn(f"⚠ Could not release {lock_name}: {exc}")
        self._held_locks.clear()
        if self._published_initialized:
            log_warn("⚠ This node published cluster/initialized=true; "
                     "keeping kubeadm state and load balancer registration")
            return
        if self._lb_registered:
            deregister_load_balancer(self.cfg, self.services.fleet,
                                     self.local.identity.instance_id)
        for action in (self.local.reset, self.local.stop_kubelet):
            try:
                action()
            except Exception as exc:
                log_warn(f"⚠ Cleanup step failed: {exc}")


# =============================================================================
# Control Plane
# =============================================================================

class ControlPlaneBootstrap(NodeBootstrap):
    """Bootstrap, restore or join a control-plane node."""

    control_plane = True

    def __init__(self, *args, **kwargs):
        super().__init__(*args, **kwargs)
        self._backup_key: Optional[str] = None

    def handlers(self) -> dict:
        return {
            Stage.DETECT_MODE: self.detect_mode,
            Stage.RESTORE: self.restore,
            Stage.INIT: self.init,
            Stage.JOIN: self.join,
            Stage.REGISTER_ETCD: self.register_etcd,
            Stage.REGISTER_LOAD_BALANCER: self.register_load_balancer,
        }

    def detect_mode(self) -> Stage:
        self.local.preflight(control_plane=True)
        if self.local.is_initialized():
            log_info("Control plane already configured on this node, nothing to do")
            return Stage.COMPLETE

        restore_mode = self.read_param(p.RESTORE_MODE)
        backup_key = self.read_param(p.RESTORE_BACKUP)
        initialized = p.is_true(self.read_param(p.INITIALIZED))

        if p.is_true(restore_mode) and not p.is_unset(backup_key) and not initialized:
            log_info(f"RESTORE MODE DETECTED, backup: {backup_key}")
            self._backup_key = backup_key
            return Stage.RESTORE
        if initialized:
            log_info("Cluster already initialized, joining as control plane")
            return Stage.JOIN
        log_info("Cluster not initialized, attempting to initialize")
        return Stage.INIT

    def restore(self) -> Stage:
        orchestrator = RestoreOrchestrator(
            self.cfg, self.services, self.registry, self.local, metrics=self.metrics
        )
        try:
            outcome = orchestrator.run(self._backup_key)
        finally:
            self._published_initialized |= orchestrator.published_initialized
        if outcome is RestoreOutcome.RESTORED:
            self._lb_registered = True
            return Stage.COMPLETE

        if not self.wait_for_initialized(self.cfg.init_wait_timeout):
            log_warn("Restore winner has not finished yet, attempting join anyway")
        return Stage.JOIN

    def init(self) -> Stage:
        instance_id = self.local.identity.instance_id
        if not self.lock.acquire(CLUSTER_INIT_LOCK, instance_id,
                                 self.cfg.init_lock_stale_after,
                                 status=LockStatus.INITIALIZING):
            log_info("Another node is initializing the cluster, waiting")
            if not self.wait_for_initialized(self.cfg.init_wait_timeout):
                log_warn("Cluster still not initialized, attempting join anyway")
            return Stage.JOIN

        self._held_locks.add(CLUSTER_INIT_LOCK)
        try:
            # A previous holder may have finished between our check and our lock
            if p.is_true(self.read_param(p.INITIALIZED)):
                log_info("Cluster was initialized by another node, joining instead")
                return Stage.JOIN
            self._initialize_cluster()
            return Stage.REGISTER_ETCD
        finally:
            self.lock.release(CLUSTER_INIT_LOCK)
            self._held_locks.discard(CLUSTER_INIT_LOCK)

    def _initialize_cluster(self) -> None:
        log_info(f"Initializing kubeadm cluster (v{self.cfg.kubernetes_version})")
        certificate_key = self.local.generate_certificate_key()
        self.local.init_cluster(certificate_key)

        p.publish_bootstrap_parameters(
            self.params,
            endpoint=self.cfg.control_plane_endpoint,
            join_token=self.local.create_join_token(),
            ca_cert_hash=self.local.ca_cert_hash(),
            certificate_key=certificate_key,
            kubernetes_version=self.cfg.kubernetes_version,
        )
        self.params.put(p.INITIALIZED, "true")
        self._published_initialized = True
        log_info("✓ Cluster initialized")
        try:
            self.local.install_cni()
        except Exception as exc:
            log_warn(f"⚠ CNI install failed: {exc}")

    def join(self) -> Stage:
        self.check_etcd_health()
        self.join_with_refresh()
        return Stage.REGISTER_ETCD

    def register_etcd(self) -> Stage:
        register_etcd_member(self.cfg, self.registry, self.local, metrics=self.metrics)
        return Stage.REGISTER_LOAD_BALANCER

    def register_load_balancer(self) -> Stage:
        self._lb_registered = register_load_balancer(
            self.cfg, self.services.fleet, self.local.identity.instance_id,
            metrics=self.metrics,
        )
        return Stage.COMPLETE

    def check_etcd_health(self) -> None:
        """
        Refuse to add a member to an unhealthy etcd cluster.

        An unhealthy report is re-checked once after ``etcd_unhealthy_wait``.
        An unreachable peer or missing peer does not block the join.

        Raises:
            BootstrapError: If etcd is reported unhealthy twice.
        """
        try:
            peers = self.registry.lookup_healthy_control_plane_instances(
                exclude_instance_id=self.local.identity.instance_id
            )
        except Exception as exc:
            log_warn(f"⚠ Could not list control planes for etcd health check: {exc}")
            return
        if not peers:
            log_warn("No healthy control plane peer for etcd health check, proceeding")
            return

        peer = peers[0]
        healthy = self._remote_etcd_health(peer)
        if healthy is None or healthy:
            return

        log_warn(f"etcd reported unhealthy, re-checking in {self.cfg.etcd_unhealthy_wait}s")
        self._sleep(self.cfg.etcd_unhealthy_wait)
        if self._remote_etcd_health(peer) is False:
            raise BootstrapError("etcd cluster unhealthy, refusing to join")

    def _remote_etcd_health(self, instance_id: str) -> Optional[bool]:
        try:
            marker, _ = run_remote(
                self.services.commands, self.cfg, instance_id,
                "etcd-health",
                expect=(ETCD_HEALTHY, ETCD_UNHEALTHY),
                timeout=self.cfg.ssm_command_timeout,
            )
        except Exception as exc:
            log_warn(f"⚠ etcd health check on {instance_id} failed: {exc}")
            return None
        log_info(f"etcd health on {instance_id}: {marker}")
        return marker.startswith(ETCD_HEALTHY)


# =============================================================================
# Worker
# =============================================================================

class WorkerBootstrap(NodeBootstrap):
    """Join a worker node to an initialized cluster."""

    control_plane = False
    initial_stage = Stage.WAIT_FOR_CLUSTER

    def handlers(self) -> dict:
        return {
            Stage.WAIT_FOR_CLUSTER: self.wait_for_cluster,
            Stage.JOIN: self.join,
        }

    def wait_for_cluster(self) -> Stage:
        self.local.preflight(control_plane=False)
        if self.local.has_joined():
            log_info("Node already joined, nothing to do")
            return Stage.COMPLETE
        if not self.wait_for_initialized(self.cfg.worker_init_wait_timeout):
            log_warn("Cluster still not initialized, attempting join anyway")
        return Stage.JOIN

    def join(self) -> Stage:
        self.join_with_refresh()
        return Stage.COMPLETE
