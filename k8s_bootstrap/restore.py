#!/usr/bin/env python3
"""
@format
Disaster recovery: rebuild the control plane from an etcd snapshot.

Triggered when the health monitor has set ``cluster/restore-mode=true``
and ``cluster/restore-backup=<s3 key>``. Exactly one booting node wins
``restore-lock`` and restores; every other node defers and later joins the
restored cluster as an ordinary control plane.

Sequence on the winner:
    1. download snapshot from S3
    2. etcd snapshot restore into a fresh data dir, swap into /var/lib/etcd
    3. kubeadm init on top of the restored data
    4. mint certificate key, join token and CA hash; publish them
    5. cluster/initialized=true, then cluster/restore-mode=false
    6. register etcd member and load balancer target, clean stale nodes
"""

from __future__ import annotations

import enum
import functools
import os
import uuid
from typing import Optional

from k8s_bootstrap import params as p
from k8s_bootstrap.aws import Services
from k8s_bootstrap.common import log_error, log_info, log_warn
from k8s_bootstrap.lock import RESTORE_LOCK, DistributedLock, LockStatus
from k8s_bootstrap.metrics import COUNT, MetricsLogger
from k8s_bootstrap.registration import register_etcd_member, register_load_balancer
from k8s_bootstrap.registry import MembershipRegistry
from k8s_bootstrap.retry import retry_with_backoff

SNAPSHOT_PATH = "/tmp/etcd-restore.db"


class RestoreOutcome(str, enum.Enum):
    RESTORED = "RESTORED"
    DEFERRED = "DEFERRED"


class RestoreError(Exception):
    """The restore could not be completed on this node."""


class RestoreOrchestrator:
    """Run the single-winner restore sequence on a booting control plane."""

    def __init__(self, cfg, services: Services, registry: MembershipRegistry, local,
                 metrics: Optional[MetricsLogger] = None,
                 snapshot_path: str = SNAPSHOT_PATH):
        self.cfg = cfg
        self.services = services
        self.registry = registry
        self.local = local
        self.metrics = metrics
        self.snapshot_path = snapshot_path
        self.lock = DistributedLock(services.locks)
        self.published_initialized = False

    def run(self, backup_key: str) -> RestoreOutcome:
        """
        Restore from ``backup_key`` if this node wins the restore lock.

        Returns:
            RESTORED on success, DEFERRED if another node holds the lock.

        Raises:
            RestoreError: If any restore step fails. The lock is released
                first so another node can retry.
        """
        instance_id = self.local.identity.instance_id
        acquired = self.lock.acquire(
            RESTORE_LOCK, instance_id, self.cfg.restore_lock_stale_after,
            status=LockStatus.RESTORING,
        )
        if not acquired:
            log_info("Another node is restoring the cluster, deferring")
            return RestoreOutcome.DEFERRED

        log_info(f"Acquired restore lock, restoring from {backup_key}")
        try:
            self._restore(backup_key)
        except Exception as exc:
            log_error(f"Disaster recovery failed: {exc}", backup=backup_key)
            self._emit("RestoreFailure")
            raise RestoreError(f"restore from {backup_key} failed: {exc}") from exc
        finally:
            self.lock.release(RESTORE_LOCK)
            self._remove_snapshot()

        self._emit("RestoreSuccess")
        log_info("✓ Disaster recovery completed", backup=backup_key)
        return RestoreOutcome.RESTORED

    def _restore(self, backup_key: str) -> None:
        cfg = self.cfg
        params = self.services.params

        retry_with_backoff(
            lambda: self.services.objects.download(backup_key, self.snapshot_path),
            "download etcd snapshot",
            max_retries=cfg.max_retries,
            base_delay=cfg.retry_base_delay,
            metrics=self.metrics,
        )

        cluster_token = f"{cfg.cluster_name}-restored-{uuid.uuid4().hex[:8]}"
        self.local.restore_snapshot(self.snapshot_path, cluster_token)
        self.local.init_from_restored_etcd()

        certificate_key = self.local.generate_certificate_key()
        self.local.upload_certs(certificate_key)
        join_token = self.local.create_join_token()
        ca_hash = self.local.ca_cert_hash()

        publish = functools.partial(
            p.publish_bootstrap_parameters,
            params,
            endpoint=cfg.control_plane_endpoint,
            join_token=join_token,
            ca_cert_hash=ca_hash,
            certificate_key=certificate_key,
            kubernetes_version=cfg.kubernetes_version,
        )
        retry_with_backoff(publish, "publish bootstrap parameters",
                           max_retries=cfg.max_retries, base_delay=cfg.retry_base_delay)

        # initialized first: a node seeing initialized=true joins even if
        # restore-mode is still set
        retry_with_backoff(lambda: params.put(p.INITIALIZED, "true"),
                           "mark cluster initialized",
                           max_retries=cfg.max_retries, base_delay=cfg.retry_base_delay)
        self.published_initialized = True
        retry_with_backoff(lambda: params.put(p.RESTORE_MODE, "false"),
                           "clear restore mode",
                           max_retries=cfg.max_retries, base_delay=cfg.retry_base_delay)

        if not register_etcd_member(cfg, self.registry, self.local, metrics=self.metrics):
            log_warn("⚠ etcd member not registered; lifecycle cleanup may not work")
        register_load_balancer(cfg, self.services.fleet, self.local.identity.instance_id,
                               metrics=self.metrics)
        # The cluster is live from here on; remaining steps only warn
        for name, action in (("CNI install", self.local.install_cni),
                             ("Stale node cleanup", self.local.clean_stale_nodes)):
            try:
                action()
            except Exception as exc:
                log_warn(f"⚠ {name} failed: {exc}")

    def _remove_snapshot(self) -> None:
        try:
            os.remove(self.snapshot_path)
        except FileNotFoundError:
            pass
        except OSError as exc:
            log_warn(f"Could not remove {self.snapshot_path}: {exc}")

    def _emit(self, name: str) -> None:
        if self.metrics:
            self.metrics.put_metric(name, 1, COUNT)
            self.metrics.flush()
