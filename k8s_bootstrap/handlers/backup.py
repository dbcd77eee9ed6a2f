#!/usr/bin/env python3
"""
@format
Scheduled etcd backup.

Picks a healthy control plane and has it snapshot etcd straight to S3
(``--mode snapshot``). The snapshot key is timestamped under the cluster
prefix, which is what the health monitor's "latest backup" lookup reads:

    <cluster>/etcd-snapshot-YYYYmmdd-HHMMSS.db
"""

from __future__ import annotations

import re
import time
from typing import Optional

from k8s_bootstrap.common import log_error, log_info, setup_logging, utc_now
from k8s_bootstrap.handlers import build_runtime
from k8s_bootstrap.metrics import BYTES, COUNT, MILLISECONDS, MetricsLogger, create_metrics_logger
from k8s_bootstrap.node import BACKUP_SUCCESS, BackupError
from k8s_bootstrap.registry import MembershipRegistry
from k8s_bootstrap.remote import run_remote
from k8s_bootstrap.retry import retry_with_backoff

SIZE_PATTERN = re.compile(r"size=(\d+)")


def backup_key_for(cluster_name: str, moment=None) -> str:
    moment = moment or utc_now()
    return f"{cluster_name}/etcd-snapshot-{moment.strftime('%Y%m%d-%H%M%S')}.db"


class BackupRunner:
    """Dispatch an etcd snapshot to a healthy control plane."""

    def __init__(self, cfg, services, registry: MembershipRegistry,
                 metrics: Optional[MetricsLogger] = None):
        self.cfg = cfg
        self.services = services
        self.registry = registry
        self.metrics = metrics

    def run(self) -> dict:
        start = time.monotonic()
        backup_key = backup_key_for(self.cfg.cluster_name)
        try:
            marker = retry_with_backoff(
                lambda: self._snapshot(backup_key),
                "etcd snapshot",
                max_retries=self.cfg.max_retries,
                base_delay=self.cfg.retry_base_delay,
                retriable_exceptions=(BackupError,),
                metrics=self.metrics,
            )
        except Exception as exc:
            log_error(f"etcd backup failed: {exc}", backup=backup_key)
            self._metric("BackupFailure", 1, COUNT)
            response = {"statusCode": 500, "body": f"Backup failed: {exc}"}
        else:
            size = self.parse_size(marker)
            log_info(f"✓ etcd backup stored at {backup_key}", size_bytes=size)
            self._metric("BackupSuccess", 1, COUNT)
            if size is not None:
                self._metric("BackupSizeBytes", size, BYTES)
            response = {"statusCode": 200, "body": "Backup complete",
                        "backup": backup_key, "size": size}

        if self.metrics:
            self.metrics.put_metric(
                "BackupDuration", int((time.monotonic() - start) * 1000), MILLISECONDS
            )
            self.metrics.flush()
        return response

    def _snapshot(self, backup_key: str) -> str:
        instances = self.registry.lookup_healthy_control_plane_instances()
        if not instances:
            raise BackupError("no healthy control plane available for snapshot")
        try:
            marker, _ = run_remote(
                self.services.commands, self.cfg, instances[0],
                "snapshot", expect=(BACKUP_SUCCESS,),
                timeout=self.cfg.ssm_command_timeout * 5,
                backup_key=backup_key,
            )
        except Exception as exc:
            raise BackupError(f"snapshot via {instances[0]} failed: {exc}") from exc
        return marker

    @staticmethod
    def parse_size(marker: str) -> Optional[int]:
        match = SIZE_PATTERN.search(marker)
        return int(match.group(1)) if match else None

    def _metric(self, name: str, value: float, unit: str) -> None:
        if self.metrics:
            self.metrics.put_metric(name, value, unit)


def handler(event, context):
    """Lambda entry point for the scheduled backup."""
    setup_logging(context)
    cfg, services, registry = build_runtime()
    metrics = create_metrics_logger(f"{cfg.metrics_namespace}/Backup", context)
    return BackupRunner(cfg, services, registry, metrics).run()
