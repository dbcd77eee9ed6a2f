#!/usr/bin/env python3
"""
@format
Control plane health monitor: arm disaster recovery after sustained loss.

Runs on a schedule (EventBridge rule, every minute). Each run counts the
control plane instances that are InService and running:

    count > 0   — reset the consecutive failure counter; if restore mode was
                  armed and the cluster came back, disarm it
    count == 0  — increment ``health/failure-count``; once it reaches the
                  unhealthy threshold, point ``cluster/restore-backup`` at the
                  newest snapshot and set ``cluster/restore-mode=true`` so the
                  next booting control plane restores from it

Restore mode is only cleared once ``cluster/initialized`` is true again.
"""

from __future__ import annotations

import time
from typing import Optional

from k8s_bootstrap import params as p
from k8s_bootstrap.common import log_error, log_info, log_warn, setup_logging, utc_now_iso
from k8s_bootstrap.handlers import build_runtime
from k8s_bootstrap.metrics import COUNT, MILLISECONDS, MetricsLogger, create_metrics_logger


class HealthMonitor:
    """Track consecutive control plane outages and arm restore mode."""

    def __init__(self, cfg, services, metrics: Optional[MetricsLogger] = None):
        self.cfg = cfg
        self.services = services
        self.metrics = metrics

    def check(self) -> dict:
        start = time.monotonic()
        try:
            healthy = self.services.fleet.healthy_instances()
            self._metric("HealthyControlPlaneInstances", len(healthy))
            log_info(f"Healthy control plane instances: {len(healthy)}",
                     instances=healthy)

            if healthy:
                response = self._healthy(len(healthy))
            else:
                response = self._unhealthy()
        except Exception as exc:
            log_error(f"Health check failed: {exc}")
            response = {"statusCode": 500, "body": f"Error: {exc}"}

        if self.metrics:
            self.metrics.put_metric(
                "HealthCheckDuration", int((time.monotonic() - start) * 1000), MILLISECONDS
            )
            self.metrics.flush()
        return response

    def failure_count(self) -> int:
        raw = self.services.params.get(p.FAILURE_COUNT)
        try:
            return int(raw) if raw is not None else 0
        except ValueError:
            log_warn(f"⚠ Unparseable failure count {raw!r}, treating as 0")
            return 0

    def _healthy(self, count: int) -> dict:
        params = self.services.params
        if self.failure_count() != 0:
            params.put(p.FAILURE_COUNT, "0")

        if p.is_true(params.get(p.RESTORE_MODE)) and p.is_true(params.get(p.INITIALIZED)):
            params.put(p.RESTORE_MODE, "false")
            log_info("✓ Cluster recovered, restore mode cleared")
            self._metric("ClusterRecovered", 1)
            return {"statusCode": 200, "body": "Cluster recovered",
                    "healthy": count, "recovered": True}

        return {"statusCode": 200, "body": "Healthy", "healthy": count}

    def _unhealthy(self) -> dict:
        params = self.services.params
        failures = self.failure_count() + 1
        params.put(p.FAILURE_COUNT, str(failures))
        self._metric("ConsecutiveHealthFailures", failures)
        log_warn(f"⚠ No healthy control plane instances ({failures} consecutive)",
                 threshold=self.cfg.unhealthy_threshold)

        if failures < self.cfg.unhealthy_threshold:
            return {"statusCode": 200, "body": "Unhealthy, below threshold",
                    "failures": failures}

        if p.is_true(params.get(p.RESTORE_MODE)):
            log_info("Restore mode already armed")
            return {"statusCode": 200, "body": "Restore already pending",
                    "failures": failures}

        backup_key = self.services.objects.latest(self.cfg.backup_prefix)
        if backup_key is None:
            log_error("No etcd backup available, cannot arm disaster recovery",
                      bucket=self.cfg.backup_bucket, prefix=self.cfg.backup_prefix)
            return {"statusCode": 500, "body": "No backup available",
                    "failures": failures}

        self.trigger_restore(backup_key)
        return {"statusCode": 200, "body": "Auto-recovery triggered",
                "failures": failures, "backup": backup_key}

    def trigger_restore(self, backup_key: str) -> None:
        """Arm restore mode. The backup key is written before the flag."""
        params = self.services.params
        params.put(p.RESTORE_BACKUP, backup_key)
        params.put(p.RESTORE_TRIGGERED_AT, utc_now_iso())
        params.put(p.INITIALIZED, "false")
        params.put(p.RESTORE_MODE, "true")
        log_warn(f"⚠ Disaster recovery armed from {backup_key}")
        self._metric("AutoRecoveryTriggered", 1)

    def _metric(self, name: str, value: float) -> None:
        if self.metrics:
            self.metrics.put_metric(name, value, COUNT)


def handler(event, context):
    """Lambda entry point for the scheduled health check."""
    setup_logging(context)
    cfg, services, _ = build_runtime()
    metrics = create_metrics_logger(f"{cfg.metrics_namespace}/Health", context)
    return HealthMonitor(cfg, services, metrics).check()
