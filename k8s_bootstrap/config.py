#!/usr/bin/env python3
"""
@format
Runtime configuration sourced from environment variables.

Every node process, timer and Lambda handler builds one ``Config`` at
start-up and passes it down explicitly. Nothing below reads the
environment after construction.

Expected environment variables:
    CLUSTER_NAME            — Cluster name (prefix for SSM, DynamoDB, S3 keys)
    AWS_REGION              — AWS region
    SSM_PREFIX              — SSM parameter prefix (default: /<cluster>)
    LOCK_TABLE              — DynamoDB lock table (default: <cluster>-bootstrap-lock)
    MEMBERS_TABLE           — DynamoDB etcd member table (default: <cluster>-etcd-members)
    BACKUP_BUCKET           — S3 bucket holding etcd snapshots
    CONTROL_PLANE_ASG       — Control plane Auto Scaling group name
    TARGET_GROUP_NAME       — API server load balancer target group
    K8S_VERSION             — Kubernetes version (e.g. 1.29.0)
"""

from __future__ import annotations

import os
from dataclasses import dataclass, field
from datetime import datetime, timezone
from pathlib import Path

from k8s_bootstrap.common import log_info


def _env_int(name: str, default: int) -> int:
    return int(os.getenv(name, str(default)))


def _cluster() -> str:
    return os.getenv("CLUSTER_NAME", "k8s-cluster")


@dataclass
class Config:
    """Cluster lifecycle configuration sourced from environment variables."""

    cluster_name: str = field(default_factory=_cluster)
    aws_region: str = field(
        default_factory=lambda: os.getenv("AWS_REGION", "us-west-2")
    )
    ssm_prefix: str = field(
        default_factory=lambda: os.getenv("SSM_PREFIX", "")
    )
    lock_table: str = field(
        default_factory=lambda: os.getenv("LOCK_TABLE", "")
    )
    members_table: str = field(
        default_factory=lambda: os.getenv("MEMBERS_TABLE", "")
    )
    backup_bucket: str = field(
        default_factory=lambda: os.getenv("BACKUP_BUCKET", "")
    )
    control_plane_asg: str = field(
        default_factory=lambda: os.getenv("CONTROL_PLANE_ASG", "")
    )
    target_group_name: str = field(
        default_factory=lambda: os.getenv("TARGET_GROUP_NAME", "")
    )
    control_plane_endpoint: str = field(
        default_factory=lambda: os.getenv("CONTROL_PLANE_ENDPOINT", "")
    )
    api_port: int = field(default_factory=lambda: _env_int("API_PORT", 6443))
    kubernetes_version: str = field(
        default_factory=lambda: os.getenv("K8S_VERSION", "1.29.0")
    )
    pod_cidr: str = field(
        default_factory=lambda: os.getenv("POD_CIDR", "10.244.0.0/16")
    )
    service_cidr: str = field(
        default_factory=lambda: os.getenv("SERVICE_CIDR", "10.96.0.0/12")
    )
    cni_manifest_url: str = field(
        default_factory=lambda: os.getenv(
            "CNI_MANIFEST_URL",
            "https://raw.githubusercontent.com/projectcalico/calico/v3.27.0/manifests/calico.yaml",
        )
    )
    node_label: str = field(
        default_factory=lambda: os.getenv("NODE_LABEL", "role=worker")
    )

    # Credential rotation thresholds (seconds)
    token_refresh_threshold: int = field(
        default_factory=lambda: _env_int("TOKEN_REFRESH_THRESHOLD", 20 * 3600)
    )
    cert_key_refresh_threshold: int = field(
        default_factory=lambda: _env_int("CERT_KEY_REFRESH_THRESHOLD", 90 * 60)
    )
    recent_refresh_window: int = field(
        default_factory=lambda: _env_int("RECENT_REFRESH_WINDOW", 60)
    )
    cert_renewal_days: int = field(
        default_factory=lambda: _env_int("CERT_RENEWAL_DAYS", 30)
    )

    # Lock staleness (seconds)
    init_lock_stale_after: int = field(
        default_factory=lambda: _env_int("INIT_LOCK_STALE_AFTER", 20 * 60)
    )
    refresh_lock_stale_after: int = field(
        default_factory=lambda: _env_int("REFRESH_LOCK_STALE_AFTER", 5 * 60)
    )
    restore_lock_stale_after: int = field(
        default_factory=lambda: _env_int("RESTORE_LOCK_STALE_AFTER", 30 * 60)
    )

    # Cluster safety
    min_healthy_nodes_for_removal: int = field(
        default_factory=lambda: _env_int("MIN_HEALTHY_NODES_FOR_REMOVAL", 2)
    )
    unhealthy_threshold: int = field(
        default_factory=lambda: _env_int("UNHEALTHY_THRESHOLD", 3)
    )

    # Waits and timeouts (seconds)
    init_wait_timeout: int = field(
        default_factory=lambda: _env_int("INIT_WAIT_TIMEOUT", 300)
    )
    worker_init_wait_timeout: int = field(
        default_factory=lambda: _env_int("WORKER_INIT_WAIT_TIMEOUT", 600)
    )
    init_wait_interval: int = field(
        default_factory=lambda: _env_int("INIT_WAIT_INTERVAL", 10)
    )
    etcd_unhealthy_wait: int = field(
        default_factory=lambda: _env_int("ETCD_UNHEALTHY_WAIT", 30)
    )
    ssm_command_timeout: int = field(
        default_factory=lambda: _env_int("SSM_COMMAND_TIMEOUT", 60)
    )
    drain_timeout: int = field(
        default_factory=lambda: _env_int("DRAIN_TIMEOUT", 120)
    )
    join_timeout: int = field(
        default_factory=lambda: _env_int("JOIN_TIMEOUT", 300)
    )

    # Retry policy
    max_retries: int = field(default_factory=lambda: _env_int("MAX_RETRIES", 3))
    retry_base_delay: int = field(
        default_factory=lambda: _env_int("RETRY_BASE_DELAY", 5)
    )

    remote_entrypoint: str = field(
        default_factory=lambda: os.getenv(
            "REMOTE_ENTRYPOINT", "python3 -m k8s_bootstrap.orchestrator"
        )
    )
    status_file: Path = field(
        default_factory=lambda: Path(
            os.getenv("STATUS_FILE", "/tmp/bootstrap-status.json")
        )
    )
    metrics_namespace: str = field(
        default_factory=lambda: os.getenv("METRICS_NAMESPACE", "K8sCluster/Lifecycle")
    )
    dry_run: bool = False

    def __post_init__(self) -> None:
        # Names derived from the cluster unless overridden
        name = self.cluster_name
        self.ssm_prefix = (self.ssm_prefix or f"/{name}").rstrip("/")
        self.lock_table = self.lock_table or f"{name}-bootstrap-lock"
        self.members_table = self.members_table or f"{name}-etcd-members"
        self.control_plane_asg = self.control_plane_asg or f"{name}-control-plane"
        self.target_group_name = self.target_group_name or f"{name}-control-plane-tg"
        self.control_plane_endpoint = (
            self.control_plane_endpoint or f"{name}-cp-lb.internal:{self.api_port}"
        )

    @property
    def backup_prefix(self) -> str:
        return f"{self.cluster_name}/"

    def remote_environment(self) -> dict[str, str]:
        """
        Environment a remote operation needs to address this cluster.

        Commands sent over SSM Run Command start from the agent's bare
        environment, so the target rebuilds ``Config`` from these values.
        """
        env = {
            "CLUSTER_NAME": self.cluster_name,
            "AWS_REGION": self.aws_region,
            "SSM_PREFIX": self.ssm_prefix,
            "LOCK_TABLE": self.lock_table,
            "MEMBERS_TABLE": self.members_table,
            "BACKUP_BUCKET": self.backup_bucket,
        }
        return {name: value for name, value in env.items() if value}

    def print_banner(self) -> None:
        now = datetime.now(timezone.utc).strftime("%Y-%m-%dT%H:%M:%SZ")
        log_info("=== Control plane lifecycle ===")
        log_info(f"Cluster:       {self.cluster_name}")
        log_info(f"SSM prefix:    {self.ssm_prefix}")
        log_info(f"Region:        {self.aws_region}")
        log_info(f"Lock table:    {self.lock_table}")
        log_info(f"Members table: {self.members_table}")
        log_info(f"Backup bucket: {self.backup_bucket or '(none)'}")
        log_info(f"Endpoint:      {self.control_plane_endpoint}")
        log_info(f"Triggered:     {now}")
