#!/usr/bin/env python3
"""
@format
Node lifecycle entry point.

Runs on the instance itself, either from user data at boot, from a
systemd timer, or dispatched remotely over SSM Run Command by the
Lambda handlers and by peers refreshing credentials.

Usage:
    # Control plane boot (default):
    python3 -m k8s_bootstrap.orchestrator

    # Worker boot:
    python3 -m k8s_bootstrap.orchestrator --mode worker

    # Scheduled maintenance on a control plane:
    python3 -m k8s_bootstrap.orchestrator --mode rotate
    python3 -m k8s_bootstrap.orchestrator --mode renew-certs

    # Node-side remote operations (print a result marker line):
    python3 -m k8s_bootstrap.orchestrator --mode refresh-credentials
    python3 -m k8s_bootstrap.orchestrator --mode drain-node --node-name ip-10-0-1-5
    python3 -m k8s_bootstrap.orchestrator --mode remove-member --member-id 8e9e05c52164694d
    python3 -m k8s_bootstrap.orchestrator --mode etcd-health
    python3 -m k8s_bootstrap.orchestrator --mode snapshot --backup-key k8s/etcd-snapshot-x.db

    # Print the resolved configuration and planned mode only:
    python3 -m k8s_bootstrap.orchestrator --dry-run

Boot modes write structured status to /tmp/bootstrap-status.json after
each stage and publish progress to SSM for remote monitoring.
"""

from __future__ import annotations

import argparse
import sys
from typing import Optional

from k8s_bootstrap import node
from k8s_bootstrap.aws import Services
from k8s_bootstrap.common import log_error, log_info, setup_logging
from k8s_bootstrap.config import Config
from k8s_bootstrap.join import ControlPlaneBootstrap, Stage, WorkerBootstrap
from k8s_bootstrap.lock import DistributedLock
from k8s_bootstrap.metrics import create_metrics_logger
from k8s_bootstrap.registry import MembershipRegistry
from k8s_bootstrap.rotation import CredentialRotation, refresh_credentials_locally, renew_certificates

BOOT_MODES = ("control-plane", "worker")
MAINTENANCE_MODES = ("rotate", "renew-certs")
REMOTE_MODES = ("refresh-credentials", "drain-node", "remove-member", "etcd-health", "snapshot")
MODES = BOOT_MODES + MAINTENANCE_MODES + REMOTE_MODES


# =============================================================================
# Modes
# =============================================================================

def run_boot(cfg: Config, services: Services, control_plane: bool) -> bool:
    cfg.print_banner()
    local = node.LocalNode(cfg)
    registry = MembershipRegistry(services.members, services.fleet, cfg.cluster_name)
    metrics = create_metrics_logger(f"{cfg.metrics_namespace}/Bootstrap")
    bootstrap_cls = ControlPlaneBootstrap if control_plane else WorkerBootstrap
    final = bootstrap_cls(cfg, services, local, registry, metrics=metrics).run()
    return final is Stage.COMPLETE


def run_rotation(cfg: Config, services: Services) -> bool:
    """Scheduled check: refresh join credentials that are close to expiry."""
    local = node.LocalNode(cfg)
    registry = MembershipRegistry(services.members, services.fleet, cfg.cluster_name)
    rotation = CredentialRotation(
        cfg, services, registry, local.identity.instance_id,
        metrics=create_metrics_logger(f"{cfg.metrics_namespace}/Rotation"),
    )
    outcome = rotation.ensure_fresh()
    log_info(f"Credential rotation: {outcome.value}")
    return outcome.fresh


def run_remote_operation(cfg: Config, mode: str, args: argparse.Namespace,
                         services: Optional[Services] = None) -> bool:
    if mode == "etcd-health":
        node.etcd_health()
        return True
    if mode == "drain-node":
        if not args.node_name:
            raise ValueError("--node-name is required for drain-node")
        node.drain_node(args.node_name, timeout=cfg.drain_timeout)
        return True
    if mode == "remove-member":
        if not args.member_id:
            raise ValueError("--member-id is required for remove-member")
        node.remove_etcd_member(args.member_id)
        return True

    services = services or Services.from_config(cfg)
    if mode == "refresh-credentials":
        refresh_credentials_locally(
            services.params, DistributedLock(services.locks),
            node.NodeIdentity.discover().instance_id,
        )
        return True
    if mode == "snapshot":
        if not args.backup_key:
            raise ValueError("--backup-key is required for snapshot")
        node.create_snapshot(services.objects, args.backup_key)
        return True
    raise ValueError(f"Unknown remote mode: {mode}")


def run_mode(cfg: Config, args: argparse.Namespace) -> bool:
    """Dispatch ``args.mode``. Returns True on success."""
    mode = args.mode
    if cfg.dry_run:
        cfg.print_banner()
        log_info(f"DRY RUN — would run mode '{mode}'")
        return True

    if mode == "renew-certs":
        renew_certificates(cfg.cert_renewal_days)
        return True
    if mode in REMOTE_MODES:
        return run_remote_operation(cfg, mode, args)

    services = Services.from_config(cfg)
    if mode == "rotate":
        return run_rotation(cfg, services)
    return run_boot(cfg, services, control_plane=(mode == "control-plane"))


# =============================================================================
# CLI
# =============================================================================

def build_parser() -> argparse.ArgumentParser:
    parser = argparse.ArgumentParser(description="K8s control plane lifecycle")
    parser.add_argument(
        "--mode",
        choices=MODES,
        default="control-plane",
        help="Operation to run (default: control-plane)",
    )
    parser.add_argument("--node-name", help="Node to drain (drain-node)")
    parser.add_argument("--member-id", help="etcd member id, hex (remove-member)")
    parser.add_argument("--backup-key", help="S3 key for the snapshot (snapshot)")
    parser.add_argument(
        "--dry-run",
        action="store_true",
        help="Print the resolved configuration without executing",
    )
    return parser


def main(argv: Optional[list[str]] = None) -> None:
    args = build_parser().parse_args(argv)
    setup_logging()
    cfg = Config(dry_run=args.dry_run)

    try:
        ok = run_mode(cfg, args)
    except Exception as exc:
        log_error(f"Mode {args.mode} failed: {exc}")
        ok = False

    sys.exit(0 if ok else 1)


if __name__ == "__main__":
    try:
        main()
    except KeyboardInterrupt:
        log_error("Interrupted")
        sys.exit(130)
