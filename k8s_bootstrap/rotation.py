#!/usr/bin/env python3
"""
@format
Join token and certificate-key rotation, plus control plane certificate
renewal.

kubeadm join tokens live 24h and uploaded certificate keys live 2h. Both
are refreshed well before expiry (20h and 90min by default) by a healthy
control-plane peer, serialized cluster-wide through ``token-refresh-lock``
so concurrent joiners never mint competing credentials.
"""

from __future__ import annotations

import enum
import re
import shutil
import tempfile
import time
from datetime import datetime, timedelta, timezone
from pathlib import Path
from typing import Callable, Optional

from k8s_bootstrap import node, params as p
from k8s_bootstrap.aws import ParameterStore, Services
from k8s_bootstrap.common import (
    log_error, log_info, log_warn, parse_timestamp, run_cmd, utc_now, utc_now_iso,
)
from k8s_bootstrap.lock import TOKEN_GEN_LOCK, TOKEN_REFRESH_LOCK, DistributedLock
from k8s_bootstrap.metrics import COUNT, MetricsLogger
from k8s_bootstrap.registry import MembershipRegistry
from k8s_bootstrap.remote import run_remote
from k8s_bootstrap.retry import RetriableError, retry_with_backoff

CREDENTIAL_REFRESH_SUCCESS = "CREDENTIAL_REFRESH_SUCCESS"
STATIC_POD_MANIFESTS = "/etc/kubernetes/manifests"
TOKEN_GEN_STALE_AFTER = 120


class CredentialMintContendedError(RetriableError):
    """Another control plane is minting join credentials right now."""


class RefreshOutcome(str, enum.Enum):
    NOT_NEEDED = "NOT_NEEDED"
    REFRESHED = "REFRESHED"
    REFRESHED_BY_PEER = "REFRESHED_BY_PEER"
    CONTENDED = "CONTENDED"
    FAILED = "FAILED"

    @property
    def fresh(self) -> bool:
        return self in (RefreshOutcome.NOT_NEEDED, RefreshOutcome.REFRESHED,
                        RefreshOutcome.REFRESHED_BY_PEER)


def should_refresh(age: Optional[timedelta], threshold_seconds: float) -> bool:
    """Refresh iff the age is known and at or past the threshold."""
    if age is None:
        return False
    return age.total_seconds() >= threshold_seconds


# =============================================================================
# Rotation Manager
# =============================================================================

class CredentialRotation:
    """Decide when join credentials are stale and get them refreshed."""

    def __init__(self, cfg, services: Services, registry: MembershipRegistry,
                 instance_id: str, *,
                 metrics: Optional[MetricsLogger] = None,
                 clock: Callable[[], datetime] = utc_now,
                 local_refresh: Optional[Callable[[], None]] = None,
                 can_refresh_locally: Optional[Callable[[], bool]] = None):
        self.cfg = cfg
        self.params = services.params
        self.commands = services.commands
        self.lock = DistributedLock(services.locks, clock=clock)
        self.registry = registry
        self.instance_id = instance_id
        self.metrics = metrics
        self._clock = clock
        self._local_refresh = local_refresh or (
            lambda: refresh_credentials_locally(self.params, self.lock, self.instance_id)
        )
        self._can_refresh_locally = can_refresh_locally or node.is_initialized_locally

    def credential_age(self, timestamp_key: str) -> Optional[timedelta]:
        """Age of a credential from its ``-updated`` timestamp; None if unknown."""
        value = self.params.get(timestamp_key)
        updated = parse_timestamp(None if p.is_unset(value) else value)
        if updated is None:
            log_warn(f"No usable timestamp at {timestamp_key}, treating age as unknown")
            return None
        return self._clock() - updated

    def needs_refresh(self, *, include_certificate_key: bool = True) -> bool:
        token_age = self.credential_age(p.JOIN_TOKEN_UPDATED)
        if should_refresh(token_age, self.cfg.token_refresh_threshold):
            log_info(f"Join token is {token_age.total_seconds() / 3600:.1f}h old, refresh needed")
            return True
        if include_certificate_key:
            key_age = self.credential_age(p.CERTIFICATE_KEY_UPDATED)
            if should_refresh(key_age, self.cfg.cert_key_refresh_threshold):
                log_info(
                    f"Certificate key is {key_age.total_seconds() / 60:.0f}min old, refresh needed"
                )
                return True
        return False

    def ensure_fresh(self, *, include_certificate_key: bool = True) -> RefreshOutcome:
        """Refresh credentials if any is past its threshold."""
        if not self.needs_refresh(include_certificate_key=include_certificate_key):
            return RefreshOutcome.NOT_NEEDED
        return self.refresh()

    def refreshed_recently(self, *, include_certificate_key: bool = True) -> bool:
        """True if every credential in scope was updated inside the recent window."""
        keys = [p.JOIN_TOKEN_UPDATED]
        if include_certificate_key:
            keys.append(p.CERTIFICATE_KEY_UPDATED)
        for key in keys:
            age = self.credential_age(key)
            if age is None or age.total_seconds() >= self.cfg.recent_refresh_window:
                return False
        return True

    def refresh(self) -> RefreshOutcome:
        """
        Refresh token and certificate key under ``token-refresh-lock``.

        Returns:
            REFRESHED_BY_PEER if another node refreshed within the recent
            window, CONTENDED if another node holds the lock, REFRESHED on
            success and FAILED otherwise. Never raises for refresh failures.
        """
        acquired = self.lock.acquire(
            TOKEN_REFRESH_LOCK, self.instance_id, self.cfg.refresh_lock_stale_after
        )
        if not acquired:
            if self.refreshed_recently():
                log_info("Credentials were just refreshed by another node")
                return RefreshOutcome.REFRESHED_BY_PEER
            log_info("Another node is refreshing credentials")
            return RefreshOutcome.CONTENDED

        try:
            if self.refreshed_recently():
                log_info("Credentials refreshed within the last "
                         f"{self.cfg.recent_refresh_window}s, skipping")
                return RefreshOutcome.REFRESHED_BY_PEER
            if self._run_refresh():
                self._emit("CredentialRefreshSuccess")
                return RefreshOutcome.REFRESHED
            self._emit("CredentialRefreshFailure")
            return RefreshOutcome.FAILED
        finally:
            self.lock.release(TOKEN_REFRESH_LOCK)

    def _run_refresh(self) -> bool:
        try:
            peers = self.registry.lookup_healthy_control_plane_instances(
                exclude_instance_id=self.instance_id
            )
        except Exception as exc:
            log_warn(f"⚠ Could not list healthy control planes: {exc}")
            peers = []

        for peer in peers:
            try:
                retry_with_backoff(
                    lambda: run_remote(
                        self.commands, self.cfg, peer,
                        "refresh-credentials",
                        expect=(CREDENTIAL_REFRESH_SUCCESS,),
                        timeout=self.cfg.ssm_command_timeout,
                    ),
                    f"refresh credentials on {peer}",
                    max_retries=self.cfg.max_retries,
                    base_delay=self.cfg.retry_base_delay,
                    metrics=self.metrics,
                )
                log_info(f"✓ Credentials refreshed on {peer}")
                return True
            except Exception as exc:
                log_warn(f"⚠ Credential refresh on {peer} failed: {exc}")

        if self._can_refresh_locally():
            log_info("No healthy peer available, refreshing on this control plane")
            try:
                self._local_refresh()
                return True
            except Exception as exc:
                log_warn(f"⚠ Local credential refresh failed: {exc}")
                return False

        log_warn("⚠ No healthy control plane available to refresh credentials")
        return False

    def _emit(self, name: str) -> None:
        if self.metrics:
            self.metrics.put_metric(name, 1, COUNT)
            self.metrics.flush()


# =============================================================================
# Node-side refresh
# =============================================================================

def refresh_credentials_locally(params: ParameterStore, lock: DistributedLock,
                                holder_id: str,
                                stale_after: float = TOKEN_GEN_STALE_AFTER) -> None:
    """
    Mint a new join token and certificate key on this control plane.

    Minting runs under ``token-gen-lock``. The caller normally holds
    ``token-refresh-lock`` already, but the remote operation can also be
    started by hand on any control plane.

    Raises:
        CredentialMintContendedError: If another node holds ``token-gen-lock``.
    """
    with lock.hold(TOKEN_GEN_LOCK, holder_id, stale_after) as acquired:
        if not acquired:
            raise CredentialMintContendedError(
                f"{TOKEN_GEN_LOCK} is held by {lock.holder(TOKEN_GEN_LOCK)}"
            )
        _mint_credentials(params)


def _mint_credentials(params: ParameterStore) -> None:
    log_info("Minting new join token and certificate key...")
    token = node.create_join_token()
    certificate_key = node.generate_certificate_key()
    node.upload_certs(certificate_key)

    now = utc_now_iso()
    params.put(p.JOIN_TOKEN, token, secure=True)
    params.put(p.JOIN_TOKEN_UPDATED, now)
    params.put(p.CERTIFICATE_KEY, certificate_key, secure=True)
    params.put(p.CERTIFICATE_KEY_UPDATED, now)
    print(f"{CREDENTIAL_REFRESH_SUCCESS} updated={now}", flush=True)


# =============================================================================
# Certificate Renewal
# =============================================================================

_EXPIRY_RE = re.compile(r"([A-Z][a-z]{2} \d{1,2}, \d{4} \d{2}:\d{2} UTC)")


def parse_certificate_expiry(output: str) -> dict[str, datetime]:
    """Parse ``kubeadm certs check-expiration`` into {certificate: expiry}."""
    expiries: dict[str, datetime] = {}
    for line in output.splitlines():
        match = _EXPIRY_RE.search(line)
        if not match or line.startswith("CERTIFICATE"):
            continue
        name = line.split()[0]
        expiry = datetime.strptime(match.group(1), "%b %d, %Y %H:%M UTC")
        expiries[name] = expiry.replace(tzinfo=timezone.utc)
    return expiries


def certificates_needing_renewal(output: str, threshold_days: int,
                                 now: Optional[datetime] = None) -> list[str]:
    now = now or utc_now()
    limit = now + timedelta(days=threshold_days)
    return sorted(
        name for name, expiry in parse_certificate_expiry(output).items()
        if expiry < limit
    )


def renew_certificates(threshold_days: int = 30) -> bool:
    """
    Renew control plane certificates if any expires within ``threshold_days``.

    Returns:
        True if a renewal was performed.

    Raises:
        subprocess.CalledProcessError: If ``kubeadm certs renew all`` fails.
    """
    if not node.is_initialized_locally():
        log_info("Not a control plane node, skipping certificate renewal")
        return False

    result = run_cmd(["kubeadm", "certs", "check-expiration"], check=False,
                     env=node.KUBECONFIG_ENV)
    if not result.ok or not result.stdout.strip():
        log_warn("Could not check certificate expiration")
        return False

    expiring = certificates_needing_renewal(result.stdout, threshold_days)
    if not expiring:
        log_info(f"All certificates are valid for more than {threshold_days} days")
        return False

    log_info(f"Renewing certificates (expiring soon: {', '.join(expiring)})")
    run_cmd(["kubeadm", "certs", "renew", "all"], env=node.KUBECONFIG_ENV)
    restart_static_pods()
    if not node.wait_for_api_server(timeout=150):
        log_error("API server did not come back after certificate renewal")
    node.configure_kubeconfig()
    log_info("✓ Certificate renewal completed")
    return True


def restart_static_pods(pause: float = 10) -> None:
    """Move static pod manifests aside and back so kubelet restarts them."""
    manifests = Path(STATIC_POD_MANIFESTS)
    if not manifests.is_dir():
        return
    staging = Path(tempfile.mkdtemp(prefix="static-pods-"))
    moved = []
    for manifest in manifests.glob("*.yaml"):
        shutil.move(str(manifest), staging / manifest.name)
        moved.append(manifest.name)
    time.sleep(pause)
    for name in moved:
        shutil.move(str(staging / name), manifests / name)
    staging.rmdir()
    log_info("Control plane components restarted")
