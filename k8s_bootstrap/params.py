#!/usr/bin/env python3
"""
@format
Cluster bootstrap parameters held in SSM Parameter Store.

Parameter names are relative to the cluster prefix (``/<cluster>``). A
parameter holding one of the sentinel values is treated exactly like a
missing one: nobody may join with it.
"""

from __future__ import annotations

import json
from dataclasses import dataclass
from typing import Optional

from k8s_bootstrap.aws import ParameterStore
from k8s_bootstrap.common import log_info, log_warn, utc_now_iso


# =============================================================================
# Parameter Names
# =============================================================================

ENDPOINT = "cluster/endpoint"
JOIN_TOKEN = "cluster/join-token"
JOIN_TOKEN_UPDATED = "cluster/join-token-updated"
CA_CERT_HASH = "cluster/ca-cert-hash"
CERTIFICATE_KEY = "cluster/certificate-key"
CERTIFICATE_KEY_UPDATED = "cluster/certificate-key-updated"
INITIALIZED = "cluster/initialized"
RESTORE_MODE = "cluster/restore-mode"
RESTORE_BACKUP = "cluster/restore-backup"
RESTORE_TRIGGERED_AT = "cluster/restore-triggered-at"
KUBERNETES_VERSION = "kubernetes/version"
FAILURE_COUNT = "health/failure-count"
STEP_STATUS = "bootstrap/step-status"

SENTINELS = frozenset({"PENDING_INITIALIZATION", "placeholder", "None"})


class BootstrapParameterError(Exception):
    """A bootstrap parameter needed to join is missing or still a sentinel."""


def is_unset(value: Optional[str]) -> bool:
    """True if ``value`` is missing, blank or a sentinel."""
    return value is None or not value.strip() or value.strip() in SENTINELS


def is_true(value: Optional[str]) -> bool:
    return (value or "").strip().lower() == "true"


# =============================================================================
# Join Parameters
# =============================================================================

@dataclass
class BootstrapParameters:
    """The values a node needs to run ``kubeadm join``."""
    endpoint: Optional[str]
    join_token: Optional[str]
    ca_cert_hash: Optional[str]
    certificate_key: Optional[str] = None

    @classmethod
    def load(cls, params: ParameterStore, *, control_plane: bool) -> "BootstrapParameters":
        return cls(
            endpoint=params.get(ENDPOINT),
            join_token=params.get(JOIN_TOKEN, decrypt=True),
            ca_cert_hash=params.get(CA_CERT_HASH),
            certificate_key=(
                params.get(CERTIFICATE_KEY, decrypt=True) if control_plane else None
            ),
        )

    def validate(self, *, control_plane: bool) -> None:
        """
        Reject empty or sentinel values.

        Raises:
            BootstrapParameterError: Naming every unusable parameter.
        """
        required = {
            ENDPOINT: self.endpoint,
            JOIN_TOKEN: self.join_token,
            CA_CERT_HASH: self.ca_cert_hash,
        }
        if control_plane:
            required[CERTIFICATE_KEY] = self.certificate_key

        invalid = sorted(name for name, value in required.items() if is_unset(value))
        if invalid:
            raise BootstrapParameterError(
                f"Bootstrap parameters not usable: {', '.join(invalid)}"
            )


def publish_bootstrap_parameters(
    params: ParameterStore,
    *,
    endpoint: str,
    join_token: str,
    ca_cert_hash: str,
    certificate_key: str,
    kubernetes_version: Optional[str] = None,
) -> None:
    """Publish join credentials and their issue timestamps."""
    log_info("Publishing cluster credentials to SSM...")
    now = utc_now_iso()
    params.put(ENDPOINT, endpoint)
    params.put(JOIN_TOKEN, join_token, secure=True)
    params.put(JOIN_TOKEN_UPDATED, now)
    params.put(CA_CERT_HASH, ca_cert_hash)
    params.put(CERTIFICATE_KEY, certificate_key, secure=True)
    params.put(CERTIFICATE_KEY_UPDATED, now)
    if kubernetes_version:
        params.put(KUBERNETES_VERSION, kubernetes_version)
    log_info("✓ Cluster credentials published to SSM")


def publish_step_status(params: ParameterStore, payload: dict) -> None:
    """Publish bootstrap progress for remote monitoring. Failures are non-fatal."""
    try:
        params.put(STEP_STATUS, json.dumps(payload))
    except Exception as exc:
        log_warn(f"Could not publish step status: {exc}")
