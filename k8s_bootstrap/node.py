#!/usr/bin/env python3
"""
@format
Node-local tooling: instance metadata, kubeadm, etcdctl, kubectl and the
Kubernetes API.

Two kinds of callers use this module:

* the join state machine running on the booting node, and
* the node-side half of remote operations (drain, member removal, etcd
  health, snapshot) that the handlers and the rotation manager dispatch to
  a healthy control plane over the remote-command channel. These print a
  single result marker line that the caller parses.
"""

from __future__ import annotations

import json
import shutil
import socket
import subprocess
from dataclasses import dataclass
from pathlib import Path
from typing import Optional

from kubernetes import client as k8s_client
from kubernetes import config as k8s_config

from k8s_bootstrap.common import (
    CmdResult, log_error, log_info, log_warn, run_cmd,
)
from k8s_bootstrap.registry import MemberId
from k8s_bootstrap.retry import RetriableError, poll_until


# =============================================================================
# Constants
# =============================================================================

ADMIN_CONF = "/etc/kubernetes/admin.conf"
KUBELET_CONF = "/etc/kubernetes/kubelet.conf"
KUBECONFIG_ENV = {"KUBECONFIG": ADMIN_CONF}
CA_CERT = "/etc/kubernetes/pki/ca.crt"
AUDIT_POLICY = "/etc/kubernetes/audit-policy.yaml"
AUDIT_LOG_DIR = "/var/log/kubernetes/audit"
KUBEADM_CONFIG = "/tmp/kubeadm-config.yaml"
ETCD_DATA_DIR = "/var/lib/etcd"

ETCDCTL_ENV = {
    "ETCDCTL_API": "3",
    "ETCDCTL_ENDPOINTS": "https://127.0.0.1:2379",
    "ETCDCTL_CACERT": "/etc/kubernetes/pki/etcd/ca.crt",
    "ETCDCTL_CERT": "/etc/kubernetes/pki/etcd/server.crt",
    "ETCDCTL_KEY": "/etc/kubernetes/pki/etcd/server.key",
}

WORKER_BINARIES = ["containerd", "kubeadm", "kubelet", "kubectl"]
CONTROL_PLANE_BINARIES = WORKER_BINARIES + ["etcdctl", "openssl"]

# Result markers printed by node-side operations
NODE_NOT_FOUND = "NODE_NOT_FOUND"
NODE_DRAINED = "NODE_DRAINED"
MEMBER_NOT_FOUND = "MEMBER_NOT_FOUND"
MEMBER_REMOVED = "MEMBER_REMOVED"
ETCD_HEALTHY = "ETCD_HEALTHY"
ETCD_UNHEALTHY = "ETCD_UNHEALTHY"
BACKUP_SUCCESS = "BACKUP_SUCCESS"

BACKUP_SNAPSHOT_PATH = "/tmp/etcd-backup.db"

AUDIT_POLICY_YAML = """\
apiVersion: audit.k8s.io/v1
kind: Policy
omitStages:
  - "RequestReceived"
rules:
  - level: None
    nonResourceURLs:
      - /healthz*
      - /readyz*
      - /livez*
      - /metrics
      - /openapi/*
  - level: None
    verbs: ["watch"]
  - level: RequestResponse
    nonResourceURLs:
      - /apis/authentication.k8s.io/*
  - level: Metadata
    resources:
      - group: ""
        resources: ["secrets", "configmaps"]
  - level: RequestResponse
    verbs: ["create", "delete", "patch", "update"]
    resources:
      - group: ""
        resources: ["namespaces", "serviceaccounts"]
      - group: "rbac.authorization.k8s.io"
        resources: ["*"]
  - level: RequestResponse
    verbs: ["create"]
    resources:
      - group: ""
        resources: ["pods/exec", "pods/attach", "pods/portforward"]
  - level: Metadata
    resources:
      - group: ""
      - group: "apps"
      - group: "batch"
"""

KUBEADM_CONFIG_TEMPLATE = """\
apiVersion: kubeadm.k8s.io/v1beta3
kind: InitConfiguration
localAPIEndpoint:
  advertiseAddress: {private_ip}
  bindPort: {api_port}
nodeRegistration:
  name: {hostname}
{certificate_key_line}---
apiVersion: kubeadm.k8s.io/v1beta3
kind: ClusterConfiguration
kubernetesVersion: v{kubernetes_version}
controlPlaneEndpoint: "{endpoint}"
networking:
  podSubnet: {pod_cidr}
  serviceSubnet: {service_cidr}
etcd:
  local:
    dataDir: {etcd_data_dir}
apiServer:
  certSANs:
    - {private_ip}
    - {endpoint_host}
  extraArgs:
    audit-policy-file: {audit_policy}
    audit-log-path: {audit_log_dir}/audit.log
    audit-log-maxage: "30"
    audit-log-maxbackup: "10"
    audit-log-maxsize: "100"
  extraVolumes:
    - name: audit-policy
      hostPath: {audit_policy}
      mountPath: {audit_policy}
      readOnly: true
    - name: audit-logs
      hostPath: {audit_log_dir}
      mountPath: {audit_log_dir}
      readOnly: false
"""


class EtcdError(RetriableError):
    """etcdctl failed or reported an unhealthy cluster."""


class BackupError(RetriableError):
    """An etcd snapshot could not be taken, verified or uploaded."""


# =============================================================================
# IMDS v2
# =============================================================================

def get_imds_value(path: str) -> str:
    """Fetch a value from EC2 Instance Metadata Service v2."""
    token = run_cmd(
        ["curl", "-sX", "PUT", "http://169.254.169.254/latest/api/token",
         "-H", "X-aws-ec2-metadata-token-ttl-seconds: 21600"],
        check=True,
    ).stdout.strip()

    result = run_cmd(
        ["curl", "-s", "-H", f"X-aws-ec2-metadata-token: {token}",
         f"http://169.254.169.254/latest/meta-data/{path}"],
        check=False,
    )
    return result.stdout.strip() if result.returncode == 0 else ""


@dataclass
class NodeIdentity:
    """Who this node is, as seen by EC2 and by Kubernetes."""
    instance_id: str
    private_ip: str
    hostname: str

    @classmethod
    def discover(cls) -> "NodeIdentity":
        instance_id = get_imds_value("instance-id")
        private_ip = get_imds_value("local-ipv4")
        if not instance_id or not private_ip:
            raise RuntimeError("Failed to retrieve instance id / private IP from IMDS")
        hostname = get_imds_value("local-hostname") or socket.gethostname()
        return cls(instance_id=instance_id, private_ip=private_ip, hostname=hostname)


# =============================================================================
# Preflight
# =============================================================================

def validate_binaries(control_plane: bool) -> list[str]:
    """Check that all required binaries are on $PATH. Returns missing list."""
    required = CONTROL_PLANE_BINARIES if control_plane else WORKER_BINARIES
    missing = []
    for binary in required:
        path = shutil.which(binary)
        if path:
            log_info(f"  ✓ {binary} -> {path}")
        else:
            missing.append(binary)
    return missing


def preflight(control_plane: bool) -> None:
    """
    Verify the AMI carries every binary and start the container runtime.

    Raises:
        RuntimeError: If any required binary is missing.
    """
    log_info("Checking required binaries...")
    missing = validate_binaries(control_plane)
    if missing:
        raise RuntimeError(
            f"Missing binaries: {', '.join(missing)}. "
            "All binaries must be pre-baked into the AMI."
        )
    run_cmd(["systemctl", "start", "containerd"])
    run_cmd(["systemctl", "enable", "kubelet"], check=False)
    log_info("✓ Preflight passed, containerd started")


def is_initialized_locally() -> bool:
    return Path(ADMIN_CONF).exists()


def has_joined_locally() -> bool:
    return Path(KUBELET_CONF).exists()


# =============================================================================
# kubeadm
# =============================================================================

def write_audit_policy() -> None:
    Path(AUDIT_LOG_DIR).mkdir(parents=True, exist_ok=True)
    Path(AUDIT_POLICY).parent.mkdir(parents=True, exist_ok=True)
    Path(AUDIT_POLICY).write_text(AUDIT_POLICY_YAML)
    log_info(f"Audit policy written to {AUDIT_POLICY}")


def write_kubeadm_config(cfg, identity: NodeIdentity, *,
                         certificate_key: Optional[str] = None,
                         path: str = KUBEADM_CONFIG) -> str:
    """Render the kubeadm init configuration for this node. Returns its path."""
    endpoint = cfg.control_plane_endpoint
    content = KUBEADM_CONFIG_TEMPLATE.format(
        private_ip=identity.private_ip,
        api_port=cfg.api_port,
        hostname=identity.hostname,
        certificate_key_line=(
            f"certificateKey: {certificate_key}\n" if certificate_key else ""
        ),
        kubernetes_version=cfg.kubernetes_version.lstrip("v"),
        endpoint=endpoint,
        endpoint_host=endpoint.rsplit(":", 1)[0],
        pod_cidr=cfg.pod_cidr,
        service_cidr=cfg.service_cidr,
        etcd_data_dir=ETCD_DATA_DIR,
        audit_policy=AUDIT_POLICY,
        audit_log_dir=AUDIT_LOG_DIR,
    )
    Path(path).write_text(content)
    log_info(f"kubeadm config written to {path}")
    return path


def kubeadm_init(config_path: str, *extra_args: str) -> None:
    log_info("Running kubeadm init...")
    run_cmd(
        ["kubeadm", "init", f"--config={config_path}", "--upload-certs", *extra_args],
        capture=False, timeout=600,
    )


def generate_certificate_key() -> str:
    return run_cmd(["kubeadm", "certs", "certificate-key"], redact=True).stdout.strip()


def upload_certs(certificate_key: str) -> None:
    run_cmd(
        ["kubeadm", "init", "phase", "upload-certs", "--upload-certs",
         "--certificate-key", certificate_key],
        env=KUBECONFIG_ENV, redact=True,
    )


def create_join_token() -> str:
    return run_cmd(
        ["kubeadm", "token", "create", "--ttl", "24h"],
        env=KUBECONFIG_ENV, redact=True,
    ).stdout.strip()


def ca_cert_hash() -> str:
    """Discovery hash of the cluster CA public key, in ``sha256:<hex>`` form."""
    result = run_cmd(
        f"openssl x509 -pubkey -in {CA_CERT} | "
        "openssl rsa -pubin -outform der 2>/dev/null | "
        "openssl dgst -sha256 -hex | awk '{print $2}'",
        shell=True,
    )
    return f"sha256:{result.stdout.strip()}"


def kubeadm_reset() -> None:
    log_info("Running kubeadm reset before retry...")
    run_cmd(["kubeadm", "reset", "-f"], check=False)


def kubeadm_join(params, identity: NodeIdentity, *, control_plane: bool,
                 timeout: int = 300) -> CmdResult:
    """
    Run ``kubeadm join`` with validated bootstrap parameters.

    Returns:
        The command result; callers check ``ok`` rather than catching.
    """
    cmd = [
        "kubeadm", "join", params.endpoint,
        "--token", params.join_token,
        "--discovery-token-ca-cert-hash", params.ca_cert_hash,
    ]
    if control_plane:
        cmd += [
            "--control-plane",
            "--certificate-key", params.certificate_key,
            "--apiserver-advertise-address", identity.private_ip,
        ]
    else:
        cmd += ["--node-name", identity.hostname]
    try:
        return run_cmd(cmd, check=False, timeout=timeout, redact=True)
    except subprocess.TimeoutExpired:
        return CmdResult(returncode=124, stdout="", stderr="kubeadm join timed out",
                         command="kubeadm join", duration_seconds=float(timeout))


def configure_kubeconfig() -> None:
    """Copy admin.conf for root and ssm-user."""
    Path("/root/.kube").mkdir(parents=True, exist_ok=True)
    run_cmd(["cp", "-f", ADMIN_CONF, "/root/.kube/config"])
    run_cmd(["chmod", "600", "/root/.kube/config"])

    result = run_cmd(["id", "ssm-user"], check=False)
    if result.returncode == 0:
        Path("/home/ssm-user/.kube").mkdir(parents=True, exist_ok=True)
        run_cmd(["cp", "-f", ADMIN_CONF, "/home/ssm-user/.kube/config"])
        run_cmd(["chown", "ssm-user:ssm-user", "/home/ssm-user/.kube/config"])
        run_cmd(["chmod", "600", "/home/ssm-user/.kube/config"])
        log_info("Kubeconfig set up for ssm-user")


def install_cni(manifest_url: str, timeout: int = 120) -> bool:
    """Apply the CNI manifest. Failure (including a hang) is logged, not raised."""
    try:
        result = run_cmd(
            ["kubectl", "apply", "-f", manifest_url],
            check=False, env=KUBECONFIG_ENV, timeout=timeout,
        )
    except subprocess.TimeoutExpired:
        log_warn(f"⚠ CNI manifest apply timed out after {timeout}s; apply it manually")
        return False
    if result.ok:
        log_info("✓ CNI manifest applied")
    else:
        log_warn("⚠ CNI manifest apply failed; pods will stay Pending until applied")
    return result.ok


def stop_kubelet() -> None:
    run_cmd(["systemctl", "stop", "kubelet"], check=False)


def wait_for_kubelet(timeout: int = 60) -> bool:
    """Wait for kubelet to become active."""
    active = poll_until(
        lambda: run_cmd(["systemctl", "is-active", "--quiet", "kubelet"],
                        check=False).ok,
        timeout=timeout,
        interval=1,
        description="kubelet to become active",
    )
    if not active:
        run_cmd(["journalctl", "-u", "kubelet", "--no-pager", "-n", "20"], check=False)
    return bool(active)


# =============================================================================
# etcdctl
# =============================================================================

def etcdctl(*args: str, timeout: int = 30, check: bool = True) -> CmdResult:
    return run_cmd(["etcdctl", *args], env=ETCDCTL_ENV, timeout=timeout, check=check)


def etcd_member_list() -> list[dict]:
    """
    Return etcd members with ``ID`` normalized to a MemberId.

    Raises:
        EtcdError: If etcdctl fails or prints unparseable output.
    """
    result = etcdctl("member", "list", "-w", "json", check=False)
    if not result.ok:
        raise EtcdError(f"etcdctl member list failed: {result.stderr.strip()}")
    try:
        members = json.loads(result.stdout).get("members", [])
    except ValueError as exc:
        raise EtcdError(f"Unparseable etcdctl output: {exc}") from exc
    for member in members:
        member["ID"] = MemberId(member["ID"])
    return members


def find_local_member(members: list[dict], private_ip: str,
                      hostname: str) -> Optional[MemberId]:
    """Match by a peer URL containing our IP, falling back to name == hostname."""
    for member in members:
        if any(private_ip in url for url in member.get("peerURLs", [])):
            return member["ID"]
    for member in members:
        if member.get("name") == hostname:
            return member["ID"]
    return None


def local_member_id(identity: NodeIdentity, timeout: int = 60) -> Optional[MemberId]:
    """Wait for this node to show up in the etcd member list."""
    def check() -> Optional[MemberId]:
        try:
            return find_local_member(
                etcd_member_list(), identity.private_ip, identity.hostname
            )
        except EtcdError as exc:
            log_warn(f"etcd member list not available yet: {exc}")
            return None

    return poll_until(check, timeout=timeout, interval=5,
                      description="local etcd member to appear")


def etcd_cluster_healthy() -> bool:
    return etcdctl("endpoint", "health", "--cluster", check=False).ok


# =============================================================================
# Kubernetes API
# =============================================================================

def load_core_api(kubeconfig: str = ADMIN_CONF) -> k8s_client.CoreV1Api:
    k8s_config.load_kube_config(config_file=kubeconfig)
    return k8s_client.CoreV1Api()


def _node_is_ready(node: k8s_client.V1Node) -> bool:
    """Check if a node has condition Ready=True."""
    if not node.status or not node.status.conditions:
        return False
    for cond in node.status.conditions:
        if cond.type == "Ready":
            return cond.status == "True"
    return False


def wait_for_api_server(timeout: int = 90) -> bool:
    log_info("Waiting for control plane API to be ready...")
    return bool(poll_until(
        lambda: run_cmd(["kubectl", "get", "nodes"], check=False, env=KUBECONFIG_ENV).ok,
        timeout=timeout,
        interval=2,
        description="control plane API",
    ))


def wait_for_node_ready(v1: k8s_client.CoreV1Api, node_name: str,
                        timeout: int = 300) -> bool:
    def check() -> bool:
        try:
            return _node_is_ready(v1.read_node(node_name))
        except k8s_client.ApiException as exc:
            if exc.status == 404:
                return False
            raise

    return bool(poll_until(check, timeout=timeout, interval=10,
                           description=f"node {node_name} Ready"))


def clean_stale_nodes(v1: k8s_client.CoreV1Api, keep: Optional[set] = None) -> list[str]:
    """Remove NotReady nodes left by instances that no longer exist.

    A restored etcd snapshot still carries Node objects for the dead
    control plane. Stale nodes cause DaemonSets to schedule pods on dead
    nodes and keep the API server endpoints list wrong.

    Returns:
        Names of the deleted nodes.
    """
    keep = keep or set()
    deleted: list[str] = []
    for node in v1.list_node().items:
        name = node.metadata.name
        if name in keep or _node_is_ready(node):
            continue
        log_info(f"  → Deleting stale node: {name}")
        try:
            v1.delete_node(name=name, body=k8s_client.V1DeleteOptions(grace_period_seconds=0))
            deleted.append(name)
        except k8s_client.ApiException as exc:
            if exc.status != 404:
                log_warn(f"  ⚠ Failed to delete node {name}: {exc.reason}")
    if deleted:
        log_info(f"✓ Stale nodes cleaned: {', '.join(deleted)}")
    else:
        log_info("✓ No stale nodes found")
    return deleted


# =============================================================================
# Node-side remote operations
# =============================================================================

def drain_node(node_name: str, timeout: int = 120) -> str:
    """
    Cordon, drain and delete ``node_name``. Prints and returns a result marker.

    A node that no longer exists counts as drained.
    """
    v1 = load_core_api()
    try:
        v1.read_node(node_name)
    except k8s_client.ApiException as exc:
        if exc.status == 404:
            print(f"{NODE_NOT_FOUND} node={node_name}", flush=True)
            return NODE_NOT_FOUND
        raise

    run_cmd(
        ["kubectl", "drain", node_name, "--ignore-daemonsets",
         "--delete-emptydir-data", "--force", f"--timeout={timeout}s"],
        env=KUBECONFIG_ENV, timeout=timeout + 30,
    )
    try:
        v1.delete_node(name=node_name, body=k8s_client.V1DeleteOptions())
    except k8s_client.ApiException as exc:
        if exc.status != 404:
            raise
    print(f"{NODE_DRAINED} node={node_name}", flush=True)
    return NODE_DRAINED


def remove_etcd_member(member_id: str) -> str:
    """
    Remove ``member_id`` from etcd after verifying cluster health.

    An id that is no longer in the member list is reported as
    ``MEMBER_NOT_FOUND`` and treated by the caller as success.

    Raises:
        EtcdError: If etcd is unhealthy or the removal fails.
    """
    target = MemberId(member_id)
    if not etcd_cluster_healthy():
        raise EtcdError("etcd cluster unhealthy, refusing to remove member")

    members = etcd_member_list()
    if not any(m["ID"] == target for m in members):
        log_info(f"Member {target} not in etcd member list")
        print(f"{MEMBER_NOT_FOUND} member={target}", flush=True)
        return MEMBER_NOT_FOUND

    result = etcdctl("member", "remove", str(target), check=False)
    if not result.ok:
        log_error(f"etcdctl member remove {target} failed", stderr=result.stderr[:500])
        raise EtcdError(f"member remove {target} failed: {result.stderr.strip()}")
    print(f"{MEMBER_REMOVED} member={target}", flush=True)
    return MEMBER_REMOVED


def etcd_health() -> str:
    """Print ``ETCD_HEALTHY members=N`` or ``ETCD_UNHEALTHY``."""
    if etcd_cluster_healthy():
        try:
            count = len(etcd_member_list())
        except EtcdError:
            count = 0
        marker = f"{ETCD_HEALTHY} members={count}"
    else:
        marker = ETCD_UNHEALTHY
    print(marker, flush=True)
    return marker


# =============================================================================
# etcd snapshots
# =============================================================================

def restore_snapshot(snapshot_path: str, identity: NodeIdentity, cluster_token: str,
                     restore_dir: str = "/var/lib/etcd-restore") -> None:
    """
    Restore ``snapshot_path`` into a fresh data dir and swap it into place.

    The restore directory is always recreated so a half-finished previous
    attempt can never leak into the new member. It is removed again if the
    restore fails.
    """
    shutil.rmtree(restore_dir, ignore_errors=True)
    Path(restore_dir).parent.mkdir(parents=True, exist_ok=True)
    peer_url = f"https://{identity.private_ip}:2380"
    try:
        run_cmd(
            ["etcdctl", "snapshot", "restore", snapshot_path,
             f"--data-dir={restore_dir}",
             f"--name={identity.hostname}",
             f"--initial-cluster={identity.hostname}={peer_url}",
             f"--initial-cluster-token={cluster_token}",
             f"--initial-advertise-peer-urls={peer_url}"],
            env={"ETCDCTL_API": "3"}, timeout=600,
        )
    except (subprocess.CalledProcessError, subprocess.TimeoutExpired):
        shutil.rmtree(restore_dir, ignore_errors=True)
        raise
    log_info(f"etcd snapshot restored to {restore_dir}")

    shutil.rmtree(ETCD_DATA_DIR, ignore_errors=True)
    shutil.move(restore_dir, ETCD_DATA_DIR)
    log_info(f"Restored data moved to {ETCD_DATA_DIR}")


def snapshot_status(snapshot_path: str) -> dict:
    """Return ``{"hash", "revision", "totalKey", "totalSize"}`` for a snapshot."""
    result = run_cmd(
        ["etcdctl", "snapshot", "status", snapshot_path, "-w", "json"],
        env={"ETCDCTL_API": "3"},
    )
    return json.loads(result.stdout)


def save_snapshot(snapshot_path: str) -> None:
    etcdctl("snapshot", "save", snapshot_path, timeout=300)


def create_snapshot(objects, backup_key: str,
                    snapshot_path: str = BACKUP_SNAPSHOT_PATH) -> str:
    """
    Take, verify and upload an etcd snapshot. Prints a ``BACKUP_SUCCESS`` line.

    Args:
        objects: Object store the snapshot is uploaded to.
        backup_key: Destination key.

    Raises:
        BackupError: If etcd is unhealthy, the snapshot fails verification,
            or the upload fails.
    """
    if not etcd_cluster_healthy():
        raise BackupError("etcd cluster unhealthy, refusing to snapshot")

    try:
        save_snapshot(snapshot_path)
        status = snapshot_status(snapshot_path)
        if not status.get("hash"):
            raise BackupError(f"snapshot {snapshot_path} failed verification: {status}")
        size = Path(snapshot_path).stat().st_size
        objects.upload(snapshot_path, backup_key, metadata={
            "etcd-hash": str(status["hash"]),
            "etcd-revision": str(status.get("revision", "")),
            "etcd-total-keys": str(status.get("totalKey", "")),
            "size-bytes": str(size),
        })
    except BackupError:
        raise
    except Exception as exc:
        raise BackupError(f"snapshot to {backup_key} failed: {exc}") from exc
    finally:
        Path(snapshot_path).unlink(missing_ok=True)

    marker = f"{BACKUP_SUCCESS} key={backup_key} size={size} hash={status['hash']}"
    print(marker, flush=True)
    return marker


# =============================================================================
# Local Node
# =============================================================================

class LocalNode:
    """
    The booting node's local tooling, bundled for the state machines.

    Tests substitute a fake with the same methods.
    """

    def __init__(self, cfg, identity: Optional[NodeIdentity] = None):
        self.cfg = cfg
        self._identity = identity

    @property
    def identity(self) -> NodeIdentity:
        if self._identity is None:
            self._identity = NodeIdentity.discover()
        return self._identity

    def preflight(self, control_plane: bool) -> None:
        preflight(control_plane)

    def is_initialized(self) -> bool:
        return is_initialized_locally()

    def has_joined(self) -> bool:
        return has_joined_locally()

    def generate_certificate_key(self) -> str:
        return generate_certificate_key()

    def create_join_token(self) -> str:
        return create_join_token()

    def ca_cert_hash(self) -> str:
        return ca_cert_hash()

    def upload_certs(self, certificate_key: str) -> None:
        upload_certs(certificate_key)

    def init_cluster(self, certificate_key: str) -> None:
        """kubeadm init for a brand new cluster."""
        write_audit_policy()
        config_path = write_kubeadm_config(self.cfg, self.identity,
                                           certificate_key=certificate_key)
        kubeadm_init(config_path)
        configure_kubeconfig()
        wait_for_api_server()

    def init_from_restored_etcd(self) -> None:
        """kubeadm init on top of an already populated etcd data dir."""
        write_audit_policy()
        config_path = write_kubeadm_config(self.cfg, self.identity,
                                           path="/tmp/kubeadm-restore-config.yaml")
        kubeadm_init(config_path, "--ignore-preflight-errors=DirAvailable--var-lib-etcd")
        configure_kubeconfig()
        wait_for_api_server()

    def restore_snapshot(self, snapshot_path: str, cluster_token: str) -> None:
        restore_snapshot(snapshot_path, self.identity, cluster_token)

    def join(self, params, control_plane: bool) -> bool:
        if not control_plane:
            # kubeadm join reads KUBELET_EXTRA_ARGS from /etc/sysconfig/kubelet
            Path("/etc/sysconfig").mkdir(parents=True, exist_ok=True)
            Path("/etc/sysconfig/kubelet").write_text(
                f"KUBELET_EXTRA_ARGS=--node-labels={self.cfg.node_label}\n"
            )
        result = kubeadm_join(params, self.identity, control_plane=control_plane,
                              timeout=self.cfg.join_timeout)
        if result.ok and control_plane:
            configure_kubeconfig()
        if result.ok:
            wait_for_kubelet()
        return result.ok

    def reset(self) -> None:
        kubeadm_reset()

    def stop_kubelet(self) -> None:
        stop_kubelet()

    def install_cni(self) -> bool:
        return install_cni(self.cfg.cni_manifest_url)

    def local_member_id(self) -> Optional[MemberId]:
        return local_member_id(self.identity)

    def clean_stale_nodes(self) -> list[str]:
        """Best effort: API or kubeconfig errors are logged and yield no deletions."""
        try:
            return clean_stale_nodes(load_core_api(), keep={self.identity.hostname})
        except Exception as exc:
            log_warn(f"⚠ Stale node cleanup failed: {exc}")
            return []
