"""Tests for the node-side etcd and drain operations."""

import json
import subprocess
from unittest import mock

import pytest
from kubernetes import client as k8s_client

from k8s_bootstrap import node
from k8s_bootstrap.common import CmdResult
from k8s_bootstrap.config import Config
from k8s_bootstrap.registry import MemberId


def cmd(returncode=0, stdout="", stderr=""):
    return CmdResult(returncode=returncode, stdout=stdout, stderr=stderr,
                     command="etcdctl", duration_seconds=0.1)


MEMBER_LIST = json.dumps({"members": [
    {"ID": 10276657743932975437, "name": "ip-10-0-1-1",
     "peerURLs": ["https://10.0.1.1:2380"]},
    {"ID": 1234, "name": "ip-10-0-1-2", "peerURLs": []},
]})


def test_member_list_normalizes_ids():
    with mock.patch.object(node, "etcdctl", return_value=cmd(stdout=MEMBER_LIST)):
        members = node.etcd_member_list()
    assert [m["ID"] for m in members] == ["8e9e05c52164694d", "4d2"]


def test_member_list_failure_raises():
    with mock.patch.object(node, "etcdctl", return_value=cmd(1, stderr="connection refused")):
        with pytest.raises(node.EtcdError):
            node.etcd_member_list()


def test_find_local_member_prefers_peer_url_then_name():
    members = json.loads(MEMBER_LIST)["members"]
    for member in members:
        member["ID"] = MemberId(member["ID"])
    assert node.find_local_member(members, "10.0.1.1", "other") == "8e9e05c52164694d"
    assert node.find_local_member(members, "10.0.9.9", "ip-10-0-1-2") == "4d2"
    assert node.find_local_member(members, "10.0.9.9", "missing") is None


def test_remove_member_refuses_when_unhealthy():
    with mock.patch.object(node, "etcd_cluster_healthy", return_value=False):
        with pytest.raises(node.EtcdError):
            node.remove_etcd_member("8e9e05c52164694d")


def test_remove_member_reports_not_found(capsys):
    with mock.patch.object(node, "etcd_cluster_healthy", return_value=True), \
            mock.patch.object(node, "etcdctl", return_value=cmd(stdout=MEMBER_LIST)) as ctl:
        assert node.remove_etcd_member("ffff") == node.MEMBER_NOT_FOUND
    assert ctl.call_count == 1
    assert "MEMBER_NOT_FOUND member=ffff" in capsys.readouterr().out


def test_remove_member_accepts_decimal_and_hex_forms(capsys):
    calls = []

    def etcdctl(*args, **kwargs):
        calls.append(args)
        return cmd(stdout=MEMBER_LIST) if args[1] == "list" else cmd()

    with mock.patch.object(node, "etcd_cluster_healthy", return_value=True), \
            mock.patch.object(node, "etcdctl", side_effect=etcdctl):
        assert node.remove_etcd_member("0x8E9E05C52164694D") == node.MEMBER_REMOVED
    assert calls[-1] == ("member", "remove", "8e9e05c52164694d")
    assert "MEMBER_REMOVED member=8e9e05c52164694d" in capsys.readouterr().out


def test_remove_member_failure_raises():
    def etcdctl(*args, **kwargs):
        return cmd(stdout=MEMBER_LIST) if args[1] == "list" else cmd(1, stderr="timeout")

    with mock.patch.object(node, "etcd_cluster_healthy", return_value=True), \
            mock.patch.object(node, "etcdctl", side_effect=etcdctl):
        with pytest.raises(node.EtcdError):
            node.remove_etcd_member("8e9e05c52164694d")


def test_etcd_health_marker(capsys):
    with mock.patch.object(node, "etcd_cluster_healthy", return_value=True), \
            mock.patch.object(node, "etcdctl", return_value=cmd(stdout=MEMBER_LIST)):
        assert node.etcd_health() == "ETCD_HEALTHY members=2"
    with mock.patch.object(node, "etcd_cluster_healthy", return_value=False):
        assert node.etcd_health() == node.ETCD_UNHEALTHY
    out = capsys.readouterr().out
    assert "ETCD_HEALTHY members=2" in out and "ETCD_UNHEALTHY" in out


def test_drain_missing_node_counts_as_drained(capsys):
    v1 = mock.Mock()
    v1.read_node.side_effect = k8s_client.ApiException(status=404)
    with mock.patch.object(node, "load_core_api", return_value=v1), \
            mock.patch.object(node, "run_cmd") as run:
        assert node.drain_node("ip-10-0-1-3") == node.NODE_NOT_FOUND
    run.assert_not_called()
    assert "NODE_NOT_FOUND node=ip-10-0-1-3" in capsys.readouterr().out


def test_drain_cordons_and_deletes_node():
    v1 = mock.Mock()
    with mock.patch.object(node, "load_core_api", return_value=v1), \
            mock.patch.object(node, "run_cmd") as run:
        assert node.drain_node("ip-10-0-1-3") == node.NODE_DRAINED
    assert run.call_args.args[0][:3] == ["kubectl", "drain", "ip-10-0-1-3"]
    v1.delete_node.assert_called_once()


def test_kubeadm_config_renders_certificate_key(tmp_path):
    cfg = Config(cluster_name="test", control_plane_endpoint="test-cp.internal:6443")
    identity = node.NodeIdentity(instance_id="i-1", private_ip="10.0.1.1",
                                 hostname="ip-10-0-1-1")
    path = node.write_kubeadm_config(cfg, identity, certificate_key="abc123",
                                     path=str(tmp_path / "kubeadm.yaml"))
    content = (tmp_path / "kubeadm.yaml").read_text()
    assert path.endswith("kubeadm.yaml")
    assert "certificateKey: abc123" in content
    assert 'controlPlaneEndpoint: "test-cp.internal:6443"' in content
    assert "advertiseAddress: 10.0.1.1" in content


def test_cni_apply_timeout_is_reported_not_raised():
    hang = subprocess.TimeoutExpired(["kubectl", "apply"], 120)
    with mock.patch.object(node, "run_cmd", side_effect=hang):
        assert node.install_cni("https://example.com/calico.yaml") is False


def test_cni_apply_failure_returns_false():
    with mock.patch.object(node, "run_cmd", return_value=cmd(1, stderr="connection refused")):
        assert node.install_cni("https://example.com/calico.yaml") is False


def test_stale_node_cleanup_swallows_api_errors():
    local = node.LocalNode(Config(cluster_name="test"), identity=node.NodeIdentity(
        instance_id="i-1", private_ip="10.0.1.1", hostname="ip-10-0-1-1"))
    with mock.patch.object(node, "load_core_api",
                           side_effect=RuntimeError("admin.conf missing")):
        assert local.clean_stale_nodes() == []
