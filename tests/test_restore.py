"""Tests for the single-winner disaster recovery sequence."""

import pytest

from k8s_bootstrap import params as p
from k8s_bootstrap.common import utc_now_iso
from k8s_bootstrap.lock import RESTORE_LOCK
from k8s_bootstrap.restore import RestoreError, RestoreOrchestrator, RestoreOutcome

from conftest import FakeLocalNode, metric_names

BACKUP = "test/etcd-snapshot-20260301-080000.db"


@pytest.fixture
def armed(params, objects):
    objects.objects[BACKUP] = b"snapshot-bytes"
    params.values.update({
        p.RESTORE_MODE: "true",
        p.RESTORE_BACKUP: BACKUP,
        p.INITIALIZED: "false",
    })


@pytest.fixture
def local():
    return FakeLocalNode(instance_id="i-restorer", member_id="d4")


@pytest.fixture
def orchestrator(cfg, services, registry, local, metrics, tmp_path):
    return RestoreOrchestrator(cfg, services, registry, local, metrics=metrics,
                               snapshot_path=str(tmp_path / "restore.db"))


def test_restore_publishes_and_registers(armed, orchestrator, params, services, fleet,
                                         local, registry, emitted, tmp_path):
    assert orchestrator.run(BACKUP) is RestoreOutcome.RESTORED

    assert local.calls[:2] == ["restore_snapshot", "init_from_restored_etcd"]
    assert params.values[p.INITIALIZED] == "true"
    assert params.values[p.RESTORE_MODE] == "false"
    assert not p.is_unset(params.values[p.JOIN_TOKEN])
    assert not p.is_unset(params.values[p.CERTIFICATE_KEY])

    keys = [key for key, _ in params.writes]
    assert keys.index(p.INITIALIZED) < keys.index(p.RESTORE_MODE)
    assert keys.index(p.JOIN_TOKEN) < keys.index(p.INITIALIZED)

    assert registry.lookup_by_instance("i-restorer").member_id == "d4"
    assert "i-restorer" in fleet.targets
    assert services.locks.get({"LockName": RESTORE_LOCK}) is None
    assert not (tmp_path / "restore.db").exists()
    assert "RestoreSuccess" in metric_names(emitted)


def test_failed_restore_leaves_restore_mode_armed(armed, orchestrator, params, services,
                                                  local, emitted, tmp_path):
    local.fail["init_from_restored_etcd"] = RuntimeError("kubeadm init failed")

    with pytest.raises(RestoreError):
        orchestrator.run(BACKUP)

    assert params.values[p.RESTORE_MODE] == "true"
    assert params.values[p.INITIALIZED] == "false"
    assert p.JOIN_TOKEN not in params.values
    assert services.locks.get({"LockName": RESTORE_LOCK}) is None
    assert not (tmp_path / "restore.db").exists()
    assert "RestoreFailure" in metric_names(emitted)


def test_missing_backup_fails_without_touching_etcd(params, orchestrator, local):
    params.values[p.RESTORE_MODE] = "true"
    with pytest.raises(RestoreError):
        orchestrator.run("test/etcd-snapshot-missing.db")
    assert "restore_snapshot" not in local.calls


def test_second_node_defers_while_restore_in_progress(armed, orchestrator, services,
                                                      objects, local):
    services.locks.put({"LockName": RESTORE_LOCK, "InstanceId": "i-winner",
                        "CreatedAt": utc_now_iso()})
    assert orchestrator.run(BACKUP) is RestoreOutcome.DEFERRED
    assert objects.downloads == []
    assert local.calls == []
    assert services.locks.get({"LockName": RESTORE_LOCK})["InstanceId"] == "i-winner"
