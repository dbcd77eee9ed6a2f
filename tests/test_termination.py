"""Tests for the lifecycle termination handler."""

import dataclasses

import pytest
from botocore.exceptions import ClientError

from k8s_bootstrap.handlers.termination import ABANDON, CONTINUE, TerminationHandler
from k8s_bootstrap.registry import Member, MemberId, MemberStatus

from conftest import metric_names

INSTANCES = ["i-1", "i-2", "i-3"]


def event(instance_id="i-1"):
    detail = {
        "LifecycleHookName": "test-terminate-hook",
        "AutoScalingGroupName": "test-control-plane",
        "LifecycleActionToken": "token-123",
    }
    if instance_id:
        detail["EC2InstanceId"] = instance_id
    return {"detail-type": "EC2 Instance-terminate Lifecycle Action", "detail": detail}


@pytest.fixture
def cluster(registry, fleet, commands):
    for n, instance_id in enumerate(INSTANCES, start=1):
        registry.register(Member(
            cluster_id="test", member_id=MemberId(f"{n}a"), instance_id=instance_id,
            private_ip=f"10.0.1.{n}", hostname=f"ip-10-0-1-{n}",
        ))
    fleet.known = set(INSTANCES)
    # the terminating instance has already left InService
    fleet.healthy = ["i-2", "i-3"]
    commands.responses.update({
        "drain-node": "NODE_DRAINED node=ip-10-0-1-1",
        "remove-member": "MEMBER_REMOVED member=1a",
    })


@pytest.fixture
def handler(cfg, services, registry, metrics):
    return TerminationHandler(cfg, services, registry, metrics, request_id="req-1")


def test_removes_member_and_continues(cluster, handler, registry, fleet, commands, emitted):
    response = handler.handle(event())

    assert response["statusCode"] == 200
    assert response["result"] == CONTINUE
    assert fleet.lifecycle_actions == [("i-1", CONTINUE)]
    assert fleet.heartbeats == ["i-1"]
    assert registry.lookup_by_instance("i-1").status is MemberStatus.REMOVED

    assert commands.modes() == ["drain-node", "remove-member"]
    assert all(instance == "i-2" for instance, _, _ in commands.calls)
    assert "--node-name ip-10-0-1-1" in commands.calls[0][2]
    assert "--member-id 1a" in commands.calls[1][2]

    names = metric_names(emitted)
    assert {"NodeDrainSuccess", "EtcdMemberRemovalSuccess", "LifecycleHandlerDuration"} <= set(names)


@pytest.mark.parametrize("remaining", [0, 1])
def test_quorum_risk_abandons_without_touching_etcd(cluster, handler, registry, fleet,
                                                    commands, emitted, remaining):
    fleet.healthy = ["i-2", "i-3"][:remaining]
    response = handler.handle(event())

    assert response["statusCode"] == 409
    assert response["result"] == ABANDON
    assert fleet.heartbeats == []
    assert fleet.lifecycle_actions == [("i-1", ABANDON)]
    assert commands.calls == []
    assert registry.lookup_by_instance("i-1").status is MemberStatus.ACTIVE
    assert "QuorumRiskDetected" in metric_names(emitted)


def test_member_already_gone_from_etcd_is_success(cluster, handler, registry, commands):
    commands.responses["remove-member"] = "MEMBER_NOT_FOUND member=1a"
    response = handler.handle(event())
    assert response["result"] == CONTINUE
    assert registry.lookup_by_instance("i-1").status is MemberStatus.REMOVED


def test_failed_removal_abandons(cluster, handler, registry, fleet, commands, emitted, cfg):
    commands.responses["remove-member"] = "Error: etcdserver: unhealthy cluster"
    response = handler.handle(event())

    assert response["statusCode"] == 500
    assert response["result"] == ABANDON
    assert commands.modes().count("remove-member") == cfg.max_retries
    assert registry.lookup_by_instance("i-1").status is MemberStatus.REMOVAL_FAILED
    assert "EtcdMemberRemovalFailure" in metric_names(emitted)


def test_drain_failure_does_not_block_removal(cluster, handler, registry, commands, emitted):
    commands.responses["drain-node"] = ConnectionError("ssm unavailable")
    response = handler.handle(event())

    assert response["result"] == CONTINUE
    assert registry.lookup_by_instance("i-1").status is MemberStatus.REMOVED
    assert "NodeDrainFailure" in metric_names(emitted)


def test_missing_instance_id_is_rejected(handler, fleet):
    response = handler.handle(event(instance_id=None))
    assert response["statusCode"] == 400
    assert fleet.lifecycle_actions == []


def test_unknown_instance_continues(cluster, handler, fleet, commands):
    response = handler.handle(event("i-gone"))
    assert response["result"] == CONTINUE
    assert fleet.lifecycle_actions == [("i-gone", CONTINUE)]
    assert commands.calls == []


def test_instance_without_member_record_continues(cluster, handler, fleet, commands):
    fleet.known.add("i-worker")
    response = handler.handle(event("i-worker"))
    assert response["statusCode"] == 200
    assert response["result"] == CONTINUE
    assert commands.calls == []


def test_already_removed_member_is_not_removed_twice(cluster, handler, registry, commands):
    registry.mark_removed(registry.lookup_by_instance("i-1"))
    response = handler.handle(event())
    assert response["result"] == CONTINUE
    assert commands.calls == []


def test_unexpected_error_abandons(cluster, handler, fleet):
    def broken():
        raise RuntimeError("describe_auto_scaling_groups failed")

    fleet.healthy_instances = broken
    response = handler.handle(event())
    assert response["statusCode"] == 500
    assert response["result"] == ABANDON
    assert fleet.lifecycle_actions == [("i-1", ABANDON)]


def throttled(operation):
    return ClientError({"Error": {"Code": "ThrottlingException", "Message": "Rate exceeded"}},
                       operation)


def flaky(real, failures):
    """Wrap ``real`` so its first ``failures`` calls raise a throttling error."""
    remaining = [failures]

    def call(*args, **kwargs):
        if remaining[0] > 0:
            remaining[0] -= 1
            raise throttled("Query")
        return real(*args, **kwargs)

    return call


def test_raised_minimum_abandons_with_two_healthy(cluster, cfg, services, registry, fleet,
                                                  commands, metrics):
    cfg = dataclasses.replace(cfg, min_healthy_nodes_for_removal=3)
    handler = TerminationHandler(cfg, services, registry, metrics, request_id="req-1")
    response = handler.handle(event())

    assert fleet.healthy == ["i-2", "i-3"]
    assert response["statusCode"] == 409
    assert response["result"] == ABANDON
    assert commands.calls == []
    assert registry.lookup_by_instance("i-1").status is MemberStatus.ACTIVE


def test_throttled_member_lookup_is_retried(cluster, handler, registry, monkeypatch):
    monkeypatch.setattr(registry, "lookup_by_instance", flaky(registry.lookup_by_instance, 1))
    response = handler.handle(event())

    assert response["statusCode"] == 200
    assert response["result"] == CONTINUE
    assert registry.lookup_by_instance("i-1").status is MemberStatus.REMOVED


def test_throttled_instance_lookup_is_retried(cluster, handler, fleet, monkeypatch):
    monkeypatch.setattr(fleet, "describe_instance", flaky(fleet.describe_instance, 1))
    response = handler.handle(event())
    assert response["result"] == CONTINUE
    assert fleet.lifecycle_actions == [("i-1", CONTINUE)]


def test_throttled_quorum_check_is_retried(cluster, handler, registry, commands, monkeypatch):
    monkeypatch.setattr(registry, "lookup_healthy_control_plane_instances",
                        flaky(registry.lookup_healthy_control_plane_instances, 1))
    response = handler.handle(event())

    assert response["statusCode"] == 200
    assert commands.modes() == ["drain-node", "remove-member"]


def test_registry_failure_after_removal_still_continues(cluster, handler, registry, fleet,
                                                        commands, monkeypatch, cfg):
    def unavailable(*args, **kwargs):
        raise throttled("UpdateItem")

    monkeypatch.setattr(registry, "mark_removed", unavailable)
    response = handler.handle(event())

    assert response["statusCode"] == 200
    assert response["result"] == CONTINUE
    assert fleet.lifecycle_actions == [("i-1", CONTINUE)]
    assert commands.modes().count("remove-member") == 1
    assert registry.lookup_by_instance("i-1").status is MemberStatus.ACTIVE
