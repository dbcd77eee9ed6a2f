"""Tests for the EMF metrics emitter."""

import json
from types import SimpleNamespace

from k8s_bootstrap.metrics import BYTES, COUNT, MetricsLogger, create_metrics_logger


def test_document_layout():
    emitted = []
    metrics = MetricsLogger("K8sCluster/Lifecycle", {"ClusterName": "test"}, emit=emitted.append)
    metrics.put_metric("BackupSuccess", 1, COUNT)
    metrics.put_metric("BackupSizeBytes", 2048, BYTES)
    metrics.flush()

    doc = json.loads(emitted[0])
    directive = doc["_aws"]["CloudWatchMetrics"][0]
    assert directive["Namespace"] == "K8sCluster/Lifecycle"
    assert directive["Dimensions"] == [["ClusterName"]]
    assert directive["Metrics"] == [
        {"Name": "BackupSuccess", "Unit": "Count"},
        {"Name": "BackupSizeBytes", "Unit": "Bytes"},
    ]
    assert doc["ClusterName"] == "test"
    assert doc["BackupSizeBytes"] == 2048


def test_flush_without_metrics_emits_nothing():
    emitted = []
    MetricsLogger("ns", emit=emitted.append).flush()
    assert emitted == []


def test_dimensions_reset_after_flush():
    emitted = []
    metrics = MetricsLogger("ns", emit=emitted.append)
    metrics.set_dimension("Operation", "join")
    metrics.put_metric("RetryAttempt", 1)
    metrics.flush()
    metrics.put_metric("RetryExhausted", 1)
    metrics.flush()

    first, second = (json.loads(doc) for doc in emitted)
    assert first["Operation"] == "join"
    assert "Operation" not in second


def test_auto_flush_at_capacity():
    emitted = []
    metrics = MetricsLogger("ns", emit=emitted.append)
    for n in range(MetricsLogger.MAX_METRICS):
        metrics.put_metric(f"M{n}", n)
    assert len(emitted) == 1


def test_standard_dimensions(monkeypatch):
    monkeypatch.setenv("CLUSTER_NAME", "prod")
    context = SimpleNamespace(function_name="etcd-lifecycle", aws_request_id="r-1")
    metrics = create_metrics_logger("ns", context)
    assert metrics.default_dimensions == {"ClusterName": "prod", "FunctionName": "etcd-lifecycle"}
