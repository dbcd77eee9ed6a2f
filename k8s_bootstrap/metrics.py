#!/usr/bin/env python3
"""
@format
CloudWatch Embedded Metric Format (EMF) emitter.

Metrics are queued and printed to stdout as EMF JSON documents; the
CloudWatch Logs agent (or Lambda runtime) extracts them without a
PutMetricData call.

Usage:
    metrics = create_metrics_logger("K8sCluster/Lifecycle", context)
    metrics.put_metric("NodeDrainSuccess", 1, COUNT)
    metrics.flush()
"""

from __future__ import annotations

import json
import os
import time
from typing import Optional

COUNT = "Count"
MILLISECONDS = "Milliseconds"
BYTES = "Bytes"
SECONDS = "Seconds"


class MetricsLogger:
    """
    Queue metrics and emit them as EMF documents.

    EMF allows at most 100 metrics per document; the queue auto-flushes at
    that size. Per-metric dimensions set with ``set_dimension`` are reset
    on flush.
    """

    MAX_METRICS = 100

    def __init__(self, namespace: str, default_dimensions: Optional[dict] = None,
                 emit=print):
        self.namespace = namespace
        self.default_dimensions = dict(default_dimensions or {})
        self._metrics: list[dict] = []
        self._dimensions: dict = {}
        self._emit = emit

    def set_dimension(self, key: str, value: str) -> None:
        self._dimensions[key] = value

    def put_metric(self, name: str, value: float, unit: str = COUNT) -> None:
        self._metrics.append({
            "name": name,
            "value": value,
            "unit": unit,
            "dimensions": dict(self._dimensions),
        })
        if len(self._metrics) >= self.MAX_METRICS:
            self.flush()

    def build_document(self) -> Optional[dict]:
        """Build the EMF document for the queued metrics (None when empty)."""
        if not self._metrics:
            return None

        dimensions = dict(self.default_dimensions)
        for metric in self._metrics:
            dimensions.update(metric["dimensions"])

        doc: dict = {
            "_aws": {
                "Timestamp": int(time.time() * 1000),
                "CloudWatchMetrics": [{
                    "Namespace": self.namespace,
                    "Dimensions": [list(dimensions.keys())] if dimensions else [],
                    "Metrics": [
                        {"Name": m["name"], "Unit": m["unit"]}
                        for m in self._metrics
                    ],
                }],
            },
        }
        doc.update(dimensions)
        for metric in self._metrics:
            doc[metric["name"]] = metric["value"]
        return doc

    def flush(self) -> None:
        doc = self.build_document()
        if doc is None:
            return
        self._emit(json.dumps(doc))
        self._metrics = []
        self._dimensions = {}


def create_metrics_logger(namespace: str, context=None) -> MetricsLogger:
    """
    Create a MetricsLogger with the standard ClusterName/FunctionName dimensions.

    Args:
        namespace: CloudWatch metric namespace.
        context: Lambda context object (optional).
    """
    dimensions = {}
    cluster_name = os.environ.get("CLUSTER_NAME")
    if cluster_name:
        dimensions["ClusterName"] = cluster_name
    function_name = getattr(context, "function_name", None) if context else None
    if function_name:
        dimensions["FunctionName"] = function_name
    return MetricsLogger(namespace, dimensions)
