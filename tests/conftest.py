"""Shared fixtures: in-memory stand-ins for SSM, DynamoDB, S3, EC2 and the node."""

import json
import shlex
import threading
from pathlib import Path

import pytest

from k8s_bootstrap.aws import CommandResult, Services
from k8s_bootstrap.config import Config
from k8s_bootstrap.metrics import MetricsLogger
from k8s_bootstrap.node import NodeIdentity
from k8s_bootstrap.registry import MembershipRegistry
from k8s_bootstrap.rotation import RefreshOutcome


class FakeParams:
    """
    ParameterStore backed by a dict. ``writes`` records every put in order.

    ``fail_on`` keys fail every put. ``fail_get[key]`` is the number of
    upcoming reads of ``key`` that raise before reads succeed again.
    """

    def __init__(self, values=None):
        self.values = dict(values or {})
        self.writes = []
        self.fail_on = set()
        self.fail_get = {}
        self.reads = []
        self._lock = threading.Lock()

    def get(self, key, *, decrypt=False):
        with self._lock:
            self.reads.append(key)
            if self.fail_get.get(key, 0) > 0:
                self.fail_get[key] -= 1
                raise RuntimeError(f"get {key} throttled")
            return self.values.get(key)

    def put(self, key, value, *, secure=False):
        if key in self.fail_on:
            raise RuntimeError(f"put {key} failed")
        with self._lock:
            self.values[key] = value
            self.writes.append((key, value))

    def delete(self, key):
        with self._lock:
            self.values.pop(key, None)


class FakeTable:
    """DynamoTable with conditional writes serialized by a mutex."""

    def __init__(self, key_attributes):
        self.key_attributes = tuple(key_attributes)
        self.items = {}
        self._lock = threading.Lock()

    def _key(self, item):
        return tuple(item[attr] for attr in self.key_attributes)

    def put_if_absent(self, item, key_attribute):
        with self._lock:
            key = self._key(item)
            if key in self.items:
                return False
            self.items[key] = dict(item)
            return True

    def put(self, item):
        with self._lock:
            self.items[self._key(item)] = dict(item)

    def get(self, key):
        with self._lock:
            row = self.items.get(self._key(key))
            return dict(row) if row else None

    def delete(self, key):
        with self._lock:
            self.items.pop(self._key(key), None)

    def delete_if_matches(self, key, expected):
        with self._lock:
            row = self.items.get(self._key(key))
            if row is None or any(row.get(k) != v for k, v in expected.items()):
                return False
            del self.items[self._key(key)]
            return True

    def update(self, key, values):
        with self._lock:
            row = self.items.setdefault(self._key(key), dict(key))
            row.update(values)

    def query_index(self, index_name, attribute, value):
        with self._lock:
            return [dict(row) for row in self.items.values() if row.get(attribute) == value]

    def query_partition(self, attribute, value):
        return self.query_index("", attribute, value)


class FakeFleet:
    def __init__(self, healthy=None, known=None):
        self.healthy = list(healthy or [])
        self.known = set(known) if known is not None else None
        self.lifecycle_actions = []
        self.heartbeats = []
        self.targets = set()
        self.registrations = []

    def healthy_instances(self):
        return list(self.healthy)

    def describe_instance(self, instance_id):
        known = self.known if self.known is not None else set(self.healthy)
        if instance_id not in known:
            return None
        return {"InstanceId": instance_id, "State": {"Name": "running"}}

    def complete_lifecycle_action(self, *, hook_name, asg_name, instance_id, token, result):
        self.lifecycle_actions.append((instance_id, result))

    def record_lifecycle_heartbeat(self, *, hook_name, asg_name, instance_id, token):
        self.heartbeats.append(instance_id)
        return True

    def register_target(self, instance_id, port):
        self.registrations.append(instance_id)
        self.targets.add(instance_id)

    def deregister_target(self, instance_id, port):
        self.targets.discard(instance_id)


class FakeCommands:
    """
    CommandChannel that answers by ``--mode``.

    ``responses[mode]`` is stdout text, an exception to raise, or a list of
    either consumed one per call.
    """

    def __init__(self, responses=None):
        self.responses = dict(responses or {})
        self.calls = []

    def run(self, instance_id, command, timeout=60, description=""):
        args = shlex.split(command)
        mode = args[args.index("--mode") + 1]
        self.calls.append((instance_id, mode, command))
        response = self.responses.get(mode, "")
        if isinstance(response, list):
            response = response.pop(0) if len(response) > 1 else response[0]
        if isinstance(response, BaseException):
            raise response
        return CommandResult(status="Success", stdout=response, stderr="")

    def modes(self):
        return [mode for _, mode, _ in self.calls]


class FakeObjects:
    def __init__(self, objects=None):
        self.objects = dict(objects or {})
        self.downloads = []

    def download(self, key, path):
        if key not in self.objects:
            raise FileNotFoundError(key)
        self.downloads.append(key)
        Path(path).write_bytes(self.objects[key])

    def upload(self, path, key, metadata=None):
        self.objects[key] = Path(path).read_bytes()

    def latest(self, prefix):
        keys = sorted(k for k in self.objects if k.startswith(prefix))
        return keys[-1] if keys else None


class FakeLocalNode:
    """LocalNode double. ``join_results`` is consumed one value per join."""

    def __init__(self, instance_id="i-0001", private_ip="10.0.1.1", hostname=None,
                 join_results=None, member_id="a1"):
        self.identity = NodeIdentity(
            instance_id=instance_id,
            private_ip=private_ip,
            hostname=hostname or f"ip-{private_ip.replace('.', '-')}",
        )
        self.initialized = False
        self.joined = False
        self.join_results = list(join_results or [True])
        self.member_id = member_id
        self.calls = []
        self.fail = {}

    def _call(self, name):
        self.calls.append(name)
        if name in self.fail:
            raise self.fail[name]

    def preflight(self, control_plane):
        self._call("preflight")

    def is_initialized(self):
        return self.initialized

    def has_joined(self):
        return self.joined

    def generate_certificate_key(self):
        self._call("generate_certificate_key")
        return "c" * 64

    def create_join_token(self):
        self._call("create_join_token")
        return "abcdef.0123456789abcdef"

    def ca_cert_hash(self):
        return "sha256:" + "f" * 64

    def upload_certs(self, certificate_key):
        self._call("upload_certs")

    def init_cluster(self, certificate_key):
        self._call("init_cluster")

    def init_from_restored_etcd(self):
        self._call("init_from_restored_etcd")

    def restore_snapshot(self, snapshot_path, cluster_token):
        self._call("restore_snapshot")

    def join(self, params, control_plane):
        self._call("join")
        return self.join_results.pop(0) if len(self.join_results) > 1 else self.join_results[0]

    def reset(self):
        self._call("reset")

    def stop_kubelet(self):
        self._call("stop_kubelet")

    def install_cni(self):
        self._call("install_cni")

    def local_member_id(self):
        return self.member_id

    def clean_stale_nodes(self):
        self._call("clean_stale_nodes")
        return []


class FakeRotation:
    def __init__(self, ensure=RefreshOutcome.NOT_NEEDED, refresh=RefreshOutcome.REFRESHED):
        self.ensure_outcome = ensure
        self.refresh_outcome = refresh
        self.calls = []

    def ensure_fresh(self, *, include_certificate_key=True):
        self.calls.append(("ensure_fresh", include_certificate_key))
        return self.ensure_outcome

    def refresh(self):
        self.calls.append(("refresh", None))
        return self.refresh_outcome


@pytest.fixture
def cfg(tmp_path):
    return Config(
        cluster_name="test",
        backup_bucket="test-backups",
        max_retries=2,
        retry_base_delay=0,
        init_wait_timeout=5,
        worker_init_wait_timeout=5,
        init_wait_interval=1,
        etcd_unhealthy_wait=0,
        status_file=tmp_path / "status.json",
    )


@pytest.fixture
def params():
    return FakeParams()


@pytest.fixture
def fleet():
    return FakeFleet()


@pytest.fixture
def commands():
    return FakeCommands()


@pytest.fixture
def objects():
    return FakeObjects()


@pytest.fixture
def services(params, fleet, commands, objects):
    return Services(
        params=params,
        locks=FakeTable(["LockName"]),
        members=FakeTable(["ClusterId", "MemberId"]),
        objects=objects,
        fleet=fleet,
        commands=commands,
    )


@pytest.fixture
def registry(cfg, services):
    return MembershipRegistry(services.members, services.fleet, cfg.cluster_name)


@pytest.fixture
def emitted():
    return []


@pytest.fixture
def metrics(emitted):
    return MetricsLogger("Test/Lifecycle", emit=emitted.append)


def metric_names(emitted):
    """Names of every metric in the emitted EMF documents."""
    names = []
    for doc in emitted:
        parsed = json.loads(doc)
        for directive in parsed["_aws"]["CloudWatchMetrics"]:
            names.extend(m["Name"] for m in directive["Metrics"])
    return names
