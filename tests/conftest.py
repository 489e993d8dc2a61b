import json
import threading

import pytest

from kubestrap.bootstrap.models import Inventory, Node, Role
from kubestrap.config.models import ClusterSpec, ValidationSpec
from kubestrap.executor.interface import CommandResult

TOKEN = "abcdef.0123456789abcdef"
CA_HASH = "sha256:" + "0f" * 32
ENDPOINT = "10.0.0.10:6443"

JOIN_OUTPUT = f"kubeadm join {ENDPOINT} --token {TOKEN} --discovery-token-ca-cert-hash {CA_HASH} \n"

ADMIN_KUBECONFIG = f"""\
apiVersion: v1
kind: Config
clusters:
- cluster:
    certificate-authority-data: LS0tLS1CRUdJTi0tLS0t
    server: https://{ENDPOINT}
  name: kubernetes
contexts:
- context:
    cluster: kubernetes
    user: kubernetes-admin
  name: kubernetes-admin@kubernetes
current-context: kubernetes-admin@kubernetes
users:
- name: kubernetes-admin
  user:
    client-certificate-data: LS0tLS1CRUdJTi0tLS0t
"""


def nodes_json(*ready, not_ready=()):
    def _item(name, status):
        return {
            "metadata": {"name": name},
            "status": {"conditions": [{"type": "Ready", "status": status}]},
        }
    items = [_item(n, "True") for n in ready] + [_item(n, "False") for n in not_ready]
    return json.dumps({"items": items})


def pods_json(placement, pending=0, terminating=None):
    items = [
        {"metadata": {"name": pod}, "spec": {"nodeName": node}, "status": {"phase": "Running"}}
        for pod, node in placement.items()
    ]
    items += [
        {"metadata": {"name": f"pending-{i}"}, "spec": {}, "status": {"phase": "Pending"}}
        for i in range(pending)
    ]
    items += [
        {
            "metadata": {"name": pod, "deletionTimestamp": "2026-10-18T09:00:00Z"},
            "spec": {"nodeName": node},
            "status": {"phase": "Running"},
        }
        for pod, node in (terminating or {}).items()
    ]
    return json.dumps({"items": items})


class FakeExecutor:
    """
    In-memory CommandExecutor. Commands are matched against rules by
    substring (and optionally node name); the most recently added rule wins.
    Unmatched commands exit 0 with no output.
    """

    def __init__(self):
        self.rules = []
        self.calls = []
        self.files = []
        self.closed = False
        self._lock = threading.Lock()

    def on(self, pattern, *, node=None, exit_code=0, stdout="", stderr="", raises=None, fn=None):
        if fn is None:
            result = raises if raises is not None else CommandResult(exit_code, stdout, stderr)
        else:
            result = fn
        self.rules.insert(0, (node, pattern, result))
        return self

    def execute(self, node, command, timeout):
        with self._lock:
            self.calls.append((node.name, command))
        for rule_node, pattern, result in self.rules:
            if (rule_node is None or rule_node == node.name) and pattern in command:
                if isinstance(result, Exception):
                    raise result
                if callable(result):
                    return result(node, command)
                return result
        return CommandResult(0)

    def put_text(self, node, path, content, mode=0o644):
        with self._lock:
            self.files.append((node.name, path, content, mode))

    def close(self):
        self.closed = True

    def commands(self, node=None):
        return [c for n, c in self.calls if node is None or n == node]

    def ran(self, pattern, node=None):
        return any(pattern in c for c in self.commands(node))


class FakeClock:
    def __init__(self):
        self.now = 0.0
        self.sleeps = []

    def __call__(self):
        return self.now

    def sleep(self, seconds):
        self.sleeps.append(seconds)
        self.now += seconds


def healthy_cluster(fake, ready=("m1", "w1", "w2"), placement=None):
    """Responses of a control plane and workers that all behave."""
    placement = placement if placement is not None else {"web-a": "w1", "web-b": "w2"}
    fake.on("cat /etc/kubernetes/admin.conf", stdout=ADMIN_KUBECONFIG)
    fake.on("kubeadm token create --print-join-command", stdout=JOIN_OUTPUT)
    fake.on("get nodes -o json", stdout=nodes_json(*ready))
    fake.on("get pods -l app=", stdout=pods_json(placement))
    return fake


def make_node(name, role=Role.WORKER, address=None):
    return Node(name=name, address=address or f"10.0.0.{len(name) + 10}", role=role, username="ubuntu")


@pytest.fixture
def inventory():
    return Inventory(
        master=make_node("m1", Role.CONTROL_PLANE, "10.0.0.10"),
        workers=(make_node("w1", address="10.0.0.11"), make_node("w2", address="10.0.0.12")),
    )


@pytest.fixture
def cluster(tmp_path):
    return ClusterSpec(
        readiness_timeout=2,
        readiness_interval=1,
        credentials_path=tmp_path / "kubeconfig",
    )


@pytest.fixture
def validation():
    return ValidationSpec(timeout=2, interval=1)


@pytest.fixture
def fake():
    return FakeExecutor()


@pytest.fixture
def clock():
    return FakeClock()
