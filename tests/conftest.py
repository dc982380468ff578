"""
Shared pytest fixtures for cluster_diag tests.

Kubernetes objects are built from the real kubernetes.client models so the
module sees the same attribute shapes as against a live API server. API
classes are patched with MagicMocks, and the exec websocket is replaced by
FakeExecStream, which replays scripted channel frames.
"""

import json
import os
import sys
from unittest.mock import MagicMock, patch

import pytest
from kubernetes.client import (
    CoreV1Event,
    V1Container,
    V1LoadBalancerIngress,
    V1LoadBalancerStatus,
    V1Namespace,
    V1Node,
    V1NodeCondition,
    V1NodeStatus,
    V1ObjectMeta,
    V1ObjectReference,
    V1Pod,
    V1PodSpec,
    V1PodStatus,
    V1ResourceRequirements,
    V1Service,
    V1ServiceStatus,
)

# The module lives in an Ansible role library, not a package
sys.path.insert(
    0,
    os.path.join(os.path.dirname(os.path.dirname(os.path.abspath(__file__))), "roles", "cluster_diag", "library"),
)


STDOUT_CHANNEL = 1
STDERR_CHANNEL = 2
ERROR_CHANNEL = 3

SUCCESS_STATUS = json.dumps({"metadata": {}, "status": "Success"})


def exit_status(code: int) -> str:
    return json.dumps({
        "metadata": {},
        "status": "Failure",
        "message": f"command terminated with non-zero exit code: exit status {code}",
        "reason": "NonZeroExitCode",
        "details": {"causes": [{"reason": "ExitCode", "message": str(code)}]},
    })


# =============================================================================
# Object factories
# =============================================================================

def make_node(name, ready="True", labels=None):
    return V1Node(
        metadata=V1ObjectMeta(name=name, labels=labels or {}),
        status=V1NodeStatus(conditions=[
            V1NodeCondition(type="MemoryPressure", status="False"),
            V1NodeCondition(type="Ready", status=ready),
        ]),
    )


def make_pod(name, namespace="default", phase="Running", containers=None, node_name="worker-1"):
    if containers is None:
        containers = [("app", {"cpu": "500m", "memory": "256Mi"})]
    return V1Pod(
        metadata=V1ObjectMeta(name=name, namespace=namespace),
        spec=V1PodSpec(
            node_name=node_name,
            containers=[
                V1Container(name=c_name, resources=V1ResourceRequirements(requests=requests))
                for c_name, requests in containers
            ],
        ),
        status=V1PodStatus(phase=phase),
    )


def make_event(event_type, reason="Test", name="evt"):
    return CoreV1Event(
        metadata=V1ObjectMeta(name=name, namespace="default"),
        involved_object=V1ObjectReference(kind="Pod", name="p", namespace="default"),
        type=event_type,
        reason=reason,
    )


def make_namespace(name):
    return V1Namespace(metadata=V1ObjectMeta(name=name))


def make_service(ingress_ips=()):
    ingress = [V1LoadBalancerIngress(ip=ip) for ip in ingress_ips]
    return V1Service(
        metadata=V1ObjectMeta(name="kargo", namespace="fed-paas-helpers"),
        status=V1ServiceStatus(load_balancer=V1LoadBalancerStatus(ingress=ingress or None)),
    )


def make_pod_metrics(name, namespace="default", containers=None):
    if containers is None:
        containers = [("app", {"cpu": "250m", "memory": "128Mi"})]
    return {
        "metadata": {"name": name, "namespace": namespace},
        "containers": [{"name": c_name, "usage": usage} for c_name, usage in containers],
    }


def listing(items):
    result = MagicMock()
    result.items = list(items)
    return result


def redis_custom_resource(nodes=None, status="OK", pods=6, pods_ready=6):
    if nodes is None:
        nodes = [
            {"id": "a1", "ip": "10.0.0.1", "podName": "rediscluster-node-0", "port": "6379",
             "role": "Primary", "slots": ["0-5460"], "zone": "zone-a"},
            {"id": "b1", "ip": "10.0.0.2", "podName": "rediscluster-node-1", "port": "6379",
             "role": "Primary", "slots": ["5461-10922"], "zone": "zone-b"},
            {"id": "a2", "ip": "10.0.0.3", "podName": "rediscluster-node-2", "port": "6379",
             "role": "Replica", "primaryRef": "b1", "zone": "zone-a"},
        ]
    return {
        "apiVersion": "db.ibm.com/v1alpha1",
        "kind": "RedisCluster",
        "metadata": {"name": "node-for-redis", "namespace": "fed-redis-cluster"},
        "status": {
            "cluster": {
                "labelSelectorPath": "redis-operator.k8s.io/cluster-name=node-for-redis",
                "maxReplicationFactor": 1,
                "minReplicationFactor": 1,
                "nodes": nodes,
                "numberOfPods": pods,
                "numberOfPodsReady": pods_ready,
                "numberOfPrimaries": 2,
                "numberOfPrimariesReady": 2,
                "numberOfRedisNodesRunning": pods_ready,
                "numberOfReplicasPerPrimary": {"a1": 0, "b1": 1},
                "status": status,
            },
            "conditions": [
                {"type": "ClusterOK", "status": "True", "reason": "", "message": "",
                 "lastProbeTime": "2024-05-01T10:00:00Z", "lastTransitionTime": "2024-05-01T09:00:00Z"},
            ],
            "startTime": "2024-05-01T08:00:00Z",
        },
    }


# =============================================================================
# Exec stream fake
# =============================================================================

class FakeExecStream:
    """Replays (channel, data) frames the way kubernetes' WSClient buffers them."""

    def __init__(self, frames=(), status=SUCCESS_STATUS, hang=False):
        self._frames = list(frames)
        self._channels = {}
        self._open = True
        self.status = status
        self.hang = hang
        self.closed = False

    def is_open(self):
        return self._open

    def update(self, timeout=0):
        if not self._open:
            return
        if self._frames:
            channel, data = self._frames.pop(0)
            self._channels[channel] = self._channels.get(channel, "") + data
        elif not self.hang:
            if self.status is not None:
                self._channels[ERROR_CHANNEL] = self.status
            self._open = False

    def peek_channel(self, channel, timeout=0):
        self.update(timeout=timeout)
        return self._channels.get(channel, "")

    def read_channel(self, channel, timeout=0):
        if channel not in self._channels:
            return self.peek_channel(channel, timeout)
        return self._channels.pop(channel)

    def peek_stdout(self, timeout=0):
        return self.peek_channel(STDOUT_CHANNEL, timeout)

    def peek_stderr(self, timeout=0):
        return self.peek_channel(STDERR_CHANNEL, timeout)

    def read_stdout(self, timeout=None):
        return self.read_channel(STDOUT_CHANNEL)

    def read_stderr(self, timeout=None):
        return self.read_channel(STDERR_CHANNEL)

    def close(self, **kwargs):
        self._open = False
        self.closed = True


# =============================================================================
# Fixtures
# =============================================================================

@pytest.fixture
def api_client():
    return MagicMock(name="ApiClient")


@pytest.fixture
def core():
    return MagicMock(name="CoreV1Api")


@pytest.fixture
def custom():
    return MagicMock(name="CustomObjectsApi")


@pytest.fixture
def version_api():
    return MagicMock(name="VersionApi")


@pytest.fixture
def apis(core, custom, version_api):
    """Patch the kubernetes API classes the module builds from an ApiClient."""
    with patch("kubernetes.client.CoreV1Api", return_value=core), \
            patch("kubernetes.client.CustomObjectsApi", return_value=custom), \
            patch("kubernetes.client.VersionApi", return_value=version_api):
        yield {"core": core, "custom": custom, "version": version_api}


@pytest.fixture
def exec_stream():
    """Patch kubernetes.stream.stream; set ``.streams`` to the fakes to hand out."""

    class _Controller:
        def __init__(self):
            self.streams = []
            self.mock = None

    controller = _Controller()

    def _next_stream(*args, **kwargs):
        return controller.streams.pop(0)

    with patch("kubernetes.stream.stream", side_effect=_next_stream) as mock_stream:
        controller.mock = mock_stream
        yield controller
