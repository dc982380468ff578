#!/usr/bin/python
# -*- coding: utf-8 -*-
# SPDX-License-Identifier: MIT

"""Self-contained Kubernetes diagnostics module for Ansible.

Answers three operational questions about a cluster from the Ansible
control node: is the cluster healthy, how much of their requested CPU and
memory are workloads actually using, and what state is the Redis cluster
in. It can also run one shell command inside one container and capture
the output, which is how Alertmanager and redis-cli are queried.

Everything except exec, redis_flush and debug_level is a read-only
list/get against the API server.
"""

from __future__ import annotations

DOCUMENTATION = r"""
---
module: cluster_diag
short_description: Diagnose cluster health, utilisation, Redis and alerts
version_added: "1.0.0"
description:
  - Connects to a Kubernetes cluster via kubeconfig and runs one diagnostic
    action per invocation.
  - C(health) runs node readiness, pod phase and event severity checks and
    returns a pass/fail verdict for each.
  - C(resources) reports per-container CPU and memory usage as a percentage
    of the container's request, using the metrics.k8s.io API.
  - C(redis_status) reads the RedisCluster custom resource status and joins
    its node roster with the live pods.
  - C(alerts) queries Alertmanager with amtool inside its pod.
  - C(exec) runs a single shell command inside a container. No PTY is
    requested, so stdout and stderr are captured separately.
options:
  kubeconfig:
    description: Path to the kubeconfig file.
    type: path
    default: ~/.kube/config
  context:
    description: Kubeconfig context to use. Defaults to current context.
    type: str
  action:
    description: Diagnostic to run.
    type: str
    default: health
    choices: [health, resources, redis_status, redis_dbsize, redis_flush, alerts, exec, debug_level, service_ip, inventory]
  checks:
    description: Health checks to run when I(action=health).
    type: list
    elements: str
    default: [nodes, pods, events]
  exclude_phases:
    description:
      - Pod phases the pod check does not count as failures, for example C(Succeeded).
      - By default every phase other than C(Running) counts.
    type: list
    elements: str
    default: []
  namespace:
    description: Namespace of the target pod for I(action=exec) and I(action=debug_level), or the namespace to list for I(action=inventory).
    type: str
  pod:
    description: Target pod for I(action=exec) and I(action=debug_level), or the pod whose containers to list for I(action=inventory).
    type: str
  container:
    description: Target container for I(action=exec) and I(action=debug_level).
    type: str
  command:
    description: Shell command for I(action=exec). Run as C(/bin/sh -c <command>).
    type: str
  debug_level:
    description: Trace level for I(action=debug_level), for example C(DEBUG_3).
    type: str
  debug_port:
    description: Local port of the trace endpoint inside the container.
    type: int
    default: 9090
  timeout:
    description: Seconds to wait for a remote command before aborting the exec stream. Must be positive.
    type: int
    default: 60
  redis:
    description: Overrides for the RedisCluster custom resource location.
    type: dict
  alertmanager:
    description: Overrides for the Alertmanager pod and URL.
    type: dict
  service:
    description: Service to inspect for I(action=service_ip).
    type: dict
requirements:
  - kubernetes (Python package)
  - pydantic >= 2
author:
  - cluster-diag contributors
"""

EXAMPLES = r"""
- name: Run all health checks against current context
  cluster_diag:
  register: health

- name: Do not count finished batch pods as failures
  cluster_diag:
    exclude_phases: [Succeeded]
  register: health

- name: Resource usage against requests
  cluster_diag:
    action: resources
  register: usage

- name: Redis cluster status in a staging context
  cluster_diag:
    context: staging
    action: redis_status
    redis:
      namespace: staging-redis
  register: redis

- name: Run a command in a container
  cluster_diag:
    action: exec
    namespace: default
    pod: web-0
    container: app
    command: df -h /data
    timeout: 30
  register: out

- name: Fail playbook if nodes are not ready
  cluster_diag:
    checks: [nodes]
  register: health
  failed_when: not health.verdicts.nodes.passed
"""

RETURN = r"""
verdicts:
  description: Health check verdicts keyed by check name.
  type: dict
  returned: when action is health
  sample:
    nodes: {passed: true, detail: "All nodes are ready", error: null}
    pods: {passed: false, detail: "2 pods are in not running state", error: null}
passed:
  description: True when every selected check passed.
  type: bool
  returned: when action is health
report_text:
  description: Human-readable text report.
  type: str
  returned: when action is health
usage:
  description: Per-pod, per-container usage as a percentage of requests.
  type: dict
  returned: when action is resources
redis_status:
  description: Derived Redis cluster status with pod placement details.
  type: dict
  returned: when action is redis_status
redis_outputs:
  description: redis-cli output per Redis pod.
  type: list
  returned: when action is redis_dbsize or redis_flush, and on a failed flush for the pods already flushed
alerts:
  description: Firing and silenced alerts.
  type: list
  returned: when action is alerts
  sample:
    - {name: "KubePodCrashLooping", severity: "critical", starts_at: "2024-05-01T10:00:00Z", pod_name: "web-0", summary: "Pod is crash looping."}
stdout:
  description: Captured standard output of the remote command.
  type: str
  returned: when action is exec or debug_level
stderr:
  description: Captured standard error of the remote command.
  type: str
  returned: when action is exec or debug_level
rc:
  description: Exit status of the remote command, null when the stream did not report one.
  type: int
  returned: when action is exec or debug_level
ingress_ip:
  description: First load-balancer ingress IP of the service, null when none is assigned.
  type: str
  returned: when action is service_ip
inventory:
  description: Server version, node counts, node and namespace names.
  type: dict
  returned: when action is inventory
"""

import json
import logging
import time
from collections import Counter
from dataclasses import dataclass, field
from datetime import datetime
from decimal import Decimal
from typing import Any, Iterable, Optional

from pydantic import (
    BaseModel,
    ConfigDict,
    Field,
    StrictInt,
    StrictStr,
    TypeAdapter,
    ValidationError,
    field_validator,
)

logger = logging.getLogger("cluster_diag")

DEFAULT_EXEC_TIMEOUT = 60
EXEC_POLL_INTERVAL = 1.0
CONTROL_PLANE_LABEL = "node-role.kubernetes.io/control-plane"


# =====================================================================
# Models
# =====================================================================

@dataclass(frozen=True)
class Verdict:
    passed: bool
    detail: str = ""
    error: str | None = None

    def to_dict(self) -> dict[str, Any]:
        return {"passed": self.passed, "detail": self.detail, "error": self.error}


@dataclass(frozen=True)
class Alert:
    name: str
    severity: str
    starts_at: str
    pod_name: str
    summary: str

    def to_dict(self) -> dict[str, Any]:
        return {
            "name": self.name,
            "severity": self.severity,
            "starts_at": self.starts_at,
            "pod_name": self.pod_name,
            "summary": self.summary,
        }


@dataclass
class ContainerUsage:
    name: str
    cpu_usage_percent: float
    memory_usage_percent: float


@dataclass
class PodUsage:
    pod_name: str
    namespace: str
    container_usages: list[ContainerUsage] = field(default_factory=list)

    def to_dict(self) -> dict[str, Any]:
        return {
            "pod_name": self.pod_name,
            "namespace": self.namespace,
            "container_usages": [
                {
                    "name": c.name,
                    "cpu_usage_percent": round(c.cpu_usage_percent, 2),
                    "memory_usage_percent": round(c.memory_usage_percent, 2),
                }
                for c in self.container_usages
            ],
        }


@dataclass
class ResourceUsageReport:
    pods_usage: list[PodUsage] = field(default_factory=list)

    def to_dict(self) -> dict[str, Any]:
        return {"pods_usage": [p.to_dict() for p in self.pods_usage]}


@dataclass(frozen=True)
class ExecResult:
    stdout: str
    stderr: str
    returncode: int | None = None


@dataclass
class RedisCommandOutput:
    pod_name: str
    stdout: str = ""
    stderr: str = ""
    error: str | None = None

    def to_dict(self) -> dict[str, Any]:
        return {"pod_name": self.pod_name, "stdout": self.stdout, "stderr": self.stderr, "error": self.error}


@dataclass
class ClusterInventory:
    version: str = ""
    control_plane_nodes: int = 0
    worker_nodes: int = 0
    node_names: list[str] = field(default_factory=list)
    namespaces: list[str] = field(default_factory=list)

    def to_dict(self) -> dict[str, Any]:
        return {
            "version": self.version,
            "control_plane_nodes": self.control_plane_nodes,
            "worker_nodes": self.worker_nodes,
            "node_names": self.node_names,
            "namespaces": self.namespaces,
        }


# RedisCluster custom resource status, as written by the operator. Scalars
# are strict: a count that arrives as "6", true or 6.0 is a decode error.

class RedisNode(BaseModel):
    model_config = ConfigDict(populate_by_name=True)

    id: StrictStr
    ip: StrictStr = ""
    pod_name: StrictStr = Field(alias="podName")
    port: StrictStr = ""
    role: StrictStr
    slots: Optional[list[StrictStr]] = None
    primary_ref: Optional[StrictStr] = Field(default=None, alias="primaryRef")
    zone: StrictStr = ""

    @property
    def is_primary(self) -> bool:
        return self.role.lower() == "primary"

    def to_dict(self) -> dict[str, Any]:
        data = self.model_dump(by_alias=True, exclude_none=True)
        if not self.slots:
            data.pop("slots", None)
        return data


class ClusterCondition(BaseModel):
    model_config = ConfigDict(populate_by_name=True)

    type: StrictStr
    status: StrictStr
    reason: StrictStr = ""
    message: StrictStr = ""
    last_probe_time: Optional[datetime] = Field(default=None, alias="lastProbeTime")
    last_transition_time: Optional[datetime] = Field(default=None, alias="lastTransitionTime")

    def to_dict(self) -> dict[str, Any]:
        return self.model_dump(by_alias=True, mode="json")


class RedisClusterInfo(BaseModel):
    model_config = ConfigDict(populate_by_name=True)

    label_selector_path: StrictStr = Field(default="", alias="labelSelectorPath")
    max_replication_factor: StrictInt = Field(default=0, alias="maxReplicationFactor")
    min_replication_factor: StrictInt = Field(default=0, alias="minReplicationFactor")
    nodes: list[RedisNode] = Field(default_factory=list)
    number_of_pods: StrictInt = Field(default=0, alias="numberOfPods")
    number_of_pods_ready: StrictInt = Field(default=0, alias="numberOfPodsReady")
    number_of_primaries: StrictInt = Field(default=0, alias="numberOfPrimaries")
    number_of_primaries_ready: StrictInt = Field(default=0, alias="numberOfPrimariesReady")
    number_of_redis_nodes_running: StrictInt = Field(default=0, alias="numberOfRedisNodesRunning")
    number_of_replicas_per_primary: dict[str, StrictInt] = Field(
        default_factory=dict, alias="numberOfReplicasPerPrimary",
    )
    status: StrictStr


class ClusterReport(BaseModel):
    model_config = ConfigDict(populate_by_name=True)

    cluster: RedisClusterInfo
    conditions: list[ClusterCondition] = Field(default_factory=list)
    start_time: Optional[datetime] = Field(default=None, alias="startTime")


@dataclass(frozen=True)
class PodPlacement:
    worker: str = ""
    cpu: str = ""
    memory: str = ""


@dataclass
class RedisStatus:
    primaries_configured: int = 0
    replicas_configured: int = 0
    pod_status_ok: bool = False
    cluster_state_ok: bool = False
    active_zones: int = 0
    known_nodes: int = 0
    cluster_size: int = 0
    zones_with_primaries: int = 0
    primaries_per_zone: dict[str, int] = field(default_factory=dict)
    # Copied from the report as-is.
    state: str = ""
    label_selector_path: str = ""
    min_replication_factor: int = 0
    pods_ready: int = 0
    primaries_ready: int = 0
    redis_nodes_running: int = 0
    replicas_per_primary: dict[str, int] = field(default_factory=dict)
    conditions: list[ClusterCondition] = field(default_factory=list)
    start_time: datetime | None = None
    nodes: list[RedisNode] = field(default_factory=list)
    pod_details: dict[str, PodPlacement] = field(default_factory=dict)
    lookup_errors: dict[str, str] = field(default_factory=dict)

    def to_dict(self) -> dict[str, Any]:
        return {
            "primaries_configured": self.primaries_configured,
            "replicas_configured": self.replicas_configured,
            "pod_status_ok": self.pod_status_ok,
            "cluster_state_ok": self.cluster_state_ok,
            "active_zones": self.active_zones,
            "known_nodes": self.known_nodes,
            "cluster_size": self.cluster_size,
            "zones_with_primaries": self.zones_with_primaries,
            "primaries_per_zone": self.primaries_per_zone,
            "state": self.state,
            "label_selector_path": self.label_selector_path,
            "min_replication_factor": self.min_replication_factor,
            "pods_ready": self.pods_ready,
            "primaries_ready": self.primaries_ready,
            "redis_nodes_running": self.redis_nodes_running,
            "replicas_per_primary": self.replicas_per_primary,
            "conditions": [c.to_dict() for c in self.conditions],
            "start_time": self.start_time.isoformat() if self.start_time else None,
            "nodes": [n.to_dict() for n in self.nodes],
            "pod_details": {
                name: {"worker": p.worker, "cpu": p.cpu, "memory": p.memory}
                for name, p in self.pod_details.items()
            },
            "lookup_errors": self.lookup_errors,
        }


# =====================================================================
# Errors
# =====================================================================

class ClusterDiagError(Exception):
    """Base class for errors raised by this module."""


class ClusterApiError(ClusterDiagError):
    """A get against the API server failed."""


class ExecError(ClusterDiagError):
    """The exec channel could not be opened or broke mid-stream."""


class ExecTimeoutError(ExecError):
    """The remote command did not finish before its deadline."""


class RedisFlushError(ExecError):
    """``flushall`` failed on one pod after running on the ones before it.

    ``outputs`` holds the results from the pods that were already flushed.
    """

    def __init__(self, message: str, outputs: list | None = None) -> None:
        super().__init__(message)
        self.outputs = list(outputs or [])


class StatusDecodeError(ClusterDiagError):
    """A custom resource status does not match the expected schema."""


class AlertDecodeError(ClusterDiagError):
    """Alertmanager output is not a JSON array of alerts."""

    def __init__(self, message: str, stderr: str = "") -> None:
        super().__init__(message)
        self.stderr = stderr


# =====================================================================
# Targets
# =====================================================================

@dataclass(frozen=True)
class RedisClusterTarget:
    namespace: str = "fed-redis-cluster"
    name: str = "node-for-redis"
    group: str = "db.ibm.com"
    version: str = "v1alpha1"
    plural: str = "redisclusters"
    container: str = "redis-node"
    service: str = "redis-cluster"
    port: int = 6379

    @property
    def service_address(self) -> str:
        return f"{self.service}.{self.namespace}.svc.cluster.local:{self.port}"


@dataclass(frozen=True)
class AlertmanagerTarget:
    namespace: str = "fed-prometheus"
    pod: str = "alertmanager-prometheus-alerts-0"
    container: str = "alertmanager"
    url: str = "http://localhost:9093"

    @property
    def command(self) -> str:
        return f"amtool -o json alert query -a --alertmanager.url {self.url}"


@dataclass(frozen=True)
class DebugEndpoint:
    port: int = 9090
    path: str = "/tenv/eTrace/enable"


@dataclass(frozen=True)
class ServiceRef:
    namespace: str = "fed-paas-helpers"
    name: str = "kargo"


def _target_from_params(cls, overrides: dict[str, Any] | None):
    """Build a target dataclass, ignoring unset (None) override keys."""
    if not overrides:
        return cls()
    return cls(**{k: v for k, v in overrides.items() if v is not None})


# =====================================================================
# Helpers
# =====================================================================

def _quantity(val: Any) -> Decimal:
    if val is None or val == "":
        return Decimal(0)
    from kubernetes.utils import parse_quantity
    try:
        return parse_quantity(val)
    except ValueError as exc:
        logger.debug("Unparseable quantity %r: %s", val, exc)
        return Decimal(0)


def _pod_key(namespace: str, name: str) -> str:
    return f"{namespace}/{name}"


def _safe_list(func: Any, *args: Any, **kwargs: Any) -> list[Any]:
    try:
        result = func(*args, **kwargs)
        return result.items if hasattr(result, "items") else []
    except Exception as exc:
        logger.debug("API call %s failed: %s", getattr(func, "__name__", "?"), exc)
        return []


def _api_errors() -> tuple[type[BaseException], ...]:
    from kubernetes.client.rest import ApiException
    from urllib3.exceptions import HTTPError
    return (ApiException, HTTPError)


# =====================================================================
# Remote Command Execution
# =====================================================================

def execute_remote_command(
    api_client,
    namespace: str,
    pod: str,
    container: str,
    command: str,
    timeout: float = DEFAULT_EXEC_TIMEOUT,
) -> ExecResult:
    """Run ``/bin/sh -c <command>`` in a container and capture its output.

    No TTY is requested, so stderr stays separate from stdout and the exit
    status is read from the stream's status channel. The call blocks until
    the remote side closes the stream or ``timeout`` seconds pass, in which
    case the stream is closed and ExecTimeoutError is raised.
    """
    from kubernetes.client import CoreV1Api
    from kubernetes.stream import stream
    from websocket import WebSocketException

    target = f"{namespace}/{pod} [{container}]"
    core = CoreV1Api(api_client)
    try:
        resp = stream(
            core.connect_get_namespaced_pod_exec, pod, namespace,
            container=container,
            command=["/bin/sh", "-c", command],
            stdin=False, stdout=True, stderr=True, tty=False,
            _preload_content=False,
            _request_timeout=timeout,
        )
    except (*_api_errors(), WebSocketException, OSError) as exc:
        raise ExecError(f"Could not open exec stream to {target}: {exc}") from exc

    deadline = time.monotonic() + timeout
    stdout: list[str] = []
    stderr: list[str] = []
    try:
        while resp.is_open():
            remaining = deadline - time.monotonic()
            if remaining <= 0:
                raise ExecTimeoutError(f"Command in {target} did not finish within {timeout}s")
            resp.update(timeout=min(remaining, EXEC_POLL_INTERVAL))
            if resp.peek_stdout():
                stdout.append(resp.read_stdout())
            if resp.peek_stderr():
                stderr.append(resp.read_stderr())
        # Whatever arrived with the final frame.
        stdout.append(resp.read_stdout())
        stderr.append(resp.read_stderr())
        returncode = _exit_status(resp)
    except (WebSocketException, OSError) as exc:
        raise ExecError(f"Exec stream to {target} broke: {exc}") from exc
    finally:
        resp.close()

    return ExecResult(stdout="".join(stdout), stderr="".join(stderr), returncode=returncode)


def _exit_status(resp) -> int | None:
    from kubernetes.stream.ws_client import ERROR_CHANNEL

    raw = resp.read_channel(ERROR_CHANNEL)
    if not raw:
        return None
    try:
        status = json.loads(raw)
    except json.JSONDecodeError:
        logger.debug("Unreadable exec status frame: %r", raw)
        return None
    if status.get("status") == "Success":
        return 0
    for cause in (status.get("details") or {}).get("causes") or []:
        if cause.get("reason") == "ExitCode":
            try:
                return int(cause.get("message", ""))
            except ValueError:
                break
    return None


# =====================================================================
# Health Checks
# =====================================================================

def classify_node_readiness(nodes: Iterable[Any]) -> Verdict:
    for node in nodes:
        conditions = (node.status.conditions if node.status else None) or []
        for cond in conditions:
            if cond.type == "Ready" and cond.status != "True":
                return Verdict(passed=False, detail=f"Node {node.metadata.name} is not ready")
    return Verdict(passed=True, detail="All nodes are ready")


def classify_pod_phases(pods: Iterable[Any], exclude_phases: Iterable[str] = ()) -> Verdict:
    excluded = set(exclude_phases)
    not_running = 0
    for pod in pods:
        phase = pod.status.phase if pod.status else None
        if phase == "Running" or phase in excluded:
            continue
        not_running += 1
    if not_running:
        return Verdict(passed=False, detail=f"{not_running} pods are in not running state")
    return Verdict(passed=True, detail="All pods are running")


def classify_event_severity(events: Iterable[Any]) -> Verdict:
    counts = Counter(event.type for event in events)
    warnings, errors = counts["Warning"], counts["Error"]
    if warnings or errors:
        return Verdict(passed=False, detail=f"{warnings} warning events and {errors} error events found")
    return Verdict(passed=True, detail="No failed events found")


def _run_check(list_fn, classify, **classify_kwargs) -> Verdict:
    try:
        items = list_fn().items
    except Exception as exc:
        logger.debug("Health check listing %s failed: %s", getattr(list_fn, "__name__", "?"), exc)
        return Verdict(passed=False, detail="", error=str(exc))
    return classify(items, **classify_kwargs)


def check_node_readiness(core) -> Verdict:
    return _run_check(core.list_node, classify_node_readiness)


def check_pod_phases(core, exclude_phases: Iterable[str] = ()) -> Verdict:
    return _run_check(core.list_pod_for_all_namespaces, classify_pod_phases, exclude_phases=exclude_phases)


def check_event_severity(core) -> Verdict:
    return _run_check(core.list_event_for_all_namespaces, classify_event_severity)


HEALTH_CHECKS = ("nodes", "pods", "events")


def run_health_checks(
    api_client,
    checks: Iterable[str] = HEALTH_CHECKS,
    exclude_phases: Iterable[str] = (),
) -> dict[str, Verdict]:
    from kubernetes.client import CoreV1Api

    core = CoreV1Api(api_client)
    runners = {
        "nodes": lambda: check_node_readiness(core),
        "pods": lambda: check_pod_phases(core, exclude_phases),
        "events": lambda: check_event_severity(core),
    }
    enabled = set(checks)
    return {name: run() for name, run in runners.items() if name in enabled}


# =====================================================================
# Resource Usage
# =====================================================================

def get_cpu_usage_percentage(usage: Any, request: Any) -> float:
    requested = _quantity(request)
    if requested == 0:
        return 0.0
    return float(_quantity(usage) / requested * 100)


def get_memory_usage_percentage(usage: Any, request: Any) -> float:
    requested = _quantity(request)
    if requested == 0:
        return 0.0
    return float(_quantity(usage) / requested * 100)


def build_resource_usage_report(pods: Iterable[Any], pod_metrics: Iterable[dict]) -> ResourceUsageReport:
    """Join pods with metrics.k8s.io PodMetrics on namespace/name."""
    metrics_map: dict[str, dict] = {}
    for pm in pod_metrics:
        meta = pm.get("metadata", {})
        if meta.get("name"):
            metrics_map[_pod_key(meta.get("namespace", ""), meta["name"])] = pm

    report = ResourceUsageReport()
    for pod in pods:
        meta = pod.metadata
        usage = PodUsage(pod_name=meta.name, namespace=meta.namespace)
        report.pods_usage.append(usage)

        pm = metrics_map.get(_pod_key(meta.namespace, meta.name))
        if pm is None:
            logger.info("No metrics available for pod: %s/%s", meta.namespace, meta.name)
            continue

        container_metrics = pm.get("containers", [])
        for container in pod.spec.containers or []:
            for cm in container_metrics:
                if cm.get("name") != container.name:
                    continue
                requests = (container.resources.requests if container.resources else None) or {}
                used = cm.get("usage", {})
                usage.container_usages.append(ContainerUsage(
                    name=container.name,
                    cpu_usage_percent=get_cpu_usage_percentage(used.get("cpu"), requests.get("cpu")),
                    memory_usage_percent=get_memory_usage_percentage(used.get("memory"), requests.get("memory")),
                ))
    return report


def get_resource_usage_report(api_client) -> ResourceUsageReport:
    from kubernetes.client import CoreV1Api, CustomObjectsApi

    pods = _safe_list(CoreV1Api(api_client).list_pod_for_all_namespaces)
    try:
        pm = CustomObjectsApi(api_client).list_cluster_custom_object("metrics.k8s.io", "v1beta1", "pods")
        pod_metrics = pm.get("items", [])
    except Exception as exc:
        logger.info("Pod metrics unavailable: %s", exc)
        pod_metrics = []
    return build_resource_usage_report(pods, pod_metrics)


# =====================================================================
# Redis Cluster Status
# =====================================================================

def decode_cluster_report(custom_resource: dict[str, Any]) -> ClusterReport:
    status = custom_resource.get("status") if isinstance(custom_resource, dict) else None
    if status is None:
        raise StatusDecodeError("Custom resource has no status field")
    if not isinstance(status, dict):
        raise StatusDecodeError(f"Custom resource status is a {type(status).__name__}, expected a mapping")
    try:
        return ClusterReport.model_validate(status)
    except ValidationError as exc:
        raise StatusDecodeError(f"Custom resource status does not match the RedisCluster schema: {exc}") from exc


def _first_container_requests(pod) -> tuple[str, str]:
    containers = pod.spec.containers or []
    if not containers or not containers[0].resources:
        return "0", "0"
    requests = containers[0].resources.requests or {}
    return str(requests.get("cpu") or "0"), str(requests.get("memory") or "0")


def resolve_pod_placements(
    core,
    namespace: str,
    nodes: Iterable[RedisNode],
) -> tuple[dict[str, PodPlacement], dict[str, str]]:
    """Look up each Redis node's pod for its worker and resource requests.

    Returns ``(pod_details, lookup_errors)``. A failed lookup leaves a zero
    PodPlacement in ``pod_details`` and its message in ``lookup_errors``;
    the other nodes are still resolved.
    """
    pod_details: dict[str, PodPlacement] = {}
    lookup_errors: dict[str, str] = {}
    for node in nodes:
        try:
            pod = core.read_namespaced_pod(node.pod_name, namespace)
        except _api_errors() as exc:
            logger.warning("Could not read Redis pod %s/%s: %s", namespace, node.pod_name, exc)
            pod_details[node.pod_name] = PodPlacement()
            lookup_errors[node.pod_name] = str(exc)
            continue
        cpu, memory = _first_container_requests(pod)
        pod_details[node.pod_name] = PodPlacement(worker=pod.spec.node_name or "", cpu=cpu, memory=memory)
    return pod_details, lookup_errors


def build_redis_status(
    report: ClusterReport,
    pod_details: dict[str, PodPlacement] | None = None,
    lookup_errors: dict[str, str] | None = None,
) -> RedisStatus:
    cluster = report.cluster
    primaries_per_zone = dict(Counter(n.zone for n in cluster.nodes if n.is_primary))
    return RedisStatus(
        primaries_configured=cluster.number_of_primaries,
        replicas_configured=cluster.max_replication_factor,
        pod_status_ok=cluster.number_of_pods == cluster.number_of_pods_ready,
        cluster_state_ok=cluster.status == "OK",
        active_zones=len({n.zone for n in cluster.nodes}),
        known_nodes=len(cluster.nodes),
        cluster_size=cluster.number_of_pods,
        zones_with_primaries=len(primaries_per_zone),
        primaries_per_zone=primaries_per_zone,
        state=cluster.status,
        label_selector_path=cluster.label_selector_path,
        min_replication_factor=cluster.min_replication_factor,
        pods_ready=cluster.number_of_pods_ready,
        primaries_ready=cluster.number_of_primaries_ready,
        redis_nodes_running=cluster.number_of_redis_nodes_running,
        replicas_per_primary=dict(cluster.number_of_replicas_per_primary),
        conditions=list(report.conditions),
        start_time=report.start_time,
        nodes=list(cluster.nodes),
        pod_details=dict(pod_details or {}),
        lookup_errors=dict(lookup_errors or {}),
    )


def get_redis_status(api_client, target: RedisClusterTarget = RedisClusterTarget()) -> RedisStatus:
    from kubernetes.client import CoreV1Api, CustomObjectsApi

    custom = CustomObjectsApi(api_client)
    try:
        obj = custom.get_namespaced_custom_object(
            target.group, target.version, target.namespace, target.plural, target.name,
        )
    except _api_errors() as exc:
        raise ClusterApiError(
            f"Could not read {target.plural}.{target.group}/{target.name} in {target.namespace}: {exc}"
        ) from exc

    report = decode_cluster_report(obj)
    pod_details, lookup_errors = resolve_pod_placements(CoreV1Api(api_client), target.namespace, report.cluster.nodes)
    return build_redis_status(report, pod_details, lookup_errors)


# =====================================================================
# Redis Remote Commands
# =====================================================================

def _redis_cluster_call(target: RedisClusterTarget, subcommand: str) -> str:
    return f"redis-cli --cluster call --cluster-only-masters {target.service_address} {subcommand}"


def get_redis_db_size(
    api_client,
    target: RedisClusterTarget = RedisClusterTarget(),
    timeout: float = DEFAULT_EXEC_TIMEOUT,
) -> list[RedisCommandOutput]:
    """Run ``dbsize`` against the cluster from every Redis pod."""
    from kubernetes.client import CoreV1Api

    pods = _safe_list(CoreV1Api(api_client).list_namespaced_pod, target.namespace)
    command = _redis_cluster_call(target, "dbsize")
    outputs = []
    for pod in pods:
        name = pod.metadata.name
        try:
            res = execute_remote_command(api_client, target.namespace, name, target.container, command, timeout)
        except ExecError as exc:
            logger.warning("dbsize on %s/%s failed: %s", target.namespace, name, exc)
            outputs.append(RedisCommandOutput(pod_name=name, error=str(exc)))
            continue
        outputs.append(RedisCommandOutput(pod_name=name, stdout=res.stdout, stderr=res.stderr))
    return outputs


def flush_redis_data(
    api_client,
    target: RedisClusterTarget = RedisClusterTarget(),
    timeout: float = DEFAULT_EXEC_TIMEOUT,
) -> list[RedisCommandOutput]:
    """Run ``flushall`` on the cluster's primaries.

    Stops at the first exec failure and raises :class:`RedisFlushError`
    carrying the outputs of the pods that already ran.
    """
    from kubernetes.client import CoreV1Api

    pods = _safe_list(CoreV1Api(api_client).list_namespaced_pod, target.namespace)
    command = _redis_cluster_call(target, "flushall")
    outputs = []
    for pod in pods:
        name = pod.metadata.name
        try:
            res = execute_remote_command(api_client, target.namespace, name, target.container, command, timeout)
        except ExecError as exc:
            raise RedisFlushError(
                f"flushall failed on {name} after {len(outputs)} pod(s): {exc}", outputs,
            ) from exc
        outputs.append(RedisCommandOutput(pod_name=name, stdout=res.stdout, stderr=res.stderr))
    return outputs


# =====================================================================
# Alertmanager
# =====================================================================

class AlertRecord(BaseModel):
    """One element of ``amtool -o json alert query`` output. Other keys are ignored."""

    model_config = ConfigDict(populate_by_name=True)

    labels: dict[str, str] = Field(default_factory=dict)
    annotations: dict[str, str] = Field(default_factory=dict)
    starts_at: str = Field(default="", alias="startsAt")

    @field_validator("labels", "annotations", "starts_at", mode="before")
    @classmethod
    def _null_is_empty(cls, value, info):
        if value is None:
            return "" if info.field_name == "starts_at" else {}
        return value

    def to_alert(self) -> Alert:
        return Alert(
            name=self.labels.get("alertname", ""),
            severity=self.labels.get("severity", ""),
            starts_at=self.starts_at,
            pod_name=self.labels.get("pod", ""),
            summary=self.annotations.get("summary", ""),
        )


_ALERT_RECORDS = TypeAdapter(list[AlertRecord])


def parse_alerts(text: str, stderr: str = "") -> list[Alert]:
    try:
        records = json.loads(text)
    except json.JSONDecodeError as exc:
        raise AlertDecodeError(f"amtool output is not valid JSON: {exc}", stderr=stderr) from exc

    try:
        parsed = _ALERT_RECORDS.validate_python(records)
    except ValidationError as exc:
        raise AlertDecodeError(f"amtool output does not match the alert schema: {exc}", stderr=stderr) from exc
    return [record.to_alert() for record in parsed]


def get_alerts(
    api_client,
    target: AlertmanagerTarget = AlertmanagerTarget(),
    timeout: float = DEFAULT_EXEC_TIMEOUT,
) -> list[Alert]:
    res = execute_remote_command(api_client, target.namespace, target.pod, target.container, target.command, timeout)
    return parse_alerts(res.stdout, stderr=res.stderr)


# =====================================================================
# Debug Level / Service / Inventory
# =====================================================================

def set_debug_level(
    api_client,
    namespace: str,
    pod: str,
    container: str,
    level: str,
    endpoint: DebugEndpoint = DebugEndpoint(),
    timeout: float = DEFAULT_EXEC_TIMEOUT,
) -> ExecResult:
    # & is escaped for the remote shell.
    command = f"curl http://127.0.0.1:{endpoint.port}{endpoint.path}?filter=all\\&level={level}"
    logger.debug("Setting trace level in %s/%s: %s", namespace, pod, command)
    return execute_remote_command(api_client, namespace, pod, container, command, timeout)


def get_service_ingress_ip(api_client, service: ServiceRef = ServiceRef()) -> str | None:
    from kubernetes.client import CoreV1Api

    try:
        svc = CoreV1Api(api_client).read_namespaced_service(service.name, service.namespace)
    except _api_errors() as exc:
        raise ClusterApiError(f"Could not read service {service.namespace}/{service.name}: {exc}") from exc

    lb = svc.status.load_balancer if svc.status else None
    ingress = (lb.ingress if lb else None) or []
    if not ingress:
        return None
    return ingress[0].ip


def list_pod_names(core, namespace: str) -> list[str]:
    return [pod.metadata.name for pod in _safe_list(core.list_namespaced_pod, namespace)]


def list_container_names(core, pod_name: str) -> list[str]:
    pods = _safe_list(core.list_pod_for_all_namespaces, field_selector=f"metadata.name={pod_name}")
    if not pods:
        return []
    return [c.name for c in pods[0].spec.containers or []]


def get_cluster_inventory(api_client) -> ClusterInventory:
    from kubernetes.client import CoreV1Api, VersionApi

    core = CoreV1Api(api_client)
    inventory = ClusterInventory()
    try:
        inventory.version = VersionApi(api_client).get_code().git_version
    except Exception as exc:
        logger.debug("Server version unavailable: %s", exc)

    for node in _safe_list(core.list_node):
        inventory.node_names.append(node.metadata.name)
        if CONTROL_PLANE_LABEL in (node.metadata.labels or {}):
            inventory.control_plane_nodes += 1
        else:
            inventory.worker_nodes += 1
    inventory.namespaces = [ns.metadata.name for ns in _safe_list(core.list_namespace)]
    return inventory


# =====================================================================
# Report Text Generator
# =====================================================================

def generate_report_text(cluster_name: str, context_name: str, verdicts: dict[str, Verdict]) -> str:
    lines = [
        f"# Kubernetes Cluster Health: {cluster_name}",
        f"Context: {context_name}",
        "",
    ]
    failed = [name for name, v in verdicts.items() if not v.passed]
    lines.append(f"## Summary: {len(verdicts) - len(failed)}/{len(verdicts)} checks passed")
    for name, verdict in verdicts.items():
        state = "PASS" if verdict.passed else "FAIL"
        text = verdict.detail or ""
        if verdict.error:
            text = f"error: {verdict.error}"
        lines.append(f"- [{state}] {name}: {text}")
    return "\n".join(lines)


# =====================================================================
# Ansible Module Entry Point
# =====================================================================

def run_action(
    api_client,
    params: dict[str, Any],
    check_mode: bool = False,
    cluster_name: str = "unknown",
    context_name: str = "unknown",
) -> dict[str, Any]:
    """Run the requested action and return the module result fields."""
    action = params.get("action") or "health"
    timeout = params.get("timeout")
    if timeout is None:
        timeout = DEFAULT_EXEC_TIMEOUT
    elif timeout <= 0:
        raise ClusterDiagError(f"timeout must be a positive number of seconds, got {timeout}")
    redis_target = _target_from_params(RedisClusterTarget, params.get("redis"))

    if action == "health":
        verdicts = run_health_checks(
            api_client,
            checks=params.get("checks") or HEALTH_CHECKS,
            exclude_phases=params.get("exclude_phases") or (),
        )
        return {
            "changed": False,
            "passed": all(v.passed for v in verdicts.values()),
            "verdicts": {name: v.to_dict() for name, v in verdicts.items()},
            "report_text": generate_report_text(cluster_name, context_name, verdicts),
        }

    if action == "resources":
        return {"changed": False, "usage": get_resource_usage_report(api_client).to_dict()}

    if action == "redis_status":
        return {"changed": False, "redis_status": get_redis_status(api_client, redis_target).to_dict()}

    if action == "redis_dbsize":
        outputs = get_redis_db_size(api_client, redis_target, timeout)
        return {"changed": False, "redis_outputs": [o.to_dict() for o in outputs]}

    if action == "redis_flush":
        if check_mode:
            return {"changed": True, "redis_outputs": []}
        outputs = flush_redis_data(api_client, redis_target, timeout)
        return {"changed": True, "redis_outputs": [o.to_dict() for o in outputs]}

    if action == "alerts":
        target = _target_from_params(AlertmanagerTarget, params.get("alertmanager"))
        return {"changed": False, "alerts": [a.to_dict() for a in get_alerts(api_client, target, timeout)]}

    if action == "exec":
        res = execute_remote_command(
            api_client, params["namespace"], params["pod"], params["container"], params["command"], timeout,
        )
        return {"changed": False, "stdout": res.stdout, "stderr": res.stderr, "rc": res.returncode}

    if action == "debug_level":
        if check_mode:
            return {"changed": True, "stdout": "", "stderr": "", "rc": None}
        endpoint = DebugEndpoint(port=params.get("debug_port") or DebugEndpoint.port)
        res = set_debug_level(
            api_client, params["namespace"], params["pod"], params["container"],
            params["debug_level"], endpoint, timeout,
        )
        return {"changed": True, "stdout": res.stdout, "stderr": res.stderr, "rc": res.returncode}

    if action == "service_ip":
        service = _target_from_params(ServiceRef, params.get("service"))
        return {"changed": False, "ingress_ip": get_service_ingress_ip(api_client, service)}

    if action == "inventory":
        from kubernetes.client import CoreV1Api

        inventory = get_cluster_inventory(api_client).to_dict()
        core = CoreV1Api(api_client)
        if params.get("namespace"):
            inventory["pods"] = list_pod_names(core, params["namespace"])
        if params.get("pod"):
            inventory["containers"] = list_container_names(core, params["pod"])
        return {"changed": False, "inventory": inventory}

    raise ClusterDiagError(f"Unknown action: {action}")


def run_module():
    from ansible.module_utils.basic import AnsibleModule

    module = AnsibleModule(
        argument_spec=dict(
            kubeconfig=dict(type="path", default="~/.kube/config"),
            context=dict(type="str", default=None),
            action=dict(
                type="str", default="health",
                choices=["health", "resources", "redis_status", "redis_dbsize", "redis_flush",
                         "alerts", "exec", "debug_level", "service_ip", "inventory"],
            ),
            checks=dict(type="list", elements="str", default=list(HEALTH_CHECKS), choices=list(HEALTH_CHECKS)),
            exclude_phases=dict(type="list", elements="str", default=[]),
            namespace=dict(type="str", default=None),
            pod=dict(type="str", default=None),
            container=dict(type="str", default=None),
            command=dict(type="str", default=None),
            debug_level=dict(type="str", default=None),
            debug_port=dict(type="int", default=DebugEndpoint.port),
            timeout=dict(type="int", default=DEFAULT_EXEC_TIMEOUT),
            redis=dict(type="dict", default=None, options=dict(
                namespace=dict(type="str"), name=dict(type="str"), group=dict(type="str"),
                version=dict(type="str"), plural=dict(type="str"), container=dict(type="str"),
                service=dict(type="str"), port=dict(type="int"),
            )),
            alertmanager=dict(type="dict", default=None, options=dict(
                namespace=dict(type="str"), pod=dict(type="str"),
                container=dict(type="str"), url=dict(type="str"),
            )),
            service=dict(type="dict", default=None, options=dict(
                namespace=dict(type="str"), name=dict(type="str"),
            )),
        ),
        required_if=[
            ("action", "exec", ("namespace", "pod", "container", "command")),
            ("action", "debug_level", ("namespace", "pod", "container", "debug_level")),
        ],
        supports_check_mode=True,
    )

    # Verify kubernetes package is available
    try:
        from kubernetes import client, config
        from kubernetes.config.config_exception import ConfigException
    except ImportError:
        module.fail_json(msg="The 'kubernetes' Python package is required. Install with: pip install kubernetes")
        return

    kubeconfig = module.params["kubeconfig"]
    context = module.params["context"]

    # Connect to cluster
    try:
        try:
            config.load_kube_config(config_file=kubeconfig, context=context)
        except ConfigException:
            config.load_incluster_config()
        api_client = client.ApiClient()
    except Exception as e:
        module.fail_json(msg=f"Failed to connect to Kubernetes cluster: {e}")
        return

    # Get cluster/context name
    try:
        _, active_ctx = config.list_kube_config_contexts(config_file=kubeconfig)
        cluster_name = active_ctx.get("context", {}).get("cluster", "unknown")
        context_name = context or active_ctx.get("name", "unknown")
    except Exception:
        cluster_name = "in-cluster"
        context_name = context or "in-cluster"

    try:
        result = run_action(
            api_client, module.params, check_mode=module.check_mode,
            cluster_name=cluster_name, context_name=context_name,
        )
    except AlertDecodeError as e:
        module.fail_json(msg=str(e), stderr=e.stderr)
        return
    except RedisFlushError as e:
        # The pods before the failing one were already flushed.
        module.fail_json(msg=str(e), changed=True, redis_outputs=[o.to_dict() for o in e.outputs])
        return
    except ClusterDiagError as e:
        module.fail_json(msg=str(e))
        return

    module.exit_json(**result)


def main():
    run_module()


if __name__ == "__main__":
    main()
