"""Workload, port and policy records gathered from a cluster."""

from __future__ import annotations

from dataclasses import dataclass, field, replace
from enum import Enum
from typing import Any, Iterable, Mapping

from dnmap.k8s.policies import AuthorizationPolicy, NetworkPolicy


class WorkloadType(str, Enum):
    """Kind of Kubernetes workload."""

    DEPLOYMENT = "Deployment"
    STATEFUL_SET = "StatefulSet"
    DAEMON_SET = "DaemonSet"
    POD = "Pod"


@dataclass
class Port:
    """A container port exposed by a workload."""

    name: str = ""
    container_port: int = 0
    protocol: str = ""
    service_name: str = ""
    service_port: int = 0


@dataclass
class Workload:
    """A Deployment, StatefulSet, DaemonSet or standalone Pod."""

    name: str
    namespace: str
    type: WorkloadType
    labels: dict[str, str] = field(default_factory=dict)
    ports: list[Port] = field(default_factory=list)


class PolicyType(str, Enum):
    """Kind of network policy."""

    K8S_NETWORK_POLICY = "NetworkPolicy"
    ISTIO_AUTHORIZATION_POLICY = "AuthorizationPolicy"


@dataclass
class Policy:
    """A network policy of either kind."""

    name: str
    namespace: str
    type: PolicyType
    k8s_network_policy: NetworkPolicy | None = None
    istio_auth_policy: AuthorizationPolicy | None = None


@dataclass
class NamespaceInfo:
    """A namespace and its labels."""

    name: str
    labels: dict[str, str] = field(default_factory=dict)


def parse_namespaces(namespaces: str) -> list[str]:
    """Split a comma-separated namespace list, dropping blanks."""
    return [part.strip() for part in namespaces.split(",") if part.strip()]


def extract_ports(containers: Iterable[Mapping[str, Any]]) -> list[Port]:
    """Collect the ports of container specs, defaulting the protocol to TCP."""
    return [
        Port(
            name=p.get("name") or "",
            container_port=int(p.get("containerPort") or 0),
            protocol=p.get("protocol") or "TCP",
        )
        for container in containers
        for p in container.get("ports") or []
    ]


def workload_from_manifest(manifest: Mapping[str, Any], workload_type: WorkloadType | str) -> Workload:
    """Build a workload from a Deployment, StatefulSet or DaemonSet manifest."""
    metadata = manifest.get("metadata") or {}
    template = (manifest.get("spec") or {}).get("template") or {}
    labels = (template.get("metadata") or {}).get("labels") or {}
    containers = (template.get("spec") or {}).get("containers") or []
    return Workload(
        name=metadata.get("name") or "",
        namespace=metadata.get("namespace") or "",
        type=WorkloadType(workload_type),
        labels=dict(labels),
        ports=extract_ports(containers),
    )


def selector_labels_match(selector: Mapping[str, str], labels: Mapping[str, str]) -> bool:
    """Tell whether a service selector picks the labels; an empty selector picks nothing."""
    if not selector:
        return False
    return all(labels.get(key) == value for key, value in selector.items())


def _target_matches(target: Any, port: Port) -> bool:
    int_val = target if isinstance(target, int) and not isinstance(target, bool) else 0
    str_val = target if isinstance(target, str) else ""
    return int_val == port.container_port or (bool(str_val) and str_val == port.name)


def _with_service(port: Port, labels: Mapping[str, str], services: list[Mapping[str, Any]]) -> Port:
    for service in services:
        spec = service.get("spec") or {}
        if not selector_labels_match(spec.get("selector") or {}, labels):
            continue
        name = (service.get("metadata") or {}).get("name") or ""
        for service_port in spec.get("ports") or []:
            if _target_matches(service_port.get("targetPort"), port):
                port = replace(port, service_name=name,
                               service_port=int(service_port.get("port") or 0))
                break
        if port.service_name:
            break
    return port


def enrich_ports_with_services(workload: Workload, services: Iterable[Mapping[str, Any]]) -> Workload:
    """Return the workload with each port tagged by the first service exposing it."""
    service_list = list(services)
    ports = [_with_service(p, workload.labels, service_list) for p in workload.ports]
    return replace(workload, ports=ports)