"""Graph data model: nodes, edges and warnings describing allowed traffic."""

from __future__ import annotations

import json
from dataclasses import dataclass, field
from enum import Enum
from typing import Any

from dnmap.k8s.types import Port, Workload


class NodeType(str, Enum):
    """Kind of a graph node."""

    WORKLOAD = "workload"
    PORT = "port"


class WarningType(str, Enum):
    """Kind of a policy warning."""

    NO_PORTS = "no-ports"
    NO_SELECTOR = "no-selector"


@dataclass
class Node:
    """A workload or one of its ports."""

    id: str
    label: str
    type: NodeType
    namespace: str = ""
    kind: str = ""
    parent: str = ""
    port: int = 0
    protocol: str = ""
    service_name: str = ""
    service_port: int = 0
    warnings: list[WarningType] = field(default_factory=list)
    metadata: dict[str, str] = field(default_factory=dict)


@dataclass
class Edge:
    """An allowed connection from a workload to a port node."""

    id: str
    source: str
    target: str
    label: str
    rule: str
    policy: str
    policy_yaml: str = ""
    metadata: dict[str, str] = field(default_factory=dict)


@dataclass
class WarningDetail:
    """A warning raised by a policy rule against one workload."""

    workload_id: str
    workload_name: str
    namespace: str
    policy_name: str
    warning_type: WarningType


def _node_dict(node: Node) -> dict[str, Any]:
    data: dict[str, Any] = {
        "id": node.id,
        "label": node.label,
        "type": NodeType(node.type).value,
        "namespace": node.namespace,
        "kind": node.kind,
    }
    optional = {
        "parent": node.parent,
        "port": node.port,
        "protocol": node.protocol,
        "serviceName": node.service_name,
        "servicePort": node.service_port,
        "warnings": [WarningType(w).value for w in node.warnings],
        "metadata": dict(sorted(node.metadata.items())),
    }
    data.update((key, value) for key, value in optional.items() if value)
    return data


def _edge_dict(edge: Edge) -> dict[str, Any]:
    data: dict[str, Any] = {
        "id": edge.id,
        "source": edge.source,
        "target": edge.target,
        "label": edge.label,
        "rule": edge.rule,
        "policy": edge.policy,
    }
    if edge.policy_yaml:
        data["policyYaml"] = edge.policy_yaml
    if edge.metadata:
        data["metadata"] = dict(sorted(edge.metadata.items()))
    return data


def _warning_dict(detail: WarningDetail) -> dict[str, Any]:
    return {
        "workloadId": detail.workload_id,
        "workloadName": detail.workload_name,
        "namespace": detail.namespace,
        "policyName": detail.policy_name,
        "warningType": WarningType(detail.warning_type).value,
    }


_HTML_ESCAPES = {
    "<": "\\u003c",
    ">": "\\u003e",
    "&": "\\u0026",
    "\u2028": "\\u2028",
    "\u2029": "\\u2029",
}


@dataclass
class NetworkGraph:
    """The complete graph of workloads, ports and allowed connections."""

    nodes: list[Node] = field(default_factory=list)
    edges: list[Edge] = field(default_factory=list)
    warning_details: list[WarningDetail] = field(default_factory=list)

    def to_dict(self) -> dict[str, Any]:
        """Return the graph as plain data with the wire field names."""
        data: dict[str, Any] = {
            "nodes": [_node_dict(n) for n in self.nodes],
            "edges": [_edge_dict(e) for e in self.edges],
        }
        if self.warning_details:
            data["warningDetails"] = [_warning_dict(w) for w in self.warning_details]
        return data

    def to_json(self) -> str:
        """Return compact JSON that is safe to embed in an HTML page."""
        text = json.dumps(self.to_dict(), separators=(",", ":"), ensure_ascii=False)
        return "".join(_HTML_ESCAPES.get(ch, ch) for ch in text)


def workload_id(namespace: str, name: str) -> str:
    """Return the node ID of a workload."""
    return f"{namespace}/{name}"


def port_id(workload_id: str, port: int, protocol: str) -> str:
    """Return the node ID of a workload port."""
    return f"{workload_id}:{protocol}/{port}"


def new_workload_node(workload: Workload) -> Node:
    """Create the node that stands for a workload."""
    return Node(
        id=workload_id(workload.namespace, workload.name),
        label=workload.name,
        type=NodeType.WORKLOAD,
        namespace=workload.namespace,
        kind=workload.type.value,
        metadata=dict(workload.labels),
    )


def new_port_node(workload_id: str, port: Port) -> Node:
    """Create the node for one port of a workload."""
    protocol = port.protocol or "TCP"
    return Node(
        id=port_id(workload_id, port.container_port, protocol),
        label=port.name or str(port.container_port),
        type=NodeType.PORT,
        parent=workload_id,
        port=port.container_port,
        protocol=protocol,
        service_name=port.service_name,
        service_port=port.service_port,
    )