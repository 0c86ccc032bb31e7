"""Selector matching, port resolution and rule descriptions for policies."""

from __future__ import annotations

import re
from typing import Iterable, Mapping

from dnmap.k8s.policies import (
    IngressRule,
    IstioOperation,
    IstioRule,
    LabelSelector,
    LabelSelectorOperator,
    NetworkPolicyPeer,
    NetworkPolicyPort,
)
from dnmap.k8s.types import Port, Workload

_LEADING_INT = re.compile(r"\s*([+-]?\d+)")


def _expression_holds(labels: Mapping[str, str], key: str,
                      operator: LabelSelectorOperator, values: list[str]) -> bool:
    has_label = key in labels
    value = labels.get(key, "")
    if operator is LabelSelectorOperator.IN:
        return has_label and value in values
    if operator is LabelSelectorOperator.NOT_IN:
        return not has_label or value not in values
    if operator is LabelSelectorOperator.EXISTS:
        return has_label
    if operator is LabelSelectorOperator.DOES_NOT_EXIST:
        return not has_label
    return True


def matches_selector(labels: Mapping[str, str] | None, selector: LabelSelector) -> bool:
    """Tell whether labels satisfy a label selector; an empty selector matches all."""
    labels = labels or {}
    if not labels_match(labels, selector.match_labels):
        return False
    return all(
        _expression_holds(labels, expr.key, LabelSelectorOperator(expr.operator), expr.values)
        for expr in selector.match_expressions
    )


def labels_match(workload_labels: Mapping[str, str] | None,
                 required_labels: Mapping[str, str] | None) -> bool:
    """Tell whether the workload labels carry every required label value."""
    workload_labels = workload_labels or {}
    return all(workload_labels.get(key, "") == value
               for key, value in (required_labels or {}).items())


def port_matches(workload_port: Port, policy_port: NetworkPolicyPort) -> bool:
    """Tell whether a workload port is covered by a policy port clause."""
    if policy_port.protocol is not None and policy_port.protocol != workload_port.protocol:
        return False
    port = policy_port.port
    if port is None:
        return True
    if isinstance(port, int) and not isinstance(port, bool):
        return port == workload_port.container_port
    return port == workload_port.name


def allowed_ports(workload: Workload, policy_ports: Iterable[NetworkPolicyPort]) -> list[Port]:
    """Return the workload ports an ingress rule allows; no clauses allows all."""
    clauses = list(policy_ports)
    if not clauses:
        return list(workload.ports)
    return [p for p in workload.ports if any(port_matches(p, c) for c in clauses)]


def extract_namespace_from_principal(principal: str) -> str:
    """Return the namespace of a principal such as cluster.local/ns/<ns>/sa/<sa>."""
    parts = principal.split("/")
    for part, following in zip(parts, parts[1:]):
        if part == "ns":
            return following
    return ""


def _leading_int(text: str) -> int:
    match = _LEADING_INT.match(text)
    return int(match.group(1)) if match else 0


def istio_allowed_ports(operations: Iterable[IstioOperation | None]) -> list[int]:
    """Return the distinct positive ports named by Istio operations, in order."""
    ports: list[int] = []
    for operation in operations:
        if operation is None:
            continue
        for text in operation.ports:
            port = _leading_int(text)
            if port > 0 and port not in ports:
                ports.append(port)
    return ports


def _format_map(labels: Mapping[str, str]) -> str:
    return "map[" + " ".join(f"{k}:{v}" for k, v in sorted(labels.items())) + "]"


def _format_list(values: Iterable[str]) -> str:
    return "[" + " ".join(values) + "]"


def format_peer(peer: NetworkPolicyPeer) -> str:
    """Describe a NetworkPolicy peer in words."""
    parts: list[str] = []
    if peer.pod_selector is not None:
        if peer.pod_selector.is_empty():
            parts.append("pods: all")
        else:
            parts.append(f"pods: {_format_map(peer.pod_selector.match_labels)}")
    if peer.namespace_selector is not None:
        if peer.namespace_selector.is_empty():
            parts.append("namespaces: all")
        else:
            parts.append(f"namespaces: {_format_map(peer.namespace_selector.match_labels)}")
    elif peer.pod_selector is not None:
        parts.append("namespaces: same as policy")
    if peer.ip_block is not None:
        parts.append(f"cidr: {peer.ip_block.cidr}")
    return ", ".join(parts) if parts else "any"


def format_policy_port(port: NetworkPolicyPort) -> str:
    """Describe a NetworkPolicy port clause as PROTOCOL/port."""
    protocol = port.protocol if port.protocol is not None else "TCP"
    if port.port is None:
        return f"{protocol}/*"
    return f"{protocol}/{port.port}"


def format_k8s_rule(rule: IngressRule, idx: int) -> str:
    """Describe a NetworkPolicy ingress rule; idx counts from zero."""
    if rule.peers:
        source = "from: " + ", ".join(format_peer(p) for p in rule.peers)
    else:
        source = "from: all"
    if rule.ports:
        ports = "ports: " + ", ".join(format_policy_port(p) for p in rule.ports)
    else:
        ports = "ports: all"
    return f"NetworkPolicy Rule {idx + 1}: {source}; {ports}"


def format_istio_rule(rule: IstioRule, idx: int) -> str:
    """Describe an Istio AuthorizationPolicy rule; idx counts from zero."""
    parts: list[str] = []
    if not rule.sources:
        parts.append("from: all")
    else:
        sources: list[str] = []
        for source in rule.sources:
            if source is None:
                continue
            if source.principals:
                sources.append(f"principals: {_format_list(source.principals)}")
            if source.namespaces:
                sources.append(f"namespaces: {_format_list(source.namespaces)}")
        if sources:
            parts.append("from: " + ", ".join(sources))

    if not rule.operations:
        parts.append("to: all")
    else:
        ops: list[str] = []
        for op in rule.operations:
            if op is None:
                continue
            if op.ports:
                ops.append(f"ports: {_format_list(op.ports)}")
            if op.methods:
                ops.append(f"methods: {_format_list(op.methods)}")
            if op.paths:
                ops.append(f"paths: {_format_list(op.paths)}")
        if ops:
            parts.append("to: " + ", ".join(ops))

    return f"AuthzPolicy Rule {idx + 1}: " + "; ".join(parts)