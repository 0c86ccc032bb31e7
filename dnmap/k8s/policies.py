"""Kubernetes NetworkPolicy and Istio AuthorizationPolicy models."""

from __future__ import annotations

import copy
from dataclasses import dataclass, field
from enum import Enum
from typing import Any, Mapping, Union

import yaml


class LabelSelectorOperator(str, Enum):
    """Operator of a label selector requirement."""

    IN = "In"
    NOT_IN = "NotIn"
    EXISTS = "Exists"
    DOES_NOT_EXIST = "DoesNotExist"


@dataclass
class LabelSelectorRequirement:
    """One match expression of a label selector."""

    key: str
    operator: LabelSelectorOperator
    values: list[str] = field(default_factory=list)


@dataclass
class LabelSelector:
    """A label selector with match labels and match expressions."""

    match_labels: dict[str, str] = field(default_factory=dict)
    match_expressions: list[LabelSelectorRequirement] = field(default_factory=list)

    @classmethod
    def from_dict(cls, data: Mapping[str, Any] | None) -> LabelSelector:
        """Parse a selector; raises ValueError on an unknown operator."""
        data = data or {}
        expressions = [
            LabelSelectorRequirement(
                key=expr.get("key") or "",
                operator=LabelSelectorOperator(expr.get("operator")),
                values=list(expr.get("values") or []),
            )
            for expr in data.get("matchExpressions") or []
        ]
        return cls(match_labels=dict(data.get("matchLabels") or {}), match_expressions=expressions)

    def is_empty(self) -> bool:
        """Tell whether the selector has neither labels nor expressions."""
        return not self.match_labels and not self.match_expressions


@dataclass
class IPBlock:
    """A CIDR range with exceptions."""

    cidr: str
    excluded: list[str] = field(default_factory=list)


@dataclass
class NetworkPolicyPeer:
    """A source of traffic allowed by an ingress rule."""

    pod_selector: LabelSelector | None = None
    namespace_selector: LabelSelector | None = None
    ip_block: IPBlock | None = None

    @classmethod
    def from_dict(cls, data: Mapping[str, Any]) -> NetworkPolicyPeer:
        pod = data.get("podSelector")
        namespace = data.get("namespaceSelector")
        block = data.get("ipBlock")
        return cls(
            pod_selector=LabelSelector.from_dict(pod) if pod is not None else None,
            namespace_selector=LabelSelector.from_dict(namespace) if namespace is not None else None,
            ip_block=IPBlock(cidr=block.get("cidr") or "", excluded=list(block.get("except") or []))
            if block is not None else None,
        )


@dataclass
class NetworkPolicyPort:
    """A port clause: a number, a port name, or nothing for all ports."""

    protocol: str | None = None
    port: Union[int, str, None] = None

    @classmethod
    def from_dict(cls, data: Mapping[str, Any]) -> NetworkPolicyPort:
        return cls(protocol=data.get("protocol"), port=data.get("port"))


@dataclass
class IngressRule:
    """An ingress rule: allowed peers and allowed ports."""

    peers: list[NetworkPolicyPeer] = field(default_factory=list)
    ports: list[NetworkPolicyPort] = field(default_factory=list)

    @classmethod
    def from_dict(cls, data: Mapping[str, Any]) -> IngressRule:
        return cls(
            peers=[NetworkPolicyPeer.from_dict(p) for p in data.get("from") or []],
            ports=[NetworkPolicyPort.from_dict(p) for p in data.get("ports") or []],
        )


def _selector_dict(selector: LabelSelector) -> dict[str, Any]:
    data: dict[str, Any] = {}
    if selector.match_labels:
        data["matchLabels"] = dict(selector.match_labels)
    if selector.match_expressions:
        data["matchExpressions"] = [
            {"key": e.key, "operator": e.operator.value, **({"values": list(e.values)} if e.values else {})}
            for e in selector.match_expressions
        ]
    return data


def _peer_dict(peer: NetworkPolicyPeer) -> dict[str, Any]:
    data: dict[str, Any] = {}
    if peer.pod_selector is not None:
        data["podSelector"] = _selector_dict(peer.pod_selector)
    if peer.namespace_selector is not None:
        data["namespaceSelector"] = _selector_dict(peer.namespace_selector)
    if peer.ip_block is not None:
        data["ipBlock"] = {"cidr": peer.ip_block.cidr}
        if peer.ip_block.excluded:
            data["ipBlock"]["except"] = list(peer.ip_block.excluded)
    return data


def _port_dict(port: NetworkPolicyPort) -> dict[str, Any]:
    data: dict[str, Any] = {}
    if port.protocol is not None:
        data["protocol"] = port.protocol
    if port.port is not None:
        data["port"] = port.port
    return data


def _dump(manifest: dict[str, Any]) -> str:
    metadata = manifest.get("metadata")
    if isinstance(metadata, dict):
        metadata.pop("managedFields", None)
    return yaml.safe_dump(manifest, sort_keys=True, default_flow_style=False)


def _metadata(data: Mapping[str, Any]) -> tuple[str, str]:
    metadata = data.get("metadata") or {}
    return metadata.get("name") or "", metadata.get("namespace") or ""


@dataclass
class NetworkPolicy:
    """A Kubernetes NetworkPolicy, limited to its ingress side."""

    name: str
    namespace: str
    pod_selector: LabelSelector = field(default_factory=LabelSelector)
    ingress: list[IngressRule] = field(default_factory=list)
    manifest: dict[str, Any] = field(default_factory=dict, repr=False, compare=False)

    @classmethod
    def from_dict(cls, data: Mapping[str, Any]) -> NetworkPolicy:
        """Parse a NetworkPolicy manifest as returned by the API server."""
        name, namespace = _metadata(data)
        spec = data.get("spec") or {}
        return cls(
            name=name,
            namespace=namespace,
            pod_selector=LabelSelector.from_dict(spec.get("podSelector")),
            ingress=[IngressRule.from_dict(r) for r in spec.get("ingress") or []],
            manifest=copy.deepcopy(dict(data)),
        )

    def to_yaml(self) -> str:
        """Render the policy as YAML without its managed fields."""
        if self.manifest:
            return _dump(copy.deepcopy(self.manifest))
        spec: dict[str, Any] = {"podSelector": _selector_dict(self.pod_selector)}
        if self.ingress:
            spec["ingress"] = [
                {
                    **({"from": [_peer_dict(p) for p in rule.peers]} if rule.peers else {}),
                    **({"ports": [_port_dict(p) for p in rule.ports]} if rule.ports else {}),
                }
                for rule in self.ingress
            ]
        return _dump({"metadata": {"name": self.name, "namespace": self.namespace}, "spec": spec})


@dataclass
class IstioSource:
    """The source part of an Istio rule's 'from' entry."""

    principals: list[str] = field(default_factory=list)
    namespaces: list[str] = field(default_factory=list)


@dataclass
class IstioOperation:
    """The operation part of an Istio rule's 'to' entry."""

    ports: list[str] = field(default_factory=list)
    methods: list[str] = field(default_factory=list)
    paths: list[str] = field(default_factory=list)


@dataclass
class IstioRule:
    """An Istio rule; None entries stand for 'from'/'to' items without a body."""

    sources: list[IstioSource | None] = field(default_factory=list)
    operations: list[IstioOperation | None] = field(default_factory=list)

    @classmethod
    def from_dict(cls, data: Mapping[str, Any]) -> IstioRule:
        sources: list[IstioSource | None] = []
        for entry in data.get("from") or []:
            source = (entry or {}).get("source")
            sources.append(
                None if source is None else IstioSource(
                    principals=list(source.get("principals") or []),
                    namespaces=list(source.get("namespaces") or []),
                )
            )
        operations: list[IstioOperation | None] = []
        for entry in data.get("to") or []:
            operation = (entry or {}).get("operation")
            operations.append(
                None if operation is None else IstioOperation(
                    ports=[str(p) for p in operation.get("ports") or []],
                    methods=list(operation.get("methods") or []),
                    paths=list(operation.get("paths") or []),
                )
            )
        return cls(sources=sources, operations=operations)


def _istio_rule_dict(rule: IstioRule | None) -> dict[str, Any] | None:
    if rule is None:
        return None
    data: dict[str, Any] = {}
    if rule.sources:
        data["from"] = [
            {} if s is None else {"source": {
                **({"principals": list(s.principals)} if s.principals else {}),
                **({"namespaces": list(s.namespaces)} if s.namespaces else {}),
            }}
            for s in rule.sources
        ]
    if rule.operations:
        data["to"] = [
            {} if o is None else {"operation": {
                **({"ports": list(o.ports)} if o.ports else {}),
                **({"methods": list(o.methods)} if o.methods else {}),
                **({"paths": list(o.paths)} if o.paths else {}),
            }}
            for o in rule.operations
        ]
    return data


@dataclass
class AuthorizationPolicy:
    """An Istio AuthorizationPolicy."""

    name: str
    namespace: str
    selector: dict[str, str] = field(default_factory=dict)
    action: str = "ALLOW"
    rules: list[IstioRule | None] = field(default_factory=list)
    manifest: dict[str, Any] = field(default_factory=dict, repr=False, compare=False)

    @classmethod
    def from_dict(cls, data: Mapping[str, Any]) -> AuthorizationPolicy:
        """Parse an AuthorizationPolicy manifest as returned by the API server."""
        name, namespace = _metadata(data)
        spec = data.get("spec") or {}
        selector = (spec.get("selector") or {}).get("matchLabels") or {}
        return cls(
            name=name,
            namespace=namespace,
            selector=dict(selector),
            action=spec.get("action") or "ALLOW",
            rules=[None if r is None else IstioRule.from_dict(r) for r in spec.get("rules") or []],
            manifest=copy.deepcopy(dict(data)),
        )

    def to_yaml(self) -> str:
        """Render the policy as YAML without its managed fields."""
        if self.manifest:
            return _dump(copy.deepcopy(self.manifest))
        spec: dict[str, Any] = {"action": self.action}
        if self.selector:
            spec["selector"] = {"matchLabels": dict(self.selector)}
        if self.rules:
            spec["rules"] = [_istio_rule_dict(r) for r in self.rules]
        return _dump({"metadata": {"name": self.name, "namespace": self.namespace}, "spec": spec})