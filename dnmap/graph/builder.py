"""Builds the network graph from workloads and the policies that admit traffic to them."""

from __future__ import annotations

import itertools
from typing import Iterable, Iterator

from dnmap.graph.model import (
    Edge,
    NetworkGraph,
    WarningDetail,
    WarningType,
    new_port_node,
    new_workload_node,
    port_id,
    workload_id,
)
from dnmap.graph.selectors import (
    allowed_ports,
    extract_namespace_from_principal,
    format_istio_rule,
    format_k8s_rule,
    istio_allowed_ports,
    labels_match,
    matches_selector,
)
from dnmap.k8s.policies import (
    AuthorizationPolicy,
    LabelSelector,
    NetworkPolicy,
    NetworkPolicyPeer,
    IstioSource,
)
from dnmap.k8s.types import NamespaceInfo, Policy, PolicyType, Workload

_WorkloadsByNS = dict[str, list[Workload]]


def _unique(workloads: Iterable[Workload], seen: set[str]) -> Iterator[Workload]:
    for w in workloads:
        wid = workload_id(w.namespace, w.name)
        if wid not in seen:
            seen.add(wid)
            yield w


def _all_workloads(workloads_by_ns: _WorkloadsByNS) -> Iterator[Workload]:
    for workloads in workloads_by_ns.values():
        yield from workloads


class Builder:
    """Turns workloads and policies into a NetworkGraph."""

    def __init__(self) -> None:
        self.namespace_labels: dict[str, dict[str, str]] = {}

    def with_namespace_labels(self, namespaces: Iterable[NamespaceInfo]) -> Builder:
        """Record namespace labels used to evaluate namespace selectors."""
        for ns in namespaces:
            self.namespace_labels[ns.name] = dict(ns.labels or {})
        return self

    def build(self, workloads: Iterable[Workload], policies: Iterable[Policy]) -> NetworkGraph:
        """Build the graph of workloads, their ports and the edges policies allow."""
        graph = NetworkGraph()
        workloads_by_ns: _WorkloadsByNS = {}
        node_index: dict[str, int] = {}
        workload_warnings: dict[str, dict[WarningType, None]] = {}

        for w in workloads:
            wid = workload_id(w.namespace, w.name)
            workloads_by_ns.setdefault(w.namespace, []).append(w)
            workload_warnings[wid] = {}
            node_index[wid] = len(graph.nodes)
            graph.nodes.append(new_workload_node(w))
            graph.nodes.extend(new_port_node(wid, p) for p in w.ports)

        edge_ids = itertools.count()
        for policy in policies:
            if policy.type is PolicyType.K8S_NETWORK_POLICY and policy.k8s_network_policy is not None:
                edges, warnings, details = self._process_network_policy(
                    policy.k8s_network_policy, workloads_by_ns, edge_ids)
                graph.edges.extend(edges)
                graph.warning_details.extend(details)
                for wid, found in warnings.items():
                    workload_warnings.setdefault(wid, {}).update(dict.fromkeys(found))
            elif (policy.type is PolicyType.ISTIO_AUTHORIZATION_POLICY
                  and policy.istio_auth_policy is not None):
                graph.edges.extend(self._process_istio_policy(
                    policy.istio_auth_policy, workloads_by_ns, edge_ids))

        for wid, found in workload_warnings.items():
            if wid in node_index and found:
                graph.nodes[node_index[wid]].warnings = list(found)

        return graph

    def build_from_network_policies(self, workloads: Iterable[Workload],
                                    net_policies: Iterable[NetworkPolicy]) -> NetworkGraph:
        """Build the graph from Kubernetes NetworkPolicies only."""
        policies = [
            Policy(name=p.name, namespace=p.namespace,
                   type=PolicyType.K8S_NETWORK_POLICY, k8s_network_policy=p)
            for p in net_policies
        ]
        return self.build(workloads, policies)

    def _process_network_policy(
        self,
        policy: NetworkPolicy,
        workloads_by_ns: _WorkloadsByNS,
        edge_ids: Iterator[int],
    ) -> tuple[list[Edge], dict[str, dict[WarningType, None]], list[WarningDetail]]:
        edges: list[Edge] = []
        details: list[WarningDetail] = []
        full_name = f"{policy.namespace}/{policy.name}"
        targets = self._matching_workloads(policy.namespace, policy.pod_selector, workloads_by_ns)
        warnings: dict[str, dict[WarningType, None]] = {
            workload_id(t.namespace, t.name): {} for t in targets
        }
        policy_yaml: str | None = None

        for rule_idx, rule in enumerate(policy.ingress):
            found_here = []
            if not rule.ports:
                found_here.append(WarningType.NO_PORTS)
            if not rule.peers:
                found_here.append(WarningType.NO_SELECTOR)
            sources = self._source_workloads(policy.namespace, rule.peers, workloads_by_ns)
            description = format_k8s_rule(rule, rule_idx)

            for target in targets:
                target_id = workload_id(target.namespace, target.name)
                for warning in found_here:
                    if warning not in warnings[target_id]:
                        warnings[target_id][warning] = None
                        details.append(WarningDetail(
                            workload_id=target_id,
                            workload_name=target.name,
                            namespace=target.namespace,
                            policy_name=full_name,
                            warning_type=warning,
                        ))

                ports = allowed_ports(target, rule.ports)
                for source in sources:
                    source_id = workload_id(source.namespace, source.name)
                    if source_id == target_id:
                        continue
                    if policy_yaml is None:
                        policy_yaml = self._yaml(policy)
                    for port in ports:
                        protocol = port.protocol or "TCP"
                        edges.append(Edge(
                            id=f"edge-{next(edge_ids)}",
                            source=source_id,
                            target=port_id(target_id, port.container_port, protocol),
                            label=f"{protocol}:{port.container_port}",
                            rule=description,
                            policy=full_name,
                            policy_yaml=policy_yaml,
                            metadata={"policyType": "NetworkPolicy", "ruleType": "ingress"},
                        ))
        return edges, warnings, details

    def _process_istio_policy(
        self,
        policy: AuthorizationPolicy,
        workloads_by_ns: _WorkloadsByNS,
        edge_ids: Iterator[int],
    ) -> list[Edge]:
        edges: list[Edge] = []
        namespace_workloads = workloads_by_ns.get(policy.namespace, [])
        if policy.selector:
            targets = [w for w in namespace_workloads if labels_match(w.labels, policy.selector)]
        else:
            targets = list(namespace_workloads)
        full_name = f"{policy.namespace}/{policy.name}"
        policy_yaml: str | None = None

        for rule_idx, rule in enumerate(policy.rules):
            if rule is None:
                continue
            sources = self._istio_source_workloads(rule.sources, workloads_by_ns)
            rule_ports = istio_allowed_ports(rule.operations)
            description = format_istio_rule(rule, rule_idx)

            for target in targets:
                target_id = workload_id(target.namespace, target.name)
                ports = rule_ports or [p.container_port for p in target.ports]
                if policy_yaml is None:
                    policy_yaml = self._yaml(policy)
                for source in sources:
                    source_id = workload_id(source.namespace, source.name)
                    if source_id == target_id:
                        continue
                    for port in ports:
                        edges.append(Edge(
                            id=f"edge-{next(edge_ids)}",
                            source=source_id,
                            target=port_id(target_id, port, "TCP"),
                            label=f"TCP:{port}",
                            rule=description,
                            policy=full_name,
                            policy_yaml=policy_yaml,
                            metadata={"policyType": "AuthorizationPolicy", "action": policy.action},
                        ))
        return edges

    @staticmethod
    def _yaml(policy: NetworkPolicy | AuthorizationPolicy) -> str:
        try:
            return policy.to_yaml()
        except Exception:  # an unrenderable policy still yields its edges
            return ""

    @staticmethod
    def _matching_workloads(namespace: str, selector: LabelSelector,
                            workloads_by_ns: _WorkloadsByNS) -> list[Workload]:
        return [w for w in workloads_by_ns.get(namespace, []) if matches_selector(w.labels, selector)]

    def _source_workloads(self, policy_namespace: str, peers: list[NetworkPolicyPeer],
                          workloads_by_ns: _WorkloadsByNS) -> list[Workload]:
        seen: set[str] = set()
        if not peers:
            return list(_unique(_all_workloads(workloads_by_ns), seen))
        result: list[Workload] = []
        for peer in peers:
            for ns in self._namespaces_for_peer(policy_namespace, peer, workloads_by_ns):
                candidates = (
                    w for w in workloads_by_ns.get(ns, [])
                    if peer.pod_selector is None or matches_selector(w.labels, peer.pod_selector)
                )
                result.extend(_unique(candidates, seen))
        return result

    def _namespaces_for_peer(self, policy_namespace: str, peer: NetworkPolicyPeer,
                             workloads_by_ns: _WorkloadsByNS) -> list[str]:
        selector = peer.namespace_selector
        if selector is None:
            return [policy_namespace]
        if selector.is_empty():
            return list(workloads_by_ns)
        return [
            ns for ns in workloads_by_ns
            if matches_selector(self.namespace_labels.get(ns), selector)
        ]

    @staticmethod
    def _istio_source_workloads(sources: list[IstioSource | None],
                                workloads_by_ns: _WorkloadsByNS) -> list[Workload]:
        seen: set[str] = set()
        if not sources:
            return list(_unique(_all_workloads(workloads_by_ns), seen))
        result: list[Workload] = []
        for source in sources:
            if source is None:
                continue
            for principal in source.principals:
                ns = extract_namespace_from_principal(principal)
                if ns:
                    result.extend(_unique(workloads_by_ns.get(ns, []), seen))
            for ns in source.namespaces:
                result.extend(_unique(workloads_by_ns.get(ns, []), seen))
            if not source.principals and not source.namespaces:
                result.extend(_unique(_all_workloads(workloads_by_ns), seen))
        return result