import pytest

from dnmap.graph.builder import Builder
from dnmap.graph.model import NodeType, WarningType
from dnmap.k8s.policies import (
    AuthorizationPolicy,
    IngressRule,
    IstioOperation,
    IstioRule,
    IstioSource,
    LabelSelector,
    NetworkPolicy,
    NetworkPolicyPeer,
    NetworkPolicyPort,
)
from dnmap.k8s.types import NamespaceInfo, Policy, PolicyType, Port, Workload, WorkloadType


def _workload(name, namespace="default", labels=None, ports=()):
    return Workload(
        name=name,
        namespace=namespace,
        type=WorkloadType.DEPLOYMENT,
        labels=dict(labels or {"app": name}),
        ports=list(ports),
    )


def _frontend_backend():
    return [
        _workload("frontend"),
        _workload("backend", ports=[Port(name="http", container_port=8080, protocol="TCP")]),
    ]


def _allow_frontend():
    return NetworkPolicy(
        name="allow-frontend",
        namespace="default",
        pod_selector=LabelSelector(match_labels={"app": "backend"}),
        ingress=[
            IngressRule(
                peers=[NetworkPolicyPeer(pod_selector=LabelSelector(match_labels={"app": "frontend"}))],
                ports=[NetworkPolicyPort(port=8080)],
            )
        ],
    )


def _wrap(policy):
    if isinstance(policy, NetworkPolicy):
        return Policy(policy.name, policy.namespace, PolicyType.K8S_NETWORK_POLICY,
                      k8s_network_policy=policy)
    return Policy(policy.name, policy.namespace, PolicyType.ISTIO_AUTHORIZATION_POLICY,
                  istio_auth_policy=policy)


@pytest.mark.parametrize(
    "workloads, policies, expected_nodes, expected_edges",
    [
        ([], [], 0, 0),
        ([_workload("nginx", ports=[Port(name="http", container_port=80, protocol="TCP")])], [], 2, 0),
        (_frontend_backend(), [_wrap(_allow_frontend())], 3, 1),
    ],
    ids=["empty inputs", "workloads without policies", "k8s policy allowing access"],
)
def test_build_counts(workloads, policies, expected_nodes, expected_edges):
    graph = Builder().build(workloads, policies)
    assert len(graph.nodes) == expected_nodes
    assert len(graph.edges) == expected_edges


def test_build_from_network_policies_backwards_compatible():
    graph = Builder().build_from_network_policies(_frontend_backend(), [_allow_frontend()])
    assert len(graph.nodes) == 3
    assert len(graph.edges) == 1


def test_node_order_workload_then_ports():
    graph = Builder().build(_frontend_backend(), [])
    assert [n.id for n in graph.nodes] == [
        "default/frontend", "default/backend", "default/backend:TCP/8080"]
    assert [n.type for n in graph.nodes] == [NodeType.WORKLOAD, NodeType.WORKLOAD, NodeType.PORT]


def test_k8s_edge_fields():
    graph = Builder().build(_frontend_backend(), [_wrap(_allow_frontend())])
    edge = graph.edges[0]
    assert edge.id == "edge-0"
    assert edge.source == "default/frontend"
    assert edge.target == "default/backend:TCP/8080"
    assert edge.label == "TCP:8080"
    assert edge.policy == "default/allow-frontend"
    assert edge.rule == ("NetworkPolicy Rule 1: from: pods: map[app:frontend], "
                         "namespaces: same as policy; ports: TCP/8080")
    assert edge.metadata == {"policyType": "NetworkPolicy", "ruleType": "ingress"}
    assert "allow-frontend" in edge.policy_yaml
    assert graph.warning_details == []


def test_open_rule_produces_warnings_and_skips_self():
    policy = NetworkPolicy(
        name="open",
        namespace="default",
        pod_selector=LabelSelector(match_labels={"app": "backend"}),
        ingress=[IngressRule()],
    )
    graph = Builder().build(_frontend_backend(), [_wrap(policy)])
    assert [(e.source, e.target) for e in graph.edges] == [
        ("default/frontend", "default/backend:TCP/8080")]
    assert [(d.workload_id, d.policy_name, d.warning_type) for d in graph.warning_details] == [
        ("default/backend", "default/open", WarningType.NO_PORTS),
        ("default/backend", "default/open", WarningType.NO_SELECTOR),
    ]
    nodes = {n.id: n for n in graph.nodes}
    assert set(nodes["default/backend"].warnings) == {WarningType.NO_PORTS, WarningType.NO_SELECTOR}
    assert nodes["default/frontend"].warnings == []


def test_warnings_deduplicated_per_node_but_detailed_per_policy():
    policies = [
        NetworkPolicy(
            name=name,
            namespace="default",
            pod_selector=LabelSelector(match_labels={"app": "backend"}),
            ingress=[IngressRule(peers=[NetworkPolicyPeer(pod_selector=LabelSelector())])],
        )
        for name in ("p1", "p2")
    ]
    graph = Builder().build(_frontend_backend(), [_wrap(p) for p in policies])
    assert [d.policy_name for d in graph.warning_details] == ["default/p1", "default/p2"]
    backend = next(n for n in graph.nodes if n.id == "default/backend")
    assert backend.warnings == [WarningType.NO_PORTS]


def test_edge_ids_run_across_policies():
    second = _allow_frontend()
    second.name = "again"
    graph = Builder().build(_frontend_backend(), [_wrap(_allow_frontend()), _wrap(second)])
    assert [e.id for e in graph.edges] == ["edge-0", "edge-1"]
    assert [e.policy for e in graph.edges] == ["default/allow-frontend", "default/again"]


def test_namespace_selector_uses_namespace_labels():
    workloads = [
        _workload("a", namespace="prod", labels={"app": "a"}),
        _workload("b", namespace="dev", labels={"app": "b"}),
        _workload("backend", ports=[Port(container_port=80, protocol="TCP")]),
    ]
    policy = NetworkPolicy(
        name="from-prod",
        namespace="default",
        pod_selector=LabelSelector(),
        ingress=[IngressRule(
            peers=[NetworkPolicyPeer(namespace_selector=LabelSelector(match_labels={"env": "prod"}))],
            ports=[NetworkPolicyPort(port=80)],
        )],
    )
    builder = Builder().with_namespace_labels([
        NamespaceInfo("prod", {"env": "prod"}),
        NamespaceInfo("dev", {"env": "dev"}),
    ])
    graph = builder.build(workloads, [_wrap(policy)])
    assert [(e.source, e.target) for e in graph.edges] == [("prod/a", "default/backend:TCP/80")]


def test_empty_namespace_selector_matches_all_namespaces():
    workloads = [
        _workload("a", namespace="prod", labels={"app": "a"}),
        _workload("backend", ports=[Port(container_port=80, protocol="TCP")]),
    ]
    policy = NetworkPolicy(
        name="any-ns",
        namespace="default",
        pod_selector=LabelSelector(match_labels={"app": "backend"}),
        ingress=[IngressRule(
            peers=[NetworkPolicyPeer(namespace_selector=LabelSelector())],
            ports=[NetworkPolicyPort(port=80)],
        )],
    )
    graph = Builder().build(workloads, [_wrap(policy)])
    assert [e.source for e in graph.edges] == ["prod/a"]


def test_port_filter_excludes_other_ports():
    workloads = [
        _workload("frontend"),
        _workload("backend", ports=[Port(container_port=80, protocol="TCP"),
                                    Port(container_port=53, protocol="UDP")]),
    ]
    policy = NetworkPolicy(
        name="udp",
        namespace="default",
        pod_selector=LabelSelector(match_labels={"app": "backend"}),
        ingress=[IngressRule(peers=[NetworkPolicyPeer(pod_selector=LabelSelector())],
                             ports=[NetworkPolicyPort(protocol="UDP")])],
    )
    graph = Builder().build(workloads, [_wrap(policy)])
    assert [e.target for e in graph.edges] == ["default/backend:UDP/53"]
    assert graph.edges[0].label == "UDP:53"


def _istio_workloads():
    return [
        _workload("frontend"),
        _workload("backend", ports=[Port(container_port=8080, protocol="TCP"),
                                    Port(container_port=9090, protocol="TCP")]),
        _workload("client", namespace="other", labels={"app": "client"}),
    ]


def test_istio_policy_edges():
    policy = AuthorizationPolicy(
        name="allow",
        namespace="default",
        selector={"app": "backend"},
        rules=[IstioRule(sources=[IstioSource(namespaces=["other"])],
                         operations=[IstioOperation(ports=["8080"])])],
    )
    graph = Builder().build(_istio_workloads(), [_wrap(policy)])
    assert len(graph.edges) == 1
    edge = graph.edges[0]
    assert edge.source == "other/client"
    assert edge.target == "default/backend:TCP/8080"
    assert edge.label == "TCP:8080"
    assert edge.policy == "default/allow"
    assert edge.rule == "AuthzPolicy Rule 1: from: namespaces: [other]; to: ports: [8080]"
    assert edge.metadata == {"policyType": "AuthorizationPolicy", "action": "ALLOW"}
    assert "allow" in edge.policy_yaml


def test_istio_rule_without_ports_uses_all_workload_ports():
    policy = AuthorizationPolicy(
        name="allow",
        namespace="default",
        selector={"app": "backend"},
        rules=[IstioRule(sources=[IstioSource(principals=["cluster.local/ns/other/sa/client"])])],
    )
    graph = Builder().build(_istio_workloads(), [_wrap(policy)])
    assert [e.target for e in graph.edges] == [
        "default/backend:TCP/8080", "default/backend:TCP/9090"]
    assert {e.source for e in graph.edges} == {"other/client"}


def test_istio_without_selector_targets_whole_namespace_and_skips_none_rules():
    policy = AuthorizationPolicy(
        name="all",
        namespace="default",
        rules=[None, IstioRule(sources=[IstioSource(namespaces=["other"])])],
    )
    graph = Builder().build(_istio_workloads(), [_wrap(policy)])
    assert [e.target for e in graph.edges] == [
        "default/backend:TCP/8080", "default/backend:TCP/9090"]
    assert graph.edges[0].rule.startswith("AuthzPolicy Rule 2:")


def test_policy_without_body_is_ignored():
    policies = [
        Policy("x", "default", PolicyType.K8S_NETWORK_POLICY),
        Policy("y", "default", PolicyType.ISTIO_AUTHORIZATION_POLICY),
    ]
    graph = Builder().build(_frontend_backend(), policies)
    assert graph.edges == []
    assert graph.warning_details == []


def test_with_namespace_labels_returns_builder():
    builder = Builder()
    assert builder.with_namespace_labels([NamespaceInfo("prod", {"env": "prod"})]) is builder
    assert builder.namespace_labels == {"prod": {"env": "prod"}}