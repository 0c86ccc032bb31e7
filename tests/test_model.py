import json

import pytest

from dnmap.graph.model import (
    Edge,
    NetworkGraph,
    Node,
    NodeType,
    WarningDetail,
    WarningType,
    new_port_node,
    new_workload_node,
    port_id,
    workload_id,
)
from dnmap.k8s.types import Port, Workload, WorkloadType


@pytest.mark.parametrize(
    "namespace, name, expected",
    [
        ("default", "nginx", "default/nginx"),
        ("domino-compute", "my-service", "domino-compute/my-service"),
    ],
)
def test_workload_id(namespace, name, expected):
    assert workload_id(namespace, name) == expected


@pytest.mark.parametrize(
    "wid, port, protocol, expected",
    [
        ("default/nginx", 80, "TCP", "default/nginx:TCP/80"),
        ("default/dns", 53, "UDP", "default/dns:UDP/53"),
        ("ns/app", 8443, "TCP", "ns/app:TCP/8443"),
    ],
)
def test_port_id(wid, port, protocol, expected):
    assert port_id(wid, port, protocol) == expected


@pytest.mark.parametrize(
    "number, expected",
    [(0, "0"), (80, "80"), (8443, "8443"), (-1, "-1")],
)
def test_unnamed_port_label_is_number(number, expected):
    node = new_port_node("ns/app", Port(container_port=number, protocol="TCP"))
    assert node.label == expected
    assert node.id == "ns/app:TCP/" + expected


@pytest.mark.parametrize(
    "workload, expected_id, expected_kind",
    [
        (
            Workload("nginx", "default", WorkloadType.DEPLOYMENT, {"app": "nginx"}),
            "default/nginx",
            "Deployment",
        ),
        (
            Workload("postgres", "db", WorkloadType.STATEFUL_SET, {"app": "postgres"}),
            "db/postgres",
            "StatefulSet",
        ),
    ],
)
def test_new_workload_node(workload, expected_id, expected_kind):
    node = new_workload_node(workload)
    assert node.id == expected_id
    assert node.type == NodeType.WORKLOAD
    assert node.kind == expected_kind
    assert node.metadata == workload.labels


@pytest.mark.parametrize(
    "wid, port, expected_id, expected_port",
    [
        ("default/nginx", Port(name="http", container_port=80, protocol="TCP"),
         "default/nginx:TCP/80", 80),
        ("default/app", Port(container_port=8080, protocol="TCP"),
         "default/app:TCP/8080", 8080),
    ],
)
def test_new_port_node(wid, port, expected_id, expected_port):
    node = new_port_node(wid, port)
    assert node.id == expected_id
    assert node.port == expected_port
    assert node.type == NodeType.PORT
    assert node.parent == wid


def test_port_node_defaults_protocol_to_tcp():
    node = new_port_node("default/app", Port(container_port=8080))
    assert node.protocol == "TCP"
    assert node.id == "default/app:TCP/8080"


def test_port_node_named_label_and_service():
    port = Port(name="http", container_port=80, protocol="TCP",
                service_name="web", service_port=8000)
    node = new_port_node("default/nginx", port)
    assert node.label == "http"
    assert node.service_name == "web"
    assert node.service_port == 8000


def test_to_json_omits_empty_fields():
    graph = NetworkGraph(
        nodes=[Node(id="default/nginx", label="nginx", type=NodeType.WORKLOAD,
                    namespace="default", kind="Deployment")],
    )
    data = json.loads(graph.to_json())
    node = data["nodes"][0]
    assert node["id"] == "default/nginx"
    assert node["type"] == "workload"
    assert "parent" not in node
    assert "port" not in node
    assert "metadata" not in node
    assert data["edges"] == []
    assert "warningDetails" not in data


def test_to_json_includes_set_fields():
    graph = NetworkGraph(
        nodes=[new_port_node("default/nginx", Port(name="http", container_port=80,
                                                   service_name="web", service_port=8000))],
        edges=[Edge(id="edge-0", source="default/frontend", target="default/nginx:TCP/80",
                    label="TCP:80", rule="r", policy="default/p", policy_yaml="kind: x\n",
                    metadata={"ruleType": "ingress"})],
        warning_details=[WarningDetail("default/nginx", "nginx", "default",
                                       "default/p", WarningType.NO_PORTS)],
    )
    data = json.loads(graph.to_json())
    node = data["nodes"][0]
    assert node["parent"] == "default/nginx"
    assert node["serviceName"] == "web"
    assert node["servicePort"] == 8000
    edge = data["edges"][0]
    assert edge["policyYaml"] == "kind: x\n"
    assert edge["metadata"] == {"ruleType": "ingress"}
    assert data["warningDetails"][0]["warningType"] == "no-ports"
    assert data["warningDetails"][0]["workloadId"] == "default/nginx"


def test_to_json_escapes_html_characters():
    graph = NetworkGraph(
        nodes=[Node(id="a", label="<script>&", type=NodeType.WORKLOAD)],
    )
    text = graph.to_json()
    assert "<" not in text and ">" not in text and "&" not in text
    assert json.loads(text)["nodes"][0]["label"] == "<script>&"


def test_to_dict_matches_to_json():
    graph = NetworkGraph(nodes=[new_workload_node(
        Workload("nginx", "default", WorkloadType.DEPLOYMENT, {"app": "nginx"}))])
    assert json.loads(graph.to_json()) == graph.to_dict()