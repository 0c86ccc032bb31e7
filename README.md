# dnmap

dnmap builds a network map of a Kubernetes cluster: which workloads
exist, which ports they expose, and which Kubernetes NetworkPolicies and
Istio AuthorizationPolicies allow traffic from one workload to another.

The result is a `dnmap.graph.model.NetworkGraph` of nodes and edges:

- a **workload node** for every Deployment, StatefulSet and DaemonSet,
  carrying its namespace, kind and pod-template labels;
- a **port node** for every container port, tagged with the first
  Service whose (non-empty) selector picks the workload and whose
  `targetPort` names the port by number or by name;
- an **edge** from a source workload to a target port for every
  connection that a policy rule allows, with a readable description of
  the rule and the policy's YAML (managed fields removed).

While building the graph, dnmap flags NetworkPolicy ingress rules that
are wider than they probably should be. Each flagged workload carries the
warnings on its node, and every first occurrence per workload is listed in
`NetworkGraph.warning_details`:

| Warning       | Meaning                                        |
|---------------|------------------------------------------------|
| `no-ports`    | Rule allows all ports (no port restriction)    |
| `no-selector` | Rule allows from all sources (no selector)     |

## Installing

```
pip install .
pip install ".[test]"   # with pytest and respx for the test suite
```

## Connecting to a cluster

`dnmap.k8s.client.new_client(kubeconfig)` looks for credentials the way
`kubectl` does. Inside a pod it uses the service account token
(`ClusterConfig.in_cluster`); otherwise it reads the kubeconfig passed to
it, then the files named by the `KUBECONFIG` environment variable, then
`~/.kube/config`, and uses the current context
(`ClusterConfig.from_kubeconfig`). A kubeconfig without a current context
is an error. All cluster errors are raised as `dnmap.k8s.client.KubeError`.

`Client` offers `get_namespaces`, `get_workloads`, `get_policies`,
`get_network_policies` and `get_authorization_policies`, each taking an
iterable of namespace names. If listing AuthorizationPolicies fails in
`get_policies` (for instance because Istio is not installed), a warning is
printed and only NetworkPolicies are used for that namespace. Pass
`istio_enabled=False` to `Client` to skip Istio altogether.

`ApiClient` accepts an `httpx` transport, which makes the client easy to
drive against a mocked API server in tests.

## Building a map

```python
from dnmap.export import count_policies, warnings_csv
from dnmap.graph.builder import Builder
from dnmap.k8s.client import new_client
from dnmap.k8s.types import parse_namespaces

client = new_client(None)
namespaces = parse_namespaces("domino-compute,domino-platform")

namespace_infos = client.get_namespaces(namespaces)
workloads = client.get_workloads(namespaces)
policies = client.get_policies(namespaces)

network_policies, authorization_policies = count_policies(policies)
print(f"{network_policies} NetworkPolicies, {authorization_policies} AuthorizationPolicies")

graph = Builder().with_namespace_labels(namespace_infos).build(workloads, policies)
print(f"{len(graph.nodes)} nodes, {len(graph.edges)} edges")

with open("network-map.json", "w", encoding="utf-8") as fh:
    fh.write(graph.to_json())

with open("warnings.csv", "w", encoding="utf-8", newline="") as fh:
    fh.write(warnings_csv(graph))
```

`NetworkGraph.to_json` writes compact JSON with the field names
`id`, `source`, `policyYaml`, `warningDetails` and so on, and escapes `<`,
`>` and `&` so the text can be embedded in an HTML page. `to_dict` gives the
same data as plain Python objects.

`warnings_csv` writes the columns `Workload`, `Namespace`, `Policy`,
`Warning Type` and `Description`, with the policy name stripped of its
namespace prefix.

Namespace labels are needed so that peers with a `namespaceSelector` are
matched against the real labels of each namespace; without them only
empty selectors (all namespaces) and peers without a namespace selector
(the policy's own namespace) resolve.

## Working offline

The builder does not need a cluster. Workloads and policies can be made
from manifests you already have:

```python
import yaml

from dnmap.graph.builder import Builder
from dnmap.k8s.policies import NetworkPolicy
from dnmap.k8s.types import WorkloadType, workload_from_manifest

with open("deployments.yaml", encoding="utf-8") as fh:
    manifests = list(yaml.safe_load_all(fh))
with open("policies.yaml", encoding="utf-8") as fh:
    policy_docs = list(yaml.safe_load_all(fh))

workloads = [workload_from_manifest(m, WorkloadType.DEPLOYMENT) for m in manifests]
net_policies = [NetworkPolicy.from_dict(d) for d in policy_docs]

graph = Builder().build_from_network_policies(workloads, net_policies)
for edge in graph.edges:
    print(edge.source, "->", edge.target, edge.label, edge.rule)
```

`AuthorizationPolicy.from_dict` parses Istio policies the same way; wrap
either kind in a `dnmap.k8s.types.Policy` to pass both to `Builder.build`.
`enrich_ports_with_services(workload, services)` links ports to Service
manifests.

## Identifiers

Node identifiers are stable and readable:

- workloads: `<namespace>/<name>`, e.g. `default/nginx`
  (`dnmap.graph.model.workload_id`);
- ports: `<workload id>:<protocol>/<port>`, e.g. `default/nginx:TCP/80`
  (`dnmap.graph.model.port_id`).

Edges are numbered `edge-0`, `edge-1`, … in the order they are built.

## Selector semantics

Label selectors follow Kubernetes rules (`dnmap.graph.selectors`): every
`matchLabels` entry must be present with the same value, and every
`matchExpressions` requirement (`In`, `NotIn`, `Exists`, `DoesNotExist`)
must hold. An empty selector matches everything. Named policy ports are
matched against container port names; numeric ones against container port
numbers; a rule without ports allows every port. A source workload never
gets an edge to its own ports.

Istio policies select targets by `selector.matchLabels` (all workloads of
the namespace without one). Rules without `to.operation.ports` allow every
port of the target workload; edges from Istio rules are always TCP.
Principals of the form `cluster.local/ns/<namespace>/sa/<account>` admit
all workloads of that namespace, and a rule without `from` admits every
workload.

## What dnmap does not do

dnmap is a library. It has no command-line program, does not render the
graph as an HTML page, and does not run a web server or refresh the map on
a schedule. It hands you the graph, its JSON and the warnings CSV; writing,
displaying or serving them is up to the calling code. Standalone Pods are
not collected by `Client.get_workloads`.