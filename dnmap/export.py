"""Reports derived from a built graph: warning CSV and policy counts."""

from __future__ import annotations

import csv
import io
from typing import Iterable

from dnmap.graph.model import NetworkGraph, WarningType
from dnmap.k8s.types import Policy, PolicyType

CSV_HEADER = ("Workload", "Namespace", "Policy", "Warning Type", "Description")

_DESCRIPTIONS = {
    WarningType.NO_PORTS: "Rule allows all ports (no port restriction)",
    WarningType.NO_SELECTOR: "Rule allows from all sources (no selector)",
}


def _warning_value(warning_type: WarningType | str) -> str:
    return warning_type.value if isinstance(warning_type, WarningType) else str(warning_type)


def warning_description(warning_type: WarningType | str) -> str:
    """Return the human-readable description of a warning type."""
    value = _warning_value(warning_type)
    try:
        return _DESCRIPTIONS[WarningType(value)]
    except ValueError:
        return value


def short_policy_name(policy_name: str, namespace: str) -> str:
    """Strip the "<namespace>/" prefix from a full policy name."""
    cut = len(namespace) + 1
    return policy_name[cut:] if cut < len(policy_name) else policy_name


def warnings_csv(graph: NetworkGraph) -> str:
    """Return the graph's warning details as CSV text with a header row."""
    buffer = io.StringIO()
    writer = csv.writer(buffer, lineterminator="\n")
    writer.writerow(CSV_HEADER)
    writer.writerows(
        (
            detail.workload_name,
            detail.namespace,
            short_policy_name(detail.policy_name, detail.namespace),
            _warning_value(detail.warning_type),
            warning_description(detail.warning_type),
        )
        for detail in graph.warning_details
    )
    return buffer.getvalue()


def count_policies(policies: Iterable[Policy]) -> tuple[int, int]:
    """Return the number of Kubernetes NetworkPolicies and Istio AuthorizationPolicies."""
    kinds = [p.type for p in policies]
    return (
        kinds.count(PolicyType.K8S_NETWORK_POLICY),
        kinds.count(PolicyType.ISTIO_AUTHORIZATION_POLICY),
    )