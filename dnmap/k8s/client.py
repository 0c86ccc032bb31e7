"""Cluster access: configuration loading and the workload/policy client."""

from __future__ import annotations

import base64
import binascii
import os
import ssl
import tempfile
from dataclasses import dataclass
from pathlib import Path
from typing import Any, Iterable
from urllib.parse import quote

import httpx
import yaml

from dnmap.k8s.policies import AuthorizationPolicy, NetworkPolicy
from dnmap.k8s.types import (
    NamespaceInfo,
    Policy,
    PolicyType,
    Workload,
    WorkloadType,
    enrich_ports_with_services,
    workload_from_manifest,
)

_SERVICE_ACCOUNT_DIR = Path("/var/run/secrets/kubernetes.io/serviceaccount")

_WORKLOAD_KINDS = (
    ("deployments", WorkloadType.DEPLOYMENT),
    ("statefulsets", WorkloadType.STATEFUL_SET),
    ("daemonsets", WorkloadType.DAEMON_SET),
)


class KubeError(Exception):
    """Raised when the cluster cannot be reached or answers with an error."""


@dataclass
class ClusterConfig:
    """Where the API server is and how to authenticate to it."""

    server: str
    token: str = ""
    ca_file: str | None = None
    ca_data: bytes | None = None
    cert_file: str | None = None
    key_file: str | None = None
    cert_data: bytes | None = None
    key_data: bytes | None = None
    insecure: bool = False
    context: str = ""

    @classmethod
    def in_cluster(cls) -> ClusterConfig:
        """Load the service-account configuration of the pod we run in."""
        host = os.environ.get("KUBERNETES_SERVICE_HOST")
        port = os.environ.get("KUBERNETES_SERVICE_PORT")
        if not host or not port:
            raise KubeError(
                "unable to load in-cluster configuration, KUBERNETES_SERVICE_HOST "
                "and KUBERNETES_SERVICE_PORT must be defined"
            )
        token_path = _SERVICE_ACCOUNT_DIR / "token"
        try:
            token = token_path.read_text().strip()
        except OSError as err:
            raise KubeError(f"failed to read service account token: {err}") from err
        ca_path = _SERVICE_ACCOUNT_DIR / "ca.crt"
        if ":" in host and not host.startswith("["):
            host = f"[{host}]"
        return cls(
            server=f"https://{host}:{port}",
            token=token,
            ca_file=str(ca_path) if ca_path.exists() else None,
        )

    @classmethod
    def from_kubeconfig(cls, path: str | os.PathLike[str] | None = None) -> ClusterConfig:
        """Load the current context of a kubeconfig.

        An explicit path wins; otherwise the files named by KUBECONFIG are
        merged, and without it ~/.kube/config is used.
        """
        merged = _load_kubeconfigs(path)
        current = merged["current-context"]
        if not current:
            raise KubeError(
                "no current context set in kubeconfig; run "
                "'kubectl config use-context <context>' to set one"
            )
        try:
            return _config_for_context(merged, current)
        except KubeError as err:
            raise KubeError(
                f"failed to create client config from kubeconfig (current-context: {current}): {err}"
            ) from err

    def ssl_verify(self) -> ssl.SSLContext | bool:
        """Return the TLS verification setting for the HTTP client."""
        if self.insecure:
            return False
        if not any((self.ca_file, self.ca_data, self.cert_file, self.cert_data)):
            return True
        context = ssl.create_default_context(
            cafile=self.ca_file,
            cadata=self.ca_data.decode() if self.ca_data else None,
        )
        if self.cert_file:
            context.load_cert_chain(self.cert_file, self.key_file)
        elif self.cert_data:
            with tempfile.TemporaryDirectory() as tmp:
                cert_path = Path(tmp) / "client.crt"
                cert_path.write_bytes(self.cert_data)
                key_path = None
                if self.key_data:
                    key_path = Path(tmp) / "client.key"
                    key_path.write_bytes(self.key_data)
                context.load_cert_chain(str(cert_path), str(key_path) if key_path else None)
        return context


def _kubeconfig_paths(path: str | os.PathLike[str] | None) -> tuple[list[Path], bool]:
    if path:
        return [Path(path)], True
    env = os.environ.get("KUBECONFIG")
    if env:
        return [Path(p) for p in env.split(os.pathsep) if p], False
    return [Path.home() / ".kube" / "config"], False


def _load_kubeconfigs(path: str | os.PathLike[str] | None) -> dict[str, Any]:
    paths, explicit = _kubeconfig_paths(path)
    merged: dict[str, Any] = {"current-context": "", "clusters": {}, "contexts": {}, "users": {}}
    for file in paths:
        if not file.exists():
            if explicit:
                raise KubeError(f"failed to load kubeconfig: {file}: no such file")
            continue
        try:
            data = yaml.safe_load(file.read_text()) or {}
        except (OSError, yaml.YAMLError) as err:
            raise KubeError(f"failed to load kubeconfig: {file}: {err}") from err
        if not isinstance(data, dict):
            raise KubeError(f"failed to load kubeconfig: {file}: not a mapping")
        if not merged["current-context"]:
            merged["current-context"] = data.get("current-context") or ""
        base = file.parent
        for section, key in (("clusters", "cluster"), ("contexts", "context"), ("users", "user")):
            for entry in data.get(section) or []:
                name = (entry or {}).get("name")
                if name and name not in merged[section]:
                    merged[section][name] = ((entry.get(key) or {}), base)
    return merged


def _resolve(value: str | None, base: Path) -> str | None:
    if not value:
        return None
    candidate = Path(value).expanduser()
    return str(candidate if candidate.is_absolute() else base / candidate)


def _decode(value: str | None, what: str) -> bytes | None:
    if not value:
        return None
    try:
        return base64.b64decode(value, validate=True)
    except (binascii.Error, ValueError) as err:
        raise KubeError(f"invalid {what}: {err}") from err


def _config_for_context(merged: dict[str, Any], current: str) -> ClusterConfig:
    if current not in merged["contexts"]:
        raise KubeError(f"context {current!r} not found")
    context, _ = merged["contexts"][current]
    cluster_name = context.get("cluster") or ""
    if cluster_name not in merged["clusters"]:
        raise KubeError(f"cluster {cluster_name!r} not found")
    cluster, cluster_base = merged["clusters"][cluster_name]
    server = cluster.get("server") or ""
    if not server:
        raise KubeError(f"no server found for cluster {cluster_name!r}")
    user: dict[str, Any] = {}
    user_base = cluster_base
    user_name = context.get("user") or ""
    if user_name:
        if user_name not in merged["users"]:
            raise KubeError(f"user {user_name!r} not found")
        user, user_base = merged["users"][user_name]

    token = user.get("token") or ""
    token_file = _resolve(user.get("tokenFile"), user_base)
    if not token and token_file:
        try:
            token = Path(token_file).read_text().strip()
        except OSError as err:
            raise KubeError(f"failed to read token file: {err}") from err

    return ClusterConfig(
        server=server.rstrip("/"),
        token=token,
        ca_file=_resolve(cluster.get("certificate-authority"), cluster_base),
        ca_data=_decode(cluster.get("certificate-authority-data"), "certificate-authority-data"),
        cert_file=_resolve(user.get("client-certificate"), user_base),
        key_file=_resolve(user.get("client-key"), user_base),
        cert_data=_decode(user.get("client-certificate-data"), "client-certificate-data"),
        key_data=_decode(user.get("client-key-data"), "client-key-data"),
        insecure=bool(cluster.get("insecure-skip-tls-verify")),
        context=current,
    )


class ApiClient:
    """A small read-only client for the Kubernetes REST API."""

    def __init__(self, config: ClusterConfig, transport: httpx.BaseTransport | None = None) -> None:
        self.config = config
        headers = {"Accept": "application/json"}
        if config.token:
            headers["Authorization"] = f"Bearer {config.token}"
        self._http = httpx.Client(
            base_url=config.server,
            headers=headers,
            verify=config.ssl_verify() if transport is None else True,
            transport=transport,
            timeout=30.0,
        )

    def get(self, path: str) -> dict[str, Any]:
        """GET a path and return the decoded JSON object."""
        try:
            response = self._http.get(path)
        except httpx.HTTPError as err:
            raise KubeError(f"GET {path} failed: {err}") from err
        if response.is_error:
            message = response.reason_phrase
            try:
                body = response.json()
            except ValueError:
                body = None
            if isinstance(body, dict) and body.get("message"):
                message = body["message"]
            raise KubeError(f"GET {path} failed: {response.status_code} {message}")
        try:
            data = response.json()
        except ValueError as err:
            raise KubeError(f"GET {path} returned invalid JSON: {err}") from err
        if not isinstance(data, dict):
            raise KubeError(f"GET {path} returned an unexpected body")
        return data

    def close(self) -> None:
        """Release the underlying connections."""
        self._http.close()

    def __enter__(self) -> ApiClient:
        return self

    def __exit__(self, *exc_info: object) -> None:
        self.close()


def _ns(namespace: str) -> str:
    return quote(namespace, safe="")


class Client:
    """Fetches workloads, namespaces and policies from a cluster."""

    def __init__(self, api: ApiClient, istio_enabled: bool = True) -> None:
        self.api = api
        self.istio_enabled = istio_enabled

    def _list(self, path: str, what: str, namespace: str) -> list[dict[str, Any]]:
        try:
            return list(self.api.get(path).get("items") or [])
        except KubeError as err:
            raise KubeError(f"failed to list {what} in namespace {namespace}: {err}") from err

    def get_workloads(self, namespaces: Iterable[str]) -> list[Workload]:
        """Return the Deployments, StatefulSets and DaemonSets of the namespaces."""
        workloads: list[Workload] = []
        for ns in namespaces:
            services = self._list(f"/api/v1/namespaces/{_ns(ns)}/services", "services", ns)
            for resource, kind in _WORKLOAD_KINDS:
                items = self._list(f"/apis/apps/v1/namespaces/{_ns(ns)}/{resource}", resource, ns)
                workloads.extend(
                    enrich_ports_with_services(workload_from_manifest(item, kind), services)
                    for item in items
                )
        return workloads

    def get_policies(self, namespaces: Iterable[str]) -> list[Policy]:
        """Return NetworkPolicies and, where available, Istio AuthorizationPolicies."""
        policies: list[Policy] = []
        for ns in namespaces:
            for item in self._list(self._network_policy_path(ns), "network policies", ns):
                policy = NetworkPolicy.from_dict(item)
                policies.append(Policy(
                    name=policy.name,
                    namespace=policy.namespace,
                    type=PolicyType.K8S_NETWORK_POLICY,
                    k8s_network_policy=policy,
                ))
            if not self.istio_enabled:
                continue
            try:
                items = self.api.get(self._authorization_policy_path(ns)).get("items") or []
            except KubeError as err:
                print(f"Warning: failed to list Istio AuthorizationPolicies in namespace {ns}: {err}")
                continue
            for item in items:
                auth = AuthorizationPolicy.from_dict(item)
                policies.append(Policy(
                    name=auth.name,
                    namespace=auth.namespace,
                    type=PolicyType.ISTIO_AUTHORIZATION_POLICY,
                    istio_auth_policy=auth,
                ))
        return policies

    def get_namespaces(self, namespaces: Iterable[str]) -> list[NamespaceInfo]:
        """Return the names and labels of the namespaces."""
        result: list[NamespaceInfo] = []
        for ns in namespaces:
            try:
                data = self.api.get(f"/api/v1/namespaces/{_ns(ns)}")
            except KubeError as err:
                raise KubeError(f"failed to get namespace {ns}: {err}") from err
            metadata = data.get("metadata") or {}
            result.append(NamespaceInfo(
                name=metadata.get("name") or "",
                labels=dict(metadata.get("labels") or {}),
            ))
        return result

    def get_network_policies(self, namespaces: Iterable[str]) -> list[NetworkPolicy]:
        """Return only the Kubernetes NetworkPolicies of the namespaces."""
        return [
            NetworkPolicy.from_dict(item)
            for ns in namespaces
            for item in self._list(self._network_policy_path(ns), "network policies", ns)
        ]

    def get_authorization_policies(self, namespaces: Iterable[str]) -> list[AuthorizationPolicy]:
        """Return the Istio AuthorizationPolicies of the namespaces."""
        if not self.istio_enabled:
            return []
        return [
            AuthorizationPolicy.from_dict(item)
            for ns in namespaces
            for item in self._list(self._authorization_policy_path(ns), "authorization policies", ns)
        ]

    @staticmethod
    def _network_policy_path(ns: str) -> str:
        return f"/apis/networking.k8s.io/v1/namespaces/{_ns(ns)}/networkpolicies"

    @staticmethod
    def _authorization_policy_path(ns: str) -> str:
        return f"/apis/security.istio.io/v1/namespaces/{_ns(ns)}/authorizationpolicies"


def new_client(kubeconfig: str | os.PathLike[str] | None = None) -> Client:
    """Create a client from the in-cluster configuration or, failing that, a kubeconfig."""
    try:
        config = ClusterConfig.in_cluster()
    except KubeError:
        config = ClusterConfig.from_kubeconfig(kubeconfig or None)
    return Client(ApiClient(config))