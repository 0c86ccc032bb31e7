"""Kubernetes and Istio resources and the API client that fetches them."""

__all__ = ["client", "policies", "types"]