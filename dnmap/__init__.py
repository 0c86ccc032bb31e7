"""Network maps of Kubernetes workloads and the policies that connect them."""

__version__ = "0.1.0"