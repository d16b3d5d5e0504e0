"""kubecsr: short-lived Kubernetes client certificates on demand."""

__version__ = "0.1.0"
