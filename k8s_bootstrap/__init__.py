"""Node lifecycle and self-healing coordination for a self-managed Kubernetes control plane."""

__version__ = "0.1.0"
