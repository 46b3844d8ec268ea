"""Prometheus metrics for the edge and the provisioning workers."""

from cloakroute.observability.metrics import generate_metrics, get_content_type

__all__ = ["generate_metrics", "get_content_type"]
