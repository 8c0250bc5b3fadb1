"""Prometheus exporter for OpenCTI liveness and data freshness."""

__version__ = "0.1.0"
