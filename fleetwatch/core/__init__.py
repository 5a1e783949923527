"""Cross-cutting error taxonomy and Prometheus metrics."""
