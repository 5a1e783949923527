"""
FleetWatch - fleet health and adaptive failover core.

Probes worker/relay nodes, tracks presence, detects stagnant nodes and
swaps a failing primary provider for a local fallback.
"""

__version__ = "1.0.0"
