"""FleetWatch backend components."""
