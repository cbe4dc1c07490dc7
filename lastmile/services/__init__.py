"""Domain services for last-mile dispatch."""
