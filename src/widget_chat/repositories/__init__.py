"""Directory contracts and implementations."""
