"""Core infrastructure: audit events and the work queue."""
