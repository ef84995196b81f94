"""Shared utilities: logging, retry, configuration."""
