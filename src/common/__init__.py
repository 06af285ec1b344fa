"""Shared helpers used across the proxy modules."""
