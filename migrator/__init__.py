"""Bulk, cross-repository migrations published as GitHub pull requests."""

__version__ = "0.1.0"
