"""Reconciliation logic for Dataset resources, run against an in-memory object store."""

__version__ = "0.1.0"