"""Batch generation runs coordinated through a file-backed work ledger."""

__version__ = "0.1.0"
