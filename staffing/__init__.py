"""Recurring shift generation and reconciliation for facility staffing."""

__version__ = "0.1.0"
