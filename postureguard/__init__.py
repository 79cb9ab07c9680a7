"""Compliance reconciliation for zero-trust host baselines."""

__version__ = "0.4.0"
