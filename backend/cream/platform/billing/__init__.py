"""Billing reconciliation engine."""
