"""
Reconciliation Module

Drift detection between cached bot stats and the ledger.
"""
