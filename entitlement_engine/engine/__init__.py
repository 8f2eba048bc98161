"""
Reconciliation Engine Package.

This package provides the core reconciler that enriches entitlements, drives
the approval state machine and maintains account policy associations.
"""

from .enrichment import build_state_filter
from .locks import AccountLockRegistry
from .reconciler import EntitlementReconciler

__all__ = [
    "EntitlementReconciler",
    "AccountLockRegistry",
    "build_state_filter",
]
