"""
Marketplace Entitlement Engine

Reconciles marketplace entitlements (purchases and subscriptions granted by
an external procurement service) with internal accounts and policies, so a
purchased plan becomes access rights for a specific user account.
"""

__version__ = "1.0.0"
__author__ = "Entitlement Engine Team"
__email__ = "team@example.com"

from .config import EngineSettings, load_settings
from .engine.reconciler import EntitlementReconciler
from .stores.account_store import AccountStateStore
from .stores.policy_catalog import PolicyCatalog

__all__ = [
    "EngineSettings",
    "load_settings",
    "EntitlementReconciler",
    "AccountStateStore",
    "PolicyCatalog",
]
