"""
Stores Package.

Exports AccountStateStore and PolicyCatalog.
"""

from .account_store import AccountStateStore
from .policy_catalog import PolicyCatalog

__all__ = ["AccountStateStore", "PolicyCatalog"]
