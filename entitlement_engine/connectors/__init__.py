"""
Connectors Package for the Entitlement Engine.

This package defines the contracts for the external collaborators (the
marketplace procurement service, the analytics lookup service and the
account/policy stores) and provides HTTP and in-memory implementations.
"""

from .base import (
    AccountStore,
    LookupService,
    PolicyStore,
    ProcurementGateway,
    StoreResult,
)
from .lookup import InMemoryLookupService, LookupQuery, build_account_query, build_policy_query
from .procurement import HttpProcurementGateway, MockProcurementGateway

__all__ = [
    "AccountStore",
    "LookupService",
    "PolicyStore",
    "ProcurementGateway",
    "StoreResult",
    "LookupQuery",
    "InMemoryLookupService",
    "build_policy_query",
    "build_account_query",
    "HttpProcurementGateway",
    "MockProcurementGateway",
]
