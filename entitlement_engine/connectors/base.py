"""
Base Connector Classes for the Entitlement Engine.

This module defines the contracts the reconciler uses against its external
collaborators: the marketplace procurement service, the analytics lookup
service and the account/policy stores. Concrete implementations live in the
sibling modules and in ``entitlement_engine.stores``.
"""

from abc import ABC, abstractmethod
from typing import Any, Dict, List, Optional

from ..models import Account, Entitlement, Policy


class StoreResult:
    """Result of a store lookup."""

    def __init__(self, success: bool, data: Optional[Any] = None, message: str = ""):
        self.success = success
        self.data = data
        self.message = message

    def __bool__(self):
        return self.success

    def __str__(self):
        return f"{'✓' if self.success else '✗'} {self.message}"

    @classmethod
    def found(cls, data: Any, message: str = "") -> "StoreResult":
        return cls(True, data, message)

    @classmethod
    def not_found(cls, message: str) -> "StoreResult":
        return cls(False, None, message)


class ProcurementGateway(ABC):
    """
    The marketplace's entitlement authority.

    All mutating calls operate on the full entitlement resource name
    (``providers/{project}/entitlements/{id}``).
    """

    @abstractmethod
    def get_entitlement_name(self, project_id: str, entitlement_id: str) -> str:
        """Build the full resource name for a bare entitlement id."""

    @abstractmethod
    async def list_entitlements(self, filter_expr: str) -> Dict[str, Any]:
        """
        List entitlements matching a filter expression.

        Returns:
            Mapping with an ``entitlements`` list of raw entitlement dicts
        """

    @abstractmethod
    async def get_entitlement(self, name: str) -> Entitlement:
        """Fetch a single entitlement, including ``newPendingPlan`` if any."""

    @abstractmethod
    async def approve_entitlement(self, name: str) -> Any:
        """Approve an entitlement activation."""

    @abstractmethod
    async def reject_entitlement(self, name: str, reason: Optional[str]) -> Any:
        """Reject an entitlement activation."""

    @abstractmethod
    async def update_entitlement_message(self, name: str, message: Optional[str]) -> Any:
        """Attach a message for the purchaser to the entitlement."""

    @abstractmethod
    async def reject_plan_change(self, name: str, pending_plan: Optional[str],
                                 reason: Optional[str]) -> Any:
        """Reject a pending plan change."""


class LookupService(ABC):
    """Executes parameterized analytics queries for bulk enrichment."""

    @abstractmethod
    async def execute_query(self, query: Any) -> List[Dict[str, Any]]:
        """
        Run a lookup query.

        Args:
            query: ``LookupQuery`` carrying the query text and parameters

        Returns:
            List of result rows
        """


class AccountStore(ABC):
    """Storage for internal accounts, scoped per project."""

    @abstractmethod
    async def get_account(self, project_id: str, account_id: str) -> StoreResult:
        """Get an account by internal id."""

    @abstractmethod
    async def create_or_update_account(self, project_id: str, account_id: str,
                                       account: Account) -> StoreResult:
        """Persist the full account record."""

    @abstractmethod
    async def find_marketplace_account(self, project_id: str, account_name: str) -> StoreResult:
        """Find the account linked to a marketplace account reference."""


class PolicyStore(ABC):
    """Storage for internal policies, scoped per project."""

    @abstractmethod
    async def get_policy(self, project_id: str, policy_id: str) -> StoreResult:
        """Get a policy by internal id."""

    @abstractmethod
    async def find_marketplace_policy(self, project_id: str, product: Optional[str],
                                      plan: Optional[str]) -> StoreResult:
        """Resolve the policy bound to a marketplace (product, plan) pair."""


def policy_from_result(result: StoreResult) -> Optional[Policy]:
    """Return the policy carried by a successful lookup, if any."""
    if result and isinstance(result.data, Policy):
        return result.data
    return None
