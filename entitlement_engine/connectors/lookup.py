"""
Analytics lookup queries used for bulk entitlement enrichment.

The reconciler resolves policies and accounts for a whole entitlement list
with two parameterized queries: one against the policy view and one against
the account view, both addressed as ``project.dataset.table``.
"""

import logging
from dataclasses import dataclass, field
from typing import Any, Dict, List

from .base import LookupService

logger = logging.getLogger(__name__)

POLICY_LOOKUP = "policy_by_marketplace_id"
ACCOUNT_LOOKUP = "account_by_marketplace_name"

MARKETPLACE_KEY_SEPARATOR = "$||$"


@dataclass
class LookupQuery:
    """A named, parameterized query."""
    name: str
    project_id: str
    query: str
    params: Dict[str, Any] = field(default_factory=dict)


def get_table_fqdn(project_id: str, dataset_id: str, table_id: str) -> str:
    """Get the fully qualified name of a project's table or view."""
    return f"{project_id}.{dataset_id}.{table_id}"


def marketplace_key(product: Any, plan: Any) -> str:
    """Join a (product, plan) pair into the key the policy view exposes."""
    return f"{product}{MARKETPLACE_KEY_SEPARATOR}{plan}"


def build_policy_query(project_id: str, dataset_id: str, view_id: str,
                       products: List[str]) -> LookupQuery:
    """
    Build the policy lookup for a set of marketplace keys.

    Args:
        project_id: Project owning the policy view
        dataset_id: Dataset holding the view
        view_id: Policy view name
        products: Marketplace keys built with ``marketplace_key``
    """
    table = get_table_fqdn(project_id, dataset_id, view_id)
    query = f"""WITH policyData AS (
    SELECT
        policyId,
        marketplace,
        CONCAT(marketplace.solutionId, '{MARKETPLACE_KEY_SEPARATOR}', marketplace.planId) AS marketplaceId,
        name,
        description
    FROM `{table}`
    WHERE marketplace IS NOT NULL
)
SELECT *
FROM policyData
WHERE marketplaceId IN UNNEST(@products)"""
    return LookupQuery(name=POLICY_LOOKUP, project_id=project_id, query=query,
                       params={"products": products})


def build_account_query(project_id: str, dataset_id: str, view_id: str,
                        account_names: List[str]) -> LookupQuery:
    """
    Build the account lookup for a set of marketplace account references.

    Args:
        project_id: Project owning the account view
        dataset_id: Dataset holding the view
        view_id: Account view name
        account_names: Marketplace account references
    """
    table = get_table_fqdn(project_id, dataset_id, view_id)
    query = f"""SELECT a.accountId, m.accountName, a.email
FROM `{table}` a
CROSS JOIN UNNEST(a.marketplace) AS m
WHERE m.accountName IN UNNEST(@accountNames)"""
    return LookupQuery(name=ACCOUNT_LOOKUP, project_id=project_id, query=query,
                       params={"accountNames": account_names})


class InMemoryLookupService(LookupService):
    """
    Lookup service answering the two enrichment queries from local stores.

    Rows have the same shape the analytics views return: policy rows carry
    ``policyId``, ``marketplace``, ``marketplaceId``, ``name`` and
    ``description``; account rows carry ``accountId``, ``accountName`` and
    ``email``.
    """

    def __init__(self, account_store, policy_catalog):
        self.account_store = account_store
        self.policy_catalog = policy_catalog
        self.executed: List[LookupQuery] = []

    async def execute_query(self, query: LookupQuery) -> List[Dict[str, Any]]:
        self.executed.append(query)
        if query.name == POLICY_LOOKUP:
            return self._policy_rows(query.project_id, set(query.params.get("products", [])))
        if query.name == ACCOUNT_LOOKUP:
            return self._account_rows(query.project_id, set(query.params.get("accountNames", [])))
        raise ValueError(f"Unsupported lookup query: {query.name}")

    def _policy_rows(self, project_id: str, products: set) -> List[Dict[str, Any]]:
        rows = []
        for policy in self.policy_catalog.get_policies(project_id):
            if policy.marketplace is None:
                continue
            key = marketplace_key(policy.marketplace.solution_id, policy.marketplace.plan_id)
            if key in products:
                rows.append({
                    "policyId": policy.policy_id,
                    "marketplace": policy.marketplace.model_dump(by_alias=True),
                    "marketplaceId": key,
                    "name": policy.name,
                    "description": policy.description,
                })
        logger.debug(f"Policy lookup matched {len(rows)} rows")
        return rows

    def _account_rows(self, project_id: str, account_names: set) -> List[Dict[str, Any]]:
        rows = []
        for account in self.account_store.get_all_accounts(project_id):
            for account_name in account.marketplace_account_names():
                if account_name in account_names:
                    rows.append({
                        "accountId": account.account_id,
                        "accountName": account_name,
                        "email": account.email,
                    })
        logger.debug(f"Account lookup matched {len(rows)} rows")
        return rows
