"""
Policy Catalog for the Entitlement Engine.

This module reads the policy catalog configuration file and resolves
internal policies by id or by the marketplace (product, plan) pair they are
bound to.
"""

import logging
from pathlib import Path
from typing import Any, Dict, List, Optional, Union

import yaml

from ..connectors.base import PolicyStore, StoreResult
from ..models import Policy

logger = logging.getLogger(__name__)


class PolicyCatalog(PolicyStore):
    """
    Tenant-scoped catalog of internal policies.

    Reads ``policies.yaml``, shaped as::

        projects:
          <project_id>:
            policies:
              - policyId: ...
                name: ...
                marketplace:
                  solutionId: ...
                  planId: ...
                  enableAutoApprove: true

    When several policies are bound to the same (solutionId, planId) pair,
    the first one in file order is the marketplace policy for that SKU.
    """

    def __init__(self, policy_file: Optional[Union[str, Path]] = None):
        """
        Initialize the policy catalog.

        Args:
            policy_file: Path to the YAML catalog. If None, the catalog
                        starts empty and is filled with ``add_policy``.
        """
        self.policy_file = Path(policy_file) if policy_file else None
        self.policies: Dict[str, List[Policy]] = {}

        self._load_configuration()

    def _load_configuration(self):
        """Load the policy catalog from YAML."""
        if not self.policy_file:
            return

        if not self.policy_file.exists():
            logger.warning(f"Policy catalog file not found: {self.policy_file}")
            return

        try:
            with open(self.policy_file, encoding='utf-8') as f:
                catalog = yaml.safe_load(f) or {}

            policies: Dict[str, List[Policy]] = {}
            for project_id, project_config in (catalog.get("projects") or {}).items():
                records = (project_config or {}).get("policies", [])
                policies[project_id] = [Policy.model_validate(record) for record in records]
            self.policies = policies

            total = sum(len(p) for p in self.policies.values())
            logger.info(f"Loaded {total} policies from {self.policy_file}")

        except Exception as e:
            logger.error(f"Failed to load policy catalog: {e}")
            raise

    async def get_policy(self, project_id: str, policy_id: str) -> StoreResult:
        for policy in self.policies.get(project_id, []):
            if policy.policy_id == policy_id:
                return StoreResult.found(policy.model_copy(deep=True))
        return StoreResult.not_found(f"Policy {policy_id} not found")

    async def find_marketplace_policy(self, project_id: str, product: Optional[str],
                                      plan: Optional[str]) -> StoreResult:
        logger.debug(f"Resolving marketplace policy for product='{product}', plan='{plan}'")

        for policy in self.policies.get(project_id, []):
            marketplace = policy.marketplace
            if marketplace and marketplace.solution_id == product and marketplace.plan_id == plan:
                return StoreResult.found(policy.model_copy(deep=True))

        return StoreResult.not_found(f"No policy bound to product '{product}' plan '{plan}'")

    def add_policy(self, project_id: str, policy: Union[Policy, Dict[str, Any]]) -> Policy:
        """Append a policy to a project's catalog."""
        if not isinstance(policy, Policy):
            policy = Policy.model_validate(policy)
        self.policies.setdefault(project_id, []).append(policy)
        return policy

    def get_policies(self, project_id: str) -> List[Policy]:
        """Get all policies of a project in catalog order."""
        return list(self.policies.get(project_id, []))

    def reload_config(self):
        """Reload the catalog file (useful for dynamic updates)."""
        logger.info("Reloading policy catalog")
        self._load_configuration()
