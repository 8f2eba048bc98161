"""
Entitlement enrichment helpers.

Pure functions that build the procurement filter and attach policy and
account metadata from lookup rows to a list of entitlements.
"""

import logging
from typing import Any, Dict, Iterable, List, Optional, Union

from ..connectors.lookup import marketplace_key
from ..models import Entitlement, EntitlementState, PolicyRef

logger = logging.getLogger(__name__)

StateLike = Union[EntitlementState, str]


def build_state_filter(state_filter: Optional[Iterable[StateLike]] = None) -> str:
    """
    Build the procurement filter expression for a set of states.

    An empty or missing filter selects pending activations.

    >>> build_state_filter(["A", "B"])
    'state=A OR state=B'
    """
    states: Dict[str, None] = {}
    for state in state_filter or []:
        value = state.value if isinstance(state, EntitlementState) else str(state).strip()
        if value:
            states.setdefault(value, None)

    if not states:
        states = {EntitlementState.ENTITLEMENT_ACTIVATION_REQUESTED.value: None}

    return " OR ".join(f"state={state}" for state in states)


def distinct_account_names(entitlements: List[Entitlement]) -> List[str]:
    """Marketplace account references, once each, in first-seen order."""
    names: Dict[str, None] = {}
    for entitlement in entitlements:
        if entitlement.account:
            names.setdefault(entitlement.account, None)
    return list(names)


def distinct_marketplace_keys(entitlements: List[Entitlement]) -> List[str]:
    """(product, plan) keys, once each, in first-seen order."""
    keys: Dict[str, None] = {}
    for entitlement in entitlements:
        keys.setdefault(marketplace_key(entitlement.product, entitlement.plan), None)
    return list(keys)


def apply_policy_rows(entitlements: List[Entitlement], rows: List[Dict[str, Any]]) -> int:
    """
    Attach the matching policy to each entitlement.

    The first row for a marketplace key wins. Entitlements without a match
    keep ``policy`` unset.

    Returns:
        Number of entitlements a policy was attached to
    """
    policies: Dict[str, PolicyRef] = {}
    for row in rows:
        policies.setdefault(row.get("marketplaceId"), PolicyRef(
            policy_id=row["policyId"],
            name=row.get("name"),
            description=row.get("description"),
        ))

    attached = 0
    for entitlement in entitlements:
        policy = policies.get(marketplace_key(entitlement.product, entitlement.plan))
        if policy:
            entitlement.policy = policy.model_copy()
            attached += 1
    return attached


def reset_activation(entitlements: List[Entitlement]) -> None:
    for entitlement in entitlements:
        entitlement.activated = False


def apply_account_rows(entitlements: List[Entitlement], rows: List[Dict[str, Any]]) -> int:
    """
    Attach account data to each entitlement with a matching account row.

    An entitlement is marked activated only if a policy was already
    attached.

    Returns:
        Number of entitlements marked activated
    """
    accounts: Dict[str, Dict[str, Any]] = {}
    for row in rows:
        accounts.setdefault(row.get("accountName"), row)

    activated = 0
    for entitlement in entitlements:
        account = accounts.get(entitlement.account) if entitlement.account else None
        if not account:
            continue
        entitlement.email = account.get("email")
        entitlement.account_id = account.get("accountId")
        if entitlement.policy and entitlement.account_id:
            entitlement.activated = True
            activated += 1
    return activated
