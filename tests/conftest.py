"""
Shared fixtures for the Entitlement Engine tests.
"""

import pytest

from entitlement_engine.audit import AuditLogger
from entitlement_engine.connectors import InMemoryLookupService, MockProcurementGateway
from entitlement_engine.engine import EntitlementReconciler
from entitlement_engine.stores import AccountStateStore, PolicyCatalog

PROJECT_ID = "p1"


@pytest.fixture
def gateway():
    """In-memory procurement gateway."""
    return MockProcurementGateway()


@pytest.fixture
def account_store():
    """In-memory account store."""
    return AccountStateStore()


@pytest.fixture
def policy_catalog():
    """Empty policy catalog."""
    return PolicyCatalog()


@pytest.fixture
def lookup_service(account_store, policy_catalog):
    """Lookup service answering from the local stores."""
    return InMemoryLookupService(account_store, policy_catalog)


@pytest.fixture
def audit_logger(tmp_path):
    """Audit logger writing to a temporary directory."""
    return AuditLogger(tmp_path / "audit")


@pytest.fixture
def reconciler(gateway, lookup_service, account_store, policy_catalog, audit_logger):
    """Reconciler wired to the in-memory collaborators."""
    return EntitlementReconciler(
        lambda project_id: gateway,
        lookup_service,
        account_store,
        policy_catalog,
        audit_logger=audit_logger,
    )


@pytest.fixture
def add_entitlement(gateway):
    """Register an entitlement with the mock gateway and return its name."""

    def _add(entitlement_id, account="acct-1", product="X", plan="Y",
             state="ENTITLEMENT_ACTIVATION_REQUESTED", **extra):
        name = f"providers/{PROJECT_ID}/entitlements/{entitlement_id}"
        gateway.add_entitlement({
            "name": name,
            "account": account,
            "product": product,
            "plan": plan,
            "state": state,
            **extra,
        })
        return name

    return _add


@pytest.fixture
def add_policy(policy_catalog):
    """Add a marketplace policy to the catalog."""

    def _add(policy_id, product="X", plan="Y", auto_approve=False, project_id=PROJECT_ID,
             name=None, description=None):
        return policy_catalog.add_policy(project_id, {
            "policyId": policy_id,
            "name": name or f"Policy {policy_id}",
            "description": description,
            "marketplace": {
                "solutionId": product,
                "planId": plan,
                "enableAutoApprove": auto_approve,
            },
        })

    return _add


@pytest.fixture
def add_account(account_store):
    """Add an account linked to a marketplace account reference."""

    def _add(account_id, email="u@x.com", marketplace_account="acct-1", policies=None,
             project_id=PROJECT_ID):
        marketplace = [{"accountName": marketplace_account}] if marketplace_account else []
        return account_store.add_account(project_id, {
            "accountId": account_id,
            "email": email,
            "policies": policies or [],
            "marketplace": marketplace,
        })

    return _add
