"""
Core data models for the Entitlement Engine.

This module defines the Pydantic models used throughout the system for
marketplace entitlements, internal policies and accounts, operation results
and audit records. JSON payloads use camelCase field names; Python code uses
snake_case attributes.
"""

from datetime import datetime, timezone
from enum import Enum
from typing import Any, Dict, List, Optional

from pydantic import BaseModel, ConfigDict, Field, field_validator
from pydantic.alias_generators import to_camel


def _utcnow() -> datetime:
    return datetime.now(timezone.utc)


class EntitlementState(str, Enum):
    """Entitlement states with a supported transition."""
    ENTITLEMENT_ACTIVATION_REQUESTED = "ENTITLEMENT_ACTIVATION_REQUESTED"
    ENTITLEMENT_PENDING_PLAN_CHANGE_APPROVAL = "ENTITLEMENT_PENDING_PLAN_CHANGE_APPROVAL"


class ApprovalStatus(str, Enum):
    """Decision requested by a reviewer for an entitlement."""
    APPROVE = "approve"
    REJECT = "reject"
    COMMENT = "comment"


class TransitionOutcome(str, Enum):
    """What the approval state machine did for a (state, status) pair."""
    APPROVED = "APPROVED"
    REJECTED = "REJECTED"
    COMMENTED = "COMMENTED"
    PLAN_CHANGE_APPROVED = "PLAN_CHANGE_APPROVED"
    PLAN_CHANGE_REJECTED = "PLAN_CHANGE_REJECTED"
    UNSUPPORTED = "UNSUPPORTED"


class ReconciliationAction(str, Enum):
    """Outcome of a background (event driven) reconciliation operation."""
    APPROVED = "APPROVED"
    APPROVAL_FAILED = "APPROVAL_FAILED"
    REMOVED = "REMOVED"
    POLICY_NOT_ASSOCIATED = "POLICY_NOT_ASSOCIATED"
    POLICY_NOT_FOUND = "POLICY_NOT_FOUND"
    AUTO_APPROVE_DISABLED = "AUTO_APPROVE_DISABLED"
    NO_MARKETPLACE_ACCOUNT = "NO_MARKETPLACE_ACCOUNT"
    ACCOUNT_NOT_FOUND = "ACCOUNT_NOT_FOUND"
    IGNORED = "IGNORED"


class CamelModel(BaseModel):
    """Base model accepting and emitting camelCase JSON keys."""
    model_config = ConfigDict(alias_generator=to_camel, populate_by_name=True)


class PolicyRef(CamelModel):
    """Policy summary attached to an entitlement during enrichment."""
    policy_id: str
    name: Optional[str] = None
    description: Optional[str] = None


class Entitlement(CamelModel):
    """
    A marketplace grant as returned by the procurement service.

    Unknown fields from the procurement API are preserved. The enrichment
    fields (policy, email, account_id, activated) are attached in memory by
    the reconciler and never written back.
    """
    model_config = ConfigDict(alias_generator=to_camel, populate_by_name=True, extra="allow")

    name: str = Field(..., description="Full entitlement resource name")
    account: Optional[str] = Field(None, description="Marketplace account reference")
    product: Optional[str] = None
    plan: Optional[str] = None
    state: Optional[str] = None
    new_pending_plan: Optional[str] = None
    policy: Optional[PolicyRef] = None
    email: Optional[str] = None
    account_id: Optional[str] = None
    activated: bool = False


class MarketplacePlan(CamelModel):
    """Marketplace SKU a policy is bound to."""
    solution_id: str
    plan_id: str
    enable_auto_approve: bool = False


class Policy(CamelModel):
    """Internal authorization unit."""
    model_config = ConfigDict(alias_generator=to_camel, populate_by_name=True, extra="allow")

    policy_id: str
    name: Optional[str] = None
    description: Optional[str] = None
    marketplace: Optional[MarketplacePlan] = None

    def to_ref(self) -> PolicyRef:
        return PolicyRef(policy_id=self.policy_id, name=self.name, description=self.description)


class MarketplaceAccountLink(CamelModel):
    """Link between an internal account and a marketplace purchaser."""
    model_config = ConfigDict(alias_generator=to_camel, populate_by_name=True, extra="allow")

    account_name: str


class Account(CamelModel):
    """
    Internal consumer identity.

    ``policies`` holds bare policy ids with unique keys. Legacy records that
    store ``{"policyId": ...}`` objects, nulls or blank ids are normalized
    when the record is parsed, so business logic only sees the canonical form.
    """
    model_config = ConfigDict(alias_generator=to_camel, populate_by_name=True, extra="allow")

    account_id: str
    email: Optional[str] = None
    name: Optional[str] = None
    policies: List[str] = Field(default_factory=list)
    created_by: Optional[str] = None
    marketplace: List[MarketplaceAccountLink] = Field(default_factory=list)

    @field_validator("policies", mode="before")
    @classmethod
    def normalize_policies(cls, v: Any) -> List[str]:
        """Collapse legacy policy entries into unique, non-blank policy ids."""
        if v is None:
            return []
        policy_ids: Dict[str, None] = {}
        for entry in v:
            if isinstance(entry, dict):
                entry = entry.get("policyId") or entry.get("policy_id")
            if entry is None or not isinstance(entry, str) or not entry.strip():
                continue
            policy_ids.setdefault(entry, None)
        return list(policy_ids)

    def has_policy(self, policy_id: str) -> bool:
        return policy_id in self.policies

    def marketplace_account_names(self) -> List[str]:
        return [link.account_name for link in self.marketplace]


class OperationResult(CamelModel):
    """Structured result returned to the inbound surface."""
    success: bool
    code: Optional[int] = None
    data: Any = None
    errors: List[Any] = Field(default_factory=list)
    outcome: Optional[TransitionOutcome] = None

    @classmethod
    def ok(cls, data: Any = None, outcome: Optional[TransitionOutcome] = None) -> "OperationResult":
        return cls(success=True, data=data, outcome=outcome)

    @classmethod
    def failure(
        cls,
        context: str,
        cause: Any,
        code: Optional[int] = None,
        outcome: Optional[TransitionOutcome] = None,
    ) -> "OperationResult":
        return cls(success=False, code=code, errors=[context, str(cause)], outcome=outcome)

    def status_code(self) -> int:
        """HTTP status mirroring ``code``, defaulting to 200/500."""
        if self.code is not None:
            return self.code
        return 200 if self.success else 500


class ReconciliationOutcome(CamelModel):
    """Result of a background operation (auto-approve, cancel, removal)."""
    action: ReconciliationAction
    entitlement_name: Optional[str] = None
    account_id: Optional[str] = None
    policy_id: Optional[str] = None
    message: str = ""
    errors: List[Any] = Field(default_factory=list)


class AuditRecord(BaseModel):
    """Audit record for every reconciliation decision."""
    id: str = Field(..., description="Unique audit record ID")
    timestamp: datetime = Field(default_factory=_utcnow)
    project_id: str
    operation: str = Field(..., description="Engine operation (approve, reject, remove, etc.)")
    entitlement_name: Optional[str] = None
    account_id: Optional[str] = None
    policy_id: Optional[str] = None
    success: bool = Field(..., description="Whether the action succeeded")
    error_message: Optional[str] = Field(None, description="Error details if failed")
    metadata: Dict[str, Any] = Field(default_factory=dict)


# Type aliases for convenience
Entitlements = List[Entitlement]
AuditRecords = List[AuditRecord]
