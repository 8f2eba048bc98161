"""
Entitlement Reconciler for the Entitlement Engine.

Translates marketplace entitlements into policy associations on internal
accounts: lists and enriches pending entitlements, drives the approval state
machine against the procurement service, and keeps each account's policy
list consistent with the outcome.
"""

import asyncio
import json
import logging
from pathlib import Path
from typing import Any, Callable, Dict, Iterable, List, Optional, Union

from ..audit.audit_logger import AuditLogger
from ..config import EngineSettings
from ..connectors.base import (
    AccountStore,
    LookupService,
    PolicyStore,
    ProcurementGateway,
    policy_from_result,
)
from ..connectors.lookup import InMemoryLookupService, build_account_query, build_policy_query
from ..connectors.procurement import HttpProcurementGateway, MockProcurementGateway
from ..errors import (
    AccountNotFoundError,
    EntitlementEngineError,
    InvalidRequestError,
    UpstreamError,
)
from ..models import (
    Account,
    ApprovalStatus,
    Entitlement,
    EntitlementState,
    OperationResult,
    ReconciliationAction,
    ReconciliationOutcome,
    TransitionOutcome,
)
from ..stores.account_store import AccountStateStore
from ..stores.policy_catalog import PolicyCatalog
from .enrichment import (
    apply_account_rows,
    apply_policy_rows,
    build_state_filter,
    distinct_account_names,
    distinct_marketplace_keys,
    reset_activation,
)
from .locks import AccountLockRegistry

logger = logging.getLogger(__name__)

GatewayFactory = Callable[[str], ProcurementGateway]

ACTIVATION_REQUESTED = EntitlementState.ENTITLEMENT_ACTIVATION_REQUESTED
PENDING_PLAN_CHANGE = EntitlementState.ENTITLEMENT_PENDING_PLAN_CHANGE_APPROVAL

# marketplace notification type -> background operation
AUTO_APPROVE_EVENTS = {"ENTITLEMENT_CREATION_REQUESTED"}
CANCEL_EVENTS = {"ENTITLEMENT_CANCELLED", "ENTITLEMENT_DELETED"}


def _value(item: Any) -> Optional[str]:
    return item.value if hasattr(item, "value") else item


class EntitlementReconciler:
    """
    Reconciles marketplace entitlements with internal accounts and policies.

    Every operation is scoped by ``project_id``; the reconciler holds no
    tenant state of its own beyond the per-account lock registry.
    """

    def __init__(
        self,
        gateway_factory: GatewayFactory,
        lookup_service: LookupService,
        account_store: AccountStore,
        policy_store: PolicyStore,
        settings: Optional[EngineSettings] = None,
        audit_logger: Optional[AuditLogger] = None,
    ):
        """
        Initialize the reconciler.

        Args:
            gateway_factory: Returns the procurement gateway for a project
            lookup_service: Executes the bulk enrichment queries
            account_store: Internal account storage
            policy_store: Internal policy storage
            settings: Engine settings (dataset and view names)
            audit_logger: Optional audit trail for every decision
        """
        self.gateway_factory = gateway_factory
        self.lookup_service = lookup_service
        self.account_store = account_store
        self.policy_store = policy_store
        self.settings = settings or EngineSettings()
        self.audit_logger = audit_logger
        self.account_locks = AccountLockRegistry()

    @classmethod
    def from_settings(cls, settings: EngineSettings) -> "EntitlementReconciler":
        """Wire the default collaborators described by ``settings``."""
        account_store = AccountStateStore(settings.state_file)
        policy_catalog = PolicyCatalog(settings.policy_file)
        lookup_service = InMemoryLookupService(account_store, policy_catalog)

        if settings.mock_mode:
            mock_gateway = MockProcurementGateway(_load_mock_entitlements(settings.mock_entitlements_file))

            def gateway_factory(project_id: str) -> ProcurementGateway:
                return mock_gateway
        else:
            def gateway_factory(project_id: str) -> ProcurementGateway:
                return HttpProcurementGateway(
                    project_id,
                    base_url=settings.procurement.base_url,
                    access_token=settings.procurement.access_token,
                    timeout=settings.procurement.timeout_seconds,
                )

        audit_logger = AuditLogger(settings.audit_dir) if settings.audit_dir else None
        return cls(gateway_factory, lookup_service, account_store, policy_catalog,
                   settings=settings, audit_logger=audit_logger)

    async def list_procurements(
        self,
        project_id: str,
        state_filter: Optional[Iterable[Union[EntitlementState, str]]] = None,
    ) -> OperationResult:
        """
        List entitlements enriched with policy and account metadata.

        Args:
            project_id: Provider project
            state_filter: States to include; defaults to pending activations

        Returns:
            OperationResult whose data is the list of entitlements. A failed
            result carries no usable data.
        """
        try:
            gateway = self.gateway_factory(project_id)
            filter_expr = build_state_filter(state_filter)

            result = await gateway.list_entitlements(filter_expr)
            entitlements = [
                e if isinstance(e, Entitlement) else Entitlement.model_validate(e)
                for e in (result.get("entitlements") or [])
            ]

            policy_rows, account_rows = await asyncio.gather(
                self._lookup_policies(project_id, distinct_marketplace_keys(entitlements)),
                self._lookup_accounts(project_id, distinct_account_names(entitlements)),
            )

            apply_policy_rows(entitlements, policy_rows)
            reset_activation(entitlements)
            activated = apply_account_rows(entitlements, account_rows)

            logger.info(
                f"Listed {len(entitlements)} entitlements for {project_id} "
                f"({filter_expr}), {activated} activated"
            )
            return OperationResult.ok(entitlements)

        except Exception as e:
            logger.error(f"Failed to list entitlements for {project_id}: {e}")
            return OperationResult.failure("Failed to retrieve pending entitlement list", e)

    async def _lookup_policies(self, project_id: str, products: List[str]) -> List[Dict[str, Any]]:
        if not products:
            return []
        query = build_policy_query(project_id, self.settings.dataset_id,
                                   self.settings.policy_view_id, products)
        return await self.lookup_service.execute_query(query) or []

    async def _lookup_accounts(self, project_id: str, account_names: List[str]) -> List[Dict[str, Any]]:
        if not account_names:
            return []
        query = build_account_query(project_id, self.settings.dataset_id,
                                    self.settings.account_view_id, account_names)
        return await self.lookup_service.execute_query(query) or []

    async def approve_entitlement(
        self,
        project_id: str,
        name: str,
        status: Union[ApprovalStatus, str],
        reason: Optional[str] = None,
        account_id: Optional[str] = None,
        policy_id: Optional[str] = None,
        state: Union[EntitlementState, str] = ACTIVATION_REQUESTED,
    ) -> OperationResult:
        """
        Apply a reviewer decision to an entitlement.

        Args:
            project_id: Provider project
            name: Entitlement resource name
            status: One of approve, reject, comment
            reason: Rejection reason or message for the purchaser
            account_id: Internal account receiving the policy on approval
            policy_id: Policy granted on approval
            state: Current entitlement state

        Returns:
            OperationResult tagged with the TransitionOutcome. Unsupported
            (state, status) pairs return an UNSUPPORTED failure without
            calling the procurement service.
        """
        state = _value(state)
        status = _value(status)

        try:
            gateway = self.gateway_factory(project_id)

            if state == ACTIVATION_REQUESTED.value:
                if status == ApprovalStatus.APPROVE.value:
                    if not account_id or not policy_id:
                        raise InvalidRequestError("accountId and policyId are required to approve")
                    result = await gateway.approve_entitlement(name)
                    await self._associate_policy(project_id, account_id, policy_id)
                    self._audit(project_id, "approve", True, entitlement_name=name,
                                account_id=account_id, policy_id=policy_id)
                    return OperationResult.ok(result, TransitionOutcome.APPROVED)

                if status == ApprovalStatus.REJECT.value:
                    result = await gateway.reject_entitlement(name, reason)
                    self._audit(project_id, "reject", True, entitlement_name=name,
                                metadata={"reason": reason})
                    return OperationResult.ok(result, TransitionOutcome.REJECTED)

                if status == ApprovalStatus.COMMENT.value:
                    result = await gateway.update_entitlement_message(name, reason)
                    self._audit(project_id, "comment", True, entitlement_name=name,
                                metadata={"message": reason})
                    return OperationResult.ok(result, TransitionOutcome.COMMENTED)

            elif state == PENDING_PLAN_CHANGE.value and status in (
                ApprovalStatus.APPROVE.value, ApprovalStatus.REJECT.value
            ):
                entitlement = await gateway.get_entitlement(name)
                pending_plan = entitlement.new_pending_plan

                if status == ApprovalStatus.APPROVE.value:
                    # TODO: move the account from the current plan's policy to the
                    # pending plan's policy and call approvePlanChange; until then
                    # approval only acknowledges the request.
                    logger.warning(
                        f"Plan change approval for {name} to '{pending_plan}' performs no policy swap"
                    )
                    self._audit(project_id, "approve_plan_change", True, entitlement_name=name,
                                metadata={"pending_plan": pending_plan, "policy_swap": False})
                    return OperationResult.ok({}, TransitionOutcome.PLAN_CHANGE_APPROVED)

                result = await gateway.reject_plan_change(name, pending_plan, reason)
                self._audit(project_id, "reject_plan_change", True, entitlement_name=name,
                            metadata={"pending_plan": pending_plan, "reason": reason})
                return OperationResult.ok(result, TransitionOutcome.PLAN_CHANGE_REJECTED)

            logger.warning(f"No supported transition for state '{state}' and status '{status}'")
            return OperationResult.failure(
                "Unsupported entitlement transition",
                f"state '{state}' does not support status '{status}'",
                code=400,
                outcome=TransitionOutcome.UNSUPPORTED,
            )

        except Exception as e:
            logger.error(f"Failed to {status} entitlement {name}: {e}")
            self._audit(project_id, str(status), False, entitlement_name=name,
                        account_id=account_id, policy_id=policy_id, error_message=str(e))
            code = e.code if isinstance(e, EntitlementEngineError) else None
            return OperationResult.failure("Failed to approve entitlement", e, code=code)

    async def _associate_policy(self, project_id: str, account_id: str, policy_id: str) -> bool:
        """Add a policy to an account if absent. Returns True if the account changed."""
        async with self.account_locks.lock(project_id, account_id):
            account = await self._load_account(project_id, account_id)
            if account.has_policy(policy_id):
                logger.info(f"Account {account_id} already has policy {policy_id}")
                return False

            account.policies.append(policy_id)
            account.created_by = account.email
            await self._save_account(project_id, account_id, account)
            logger.info(f"Associated policy {policy_id} with account {account_id}")
            return True

    async def _load_account(self, project_id: str, account_id: str) -> Account:
        result = await self.account_store.get_account(project_id, account_id)
        if not result or result.data is None:
            raise AccountNotFoundError(project_id, account_id)
        return result.data

    async def _save_account(self, project_id: str, account_id: str, account: Account) -> None:
        saved = await self.account_store.create_or_update_account(project_id, account_id, account)
        if not saved:
            raise UpstreamError(f"Failed to save account {account_id}: {saved.message}")

    async def remove_entitlement(self, project_id: str, account_id: str,
                                 policy_id: str) -> ReconciliationOutcome:
        """
        Remove a policy from an account.

        Missing accounts and policies that are not associated are no-ops.
        Store failures propagate to the caller.
        """
        outcome = ReconciliationOutcome(
            action=ReconciliationAction.REMOVED, account_id=account_id, policy_id=policy_id
        )

        async with self.account_locks.lock(project_id, account_id):
            result = await self.account_store.get_account(project_id, account_id)
            if not result or result.data is None:
                logger.error(f"Account '{account_id}' not found, policy '{policy_id}' will not be removed.")
                outcome.action = ReconciliationAction.ACCOUNT_NOT_FOUND
                outcome.message = f"Account {account_id} not found"
                return outcome

            account: Account = result.data
            if not account.has_policy(policy_id):
                logger.error(f"Policy not found: '{policy_id}', account '{account_id}' will not be updated.")
                outcome.action = ReconciliationAction.POLICY_NOT_ASSOCIATED
                outcome.message = f"Policy {policy_id} is not associated with account {account_id}"
                return outcome

            remaining = [p for p in account.policies if p != policy_id]
            # drop blank ids left behind by legacy records
            account.policies = [p for p in remaining if p and p.strip()]
            account.created_by = account.email
            await self._save_account(project_id, account_id, account)

        logger.info(f"Removed policy {policy_id} from account {account_id}")
        self._audit(project_id, "remove", True, account_id=account_id, policy_id=policy_id)
        outcome.message = f"Removed policy {policy_id} from account {account_id}"
        return outcome

    async def auto_approve_entitlement(self, project_id: str,
                                       entitlement_id: str) -> ReconciliationOutcome:
        """
        Approve an entitlement without review when its policy allows it.

        Approval only happens for accounts that already exist internally; no
        account is ever created here. Procurement and store failures
        propagate to the caller.
        """
        gateway = self.gateway_factory(project_id)
        entitlement_name = gateway.get_entitlement_name(project_id, entitlement_id)
        entitlement = await gateway.get_entitlement(entitlement_name)
        logger.debug(f"Entitlement: {entitlement.model_dump_json(by_alias=True, indent=3)}")

        outcome = ReconciliationOutcome(
            action=ReconciliationAction.POLICY_NOT_FOUND, entitlement_name=entitlement_name
        )

        policy = policy_from_result(await self.policy_store.find_marketplace_policy(
            project_id, entitlement.product, entitlement.plan
        ))
        if policy is None or policy.marketplace is None:
            logger.info(f"No marketplace policy for {entitlement.product}/{entitlement.plan}, "
                        f"entitlement {entitlement_id} will not be auto-approved")
            outcome.message = "No marketplace policy found"
            self._audit(project_id, "auto_approve", True, entitlement_name=entitlement_name,
                        metadata={"action": outcome.action.value})
            return outcome

        outcome.policy_id = policy.policy_id
        if not policy.marketplace.enable_auto_approve:
            logger.info(f"Auto approve is not enabled for policy: {policy.policy_id}")
            outcome.action = ReconciliationAction.AUTO_APPROVE_DISABLED
            outcome.message = f"Auto approve is not enabled for policy {policy.policy_id}"
            self._audit(project_id, "auto_approve", True, entitlement_name=entitlement_name,
                        policy_id=policy.policy_id, metadata={"action": outcome.action.value})
            return outcome

        logger.info(f"Auto approve is enabled for policy {policy.policy_id}, "
                    f"will check if the user account is already activated")
        if not entitlement.account:
            outcome.action = ReconciliationAction.NO_MARKETPLACE_ACCOUNT
            outcome.message = "Entitlement has no marketplace account"
            return outcome

        account_result = await self.account_store.find_marketplace_account(project_id, entitlement.account)
        if not account_result:
            logger.info("Account was not found, entitlement will not be auto-approved")
            self._audit(project_id, "auto_approve", True, entitlement_name=entitlement_name,
                        policy_id=policy.policy_id, metadata={"action": "ACCOUNT_NOT_FOUND"})
            outcome.action = ReconciliationAction.ACCOUNT_NOT_FOUND
            outcome.message = f"No account linked to {entitlement.account}"
            return outcome

        account: Account = account_result.data
        outcome.account_id = account.account_id
        logger.info("Account is already activated, will now proceed to approve the entitlement")

        result = await self.approve_entitlement(
            project_id, entitlement_name, ApprovalStatus.APPROVE, None,
            account.account_id, policy.policy_id, ACTIVATION_REQUESTED,
        )
        if result.success:
            outcome.action = ReconciliationAction.APPROVED
            outcome.message = f"Entitlement approved for account {account.account_id}"
        else:
            outcome.action = ReconciliationAction.APPROVAL_FAILED
            outcome.errors = result.errors
            outcome.message = "Entitlement approval failed"
        return outcome

    async def cancel_entitlement(self, project_id: str, entitlement_id: str) -> ReconciliationOutcome:
        """
        Remove the policy granted by a cancelled entitlement.

        Procurement and store failures propagate to the caller.
        """
        gateway = self.gateway_factory(project_id)
        entitlement_name = gateway.get_entitlement_name(project_id, entitlement_id)
        entitlement = await gateway.get_entitlement(entitlement_name)
        logger.debug(f"Entitlement: {entitlement.model_dump_json(by_alias=True, indent=3)}")

        policy = policy_from_result(await self.policy_store.find_marketplace_policy(
            project_id, entitlement.product, entitlement.plan
        ))
        if policy is None:
            logger.error(f"Policy not found for cancelled entitlementId: {entitlement_id}")
            self._audit(project_id, "cancel", True, entitlement_name=entitlement_name,
                        metadata={"action": "POLICY_NOT_FOUND"})
            return ReconciliationOutcome(
                action=ReconciliationAction.POLICY_NOT_FOUND,
                entitlement_name=entitlement_name,
                message="No marketplace policy found",
            )

        account_result = None
        if entitlement.account:
            account_result = await self.account_store.find_marketplace_account(project_id, entitlement.account)
        if not account_result:
            logger.info(f"No account linked to cancelled entitlementId: {entitlement_id}")
            self._audit(project_id, "cancel", True, entitlement_name=entitlement_name,
                        policy_id=policy.policy_id, metadata={"action": "ACCOUNT_NOT_FOUND"})
            return ReconciliationOutcome(
                action=ReconciliationAction.ACCOUNT_NOT_FOUND,
                entitlement_name=entitlement_name,
                policy_id=policy.policy_id,
                message=f"No account linked to {entitlement.account}",
            )

        logger.info("Account found, will now proceed to remove the entitlement")
        outcome = await self.remove_entitlement(project_id, account_result.data.account_id, policy.policy_id)
        outcome.entitlement_name = entitlement_name
        return outcome

    async def handle_marketplace_event(self, project_id: str, event_type: str,
                                       entitlement_id: str) -> ReconciliationOutcome:
        """Dispatch a marketplace notification to the matching background operation."""
        if event_type in AUTO_APPROVE_EVENTS:
            return await self.auto_approve_entitlement(project_id, entitlement_id)
        if event_type in CANCEL_EVENTS:
            return await self.cancel_entitlement(project_id, entitlement_id)

        logger.info(f"Ignoring marketplace event {event_type} for entitlement {entitlement_id}")
        return ReconciliationOutcome(
            action=ReconciliationAction.IGNORED,
            message=f"No handler for event type {event_type}",
        )

    def _audit(self, project_id: str, operation: str, success: bool, **fields) -> None:
        if self.audit_logger is None:
            return
        try:
            self.audit_logger.record(project_id, operation, success, **fields)
        except OSError as e:
            logger.error(f"Failed to write audit record for {operation}: {e}")


def _load_mock_entitlements(path: Optional[str]) -> List[Dict[str, Any]]:
    """Read the JSON list of entitlements seeding the mock gateway."""
    if not path:
        return []
    entitlements_file = Path(path)
    if not entitlements_file.exists():
        logger.warning(f"Mock entitlements file not found: {entitlements_file}")
        return []
    with open(entitlements_file, encoding="utf-8") as f:
        return json.load(f)
