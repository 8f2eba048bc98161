"""
Account State Store for the Entitlement Engine.

Keeps internal account records per project, with optional JSON file
persistence. Records are parsed through the ``Account`` model on the way in,
which is where legacy policy representations are normalized.
"""

import json
import logging
from datetime import datetime, timezone
from pathlib import Path
from typing import Any, Dict, List, Optional, Union

from ..connectors.base import AccountStore, StoreResult
from ..errors import UpstreamError
from ..models import Account

logger = logging.getLogger(__name__)


class AccountStateStore(AccountStore):
    """
    Tenant-scoped storage of internal accounts.

    Provides in-memory state management with optional JSON file persistence.
    Every read returns a copy, so callers perform a genuine
    read-modify-write through ``create_or_update_account``.
    """

    def __init__(self, storage_path: Optional[Union[str, Path]] = None):
        """
        Initialize the account store.

        Args:
            storage_path: Path to store account state as JSON.
                         If None, state is kept in memory only.
        """
        self.storage_path = Path(storage_path) if storage_path else None
        self.accounts: Dict[str, Dict[str, Account]] = {}

        if self.storage_path:
            self.storage_path.parent.mkdir(parents=True, exist_ok=True)
            self._load_state()

        logger.info(
            f"Initialized AccountStateStore with {'persistent' if self.storage_path else 'in-memory'} storage"
        )

    async def get_account(self, project_id: str, account_id: str) -> StoreResult:
        account = self.accounts.get(project_id, {}).get(account_id)
        if not account:
            return StoreResult.not_found(f"Account {account_id} not found")
        return StoreResult.found(account.model_copy(deep=True))

    async def create_or_update_account(self, project_id: str, account_id: str,
                                       account: Account) -> StoreResult:
        stored = Account.model_validate(account.model_dump(by_alias=True))
        stored.account_id = account_id
        self._commit(project_id, stored)
        logger.info(
            f"Saved account {account_id} in project {project_id} with {len(stored.policies)} policies"
        )
        return StoreResult.found(stored.model_copy(deep=True), f"Saved account {account_id}")

    async def find_marketplace_account(self, project_id: str, account_name: str) -> StoreResult:
        for account in self.accounts.get(project_id, {}).values():
            if account_name in account.marketplace_account_names():
                return StoreResult.found(account.model_copy(deep=True))
        return StoreResult.not_found(f"No account linked to marketplace account {account_name}")

    def add_account(self, project_id: str, account: Union[Account, Dict[str, Any]]) -> Account:
        """
        Register an account record without going through the async API.

        Accepts either an ``Account`` or a raw record (legacy policy
        representations allowed).
        """
        if not isinstance(account, Account):
            account = Account.model_validate(account)
        self._commit(project_id, account)
        return account

    def _commit(self, project_id: str, account: Account):
        """Store an account in memory, rolling back if persisting it fails."""
        project_accounts = self.accounts.setdefault(project_id, {})
        previous = project_accounts.get(account.account_id)
        project_accounts[account.account_id] = account
        try:
            self._save_state()
        except UpstreamError:
            if previous is None:
                del project_accounts[account.account_id]
            else:
                project_accounts[account.account_id] = previous
            raise

    def get_all_accounts(self, project_id: str) -> List[Account]:
        """Get all accounts of a project."""
        return list(self.accounts.get(project_id, {}).values())

    def get_accounts_summary(self) -> Dict[str, Any]:
        """
        Get a summary of policy associations across all projects.

        Returns:
            Dictionary with per-project account and association counts
        """
        summary: Dict[str, Any] = {"projects": {}}
        for project_id, accounts in self.accounts.items():
            policies_by_id: Dict[str, int] = {}
            for account in accounts.values():
                for policy_id in account.policies:
                    policies_by_id[policy_id] = policies_by_id.get(policy_id, 0) + 1
            summary["projects"][project_id] = {
                "total_accounts": len(accounts),
                "accounts_by_policy": policies_by_id,
            }
        return summary

    def _save_state(self):
        """Save current state to persistent storage."""
        if not self.storage_path:
            return

        state_data = {
            "projects": {
                project_id: {
                    account_id: account.model_dump(by_alias=True, mode="json")
                    for account_id, account in accounts.items()
                }
                for project_id, accounts in self.accounts.items()
            },
            "last_updated": datetime.now(timezone.utc).isoformat(),
        }

        try:
            with open(self.storage_path, "w", encoding="utf-8") as f:
                json.dump(state_data, f, indent=2, default=str)
        except OSError as e:
            logger.error(f"Failed to save state to {self.storage_path}: {e}")
            raise UpstreamError(f"Failed to persist account state: {e}") from e

    def _load_state(self):
        """Load state from persistent storage."""
        if not self.storage_path or not self.storage_path.exists():
            return

        try:
            with open(self.storage_path, encoding="utf-8") as f:
                state_data = json.load(f)

            loaded: Dict[str, Dict[str, Account]] = {}
            for project_id, accounts in state_data.get("projects", {}).items():
                loaded[project_id] = {
                    account_id: Account.model_validate({"accountId": account_id, **record})
                    for account_id, record in accounts.items()
                }

        except (OSError, TypeError, ValueError) as e:
            # refuse to start rather than overwrite the file with partial state
            logger.error(f"Failed to load state from {self.storage_path}: {e}")
            raise UpstreamError(f"Failed to load account state from {self.storage_path}: {e}") from e

        self.accounts = loaded
        total = sum(len(accounts) for accounts in self.accounts.values())
        logger.info(f"Loaded state for {total} accounts from {self.storage_path}")
