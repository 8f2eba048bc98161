"""
Error types raised by the Entitlement Engine and its collaborators.
"""

from typing import Any, Dict, Optional


class EntitlementEngineError(Exception):
    """Base exception for engine failures."""

    code: Optional[int] = None

    def __init__(self, message: str, details: Optional[Dict[str, Any]] = None):
        self.message = message
        self.details = details or {}
        super().__init__(message)


class UpstreamError(EntitlementEngineError):
    """The procurement service, lookup service or a store failed."""

    def __init__(
        self,
        message: str,
        status_code: Optional[int] = None,
        details: Optional[Dict[str, Any]] = None,
    ):
        super().__init__(message, details)
        self.status_code = status_code


class InvalidRequestError(EntitlementEngineError):
    """The request is missing data the operation needs."""

    code = 400


class AccountNotFoundError(EntitlementEngineError):
    """No internal account exists for the given id."""

    code = 404

    def __init__(self, project_id: str, account_id: str):
        super().__init__(
            f"Account '{account_id}' not found in project '{project_id}'",
            {"project_id": project_id, "account_id": account_id},
        )
        self.project_id = project_id
        self.account_id = account_id
