"""
Procurement Gateway implementations.

Provides an async HTTP client for the marketplace Commerce Procurement API
and an in-memory mock used for development, the CLI and tests.
"""

import copy
import logging
from typing import Any, Dict, List, Optional, Tuple

import httpx

from ..errors import UpstreamError
from ..models import Entitlement, EntitlementState
from .base import ProcurementGateway

logger = logging.getLogger(__name__)

DEFAULT_BASE_URL = "https://cloudcommerceprocurement.googleapis.com/v1"

ENTITLEMENT_ACTIVE = "ENTITLEMENT_ACTIVE"
ENTITLEMENT_ACTIVATION_REJECTED = "ENTITLEMENT_ACTIVATION_REJECTED"


def entitlement_resource_name(project_id: str, entitlement_id: str) -> str:
    """Get the fully qualified entitlement resource name."""
    return f"providers/{project_id}/entitlements/{entitlement_id}"


class HttpProcurementGateway(ProcurementGateway):
    """
    Procurement gateway backed by the Commerce Procurement REST API.

    Every call is attempted once; timeouts come from the underlying
    ``httpx`` client.
    """

    def __init__(
        self,
        project_id: str,
        base_url: str = DEFAULT_BASE_URL,
        access_token: Optional[str] = None,
        timeout: float = 30.0,
        client: Optional[httpx.AsyncClient] = None,
    ):
        """
        Initialize the gateway.

        Args:
            project_id: Provider project the entitlements belong to
            base_url: API root, including the version segment
            access_token: OAuth bearer token sent with every request
            timeout: Request timeout in seconds when no client is supplied
            client: Pre-configured client, mainly for tests
        """
        self.project_id = project_id
        self.base_url = base_url.rstrip("/")
        self.access_token = access_token
        self.timeout = timeout
        self._client = client

        logger.info(f"Initialized HttpProcurementGateway for provider {project_id}")

    def get_entitlement_name(self, project_id: str, entitlement_id: str) -> str:
        return entitlement_resource_name(project_id, entitlement_id)

    async def list_entitlements(self, filter_expr: str) -> Dict[str, Any]:
        entitlements: List[Dict[str, Any]] = []
        params: Dict[str, str] = {"filter": filter_expr}
        while True:
            page = await self._request(
                "GET", f"providers/{self.project_id}/entitlements", params=params
            )
            entitlements.extend(page.get("entitlements", []))
            next_token = page.get("nextPageToken")
            if not next_token:
                break
            params = {"filter": filter_expr, "pageToken": next_token}

        logger.debug(f"Listed {len(entitlements)} entitlements for filter '{filter_expr}'")
        return {"entitlements": entitlements}

    async def get_entitlement(self, name: str) -> Entitlement:
        data = await self._request("GET", name)
        return Entitlement.model_validate(data)

    async def approve_entitlement(self, name: str) -> Any:
        return await self._request("POST", f"{name}:approve", json={})

    async def reject_entitlement(self, name: str, reason: Optional[str]) -> Any:
        return await self._request("POST", f"{name}:reject", json={"reason": reason or ""})

    async def update_entitlement_message(self, name: str, message: Optional[str]) -> Any:
        return await self._request(
            "PATCH",
            name,
            params={"updateMask": "messageToUser"},
            json={"messageToUser": message or ""},
        )

    async def reject_plan_change(self, name: str, pending_plan: Optional[str],
                                 reason: Optional[str]) -> Any:
        return await self._request(
            "POST",
            f"{name}:rejectPlanChange",
            json={"pendingPlanName": pending_plan, "reason": reason or ""},
        )

    async def _request(self, method: str, path: str, **kwargs) -> Dict[str, Any]:
        url = f"{self.base_url}/{path}"
        headers = {}
        if self.access_token:
            headers["Authorization"] = f"Bearer {self.access_token}"

        try:
            if self._client is not None:
                response = await self._client.request(method, url, headers=headers, **kwargs)
            else:
                async with httpx.AsyncClient(timeout=self.timeout) as client:
                    response = await client.request(method, url, headers=headers, **kwargs)
            response.raise_for_status()
        except httpx.HTTPStatusError as e:
            logger.error(f"Procurement API {method} {path} returned {e.response.status_code}")
            raise UpstreamError(
                f"Procurement API request failed: {method} {path}",
                status_code=e.response.status_code,
                details={"body": e.response.text},
            ) from e
        except httpx.HTTPError as e:
            logger.error(f"Procurement API {method} {path} failed: {e}")
            raise UpstreamError(f"Procurement API unavailable: {e}") from e

        if not response.content:
            return {}
        return response.json()


class MockProcurementGateway(ProcurementGateway):
    """
    In-memory procurement gateway.

    Understands the ``field=value OR field=value`` filter grammar used by the
    reconciler and records every call for inspection.
    """

    def __init__(self, entitlements: Optional[List[Dict[str, Any]]] = None):
        self.entitlements: Dict[str, Dict[str, Any]] = {}
        self.calls: List[Tuple[Any, ...]] = []
        self.failing_operations: set = set()

        for entitlement in entitlements or []:
            self.add_entitlement(entitlement)

    def add_entitlement(self, entitlement: Dict[str, Any]) -> None:
        """Register a raw entitlement record keyed by its resource name."""
        self.entitlements[entitlement["name"]] = copy.deepcopy(entitlement)

    def fail_on(self, *operations: str) -> None:
        """Make the named operations raise ``UpstreamError``."""
        self.failing_operations.update(operations)

    def get_entitlement_name(self, project_id: str, entitlement_id: str) -> str:
        return entitlement_resource_name(project_id, entitlement_id)

    async def list_entitlements(self, filter_expr: str) -> Dict[str, Any]:
        self._record("list_entitlements", filter_expr)
        clauses = _parse_filter(filter_expr)
        matches = [
            copy.deepcopy(e)
            for e in self.entitlements.values()
            if not clauses or any(str(e.get(field)) == value for field, value in clauses)
        ]
        return {"entitlements": matches}

    async def get_entitlement(self, name: str) -> Entitlement:
        self._record("get_entitlement", name)
        return Entitlement.model_validate(self._lookup(name))

    async def approve_entitlement(self, name: str) -> Any:
        self._record("approve_entitlement", name)
        entitlement = self._lookup(name)
        entitlement["state"] = ENTITLEMENT_ACTIVE
        return {}

    async def reject_entitlement(self, name: str, reason: Optional[str]) -> Any:
        self._record("reject_entitlement", name, reason)
        entitlement = self._lookup(name)
        entitlement["state"] = ENTITLEMENT_ACTIVATION_REJECTED
        return {}

    async def update_entitlement_message(self, name: str, message: Optional[str]) -> Any:
        self._record("update_entitlement_message", name, message)
        entitlement = self._lookup(name)
        entitlement["messageToUser"] = message
        return copy.deepcopy(entitlement)

    async def reject_plan_change(self, name: str, pending_plan: Optional[str],
                                 reason: Optional[str]) -> Any:
        self._record("reject_plan_change", name, pending_plan, reason)
        entitlement = self._lookup(name)
        if entitlement.get("state") != EntitlementState.ENTITLEMENT_PENDING_PLAN_CHANGE_APPROVAL.value:
            raise UpstreamError(f"Entitlement {name} has no pending plan change", status_code=400)
        entitlement.pop("newPendingPlan", None)
        entitlement["state"] = ENTITLEMENT_ACTIVE
        return {}

    def calls_to(self, operation: str) -> List[Tuple[Any, ...]]:
        """Get the recorded argument tuples for one operation."""
        return [call[1:] for call in self.calls if call[0] == operation]

    def _record(self, operation: str, *args: Any) -> None:
        self.calls.append((operation, *args))
        if operation in self.failing_operations:
            raise UpstreamError(f"Mock procurement failure in {operation}", status_code=503)

    def _lookup(self, name: str) -> Dict[str, Any]:
        entitlement = self.entitlements.get(name)
        if entitlement is None:
            raise UpstreamError(f"Entitlement {name} not found", status_code=404)
        return entitlement


def _parse_filter(filter_expr: str) -> List[Tuple[str, str]]:
    """Split ``a=b OR c=d`` into ``[("a", "b"), ("c", "d")]``."""
    clauses = []
    for clause in filter_expr.split(" OR "):
        field, sep, value = clause.strip().partition("=")
        if sep:
            clauses.append((field.strip(), value.strip()))
    return clauses
