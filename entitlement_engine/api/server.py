"""
FastAPI Server for the Entitlement Engine.

Provides REST API endpoints for listing marketplace entitlements, recording
reviewer decisions and receiving marketplace notifications.
"""

import logging
import os
from contextlib import asynccontextmanager
from datetime import datetime, timezone
from typing import Optional

import uvicorn
from fastapi import FastAPI, Query
from fastapi.middleware.cors import CORSMiddleware
from fastapi.responses import JSONResponse
from pydantic import BaseModel, Field

from ..config import load_settings
from ..engine import EntitlementReconciler
from ..models import EntitlementState, OperationResult

logger = logging.getLogger(__name__)


# Pydantic models for API requests
class ApprovalRequest(BaseModel):
    """Reviewer decision for an entitlement."""
    name: str = Field(..., description="Entitlement resource name")
    status: str = Field(..., description="One of approve, reject, comment")
    reason: Optional[str] = Field(None, description="Rejection reason or message to the purchaser")
    accountId: Optional[str] = Field(None, description="Internal account receiving the policy")
    policyId: Optional[str] = Field(None, description="Policy granted on approval")
    state: str = Field(
        EntitlementState.ENTITLEMENT_ACTIVATION_REQUESTED.value,
        description="Current entitlement state",
    )


class EntitlementRef(BaseModel):
    """Entitlement reference inside a marketplace notification."""
    id: str


class MarketplaceEvent(BaseModel):
    """Marketplace notification payload."""
    eventId: Optional[str] = None
    eventType: str
    entitlement: EntitlementRef


# Global components (initialized on startup)
reconciler: Optional[EntitlementReconciler] = None


@asynccontextmanager
async def lifespan(app: FastAPI):
    """Application lifespan manager."""
    global reconciler

    if reconciler is None:
        logger.info("Initializing Entitlement Engine API server components")
        settings = load_settings(os.environ.get("ENTITLEMENT_ENGINE_CONFIG"))
        reconciler = EntitlementReconciler.from_settings(settings)
        logger.info("Entitlement Engine API server components initialized")

    yield

    logger.info("Shutting down Entitlement Engine API server")


# Create FastAPI app
app = FastAPI(
    title="Entitlement Engine API",
    description="Marketplace entitlement reconciliation - REST API",
    version="1.0.0",
    lifespan=lifespan
)

app.add_middleware(
    CORSMiddleware,
    allow_origins=["*"],  # Configure appropriately for production
    allow_credentials=True,
    allow_methods=["*"],
    allow_headers=["*"],
)


def to_response(result: OperationResult) -> JSONResponse:
    """Render a result as ``{code, success, data|errors}`` with a matching HTTP status."""
    code = result.status_code()
    body = {"code": code, "success": result.success}
    if result.success:
        body["data"] = result.model_dump(mode="json", by_alias=True)["data"]
    else:
        body["errors"] = result.errors
    if result.outcome is not None:
        body["outcome"] = result.outcome.value
    return JSONResponse(status_code=code, content=body)


def _service_unavailable() -> JSONResponse:
    return to_response(OperationResult(
        success=False, code=503, errors=["Reconciler not available"]
    ))


@app.get("/health")
async def health_check():
    """Health check endpoint."""
    return {
        "status": "healthy",
        "timestamp": datetime.now(timezone.utc).isoformat(),
        "components": {
            "reconciler": reconciler is not None,
            "audit_logger": reconciler is not None and reconciler.audit_logger is not None,
        }
    }


@app.get("/projects/{project_id}/procurements")
async def list_procurements(
    project_id: str,
    stateFilter: Optional[str] = Query(None, description="Comma-separated entitlement states"),
):
    """List entitlements enriched with policy and account data."""
    if not reconciler:
        return _service_unavailable()

    state_filter = stateFilter.split(",") if stateFilter else None
    result = await reconciler.list_procurements(project_id, state_filter)
    return to_response(result)


@app.post("/projects/{project_id}/procurements/approve")
async def approve_entitlement(project_id: str, request: ApprovalRequest):
    """Approve, reject or comment on an entitlement."""
    if not reconciler:
        return _service_unavailable()

    result = await reconciler.approve_entitlement(
        project_id,
        request.name,
        request.status,
        request.reason,
        request.accountId,
        request.policyId,
        request.state,
    )
    return to_response(result)


@app.post("/projects/{project_id}/procurements/events")
async def marketplace_event(project_id: str, event: MarketplaceEvent):
    """Handle a marketplace notification for an entitlement."""
    if not reconciler:
        return _service_unavailable()

    try:
        outcome = await reconciler.handle_marketplace_event(
            project_id, event.eventType, event.entitlement.id
        )
    except Exception as e:
        logger.error(f"Error handling marketplace event {event.eventType}: {e}")
        return to_response(OperationResult.failure("Failed to handle marketplace event", e))

    return to_response(OperationResult.ok(outcome))


def start_server(host: str = "0.0.0.0", port: int = 8000, reload: bool = False):
    """Start the FastAPI server."""
    uvicorn.run(
        "entitlement_engine.api.server:app",
        host=host,
        port=port,
        reload=reload,
        log_level="info"
    )


if __name__ == "__main__":
    start_server()
