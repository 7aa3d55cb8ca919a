"""HTTP approval channel for capguard.

A human (or any UI) approves or rejects pending tool calls over REST while
the agent waits on ``CapabilityManager.request_approval``.
"""

import asyncio
import logging
from contextlib import asynccontextmanager
from datetime import datetime, timezone
from typing import Any, Optional

from fastapi import FastAPI, HTTPException, Query
from pydantic import BaseModel, ValidationError

from ..manager import CapabilityManager
from ..models import ApprovalRequest

logger = logging.getLogger(__name__)


class HttpApprovalChannel:
    """Approval handler that parks each request until it is resolved over HTTP."""

    def __init__(self):
        self._pending: dict[str, tuple[ApprovalRequest, asyncio.Future]] = {}

    async def __call__(self, request: ApprovalRequest) -> bool:
        future: asyncio.Future = asyncio.get_running_loop().create_future()
        self._pending[request.request_id] = (request, future)
        logger.info(f"Waiting for approval of {request.tool_name} ({request.request_id})")
        try:
            return await future
        finally:
            self._pending.pop(request.request_id, None)

    def pending(self) -> list[ApprovalRequest]:
        """Requests still waiting for a decision, oldest first."""
        return [request for request, future in self._pending.values() if not future.done()]

    def resolve(self, request_id: str, approved: bool) -> bool:
        """Complete a pending request.

        Returns:
            False if the id is unknown or already decided
        """
        entry = self._pending.get(request_id)
        if entry is None:
            return False
        request, future = entry
        if future.done():
            return False
        future.set_result(approved)
        logger.info(f"{request.tool_name} ({request_id}) {'approved' if approved else 'rejected'} over HTTP")
        return True


class PolicyUpdate(BaseModel):
    """Partial policy update. Omitted fields are left unchanged."""

    auto_approve_safe: Optional[bool] = None
    auto_approve_moderate: Optional[bool] = None
    never_auto_approve_dangerous: Optional[bool] = None
    allowed_paths: Optional[list[str]] = None
    blocked_paths: Optional[list[str]] = None
    blocked_commands: Optional[list[str]] = None

    model_config = {"extra": "forbid"}


def create_dashboard_app(
    manager: CapabilityManager,
    channel: Optional[HttpApprovalChannel] = None,
    initialize_on_startup: bool = False,
) -> FastAPI:
    """Create the FastAPI approval application.

    The channel becomes the manager's approval handler. With
    ``initialize_on_startup`` the manager loads its audit log when the
    server starts.
    """
    channel = channel or HttpApprovalChannel()
    manager.set_approval_handler(channel)

    @asynccontextmanager
    async def lifespan(app: FastAPI):
        # Startup
        if initialize_on_startup:
            await manager.initialize()
        yield
        # Shutdown
        await manager.audit.flush()

    app = FastAPI(
        title="capguard",
        description="Human approval channel for agent tool calls",
        version="0.1.0",
        lifespan=lifespan,
    )
    app.state.manager = manager
    app.state.channel = channel

    @app.get("/api/health")
    async def health_check():
        """Health check endpoint."""
        return {
            "status": "healthy",
            "service": "capguard",
            "pending_approvals": len(channel.pending()),
            "timestamp": datetime.now(timezone.utc).isoformat(),
        }

    @app.get("/api/approvals/pending")
    async def get_pending_approvals():
        """List tool calls waiting for a human decision."""
        pending = channel.pending()
        return {
            "requests": [r.to_dict() for r in pending],
            "count": len(pending),
        }

    @app.post("/api/approvals/{request_id}/approve")
    async def approve_request(request_id: str):
        """Approve a pending tool call."""
        if not channel.resolve(request_id, True):
            raise HTTPException(status_code=404, detail="Pending approval not found")
        return {"request_id": request_id, "approved": True}

    @app.post("/api/approvals/{request_id}/reject")
    async def reject_request(request_id: str):
        """Reject a pending tool call."""
        if not channel.resolve(request_id, False):
            raise HTTPException(status_code=404, detail="Pending approval not found")
        return {"request_id": request_id, "approved": False}

    @app.get("/api/audit")
    async def get_audit_log(limit: int = Query(50, ge=1, le=1000)):
        """Most recent audit entries, oldest first."""
        entries = manager.get_audit_log(limit)
        return {
            "entries": [e.model_dump(mode="json") for e in entries],
            "count": len(entries),
            "limit": limit,
        }

    @app.get("/api/tools")
    async def get_tools():
        """Registered tool permissions."""
        tools = manager.registry.list_tools()
        return {
            "tools": [t.model_dump(mode="json") for t in tools],
            "count": len(tools),
        }

    @app.get("/api/policy")
    async def get_policy():
        """Get the current security policy."""
        return manager.get_policy().model_dump()

    @app.put("/api/policy")
    async def update_policy(update: PolicyUpdate):
        """Update part of the security policy."""
        changes: dict[str, Any] = update.model_dump(exclude_none=True)
        try:
            policy = manager.update_policy(changes)
        except (ValidationError, ValueError) as e:
            raise HTTPException(status_code=400, detail=str(e)) from e
        return policy.model_dump()

    return app
