"""CapabilityManager: the composed policy/approval engine.

Construct one explicitly and hand it to the tool-execution layer::

    manager = await create_capability_manager()
    manager.set_approval_handler(ask_the_user)

    outcome = await manager.authorize("write_file", {"path": "notes.md"})
    if outcome.approved:
        ...  # run the tool
    else:
        reply(outcome.check.user_message)

``authorize`` runs the whole decision and records exactly one audit entry.
Callers that drive the steps themselves use ``check_permission``, then
``request_approval`` (which audits the human outcome) or ``log_execution``
for outcomes decided without a human.
"""

import logging
from pathlib import Path
from typing import Any, Callable, Optional

from .approval import ApprovalCoordinator, ApprovalHandler
from .audit import AuditLog
from .config import CapGuardConfig, SecurityPolicy
from .engine import PolicyEngine
from .events import EventBus, EventType, Subscriber
from .grants import GrantStore
from .models import (
    ApprovalSource,
    AuditLogEntry,
    AuditResult,
    AuthorizationOutcome,
    Capability,
    DecisionState,
    GrantSource,
    PermissionCheckResult,
    PermissionGrant,
    RiskLevel,
    ToolPermission,
)
from .registry import BUILTIN_TOOL_PERMISSIONS, PermissionRegistry

logger = logging.getLogger(__name__)


class CapabilityManager:
    """Registry, grants, deny-lists, audit log and approvals behind one object."""

    def __init__(
        self,
        config: Optional[CapGuardConfig] = None,
        registry: Optional[PermissionRegistry] = None,
        grants: Optional[GrantStore] = None,
        audit: Optional[AuditLog] = None,
        events: Optional[EventBus] = None,
    ):
        """Initialize the manager.

        Args:
            config: Policy and audit settings. Defaults to CapGuardConfig().
            registry: Tool permissions; a fresh empty registry by default
            grants: Grant store; a fresh one by default
            audit: Audit log; built from ``config.audit`` by default
            events: Notification bus shared by the audit log and approvals
        """
        self.config = config or CapGuardConfig()
        self.events = events or EventBus()
        self.engine = PolicyEngine(
            policy=self.config.policy.model_copy(deep=True),
            registry=registry or PermissionRegistry(),
            grants=grants or GrantStore(),
        )
        if audit is None:
            audit_config = self.config.audit
            audit = AuditLog(
                path=audit_config.audit_path() if audit_config.persist else None,
                memory_limit=audit_config.memory_limit,
                persist_limit=audit_config.persist_limit,
                max_arg_length=audit_config.max_arg_length,
                events=self.events,
            )
        elif audit.events is None:
            audit.events = self.events
        self.audit = audit
        self.approvals = ApprovalCoordinator(self.events)

    @property
    def registry(self) -> PermissionRegistry:
        return self.engine.registry

    @property
    def grants(self) -> GrantStore:
        return self.engine.grants

    async def initialize(self) -> None:
        """Load the persisted audit log."""
        loaded = await self.audit.load()
        logger.info(
            f"CapabilityManager initialized: {len(self.registry)} tools, "
            f"{loaded} audit entries loaded"
        )

    # =========================================================================
    # Tools
    # =========================================================================

    def register_tool(
        self,
        permission: ToolPermission | str,
        capabilities: Optional[list[Capability]] = None,
        always_require_approval: bool = False,
    ) -> ToolPermission:
        """Register a ToolPermission, or build one from a name and capabilities."""
        if isinstance(permission, ToolPermission):
            self.registry.register(permission)
            return permission
        return self.registry.register_tool(
            permission, capabilities or [], always_require_approval
        )

    def get_tool_permission(self, tool_name: str) -> Optional[ToolPermission]:
        return self.registry.lookup(tool_name)

    # =========================================================================
    # Decisions
    # =========================================================================

    def check_permission(
        self,
        tool_name: str,
        args: Optional[dict[str, Any]] = None,
        principal: Optional[str] = None,
    ) -> PermissionCheckResult:
        return self.engine.check_permission(tool_name, args, principal)

    def set_approval_handler(self, handler: Optional[ApprovalHandler]) -> None:
        self.approvals.set_approval_handler(handler)

    async def request_approval(
        self,
        tool_name: str,
        args: dict[str, Any],
        risk_level: RiskLevel,
        reason: Optional[str] = None,
        principal: Optional[str] = None,
    ) -> bool:
        """Ask the approval handler and audit its answer.

        No handler (or a failing one) counts as a policy denial. Handler
        exceptions propagate after the denial is recorded.
        """
        approved, _ = await self._request_approval(tool_name, args, risk_level, reason, principal)
        return approved

    async def _request_approval(
        self,
        tool_name: str,
        args: dict[str, Any],
        risk_level: RiskLevel,
        reason: Optional[str],
        principal: Optional[str],
    ) -> tuple[bool, AuditLogEntry]:
        categories = self._categories(tool_name)

        if not self.approvals.has_handler:
            await self.approvals.request_approval(tool_name, args, risk_level, reason)
            entry = await self.audit.record(
                tool_name, categories, args, AuditResult.DENIED, ApprovalSource.POLICY, principal
            )
            return False, entry

        try:
            approved = await self.approvals.request_approval(tool_name, args, risk_level, reason)
        except Exception:
            await self.audit.record(
                tool_name, categories, args, AuditResult.DENIED, ApprovalSource.POLICY, principal
            )
            raise

        entry = await self.audit.record(
            tool_name,
            categories,
            args,
            AuditResult.APPROVED if approved else AuditResult.DENIED,
            ApprovalSource.USER,
            principal,
        )
        return approved, entry

    async def authorize(
        self,
        tool_name: str,
        args: Optional[dict[str, Any]] = None,
        principal: Optional[str] = None,
    ) -> AuthorizationOutcome:
        """Run one decision to a terminal state and audit it.

        Requested -> AutoApproved | AutoDenied | PendingApproval;
        PendingApproval -> Approved | Denied.
        """
        args = args or {}
        check = self.check_permission(tool_name, args, principal)
        categories = self._categories(tool_name)

        if check.blocked:
            entry = await self.audit.record(
                tool_name, categories, args, AuditResult.DENIED, ApprovalSource.POLICY, principal
            )
            return AuthorizationOutcome(DecisionState.AUTO_DENIED, check, entry)

        if not check.requires_approval:
            entry = await self.audit.record(
                tool_name, categories, args, AuditResult.AUTO_APPROVED, ApprovalSource.AUTO, principal
            )
            return AuthorizationOutcome(DecisionState.AUTO_APPROVED, check, entry)

        approved, entry = await self._request_approval(
            tool_name, args, check.risk_level, check.reason, principal
        )
        state = DecisionState.APPROVED if approved else DecisionState.DENIED
        return AuthorizationOutcome(state, check, entry)

    def _categories(self, tool_name: str) -> list[str]:
        permission = self.registry.lookup(tool_name)
        return permission.categories if permission else []

    # =========================================================================
    # Grants
    # =========================================================================

    def grant_permission(
        self,
        capability: str,
        scope: str,
        duration_ms: Optional[int] = None,
        principal: Optional[str] = None,
        granted_by: GrantSource = GrantSource.USER,
    ) -> PermissionGrant:
        return self.grants.grant(capability, scope, duration_ms, principal, granted_by)

    def revoke_permission(
        self, capability: str, scope: str, principal: Optional[str] = None
    ) -> bool:
        return self.grants.revoke(capability, scope, principal)

    def has_grant(
        self,
        capability: str,
        required_scope: Optional[str] = None,
        principal: Optional[str] = None,
    ) -> bool:
        return self.grants.has_grant(capability, required_scope, principal)

    # =========================================================================
    # Audit
    # =========================================================================

    async def log_execution(
        self,
        tool_name: str,
        capabilities: list[str],
        args: dict[str, Any],
        result: AuditResult,
        approval_source: ApprovalSource,
        principal: Optional[str] = None,
    ) -> AuditLogEntry:
        return await self.audit.record(
            tool_name, capabilities, args, result, approval_source, principal
        )

    def get_audit_log(self, limit: int = 50) -> list[AuditLogEntry]:
        return self.audit.get_recent(limit)

    def subscribe(self, event_type: EventType, callback: Subscriber) -> Callable[[], None]:
        return self.events.subscribe(event_type, callback)

    # =========================================================================
    # Policy
    # =========================================================================

    def get_policy(self) -> SecurityPolicy:
        return self.engine.get_policy()

    def update_policy(self, updates: Optional[dict[str, Any]] = None, **changes: Any) -> SecurityPolicy:
        return self.engine.update_policy(updates, **changes)

    def add_allowed_path(self, path: str) -> None:
        self.engine.add_allowed_path(path)

    def add_blocked_path(self, path: str) -> None:
        self.engine.add_blocked_path(path)

    def add_blocked_command(self, pattern: str) -> None:
        self.engine.add_blocked_command(pattern)


async def create_capability_manager(
    config: Optional[CapGuardConfig] = None,
    data_dir: Optional[str | Path] = None,
    register_builtins: bool = True,
) -> CapabilityManager:
    """Build, populate and initialize a CapabilityManager.

    Args:
        config: Configuration; defaults to CapGuardConfig()
        data_dir: Overrides ``config.audit.data_dir``
        register_builtins: Register BUILTIN_TOOL_PERMISSIONS first

    Returns:
        An initialized manager with built-in and config-declared tools
    """
    config = config or CapGuardConfig()
    if data_dir is not None:
        config = config.model_copy(
            update={"audit": config.audit.model_copy(update={"data_dir": str(data_dir)})}
        )

    manager = CapabilityManager(config)
    if register_builtins:
        manager.registry.register_many(BUILTIN_TOOL_PERMISSIONS)
    manager.registry.register_many(tool.to_permission() for tool in config.tools)

    await manager.initialize()
    return manager
