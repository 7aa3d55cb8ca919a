"""Policy engine: decides whether a tool call may proceed.

Every side-effecting tool call is checked here before it runs.

How it works:
    1. Look up the tool's declared capabilities (unknown tools fail closed)
    2. For each capability, in declaration order, a deny-listed path
       (filesystem.*) or command (terminal.execute) denies the whole call at
       DESTRUCTIVE risk. Grants never override a deny-list hit
    3. The highest declared risk and the tool's approval override decide
       whether a human must approve

Denials are returned as data, never raised.
"""

import logging
from typing import Any, Mapping, Optional

from .config import SecurityPolicy
from .grants import GrantStore
from .models import Capability, PermissionCheckResult, RiskLevel
from .patterns import PatternMatcher
from .registry import PermissionRegistry

logger = logging.getLogger(__name__)

TERMINAL_EXECUTE = "terminal.execute"
FILESYSTEM_PREFIX = "filesystem."


class PolicyEngine:
    """Combines registry, grants and deny-lists into a single decision."""

    def __init__(
        self,
        policy: Optional[SecurityPolicy] = None,
        registry: Optional[PermissionRegistry] = None,
        grants: Optional[GrantStore] = None,
    ):
        self._policy = policy or SecurityPolicy()
        self.registry = registry or PermissionRegistry()
        self.grants = grants or GrantStore()
        self.matcher = PatternMatcher(self._policy)

    # =========================================================================
    # Decision
    # =========================================================================

    def check_permission(
        self,
        tool_name: str,
        args: Optional[dict[str, Any]] = None,
        principal: Optional[str] = None,
    ) -> PermissionCheckResult:
        """Check whether a tool call may proceed.

        Args:
            tool_name: Registered tool name
            args: The tool's arguments
            principal: Caller identity; its grants never change the decision

        Returns:
            PermissionCheckResult; never raises for a denial
        """
        args = args or {}
        permission = self.registry.lookup(tool_name)

        if permission is None:
            logger.info(f"Unknown tool {tool_name!r}, requiring approval")
            return PermissionCheckResult(
                allowed=False,
                requires_approval=True,
                risk_level=RiskLevel.DANGEROUS,
                reason=f"Unknown tool: {tool_name}",
            )

        for capability in permission.capabilities:
            denial = self._check_capability(capability, args)
            if denial is not None:
                logger.info(f"Denied {tool_name}: {denial.reason}")
                return denial

        max_risk = permission.max_risk
        if permission.always_require_approval or not self.can_auto_approve(max_risk):
            result = PermissionCheckResult(
                allowed=True,
                requires_approval=True,
                risk_level=max_risk,
                reason=f"Tool '{tool_name}' requires user approval",
            )
        else:
            result = PermissionCheckResult(
                allowed=True,
                requires_approval=False,
                risk_level=max_risk,
            )

        logger.debug(
            f"Checked {tool_name}: risk={max_risk.label} "
            f"requires_approval={result.requires_approval}"
        )
        return result

    def _check_capability(
        self,
        capability: Capability,
        args: dict[str, Any],
    ) -> Optional[PermissionCheckResult]:
        """Return a denial for this capability, or None if it passes.

        Grants are not consulted: a deny-list hit overrides any grant, and
        the final gate in check_permission decides approval for the whole
        tool regardless of grants.
        """
        if capability.category.startswith(FILESYSTEM_PREFIX):
            path = self.matcher.extract_path(args)
            if path and self.matcher.is_blocked_path(path):
                return PermissionCheckResult(
                    allowed=False,
                    requires_approval=False,
                    risk_level=RiskLevel.DESTRUCTIVE,
                    reason=f"Path '{path}' is blocked by security policy",
                )

        if capability.category == TERMINAL_EXECUTE:
            command = self.matcher.extract_command(args)
            if command and self.matcher.is_blocked_command(command):
                return PermissionCheckResult(
                    allowed=False,
                    requires_approval=False,
                    risk_level=RiskLevel.DESTRUCTIVE,
                    reason=f"Command blocked by security policy: {command[:50]}...",
                )

        return None

    def can_auto_approve(self, risk_level: RiskLevel) -> bool:
        """Whether the policy lets this risk level proceed without a human."""
        policy = self._policy
        if risk_level == RiskLevel.SAFE:
            return policy.auto_approve_safe
        if risk_level == RiskLevel.MODERATE:
            return policy.auto_approve_moderate
        return not policy.never_auto_approve_dangerous

    # =========================================================================
    # Policy management
    # =========================================================================

    @property
    def policy(self) -> SecurityPolicy:
        return self._policy

    def get_policy(self) -> SecurityPolicy:
        """A copy of the current policy; mutating it has no effect."""
        return self._policy.model_copy(deep=True)

    def set_policy(self, policy: SecurityPolicy) -> None:
        self._policy = policy
        self.matcher.policy = policy

    def update_policy(
        self, updates: Optional[Mapping[str, Any]] = None, **changes: Any
    ) -> SecurityPolicy:
        """Merge a partial update into the policy.

        Raises:
            ValueError: Unknown field or invalid value (the policy is unchanged)
        """
        merged = {**(updates or {}), **changes}
        policy = SecurityPolicy(**{**self._policy.model_dump(), **merged})
        self.set_policy(policy)
        logger.info(f"Security policy updated: {sorted(merged)}")
        return self.get_policy()

    def add_allowed_path(self, path: str) -> None:
        if path not in self._policy.allowed_paths:
            self._policy.allowed_paths = [*self._policy.allowed_paths, path]

    def add_blocked_path(self, path: str) -> None:
        if path not in self._policy.blocked_paths:
            self._policy.blocked_paths = [*self._policy.blocked_paths, path]

    def add_blocked_command(self, pattern: str) -> None:
        """Add a command regex.

        Raises:
            ValueError: The pattern does not compile
        """
        if pattern not in self._policy.blocked_commands:
            self._policy.blocked_commands = [*self._policy.blocked_commands, pattern]
