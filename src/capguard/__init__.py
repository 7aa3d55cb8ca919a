"""capguard - capability-based approval layer for agent tool calls.

Every side-effecting tool call is checked against declared capabilities,
deny-lists and time-scoped grants. The result is auto-approval, denial, or
escalation to a human, and each decision lands in an append-only audit log.
"""

from .approval import ApprovalCoordinator
from .audit import AuditLog, sanitize_args
from .config import SECURITY_PRESETS, CapGuardConfig, SecurityPolicy, load_config
from .engine import PolicyEngine
from .events import EventBus, EventType
from .grants import GrantStore
from .manager import CapabilityManager, create_capability_manager
from .models import (
    RISK_DESCRIPTIONS,
    ApprovalRequest,
    ApprovalSource,
    AuditLogEntry,
    AuditResult,
    AuthorizationOutcome,
    Capability,
    CapabilityCategory,
    DecisionState,
    GrantSource,
    PermissionCheckResult,
    PermissionGrant,
    RiskLevel,
    ToolPermission,
)
from .patterns import PatternMatcher
from .registry import BUILTIN_TOOL_PERMISSIONS, PermissionRegistry

__version__ = "0.1.0"

__all__ = [
    "CapabilityManager",
    "create_capability_manager",
    "PolicyEngine",
    "PermissionRegistry",
    "BUILTIN_TOOL_PERMISSIONS",
    "PatternMatcher",
    "GrantStore",
    "AuditLog",
    "sanitize_args",
    "ApprovalCoordinator",
    "EventBus",
    "EventType",
    "CapGuardConfig",
    "SecurityPolicy",
    "SECURITY_PRESETS",
    "load_config",
    "RiskLevel",
    "RISK_DESCRIPTIONS",
    "Capability",
    "CapabilityCategory",
    "ToolPermission",
    "PermissionGrant",
    "GrantSource",
    "ApprovalSource",
    "AuditResult",
    "AuditLogEntry",
    "PermissionCheckResult",
    "ApprovalRequest",
    "DecisionState",
    "AuthorizationOutcome",
]
