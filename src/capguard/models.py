"""Core data types for capguard.

Risk levels, capabilities, tool permissions, grants, audit entries and the
structured results handed back to the tool-execution layer.
"""

from dataclasses import dataclass, field
from datetime import datetime, timezone
from enum import Enum, IntEnum
from typing import Any, Optional
from uuid import uuid4

from pydantic import BaseModel, Field, field_serializer, field_validator


def utcnow() -> datetime:
    """Timezone-aware current UTC time."""
    return datetime.now(timezone.utc)


class RiskLevel(IntEnum):
    """Ordered risk levels."""

    SAFE = 1  # read_file, list_directory, recall
    MODERATE = 2  # write_file, http_fetch, browser_navigate
    DANGEROUS = 3  # delete_file, run_command, browser_execute
    DESTRUCTIVE = 4  # deny-list hits, irreversible system changes

    @property
    def label(self) -> str:
        return self.name.lower()

    @classmethod
    def parse(cls, value: Any) -> "RiskLevel":
        """Accept a member, its integer value or its (case-insensitive) name."""
        if isinstance(value, cls):
            return value
        if isinstance(value, int) and not isinstance(value, bool):
            return cls(value)
        if isinstance(value, str):
            try:
                return cls[value.strip().upper()]
            except KeyError:
                pass
        raise ValueError(f"Unknown risk level: {value!r}")


RISK_DESCRIPTIONS: dict[RiskLevel, str] = {
    RiskLevel.SAFE: "Read-only operations with no side effects",
    RiskLevel.MODERATE: "Operations that modify local state reversibly",
    RiskLevel.DANGEROUS: "Operations that could cause data loss or external effects",
    RiskLevel.DESTRUCTIVE: "Operations that permanently delete data or affect system integrity",
}


class CapabilityCategory(str, Enum):
    """Known capability categories. Skills may declare others as plain strings."""

    FILESYSTEM_READ = "filesystem.read"
    FILESYSTEM_WRITE = "filesystem.write"
    FILESYSTEM_DELETE = "filesystem.delete"
    TERMINAL_EXECUTE = "terminal.execute"
    TERMINAL_BACKGROUND = "terminal.background"
    NETWORK_HTTP = "network.http"
    NETWORK_WEBSOCKET = "network.websocket"
    BROWSER_NAVIGATE = "browser.navigate"
    BROWSER_EXECUTE = "browser.execute"
    DATABASE_READ = "database.read"
    DATABASE_WRITE = "database.write"
    GITHUB_READ = "github.read"
    GITHUB_WRITE = "github.write"
    MEMORY_READ = "memory.read"
    MEMORY_WRITE = "memory.write"
    SYSTEM_INFO = "system.info"


class GrantSource(str, Enum):
    """Who issued a permission grant."""

    USER = "user"
    POLICY = "policy"
    AUTO = "auto"


class ApprovalSource(str, Enum):
    """Who decided an execution attempt."""

    USER = "user"
    POLICY = "policy"
    AUTO = "auto"


class AuditResult(str, Enum):
    """Outcome recorded in the audit log."""

    APPROVED = "approved"
    DENIED = "denied"
    AUTO_APPROVED = "auto-approved"


class DecisionState(str, Enum):
    """States of a single authorization decision."""

    REQUESTED = "requested"
    AUTO_APPROVED = "auto_approved"
    AUTO_DENIED = "auto_denied"
    PENDING_APPROVAL = "pending_approval"
    APPROVED = "approved"
    DENIED = "denied"

    @property
    def is_terminal(self) -> bool:
        return self not in (DecisionState.REQUESTED, DecisionState.PENDING_APPROVAL)


class Capability(BaseModel):
    """One discrete permission a tool needs."""

    category: str
    scope: Optional[str] = None
    risk_level: RiskLevel
    description: str = ""

    model_config = {"frozen": True}

    @field_validator("category", mode="before")
    @classmethod
    def _category_value(cls, v: Any) -> Any:
        if isinstance(v, CapabilityCategory):
            return v.value
        return v

    @field_validator("risk_level", mode="before")
    @classmethod
    def _parse_risk(cls, v: Any) -> RiskLevel:
        return RiskLevel.parse(v)

    @field_serializer("risk_level")
    def _dump_risk(self, v: RiskLevel) -> str:
        return v.label


class ToolPermission(BaseModel):
    """The capabilities a tool declares, registered once at startup."""

    tool_name: str = Field(..., min_length=1)
    capabilities: list[Capability] = Field(default_factory=list)
    always_require_approval: bool = False

    model_config = {"frozen": True}

    @property
    def max_risk(self) -> RiskLevel:
        """Highest declared risk; SAFE for a tool with no capabilities."""
        return max((c.risk_level for c in self.capabilities), default=RiskLevel.SAFE)

    @property
    def categories(self) -> list[str]:
        return [c.category for c in self.capabilities]


@dataclass
class PermissionGrant:
    """A time-scoped authorization for one capability category and scope."""

    capability: str
    scope: str
    granted_at: datetime
    expires_at: Optional[datetime] = None  # None = permanent
    granted_by: GrantSource = GrantSource.USER

    def is_expired(self, now: Optional[datetime] = None) -> bool:
        if self.expires_at is None:
            return False
        return (now or utcnow()) >= self.expires_at

    @property
    def is_valid(self) -> bool:
        return not self.is_expired()


class AuditLogEntry(BaseModel):
    """A single audit record. One per execution attempt."""

    id: str
    timestamp: datetime = Field(default_factory=utcnow)
    tool_name: str
    capabilities: list[str] = Field(default_factory=list)
    args: dict[str, Any] = Field(default_factory=dict)
    result: AuditResult
    approval_source: ApprovalSource
    user_id: Optional[str] = None


@dataclass
class PermissionCheckResult:
    """Structured answer to "may this tool call proceed?"."""

    allowed: bool
    requires_approval: bool
    risk_level: RiskLevel
    reason: Optional[str] = None

    @property
    def blocked(self) -> bool:
        """Denied outright, with no approval path."""
        return not self.allowed and not self.requires_approval

    @property
    def user_message(self) -> str:
        if self.blocked:
            return "This action is blocked by policy"
        if self.requires_approval:
            return "This action requires approval"
        return ""

    def to_dict(self) -> dict[str, Any]:
        return {
            "allowed": self.allowed,
            "requires_approval": self.requires_approval,
            "risk_level": self.risk_level.label,
            "reason": self.reason,
        }


@dataclass
class ApprovalRequest:
    """What a human approver is shown."""

    tool_name: str
    args: dict[str, Any]
    risk_level: RiskLevel
    risk_description: str
    reason: Optional[str] = None
    timestamp: datetime = field(default_factory=utcnow)
    request_id: str = field(default_factory=lambda: uuid4().hex)

    def to_dict(self) -> dict[str, Any]:
        return {
            "request_id": self.request_id,
            "tool_name": self.tool_name,
            "args": self.args,
            "risk_level": self.risk_level.label,
            "risk_description": self.risk_description,
            "reason": self.reason,
            "timestamp": self.timestamp.isoformat(),
        }


@dataclass
class AuthorizationOutcome:
    """Terminal state of one authorization, with the audit entry it produced."""

    state: DecisionState
    check: PermissionCheckResult
    audit_entry: AuditLogEntry

    @property
    def approved(self) -> bool:
        return self.state in (DecisionState.AUTO_APPROVED, DecisionState.APPROVED)
