"""Configuration management for capguard."""

import os
import re
from pathlib import Path
from typing import Any, Optional

import yaml
from pydantic import BaseModel, Field, field_validator

from .models import Capability, ToolPermission

DEFAULT_BLOCKED_PATHS = [
    "~/.ssh/*",
    "~/.aws/*",
    "~/.config/*",
    "/etc/*",
    "/System/*",
    "C:\\Windows\\*",
]

DEFAULT_BLOCKED_COMMANDS = [
    r"rm\s+-rf\s+/",
    r"sudo\s+rm",
    r"chmod\s+777",
    r"curl.*\|.*sh",
    r"wget.*\|.*sh",
    r"format\s+",
    r"mkfs\.",
    r":\(\)\{:\|:&\};:",  # fork bomb
]

# Approval flag combinations, loosest last
SECURITY_PRESETS: dict[str, dict[str, bool]] = {
    "strict": {
        "auto_approve_safe": False,
        "auto_approve_moderate": False,
        "never_auto_approve_dangerous": True,
    },
    "balanced": {
        "auto_approve_safe": True,
        "auto_approve_moderate": False,
        "never_auto_approve_dangerous": True,
    },
    "developer": {
        "auto_approve_safe": True,
        "auto_approve_moderate": True,
        "never_auto_approve_dangerous": True,
    },
    # Only deny-listed operations are stopped. Not recommended.
    "trust": {
        "auto_approve_safe": True,
        "auto_approve_moderate": True,
        "never_auto_approve_dangerous": False,
    },
}


class SecurityPolicy(BaseModel):
    """Runtime security policy consulted by the policy engine."""

    auto_approve_safe: bool = True
    auto_approve_moderate: bool = False
    never_auto_approve_dangerous: bool = True
    allowed_paths: list[str] = Field(
        default_factory=lambda: [os.getcwd(), "./data/*", "./memory/*"]
    )
    blocked_paths: list[str] = Field(default_factory=lambda: list(DEFAULT_BLOCKED_PATHS))
    blocked_commands: list[str] = Field(
        default_factory=lambda: list(DEFAULT_BLOCKED_COMMANDS)
    )

    model_config = {"validate_assignment": True, "extra": "forbid"}

    @field_validator("blocked_commands")
    @classmethod
    def validate_command_patterns(cls, patterns: list[str]) -> list[str]:
        """Reject command patterns that are not valid regular expressions."""
        for pattern in patterns:
            try:
                re.compile(pattern)
            except re.error as e:
                raise ValueError(f"Invalid command pattern {pattern!r}: {e}") from e
        return patterns

    @classmethod
    def from_preset(cls, name: str, **overrides: Any) -> "SecurityPolicy":
        """Build a policy from a named preset (strict, balanced, developer, trust)."""
        try:
            flags = SECURITY_PRESETS[name]
        except KeyError:
            raise ValueError(
                f"Unknown security preset {name!r}; expected one of {sorted(SECURITY_PRESETS)}"
            ) from None
        return cls(**{**flags, **overrides})


class AuditConfig(BaseModel):
    """Audit log configuration."""

    data_dir: Optional[str] = None
    persist: bool = True
    memory_limit: int = Field(default=1000, ge=1)
    persist_limit: int = Field(default=500, ge=1)
    max_arg_length: int = Field(default=500, ge=1)

    def audit_path(self) -> Path:
        """Location of the persisted audit file. Nothing is created here."""
        base = Path(self.data_dir).expanduser() if self.data_dir else config_dir_path()
        return base / "security" / "audit.json"


class ServerConfig(BaseModel):
    """Approval server configuration."""

    host: str = "127.0.0.1"
    port: int = 8090


class LoggingConfig(BaseModel):
    """Logging configuration."""

    level: str = "INFO"


class ToolConfig(BaseModel):
    """A tool permission declared in the config file."""

    name: str
    capabilities: list[Capability] = Field(default_factory=list)
    always_require_approval: bool = False

    def to_permission(self) -> ToolPermission:
        return ToolPermission(
            tool_name=self.name,
            capabilities=self.capabilities,
            always_require_approval=self.always_require_approval,
        )


class CapGuardConfig(BaseModel):
    """Main capguard configuration."""

    policy: SecurityPolicy = Field(default_factory=SecurityPolicy)
    audit: AuditConfig = Field(default_factory=AuditConfig)
    server: ServerConfig = Field(default_factory=ServerConfig)
    logging: LoggingConfig = Field(default_factory=LoggingConfig)
    tools: list[ToolConfig] = Field(default_factory=list)


def config_dir_path() -> Path:
    """Location of the configuration directory, without creating it."""
    return Path(os.environ.get("CAPGUARD_CONFIG_DIR", Path.home() / ".capguard"))


def get_config_dir() -> Path:
    """Get the capguard configuration directory."""
    config_dir = config_dir_path()
    config_dir.mkdir(parents=True, exist_ok=True)
    return config_dir


def get_config_path() -> Path:
    """Get the path to the configuration file."""
    return get_config_dir() / "config.yaml"


def get_default_config() -> str:
    """Get the default configuration as YAML string."""
    return r"""# capguard configuration
# Capability-based approval layer for agent tool calls

#----------------------------------------------------------------------
# SECURITY POLICY
#----------------------------------------------------------------------
policy:
  # Presets: strict | balanced | developer | trust (see docs)
  auto_approve_safe: true
  auto_approve_moderate: false
  never_auto_approve_dangerous: true

  allowed_paths:
    - "./data/*"
    - "./memory/*"

  # Globs; "*" matches anything, "~" is the home directory
  blocked_paths:
    - "~/.ssh/*"
    - "~/.aws/*"
    - "~/.config/*"
    - "/etc/*"
    - "/System/*"
    - 'C:\Windows\*'

  # Case-insensitive regular expressions searched in the raw command
  blocked_commands:
    - 'rm\s+-rf\s+/'
    - 'sudo\s+rm'
    - 'chmod\s+777'
    - 'curl.*\|.*sh'
    - 'wget.*\|.*sh'
    - 'format\s+'
    - 'mkfs\.'
    - ':\(\)\{:\|:&\};:'

#----------------------------------------------------------------------
# AUDIT LOG
#----------------------------------------------------------------------
audit:
  # Defaults to the config directory
  data_dir: null
  persist: true
  memory_limit: 1000
  persist_limit: 500
  max_arg_length: 500

#----------------------------------------------------------------------
# APPROVAL SERVER
#----------------------------------------------------------------------
server:
  host: 127.0.0.1
  port: 8090

#----------------------------------------------------------------------
# LOGGING
#----------------------------------------------------------------------
logging:
  level: INFO

#----------------------------------------------------------------------
# EXTRA TOOL PERMISSIONS
#----------------------------------------------------------------------
tools: []
  # - name: deploy_site
  #   always_require_approval: true
  #   capabilities:
  #     - category: network.http
  #       risk_level: dangerous
  #       description: Push the build to production
"""


def create_default_config(path: Optional[Path] = None) -> Path:
    """Create the default configuration file."""
    config_path = path or get_config_path()
    if not config_path.exists():
        config_path.parent.mkdir(parents=True, exist_ok=True)
        config_path.write_text(get_default_config())
    return config_path


def load_config(path: Optional[Path] = None) -> CapGuardConfig:
    """Load configuration from file or create default."""
    config_path = path or get_config_path()

    if not config_path.exists():
        create_default_config(config_path)

    try:
        with open(config_path) as f:
            data = yaml.safe_load(f) or {}
        return CapGuardConfig(**data)
    except Exception as e:
        raise ValueError(f"Invalid configuration file: {e}") from e


def save_config(config: CapGuardConfig, path: Optional[Path] = None) -> None:
    """Save configuration to file."""
    config_path = path or get_config_path()
    data = config.model_dump(mode="json")

    with open(config_path, "w") as f:
        yaml.dump(data, f, default_flow_style=False, sort_keys=False)
