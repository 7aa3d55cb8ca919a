"""Permission registry: tool name -> declared capabilities.

Tools are registered at startup, by the built-in table below, by each skill
module and by the ``tools:`` section of the config file. Registration by an
existing name replaces the previous declaration.
"""

import logging
from typing import Iterable, Optional

from .models import Capability, RiskLevel, ToolPermission

logger = logging.getLogger(__name__)


def _tool(name: str, category: str, risk: RiskLevel, description: str,
          always_require_approval: bool = False) -> ToolPermission:
    return ToolPermission(
        tool_name=name,
        capabilities=[Capability(category=category, risk_level=risk, description=description)],
        always_require_approval=always_require_approval,
    )


BUILTIN_TOOL_PERMISSIONS: list[ToolPermission] = [
    # Filesystem
    _tool("read_file", "filesystem.read", RiskLevel.SAFE, "Read file contents"),
    _tool("list_directory", "filesystem.read", RiskLevel.SAFE, "List directory contents"),
    _tool("search_files", "filesystem.read", RiskLevel.SAFE, "Search for files"),
    _tool("write_file", "filesystem.write", RiskLevel.MODERATE, "Write file contents"),
    _tool("delete_file", "filesystem.delete", RiskLevel.DANGEROUS, "Delete files",
          always_require_approval=True),
    # Terminal
    _tool("run_command", "terminal.execute", RiskLevel.DANGEROUS, "Execute shell command",
          always_require_approval=True),
    _tool("start_background_command", "terminal.background", RiskLevel.DANGEROUS,
          "Start background process", always_require_approval=True),
    # Browser
    _tool("browser_navigate", "browser.navigate", RiskLevel.MODERATE, "Navigate to URL"),
    _tool("browser_execute", "browser.execute", RiskLevel.DANGEROUS, "Execute JavaScript",
          always_require_approval=True),
    # Network
    _tool("http_fetch", "network.http", RiskLevel.MODERATE, "Make HTTP request"),
    # Memory is internal to the agent
    _tool("remember", "memory.write", RiskLevel.SAFE, "Store in memory"),
    _tool("recall", "memory.read", RiskLevel.SAFE, "Retrieve from memory"),
]


class PermissionRegistry:
    """Lookup table of registered tool permissions."""

    def __init__(self, permissions: Optional[Iterable[ToolPermission]] = None):
        self._tools: dict[str, ToolPermission] = {}
        if permissions:
            self.register_many(permissions)

    def register(self, permission: ToolPermission) -> None:
        """Register (or replace) a tool's permission declaration."""
        self._tools[permission.tool_name] = permission
        logger.debug(
            f"Registered tool capabilities: {permission.tool_name} -> {permission.categories}"
        )

    def register_tool(
        self,
        tool_name: str,
        capabilities: list[Capability],
        always_require_approval: bool = False,
    ) -> ToolPermission:
        """Build and register a ToolPermission."""
        permission = ToolPermission(
            tool_name=tool_name,
            capabilities=capabilities,
            always_require_approval=always_require_approval,
        )
        self.register(permission)
        return permission

    def register_many(self, permissions: Iterable[ToolPermission]) -> int:
        count = 0
        for permission in permissions:
            self.register(permission)
            count += 1
        return count

    def lookup(self, tool_name: str) -> Optional[ToolPermission]:
        """Get the permission declaration for a tool, or None if unregistered."""
        return self._tools.get(tool_name)

    def unregister(self, tool_name: str) -> bool:
        return self._tools.pop(tool_name, None) is not None

    def list_tools(self) -> list[ToolPermission]:
        return list(self._tools.values())

    def __contains__(self, tool_name: object) -> bool:
        return tool_name in self._tools

    def __len__(self) -> int:
        return len(self._tools)
