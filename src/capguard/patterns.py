"""Deny-list matching for filesystem paths and shell commands.

Path patterns are globs where ``*`` matches any run of characters (including
``/``) and ``~`` is the home directory. Command patterns are regular
expressions searched anywhere in the raw command string. Both are
case-insensitive.
"""

import os
import re
from functools import lru_cache
from typing import Any, Optional

from .config import SecurityPolicy

# Checked in order; the first string value wins
PATH_ARG_KEYS = ("path", "filePath", "directory", "dir", "file", "targetPath",
                 "file_path", "target_path")
COMMAND_ARG_KEYS = ("command",)


@lru_cache(maxsize=512)
def glob_to_regex(pattern: str, ignore_case: bool = False) -> re.Pattern:
    """Compile a glob into an anchored regex. Only ``*`` is special."""
    body = ".*".join(re.escape(part) for part in pattern.split("*"))
    return re.compile(f"^{body}$", re.IGNORECASE if ignore_case else 0)


@lru_cache(maxsize=512)
def _command_regex(pattern: str) -> re.Pattern:
    return re.compile(pattern, re.IGNORECASE)


def normalize_path(path: str) -> str:
    """Expand ``~``, make absolute and collapse ``..``/``.`` segments."""
    return os.path.normpath(os.path.abspath(os.path.expanduser(path)))


def _expand_pattern(pattern: str) -> str:
    if pattern.startswith("~"):
        return os.path.expanduser("~") + pattern[1:]
    return pattern


def _first_string(args: dict[str, Any], keys: tuple[str, ...]) -> Optional[str]:
    for key in keys:
        value = args.get(key)
        if isinstance(value, str) and value:
            return value
    return None


class PatternMatcher:
    """Evaluates the policy's deny-lists. Always reads the current policy."""

    def __init__(self, policy: SecurityPolicy):
        self.policy = policy

    @staticmethod
    def extract_path(args: dict[str, Any]) -> Optional[str]:
        return _first_string(args, PATH_ARG_KEYS)

    @staticmethod
    def extract_command(args: dict[str, Any]) -> Optional[str]:
        return _first_string(args, COMMAND_ARG_KEYS)

    def is_blocked_path(self, path: str) -> bool:
        """True if the resolved path matches any blocked glob."""
        return self._matching_path_pattern(path, self.policy.blocked_paths) is not None

    def is_allowed_path(self, path: str) -> bool:
        """True if the resolved path matches any allowed glob.

        Relative patterns are resolved against the working directory. A
        pattern without ``*`` names a directory and allows everything below it.
        """
        resolved = normalize_path(path)
        for pattern in self.policy.allowed_paths:
            expanded = _expand_pattern(pattern)
            if not os.path.isabs(expanded):
                expanded = os.path.join(os.getcwd(), os.path.normpath(expanded))
            candidates = [expanded] if "*" in expanded else [expanded, os.path.join(expanded, "*")]
            if any(glob_to_regex(c, ignore_case=True).match(resolved) for c in candidates):
                return True
        return False

    def blocked_path_pattern(self, path: str) -> Optional[str]:
        """The first blocked glob matching the path, if any."""
        return self._matching_path_pattern(path, self.policy.blocked_paths)

    def is_blocked_command(self, command: str) -> bool:
        return self.blocked_command_pattern(command) is not None

    def blocked_command_pattern(self, command: str) -> Optional[str]:
        """The first blocked regex found in the command, if any."""
        for pattern in self.policy.blocked_commands:
            if _command_regex(pattern).search(command):
                return pattern
        return None

    def _matching_path_pattern(self, path: str, patterns: list[str]) -> Optional[str]:
        resolved = normalize_path(path)
        for pattern in patterns:
            if glob_to_regex(_expand_pattern(pattern), ignore_case=True).match(resolved):
                return pattern
        return None
