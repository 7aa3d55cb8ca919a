"""Append-only audit trail of execution decisions.

The in-memory buffer keeps the most recent entries; the JSON file on disk is
rewritten on every flush with a shorter tail. Persistence is best-effort: a
failed write or an unreadable file is logged and the log carries on in memory.
"""

import asyncio
import json
import logging
import os
import random
import string
import tempfile
import time
from collections import deque
from pathlib import Path
from typing import Any, Optional

from pydantic import ValidationError
from pydantic_core import PydanticSerializationError

from .events import EventBus, EventType
from .models import ApprovalSource, AuditLogEntry, AuditResult

logger = logging.getLogger(__name__)

REDACTED = "[REDACTED]"
TRUNCATION_MARKER = "...[truncated]"

# Matched as case-insensitive substrings of argument names
SENSITIVE_KEYS = ("password", "token", "secret", "key", "apikey", "credential")

_ID_ALPHABET = string.ascii_lowercase + string.digits


def generate_entry_id() -> str:
    """``audit_<epoch ms>_<6 random base36 chars>``."""
    suffix = "".join(random.choices(_ID_ALPHABET, k=6))
    return f"audit_{int(time.time() * 1000)}_{suffix}"


def _json_safe(value: Any) -> Any:
    """Round-trip a value through JSON, falling back to its repr."""
    try:
        return json.loads(json.dumps(value, default=repr))
    except (TypeError, ValueError):
        return repr(value)


def sanitize_args(args: dict[str, Any], max_length: int = 500) -> dict[str, Any]:
    """Redact sensitive keys, truncate long strings and make values JSON-safe.

    Args:
        args: Tool arguments as given by the caller
        max_length: Longest string value kept intact

    Returns:
        A new dict safe to persist. Values JSON cannot represent (bytes,
        handles, arbitrary objects) are stored as their repr.
    """
    sanitized: dict[str, Any] = {}
    for key, value in args.items():
        key = str(key)
        if any(sk in key.lower() for sk in SENSITIVE_KEYS):
            sanitized[key] = REDACTED
            continue
        if not isinstance(value, str):
            value = _json_safe(value)
        if isinstance(value, str) and len(value) > max_length:
            value = value[:max_length] + TRUNCATION_MARKER
        sanitized[key] = value
    return sanitized


class AuditLog:
    """Bounded, redacting audit log with best-effort JSON persistence."""

    def __init__(
        self,
        path: Optional[Path] = None,
        memory_limit: int = 1000,
        persist_limit: int = 500,
        max_arg_length: int = 500,
        events: Optional[EventBus] = None,
    ):
        """Initialize the audit log.

        Args:
            path: JSON file to persist to. None keeps the log in memory only.
            memory_limit: Entries kept in memory (oldest evicted first)
            persist_limit: Entries written to disk on each flush
            max_arg_length: String argument values longer than this are truncated
            events: Bus receiving an ``audit_logged`` notification per entry
        """
        self.path = Path(path) if path else None
        self.persist_limit = persist_limit
        self.max_arg_length = max_arg_length
        self.events = events
        self._entries: deque[AuditLogEntry] = deque(maxlen=memory_limit)
        self._flush_lock = asyncio.Lock()

    @property
    def memory_limit(self) -> int:
        return self._entries.maxlen or 0

    def __len__(self) -> int:
        return len(self._entries)

    async def load(self) -> int:
        """Load persisted entries. Missing or corrupt files give an empty log."""
        self._entries.clear()
        if self.path is None:
            return 0

        try:
            raw = await asyncio.to_thread(self._read_file, self.path)
        except FileNotFoundError:
            return 0
        except (OSError, ValueError) as e:
            logger.warning(f"Could not read audit log {self.path}, starting empty: {e}")
            return 0

        if not isinstance(raw, list):
            logger.warning(f"Audit log {self.path} is not a JSON array, starting empty")
            return 0

        skipped = 0
        for item in raw:
            try:
                self._entries.append(AuditLogEntry.model_validate(item))
            except ValidationError:
                skipped += 1
        if skipped:
            logger.warning(f"Skipped {skipped} invalid audit entries in {self.path}")
        return len(self._entries)

    async def record(
        self,
        tool_name: str,
        capabilities: list[str],
        args: dict[str, Any],
        result: AuditResult,
        approval_source: ApprovalSource,
        user_id: Optional[str] = None,
    ) -> AuditLogEntry:
        """Append an entry, flush it to disk and notify subscribers."""
        entry = AuditLogEntry(
            id=generate_entry_id(),
            tool_name=tool_name,
            capabilities=[str(getattr(c, "value", c)) for c in capabilities],
            args=sanitize_args(args or {}, self.max_arg_length),
            result=AuditResult(result),
            approval_source=ApprovalSource(approval_source),
            user_id=user_id,
        )
        self._entries.append(entry)

        await self.flush()

        if self.events is not None:
            await self.events.emit(EventType.AUDIT_LOGGED, entry)
        return entry

    log_execution = record

    def get_recent(self, limit: int = 50) -> list[AuditLogEntry]:
        """The newest ``limit`` entries, oldest first."""
        if limit <= 0:
            return []
        entries = list(self._entries)
        return entries[-limit:]

    async def flush(self) -> bool:
        """Rewrite the persisted file with the most recent entries.

        Returns:
            True if the file was written
        """
        if self.path is None:
            return False

        async with self._flush_lock:
            tail = list(self._entries)[-self.persist_limit:]
            try:
                payload = [e.model_dump(mode="json") for e in tail]
                await asyncio.to_thread(self._write_file, self.path, payload)
                return True
            except (OSError, TypeError, ValueError, UnicodeError, PydanticSerializationError) as e:
                logger.error(f"Failed to persist audit log to {self.path}: {e}")
                return False

    @staticmethod
    def _read_file(path: Path) -> Any:
        with open(path, encoding="utf-8") as f:
            return json.load(f)

    @staticmethod
    def _write_file(path: Path, payload: list[dict[str, Any]]) -> None:
        path.parent.mkdir(parents=True, exist_ok=True)
        fd, tmp_name = tempfile.mkstemp(dir=path.parent, prefix=".audit-", suffix=".tmp")
        try:
            with os.fdopen(fd, "w", encoding="utf-8") as f:
                json.dump(payload, f, indent=2, default=str)
            os.replace(tmp_name, path)
        except BaseException:
            try:
                os.unlink(tmp_name)
            except OSError:
                pass
            raise
