"""Tests for the capguard audit log."""

import json
import re

import pytest

from capguard.audit import (
    REDACTED,
    TRUNCATION_MARKER,
    AuditLog,
    generate_entry_id,
    sanitize_args,
)
from capguard.events import EventBus, EventType
from capguard.models import ApprovalSource, AuditResult


class TestSanitization:
    """Tests for argument sanitization."""

    def test_password_and_long_note(self):
        """Test redaction and truncation together."""
        sanitized = sanitize_args({"password": "x", "note": "y" * 600})

        assert sanitized["password"] == REDACTED
        assert sanitized["note"] == "y" * 500 + TRUNCATION_MARKER

    @pytest.mark.parametrize("key", [
        "password", "API_TOKEN", "clientSecret", "apiKey", "ssh_key", "credentials",
    ])
    def test_sensitive_keys(self, key):
        """Test case-insensitive substring matching of sensitive keys."""
        assert sanitize_args({key: "hunter2"})[key] == REDACTED

    def test_other_values_untouched(self):
        """Test that ordinary values pass through."""
        args = {"path": "/tmp/x", "count": 3, "lines": ["a", "b"], "text": "z" * 500}
        assert sanitize_args(args) == args

    def test_does_not_mutate_input(self):
        """Test that the caller's dict is left alone."""
        args = {"token": "abc"}
        sanitize_args(args)
        assert args == {"token": "abc"}

    def test_custom_max_length(self):
        """Test a custom truncation length."""
        assert sanitize_args({"note": "abcdef"}, max_length=3)["note"] == "abc" + TRUNCATION_MARKER


def test_entry_id_format():
    """Test the audit entry id format."""
    assert re.fullmatch(r"audit_\d+_[a-z0-9]{6}", generate_entry_id())


class TestInMemoryLog:
    """Tests for the in-memory buffer."""

    @pytest.mark.asyncio
    async def test_record_entry(self):
        """Test that record returns a complete, sanitized entry."""
        log = AuditLog()
        entry = await log.record(
            "write_file",
            ["filesystem.write"],
            {"path": "/tmp/a", "api_key": "sk-123"},
            AuditResult.APPROVED,
            ApprovalSource.USER,
            user_id="alice",
        )

        assert entry.id.startswith("audit_")
        assert entry.tool_name == "write_file"
        assert entry.capabilities == ["filesystem.write"]
        assert entry.args == {"path": "/tmp/a", "api_key": REDACTED}
        assert entry.result == AuditResult.APPROVED
        assert entry.approval_source == ApprovalSource.USER
        assert entry.user_id == "alice"
        assert log.get_recent() == [entry]

    @pytest.mark.asyncio
    async def test_memory_cap_evicts_oldest(self):
        """Test that the buffer never exceeds 1000 entries and drops the oldest."""
        log = AuditLog()
        for i in range(1005):
            await log.record(f"tool_{i}", [], {}, AuditResult.AUTO_APPROVED, ApprovalSource.AUTO)

        assert len(log) == 1000
        recent = log.get_recent(1000)
        assert recent[0].tool_name == "tool_5"
        assert recent[-1].tool_name == "tool_1004"

    @pytest.mark.asyncio
    async def test_get_recent_limit(self):
        """Test that get_recent returns the newest entries, oldest first."""
        log = AuditLog()
        for i in range(5):
            await log.record(f"tool_{i}", [], {}, AuditResult.DENIED, ApprovalSource.POLICY)

        assert [e.tool_name for e in log.get_recent(2)] == ["tool_3", "tool_4"]
        assert len(log.get_recent(50)) == 5
        assert log.get_recent(0) == []

    @pytest.mark.asyncio
    async def test_flush_without_path(self):
        """Test that an in-memory log does not persist."""
        log = AuditLog()
        assert await log.flush() is False

    @pytest.mark.asyncio
    async def test_emits_audit_logged(self):
        """Test that each entry is published to subscribers."""
        events = EventBus()
        seen = []
        events.subscribe(EventType.AUDIT_LOGGED, seen.append)
        log = AuditLog(events=events)

        entry = await log.record("recall", ["memory.read"], {}, AuditResult.AUTO_APPROVED, ApprovalSource.AUTO)

        assert seen == [entry]


class TestPersistence:
    """Tests for the JSON file."""

    @pytest.mark.asyncio
    async def test_persist_and_reload(self, tmp_path):
        """Test that entries survive a reload."""
        path = tmp_path / "security" / "audit.json"
        log = AuditLog(path=path)
        entry = await log.record(
            "delete_file", ["filesystem.delete"], {"path": "/tmp/x"},
            AuditResult.DENIED, ApprovalSource.USER,
        )

        data = json.loads(path.read_text())
        assert data[0]["id"] == entry.id
        assert data[0]["result"] == "denied"
        assert data[0]["approval_source"] == "user"

        reloaded = AuditLog(path=path)
        assert await reloaded.load() == 1
        assert reloaded.get_recent()[0].model_dump() == entry.model_dump()

    @pytest.mark.asyncio
    async def test_persist_limit(self, tmp_path):
        """Test that the file keeps only the newest persist_limit entries."""
        path = tmp_path / "audit.json"
        log = AuditLog(path=path, memory_limit=20, persist_limit=5)
        for i in range(12):
            await log.record(f"tool_{i}", [], {}, AuditResult.AUTO_APPROVED, ApprovalSource.AUTO)

        data = json.loads(path.read_text())
        assert [d["tool_name"] for d in data] == [f"tool_{i}" for i in range(7, 12)]
        assert len(log) == 12

    @pytest.mark.asyncio
    async def test_missing_file(self, tmp_path):
        """Test that a missing file gives an empty log."""
        log = AuditLog(path=tmp_path / "nope.json")
        assert await log.load() == 0
        assert log.get_recent() == []

    @pytest.mark.asyncio
    async def test_corrupt_file(self, tmp_path):
        """Test that a corrupt file gives an empty log."""
        path = tmp_path / "audit.json"
        path.write_text("{not json")

        log = AuditLog(path=path)
        assert await log.load() == 0

    @pytest.mark.asyncio
    async def test_non_list_file(self, tmp_path):
        """Test that a JSON object instead of an array gives an empty log."""
        path = tmp_path / "audit.json"
        path.write_text('{"entries": []}')

        assert await AuditLog(path=path).load() == 0

    @pytest.mark.asyncio
    async def test_invalid_entries_skipped(self, tmp_path):
        """Test that malformed entries are skipped on load."""
        path = tmp_path / "audit.json"
        path.write_text(json.dumps([
            {"id": "audit_1_abcdef", "tool_name": "recall", "result": "auto-approved",
             "approval_source": "auto", "timestamp": "2026-01-01T00:00:00+00:00"},
            {"id": "broken"},
        ]))

        log = AuditLog(path=path)
        assert await log.load() == 1
        assert log.get_recent()[0].result == AuditResult.AUTO_APPROVED

    @pytest.mark.asyncio
    async def test_write_failure_is_swallowed(self, tmp_path):
        """Test that a failed write is logged, not raised."""
        blocker = tmp_path / "blocker"
        blocker.write_text("a file, not a directory")
        log = AuditLog(path=blocker / "audit.json")

        entry = await log.record("recall", [], {}, AuditResult.AUTO_APPROVED, ApprovalSource.AUTO)

        assert log.get_recent() == [entry]
        assert await log.flush() is False


class Handle:
    """An argument value JSON cannot represent."""

    def __repr__(self):
        return "<Handle fd=3>"


class TestUnserializableArgs:
    """Tests for argument values that are not JSON."""

    def test_objects_become_repr(self):
        """Test that opaque values are stored as their repr."""
        sanitized = sanitize_args({"handle": Handle(), "content": b"\xff\xfe", 7: "seven"})

        assert sanitized["handle"] == "<Handle fd=3>"
        assert sanitized["content"] == repr(b"\xff\xfe")
        assert sanitized["7"] == "seven"

    def test_nested_values(self):
        """Test that nested structures keep their shape."""
        sanitized = sanitize_args({"opts": {"retries": 2, "tags": ("a", "b"), "fh": Handle()}})
        assert sanitized["opts"] == {"retries": 2, "tags": ["a", "b"], "fh": "<Handle fd=3>"}

    def test_long_repr_truncated(self):
        """Test that a long repr is truncated like any string."""
        sanitized = sanitize_args({"blob": b"x" * 600})
        assert sanitized["blob"].endswith(TRUNCATION_MARKER)

    @pytest.mark.asyncio
    async def test_bad_args_do_not_break_the_log(self, tmp_path):
        """Test that an opaque argument neither raises nor blocks later entries."""
        path = tmp_path / "audit.json"
        events = EventBus()
        seen = []
        events.subscribe(EventType.AUDIT_LOGGED, seen.append)
        log = AuditLog(path=path, events=events)

        first = await log.record(
            "write_file", ["filesystem.write"], {"handle": object(), "content": b"\xff\xfe"},
            AuditResult.APPROVED, ApprovalSource.USER,
        )
        second = await log.record(
            "write_file", ["filesystem.write"], {"path": "/tmp/a"},
            AuditResult.APPROVED, ApprovalSource.USER,
        )

        assert seen == [first, second]
        data = json.loads(path.read_text())
        assert [d["id"] for d in data] == [first.id, second.id]
        assert data[0]["args"]["content"] == repr(b"\xff\xfe")
        assert await log.flush() is True
