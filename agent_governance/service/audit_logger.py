"""
Audit Logger for governance and execution events.

Module: agent_governance/service/audit_logger.py

Receives structured events from the proof, policy, governance, task runner
and orchestrator components. Recording is fire-and-forget: a failing sink or
hook is logged and never reaches the caller.
"""

import json
import logging
import re
import threading
from datetime import datetime
from enum import Enum
from pathlib import Path
from typing import Any, Callable, Dict, List, Optional, Union
from uuid import uuid4

import anyio
from pydantic import BaseModel, Field

from .models import utc_now


logger = logging.getLogger(__name__)


class AuditEventType(str, Enum):
    """Kinds of audit events."""

    AGENT_REGISTERED = "agent_registered"
    AGENT_UPDATED = "agent_updated"
    AGENT_DELETED = "agent_deleted"
    PROMOTION = "promotion"
    ADMISSION = "admission"
    POLICY_RELOAD = "policy_reload"
    REVALIDATION = "revalidation"
    REMEDIATION = "remediation"
    TASK_STARTED = "task_started"
    ITERATION = "iteration"
    TOOL_CALL = "tool_call"
    TASK_COMPLETED = "task_completed"
    TASK_FAILED = "task_failed"
    ORCHESTRATION_STARTED = "orchestration_started"
    STEP_COMPLETED = "step_completed"
    STEP_FAILED = "step_failed"
    ORCHESTRATION_COMPLETED = "orchestration_completed"
    ORCHESTRATION_FAILED = "orchestration_failed"


class AuditSeverity(str, Enum):
    """Severity levels for audit events."""

    DEBUG = "debug"
    INFO = "info"
    WARNING = "warning"
    ERROR = "error"
    CRITICAL = "critical"


class AuditEvent(BaseModel):
    """A single audit log event."""

    event_id: str = Field(default_factory=lambda: str(uuid4()))
    timestamp: datetime = Field(default_factory=utc_now)

    event_type: AuditEventType = Field(...)
    severity: AuditSeverity = Field(default=AuditSeverity.INFO)

    # Subjects
    agent_id: Optional[str] = Field(None)
    task_id: Optional[str] = Field(None)
    orchestration_id: Optional[str] = Field(None)
    step_id: Optional[str] = Field(None)

    # Governance
    status: Optional[str] = Field(None)
    allowed: Optional[bool] = Field(None)
    reason: Optional[str] = Field(None)
    violations: Optional[List[str]] = Field(None)
    policy_hash: Optional[str] = Field(None)

    # Execution
    step: Optional[int] = Field(None)
    tool_name: Optional[str] = Field(None)
    error: Optional[str] = Field(None)
    duration_ms: Optional[float] = Field(None)

    metadata: Dict[str, Any] = Field(default_factory=dict)


class AuditLogEntry(BaseModel):
    """Formatted audit log entry for storage."""

    event: AuditEvent = Field(...)
    formatted_message: str = Field(...)
    tags: List[str] = Field(default_factory=list)


class AuditSink:
    """Base class for audit log sinks."""

    def write(self, entry: AuditLogEntry) -> None:
        """Write an audit entry to the sink."""
        raise NotImplementedError

    def flush(self) -> None:
        """Persist buffered entries."""
        pass

    async def flush_async(self) -> None:
        """Flush on a worker thread so the event loop is not blocked."""
        await anyio.to_thread.run_sync(self.flush)

    def close(self) -> None:
        """Close the sink."""
        self.flush()


class LoggingAuditSink(AuditSink):
    """Audit sink that forwards to the standard logging system."""

    def __init__(self, logger_name: str = "agent_governance.audit"):
        self._logger = logging.getLogger(logger_name)

    def write(self, entry: AuditLogEntry) -> None:
        self._logger.info(f"[AUDIT] {entry.formatted_message}")

    async def flush_async(self) -> None:
        pass


class FileAuditSink(AuditSink):
    """
    Audit sink that appends JSON lines to a file.

    Entries are serialized on ``write`` and buffered; the file is only
    touched when ``buffer_size`` entries are pending or on ``flush``.
    Async callers use ``flush_async`` to keep the append off the event loop.
    """

    def __init__(
        self,
        log_path: Union[str, Path],
        rotate_size_mb: int = 100,
        buffer_size: int = 64,
    ):
        self.log_path = Path(log_path)
        self.rotate_size_mb = rotate_size_mb
        self.buffer_size = max(1, buffer_size)
        self.log_path.parent.mkdir(parents=True, exist_ok=True)

        self._buffer: List[str] = []
        self._buffer_lock = threading.Lock()
        self._file_lock = threading.Lock()

    @property
    def pending(self) -> int:
        """Number of entries not yet on disk."""
        return len(self._buffer)

    def write(self, entry: AuditLogEntry) -> None:
        line = json.dumps(entry.event.model_dump(mode="json")) + "\n"
        with self._buffer_lock:
            self._buffer.append(line)
            full = len(self._buffer) >= self.buffer_size
        if full:
            self.flush()

    def flush(self) -> None:
        # file lock first so batches land in the order they were taken
        with self._file_lock:
            with self._buffer_lock:
                lines, self._buffer = self._buffer, []
            if not lines:
                return

            if self.log_path.exists():
                size_mb = self.log_path.stat().st_size / (1024 * 1024)
                if size_mb >= self.rotate_size_mb:
                    self._rotate()

            with open(self.log_path, "a", encoding="utf-8") as f:
                f.writelines(lines)

    def _rotate(self) -> None:
        """Rotate log file."""
        timestamp = utc_now().strftime("%Y%m%d_%H%M%S")
        rotated_path = self.log_path.with_suffix(f".{timestamp}.log")
        self.log_path.rename(rotated_path)
        logger.info(f"Rotated audit log to {rotated_path}")


class MemoryAuditSink(AuditSink):
    """Audit sink that stores in memory (for testing/development)."""

    def __init__(self, max_entries: int = 10000):
        self.max_entries = max_entries
        self.entries: List[AuditLogEntry] = []

    def write(self, entry: AuditLogEntry) -> None:
        self.entries.append(entry)
        if len(self.entries) > self.max_entries:
            self.entries = self.entries[-self.max_entries:]

    async def flush_async(self) -> None:
        pass

    def get_entries(
        self,
        event_type: Optional[AuditEventType] = None,
        agent_id: Optional[str] = None,
        task_id: Optional[str] = None,
        orchestration_id: Optional[str] = None,
    ) -> List[AuditLogEntry]:
        """Query stored entries."""
        result = self.entries

        if event_type:
            result = [e for e in result if e.event.event_type == event_type]
        if agent_id:
            result = [e for e in result if e.event.agent_id == agent_id]
        if task_id:
            result = [e for e in result if e.event.task_id == task_id]
        if orchestration_id:
            result = [e for e in result if e.event.orchestration_id == orchestration_id]

        return result

    def events(self, event_type: Optional[AuditEventType] = None) -> List[AuditEvent]:
        """Return stored events, optionally filtered by type."""
        return [e.event for e in self.get_entries(event_type=event_type)]

    def clear(self) -> None:
        """Clear stored entries."""
        self.entries.clear()


_SENSITIVE_PATTERNS = [
    (re.compile(r"api[_-]?key[\"']?\s*[:=]\s*[\"']?[\w-]+", re.IGNORECASE), "api_key=***REDACTED***"),
    (re.compile(r"password[\"']?\s*[:=]\s*[\"']?\S+", re.IGNORECASE), "password=***REDACTED***"),
    (re.compile(r"secret[\"']?\s*[:=]\s*[\"']?\S+", re.IGNORECASE), "secret=***REDACTED***"),
    (re.compile(r"token[\"']?\s*[:=]\s*[\"']?[\w-]+", re.IGNORECASE), "token=***REDACTED***"),
]


class AuditLogger:
    """
    Audit logger for governance and execution events.

    Supports multiple sinks and hooks. ``record`` never raises: sink and hook
    failures are logged and dropped so auditing stays off the critical path.
    """

    def __init__(
        self,
        sinks: Optional[List[AuditSink]] = None,
        redact_sensitive: bool = True,
    ):
        """
        Initialize audit logger.

        Args:
            sinks: List of audit sinks (default: memory sink)
            redact_sensitive: Whether to redact secrets in string fields
        """
        self.sinks = sinks if sinks is not None else [MemoryAuditSink()]
        self.redact_sensitive = redact_sensitive

        self._hooks: List[Callable[[AuditEvent], None]] = []
        self._event_counts: Dict[str, int] = {}

    def record(self, event: AuditEvent) -> str:
        """
        Record an audit event.

        Args:
            event: Event to record

        Returns:
            Event ID
        """
        try:
            if self.redact_sensitive:
                event = self._redact_event(event)
            entry = AuditLogEntry(
                event=event,
                formatted_message=self._format_event(event),
                tags=self._generate_tags(event),
            )
        except Exception as e:
            logger.warning(f"Audit event {event.event_id} could not be formatted: {e}")
            return event.event_id

        for sink in self.sinks:
            try:
                sink.write(entry)
            except Exception as e:
                logger.warning(f"Audit sink {type(sink).__name__} failed: {e}")

        key = event.event_type.value
        self._event_counts[key] = self._event_counts.get(key, 0) + 1

        for hook in self._hooks:
            try:
                hook(event)
            except Exception as e:
                logger.warning(f"Audit hook failed: {e}")

        logger.debug(f"Audit logged: {event.event_id} ({event.event_type.value})")
        return event.event_id

    def emit(
        self,
        event_type: AuditEventType,
        severity: AuditSeverity = AuditSeverity.INFO,
        **fields: Any,
    ) -> str:
        """Build and record an event in one call."""
        try:
            event = AuditEvent(event_type=event_type, severity=severity, **fields)
        except Exception as e:
            logger.warning(f"Invalid audit event {event_type.value}: {e}")
            return ""
        return self.record(event)

    def _format_event(self, event: AuditEvent) -> str:
        """Format event as human-readable message."""
        ts = event.timestamp.strftime("%Y-%m-%d %H:%M:%S.%f")[:-3]
        parts = [
            f"{ts} [{event.severity.value.upper()}] [{event.event_type.value.upper()}]"
        ]

        if event.orchestration_id:
            parts.append(f"orch={event.orchestration_id}")
        if event.step_id:
            parts.append(f"step_id={event.step_id}")
        if event.task_id:
            parts.append(f"task={event.task_id}")
        if event.agent_id:
            parts.append(f"agent={event.agent_id}")
        if event.status:
            parts.append(f"status={event.status}")
        if event.allowed is not None:
            parts.append(f"allowed={event.allowed}")
        if event.reason:
            parts.append(f"reason=\"{event.reason}\"")
        if event.violations:
            parts.append(f"violations={len(event.violations)}")
        if event.policy_hash:
            parts.append(f"policy={event.policy_hash[:12]}")
        if event.step is not None:
            parts.append(f"step={event.step}")
        if event.tool_name:
            parts.append(f"tool={event.tool_name}")
        if event.duration_ms is not None:
            parts.append(f"duration={event.duration_ms:.0f}ms")
        if event.error:
            parts.append(f"error=\"{event.error}\"")

        return " ".join(parts)

    def _generate_tags(self, event: AuditEvent) -> List[str]:
        """Generate searchable tags for event."""
        tags = [event.event_type.value, event.severity.value]

        if event.agent_id:
            tags.append(f"agent:{event.agent_id}")
        if event.task_id:
            tags.append(f"task:{event.task_id}")
        if event.orchestration_id:
            tags.append(f"orch:{event.orchestration_id}")
        if event.allowed is not None:
            tags.append("allowed" if event.allowed else "denied")
        if event.tool_name:
            tags.append(f"tool:{event.tool_name}")

        return tags

    def _redact_event(self, event: AuditEvent) -> AuditEvent:
        """Redact sensitive information from string fields."""
        event_data = event.model_dump()

        for key, value in event_data.items():
            if isinstance(value, str):
                for pattern, replacement in _SENSITIVE_PATTERNS:
                    value = pattern.sub(replacement, value)
                event_data[key] = value

        return AuditEvent(**event_data)

    def add_hook(self, hook: Callable[[AuditEvent], None]) -> None:
        """Add a hook to be called for each event."""
        self._hooks.append(hook)

    def remove_hook(self, hook: Callable[[AuditEvent], None]) -> bool:
        """Remove a hook."""
        try:
            self._hooks.remove(hook)
            return True
        except ValueError:
            return False

    def add_sink(self, sink: AuditSink) -> None:
        """Add an audit sink."""
        self.sinks.append(sink)

    def memory_sink(self) -> Optional[MemoryAuditSink]:
        """Return the first in-memory sink, if any."""
        for sink in self.sinks:
            if isinstance(sink, MemoryAuditSink):
                return sink
        return None

    def get_statistics(self) -> Dict[str, Any]:
        """Get audit logging statistics."""
        return {
            "event_counts": self._event_counts.copy(),
            "total_events": sum(self._event_counts.values()),
            "sinks": len(self.sinks),
            "hooks": len(self._hooks),
        }

    async def flush_async(self) -> None:
        """Drain buffered sinks without blocking the event loop."""
        for sink in self.sinks:
            try:
                await sink.flush_async()
            except Exception as e:
                logger.warning(f"Audit sink {type(sink).__name__} failed to flush: {e}")

    def close(self) -> None:
        """Close all sinks."""
        for sink in self.sinks:
            try:
                sink.close()
            except Exception as e:
                logger.warning(f"Audit sink {type(sink).__name__} failed to close: {e}")


def create_audit_logger(audit_log_path: Optional[str] = None) -> AuditLogger:
    """
    Create an audit logger with the default sinks.

    Args:
        audit_log_path: Optional JSONL file that also receives every event

    Returns:
        AuditLogger writing to memory and logging, plus the file when given
    """
    sinks: List[AuditSink] = [MemoryAuditSink(), LoggingAuditSink()]
    if audit_log_path:
        sinks.append(FileAuditSink(audit_log_path))
    return AuditLogger(sinks=sinks)
