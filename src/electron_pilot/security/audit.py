"""Audit logging for security decisions.

Layer 4 of the execution path:
- One append-only record per SecurityManager invocation
- JSONL format with daily rotation
- Query interface bounded by MAX_QUERY_LIMIT
- Write failures are reported on the operator log channel, never raised
"""

import json
import threading
from dataclasses import asdict, dataclass
from datetime import datetime, timedelta
from pathlib import Path
from typing import Any, Iterator

from electron_pilot.constants import CONTENT_PREVIEW_LENGTH, truncate
from electron_pilot.logging import Loggers
from electron_pilot.security.models import RiskLevel

logger = Loggers.audit()

MAX_QUERY_LIMIT = 1000
LOG_FILE_PREFIX = "security_audit_"


@dataclass(frozen=True)
class AuditEntry:
    """A single audit log entry.

    Attributes:
        timestamp: ISO timestamp of the decision.
        session_id: Correlation id returned to the caller.
        action: Operation type (command, interaction, screenshot, ...).
        command: The command, truncated for storage.
        risk_level: Evaluated risk level.
        success: Whether the operation succeeded.
        blocked: Whether the operation was stopped before execution.
        error: Error message, if any.
        execution_time_ms: Elapsed wall-clock time.
        source_ip: Caller-reported address (metadata only).
        user_agent: Caller-reported agent (metadata only).
        user_id: Authenticated user, when known.
        caller_session_id: Access-control session of the caller, when known.
    """

    timestamp: str
    session_id: str
    action: str
    command: str
    risk_level: str
    success: bool
    blocked: bool = False
    error: str | None = None
    execution_time_ms: int = 0
    source_ip: str | None = None
    user_agent: str | None = None
    user_id: str | None = None
    caller_session_id: str | None = None

    def to_dict(self) -> dict[str, Any]:
        """Convert to dictionary for JSON serialization."""
        return {k: v for k, v in asdict(self).items() if v is not None}

    @classmethod
    def from_dict(cls, data: dict[str, Any]) -> "AuditEntry":
        """Create from dictionary."""
        return cls(
            timestamp=data.get("timestamp", ""),
            session_id=data.get("session_id", ""),
            action=data.get("action", ""),
            command=data.get("command", ""),
            risk_level=data.get("risk_level", "low"),
            success=data.get("success", False),
            blocked=data.get("blocked", False),
            error=data.get("error"),
            execution_time_ms=data.get("execution_time_ms", 0),
            source_ip=data.get("source_ip"),
            user_agent=data.get("user_agent"),
            user_id=data.get("user_id"),
            caller_session_id=data.get("caller_session_id"),
        )

    @property
    def recorded_at(self) -> datetime:
        return datetime.fromisoformat(self.timestamp)


@dataclass
class AuditConfig:
    """Configuration for audit logging.

    Attributes:
        enabled: Whether audit logging is enabled.
        log_dir: Directory for audit logs.
        retention_days: How long to keep logs.
        max_command_length: Maximum stored command length.
    """

    enabled: bool = True
    log_dir: str | Path = "~/.electron-pilot/audit"
    retention_days: int = 30
    max_command_length: int = CONTENT_PREVIEW_LENGTH

    def get_log_dir(self) -> Path:
        """Get resolved log directory path."""
        return Path(self.log_dir).expanduser()


class AuditLogger:
    """Append-only JSONL sink for security events."""

    def __init__(self, config: AuditConfig | None = None):
        """Initialize the audit logger.

        Args:
            config: Audit configuration.
        """
        self.config = config or AuditConfig()
        self._write_lock = threading.Lock()
        self._ensure_log_dir()

    def _ensure_log_dir(self) -> None:
        if not self.config.enabled:
            return
        try:
            self.config.get_log_dir().mkdir(parents=True, exist_ok=True)
        except OSError as e:
            logger.warning("audit_dir_unavailable", path=str(self.config.get_log_dir()), error=str(e))

    def _get_log_file(self, date: datetime | None = None) -> Path:
        """Get the log file path for a given date."""
        if date is None:
            date = datetime.now()
        return self.config.get_log_dir() / f"{LOG_FILE_PREFIX}{date.strftime('%Y-%m-%d')}.jsonl"

    def log(self, entry: AuditEntry) -> bool:
        """Append an entry.

        Returns:
            True if the entry was written. Failures are logged, never raised.
        """
        if not self.config.enabled:
            return False

        try:
            line = json.dumps(entry.to_dict()) + "\n"
            # log() runs on worker threads via asyncio.to_thread
            with self._write_lock, open(self._get_log_file(entry.recorded_at), "a", encoding="utf-8") as f:
                f.write(line)
        except (OSError, TypeError, ValueError) as e:
            logger.warning(
                "audit_write_failed",
                session_id=entry.session_id,
                action=entry.action,
                error=str(e),
            )
            return False

        if entry.risk_level in (RiskLevel.HIGH.value, RiskLevel.CRITICAL.value) or entry.blocked:
            logger.warning(
                "security_event",
                session_id=entry.session_id,
                action=entry.action,
                risk_level=entry.risk_level,
                blocked=entry.blocked,
                command=truncate(entry.command, 100),
            )
        return True

    def log_event(
        self,
        session_id: str,
        action: str,
        command: str,
        risk_level: RiskLevel,
        success: bool,
        blocked: bool = False,
        error: str | None = None,
        execution_time_ms: int = 0,
        source_ip: str | None = None,
        user_agent: str | None = None,
        user_id: str | None = None,
        caller_session_id: str | None = None,
    ) -> AuditEntry:
        """Create and append an AuditEntry.

        Returns:
            The created AuditEntry.
        """
        entry = AuditEntry(
            timestamp=datetime.now().isoformat(),
            session_id=session_id,
            action=action,
            command=truncate(command, self.config.max_command_length),
            risk_level=risk_level.value,
            success=success,
            blocked=blocked,
            error=error,
            execution_time_ms=execution_time_ms,
            source_ip=source_ip,
            user_agent=user_agent,
            user_id=user_id,
            caller_session_id=caller_session_id,
        )
        self.log(entry)
        return entry

    def query(
        self,
        start_date: datetime | None = None,
        end_date: datetime | None = None,
        risk_level: RiskLevel | None = None,
        session_id: str | None = None,
        user_id: str | None = None,
        action: str | None = None,
        blocked_only: bool = False,
        limit: int = 100,
    ) -> Iterator[AuditEntry]:
        """Query audit log entries.

        Args:
            start_date: Start of time range (default: 7 days before end).
            end_date: End of time range (default: now).
            risk_level: Filter by risk level.
            session_id: Filter by correlation id or caller session id.
            user_id: Filter by user.
            action: Filter by operation type.
            blocked_only: Only return blocked decisions.
            limit: Maximum entries to return, clamped to MAX_QUERY_LIMIT.

        Yields:
            Matching AuditEntry objects, oldest first.
        """
        if not self.config.enabled:
            return

        log_dir = self.config.get_log_dir()
        if not log_dir.exists():
            return

        limit = max(0, min(limit, MAX_QUERY_LIMIT))
        if end_date is None:
            end_date = datetime.now()
        if start_date is None:
            start_date = end_date - timedelta(days=7)

        current = start_date.replace(hour=0, minute=0, second=0, microsecond=0)
        count = 0

        while current <= end_date and count < limit:
            log_file = self._get_log_file(current)
            current += timedelta(days=1)
            if not log_file.exists():
                continue

            try:
                with open(log_file, encoding="utf-8") as f:
                    for line in f:
                        if count >= limit:
                            return
                        try:
                            entry = AuditEntry.from_dict(json.loads(line))
                            stamp = entry.recorded_at
                        except (json.JSONDecodeError, ValueError):
                            continue  # Skip malformed lines

                        if stamp < start_date or stamp > end_date:
                            continue
                        if risk_level and entry.risk_level != risk_level.value:
                            continue
                        if session_id and session_id not in (entry.session_id, entry.caller_session_id):
                            continue
                        if user_id and entry.user_id != user_id:
                            continue
                        if action and entry.action != action:
                            continue
                        if blocked_only and not entry.blocked:
                            continue

                        yield entry
                        count += 1
            except OSError as e:
                logger.warning("audit_read_failed", path=str(log_file), error=str(e))

    def get_security_metrics(self, since: datetime | None = None) -> dict[str, Any]:
        """Summarize recorded decisions.

        Args:
            since: Start of the window (default: 24 hours ago).

        Returns:
            Totals, distributions by risk level and action, average time.
        """
        since = since or datetime.now() - timedelta(hours=24)
        entries = list(self.query(start_date=since, limit=MAX_QUERY_LIMIT))

        risk_counts: dict[str, int] = {}
        action_counts: dict[str, int] = {}
        for entry in entries:
            risk_counts[entry.risk_level] = risk_counts.get(entry.risk_level, 0) + 1
            action_counts[entry.action] = action_counts.get(entry.action, 0) + 1

        total = len(entries)
        return {
            "since": since.isoformat(),
            "total_requests": total,
            "blocked_requests": sum(1 for e in entries if e.blocked),
            "failed_requests": sum(1 for e in entries if not e.success and not e.blocked),
            "risk_distribution": risk_counts,
            "action_distribution": action_counts,
            "average_execution_time_ms": (
                sum(e.execution_time_ms for e in entries) / total if total else 0.0
            ),
            "truncated": total >= MAX_QUERY_LIMIT,
        }

    def cleanup_old_logs(self) -> int:
        """Remove logs older than the retention period.

        Returns:
            Number of files removed.
        """
        if not self.config.enabled:
            return 0

        log_dir = self.config.get_log_dir()
        if not log_dir.exists():
            return 0

        cutoff = datetime.now() - timedelta(days=self.config.retention_days)
        removed = 0

        for log_file in log_dir.glob(f"{LOG_FILE_PREFIX}*.jsonl"):
            try:
                file_date = datetime.strptime(log_file.stem.replace(LOG_FILE_PREFIX, ""), "%Y-%m-%d")
                if file_date < cutoff:
                    log_file.unlink()
                    removed += 1
            except (ValueError, OSError):
                continue  # Skip files with unexpected format

        if removed:
            logger.info("audit_logs_removed", count=removed, retention_days=self.config.retention_days)
        return removed
