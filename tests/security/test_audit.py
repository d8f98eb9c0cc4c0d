"""Tests for the audit log sink."""

import asyncio
import json
from datetime import datetime, timedelta
from pathlib import Path

import pytest

from electron_pilot.security.audit import (
    LOG_FILE_PREFIX,
    MAX_QUERY_LIMIT,
    AuditConfig,
    AuditEntry,
    AuditLogger,
)
from electron_pilot.security.models import RiskLevel


def log_sample(logger: AuditLogger, **overrides) -> AuditEntry:
    fields = {
        "session_id": "abc123",
        "action": "command",
        "command": "document.title",
        "risk_level": RiskLevel.LOW,
        "success": True,
    }
    fields.update(overrides)
    return logger.log_event(**fields)


class TestAuditEntry:
    def test_to_dict_drops_none(self):
        entry = AuditEntry(
            timestamp="2024-01-01T00:00:00",
            session_id="s1",
            action="command",
            command="document.title",
            risk_level="low",
            success=True,
        )

        data = entry.to_dict()

        assert data["session_id"] == "s1"
        assert "error" not in data
        assert "source_ip" not in data

    def test_from_dict_round_trip(self):
        entry = AuditEntry(
            timestamp="2024-01-01T00:00:00",
            session_id="s1",
            action="screenshot",
            command="screenshot",
            risk_level="medium",
            success=False,
            blocked=True,
            error="Access denied",
            execution_time_ms=12,
            source_ip="10.0.0.1",
            user_id="u1",
        )

        assert AuditEntry.from_dict(entry.to_dict()) == entry


class TestAuditLogger:
    """Writes land in one JSONL file per day."""

    def test_log_event_writes_jsonl(self, audit_logger: AuditLogger):
        log_sample(audit_logger)

        files = list(audit_logger.config.get_log_dir().glob(f"{LOG_FILE_PREFIX}*.jsonl"))
        assert len(files) == 1
        lines = files[0].read_text().splitlines()
        assert json.loads(lines[0])["command"] == "document.title"

    def test_command_is_truncated(self, tmp_path: Path):
        logger = AuditLogger(AuditConfig(log_dir=tmp_path, max_command_length=20))

        entry = log_sample(logger, command="x" * 100)

        assert entry.command == "x" * 20 + "..."

    def test_disabled_logger_writes_nothing(self, tmp_path: Path):
        logger = AuditLogger(AuditConfig(enabled=False, log_dir=tmp_path / "audit"))

        log_sample(logger)

        assert not (tmp_path / "audit").exists()
        assert list(logger.query()) == []
        assert logger.cleanup_old_logs() == 0

    def test_write_failure_returns_false(self, tmp_path: Path):
        blocker = tmp_path / "not-a-dir"
        blocker.write_text("")
        logger = AuditLogger(AuditConfig(log_dir=blocker))
        entry = AuditEntry(
            timestamp=datetime.now().isoformat(),
            session_id="s1",
            action="command",
            command="x",
            risk_level="low",
            success=True,
        )

        assert logger.log(entry) is False

    @pytest.mark.asyncio
    async def test_concurrent_writes_keep_lines_whole(self, tmp_path: Path):
        logger = AuditLogger(AuditConfig(log_dir=tmp_path, max_command_length=20000))

        await asyncio.gather(
            *(
                asyncio.to_thread(log_sample, logger, session_id=f"s{i}", command=str(i) * 10000)
                for i in range(40)
            )
        )

        lines = next(tmp_path.glob(f"{LOG_FILE_PREFIX}*.jsonl")).read_text().splitlines()
        assert len(lines) == 40
        assert {json.loads(line)["session_id"] for line in lines} == {f"s{i}" for i in range(40)}


class TestQuery:
    def test_filters(self, audit_logger: AuditLogger):
        log_sample(audit_logger, session_id="a", user_id="alice")
        log_sample(audit_logger, session_id="b", risk_level=RiskLevel.CRITICAL, success=False, blocked=True)
        log_sample(audit_logger, session_id="c", action="screenshot", caller_session_id="sess-1")

        assert [e.session_id for e in audit_logger.query()] == ["a", "b", "c"]
        assert [e.session_id for e in audit_logger.query(risk_level=RiskLevel.CRITICAL)] == ["b"]
        assert [e.session_id for e in audit_logger.query(blocked_only=True)] == ["b"]
        assert [e.session_id for e in audit_logger.query(user_id="alice")] == ["a"]
        assert [e.session_id for e in audit_logger.query(action="screenshot")] == ["c"]
        assert [e.session_id for e in audit_logger.query(session_id="sess-1")] == ["c"]

    def test_limit(self, audit_logger: AuditLogger):
        for i in range(5):
            log_sample(audit_logger, session_id=str(i))

        assert len(list(audit_logger.query(limit=2))) == 2
        assert list(audit_logger.query(limit=-1)) == []

    def test_limit_is_clamped(self, audit_logger: AuditLogger):
        log_file = audit_logger._get_log_file()
        entry = json.dumps(
            {
                "timestamp": datetime.now().isoformat(),
                "session_id": "s",
                "action": "command",
                "command": "x",
                "risk_level": "low",
                "success": True,
            }
        )
        log_file.write_text((entry + "\n") * (MAX_QUERY_LIMIT + 5))

        assert len(list(audit_logger.query(limit=MAX_QUERY_LIMIT * 10))) == MAX_QUERY_LIMIT

    def test_malformed_lines_are_skipped(self, audit_logger: AuditLogger):
        log_sample(audit_logger, session_id="good")
        with open(audit_logger._get_log_file(), "a") as f:
            f.write("not json\n")

        assert [e.session_id for e in audit_logger.query()] == ["good"]

    def test_time_range(self, audit_logger: AuditLogger):
        log_sample(audit_logger)

        future = datetime.now() + timedelta(hours=1)
        assert list(audit_logger.query(start_date=future, end_date=future + timedelta(hours=1))) == []


class TestMetricsAndRetention:
    def test_security_metrics(self, audit_logger: AuditLogger):
        log_sample(audit_logger, execution_time_ms=10)
        log_sample(audit_logger, risk_level=RiskLevel.CRITICAL, success=False, blocked=True, execution_time_ms=0)
        log_sample(audit_logger, action="screenshot", success=False, execution_time_ms=20)

        metrics = audit_logger.get_security_metrics()

        assert metrics["total_requests"] == 3
        assert metrics["blocked_requests"] == 1
        assert metrics["failed_requests"] == 1
        assert metrics["risk_distribution"] == {"low": 2, "critical": 1}
        assert metrics["action_distribution"] == {"command": 2, "screenshot": 1}
        assert metrics["average_execution_time_ms"] == 10.0
        assert metrics["truncated"] is False

    def test_metrics_when_empty(self, audit_logger: AuditLogger):
        metrics = audit_logger.get_security_metrics()

        assert metrics["total_requests"] == 0
        assert metrics["average_execution_time_ms"] == 0.0

    def test_cleanup_old_logs(self, audit_logger: AuditLogger):
        log_dir = audit_logger.config.get_log_dir()
        old = log_dir / f"{LOG_FILE_PREFIX}2000-01-01.jsonl"
        old.write_text("")
        odd = log_dir / f"{LOG_FILE_PREFIX}not-a-date.jsonl"
        odd.write_text("")
        log_sample(audit_logger)

        assert audit_logger.cleanup_old_logs() == 1
        assert not old.exists()
        assert odd.exists()
        assert len(list(audit_logger.query())) == 1
