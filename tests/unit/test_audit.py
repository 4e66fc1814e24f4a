"""Unit tests for the audit logger, sinks, sensitive-op alerts and retention."""

import json
import os
import stat
import threading
from datetime import datetime

import pytest

from sandgate.audit import (
    AuditLogger,
    JsonlAuditSink,
    MemoryAuditSink,
    is_sensitive,
    iter_records,
    sensitive_label,
)
from sandgate.errors import LoggingError
from sandgate.models import AuditRecord, Outcome, Rule, ToolInvocationRequest, Verdict

ALLOW = Verdict(outcome=Outcome.ALLOW, reason="default-allow (sandboxed)")


def _fixed_clock(day="2026-10-19"):
    return lambda: datetime.strptime(day + " 12:00", "%Y-%m-%d %H:%M")


# ---------------------------------------------------------------------------
# AuditRecord serialization
# ---------------------------------------------------------------------------

class TestAuditRecordRoundTrip:
    """JSON out, JSON in, field-for-field equal."""

    def test_decision_record(self, make_request):
        rule = Rule(tool="Bash", pattern="git *", mode="allow", reason="git ok", index=4)
        verdict = Verdict(outcome="allow", matched_rule=rule, reason="git ok", source="rule")
        record = AuditRecord.for_request(make_request(command="git status"), verdict)
        assert AuditRecord.from_json(record.to_json()) == record

    def test_outcome_record(self, make_request):
        verdict = Verdict(outcome="deny", failed_check="read-size", reason="too big", source="validation")
        record = AuditRecord.for_request(
            make_request("Read", file_path="/x"), verdict, phase="outcome", success=False, error="boom"
        )
        parsed = AuditRecord.from_json(record.to_json())
        assert parsed == record
        assert parsed.execution_success is False
        assert parsed.execution_error == "boom"

    def test_camel_case_keys(self, make_request):
        record = AuditRecord.for_request(make_request(command="ls"), ALLOW, phase="outcome", success=True)
        data = json.loads(record.to_json())
        assert data["sessionId"] == "session-1"
        assert data["executionSuccess"] is True
        assert data["executionError"] is None
        assert data["verdict"]["outcome"] == "allow"
        assert "\n" not in record.to_json()

    def test_nested_verdict_keys_camel_case(self, make_request):
        rule = Rule(tool="Read", pattern="**/.env", mode="deny", reason="secrets", index=2)
        verdict = Verdict(outcome="deny", matched_rule=rule, failed_check="read-size", reason="secrets", source="rule")
        data = json.loads(AuditRecord.for_request(make_request("Read", file_path="/w/.env"), verdict).to_json())
        assert data["verdict"]["matchedRule"]["index"] == 2
        assert data["verdict"]["failedCheck"] == "read-size"
        assert "matched_rule" not in data["verdict"]
        assert "failed_check" not in data["verdict"]

    def test_missing_timestamp_filled(self):
        request = ToolInvocationRequest.build("Bash", {"command": "ls"})
        record = AuditRecord.for_request(request, ALLOW)
        assert record.timestamp.endswith("Z")


# ---------------------------------------------------------------------------
# Sensitive operations
# ---------------------------------------------------------------------------

class TestSensitiveLabel:
    """Fixed set of high-risk command shapes."""

    @pytest.mark.parametrize("command,label", [
        ("git push origin main", "Git push operation"),
        ("git push --force", "Git push operation"),
        ("npm publish", "Package publish operation"),
        ("pip publish dist/*", "Package publish operation"),
        ("cargo publish --dry-run", "Package publish operation"),
        ("twine upload dist/*", "Package publish operation"),
        ("docker push ghcr.io/me/img:1", "Docker registry operation"),
        ("docker login ghcr.io", "Docker registry operation"),
        ("  git push", "Git push operation"),
        ("HOME=/tmp git push", "Git push operation"),
    ])
    def test_flagged(self, command, label):
        assert sensitive_label("Bash", command) == label

    @pytest.mark.parametrize("command", [
        "git status",
        "echo git push",
        "git pushd",
        "docker pull ubuntu",
        "npm install",
        "",
    ])
    def test_not_flagged(self, command):
        assert sensitive_label("Bash", command) is None

    def test_only_bash(self):
        assert sensitive_label("Edit", "git push") is None


# ---------------------------------------------------------------------------
# AuditLogger with in-memory sinks
# ---------------------------------------------------------------------------

class TestAuditLogger:
    """Decision and outcome recording."""

    def test_record_decision(self, memory_audit, make_request):
        assert memory_audit.record_decision(make_request(command="ls"), ALLOW)
        records = memory_audit.sink.records
        assert len(records) == 1
        assert records[0].phase == "decision"
        assert records[0].execution_success is None
        assert memory_audit.sensitive_sink.records == []

    def test_record_outcome(self, memory_audit, make_request):
        memory_audit.record_outcome(make_request(command="make"), ALLOW, success=False, error="exit 2")
        record = memory_audit.sink.records[0]
        assert record.phase == "outcome"
        assert record.execution_success is False
        assert record.execution_error == "exit 2"
        assert record.alert is None

    def test_sensitive_outcome_goes_to_both_streams(self, memory_audit, make_request):
        memory_audit.record_outcome(make_request(command="git push origin main"), ALLOW)
        assert len(memory_audit.sink.records) == 1
        assert len(memory_audit.sensitive_sink.records) == 1
        alert = memory_audit.sensitive_sink.records[0]
        assert alert.alert == "Git push operation"
        assert is_sensitive(alert)

    def test_sensitive_decision_not_alerted(self, memory_audit, make_request):
        memory_audit.record_decision(make_request(command="git push"), ALLOW)
        assert memory_audit.sensitive_sink.records == []


class _BrokenSink:
    def append(self, record):
        raise LoggingError("disk full")


class TestLoggingFailure:
    """A failed append is loud but never reaches the caller."""

    def test_failure_is_reported_not_raised(self, make_request, capsys, caplog):
        audit = AuditLogger(_BrokenSink())
        with caplog.at_level("ERROR", logger="sandgate.audit"):
            ok = audit.record_decision(make_request(command="ls"), ALLOW)
        assert ok is False
        assert audit.failures == 1
        assert "AUDIT WRITE FAILED" in capsys.readouterr().err
        assert "AUDIT WRITE FAILED" in caplog.text

    def test_sensitive_failure_counted(self, make_request):
        audit = AuditLogger(MemoryAuditSink(), _BrokenSink())
        assert audit.record_outcome(make_request(command="docker login"), ALLOW) is False
        assert audit.failures == 1
        assert len(audit.sink.records) == 1

    def test_unwritable_directory(self, tmp_path, make_request):
        blocker = tmp_path / "not-a-dir"
        blocker.write_text("")
        audit = AuditLogger(JsonlAuditSink(blocker / "logs"))
        assert audit.record_decision(make_request(command="ls"), ALLOW) is False
        assert audit.failures == 1


# ---------------------------------------------------------------------------
# JsonlAuditSink
# ---------------------------------------------------------------------------

class TestJsonlAuditSink:
    """Durable append-only JSONL segments."""

    def test_daily_segment_name(self, tmp_path):
        sink = JsonlAuditSink(tmp_path, clock=_fixed_clock())
        assert sink.current_path().name == "command-log-2026-10-19.jsonl"

    def test_single_file_mode(self, tmp_path):
        sink = JsonlAuditSink(tmp_path, prefix="sensitive-ops", daily=False)
        assert sink.current_path().name == "sensitive-ops.jsonl"

    def test_append_and_read_back(self, tmp_path, make_request):
        sink = JsonlAuditSink(tmp_path / "logs", clock=_fixed_clock())
        audit = AuditLogger(sink)
        audit.record_decision(make_request(command="ls"), ALLOW)
        audit.record_outcome(make_request(command="ls"), ALLOW)
        records = list(iter_records(sink.current_path()))
        assert [r.phase for r in records] == ["decision", "outcome"]

    @pytest.mark.skipif(os.name == "nt", reason="POSIX permissions")
    def test_restrictive_permissions(self, tmp_path, make_request):
        sink = JsonlAuditSink(tmp_path / "logs", clock=_fixed_clock())
        sink.append(AuditRecord.for_request(make_request(command="ls"), ALLOW))
        assert stat.S_IMODE(os.stat(sink.current_path()).st_mode) == 0o600
        assert stat.S_IMODE(os.stat(tmp_path / "logs").st_mode) == 0o700

    def test_corrupt_lines_skipped(self, tmp_path, make_request):
        sink = JsonlAuditSink(tmp_path, clock=_fixed_clock())
        sink.append(AuditRecord.for_request(make_request(command="ls"), ALLOW))
        with open(sink.current_path(), "a", encoding="utf-8") as fh:
            fh.write("{not json\n\n")
        sink.append(AuditRecord.for_request(make_request(command="pwd"), ALLOW))
        records = list(iter_records(sink.current_path()))
        assert [r.parameters["command"] for r in records] == ["ls", "pwd"]

    def test_concurrent_sessions_never_interleave(self, tmp_path, make_request):
        """Two sessions x 1,000 records -> exactly 2,000 well-formed lines."""
        sink = JsonlAuditSink(tmp_path, clock=_fixed_clock())
        audit = AuditLogger(sink)
        long_arg = "x" * 2000

        def _session(session_id):
            for i in range(1000):
                request = make_request(command=f"echo {i} {long_arg}", session_id=session_id)
                audit.record_decision(request, ALLOW)

        threads = [threading.Thread(target=_session, args=(sid,)) for sid in ("session-a", "session-b")]
        for t in threads:
            t.start()
        for t in threads:
            t.join()

        lines = sink.current_path().read_text(encoding="utf-8").splitlines()
        assert len(lines) == 2000
        parsed = [json.loads(line) for line in lines]
        by_session = {}
        for entry in parsed:
            by_session[entry["sessionId"]] = by_session.get(entry["sessionId"], 0) + 1
        assert by_session == {"session-a": 1000, "session-b": 1000}
        assert audit.failures == 0


# ---------------------------------------------------------------------------
# Retention
# ---------------------------------------------------------------------------

class TestRetentionSweep:
    """Old segments go, the open one stays."""

    def _touch_segments(self, log_dir, days):
        for day in days:
            (log_dir / f"command-log-{day}.jsonl").write_text("{}\n")

    def test_deletes_old_segments(self, tmp_path):
        sink = JsonlAuditSink(tmp_path, clock=_fixed_clock("2026-10-19"))
        self._touch_segments(tmp_path, ["2026-10-01", "2026-10-11", "2026-10-12", "2026-10-18", "2026-10-19"])
        deleted = sink.sweep(7)
        assert sorted(p.name for p in deleted) == ["command-log-2026-10-01.jsonl", "command-log-2026-10-11.jsonl"]
        remaining = sorted(p.name for p in tmp_path.glob("command-log-*.jsonl"))
        assert remaining == [
            "command-log-2026-10-12.jsonl",
            "command-log-2026-10-18.jsonl",
            "command-log-2026-10-19.jsonl",
        ]

    def test_never_deletes_open_segment(self, tmp_path, make_request):
        days = iter(["2026-10-01", "2026-10-30"])
        current = {"day": next(days)}
        sink = JsonlAuditSink(tmp_path, clock=lambda: _fixed_clock(current["day"])())
        sink.append(AuditRecord.for_request(make_request(command="ls"), ALLOW))
        current["day"] = next(days)
        deleted = sink.sweep(7)
        assert deleted == []
        assert (tmp_path / "command-log-2026-10-01.jsonl").exists()

    def test_other_files_untouched(self, tmp_path):
        sink = JsonlAuditSink(tmp_path, clock=_fixed_clock())
        (tmp_path / "sensitive-ops.jsonl").write_text("")
        (tmp_path / "hook-debug.log").write_text("")
        self._touch_segments(tmp_path, ["2020-01-01"])
        sink.sweep(7)
        assert (tmp_path / "sensitive-ops.jsonl").exists()
        assert (tmp_path / "hook-debug.log").exists()

    def test_sensitive_log_exempt_from_logger_sweep(self, tmp_path):
        audit = AuditLogger.for_directory(tmp_path)
        (tmp_path / "sensitive-ops.jsonl").write_text("{}\n")
        self._touch_segments(tmp_path, ["2020-01-01"])
        deleted = audit.sweep(7, now=datetime(2026, 10, 19))
        assert [p.name for p in deleted] == ["command-log-2020-01-01.jsonl"]
        assert (tmp_path / "sensitive-ops.jsonl").read_text() == "{}\n"

    def test_sweep_if_due_runs_once(self, tmp_path):
        sink = JsonlAuditSink(tmp_path, clock=_fixed_clock())
        self._touch_segments(tmp_path, ["2020-01-01"])
        assert len(sink.sweep_if_due(7)) == 1
        self._touch_segments(tmp_path, ["2020-01-02"])
        assert sink.sweep_if_due(7) == []
        assert (tmp_path / "command-log-2020-01-02.jsonl").exists()

    def test_logger_sweep_on_memory_sink(self, memory_audit):
        assert memory_audit.sweep(7) == []
