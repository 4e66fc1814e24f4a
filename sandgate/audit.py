"""Append-only audit log for tool decisions and outcomes.

Every decision, and every post-execution outcome, becomes one JSON line in
a daily segment ``command-log-YYYY-MM-DD.jsonl``. Outcomes for sensitive
command shapes (remote push, package publish, registry login) are copied to
``sensitive-ops.jsonl``. Retention sweeps only touch the daily segments;
the sensitive-operations log is kept until removed by hand.

Appends are serialized with a thread lock plus an advisory file lock, and
each line goes out in a single O_APPEND write, so concurrent sessions never
interleave partial lines. A failed append never blocks the decision path;
it is escalated on the error channel instead.
"""

import logging
import os
import re
import sys
import threading
import time
from datetime import datetime, timedelta
from pathlib import Path
from typing import Callable, Iterator, Optional, Protocol

from pydantic import ValidationError

from sandgate.errors import LoggingError
from sandgate.models import AuditRecord, ToolInvocationRequest, ToolName, Verdict

try:
    import fcntl
except ImportError:  # Windows: the thread lock and O_APPEND still apply
    fcntl = None

logger = logging.getLogger(__name__)

SEGMENT_PREFIX = "command-log"
SENSITIVE_PREFIX = "sensitive-ops"
SWEEP_MARKER = ".last-sweep"
SWEEP_INTERVAL = 86400  # 24 hours
_SEGMENT_DATE_RE = re.compile(r"(\d{4}-\d{2}-\d{2})\.jsonl$")

# Strip leading env var assignments: HOME=/x PATH="/y:$PATH" cmd -> cmd
ENV_ASSIGN_RE = re.compile(r"""^(?:\w+=(?:"[^"]*"|'[^']*'|\S+)\s+)+""")

SENSITIVE_OPS = [
    (re.compile(r"^git\s+push\b"), "Git push operation"),
    (re.compile(r"^(?:npm|pip|cargo|poetry|twine)\s+publish\b|^twine\s+upload\b"), "Package publish operation"),
    (re.compile(r"^docker\s+(?:push|login)\b"), "Docker registry operation"),
]


def sensitive_label(tool: str, command: str) -> Optional[str]:
    """Alert label if *command* is a sensitive operation, else None.

    >>> sensitive_label("Bash", "git push origin main")
    'Git push operation'
    >>> sensitive_label("Bash", "GIT_SSH_COMMAND=ssh docker login ghcr.io")
    'Docker registry operation'
    >>> sensitive_label("Bash", "git status") is None
    True
    >>> sensitive_label("Read", "git push") is None
    True
    """
    if tool != ToolName.BASH.value or not command:
        return None
    core = ENV_ASSIGN_RE.sub("", command.strip())
    for pattern, label in SENSITIVE_OPS:
        if pattern.search(core):
            return label
    return None


def is_sensitive(record: AuditRecord) -> bool:
    command = record.parameters.get("command", "")
    return sensitive_label(record.tool, command if isinstance(command, str) else "") is not None


# --- Sinks ---


class AuditSink(Protocol):
    def append(self, record: AuditRecord) -> None: ...


class MemoryAuditSink:
    """In-memory sink for tests."""

    def __init__(self):
        self.records: list[AuditRecord] = []
        self._lock = threading.Lock()

    def append(self, record: AuditRecord) -> None:
        with self._lock:
            self.records.append(record)


class JsonlAuditSink:
    """Append-only JSONL file, one segment per day (or a single file)."""

    def __init__(
        self,
        log_dir: str | Path,
        prefix: str = SEGMENT_PREFIX,
        daily: bool = True,
        clock: Callable[[], datetime] = datetime.now,
    ):
        self.log_dir = Path(log_dir)
        self.prefix = prefix
        self.daily = daily
        self._clock = clock
        self._lock = threading.Lock()
        self._open_segment: Optional[Path] = None

    def current_path(self, now: Optional[datetime] = None) -> Path:
        if not self.daily:
            return self.log_dir / f"{self.prefix}.jsonl"
        now = now or self._clock()
        return self.log_dir / f"{self.prefix}-{now.strftime('%Y-%m-%d')}.jsonl"

    def _ensure_dir(self):
        if not self.log_dir.exists():
            self.log_dir.mkdir(parents=True, exist_ok=True)
            os.chmod(self.log_dir, 0o700)

    def append(self, record: AuditRecord) -> None:
        data = (record.to_json() + "\n").encode("utf-8")
        with self._lock:
            path = self.current_path()
            try:
                self._ensure_dir()
                fd = os.open(path, os.O_WRONLY | os.O_APPEND | os.O_CREAT, 0o600)
                try:
                    if fcntl is not None:
                        fcntl.flock(fd, fcntl.LOCK_EX)
                    view = memoryview(data)
                    while view:
                        written = os.write(fd, view)
                        view = view[written:]
                finally:
                    os.close(fd)
            except OSError as e:
                raise LoggingError(f"cannot append to {path}: {e}") from e
            self._open_segment = path

    def segments(self) -> list[Path]:
        if not self.log_dir.is_dir():
            return []
        return sorted(self.log_dir.glob(f"{self.prefix}-*.jsonl"))

    def _segment_date(self, path: Path) -> datetime:
        m = _SEGMENT_DATE_RE.search(path.name)
        if m:
            try:
                return datetime.strptime(m.group(1), "%Y-%m-%d")
            except ValueError:
                pass
        return datetime.fromtimestamp(path.stat().st_mtime)

    def sweep(self, retention_days: int, now: Optional[datetime] = None) -> list[Path]:
        """Delete segments older than *retention_days*. Never the open segment."""
        now = now or self._clock()
        cutoff = (now - timedelta(days=retention_days)).replace(hour=0, minute=0, second=0, microsecond=0)
        keep = {self.current_path(now)}
        if self._open_segment is not None:
            keep.add(self._open_segment)
        deleted = []
        with self._lock:
            for path in self.segments():
                if path in keep:
                    continue
                try:
                    if self._segment_date(path) < cutoff:
                        path.unlink()
                        deleted.append(path)
                except OSError as e:
                    logger.warning("retention sweep could not remove %s: %s", path, e)
        if deleted:
            logger.info("retention sweep removed %d segment(s)", len(deleted))
        return deleted

    def sweep_if_due(self, retention_days: int, interval: float = SWEEP_INTERVAL) -> list[Path]:
        """Run sweep() at most once per *interval*, tracked by a marker file."""
        marker = self.log_dir / SWEEP_MARKER
        try:
            if marker.exists() and 0 <= time.time() - marker.stat().st_mtime < interval:
                return []
            self._ensure_dir()
            marker.touch()
        except OSError as e:
            logger.warning("cannot update sweep marker %s: %s", marker, e)
            return []
        return self.sweep(retention_days)


def iter_records(path: str | Path) -> Iterator[AuditRecord]:
    """Parse a JSONL segment, skipping (and logging) corrupt lines."""
    with open(path, encoding="utf-8") as fh:
        for lineno, line in enumerate(fh, 1):
            line = line.strip()
            if not line:
                continue
            try:
                yield AuditRecord.from_json(line)
            except ValidationError as e:
                logger.warning("audit: corrupt entry in %s line %d, skipping: %s", path, lineno, e.errors()[0]["msg"])


# --- Logger ---


class AuditLogger:
    """Records decisions and outcomes. Audit failures never reach the caller."""

    def __init__(self, sink: AuditSink, sensitive_sink: Optional[AuditSink] = None):
        self.sink = sink
        self.sensitive_sink = sensitive_sink
        self.failures = 0
        self._failures_lock = threading.Lock()

    @classmethod
    def for_directory(cls, log_dir: str | Path) -> "AuditLogger":
        return cls(
            JsonlAuditSink(log_dir),
            JsonlAuditSink(log_dir, prefix=SENSITIVE_PREFIX, daily=False),
        )

    def _append(self, sink: AuditSink, record: AuditRecord) -> bool:
        try:
            sink.append(record)
            return True
        except (LoggingError, OSError) as e:
            with self._failures_lock:
                self.failures += 1
            # escalate on both channels
            logger.error("AUDIT WRITE FAILED (%s %s): %s", record.phase, record.tool, e)
            print(f"[sandgate] AUDIT WRITE FAILED: {e}", file=sys.stderr)
            return False

    def record_decision(self, request: ToolInvocationRequest, verdict: Verdict) -> bool:
        return self._append(self.sink, AuditRecord.for_request(request, verdict))

    def record_outcome(
        self,
        request: ToolInvocationRequest,
        verdict: Verdict,
        success: bool = True,
        error: Optional[str] = None,
    ) -> bool:
        label = sensitive_label(request.tool, request.subject)
        record = AuditRecord.for_request(
            request, verdict, phase="outcome", success=success, error=error, alert=label
        )
        ok = self._append(self.sink, record)
        if label and self.sensitive_sink is not None:
            logger.warning("[ALERT] %s: %s", label, request.subject[:200])
            ok = self._append(self.sensitive_sink, record) and ok
        return ok

    def sweep(self, retention_days: int, now: Optional[datetime] = None) -> list[Path]:
        """Sweep the daily command log. The sensitive-operations log is never swept."""
        sweep = getattr(self.sink, "sweep", None)
        if sweep is None:
            return []
        return sweep(retention_days, now)
