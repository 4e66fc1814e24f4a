"""Data model for sandgate.

Pydantic v2 models for tool invocation requests, rules, verdicts and
audit records. Request parameters are resolved once, at construction,
into a tagged variant per tool so that nothing downstream has to dig
through loosely-typed JSON.
"""

import posixpath
from datetime import datetime, timezone
from enum import Enum
from typing import Any, Literal, Optional, Union

from pydantic import BaseModel, ConfigDict, Field
from pydantic.alias_generators import to_camel


class ToolName(str, Enum):
    BASH = "Bash"
    READ = "Read"
    EDIT = "Edit"
    WRITE = "Write"
    MULTI_EDIT = "MultiEdit"
    GREP = "Grep"
    GLOB = "Glob"


class Mode(str, Enum):
    DENY = "deny"
    ASK = "ask"
    ALLOW = "allow"


class Outcome(str, Enum):
    ALLOW = "allow"
    DENY = "deny"
    ASK = "ask"


# Tools whose subject is a file the agent wants to modify
EDIT_TOOLS = frozenset({ToolName.EDIT.value, ToolName.WRITE.value, ToolName.MULTI_EDIT.value})
# Tools whose subject is a path (rules match with path-segment globs)
PATH_TOOLS = frozenset(
    {ToolName.READ.value, ToolName.GREP.value, ToolName.GLOB.value} | EDIT_TOOLS
)
KNOWN_TOOLS = frozenset(t.value for t in ToolName)


def utc_now_iso() -> str:
    return datetime.now(timezone.utc).strftime("%Y-%m-%dT%H:%M:%SZ")


def normalize_path(path: str, cwd: str = "") -> str:
    """Lexically normalized path used as the rule subject of path tools.

    Relative paths are joined to *cwd* when one is known, and ``.``/``..``
    segments are collapsed, so a rule sees the path the tool will touch.

    >>> normalize_path("/workspace/../etc/passwd")
    '/etc/passwd'
    >>> normalize_path("../../etc/passwd", "/workspace/x")
    '/etc/passwd'
    >>> normalize_path("//etc/hosts")
    '/etc/hosts'
    >>> normalize_path("src/./main.py")
    'src/main.py'
    >>> normalize_path("")
    ''
    """
    if not path:
        return ""
    if cwd and not posixpath.isabs(path):
        path = posixpath.join(cwd, path)
    path = posixpath.normpath(path)
    if path.startswith("//"):
        path = "/" + path.lstrip("/")
    return path


# ---------------------------------------------------------------------------
# Tagged tool parameters
# ---------------------------------------------------------------------------


class BashParams(BaseModel):
    model_config = ConfigDict(frozen=True)

    kind: Literal["bash"] = "bash"
    command: str = ""

    @property
    def subject(self) -> str:
        return self.command


class EditParams(BaseModel):
    model_config = ConfigDict(frozen=True)

    kind: Literal["edit"] = "edit"
    file_path: str = ""

    @property
    def subject(self) -> str:
        return self.file_path


class ReadParams(BaseModel):
    model_config = ConfigDict(frozen=True)

    kind: Literal["read"] = "read"
    file_path: str = ""

    @property
    def subject(self) -> str:
        return self.file_path


class PathParams(BaseModel):
    """Grep/Glob: the searched path is the subject."""

    model_config = ConfigDict(frozen=True)

    kind: Literal["path"] = "path"
    path: str = ""

    @property
    def subject(self) -> str:
        return self.path


class OtherParams(BaseModel):
    """Tools we have no subject extraction for. Never matches a rule."""

    model_config = ConfigDict(frozen=True)

    kind: Literal["other"] = "other"

    @property
    def subject(self) -> str:
        return ""


ToolParams = Union[BashParams, EditParams, ReadParams, PathParams, OtherParams]


def _str_param(parameters: dict, *keys: str) -> str:
    """First string value found under any of *keys*, else empty string.

    >>> _str_param({"filePath": "/a"}, "file_path", "filePath")
    '/a'
    >>> _str_param({"file_path": 3}, "file_path")
    ''
    """
    for key in keys:
        value = parameters.get(key)
        if isinstance(value, str):
            return value
    return ""


def resolve_params(tool: str, parameters: dict) -> ToolParams:
    """Resolve raw tool parameters into the tagged variant for *tool*.

    >>> resolve_params("Bash", {"command": "ls -la"}).subject
    'ls -la'
    >>> resolve_params("Read", {"filePath": "/workspace/a.txt"}).kind
    'read'
    >>> resolve_params("Bash", {}).subject
    ''
    >>> resolve_params("WebFetch", {"url": "x"}).kind
    'other'
    """
    if tool == ToolName.BASH.value:
        return BashParams(command=_str_param(parameters, "command"))
    if tool in EDIT_TOOLS:
        return EditParams(file_path=_str_param(parameters, "file_path", "filePath"))
    if tool == ToolName.READ.value:
        return ReadParams(file_path=_str_param(parameters, "file_path", "filePath"))
    if tool in (ToolName.GREP.value, ToolName.GLOB.value):
        return PathParams(path=_str_param(parameters, "path", "file_path", "filePath"))
    return OtherParams()


# ---------------------------------------------------------------------------
# Requests
# ---------------------------------------------------------------------------


class ToolInvocationRequest(BaseModel):
    """One agent-initiated action, immutable once built."""

    model_config = ConfigDict(frozen=True)

    tool: str
    params: ToolParams = Field(discriminator="kind")
    parameters: dict[str, Any] = Field(default_factory=dict)
    timestamp: str = ""
    session_id: str = ""
    cwd: str = ""

    @classmethod
    def build(
        cls,
        tool: str,
        parameters: Optional[dict] = None,
        timestamp: str = "",
        session_id: str = "",
        cwd: str = "",
    ) -> "ToolInvocationRequest":
        parameters = dict(parameters or {})
        return cls(
            tool=tool,
            params=resolve_params(tool, parameters),
            parameters=parameters,
            timestamp=timestamp,
            session_id=session_id,
            cwd=cwd,
        )

    @classmethod
    def from_payload(cls, payload: dict) -> "ToolInvocationRequest":
        """Build a request from a hook payload.

        Accepts the plain shape (tool, parameters, timestamp, sessionId) and
        the agent runtime's hook shape (tool_name, tool_input, session_id, cwd).

        >>> r = ToolInvocationRequest.from_payload({"tool": "Bash", "parameters": {"command": "ls"}})
        >>> (r.tool, r.subject, r.session_id)
        ('Bash', 'ls', '')
        >>> r = ToolInvocationRequest.from_payload(
        ...     {"tool_name": "Read", "tool_input": {"file_path": "/x"}, "session_id": "s1"})
        >>> (r.tool, r.subject, r.session_id)
        ('Read', '/x', 's1')
        """
        tool = payload.get("tool") or payload.get("tool_name") or ""
        parameters = payload.get("parameters")
        if parameters is None:
            parameters = payload.get("tool_input")
        if not isinstance(parameters, dict):
            parameters = {}
        timestamp = payload.get("timestamp") or ""
        session_id = payload.get("sessionId") or payload.get("session_id") or ""
        cwd = payload.get("cwd") or ""
        return cls.build(
            str(tool),
            parameters,
            timestamp=str(timestamp),
            session_id=str(session_id),
            cwd=str(cwd),
        )

    @property
    def subject(self) -> str:
        """What rules match against: the command, or the normalized path."""
        if self.tool in PATH_TOOLS:
            return normalize_path(self.params.subject, self.cwd)
        return self.params.subject


# ---------------------------------------------------------------------------
# Rules and verdicts
# ---------------------------------------------------------------------------


class Rule(BaseModel):
    """A declarative pattern-based policy statement."""

    model_config = ConfigDict(frozen=True, populate_by_name=True, alias_generator=to_camel)

    tool: str
    pattern: str
    mode: Mode
    reason: str = ""
    index: int = 0


class CheckResult(BaseModel):
    model_config = ConfigDict(frozen=True)

    passed: bool
    reason: str = ""

    @classmethod
    def ok(cls) -> "CheckResult":
        return cls(passed=True)

    @classmethod
    def fail(cls, reason: str) -> "CheckResult":
        return cls(passed=False, reason=reason)


class Verdict(BaseModel):
    model_config = ConfigDict(frozen=True, populate_by_name=True, alias_generator=to_camel)

    outcome: Outcome
    matched_rule: Optional[Rule] = None
    failed_check: Optional[str] = None
    reason: str = ""
    source: Literal["rule", "validation", "default"] = "default"

    @property
    def allowed(self) -> bool:
        return self.outcome is Outcome.ALLOW

    @property
    def denied(self) -> bool:
        return self.outcome is Outcome.DENY


# ---------------------------------------------------------------------------
# Audit records
# ---------------------------------------------------------------------------


class AuditRecord(BaseModel):
    """One JSON line in the audit log. Append-only."""

    model_config = ConfigDict(frozen=True, populate_by_name=True)

    timestamp: str
    session_id: str = Field("", alias="sessionId")
    tool: str
    parameters: dict[str, Any] = Field(default_factory=dict)
    verdict: Verdict
    phase: Literal["decision", "outcome"] = "decision"
    execution_success: Optional[bool] = Field(None, alias="executionSuccess")
    execution_error: Optional[str] = Field(None, alias="executionError")
    alert: Optional[str] = None

    @classmethod
    def for_request(
        cls,
        request: ToolInvocationRequest,
        verdict: Verdict,
        phase: str = "decision",
        success: Optional[bool] = None,
        error: Optional[str] = None,
        alert: Optional[str] = None,
    ) -> "AuditRecord":
        return cls(
            timestamp=request.timestamp or utc_now_iso(),
            session_id=request.session_id,
            tool=request.tool,
            parameters=request.parameters,
            verdict=verdict,
            phase=phase,
            execution_success=success,
            execution_error=error,
            alert=alert,
        )

    def to_json(self) -> str:
        return self.model_dump_json(by_alias=True)

    @classmethod
    def from_json(cls, line: str) -> "AuditRecord":
        return cls.model_validate_json(line)
