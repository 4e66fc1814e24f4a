"""Dynamic pre-execution checks.

Runs after rule resolution on the default-allow path, and on every file
read/edit, to catch attacks that static patterns cannot express:
  - Bash: eval injection, exfiltration, encoded execution (<1ms, regex)
  - Edit/Write: symlink target outside permitted roots
  - Read: file size cap

Checks are stateless. The only I/O is through a FileSystem, and every
filesystem call is bounded by a timeout. A timeout or OS error fails
closed to Deny; nothing is retried.
"""

import logging
import os
import re
import threading
from dataclasses import dataclass
from typing import Callable, Iterable, Optional, Protocol

from sandgate.errors import ResourceError, ValidationFailure
from sandgate.models import (
    EDIT_TOOLS,
    CheckResult,
    Outcome,
    ToolInvocationRequest,
    ToolName,
    Verdict,
)

logger = logging.getLogger(__name__)

MIB = 1024 * 1024
DEFAULT_MAX_READ_BYTES = 100 * MIB
DEFAULT_CHECK_TIMEOUT = 2.0
DEFAULT_PERMITTED_ROOTS = ("/workspace", "/home/agent")
DEFAULT_FORBIDDEN_ROOTS = (
    "/etc",
    "/bin",
    "/sbin",
    "/usr/bin",
    "/usr/sbin",
    "/boot",
    "/dev",
    "/proc",
    "/sys",
)


# --- Filesystem access ---


class FileSystem(Protocol):
    def is_symlink(self, path: str) -> bool: ...

    def resolve(self, path: str) -> str: ...

    def is_file(self, path: str) -> bool: ...

    def size(self, path: str) -> int: ...


class LocalFileSystem:
    """The real filesystem."""

    def is_symlink(self, path: str) -> bool:
        return os.path.islink(path)

    def resolve(self, path: str) -> str:
        return os.path.realpath(path)

    def is_file(self, path: str) -> bool:
        return os.path.isfile(path)

    def size(self, path: str) -> int:
        return os.stat(path).st_size


def call_with_timeout(fn: Callable, timeout: float, what: str):
    """Run *fn* in a daemon thread, raising ResourceError if it outlives *timeout*.

    >>> call_with_timeout(lambda: 42, 1.0, "answer")
    42
    """
    result: dict = {}

    def _run():
        try:
            result["value"] = fn()
        except Exception as e:
            result["error"] = e

    t = threading.Thread(target=_run, daemon=True)
    t.start()
    t.join(timeout=timeout)
    if t.is_alive():
        raise ResourceError("filesystem", f"timed out after {timeout:.1f}s during {what}")
    if "error" in result:
        raise ResourceError("filesystem", f"{what} failed: {result['error']}")
    return result["value"]


class BoundedFileSystem:
    """Wraps a FileSystem so every call is time-bounded and any error becomes ResourceError."""

    def __init__(self, fs: FileSystem, timeout: float = DEFAULT_CHECK_TIMEOUT):
        self._fs = fs
        self.timeout = timeout

    def is_symlink(self, path: str) -> bool:
        return call_with_timeout(lambda: self._fs.is_symlink(path), self.timeout, f"lstat {path}")

    def resolve(self, path: str) -> str:
        return call_with_timeout(lambda: self._fs.resolve(path), self.timeout, f"resolve {path}")

    def is_file(self, path: str) -> bool:
        return call_with_timeout(lambda: self._fs.is_file(path), self.timeout, f"stat {path}")

    def size(self, path: str) -> int:
        return call_with_timeout(lambda: self._fs.size(path), self.timeout, f"stat {path}")


# --- Checks ---


@dataclass(frozen=True)
class ValidationCheck:
    """A named predicate over a request, applicable to a fixed set of tools."""

    name: str
    tools: frozenset
    func: Callable[[ToolInvocationRequest, FileSystem], CheckResult]

    def applies_to(self, tool: str) -> bool:
        return tool in self.tools

    def __call__(self, request: ToolInvocationRequest, fs: FileSystem) -> CheckResult:
        return self.func(request, fs)


def _first_match(patterns: list[tuple[re.Pattern, str]], command: str) -> Optional[str]:
    for pattern, reason in patterns:
        if pattern.search(command):
            return reason
    return None


INJECTION_PATTERNS = [
    (re.compile(r"\beval\b.*[$`]"), "Command injection detected - eval with variable expansion"),
]

EXFILTRATION_PATTERNS = [
    (
        re.compile(r"\$\(\s*(?:curl|wget)\b|`\s*(?:curl|wget)\b|\b(?:curl|wget)\b.*(?:\||>)"),
        "Potential exfiltration detected - curl with command substitution or piping",
    ),
    (
        re.compile(r"\b(?:env|printenv|export|set)\b.*\|.*\b(?:curl|wget|nc|ncat|netcat)\b"),
        "Environment exfiltration attempt detected",
    ),
    (
        re.compile(r"\b(?:printenv|export)\b.*\b(?:curl|wget)\b"),
        "Environment exfiltration attempt detected",
    ),
]

_DECODE_FLAG = r"(?:-[a-zA-Z]*[dD][a-zA-Z]*|--decode)\b"
_SHELL = r"(?:ba|z|da|k)?sh\b"

ENCODED_EXECUTION_PATTERNS = [
    (
        re.compile(r"\bbase64\b.*\b(?:exec|eval)\b"),
        "Encoded command execution detected - base64 with exec/eval",
    ),
    (
        re.compile(r"\bbase64\b[^|;&]*?\s" + _DECODE_FLAG + r".*\|\s*(?:sudo\s+)?" + _SHELL),
        "Encoded command execution detected - base64 decode piped to shell",
    ),
    (
        re.compile(r"(?:\b" + _SHELL + r"\s+-c|\beval)\s+[\"']?(?:\$\(|`)[^)`]*\bbase64\s+" + _DECODE_FLAG),
        "Encoded command execution detected - decoded command substitution",
    ),
    (
        re.compile(r"\becho\b.*\|\s*(?:sudo\s+)?" + _SHELL),
        "Encoded command execution detected - echo piped to shell",
    ),
]


def check_injection(request: ToolInvocationRequest, fs: FileSystem) -> CheckResult:
    """Reject ``eval`` combined with variable or command expansion.

    >>> r = ToolInvocationRequest.build("Bash", {"command": "eval $FOO"})
    >>> check_injection(r, LocalFileSystem()).passed
    False
    >>> r = ToolInvocationRequest.build("Bash", {"command": "echo medieval"})
    >>> check_injection(r, LocalFileSystem()).passed
    True
    """
    reason = _first_match(INJECTION_PATTERNS, request.subject)
    return CheckResult.fail(reason) if reason else CheckResult.ok()


def check_exfiltration(request: ToolInvocationRequest, fs: FileSystem) -> CheckResult:
    reason = _first_match(EXFILTRATION_PATTERNS, request.subject)
    return CheckResult.fail(reason) if reason else CheckResult.ok()


def check_encoded_execution(request: ToolInvocationRequest, fs: FileSystem) -> CheckResult:
    reason = _first_match(ENCODED_EXECUTION_PATTERNS, request.subject)
    return CheckResult.fail(reason) if reason else CheckResult.ok()


def _target_path(request: ToolInvocationRequest) -> str:
    """Path the filesystem checks inspect: the raw parameter, joined to the request cwd.

    Not lexically normalized, so symlinked directories before a ``..`` are
    resolved by the filesystem rather than guessed.
    """
    path = request.params.subject
    if path and not os.path.isabs(path) and request.cwd:
        path = os.path.join(request.cwd, path)
    return path


def is_under(path: str, root: str) -> bool:
    """True if *path* equals *root* or lies below it.

    >>> is_under("/etc/passwd", "/etc")
    True
    >>> is_under("/etcetera/x", "/etc")
    False
    >>> is_under("/anything", "/")
    True
    """
    root = root.rstrip("/")
    return path == root or path.startswith(root + "/")


def make_symlink_check(permitted_roots: Iterable[str], forbidden_roots: Iterable[str]):
    permitted = tuple(permitted_roots)
    forbidden = tuple(forbidden_roots)

    def check_symlink_target(request: ToolInvocationRequest, fs: FileSystem) -> CheckResult:
        path = _target_path(request)
        if not path or not fs.is_symlink(path):
            return CheckResult.ok()
        target = fs.resolve(path)
        if any(is_under(target, root) for root in forbidden):
            return CheckResult.fail(f"Disallowed symlink target in system directory: {target}")
        if not any(is_under(target, root) for root in permitted):
            return CheckResult.fail(f"Disallowed symlink target outside permitted directories: {target}")
        return CheckResult.ok()

    return check_symlink_target


def make_read_size_check(max_bytes: int):
    def check_read_size(request: ToolInvocationRequest, fs: FileSystem) -> CheckResult:
        path = _target_path(request)
        if not path or not fs.is_file(path):
            return CheckResult.ok()
        size = fs.size(path)
        if size > max_bytes:
            return CheckResult.fail(
                f"File too large for Read operation ({size // MIB}MB > {max_bytes // MIB}MB)"
            )
        return CheckResult.ok()

    return check_read_size


def default_checks(
    max_read_bytes: int = DEFAULT_MAX_READ_BYTES,
    permitted_roots: Iterable[str] = DEFAULT_PERMITTED_ROOTS,
    forbidden_roots: Iterable[str] = DEFAULT_FORBIDDEN_ROOTS,
) -> tuple[ValidationCheck, ...]:
    """The fixed, ordered check list."""
    bash = frozenset({ToolName.BASH.value})
    return (
        ValidationCheck("injection", bash, check_injection),
        ValidationCheck("exfiltration", bash, check_exfiltration),
        ValidationCheck("encoded-execution", bash, check_encoded_execution),
        ValidationCheck(
            "symlink-target",
            EDIT_TOOLS,
            make_symlink_check(permitted_roots, forbidden_roots),
        ),
        ValidationCheck("read-size", frozenset({ToolName.READ.value}), make_read_size_check(max_read_bytes)),
    )


# --- Pipeline ---


class ValidationPipeline:
    """Ordered checks; the first failure short-circuits to Deny."""

    def __init__(
        self,
        checks: Optional[Iterable[ValidationCheck]] = None,
        fs: Optional[FileSystem] = None,
        timeout: float = DEFAULT_CHECK_TIMEOUT,
    ):
        self.checks = tuple(checks) if checks is not None else default_checks()
        self.fs = BoundedFileSystem(fs or LocalFileSystem(), timeout)

    def validate(self, request: ToolInvocationRequest) -> Verdict:
        for check in self.checks:
            if not check.applies_to(request.tool):
                continue
            try:
                result = check(request, self.fs)
            except ResourceError as e:
                logger.warning("check %s failed closed for %s: %s", check.name, request.tool, e.reason)
                return Verdict(
                    outcome=Outcome.DENY,
                    failed_check=check.name,
                    reason=f"{check.name} check could not complete: {e.reason}",
                    source="validation",
                )
            except ValidationFailure as e:
                result = CheckResult.fail(e.reason)
            if not result.passed:
                logger.debug("check %s failed: %s", check.name, result.reason)
                return Verdict(
                    outcome=Outcome.DENY,
                    failed_check=check.name,
                    reason=result.reason,
                    source="validation",
                )
        return Verdict(outcome=Outcome.ALLOW, reason="validation passed", source="validation")
