"""Error taxonomy for sandgate.

Deny is a normal return value and never an exception. Only configuration
problems and audit write failures use hard failure signaling.
"""

from typing import Optional


class SandgateError(Exception):
    """Base class for all sandgate errors."""


class ConfigError(SandgateError):
    """Bad policy document or runtime configuration. Fatal at startup.

    >>> str(ConfigError("unknown tool 'Foo'", index=3, field="tool"))
    "rules[3].tool: unknown tool 'Foo'"
    >>> str(ConfigError("policy file not found"))
    'policy file not found'
    >>> str(ConfigError("bad entry", index=0, section="permissions.deny"))
    'permissions.deny[0]: bad entry'
    """

    def __init__(
        self,
        message: str,
        index: Optional[int] = None,
        field: Optional[str] = None,
        section: str = "rules",
    ):
        self.message = message
        self.index = index
        self.field = field
        self.section = section
        super().__init__(self._format())

    def _format(self) -> str:
        if self.index is None and self.field is None:
            return self.message
        location = self.section
        if self.index is not None:
            location += f"[{self.index}]"
        if self.field:
            location += f".{self.field}"
        return f"{location}: {self.message}"


class ValidationFailure(SandgateError):
    """A dynamic check rejected the request. Turned into a Deny verdict."""

    def __init__(self, check: str, reason: str):
        self.check = check
        self.reason = reason
        super().__init__(f"{check}: {reason}")


class ResourceError(ValidationFailure):
    """Filesystem unreadable or too slow during a check. Fails closed."""


class LoggingError(SandgateError):
    """An audit append failed. Escalated loudly, never blocks a decision."""


class PatternError(ValueError):
    """A rule pattern could not be compiled."""
