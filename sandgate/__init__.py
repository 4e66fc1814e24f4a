"""
sandgate - policy gate between a coding agent and the operating system.

Every tool invocation (shell command, file read, file edit) is checked
against a declarative policy, optionally validated dynamically, and the
decision and outcome are written to an append-only audit log.
"""

__version__ = "0.1.0"

from sandgate.audit import AuditLogger, JsonlAuditSink, MemoryAuditSink
from sandgate.engine import DecisionEngine
from sandgate.errors import ConfigError, LoggingError, ResourceError, ValidationFailure
from sandgate.matcher import matches
from sandgate.models import AuditRecord, Outcome, Rule, ToolInvocationRequest, Verdict
from sandgate.policy import Policy, PolicySettings, load, load_file
from sandgate.rules import RuleSet
from sandgate.validation import ValidationPipeline

__all__ = [
    "__version__",
    "AuditLogger",
    "AuditRecord",
    "ConfigError",
    "DecisionEngine",
    "JsonlAuditSink",
    "LoggingError",
    "MemoryAuditSink",
    "Outcome",
    "Policy",
    "PolicySettings",
    "ResourceError",
    "Rule",
    "RuleSet",
    "ToolInvocationRequest",
    "ValidationFailure",
    "ValidationPipeline",
    "Verdict",
    "load",
    "load_file",
    "matches",
]
