"""Policy document loading.

Parses the operator policy document into an immutable Policy (RuleSet plus
process-wide settings) once at startup. Loading is all-or-nothing: any bad
rule or setting raises ConfigError and nothing is applied.

Two rule syntaxes are accepted and can be mixed:

  {"rules": [{"tool": "Bash", "pattern": "sudo *", "mode": "deny", "reason": "..."}]}

  {"permissions": {"deny": ["Bash(sudo:*)", "Read(./.env)"], "ask": [], "allow": []}}

The second is the agent runtime's managed-settings shorthand; ``prefix:*``
becomes the glob ``prefix*``.
"""

import json
import logging
import os
import re
from collections.abc import Mapping
from pathlib import Path
from typing import Any, Optional

import yaml
from pydantic import BaseModel, ConfigDict, Field, ValidationError
from pydantic.alias_generators import to_camel

from sandgate.errors import ConfigError, PatternError
from sandgate.matcher import compile_pattern
from sandgate.models import KNOWN_TOOLS, Mode, Rule
from sandgate.rules import RuleSet, is_path_tool
from sandgate.validation import (
    DEFAULT_CHECK_TIMEOUT,
    DEFAULT_FORBIDDEN_ROOTS,
    DEFAULT_MAX_READ_BYTES,
    DEFAULT_PERMITTED_ROOTS,
    FileSystem,
    ValidationPipeline,
    default_checks,
)

logger = logging.getLogger(__name__)

SHORTHAND_RE = re.compile(r"^(\w+)(?:\((.*)\))?$", re.DOTALL)


class PolicySettings(BaseModel):
    """Process-wide policy flags."""

    model_config = ConfigDict(
        frozen=True,
        extra="forbid",
        populate_by_name=True,
        alias_generator=to_camel,
    )

    auto_allow_when_sandboxed: bool = False
    retention_days: int = Field(7, ge=1)
    max_read_bytes: int = Field(DEFAULT_MAX_READ_BYTES, gt=0)
    permitted_edit_roots: tuple[str, ...] = DEFAULT_PERMITTED_ROOTS
    forbidden_edit_roots: tuple[str, ...] = DEFAULT_FORBIDDEN_ROOTS
    check_timeout: float = Field(DEFAULT_CHECK_TIMEOUT, gt=0)


def _setting_keys() -> set[str]:
    keys = set()
    for name, field in PolicySettings.model_fields.items():
        keys.add(name)
        keys.add(field.alias or to_camel(name))
    return keys


class Policy:
    """A loaded policy: rules plus settings. Immutable."""

    __slots__ = ("rules", "settings", "source")

    def __init__(self, rules: RuleSet, settings: PolicySettings, source: str = "<memory>"):
        object.__setattr__(self, "rules", rules)
        object.__setattr__(self, "settings", settings)
        object.__setattr__(self, "source", source)

    def __setattr__(self, name, value):
        raise AttributeError("Policy is immutable")

    def __repr__(self) -> str:
        return f"Policy({self.source}, {len(self.rules)} rules)"

    @classmethod
    def empty(cls) -> "Policy":
        return cls(RuleSet(), PolicySettings(), source="<empty>")

    def build_pipeline(self, fs: Optional[FileSystem] = None) -> ValidationPipeline:
        s = self.settings
        checks = default_checks(
            max_read_bytes=s.max_read_bytes,
            permitted_roots=s.permitted_edit_roots,
            forbidden_roots=s.forbidden_edit_roots,
        )
        return ValidationPipeline(checks, fs=fs, timeout=s.check_timeout)


# --- Rules ---


def _check_pattern(tool: str, pattern: str, index: int, section: str):
    try:
        compile_pattern(pattern, is_path_tool(tool))
    except PatternError as e:
        raise ConfigError(str(e), index=index, field="pattern", section=section) from e


def _parse_rule(raw: Any, index: int, position: int) -> Rule:
    if not isinstance(raw, Mapping):
        raise ConfigError("rule must be a mapping", index=index)
    for field in ("tool", "pattern", "mode"):
        if not isinstance(raw.get(field), str):
            raise ConfigError(f"missing or non-string '{field}'", index=index, field=field)
    tool = raw["tool"]
    if tool not in KNOWN_TOOLS:
        raise ConfigError(f"unknown tool {tool!r}", index=index, field="tool")
    try:
        mode = Mode(raw["mode"].lower())
    except ValueError:
        raise ConfigError(f"unknown mode {raw['mode']!r}", index=index, field="mode") from None
    _check_pattern(tool, raw["pattern"], index, "rules")
    reason = raw.get("reason", "")
    if not isinstance(reason, str):
        raise ConfigError("reason must be a string", index=index, field="reason")
    return Rule(tool=tool, pattern=raw["pattern"], mode=mode, reason=reason, index=position)


def shorthand_to_glob(tool: str, inner: Optional[str]) -> str:
    """Convert the inside of ``Tool(...)`` to a glob pattern.

    >>> shorthand_to_glob("Bash", "git push:*")
    'git push*'
    >>> shorthand_to_glob("Bash", None)
    '*'
    >>> shorthand_to_glob("Read", "./.env")
    '**/.env'
    >>> shorthand_to_glob("Edit", "//etc/**")
    '/etc/**'
    >>> shorthand_to_glob("Read", "")
    '**'
    """
    path_mode = is_path_tool(tool)
    if not inner:
        return "**" if path_mode else "*"
    if inner.endswith(":*"):
        inner = inner[:-2] + "*"
    if path_mode:
        if inner.startswith("//"):
            inner = inner[1:]
        elif inner.startswith("./"):
            inner = "**/" + inner[2:]
        elif inner.startswith("~"):
            inner = os.path.expanduser(inner)
    return inner


def _parse_shorthand(entry: Any, mode: Mode, index: int, position: int) -> Rule:
    section = f"permissions.{mode.value}"
    if not isinstance(entry, str):
        raise ConfigError("entry must be a string like 'Bash(git status)'", index=index, section=section)
    m = SHORTHAND_RE.match(entry.strip())
    if not m:
        raise ConfigError(f"unparsable entry {entry!r}", index=index, field="pattern", section=section)
    tool, inner = m.group(1), m.group(2)
    if tool not in KNOWN_TOOLS:
        raise ConfigError(f"unknown tool {tool!r}", index=index, field="tool", section=section)
    pattern = shorthand_to_glob(tool, inner)
    _check_pattern(tool, pattern, index, section)
    return Rule(tool=tool, pattern=pattern, mode=mode, reason=f"{mode.value} rule {entry}", index=position)


# --- Settings ---


def _parse_settings(document: Mapping) -> PolicySettings:
    keys = _setting_keys()
    raw: dict[str, Any] = {k: v for k, v in document.items() if k in keys}

    section = document.get("settings", {})
    if not isinstance(section, Mapping):
        raise ConfigError("must be a mapping", field="settings", section="policy")
    raw.update(section)

    sandbox = document.get("sandbox", {})
    if isinstance(sandbox, Mapping) and "autoAllowBashIfSandboxed" in sandbox:
        if "autoAllowWhenSandboxed" not in raw and "auto_allow_when_sandboxed" not in raw:
            raw["autoAllowWhenSandboxed"] = sandbox["autoAllowBashIfSandboxed"]

    try:
        return PolicySettings.model_validate(raw)
    except ValidationError as e:
        err = e.errors()[0]
        field = ".".join(str(p) for p in err["loc"])
        raise ConfigError(err["msg"], field=field, section="settings") from None


# --- Public API ---


def load(document: Any, source: str = "<memory>") -> Policy:
    """Build a Policy from a parsed policy document.

    >>> p = load({"rules": [{"tool": "Bash", "pattern": "ls *", "mode": "allow"}],
    ...           "settings": {"retentionDays": 3}})
    >>> len(p.rules), p.settings.retention_days
    (1, 3)
    """
    if not isinstance(document, Mapping):
        raise ConfigError("policy document must be a mapping")

    rules: list[Rule] = []
    raw_rules = document.get("rules", [])
    if not isinstance(raw_rules, list):
        raise ConfigError("must be a list", field="rules", section="policy")
    for i, raw in enumerate(raw_rules):
        rules.append(_parse_rule(raw, i, len(rules)))

    permissions = document.get("permissions", {})
    if not isinstance(permissions, Mapping):
        raise ConfigError("must be a mapping", field="permissions", section="policy")
    for mode in (Mode.DENY, Mode.ASK, Mode.ALLOW):
        entries = permissions.get(mode.value, [])
        if not isinstance(entries, list):
            raise ConfigError("must be a list", field=mode.value, section="permissions")
        for i, entry in enumerate(entries):
            rules.append(_parse_shorthand(entry, mode, i, len(rules)))

    settings = _parse_settings(document)
    policy = Policy(RuleSet(rules), settings, source=source)
    logger.debug("loaded %r: %s", policy, policy.rules.counts())
    return policy


def loads(text: str, source: str = "<string>", fmt: Optional[str] = None) -> Policy:
    """Parse JSON (default) or YAML policy text."""
    try:
        if fmt == "yaml":
            document = yaml.safe_load(text)
        else:
            document = json.loads(text)
    except (json.JSONDecodeError, yaml.YAMLError) as e:
        raise ConfigError(f"cannot parse policy document {source}: {e}") from e
    if document is None:
        document = {}
    return load(document, source=source)


def load_file(path: str | Path) -> Policy:
    path = Path(path)
    try:
        text = path.read_text(encoding="utf-8")
    except OSError as e:
        raise ConfigError(f"cannot read policy file {path}: {e}") from e
    fmt = "yaml" if path.suffix.lower() in (".yaml", ".yml") else "json"
    return loads(text, source=str(path), fmt=fmt)
