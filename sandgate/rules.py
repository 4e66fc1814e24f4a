"""Ordered deny/ask/allow rules with first-match resolution.

Evaluation order is deny > ask > allow. Within a class, document order
decides (first match wins). A RuleSet is never mutated after construction;
reloading builds a new one.
"""

import logging
from typing import Iterable, Optional

from sandgate.matcher import compile_pattern, matches
from sandgate.models import PATH_TOOLS, Mode, Outcome, Rule, ToolInvocationRequest, Verdict

logger = logging.getLogger(__name__)

_PRECEDENCE = (Mode.DENY, Mode.ASK, Mode.ALLOW)
_OUTCOME_FOR_MODE = {
    Mode.DENY: Outcome.DENY,
    Mode.ASK: Outcome.ASK,
    Mode.ALLOW: Outcome.ALLOW,
}


def is_path_tool(tool: str) -> bool:
    return tool in PATH_TOOLS


class RuleSet:
    """Immutable, pre-partitioned collection of rules.

    >>> rs = RuleSet([Rule(tool="Bash", pattern="git *", mode="allow"),
    ...               Rule(tool="Bash", pattern="git push*", mode="deny", reason="no push")])
    >>> rs.match(ToolInvocationRequest.build("Bash", {"command": "git push origin"})).outcome
    <Outcome.DENY: 'deny'>
    >>> rs.match(ToolInvocationRequest.build("Bash", {"command": "make"})) is None
    True
    """

    __slots__ = ("_rules", "_partitions")

    def __init__(self, rules: Iterable[Rule] = ()):
        rules = tuple(rules)
        partitions: dict[str, dict[Mode, list[Rule]]] = {}
        for rule in rules:
            # Compile eagerly so a bad pattern fails here, not at decision time
            compile_pattern(rule.pattern, is_path_tool(rule.tool))
            per_tool = partitions.setdefault(rule.tool, {mode: [] for mode in _PRECEDENCE})
            per_tool[rule.mode].append(rule)
        object.__setattr__(self, "_rules", rules)
        object.__setattr__(
            self,
            "_partitions",
            {
                tool: {mode: tuple(bucket) for mode, bucket in per_tool.items()}
                for tool, per_tool in partitions.items()
            },
        )

    def __setattr__(self, name, value):
        raise AttributeError("RuleSet is immutable")

    def __len__(self) -> int:
        return len(self._rules)

    def __iter__(self):
        return iter(self._rules)

    def __repr__(self) -> str:
        return f"RuleSet({len(self._rules)} rules)"

    @property
    def rules(self) -> tuple[Rule, ...]:
        return self._rules

    def for_tool(self, tool: str, mode: Mode) -> tuple[Rule, ...]:
        return self._partitions.get(tool, {}).get(mode, ())

    def counts(self) -> dict[str, int]:
        """Number of rules per mode.

        >>> RuleSet([Rule(tool="Bash", pattern="a", mode="deny")]).counts()
        {'deny': 1, 'ask': 0, 'allow': 0}
        """
        result = {mode.value: 0 for mode in _PRECEDENCE}
        for rule in self._rules:
            result[rule.mode.value] += 1
        return result

    def match(self, request: ToolInvocationRequest) -> Optional[Verdict]:
        """Return the verdict of the first matching rule, or None.

        Deny rules are always scanned first, even when a more specific
        allow rule also matches.
        """
        subject = request.subject
        if not subject:
            return None
        path_mode = is_path_tool(request.tool)
        for mode in _PRECEDENCE:
            for rule in self.for_tool(request.tool, mode):
                if matches(rule.pattern, subject, path_mode):
                    logger.debug("rule %d (%s %r) matched %s", rule.index, mode.value, rule.pattern, request.tool)
                    return Verdict(
                        outcome=_OUTCOME_FOR_MODE[mode],
                        matched_rule=rule,
                        reason=rule.reason or f"matched {mode.value} rule {rule.tool}({rule.pattern})",
                        source="rule",
                    )
        return None
