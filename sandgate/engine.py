"""Decision engine: rules first, then dynamic validation.

Evaluation chain for one request:
  1. Rule Set: deny > ask > allow, first match wins
  2. Validation Pipeline: every Read/Edit/Write, and the sandboxed
     default-allow path when no rule matched
  3. Default: Ask, unless auto-allow-when-sandboxed is on

The active policy is swapped as a whole; an evaluation that already
started keeps the policy it read.
"""

import logging
import threading
from typing import Optional

from sandgate.models import (
    EDIT_TOOLS,
    Outcome,
    ToolInvocationRequest,
    ToolName,
    Verdict,
)
from sandgate.policy import Policy
from sandgate.validation import FileSystem, ValidationPipeline

logger = logging.getLogger(__name__)

# File tools are always validated, whatever the rule verdict
ALWAYS_VALIDATED = EDIT_TOOLS | {ToolName.READ.value}

DEFAULT_ALLOW_REASON = "default-allow (sandboxed)"
DEFAULT_ASK_REASON = "no matching rule"


class _Active:
    """Policy and its compiled pipeline, published together."""

    __slots__ = ("policy", "pipeline")

    def __init__(self, policy: Policy, pipeline: ValidationPipeline):
        self.policy = policy
        self.pipeline = pipeline


class DecisionEngine:
    """Turns a ToolInvocationRequest into a single allow/deny/ask Verdict."""

    def __init__(self, policy: Optional[Policy] = None, fs: Optional[FileSystem] = None):
        self._fs = fs
        self._swap_lock = threading.Lock()
        policy = policy or Policy.empty()
        self._active = _Active(policy, policy.build_pipeline(fs))

    @property
    def policy(self) -> Policy:
        return self._active.policy

    @property
    def pipeline(self) -> ValidationPipeline:
        return self._active.pipeline

    def swap_policy(self, policy: Policy) -> Policy:
        """Replace the active policy. Returns the previous one."""
        active = _Active(policy, policy.build_pipeline(self._fs))
        with self._swap_lock:
            previous = self._active.policy
            self._active = active
        logger.info("policy swapped: %r -> %r", previous, policy)
        return previous

    def resolve(self, request: ToolInvocationRequest) -> Verdict:
        active = self._active
        policy, pipeline = active.policy, active.pipeline

        verdict = policy.rules.match(request)
        if verdict is not None:
            if verdict.denied or request.tool not in ALWAYS_VALIDATED:
                return verdict
            checked = pipeline.validate(request)
            if checked.denied:
                return checked.model_copy(update={"matched_rule": verdict.matched_rule})
            return verdict

        if policy.settings.auto_allow_when_sandboxed:
            checked = pipeline.validate(request)
            if checked.denied:
                return checked
            return Verdict(outcome=Outcome.ALLOW, reason=DEFAULT_ALLOW_REASON, source="default")

        if request.tool in ALWAYS_VALIDATED:
            checked = pipeline.validate(request)
            if checked.denied:
                return checked
        return Verdict(outcome=Outcome.ASK, reason=DEFAULT_ASK_REASON, source="default")
