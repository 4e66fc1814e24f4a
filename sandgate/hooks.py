"""Hook adapters between the agent runtime and the decision engine.

PreToolUse (decision phase):
  Allow:  exit 0, {"hookSpecificOutput":{"hookEventName":"PreToolUse","permissionDecision":"allow"}}
  Ask:    exit 0, same shape with "ask" (the runtime asks the user)
  Deny:   exit 1, reason on stderr
  Bad input: treated as Deny (fail closed)

PostToolUse (audit phase): records the outcome, never fails the caller.
"""

import json
import logging
from typing import NamedTuple, Optional

from sandgate.audit import AuditLogger, JsonlAuditSink
from sandgate.engine import DecisionEngine
from sandgate.models import Outcome, ToolInvocationRequest, Verdict

logger = logging.getLogger(__name__)

EXIT_ALLOW = 0
EXIT_DENY = 1


class HookResult(NamedTuple):
    exit_code: int
    stdout: Optional[str] = None
    stderr: Optional[str] = None


def parse_payload(text: str) -> dict:
    """Parse one JSON object from the hook input.

    >>> parse_payload('{"tool": "Bash"}')
    {'tool': 'Bash'}
    >>> parse_payload('[1]')
    Traceback (most recent call last):
    ...
    ValueError: hook input must be a JSON object
    """
    payload = json.loads(text)
    if not isinstance(payload, dict):
        raise ValueError("hook input must be a JSON object")
    return payload


def decision_output(verdict: Verdict) -> Optional[dict]:
    """PreToolUse output document for allow/ask verdicts.

    >>> decision_output(Verdict(outcome="ask", reason="no matching rule"))["hookSpecificOutput"]["permissionDecision"]
    'ask'
    >>> decision_output(Verdict(outcome="deny")) is None
    True
    """
    if verdict.outcome is Outcome.DENY:
        return None
    output = {
        "hookEventName": "PreToolUse",
        "permissionDecision": verdict.outcome.value,
    }
    if verdict.reason:
        output["permissionDecisionReason"] = verdict.reason
    return {"hookSpecificOutput": output}


def run_pre_tool(text: str, engine: DecisionEngine, audit: AuditLogger) -> HookResult:
    try:
        payload = parse_payload(text)
    except ValueError as e:
        logger.error("PRE-HOOK: unparsable input: %s", e)
        return HookResult(EXIT_DENY, stderr=f"ERROR: invalid hook input ({e})")

    request = ToolInvocationRequest.from_payload(payload)
    logger.debug("PRE-HOOK: tool=%s session=%s", request.tool, request.session_id[:8])

    verdict = engine.resolve(request)
    audit.record_decision(request, verdict)
    logger.debug("DECISION: %s [%s] %s", verdict.outcome.value.upper(), verdict.source, verdict.reason)

    if verdict.denied:
        return HookResult(EXIT_DENY, stderr=f"ERROR: {verdict.reason}")
    return HookResult(EXIT_ALLOW, stdout=json.dumps(decision_output(verdict)))


def _execution_result(payload: dict) -> tuple[bool, Optional[str]]:
    """(success, error) from a PostToolUse payload. Missing result means success.

    >>> _execution_result({})
    (True, None)
    >>> _execution_result({"result": {"success": False, "error": "exit 2"}})
    (False, 'exit 2')
    """
    result = payload.get("result")
    if result is None:
        result = payload.get("tool_response")
    if not isinstance(result, dict):
        return True, None
    success = result.get("success", True)
    error = result.get("error")
    return bool(success), (str(error) if error is not None else None)


def run_post_tool(
    text: str,
    engine: DecisionEngine,
    audit: AuditLogger,
) -> HookResult:
    try:
        payload = parse_payload(text)
    except ValueError as e:
        logger.error("POST-HOOK: unparsable input: %s", e)
        return HookResult(EXIT_ALLOW)

    request = ToolInvocationRequest.from_payload(payload)
    success, error = _execution_result(payload)
    verdict = engine.resolve(request)
    audit.record_outcome(request, verdict, success, error)

    if isinstance(audit.sink, JsonlAuditSink):
        audit.sink.sweep_if_due(engine.policy.settings.retention_days)
    return HookResult(EXIT_ALLOW)
