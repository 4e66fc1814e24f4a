"""Operational logging setup.

Audit records are not written here (see sandgate.audit); this is the
human-readable debug trail. Secrets are redacted before they reach disk.
"""

import logging
import re
from pathlib import Path
from typing import Optional

HOOK_LOG_NAME = "hook-debug.log"

# (pattern, replacement); group 1 is the part of the match that stays visible
_REDACTIONS = [
    (re.compile(r"(://[^:/\s]+:)[^@\s]+@"), r"\g<1>***@"),
    (
        re.compile(
            r"(\b\w*(?:PASSWORD|PASSWD|_PWD|SECRET|TOKEN|API_?KEY|ACCESS_KEY)\w*\s*=\s*)"
            r"(?:\"[^\"]*\"|'[^']*'|[^\s\"']+)",
            re.IGNORECASE,
        ),
        r"\g<1>***",
    ),
    (
        re.compile(r"(--(?:password|passwd|token|secret|api-key|apikey)[\s=])(?:\"[^\"]*\"|'[^']*'|\S+)", re.IGNORECASE),
        r"\g<1>***",
    ),
    (re.compile(r"(\bBearer\s+|\bAuthorization:\s*Basic\s+)[A-Za-z0-9._~+/=-]+", re.IGNORECASE), r"\g<1>***"),
    (re.compile(r"\b(?:AKIA|ASIA)[0-9A-Z]{16}\b"), "***"),
    (re.compile(r"\bsk-[A-Za-z0-9_-]{20,}"), "***"),
    (re.compile(r"\b(?:gh[pousr]_[A-Za-z0-9]{20,}|github_pat_[A-Za-z0-9_]{20,})"), "***"),
]


def redact(msg: str) -> str:
    """Mask credentials in a log message, keeping the surrounding text.

    >>> redact("psql postgres://bob:hunter2@db/app")
    'psql postgres://bob:***@db/app'
    >>> redact("curl -H 'Authorization: Bearer abc.def'")
    "curl -H 'Authorization: Bearer ***'"
    >>> redact("API_KEY=xyz make deploy")
    'API_KEY=*** make deploy'
    >>> redact("git status")
    'git status'
    """
    for pattern, replacement in _REDACTIONS:
        msg = pattern.sub(replacement, msg)
    return msg



class RedactingFormatter(logging.Formatter):
    def format(self, record: logging.LogRecord) -> str:
        return redact(super().format(record))


def setup_logging(verbose: bool = False, log_dir: Optional[Path] = None, debug_file: bool = False):
    """Configure logging based on verbosity.

    stderr gets WARNING (DEBUG when verbose). With *debug_file*, everything
    from the sandgate loggers also goes to hook-debug.log in *log_dir*.
    """
    level = logging.DEBUG if verbose else logging.WARNING
    logging.basicConfig(
        level=level,
        format="%(asctime)s - %(name)s - %(levelname)s - %(message)s",
    )

    if debug_file and log_dir is not None:
        pkg_logger = logging.getLogger("sandgate")
        pkg_logger.setLevel(logging.DEBUG)
        try:
            log_dir.mkdir(parents=True, exist_ok=True)
            handler = logging.FileHandler(log_dir / HOOK_LOG_NAME, encoding="utf-8")
        except OSError as e:
            logging.getLogger(__name__).warning("cannot open %s: %s", log_dir / HOOK_LOG_NAME, e)
            return
        handler.setLevel(logging.DEBUG)
        handler.setFormatter(RedactingFormatter("[%(asctime)s] %(levelname)s %(name)s: %(message)s"))
        pkg_logger.addHandler(handler)
