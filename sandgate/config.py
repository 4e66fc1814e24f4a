"""Runtime configuration from environment variables."""

import logging
import os
from pathlib import Path

from pydantic import BaseModel, ConfigDict

from sandgate.policy import Policy, load_file

logger = logging.getLogger(__name__)

CLAUDE_DIR = Path.home() / ".claude"
DEFAULT_POLICY_PATH = CLAUDE_DIR / "sandgate-policy.json"
DEFAULT_LOG_DIR = CLAUDE_DIR / "logs"


class GateConfig(BaseModel):
    """Where the policy lives and where audit logs go.

    Environment:
        SANDGATE_POLICY   policy document (JSON or YAML)
        SANDGATE_LOG_DIR  audit log directory
        SANDGATE_DEBUG    "1" writes debug lines to hook-debug.log
    """

    model_config = ConfigDict(frozen=True)

    policy_path: Path = DEFAULT_POLICY_PATH
    log_dir: Path = DEFAULT_LOG_DIR
    debug: bool = False

    @classmethod
    def from_env(cls) -> "GateConfig":
        policy_path = Path(os.environ.get("SANDGATE_POLICY") or DEFAULT_POLICY_PATH).expanduser()
        log_dir = Path(os.environ.get("SANDGATE_LOG_DIR") or DEFAULT_LOG_DIR).expanduser()
        if log_dir.exists() and not log_dir.is_dir():
            raise ValueError(f"SANDGATE_LOG_DIR is not a directory: {log_dir}")
        if policy_path.is_dir():
            raise ValueError(f"SANDGATE_POLICY points to a directory: {policy_path}")
        return cls(
            policy_path=policy_path,
            log_dir=log_dir,
            debug=os.environ.get("SANDGATE_DEBUG", "") == "1",
        )

    def load_policy(self) -> Policy:
        """Load the policy file. No file means the conservative empty policy."""
        if not self.policy_path.exists():
            logger.info("no policy at %s, using empty policy", self.policy_path)
            return Policy.empty()
        return load_file(self.policy_path)
