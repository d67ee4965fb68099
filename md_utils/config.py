from __future__ import annotations

import os
from dataclasses import dataclass
from pathlib import Path
from typing import Mapping, Optional

from .ledger import DEFAULT_LOCK_TIMEOUT
from .mounts import DEFAULT_NODE_SUFFIX_LEN
from .quota import ConfigurationError

DEFAULT_POLL_INTERVAL = 100.0
DEFAULT_COMMAND = "sleep 1"

_TRUE_VALUES = {"1", "true", "yes", "on"}


def _env_float(env: Mapping[str, str], name: str, default: float) -> float:
    raw = env.get(name)
    if raw is None or raw.strip() == "":
        return default
    try:
        return float(raw)
    except ValueError as exc:
        raise ConfigurationError(f"{name} must be a number, got {raw!r}") from exc


def _env_int(env: Mapping[str, str], name: str, default: int) -> int:
    raw = env.get(name)
    if raw is None or raw.strip() == "":
        return default
    try:
        return int(raw)
    except ValueError as exc:
        raise ConfigurationError(f"{name} must be an integer, got {raw!r}") from exc


@dataclass
class Settings:
    """Runtime knobs, mostly taken from ``MD_*`` environment variables."""

    md_path: Optional[Path] = None
    lock_timeout: float = DEFAULT_LOCK_TIMEOUT
    poll_interval: float = DEFAULT_POLL_INTERVAL
    account: Optional[str] = None
    node_suffix_len: int = DEFAULT_NODE_SUFFIX_LEN
    kill_group: bool = True
    job_id: Optional[str] = None

    @classmethod
    def from_env(cls, env: Optional[Mapping[str, str]] = None) -> "Settings":
        """Build settings from ``env``, ``os.environ`` by default."""

        if env is None:
            env = os.environ

        md_path = env.get("MD_PATH") or None
        poll_interval = _env_float(env, "MD_POLL_INTERVAL", DEFAULT_POLL_INTERVAL)
        return cls(
            md_path=Path(md_path).expanduser() if md_path else None,
            lock_timeout=_env_float(env, "MD_LOCK_TIMEOUT", DEFAULT_LOCK_TIMEOUT),
            poll_interval=poll_interval if poll_interval > 0 else DEFAULT_POLL_INTERVAL,
            account=env.get("MD_ACCOUNT") or None,
            node_suffix_len=_env_int(env, "MD_NODE_SUFFIX_LEN", DEFAULT_NODE_SUFFIX_LEN),
            kill_group=env.get("MD_KILL_GROUP", "1").strip().lower() in _TRUE_VALUES,
            job_id=env.get("SLURM_JOB_ID") or None,
        )

    def require_md_path(self) -> Path:
        if self.md_path is None:
            raise ConfigurationError("MD_PATH is either unset, or set to an empty string")
        return self.md_path
