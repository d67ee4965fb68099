#!/usr/bin/env python3
"""
Probes for the outside world: df, du, squeue, /proc and the host name.

Everything the quota ledger needs to know about the machine goes through
here, so the rest of the code can be exercised with plain callables.
"""

import os
import socket
import subprocess
from dataclasses import dataclass
from typing import List, Optional, Set

from md_utils import ProbeFailure, classify_mount, get_logger
from md_utils.mounts import DEFAULT_NODE_SUFFIX_LEN

HOSTNAME_FILE = "/proc/sys/kernel/hostname"
PROBE_TIMEOUT_SECONDS = 600
SQUEUE_TIMEOUT_SECONDS = 60
KB_TO_GB = 1e-6

# /proc/<pid>/stat field 22 is the start time in clock ticks after boot
STAT_STARTTIME_FIELD = 22


logger = get_logger(__name__)


@dataclass(frozen=True)
class FsCapacity:
    """Size of the filesystem backing a path, in GB."""

    capacity: float
    available: float
    mount_point: str


def _run(cmd: List[str], timeout: float = PROBE_TIMEOUT_SECONDS) -> subprocess.CompletedProcess:
    try:
        return subprocess.run(
            cmd,
            stdout=subprocess.PIPE,
            stderr=subprocess.PIPE,
            encoding="utf-8",
            errors="replace",
            timeout=timeout,
        )
    except (OSError, subprocess.TimeoutExpired) as exc:
        raise ProbeFailure(f"Could not run {' '.join(cmd)}: {exc}") from exc


def capacity_probe(path: str = ".") -> FsCapacity:
    """Query ``df -Pk`` for capacity, free space and mount point of ``path``."""

    proc = _run(["df", "-Pk", str(path)])
    lines = proc.stdout.strip().splitlines()
    if proc.returncode != 0 or len(lines) < 2:
        raise ProbeFailure(f"Bad output from df for {path}: {proc.stderr.strip() or proc.stdout.strip()}")

    fields = lines[-1].split()
    if len(fields) < 6:
        raise ProbeFailure(f"Unexpected df line for {path}: {lines[-1]!r}")
    try:
        capacity_kb = int(fields[1])
        available_kb = int(fields[3])
    except ValueError as exc:
        raise ProbeFailure(f"Non-numeric df sizes for {path}: {lines[-1]!r}") from exc

    return FsCapacity(
        capacity=capacity_kb * KB_TO_GB,
        available=available_kb * KB_TO_GB,
        mount_point=" ".join(fields[5:]),
    )


def usage_probe(path: str = ".") -> float:
    """Recursive usage of ``path`` in GB, as reported by ``du -sk``.

    du exits non-zero when files vanish or are unreadable during the walk;
    the total it prints is still used as long as there is one.
    """

    proc = _run(["du", "-sk", str(path)])
    fields = proc.stdout.split()
    try:
        usage_kb = int(fields[0])
    except (IndexError, ValueError) as exc:
        raise ProbeFailure(f"Bad output from du for {path}: {proc.stderr.strip() or proc.stdout.strip()}") from exc
    if proc.returncode != 0:
        logger.debug("du exited with %d for %s: %s", proc.returncode, path, proc.stderr.strip())
    return usage_kb * KB_TO_GB


def active_jobs(node: str, account: Optional[str] = None, user: Optional[str] = None) -> Set[str]:
    """Job IDs the scheduler currently has on ``node`` for this account or user."""

    cmd = ["squeue", "-h", "-w", node, "-o", "%i"]
    if account:
        cmd += ["-A", account]
    elif user:
        cmd += ["-u", user]

    proc = _run(cmd, timeout=SQUEUE_TIMEOUT_SECONDS)
    if proc.returncode != 0:
        raise ProbeFailure(f"squeue failed for {node}: {proc.stderr.strip()}", disk_id=node)
    return {line.strip() for line in proc.stdout.splitlines() if line.strip()}


def process_start_time(pid: int) -> Optional[str]:
    """Start time of ``pid`` from /proc, or None when the process is gone."""

    try:
        with open(f"/proc/{pid}/stat", "r") as fh:
            stat = fh.read()
    except OSError:
        return None

    # the command name (field 2) is parenthesised and may hold spaces
    _, _, rest = stat.rpartition(")")
    fields = rest.split()
    index = STAT_STARTTIME_FIELD - 3
    if index >= len(fields):
        return None
    return fields[index]


def host_name() -> str:
    try:
        with open(HOSTNAME_FILE, "r") as fh:
            name = fh.read().strip()
        if name:
            return name
    except OSError:
        pass
    return socket.gethostname()


def current_user() -> Optional[str]:
    return os.getenv("USER") or os.getenv("LOGNAME")


def disk_identity(path: str = ".", suffix_len: int = DEFAULT_NODE_SUFFIX_LEN) -> str:
    """Disk identity for the filesystem that holds ``path``."""

    host = host_name()
    mount_point = capacity_probe(path).mount_point
    logger.debug("Host is %s, mount is %s", host, mount_point)
    return classify_mount(host, mount_point, suffix_len)
