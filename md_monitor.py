#!/usr/bin/env python3
"""
Usage Monitor
Watches a running command's disk usage against the job's reservation.

The monitor polls on a background thread. Each cycle it checks that the
command is still alive, resamples the working directory's usage and kills
the command's process group when the reservation is exceeded or when the
job has been running for 30 days.
"""

import os
import shlex
import signal
import subprocess
import threading
from dataclasses import dataclass
from enum import Enum
from typing import Callable, List, Optional, Sequence, Union

from md_probes import process_start_time
from md_utils import IdentityAdapter, JobReservation, ProbeFailure, format_gb, get_logger

MAX_RUNTIME_SECONDS = 30 * 24 * 3600


class MonitorOutcome(Enum):
    COMPLETED = "completed"
    VIOLATED = "violated"
    EXPIRED = "expired"
    PROBE_FAILED = "probe_failed"


@dataclass(frozen=True)
class MonitorResult:
    outcome: MonitorOutcome
    iterations: int
    usage: float
    returncode: Optional[int] = None

    @property
    def ok(self) -> bool:
        return self.outcome is MonitorOutcome.COMPLETED


class TrackedProcess:
    """A spawned command plus the start time captured right after launch.

    The command gets its own session so that a kill takes its whole process
    group with it.
    """

    def __init__(self, popen: subprocess.Popen, start_time_probe: Callable[[int], Optional[str]] = process_start_time):
        self.popen = popen
        self.pid = popen.pid
        self._start_time_probe = start_time_probe
        self.start_time = start_time_probe(self.pid)

    @classmethod
    def spawn(
        cls,
        command: Union[str, Sequence[str]],
        cwd: Optional[str] = None,
        shell: bool = False,
        start_time_probe: Callable[[int], Optional[str]] = process_start_time,
    ) -> "TrackedProcess":
        if shell:
            args: Union[str, List[str]] = command if isinstance(command, str) else " ".join(shlex.quote(c) for c in command)
        else:
            args = shlex.split(command) if isinstance(command, str) else list(command)
        popen = subprocess.Popen(args, cwd=cwd, shell=shell, start_new_session=True)
        return cls(popen, start_time_probe)

    def alive(self) -> bool:
        if self.popen.poll() is not None:
            return False
        # a recycled PID shows up with a different start time
        return self._start_time_probe(self.pid) == self.start_time

    def kill(self) -> None:
        """SIGKILL the command's process group."""

        try:
            os.killpg(self.pid, signal.SIGKILL)
        except ProcessLookupError:
            pass
        except PermissionError:
            self.popen.kill()

    def wait(self) -> int:
        return self.popen.wait()


class UsageMonitor:
    """Poll loop enforcing ``reservation`` on ``target``.

    ``run`` returns one of three terminal outcomes (plus ``PROBE_FAILED`` when
    usage cannot be measured). ``wake`` interrupts the current sleep so that a
    finished command is noticed without waiting out the interval.
    """

    def __init__(
        self,
        reservation: JobReservation,
        target: TrackedProcess,
        interval: float,
        usage_probe: Callable[[str], float],
        path: str = ".",
        max_runtime: float = MAX_RUNTIME_SECONDS,
    ):
        if interval <= 0:
            raise ValueError("interval must be positive")
        self.reservation = reservation
        self.target = target
        self.interval = interval
        self.usage_probe = usage_probe
        self.path = path
        self.max_runtime = max_runtime
        self.max_iterations = max_runtime / interval
        self.outcome: Optional[MonitorOutcome] = None
        self.result: Optional[MonitorResult] = None
        self.logger = IdentityAdapter(get_logger(__name__), reservation.disk_id)
        self._wakeup = threading.Event()
        self._thread: Optional[threading.Thread] = None
        self._error: Optional[BaseException] = None

    @property
    def running(self) -> bool:
        return self.outcome is None

    def wake(self) -> None:
        self._wakeup.set()

    def start(self) -> None:
        self._thread = threading.Thread(target=self._run_guarded, name=f"md-monitor-{self.target.pid}", daemon=True)
        self._thread.start()

    def join(self, timeout: Optional[float] = None) -> Optional[MonitorResult]:
        if self._thread is not None:
            self._thread.join(timeout)
        if self._error is not None:
            raise self._error
        return self.result

    def _run_guarded(self) -> None:
        try:
            self.run()
        except BaseException as exc:
            self.logger.exception("Monitor for pid %d crashed, killing it", self.target.pid)
            self.target.kill()
            self._error = exc

    def _finish(self, outcome: MonitorOutcome, iterations: int) -> MonitorResult:
        self.outcome = outcome
        self.result = MonitorResult(outcome=outcome, iterations=iterations, usage=self.reservation.this_disk_usage)
        return self.result

    def run(self) -> MonitorResult:
        iterations = 0
        while True:
            if not self.target.alive():
                self.logger.debug("Command %d finished after %d checks", self.target.pid, iterations)
                return self._finish(MonitorOutcome.COMPLETED, iterations)

            try:
                usage = self.usage_probe(self.path)
            except ProbeFailure as exc:
                self.logger.error("Cannot measure disk usage, killing %d: %s", self.target.pid, exc.message)
                self.target.kill()
                return self._finish(MonitorOutcome.PROBE_FAILED, iterations)

            self.reservation.this_disk_usage = usage
            if self.reservation.over_quota():
                self.logger.error(
                    "This process has exceeded its disk quota, killing %d (usage %sG, quota %sG)",
                    self.target.pid,
                    format_gb(usage),
                    format_gb(self.reservation.this_quota),
                )
                self.target.kill()
                return self._finish(MonitorOutcome.VIOLATED, iterations)

            iterations += 1
            if iterations > self.max_iterations:
                self.logger.error("Command %d ran past the %g day limit, killing it", self.target.pid, self.max_runtime / 86400)
                self.target.kill()
                return self._finish(MonitorOutcome.EXPIRED, iterations)

            if self._wakeup.wait(self.interval):
                self._wakeup.clear()
