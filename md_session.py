#!/usr/bin/env python3
"""
Job Session
Reserve, monitor and release one job's share of the disk quota ledger.

A session walks UNRESERVED -> RESERVED -> RELEASED:

- start():   lock the ledger, locate or create this disk's line, reconcile
             stale reservations, add this job's quota, unlock.
- execute(): run a command next to a UsageMonitor; may be called repeatedly.
- end():     lock, subtract this job's quota, reconcile, prune, unlock.
- kill():    end() and then take down the commands and the process group.
"""

import os
import signal
from dataclasses import replace
from enum import Enum
from typing import Callable, List, Optional, Sequence, Set, Union

import md_probes
from md_monitor import MonitorResult, TrackedProcess, UsageMonitor
from md_utils import (
    IdentityAdapter,
    JobReservation,
    LedgerEntry,
    LedgerFormatError,
    LedgerSession,
    LedgerStore,
    LockTimeout,
    MindDiskError,
    ProbeFailure,
    QuotaExceeded,
    Settings,
    apply_delta,
    format_gb,
    get_logger,
    is_shared,
    parse_size,
)
from md_utils.config import DEFAULT_COMMAND

CapacityProbe = Callable[[str], md_probes.FsCapacity]
UsageProbe = Callable[[str], float]
JobLister = Callable[[str], Set[str]]
IdentityProbe = Callable[[str], str]


def _quota_gb(quota: Union[str, float, None]) -> float:
    if isinstance(quota, (int, float)):
        return float(quota)
    return parse_size(quota)


class ReservationState(Enum):
    UNRESERVED = "unreserved"
    RESERVED = "reserved"
    RELEASED = "released"


def collect_garbage(
    ledger: LedgerSession,
    index: int,
    entry: LedgerEntry,
    own_job_id: Optional[str],
    job_lister: JobLister,
    logger: IdentityAdapter,
) -> LedgerEntry:
    """Zero a node's reserved quota when no other job is running there.

    This is a heuristic reconciliation for jobs that died without releasing:
    the scheduler's job list is taken as ground truth and the stored value is
    overwritten, not merged. A failed query counts as "no active jobs".
    Shared volumes are never reconciled since the job list is per node.
    Must be called with the ledger lock held.
    """

    if is_shared(entry.disk_id):
        return entry

    try:
        jobs = set(job_lister(entry.disk_id))
    except ProbeFailure as exc:
        logger.warning("Job list query failed, assuming no active jobs: %s", exc.message)
        jobs = set()

    others = (jobs - {own_job_id}) if own_job_id else jobs
    if others:
        logger.debug("%d other active jobs, keeping %sG reserved", len(others), format_gb(entry.reserved))
        return entry

    if entry.reserved == 0:
        return entry
    logger.info("No other active jobs, resetting reserved quota from %sG to 0G", format_gb(entry.reserved))
    cleared = replace(entry, reserved=0.0)
    ledger.write_entry(index, cleared)
    return cleared


class JobSession:
    def __init__(
        self,
        settings: Settings,
        workdir: str = ".",
        capacity_probe: Optional[CapacityProbe] = None,
        usage_probe: Optional[UsageProbe] = None,
        job_lister: Optional[JobLister] = None,
        identity_probe: Optional[IdentityProbe] = None,
        start_time_probe: Optional[Callable[[int], Optional[str]]] = None,
    ):
        self.settings = settings
        self.workdir = workdir
        self.store = LedgerStore(settings.require_md_path())
        self.capacity_probe = capacity_probe or md_probes.capacity_probe
        self.usage_probe = usage_probe or md_probes.usage_probe
        self.job_lister = job_lister or self._default_job_lister
        self.identity_probe = identity_probe or self._default_identity
        self.start_time_probe = start_time_probe or md_probes.process_start_time
        self.state = ReservationState.UNRESERVED
        self.reservation: Optional[JobReservation] = None
        self.logger = IdentityAdapter(get_logger(__name__))
        self._disk_id: Optional[str] = None
        self._children: List[TrackedProcess] = []
        self._killed = False

    def _default_job_lister(self, node: str) -> Set[str]:
        return md_probes.active_jobs(node, self.settings.account, md_probes.current_user())

    def _default_identity(self, path: str) -> str:
        return md_probes.disk_identity(path, self.settings.node_suffix_len)

    @property
    def disk_id(self) -> str:
        if self._disk_id is None:
            self._disk_id = self.identity_probe(self.workdir)
            self.logger.bind(self._disk_id)
        return self._disk_id

    def _probe_capacity(self) -> float:
        return self.capacity_probe(self.workdir).capacity

    def _checked_entry(self, ledger: LedgerSession, index: int) -> LedgerEntry:
        """Read this disk's entry; a malformed line is reset to zero and re-raised."""

        try:
            return ledger.read_entry(index)
        except LedgerFormatError:
            self.logger.error("Malformed ledger line %d, setting reserved quota to 0G", index)
            ledger.set_quota(index, self.disk_id, 0.0, self._probe_capacity())
            raise

    def resume(self, quota: Union[str, float, None]) -> JobReservation:
        """Adopt a reservation made by an earlier ``start`` (another process)."""

        this_quota = _quota_gb(quota)
        self.reservation = JobReservation(disk_id=self.disk_id, this_quota=this_quota)
        self.state = ReservationState.RESERVED
        return self.reservation

    def start(self, quota: Union[str, float, None], on_failure: Optional[Callable[[], None]] = None) -> JobReservation:
        """Reserve ``quota`` on this disk's ledger line.

        Raises QuotaExceeded (after calling ``on_failure``) when the disk has
        no headroom, LockTimeout when the ledger stays locked and
        LedgerFormatError when this disk's line was corrupt.
        """

        if self.state is not ReservationState.UNRESERVED:
            raise RuntimeError(f"Session already {self.state.value}")

        this_quota = _quota_gb(quota)
        disk_id = self.disk_id
        reservation = JobReservation(disk_id=disk_id, this_quota=this_quota)
        self.logger.info("Reserving %sG in %s", format_gb(this_quota), self.store.path)

        try:
            with self.store.exclusive(self.settings.lock_timeout, disk_id) as ledger:
                index = ledger.find_or_create_line(disk_id, self._probe_capacity)
                entry = self._checked_entry(ledger, index)
                entry = collect_garbage(ledger, index, entry, self.settings.job_id, self.job_lister, self.logger)
                new_quota = apply_delta(entry.reserved, this_quota, entry.capacity, disk_id)
                ledger.write_entry(index, replace(entry, reserved=new_quota))
        except QuotaExceeded as exc:
            self.logger.error("Cannot reserve %sG: %s", format_gb(this_quota), exc.message)
            if on_failure is not None:
                on_failure()
            raise

        self.reservation = reservation
        self.state = ReservationState.RESERVED
        self.logger.info("Reserved %sG, disk now holds %sG of %sG", format_gb(this_quota), format_gb(new_quota), format_gb(entry.capacity))

        self.check_disk()
        return reservation

    def check_disk(self) -> float:
        """Sample current usage and raise QuotaExceeded if it is over quota."""

        if self.reservation is None:
            raise RuntimeError("No reservation to check")
        self.reservation.this_disk_usage = self.usage_probe(self.workdir)
        self.reservation.ensure_within_quota()
        return self.reservation.this_disk_usage

    def execute(self, command: Union[str, Sequence[str], None], interval: Optional[float] = None, shell: bool = False) -> MonitorResult:
        """Run ``command`` under a UsageMonitor and wait for both to finish."""

        if self.reservation is None:
            raise RuntimeError("execute() needs a reservation, call start() first")
        if not command:
            command = DEFAULT_COMMAND
        if interval is None or interval <= 0:
            interval = self.settings.poll_interval

        target = TrackedProcess.spawn(command, cwd=self.workdir, shell=shell, start_time_probe=self.start_time_probe)
        self._children.append(target)
        monitor = UsageMonitor(self.reservation, target, interval, self.usage_probe, path=self.workdir)
        monitor.start()
        self.logger.info("Command %r running as pid %d, checking every %gs", command, target.pid, interval)

        try:
            returncode = target.wait()
        except BaseException:
            target.kill()
            raise
        finally:
            monitor.wake()
            result = monitor.join()
            self._children.remove(target)

        self.logger.info("Command %d exited with %d (%s)", target.pid, returncode, result.outcome.value)
        return replace(result, returncode=returncode)

    def end(self) -> None:
        """Release this job's quota, then reconcile and prune the ledger.

        Best effort: lock timeouts and ledger damage are logged, not raised.
        """

        if self.state is not ReservationState.RESERVED or self.reservation is None:
            return
        self.state = ReservationState.RELEASED

        if not self.store.exists():
            self.logger.warning("Ledger %s is missing, nothing to release", self.store.path)
            return

        this_quota = self.reservation.this_quota
        try:
            with self.store.exclusive(self.settings.lock_timeout, self.disk_id) as ledger:
                index = ledger.find_or_create_line(self.disk_id, self._probe_capacity)
                try:
                    entry = self._checked_entry(ledger, index)
                    new_quota = apply_delta(entry.reserved, -this_quota, entry.capacity, self.disk_id)
                    entry = replace(entry, reserved=new_quota)
                    ledger.write_entry(index, entry)
                    self.logger.info("Released %sG, disk now holds %sG", format_gb(this_quota), format_gb(new_quota))
                except (LedgerFormatError, QuotaExceeded) as exc:
                    self.logger.error("Release of %sG failed: %s", format_gb(this_quota), exc.message)
                    entry = ledger.read_entry(index)

                collect_garbage(ledger, index, entry, self.settings.job_id, self.job_lister, self.logger)

                removed = ledger.prune()
                if removed:
                    self.logger.info("Pruned %d duplicate ledger lines", removed)
        except LockTimeout as exc:
            self.logger.warning("Quota of %sG left reserved: %s", format_gb(this_quota), exc.message)
        except MindDiskError as exc:
            self.logger.error("Release failed: %s", exc.message)

    def kill(self) -> None:
        """Release, SIGKILL every running command and terminate the process group."""

        if self._killed:
            return
        self._killed = True

        self.end()
        for child in list(self._children):
            child.kill()

        if self.settings.kill_group:
            self.logger.warning("Terminating process group %d", os.getpgrp())
            signal.signal(signal.SIGTERM, signal.SIG_DFL)
            os.killpg(os.getpgrp(), signal.SIGTERM)
