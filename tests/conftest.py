from __future__ import annotations

from pathlib import Path
from typing import Callable, Dict, List, Optional, Set

import pytest

from md_probes import FsCapacity
from md_session import JobSession
from md_utils import LedgerStore, ProbeFailure, Settings


class FakeMachine:
    """Stand-in for df, du and squeue."""

    def __init__(self, capacity: float = 100.0, usage: float = 0.0, jobs: Optional[Set[str]] = None):
        self.capacity = capacity
        self.usage = usage
        self.jobs: Optional[Set[str]] = jobs
        self.usage_calls = 0
        self.job_queries: List[str] = []

    def capacity_probe(self, path: str) -> FsCapacity:
        return FsCapacity(capacity=self.capacity, available=self.capacity, mount_point="/scratch/local")

    def usage_probe(self, path: str) -> float:
        self.usage_calls += 1
        return self.usage

    def job_lister(self, node: str) -> Set[str]:
        self.job_queries.append(node)
        if self.jobs is None:
            raise ProbeFailure("squeue not available", disk_id=node)
        return set(self.jobs)


@pytest.fixture
def md_path(tmp_path: Path) -> Path:
    return tmp_path / "mdquota"


@pytest.fixture
def settings(md_path: Path) -> Settings:
    return Settings(md_path=md_path, lock_timeout=5.0, poll_interval=0.05, kill_group=False, job_id="1001")


@pytest.fixture
def store(md_path: Path) -> LedgerStore:
    return LedgerStore(md_path)


@pytest.fixture
def machine() -> FakeMachine:
    # another job keeps the node busy unless a test says otherwise
    return FakeMachine(jobs={"1001", "2002"})


@pytest.fixture
def make_session(settings: Settings, machine: FakeMachine, tmp_path: Path) -> Callable[..., JobSession]:
    workdir = tmp_path / "work"
    workdir.mkdir()

    def _make(disk_id: str = "NODE1", session_settings: Optional[Settings] = None, **overrides) -> JobSession:
        kwargs: Dict = dict(
            workdir=str(workdir),
            capacity_probe=machine.capacity_probe,
            usage_probe=machine.usage_probe,
            job_lister=machine.job_lister,
            identity_probe=lambda path: disk_id,
        )
        kwargs.update(overrides)
        return JobSession(session_settings or settings, **kwargs)

    return _make


def write_ledger(store: LedgerStore, *lines: str) -> None:
    store.root.mkdir(parents=True, exist_ok=True)
    store.path.write_text("".join(f"{line}\n" for line in lines), encoding="utf-8")


def ledger_lines(store: LedgerStore) -> List[str]:
    return store.path.read_text(encoding="utf-8").splitlines()
