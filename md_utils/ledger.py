from __future__ import annotations

import fcntl
import os
import stat
import tempfile
import time
from contextlib import contextmanager
from dataclasses import dataclass
from pathlib import Path
from typing import Callable, Iterator, List, Optional, Tuple, Union

from .quota import LedgerCorrupt, LedgerFormatError, LockTimeout, format_gb

LEDGER_FILENAME = "mdquota.txt"
LOCK_SUFFIX = ".lock"
FIELD_COUNT = 3
DEFAULT_LOCK_TIMEOUT = 100.0
LOCK_POLL_SECONDS = 0.1


def leading_token(line: str) -> str:
    fields = line.split()
    return fields[0] if fields else ""


def prune_lines(lines: List[str]) -> List[str]:
    """Keep the first line for each leading token, in original order.

    Tokens are compared as raw strings. Blank lines are dropped.
    """

    seen = set()
    kept: List[str] = []
    for line in lines:
        token = leading_token(line)
        if not token or token in seen:
            continue
        seen.add(token)
        kept.append(line)
    return kept


@dataclass(frozen=True)
class LedgerEntry:
    """One parsed ledger line: identity, capacity and reserved quota in GB."""

    disk_id: str
    capacity: float
    reserved: float

    @classmethod
    def load(cls, line: str) -> "LedgerEntry":
        fields = line.split()
        if len(fields) != FIELD_COUNT:
            raise LedgerFormatError(
                f"Expected {FIELD_COUNT} fields, found {len(fields)} in {line!r}",
                disk_id=fields[0] if fields else None,
            )
        try:
            capacity = float(fields[1])
            reserved = float(fields[2])
        except ValueError as exc:
            raise LedgerFormatError(f"Non-numeric field in {line!r}", disk_id=fields[0]) from exc
        return cls(disk_id=fields[0], capacity=capacity, reserved=reserved)

    def dump(self) -> str:
        return f"{self.disk_id} {format_gb(self.capacity)} {format_gb(self.reserved)}"


class LedgerStore:
    """Plain-text quota ledger shared by every job through advisory locking.

    The lock is taken on a sibling ``.lock`` file so that rewriting the
    ledger (temporary file plus rename) never swaps the locked inode.
    """

    def __init__(self, root: Union[str, os.PathLike[str]], filename: str = LEDGER_FILENAME):
        self.root = Path(root)
        self.path = self.root / filename
        self.lock_path = self.path.with_name(self.path.name + LOCK_SUFFIX)

    def exists(self) -> bool:
        return self.path.is_file()

    def read_text(self) -> str:
        if not self.path.exists():
            return ""
        with self.path.open("r", encoding="utf-8", errors="replace", newline="") as fh:
            return fh.read()

    def read_lines(self) -> List[str]:
        return self.read_text().splitlines()

    def write_lines(self, lines: List[str]) -> None:
        self.write_text("".join(f"{line}\n" for line in lines))

    def write_text(self, content: str) -> None:
        fd, tmp_name = tempfile.mkstemp(prefix=f".{self.path.name}.", dir=str(self.root))
        try:
            with os.fdopen(fd, "w", encoding="utf-8") as fh:
                # mkstemp creates 0600; keep the ledger readable by the other jobs
                os.fchmod(fh.fileno(), self._file_mode())
                fh.write(content)
                fh.flush()
                os.fsync(fh.fileno())
            os.replace(tmp_name, self.path)
        except BaseException:
            if os.path.exists(tmp_name):
                os.unlink(tmp_name)
            raise

    def _file_mode(self) -> int:
        try:
            return stat.S_IMODE(self.path.stat().st_mode)
        except FileNotFoundError:
            umask = os.umask(0)
            os.umask(umask)
            return 0o666 & ~umask

    def entries(self) -> List[Tuple[int, str, Optional[LedgerEntry]]]:
        """Return ``(index, raw line, entry or None)`` without taking the lock."""

        rows: List[Tuple[int, str, Optional[LedgerEntry]]] = []
        for index, line in enumerate(self.read_lines(), 1):
            try:
                entry: Optional[LedgerEntry] = LedgerEntry.load(line)
            except LedgerFormatError:
                entry = None
            rows.append((index, line, entry))
        return rows

    @contextmanager
    def exclusive(self, timeout: Optional[float] = DEFAULT_LOCK_TIMEOUT, disk_id: Optional[str] = None) -> Iterator["LedgerSession"]:
        """Hold the ledger's exclusive lock for the duration of the block.

        ``timeout`` of ``None`` waits forever; otherwise :class:`LockTimeout`
        is raised once it has elapsed.
        """

        self.root.mkdir(parents=True, exist_ok=True)
        with open(self.lock_path, "a") as lock_fh:
            _acquire(lock_fh, timeout, self.path, disk_id)
            session = LedgerSession(self)
            try:
                if not self.path.exists():
                    self.path.touch()
                yield session
            finally:
                session.active = False
                fcntl.flock(lock_fh, fcntl.LOCK_UN)


def _acquire(lock_fh, timeout: Optional[float], path: Path, disk_id: Optional[str]) -> None:
    if timeout is None:
        fcntl.flock(lock_fh, fcntl.LOCK_EX)
        return

    deadline = time.monotonic() + max(0.0, timeout)
    while True:
        try:
            fcntl.flock(lock_fh, fcntl.LOCK_EX | fcntl.LOCK_NB)
            return
        except BlockingIOError:
            remaining = deadline - time.monotonic()
            if remaining <= 0:
                raise LockTimeout(f"Could not lock {path} within {timeout:g}s", disk_id=disk_id)
            time.sleep(min(LOCK_POLL_SECONDS, remaining))


class LedgerSession:
    """Ledger operations that are only valid while the exclusive lock is held.

    Nothing is cached: every call rereads the file.
    """

    def __init__(self, store: LedgerStore):
        self.store = store
        self.active = True

    def _check_active(self) -> None:
        if not self.active:
            raise RuntimeError("Ledger session used after its lock was released")

    def lines(self) -> List[str]:
        self._check_active()
        return self.store.read_lines()

    def find_line(self, disk_id: str) -> Optional[int]:
        for index, line in enumerate(self.lines(), 1):
            if leading_token(line) == disk_id:
                return index
        return None

    def find_or_create_line(self, disk_id: str, capacity_probe: Callable[[], float]) -> int:
        """Return the 1-based index of ``disk_id``'s line, appending it if absent."""

        index = self.find_line(disk_id)
        if index is not None:
            return index

        entry = LedgerEntry(disk_id=disk_id, capacity=capacity_probe(), reserved=0.0)
        self.store.write_lines(self.lines() + [entry.dump()])

        index = self.find_line(disk_id)
        if index is None:
            raise LedgerCorrupt(f"Line for {disk_id} missing right after creation", disk_id=disk_id)
        return index

    def read_line(self, index: int) -> str:
        lines = self.lines()
        if not 1 <= index <= len(lines):
            raise LedgerCorrupt(f"Line {index} out of range, ledger has {len(lines)} lines")
        return lines[index - 1]

    def read_entry(self, index: int) -> LedgerEntry:
        return LedgerEntry.load(self.read_line(index))

    def replace_line(self, index: int, content: str) -> None:
        """Overwrite line ``index`` and keep every other line verbatim."""

        if len(content.split()) != FIELD_COUNT:
            raise LedgerFormatError(
                f"Refusing to write {content!r} to line {index}: expected {FIELD_COUNT} fields",
                disk_id=leading_token(content) or None,
            )
        self._check_active()
        raw = self.store.read_text().splitlines(keepends=True)
        if not 1 <= index <= len(raw):
            raise LedgerCorrupt(f"Line {index} out of range, ledger has {len(raw)} lines")
        old = raw[index - 1]
        raw[index - 1] = content + old[len(old.rstrip("\r\n")):]
        self.store.write_text("".join(raw))

    def write_entry(self, index: int, entry: LedgerEntry) -> None:
        self.replace_line(index, entry.dump())

    def set_quota(self, index: int, disk_id: str, quota: float, capacity: float) -> None:
        """Rewrite the line without checking the old content or the capacity."""

        self.write_entry(index, LedgerEntry(disk_id=disk_id, capacity=capacity, reserved=quota))

    def prune(self) -> int:
        """Drop duplicate identity lines; return how many lines went away."""

        lines = self.lines()
        kept = prune_lines(lines)
        if kept != lines:
            self.store.write_lines(kept)
        return len(lines) - len(kept)
