from __future__ import annotations

import math
from dataclasses import dataclass
from typing import Optional


class MindDiskError(RuntimeError):
    """Base class for quota ledger failures."""

    def __init__(self, message: str, disk_id: Optional[str] = None):
        super().__init__(message)
        self.disk_id = disk_id

    @property
    def message(self) -> str:
        return super().__str__()

    def __str__(self) -> str:
        if self.disk_id:
            return f"[{self.disk_id}] {self.message}"
        return self.message


class InvalidUnit(MindDiskError, ValueError):
    """Raised when a size string does not end in a known unit."""


class UnknownMount(MindDiskError):
    """Raised when the working directory sits on an unclassified mount."""


class ConfigurationError(MindDiskError):
    """Raised when required settings are missing."""


class LockTimeout(MindDiskError):
    """Raised when the ledger lock cannot be acquired in time."""


class LedgerCorrupt(MindDiskError):
    """Raised when the ledger does not hold what was just written to it."""


class LedgerFormatError(LedgerCorrupt):
    """Raised when a ledger line does not have exactly three fields."""


class QuotaExceeded(MindDiskError):
    """Raised when a reservation or the job's usage would pass the limit."""


class ProbeFailure(MindDiskError):
    """Raised when df, du, squeue or /proc cannot be queried."""


UNIT_FACTORS = {
    "K": 1e-6,
    "M": 1e-3,
    "G": 1.0,
    "T": 1e3,
    "P": 1e6,
}

# Ledger values are kept at KB precision.
_DECIMALS = 6


def parse_size(text: Optional[str]) -> float:
    """Convert a size such as ``100G`` or ``1.5T`` to gigabytes.

    An empty or missing string is a zero quota.
    """

    if text is None:
        return 0.0
    text = text.strip()
    if not text:
        return 0.0

    unit = text[-1]
    factor = UNIT_FACTORS.get(unit)
    if factor is None:
        raise InvalidUnit(f"Bad unit {unit!r} in size {text!r}, expected one of {''.join(UNIT_FACTORS)}")

    magnitude = text[:-1]
    try:
        value = float(magnitude)
    except ValueError as exc:
        raise InvalidUnit(f"Bad magnitude {magnitude!r} in size {text!r}") from exc
    if value < 0 or not math.isfinite(value):
        raise InvalidUnit(f"Size must be a finite, non-negative number: {text!r}")
    return normalize_gb(value * factor)


def normalize_gb(value: float) -> float:
    return round(float(value), _DECIMALS)


def format_gb(value: float) -> str:
    """Render a GB amount the way it is stored in the ledger."""

    value = normalize_gb(value)
    if value.is_integer():
        return str(int(value))
    return repr(value)


def apply_delta(current: float, delta: float, capacity: float, disk_id: Optional[str] = None) -> float:
    """Return the new reserved quota after adding ``delta``.

    The result is clamped at zero. Going over ``capacity`` raises
    :class:`QuotaExceeded` and leaves the caller's state alone.
    """

    new_quota = max(0.0, normalize_gb(current + delta))
    if new_quota > capacity:
        raise QuotaExceeded(
            f"Insufficient disk for quota: capacity {format_gb(capacity)}G, "
            f"reserved would be {format_gb(new_quota)}G",
            disk_id=disk_id,
        )
    return new_quota


@dataclass
class JobReservation:
    """Quota held by this job process."""

    disk_id: str
    this_quota: float = 0.0
    this_disk_usage: float = 0.0

    def over_quota(self) -> bool:
        return self.this_disk_usage > self.this_quota

    def ensure_within_quota(self) -> None:
        if self.over_quota():
            raise QuotaExceeded(
                f"This process has exceeded its disk quota: usage {format_gb(self.this_disk_usage)}G, "
                f"quota {format_gb(self.this_quota)}G",
                disk_id=self.disk_id,
            )
