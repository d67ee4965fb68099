"""Shared utility modules for the mind-disk quota ledger."""

from .config import Settings
from .ledger import LedgerEntry, LedgerSession, LedgerStore, prune_lines
from .logging import IdentityAdapter, get_logger, setup_logging
from .mounts import SHARED_IDENTITIES, classify_mount, is_shared
from .quota import (
    ConfigurationError,
    InvalidUnit,
    JobReservation,
    LedgerCorrupt,
    LedgerFormatError,
    LockTimeout,
    MindDiskError,
    ProbeFailure,
    QuotaExceeded,
    UnknownMount,
    apply_delta,
    format_gb,
    parse_size,
)

__all__ = [
    "Settings",
    "LedgerEntry",
    "LedgerSession",
    "LedgerStore",
    "prune_lines",
    "IdentityAdapter",
    "get_logger",
    "setup_logging",
    "SHARED_IDENTITIES",
    "classify_mount",
    "is_shared",
    "ConfigurationError",
    "InvalidUnit",
    "JobReservation",
    "LedgerCorrupt",
    "LedgerFormatError",
    "LockTimeout",
    "MindDiskError",
    "ProbeFailure",
    "QuotaExceeded",
    "UnknownMount",
    "apply_delta",
    "format_gb",
    "parse_size",
]
