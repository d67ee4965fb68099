from __future__ import annotations

from typing import Dict

from .quota import UnknownMount

SCRATCH_PREFIX = "/sc"

# Mount prefixes shared by every node; each maps to a single ledger line.
SHARED_MOUNTS: Dict[str, str] = {
    "/bl": "BLUE",
    "/re": "RED",
    "/ho": "HOME",
}

SHARED_IDENTITIES = frozenset(SHARED_MOUNTS.values())

PREFIX_LENGTH = 3
DEFAULT_NODE_SUFFIX_LEN = 6


def strip_node_suffix(host: str, suffix_len: int = DEFAULT_NODE_SUFFIX_LEN) -> str:
    if suffix_len <= 0:
        return host
    return host[:-suffix_len]


def classify_mount(host: str, mount_point: str, suffix_len: int = DEFAULT_NODE_SUFFIX_LEN) -> str:
    """Map a host and mount point to the disk identity used as ledger key."""

    prefix = mount_point[:PREFIX_LENGTH]
    if prefix == SCRATCH_PREFIX:
        disk_id = strip_node_suffix(host, suffix_len)
        if not disk_id:
            raise UnknownMount(f"Host name {host!r} is too short to derive a node identity")
        return disk_id
    if prefix in SHARED_MOUNTS:
        return SHARED_MOUNTS[prefix]
    raise UnknownMount(f"No quota policy for mount {mount_point!r} on host {host!r}")


def is_shared(disk_id: str) -> bool:
    return disk_id in SHARED_IDENTITIES
