from __future__ import annotations

import logging
import os
from typing import Any, MutableMapping, Optional, Tuple, Union

_DEFAULT_FORMAT = "%(asctime)s | %(levelname)s | %(name)s[%(process)d] | %(message)s"
_DEFAULT_DATEFMT = "%Y-%m-%dT%H:%M:%S"


def setup_logging(level: Optional[str] = None, fmt: str = _DEFAULT_FORMAT, datefmt: str = _DEFAULT_DATEFMT) -> None:
    """Configure root logger.

    Respect `LOG_LEVEL` env var when level is not supplied.
    """

    log_level = (level or os.getenv("LOG_LEVEL", "INFO")).upper()
    logging.basicConfig(level=getattr(logging, log_level, logging.INFO), format=fmt, datefmt=datefmt, force=True)


class IdentityAdapter(logging.LoggerAdapter):
    """Prefix records with the disk identity once it is known."""

    def __init__(self, logger: logging.Logger, disk_id: Optional[str] = None):
        super().__init__(logger, {"disk_id": disk_id})

    @property
    def disk_id(self) -> Optional[str]:
        return self.extra.get("disk_id")  # type: ignore[union-attr]

    def bind(self, disk_id: Optional[str]) -> None:
        self.extra = {"disk_id": disk_id}

    def process(self, msg: Any, kwargs: MutableMapping[str, Any]) -> Tuple[Any, MutableMapping[str, Any]]:
        if self.disk_id:
            return f"[{self.disk_id}] {msg}", kwargs
        return msg, kwargs


def get_logger(name: Optional[str] = None, disk_id: Optional[str] = None) -> Union[logging.Logger, IdentityAdapter]:
    """Return module-specific logger, tagged with ``disk_id`` when given."""

    if not logging.getLogger().handlers:
        # Auto-setup if not configured.
        setup_logging()

    logger = logging.getLogger(name)
    if disk_id is None:
        return logger
    return IdentityAdapter(logger, disk_id)
