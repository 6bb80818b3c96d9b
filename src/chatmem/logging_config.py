"""Process-wide logging setup."""

from __future__ import annotations

import logging
import sys

from chatmem.config import LoggingConfig

_NOISY_LOGGERS = ("httpx", "httpcore", "faiss")


def setup_logging(config: LoggingConfig | None = None) -> None:
    """Configure the root logger once for CLI and server entry points.

    Args:
        config: logging section, defaults read from the environment if None
    """
    cfg = config or LoggingConfig()
    level = getattr(logging, cfg.level.upper(), logging.INFO)
    logging.basicConfig(
        level=level,
        format=cfg.format,
        handlers=[logging.StreamHandler(sys.stderr)],
    )
    for name in _NOISY_LOGGERS:
        logging.getLogger(name).setLevel(max(level, logging.WARNING))
