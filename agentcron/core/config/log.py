"""Loguru sink setup."""

from __future__ import annotations

import sys

from loguru import logger

from agentcron.core.config.schema import LoggingConfig


def setup_logging(cfg: LoggingConfig) -> None:
    """Replace loguru's default sink with the configured level (+ optional file)."""
    logger.remove()
    logger.add(sys.stderr, level=cfg.level.upper())
    if cfg.file:
        logger.add(
            cfg.file,
            level=cfg.level.upper(),
            rotation=cfg.rotation,
            retention=cfg.retention,
            enqueue=True,
        )
    logger.debug(f"Logging configured (level={cfg.level})")
