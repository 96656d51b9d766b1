from __future__ import annotations

import logging

from .config import ServiceConfig

PACKAGE_LOGGER = "dictation_backend"
_FORMAT = "%(asctime)s - %(name)s - %(levelname)s - %(message)s"


def configure_logging(cfg: ServiceConfig) -> logging.Logger:
    """Apply DICTATION_LOG_LEVEL to the package logger; attach a stream handler once."""
    level = getattr(logging, (cfg.DICTATION_LOG_LEVEL or "INFO").strip().upper(), logging.INFO)
    if not isinstance(level, int):
        level = logging.INFO
    pkg_logger = logging.getLogger(PACKAGE_LOGGER)
    pkg_logger.setLevel(level)
    if not any(getattr(h, "_dictation_handler", False) for h in pkg_logger.handlers):
        handler = logging.StreamHandler()
        handler.setFormatter(logging.Formatter(_FORMAT))
        handler._dictation_handler = True  # type: ignore[attr-defined]
        pkg_logger.addHandler(handler)
    for handler in pkg_logger.handlers:
        handler.setLevel(level)
    return pkg_logger
