"""Logging setup shared by the CLI and the API."""
import logging

from regularize.config import config

_LOG_CONFIGURED = False


def setup_logging(level: str | None = None) -> None:
    """Configure root logging once."""
    global _LOG_CONFIGURED
    if _LOG_CONFIGURED:
        return

    log_level = (level or config.LOG_LEVEL).upper()
    logging.basicConfig(
        level=getattr(logging, log_level, logging.INFO),
        format="%(asctime)s %(levelname)s [%(name)s] %(message)s",
    )
    # httpx logs every request at INFO, including the CAPTCHA poll loop
    logging.getLogger("httpx").setLevel(logging.WARNING)
    logging.getLogger("httpcore").setLevel(logging.WARNING)
    _LOG_CONFIGURED = True
