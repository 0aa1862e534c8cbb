import logging
import os
import sys

from config.settings import LOG_FILE

os.makedirs(os.path.dirname(LOG_FILE), exist_ok=True)

LOG_FORMAT = "%(asctime)s [%(levelname)s] %(message)s"

logging.basicConfig(
    filename=str(LOG_FILE),
    level=logging.INFO,
    format=LOG_FORMAT,
)

logger = logging.getLogger("vm-provisioner")


def enable_console_logging() -> None:
    """
    Mirror events to stderr as well as the log file.

    Used by the CLI, where the operator watches provisioning output live.
    """
    if any(getattr(h, "_vm_console", False) for h in logger.handlers):
        return
    handler = logging.StreamHandler(sys.stderr)
    handler.setFormatter(logging.Formatter(LOG_FORMAT))
    handler._vm_console = True  # type: ignore[attr-defined]
    logger.addHandler(handler)


def log_event(message: str) -> None:
    """
    Write a single line event to the main vm-provisioner.log file.
    """
    logger.info(message)


def log_error(message: str) -> None:
    logger.error(message)
