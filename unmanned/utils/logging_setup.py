from __future__ import annotations

import logging
import logging.handlers
import os
from typing import Optional

LOG_FORMAT = "%(asctime)s %(levelname)s [%(name)s] %(message)s"
LOG_DATEFMT = "%Y-%m-%d %H:%M:%S"
LOG_FILENAME = "app.log"
MAX_LOG_BYTES = 2 * 1024 * 1024
LOG_BACKUPS = 3


def setup_logging(level: str = "INFO", to_file: bool = True, log_dir: Optional[str] = None) -> None:
    """Configure the root logger for the driver.

    Console output always; with ``to_file`` also a rotating ``app.log`` under ``log_dir``
    (default ``./logs``). Calling it again replaces the previous handlers.
    """
    lvl = getattr(logging, str(level).upper(), logging.INFO)
    root = logging.getLogger()
    root.setLevel(lvl)
    for handler in list(root.handlers):
        root.removeHandler(handler)
        handler.close()

    fmt = logging.Formatter(fmt=LOG_FORMAT, datefmt=LOG_DATEFMT)
    handlers: list[logging.Handler] = [logging.StreamHandler()]
    if to_file:
        log_dir = log_dir or os.path.join(os.getcwd(), "logs")
        os.makedirs(log_dir, exist_ok=True)
        handlers.append(
            logging.handlers.RotatingFileHandler(
                os.path.join(log_dir, LOG_FILENAME), maxBytes=MAX_LOG_BYTES, backupCount=LOG_BACKUPS
            )
        )
    for handler in handlers:
        handler.setLevel(lvl)
        handler.setFormatter(fmt)
        root.addHandler(handler)

    # pymavlink chatter stays at warning unless we are debugging
    if lvl > logging.DEBUG:
        logging.getLogger("pymavlink").setLevel(logging.WARNING)
