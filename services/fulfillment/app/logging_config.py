"""
Fulfillment Service — Logging

One place configures logging for the whole process. Modules keep using
logging.getLogger(__name__); this only sets the format, the level and the
stdout handler (container friendly), and quiets chatty libraries.
"""

import logging
import sys

LOG_FORMAT = "%(asctime)s - %(levelname)s - [PID:%(process)d] - %(name)s - %(message)s"


def setup_logging(level: str = "INFO") -> None:
    logging.basicConfig(
        level=getattr(logging, level.upper(), logging.INFO),
        format=LOG_FORMAT,
        handlers=[logging.StreamHandler(sys.stdout)],
        force=True,
    )

    # Reduce verbosity from external libraries
    for noisy in ("httpx", "httpcore", "sqlalchemy.engine", "aiosqlite"):
        logging.getLogger(noisy).setLevel(logging.WARNING)
