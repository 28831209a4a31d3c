"""Root logger setup for the scanfuse services.

``python -m services.fusion.server`` calls ``setup_logging(server_name="fusion")``
once before building the app; records go to stderr and to a rotating
``<log_dir>/fusion.log``.
"""

import logging
import sys
from logging.handlers import RotatingFileHandler
from pathlib import Path

LOG_FORMAT = "%(asctime)s [%(levelname)s] %(name)s: %(message)s"
LOG_MAX_BYTES = 5 * 1024 * 1024
LOG_BACKUPS = 3

DEFAULT_LOG_DIR = Path(__file__).resolve().parents[2] / "logs"

# Mesh export and bus reconnects are verbose at INFO
_QUIET_UNLESS_DEBUG = ("trimesh", "redis", "uvicorn.access")


def setup_logging(
    *,
    server_name: str,
    log_dir: str | Path | None = None,
    debug: bool = False,
) -> Path:
    """Send service logs to stderr and ``<log_dir>/<server_name>.log``.

    Returns the log file path.
    """
    log_path = Path(log_dir) if log_dir else DEFAULT_LOG_DIR
    log_path.mkdir(parents=True, exist_ok=True)
    log_file = log_path / f"{server_name}.log"

    logging.basicConfig(
        level=logging.DEBUG if debug else logging.INFO,
        format=LOG_FORMAT,
        handlers=[
            logging.StreamHandler(sys.stderr),
            RotatingFileHandler(log_file, maxBytes=LOG_MAX_BYTES, backupCount=LOG_BACKUPS),
        ],
        force=True,
    )
    third_party_level = logging.DEBUG if debug else logging.WARNING
    for name in _QUIET_UNLESS_DEBUG:
        logging.getLogger(name).setLevel(third_party_level)

    logging.getLogger(__name__).info("%s logging to %s", server_name, log_file)
    return log_file
