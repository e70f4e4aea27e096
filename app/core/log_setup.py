"""
Logging setup for the host process (writes to ~/Library/Logs/FrameUploader/).
"""

import logging
from pathlib import Path

from app.core.constants import LOG_DIR, APP_NAME

LOG_FORMAT = "%(asctime)s [%(levelname)s] %(name)s: %(message)s"


def configure_logging(log_dir: Path | None = None, level: int = logging.INFO) -> Path:
    """
    Route all records to <log_dir>/app.log.
    Returns the log file path so the host can show it in crash dialogs.
    """
    log_dir = log_dir or LOG_DIR
    log_dir.mkdir(parents=True, exist_ok=True)
    log_file = log_dir / "app.log"

    logging.basicConfig(
        level=level,
        format=LOG_FORMAT,
        handlers=[
            logging.FileHandler(log_file, encoding="utf-8"),
        ],
        force=True,
    )
    logging.getLogger(APP_NAME).info("Logging to %s", log_file)
    return log_file
