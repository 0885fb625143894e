import logging
import coloredlogs
from pathlib import Path
from typing import Optional, Tuple

BUILD_LOGS_DIR_NAME = "build-logs"
LOG_FILE_TIME_FORMAT = "%B-%d_%H-%M-%S"

LOG_LEVELS = {
    "debug": logging.DEBUG,
    "info": logging.INFO,
    "warning": logging.WARNING,
    "error": logging.ERROR,
}


def setup_global_logger():
    logger = logging.getLogger("fdawg")
    logger.setLevel(logging.DEBUG)

    # coloredlogs installs its own console handler on 'logger'.
    # 'level' is the threshold for that handler only.
    coloredlogs.install(level='DEBUG', logger=logger, fmt='%(asctime)s %(name)s %(levelname)s %(message)s')
    return logger


def set_log_level(level_name: str):
    """Applies a config-style level name ('debug', 'info', ...) to the engine logger."""
    level = LOG_LEVELS.get((level_name or "info").lower(), logging.INFO)
    logger.setLevel(level)
    return level


def get_build_logger(log_dir: Optional[Path], started_at) -> Tuple[logging.Logger, Optional[logging.FileHandler], Optional[Path]]:
    """Returns the run logger plus the file handler attached for this run, if any.

    Records still propagate to the console handler on 'fdawg'. The caller must
    pass the handler to close_build_logger() when the run ends.
    """
    build_logger = logging.getLogger("fdawg.build")
    if log_dir is None:
        return build_logger, None, None

    try:
        log_dir.mkdir(parents=True, exist_ok=True)
    except OSError as e:
        logger.warning(f"Failed to create log directory {log_dir}: {e}")
        return build_logger, None, None

    log_file_path = log_dir / f"{started_at.strftime(LOG_FILE_TIME_FORMAT)}.log"
    fh = logging.FileHandler(log_file_path, encoding="utf-8")
    fh.setLevel(logging.DEBUG)
    formatter = logging.Formatter('%(asctime)s - %(levelname)s - %(message)s')
    fh.setFormatter(formatter)
    build_logger.addHandler(fh)
    return build_logger, fh, log_file_path


def close_build_logger(build_logger: logging.Logger, handler: Optional[logging.FileHandler]):
    if handler is None:
        return
    build_logger.removeHandler(handler)
    handler.close()


# Initialize global logger
logger = setup_global_logger()
