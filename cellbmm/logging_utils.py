import logging
import os
from logging.handlers import RotatingFileHandler
from typing import Optional


LOGGER_NAME = "cellbmm"
LOG_FORMAT = "%(asctime)s [%(levelname)s] %(name)s%(frame_tag)s - %(message)s"
LOG_NAME = "cellbmm.log"
ERROR_LOG_NAME = "cellbmm.error.log"


class FrameTagFilter(logging.Filter):
    """Renders the `frame` extra of a record as ` [frame N]`; empty for records outside a frame."""

    def filter(self, record: logging.LogRecord) -> bool:
        frame = getattr(record, "frame", None)
        record.frame_tag = "" if frame is None else f" [frame {frame}]"
        return True


def frame_logger(frame_id: Optional[int]) -> logging.LoggerAdapter:
    """Package logger that tags every record with `frame_id`."""
    return logging.LoggerAdapter(logging.getLogger(LOGGER_NAME), {"frame": frame_id})


def _add_handler(logger: logging.Logger, handler: logging.Handler, level: int) -> None:
    handler.setFormatter(logging.Formatter(LOG_FORMAT))
    handler.addFilter(FrameTagFilter())
    handler.setLevel(level)
    logger.addHandler(handler)


def _own_handlers(logger: logging.Logger) -> list:
    return [h for h in logger.handlers if any(isinstance(f, FrameTagFilter) for f in h.filters)]


def setup_logger(out_dir: Optional[str] = None, level: str = "INFO") -> logging.Logger:
    """Configure the package logger: console output plus rotating log files in `out_dir`.

    Calling it again changes the level of the existing handlers (except the error file) and
    moves the log files to a new `out_dir`; handlers are never duplicated.
    """
    logger = logging.getLogger(LOGGER_NAME)
    lvl = getattr(logging, str(level).upper(), logging.INFO)
    logger.setLevel(lvl)
    logger.propagate = False

    own = _own_handlers(logger)
    for h in own:
        if not getattr(h, "baseFilename", "").endswith(ERROR_LOG_NAME):
            h.setLevel(lvl)
    if not any(type(h) is logging.StreamHandler for h in own):
        _add_handler(logger, logging.StreamHandler(), lvl)

    if not out_dir:
        return logger
    os.makedirs(out_dir, exist_ok=True)
    log_path = os.path.abspath(os.path.join(out_dir, LOG_NAME))
    err_path = os.path.abspath(os.path.join(out_dir, ERROR_LOG_NAME))
    old = [h for h in own if isinstance(h, logging.FileHandler)]
    if any(os.path.abspath(h.baseFilename) == log_path for h in old):
        return logger
    for h in old:
        logger.removeHandler(h)
        h.close()

    _add_handler(logger, RotatingFileHandler(log_path, maxBytes=5 * 1024 * 1024, backupCount=3), lvl)
    _add_handler(logger, RotatingFileHandler(err_path, maxBytes=2 * 1024 * 1024, backupCount=2), logging.ERROR)
    logger.info("Logger initialized. Logs at %s; errors at %s", log_path, err_path)
    return logger
