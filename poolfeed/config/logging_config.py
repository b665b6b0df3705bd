# poolfeed/config/logging_config.py

"""Per-command timestamped logging configuration for poolfeed.

Each process launch creates a dedicated log file inside ``logs/``
named after the subcommand and the launch time (for example
``logs/ingest_20260214_153045.log`` or ``logs/serve_...``). The
``poolfeed.*`` loggers and, for ``serve``, uvicorn's own loggers all
write to that file, so one server session or one scheduled ingest
reads as a single log.

Quality exclusions and normalization rejections only ever live here;
they are never written to durable listing state.
"""

import logging
import sys
from datetime import datetime
from pathlib import Path

from poolfeed.config.settings import Settings

_DETAILED_FORMAT = (
    "%(asctime)s | %(levelname)-8s | %(name)s | %(module)s:%(funcName)s:%(lineno)d | "
    "%(message)s"
)

_CONSOLE_FORMAT = "%(asctime)s | %(levelname)-8s | %(name)s | %(message)s"

_DATE_FORMAT = "%Y-%m-%d %H:%M:%S"

# uvicorn is started with log_config=None, so its loggers are ours to wire
SERVER_LOGGERS = ("uvicorn", "uvicorn.error", "uvicorn.access")


def _level(name: str | None, default: int) -> int:
    """Map a level name like ``"info"`` to its number, else *default*."""
    if not name:
        return default
    return logging.getLevelNamesMapping().get(name.strip().upper(), default)


def setup_logging(
    command: str = "run", console_level: str | None = None,
) -> Path:
    """Initialise poolfeed (and server) logging for one process.

    Args:
        command: Subcommand name, used as the log file prefix.
        console_level: Level name for stderr output. Defaults to
            ``Settings.CONSOLE_LOG_LEVEL``.

    Returns:
        The :class:`~pathlib.Path` to the log file created for this run.
    """
    logs_dir: Path = Settings.LOGS_DIR
    logs_dir.mkdir(parents=True, exist_ok=True)

    timestamp = datetime.now().strftime("%Y%m%d_%H%M%S")
    log_file = logs_dir / f"{command}_{timestamp}.log"

    root_logger = logging.getLogger("poolfeed")
    root_logger.setLevel(_level(Settings.FILE_LOG_LEVEL, logging.DEBUG))

    # Prevent duplicate handlers on repeated calls (e.g. tests)
    if root_logger.handlers:
        return log_file

    file_handler = logging.FileHandler(log_file, encoding="utf-8")
    file_handler.setLevel(logging.DEBUG)
    file_handler.setFormatter(
        logging.Formatter(_DETAILED_FORMAT, datefmt=_DATE_FORMAT)
    )

    console_handler = logging.StreamHandler(sys.stderr)
    console_handler.setLevel(
        _level(console_level or Settings.CONSOLE_LOG_LEVEL, logging.WARNING)
    )
    console_handler.setFormatter(
        logging.Formatter(_CONSOLE_FORMAT, datefmt=_DATE_FORMAT)
    )

    root_logger.addHandler(file_handler)
    root_logger.addHandler(console_handler)

    for name in SERVER_LOGGERS:
        server_logger = logging.getLogger(name)
        server_logger.handlers = [file_handler, console_handler]
        server_logger.setLevel(logging.INFO)
        server_logger.propagate = False

    root_logger.info(
        "Logging initialised for '%s', log file: %s", command, log_file
    )
    root_logger.debug(
        "Gate: %d concurrent, image budget %d/%dms, data dir %s",
        Settings.MAX_CONCURRENT,
        Settings.IMAGE_RATE_LIMIT,
        Settings.IMAGE_RATE_WINDOW_MS,
        Settings.DATA_DIR,
    )

    return log_file
