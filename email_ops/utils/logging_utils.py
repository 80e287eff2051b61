import logging
import sys
from pathlib import Path

from .config import SystemConfig
from .logging_formatter import LogFormatter
from .structured_logging import JSONFormatter

PLAIN_FORMAT = '%(asctime)s - %(name)s - %(levelname)s - %(message)s'


def setup_logging(system: SystemConfig) -> None:
    """
    Configure root logging for the service.

    Console output always uses the colored formatter. When a log file is
    configured it receives either plain text or JSON records, depending on
    ``system.log_format``.
    """
    level_name = str(system.log_level).upper()
    level = logging.getLevelName(level_name)
    if not isinstance(level, int):
        level = logging.INFO

    console = logging.StreamHandler(sys.stdout)
    console.setFormatter(LogFormatter())
    handlers = [console]

    if system.log_file:
        log_path = Path(system.log_file)
        log_path.parent.mkdir(parents=True, exist_ok=True)
        file_handler = logging.FileHandler(log_path)
        if system.log_format == "json":
            file_handler.setFormatter(JSONFormatter())
        else:
            file_handler.setFormatter(logging.Formatter(PLAIN_FORMAT))
        handlers.append(file_handler)

    logging.basicConfig(level=level, handlers=handlers, force=True)

    if level_name != logging.getLevelName(level):
        logging.getLogger("EmailService").warning(
            "Invalid log level '%s'; defaulting to INFO", system.log_level
        )
