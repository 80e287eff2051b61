import copy
import logging

from .colors import Colors


class LogFormatter(logging.Formatter):
    """
    Console formatter with colored level names.

    Delivery outcomes get highlighted so a bulk run can be skimmed: sent
    messages in green, per-recipient failures in red.
    """

    LEVEL_COLORS = {
        logging.DEBUG: Colors.GREY,
        logging.INFO: Colors.GREEN,
        logging.WARNING: Colors.YELLOW,
        logging.ERROR: Colors.RED,
        logging.CRITICAL: Colors.BOLD + Colors.RED,
    }

    def __init__(self, datefmt: str = "%Y-%m-%d %H:%M:%S"):
        super().__init__(
            f"{Colors.GREY}%(asctime)s{Colors.RESET} - "
            f"{Colors.CYAN}%(name)s{Colors.RESET} - %(levelname)s - %(message)s",
            datefmt=datefmt,
        )

    def format(self, record):
        # Copy so file handlers sharing the record don't get ANSI codes
        record = copy.copy(record)

        color = self.LEVEL_COLORS.get(record.levelno, Colors.RESET)
        record.levelname = Colors.colorize(record.levelname, color)

        if isinstance(record.msg, str):
            if record.msg.startswith("Sent message"):
                record.msg = Colors.colorize(record.msg, Colors.GREEN)
            elif record.msg.startswith("Delivery failed"):
                record.msg = Colors.colorize(record.msg, Colors.RED)
            elif record.msg.startswith("Bulk send finished"):
                record.msg = Colors.colorize(record.msg, Colors.MAGENTA + Colors.BOLD)

        return super().format(record)
