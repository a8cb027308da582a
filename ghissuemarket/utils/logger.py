"""
Console and file logging for ghissuemarket.

Every record is tagged with the CLI subcommand that produced it, and
BOLT11 payment requests are shortened before they reach a handler. The
full request is a bearer token for the payment, so it belongs in the
ledgers only.

Console output goes to stderr: stdout is reserved for the records
printed by CLI commands.
"""

import logging
import re
import sys
from contextvars import ContextVar
from pathlib import Path
from typing import List, Optional

import colorlog

ROOT = "ghissuemarket"

# hrp + data part; lnbcrt must be tried before lnbc
PAYMENT_REQUEST_RE = re.compile(r"\b(ln(?:bcrt|bc|tbs|tb|sb))([0-9a-z]{20,})\b")
VISIBLE_CHARS = 8

CONSOLE_FORMAT = "%(log_color)s%(asctime)s [%(name)s:%(command)s] %(levelname)-8s%(reset)s %(message)s"
FILE_FORMAT = "%(asctime)s [%(name)s:%(command)s] %(levelname)-8s %(message)s"
DATE_FORMAT = "%Y-%m-%d %H:%M:%S"

current_command: ContextVar[str] = ContextVar("current_command", default="-")


def mask_payment_requests(text: str) -> str:
    """Shorten every payment request in text to its prefix and a few characters."""
    return PAYMENT_REQUEST_RE.sub(
        lambda m: f"{m.group(1)}{m.group(2)[:VISIBLE_CHARS]}...", text
    )


def set_command(name: Optional[str]) -> None:
    """Tag subsequent records with the running subcommand."""
    current_command.set(name or "-")


class PaymentRequestFilter(logging.Filter):
    """Masks payment requests in the rendered message."""

    def filter(self, record: logging.LogRecord) -> bool:
        message = record.getMessage()
        masked = mask_payment_requests(message)
        if masked != message:
            record.msg = masked
            record.args = ()
        return True


class CommandFilter(logging.Filter):
    def filter(self, record: logging.LogRecord) -> bool:
        record.command = current_command.get()
        return True


class MarketLogger:
    """Owns the handlers on the ghissuemarket root logger."""

    _initialized = False

    @staticmethod
    def _handlers(level: int, log_dir: Optional[Path]) -> List[logging.Handler]:
        console = colorlog.StreamHandler(sys.stderr)
        console.setFormatter(colorlog.ColoredFormatter(
            CONSOLE_FORMAT,
            datefmt=DATE_FORMAT,
            log_colors={
                "DEBUG": "cyan",
                "INFO": "green",
                "WARNING": "yellow",
                "ERROR": "red",
                "CRITICAL": "red,bg_white",
            },
        ))
        handlers: List[logging.Handler] = [console]

        if log_dir is not None:
            log_dir.mkdir(parents=True, exist_ok=True)
            # Operator log; the ledgers in the same directory are never touched
            file_handler = logging.FileHandler(log_dir / "ghissuemarket-cli.log")
            file_handler.setFormatter(logging.Formatter(FILE_FORMAT, datefmt=DATE_FORMAT))
            handlers.append(file_handler)

        for handler in handlers:
            handler.setLevel(level)
            handler.addFilter(CommandFilter())
            handler.addFilter(PaymentRequestFilter())
        return handlers

    @classmethod
    def setup(cls, level: int = logging.INFO, log_dir: Optional[str] = None) -> None:
        """
        Install handlers once; later calls only change the level.

        Args:
            level: Threshold for the root logger and its handlers
            log_dir: Also write an operator log file there when given
        """
        root_logger = logging.getLogger(ROOT)

        if cls._initialized:
            # --debug after an implicit WARNING setup
            root_logger.setLevel(level)
            for handler in root_logger.handlers:
                handler.setLevel(level)
            return

        root_logger.setLevel(level)
        root_logger.handlers.clear()
        root_logger.propagate = False
        for handler in cls._handlers(level, Path(log_dir) if log_dir else None):
            root_logger.addHandler(handler)

        cls._initialized = True

    @classmethod
    def get_logger(cls, name: str) -> logging.Logger:
        if not cls._initialized:
            cls.setup(level=logging.WARNING)
        return logging.getLogger(f"{ROOT}.{name}")


def get_logger(name: str) -> logging.Logger:
    """Logger for a subsystem: ledger, auction, issue, settlement, backend or cli."""
    return MarketLogger.get_logger(name)


def setup_logging(level: int = logging.INFO, log_dir: Optional[str] = None) -> None:
    MarketLogger.setup(level=level, log_dir=log_dir)
