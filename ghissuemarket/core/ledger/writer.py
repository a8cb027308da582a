"""
Ledger Writer - Append-only JSON-lines persistence.

The ledger is the system of record: nothing else stores state. Three
logical ledgers are kept apart by sensitivity:

- PUBLIC: auctions, bids, issues, created invoices (safe to share)
- PRIVATE: payments and wallet balances
- DIAGNOSTIC: operational errors

Durability rules:
1. Each event is one complete line written with a single os.write()
   while an exclusive flock() is held, then fsync()ed.
2. Lines are never rewritten or removed. An unterminated tail left by a
   crash is not a line: the next append cuts it before writing.
3. Any failure to open, lock, write or sync raises WriteError. Callers
   must not report success for an event that was not written.

A LedgerSession keeps the lock across read -> validate -> append so two
processes cannot both pass the same check (e.g. two winners announced).
"""

import fcntl
import json
import os
import time
import uuid as uuid_lib
from contextlib import contextmanager
from enum import Enum
from pathlib import Path
from typing import Callable, Iterator, List, Optional

from ghissuemarket.core.config import LedgerConfig
from ghissuemarket.core.errors import (
    LedgerCorruptionError,
    UnknownEventError,
    WriteError,
)
from ghissuemarket.core.ledger.events import ErrorEvent, LedgerEvent, event_from_record
from ghissuemarket.utils.logger import get_logger

logger = get_logger("ledger")

FILE_MODE = 0o644
READ_CHUNK = 64 * 1024


class LedgerTarget(Enum):
    PUBLIC = "public"
    PRIVATE = "private"
    DIAGNOSTIC = "diagnostic"


def serialize_event(event: LedgerEvent) -> bytes:
    """Serialize an event to one newline-terminated UTF-8 line."""
    try:
        line = json.dumps(event.to_record(), separators=(",", ":"), ensure_ascii=False)
    except (TypeError, ValueError) as e:
        raise WriteError(f"Failed to serialize {event.event_type.value} event: {e}") from e
    return (line + "\n").encode("utf-8")


def parse_lines(raw: bytes, source: str = "ledger") -> List[LedgerEvent]:
    """
    Decode ledger bytes into typed events, in file order.

    A malformed last line is treated as a torn write and skipped; a
    malformed line anywhere else means the ledger is corrupt. Records of
    unknown type are skipped.
    """
    events: List[LedgerEvent] = []
    lines = raw.split(b"\n")

    # Drop the empty string after the final newline
    if lines and lines[-1] == b"":
        lines.pop()

    for index, line in enumerate(lines):
        if not line.strip():
            continue

        is_last = index == len(lines) - 1
        try:
            record = json.loads(line.decode("utf-8"))
            if not isinstance(record, dict):
                raise ValueError("record is not an object")
        except ValueError as e:
            if is_last:
                logger.warning(f"Skipping torn final line {index + 1} of {source}: {e}")
                continue
            raise LedgerCorruptionError(f"{source}: line {index + 1} is not valid JSON: {e}") from e

        try:
            events.append(event_from_record(record))
        except UnknownEventError as e:
            logger.warning(f"Skipping line {index + 1} of {source}: {e}")

    return events


class LedgerSession:
    """
    A locked handle on one ledger file.

    Obtained from LedgerWriter.session(); valid only inside the `with`.
    """

    def __init__(self, writer: "LedgerWriter", target: LedgerTarget, fd: int, path: Path):
        self.writer = writer
        self.target = target
        self.path = path
        self._fd = fd

    def events(self) -> List[LedgerEvent]:
        """Read every event currently in the ledger."""
        chunks = []
        offset = 0
        while True:
            chunk = os.pread(self._fd, READ_CHUNK, offset)
            if not chunk:
                break
            chunks.append(chunk)
            offset += len(chunk)
        return parse_lines(b"".join(chunks), source=str(self.path))

    def _discard_torn_tail(self) -> None:
        """Cut an unterminated final line left by a crashed writer."""
        size = os.fstat(self._fd).st_size
        if size == 0 or os.pread(self._fd, 1, size - 1) == b"\n":
            return

        offset = size
        keep = 0
        while offset > 0:
            start = max(0, offset - READ_CHUNK)
            chunk = os.pread(self._fd, offset - start, start)
            newline = chunk.rfind(b"\n")
            if newline != -1:
                keep = start + newline + 1
                break
            offset = start

        logger.warning(f"Discarding torn tail of {self.path} ({size - keep} bytes)")
        os.ftruncate(self._fd, keep)

    def append(self, event: LedgerEvent) -> LedgerEvent:
        """
        Stamp and durably append one event.

        Returns:
            The event as written (with its write-time timestamp)
        """
        stamped = event.stamped(self.writer.clock())
        data = serialize_event(stamped)

        try:
            self._discard_torn_tail()
            written = 0
            while written < len(data):
                # O_APPEND: every write lands at the current end of file
                written += os.write(self._fd, data[written:])
            os.fsync(self._fd)
        except OSError as e:
            raise WriteError(f"Failed to write {self.path}: {e}") from e

        logger.debug(f"Appended {stamped.event_type.value} to {self.target.value} ledger")
        return stamped


class LedgerWriter:
    """
    Appends events to the three ledgers and reads them back.

    Attributes:
        config: Paths of the public, private and diagnostic ledgers
        clock: Source of write-time timestamps (Unix seconds)
    """

    def __init__(
        self,
        config: LedgerConfig,
        clock: Optional[Callable[[], int]] = None,
        uuid_factory: Optional[Callable[[], str]] = None,
    ):
        self.config = config
        self.clock = clock or (lambda: int(time.time()))
        self.uuid_factory = uuid_factory or (lambda: str(uuid_lib.uuid4()))

    def path_for(self, target: LedgerTarget) -> Path:
        return {
            LedgerTarget.PUBLIC: self.config.public_path,
            LedgerTarget.PRIVATE: self.config.private_path,
            LedgerTarget.DIAGNOSTIC: self.config.diagnostic_path,
        }[target]

    # =========================================================================
    # Sessions
    # =========================================================================

    @contextmanager
    def session(self, target: LedgerTarget, exclusive: bool = True) -> Iterator[LedgerSession]:
        """
        Open and lock a ledger for the duration of the block.

        Args:
            target: Which ledger
            exclusive: Exclusive lock (read + append) or shared (read only)

        Raises:
            WriteError: the ledger cannot be opened or locked
        """
        path = Path(self.path_for(target))
        try:
            path.parent.mkdir(parents=True, exist_ok=True)
            fd = os.open(path, os.O_RDWR | os.O_APPEND | os.O_CREAT, FILE_MODE)
        except OSError as e:
            raise WriteError(f"Failed to open ledger {path}: {e}") from e

        try:
            try:
                fcntl.flock(fd, fcntl.LOCK_EX if exclusive else fcntl.LOCK_SH)
            except OSError as e:
                raise WriteError(f"Failed to lock ledger {path}: {e}") from e

            yield LedgerSession(self, target, fd, path)
        finally:
            # Closing the descriptor releases the flock
            os.close(fd)

    # =========================================================================
    # Convenience
    # =========================================================================

    def append(self, target: LedgerTarget, event: LedgerEvent) -> LedgerEvent:
        """Append one event under its own exclusive lock."""
        with self.session(target) as session:
            return session.append(event)

    def read(self, target: LedgerTarget) -> List[LedgerEvent]:
        """Read a ledger under a shared lock. A missing ledger reads as empty."""
        path = Path(self.path_for(target))
        if not path.exists():
            return []

        try:
            fd = os.open(path, os.O_RDONLY)
        except FileNotFoundError:
            return []
        except OSError as e:
            raise WriteError(f"Failed to open ledger {path}: {e}") from e

        try:
            fcntl.flock(fd, fcntl.LOCK_SH)
            with os.fdopen(os.dup(fd), "rb") as handle:
                raw = handle.read()
        except OSError as e:
            raise WriteError(f"Failed to read ledger {path}: {e}") from e
        finally:
            os.close(fd)

        return parse_lines(raw, source=str(path))

    def log_error(self, message: str) -> LedgerEvent:
        """Record an operational error in the diagnostic ledger."""
        logger.error(message)
        return self.append(
            LedgerTarget.DIAGNOSTIC,
            ErrorEvent(message=message, uuid=self.uuid_factory()),
        )
