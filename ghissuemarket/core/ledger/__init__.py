"""
Ledger Module.

Append-only JSON-lines event log that is the system of record:
- Typed events and entities
- Locked, crash-safe appends
- Replay of events into derived state
"""

from ghissuemarket.core.ledger.events import (
    Auction,
    AuctionClosed,
    AuctionOpened,
    AuctionState,
    Bid,
    BidPlaced,
    BidState,
    ErrorEvent,
    EventType,
    Invoice,
    InvoiceCreated,
    InvoicePaid,
    InvoiceState,
    Issue,
    IssueCreated,
    IssueResolved,
    IssueState,
    LedgerEvent,
    WalletBalance,
    WinnerAnnounced,
    event_from_record,
)
from ghissuemarket.core.ledger.replay import (
    AuctionView,
    InvoiceView,
    IssueView,
    LedgerState,
    apply_event,
    fold,
)
from ghissuemarket.core.ledger.writer import (
    LedgerSession,
    LedgerTarget,
    LedgerWriter,
    parse_lines,
    serialize_event,
)

__all__ = [
    # Events
    "Auction",
    "AuctionClosed",
    "AuctionOpened",
    "AuctionState",
    "Bid",
    "BidPlaced",
    "BidState",
    "ErrorEvent",
    "EventType",
    "Invoice",
    "InvoiceCreated",
    "InvoicePaid",
    "InvoiceState",
    "Issue",
    "IssueCreated",
    "IssueResolved",
    "IssueState",
    "LedgerEvent",
    "WalletBalance",
    "WinnerAnnounced",
    "event_from_record",
    # Replay
    "AuctionView",
    "InvoiceView",
    "IssueView",
    "LedgerState",
    "apply_event",
    "fold",
    # Writer
    "LedgerSession",
    "LedgerTarget",
    "LedgerWriter",
    "parse_lines",
    "serialize_event",
]
