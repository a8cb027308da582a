"""
Ledger Events - Typed entities and transition events.

Every line of the ledger is one event. Each event kind is its own frozen
dataclass carrying only the fields it needs, so an event that mixes up
fields of another kind cannot be built.

Wire layout (one JSON object per line):
- Entity-creating events embed the entity under "data"
  (auction-opened, bid-placed, issue-created, invoice-created).
- Transition events carry their fields at the top level
  (auction-closed, winner-announced, issue-resolved, invoice-paid).
- Settlement events carry raw backend output under "metadata".
- Every record has "type", "timestamp" and "uuid".

The timestamp is stamped by the ledger writer at the moment of the
append, not when the event object is built.
"""

from dataclasses import asdict, dataclass, field, fields, replace
from enum import Enum
from typing import Any, ClassVar, Dict, Optional, Type

from ghissuemarket.core.errors import UnknownEventError


# =============================================================================
# Enums
# =============================================================================


class EventType(str, Enum):
    """Closed set of ledger record tags."""
    AUCTION_OPENED = "auction-opened"
    AUCTION_CLOSED = "auction-closed"
    WINNER_ANNOUNCED = "winner-announced"
    BID_PLACED = "bid-placed"
    ISSUE_CREATED = "issue-created"
    ISSUE_RESOLVED = "issue-resolved"
    INVOICE_CREATED = "invoice-created"
    INVOICE_PAID = "invoice-paid"
    WALLET_BALANCE = "wallet-balance"
    ERROR = "error"


class AuctionState(str, Enum):
    OPEN = "Open"
    CLOSED = "Closed"
    WINNER_ANNOUNCED = "WinnerAnnounced"


class BidState(str, Enum):
    PLACED = "Placed"


class InvoiceState(str, Enum):
    CREATED = "Created"
    PAID = "Paid"


class IssueState(str, Enum):
    OPEN = "Open"
    RESOLVED = "Resolved"


# =============================================================================
# Entities
# =============================================================================


class _Entity:
    """Shared (de)serialization for entity records."""

    _STATE_TYPE: ClassVar[Type[Enum]]

    def to_dict(self) -> Dict[str, Any]:
        data = asdict(self)
        data["state"] = self.state.value
        return data

    @classmethod
    def from_dict(cls, data: Dict[str, Any]):
        known = {f.name for f in fields(cls)}
        kwargs = {k: v for k, v in data.items() if k in known}
        kwargs["state"] = cls._STATE_TYPE(kwargs["state"])
        return cls(**kwargs)


@dataclass(frozen=True)
class Auction(_Entity):
    """
    An auction for resolving one issue.

    announcement_time is the wall-clock time of the open-auction call;
    timestamp is the time the auction-opened record was written.
    """
    _STATE_TYPE: ClassVar[Type[Enum]] = AuctionState

    uuid: str
    auction_id: str
    issue_id: str
    issue: str
    starting_price: float
    open_time: int
    close_time: int
    announcement_time: int
    auctioneer_pubkey: str
    metadata: str = ""
    state: AuctionState = AuctionState.OPEN
    timestamp: int = 0


@dataclass(frozen=True)
class Bid(_Entity):
    _STATE_TYPE: ClassVar[Type[Enum]] = BidState

    uuid: str
    auction_id: str
    bidder_id: str
    amount: float
    bidder_pubkey: str
    metadata: str = ""
    state: BidState = BidState.PLACED
    timestamp: int = 0


@dataclass(frozen=True)
class Invoice(_Entity):
    """An invoice for an auction; amount is in millisatoshis."""
    _STATE_TYPE: ClassVar[Type[Enum]] = InvoiceState

    uuid: str
    invoice_id: str
    auction_id: str
    amount: int
    memo: str = ""
    payment_request: str = ""
    state: InvoiceState = InvoiceState.CREATED
    timestamp: int = 0


@dataclass(frozen=True)
class Issue(_Entity):
    _STATE_TYPE: ClassVar[Type[Enum]] = IssueState

    uuid: str
    issue_id: str
    issue_description: str
    estimated_cost: float
    metadata: str = ""
    state: IssueState = IssueState.OPEN
    timestamp: int = 0


# =============================================================================
# Events
# =============================================================================

# type tag -> event class
EVENT_TYPES: Dict[EventType, Type["LedgerEvent"]] = {}


def _register(cls):
    EVENT_TYPES[cls.event_type] = cls
    return cls


class LedgerEvent:
    """
    Base behaviour of all ledger events.

    Subclasses are frozen dataclasses that end with `uuid` and
    `timestamp` fields and set the `event_type` tag.
    """

    event_type: ClassVar[EventType]
    uuid: str
    timestamp: int

    def payload(self) -> Dict[str, Any]:
        """Entity-specific fields of the record."""
        return {
            f.name: getattr(self, f.name)
            for f in fields(self)
            if f.name not in ("uuid", "timestamp")
        }

    def to_record(self) -> Dict[str, Any]:
        record = {
            "type": self.event_type.value,
            "timestamp": self.timestamp,
            "uuid": self.uuid,
        }
        record.update(self.payload())
        return record

    def stamped(self, timestamp: int) -> "LedgerEvent":
        """Copy of this event carrying the write-time timestamp."""
        return replace(self, timestamp=timestamp)

    @classmethod
    def from_payload(cls, record: Dict[str, Any]) -> "LedgerEvent":
        known = {f.name for f in fields(cls)}
        kwargs = {k: v for k, v in record.items() if k in known}
        kwargs.setdefault("uuid", "")
        return cls(**kwargs)


class _EntityEvent(LedgerEvent):
    """Events that embed an entity under "data"."""

    entity_type: ClassVar[type]

    @property
    def entity(self):
        raise NotImplementedError

    def payload(self) -> Dict[str, Any]:
        return {"data": self.entity.to_dict()}

    def stamped(self, timestamp: int) -> "LedgerEvent":
        name = fields(self)[0].name
        return replace(
            self,
            timestamp=timestamp,
            **{name: replace(self.entity, timestamp=timestamp)},
        )

    @classmethod
    def from_payload(cls, record: Dict[str, Any]) -> "LedgerEvent":
        entity = cls.entity_type.from_dict(record["data"])
        name = fields(cls)[0].name
        return cls(
            **{name: entity},
            uuid=record.get("uuid") or entity.uuid,
            timestamp=record.get("timestamp", 0),
        )


@_register
@dataclass(frozen=True)
class AuctionOpened(_EntityEvent):
    event_type: ClassVar[EventType] = EventType.AUCTION_OPENED
    entity_type: ClassVar[type] = Auction

    auction: Auction
    uuid: str = ""
    timestamp: int = 0

    @property
    def entity(self) -> Auction:
        return self.auction


@_register
@dataclass(frozen=True)
class AuctionClosed(LedgerEvent):
    event_type: ClassVar[EventType] = EventType.AUCTION_CLOSED

    auction_id: str
    auctioneer_pubkey: str
    uuid: str = ""
    timestamp: int = 0


@_register
@dataclass(frozen=True)
class WinnerAnnounced(LedgerEvent):
    event_type: ClassVar[EventType] = EventType.WINNER_ANNOUNCED

    auction_id: str
    bidder_id: str
    auctioneer_pubkey: str
    uuid: str = ""
    timestamp: int = 0


@_register
@dataclass(frozen=True)
class BidPlaced(_EntityEvent):
    event_type: ClassVar[EventType] = EventType.BID_PLACED
    entity_type: ClassVar[type] = Bid

    bid: Bid
    uuid: str = ""
    timestamp: int = 0

    @property
    def entity(self) -> Bid:
        return self.bid


@_register
@dataclass(frozen=True)
class IssueCreated(_EntityEvent):
    event_type: ClassVar[EventType] = EventType.ISSUE_CREATED
    entity_type: ClassVar[type] = Issue

    issue: Issue
    uuid: str = ""
    timestamp: int = 0

    @property
    def entity(self) -> Issue:
        return self.issue


@_register
@dataclass(frozen=True)
class IssueResolved(LedgerEvent):
    event_type: ClassVar[EventType] = EventType.ISSUE_RESOLVED

    issue_id: str
    resolution_details: str = ""
    uuid: str = ""
    timestamp: int = 0


@_register
@dataclass(frozen=True)
class InvoiceCreated(_EntityEvent):
    event_type: ClassVar[EventType] = EventType.INVOICE_CREATED
    entity_type: ClassVar[type] = Invoice

    invoice: Invoice
    metadata: Dict[str, Any] = field(default_factory=dict)
    uuid: str = ""
    timestamp: int = 0

    @property
    def entity(self) -> Invoice:
        return self.invoice

    def payload(self) -> Dict[str, Any]:
        return {"data": self.invoice.to_dict(), "metadata": dict(self.metadata)}

    @classmethod
    def from_payload(cls, record: Dict[str, Any]) -> "LedgerEvent":
        invoice = Invoice.from_dict(record["data"])
        return cls(
            invoice=invoice,
            metadata=record.get("metadata") or {},
            uuid=record.get("uuid") or invoice.uuid,
            timestamp=record.get("timestamp", 0),
        )


@_register
@dataclass(frozen=True)
class InvoicePaid(LedgerEvent):
    """Payment went through the backend; metadata is the raw payment output."""
    event_type: ClassVar[EventType] = EventType.INVOICE_PAID

    payment_request: str
    invoice_id: Optional[str] = None
    auction_id: Optional[str] = None
    metadata: Any = None
    uuid: str = ""
    timestamp: int = 0


@_register
@dataclass(frozen=True)
class WalletBalance(LedgerEvent):
    event_type: ClassVar[EventType] = EventType.WALLET_BALANCE

    data: Any = None
    uuid: str = ""
    timestamp: int = 0


@_register
@dataclass(frozen=True)
class ErrorEvent(LedgerEvent):
    event_type: ClassVar[EventType] = EventType.ERROR

    message: str
    uuid: str = ""
    timestamp: int = 0


def event_from_record(record: Dict[str, Any]) -> LedgerEvent:
    """
    Rebuild a typed event from a decoded ledger line.

    Raises:
        UnknownEventError: unknown or missing type tag, or a record that
            does not fit its type
    """
    tag = record.get("type")
    try:
        cls = EVENT_TYPES[EventType(tag)]
    except ValueError:
        raise UnknownEventError(f"Unknown event type: {tag!r}") from None

    try:
        return cls.from_payload(record)
    except (KeyError, TypeError, ValueError) as e:
        raise UnknownEventError(f"Malformed {tag} record: {e}") from e
