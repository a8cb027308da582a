"""
Replay - Derive current entity state from ledger events.

State is never stored; it is recomputed by folding events in log order:

    fold(events) -> LedgerState

Rules:
- An opening event (auction-opened, issue-created, invoice-created)
  starts a correlation group for its domain id. Opening the same id
  again starts a new group and replaces the view.
- A transition event applies only to the group whose uuid it carries.
  Records without a uuid (written by older tools) apply to the current
  group of their domain id.
- Transitions that do not fit the current state are ignored with a
  warning; replay never raises on business rules.

The fold is a pure function of the event sequence, so replaying the same
ledger contents always yields the same state.
"""

from dataclasses import dataclass, field, replace
from typing import Dict, Iterable, List, Optional

from ghissuemarket.core.ledger.events import (
    Auction,
    AuctionClosed,
    AuctionOpened,
    AuctionState,
    Bid,
    BidPlaced,
    Invoice,
    InvoiceCreated,
    InvoicePaid,
    InvoiceState,
    Issue,
    IssueCreated,
    IssueResolved,
    IssueState,
    LedgerEvent,
    WinnerAnnounced,
)
from ghissuemarket.utils.logger import get_logger

logger = get_logger("replay")


# =============================================================================
# Entity Views
# =============================================================================


@dataclass
class AuctionView:
    """An auction with everything that happened to it."""
    auction: Auction
    bids: List[Bid] = field(default_factory=list)
    winner_bidder_id: Optional[str] = None
    closed_at: Optional[int] = None
    announced_at: Optional[int] = None

    @property
    def state(self) -> AuctionState:
        return self.auction.state

    @property
    def uuid(self) -> str:
        return self.auction.uuid

    def has_bid_from(self, bidder_id: str) -> bool:
        return any(bid.bidder_id == bidder_id for bid in self.bids)

    def to_dict(self) -> dict:
        return {
            "auction": self.auction.to_dict(),
            "bids": [bid.to_dict() for bid in self.bids],
            "winner_bidder_id": self.winner_bidder_id,
            "closed_at": self.closed_at,
            "announced_at": self.announced_at,
        }


@dataclass
class IssueView:
    issue: Issue
    resolution_details: Optional[str] = None
    resolved_at: Optional[int] = None

    @property
    def state(self) -> IssueState:
        return self.issue.state

    @property
    def uuid(self) -> str:
        return self.issue.uuid


@dataclass
class InvoiceView:
    invoice: Invoice
    paid_at: Optional[int] = None
    payment_metadata: object = None

    @property
    def state(self) -> InvoiceState:
        return self.invoice.state


@dataclass
class LedgerState:
    """Derived state of every entity, keyed by domain id."""
    auctions: Dict[str, AuctionView] = field(default_factory=dict)
    issues: Dict[str, IssueView] = field(default_factory=dict)
    invoices: Dict[str, InvoiceView] = field(default_factory=dict)
    # Payments whose invoice is not in the public ledger
    external_payments: Dict[str, InvoicePaid] = field(default_factory=dict)

    def invoice_by_payment_request(self, payment_request: str) -> Optional[InvoiceView]:
        for view in self.invoices.values():
            if view.invoice.payment_request == payment_request:
                return view
        return None

    def invoices_for_auction(self, auction_id: str) -> List[InvoiceView]:
        return [v for v in self.invoices.values() if v.invoice.auction_id == auction_id]

    def is_payment_recorded(self, payment_request: str) -> bool:
        view = self.invoice_by_payment_request(payment_request)
        if view is not None:
            return view.state == InvoiceState.PAID
        return payment_request in self.external_payments


# =============================================================================
# Fold
# =============================================================================


def _matches(event_uuid: str, group_uuid: str) -> bool:
    return not event_uuid or event_uuid == group_uuid


def apply_event(state: LedgerState, event: LedgerEvent) -> LedgerState:
    """Apply one event to the state in place and return it."""
    if isinstance(event, AuctionOpened):
        state.auctions[event.auction.auction_id] = AuctionView(auction=event.auction)

    elif isinstance(event, BidPlaced):
        view = state.auctions.get(event.bid.auction_id)
        if view is None or view.state != AuctionState.OPEN:
            logger.warning(f"Ignoring bid on auction {event.bid.auction_id} that is not open")
        else:
            view.bids.append(event.bid)

    elif isinstance(event, AuctionClosed):
        view = state.auctions.get(event.auction_id)
        if view is None or not _matches(event.uuid, view.uuid):
            logger.warning(f"Ignoring close of unknown auction {event.auction_id}")
        elif view.state != AuctionState.OPEN:
            logger.warning(f"Ignoring close of auction {event.auction_id} in state {view.state.value}")
        else:
            view.auction = replace(view.auction, state=AuctionState.CLOSED)
            view.closed_at = event.timestamp

    elif isinstance(event, WinnerAnnounced):
        view = state.auctions.get(event.auction_id)
        if view is None or not _matches(event.uuid, view.uuid):
            logger.warning(f"Ignoring winner for unknown auction {event.auction_id}")
        elif view.state != AuctionState.CLOSED:
            logger.warning(f"Ignoring winner for auction {event.auction_id} in state {view.state.value}")
        else:
            view.auction = replace(view.auction, state=AuctionState.WINNER_ANNOUNCED)
            view.winner_bidder_id = event.bidder_id
            view.announced_at = event.timestamp

    elif isinstance(event, IssueCreated):
        state.issues[event.issue.issue_id] = IssueView(issue=event.issue)

    elif isinstance(event, IssueResolved):
        view = state.issues.get(event.issue_id)
        if view is None or not _matches(event.uuid, view.uuid):
            logger.warning(f"Ignoring resolution of unknown issue {event.issue_id}")
        elif view.state != IssueState.OPEN:
            logger.warning(f"Ignoring second resolution of issue {event.issue_id}")
        else:
            view.issue = replace(view.issue, state=IssueState.RESOLVED)
            view.resolution_details = event.resolution_details
            view.resolved_at = event.timestamp

    elif isinstance(event, InvoiceCreated):
        state.invoices[event.invoice.invoice_id] = InvoiceView(invoice=event.invoice)

    elif isinstance(event, InvoicePaid):
        view = None
        if event.invoice_id:
            view = state.invoices.get(event.invoice_id)
        if view is None:
            view = state.invoice_by_payment_request(event.payment_request)

        if view is None:
            state.external_payments[event.payment_request] = event
        elif view.state == InvoiceState.PAID:
            logger.warning(f"Ignoring second payment of invoice {view.invoice.invoice_id}")
        else:
            view.invoice = replace(view.invoice, state=InvoiceState.PAID)
            view.paid_at = event.timestamp
            view.payment_metadata = event.metadata

    # wallet-balance and error events carry no entity state
    return state


def fold(events: Iterable[LedgerEvent]) -> LedgerState:
    """
    Replay events in order.

    Args:
        events: Events in log order. To include payments, pass the public
            ledger followed by the private ledger.

    Returns:
        LedgerState keyed by domain id
    """
    state = LedgerState()
    for event in events:
        apply_event(state, event)
    return state
