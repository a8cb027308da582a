"""
Auction State Machine - Validated auction and bid transitions.

Lifecycle:
    Open -> Closed -> WinnerAnnounced (terminal)

Every transition:
1. Validates command input
2. Resolves the acting node's public key (before touching the ledger)
3. Locks the public ledger, replays it, checks the current state
4. Appends the event while still holding the lock

Winner selection is an operator decision recorded with announce_winner;
bid amounts are advisory and never compared automatically.
"""

import time
import uuid as uuid_lib
from typing import Callable, Optional

from ghissuemarket.core.errors import (
    AuctionNotOpenError,
    InvalidInputError,
    InvalidTransitionError,
    InvalidWinnerError,
)
from ghissuemarket.core.identity import IdentityResolver
from ghissuemarket.core.ledger import (
    Auction,
    AuctionClosed,
    AuctionOpened,
    AuctionState,
    AuctionView,
    Bid,
    BidPlaced,
    LedgerTarget,
    LedgerWriter,
    WinnerAnnounced,
    fold,
)
from ghissuemarket.utils.logger import get_logger
from ghissuemarket.utils.validation import (
    validate_amount,
    validate_identifier,
    validate_string,
    validate_time_window,
)

logger = get_logger("auction")


def _check(result) -> None:
    valid, err = result
    if not valid:
        raise InvalidInputError(err)


class AuctionStateMachine:
    """
    Records auction lifecycle and bids in the public ledger.

    Attributes:
        writer: Ledger writer
        identity: Resolves auctioneer / bidder public keys
        clock: Wall clock for announcement_time (Unix seconds)
    """

    def __init__(
        self,
        writer: LedgerWriter,
        identity: IdentityResolver,
        clock: Optional[Callable[[], int]] = None,
        uuid_factory: Optional[Callable[[], str]] = None,
    ):
        self.writer = writer
        self.identity = identity
        self.clock = clock or (lambda: int(time.time()))
        self.uuid_factory = uuid_factory or (lambda: str(uuid_lib.uuid4()))

    # =========================================================================
    # Queries
    # =========================================================================

    def get_auction(self, auction_id: str) -> Optional[AuctionView]:
        """Current state of an auction, derived by replay."""
        state = fold(self.writer.read(LedgerTarget.PUBLIC))
        return state.auctions.get(auction_id)

    # =========================================================================
    # Transitions
    # =========================================================================

    def open_auction(
        self,
        auction_id: str,
        issue_id: str,
        issue: str,
        starting_price: float,
        open_time: int,
        close_time: int,
        metadata: str = "",
    ) -> Auction:
        """
        Open a new auction (always permitted; starts a new correlation group).

        Raises:
            InvalidInputError: bad identifiers, price or time window
            IdentityError: auctioneer key unavailable
        """
        _check(validate_identifier(auction_id, "auction_id"))
        _check(validate_string(issue_id, "issue_id"))
        _check(validate_string(issue, "issue"))
        _check(validate_amount(starting_price, "starting_price"))
        _check(validate_time_window(open_time, close_time))
        _check(validate_string(metadata, "metadata"))

        auctioneer_pubkey = self.identity.resolve_public_key("open-auction")
        announcement_time = self.clock()

        auction = Auction(
            uuid=self.uuid_factory(),
            auction_id=auction_id,
            issue_id=issue_id,
            issue=issue,
            starting_price=starting_price,
            open_time=open_time,
            close_time=close_time,
            announcement_time=announcement_time,
            auctioneer_pubkey=auctioneer_pubkey,
            metadata=metadata,
            state=AuctionState.OPEN,
            timestamp=announcement_time,
        )

        with self.writer.session(LedgerTarget.PUBLIC) as session:
            previous = fold(session.events()).auctions.get(auction_id)
            if previous is not None:
                logger.warning(
                    f"Auction id {auction_id} reused; previous group {previous.uuid} "
                    f"is in state {previous.state.value}"
                )
            written = session.append(AuctionOpened(auction=auction, uuid=auction.uuid))

        logger.info(f"Auction {auction_id} opened for issue {issue_id} at {starting_price}")
        return written.auction

    def close_auction(self, auction_id: str) -> AuctionClosed:
        """
        Close an open auction.

        Raises:
            InvalidTransitionError: auction missing or not Open
        """
        _check(validate_identifier(auction_id, "auction_id"))
        auctioneer_pubkey = self.identity.resolve_public_key("close-auction")

        with self.writer.session(LedgerTarget.PUBLIC) as session:
            view = fold(session.events()).auctions.get(auction_id)
            if view is None:
                raise InvalidTransitionError(f"Auction {auction_id} does not exist")
            if view.state != AuctionState.OPEN:
                raise InvalidTransitionError(
                    f"Auction {auction_id} cannot be closed from state {view.state.value}"
                )

            written = session.append(
                AuctionClosed(
                    auction_id=auction_id,
                    auctioneer_pubkey=auctioneer_pubkey,
                    uuid=view.uuid,
                )
            )

        logger.info(f"Auction {auction_id} closed with {len(view.bids)} bid(s)")
        return written

    def place_bid(
        self,
        auction_id: str,
        bidder_id: str,
        amount: float,
        metadata: str = "",
    ) -> Bid:
        """
        Place a bid on an open auction.

        Raises:
            AuctionNotOpenError: auction missing or not Open
        """
        _check(validate_identifier(auction_id, "auction_id"))
        _check(validate_identifier(bidder_id, "bidder_id"))
        _check(validate_amount(amount, "amount"))
        _check(validate_string(metadata, "metadata"))

        bidder_pubkey = self.identity.resolve_public_key("place-bid")

        bid = Bid(
            uuid=self.uuid_factory(),
            auction_id=auction_id,
            bidder_id=bidder_id,
            amount=amount,
            bidder_pubkey=bidder_pubkey,
            metadata=metadata,
        )

        with self.writer.session(LedgerTarget.PUBLIC) as session:
            view = fold(session.events()).auctions.get(auction_id)
            if view is None:
                raise AuctionNotOpenError(f"Auction {auction_id} does not exist")
            if view.state != AuctionState.OPEN:
                raise AuctionNotOpenError(
                    f"Auction {auction_id} is {view.state.value}, not accepting bids"
                )

            written = session.append(BidPlaced(bid=bid, uuid=bid.uuid))

        logger.info(f"Bid from {bidder_id} on auction {auction_id}: {amount}")
        return written.bid

    def announce_winner(self, auction_id: str, bidder_id: str) -> WinnerAnnounced:
        """
        Record the operator's choice of winner for a closed auction.

        Raises:
            InvalidWinnerError: auction not Closed, or bidder never bid on it
        """
        _check(validate_identifier(auction_id, "auction_id"))
        _check(validate_identifier(bidder_id, "bidder_id"))

        auctioneer_pubkey = self.identity.resolve_public_key("announce-winner")

        with self.writer.session(LedgerTarget.PUBLIC) as session:
            view = fold(session.events()).auctions.get(auction_id)
            if view is None:
                raise InvalidWinnerError(f"Auction {auction_id} does not exist")
            if view.state != AuctionState.CLOSED:
                raise InvalidWinnerError(
                    f"Auction {auction_id} is {view.state.value}; a winner can only "
                    f"be announced once it is Closed"
                )
            if not view.has_bid_from(bidder_id):
                raise InvalidWinnerError(f"Bidder {bidder_id} placed no bid on auction {auction_id}")

            written = session.append(
                WinnerAnnounced(
                    auction_id=auction_id,
                    bidder_id=bidder_id,
                    auctioneer_pubkey=auctioneer_pubkey,
                    uuid=view.uuid,
                )
            )

        logger.info(f"Winner announced for auction {auction_id}: bidder {bidder_id}")
        return written
