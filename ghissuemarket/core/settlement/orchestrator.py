"""
Settlement Orchestrator - Pay an auction invoice over a dedicated channel.

Pipeline (fixed order):
1. open channel to the payee, sized to cover the invoice
2. pay the invoice
3. look up its settlement status
4. close the channel

Failure semantics:
- Step 1 fails explicitly: abort. Nothing was opened, so nothing is
  paid or closed and no invoice-paid event is written.
- Step 1 times out: the channel may exist. Payment is not attempted but
  the close is, so capital is not left locked.
- Step 2 or 3 fails, or invoice-paid cannot be written: the close still
  runs before the error is raised.
- invoice-paid is appended as soon as step 2 succeeds. The lookup result
  is reported to the caller but does not gate the record.
- Once a step has been sent to the backend it is never abandoned;
  cleanup always proceeds.

Errors that are raised are left for the caller to record. Failures that
are swallowed here (a close failing after an earlier error, a wallet
snapshot failing) are recorded in the diagnostic ledger directly.
"""

import math
import uuid as uuid_lib
from dataclasses import asdict, dataclass
from typing import Any, Callable, Dict, List, Optional

from ghissuemarket.core.config import MarketConfig
from ghissuemarket.core.errors import (
    BackendCallError,
    BackendTimeoutError,
    InvalidInputError,
    InvalidTransitionError,
    MarketError,
    WriteError,
)
from ghissuemarket.core.ledger import (
    AuctionState,
    Invoice,
    InvoiceCreated,
    InvoicePaid,
    InvoiceState,
    InvoiceView,
    LedgerState,
    LedgerTarget,
    LedgerWriter,
    WalletBalance,
    fold,
)
from ghissuemarket.core.settlement.backend import PaymentBackend
from ghissuemarket.utils.logger import get_logger
from ghissuemarket.utils.validation import (
    validate_identifier,
    validate_integer,
    validate_public_key,
    validate_string,
)

logger = get_logger("settlement")

MSAT_PER_SAT = 1000


@dataclass
class SettlementResult:
    """Outcome of one pay_invoice run."""
    payment_request: str
    peer_pubkey: str
    capacity_sat: int
    invoice_id: Optional[str] = None
    auction_id: Optional[str] = None
    channel: Optional[Dict[str, Any]] = None
    payment: Optional[Dict[str, Any]] = None
    lookup: Optional[Dict[str, Any]] = None
    settled: bool = False
    channel_closed: bool = False
    wallet_balance: Optional[Dict[str, Any]] = None

    def to_dict(self) -> Dict[str, Any]:
        return asdict(self)


class SettlementOrchestrator:
    """
    Drives invoice creation, payment and wallet snapshots.

    Attributes:
        writer: Ledger writer (invoices to PUBLIC, payments to PRIVATE)
        backend: Payment backend
        config: Channel sizing parameters
    """

    def __init__(
        self,
        writer: LedgerWriter,
        backend: PaymentBackend,
        config: Optional[MarketConfig] = None,
        uuid_factory: Optional[Callable[[], str]] = None,
    ):
        self.writer = writer
        self.backend = backend
        self.config = config or MarketConfig()
        self.uuid_factory = uuid_factory or (lambda: str(uuid_lib.uuid4()))

    # =========================================================================
    # Helpers
    # =========================================================================

    def _replay(self) -> LedgerState:
        """Public ledger followed by private ledger, so payments follow invoices."""
        events = self.writer.read(LedgerTarget.PUBLIC) + self.writer.read(LedgerTarget.PRIVATE)
        return fold(events)

    def channel_capacity(self, amount_msat: Optional[int]) -> int:
        """Channel size (sat) that covers an invoice plus reserve."""
        if amount_msat is None:
            return self.config.default_channel_capacity_sat
        amount_sat = math.ceil(amount_msat / MSAT_PER_SAT)
        return max(
            self.config.min_channel_capacity_sat,
            amount_sat + self.config.channel_reserve_sat,
        )

    @staticmethod
    def _auction_invoices(state: LedgerState, auction_id: str) -> List[InvoiceView]:
        """Invoices of the current group of an auction id."""
        invoices = state.invoices_for_auction(auction_id)
        auction = state.auctions.get(auction_id)
        if auction is None:
            return invoices
        # Invoices older than the latest auction-opened belong to a reused id
        return [v for v in invoices if v.invoice.timestamp >= auction.auction.timestamp]

    def _check_invoiceable(self, state: LedgerState, auction_id: str) -> None:
        """An auction gets one invoice: refuse when it is paid or still pending."""
        invoices = self._auction_invoices(state, auction_id)
        if any(v.state == InvoiceState.PAID for v in invoices):
            raise InvalidTransitionError(f"Auction {auction_id} is already settled")
        if invoices:
            raise InvalidTransitionError(
                f"Auction {auction_id} already has invoice {invoices[0].invoice.invoice_id} awaiting payment"
            )

    # =========================================================================
    # Invoices
    # =========================================================================

    def create_invoice(self, auction_id: str, amount_msat: int, memo: str = "") -> Invoice:
        """
        Create an invoice for a decided auction and record it.

        Raises:
            InvalidTransitionError: auction missing, undecided, or already invoiced
            BackendCallError: the node could not create the invoice
        """
        for valid, err in (
            validate_identifier(auction_id, "auction_id"),
            validate_integer(amount_msat, "amount_msat", min_val=1),
            validate_string(memo, "memo"),
        ):
            if not valid:
                raise InvalidInputError(err)

        state = self._replay()
        view = state.auctions.get(auction_id)
        if view is None:
            raise InvalidTransitionError(f"Auction {auction_id} does not exist")
        if view.state != AuctionState.WINNER_ANNOUNCED:
            raise InvalidTransitionError(
                f"Auction {auction_id} is {view.state.value}; invoices need an announced winner"
            )
        self._check_invoiceable(state, auction_id)

        created = self.backend.create_invoice(amount_msat, memo)

        invoice_uuid = self.uuid_factory()
        invoice = Invoice(
            uuid=invoice_uuid,
            invoice_id=f"invoice-{auction_id}-{self.uuid_factory()}",
            auction_id=auction_id,
            amount=amount_msat,
            memo=memo,
            payment_request=created.payment_request,
        )
        with self.writer.session(LedgerTarget.PUBLIC) as session:
            # Another process may have invoiced the auction while the node was busy
            current = fold(session.events() + self.writer.read(LedgerTarget.PRIVATE))
            self._check_invoiceable(current, auction_id)
            written = session.append(
                InvoiceCreated(invoice=invoice, metadata=created.raw, uuid=invoice_uuid)
            )

        logger.info(f"Invoice {invoice.invoice_id} created for auction {auction_id}: {amount_msat} msat")
        return written.invoice

    # =========================================================================
    # Settlement
    # =========================================================================

    def pay_invoice(self, payment_request: str, peer_pubkey: str) -> SettlementResult:
        """
        Settle an invoice through a channel opened for it.

        Returns:
            SettlementResult; `settled` is the lookup outcome

        Raises:
            InvalidTransitionError: the invoice or its auction is already paid
            BackendCallError: a step failed (after cleanup ran)
            WriteError: invoice-paid could not be recorded (after cleanup ran)
        """
        for valid, err in (
            validate_string(payment_request, "payment_request", allow_empty=False),
            validate_public_key(peer_pubkey, "bidder_pubkey"),
        ):
            if not valid:
                raise InvalidInputError(err)

        state = self._replay()
        if state.is_payment_recorded(payment_request):
            raise InvalidTransitionError(f"Invoice {payment_request[:24]}... is already paid")

        view = state.invoice_by_payment_request(payment_request)
        if view is not None:
            auction_id = view.invoice.auction_id
            if any(v.state == InvoiceState.PAID for v in self._auction_invoices(state, auction_id)):
                raise InvalidTransitionError(f"Auction {auction_id} is already settled")

        result = SettlementResult(
            payment_request=payment_request,
            peer_pubkey=peer_pubkey,
            capacity_sat=self.channel_capacity(view.invoice.amount if view else None),
            invoice_id=view.invoice.invoice_id if view else None,
            auction_id=view.invoice.auction_id if view else None,
        )
        invoice_uuid = view.invoice.uuid if view else self.uuid_factory()

        # 1. Open channel
        try:
            result.channel = self.backend.open_channel(peer_pubkey, result.capacity_sat)
        except BackendTimeoutError as e:
            # The open may still confirm; try to release it
            self._close_channel(result, pending=e)
            raise
        logger.info(f"Channel to {peer_pubkey[:16]}... opened ({result.capacity_sat} sat)")

        failure: Optional[MarketError] = None
        try:
            # 2. Pay
            result.payment = self.backend.pay_invoice(payment_request)
            self.writer.append(
                LedgerTarget.PRIVATE,
                InvoicePaid(
                    payment_request=payment_request,
                    invoice_id=result.invoice_id,
                    auction_id=result.auction_id,
                    metadata=result.payment,
                    uuid=invoice_uuid,
                ),
            )

            # 3. Confirm
            lookup = self.backend.lookup_invoice(payment_request)
            result.settled = lookup.settled
            result.lookup = lookup.raw
        except (BackendCallError, WriteError) as e:
            failure = e

        # 4. Close, whatever happened above
        close_error = self._close_channel(result, pending=failure)

        if failure is not None:
            raise failure
        if close_error is not None:
            raise close_error

        if result.settled:
            logger.info(f"Invoice paid successfully. Payment request: {payment_request}")
        else:
            self.writer.log_error(f"Payment not settled yet or failed: {payment_request}")

        result.wallet_balance = self._snapshot_balance()
        return result

    def _close_channel(
        self,
        result: SettlementResult,
        pending: Optional[MarketError] = None,
    ) -> Optional[BackendCallError]:
        """Close the settlement channel; returns the error instead of raising."""
        try:
            self.backend.close_channel(result.peer_pubkey)
        except BackendCallError as e:
            if isinstance(pending, WriteError):
                # Ledgers are unwritable; stderr is all that is left
                logger.critical(f"Failed to close channel after ledger failure ({pending}): {e}")
            elif pending is not None:
                # The pending error is what the caller will see
                self.writer.log_error(f"Failed to close channel after failure ({pending}): {e}")
            return e

        result.channel_closed = True
        logger.info(f"Channel to {result.peer_pubkey[:16]}... closed")
        return None

    # =========================================================================
    # Wallet
    # =========================================================================

    def wallet_balance(self) -> Dict[str, Any]:
        """Query the wallet balance and record it in the private ledger."""
        balance = self.backend.wallet_balance()
        self.writer.append(
            LedgerTarget.PRIVATE,
            WalletBalance(data=balance, uuid=self.uuid_factory()),
        )
        return balance

    def _snapshot_balance(self) -> Optional[Dict[str, Any]]:
        try:
            return self.wallet_balance()
        except BackendCallError as e:
            self.writer.log_error(f"Failed to fetch wallet balance: {e}")
            return None
