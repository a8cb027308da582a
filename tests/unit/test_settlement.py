"""
Unit tests for the settlement orchestrator.

Tests cover:
1. Invoice creation preconditions
2. Pipeline order (open -> pay -> lookup -> close -> balance)
3. Cleanup and recording under every failure position
4. Double-payment protection
5. Channel sizing
"""

import pytest

from ghissuemarket.core.auction import AuctionStateMachine
from ghissuemarket.core.config import LedgerConfig, MarketConfig
from ghissuemarket.core.errors import (
    BackendCallError,
    BackendTimeoutError,
    InvalidInputError,
    InvalidTransitionError,
    WriteError,
)
from ghissuemarket.core.identity import IdentityResolver
from ghissuemarket.core.ledger import (
    ErrorEvent,
    Invoice,
    InvoiceCreated,
    InvoicePaid,
    InvoiceState,
    LedgerTarget,
    LedgerWriter,
    WalletBalance,
)
from ghissuemarket.core.settlement import MockPaymentBackend, SettlementOrchestrator

PAYEE = "03" + "cd" * 32
AMOUNT_MSAT = 150_000


@pytest.fixture
def backend():
    return MockPaymentBackend()


@pytest.fixture
def writer(tmp_path):
    return LedgerWriter(LedgerConfig.in_directory(tmp_path), clock=lambda: 9000)


@pytest.fixture
def machine(writer, backend):
    return AuctionStateMachine(writer, IdentityResolver(backend))


@pytest.fixture
def orchestrator(writer, backend):
    return SettlementOrchestrator(writer, backend, MarketConfig())


@pytest.fixture
def decided_auction(machine):
    """A1 with B1 announced as winner."""
    machine.open_auction("A1", "I1", "Fix the flaky test", 100, 1000, 2000)
    machine.place_bid("A1", "B1", 150)
    machine.close_auction("A1")
    machine.announce_winner("A1", "B1")
    return "A1"


@pytest.fixture
def invoice(orchestrator, backend, decided_auction):
    created = orchestrator.create_invoice(decided_auction, AMOUNT_MSAT, "A1 payout")
    backend.calls.clear()
    return created


def private_events(writer, kind):
    return [e for e in writer.read(LedgerTarget.PRIVATE) if isinstance(e, kind)]


def diagnostic_messages(writer):
    return [e.message for e in writer.read(LedgerTarget.DIAGNOSTIC) if isinstance(e, ErrorEvent)]


# =============================================================================
# Invoices
# =============================================================================


class TestCreateInvoice:

    def test_create_invoice(self, orchestrator, backend, writer, decided_auction):
        invoice = orchestrator.create_invoice(decided_auction, AMOUNT_MSAT, "A1 payout")

        assert invoice.state == InvoiceState.CREATED
        assert invoice.amount == AMOUNT_MSAT
        assert invoice.invoice_id.startswith("invoice-A1-")
        assert invoice.payment_request.startswith("lnbcrt150n1mock")
        assert backend.calls[-1] == ("addinvoice", AMOUNT_MSAT, "A1 payout")

        created = [e for e in writer.read(LedgerTarget.PUBLIC) if isinstance(e, InvoiceCreated)]
        assert len(created) == 1
        assert created[0].invoice == invoice
        assert "r_hash" in created[0].metadata

    def test_requires_announced_winner(self, orchestrator, machine, backend):
        machine.open_auction("A2", "I2", "Docs", 10, 1000, 2000)

        with pytest.raises(InvalidTransitionError):
            orchestrator.create_invoice("A2", AMOUNT_MSAT)
        assert "addinvoice" not in backend.operations()

    def test_requires_existing_auction(self, orchestrator):
        with pytest.raises(InvalidTransitionError):
            orchestrator.create_invoice("NOPE", AMOUNT_MSAT)

    def test_rejects_zero_amount(self, orchestrator, decided_auction):
        with pytest.raises(InvalidInputError):
            orchestrator.create_invoice(decided_auction, 0)

    def test_backend_failure_writes_nothing(self, orchestrator, backend, writer, decided_auction):
        backend.fail_on.add("addinvoice")

        with pytest.raises(BackendCallError):
            orchestrator.create_invoice(decided_auction, AMOUNT_MSAT)
        assert not [e for e in writer.read(LedgerTarget.PUBLIC) if isinstance(e, InvoiceCreated)]

    def test_settled_auction_rejects_new_invoice(self, orchestrator, invoice, decided_auction):
        orchestrator.pay_invoice(invoice.payment_request, PAYEE)

        with pytest.raises(InvalidTransitionError, match="already settled"):
            orchestrator.create_invoice(decided_auction, AMOUNT_MSAT)

    def test_pending_invoice_blocks_another(self, orchestrator, backend, writer, invoice, decided_auction):
        with pytest.raises(InvalidTransitionError, match="awaiting payment"):
            orchestrator.create_invoice(decided_auction, AMOUNT_MSAT, "again")

        assert "addinvoice" not in backend.operations()
        created = [e for e in writer.read(LedgerTarget.PUBLIC) if isinstance(e, InvoiceCreated)]
        assert [e.invoice for e in created] == [invoice]

    def test_concurrent_invoice_detected_before_append(self, orchestrator, backend, writer, decided_auction):
        """Another process invoices the auction while addinvoice is in flight."""
        original = backend.create_invoice

        def create_and_race(amount_msat, memo=""):
            rival = original(amount_msat, "rival")
            writer.append(LedgerTarget.PUBLIC, InvoiceCreated(
                invoice=Invoice(uuid="u-rival", invoice_id="invoice-A1-rival", auction_id="A1",
                                amount=amount_msat, payment_request=rival.payment_request),
                uuid="u-rival",
            ))
            return original(amount_msat, memo)

        backend.create_invoice = create_and_race

        with pytest.raises(InvalidTransitionError, match="invoice-A1-rival"):
            orchestrator.create_invoice(decided_auction, AMOUNT_MSAT)

        created = [e for e in writer.read(LedgerTarget.PUBLIC) if isinstance(e, InvoiceCreated)]
        assert [e.invoice.invoice_id for e in created] == ["invoice-A1-rival"]


# =============================================================================
# Pay: happy path
# =============================================================================


class TestPayInvoice:

    def test_pipeline_order(self, orchestrator, backend, invoice):
        result = orchestrator.pay_invoice(invoice.payment_request, PAYEE)

        assert backend.operations() == [
            "openchannel",
            "payinvoice",
            "lookupinvoice",
            "closechannel",
            "walletbalance",
        ]
        assert result.settled is True
        assert result.channel_closed is True
        assert result.invoice_id == invoice.invoice_id
        assert result.auction_id == "A1"

    def test_records_payment_and_balance(self, orchestrator, writer, invoice):
        orchestrator.pay_invoice(invoice.payment_request, PAYEE)

        paid = private_events(writer, InvoicePaid)
        assert len(paid) == 1
        assert paid[0].payment_request == invoice.payment_request
        assert paid[0].invoice_id == invoice.invoice_id
        assert paid[0].uuid == invoice.uuid
        assert paid[0].metadata["status"] == "SUCCEEDED"
        assert len(private_events(writer, WalletBalance)) == 1

        # Payment details never reach the public ledger
        assert not [e for e in writer.read(LedgerTarget.PUBLIC) if isinstance(e, InvoicePaid)]

    def test_invoice_state_paid_after_replay(self, orchestrator, invoice):
        orchestrator.pay_invoice(invoice.payment_request, PAYEE)

        state = orchestrator._replay()
        assert state.invoices[invoice.invoice_id].state == InvoiceState.PAID

    def test_second_payment_rejected(self, orchestrator, backend, invoice):
        orchestrator.pay_invoice(invoice.payment_request, PAYEE)
        backend.calls.clear()

        with pytest.raises(InvalidTransitionError):
            orchestrator.pay_invoice(invoice.payment_request, PAYEE)
        assert backend.calls == []

    def test_other_invoice_of_paid_auction_rejected(self, orchestrator, backend, writer, invoice):
        """An auction is paid once, whichever of its invoices is presented."""
        sibling = Invoice(uuid="u-sibling", invoice_id="invoice-A1-sibling", auction_id="A1",
                          amount=AMOUNT_MSAT, payment_request="lnbcrt150n1sibling")
        writer.append(LedgerTarget.PUBLIC, InvoiceCreated(invoice=sibling, uuid="u-sibling"))
        orchestrator.pay_invoice(invoice.payment_request, PAYEE)
        backend.calls.clear()

        with pytest.raises(InvalidTransitionError, match="A1 is already settled"):
            orchestrator.pay_invoice(sibling.payment_request, PAYEE)

        assert backend.calls == []
        assert [e.invoice_id for e in private_events(writer, InvoicePaid)] == [invoice.invoice_id]

    def test_invalid_pubkey_rejected(self, orchestrator, backend, invoice):
        with pytest.raises(InvalidInputError):
            orchestrator.pay_invoice(invoice.payment_request, "not-a-pubkey")
        assert backend.calls == []

    def test_unknown_invoice_uses_default_capacity(self, orchestrator, backend, writer):
        result = orchestrator.pay_invoice("lnbcrt5000n1external", PAYEE)

        assert backend.calls[0] == ("openchannel", PAYEE, MarketConfig().default_channel_capacity_sat)
        assert result.invoice_id is None
        assert len(private_events(writer, InvoicePaid)) == 1

    def test_not_settled(self, orchestrator, backend, writer, invoice):
        backend.settled = False

        result = orchestrator.pay_invoice(invoice.payment_request, PAYEE)

        assert result.settled is False
        assert result.channel_closed is True
        # The payment went out, so it is recorded
        assert len(private_events(writer, InvoicePaid)) == 1
        assert any("not settled" in m for m in diagnostic_messages(writer))


# =============================================================================
# Pay: failures
# =============================================================================


class TestPayInvoiceFailures:

    def test_open_failure_aborts(self, orchestrator, backend, writer, invoice):
        backend.fail_on.add("openchannel")

        with pytest.raises(BackendCallError) as exc:
            orchestrator.pay_invoice(invoice.payment_request, PAYEE)

        assert exc.value.operation == "openchannel"
        assert backend.operations() == ["openchannel"]
        assert writer.read(LedgerTarget.PRIVATE) == []

    def test_open_timeout_still_closes(self, orchestrator, backend, writer, invoice):
        backend.timeout_on.add("openchannel")

        with pytest.raises(BackendTimeoutError):
            orchestrator.pay_invoice(invoice.payment_request, PAYEE)

        assert backend.operations() == ["openchannel", "closechannel"]
        assert private_events(writer, InvoicePaid) == []

    def test_open_timeout_close_failure_logged(self, orchestrator, backend, writer, invoice):
        backend.timeout_on.add("openchannel")
        backend.fail_on.add("closechannel")

        with pytest.raises(BackendTimeoutError):
            orchestrator.pay_invoice(invoice.payment_request, PAYEE)
        assert any("Failed to close channel" in m for m in diagnostic_messages(writer))

    def test_pay_failure_closes_channel(self, orchestrator, backend, writer, invoice):
        backend.fail_on.add("payinvoice")

        with pytest.raises(BackendCallError) as exc:
            orchestrator.pay_invoice(invoice.payment_request, PAYEE)

        assert exc.value.operation == "payinvoice"
        assert backend.operations() == ["openchannel", "payinvoice", "closechannel"]
        assert private_events(writer, InvoicePaid) == []

    def test_payment_record_failure_still_closes(self, orchestrator, backend, writer, invoice, monkeypatch):
        original = writer.append

        def append(target, event):
            if target == LedgerTarget.PRIVATE:
                raise WriteError("private ledger is full")
            return original(target, event)

        monkeypatch.setattr(writer, "append", append)

        with pytest.raises(WriteError):
            orchestrator.pay_invoice(invoice.payment_request, PAYEE)

        assert backend.operations() == ["openchannel", "payinvoice", "closechannel"]

    def test_pay_failure_reported_over_close_failure(self, orchestrator, backend, writer, invoice):
        backend.fail_on.update({"payinvoice", "closechannel"})

        with pytest.raises(BackendCallError) as exc:
            orchestrator.pay_invoice(invoice.payment_request, PAYEE)

        assert exc.value.operation == "payinvoice"
        messages = diagnostic_messages(writer)
        assert any("after failure (payinvoice failed" in m for m in messages)

    def test_lookup_failure_keeps_payment_record(self, orchestrator, backend, writer, invoice):
        backend.malformed_on.add("lookupinvoice")

        with pytest.raises(BackendCallError) as exc:
            orchestrator.pay_invoice(invoice.payment_request, PAYEE)

        assert exc.value.operation == "lookupinvoice"
        assert backend.operations() == ["openchannel", "payinvoice", "lookupinvoice", "closechannel"]
        assert len(private_events(writer, InvoicePaid)) == 1

    def test_close_failure_after_success_raised(self, orchestrator, backend, writer, invoice):
        backend.fail_on.add("closechannel")

        with pytest.raises(BackendCallError) as exc:
            orchestrator.pay_invoice(invoice.payment_request, PAYEE)

        assert exc.value.operation == "closechannel"
        assert len(private_events(writer, InvoicePaid)) == 1

    def test_balance_failure_does_not_fail_payment(self, orchestrator, backend, writer, invoice):
        backend.fail_on.add("walletbalance")

        result = orchestrator.pay_invoice(invoice.payment_request, PAYEE)

        assert result.settled is True
        assert result.wallet_balance is None
        assert any("wallet balance" in m for m in diagnostic_messages(writer))


# =============================================================================
# Sizing and Wallet
# =============================================================================


class TestChannelCapacity:

    @pytest.mark.parametrize("amount_msat,expected", [
        (150_000, 20_000),          # below the minimum channel size
        (50_000_000, 60_000),       # 50_000 sat + 10_000 reserve
        (50_000_001, 60_001),       # partial satoshi rounds up
        (None, 1_000_000),
    ])
    def test_capacity(self, orchestrator, amount_msat, expected):
        assert orchestrator.channel_capacity(amount_msat) == expected

    def test_capacity_from_config(self, writer, backend):
        config = MarketConfig(channel_reserve_sat=0, min_channel_capacity_sat=0)
        orchestrator = SettlementOrchestrator(writer, backend, config)
        assert orchestrator.channel_capacity(1_000) == 1

    def test_capacity_passed_to_backend(self, orchestrator, backend, invoice):
        orchestrator.pay_invoice(invoice.payment_request, PAYEE)
        assert backend.calls[0] == ("openchannel", PAYEE, 20_000)


class TestWalletBalance:

    def test_wallet_balance_recorded_privately(self, orchestrator, writer):
        balance = orchestrator.wallet_balance()

        assert balance["total_balance"] == "5000000"
        snapshots = private_events(writer, WalletBalance)
        assert len(snapshots) == 1
        assert snapshots[0].data == balance

    def test_wallet_balance_failure_raises(self, orchestrator, backend, writer):
        backend.fail_on.add("walletbalance")

        with pytest.raises(BackendCallError):
            orchestrator.wallet_balance()
        assert writer.read(LedgerTarget.PRIVATE) == []
