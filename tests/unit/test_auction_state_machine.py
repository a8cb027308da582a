"""
Unit tests for the auction state machine.

Tests cover:
1. Opening auctions (validation, identity, timestamps)
2. Bids only on Open auctions
3. Close and winner transitions
4. Nothing written when a command is rejected
"""

import json

import pytest

from ghissuemarket.core.auction import AuctionStateMachine
from ghissuemarket.core.config import LedgerConfig
from ghissuemarket.core.errors import (
    AuctionNotOpenError,
    IdentityError,
    InvalidInputError,
    InvalidTransitionError,
    InvalidWinnerError,
)
from ghissuemarket.core.identity import IdentityResolver
from ghissuemarket.core.ledger import AuctionState, LedgerTarget, LedgerWriter
from ghissuemarket.core.settlement import MOCK_IDENTITY, MockPaymentBackend

COMMAND_TIME = 4242
WRITE_TIME = 5000


@pytest.fixture
def ledger_config(tmp_path):
    return LedgerConfig.in_directory(tmp_path)


@pytest.fixture
def backend():
    return MockPaymentBackend()


@pytest.fixture
def machine(ledger_config, backend):
    writer = LedgerWriter(ledger_config, clock=lambda: WRITE_TIME)
    return AuctionStateMachine(writer, IdentityResolver(backend), clock=lambda: COMMAND_TIME)


def open_a1(machine, **overrides):
    kwargs = dict(
        auction_id="A1",
        issue_id="I1",
        issue="Fix the flaky test",
        starting_price=100,
        open_time=1000,
        close_time=2000,
    )
    kwargs.update(overrides)
    return machine.open_auction(**kwargs)


def public_records(ledger_config):
    if not ledger_config.public_path.exists():
        return []
    return [json.loads(line) for line in ledger_config.public_path.read_text().splitlines()]


# =============================================================================
# Open
# =============================================================================


class TestOpenAuction:

    def test_open_auction(self, machine, ledger_config):
        auction = open_a1(machine)

        assert auction.state == AuctionState.OPEN
        assert auction.auctioneer_pubkey == MOCK_IDENTITY
        assert auction.announcement_time == COMMAND_TIME
        assert auction.timestamp == WRITE_TIME

        records = public_records(ledger_config)
        assert [r["type"] for r in records] == ["auction-opened"]
        assert records[0]["uuid"] == auction.uuid
        assert records[0]["data"]["state"] == "Open"

    @pytest.mark.parametrize("open_time,close_time", [(2000, 2000), (2000, 1000), (-1, 10)])
    def test_bad_time_window_rejected(self, machine, backend, ledger_config, open_time, close_time):
        with pytest.raises(InvalidInputError):
            open_a1(machine, open_time=open_time, close_time=close_time)

        # Rejected before the identity query and before any write
        assert backend.calls == []
        assert public_records(ledger_config) == []

    def test_negative_price_rejected(self, machine):
        with pytest.raises(InvalidInputError):
            open_a1(machine, starting_price=-5)

    def test_empty_auction_id_rejected(self, machine):
        with pytest.raises(InvalidInputError):
            open_a1(machine, auction_id="  ")

    def test_identity_failure_writes_nothing(self, machine, backend, ledger_config):
        backend.fail_on.add("getinfo")

        with pytest.raises(IdentityError):
            open_a1(machine)
        assert not ledger_config.public_path.exists()

    def test_malformed_identity_rejected(self, ledger_config):
        writer = LedgerWriter(ledger_config)
        machine = AuctionStateMachine(writer, IdentityResolver(MockPaymentBackend(identity="not-a-key")))

        with pytest.raises(IdentityError):
            open_a1(machine)
        assert public_records(ledger_config) == []

    def test_identity_queried_per_command(self, machine, backend):
        open_a1(machine)
        machine.close_auction("A1")
        assert backend.operations() == ["getinfo", "getinfo"]

    def test_reused_id_starts_new_group(self, machine):
        first = open_a1(machine)
        machine.place_bid("A1", "B1", 150)
        machine.close_auction("A1")

        second = open_a1(machine)
        view = machine.get_auction("A1")

        assert second.uuid != first.uuid
        assert view.uuid == second.uuid
        assert view.state == AuctionState.OPEN
        assert view.bids == []


# =============================================================================
# Bids
# =============================================================================


class TestPlaceBid:

    def test_bid_on_open_auction(self, machine, ledger_config):
        open_a1(machine)
        bid = machine.place_bid("A1", "B1", 150, metadata="rust")

        assert bid.bidder_id == "B1"
        assert bid.amount == 150
        assert bid.bidder_pubkey == MOCK_IDENTITY
        assert [r["type"] for r in public_records(ledger_config)] == ["auction-opened", "bid-placed"]
        assert machine.get_auction("A1").has_bid_from("B1")

    def test_bid_on_missing_auction(self, machine, ledger_config):
        with pytest.raises(AuctionNotOpenError):
            machine.place_bid("NOPE", "B1", 150)
        assert public_records(ledger_config) == []

    def test_bid_on_closed_auction(self, machine, ledger_config):
        open_a1(machine)
        machine.close_auction("A1")

        with pytest.raises(AuctionNotOpenError):
            machine.place_bid("A1", "B3", 200)
        assert len(public_records(ledger_config)) == 2

    def test_bid_on_announced_auction(self, machine, ledger_config):
        open_a1(machine)
        machine.place_bid("A1", "B1", 150)
        machine.close_auction("A1")
        machine.announce_winner("A1", "B1")

        with pytest.raises(AuctionNotOpenError, match="not accepting bids"):
            machine.place_bid("A1", "B2", 500)
        assert [r["type"] for r in public_records(ledger_config)] == [
            "auction-opened", "bid-placed", "auction-closed", "winner-announced",
        ]

    def test_not_open_is_a_transition_error(self):
        assert issubclass(AuctionNotOpenError, InvalidTransitionError)

    def test_negative_bid_rejected(self, machine):
        open_a1(machine)
        with pytest.raises(InvalidInputError):
            machine.place_bid("A1", "B1", -1)


# =============================================================================
# Close / Winner
# =============================================================================


class TestCloseAndAnnounce:

    def test_close_records_group(self, machine):
        auction = open_a1(machine)
        event = machine.close_auction("A1")

        assert event.uuid == auction.uuid
        assert event.auctioneer_pubkey == MOCK_IDENTITY
        assert machine.get_auction("A1").state == AuctionState.CLOSED

    def test_close_twice_rejected(self, machine, ledger_config):
        open_a1(machine)
        machine.close_auction("A1")

        with pytest.raises(InvalidTransitionError):
            machine.close_auction("A1")
        assert len(public_records(ledger_config)) == 2

    def test_close_missing_rejected(self, machine):
        with pytest.raises(InvalidTransitionError):
            machine.close_auction("NOPE")

    def test_announce_winner(self, machine, ledger_config):
        open_a1(machine)
        machine.place_bid("A1", "B1", 150)
        machine.place_bid("A1", "B2", 120)
        machine.close_auction("A1")
        # Lower bid may win: selection is the operator's call
        event = machine.announce_winner("A1", "B2")

        assert event.bidder_id == "B2"
        view = machine.get_auction("A1")
        assert view.state == AuctionState.WINNER_ANNOUNCED
        assert view.winner_bidder_id == "B2"
        assert public_records(ledger_config)[-1]["type"] == "winner-announced"

    def test_announce_on_open_rejected(self, machine):
        open_a1(machine)
        machine.place_bid("A1", "B1", 150)

        with pytest.raises(InvalidWinnerError):
            machine.announce_winner("A1", "B1")

    def test_announce_non_bidder_rejected(self, machine):
        open_a1(machine)
        machine.place_bid("A1", "B1", 150)
        machine.close_auction("A1")

        with pytest.raises(InvalidWinnerError):
            machine.announce_winner("A1", "B9")

    def test_announce_twice_rejected(self, machine):
        open_a1(machine)
        machine.place_bid("A1", "B1", 150)
        machine.close_auction("A1")
        machine.announce_winner("A1", "B1")

        with pytest.raises(InvalidWinnerError):
            machine.announce_winner("A1", "B1")

    def test_announce_missing_rejected(self, machine):
        with pytest.raises(InvalidWinnerError):
            machine.announce_winner("NOPE", "B1")

    def test_public_ledger_only(self, machine, ledger_config):
        open_a1(machine)
        machine.place_bid("A1", "B1", 150)
        machine.close_auction("A1")
        machine.announce_winner("A1", "B1")

        assert machine.writer.read(LedgerTarget.PRIVATE) == []
        assert not ledger_config.private_path.exists()
