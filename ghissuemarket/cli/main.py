"""
ghissuemarket CLI - Command Line Interface

One subcommand per state transition. Each invocation appends to the
ledgers and prints the resulting record as JSON on stdout.

Exit codes:
    0  success
    1  command rejected or backend failure (also recorded in sys.log)
    2  ledger unwritable; nothing can be trusted to have been recorded
"""

import json
import logging
from pathlib import Path
from typing import Any, Callable, Optional

import click

from ghissuemarket import __version__
from ghissuemarket.core.config import MarketConfig, load_config
from ghissuemarket.core.errors import MarketError, WriteError
from ghissuemarket.utils.logger import get_logger, set_command, setup_logging

logger = get_logger("cli")

EXIT_FAILURE = 1
EXIT_FATAL = 2


class MarketContext:
    """Wires configuration, ledger writer and backend for one invocation."""

    def __init__(self, config: MarketConfig, use_mock_backend: bool = False):
        from ghissuemarket.core.ledger import LedgerWriter

        self.config = config
        self.use_mock_backend = use_mock_backend
        self.writer = LedgerWriter(config.ledger_config())
        self._backend = None

    @property
    def backend(self):
        if self._backend is None:
            if self.use_mock_backend:
                from ghissuemarket.core.settlement import MockPaymentBackend
                self._backend = MockPaymentBackend()
            else:
                from ghissuemarket.core.settlement import LncliBackend
                self._backend = LncliBackend(self.config)
        return self._backend

    def auctions(self):
        from ghissuemarket.core.auction import AuctionStateMachine
        from ghissuemarket.core.identity import IdentityResolver
        return AuctionStateMachine(self.writer, IdentityResolver(self.backend))

    def issues(self):
        from ghissuemarket.core.issue import IssueTracker
        return IssueTracker(self.writer)

    def settlement(self):
        from ghissuemarket.core.settlement import SettlementOrchestrator
        return SettlementOrchestrator(self.writer, self.backend, self.config)

    def feedback(self):
        from ghissuemarket.core.feedback import FeedbackClient
        return FeedbackClient(self.config.feedback_engine_path, self.config.feedback_timeout)


def echo_record(record: Any) -> None:
    click.echo(json.dumps(record, indent=2, ensure_ascii=False))


def run_guarded(ctx: click.Context, action: Callable[[], Any]) -> Any:
    """
    Run a command body at the error boundary.

    Recoverable errors are printed, recorded in the diagnostic ledger and
    turned into exit code 1. An unwritable ledger exits with code 2.
    """
    market: MarketContext = ctx.obj["market"]
    try:
        return action()
    except WriteError as e:
        logger.critical(f"Ledger unwritable: {e}")
        click.echo(f"FATAL: ledger unwritable: {e}", err=True)
        ctx.exit(EXIT_FATAL)
    except MarketError as e:
        click.echo(f"Error: {e}", err=True)
        try:
            market.writer.log_error(str(e))
        except WriteError as we:
            click.echo(f"FATAL: diagnostic ledger unwritable: {we}", err=True)
            ctx.exit(EXIT_FATAL)
        ctx.exit(EXIT_FAILURE)


@click.group()
@click.option("--debug", is_flag=True, help="Enable debug logging")
@click.option("--ledger-dir", default=None, type=click.Path(file_okay=False), help="Directory holding the three ledgers")
@click.option("--env-file", default=None, type=click.Path(exists=True, dir_okay=False), help="dotenv file with GHISSUEMARKET_* settings")
@click.option("--mock-backend", is_flag=True, help="Use the built-in mock payment backend (dry run)")
@click.version_option(version=__version__)
@click.pass_context
def cli(ctx, debug, ledger_dir, env_file, mock_backend):
    """ghissuemarket - auctions, bids and issues settled over Lightning"""
    try:
        config = load_config(env_file)
    except MarketError as e:
        raise click.BadParameter(str(e), param_hint="environment")

    if ledger_dir:
        config = config.with_ledger_dir(Path(ledger_dir).expanduser())

    level = logging.DEBUG if debug else logging.INFO
    setup_logging(level=level, log_dir=str(config.log_dir) if config.log_dir else None)
    set_command(ctx.invoked_subcommand)

    ctx.ensure_object(dict)
    ctx.obj["market"] = MarketContext(config, use_mock_backend=mock_backend)


# =============================================================================
# Auction Commands
# =============================================================================


@cli.command("open-auction")
@click.option("--auction-id", required=True, help="Unique ID for the auction")
@click.option("--issue-id", default="", help="ID of the issue being auctioned")
@click.option("--issue", default="", help="Issue to be auctioned")
@click.option("--starting-price", default=0.0, type=float, help="Starting price of the auction")
@click.option("--open-time", required=True, type=int, help="Unix timestamp for when the auction opens")
@click.option("--close-time", required=True, type=int, help="Unix timestamp for when the auction closes")
@click.option("--metadata", default="", help="Additional information (e.g., required skills)")
@click.pass_context
def open_auction(ctx, auction_id, issue_id, issue, starting_price, open_time, close_time, metadata):
    """Auctioneer opens a new auction with specific open and close times"""
    machine = ctx.obj["market"].auctions()
    auction = run_guarded(ctx, lambda: machine.open_auction(
        auction_id=auction_id,
        issue_id=issue_id,
        issue=issue,
        starting_price=starting_price,
        open_time=open_time,
        close_time=close_time,
        metadata=metadata,
    ))
    echo_record(auction.to_dict())


@cli.command("close-auction")
@click.option("--auction-id", required=True, help="ID of the auction to be closed")
@click.pass_context
def close_auction(ctx, auction_id):
    """Auctioneer closes the auction"""
    machine = ctx.obj["market"].auctions()
    event = run_guarded(ctx, lambda: machine.close_auction(auction_id))
    echo_record(event.to_record())


@cli.command("place-bid")
@click.option("--auction-id", required=True, help="ID of the auction to place a bid on")
@click.option("--bidder-id", required=True, help="Unique bidder ID")
@click.option("--bid-amount", required=True, type=float, help="Bid amount (in satoshis)")
@click.option("--metadata", default="", help="Additional information (e.g., skills)")
@click.pass_context
def place_bid(ctx, auction_id, bidder_id, bid_amount, metadata):
    """Bidder places a bid on an auction"""
    machine = ctx.obj["market"].auctions()
    bid = run_guarded(ctx, lambda: machine.place_bid(auction_id, bidder_id, bid_amount, metadata))
    echo_record(bid.to_dict())


@cli.command("announce-winner")
@click.option("--auction-id", required=True, help="ID of the auction for which to announce the winner")
@click.option("--bidder-id", required=True, help="ID of the winning bidder")
@click.pass_context
def announce_winner(ctx, auction_id, bidder_id):
    """Auctioneer announces the winner of an auction"""
    machine = ctx.obj["market"].auctions()
    event = run_guarded(ctx, lambda: machine.announce_winner(auction_id, bidder_id))
    echo_record(event.to_record())


# =============================================================================
# Settlement Commands
# =============================================================================


def sat_to_msat(amount: float) -> int:
    return int(round(amount * 1000))


@cli.command("add-invoice")
@click.option("--auction-id", required=True, help="ID of the auction for which to create an invoice")
@click.option("--amount", required=True, type=float, help="Amount of the invoice (in satoshis)")
@click.option("--memo", default="", help="Memo describing the invoice")
@click.pass_context
def add_invoice(ctx, auction_id, amount, memo):
    """Winning bidder creates an invoice for the auctioneer to pay"""
    settlement = ctx.obj["market"].settlement()
    invoice = run_guarded(ctx, lambda: settlement.create_invoice(auction_id, sat_to_msat(amount), memo))
    echo_record(invoice.to_dict())


@cli.command("pay-invoice")
@click.option("--payment-request", required=True, help="Payment request for the invoice to be paid")
@click.option("--bidder-pubkey", required=True, help="Public key of the bidder")
@click.pass_context
def pay_invoice(ctx, payment_request, bidder_pubkey):
    """Auctioneer pays an invoice over a channel opened and closed for it"""
    settlement = ctx.obj["market"].settlement()
    result = run_guarded(ctx, lambda: settlement.pay_invoice(payment_request, bidder_pubkey))
    echo_record(result.to_dict())

    if not result.settled:
        click.echo("Payment not settled yet or failed.", err=True)
        ctx.exit(EXIT_FAILURE)


@cli.command("wallet-balance")
@click.pass_context
def wallet_balance(ctx):
    """Check wallet balance and record it in the private ledger"""
    settlement = ctx.obj["market"].settlement()
    balance = run_guarded(ctx, settlement.wallet_balance)
    echo_record(balance)


# =============================================================================
# Issue Commands
# =============================================================================


@cli.command("add-issue")
@click.option("--issue-id", required=True, help="Unique ID for the issue")
@click.option("--issue-description", default="", help="Description of the issue")
@click.option("--estimated-cost", default=0.0, type=float, help="Estimated cost to resolve the issue")
@click.option("--metadata", default="", help="Additional information about the issue")
@click.pass_context
def add_issue(ctx, issue_id, issue_description, estimated_cost, metadata):
    """Creates a new issue with an estimated cost"""
    tracker = ctx.obj["market"].issues()
    issue = run_guarded(ctx, lambda: tracker.create_issue(issue_id, issue_description, estimated_cost, metadata))
    echo_record(issue.to_dict())


@cli.command("resolve-issue")
@click.option("--issue-id", required=True, help="ID of the issue to resolve")
@click.option("--resolution-details", default="", help="Details of how the issue was resolved")
@click.pass_context
def resolve_issue(ctx, issue_id, resolution_details):
    """Resolve an issue directly without outsourcing"""
    tracker = ctx.obj["market"].issues()
    event = run_guarded(ctx, lambda: tracker.resolve_issue(issue_id, resolution_details))
    echo_record(event.to_record())


# =============================================================================
# Query Command
# =============================================================================


@cli.command("query")
@click.argument("query_string", nargs=-1, required=True)
@click.pass_context
def query(ctx, query_string):
    """Query the feedback engine"""
    client = ctx.obj["market"].feedback()
    text = " ".join(query_string)
    answer: Optional[str] = run_guarded(ctx, lambda: client.query(text))

    if not answer:
        click.echo("No response from the feedback engine.")
        return

    click.echo(f"Query response: {answer}")


if __name__ == "__main__":
    cli()
