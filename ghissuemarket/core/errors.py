"""
Error taxonomy for ghissuemarket.

Recoverable errors (identity, validation, business rules, backend calls)
are reported at the command boundary and recorded in the diagnostic
ledger. WriteError is fatal: a transition that was not durably written
never happened.
"""


class MarketError(Exception):
    """Base class for all ghissuemarket errors."""


# =============================================================================
# Identity and Input
# =============================================================================


class IdentityError(MarketError):
    """The backend identity query failed or returned a malformed key."""


class InvalidInputError(MarketError, ValueError):
    """Command input rejected before any history is consulted."""


# =============================================================================
# Business Rules
# =============================================================================


class InvalidTransitionError(MarketError):
    """Replayed history does not allow the requested transition."""


class AuctionNotOpenError(InvalidTransitionError):
    """A bid targets an auction that is missing or not Open."""


class InvalidWinnerError(InvalidTransitionError):
    """The auction is not Closed, or the bidder never bid on it."""


# =============================================================================
# External Collaborators
# =============================================================================


class BackendCallError(MarketError):
    """A payment backend call failed."""

    def __init__(self, operation: str, message: str):
        super().__init__(f"{operation} failed: {message}")
        self.operation = operation


class BackendTimeoutError(BackendCallError):
    """A payment backend call did not finish in time; its outcome is unknown."""


class ParseError(BackendCallError):
    """A payment backend call returned output that could not be parsed."""


class FeedbackError(MarketError):
    """The feedback engine could not answer a query."""


# =============================================================================
# Ledger
# =============================================================================


class WriteError(MarketError):
    """The ledger could not be opened or written. Fatal for the process."""


class LedgerCorruptionError(MarketError):
    """A ledger line in the middle of the file is not valid JSON."""


class UnknownEventError(MarketError):
    """A ledger record carries a type tag this version does not know."""
