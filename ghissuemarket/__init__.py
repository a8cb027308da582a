"""
ghissuemarket

Auction market for work items ("issues") settled over Lightning:
- Auctions, bids and issues recorded in an append-only JSON-lines ledger
- State derived by replaying the ledger
- Settlement through an lncli payment backend
"""

__version__ = "0.3.0"
