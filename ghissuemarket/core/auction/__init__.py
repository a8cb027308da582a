"""
Auction Module.

Open -> Closed -> WinnerAnnounced lifecycle and bidding, validated by
replaying the public ledger.
"""

from ghissuemarket.core.auction.state_machine import AuctionStateMachine

__all__ = ["AuctionStateMachine"]
