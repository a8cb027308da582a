"""
Mock payment backend for tests and dry runs.

Behaves like a healthy node by default. Any operation can be made to
fail (BackendCallError), time out (BackendTimeoutError) or return
malformed output (ParseError); every call is recorded in order.
"""

import hashlib
from dataclasses import dataclass, field
from typing import Any, Dict, List, Set, Tuple

from ghissuemarket.core.errors import BackendCallError, BackendTimeoutError, ParseError
from ghissuemarket.core.settlement.backend import CreatedInvoice, InvoiceLookup
from ghissuemarket.utils.logger import get_logger

logger = get_logger("backend.mock")

MOCK_IDENTITY = "02" + "ab" * 32


@dataclass
class MockPaymentBackend:
    """
    Deterministic PaymentBackend.

    Attributes:
        identity: Public key returned by get_identity
        settled: What lookup_invoice reports
        fail_on: Operations that raise BackendCallError
        timeout_on: Operations that raise BackendTimeoutError
        malformed_on: Operations that raise ParseError
        calls: (operation, args...) for every call, in order
    """
    identity: str = MOCK_IDENTITY
    settled: bool = True
    balance_sat: int = 5_000_000
    fail_on: Set[str] = field(default_factory=set)
    timeout_on: Set[str] = field(default_factory=set)
    malformed_on: Set[str] = field(default_factory=set)
    calls: List[Tuple[Any, ...]] = field(default_factory=list)
    invoice_counter: int = 0

    def _call(self, operation: str, *args) -> None:
        self.calls.append((operation, *args))
        if operation in self.timeout_on:
            raise BackendTimeoutError(operation, "mock timeout")
        if operation in self.fail_on:
            raise BackendCallError(operation, "mock failure")
        if operation in self.malformed_on:
            raise ParseError(operation, "mock malformed output")

    def operations(self) -> List[str]:
        """Names of the calls made so far."""
        return [call[0] for call in self.calls]

    # =========================================================================
    # PaymentBackend
    # =========================================================================

    def get_identity(self) -> str:
        self._call("getinfo")
        return self.identity

    def create_invoice(self, amount_msat: int, memo: str = "") -> CreatedInvoice:
        self._call("addinvoice", amount_msat, memo)
        self.invoice_counter += 1
        r_hash = hashlib.sha256(f"{amount_msat}:{memo}:{self.invoice_counter}".encode()).hexdigest()
        payment_request = f"lnbcrt{amount_msat // 1000}n1mock{r_hash[:32]}"
        raw = {"r_hash": r_hash, "payment_request": payment_request, "add_index": str(self.invoice_counter)}
        return CreatedInvoice(payment_request=payment_request, invoice_id=r_hash, raw=raw)

    def open_channel(self, peer_pubkey: str, capacity_sat: int) -> Dict[str, Any]:
        self._call("openchannel", peer_pubkey, capacity_sat)
        return {"funding_txid": hashlib.sha256(peer_pubkey.encode()).hexdigest()}

    def pay_invoice(self, payment_request: str) -> Dict[str, Any]:
        self._call("payinvoice", payment_request)
        return {
            "payment_hash": hashlib.sha256(payment_request.encode()).hexdigest(),
            "status": "SUCCEEDED",
        }

    def lookup_invoice(self, payment_request: str) -> InvoiceLookup:
        self._call("lookupinvoice", payment_request)
        state = "SETTLED" if self.settled else "OPEN"
        return InvoiceLookup(settled=self.settled, raw={"state": state})

    def close_channel(self, peer_pubkey: str) -> Dict[str, Any]:
        self._call("closechannel", peer_pubkey)
        return {"closing_txid": hashlib.sha256(b"close:" + peer_pubkey.encode()).hexdigest()}

    def wallet_balance(self) -> Dict[str, Any]:
        self._call("walletbalance")
        return {
            "total_balance": str(self.balance_sat),
            "confirmed_balance": str(self.balance_sat),
            "unconfirmed_balance": "0",
        }
