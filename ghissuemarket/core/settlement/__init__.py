"""
Settlement Module.

Lightning settlement of auction invoices:
- PaymentBackend interface and its lncli implementation
- Mock backend with injectable failures
- Orchestrated open / pay / confirm / close pipeline
"""

from ghissuemarket.core.settlement.backend import (
    CreatedInvoice,
    InvoiceLookup,
    LncliBackend,
    PaymentBackend,
)
from ghissuemarket.core.settlement.mock import MOCK_IDENTITY, MockPaymentBackend
from ghissuemarket.core.settlement.orchestrator import SettlementOrchestrator, SettlementResult

__all__ = [
    "CreatedInvoice",
    "InvoiceLookup",
    "LncliBackend",
    "PaymentBackend",
    "MOCK_IDENTITY",
    "MockPaymentBackend",
    "SettlementOrchestrator",
    "SettlementResult",
]
