"""
Payment Backend - Narrow interface to the Lightning node.

The core only depends on PaymentBackend. LncliBackend drives a local lnd
through the `lncli` command line; MockPaymentBackend (see mock.py) is a
deterministic stand-in for tests and dry runs.

Every call blocks until lncli exits or the configured timeout expires.
A timeout raises BackendTimeoutError: the node may or may not have
committed the operation.
"""

import json
import subprocess
from dataclasses import dataclass, field
from typing import Any, Dict, List, Optional, Protocol, Type, TypeVar

from pydantic import BaseModel, ConfigDict, ValidationError

from ghissuemarket.core.config import MarketConfig
from ghissuemarket.core.errors import BackendCallError, BackendTimeoutError, ParseError
from ghissuemarket.utils.logger import get_logger

logger = get_logger("backend")


# =============================================================================
# Results
# =============================================================================


@dataclass
class CreatedInvoice:
    payment_request: str
    invoice_id: str  # Backend's handle (payment hash)
    raw: Dict[str, Any] = field(default_factory=dict)


@dataclass
class InvoiceLookup:
    settled: bool
    raw: Dict[str, Any] = field(default_factory=dict)


class PaymentBackend(Protocol):
    """Operations ghissuemarket needs from a Lightning node."""

    def get_identity(self) -> str:
        """Node public key (hex)."""
        ...

    def create_invoice(self, amount_msat: int, memo: str = "") -> CreatedInvoice:
        ...

    def open_channel(self, peer_pubkey: str, capacity_sat: int) -> Dict[str, Any]:
        ...

    def pay_invoice(self, payment_request: str) -> Dict[str, Any]:
        ...

    def lookup_invoice(self, payment_request: str) -> InvoiceLookup:
        ...

    def close_channel(self, peer_pubkey: str) -> Dict[str, Any]:
        ...

    def wallet_balance(self) -> Dict[str, Any]:
        ...


# =============================================================================
# lncli Response Models
# =============================================================================


class _LncliModel(BaseModel):
    model_config = ConfigDict(extra="allow")


class GetInfoResponse(_LncliModel):
    identity_pubkey: str


class AddInvoiceResponse(_LncliModel):
    payment_request: str
    r_hash: str


class DecodePayReqResponse(_LncliModel):
    payment_hash: str
    num_satoshis: Optional[str] = None
    destination: Optional[str] = None


class LookupInvoiceResponse(_LncliModel):
    state: str = ""
    settled: bool = False


class ChannelEntry(_LncliModel):
    channel_point: str
    remote_pubkey: str
    active: bool = False


class ListChannelsResponse(_LncliModel):
    channels: List[ChannelEntry] = []


M = TypeVar("M", bound=BaseModel)


# =============================================================================
# lncli Backend
# =============================================================================


class LncliBackend:
    """
    PaymentBackend backed by the lncli executable.

    Attributes:
        config: lncli path, TLS cert, macaroon, network, rpcserver, timeout
    """

    def __init__(self, config: MarketConfig):
        self.config = config

    def _base_command(self) -> List[str]:
        cmd = [
            self.config.lncli_path,
            "--tlscertpath", str(self.config.tls_cert_path),
            "--macaroonpath", str(self.config.macaroon_path),
        ]
        if self.config.network:
            cmd += ["--network", self.config.network]
        if self.config.rpcserver:
            cmd += ["--rpcserver", self.config.rpcserver]
        return cmd

    def _run(self, operation: str, *args: str) -> str:
        """Run one lncli subcommand and return its stdout."""
        cmd = self._base_command() + [operation, *args]
        logger.debug(f"Running lncli {operation}")

        try:
            result = subprocess.run(
                cmd,
                capture_output=True,
                text=True,
                timeout=self.config.backend_timeout,
            )
        except subprocess.TimeoutExpired:
            raise BackendTimeoutError(
                operation, f"no answer within {self.config.backend_timeout}s"
            ) from None
        except OSError as e:
            raise BackendCallError(operation, f"cannot run {self.config.lncli_path}: {e}") from e

        if result.returncode != 0:
            output = (result.stderr or result.stdout).strip()
            raise BackendCallError(operation, f"exit code {result.returncode}, output: {output}")

        return result.stdout

    @staticmethod
    def _json(operation: str, output: str) -> Dict[str, Any]:
        try:
            data = json.loads(output)
        except ValueError as e:
            raise ParseError(operation, f"output is not JSON: {e}") from e
        if not isinstance(data, dict):
            raise ParseError(operation, "output is not a JSON object")
        return data

    @classmethod
    def _parse(cls, operation: str, output: str, model: Type[M]) -> M:
        data = cls._json(operation, output)
        try:
            return model.model_validate(data)
        except ValidationError as e:
            raise ParseError(operation, f"unexpected output: {e}") from e

    # =========================================================================
    # PaymentBackend
    # =========================================================================

    def get_identity(self) -> str:
        info = self._parse("getinfo", self._run("getinfo"), GetInfoResponse)
        return info.identity_pubkey

    def create_invoice(self, amount_msat: int, memo: str = "") -> CreatedInvoice:
        args = ["--amt_msat", str(amount_msat)]
        if memo:
            args += ["--memo", memo]
        output = self._run("addinvoice", *args)
        response = self._parse("addinvoice", output, AddInvoiceResponse)
        return CreatedInvoice(
            payment_request=response.payment_request,
            invoice_id=response.r_hash,
            raw=response.model_dump(),
        )

    def open_channel(self, peer_pubkey: str, capacity_sat: int) -> Dict[str, Any]:
        output = self._run(
            "openchannel", "--node_key", peer_pubkey, "--local_amt", str(capacity_sat)
        )
        try:
            return self._json("openchannel", output)
        except ParseError:
            # The node accepted the open; a plain status line is still a success
            return {"output": output}

    def pay_invoice(self, payment_request: str) -> Dict[str, Any]:
        output = self._run("payinvoice", "--force", "--json", payment_request)
        try:
            return self._json("payinvoice", output)
        except ParseError:
            # Older lncli releases print a progress table instead of JSON
            return {"output": output}

    def lookup_invoice(self, payment_request: str) -> InvoiceLookup:
        decoded = self._parse(
            "decodepayreq", self._run("decodepayreq", payment_request), DecodePayReqResponse
        )
        output = self._run("lookupinvoice", decoded.payment_hash)
        response = self._parse("lookupinvoice", output, LookupInvoiceResponse)
        return InvoiceLookup(
            settled=response.state == "SETTLED" or response.settled,
            raw=response.model_dump(),
        )

    def close_channel(self, peer_pubkey: str) -> Dict[str, Any]:
        listing = self._parse(
            "listchannels", self._run("listchannels", "--peer", peer_pubkey), ListChannelsResponse
        )
        channels = [c for c in listing.channels if c.remote_pubkey == peer_pubkey]
        if not channels:
            raise BackendCallError("closechannel", f"no channel with peer {peer_pubkey}")

        results = []
        for channel in channels:
            output = self._run("closechannel", "--chan_point", channel.channel_point)
            try:
                results.append(self._json("closechannel", output))
            except ParseError:
                results.append({"output": output})
        return {"closed": results}

    def wallet_balance(self) -> Dict[str, Any]:
        return self._json("walletbalance", self._run("walletbalance"))
