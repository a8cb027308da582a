"""
Market configuration for ghissuemarket.

Defines ledger locations, lncli connection settings and settlement
parameters. Values come from defaults, an optional dotenv file and
GHISSUEMARKET_* environment variables, in increasing precedence.
"""

import os
from dataclasses import dataclass, replace
from pathlib import Path
from typing import Callable, Mapping, Optional

from dotenv import load_dotenv

from ghissuemarket.core.errors import InvalidInputError

ENV_PREFIX = "GHISSUEMARKET_"

DEFAULT_LEDGER_DIR = Path("/var/log/ghissuemarket")


@dataclass(frozen=True)
class LedgerConfig:
    """Locations of the three ledgers, passed explicitly to the writer."""
    public_path: Path
    private_path: Path
    diagnostic_path: Path

    @classmethod
    def in_directory(cls, directory: Path) -> "LedgerConfig":
        """Conventional file names under a single directory."""
        directory = Path(directory)
        return cls(
            public_path=directory / "ghissuemarket.log",
            private_path=directory / "private.log",
            diagnostic_path=directory / "sys.log",
        )


@dataclass
class MarketConfig:
    """Process-wide configuration parameters"""

    # Ledgers
    ledger_path: Path = DEFAULT_LEDGER_DIR / "ghissuemarket.log"
    private_ledger_path: Path = DEFAULT_LEDGER_DIR / "private.log"
    sys_ledger_path: Path = DEFAULT_LEDGER_DIR / "sys.log"

    # lncli backend
    lncli_path: str = "lncli"
    tls_cert_path: Path = Path("/home/lnd/.lnd/tls.cert")
    macaroon_path: Path = Path("/home/lnd/.lnd/data/chain/bitcoin/regtest/admin.macaroon")
    network: Optional[str] = None
    rpcserver: Optional[str] = None
    backend_timeout: float = 60.0  # Seconds per lncli call; channel opens are slow

    # Settlement
    channel_reserve_sat: int = 10_000  # Headroom on top of the invoice amount
    min_channel_capacity_sat: int = 20_000  # lnd refuses smaller channels
    default_channel_capacity_sat: int = 1_000_000  # When the invoice amount is unknown

    # Feedback engine
    feedback_engine_path: str = "/usr/local/bin/ghissuemarket-feedback_engine"
    feedback_timeout: float = 30.0

    # Process logging
    log_dir: Optional[Path] = None

    def ledger_config(self) -> LedgerConfig:
        return LedgerConfig(
            public_path=Path(self.ledger_path),
            private_path=Path(self.private_ledger_path),
            diagnostic_path=Path(self.sys_ledger_path),
        )

    def with_ledger_dir(self, directory: Path) -> "MarketConfig":
        """Return a copy with all three ledgers placed under directory."""
        ledgers = LedgerConfig.in_directory(directory)
        return replace(
            self,
            ledger_path=ledgers.public_path,
            private_ledger_path=ledgers.private_path,
            sys_ledger_path=ledgers.diagnostic_path,
        )


def _parse_number(name: str, raw: str, cast: Callable):
    try:
        value = cast(raw)
    except ValueError:
        raise InvalidInputError(f"{ENV_PREFIX}{name} must be a number, got {raw!r}") from None
    if value < 0:
        raise InvalidInputError(f"{ENV_PREFIX}{name} must be >= 0, got {raw!r}")
    return value


# Environment variable name -> (field, parser)
_ENV_FIELDS = {
    "LEDGER_PATH": ("ledger_path", Path),
    "PRIVATE_LEDGER_PATH": ("private_ledger_path", Path),
    "SYS_LEDGER_PATH": ("sys_ledger_path", Path),
    "LNCLI_PATH": ("lncli_path", str),
    "LND_TLS_CERT_PATH": ("tls_cert_path", Path),
    "LND_MACAROON_PATH": ("macaroon_path", Path),
    "LND_NETWORK": ("network", str),
    "LND_RPCSERVER": ("rpcserver", str),
    "BACKEND_TIMEOUT": ("backend_timeout", float),
    "CHANNEL_RESERVE_SAT": ("channel_reserve_sat", int),
    "MIN_CHANNEL_CAPACITY_SAT": ("min_channel_capacity_sat", int),
    "DEFAULT_CHANNEL_CAPACITY_SAT": ("default_channel_capacity_sat", int),
    "FEEDBACK_ENGINE_PATH": ("feedback_engine_path", str),
    "FEEDBACK_TIMEOUT": ("feedback_timeout", float),
    "LOG_DIR": ("log_dir", Path),
}


def load_config(
    env_file: Optional[str] = None,
    environ: Optional[Mapping[str, str]] = None,
) -> MarketConfig:
    """
    Load configuration from a dotenv file and the environment.

    Args:
        env_file: Optional dotenv file. Variables already set in the
            environment win over the file.
        environ: Mapping to read instead of os.environ (tests)

    Returns:
        MarketConfig instance
    """
    if env_file:
        load_dotenv(env_file, override=False)

    env = os.environ if environ is None else environ
    changes = {}

    ledger_dir = env.get(f"{ENV_PREFIX}LEDGER_DIR")

    for name, (attr, parser) in _ENV_FIELDS.items():
        raw = env.get(f"{ENV_PREFIX}{name}")
        if raw is None or raw == "":
            continue
        if parser in (int, float):
            changes[attr] = _parse_number(name, raw, parser)
        else:
            changes[attr] = parser(raw)

    config = MarketConfig(**changes)

    if ledger_dir:
        # Explicit per-file paths still win over the directory
        base = config.with_ledger_dir(Path(ledger_dir))
        config = replace(
            base,
            **{k: v for k, v in changes.items() if k.endswith("ledger_path")},
        )

    return config
