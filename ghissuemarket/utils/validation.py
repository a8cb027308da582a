"""
Input Validation - Sanitization of command inputs and backend output.

Validators return (is_valid, error_message) and never raise; callers
decide which error to raise.
"""

import math
import re
from typing import Any, Optional, Tuple

# =============================================================================
# Constants
# =============================================================================

# Compressed secp256k1 public key, as reported by lnd
PUBKEY_SIZE = 33
MAX_ID_LENGTH = 256
MAX_STRING_LENGTH = 4096

# Field bounds
MIN_TIMESTAMP = 0
MAX_TIMESTAMP = 2**63 - 1
MAX_AMOUNT = 2**63 - 1


# =============================================================================
# Validation Functions
# =============================================================================


def validate_string(
    value: Any,
    name: str,
    max_length: int = MAX_STRING_LENGTH,
    pattern: Optional[str] = None,
    allow_empty: bool = True,
) -> Tuple[bool, str]:
    """
    Validate string input.

    Args:
        value: Value to validate
        name: Field name for error messages
        max_length: Maximum string length
        pattern: Optional regex pattern
        allow_empty: Whether "" is acceptable

    Returns:
        (is_valid, error_message)
    """
    if not isinstance(value, str):
        return False, f"{name} must be str, got {type(value).__name__}"

    if not allow_empty and not value.strip():
        return False, f"{name} must not be empty"

    if len(value) > max_length:
        return False, f"{name} exceeds max length {max_length}"

    if pattern and not re.match(pattern, value):
        return False, f"{name} does not match required pattern"

    return True, ""


def validate_identifier(value: Any, name: str) -> Tuple[bool, str]:
    """Validate a human-chosen domain identifier (auction_id, issue_id, ...)."""
    return validate_string(value, name, max_length=MAX_ID_LENGTH, allow_empty=False)


def validate_integer(
    value: Any,
    name: str,
    min_val: int = 0,
    max_val: int = MAX_AMOUNT,
) -> Tuple[bool, str]:
    """
    Validate integer within bounds.

    Args:
        value: Value to validate
        name: Field name for errors
        min_val: Minimum allowed value
        max_val: Maximum allowed value

    Returns:
        (is_valid, error_message)
    """
    if isinstance(value, bool) or not isinstance(value, int):
        return False, f"{name} must be int, got {type(value).__name__}"

    if value < min_val:
        return False, f"{name} must be >= {min_val}, got {value}"

    if value > max_val:
        return False, f"{name} must be <= {max_val}, got {value}"

    return True, ""


def validate_amount(value: Any, name: str = "amount") -> Tuple[bool, str]:
    """Validate a non-negative, finite amount (int or float)."""
    if isinstance(value, bool) or not isinstance(value, (int, float)):
        return False, f"{name} must be a number, got {type(value).__name__}"

    if isinstance(value, float) and not math.isfinite(value):
        return False, f"{name} must be finite, got {value}"

    if value < 0:
        return False, f"{name} must be >= 0, got {value}"

    if value > MAX_AMOUNT:
        return False, f"{name} must be <= {MAX_AMOUNT}, got {value}"

    return True, ""


def validate_timestamp(value: Any, name: str) -> Tuple[bool, str]:
    """Validate a Unix timestamp in seconds."""
    return validate_integer(value, name, MIN_TIMESTAMP, MAX_TIMESTAMP)


def validate_time_window(open_time: Any, close_time: Any) -> Tuple[bool, str]:
    """Validate that an auction window opens strictly before it closes."""
    for value, name in ((open_time, "open_time"), (close_time, "close_time")):
        valid, err = validate_timestamp(value, name)
        if not valid:
            return False, err

    if open_time >= close_time:
        return False, f"open_time {open_time} must be before close_time {close_time}"

    return True, ""


def validate_hex_string(value: Any, name: str, expected_bytes: Optional[int] = None) -> Tuple[bool, str]:
    """
    Validate a hex string (with or without 0x prefix).

    Args:
        value: Value to validate
        name: Field name
        expected_bytes: Expected byte length when decoded

    Returns:
        (is_valid, error_message)
    """
    if not isinstance(value, str):
        return False, f"{name} must be str, got {type(value).__name__}"

    hex_str = value[2:] if value.startswith("0x") else value

    if len(hex_str) % 2 != 0:
        return False, f"{name} has odd length, invalid hex"

    try:
        bytes.fromhex(hex_str)
    except ValueError:
        return False, f"{name} contains invalid hex characters"

    if expected_bytes is not None:
        actual_bytes = len(hex_str) // 2
        if actual_bytes != expected_bytes:
            return False, f"{name} must be {expected_bytes} bytes, got {actual_bytes}"

    return True, ""


def validate_public_key(value: Any, name: str = "pubkey") -> Tuple[bool, str]:
    """Validate a compressed node public key (66 hex chars, 02/03 prefix)."""
    valid, err = validate_hex_string(value, name, PUBKEY_SIZE)
    if not valid:
        return False, err

    if value[:2] not in ("02", "03"):
        return False, f"{name} must start with 02 or 03"

    return True, ""


# =============================================================================
# Module Exports
# =============================================================================

__all__ = [
    "validate_string",
    "validate_identifier",
    "validate_integer",
    "validate_amount",
    "validate_timestamp",
    "validate_time_window",
    "validate_hex_string",
    "validate_public_key",
    "PUBKEY_SIZE",
]
