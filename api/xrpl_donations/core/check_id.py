"""Ledger Check identifiers.

A Check's ledger index is the SHA-512Half of the Check space key (``0x0043``),
the creating account's 20-byte AccountID and the big-endian sequence of the
``CheckCreate`` transaction.
"""

from __future__ import annotations

import hashlib
import re
from dataclasses import dataclass, field
from typing import List

from xrpl.core.addresscodec import decode_classic_address
from xrpl.core.addresscodec.exceptions import XRPLAddressCodecException

from .errors import InvalidAddress, InvalidSequence

CHECK_SPACE_KEY = b"\x00\x43"
MAX_SEQUENCE = 0xFFFFFFFF

_HEX = re.compile(r"[0-9A-F]+", re.IGNORECASE)

ERR_REQUIRED = "Check ID is required"
ERR_LENGTH = "Check ID must be 64 characters"
ERR_HEX = "Check ID must be a hex string"


@dataclass(frozen=True)
class CheckIdValidation:
    valid: bool
    errors: List[str] = field(default_factory=list)


def decode_account_id(account: str) -> bytes:
    try:
        return decode_classic_address(account)
    except (XRPLAddressCodecException, ValueError, TypeError) as exc:
        raise InvalidAddress(f"Failed to decode XRPL address: {account}") from exc


def generate_check_id(account: str, sequence: int) -> str:
    if isinstance(sequence, bool) or not isinstance(sequence, int):
        raise InvalidSequence()
    if sequence < 0 or sequence > MAX_SEQUENCE:
        raise InvalidSequence()

    account_id = decode_account_id(account)
    combined = CHECK_SPACE_KEY + account_id + sequence.to_bytes(4, "big")
    return hashlib.sha512(combined).digest()[:32].hex().upper()


def validate_check_id(value: object) -> CheckIdValidation:
    """Report every rule ``value`` breaks; never raises."""
    text = value if isinstance(value, str) else ("" if value is None else str(value))
    errors: List[str] = []
    if not text:
        errors.append(ERR_REQUIRED)
    if len(text) != 64:
        errors.append(ERR_LENGTH)
    if not _HEX.fullmatch(text):
        errors.append(ERR_HEX)
    return CheckIdValidation(valid=not errors, errors=errors)
