"""
Supported escrow tokens on Base and amount conversion helpers.

Amounts travel as decimal strings in token units ("12.5"); settlement
payloads need integer base units (12.5 MXNe -> 12500000).
"""

from __future__ import annotations

import re
from dataclasses import dataclass
from decimal import Decimal, InvalidOperation

ERC20_TRANSFER_SELECTOR = "a9059cbb"

_ADDRESS_RE = re.compile(r"^0x[0-9a-fA-F]{40}$")


@dataclass(frozen=True)
class TokenInfo:
    symbol: str
    name: str
    address: str
    decimals: int


SUPPORTED_TOKENS: dict[str, TokenInfo] = {
    "XOC": TokenInfo("XOC", "XOC Stablecoin", "0xa411c9Aa00E020e4f88Bc19996d29c5B7ADB4ACf", 18),
    "MXNe": TokenInfo("MXNe", "Mexican Peso e-Token", "0x269caE7Dc59803e5C596c95756faEeBb6030E0aF", 6),
    "USDC": TokenInfo("USDC", "USD Coin", "0x833589fCD6eDb6E08f4c7C32D4f71b54bdA02913", 6),
}


def get_token(symbol: str) -> TokenInfo | None:
    """Case-insensitive lookup ("mxne", "MXNE" and "MXNe" all resolve)."""
    wanted = (symbol or "").strip().upper()
    for key, info in SUPPORTED_TOKENS.items():
        if key.upper() == wanted:
            return info
    return None


def is_address(value: str) -> bool:
    return bool(_ADDRESS_RE.match(value or ""))


def parse_token_amount(amount: str | int | float) -> Decimal | None:
    """Return a positive Decimal, or None when *amount* is not a positive number."""
    try:
        value = Decimal(str(amount).strip())
    except (InvalidOperation, ValueError):
        return None
    if not value.is_finite() or value <= 0:
        return None
    return value


def to_base_units(amount: str | Decimal, decimals: int) -> int:
    """Convert a token-unit amount to integer base units. Fractions below one unit raise ValueError."""
    value = Decimal(str(amount)) * (Decimal(10) ** decimals)
    if value != value.to_integral_value():
        raise ValueError(f"Amount {amount} has more than {decimals} decimal places")
    return int(value)


def encode_erc20_transfer(recipient: str, base_units: int) -> str:
    """ABI-encode transfer(address,uint256) calldata as a 0x-prefixed hex string."""
    if not is_address(recipient):
        raise ValueError(f"Invalid recipient address: {recipient!r}")
    if base_units < 0:
        raise ValueError("Transfer amount must be non-negative")
    to_word = recipient[2:].lower().rjust(64, "0")
    amount_word = format(base_units, "064x")
    return "0x" + ERC20_TRANSFER_SELECTOR + to_word + amount_word
