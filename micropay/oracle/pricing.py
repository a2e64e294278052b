# micropay/oracle/pricing.py
"""
Content pricing and fixed-point conversion.

Prices are configured in whole tokens (e.g. 0.001 STRK) and converted to the
ledger's fixed-point integer representation before they reach calldata:

1. Parse the price as a Decimal (floats go through their shortest repr)
2. Scale by 10^decimals
3. Round half-up to an integer (never truncate)

u256 amounts are passed to Cairo contracts as two 128-bit felts (low, high).
"""
import logging
from decimal import Decimal, InvalidOperation, ROUND_HALF_UP, localcontext
from typing import Dict, Mapping, Optional, Tuple, Union

from micropay.core.config import settings

logger = logging.getLogger(__name__)

DEFAULT_DECIMALS = 18
U128_MASK = (1 << 128) - 1
U256_MAX = (1 << 256) - 1

PriceLike = Union[Decimal, str, int, float]


class UnknownContentError(KeyError):
    """Raised when a content id has no configured price."""

    def __init__(self, content_id: str):
        super().__init__(content_id)
        self.content_id = content_id

    def __str__(self) -> str:
        return f"No price configured for content '{self.content_id}'"


def _as_decimal(value: PriceLike) -> Decimal:
    if isinstance(value, Decimal):
        return value
    try:
        # str() keeps 0.001 as 0.001 instead of its binary expansion
        return Decimal(str(value))
    except InvalidOperation as e:
        raise ValueError(f"Invalid price value: {value!r}") from e


def to_fixed_point(amount: PriceLike, decimals: int = DEFAULT_DECIMALS) -> int:
    """
    Convert a human-readable token amount to its fixed-point integer.

    Args:
        amount: Amount in whole tokens
        decimals: Number of decimals of the token (18 for STRK)

    Returns:
        Integer amount in the token's smallest unit, rounded half-up

    Raises:
        ValueError: If the amount is negative, not finite or does not fit in a u256
    """
    value = _as_decimal(amount)
    if not value.is_finite():
        raise ValueError(f"Price must be finite, got {amount!r}")
    if value < 0:
        raise ValueError(f"Price must not be negative, got {amount!r}")

    with localcontext() as ctx:
        # Enough digits for any u256 and then some
        ctx.prec = 100
        scaled = (value * (Decimal(10) ** decimals)).quantize(Decimal(1), rounding=ROUND_HALF_UP)
    result = int(scaled)
    if result > U256_MAX:
        raise ValueError(f"Price {amount!r} does not fit in a u256")
    return result


def split_u256(value: int) -> Tuple[int, int]:
    """Split a u256 into its (low, high) 128-bit calldata words."""
    if value < 0 or value > U256_MAX:
        raise ValueError(f"Value out of u256 range: {value}")
    return value & U128_MASK, value >> 128


class ContentCatalog:
    """Maps content ids to their configured prices."""

    def __init__(
        self,
        prices: Optional[Mapping[str, PriceLike]] = None,
        decimals: Optional[int] = None
    ):
        source = prices if prices is not None else settings.CONTENT_PRICES
        self._prices: Dict[str, Decimal] = {
            str(content_id): _as_decimal(price) for content_id, price in source.items()
        }
        self.decimals = decimals if decimals is not None else settings.TOKEN_DECIMALS

    def __contains__(self, content_id: str) -> bool:
        return content_id in self._prices

    def items(self):
        return self._prices.items()

    def price_of(self, content_id: str) -> Decimal:
        """
        Get the price of a content item in whole tokens.

        Raises:
            UnknownContentError: If the content id is not in the catalog
        """
        try:
            return self._prices[content_id]
        except KeyError:
            raise UnknownContentError(content_id) from None

    def price_in_base_units(self, content_id: str) -> int:
        return to_fixed_point(self.price_of(content_id), self.decimals)
