"""Oracle-priced spot exchange simulator."""
from __future__ import annotations

import logging

from ..errors import CapacityError, ValidationError, VenueUnavailableError
from ..interfaces.price_oracle import PriceOracle
from ..models import BPS, PRICE_PRECISION

logger = logging.getLogger(__name__)


class InMemorySpotExchange:
    """Fills every swap at the oracle price minus a flat fee."""

    def __init__(self, oracle: PriceOracle, *, base_asset: str, fee_bps: int = 30) -> None:
        if not 0 <= fee_bps < BPS:
            raise ValidationError(f"fee {fee_bps} outside [0, {BPS})")
        self._oracle = oracle
        self._base_asset = base_asset
        self._fee_bps = fee_bps
        self._halted = False

    def set_halted(self, halted: bool = True) -> None:
        self._halted = halted

    def _value_in_base(self, amount: int, token: str) -> int:
        if token == self._base_asset:
            return amount
        return amount * self._oracle.get_price(token) // PRICE_PRECISION

    def _from_base(self, value: int, token: str) -> int:
        if token == self._base_asset:
            return value
        return value * PRICE_PRECISION // self._oracle.get_price(token)

    def get_amounts_out(self, amount_in: int, token_in: str, token_out: str) -> int:
        if self._halted:
            raise VenueUnavailableError("exchange halted", code="exchange_halted")
        if amount_in <= 0:
            return 0
        value = self._value_in_base(amount_in, token_in)
        value -= value * self._fee_bps // BPS
        return self._from_base(value, token_out)

    def swap_exact_tokens_for_tokens(
        self, amount_in: int, min_out: int, token_in: str, token_out: str
    ) -> int:
        if amount_in <= 0:
            raise ValidationError("swap amount must be positive", code="zero_amount")
        out = self.get_amounts_out(amount_in, token_in, token_out)
        if out < min_out:
            raise CapacityError(
                f"swap would return {out}, below minimum {min_out}", code="slippage_exceeded"
            )
        logger.debug("Swapped %d %s for %d %s", amount_in, token_in, out, token_out)
        return out
