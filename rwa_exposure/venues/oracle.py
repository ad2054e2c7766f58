"""In-memory price oracle fed by hand or by the Pyth feed."""
from __future__ import annotations

from decimal import Decimal

from ..errors import ValidationError, VenueUnavailableError
from ..models import PRICE_PRECISION


def to_price(value: float | int | str) -> int:
    """Convert a decimal price to an 18-decimal integer."""
    return int(Decimal(str(value)) * PRICE_PRECISION)


class StaticPriceOracle:
    """Price store keyed by asset symbol; prices carry 18 decimals."""

    def __init__(self, prices: dict[str, int] | None = None) -> None:
        self._prices: dict[str, int] = {}
        for asset, price in (prices or {}).items():
            self.set_price(asset, price)

    @property
    def prices(self) -> dict[str, int]:
        return dict(self._prices)

    def set_price(self, asset: str, price: int) -> None:
        if not asset:
            raise ValidationError("asset is required")
        if price <= 0:
            raise ValidationError(f"price for {asset} must be positive", code="invalid_price")
        self._prices[asset] = price

    def get_price(self, asset: str) -> int:
        try:
            return self._prices[asset]
        except KeyError:
            raise VenueUnavailableError(f"no price for {asset}", code="price_not_set") from None
