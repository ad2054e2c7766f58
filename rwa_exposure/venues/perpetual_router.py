"""Perpetual-futures router simulator with unit-based PnL."""
from __future__ import annotations

import itertools
import logging
from dataclasses import dataclass

from ..errors import CapacityError, ValidationError, VenueUnavailableError
from ..interfaces.price_oracle import PriceOracle
from ..models import LEVERAGE_UNIT, MAX_LEVERAGE, PRICE_PRECISION, PerpetualPosition

logger = logging.getLogger(__name__)


@dataclass
class _Market:
    asset: str
    funding_rate: int = 0
    max_leverage: int = MAX_LEVERAGE


@dataclass
class _Position:
    position_id: str
    market: str
    cost_basis: int
    units: int
    collateral: int
    entry_price: int
    is_open: bool = True


class InMemoryPerpetualRouter:
    """Longs are held in asset units bought at the oracle price.

    ``cost_basis`` is the notional paid for the units still held; PnL is the
    units' current value minus that basis.
    """

    def __init__(self, oracle: PriceOracle) -> None:
        self._oracle = oracle
        self._markets: dict[str, _Market] = {}
        self._positions: dict[str, _Position] = {}
        self._stuck: set[str] = set()
        self._ids = itertools.count(1)

    def add_market(
        self, market: str, asset: str, *, funding_rate: int = 0, max_leverage: int = MAX_LEVERAGE
    ) -> None:
        self._markets[market] = _Market(asset, funding_rate, max_leverage)

    def set_funding_rate(self, market: str, rate: int) -> None:
        self._market(market).funding_rate = rate

    def set_stuck(self, position_id: str, stuck: bool = True) -> None:
        if stuck:
            self._stuck.add(position_id)
        else:
            self._stuck.discard(position_id)

    def _market(self, market: str) -> _Market:
        try:
            return self._markets[market]
        except KeyError:
            raise VenueUnavailableError(f"market {market} not listed", code="market_not_found") from None

    def _position(self, position_id: str) -> _Position:
        position = self._positions.get(position_id)
        if position is None or not position.is_open:
            raise ValidationError(f"no open position {position_id}", code="position_not_found")
        if position_id in self._stuck:
            raise VenueUnavailableError(
                f"router rejected update to {position_id}", code="router_unavailable"
            )
        return position

    def _price(self, market: str) -> int:
        return self._oracle.get_price(self._market(market).asset)

    def _pnl(self, position: _Position) -> int:
        value = position.units * self._price(position.market) // PRICE_PRECISION
        return value - position.cost_basis

    def open_position(self, market: str, size: int, leverage: int, collateral: int) -> str:
        params = self._market(market)
        if size <= 0 or collateral <= 0:
            raise ValidationError("size and collateral must be positive", code="zero_amount")
        if leverage > params.max_leverage:
            raise CapacityError(
                f"leverage {leverage} above market max {params.max_leverage}",
                code="leverage_too_high",
            )
        price = self._price(market)
        position_id = f"perp-{next(self._ids)}"
        self._positions[position_id] = _Position(
            position_id=position_id,
            market=market,
            cost_basis=size,
            units=size * PRICE_PRECISION // price,
            collateral=collateral,
            entry_price=price,
        )
        logger.debug("Opened %s on %s: size %d collateral %d", position_id, market, size, collateral)
        return position_id

    def close_position(self, position_id: str) -> int:
        position = self._position(position_id)
        pnl = self._pnl(position)
        position.is_open = False
        return pnl

    def adjust_position(self, position_id: str, size_delta: int, collateral_delta: int) -> int:
        position = self._position(position_id)
        realized = 0
        if size_delta > 0:
            position.units += size_delta * PRICE_PRECISION // self._price(position.market)
            position.cost_basis += size_delta
        elif size_delta < 0:
            reduce = min(-size_delta, position.cost_basis)
            pnl = self._pnl(position)
            realized = pnl * reduce // position.cost_basis
            position.units -= position.units * reduce // position.cost_basis
            position.cost_basis -= reduce

        if collateral_delta < 0 and -collateral_delta > position.collateral:
            raise CapacityError(
                f"cannot release {-collateral_delta}, position holds {position.collateral}",
                code="insufficient_collateral",
            )
        position.collateral += collateral_delta
        if collateral_delta > 0:
            return 0
        return max(-collateral_delta + realized, 0)

    def get_position(self, position_id: str) -> PerpetualPosition:
        position = self._positions.get(position_id)
        if position is None:
            raise ValidationError(f"no position {position_id}", code="position_not_found")
        leverage = (
            position.cost_basis * LEVERAGE_UNIT // position.collateral if position.collateral else 0
        )
        return PerpetualPosition(
            position_id=position.position_id,
            market=position.market,
            size=position.cost_basis,
            collateral=position.collateral,
            leverage=leverage,
            entry_price=position.entry_price,
            is_open=position.is_open,
        )

    def get_funding_rate(self, market: str) -> int:
        return self._market(market).funding_rate

    def get_position_value(self, position_id: str) -> int:
        position = self._positions.get(position_id)
        if position is None or not position.is_open:
            return 0
        return position.collateral + self._pnl(position)
