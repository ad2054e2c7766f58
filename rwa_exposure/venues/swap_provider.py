"""Total-return-swap registry simulator."""
from __future__ import annotations

import itertools
import logging
import time
from collections.abc import Callable
from dataclasses import dataclass

from ..errors import CapacityError, TimingError, ValidationError, VenueUnavailableError
from ..interfaces.price_oracle import PriceOracle
from ..models import BPS, YEAR, ContractStatus, CounterpartyInfo, Quote

logger = logging.getLogger(__name__)


@dataclass
class _Counterparty:
    info: CounterpartyInfo
    borrow_rate_bps: int
    collateral_requirement_bps: int
    outstanding: int = 0


@dataclass
class _Contract:
    contract_id: str
    counterparty: str
    asset_id: str
    notional: int
    collateral: int
    borrow_rate_bps: int
    entry_price: int
    start_time: int
    maturity: int
    status: ContractStatus = ContractStatus.ACTIVE


class InMemorySwapProvider:
    """Quotes every active counterparty that still has room under its cap.

    Contracts track the reference asset through ``oracle`` when one is given;
    without an oracle they carry no price PnL. Borrow cost accrues linearly.
    """

    def __init__(
        self,
        oracle: PriceOracle | None = None,
        *,
        clock: Callable[[], int] | None = None,
        quote_validity: int = 300,
    ) -> None:
        self._oracle = oracle
        self._clock = clock or (lambda: int(time.time()))
        self._quote_validity = quote_validity
        self._counterparties: dict[str, _Counterparty] = {}
        self._quotes: dict[str, tuple[Quote, str, int]] = {}
        self._contracts: dict[str, _Contract] = {}
        self._stuck: set[str] = set()
        self._ids = itertools.count(1)

    # ------------------------------------------------------------------
    # Registry administration
    # ------------------------------------------------------------------

    def register_counterparty(
        self,
        counterparty: str,
        *,
        credit_rating: int,
        max_exposure: int,
        borrow_rate_bps: int,
        collateral_requirement_bps: int = 5_000,
        is_active: bool = True,
    ) -> None:
        if not 1 <= credit_rating <= 10:
            raise ValidationError(f"credit rating {credit_rating} outside [1, 10]")
        self._counterparties[counterparty] = _Counterparty(
            info=CounterpartyInfo(counterparty, credit_rating, max_exposure, is_active),
            borrow_rate_bps=borrow_rate_bps,
            collateral_requirement_bps=collateral_requirement_bps,
        )

    def set_counterparty_active(self, counterparty: str, active: bool) -> None:
        cp = self._get(counterparty)
        info = cp.info
        cp.info = CounterpartyInfo(info.counterparty, info.credit_rating, info.max_exposure, active)

    def set_borrow_rate(self, counterparty: str, rate_bps: int) -> None:
        self._get(counterparty).borrow_rate_bps = rate_bps

    def set_stuck(self, contract_id: str, stuck: bool = True) -> None:
        """Make terminate/settle calls for ``contract_id`` fail."""
        if stuck:
            self._stuck.add(contract_id)
        else:
            self._stuck.discard(contract_id)

    def contract_status(self, contract_id: str) -> ContractStatus:
        return self._contract(contract_id).status

    # ------------------------------------------------------------------
    # Internals
    # ------------------------------------------------------------------

    def _get(self, counterparty: str) -> _Counterparty:
        try:
            return self._counterparties[counterparty]
        except KeyError:
            raise ValidationError(
                f"{counterparty} is not registered", code="unknown_counterparty"
            ) from None

    def _contract(self, contract_id: str) -> _Contract:
        try:
            return self._contracts[contract_id]
        except KeyError:
            raise ValidationError(f"unknown contract {contract_id}", code="unknown_contract") from None

    def _active(self, contract_id: str) -> _Contract:
        contract = self._contract(contract_id)
        if contract.status is not ContractStatus.ACTIVE:
            raise ValidationError(
                f"contract {contract_id} is {contract.status.value}", code="contract_not_active"
            )
        if contract_id in self._stuck:
            raise VenueUnavailableError(
                f"counterparty {contract.counterparty} is not responding for {contract_id}",
                code="counterparty_unresponsive",
            )
        return contract

    def _price(self, asset_id: str) -> int:
        return self._oracle.get_price(asset_id) if self._oracle is not None else 0

    def _value(self, contract: _Contract) -> tuple[int, int]:
        """Return ``(final_value, collateral_returned)`` at the current time."""
        pnl = 0
        price = self._price(contract.asset_id)
        if price and contract.entry_price:
            pnl = contract.notional * (price - contract.entry_price) // contract.entry_price
        elapsed = max(self._clock() - contract.start_time, 0)
        carry = contract.notional * contract.borrow_rate_bps * elapsed // (BPS * YEAR)
        return contract.notional + pnl, max(contract.collateral + pnl - carry, 0)

    def _retire(self, contract: _Contract, status: ContractStatus) -> None:
        contract.status = status
        cp = self._counterparties.get(contract.counterparty)
        if cp is not None:
            cp.outstanding -= contract.notional

    # ------------------------------------------------------------------
    # SwapProvider
    # ------------------------------------------------------------------

    def request_quotes(
        self, asset_id: str, notional: int, maturity: int, leverage: int
    ) -> list[Quote]:
        now = self._clock()
        quotes = []
        for name, cp in self._counterparties.items():
            if not cp.info.is_active:
                continue
            room = cp.info.max_exposure - cp.outstanding
            if room <= 0:
                continue
            quote = Quote(
                quote_id=f"quote-{next(self._ids)}",
                counterparty=name,
                notional=min(notional, room),
                borrow_rate_bps=cp.borrow_rate_bps,
                collateral_requirement_bps=cp.collateral_requirement_bps,
                leverage=leverage,
                valid_until=now + self._quote_validity,
            )
            self._quotes[quote.quote_id] = (quote, asset_id, maturity)
            quotes.append(quote)
        return quotes

    def create_contract(self, quote_id: str, collateral: int) -> str:
        try:
            quote, asset_id, maturity = self._quotes.pop(quote_id)
        except KeyError:
            raise ValidationError(f"unknown quote {quote_id}", code="unknown_quote") from None
        now = self._clock()
        if quote.valid_until < now:
            raise TimingError(f"quote {quote_id} expired", code="quote_expired")
        required = self.calculate_collateral_requirement(quote.notional, quote.counterparty)
        if collateral < required:
            raise CapacityError(
                f"collateral {collateral} below requirement {required}",
                code="insufficient_collateral",
            )

        contract_id = f"trs-{next(self._ids)}"
        self._contracts[contract_id] = _Contract(
            contract_id=contract_id,
            counterparty=quote.counterparty,
            asset_id=asset_id,
            notional=quote.notional,
            collateral=collateral,
            borrow_rate_bps=quote.borrow_rate_bps,
            entry_price=self._price(asset_id),
            start_time=now,
            maturity=maturity,
        )
        self._counterparties[quote.counterparty].outstanding += quote.notional
        logger.debug("Created %s with %s for %d", contract_id, quote.counterparty, quote.notional)
        return contract_id

    def terminate_contract(self, contract_id: str) -> tuple[int, int]:
        contract = self._active(contract_id)
        final_value, returned = self._value(contract)
        self._retire(contract, ContractStatus.TERMINATED)
        return final_value, returned

    def settle_contract(self, contract_id: str) -> int:
        contract = self._active(contract_id)
        if self._clock() < contract.maturity:
            raise TimingError(f"contract {contract_id} has not matured", code="not_matured")
        _, returned = self._value(contract)
        self._retire(contract, ContractStatus.SETTLED)
        return returned

    def mark_to_market(self, contract_id: str) -> int:
        return self._value(self._active(contract_id))[0]

    def post_collateral(self, contract_id: str, amount: int) -> None:
        self._active(contract_id).collateral += amount

    def withdraw_collateral(self, contract_id: str, amount: int) -> None:
        contract = self._active(contract_id)
        if amount > contract.collateral:
            raise CapacityError(
                f"cannot withdraw {amount}, contract holds {contract.collateral}",
                code="exceeds_collateral",
            )
        contract.collateral -= amount

    def get_counterparty_info(self, counterparty: str) -> CounterpartyInfo:
        return self._get(counterparty).info

    def calculate_collateral_requirement(self, notional: int, counterparty: str) -> int:
        return notional * self._get(counterparty).collateral_requirement_bps // BPS
