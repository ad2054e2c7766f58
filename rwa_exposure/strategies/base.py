"""Common state machine for exposure strategies.

Subclasses implement the venue-specific hooks (``_open``, ``_close``,
``_unwind_all``, ``_harvest``, ``_can_handle``) and the read-only views.
The base class owns everything the variants share: validation, the
``INACTIVE -> ACTIVE -> CLOSED | EMERGENCY_EXITED`` lifecycle, the
reentrancy guard, access control, cooldowns and the audit log.

Public entry points are guarded; internal code calls the ``_open_exposure`` /
``_close_exposure`` helpers directly so composite operations such as
``adjust_exposure`` never trip the guard.
"""
from __future__ import annotations

import logging
import time
from collections.abc import Callable
from dataclasses import replace
from typing import Any

from ..errors import CapacityError, ExposureError, TimingError, ValidationError
from ..events import EventLog
from ..guards import non_reentrant, require_owner
from ..interfaces.price_oracle import PriceOracle
from ..models import (
    CostBreakdown,
    ExposureInfo,
    RiskParameters,
    StrategyStatus,
    StrategyType,
)

logger = logging.getLogger(__name__)

Clock = Callable[[], int]


def system_clock() -> int:
    return int(time.time())


class BaseExposureStrategy:
    """Shared lifecycle, limits and bookkeeping for every exposure strategy."""

    strategy_type: StrategyType

    def __init__(
        self,
        strategy_id: str,
        *,
        owner: str,
        underlying_asset: str,
        oracle: PriceOracle,
        risk_parameters: RiskParameters | None = None,
        clock: Clock | None = None,
        min_rebalance_interval: int = 3600,
        management_fee_bps: int = 0,
        gas_cost_bps: int = 0,
    ) -> None:
        if not strategy_id:
            raise ValidationError("strategy_id is required")
        if not owner:
            raise ValidationError("owner is required")
        if not underlying_asset:
            raise ValidationError("underlying_asset is required")

        params = risk_parameters or RiskParameters()
        params.validate()

        self._strategy_id = strategy_id
        self._owner = owner
        self._underlying_asset = underlying_asset
        self._oracle = oracle
        self._risk = params
        self._clock = clock or system_clock
        self._min_rebalance_interval = min_rebalance_interval
        self._management_fee_bps = management_fee_bps
        self._gas_cost_bps = gas_cost_bps

        self._status = StrategyStatus.INACTIVE
        self._total_exposure = 0
        self._total_collateral = 0
        self._idle_balance = 0
        self._last_rebalance = 0
        self._entered = False

        self.events = EventLog(strategy_id)

    # ------------------------------------------------------------------
    # Identity / state
    # ------------------------------------------------------------------

    @property
    def strategy_id(self) -> str:
        return self._strategy_id

    @property
    def name(self) -> str:
        return self._strategy_id

    @property
    def owner(self) -> str:
        return self._owner

    @property
    def status(self) -> StrategyStatus:
        return self._status

    @property
    def total_exposure_amount(self) -> int:
        return self._total_exposure

    @property
    def total_collateral(self) -> int:
        return self._total_collateral

    @property
    def idle_balance(self) -> int:
        return self._idle_balance

    @property
    def underlying_asset(self) -> str:
        return self._underlying_asset

    def get_risk_parameters(self) -> RiskParameters:
        return self._risk

    # ------------------------------------------------------------------
    # Helpers
    # ------------------------------------------------------------------

    def _now(self) -> int:
        return self._clock()

    def _emit(self, name: str, **fields: Any) -> None:
        self.events.emit(name, self._now(), **fields)

    def _set_status(self, status: StrategyStatus) -> None:
        if status is self._status:
            return
        before = self._status
        self._status = status
        self._emit("StatusChanged", before=before.value, after=status.value)

    @staticmethod
    def _require_positive(amount: int, label: str = "amount") -> None:
        if not isinstance(amount, int) or isinstance(amount, bool):
            raise ValidationError(f"{label} must be an integer", code="invalid_amount")
        if amount <= 0:
            raise ValidationError(f"{label} must be positive", code="zero_amount")

    def _check_position_size(self, additional_exposure: int) -> None:
        resulting = self._total_exposure + additional_exposure
        if resulting > self._risk.max_position_size:
            raise CapacityError(
                f"exposure {resulting} would exceed max position size "
                f"{self._risk.max_position_size}",
                code="max_position_size",
            )

    def _check_rebalance_cooldown(self) -> None:
        now = self._now()
        if self._last_rebalance and now - self._last_rebalance < self._min_rebalance_interval:
            wait = self._min_rebalance_interval - (now - self._last_rebalance)
            raise TimingError(
                f"{self._strategy_id}: rebalance cooldown active for {wait}s more",
                code="rebalance_too_soon",
            )

    def _mark_rebalanced(self) -> None:
        self._last_rebalance = self._now()

    def _attempt(self, label: str, func: Callable[..., Any], *args: Any) -> tuple[bool, Any]:
        """Run one unwind/harvest step, capturing failure instead of raising."""
        try:
            return True, func(*args)
        except Exception as e:
            logger.warning("%s: %s failed: %s", self._strategy_id, label, e)
            return False, None

    def _sweep_idle(self) -> int:
        """Hand back settlement proceeds parked in the strategy."""
        swept, self._idle_balance = self._idle_balance, 0
        return swept

    def _price(self) -> int:
        return self._oracle.get_price(self._underlying_asset)

    # ------------------------------------------------------------------
    # Internal operations (no guard)
    # ------------------------------------------------------------------

    def _open_exposure(self, amount: int) -> tuple[bool, int]:
        self._require_positive(amount)
        before = self._total_exposure

        actual = self._open(amount)

        self._set_status(StrategyStatus.ACTIVE)
        self._emit(
            "ExposureOpened",
            requested=amount,
            actual=actual,
            before=before,
            after=self._total_exposure,
        )
        return True, actual

    def _close_exposure(self, amount: int) -> tuple[int, int]:
        self._require_positive(amount)
        if amount > self._total_exposure:
            raise ValidationError(
                f"close amount {amount} exceeds exposure {self._total_exposure}",
                code="exceeds_exposure",
            )
        before = self._total_exposure

        closed, recovered = self._close(amount)

        if self._total_exposure == 0:
            recovered += self._sweep_idle()
            self._set_status(StrategyStatus.CLOSED)
        self._emit(
            "ExposureClosed",
            requested=amount,
            closed=closed,
            recovered=recovered,
            before=before,
            after=self._total_exposure,
        )
        return closed, recovered

    # ------------------------------------------------------------------
    # Public capability set
    # ------------------------------------------------------------------

    @non_reentrant
    def open_exposure(self, amount: int) -> tuple[bool, int]:
        """Deploy ``amount`` of base asset; return ``(success, notional achieved)``."""
        return self._open_exposure(amount)

    @non_reentrant
    def close_exposure(self, amount: int) -> tuple[int, int]:
        """Reduce notional by at least ``amount``; return ``(closed, capital recovered)``."""
        return self._close_exposure(amount)

    @non_reentrant
    def revert_open(self, exposure: int) -> tuple[int, int]:
        """Undo the last ``open_exposure`` that reported ``exposure``; leaves older positions alone."""
        return self._revert_open(exposure)

    @non_reentrant
    def adjust_exposure(self, delta: int) -> int:
        if delta == 0:
            return self._total_exposure
        before = self._total_exposure
        if delta > 0:
            self._open_exposure(delta)
        else:
            self._close_exposure(-delta)
        self._emit("ExposureAdjusted", delta=delta, before=before, after=self._total_exposure)
        return self._total_exposure

    def can_handle_exposure(self, amount: int) -> bool:
        """Advisory feasibility check; ``open_exposure`` re-validates."""
        if not isinstance(amount, int) or amount <= 0:
            return False
        try:
            return self._can_handle(amount)
        except ExposureError as e:
            logger.debug("%s cannot handle %d: %s", self._strategy_id, amount, e)
            return False

    @non_reentrant
    def harvest_yield(self) -> int:
        harvested = self._harvest()
        self._emit("YieldHarvested", amount=harvested)
        return harvested

    @non_reentrant
    def emergency_exit(self) -> int:
        """Unwind everything that can be unwound; never aborts on a single failure."""
        if not self._risk.emergency_exit_enabled:
            raise ValidationError(
                f"{self._strategy_id}: emergency exit is disabled",
                code="emergency_exit_disabled",
            )
        before = self._total_exposure
        recovered = self._unwind_all() + self._sweep_idle()
        self._set_status(StrategyStatus.EMERGENCY_EXITED)
        self._emit(
            "EmergencyExit",
            recovered=recovered,
            before=before,
            after=self._total_exposure,
        )
        logger.warning(
            "%s emergency exit recovered %d, %d exposure left on stuck positions",
            self._strategy_id, recovered, self._total_exposure,
        )
        return recovered

    def update_risk_parameters(self, params: RiskParameters, *, caller: str) -> None:
        require_owner(self._owner, caller, "update risk parameters")
        params.validate()
        old = self._risk
        self._risk = params
        self._emit("RiskParametersUpdated", old=old, new=params)

    def set_emergency_exit_enabled(self, enabled: bool, *, caller: str) -> None:
        self.update_risk_parameters(
            replace(self._risk, emergency_exit_enabled=enabled), caller=caller
        )

    # ------------------------------------------------------------------
    # Variant hooks
    # ------------------------------------------------------------------

    def _open(self, amount: int) -> int:
        raise NotImplementedError

    def _close(self, amount: int) -> tuple[int, int]:
        raise NotImplementedError

    def _revert_open(self, exposure: int) -> tuple[int, int]:
        # Proportional closes touch only the reverted share.
        return self._close_exposure(exposure)

    def _unwind_all(self) -> int:
        raise NotImplementedError

    def _harvest(self) -> int:
        raise NotImplementedError

    def _can_handle(self, amount: int) -> bool:
        raise NotImplementedError

    def estimate_exposure_cost(self, amount: int, time_horizon: int) -> int | None:
        raise NotImplementedError

    def get_exposure_info(self) -> ExposureInfo:
        raise NotImplementedError

    def get_cost_breakdown(self) -> CostBreakdown:
        raise NotImplementedError
