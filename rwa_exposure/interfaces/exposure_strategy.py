"""Exposure strategy protocol — the capability set shared by every variant."""
from typing import Protocol

from ..models import CostBreakdown, ExposureInfo, RiskParameters, StrategyType


class ExposureStrategy(Protocol):
    """What the optimizer and bundle may rely on; variant internals stay hidden."""

    @property
    def strategy_id(self) -> str: ...

    @property
    def strategy_type(self) -> StrategyType: ...

    @property
    def total_exposure_amount(self) -> int: ...

    def open_exposure(self, amount: int) -> tuple[bool, int]: ...

    def close_exposure(self, amount: int) -> tuple[int, int]: ...

    def revert_open(self, exposure: int) -> tuple[int, int]: ...

    def adjust_exposure(self, delta: int) -> int: ...

    def estimate_exposure_cost(self, amount: int, time_horizon: int) -> int | None: ...

    def can_handle_exposure(self, amount: int) -> bool: ...

    def harvest_yield(self) -> int: ...

    def emergency_exit(self) -> int: ...

    def get_exposure_info(self) -> ExposureInfo: ...

    def get_cost_breakdown(self) -> CostBreakdown: ...

    def get_risk_parameters(self) -> RiskParameters: ...

    def update_risk_parameters(self, params: RiskParameters, *, caller: str) -> None: ...
