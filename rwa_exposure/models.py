"""Data models — snapshots are frozen, ledger records are owned by one strategy."""
from __future__ import annotations

from dataclasses import dataclass, field
from enum import Enum, IntEnum
from typing import Any

from .errors import CapacityError, ValidationError

BPS = 10_000
LEVERAGE_UNIT = 100
MAX_LEVERAGE = 1_000
MAX_SLIPPAGE = 1_000
PRICE_PRECISION = 10**18
YEAR = 365 * 24 * 60 * 60


class StrategyType(IntEnum):
    PERPETUAL = 0
    TRS = 1
    DIRECT_TOKEN = 2
    SYNTHETIC_TOKEN = 3
    OPTIONS = 4


class StrategyStatus(Enum):
    INACTIVE = "inactive"
    ACTIVE = "active"
    CLOSED = "closed"
    EMERGENCY_EXITED = "emergency_exited"


class ContractStatus(Enum):
    ACTIVE = "active"
    SETTLED = "settled"
    TERMINATED = "terminated"


# ---------------------------------------------------------------------------
# Risk / cost / exposure snapshots
# ---------------------------------------------------------------------------


@dataclass(frozen=True)
class RiskParameters:
    """Per-strategy limits, replaced as a whole by the strategy administrator."""

    max_leverage: int = 300
    max_position_size: int = 10**15
    liquidation_buffer: int = 2_000
    rebalance_threshold: int = 500
    slippage_limit: int = 100
    emergency_exit_enabled: bool = True

    def validate(self) -> None:
        if self.max_leverage > MAX_LEVERAGE:
            raise CapacityError(
                f"max_leverage {self.max_leverage} exceeds {MAX_LEVERAGE}",
                code="leverage_too_high",
            )
        if self.max_leverage < LEVERAGE_UNIT:
            raise ValidationError(
                f"max_leverage {self.max_leverage} below 1x", code="leverage_too_low"
            )
        if self.slippage_limit > MAX_SLIPPAGE:
            raise CapacityError(
                f"slippage_limit {self.slippage_limit} exceeds {MAX_SLIPPAGE}",
                code="slippage_too_high",
            )
        if self.max_position_size <= 0:
            raise ValidationError("max_position_size must be positive")
        for name in ("liquidation_buffer", "rebalance_threshold", "slippage_limit"):
            value = getattr(self, name)
            if not 0 <= value <= BPS:
                raise ValidationError(f"{name} {value} outside [0, {BPS}]")


@dataclass(frozen=True)
class CostBreakdown:
    """Cost components in bps; ``total_cost_bps`` is always their sum."""

    funding_rate: int
    borrow_rate: int
    management_fee: int
    slippage_cost: int
    gas_cost: int
    total_cost_bps: int
    last_updated: int

    @classmethod
    def build(
        cls,
        *,
        funding_rate: int = 0,
        borrow_rate: int = 0,
        management_fee: int = 0,
        slippage_cost: int = 0,
        gas_cost: int = 0,
        last_updated: int = 0,
    ) -> CostBreakdown:
        total = funding_rate + borrow_rate + management_fee + slippage_cost + gas_cost
        return cls(
            funding_rate=funding_rate,
            borrow_rate=borrow_rate,
            management_fee=management_fee,
            slippage_cost=slippage_cost,
            gas_cost=gas_cost,
            total_cost_bps=total,
            last_updated=last_updated,
        )


@dataclass(frozen=True)
class ExposureInfo:
    """Read-only view of a strategy, recomputed from live state on every read."""

    strategy_type: StrategyType
    name: str
    underlying_asset: str
    leverage: int
    collateral_ratio: int
    current_exposure: int
    max_capacity: int
    current_cost: int
    risk_score: int
    is_active: bool
    liquidation_price: int


# ---------------------------------------------------------------------------
# TRS venue records
# ---------------------------------------------------------------------------


@dataclass
class CounterpartyAllocation:
    counterparty: str
    target_allocation: int
    current_exposure: int = 0
    max_exposure: int = 0
    is_active: bool = True
    last_quote_time: int = 0


@dataclass(frozen=True)
class CounterpartyInfo:
    counterparty: str
    credit_rating: int
    max_exposure: int
    is_active: bool = True


@dataclass(frozen=True)
class Quote:
    quote_id: str
    counterparty: str
    notional: int
    borrow_rate_bps: int
    collateral_requirement_bps: int
    leverage: int
    valid_until: int


@dataclass
class TRSContractInfo:
    contract_id: str
    counterparty: str
    notional_amount: int
    collateral_amount: int
    borrow_rate_bps: int
    creation_time: int
    maturity_time: int
    status: ContractStatus = ContractStatus.ACTIVE


# ---------------------------------------------------------------------------
# Perpetual / yield records
# ---------------------------------------------------------------------------


@dataclass
class YieldAllocation:
    strategy: Any
    allocation: int
    current_deposit: int = 0
    shares: int = 0
    is_active: bool = True


@dataclass(frozen=True)
class PerpetualPosition:
    position_id: str
    market: str
    size: int
    collateral: int
    leverage: int
    entry_price: int
    is_open: bool = True


# ---------------------------------------------------------------------------
# Optimizer transients
# ---------------------------------------------------------------------------


@dataclass(frozen=True)
class StrategyScore:
    strategy_id: str
    strategy_type: StrategyType | None
    cost_score: int
    risk_score: int
    liquidity_score: int
    reliability_score: int
    capacity_score: int
    total_score: int
    estimated_cost_bps: int | None
    recommended: bool
    allocation_bps: int = 0
    error: str = ""


@dataclass(frozen=True)
class RebalanceInstruction:
    from_strategy: str
    to_strategy: str
    amount: int
    priority: int
    max_slippage: int


@dataclass(frozen=True)
class OptimizationResult:
    scores: tuple[StrategyScore, ...]
    allocations: dict[str, int]
    instructions: tuple[RebalanceInstruction, ...]
    expected_cost_saving: int
    implementation_cost: int
    should_rebalance: bool


@dataclass(frozen=True)
class EmergencyState:
    strategy_id: str
    reason: str
    value: int = 0
    threshold: int = 0


@dataclass(frozen=True)
class PerformanceRecord:
    timestamp: int
    success: bool
    cost_bps: int = 0


# ---------------------------------------------------------------------------
# Bundle records
# ---------------------------------------------------------------------------


@dataclass
class StrategyAllocation:
    """Bundle-side bookkeeping for one exposure strategy (capital, not notional)."""

    strategy: Any
    target_allocation: int
    max_allocation: int = BPS
    min_allocation: int = 0
    current_allocation: int = 0
    is_primary: bool = False
    is_active: bool = True

    @property
    def strategy_id(self) -> str:
        return self.strategy.strategy_id


@dataclass
class YieldStrategyBundle:
    strategies: list[Any] = field(default_factory=list)
    allocations: list[int] = field(default_factory=list)
    deposits: list[int] = field(default_factory=list)
    shares: list[int] = field(default_factory=list)
    max_leverage_ratio: int = 200
    is_active: bool = True

    @property
    def total_deposited(self) -> int:
        return sum(self.deposits)


@dataclass(frozen=True)
class BundleRiskParameters:
    max_total_leverage: int = 500
    max_strategy_count: int = 10
    rebalance_threshold: int = 500
    emergency_threshold: int = 2_000
    max_slippage_tolerance: int = 200
    min_capital_efficiency: int = 5_000
    circuit_breaker_active: bool = False

    def validate(self) -> None:
        if self.max_total_leverage > MAX_LEVERAGE:
            raise CapacityError(
                f"max_total_leverage {self.max_total_leverage} exceeds {MAX_LEVERAGE}",
                code="leverage_too_high",
            )
        if self.max_total_leverage < LEVERAGE_UNIT:
            raise ValidationError("max_total_leverage below 1x")
        if self.max_slippage_tolerance > MAX_SLIPPAGE:
            raise CapacityError(
                f"max_slippage_tolerance {self.max_slippage_tolerance} exceeds {MAX_SLIPPAGE}",
                code="slippage_too_high",
            )
        if self.max_strategy_count <= 0:
            raise ValidationError("max_strategy_count must be positive")


@dataclass(frozen=True)
class BundleStats:
    total_value: int
    total_exposure: int
    current_leverage: int
    capital_efficiency: int
    is_healthy: bool


@dataclass
class PerformanceMetrics:
    """Running bundle counters; ``total_return`` is refreshed by ``get_performance``."""

    total_allocated: int = 0
    total_withdrawn: int = 0
    total_return: int = 0
    total_fees: int = 0
    yield_harvested: int = 0
    rebalance_count: int = 0
    last_rebalance: int = 0


@dataclass(frozen=True)
class InstructionOutcome:
    instruction: RebalanceInstruction
    success: bool
    closed: int = 0
    recovered: int = 0
    reopened: int = 0
    error: str = ""


@dataclass(frozen=True)
class RebalanceReport:
    executed: int
    failed: int
    outcomes: tuple[InstructionOutcome, ...] = ()
    skipped_reason: str = ""


@dataclass(frozen=True)
class ExitReport:
    total_recovered: int
    recovered: dict[str, int] = field(default_factory=dict)
    failures: dict[str, str] = field(default_factory=dict)
