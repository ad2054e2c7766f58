"""Configuration loader — reads config.yaml, interpolates env vars, validates."""
from __future__ import annotations

import logging
import os
import re
from dataclasses import dataclass, field
from pathlib import Path
from typing import Any

import yaml
from dotenv import load_dotenv

from .errors import ExposureError
from .models import BPS, RiskParameters

logger = logging.getLogger(__name__)

DAY = 24 * 60 * 60

# ---------------------------------------------------------------------------
# Frozen config dataclasses
# ---------------------------------------------------------------------------


@dataclass(frozen=True)
class RiskConfig:
    max_leverage: int = 300
    max_position_size: int = 10**15
    liquidation_buffer: int = 2_000
    rebalance_threshold: int = 500
    slippage_limit: int = 100
    emergency_exit_enabled: bool = True

    def to_params(self) -> RiskParameters:
        return RiskParameters(
            max_leverage=self.max_leverage,
            max_position_size=self.max_position_size,
            liquidation_buffer=self.liquidation_buffer,
            rebalance_threshold=self.rebalance_threshold,
            slippage_limit=self.slippage_limit,
            emergency_exit_enabled=self.emergency_exit_enabled,
        )


@dataclass(frozen=True)
class CounterpartyConfig:
    name: str = ""
    target_allocation: int = 0
    max_exposure: int = 0


@dataclass(frozen=True)
class TRSConfig:
    enabled: bool = True
    target_allocation: int = 4_000
    target_leverage: int = 200
    contract_maturity_days: int = 90
    concentration_limit: int = 6_000
    max_counterparties: int = 10
    management_fee_bps: int = 50
    gas_cost_bps: int = 5
    counterparties: tuple[CounterpartyConfig, ...] = ()
    risk: RiskConfig = field(default_factory=RiskConfig)


@dataclass(frozen=True)
class PerpetualConfig:
    enabled: bool = True
    target_allocation: int = 3_000
    market: str = "RWA-PERP"
    base_leverage: int = 200
    min_leverage: int = 100
    max_leverage: int = 300
    funding_threshold: int = 100
    leverage_adjustment_factor: int = 2_000
    funding_history_size: int = 24
    funding_update_interval: int = 3600
    max_yield_allocation: int = 5_000
    management_fee_bps: int = 50
    trading_fee_bps: int = 10
    gas_cost_bps: int = 5
    yield_allocations: dict[str, int] = field(default_factory=dict)
    risk: RiskConfig = field(default_factory=RiskConfig)


@dataclass(frozen=True)
class DirectTokenConfig:
    enabled: bool = True
    target_allocation: int = 2_000
    yield_buffer_bps: int = 2_000
    management_fee_bps: int = 25
    gas_cost_bps: int = 5
    yield_allocations: dict[str, int] = field(default_factory=dict)
    risk: RiskConfig = field(default_factory=RiskConfig)


@dataclass(frozen=True)
class StrategiesConfig:
    underlying_asset: str = "RWA"
    base_asset: str = "USDC"
    min_rebalance_interval: int = 3600
    trs: TRSConfig = field(default_factory=TRSConfig)
    perpetual: PerpetualConfig = field(default_factory=PerpetualConfig)
    direct_token: DirectTokenConfig = field(default_factory=DirectTokenConfig)


@dataclass(frozen=True)
class OptimizerConfig:
    cost_weight: int = 30
    risk_weight: int = 25
    liquidity_weight: int = 20
    reliability_weight: int = 15
    capacity_weight: int = 10
    min_score: int = 40
    min_cost_saving_bps: int = 10
    gas_cost_per_instruction_bps: int = 5
    slippage_estimate_bps: int = 10
    max_slippage_bps: int = 100
    emergency_cost_bps: int = 2_000
    emergency_risk_score: int = 90
    max_consecutive_failures: int = 3
    performance_history_size: int = 50
    time_horizon_days: int = 30

    @property
    def time_horizon(self) -> int:
        return self.time_horizon_days * DAY

    @property
    def total_weight(self) -> int:
        return (
            self.cost_weight
            + self.risk_weight
            + self.liquidity_weight
            + self.reliability_weight
            + self.capacity_weight
        )


@dataclass(frozen=True)
class BundleConfig:
    bundle_id: str = "rwa-bundle"
    owner: str = "admin"
    min_rebalance_interval: int = 3600
    max_total_leverage: int = 500
    max_strategy_count: int = 10
    rebalance_threshold: int = 500
    emergency_threshold: int = 2_000
    max_slippage_tolerance: int = 200
    min_capital_efficiency: int = 5_000
    max_leverage_ratio: int = 200
    yield_allocations: dict[str, int] = field(default_factory=dict)


@dataclass(frozen=True)
class SimCounterpartyConfig:
    name: str = ""
    credit_rating: int = 5
    max_exposure: int = 0
    borrow_rate_bps: int = 500
    collateral_requirement_bps: int = 5_000


@dataclass(frozen=True)
class SimulationConfig:
    prices: dict[str, float] = field(default_factory=dict)
    counterparties: tuple[SimCounterpartyConfig, ...] = ()
    funding_rates: dict[str, int] = field(default_factory=dict)
    yield_venues: dict[str, int] = field(default_factory=dict)
    exchange_fee_bps: int = 30
    quote_validity: int = 300


@dataclass(frozen=True)
class KeeperConfig:
    check_interval_minutes: int = 15
    record_funding: bool = True
    harvest: bool = True
    rebalance: bool = True
    status_report: bool = True


@dataclass(frozen=True)
class PythConfig:
    hermes_url: str = "https://hermes.pyth.network/v2/updates/price/latest"
    feeds: dict[str, str] = field(default_factory=dict)


@dataclass(frozen=True)
class PriceOracleConfig:
    provider: str = "static"
    pyth: PythConfig = field(default_factory=PythConfig)


@dataclass(frozen=True)
class TelegramConfig:
    enabled: bool = False
    alert_bot_token: str = ""
    log_bot_token: str = ""
    chat_id: str = ""


@dataclass(frozen=True)
class NotificationsConfig:
    telegram: TelegramConfig = field(default_factory=TelegramConfig)


@dataclass(frozen=True)
class AppConfig:
    strategies: StrategiesConfig = field(default_factory=StrategiesConfig)
    optimizer: OptimizerConfig = field(default_factory=OptimizerConfig)
    bundle: BundleConfig = field(default_factory=BundleConfig)
    simulation: SimulationConfig = field(default_factory=SimulationConfig)
    keeper: KeeperConfig = field(default_factory=KeeperConfig)
    price_oracle: PriceOracleConfig = field(default_factory=PriceOracleConfig)
    notifications: NotificationsConfig = field(default_factory=NotificationsConfig)


# ---------------------------------------------------------------------------
# Env interpolation
# ---------------------------------------------------------------------------

_ENV_VAR_RE = re.compile(r"\$\{([^}]+)}")


def _interpolate_env(value: Any) -> Any:
    """Recursively replace ${VAR} references with environment variable values."""
    if isinstance(value, str):
        return _ENV_VAR_RE.sub(lambda m: os.environ.get(m.group(1), ""), value)
    if isinstance(value, dict):
        return {k: _interpolate_env(v) for k, v in value.items()}
    if isinstance(value, list):
        return [_interpolate_env(item) for item in value]
    return value


# ---------------------------------------------------------------------------
# YAML → dataclass builders
# ---------------------------------------------------------------------------


def _int_map(raw: dict[str, Any] | None) -> dict[str, int]:
    return {str(k): int(v) for k, v in (raw or {}).items()}


def _build_risk(raw: dict[str, Any]) -> RiskConfig:
    base = RiskConfig()
    return RiskConfig(
        max_leverage=int(raw.get("max_leverage", base.max_leverage)),
        max_position_size=int(raw.get("max_position_size", base.max_position_size)),
        liquidation_buffer=int(raw.get("liquidation_buffer", base.liquidation_buffer)),
        rebalance_threshold=int(raw.get("rebalance_threshold", base.rebalance_threshold)),
        slippage_limit=int(raw.get("slippage_limit", base.slippage_limit)),
        emergency_exit_enabled=bool(raw.get("emergency_exit_enabled", base.emergency_exit_enabled)),
    )


def _build_trs(raw: dict[str, Any]) -> TRSConfig:
    counterparties = tuple(
        CounterpartyConfig(
            name=c.get("name", ""),
            target_allocation=int(c.get("target_allocation", 0)),
            max_exposure=int(c.get("max_exposure", 0)),
        )
        for c in raw.get("counterparties", [])
    )
    return TRSConfig(
        enabled=bool(raw.get("enabled", True)),
        target_allocation=int(raw.get("target_allocation", 4_000)),
        target_leverage=int(raw.get("target_leverage", 200)),
        contract_maturity_days=int(raw.get("contract_maturity_days", 90)),
        concentration_limit=int(raw.get("concentration_limit", 6_000)),
        max_counterparties=int(raw.get("max_counterparties", 10)),
        management_fee_bps=int(raw.get("management_fee_bps", 50)),
        gas_cost_bps=int(raw.get("gas_cost_bps", 5)),
        counterparties=counterparties,
        risk=_build_risk(raw.get("risk", {})),
    )


def _build_perpetual(raw: dict[str, Any]) -> PerpetualConfig:
    return PerpetualConfig(
        enabled=bool(raw.get("enabled", True)),
        target_allocation=int(raw.get("target_allocation", 3_000)),
        market=raw.get("market", "RWA-PERP"),
        base_leverage=int(raw.get("base_leverage", 200)),
        min_leverage=int(raw.get("min_leverage", 100)),
        max_leverage=int(raw.get("max_leverage", 300)),
        funding_threshold=int(raw.get("funding_threshold", 100)),
        leverage_adjustment_factor=int(raw.get("leverage_adjustment_factor", 2_000)),
        funding_history_size=int(raw.get("funding_history_size", 24)),
        funding_update_interval=int(raw.get("funding_update_interval", 3600)),
        max_yield_allocation=int(raw.get("max_yield_allocation", 5_000)),
        management_fee_bps=int(raw.get("management_fee_bps", 50)),
        trading_fee_bps=int(raw.get("trading_fee_bps", 10)),
        gas_cost_bps=int(raw.get("gas_cost_bps", 5)),
        yield_allocations=_int_map(raw.get("yield_allocations")),
        risk=_build_risk(raw.get("risk", {})),
    )


def _build_direct_token(raw: dict[str, Any]) -> DirectTokenConfig:
    return DirectTokenConfig(
        enabled=bool(raw.get("enabled", True)),
        target_allocation=int(raw.get("target_allocation", 2_000)),
        yield_buffer_bps=int(raw.get("yield_buffer_bps", 2_000)),
        management_fee_bps=int(raw.get("management_fee_bps", 25)),
        gas_cost_bps=int(raw.get("gas_cost_bps", 5)),
        yield_allocations=_int_map(raw.get("yield_allocations")),
        risk=_build_risk(raw.get("risk", {})),
    )


def _build_strategies(raw: dict[str, Any]) -> StrategiesConfig:
    return StrategiesConfig(
        underlying_asset=raw.get("underlying_asset", "RWA"),
        base_asset=raw.get("base_asset", "USDC"),
        min_rebalance_interval=int(raw.get("min_rebalance_interval", 3600)),
        trs=_build_trs(raw.get("trs", {})),
        perpetual=_build_perpetual(raw.get("perpetual", {})),
        direct_token=_build_direct_token(raw.get("direct_token", {})),
    )


def _build_optimizer(raw: dict[str, Any]) -> OptimizerConfig:
    weights = raw.get("weights", {})
    return OptimizerConfig(
        cost_weight=int(weights.get("cost", 30)),
        risk_weight=int(weights.get("risk", 25)),
        liquidity_weight=int(weights.get("liquidity", 20)),
        reliability_weight=int(weights.get("reliability", 15)),
        capacity_weight=int(weights.get("capacity", 10)),
        min_score=int(raw.get("min_score", 40)),
        min_cost_saving_bps=int(raw.get("min_cost_saving_bps", 10)),
        gas_cost_per_instruction_bps=int(raw.get("gas_cost_per_instruction_bps", 5)),
        slippage_estimate_bps=int(raw.get("slippage_estimate_bps", 10)),
        max_slippage_bps=int(raw.get("max_slippage_bps", 100)),
        emergency_cost_bps=int(raw.get("emergency_cost_bps", 2_000)),
        emergency_risk_score=int(raw.get("emergency_risk_score", 90)),
        max_consecutive_failures=int(raw.get("max_consecutive_failures", 3)),
        performance_history_size=int(raw.get("performance_history_size", 50)),
        time_horizon_days=int(raw.get("time_horizon_days", 30)),
    )


def _build_bundle(raw: dict[str, Any]) -> BundleConfig:
    return BundleConfig(
        bundle_id=raw.get("bundle_id", "rwa-bundle"),
        owner=raw.get("owner", "admin"),
        min_rebalance_interval=int(raw.get("min_rebalance_interval", 3600)),
        max_total_leverage=int(raw.get("max_total_leverage", 500)),
        max_strategy_count=int(raw.get("max_strategy_count", 10)),
        rebalance_threshold=int(raw.get("rebalance_threshold", 500)),
        emergency_threshold=int(raw.get("emergency_threshold", 2_000)),
        max_slippage_tolerance=int(raw.get("max_slippage_tolerance", 200)),
        min_capital_efficiency=int(raw.get("min_capital_efficiency", 5_000)),
        max_leverage_ratio=int(raw.get("max_leverage_ratio", 200)),
        yield_allocations=_int_map(raw.get("yield_allocations")),
    )


def _build_simulation(raw: dict[str, Any]) -> SimulationConfig:
    counterparties = tuple(
        SimCounterpartyConfig(
            name=c.get("name", ""),
            credit_rating=int(c.get("credit_rating", 5)),
            max_exposure=int(c.get("max_exposure", 0)),
            borrow_rate_bps=int(c.get("borrow_rate_bps", 500)),
            collateral_requirement_bps=int(c.get("collateral_requirement_bps", 5_000)),
        )
        for c in raw.get("counterparties", [])
    )
    return SimulationConfig(
        prices={str(k): float(v) for k, v in raw.get("prices", {}).items()},
        counterparties=counterparties,
        funding_rates=_int_map(raw.get("funding_rates")),
        yield_venues=_int_map(raw.get("yield_venues")),
        exchange_fee_bps=int(raw.get("exchange_fee_bps", 30)),
        quote_validity=int(raw.get("quote_validity", 300)),
    )


def _build_keeper(raw: dict[str, Any]) -> KeeperConfig:
    return KeeperConfig(
        check_interval_minutes=int(raw.get("check_interval_minutes", 15)),
        record_funding=bool(raw.get("record_funding", True)),
        harvest=bool(raw.get("harvest", True)),
        rebalance=bool(raw.get("rebalance", True)),
        status_report=bool(raw.get("status_report", True)),
    )


def _build_price_oracle(raw: dict[str, Any]) -> PriceOracleConfig:
    pyth_raw = raw.get("pyth", {})
    return PriceOracleConfig(
        provider=raw.get("provider", "static"),
        pyth=PythConfig(
            hermes_url=pyth_raw.get("hermes_url", PythConfig.hermes_url),
            feeds=dict(pyth_raw.get("feeds", {})),
        ),
    )


def _build_notifications(raw: dict[str, Any]) -> NotificationsConfig:
    tg = raw.get("telegram", {})
    return NotificationsConfig(
        telegram=TelegramConfig(
            enabled=bool(tg.get("enabled", False)),
            alert_bot_token=tg.get("alert_bot_token", ""),
            log_bot_token=tg.get("log_bot_token", ""),
            chat_id=str(tg.get("chat_id", "")),
        ),
    )


def build_config(raw: dict[str, Any]) -> AppConfig:
    """Build and validate an ``AppConfig`` from an already-parsed mapping."""
    cfg = AppConfig(
        strategies=_build_strategies(raw.get("strategies", {})),
        optimizer=_build_optimizer(raw.get("optimizer", {})),
        bundle=_build_bundle(raw.get("bundle", {})),
        simulation=_build_simulation(raw.get("simulation", {})),
        keeper=_build_keeper(raw.get("keeper", {})),
        price_oracle=_build_price_oracle(raw.get("price_oracle", {})),
        notifications=_build_notifications(raw.get("notifications", {})),
    )
    _validate(cfg)
    return cfg


# ---------------------------------------------------------------------------
# Public API
# ---------------------------------------------------------------------------


def load_config(config_path: str | Path | None = None) -> AppConfig:
    """Load and validate application configuration from YAML + .env.

    Args:
        config_path: Path to config.yaml. Defaults to ``config.yaml`` in the
            project root (one level up from the package).
    """
    load_dotenv()

    if config_path is None:
        config_path = Path(__file__).resolve().parent.parent / "config.yaml"
    config_path = Path(config_path)

    if not config_path.exists():
        raise FileNotFoundError(f"Config file not found: {config_path}")

    with open(config_path) as f:
        raw = yaml.safe_load(f) or {}

    cfg = build_config(_interpolate_env(raw))
    logger.info("Configuration loaded from %s", config_path)
    return cfg


def _validate(cfg: AppConfig) -> None:
    """Raise on invalid configuration."""
    if not cfg.bundle.owner:
        raise ValueError("bundle.owner must be set")

    opt = cfg.optimizer
    if opt.total_weight != 100:
        raise ValueError(f"Optimizer weights must sum to 100, got {opt.total_weight}")

    strategies = cfg.strategies
    enabled = [
        (name, sc)
        for name, sc in (
            ("trs", strategies.trs),
            ("perpetual", strategies.perpetual),
            ("direct_token", strategies.direct_token),
        )
        if sc.enabled
    ]
    if not enabled:
        raise ValueError("At least one exposure strategy must be enabled")

    total_target = sum(sc.target_allocation for _, sc in enabled)
    if total_target > BPS:
        raise ValueError(f"Strategy target allocations sum to {total_target} bps (max {BPS})")

    for name, sc in enabled:
        try:
            sc.risk.to_params().validate()
        except ExposureError as e:
            raise ValueError(f"Strategy '{name}' has invalid risk settings: {e}") from e

    if strategies.trs.target_leverage > strategies.trs.risk.max_leverage:
        raise ValueError("TRS target_leverage exceeds its risk max_leverage")
    perp = strategies.perpetual
    if not perp.min_leverage <= perp.base_leverage <= perp.max_leverage <= perp.risk.max_leverage:
        raise ValueError(
            "Perpetual leverage must satisfy min <= base <= max <= risk.max_leverage"
        )

    sim = cfg.simulation
    known = {c.name for c in sim.counterparties}
    if strategies.trs.enabled:
        if not strategies.trs.counterparties:
            raise ValueError("TRS strategy needs at least one counterparty")
        for cp in strategies.trs.counterparties:
            if cp.name not in known:
                raise ValueError(f"TRS counterparty '{cp.name}' is not in simulation.counterparties")

    for allocations in (
        strategies.perpetual.yield_allocations,
        strategies.direct_token.yield_allocations,
        cfg.bundle.yield_allocations,
    ):
        for venue in allocations:
            if venue not in sim.yield_venues:
                raise ValueError(f"Yield venue '{venue}' is not in simulation.yield_venues")

    feeds = cfg.price_oracle.pyth.feeds
    if strategies.underlying_asset not in sim.prices and strategies.underlying_asset not in feeds:
        raise ValueError(
            f"No price source for underlying asset '{strategies.underlying_asset}'"
        )

    tg = cfg.notifications.telegram
    if tg.enabled and not (tg.alert_bot_token and tg.chat_id):
        raise ValueError("Telegram notifications need alert_bot_token and chat_id")
