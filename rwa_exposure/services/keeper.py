"""Keeper — periodic upkeep of the bundle: prices, funding, harvest, risk, rebalance."""
from __future__ import annotations

import asyncio
import logging
from datetime import datetime, timezone

from ..errors import CircuitBreakerError, ExposureError, TimingError
from ..models import PRICE_PRECISION, EmergencyState, RebalanceReport
from ..strategies import PerpetualExposureStrategy
from .factory import Environment

logger = logging.getLogger(__name__)


class Keeper:
    """Drives one bundle through its maintenance cycle and reports to notifiers."""

    def __init__(self, env: Environment) -> None:
        self._env = env
        self._config = env.config.keeper
        self._bundle = env.bundle
        self._owner = env.config.bundle.owner

    # ------------------------------------------------------------------
    # Formatting helpers
    # ------------------------------------------------------------------

    @staticmethod
    def _now_str() -> str:
        return datetime.now(timezone.utc).strftime("%Y-%m-%d %H:%M:%S")

    @staticmethod
    def _bps(value: int) -> str:
        return f"{value / 100:.2f}%"

    def build_status_report(self) -> str:
        stats = self._bundle.get_bundle_stats()
        perf = self._bundle.get_performance()
        lines = [
            f"📊 {self._bundle.name}",
            "",
            "✅ Healthy" if stats.is_healthy else "⚠️ Unhealthy",
            f"Value: {stats.total_value:,} · Exposure: {stats.total_exposure:,}",
            f"Leverage: {stats.current_leverage / 100:.2f}x · "
            f"Capital efficiency: {self._bps(stats.capital_efficiency)}",
            f"Return: {perf.total_return:,} · Fees: {perf.total_fees:,} · "
            f"Harvested: {perf.yield_harvested:,}",
        ]
        if self._bundle.circuit_breaker_active:
            lines.append(f"🛑 Circuit breaker: {self._bundle.circuit_breaker_reason or 'manual'}")
        lines.append("")
        for alloc in self._bundle.get_exposure_strategies():
            try:
                info = alloc.strategy.get_exposure_info()
            except ExposureError as e:
                lines.append(f"{alloc.strategy_id}: unreadable ({e})")
                continue
            lines.append(
                f"{alloc.strategy_id} · target {self._bps(alloc.target_allocation)} · "
                f"capital {alloc.current_allocation:,} · exposure {info.current_exposure:,} · "
                f"{info.leverage / 100:.2f}x · cost {info.current_cost} bps · risk {info.risk_score}"
            )
        lines += ["", f"{self._now_str()} UTC"]
        return "\n".join(lines)

    @staticmethod
    def _build_emergency_alert(states: list[EmergencyState]) -> str:
        body = "\n".join(
            f"{s.strategy_id}: {s.reason} ({s.value} vs {s.threshold})" for s in states
        )
        return f"🚨 Emergency conditions detected\n\n{body}\n\nNew capital is blocked."

    # ------------------------------------------------------------------
    # Notification dispatch
    # ------------------------------------------------------------------

    async def _send_log(self, message: str, silent: bool = True) -> None:
        for notifier in self._env.notifiers:
            try:
                await notifier.send_log(message, silent=silent)
            except Exception as e:
                logger.error("Notifier send_log failed: %s", e)

    async def _send_alert(self, message: str, subject: str = "") -> None:
        for notifier in self._env.notifiers:
            try:
                await notifier.send_alert(message, subject=subject)
            except Exception as e:
                logger.error("Notifier send_alert failed: %s", e)

    # ------------------------------------------------------------------
    # Upkeep steps
    # ------------------------------------------------------------------

    async def refresh_prices(self) -> int:
        feed = self._env.price_feed
        if feed is None:
            return 0
        updated = await feed.refresh(self._env.oracle)
        if not updated:
            logger.warning("Price refresh returned nothing, keeping previous prices")
        for asset, price in sorted(self._env.oracle.prices.items()):
            logger.debug("Price %s: %.4f", asset, price / PRICE_PRECISION)
        return updated

    def record_funding(self) -> int:
        recorded = 0
        for strategy in self._env.strategies:
            if not isinstance(strategy, PerpetualExposureStrategy):
                continue
            try:
                strategy.record_funding_rate()
                recorded += 1
            except TimingError as e:
                logger.debug("Funding not recorded for %s: %s", strategy.strategy_id, e)
            except ExposureError as e:
                logger.warning("Funding read failed for %s: %s", strategy.strategy_id, e)
        return recorded

    async def check_emergencies(self) -> list[EmergencyState]:
        states = self._env.optimizer.check_emergency_states(self._bundle.strategies)
        if not states:
            return states
        await self._send_alert(
            self._build_emergency_alert(states), subject="🚨 CRITICAL: emergency thresholds"
        )
        if not self._bundle.circuit_breaker_active:
            reasons = ", ".join(sorted({f"{s.strategy_id}:{s.reason}" for s in states}))
            self._bundle.set_circuit_breaker(True, reasons, caller=self._owner)
        return states

    def rebalance(self) -> RebalanceReport | None:
        try:
            report = self._bundle.rebalance_strategies()
        except TimingError as e:
            logger.debug("Rebalance not due: %s", e)
            return None
        except CircuitBreakerError as e:
            logger.info("Rebalance blocked: %s", e)
            return None
        if report.failed:
            logger.warning(
                "Rebalance finished with %d of %d instructions failed",
                report.failed, report.failed + report.executed,
            )
        return report

    def harvest(self) -> int:
        harvested = self._bundle.harvest_yield()
        logger.info("Harvested %d", harvested)
        return harvested

    async def send_status_report(self) -> None:
        await self._send_log(self.build_status_report())

    async def run_once(self) -> None:
        """One full upkeep cycle; a failing step is logged and the later steps still run."""
        steps = [("price refresh", self.refresh_prices)]
        if self._config.record_funding:
            steps.append(("funding", self.record_funding))
        if self._config.harvest:
            steps.append(("harvest", self.harvest))
        steps.append(("emergency check", self.check_emergencies))
        if self._config.rebalance:
            steps.append(("rebalance", self.rebalance))
        if self._config.status_report:
            steps.append(("status report", self.send_status_report))

        for name, step in steps:
            try:
                result = step()
                if asyncio.iscoroutine(result):
                    await result
            except Exception as e:
                logger.error("Keeper step %s failed: %s", name, e)

    async def run_continuous(self, check_interval_minutes: int | None = None) -> None:
        """Run the upkeep loop forever."""
        interval = check_interval_minutes or self._config.check_interval_minutes
        logger.info("Starting keeper (running every %d minutes)", interval)

        while True:
            try:
                await self.run_once()
                await asyncio.sleep(interval * 60)
            except Exception as e:
                logger.error("Error in keeper loop: %s", e)
                await asyncio.sleep(60)
