"""End-to-end flows through a configured environment: allocate, move prices, unwind."""
from __future__ import annotations

import pytest

from rwa_exposure.cli import _print_optimization, _print_simulation
from rwa_exposure.config import load_config
from rwa_exposure.errors import CircuitBreakerError
from rwa_exposure.services import build_environment
from rwa_exposure.services.factory import Environment
from rwa_exposure.venues import to_price


@pytest.fixture()
def env(sample_yaml_path, clock) -> Environment:
    environment = build_environment(load_config(sample_yaml_path), clock)
    environment.price_feed = None
    environment.notifiers = []
    return environment


class TestEnvironment:
    def test_wiring_follows_config(self, env) -> None:
        assert [s.strategy_id for s in env.strategies] == ["trs", "perpetual", "direct_token"]
        assert [a.target_allocation for a in env.bundle.get_exposure_strategies()] == [4_000, 3_000, 2_000]
        assert [c.counterparty for c in env.strategy("trs").get_counterparties()] == ["alpha", "beta"]
        assert env.oracle.get_price("RWA") == to_price(100)
        assert env.bundle.get_yield_bundle().allocations == [10_000]

    def test_vault_per_consumer(self, env) -> None:
        names = sorted(v.name for v in env.yield_vaults)
        assert names == ["lending", "lending", "treasury"]


class TestCapitalLifecycle:
    def test_allocate_and_unwind_after_rally(self, env) -> None:
        exposures = env.bundle.allocate_capital(1_000_000)
        assert exposures == {"trs": 800_000, "perpetual": 300_000, "direct_token": 160_000}

        env.oracle.set_price("RWA", to_price(110))
        recovered = env.bundle.withdraw_capital(1_000_000)

        # TRS 400k + 80k, perp 300k + 30k, spot 214_924, yield 100k
        assert recovered == 1_124_924
        assert env.bundle.get_performance().total_return == 124_924
        assert env.bundle.get_bundle_stats().total_exposure == 0

    def test_emergency_exit_then_breaker_blocks_capital(self, env) -> None:
        env.bundle.allocate_capital(1_000_000)

        report = env.bundle.emergency_exit_all(caller="admin")

        assert report.failures == {}
        assert env.bundle.total_exposure() == 0
        assert env.bundle.idle_capital == report.total_recovered
        with pytest.raises(CircuitBreakerError):
            env.bundle.allocate_capital(1)

        env.bundle.set_circuit_breaker(False, caller="admin")
        assert env.bundle.withdraw_capital(report.total_recovered) == report.total_recovered


class TestCliOutput:
    def test_simulation_output(self, env, capsys) -> None:
        _print_simulation(env, 1_000_000)
        out = capsys.readouterr().out
        assert "Allocated 1,000,000" in out
        assert "trs" in out
        assert "healthy" in out

    def test_optimization_output(self, env, capsys) -> None:
        _print_optimization(env)
        out = capsys.readouterr().out
        assert "Strategy scores for 1,000,000" in out
        assert "perpetual" in out
