"""Swap provider protocol — total-return-swap counterparty registry."""
from typing import Protocol

from ..models import CounterpartyInfo, Quote


class SwapProvider(Protocol):
    """Abstract interface for quoting, opening and unwinding TRS contracts."""

    def request_quotes(
        self, asset_id: str, notional: int, maturity: int, leverage: int
    ) -> list[Quote]: ...

    def create_contract(self, quote_id: str, collateral: int) -> str: ...

    def terminate_contract(self, contract_id: str) -> tuple[int, int]:
        """Return ``(final_value, collateral_returned)``."""
        ...

    def settle_contract(self, contract_id: str) -> int: ...

    def mark_to_market(self, contract_id: str) -> int: ...

    def post_collateral(self, contract_id: str, amount: int) -> None: ...

    def withdraw_collateral(self, contract_id: str, amount: int) -> None: ...

    def get_counterparty_info(self, counterparty: str) -> CounterpartyInfo: ...

    def calculate_collateral_requirement(
        self, notional: int, counterparty: str
    ) -> int: ...
