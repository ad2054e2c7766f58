"""In-memory reference venues for simulation and tests."""
from .oracle import StaticPriceOracle, to_price
from .perpetual_router import InMemoryPerpetualRouter
from .spot_exchange import InMemorySpotExchange
from .swap_provider import InMemorySwapProvider
from .yield_vault import InMemoryYieldStrategy

__all__ = [
    "InMemoryPerpetualRouter",
    "InMemorySpotExchange",
    "InMemorySwapProvider",
    "InMemoryYieldStrategy",
    "StaticPriceOracle",
    "to_price",
]
