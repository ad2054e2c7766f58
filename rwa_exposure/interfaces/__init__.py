"""Protocol interfaces for the exposure core and its external venues."""
from .exposure_strategy import ExposureStrategy
from .notifier import Notifier
from .perpetual_router import PerpetualRouter
from .price_oracle import PriceOracle
from .spot_exchange import SpotExchange
from .swap_provider import SwapProvider
from .yield_strategy import YieldStrategy

__all__ = [
    "ExposureStrategy",
    "Notifier",
    "PerpetualRouter",
    "PriceOracle",
    "SpotExchange",
    "SwapProvider",
    "YieldStrategy",
]
