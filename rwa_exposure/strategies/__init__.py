"""Exposure strategy implementations."""
from .base import BaseExposureStrategy, system_clock
from .direct_token import DirectTokenStrategy
from .perpetual import PerpetualExposureStrategy
from .trs import TRSExposureStrategy
from .yield_book import YieldBook

__all__ = [
    "BaseExposureStrategy",
    "DirectTokenStrategy",
    "PerpetualExposureStrategy",
    "TRSExposureStrategy",
    "YieldBook",
    "system_clock",
]
