"""Service modules"""
from .factory import Environment, build_environment
from .keeper import Keeper

__all__ = ["Environment", "Keeper", "build_environment"]
