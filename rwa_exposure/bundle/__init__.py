"""Bundle orchestration over exposure and yield strategies."""
from .composable import ComposableRWABundle

__all__ = ["ComposableRWABundle"]
