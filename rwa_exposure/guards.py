"""Reentrancy and ownership guards shared by strategies and the bundle."""
from __future__ import annotations

import functools
from collections.abc import Callable
from typing import Any, TypeVar

from .errors import AuthorizationError, ReentrancyError

F = TypeVar("F", bound=Callable[..., Any])


def non_reentrant(method: F) -> F:
    """Fail fast when an instance is re-entered while an operation is in flight.

    The guarded object needs a boolean ``_entered`` attribute and a ``name``.
    """

    @functools.wraps(method)
    def wrapper(self: Any, *args: Any, **kwargs: Any) -> Any:
        if self._entered:
            raise ReentrancyError(
                f"{self.name}: {method.__name__} called during another operation"
            )
        self._entered = True
        try:
            return method(self, *args, **kwargs)
        finally:
            self._entered = False

    return wrapper  # type: ignore[return-value]


def require_owner(owner: str, caller: str, action: str) -> None:
    if not caller or caller != owner:
        raise AuthorizationError(f"{caller or '<anonymous>'} may not {action}")
