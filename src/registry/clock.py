"""Height sources for the registry.

The registry never reads wall-clock time. Every operation is stamped with
the current height from an injected HeightSource (a block counter in a
chain deployment, a tick counter in tests).
"""

from __future__ import annotations

from typing import Protocol


class HeightSource(Protocol):
    """Protocol for height providers. Heights never decrease."""

    def height(self) -> int:
        """Get the current height."""
        ...


class TickClock:
    """Manually advanced height counter.

    Usage:
        clock = TickClock()
        clock.advance()       # height 1
        clock.advance(10)     # height 11
        clock.set(50)         # jump forward
    """

    _height: int

    def __init__(self, start: int = 0) -> None:
        if start < 0:
            raise ValueError(f"start height must be non-negative, got {start}")
        self._height = start

    def height(self) -> int:
        return self._height

    def advance(self, n: int = 1) -> int:
        """Advance by n heights and return the new height."""
        if n < 0:
            raise ValueError(f"heights never decrease, got advance({n})")
        self._height += n
        return self._height

    def set(self, height: int) -> None:
        """Jump to an absolute height. Must not move backwards."""
        if height < self._height:
            raise ValueError(
                f"heights never decrease: current {self._height}, requested {height}"
            )
        self._height = height
