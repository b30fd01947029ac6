"""
Primitives shared between the control listener and the scheduler.

Both are meant to be used from tasks of a single event loop.
"""

from __future__ import annotations

import asyncio
from typing import Generic, TypeVar

T = TypeVar("T")


class LatestSlot(Generic[T]):
    """
    Single-value hand-off with overwrite-latest semantics.

    A `put` never blocks and replaces any value not taken yet, so the
    reader only ever observes the most recent one.
    """

    def __init__(self) -> None:
        self._value: T | None = None
        self._filled = False

    def put(self, value: T) -> None:
        """Store a value, replacing the pending one if any."""
        self._value = value
        self._filled = True

    def take(self) -> T | None:
        """
        Take the pending value without waiting.

        Returns
        -------
        T | None
            The most recent value, or None if nothing was put since the
            last `take`.
        """
        if not self._filled:
            return None
        value = self._value
        self._value = None
        self._filled = False
        return value

    def pending(self) -> bool:
        """Check whether a value is waiting to be taken."""
        return self._filled


class StatusCell:
    """
    Lock-guarded outcome of the most recent update attempt.

    Holds False until the first attempt completes.
    """

    def __init__(self, succeeded: bool = False) -> None:  # noqa: FBT001, FBT002
        self._succeeded = succeeded
        self._lock = asyncio.Lock()

    async def get(self) -> bool:
        """Read the last outcome."""
        async with self._lock:
            return self._succeeded

    async def set(self, succeeded: bool) -> None:  # noqa: FBT001
        """Overwrite the last outcome."""
        async with self._lock:
            self._succeeded = succeeded
