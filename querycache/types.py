"""
Central Type Definitions for querycache

Type aliases and helpers shared by the cache tiers.
"""

from __future__ import annotations

import inspect
from collections.abc import Awaitable, Callable
from typing import Any, Final, TypeVar

T = TypeVar("T")


class _Missing:
    """Marker type for "no cache entry", distinct from a cached ``None``."""

    _instance: _Missing | None = None

    def __new__(cls) -> _Missing:
        if cls._instance is None:
            cls._instance = super().__new__(cls)
        return cls._instance

    def __repr__(self) -> str:
        return "MISSING"

    def __bool__(self) -> bool:
        return False


MISSING: Final[Any] = _Missing()

# Producers may be plain callables or coroutine functions
Producer = Callable[[], T] | Callable[[], Awaitable[T]]


async def resolve_producer(producer: Producer[T]) -> T:
    """Call ``producer`` and await its result when it is awaitable."""
    value = producer()
    if inspect.isawaitable(value):
        value = await value
    return value  # type: ignore[return-value]
