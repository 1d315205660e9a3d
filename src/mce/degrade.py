"""Uniform "degrade, don't fail" policy for fail-open call sites."""

from __future__ import annotations

import asyncio
from collections import Counter
from dataclasses import dataclass
from typing import Any, Awaitable, Callable, Generic, TypeVar

import structlog

logger = structlog.get_logger(__name__)

T = TypeVar("T")


@dataclass
class Outcome(Generic[T]):
    ok: bool
    degraded: bool
    reason: str = ""
    value: T | None = None

    @classmethod
    def success(cls, value: T, reason: str = "") -> "Outcome[T]":
        return cls(ok=True, degraded=False, reason=reason, value=value)

    @classmethod
    def fallback(cls, value: T | None, reason: str) -> "Outcome[T]":
        return cls(ok=False, degraded=True, reason=reason, value=value)


class DegradePolicy:
    """Runs a component step and converts any failure into a degraded Outcome.

    Every fail-open site in the engine goes through one of these so that
    failures are logged and counted the same way everywhere.
    """

    def __init__(self) -> None:
        self._degraded: Counter[str] = Counter()
        self._calls: Counter[str] = Counter()

    def call(
        self,
        component: str,
        fn: Callable[[], T],
        fallback: T | None = None,
    ) -> Outcome[T]:
        self._calls[component] += 1
        try:
            return Outcome.success(fn())
        except Exception as exc:
            return self._degrade(component, exc, fallback)

    async def run(
        self,
        component: str,
        factory: Callable[[], Awaitable[T]],
        fallback: T | None = None,
        *,
        timeout: float | None = None,
    ) -> Outcome[T]:
        self._calls[component] += 1
        try:
            if timeout is not None and timeout > 0:
                value = await asyncio.wait_for(factory(), timeout=timeout)
            else:
                value = await factory()
        except asyncio.TimeoutError:
            return self._degrade(component, None, fallback, reason=f"timeout after {timeout:.1f}s")
        except Exception as exc:
            return self._degrade(component, exc, fallback)
        return Outcome.success(value)

    def record(self, component: str, reason: str) -> Outcome[Any]:
        """Register a degradation the caller detected without an exception."""
        self._calls[component] += 1
        return self._degrade(component, None, None, reason=reason)

    def _degrade(
        self,
        component: str,
        exc: BaseException | None,
        fallback: T | None,
        reason: str = "",
    ) -> Outcome[T]:
        self._degraded[component] += 1
        why = reason or f"{type(exc).__name__}: {exc}"
        logger.warning("degraded", component=component, reason=why)
        return Outcome.fallback(fallback, why)

    def stats(self) -> dict[str, dict[str, int]]:
        return {
            name: {"calls": self._calls[name], "degraded": self._degraded[name]}
            for name in sorted(self._calls)
        }
