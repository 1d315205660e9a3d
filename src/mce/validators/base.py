"""Shared types for post-generation validators."""

from __future__ import annotations

from collections import Counter, deque
from dataclasses import dataclass, field
from typing import Any, Protocol, Sequence, runtime_checkable

from mce.types import MemoryRecord
from mce.utils import iso_str, utcnow


@dataclass
class SessionContext:
    session_id: str = ""
    user_message: str = ""
    memory_tokens: int = 0
    user_id: str = ""
    mode: str = "truth-general"


@dataclass
class ValidationResult:
    changed: bool
    response: str
    details: dict[str, Any] = field(default_factory=dict)

    @classmethod
    def unchanged(cls, response: str, **details: Any) -> "ValidationResult":
        return cls(changed=False, response=response, details=details)


@runtime_checkable
class Validator(Protocol):
    name: str

    def validate(
        self,
        response: str,
        records: Sequence[MemoryRecord],
        query: str,
        session: SessionContext,
    ) -> ValidationResult: ...

    def stats(self) -> dict[str, Any]: ...


class CorrectionHistory:
    """Bounded log of recent corrections for diagnostics."""

    def __init__(self, size: int = 100) -> None:
        self._items: deque[dict[str, Any]] = deque(maxlen=size)
        self._kinds: Counter[str] = Counter()

    def record(self, kind: str, session: SessionContext, **detail: Any) -> None:
        self._kinds[kind] += 1
        self._items.append(
            {
                "timestamp": iso_str(utcnow()),
                "kind": kind,
                "session_id": session.session_id,
                "mode": session.mode,
                **detail,
            }
        )

    def __len__(self) -> int:
        return len(self._items)

    def summary(self) -> dict[str, Any]:
        return {
            "total_corrections": len(self._items),
            "by_kind": dict(self._kinds),
            "recent": list(self._items)[-10:],
        }
