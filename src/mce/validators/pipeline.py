"""Ordered post-generation validator pipeline."""

from __future__ import annotations

from dataclasses import dataclass, field
from typing import Any, Sequence

import structlog

from mce.config import ValidatorConfig
from mce.degrade import DegradePolicy
from mce.types import MemoryRecord
from mce.validators.anchor import AnchorPreservationValidator
from mce.validators.base import SessionContext, ValidationResult, Validator
from mce.validators.character import CharacterPreservationValidator
from mce.validators.conflict import ConflictDetectionValidator
from mce.validators.manipulation import GuardResult, ManipulationGuard
from mce.validators.memory_usage import MemoryUsageEnforcer
from mce.validators.refusal import RefusalMaintenanceValidator
from mce.validators.session_store import InMemorySessionStore, SessionStore

logger = structlog.get_logger(__name__)


@dataclass
class StepOutcome:
    name: str
    changed: bool
    degraded: bool = False
    details: dict[str, Any] = field(default_factory=dict)


@dataclass
class PipelineResult:
    correction_applied: bool
    response: str
    steps: list[StepOutcome] = field(default_factory=list)


class ValidatorPipeline:
    """Runs anchor, character, conflict, refusal and memory-usage checks in order.

    Each validator sees the previous one's output. A validator that raises
    is skipped and the response passes through unchanged at that step.
    """

    def __init__(
        self,
        validators: Sequence[Validator] | None = None,
        policy: DegradePolicy | None = None,
        guard: ManipulationGuard | None = None,
    ) -> None:
        self.validators = list(validators) if validators is not None else []
        self.policy = policy or DegradePolicy()
        self.guard = guard or ManipulationGuard()

    @classmethod
    def default(
        cls,
        config: ValidatorConfig | None = None,
        session_store: SessionStore | None = None,
        policy: DegradePolicy | None = None,
    ) -> "ValidatorPipeline":
        cfg = config or ValidatorConfig()
        store = session_store
        if store is None:
            store = InMemorySessionStore(ttl_seconds=cfg.refusal_ttl_seconds)
        return cls(
            validators=[
                AnchorPreservationValidator(cfg.history_size),
                CharacterPreservationValidator(cfg.history_size),
                ConflictDetectionValidator(history_size=cfg.history_size),
                RefusalMaintenanceValidator(store, cfg.history_size),
                MemoryUsageEnforcer(cfg.history_size),
            ],
            policy=policy,
            guard=ManipulationGuard(history_size=cfg.history_size),
        )

    def guard_input(self, user_message: str, session: SessionContext | None = None) -> GuardResult:
        outcome = self.policy.call(
            "manipulation_guard",
            lambda: self.guard.check(user_message, session),
            fallback=GuardResult(blocked=False),
        )
        return outcome.value or GuardResult(blocked=False)

    def run(
        self,
        response: str,
        records: Sequence[MemoryRecord],
        query: str,
        session: SessionContext,
    ) -> PipelineResult:
        current = response
        steps: list[StepOutcome] = []
        for validator in self.validators:
            outcome = self.policy.call(
                f"validator.{validator.name}",
                lambda v=validator, text=current: v.validate(text, records, query, session),
            )
            result: ValidationResult | None = outcome.value
            if not outcome.ok or result is None:
                steps.append(StepOutcome(validator.name, changed=False, degraded=True,
                                         details={"error": outcome.reason}))
                continue
            steps.append(StepOutcome(validator.name, changed=result.changed, details=result.details))
            if result.changed:
                current = result.response
        applied = any(s.changed for s in steps)
        if applied:
            logger.info(
                "response_corrected",
                session_id=session.session_id,
                steps=[s.name for s in steps if s.changed],
            )
        return PipelineResult(correction_applied=applied, response=current, steps=steps)

    def stats(self) -> dict[str, Any]:
        out = {v.name: v.stats() for v in self.validators}
        out[self.guard.name] = self.guard.stats()
        return out
