"""Deterministic response validators and the pipeline that orders them."""

from mce.validators.anchor import AnchorPreservationValidator
from mce.validators.base import SessionContext, ValidationResult, Validator
from mce.validators.character import CharacterPreservationValidator
from mce.validators.conflict import ConflictDetectionValidator
from mce.validators.manipulation import GuardResult, ManipulationGuard
from mce.validators.memory_usage import MemoryUsageEnforcer
from mce.validators.pipeline import PipelineResult, StepOutcome, ValidatorPipeline
from mce.validators.refusal import RefusalMaintenanceValidator
from mce.validators.session_store import InMemorySessionStore, SessionStore, SessionSweeper

__all__ = [
    "AnchorPreservationValidator",
    "CharacterPreservationValidator",
    "ConflictDetectionValidator",
    "GuardResult",
    "InMemorySessionStore",
    "ManipulationGuard",
    "MemoryUsageEnforcer",
    "PipelineResult",
    "RefusalMaintenanceValidator",
    "SessionContext",
    "SessionStore",
    "SessionSweeper",
    "StepOutcome",
    "ValidationResult",
    "Validator",
    "ValidatorPipeline",
]
