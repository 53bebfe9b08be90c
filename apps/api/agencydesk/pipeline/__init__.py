from agencydesk.pipeline.errors import (
    ConversionNotPending,
    InvalidTransition,
    NotFound,
    PersistenceFailure,
    PipelineError,
    ValidationError,
    VersionConflict,
)
from agencydesk.pipeline.stages import PIPELINE_MACHINE, STRATEGY_MACHINE, LinearBranchMachine, Stage, Transition

__all__ = [
    "ConversionNotPending",
    "InvalidTransition",
    "LinearBranchMachine",
    "NotFound",
    "PIPELINE_MACHINE",
    "PersistenceFailure",
    "PipelineError",
    "STRATEGY_MACHINE",
    "Stage",
    "Transition",
    "ValidationError",
    "VersionConflict",
]
