"""Models package"""

# Persisted pipeline records
from .pipeline_state import (
    BudgetLedger,
    CapabilityClass,
    OperationKind,
    Principal,
    Session,
    SessionFlags,
    SessionState,
    StageOutput,
    TokenUsageRecord,
    WorkflowLogEntry,
    WorkflowStage,
    WorkflowState,
    WorkflowStatus,
    STAGE_CHECKPOINTS,
    STAGE_LABELS,
    STAGE_ORDER,
)

# Trip request models
from .trip_request import TravelParty, TripFormData, TripIntent

__all__ = [
    'BudgetLedger',
    'CapabilityClass',
    'OperationKind',
    'Principal',
    'Session',
    'SessionFlags',
    'SessionState',
    'StageOutput',
    'TokenUsageRecord',
    'WorkflowLogEntry',
    'WorkflowStage',
    'WorkflowState',
    'WorkflowStatus',
    'STAGE_CHECKPOINTS',
    'STAGE_LABELS',
    'STAGE_ORDER',
    'TravelParty',
    'TripFormData',
    'TripIntent',
]
