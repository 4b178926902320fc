"""
Pipeline State Schema
=====================
Persisted records for sessions, budget ledgers, token usage and workflow runs.
All records are pydantic models so every store adapter serialises them the same way.
"""

from datetime import datetime, timedelta, timezone
from decimal import Decimal, ROUND_HALF_UP, ROUND_UP
from enum import Enum
from typing import Any, Dict, List, Optional

from pydantic import BaseModel, Field

USD_QUANTUM = Decimal("0.0001")
RECORD_QUANTUM = Decimal("0.000001")


def utc_now() -> datetime:
    return datetime.now(timezone.utc)


def to_usd(value: Any) -> Decimal:
    """Normalise a money amount to 4-decimal fixed point"""
    return Decimal(str(value)).quantize(USD_QUANTUM, rounding=ROUND_HALF_UP)


def to_record_usd(value: Any) -> Decimal:
    """Round a cost up to the 6-decimal precision spend is booked at"""
    return Decimal(str(value)).quantize(RECORD_QUANTUM, rounding=ROUND_UP)


class SessionState(str, Enum):
    """Session lifecycle states"""
    ACTIVE = "active"
    EXPIRED = "expired"
    FLUSHED = "flushed"


class WorkflowStatus(str, Enum):
    """Workflow run status as seen by the polling client"""
    PENDING = "pending"
    PROCESSING = "processing"
    COMPLETE = "complete"
    ERROR = "error"


class WorkflowStage(str, Enum):
    """The four fixed pipeline stages"""
    DATA_GATHER = "data-gather"
    INFO_GATHER = "info-gather"
    PLAN = "plan"
    COMPILE = "compile"


class OperationKind(str, Enum):
    """Billable operation kinds"""
    EMBEDDING = "embedding"
    GENERATION = "generation"
    SEARCH = "search"
    SUMMARIZATION = "summarization"


class CapabilityClass(str, Enum):
    """Provider capability classes used for routing"""
    FAST_SIMPLE = "fast-simple"
    BALANCED = "balanced"
    DEEP_REASONING = "deep-reasoning"


STAGE_ORDER: List[WorkflowStage] = [
    WorkflowStage.DATA_GATHER,
    WorkflowStage.INFO_GATHER,
    WorkflowStage.PLAN,
    WorkflowStage.COMPILE,
]

STAGE_CHECKPOINTS: Dict[WorkflowStage, int] = {
    WorkflowStage.DATA_GATHER: 25,
    WorkflowStage.INFO_GATHER: 50,
    WorkflowStage.PLAN: 75,
    WorkflowStage.COMPILE: 100,
}

STAGE_LABELS: Dict[WorkflowStage, str] = {
    WorkflowStage.DATA_GATHER: "Data Gatherer",
    WorkflowStage.INFO_GATHER: "Information Gatherer",
    WorkflowStage.PLAN: "Planning Strategist",
    WorkflowStage.COMPILE: "Content Compiler",
}

# Summarization is billed as generation
BREAKDOWN_BUCKETS: Dict[OperationKind, str] = {
    OperationKind.EMBEDDING: "embedding",
    OperationKind.GENERATION: "generation",
    OperationKind.SEARCH: "search",
    OperationKind.SUMMARIZATION: "generation",
}


class Principal(BaseModel):
    """Identity a request acts as. No user id means anonymous."""
    user_id: Optional[str] = None
    is_service: bool = False

    def can_access(self, owner_id: Optional[str]) -> bool:
        """Owner, anonymous records and the service identity pass"""
        if self.is_service or owner_id is None:
            return True
        return self.user_id == owner_id


SERVICE_PRINCIPAL = Principal(user_id="service", is_service=True)


class SessionFlags(BaseModel):
    """Boolean status flags for a session"""
    vectorized: bool = False
    has_result: bool = False
    budget_exceeded: bool = False


class Session(BaseModel):
    """A user's planning run"""

    session_id: str
    user_id: Optional[str] = None
    state: SessionState = SessionState.ACTIVE
    created_at: datetime = Field(default_factory=utc_now)
    last_activity_at: datetime = Field(default_factory=utc_now)
    expires_at: datetime
    raw_inputs: List[Dict[str, Any]] = Field(default_factory=list)
    flags: SessionFlags = Field(default_factory=SessionFlags)
    metadata: Dict[str, Any] = Field(default_factory=lambda: {"form_count": 0})

    @property
    def is_active(self) -> bool:
        return self.state == SessionState.ACTIVE

    def is_expired(self, now: Optional[datetime] = None) -> bool:
        return self.expires_at <= (now or utc_now())

    def touch(self, ttl_minutes: int, now: Optional[datetime] = None) -> None:
        """Record activity and push the expiry window forward"""
        now = now or utc_now()
        self.last_activity_at = now
        self.expires_at = now + timedelta(minutes=ttl_minutes)

    def add_raw_input(self, form_data: Dict[str, Any]) -> None:
        self.raw_inputs.append(form_data)
        self.metadata["form_count"] = len(self.raw_inputs)


class BudgetLedger(BaseModel):
    """
    Per-session spend ledger. Mutated only through the budget guard.

    Spend is booked at the same 6-decimal precision as usage records, so the
    ledger always equals the sum of its records; summaries report 4 decimals.
    """

    session_id: str
    total_spent_usd: Decimal = Decimal("0.0000")
    limit_usd: Decimal = Decimal("5.0000")
    operations_count: int = 0
    over_budget_flag: bool = False
    breakdown: Dict[str, Decimal] = Field(default_factory=lambda: {
        "embedding": Decimal("0.0000"),
        "generation": Decimal("0.0000"),
        "search": Decimal("0.0000"),
    })
    last_operation_at: Optional[datetime] = None
    created_at: datetime = Field(default_factory=utc_now)
    updated_at: datetime = Field(default_factory=utc_now)

    @property
    def is_over_budget(self) -> bool:
        return self.over_budget_flag or self.total_spent_usd > self.limit_usd

    @property
    def remaining_usd(self) -> Decimal:
        return max(Decimal("0.0000"), self.limit_usd - self.total_spent_usd)

    def apply_spend(self, delta: Decimal, bucket: str, now: Optional[datetime] = None) -> None:
        """Add a committed cost. Negative deltas are rejected so spend never decreases."""
        delta = to_record_usd(delta)
        if delta < 0:
            raise ValueError(f"Spend delta must be non-negative, got {delta}")

        now = now or utc_now()
        self.total_spent_usd = self.total_spent_usd + delta
        self.breakdown[bucket] = self.breakdown.get(bucket, Decimal("0")) + delta
        self.operations_count += 1
        self.last_operation_at = now
        self.updated_at = now

    def to_summary(self) -> Dict[str, Any]:
        return {
            "session_id": self.session_id,
            "total_spent_usd": float(to_usd(self.total_spent_usd)),
            "limit_usd": float(self.limit_usd),
            "remaining_usd": float(to_usd(self.remaining_usd)),
            "operations_count": self.operations_count,
            "is_over_budget": self.is_over_budget,
            "breakdown": {key: float(to_usd(value)) for key, value in self.breakdown.items()},
        }


class TokenUsageRecord(BaseModel):
    """Append-only usage log entry"""

    record_id: str
    session_id: str
    request_id: str
    provider: str
    operation: OperationKind
    model_name: Optional[str] = None
    prompt_tokens: int = 0
    completion_tokens: int = 0
    total_tokens: int = 0
    cost_usd: Decimal = Decimal("0")
    created_at: datetime = Field(default_factory=utc_now)


class WorkflowLogEntry(BaseModel):
    """One line of the client-visible workflow log"""
    step: int
    timestamp: datetime = Field(default_factory=utc_now)
    message: str
    stage: Optional[WorkflowStage] = None
    level: str = "info"


class StageOutput(BaseModel):
    """Recorded output of one stage; presence marks the stage as done"""
    stage: WorkflowStage
    data: Any = None
    degraded: bool = False
    reason: Optional[str] = None
    provider: Optional[str] = None
    routing: Dict[str, Any] = Field(default_factory=dict)  # router metadata: attempts, fallback_depth, latency_ms
    completed_at: datetime = Field(default_factory=utc_now)


class WorkflowState(BaseModel):
    """Persisted, pollable record of one generation run"""

    workflow_id: str
    session_id: str
    status: WorkflowStatus = WorkflowStatus.PENDING
    current_stage: WorkflowStage = WorkflowStage.DATA_GATHER
    progress_percent: int = 0
    stage_outputs: Dict[str, StageOutput] = Field(default_factory=dict)
    degraded_stages: List[WorkflowStage] = Field(default_factory=list)
    result: Optional[Dict[str, Any]] = None
    error_detail: Optional[str] = None
    log_entries: List[WorkflowLogEntry] = Field(default_factory=list)
    form_data: Dict[str, Any] = Field(default_factory=dict)
    created_at: datetime = Field(default_factory=utc_now)
    updated_at: datetime = Field(default_factory=utc_now)

    @property
    def is_terminal(self) -> bool:
        return self.status in (WorkflowStatus.COMPLETE, WorkflowStatus.ERROR)

    def has_output(self, stage: WorkflowStage) -> bool:
        return stage.value in self.stage_outputs

    def output_data(self, stage: WorkflowStage) -> Any:
        output = self.stage_outputs.get(stage.value)
        return output.data if output else None

    def add_log(self, message: str, stage: Optional[WorkflowStage] = None, level: str = "info") -> None:
        self.log_entries.append(WorkflowLogEntry(
            step=len(self.log_entries) + 1,
            message=message,
            stage=stage,
            level=level,
        ))
        self.updated_at = utc_now()

    def bump_progress(self, percent: int) -> None:
        """Progress only moves forward"""
        self.progress_percent = max(self.progress_percent, min(100, percent))
        self.updated_at = utc_now()

    def record_stage(self, output: StageOutput) -> None:
        """Store a stage output and advance to the next stage in the fixed order"""
        stage = output.stage
        expected = STAGE_ORDER.index(self.current_stage)
        if STAGE_ORDER.index(stage) != expected:
            raise ValueError(
                f"Stage {stage.value} recorded out of order; current stage is {self.current_stage.value}"
            )

        self.stage_outputs[stage.value] = output
        if output.degraded and stage not in self.degraded_stages:
            self.degraded_stages.append(stage)

        self.bump_progress(STAGE_CHECKPOINTS[stage])
        if expected + 1 < len(STAGE_ORDER):
            self.current_stage = STAGE_ORDER[expected + 1]

    def mark_complete(self, result: Dict[str, Any]) -> None:
        self.status = WorkflowStatus.COMPLETE
        self.result = result
        self.bump_progress(100)

    def mark_failed(self, detail: str) -> None:
        self.status = WorkflowStatus.ERROR
        self.error_detail = detail or "Workflow failed"
        self.updated_at = utc_now()
