"""
Workflow Orchestrator
=====================
Runs the four pipeline stages for one workflow as a LangGraph state graph,
one node per stage, persisting the workflow after every step so a poller
always sees committed progress.

Soft stages (information gathering, planning) degrade on failure: the gap
is recorded and the run continues. Hard stages (data gathering, content
compilation) raise WorkflowFatal, which ends the workflow in the error
state and routes the graph straight to END. Running a finished workflow is
a no-op and resuming an interrupted one skips the stages it already
recorded.
"""

import asyncio
import logging
import re
import time
import uuid
from dataclasses import dataclass
from datetime import datetime, timedelta
from typing import Any, Dict, List, Optional

from langgraph.graph import END, StateGraph
from langgraph.graph.state import CompiledStateGraph
from pydantic import ValidationError
from typing_extensions import TypedDict

from ..models.pipeline_state import (
    STAGE_LABELS,
    STAGE_ORDER,
    Principal,
    Session,
    StageOutput,
    WorkflowStage,
    WorkflowState,
    WorkflowStatus,
    utc_now,
)
from ..models.trip_request import TripFormData
from ..monitoring.workflow_metrics import WorkflowMetricsCollector, get_workflow_metrics_collector
from ..services.session_service import SessionService
from ..services.state_store import StateStore
from .exceptions import BudgetExceeded, PipelineError, PipelineValidationError, StageFailure, WorkflowFatal
from .stages import PipelineStage

logger = logging.getLogger(__name__)

WORKFLOW_ID_PATTERN = re.compile(r"^workflow_[0-9a-f]{8,64}$")

BUDGET_POLICIES = ("skip", "free_fallback")

STAGE_ACTIVITY: Dict[WorkflowStage, str] = {
    WorkflowStage.DATA_GATHER: "Validating trip details",
    WorkflowStage.INFO_GATHER: "Researching destination data",
    WorkflowStage.PLAN: "Designing the day-by-day plan",
    WorkflowStage.COMPILE: "Assembling final itinerary",
}


def new_workflow_id() -> str:
    return f"workflow_{uuid.uuid4().hex}"


def is_valid_workflow_id(workflow_id: str) -> bool:
    return bool(workflow_id and WORKFLOW_ID_PATTERN.match(workflow_id))


def current_step(workflow: WorkflowState) -> str:
    """Human-readable step label for the polling client"""
    label = STAGE_LABELS[workflow.current_stage]
    if workflow.status == WorkflowStatus.PENDING:
        return "Queued for processing"
    if workflow.status == WorkflowStatus.COMPLETE:
        return "Itinerary generation complete"
    if workflow.status == WorkflowStatus.ERROR:
        return f"Failed during {label}"
    return f"{label}: {STAGE_ACTIVITY[workflow.current_stage]}"


@dataclass
class Submission:
    """Accepted generation request"""
    workflow: WorkflowState
    session: Session
    estimated_completion: datetime


def completion_note(output: StageOutput) -> str:
    note = f" via {output.provider}" if output.provider else ""
    depth = output.routing.get("fallback_depth")
    if depth:
        note += f" after {depth} fallback{'s' if depth > 1 else ''}"
    return note


class PipelineGraphState(TypedDict):
    """State carried between stage nodes"""
    workflow: WorkflowState


def route_after_stage(state: PipelineGraphState) -> str:
    """Stop the graph once a hard stage has ended the workflow"""
    return "halt" if state["workflow"].is_terminal else "continue"


class WorkflowOrchestrator:
    """Drives workflows through the stage graph"""

    def __init__(
        self,
        store: StateStore,
        session_service: SessionService,
        stages: List[PipelineStage],
        metrics: Optional[WorkflowMetricsCollector] = None,
        stage_deadline_seconds: float = 90.0,
        budget_policy: str = "skip",
        estimated_completion_minutes: int = 3,
    ):
        if budget_policy not in BUDGET_POLICIES:
            raise ValueError(f"Unknown budget policy '{budget_policy}', expected one of {BUDGET_POLICIES}")
        if [stage.stage for stage in stages] != STAGE_ORDER:
            raise ValueError("Stages must cover data-gather, info-gather, plan and compile in that order")

        self.store = store
        self.session_service = session_service
        self.stages = stages
        self.metrics = metrics or get_workflow_metrics_collector()
        self.stage_deadline_seconds = stage_deadline_seconds
        self.budget_policy = budget_policy
        self.estimated_completion_minutes = estimated_completion_minutes
        self._run_locks: Dict[str, asyncio.Lock] = {}
        self._run_waiters: Dict[str, int] = {}
        self.graph = self._build_graph()

    def _build_graph(self) -> CompiledStateGraph:
        """Build the linear stage graph with an early exit after hard failures"""
        workflow = StateGraph(PipelineGraphState)

        for stage in self.stages:
            workflow.add_node(stage.name, self._stage_node(stage))

        workflow.set_entry_point(self.stages[0].name)
        for stage, following in zip(self.stages, self.stages[1:]):
            workflow.add_conditional_edges(
                stage.name,
                route_after_stage,
                {"continue": following.name, "halt": END},
            )
        workflow.add_edge(self.stages[-1].name, END)

        return workflow.compile()

    def _stage_node(self, stage: PipelineStage):
        async def process(state: PipelineGraphState) -> PipelineGraphState:
            workflow = state["workflow"]
            if workflow.has_output(stage.stage):
                return {"workflow": workflow}
            try:
                workflow = await self.run_stage(workflow, stage)
            except WorkflowFatal as fatal:
                workflow = await self._fail(workflow, fatal)
            return {"workflow": workflow}

        return process

    async def submit(self, form_data: Any, session_id: Optional[str], principal: Principal) -> Submission:
        """
        Validate the request shape, resolve the session and persist a pending workflow.

        Raises PipelineValidationError for malformed form data and
        AccessDenied when the session belongs to another principal.
        """
        if not isinstance(form_data, dict) or not form_data:
            raise PipelineValidationError("formData is required", field="formData")
        try:
            TripFormData.model_validate(form_data)
        except ValidationError as e:
            first = e.errors()[0]
            location = ".".join(str(part) for part in first.get("loc", ()))
            raise PipelineValidationError(f"formData.{location}: {first.get('msg')}", field="formData")

        session = await self.session_service.get_or_create(session_id, principal)
        session = await self.session_service.record_submission(session, form_data)

        workflow = WorkflowState(
            workflow_id=new_workflow_id(),
            session_id=session.session_id,
            form_data=form_data,
        )
        workflow.add_log("Itinerary generation request accepted")
        await self.store.put_workflow(workflow)

        logger.info(f"📥 Workflow {workflow.workflow_id} queued for session {session.session_id}")
        return Submission(
            workflow=workflow,
            session=session,
            estimated_completion=utc_now() + timedelta(minutes=self.estimated_completion_minutes),
        )

    async def run(self, workflow_id: str) -> WorkflowState:
        """Execute (or resume) a workflow. Returns the final persisted state."""
        lock = self._run_locks.setdefault(workflow_id, asyncio.Lock())
        self._run_waiters[workflow_id] = self._run_waiters.get(workflow_id, 0) + 1
        try:
            async with lock:
                return await self._run(workflow_id)
        finally:
            self._run_waiters[workflow_id] -= 1
            if not self._run_waiters[workflow_id]:
                del self._run_waiters[workflow_id]
                self._run_locks.pop(workflow_id, None)

    async def _run(self, workflow_id: str) -> WorkflowState:
        workflow = await self.store.get_workflow(workflow_id)
        if workflow is None:
            raise PipelineError(f"Unknown workflow {workflow_id}")
        if workflow.is_terminal:
            logger.debug(f"Workflow {workflow_id} already {workflow.status.value}; nothing to run")
            return workflow

        resumed = workflow.status == WorkflowStatus.PROCESSING
        workflow.status = WorkflowStatus.PROCESSING
        workflow.add_log("Resuming workflow" if resumed else "Workflow started")
        await self.store.put_workflow(workflow)
        await self.session_service.touch(workflow.session_id)
        self.metrics.record_workflow_start(workflow_id)

        final_state = await self.graph.ainvoke({"workflow": workflow})
        workflow = final_state["workflow"]
        if workflow.is_terminal:
            self.metrics.record_workflow_end(workflow_id, workflow.status.value)
            return workflow

        workflow.mark_complete(self._assemble_result(workflow))
        workflow.add_log("Itinerary generation complete")
        await self.store.put_workflow(workflow)
        await self.session_service.set_flag(workflow.session_id, "has_result")

        partial = bool(workflow.degraded_stages)
        self.metrics.record_workflow_end(workflow_id, workflow.status.value, partial=partial)
        logger.info(f"✅ Workflow {workflow_id} complete{' with partial data' if partial else ''}")
        return workflow

    async def run_stage(self, workflow: WorkflowState, stage: PipelineStage) -> WorkflowState:
        """
        Run one stage and record its output on the workflow.

        Soft-stage failures are recorded as degraded output. A hard-stage
        failure raises WorkflowFatal and leaves the workflow unrecorded.
        """
        label = STAGE_LABELS[stage.stage]
        workflow.add_log(f"{label} started", stage=stage.stage)
        await self.store.put_workflow(workflow)

        start = time.monotonic()
        failure: Optional[str] = None
        attempts: List[Dict[str, Any]] = []
        budget_denied = False
        try:
            output = await asyncio.wait_for(
                stage.process(workflow.model_copy(deep=True)),
                timeout=self.stage_deadline_seconds,
            )
        except asyncio.TimeoutError:
            failure = f"exceeded the {self.stage_deadline_seconds:g}s stage deadline"
        except BudgetExceeded as e:
            failure = f"budget exceeded: {e.reason}"
            attempts = e.attempts
            budget_denied = True
        except StageFailure as e:
            failure = str(e) or e.__class__.__name__
            attempts = getattr(e, "attempts", [])
        except Exception as e:
            logger.exception(f"Unexpected error in {label} for {workflow.workflow_id}")
            failure = f"unexpected error: {e}"
        duration_ms = (time.monotonic() - start) * 1000

        if failure is None:
            self._log_attempts(workflow, stage, output.routing.get("attempts", []))
            workflow.record_stage(output)
            workflow.add_log(f"{label} completed{completion_note(output)}", stage=stage.stage)
            await self.store.put_workflow(workflow)
            self.metrics.record_stage(workflow.workflow_id, stage.name, "success", duration_ms, provider=output.provider)
            return workflow

        logger.warning(f"⚠️ {label} failed for {workflow.workflow_id}: {failure}")
        self._log_attempts(workflow, stage, attempts)

        if stage.terminal:
            self.metrics.record_stage(workflow.workflow_id, stage.name, "failed", duration_ms, reason=failure)
            raise WorkflowFatal(stage.name, failure)

        if budget_denied and self.budget_policy == "skip":
            data, outcome = None, "skipped"
        else:
            data, outcome = stage.fallback(workflow), "degraded"

        workflow.record_stage(StageOutput(
            stage=stage.stage, data=data, degraded=True, reason=failure, routing={"attempts": attempts}
        ))
        workflow.add_log(f"{label} {outcome}: {failure}", stage=stage.stage, level="warning")
        await self.store.put_workflow(workflow)
        self.metrics.record_stage(workflow.workflow_id, stage.name, outcome, duration_ms, reason=failure)
        return workflow

    async def _fail(self, workflow: WorkflowState, fatal: WorkflowFatal) -> WorkflowState:
        stage = WorkflowStage(fatal.stage)
        label = STAGE_LABELS[stage]
        workflow.add_log(f"{label} failed: {fatal.detail}", stage=stage, level="error")
        workflow.mark_failed(f"{label} failed: {fatal.detail}")
        await self.store.put_workflow(workflow)
        logger.error(f"❌ Workflow {workflow.workflow_id} failed at {label}")
        return workflow

    def _log_attempts(self, workflow: WorkflowState, stage: PipelineStage, attempts: List[Dict[str, Any]]) -> None:
        """Append every provider attempt that did not succeed to the workflow log"""
        label = STAGE_LABELS[stage.stage]
        for attempt in attempts:
            if attempt.get("outcome") == "success":
                continue
            workflow.add_log(
                f"{label}: provider {attempt['provider']} {attempt['outcome']} ({attempt.get('reason', 'no reason given')})",
                stage=stage.stage,
                level="warning",
            )

    def _assemble_result(self, workflow: WorkflowState) -> Dict[str, Any]:
        compiled = workflow.stage_outputs[WorkflowStage.COMPILE.value]
        research = workflow.output_data(WorkflowStage.INFO_GATHER) or {}

        return {
            "workflowId": workflow.workflow_id,
            "sessionId": workflow.session_id,
            "itinerary": compiled.data,
            "trip": workflow.output_data(WorkflowStage.DATA_GATHER),
            "plan": workflow.output_data(WorkflowStage.PLAN),
            "research": {"query": research.get("query"), "sources": research.get("results", [])},
            "partialData": bool(workflow.degraded_stages),
            "gaps": [
                {"stage": stage.value, "reason": workflow.stage_outputs[stage.value].reason}
                for stage in workflow.degraded_stages
            ],
            "providers": {
                name: output.provider for name, output in workflow.stage_outputs.items() if output.provider
            },
            "generatedAt": compiled.completed_at.isoformat(),
        }

    async def get_status(self, workflow_id: str) -> Optional[Dict[str, Any]]:
        """Pollable view of a workflow. Pure read; None when unknown."""
        workflow = await self.store.get_workflow(workflow_id)
        if workflow is None:
            return None
        return status_view(workflow)


def status_view(workflow: WorkflowState) -> Dict[str, Any]:
    return {
        "workflowId": workflow.workflow_id,
        "status": workflow.status.value,
        "progress": workflow.progress_percent,
        "currentStep": current_step(workflow),
        "result": workflow.result if workflow.status == WorkflowStatus.COMPLETE else None,
        "error": workflow.error_detail if workflow.status == WorkflowStatus.ERROR else None,
        "logs": [
            {"step": entry.step, "timestamp": entry.timestamp.isoformat(), "message": entry.message}
            for entry in workflow.log_entries
        ],
    }
