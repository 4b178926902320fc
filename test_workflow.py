"""
Tests for the four-stage orchestrator: happy path, degradation, terminal
failures, budget policies and resumption.
"""

import asyncio
from decimal import Decimal

import pytest
from conftest import PLAN_JSON, MockProvider, llm_spec, scripted_llm, search_spec

from trip_pipeline.core.exceptions import (
    AccessDenied,
    PipelineError,
    PipelineValidationError,
    ProviderError,
    WorkflowFatal,
)
from trip_pipeline.core.pipeline_factory import build_pipeline
from trip_pipeline.core.stages import DataGatherer
from trip_pipeline.core.workflow import WorkflowOrchestrator, is_valid_workflow_id, route_after_stage
from trip_pipeline.models.pipeline_state import (
    SERVICE_PRINCIPAL,
    CapabilityClass,
    Principal,
    WorkflowStage,
    WorkflowState,
    WorkflowStatus,
)
from trip_pipeline.monitoring.workflow_metrics import WorkflowMetricsCollector
from trip_pipeline.services.providers import ProviderRegistry

ANONYMOUS = Principal()


def plan_then_fail(request):
    if request.capability_hint == CapabilityClass.DEEP_REASONING:
        return PLAN_JSON
    return ProviderError("mock-llm", "service unavailable", status_code=503)


async def submit_and_run(pipeline, form, principal=ANONYMOUS, session_id=None):
    submission = await pipeline.orchestrator.submit(form, session_id, principal)
    return await pipeline.orchestrator.run(submission.workflow.workflow_id)


def rebuild(settings, registry, store, **overrides):
    return build_pipeline(
        settings.model_copy(update=overrides), registry=registry, store=store, metrics=WorkflowMetricsCollector()
    )


class TestSubmit:
    """Request acceptance"""

    @pytest.mark.asyncio
    async def test_submit_persists_pending_workflow(self, pipeline, sample_form):
        submission = await pipeline.orchestrator.submit(sample_form, None, ANONYMOUS)

        assert is_valid_workflow_id(submission.workflow.workflow_id)
        assert submission.session.session_id.startswith("session_")

        status = await pipeline.orchestrator.get_status(submission.workflow.workflow_id)
        assert status["status"] == "pending"
        assert status["progress"] == 0
        assert status["currentStep"] == "Queued for processing"
        assert status["result"] is None
        assert status["error"] is None

    @pytest.mark.asyncio
    @pytest.mark.parametrize("form", [None, {}, "Lisbon", {"adults": -1}, {"childrenAges": "eight"}])
    async def test_malformed_form_is_rejected(self, pipeline, form):
        with pytest.raises(PipelineValidationError):
            await pipeline.orchestrator.submit(form, None, ANONYMOUS)

    @pytest.mark.asyncio
    async def test_foreign_session_is_denied(self, pipeline, sample_form):
        alice = Principal(user_id="alice")
        submission = await pipeline.orchestrator.submit(sample_form, None, alice)

        with pytest.raises(AccessDenied):
            await pipeline.orchestrator.submit(
                sample_form, submission.session.session_id, Principal(user_id="bob")
            )

    @pytest.mark.asyncio
    async def test_service_principal_may_use_any_session(self, pipeline, sample_form):
        alice = Principal(user_id="alice")
        first = await pipeline.orchestrator.submit(sample_form, None, alice)

        second = await pipeline.orchestrator.submit(sample_form, first.session.session_id, SERVICE_PRINCIPAL)
        assert second.session.session_id == first.session.session_id
        assert second.session.metadata["form_count"] == 2

    def test_rejects_unknown_budget_policy(self, pipeline):
        with pytest.raises(ValueError):
            WorkflowOrchestrator(
                pipeline.store, pipeline.session_service, pipeline.orchestrator.stages, budget_policy="spend-anyway"
            )


class TestHappyPath:
    """All four stages succeed"""

    @pytest.mark.asyncio
    async def test_complete_result(self, pipeline, sample_form, llm_provider, search_provider):
        workflow = await submit_and_run(pipeline, sample_form)

        assert workflow.status == WorkflowStatus.COMPLETE
        assert workflow.progress_percent == 100

        result = workflow.result
        assert result["partialData"] is False
        assert result["gaps"] == []
        assert result["itinerary"]["title"] == "Lisbon Long Weekend"
        assert "nextSteps" not in result["itinerary"]
        assert len(result["itinerary"]["travelTips"]) >= 3
        assert result["trip"]["destination"] == "Lisbon, Portugal"
        assert result["trip"]["duration_days"] == 3
        assert result["trip"]["currency"] == "EUR"
        assert len(result["plan"]["days"]) == 3
        assert len(result["research"]["sources"]) == 1
        assert result["providers"] == {"info-gather": "mock-search", "plan": "mock-llm", "compile": "mock-llm"}

        assert len(search_provider.calls) == 1
        assert len(llm_provider.calls) == 2

    @pytest.mark.asyncio
    async def test_status_view_of_completed_workflow(self, pipeline, sample_form):
        workflow = await submit_and_run(pipeline, sample_form)

        status = await pipeline.orchestrator.get_status(workflow.workflow_id)
        assert status["status"] == "complete"
        assert status["currentStep"] == "Itinerary generation complete"
        assert status["result"]["workflowId"] == workflow.workflow_id
        assert status["error"] is None
        assert [entry["step"] for entry in status["logs"]] == list(range(1, len(status["logs"]) + 1))
        assert status["logs"][-1]["message"] == "Itinerary generation complete"

    @pytest.mark.asyncio
    async def test_spend_is_recorded_on_the_session(self, pipeline, sample_form, store):
        workflow = await submit_and_run(pipeline, sample_form)

        # One search at 0.01 plus two generations at 0.0002
        ledger = await store.get_ledger(workflow.session_id)
        assert ledger.total_spent_usd == Decimal("0.0104")
        assert ledger.breakdown["search"] == Decimal("0.0100")
        assert ledger.breakdown["generation"] == Decimal("0.0004")
        assert len(await store.list_usage_records(workflow.session_id)) == 3

        session = await store.get_session(workflow.session_id)
        assert session.flags.has_result is True

    @pytest.mark.asyncio
    async def test_progress_never_decreases(self, pipeline, sample_form, store):
        observed = []
        original_put = store.put_workflow

        async def recording_put(workflow):
            observed.append(workflow.progress_percent)
            await original_put(workflow)

        store.put_workflow = recording_put
        await submit_and_run(pipeline, sample_form)

        assert observed == sorted(observed)
        assert observed[-1] == 100
        assert {25, 50, 75, 100} <= set(observed)

    @pytest.mark.asyncio
    async def test_metrics_record_each_stage(self, pipeline, sample_form):
        await submit_and_run(pipeline, sample_form)

        exported = pipeline.metrics.export_metrics()
        assert exported["workflow_outcomes"] == {"complete": 1}
        assert set(exported["stage_outcomes"]) == {"data-gather", "info-gather", "plan", "compile"}
        assert exported["active_workflows"] == 0


class TestDegradation:
    """Soft stage failures produce partial results"""

    @pytest.mark.asyncio
    async def test_search_failure_yields_partial_data(self, pipeline, sample_form, search_provider):
        search_provider.script = [ProviderError("mock-search", "quota exhausted", status_code=429)]

        workflow = await submit_and_run(pipeline, sample_form)

        assert workflow.status == WorkflowStatus.COMPLETE
        result = workflow.result
        assert result["partialData"] is True
        assert [gap["stage"] for gap in result["gaps"]] == ["info-gather"]
        assert "mock-search (failed)" in result["gaps"][0]["reason"]
        assert any(
            entry.stage == WorkflowStage.INFO_GATHER and "provider mock-search failed" in entry.message
            for entry in workflow.log_entries
        )
        assert result["research"]["sources"] == []
        assert result["itinerary"]["title"] == "Lisbon Long Weekend"
        assert "info-gather" not in result["providers"]

    @pytest.mark.asyncio
    async def test_planning_failure_uses_heuristic_plan(self, pipeline, sample_form, llm_provider):
        def fail_planning(request):
            if request.capability_hint == CapabilityClass.DEEP_REASONING:
                return ProviderError("mock-llm", "overloaded")
            return '{"title": "Fallback Trip", "dailyActivities": []}'

        llm_provider.script = [fail_planning]

        workflow = await submit_and_run(pipeline, sample_form)

        assert workflow.status == WorkflowStatus.COMPLETE
        assert workflow.result["partialData"] is True
        assert workflow.result["plan"]["generated"] == "heuristic"
        assert len(workflow.result["plan"]["days"]) == 3
        assert workflow.result["itinerary"]["title"] == "Fallback Trip"

    @pytest.mark.asyncio
    async def test_stage_deadline_degrades_soft_stage(self, settings, registry, store, sample_form, search_provider):
        search_provider.delay = 1.0
        pipeline = rebuild(settings, registry, store, stage_deadline_seconds=0.1)

        workflow = await submit_and_run(pipeline, sample_form)

        assert workflow.status == WorkflowStatus.COMPLETE
        assert workflow.result["gaps"][0]["stage"] == "info-gather"
        assert "stage deadline" in workflow.result["gaps"][0]["reason"]
        assert pipeline.health.get("mock-search").get_state()["trial_in_flight"] is False


class TestTerminalFailures:
    """Data gathering and compilation failures end the workflow"""

    @pytest.mark.asyncio
    async def test_compiler_failure_is_terminal(self, pipeline, sample_form, llm_provider):
        llm_provider.script = [plan_then_fail]

        workflow = await submit_and_run(pipeline, sample_form)

        assert workflow.status == WorkflowStatus.ERROR
        assert workflow.result is None
        assert workflow.error_detail.startswith("Content Compiler failed")
        assert workflow.progress_percent == 75

        first = await pipeline.orchestrator.get_status(workflow.workflow_id)
        second = await pipeline.orchestrator.get_status(workflow.workflow_id)
        assert first == second
        assert first["status"] == "error"
        assert first["result"] is None
        assert first["currentStep"] == "Failed during Content Compiler"

    @pytest.mark.asyncio
    async def test_empty_compilation_is_terminal(self, pipeline, sample_form, llm_provider):
        def blank_itinerary(request):
            if request.capability_hint == CapabilityClass.DEEP_REASONING:
                return PLAN_JSON
            return "   "

        llm_provider.script = [blank_itinerary]

        workflow = await submit_and_run(pipeline, sample_form)

        assert workflow.status == WorkflowStatus.ERROR
        assert "empty" in workflow.error_detail

    @pytest.mark.asyncio
    async def test_missing_destination_fails_data_gathering(self, pipeline, sample_form, llm_provider, search_provider):
        form = dict(sample_form)
        form.pop("location")

        workflow = await submit_and_run(pipeline, form)

        assert workflow.status == WorkflowStatus.ERROR
        assert workflow.error_detail.startswith("Data Gatherer failed")
        assert "destination" in workflow.error_detail
        assert workflow.progress_percent == 0
        assert llm_provider.calls == []
        assert search_provider.calls == []

    @pytest.mark.asyncio
    async def test_reversed_dates_fail_data_gathering(self, pipeline, sample_form):
        form = dict(sample_form, departDate="2025-06-10", returnDate="2025-06-01")

        workflow = await submit_and_run(pipeline, form)

        assert workflow.status == WorkflowStatus.ERROR
        assert "returnDate" in workflow.error_detail


class TestBudgetPolicies:
    """Soft stages denied by the budget guard"""

    @pytest.mark.asyncio
    async def test_skip_policy_drops_denied_stages(self, settings, registry, store, sample_form, search_provider):
        pipeline = rebuild(settings, registry, store, session_budget_limit_usd=0.005, budget_exceeded_policy="skip")

        workflow = await submit_and_run(pipeline, sample_form)

        assert workflow.status == WorkflowStatus.COMPLETE
        assert workflow.result["partialData"] is True
        assert [gap["stage"] for gap in workflow.result["gaps"]] == ["info-gather", "plan"]
        assert workflow.result["plan"] is None
        assert workflow.result["research"] == {"query": None, "sources": []}
        assert search_provider.calls == []

        ledger = await store.get_ledger(workflow.session_id)
        assert ledger.over_budget_flag is True
        assert ledger.total_spent_usd <= ledger.limit_usd
        session = await store.get_session(workflow.session_id)
        assert session.flags.budget_exceeded is True

    @pytest.mark.asyncio
    async def test_free_fallback_policy_uses_local_output(self, settings, registry, store, sample_form):
        pipeline = rebuild(
            settings, registry, store, session_budget_limit_usd=0.005, budget_exceeded_policy="free_fallback"
        )

        workflow = await submit_and_run(pipeline, sample_form)

        assert workflow.status == WorkflowStatus.COMPLETE
        assert workflow.result["plan"]["generated"] == "heuristic"
        assert workflow.result["research"]["sources"] == []
        assert workflow.result["research"]["query"].startswith("Lisbon, Portugal")


class TestRerunAndResume:
    """Running a workflow more than once"""

    @pytest.mark.asyncio
    async def test_rerunning_a_finished_workflow_is_a_noop(self, pipeline, sample_form, llm_provider):
        workflow = await submit_and_run(pipeline, sample_form)
        before = await pipeline.orchestrator.get_status(workflow.workflow_id)

        again = await pipeline.orchestrator.run(workflow.workflow_id)

        assert again.status == WorkflowStatus.COMPLETE
        assert await pipeline.orchestrator.get_status(workflow.workflow_id) == before
        assert len(llm_provider.calls) == 2

    @pytest.mark.asyncio
    async def test_concurrent_runs_execute_once(self, pipeline, sample_form, llm_provider, search_provider):
        submission = await pipeline.orchestrator.submit(sample_form, None, ANONYMOUS)
        workflow_id = submission.workflow.workflow_id

        results = await asyncio.gather(
            pipeline.orchestrator.run(workflow_id),
            pipeline.orchestrator.run(workflow_id),
        )

        assert all(result.status == WorkflowStatus.COMPLETE for result in results)
        assert len(search_provider.calls) == 1
        assert len(llm_provider.calls) == 2
        assert pipeline.orchestrator._run_locks == {}

    @pytest.mark.asyncio
    async def test_resume_skips_recorded_stages(self, pipeline, sample_form, store, search_provider):
        submission = await pipeline.orchestrator.submit(sample_form, None, ANONYMOUS)
        workflow_id = submission.workflow.workflow_id

        # Simulate a process that died right after data gathering
        workflow = await store.get_workflow(workflow_id)
        output = await DataGatherer().process(workflow)
        workflow.status = WorkflowStatus.PROCESSING
        workflow.record_stage(output)
        workflow.form_data = {}
        await store.put_workflow(workflow)

        resumed = await pipeline.orchestrator.run(workflow_id)

        assert resumed.status == WorkflowStatus.COMPLETE
        assert resumed.result["trip"]["destination"] == "Lisbon, Portugal"
        assert len(search_provider.calls) == 1
        assert any(entry.message == "Resuming workflow" for entry in resumed.log_entries)

    @pytest.mark.asyncio
    async def test_unknown_workflow_status_is_none(self, pipeline):
        assert await pipeline.orchestrator.get_status("workflow_0123456789abcdef") is None

    @pytest.mark.asyncio
    async def test_failed_run_releases_its_lock(self, pipeline):
        with pytest.raises(PipelineError):
            await pipeline.orchestrator.run("workflow_0123456789abcdef")

        assert "workflow_0123456789abcdef" not in pipeline.orchestrator._run_locks

    @pytest.mark.asyncio
    async def test_running_touches_the_session(self, pipeline, sample_form, store):
        submission = await pipeline.orchestrator.submit(sample_form, None, ANONYMOUS)

        await pipeline.orchestrator.run(submission.workflow.workflow_id)

        session = await store.get_session(submission.session.session_id)
        assert session.expires_at >= submission.session.expires_at
        assert session.last_activity_at >= submission.session.last_activity_at


class TestStageGraph:
    """The stages run as a compiled state graph"""

    def test_one_node_per_stage(self, pipeline):
        nodes = set(pipeline.orchestrator.graph.nodes)

        assert {"data-gather", "info-gather", "plan", "compile"} <= nodes

    def test_terminal_workflow_halts_the_graph(self):
        workflow = WorkflowState(workflow_id="workflow_abcdef12", session_id="s1")
        assert route_after_stage({"workflow": workflow}) == "continue"

        workflow.mark_failed("Data Gatherer failed: no destination")
        assert route_after_stage({"workflow": workflow}) == "halt"

    @pytest.mark.asyncio
    async def test_hard_stage_failure_raises_workflow_fatal(self, pipeline, sample_form, store):
        form = dict(sample_form)
        form.pop("location")
        submission = await pipeline.orchestrator.submit(form, None, ANONYMOUS)
        workflow = await store.get_workflow(submission.workflow.workflow_id)

        with pytest.raises(WorkflowFatal) as exc_info:
            await pipeline.orchestrator.run_stage(workflow, pipeline.orchestrator.stages[0])

        assert exc_info.value.stage == "data-gather"
        assert "destination" in exc_info.value.detail
        assert not workflow.has_output(WorkflowStage.DATA_GATHER)

    @pytest.mark.asyncio
    async def test_absorbed_provider_failures_are_logged(self, settings, store, sample_form, search_provider):
        unavailable = MockProvider("bad-llm", [ProviderError("bad-llm", "HTTP 503", status_code=503)])
        healthy = MockProvider("good-llm", [scripted_llm])
        registry = ProviderRegistry(
            [
                llm_spec("bad-llm", unavailable),
                llm_spec("good-llm", healthy),
                search_spec("mock-search", search_provider),
            ],
            ["bad-llm", "good-llm", "mock-search"],
        )
        pipeline = build_pipeline(settings, registry=registry, store=store, metrics=WorkflowMetricsCollector())

        workflow = await submit_and_run(pipeline, sample_form)

        assert workflow.status == WorkflowStatus.COMPLETE
        assert len(unavailable.calls) == 2

        failures = [entry for entry in workflow.log_entries if "bad-llm" in entry.message]
        assert [entry.stage for entry in failures] == [WorkflowStage.PLAN, WorkflowStage.COMPILE]
        assert all("failed" in entry.message and "HTTP 503" in entry.message for entry in failures)
        assert all(entry.level == "warning" for entry in failures)

        plan = workflow.stage_outputs[WorkflowStage.PLAN.value]
        assert plan.provider == "good-llm"
        assert plan.routing["fallback_depth"] == 1
        assert [attempt["outcome"] for attempt in plan.routing["attempts"]] == ["failed", "success"]
