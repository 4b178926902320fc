"""
Pipeline Factory
================
Wires the provider registry, health registry, classifier, router, budget
guard, state store, session service and orchestrator together from
settings. Any component can be passed in pre-built, which is how tests
substitute fake providers and stores.
"""

import logging
import time
from dataclasses import dataclass
from decimal import Decimal
from typing import Callable, List, Optional

from ..monitoring.workflow_metrics import WorkflowMetricsCollector, get_workflow_metrics_collector
from ..services.budget_guard import BudgetGuard
from ..services.providers import ProviderRegistry, build_provider_registry
from ..services.router import ProviderRouter, class_timeouts
from ..services.session_service import SessionService
from ..services.state_store import StateStore, create_state_store
from .circuit_breaker import CircuitBreakerConfig, ProviderHealthRegistry
from .classifier import ComplexityClassifier
from .config import Settings
from .stages import PipelineStage, default_stages
from .workflow import WorkflowOrchestrator

logger = logging.getLogger(__name__)


@dataclass
class PipelineServices:
    """Everything the HTTP layer needs, built once per process"""
    settings: Settings
    registry: ProviderRegistry
    health: ProviderHealthRegistry
    classifier: ComplexityClassifier
    router: ProviderRouter
    store: StateStore
    budget_guard: BudgetGuard
    session_service: SessionService
    orchestrator: WorkflowOrchestrator
    metrics: WorkflowMetricsCollector

    async def aclose(self) -> None:
        await self.registry.aclose()
        await self.store.close()


def build_pipeline(
    settings: Settings,
    registry: Optional[ProviderRegistry] = None,
    store: Optional[StateStore] = None,
    stages: Optional[List[PipelineStage]] = None,
    metrics: Optional[WorkflowMetricsCollector] = None,
    clock: Callable[[], float] = time.monotonic,
) -> PipelineServices:
    """Build the full pipeline from settings"""
    registry = registry or build_provider_registry(settings)
    store = store or create_state_store(settings)
    metrics = metrics or get_workflow_metrics_collector()
    limit = Decimal(str(settings.session_budget_limit_usd))

    health = ProviderHealthRegistry(
        CircuitBreakerConfig(
            failure_threshold=settings.circuit_failure_threshold,
            cooldown_seconds=settings.circuit_cooldown_seconds,
            metrics_window=settings.circuit_metrics_window,
        ),
        clock=clock,
        providers=registry.names,
    )
    classifier = ComplexityClassifier(registry, filter_by_budget=settings.filter_providers_by_remaining_budget)
    budget_guard = BudgetGuard(store, default_limit_usd=limit)
    router = ProviderRouter(
        registry,
        classifier,
        health,
        timeouts=class_timeouts(settings),
        budget_guard=budget_guard,
    )
    session_service = SessionService(
        store,
        budget_guard,
        ttl_minutes=settings.session_ttl_minutes,
        default_limit_usd=limit,
    )
    orchestrator = WorkflowOrchestrator(
        store,
        session_service,
        stages or default_stages(router),
        metrics=metrics,
        stage_deadline_seconds=settings.stage_deadline_seconds,
        budget_policy=settings.budget_exceeded_policy,
        estimated_completion_minutes=settings.estimated_completion_minutes,
    )

    logger.info(f"Pipeline built with providers {registry.names} and {type(store).__name__}")
    return PipelineServices(
        settings=settings,
        registry=registry,
        health=health,
        classifier=classifier,
        router=router,
        store=store,
        budget_guard=budget_guard,
        session_service=session_service,
        orchestrator=orchestrator,
        metrics=metrics,
    )
