"""
Shared fixtures for the trip pipeline tests.

Providers are replaced with MockProvider instances that answer from a
script, so no test touches the network.
"""

import asyncio
import json
from decimal import Decimal
from typing import Any, Callable, List, Optional, Union

import pytest

from trip_pipeline.core.config import Settings
from trip_pipeline.core.exceptions import ProviderError
from trip_pipeline.core.pipeline_factory import build_pipeline
from trip_pipeline.models.pipeline_state import CapabilityClass
from trip_pipeline.monitoring.workflow_metrics import WorkflowMetricsCollector
from trip_pipeline.services.providers import (
    LLM_OPERATIONS,
    SEARCH_OPERATIONS,
    ProviderClient,
    ProviderRegistry,
    ProviderRequest,
    ProviderResponse,
    ProviderSpec,
)
from trip_pipeline.services.state_store import InMemoryStateStore

Script = Union[str, Exception, Callable[[ProviderRequest], Any]]


class MockProvider(ProviderClient):
    """Scripted provider. Each call consumes the next script entry; the last entry repeats."""

    def __init__(self, name: str, script: Optional[List[Script]] = None, delay: float = 0.0, search: bool = False):
        super().__init__(name, f"{name}-model")
        self.script = list(script or ["ok"])
        self.delay = delay
        self.search = search
        self.calls: List[ProviderRequest] = []

    async def complete(self, request: ProviderRequest) -> ProviderResponse:
        self.calls.append(request)
        step = self.script[min(len(self.calls) - 1, len(self.script) - 1)]

        if self.delay:
            await asyncio.sleep(self.delay)

        if callable(step):
            step = step(request)
        if isinstance(step, Exception):
            raise step

        if self.search:
            results = step if isinstance(step, list) else [
                {"title": f"{self.name} result", "url": "https://example.com", "snippet": str(step)}
            ]
            return ProviderResponse(
                content=json.dumps(results),
                provider=self.name,
                model=self.model,
                usage={"requests": 1},
                results=results,
            )

        return ProviderResponse(
            content=step,
            provider=self.name,
            model=self.model,
            usage={"prompt_tokens": 100, "completion_tokens": 50, "total_tokens": 150},
        )


def llm_spec(name: str, client: ProviderClient, capability: CapabilityClass = CapabilityClass.BALANCED,
             prompt_cost: str = "0.001", completion_cost: str = "0.002") -> ProviderSpec:
    return ProviderSpec(
        name=name,
        capability=capability,
        operations=LLM_OPERATIONS,
        client=client,
        prompt_cost_per_1k=Decimal(prompt_cost),
        completion_cost_per_1k=Decimal(completion_cost),
    )


def search_spec(name: str, client: ProviderClient, capability: CapabilityClass = CapabilityClass.FAST_SIMPLE,
                request_cost: str = "0.01") -> ProviderSpec:
    return ProviderSpec(
        name=name,
        capability=capability,
        operations=SEARCH_OPERATIONS,
        client=client,
        request_cost=Decimal(request_cost),
    )


class FakeClock:
    """Manually advanced monotonic clock"""

    def __init__(self, start: float = 1000.0):
        self.now = start

    def __call__(self) -> float:
        return self.now

    def advance(self, seconds: float) -> None:
        self.now += seconds


PLAN_JSON = json.dumps({
    "summary": "Three relaxed days in Lisbon",
    "days": [
        {"day": 1, "theme": "Alfama", "focus": ["history"]},
        {"day": 2, "theme": "Belem", "focus": ["food"]},
        {"day": 3, "theme": "Sintra", "focus": ["views"]},
    ],
})

ITINERARY_JSON = json.dumps({
    "title": "Lisbon Long Weekend",
    "summary": "History, food and views",
    "dailyActivities": [
        {"day": 1, "theme": "Alfama", "activities": [{"time": "09:00", "title": "Castle", "description": "Walk", "location": "Alfama"}]},
    ],
    "nextSteps": ["book flights"],
})


def scripted_llm(request: ProviderRequest) -> str:
    """Answer planning requests with a plan and compilation requests with an itinerary"""
    if request.capability_hint == CapabilityClass.DEEP_REASONING:
        return PLAN_JSON
    return ITINERARY_JSON


@pytest.fixture
def settings() -> Settings:
    return Settings(
        _env_file=None,
        session_budget_limit_usd=5.0,
        circuit_failure_threshold=5,
        circuit_cooldown_seconds=30.0,
        stage_deadline_seconds=5.0,
        fast_simple_timeout_seconds=2.0,
        balanced_timeout_seconds=2.0,
        deep_reasoning_timeout_seconds=2.0,
        budget_exceeded_policy="skip",
        service_token="test-service-token",
    )


@pytest.fixture
def store() -> InMemoryStateStore:
    return InMemoryStateStore()


@pytest.fixture
def sample_form() -> dict:
    return {
        "location": "Lisbon, Portugal",
        "departDate": "2025-06-01",
        "returnDate": "2025-06-03",
        "adults": 2,
        "children": 1,
        "childrenAges": [8],
        "budget": 3000,
        "currency": "eur",
        "selectedGroups": ["family"],
        "selectedInterests": ["history", "food-and-wine"],
        "travelStyleAnswers": {"vibes": ["relaxed"], "dinnerChoices": ["local_taverns"]},
        "tripNickname": "Lisbon Escape",
    }


@pytest.fixture
def llm_provider() -> MockProvider:
    return MockProvider("mock-llm", [scripted_llm])


@pytest.fixture
def search_provider() -> MockProvider:
    return MockProvider("mock-search", ["Top sights in Lisbon"], search=True)


@pytest.fixture
def registry(llm_provider, search_provider) -> ProviderRegistry:
    return ProviderRegistry(
        [
            llm_spec("mock-llm", llm_provider),
            search_spec("mock-search", search_provider),
        ],
        ["mock-llm", "mock-search"],
    )


@pytest.fixture
def pipeline(settings, registry, store):
    return build_pipeline(settings, registry=registry, store=store, metrics=WorkflowMetricsCollector())
