"""
Provider Router
===============
Walks the classifier's fallback chain for one request. Each candidate is
checked against its circuit breaker, then (when a budget context is given)
against the budget guard, then called under its capability class timeout.
The first success wins; every failure is recorded on the breaker and the
walk continues. No provider is tried twice in one routing attempt.
"""

import asyncio
import logging
import time
from dataclasses import dataclass, field
from decimal import Decimal
from typing import Any, Dict, List, Optional

from ..core.circuit_breaker import ProviderHealthRegistry
from ..core.classifier import ComplexityClassifier
from ..core.config import Settings
from ..core.exceptions import BudgetExceeded, NoProviderAvailable, ProviderError, ProviderTimeoutError
from ..models.pipeline_state import CapabilityClass
from .budget_guard import Approved, BudgetGuard, Reservation, estimate_cost
from .providers import ProviderRegistry, ProviderRequest, ProviderResponse, ProviderSpec

logger = logging.getLogger(__name__)


@dataclass
class BudgetContext:
    """Who pays for a routed call"""
    session_id: str
    request_id: Optional[str] = None
    remaining_usd: Optional[Decimal] = None


@dataclass
class RouteResult:
    result: ProviderResponse
    provider_used: str
    metadata: Dict[str, Any] = field(default_factory=dict)


def class_timeouts(settings: Settings) -> Dict[CapabilityClass, float]:
    return {
        CapabilityClass.FAST_SIMPLE: settings.fast_simple_timeout_seconds,
        CapabilityClass.BALANCED: settings.balanced_timeout_seconds,
        CapabilityClass.DEEP_REASONING: settings.deep_reasoning_timeout_seconds,
    }


class ProviderRouter:
    """Routes requests across providers with breaker, budget and timeout checks"""

    def __init__(
        self,
        registry: ProviderRegistry,
        classifier: ComplexityClassifier,
        health: ProviderHealthRegistry,
        timeouts: Optional[Dict[CapabilityClass, float]] = None,
        budget_guard: Optional[BudgetGuard] = None,
    ):
        self.registry = registry
        self.classifier = classifier
        self.health = health
        self.timeouts = timeouts or {
            CapabilityClass.FAST_SIMPLE: 10.0,
            CapabilityClass.BALANCED: 20.0,
            CapabilityClass.DEEP_REASONING: 30.0,
        }
        self.budget_guard = budget_guard

        for name in registry.names:
            health.get(name)

    def estimate_cost(self, request: ProviderRequest, provider: Optional[str] = None) -> Decimal:
        """Estimated cost of `request` on `provider`, or on the head of its chain"""
        name = provider or self.classifier.classify(request)[0]
        return self.classifier.estimate(self.registry.get(name), request)

    async def route(self, request: ProviderRequest, budget_context: Optional[BudgetContext] = None) -> RouteResult:
        """
        Return the first successful provider result.

        Raises BudgetExceeded when the budget guard denies an attempt and
        NoProviderAvailable when every candidate was skipped or failed.
        """
        remaining = None
        if budget_context is not None:
            remaining = budget_context.remaining_usd
            if remaining is None and self.budget_guard is not None:
                remaining = await self.budget_guard.remaining(budget_context.session_id)

        analysis = self.classifier.analyze(request)
        chain = self.classifier.classify(request, remaining_budget_usd=remaining, analysis=analysis)
        attempts: List[Dict[str, Any]] = []

        logger.debug(
            f"Routing {request.operation.value} request {request.request_id} "
            f"(complexity {analysis.score:.2f} -> {analysis.target.value}) via {chain}"
        )

        for depth, name in enumerate(chain):
            spec = self.registry.get(name)
            breaker = self.health.get(name)

            if not breaker.can_execute():
                attempts.append({"provider": name, "outcome": "skipped", "reason": "circuit open"})
                logger.info(f"⏭️ Skipping {name}: circuit {breaker.state.value}")
                continue

            reservation = None
            if budget_context is not None and self.budget_guard is not None:
                decision = await self.budget_guard.reserve(
                    budget_context.session_id, self.classifier.estimate(spec, request)
                )
                if not isinstance(decision, Approved):
                    breaker.abandon()
                    attempts.append({"provider": name, "outcome": "denied", "reason": decision.reason})
                    raise BudgetExceeded(budget_context.session_id, decision.reason, attempts=attempts)
                reservation = decision.reservation

            timeout = self.timeouts.get(spec.capability, 30.0)
            start = time.monotonic()
            try:
                response = await asyncio.wait_for(spec.client.complete(request), timeout=timeout)
            except asyncio.TimeoutError:
                latency_ms = (time.monotonic() - start) * 1000
                error: ProviderError = ProviderTimeoutError(name, f"no response within {timeout}s")
            except ProviderError as e:
                latency_ms = (time.monotonic() - start) * 1000
                error = e
            except Exception as e:
                latency_ms = (time.monotonic() - start) * 1000
                error = ProviderError(name, f"unexpected error: {e}")
            except asyncio.CancelledError:
                breaker.abandon()
                if reservation is not None:
                    await self.budget_guard.release(reservation)
                raise
            else:
                latency_ms = (time.monotonic() - start) * 1000
                breaker.record_success(latency_ms)

                metadata = {
                    "provider": name,
                    "latency_ms": round(latency_ms, 1),
                    "usage": dict(response.usage),
                    "fallback_depth": depth,
                    "attempts": attempts,
                    "complexity": analysis.to_dict(),
                }
                if reservation is not None:
                    billing_error = await self._commit(spec, request, response, budget_context, reservation)
                    if billing_error:
                        metadata["billing_error"] = billing_error

                attempts.append({"provider": name, "outcome": "success", "latency_ms": round(latency_ms, 1)})
                return RouteResult(result=response, provider_used=name, metadata=metadata)

            breaker.record_failure(latency_ms)
            if reservation is not None:
                await self.budget_guard.release(reservation)
            attempts.append({
                "provider": name,
                "outcome": "failed",
                "reason": str(error),
                "latency_ms": round(latency_ms, 1),
            })
            logger.warning(f"⚠️ Provider {name} failed for {request.operation.value}: {error}")

        raise NoProviderAvailable(
            f"All providers failed or unavailable for {request.operation.value}: "
            + ", ".join(f"{a['provider']} ({a['outcome']})" for a in attempts),
            attempts=attempts,
        )

    async def _commit(
        self,
        spec: ProviderSpec,
        request: ProviderRequest,
        response: ProviderResponse,
        budget_context: BudgetContext,
        reservation: Reservation,
    ) -> Optional[str]:
        """Book the cost of a served call. A booking error is logged and returned, never raised."""
        cost = self._actual_cost(spec, request, response)
        try:
            await self.budget_guard.commit(
                budget_context.session_id,
                cost,
                request.operation,
                provider=spec.name,
                request_id=budget_context.request_id or request.request_id,
                reservation=reservation,
                model_name=response.model or spec.model_name,
                usage=response.usage,
            )
        except Exception as e:
            logger.error(
                f"❌ Failed to book ${cost} for {spec.name} in session {budget_context.session_id}: {e}"
            )
            await self.budget_guard.release(reservation)
            return str(e)
        return None

    def _actual_cost(self, spec: ProviderSpec, request: ProviderRequest, response: ProviderResponse) -> Decimal:
        prompt_tokens = response.usage.get("prompt_tokens")
        completion_tokens = response.usage.get("completion_tokens")
        if prompt_tokens is None and completion_tokens is None and spec.request_cost == 0:
            # Provider reported no usage; bill the estimate
            return self.classifier.estimate(spec, request)
        return estimate_cost(spec, prompt_tokens or 0, completion_tokens or 0)
