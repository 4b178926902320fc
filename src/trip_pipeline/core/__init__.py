"""
Core pipeline layer: configuration, error taxonomy, circuit breakers,
complexity classification, the four generation stages and the workflow
orchestrator.

Key Components:
- ComplexityClassifier: scores requests and orders the provider fallback chain
- CircuitBreaker / ProviderHealthRegistry: per-provider failure isolation
- PipelineStage subclasses: Data Gatherer, Information Gatherer,
  Planning Strategist, Content Compiler
- WorkflowOrchestrator: stage sequencing, degradation and persistence
"""

from .circuit_breaker import CircuitBreaker, CircuitBreakerConfig, CircuitBreakerState, ProviderHealthRegistry
from .config import Settings, get_settings
from .exceptions import (
    AccessDenied,
    BudgetExceeded,
    ConfigurationError,
    NoProviderAvailable,
    PipelineError,
    PipelineValidationError,
    ProviderError,
    ProviderTimeoutError,
    StageFailure,
    StageValidationError,
    WorkflowFatal,
)

__all__ = [
    'CircuitBreaker',
    'CircuitBreakerConfig',
    'CircuitBreakerState',
    'ProviderHealthRegistry',
    'Settings',
    'get_settings',
    'AccessDenied',
    'BudgetExceeded',
    'ConfigurationError',
    'NoProviderAvailable',
    'PipelineError',
    'PipelineValidationError',
    'ProviderError',
    'ProviderTimeoutError',
    'StageFailure',
    'StageValidationError',
    'WorkflowFatal',
]
