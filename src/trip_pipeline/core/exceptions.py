"""
Error taxonomy for the generation pipeline.

Provider-level errors are absorbed by the router and circuit breaker.
Stage-level errors are handled by the orchestrator's degradation policy.
Only workflow-level failures reach the polling client, and always as a
structured status payload rather than a raw exception.
"""

from typing import Any, Dict, List, Optional


class PipelineError(Exception):
    """Base exception for pipeline errors"""
    pass


class ConfigurationError(PipelineError):
    """Raised when the service cannot start with the given configuration"""
    pass


class PipelineValidationError(PipelineError):
    """Malformed caller input. Surfaced immediately as a 4xx, never retried."""

    def __init__(self, message: str, field: Optional[str] = None):
        super().__init__(message)
        self.field = field


class AccessDenied(PipelineError, PermissionError):
    """Raised when a principal reads or writes records it does not own"""
    pass


class ProviderError(PipelineError):
    """Network error, non-2xx response, or unusable payload from a provider"""

    def __init__(self, provider: str, message: str, status_code: Optional[int] = None):
        super().__init__(f"{provider}: {message}")
        self.provider = provider
        self.status_code = status_code


class ProviderTimeoutError(ProviderError):
    """Raised when a provider does not answer within its class timeout"""
    pass


class StageFailure(PipelineError):
    """Base for failures the orchestrator handles per stage"""
    pass


class NoProviderAvailable(StageFailure):
    """Every candidate in the fallback chain was skipped or failed"""

    def __init__(self, message: str, attempts: Optional[List[Dict[str, Any]]] = None):
        super().__init__(message)
        self.attempts = attempts or []


class BudgetExceeded(StageFailure):
    """A reservation was denied by the budget guard"""

    def __init__(self, session_id: str, reason: str, attempts: Optional[List[Dict[str, Any]]] = None):
        super().__init__(reason)
        self.session_id = session_id
        self.reason = reason
        self.attempts = attempts or []


class StageValidationError(StageFailure):
    """A stage produced output that failed its own completeness checks"""
    pass


class WorkflowFatal(PipelineError):
    """Terminal failure of the data gathering or content compilation stage"""

    def __init__(self, stage: str, detail: str):
        super().__init__(f"{stage}: {detail}")
        self.stage = stage
        self.detail = detail
