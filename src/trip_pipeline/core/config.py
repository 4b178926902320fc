"""
Configuration settings for the Trip Pipeline Service
"""
from functools import lru_cache
from typing import List, Optional

from pydantic_settings import BaseSettings, SettingsConfigDict


class Settings(BaseSettings):
    """Application settings with environment variable support"""

    model_config = SettingsConfigDict(
        env_file=".env",
        case_sensitive=False,
        extra="ignore",  # Allow extra environment variables
    )

    # Application settings
    app_name: str = "Trip Pipeline Service"
    app_version: str = "1.0.0"
    debug: bool = False
    environment: str = "development"

    # Server settings
    host: str = "0.0.0.0"
    port: int = 8000
    public_base_url: Optional[str] = None

    # Provider credentials
    groq_api_key: Optional[str] = None
    cerebras_api_key: Optional[str] = None
    xai_api_key: Optional[str] = None
    gemini_api_key: Optional[str] = None
    serpapi_api_key: Optional[str] = None
    tavily_api_key: Optional[str] = None

    # Provider endpoints and models
    groq_base_url: str = "https://api.groq.com/openai/v1"
    groq_model: str = "llama-3.3-70b-versatile"
    cerebras_base_url: str = "https://api.cerebras.ai/v1"
    cerebras_model: str = "llama3.1-70b"
    xai_base_url: str = "https://api.x.ai/v1"
    xai_model: str = "grok-4-fast-reasoning"
    gemini_base_url: str = "https://generativelanguage.googleapis.com/v1beta"
    gemini_model: str = "gemini-1.5-flash"
    serpapi_base_url: str = "https://serpapi.com/search.json"
    tavily_base_url: str = "https://api.tavily.com/search"
    search_max_results: int = 8

    # Routing
    provider_priority: List[str] = ["groq", "gemini", "cerebras", "xai", "serpapi", "tavily"]
    fast_simple_timeout_seconds: float = 10.0
    balanced_timeout_seconds: float = 20.0
    deep_reasoning_timeout_seconds: float = 30.0
    filter_providers_by_remaining_budget: bool = True

    # Circuit breaker
    circuit_failure_threshold: int = 5
    circuit_cooldown_seconds: float = 30.0
    circuit_metrics_window: int = 50

    # Budget
    session_budget_limit_usd: float = 5.0
    budget_exceeded_policy: str = "skip"  # skip | free_fallback

    # Workflow
    stage_deadline_seconds: float = 90.0
    estimated_completion_minutes: int = 3
    session_ttl_minutes: int = 120
    session_sweep_interval_seconds: int = 300

    # State store
    state_backend: str = "memory"  # memory | redis
    redis_url: str = "redis://localhost:6379"
    workflow_ttl_seconds: int = 86400
    terminal_workflow_ttl_seconds: int = 604800

    # Access control
    service_token: Optional[str] = None

    # CORS settings
    cors_origins: list = ["*"]  # Configure appropriately for production
    cors_methods: list = ["GET", "POST"]
    cors_headers: list = ["*"]

    # Logging settings
    log_level: str = "INFO"


@lru_cache()
def get_settings() -> Settings:
    """Get cached settings instance"""
    return Settings()
