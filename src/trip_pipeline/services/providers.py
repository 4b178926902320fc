"""
Provider Clients - Multi-Provider LLM and Search Integration
============================================================
Uniform async clients for the third-party providers the pipeline routes
across (Groq, Cerebras, xAI, Gemini, SerpAPI, Tavily), plus the static
registry table that tells the router each provider's capability class,
supported operations and pricing.
"""

import json
import logging
import math
import time
import uuid
from abc import ABC, abstractmethod
from dataclasses import dataclass, field
from decimal import Decimal
from typing import Any, Dict, FrozenSet, List, Optional

import httpx
import openai
from openai import AsyncOpenAI

from ..core.config import Settings
from ..core.exceptions import ConfigurationError, ProviderError, ProviderTimeoutError
from ..models.pipeline_state import CapabilityClass, OperationKind

logger = logging.getLogger(__name__)

LLM_OPERATIONS: FrozenSet[OperationKind] = frozenset({
    OperationKind.GENERATION,
    OperationKind.SUMMARIZATION,
})
SEARCH_OPERATIONS: FrozenSet[OperationKind] = frozenset({OperationKind.SEARCH})


@dataclass
class ProviderRequest:
    """Structured provider request"""
    task: str
    operation: OperationKind = OperationKind.GENERATION
    system_prompt: Optional[str] = None
    payload: Optional[Dict[str, Any]] = None
    depth: str = "standard"  # quick | standard | deep
    capability_hint: Optional[CapabilityClass] = None
    response_format: Optional[str] = None  # "json" for JSON object output
    temperature: float = 0.3
    max_tokens: Optional[int] = None
    request_id: str = field(default_factory=lambda: uuid.uuid4().hex)

    def prompt_text(self) -> str:
        """Task text with the payload appended as JSON context"""
        if not self.payload:
            return self.task
        return f"{self.task}\n\nContext:\n{json.dumps(self.payload, default=str, indent=2)}"

    @property
    def estimated_prompt_tokens(self) -> int:
        # ~4 characters per token
        size = len(self.prompt_text()) + len(self.system_prompt or "")
        return max(1, math.ceil(size / 4))

    @property
    def estimated_completion_tokens(self) -> int:
        if self.max_tokens:
            return self.max_tokens
        return {"quick": 400, "standard": 1200, "deep": 2500}.get(self.depth, 1200)


@dataclass
class ProviderResponse:
    """Structured provider response"""
    content: str
    provider: str
    model: str = ""
    usage: Dict[str, int] = field(default_factory=dict)
    response_time_ms: int = 0
    results: Optional[List[Dict[str, Any]]] = None  # search hits


class ProviderClient(ABC):
    """Abstract base class for provider clients"""

    def __init__(self, name: str, model: str = ""):
        self.name = name
        self.model = model

    @abstractmethod
    async def complete(self, request: ProviderRequest) -> ProviderResponse:
        """Run one request. Raises ProviderError on any failure."""
        pass

    async def aclose(self) -> None:
        """Release network resources"""
        pass


class OpenAICompatibleProvider(ProviderClient):
    """Chat completions over an OpenAI-compatible API (Groq, Cerebras, xAI)"""

    def __init__(self, name: str, api_key: str, base_url: str, model: str, timeout: float = 60.0):
        super().__init__(name, model)
        self.client = AsyncOpenAI(api_key=api_key, base_url=base_url, timeout=timeout, max_retries=0)

    async def complete(self, request: ProviderRequest) -> ProviderResponse:
        start_time = time.time()

        messages = [{"role": "user", "content": request.prompt_text()}]
        if request.system_prompt:
            messages.insert(0, {"role": "system", "content": request.system_prompt})

        params: Dict[str, Any] = {
            "model": self.model,
            "messages": messages,
            "temperature": request.temperature,
        }
        if request.max_tokens:
            params["max_tokens"] = request.max_tokens
        if request.response_format == "json":
            params["response_format"] = {"type": "json_object"}

        try:
            response = await self.client.chat.completions.create(**params)
        except openai.APITimeoutError as e:
            raise ProviderTimeoutError(self.name, f"request timed out: {e}")
        except openai.APIStatusError as e:
            raise ProviderError(self.name, f"HTTP {e.status_code}: {e.message}", status_code=e.status_code)
        except openai.APIError as e:
            raise ProviderError(self.name, f"API error: {e}")

        if not response.choices:
            raise ProviderError(self.name, "response contained no choices")

        content = response.choices[0].message.content or ""
        if not content.strip():
            raise ProviderError(self.name, "empty completion")

        usage = {}
        if response.usage:
            usage = {
                "prompt_tokens": response.usage.prompt_tokens or 0,
                "completion_tokens": response.usage.completion_tokens or 0,
                "total_tokens": response.usage.total_tokens or 0,
            }

        return ProviderResponse(
            content=content,
            provider=self.name,
            model=response.model or self.model,
            usage=usage,
            response_time_ms=int((time.time() - start_time) * 1000),
        )

    async def aclose(self) -> None:
        await self.client.close()


class GeminiProvider(ProviderClient):
    """Google Gemini generateContent over REST"""

    def __init__(self, api_key: str, base_url: str, model: str, timeout: float = 60.0):
        super().__init__("gemini", model)
        self.api_key = api_key
        self.base_url = base_url.rstrip("/")
        self.client = httpx.AsyncClient(timeout=timeout)

    async def complete(self, request: ProviderRequest) -> ProviderResponse:
        start_time = time.time()

        generation_config: Dict[str, Any] = {"temperature": request.temperature}
        if request.max_tokens:
            generation_config["maxOutputTokens"] = request.max_tokens
        if request.response_format == "json":
            generation_config["responseMimeType"] = "application/json"

        body: Dict[str, Any] = {
            "contents": [{"role": "user", "parts": [{"text": request.prompt_text()}]}],
            "generationConfig": generation_config,
        }
        if request.system_prompt:
            body["systemInstruction"] = {"parts": [{"text": request.system_prompt}]}

        url = f"{self.base_url}/models/{self.model}:generateContent"
        data = await _post_json(self.client, self.name, url, body, params={"key": self.api_key})

        try:
            parts = data["candidates"][0]["content"]["parts"]
            content = "".join(part.get("text", "") for part in parts)
        except (KeyError, IndexError, TypeError):
            raise ProviderError(self.name, "malformed response payload")

        if not content.strip():
            raise ProviderError(self.name, "empty completion")

        metadata = data.get("usageMetadata") or {}
        usage = {
            "prompt_tokens": metadata.get("promptTokenCount", 0),
            "completion_tokens": metadata.get("candidatesTokenCount", 0),
            "total_tokens": metadata.get("totalTokenCount", 0),
        }

        return ProviderResponse(
            content=content,
            provider=self.name,
            model=self.model,
            usage=usage,
            response_time_ms=int((time.time() - start_time) * 1000),
        )

    async def aclose(self) -> None:
        await self.client.aclose()


class SerpApiSearchProvider(ProviderClient):
    """Google results through SerpAPI"""

    def __init__(self, api_key: str, base_url: str, max_results: int = 8, timeout: float = 30.0):
        super().__init__("serpapi", "google")
        self.api_key = api_key
        self.base_url = base_url
        self.max_results = max_results
        self.client = httpx.AsyncClient(timeout=timeout)

    async def complete(self, request: ProviderRequest) -> ProviderResponse:
        start_time = time.time()
        params = {
            "engine": "google",
            "q": request.task,
            "num": self.max_results,
            "api_key": self.api_key,
        }

        try:
            response = await self.client.get(self.base_url, params=params)
        except httpx.TimeoutException as e:
            raise ProviderTimeoutError(self.name, f"request timed out: {e}")
        except httpx.HTTPError as e:
            raise ProviderError(self.name, f"network error: {e}")

        data = _decode_json(self.name, response)
        results = [
            {
                "title": item.get("title", ""),
                "url": item.get("link", ""),
                "snippet": item.get("snippet", ""),
            }
            for item in data.get("organic_results", [])[: self.max_results]
        ]
        return _search_response(self.name, self.model, results, start_time)

    async def aclose(self) -> None:
        await self.client.aclose()


class TavilySearchProvider(ProviderClient):
    """Tavily search API"""

    def __init__(self, api_key: str, base_url: str, max_results: int = 8, timeout: float = 30.0):
        super().__init__("tavily", "tavily-search")
        self.api_key = api_key
        self.base_url = base_url
        self.max_results = max_results
        self.client = httpx.AsyncClient(timeout=timeout)

    async def complete(self, request: ProviderRequest) -> ProviderResponse:
        start_time = time.time()
        body = {
            "api_key": self.api_key,
            "query": request.task,
            "max_results": self.max_results,
            "search_depth": "advanced" if request.depth == "deep" else "basic",
            "include_answer": False,
            "include_raw_content": False,
        }

        data = await _post_json(self.client, self.name, self.base_url, body)
        results = [
            {
                "title": item.get("title", ""),
                "url": item.get("url", ""),
                "snippet": item.get("content", ""),
            }
            for item in data.get("results", [])[: self.max_results]
        ]
        return _search_response(self.name, self.model, results, start_time)

    async def aclose(self) -> None:
        await self.client.aclose()


async def _post_json(
    client: httpx.AsyncClient,
    provider: str,
    url: str,
    body: Dict[str, Any],
    params: Optional[Dict[str, Any]] = None,
) -> Dict[str, Any]:
    try:
        response = await client.post(url, json=body, params=params)
    except httpx.TimeoutException as e:
        raise ProviderTimeoutError(provider, f"request timed out: {e}")
    except httpx.HTTPError as e:
        raise ProviderError(provider, f"network error: {e}")
    return _decode_json(provider, response)


def _decode_json(provider: str, response: httpx.Response) -> Dict[str, Any]:
    if response.status_code >= 300:
        raise ProviderError(
            provider,
            f"HTTP {response.status_code}: {response.text[:200]}",
            status_code=response.status_code,
        )
    try:
        data = response.json()
    except ValueError:
        raise ProviderError(provider, "response body is not JSON")
    if not isinstance(data, dict):
        raise ProviderError(provider, "malformed response payload")
    return data


def _search_response(provider: str, model: str, results: List[Dict[str, Any]], start_time: float) -> ProviderResponse:
    if not results:
        raise ProviderError(provider, "search returned no results")
    return ProviderResponse(
        content=json.dumps(results),
        provider=provider,
        model=model,
        usage={"requests": 1},
        response_time_ms=int((time.time() - start_time) * 1000),
        results=results,
    )


@dataclass
class ProviderSpec:
    """Static registry entry: what a provider can do and what it costs"""
    name: str
    capability: CapabilityClass
    operations: FrozenSet[OperationKind]
    client: ProviderClient
    prompt_cost_per_1k: Decimal = Decimal("0")
    completion_cost_per_1k: Decimal = Decimal("0")
    request_cost: Decimal = Decimal("0")

    @property
    def model_name(self) -> str:
        return self.client.model

    def supports(self, operation: OperationKind) -> bool:
        return operation in self.operations


class ProviderRegistry:
    """Ordered provider table. Iteration order is the configured default priority."""

    def __init__(self, specs: List[ProviderSpec], priority: Optional[List[str]] = None):
        if not specs:
            raise ConfigurationError("No providers configured; at least one provider API key is required")

        priority = priority or []
        rank = {name: index for index, name in enumerate(priority)}
        self._specs = sorted(
            specs,
            key=lambda spec: (rank.get(spec.name, len(priority)), specs.index(spec)),
        )

    def __iter__(self):
        return iter(self._specs)

    def __len__(self) -> int:
        return len(self._specs)

    def __contains__(self, name: str) -> bool:
        return any(spec.name == name for spec in self._specs)

    @property
    def names(self) -> List[str]:
        return [spec.name for spec in self._specs]

    def get(self, name: str) -> ProviderSpec:
        for spec in self._specs:
            if spec.name == name:
                return spec
        raise KeyError(name)

    def priority_of(self, name: str) -> int:
        return self.names.index(name)

    async def aclose(self) -> None:
        for spec in self._specs:
            try:
                await spec.client.aclose()
            except Exception as e:
                logger.warning(f"Failed to close provider {spec.name}: {e}")


def build_provider_registry(settings: Settings) -> ProviderRegistry:
    """Register every provider that has credentials configured"""
    specs: List[ProviderSpec] = []

    if settings.groq_api_key:
        specs.append(ProviderSpec(
            name="groq",
            capability=CapabilityClass.FAST_SIMPLE,
            operations=LLM_OPERATIONS,
            client=OpenAICompatibleProvider("groq", settings.groq_api_key, settings.groq_base_url, settings.groq_model),
            prompt_cost_per_1k=Decimal("0.0003"),
            completion_cost_per_1k=Decimal("0.0006"),
        ))

    if settings.gemini_api_key:
        specs.append(ProviderSpec(
            name="gemini",
            capability=CapabilityClass.BALANCED,
            operations=LLM_OPERATIONS,
            client=GeminiProvider(settings.gemini_api_key, settings.gemini_base_url, settings.gemini_model),
            prompt_cost_per_1k=Decimal("0.0005"),
            completion_cost_per_1k=Decimal("0.0015"),
        ))

    if settings.cerebras_api_key:
        specs.append(ProviderSpec(
            name="cerebras",
            capability=CapabilityClass.DEEP_REASONING,
            operations=LLM_OPERATIONS,
            client=OpenAICompatibleProvider(
                "cerebras", settings.cerebras_api_key, settings.cerebras_base_url, settings.cerebras_model
            ),
            prompt_cost_per_1k=Decimal("0.001"),
            completion_cost_per_1k=Decimal("0.002"),
        ))

    if settings.xai_api_key:
        specs.append(ProviderSpec(
            name="xai",
            capability=CapabilityClass.DEEP_REASONING,
            operations=LLM_OPERATIONS,
            client=OpenAICompatibleProvider("xai", settings.xai_api_key, settings.xai_base_url, settings.xai_model),
            prompt_cost_per_1k=Decimal("0.0002"),
            completion_cost_per_1k=Decimal("0.0005"),
        ))

    if settings.serpapi_api_key:
        specs.append(ProviderSpec(
            name="serpapi",
            capability=CapabilityClass.FAST_SIMPLE,
            operations=SEARCH_OPERATIONS,
            client=SerpApiSearchProvider(
                settings.serpapi_api_key, settings.serpapi_base_url, settings.search_max_results
            ),
            request_cost=Decimal("0.01"),
        ))

    if settings.tavily_api_key:
        specs.append(ProviderSpec(
            name="tavily",
            capability=CapabilityClass.BALANCED,
            operations=SEARCH_OPERATIONS,
            client=TavilySearchProvider(
                settings.tavily_api_key, settings.tavily_base_url, settings.search_max_results
            ),
            request_cost=Decimal("0.008"),
        ))

    registry = ProviderRegistry(specs, settings.provider_priority)
    logger.info(f"✅ Provider registry initialized with {len(registry)} providers: {registry.names}")
    return registry
