"""
Complexity Classifier
=====================
Scores a provider request on a handful of weighted factors, maps the score
to a capability class and orders the provider registry into a fallback
chain around that class. Purely deterministic: the same request against
the same registry always yields the same chain.
"""

import json
import logging
import re
from dataclasses import dataclass, field
from decimal import Decimal
from typing import Any, Dict, List, Optional

from ..models.pipeline_state import CapabilityClass
from ..services.budget_guard import estimate_cost
from ..services.providers import ProviderRegistry, ProviderRequest, ProviderSpec

logger = logging.getLogger(__name__)

CAPABILITY_ORDER: List[CapabilityClass] = [
    CapabilityClass.FAST_SIMPLE,
    CapabilityClass.BALANCED,
    CapabilityClass.DEEP_REASONING,
]

DEFAULT_FACTOR_WEIGHTS: Dict[str, float] = {
    "length": 0.2,
    "domain_terms": 0.25,
    "multi_step": 0.25,
    "depth": 0.15,
    "output_structure": 0.15,
}

DOMAIN_TERM_PATTERNS = [
    re.compile(r"\b(itinerary|accommodation|transportation|logistics|booking|reservation)\b", re.I),
    re.compile(r"\b(optimization|analysis|evaluation|comparison|recommendation)\b", re.I),
    re.compile(r"\b(geographical|cultural|historical|architectural|culinary)\b", re.I),
    re.compile(r"\b(schedule|timeline|duration|availability|constraint|requirement)\b", re.I),
    re.compile(r"\b(budget|cost|pricing|expense|financial)\b", re.I),
]

MULTI_STEP_PATTERNS = [
    re.compile(r"\b(first|second|third|then|next|after|before|finally|lastly)\b", re.I),
    re.compile(r"\b(plan|organize|arrange|coordinate|consider|evaluate|compare)\b", re.I),
    re.compile(r"\b(if|unless|provided|depending|based on|according to)\b", re.I),
    re.compile(r"\b(both|all|various|multiple|several|different|alternative)\b", re.I),
]
ENUMERATION_PATTERN = re.compile(r"(?m)^\s*(\d+\.|[-*•])\s")

DEPTH_VALUES = {"quick": 0.1, "standard": 0.4, "deep": 0.9}


@dataclass
class ComplexityFactor:
    """One scored input to the complexity estimate"""
    name: str
    weight: float
    value: float
    description: str


@dataclass
class ComplexityAnalysis:
    """Score, target class and the factors that produced them"""
    score: float
    level: CapabilityClass
    target: CapabilityClass
    factors: List[ComplexityFactor] = field(default_factory=list)
    token_estimate: int = 0

    def to_dict(self) -> Dict[str, Any]:
        return {
            "score": round(self.score, 3),
            "level": self.level.value,
            "target": self.target.value,
            "token_estimate": self.token_estimate,
            "factors": {factor.name: round(factor.value, 3) for factor in self.factors},
        }


class ComplexityClassifier:
    """Turns a request into an ordered provider chain"""

    def __init__(
        self,
        registry: ProviderRegistry,
        low_threshold: float = 0.3,
        medium_threshold: float = 0.7,
        weights: Optional[Dict[str, float]] = None,
        filter_by_budget: bool = True,
    ):
        self.registry = registry
        self.low_threshold = low_threshold
        self.medium_threshold = medium_threshold
        self.weights = dict(weights or DEFAULT_FACTOR_WEIGHTS)
        self.filter_by_budget = filter_by_budget

    def analyze(self, request: ProviderRequest) -> ComplexityAnalysis:
        """Score the request in [0, 1] and pick a capability class"""
        text = request.task
        factors = [
            self._length_factor(text),
            self._domain_terms_factor(text),
            self._multi_step_factor(text),
            self._depth_factor(request),
            self._output_structure_factor(request),
        ]

        total_weight = sum(factor.weight for factor in factors)
        score = sum(factor.value * factor.weight for factor in factors) / total_weight if total_weight else 0.0
        score = min(1.0, max(0.0, score))

        level = self.level_for(score)
        target = request.capability_hint or level

        return ComplexityAnalysis(
            score=score,
            level=level,
            target=target,
            factors=factors,
            token_estimate=request.estimated_prompt_tokens,
        )

    def level_for(self, score: float) -> CapabilityClass:
        if score <= self.low_threshold:
            return CapabilityClass.FAST_SIMPLE
        if score <= self.medium_threshold:
            return CapabilityClass.BALANCED
        return CapabilityClass.DEEP_REASONING

    def classify(
        self,
        request: ProviderRequest,
        remaining_budget_usd: Optional[Decimal] = None,
        analysis: Optional[ComplexityAnalysis] = None,
    ) -> List[str]:
        """
        Ordered provider names to try for `request`.

        Providers that do not support the operation are dropped, and so are
        providers whose estimated cost exceeds the remaining budget. If the
        budget filter empties the chain it is relaxed; if no provider supports
        the operation at all the full registry is returned in priority order.
        The result is never empty.
        """
        analysis = analysis or self.analyze(request)

        capable = [spec for spec in self.registry if spec.supports(request.operation)]
        if not capable:
            logger.warning(
                f"No provider supports {request.operation.value}; falling back to full registry"
            )
            return self.registry.names

        candidates = capable
        if self.filter_by_budget and remaining_budget_usd is not None:
            affordable = [
                spec for spec in capable
                if self.estimate(spec, request) <= remaining_budget_usd
            ]
            if affordable:
                candidates = affordable
            else:
                logger.info(
                    f"Every {request.operation.value} provider exceeds remaining budget "
                    f"${remaining_budget_usd}; ignoring budget filter"
                )

        target_index = CAPABILITY_ORDER.index(analysis.target)
        ordered = sorted(
            candidates,
            key=lambda spec: (
                abs(CAPABILITY_ORDER.index(spec.capability) - target_index),
                self.registry.priority_of(spec.name),
            ),
        )
        return [spec.name for spec in ordered]

    def estimate(self, spec: ProviderSpec, request: ProviderRequest) -> Decimal:
        return estimate_cost(spec, request.estimated_prompt_tokens, request.estimated_completion_tokens)

    # Factors

    def _length_factor(self, text: str) -> ComplexityFactor:
        length = len(text)
        words = len(text.split())

        if length < 100 or words < 20:
            value = 0.1
        elif length < 300 or words < 60:
            value = 0.3
        elif length < 800 or words < 150:
            value = 0.6
        else:
            value = 0.9

        return ComplexityFactor("length", self.weights["length"], value, f"{words} words ({length} characters)")

    def _domain_terms_factor(self, text: str) -> ComplexityFactor:
        words = len(text.split())
        count = sum(len(pattern.findall(text)) for pattern in DOMAIN_TERM_PATTERNS)
        ratio = count / words if words else 0.0
        value = min(ratio * 3, 1.0)

        return ComplexityFactor(
            "domain_terms", self.weights["domain_terms"], value, f"{count} domain terms in {words} words"
        )

    def _multi_step_factor(self, text: str) -> ComplexityFactor:
        count = sum(len(pattern.findall(text)) for pattern in MULTI_STEP_PATTERNS)
        count += len(ENUMERATION_PATTERN.findall(text))
        value = min(count * 0.15, 1.0)

        return ComplexityFactor("multi_step", self.weights["multi_step"], value, f"{count} multi-step cues")

    def _depth_factor(self, request: ProviderRequest) -> ComplexityFactor:
        value = DEPTH_VALUES.get(request.depth, DEPTH_VALUES["standard"])

        payload_size = len(json.dumps(request.payload, default=str)) if request.payload else 0
        if payload_size > 4000:
            value += 0.2
        elif payload_size > 1000:
            value += 0.1
        value = min(value, 1.0)

        return ComplexityFactor(
            "depth", self.weights["depth"], value, f"depth={request.depth}, payload={payload_size} chars"
        )

    def _output_structure_factor(self, request: ProviderRequest) -> ComplexityFactor:
        text = request.task.lower()
        value = 0.0

        if request.response_format == "json" or any(cue in text for cue in ("json", "format", "structure")):
            value += 0.3
        if any(cue in text for cue in ("table", "list", "bullet")):
            value += 0.2
        if any(cue in text for cue in ("detailed", "comprehensive", "complete")):
            value += 0.3
        if any(cue in text for cue in ("section", "day-by-day", "day by day")):
            value += 0.2
        value = min(value, 1.0)

        return ComplexityFactor(
            "output_structure", self.weights["output_structure"], value, f"structure score {value:.2f}"
        )
