"""
Pipeline Stages
===============
The four generation stages, one class per stage. Each stage reads the
workflow state, does its work (through the provider router where it needs
a model or a search) and returns a StageOutput. Stages never mutate the
workflow; recording outputs and handling failures is the orchestrator's job.
"""

import json
import logging
import re
from typing import Any, Dict, List, Optional

from pydantic import ValidationError

from ..models.pipeline_state import CapabilityClass, OperationKind, StageOutput, WorkflowStage, WorkflowState
from ..models.trip_request import TripFormData, TripIntent
from ..services.providers import ProviderRequest
from ..services.router import BudgetContext, ProviderRouter
from .exceptions import StageValidationError

logger = logging.getLogger(__name__)

MAX_RESEARCH_ITEMS = 6


class PipelineStage:
    """Base class for pipeline stages"""

    stage: WorkflowStage
    terminal: bool = False  # failure ends the workflow

    def __init__(self, router: Optional[ProviderRouter] = None):
        self.router = router

    @property
    def name(self) -> str:
        return self.stage.value

    async def process(self, workflow: WorkflowState) -> StageOutput:
        """Run the stage against the workflow state"""
        raise NotImplementedError("Subclasses must implement process method")

    def fallback(self, workflow: WorkflowState) -> Any:
        """Locally computed, non-billable stand-in output for a failed stage"""
        return None

    def budget_context(self, workflow: WorkflowState) -> BudgetContext:
        return BudgetContext(session_id=workflow.session_id, request_id=f"{workflow.workflow_id}:{self.name}")


def intent_of(workflow: WorkflowState) -> TripIntent:
    data = workflow.output_data(WorkflowStage.DATA_GATHER)
    if data is None:
        raise StageValidationError("Trip intent is missing; data gathering has not completed")
    return TripIntent.model_validate(data)


class DataGatherer(PipelineStage):
    """Normalises the submitted form into a TripIntent. No network, no spend."""

    stage = WorkflowStage.DATA_GATHER
    terminal = True

    async def process(self, workflow: WorkflowState) -> StageOutput:
        logger.info(f"Processing data gathering for {workflow.workflow_id}")

        try:
            form = TripFormData.model_validate(workflow.form_data)
        except ValidationError as e:
            raise StageValidationError(f"Form data could not be read: {e.error_count()} invalid fields")

        intent = TripIntent.from_form(form)
        return StageOutput(stage=self.stage, data=intent.model_dump(mode="json"))


class InformationGatherer(PipelineStage):
    """Searches for destination research to ground the plan"""

    stage = WorkflowStage.INFO_GATHER

    def build_query(self, intent: TripIntent) -> str:
        focus = ", ".join((intent.interests + intent.inclusions)[:4])
        query = f"{intent.destination} travel guide things to do"
        if focus:
            query += f" {focus}"
        if intent.party.children:
            query += " family friendly"
        return query

    async def process(self, workflow: WorkflowState) -> StageOutput:
        logger.info(f"Processing information gathering for {workflow.workflow_id}")

        intent = intent_of(workflow)
        query = self.build_query(intent)
        routed = await self.router.route(
            ProviderRequest(task=query, operation=OperationKind.SEARCH, depth="quick"),
            self.budget_context(workflow),
        )

        results = routed.result.results or []
        return StageOutput(
            stage=self.stage,
            data={"query": query, "results": results[:MAX_RESEARCH_ITEMS]},
            provider=routed.provider_used,
            routing=routed.metadata,
        )

    def fallback(self, workflow: WorkflowState) -> Any:
        return {"query": self.build_query(intent_of(workflow)), "results": []}


PLANNER_SYSTEM_PROMPT = """You are an expert travel planner. Design the skeleton of a day-by-day trip plan.
Respond with a JSON object: {"summary": str, "days": [{"day": int, "theme": str, "focus": [str]}]}.
Keep one entry per day and respect the travellers' budget and interests."""

COMPILER_SYSTEM_PROMPT = """You are a travel concierge writing the final itinerary.
Merge the plan skeleton and the research into a JSON object with keys
"title", "summary", "dailyActivities" (one entry per day with "day", "theme" and
"activities" [{"time", "title", "description", "location"}]) and "travelTips"
([{"title", "description"}]). Use only places that fit the destination."""


class PlanningStrategist(PipelineStage):
    """Deep-reasoning generation of the plan skeleton"""

    stage = WorkflowStage.PLAN

    async def process(self, workflow: WorkflowState) -> StageOutput:
        logger.info(f"Processing planning for {workflow.workflow_id}")

        intent = intent_of(workflow)
        research = workflow.output_data(WorkflowStage.INFO_GATHER) or {}
        prompt = (
            f"Plan a {intent.duration_days}-day trip. First consider the travellers and their interests, "
            f"then arrange each day so the schedule is balanced.\n\n{intent.describe()}"
        )

        routed = await self.router.route(
            ProviderRequest(
                task=prompt,
                system_prompt=PLANNER_SYSTEM_PROMPT,
                payload={"research": _research_digest(research)},
                depth="deep",
                capability_hint=CapabilityClass.DEEP_REASONING,
                response_format="json",
            ),
            self.budget_context(workflow),
        )

        parsed = parse_json_leniently(routed.result.content)
        plan = parsed if isinstance(parsed, dict) else {"summary": routed.result.content.strip(), "days": []}
        plan.setdefault("days", [])

        return StageOutput(stage=self.stage, data=plan, provider=routed.provider_used, routing=routed.metadata)

    def fallback(self, workflow: WorkflowState) -> Any:
        return heuristic_plan(intent_of(workflow))


class ContentCompiler(PipelineStage):
    """Balanced generation of the final itinerary from plan and research"""

    stage = WorkflowStage.COMPILE
    terminal = True

    async def process(self, workflow: WorkflowState) -> StageOutput:
        logger.info(f"Processing content compilation for {workflow.workflow_id}")

        intent = intent_of(workflow)
        plan = workflow.output_data(WorkflowStage.PLAN) or heuristic_plan(intent)
        research = workflow.output_data(WorkflowStage.INFO_GATHER) or {}

        routed = await self.router.route(
            ProviderRequest(
                task=f"Write the complete itinerary as a detailed JSON document.\n\n{intent.describe()}",
                system_prompt=COMPILER_SYSTEM_PROMPT,
                payload={"plan": plan, "research": _research_digest(research)},
                capability_hint=CapabilityClass.BALANCED,
                response_format="json",
            ),
            self.budget_context(workflow),
        )

        content = routed.result.content.strip()
        if not content:
            raise StageValidationError("Compiled itinerary is empty")

        parsed = parse_json_leniently(content)
        itinerary = parsed if isinstance(parsed, dict) and parsed else {"summary": content}
        itinerary.pop("nextSteps", None)
        itinerary["travelTips"] = normalize_travel_tips(itinerary.get("travelTips"), build_travel_tips(intent))

        return StageOutput(stage=self.stage, data=itinerary, provider=routed.provider_used, routing=routed.metadata)


def default_stages(router: ProviderRouter) -> List[PipelineStage]:
    return [
        DataGatherer(router),
        InformationGatherer(router),
        PlanningStrategist(router),
        ContentCompiler(router),
    ]


def _research_digest(research: Dict[str, Any]) -> List[Dict[str, Any]]:
    return [
        {"title": item.get("title") or "", "snippet": (item.get("snippet") or "")[:300]}
        for item in (research.get("results") or [])[:MAX_RESEARCH_ITEMS]
    ]


def parse_json_leniently(text: str) -> Any:
    """Parse model output as JSON, tolerating code fences and surrounding prose"""
    if not text:
        return None
    cleaned = re.sub(r"^```(?:json)?\s*|\s*```$", "", text.strip())
    try:
        return json.loads(cleaned)
    except ValueError:
        pass

    start, end = cleaned.find("{"), cleaned.rfind("}")
    if start != -1 and end > start:
        try:
            return json.loads(cleaned[start:end + 1])
        except ValueError:
            return None
    return None


def heuristic_plan(intent: TripIntent) -> Dict[str, Any]:
    """Plan skeleton derived from the intent alone"""
    themes = intent.interests or intent.vibes or ["local highlights"]
    days = []
    for day in range(1, intent.duration_days + 1):
        if day == 1:
            theme = f"Arrival and first look at {intent.destination}"
        elif day == intent.duration_days and day > 1:
            theme = "Final favourites and departure"
        else:
            theme = themes[(day - 2) % len(themes)].capitalize()
        days.append({"day": day, "theme": theme, "focus": themes[:2]})

    return {
        "summary": f"{intent.duration_days}-day outline for {intent.destination}",
        "days": days,
        "generated": "heuristic",
    }


def build_travel_tips(intent: TripIntent) -> List[Dict[str, str]]:
    """At least three tips synthesised from the trip intent"""
    tips = []

    day_parts = [f"Sketch a high-level plan for {intent.schedule_window} so you balance must-see moments with relaxed time."]
    if intent.vibes:
        day_parts.append(f"Lean into the {', '.join(intent.vibes)} vibe when choosing activities.")
    if intent.sample_days:
        day_parts.append(f"Let your preferred {', '.join(intent.sample_days)} rhythm guide the pace of each day.")
    if intent.nickname:
        day_parts.append(f'Use "{intent.nickname}" as a north star when you describe the trip to partners or guests.')
    tips.append({"title": f"Shape each day in {intent.destination}", "description": " ".join(day_parts)})

    dining_parts = []
    if intent.dinner_choices:
        dining_parts.append(f"Reserve restaurants that match your {', '.join(intent.dinner_choices)} preferences.")
    dining_parts.append("Mix local staples with a memorable splurge meal to create contrast throughout the trip.")
    tips.append({"title": "Lock in memorable dining", "description": " ".join(dining_parts)})

    party = intent.party
    party_parts = []
    if party.adults:
        plural = "" if party.adults == 1 else "s"
        party_parts.append(f"Coordinate logistics for {party.adults} adult{plural}, making arrival and check-in seamless.")
    if party.children:
        who = "your child" if party.children == 1 else "the kids"
        party_parts.append(f"Schedule daily downtime so {who} can reset between anchor activities.")
    if intent.interests:
        party_parts.append(f"Prioritize highlights connected to {', '.join(intent.interests).lower()}.")
    if intent.inclusions:
        party_parts.append(f"Double-check that must-have inclusions ({', '.join(intent.inclusions).lower()}) appear in each day.")
    tips.append({
        "title": "Design for your travel party",
        "description": " ".join(party_parts)
        or "Balance active experiences with rest blocks so the whole group stays energized.",
    })

    if intent.flexible_budget:
        tips.append({
            "title": "Stay ahead of logistics & spend",
            "description": "Use your flexible budget to contrast premium moments with approachable local finds.",
        })
    elif intent.budget_amount:
        tips.append({
            "title": "Stay ahead of logistics & spend",
            "description": f"Track spend against roughly {intent.currency} {intent.budget_amount:,.0f} "
                           "so you can flag overages early.",
        })

    return tips


def normalize_travel_tips(tips: Any, fallback: List[Dict[str, str]]) -> List[Dict[str, str]]:
    """Coerce model-provided tips into {title, description} pairs, or use the fallback"""
    if not isinstance(tips, list):
        return fallback

    normalized = []
    for index, tip in enumerate(tips, start=1):
        if isinstance(tip, str):
            if tip.strip():
                normalized.append({"title": f"Trip tip {index}", "description": tip.strip()})
            continue
        if not isinstance(tip, dict):
            continue

        title = str(tip.get("title") or tip.get("heading") or f"Trip tip {index}").strip()
        description = tip.get("description") or tip.get("content")
        if not description and isinstance(tip.get("bullets"), list):
            description = " ".join(str(b).strip() for b in tip["bullets"] if str(b).strip())
        if isinstance(description, str) and description.strip():
            normalized.append({"title": title, "description": description.strip()})

    return normalized or fallback
