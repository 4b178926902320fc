"""
Trip request models: the submitted intake form and the normalised intent
the pipeline stages work from.
"""

import re
from datetime import date
from typing import Any, Dict, List, Optional

from pydantic import BaseModel, ConfigDict, Field

from ..core.exceptions import StageValidationError

DEFAULT_TRIP_DAYS = 3
MAX_TRIP_DAYS = 30


class TripFormData(BaseModel):
    """Submitted intake form. Only the shape is checked here; content is checked by the data gathering stage."""

    model_config = ConfigDict(populate_by_name=True, extra="allow")

    location: Optional[str] = None
    depart_date: Optional[str] = Field(None, alias="departDate")
    return_date: Optional[str] = Field(None, alias="returnDate")
    flexible_dates: bool = Field(False, alias="flexibleDates")
    planned_days: Optional[int] = Field(None, alias="plannedDays", ge=1)
    adults: int = Field(1, ge=0)
    children: int = Field(0, ge=0)
    children_ages: List[int] = Field(default_factory=list, alias="childrenAges")
    budget: Optional[float] = Field(None, ge=0)
    currency: Optional[str] = "USD"
    budget_mode: Optional[str] = Field(None, alias="budgetMode")
    flexible_budget: bool = Field(False, alias="flexibleBudget")
    selected_groups: List[str] = Field(default_factory=list, alias="selectedGroups")
    custom_group_text: Optional[str] = Field(None, alias="customGroupText")
    selected_interests: List[str] = Field(default_factory=list, alias="selectedInterests")
    custom_interests_text: Optional[str] = Field(None, alias="customInterestsText")
    selected_inclusions: List[str] = Field(default_factory=list, alias="selectedInclusions")
    custom_inclusions_text: Optional[str] = Field(None, alias="customInclusionsText")
    travel_style_answers: Dict[str, Any] = Field(default_factory=dict, alias="travelStyleAnswers")
    trip_nickname: Optional[str] = Field(None, alias="tripNickname")
    contact_info: Optional[Dict[str, Any]] = Field(None, alias="contactInfo")


class TravelParty(BaseModel):
    adults: int = 1
    children: int = 0
    children_ages: List[int] = Field(default_factory=list)

    @property
    def total(self) -> int:
        return self.adults + self.children


class TripIntent(BaseModel):
    """Normalised trip intent produced by the data gathering stage"""

    destination: str
    start_date: Optional[date] = None
    end_date: Optional[date] = None
    duration_days: int = DEFAULT_TRIP_DAYS
    flexible_dates: bool = False
    party: TravelParty = Field(default_factory=TravelParty)
    budget_amount: Optional[float] = None
    currency: str = "USD"
    flexible_budget: bool = False
    groups: List[str] = Field(default_factory=list)
    interests: List[str] = Field(default_factory=list)
    inclusions: List[str] = Field(default_factory=list)
    vibes: List[str] = Field(default_factory=list)
    sample_days: List[str] = Field(default_factory=list)
    dinner_choices: List[str] = Field(default_factory=list)
    nickname: Optional[str] = None
    notes: List[str] = Field(default_factory=list)

    @classmethod
    def from_form(cls, form: TripFormData) -> "TripIntent":
        """Normalise a form. Raises StageValidationError when no usable trip can be derived."""
        destination = _clean(form.location)
        if not destination:
            raise StageValidationError("Trip destination is required")

        start = _parse_date(form.depart_date, "departDate")
        end = _parse_date(form.return_date, "returnDate")
        if start and end and end < start:
            raise StageValidationError("returnDate is before departDate")

        if start and end:
            duration = (end - start).days + 1
        elif form.planned_days:
            duration = form.planned_days
        else:
            duration = DEFAULT_TRIP_DAYS
        duration = min(max(duration, 1), MAX_TRIP_DAYS)

        if form.adults + form.children <= 0:
            raise StageValidationError("At least one traveller is required")

        answers = form.travel_style_answers or {}
        notes = [
            text for text in (
                _clean(form.custom_group_text),
                _clean(form.custom_interests_text),
                _clean(form.custom_inclusions_text),
                _clean(answers.get("customVibesText")),
                _clean(answers.get("otherDinnerChoiceText")),
            ) if text
        ]

        return cls(
            destination=destination,
            start_date=start,
            end_date=end,
            duration_days=duration,
            flexible_dates=form.flexible_dates,
            party=TravelParty(
                adults=form.adults,
                children=form.children,
                children_ages=list(form.children_ages),
            ),
            budget_amount=form.budget,
            currency=(_clean(form.currency) or "USD").upper(),
            flexible_budget=form.flexible_budget,
            groups=_keywords(form.selected_groups),
            interests=_keywords(form.selected_interests),
            inclusions=_keywords(form.selected_inclusions),
            vibes=_keywords(answers.get("vibes")),
            sample_days=_keywords(answers.get("sampleDays")),
            dinner_choices=_keywords(answers.get("dinnerChoices")),
            nickname=_clean(form.trip_nickname) or _clean(answers.get("tripNickname")),
            notes=notes,
        )

    @property
    def schedule_window(self) -> str:
        if self.start_date and self.end_date:
            return f"{self.start_date.isoformat()} to {self.end_date.isoformat()}"
        return f"{self.duration_days}-day outline"

    def describe(self) -> str:
        """Plain-text trip summary for prompts"""
        lines = [
            f"Destination: {self.destination}",
            f"Dates: {self.schedule_window}",
            f"Travellers: {self.party.adults} adults, {self.party.children} children",
        ]
        if self.budget_amount:
            flex = " (flexible)" if self.flexible_budget else ""
            lines.append(f"Budget: {self.currency} {self.budget_amount:,.0f}{flex}")
        for label, values in (
            ("Groups", self.groups),
            ("Interests", self.interests),
            ("Must include", self.inclusions),
            ("Vibe", self.vibes),
            ("Day rhythm", self.sample_days),
            ("Dining", self.dinner_choices),
        ):
            if values:
                lines.append(f"{label}: {', '.join(values)}")
        if self.nickname:
            lines.append(f"Trip name: {self.nickname}")
        if self.notes:
            lines.append(f"Notes: {'; '.join(self.notes)}")
        return "\n".join(lines)


def _clean(value: Any) -> Optional[str]:
    if not isinstance(value, str):
        return None
    value = re.sub(r"\s+", " ", value).strip()
    return value or None


def _keywords(value: Any) -> List[str]:
    """List (or single string) of tags, with dashes and underscores turned into spaces"""
    if isinstance(value, str):
        value = [value]
    if not isinstance(value, list):
        return []
    keywords = []
    for item in value:
        text = _clean(item)
        if text:
            keywords.append(re.sub(r"[-_]+", " ", text).strip())
    return keywords


def _parse_date(value: Optional[str], field: str) -> Optional[date]:
    text = _clean(value)
    if not text:
        return None
    try:
        return date.fromisoformat(text[:10])
    except ValueError:
        raise StageValidationError(f"{field} is not an ISO date: {text}")
