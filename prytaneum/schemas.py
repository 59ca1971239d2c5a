"""Pydantic schemas: tool inputs, tool result envelopes, and API request bodies.

Tool inputs use the camelCase argument names the LLM sees (``firmName``,
``activityType``); Python code reads the snake_case attributes. Result
envelopes are tagged on ``status`` and serialized with ``to_wire()``.
"""
from __future__ import annotations

import uuid
from typing import Annotated, Any, Literal, Union

from pydantic import BaseModel, ConfigDict, EmailStr, Field, field_validator

from prytaneum.stages import Stage

QueryIntent = Literal[
    "stalled_investors",
    "investors_by_stage",
    "high_value_pipeline",
    "recent_activity",
    "pipeline_summary",
    "upcoming_actions",
]

StrategyRequestType = Literal["next_steps", "risk_assessment", "prioritization", "objection_handling"]

# System types (stage_change, field_update) cannot be created by users or the assistant
UserActivityType = Literal["note", "call", "email", "meeting"]

# Fields the assistant may propose changes to; identity/structural fields are excluded
EditableField = Literal[
    "stage",
    "internal_conviction",
    "est_value",
    "next_action",
    "next_action_date",
    "current_strategy_notes",
    "key_objection_risk",
]

class _Schema(BaseModel):
    model_config = ConfigDict(populate_by_name=True, str_strip_whitespace=True)


# ---------------------------------------------------------------------------
# Tool inputs
# ---------------------------------------------------------------------------


class PipelineFilters(_Schema):
    stage: str | None = Field(None, description="Filter by specific stage")
    min_value: float | None = Field(None, alias="minValue", description="Minimum estimated value")
    max_value: float | None = Field(None, alias="maxValue", description="Maximum estimated value")
    timeframe_days: int | None = Field(
        None, alias="timeframeDays", ge=1,
        description="Days for timeframe filters (default: 30 for stalled, 7 for recent/upcoming)",
    )
    conviction: str | None = Field(None, description="Filter by internal conviction")


class QueryPipelineInput(_Schema):
    intent: QueryIntent = Field(description="The type of query to execute")
    filters: PipelineFilters | None = None


class GetInvestorDetailInput(_Schema):
    firm_name: str = Field(alias="firmName", min_length=1,
                           description="The firm name to search for (supports partial matching)")


class StrategyAdvisorInput(_Schema):
    investor_id: uuid.UUID = Field(alias="investorId", description="The investor UUID")
    request_type: StrategyRequestType = Field(alias="requestType",
                                              description="Type of strategic analysis needed")


class LogActivityInput(_Schema):
    firm_name: str = Field(alias="firmName", min_length=1, description="Firm name (fuzzy match)")
    activity_type: UserActivityType = Field(alias="activityType",
                                            description="Type of activity: note, call, email, or meeting")
    description: str = Field(min_length=5, max_length=500,
                             description="Activity description (5-500 characters)")


class CreateMeetingInput(_Schema):
    firm_name: str = Field(alias="firmName", min_length=1, description="Firm name (fuzzy match)")
    meeting_title: str = Field(min_length=1, description="Title or subject of the meeting")
    meeting_date: str = Field(
        min_length=10,
        description="Meeting date as ISO 8601 string (e.g. 2026-02-21T14:00:00Z) or YYYY-MM-DD",
    )
    duration_minutes: int | None = Field(None, gt=0, description="Duration of the meeting in minutes")
    notes: str | None = Field(None, description="Meeting notes or agenda items")


class UpdateInvestorInput(_Schema):
    firm_name: str = Field(alias="firmName", min_length=1, description="Firm name to update (fuzzy match)")
    field: EditableField = Field(description="Field to update")
    new_value: str | float = Field(alias="newValue", description="New value for the field")
    reason: str = Field(min_length=5, description="Reason for the update (minimum 5 characters)")


class CreateInvestorInput(_Schema):
    firm_name: str = Field(min_length=1, max_length=200, description="Name of the investment firm")
    stage: Stage = Field(description="Pipeline stage")
    relationship_owner: str = Field(min_length=1, max_length=100,
                                    description="Name of the person who owns this relationship")
    est_value: float | None = Field(None, gt=0,
                                    description="Estimated investment value in dollars (e.g. 5000000 for $5M)")
    notes: str | None = Field(None, description="Optional initial notes about this investor")


class CreateContactInput(_Schema):
    firm_name: str = Field(min_length=1, description="Firm name to add contact to (fuzzy match)")
    name: str = Field(min_length=1, max_length=200, description="Full name of the contact person")
    phone: str | None = Field(None, max_length=50, description="Phone number (e.g. +1-555-123-4567)")
    email: EmailStr | None = Field(None, description="Email address")
    title: str | None = Field(None, max_length=200, description="Job title or role (e.g. Managing Partner, CFO)")
    is_primary: bool | None = Field(None, description="Whether this is the primary contact for the investor")

    @field_validator("email", mode="before")
    @classmethod
    def blank_email_is_none(cls, v: Any) -> Any:
        if isinstance(v, str) and not v.strip():
            return None
        return v


# ---------------------------------------------------------------------------
# Tool result envelopes
# ---------------------------------------------------------------------------


class Envelope(_Schema):
    def to_wire(self) -> dict[str, Any]:
        return self.model_dump(by_alias=True, mode="json")


class ToolError(Envelope):
    status: Literal["error"] = "error"
    message: str


class ClarificationNeeded(Envelope):
    status: Literal["clarification_needed"] = "clarification_needed"
    message: str
    matches: list[str]


class LogActivitySuccess(Envelope):
    status: Literal["success"] = "success"
    message: str
    activity_id: str = Field(alias="activityId")
    firm_name: str = Field(alias="firmName")


class CreateMeetingSuccess(Envelope):
    status: Literal["success"] = "success"
    message: str
    meeting_id: str = Field(alias="meetingId")
    firm_name: str = Field(alias="firmName")
    meeting_date: str = Field(alias="meetingDate")
    meeting_title: str = Field(alias="meetingTitle")


def _proposal_id() -> str:
    return str(uuid.uuid4())


class _Proposal(Envelope):
    status: Literal["confirmation_required"] = "confirmation_required"
    proposal_id: str = Field(default_factory=_proposal_id, alias="proposalId")
    message: str = ""


class UpdateInvestorProposal(_Proposal):
    kind: Literal["update_investor"] = "update_investor"
    investor_id: str = Field(alias="investorId")
    firm_name: str = Field(alias="firmName")
    field: EditableField
    current_value: Any = Field(None, alias="currentValue")
    new_value: Any = Field(alias="newValue")
    reason: str
    transition_allowed: bool | None = Field(None, alias="transitionAllowed")


class DuplicateCandidate(_Schema):
    id: str
    firm_name: str
    stage: str


class CreateInvestorProposal(_Proposal):
    kind: Literal["create_investor"] = "create_investor"
    firm_name: str
    stage: Stage
    relationship_owner: str
    est_value: float | None = None
    notes: str | None = None
    possible_duplicates: list[DuplicateCandidate] = Field(default_factory=list, alias="possibleDuplicates")


class CreateContactProposal(_Proposal):
    kind: Literal["create_contact"] = "create_contact"
    investor_id: str = Field(alias="investorId")
    firm_name: str = Field(alias="firmName")
    name: str
    phone: str | None = None
    email: EmailStr | None = None
    title: str | None = None
    is_primary: bool = False


Proposal = Annotated[
    Union[UpdateInvestorProposal, CreateInvestorProposal, CreateContactProposal],
    Field(discriminator="kind"),
]


# ---------------------------------------------------------------------------
# API request bodies
# ---------------------------------------------------------------------------


class ProposalDecision(_Schema):
    proposal: Proposal


class ChatMessage(_Schema):
    role: Literal["user", "assistant"]
    content: str | None = None
    parts: list[dict[str, Any]] | None = None

    def text(self) -> str:
        """Flatten UI ``parts`` (text parts only) into plain content."""
        if self.parts:
            return " ".join(p.get("text", "") for p in self.parts if p.get("type") == "text")
        return self.content or ""


class ChatRequest(_Schema):
    messages: list[ChatMessage] = Field(min_length=1)
