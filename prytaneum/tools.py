"""Tool executors called by the assistant.

Three kinds of tool live here:

- **Read-only** (``query_pipeline``, ``get_investor_detail``, ``strategy_advisor``)
  return data and never touch state.
- **Direct-write** (``log_activity``, ``create_meeting``) append records
  immediately; the worst outcome is a spurious entry on a timeline.
- **Confirmation-required** (``update_investor``, ``create_investor``,
  ``create_contact``) only resolve and validate, then return a proposal that
  carries everything needed for the write. The write itself happens in
  ``prytaneum.proposals`` after a person approves it.

Executors receive already-validated input models and return either a plain
dict (reads) or a result envelope from ``prytaneum.schemas``.
"""
from __future__ import annotations

import logging
from collections import Counter
from dataclasses import dataclass
from datetime import UTC, datetime, timedelta
from typing import Any

from sqlalchemy import select
from sqlalchemy.exc import SQLAlchemyError
from sqlalchemy.orm import Session

from prytaneum import services
from prytaneum.models import Investor, Meeting
from prytaneum.resolver import find_investors, resolve_investor
from prytaneum.schemas import (
    ClarificationNeeded,
    CreateContactInput,
    CreateContactProposal,
    CreateInvestorInput,
    CreateInvestorProposal,
    CreateMeetingInput,
    CreateMeetingSuccess,
    DuplicateCandidate,
    GetInvestorDetailInput,
    LogActivityInput,
    LogActivitySuccess,
    PipelineFilters,
    QueryPipelineInput,
    StrategyAdvisorInput,
    ToolError,
    UpdateInvestorInput,
    UpdateInvestorProposal,
)
from prytaneum.security import sanitize_tool_output
from prytaneum.stages import (
    DEFAULT_STALL_DAYS,
    STAGE_ORDER,
    compute_is_stalled,
    get_exit_criteria,
    is_valid_transition,
)
from prytaneum.utils import days_since, to_iso, today

log = logging.getLogger(__name__)

AI_SOURCE = "ai_assistant"
QUERY_LIMIT = 50
HIGH_VALUE_DEFAULT = 1_000_000
RECENT_DAYS_DEFAULT = 7
UPCOMING_DAYS_DEFAULT = 7
DUPLICATE_LIMIT = 3

ANALYSIS_GUIDANCE = {
    "next_steps": (
        "Analyze current stage, recent activities, and strategy notes to recommend concrete next steps. "
        "Consider timeline, relationship momentum, and stage exit criteria."
    ),
    "risk_assessment": (
        "Evaluate key objections/risks, days since last action, conviction level, and stalled status. "
        "Identify red flags and mitigation strategies."
    ),
    "prioritization": (
        "Consider est_value, internal_conviction, internal_priority, stage proximity to close, and "
        "relationship momentum. Recommend priority level with rationale."
    ),
    "objection_handling": (
        "Analyze key_objection_risk field and strategy notes. Suggest approaches to address concerns "
        "and advance the relationship."
    ),
}


@dataclass
class ToolContext:
    """Per-invocation state: the data-store session and the acting user."""
    session: Session
    user_id: str | None = None


# ---------------------------------------------------------------------------
# Read-only
# ---------------------------------------------------------------------------


def _pipeline_row(inv: Investor, threshold_days: int = DEFAULT_STALL_DAYS) -> dict[str, Any]:
    return {
        "firm_name": inv.firm_name,
        "stage": inv.stage,
        "est_value": inv.est_value,
        "days_since_action": days_since(inv.last_action_date),
        "internal_conviction": inv.internal_conviction,
        "next_action": inv.next_action,
        "next_action_date": to_iso(inv.next_action_date),
        "stalled": compute_is_stalled(inv.last_action_date, inv.stage, threshold_days, inv.stage_entry_date),
    }


async def query_pipeline(ctx: ToolContext, args: QueryPipelineInput) -> dict[str, Any]:
    """Run one of the predefined pipeline queries; no free-form predicates."""
    intent = args.intent
    filters = args.filters or PipelineFilters()
    stmt = select(Investor).where(Investor.deleted_at.is_(None))
    order = Investor.firm_name

    if intent == "investors_by_stage" and filters.stage:
        stmt = stmt.where(Investor.stage == filters.stage)
    elif intent == "high_value_pipeline":
        min_value = filters.min_value if filters.min_value is not None else HIGH_VALUE_DEFAULT
        stmt = stmt.where(Investor.est_value >= min_value)
        if filters.max_value is not None:
            stmt = stmt.where(Investor.est_value <= filters.max_value)
        order = Investor.est_value.desc()
    elif intent == "recent_activity":
        cutoff = today() - timedelta(days=filters.timeframe_days or RECENT_DAYS_DEFAULT)
        stmt = stmt.where(Investor.last_action_date >= cutoff)
        order = Investor.last_action_date.desc()
    elif intent == "upcoming_actions":
        horizon = today() + timedelta(days=filters.timeframe_days or UPCOMING_DAYS_DEFAULT)
        stmt = stmt.where(Investor.next_action_date.is_not(None), Investor.next_action_date <= horizon)
        order = Investor.next_action_date

    if filters.conviction:
        stmt = stmt.where(Investor.internal_conviction == filters.conviction)

    # Stalled and summary need the whole pipeline; the predicate runs in Python
    if intent not in ("stalled_investors", "pipeline_summary"):
        stmt = stmt.limit(QUERY_LIMIT)
    investors = list(ctx.session.execute(stmt.order_by(order)).scalars().all())

    if intent == "pipeline_summary":
        counts: Counter[str] = Counter(inv.stage for inv in investors)
        ordered = [s for s in STAGE_ORDER if counts[s]] + sorted(s for s in counts if s not in STAGE_ORDER)
        return {
            "count": len(investors),
            "by_stage": {s: counts[s] for s in ordered},
            "summary": f"Pipeline has {len(investors)} active investors across {len(counts)} stages",
        }

    threshold = DEFAULT_STALL_DAYS
    if intent == "stalled_investors":
        threshold = filters.timeframe_days or DEFAULT_STALL_DAYS
        investors = [
            inv for inv in investors
            if compute_is_stalled(inv.last_action_date, inv.stage, threshold, inv.stage_entry_date)
        ][:QUERY_LIMIT]

    rows = sanitize_tool_output([_pipeline_row(inv, threshold) for inv in investors])
    summary = f'Found {len(rows)} investors matching "{intent}"'
    if filters.stage and intent == "investors_by_stage":
        summary += f' in stage "{filters.stage}"'
    return {"count": len(rows), "investors": rows, "summary": summary}


async def get_investor_detail(
    ctx: ToolContext, args: GetInvestorDetailInput,
) -> dict[str, Any] | ToolError | ClarificationNeeded:
    investor, err = resolve_investor(ctx.session, args.firm_name)
    if err:
        return err

    contacts = [
        {"name": c.name, "title": c.title, "is_primary": c.is_primary, "email": c.email, "phone": c.phone}
        for c in services.active_contacts(ctx.session, investor.id)
    ]
    return {
        "found": True,
        "matches": 1,
        "investor": {
            "id": investor.id,
            "firm_name": investor.firm_name,
            "relationship_owner": investor.relationship_owner,
            "stage": investor.stage,
            **services.derived_metrics(investor),
            "est_value": investor.est_value,
            "allocator_type": investor.allocator_type,
            "internal_conviction": investor.internal_conviction,
            "internal_priority": investor.internal_priority,
            "last_action_date": to_iso(investor.last_action_date),
            "next_action": investor.next_action,
            "next_action_date": to_iso(investor.next_action_date),
            "current_strategy_notes": investor.current_strategy_notes,
            "current_strategy_date": to_iso(investor.current_strategy_date),
            "key_objection_risk": investor.key_objection_risk,
        },
        "contacts": sanitize_tool_output(contacts),
        "recent_activities": [
            services.activity_summary(a) for a in services.recent_activities(ctx.session, investor.id, 10)
        ],
    }


async def strategy_advisor(ctx: ToolContext, args: StrategyAdvisorInput) -> dict[str, Any] | ToolError:
    """Return the context bundle for a strategic question; the model does the reasoning."""
    investor = services.get_investor(ctx.session, str(args.investor_id))
    if investor is None:
        return ToolError(message=f"Investor not found: no investor with ID {args.investor_id}")

    activities = services.recent_activities(ctx.session, investor.id, 5)
    return {
        "request_type": args.request_type,
        "investor": {
            "firm_name": investor.firm_name,
            "relationship_owner": investor.relationship_owner,
            "stage": investor.stage,
            **services.derived_metrics(investor),
            "est_value": investor.est_value,
            "allocator_type": investor.allocator_type,
            "internal_conviction": investor.internal_conviction,
            "internal_priority": investor.internal_priority,
        },
        "strategy": {
            "current_strategy_notes": investor.current_strategy_notes,
            "current_strategy_date": to_iso(investor.current_strategy_date),
            "last_strategy_notes": investor.last_strategy_notes,
            "last_strategy_date": to_iso(investor.last_strategy_date),
            "key_objection_risk": investor.key_objection_risk,
        },
        "actions": {
            "next_action": investor.next_action,
            "next_action_date": to_iso(investor.next_action_date),
            "stage_exit_criteria": [c.label for c in get_exit_criteria(investor.stage)],
            "recent_activities": [
                {"type": a.activity_type, "description": a.description, "date": to_iso(a.created_at)}
                for a in activities
            ],
        },
        "analysis_guidance": ANALYSIS_GUIDANCE[args.request_type],
    }


# ---------------------------------------------------------------------------
# Direct-write
# ---------------------------------------------------------------------------


async def log_activity(
    ctx: ToolContext, args: LogActivityInput,
) -> LogActivitySuccess | ToolError | ClarificationNeeded:
    investor, err = resolve_investor(ctx.session, args.firm_name)
    if err:
        return err

    activity = services.record_activity(
        ctx.session, investor.id, args.activity_type, args.description,
        user_id=ctx.user_id, metadata={"source": AI_SOURCE},
    )
    services.touch_last_action(investor)
    ctx.session.commit()
    return LogActivitySuccess(
        message=f'Activity logged for {investor.firm_name}: "{args.description}"',
        activity_id=activity.id,
        firm_name=investor.firm_name,
    )


def normalize_meeting_date(value: str) -> datetime:
    """Parse an ISO 8601 date or timestamp; a bare ``YYYY-MM-DD`` becomes midnight UTC.

    Raises ValueError for anything else, including trailing text after a date.
    """
    parsed = datetime.fromisoformat(value.strip().replace("Z", "+00:00"))
    return parsed if parsed.tzinfo else parsed.replace(tzinfo=UTC)


def _date_label(value: datetime) -> str:
    return f"{value:%b} {value.day}, {value.year}"


async def create_meeting(
    ctx: ToolContext, args: CreateMeetingInput,
) -> CreateMeetingSuccess | ToolError | ClarificationNeeded:
    try:
        meeting_date = normalize_meeting_date(args.meeting_date)
    except ValueError:
        return ToolError(
            message=f'Invalid meeting_date "{args.meeting_date}". Use YYYY-MM-DD or an ISO 8601 timestamp.',
        )

    investor, err = resolve_investor(ctx.session, args.firm_name)
    if err:
        return err
    investor_id, firm_name = investor.id, investor.firm_name

    meeting = Meeting(
        investor_id=investor_id, meeting_title=args.meeting_title, meeting_date=meeting_date,
        duration_minutes=args.duration_minutes, status="pending", created_by=ctx.user_id,
    )
    ctx.session.add(meeting)
    ctx.session.commit()

    # The meeting stands even if its timeline entry cannot be written
    description = f"Meeting: {args.meeting_title}"
    if args.notes:
        description += f" - {args.notes}"
    try:
        services.record_activity(
            ctx.session, investor_id, "meeting", description,
            user_id=ctx.user_id, metadata={"source": AI_SOURCE, "meeting_id": meeting.id},
        )
        services.touch_last_action(investor)
        ctx.session.commit()
    except SQLAlchemyError as exc:
        ctx.session.rollback()
        log.warning("Meeting %s created but timeline activity failed for %s: %s", meeting.id, firm_name, exc)

    label = _date_label(meeting_date)
    return CreateMeetingSuccess(
        message=f'Meeting logged with {firm_name} on {label}: "{args.meeting_title}"',
        meeting_id=meeting.id,
        firm_name=firm_name,
        meeting_date=label,
        meeting_title=args.meeting_title,
    )


# ---------------------------------------------------------------------------
# Confirmation-required (propose only; never write)
# ---------------------------------------------------------------------------


async def update_investor(
    ctx: ToolContext, args: UpdateInvestorInput,
) -> UpdateInvestorProposal | ToolError | ClarificationNeeded:
    try:
        new_value = to_iso(services.coerce_field_value(args.field, args.new_value))
    except ValueError as exc:
        return ToolError(message=f"Invalid value for {args.field}: {exc}")

    investor, err = resolve_investor(ctx.session, args.firm_name)
    if err:
        return err

    current_value = services.field_value(investor, args.field)
    transition_allowed = None
    if args.field == "stage":
        transition_allowed = is_valid_transition(investor.stage, new_value)

    message = (
        f"I'd like to update {investor.firm_name}. Here's what will change:\n\n"
        f"**Field:** {args.field}\n"
        f"**Current value:** {current_value if current_value not in (None, '') else '(empty)'}\n"
        f"**New value:** {new_value}\n"
        f"**Reason:** {args.reason}"
    )
    if transition_allowed is False:
        message += f"\n\nNote: {investor.stage} → {new_value} is outside the standard workflow."
    message += "\n\nShall I proceed?"

    return UpdateInvestorProposal(
        investor_id=investor.id,
        firm_name=investor.firm_name,
        field=args.field,
        current_value=current_value,
        new_value=new_value,
        reason=args.reason,
        transition_allowed=transition_allowed,
        message=message,
    )


async def create_investor(ctx: ToolContext, args: CreateInvestorInput) -> CreateInvestorProposal:
    """Propose a new investor; similar firm names are surfaced as a warning, not a block."""
    existing = find_investors(ctx.session, args.firm_name, limit=DUPLICATE_LIMIT)
    duplicates = [DuplicateCandidate(id=inv.id, firm_name=inv.firm_name, stage=inv.stage) for inv in existing]
    if duplicates:
        message = (
            f"I'd like to create a new investor record for {args.firm_name}. "
            f"Note: {len(duplicates)} similar firm(s) already exist."
        )
    else:
        message = f"I'd like to create a new investor record for {args.firm_name}."
    return CreateInvestorProposal(
        firm_name=args.firm_name,
        stage=args.stage,
        relationship_owner=args.relationship_owner,
        est_value=args.est_value,
        notes=args.notes,
        possible_duplicates=duplicates,
        message=message,
    )


async def create_contact(
    ctx: ToolContext, args: CreateContactInput,
) -> CreateContactProposal | ToolError | ClarificationNeeded:
    # Duplicate contact names are allowed
    investor, err = resolve_investor(ctx.session, args.firm_name)
    if err:
        return err
    return CreateContactProposal(
        investor_id=investor.id,
        firm_name=investor.firm_name,
        name=args.name,
        phone=args.phone or None,
        email=args.email or None,
        title=args.title or None,
        is_primary=bool(args.is_primary),
        message=f"I'd like to add a contact to {investor.firm_name}.",
    )
