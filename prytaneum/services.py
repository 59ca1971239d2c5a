"""Shared data-layer operations for the tool layer, proposal apply, and REST API.

Mutating helpers add/flush but never commit; the caller owns the transaction.
"""
from __future__ import annotations

import logging
from collections import Counter
from datetime import date
from typing import Any, get_args

from sqlalchemy import select
from sqlalchemy.orm import Session

from prytaneum.models import Activity, Contact, Investor
from prytaneum.schemas import EditableField
from prytaneum.stages import DEFAULT_STALL_DAYS, STAGE_ORDER, compute_is_stalled, is_valid_stage, is_valid_transition
from prytaneum.utils import as_date, days_since, to_iso, today

log = logging.getLogger(__name__)

# ---------------------------------------------------------------------------
# Shared field tuples
# ---------------------------------------------------------------------------

EDITABLE_FIELDS: tuple[str, ...] = get_args(EditableField)
DATE_FIELDS = ("next_action_date",)
NUMERIC_FIELDS = ("est_value",)

SUMMARY_FIELDS = (
    "id", "firm_name", "relationship_owner", "stage", "est_value",
    "internal_conviction", "internal_priority", "next_action", "next_action_date",
    "last_action_date", "stage_entry_date",
)

DETAIL_FIELDS = (
    "partner_source", "entry_date", "allocator_type",
    "current_strategy_notes", "current_strategy_date",
    "last_strategy_notes", "last_strategy_date", "key_objection_risk",
)

# ---------------------------------------------------------------------------
# Field validation
# ---------------------------------------------------------------------------


def coerce_field_value(field: str, value: Any) -> Any:
    """Validate and convert *value* for an editable investor field.

    Raises ValueError with a user-facing message when the value is unusable.
    """
    if field not in EDITABLE_FIELDS:
        raise ValueError(f"Unknown field: {field}")
    if field == "stage":
        stage = str(value).strip()
        if not is_valid_stage(stage):
            raise ValueError(f"Invalid stage value: {stage!r}. Valid stages: {', '.join(STAGE_ORDER)}")
        return stage
    if field in NUMERIC_FIELDS:
        if value is None or value == "":
            return None
        try:
            number = float(str(value).replace(",", "").replace("$", "").strip())
        except ValueError:
            raise ValueError(f"{field} must be a number") from None
        if number < 0:
            raise ValueError("Estimated value must be 0 or greater")
        return number
    if field in DATE_FIELDS:
        if value is None or value == "":
            return None
        try:
            return as_date(str(value))
        except ValueError:
            raise ValueError(f"{field} must be an ISO date (YYYY-MM-DD)") from None
    text = str(value).strip() if value is not None else ""
    return text or None


def field_value(investor: Investor, field: str) -> Any:
    return to_iso(getattr(investor, field))


# ---------------------------------------------------------------------------
# Lookups
# ---------------------------------------------------------------------------


def get_investor(session: Session, investor_id: str) -> Investor | None:
    return session.execute(
        select(Investor).where(Investor.id == investor_id, Investor.deleted_at.is_(None))
    ).scalars().first()


def list_investors(session: Session) -> list[Investor]:
    return list(session.execute(
        select(Investor).where(Investor.deleted_at.is_(None)).order_by(Investor.firm_name)
    ).scalars().all())


def active_contacts(session: Session, investor_id: str) -> list[Contact]:
    return list(session.execute(
        select(Contact)
        .where(Contact.investor_id == investor_id, Contact.deleted_at.is_(None))
        .order_by(Contact.is_primary.desc(), Contact.created_at)
    ).scalars().all())


def recent_activities(session: Session, investor_id: str, limit: int) -> list[Activity]:
    return list(session.execute(
        select(Activity)
        .where(Activity.investor_id == investor_id)
        .order_by(Activity.created_at.desc())
        .limit(limit)
    ).scalars().all())


def activity_for_proposal(session: Session, proposal_id: str) -> Activity | None:
    return session.execute(
        select(Activity).where(Activity.proposal_id == proposal_id)
    ).scalars().first()


# ---------------------------------------------------------------------------
# Serialization helpers
# ---------------------------------------------------------------------------


def derived_metrics(inv: Investor, threshold_days: int = DEFAULT_STALL_DAYS) -> dict[str, Any]:
    return {
        "days_in_stage": days_since(inv.stage_entry_date),
        "days_since_action": days_since(inv.last_action_date),
        "stalled": compute_is_stalled(inv.last_action_date, inv.stage, threshold_days, inv.stage_entry_date),
    }


def investor_summary(inv: Investor) -> dict[str, Any]:
    return {**{f: to_iso(getattr(inv, f)) for f in SUMMARY_FIELDS}, **derived_metrics(inv)}


def investor_detail(session: Session, inv: Investor) -> dict[str, Any]:
    base = investor_summary(inv)
    base.update({f: to_iso(getattr(inv, f)) for f in DETAIL_FIELDS})
    base["contacts"] = [contact_summary(c) for c in active_contacts(session, inv.id)]
    base["recent_activities"] = [activity_summary(a) for a in recent_activities(session, inv.id, 10)]
    return base


def contact_summary(c: Contact) -> dict[str, Any]:
    return {
        "id": c.id, "name": c.name, "title": c.title, "email": c.email,
        "phone": c.phone, "is_primary": c.is_primary,
    }


def activity_summary(a: Activity) -> dict[str, Any]:
    return {
        "type": a.activity_type,
        "description": a.description,
        "created_at": to_iso(a.created_at),
    }


def compute_stats(session: Session) -> dict[str, Any]:
    investors = list_investors(session)
    by_stage: Counter[str] = Counter(inv.stage for inv in investors)
    stalled = sum(
        1 for inv in investors
        if compute_is_stalled(inv.last_action_date, inv.stage, DEFAULT_STALL_DAYS, inv.stage_entry_date)
    )
    return {
        "total": len(investors),
        "by_stage": {s: by_stage[s] for s in STAGE_ORDER if by_stage[s]},
        "stalled": stalled,
        "pipeline_value": sum(inv.est_value or 0 for inv in investors),
    }


# ---------------------------------------------------------------------------
# Mutations (caller must commit)
# ---------------------------------------------------------------------------


def record_activity(
    session: Session, investor_id: str, activity_type: str, description: str, *,
    user_id: str | None, metadata: dict[str, Any] | None = None, proposal_id: str | None = None,
) -> Activity:
    activity = Activity(
        investor_id=investor_id, activity_type=activity_type, description=description,
        metadata_json=metadata, created_by=user_id, proposal_id=proposal_id,
    )
    session.add(activity)
    session.flush()
    return activity


def touch_last_action(investor: Investor, when: date | None = None) -> None:
    investor.last_action_date = when or today()


def change_stage(
    session: Session, investor: Investor, new_stage: str, *,
    user_id: str | None, reason: str | None = None, proposal_id: str | None = None,
    source: str = "user",
) -> Activity | None:
    """Move an investor to *new_stage*; returns the stage_change activity (None if unchanged).

    Transitions outside the workflow are allowed but recorded as overrides.
    """
    if not is_valid_stage(new_stage):
        raise ValueError(f"Invalid stage value: {new_stage!r}")
    from_stage = investor.stage
    if from_stage == new_stage:
        return None
    override = not is_valid_transition(from_stage, new_stage)
    investor.stage = new_stage
    investor.stage_entry_date = today()
    touch_last_action(investor)
    metadata: dict[str, Any] = {"from_stage": from_stage, "to_stage": new_stage, "source": source}
    if reason:
        metadata["reason"] = reason
    description = f"Stage changed from {from_stage} to {new_stage}"
    if override:
        description += " (OVERRIDE)"
        log.info("Stage override for %s: %s -> %s by %s", investor.firm_name, from_stage, new_stage, user_id)
        metadata["override_reason"] = reason
        metadata["overridden_by"] = user_id
    return record_activity(
        session, investor.id, "stage_change", description,
        user_id=user_id, metadata=metadata, proposal_id=proposal_id,
    )


def update_investor_field(
    session: Session, investor: Investor, field: str, value: Any, *,
    user_id: str | None, reason: str | None = None, proposal_id: str | None = None,
    source: str = "user",
) -> Activity | None:
    """Apply a single validated field change and log it on the timeline."""
    new_value = coerce_field_value(field, value)
    if field == "stage":
        return change_stage(
            session, investor, new_value,
            user_id=user_id, reason=reason, proposal_id=proposal_id, source=source,
        )
    old_value = field_value(investor, field)
    if field == "current_strategy_notes" and investor.current_strategy_notes:
        investor.last_strategy_notes = investor.current_strategy_notes
        investor.last_strategy_date = investor.current_strategy_date
    setattr(investor, field, new_value)
    if field == "current_strategy_notes":
        investor.current_strategy_date = today()
    metadata: dict[str, Any] = {
        "field": field, "old_value": old_value, "new_value": to_iso(new_value), "source": source,
    }
    if reason:
        metadata["reason"] = reason
    return record_activity(
        session, investor.id, "field_update", f"Updated {field}",
        user_id=user_id, metadata=metadata, proposal_id=proposal_id,
    )


def create_investor(
    session: Session, *, firm_name: str, stage: str, relationship_owner: str,
    est_value: float | None = None, notes: str | None = None,
    user_id: str | None, proposal_id: str | None = None, source: str = "user",
) -> Investor:
    if not is_valid_stage(stage):
        raise ValueError(f"Invalid stage value: {stage!r}")
    now = today()
    investor = Investor(
        firm_name=firm_name.strip(), stage=stage, relationship_owner=relationship_owner.strip(),
        est_value=est_value, entry_date=now, stage_entry_date=now, created_by=user_id,
    )
    if notes:
        investor.current_strategy_notes = notes
        investor.current_strategy_date = now
    session.add(investor)
    session.flush()
    record_activity(
        session, investor.id, "note", "Investor record created",
        user_id=user_id, metadata={"source": source}, proposal_id=proposal_id,
    )
    return investor


def create_contact(
    session: Session, investor: Investor, *, name: str,
    phone: str | None = None, email: str | None = None, title: str | None = None,
    is_primary: bool = False, user_id: str | None, proposal_id: str | None = None,
    source: str = "user",
) -> Contact:
    """Add a contact; a new primary contact demotes any existing primary."""
    if is_primary:
        for existing in active_contacts(session, investor.id):
            if existing.is_primary:
                existing.is_primary = False
    contact = Contact(
        investor_id=investor.id, name=name.strip(), phone=phone or None,
        email=email or None, title=title or None, is_primary=is_primary,
    )
    session.add(contact)
    session.flush()
    record_activity(
        session, investor.id, "note", f"Added contact: {contact.name}",
        user_id=user_id, metadata={"source": source, "contact_id": contact.id},
        proposal_id=proposal_id,
    )
    return contact
