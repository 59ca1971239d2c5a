"""Phase 2 of confirmation-required tools: apply or reject an approved proposal.

The client sends back the exact proposal it received from the tool call. The
write happens here, against the data layer, without consulting the LLM again.
"""
from __future__ import annotations

import logging
from typing import Any

from pydantic import ValidationError
from sqlalchemy.exc import SQLAlchemyError
from sqlalchemy.orm import Session

from prytaneum import services
from prytaneum.registry import validation_summary
from prytaneum.schemas import (
    CreateContactInput,
    CreateContactProposal,
    CreateInvestorInput,
    CreateInvestorProposal,
    UpdateInvestorProposal,
)

log = logging.getLogger(__name__)

APPROVED_SOURCE = "ai_assistant_approved"


class ProposalError(Exception):
    """A proposal that can no longer be applied as written."""

    def __init__(self, message: str, status_code: int = 422):
        super().__init__(message)
        self.message = message
        self.status_code = status_code


def apply_proposal(session: Session, proposal, user_id: str | None) -> dict[str, Any]:
    """Execute an approved proposal and commit.

    Applying the same proposal twice is a no-op returning ``already_applied``.
    """
    existing = services.activity_for_proposal(session, proposal.proposal_id)
    if existing is not None:
        log.info("Proposal %s already applied (activity %s)", proposal.proposal_id, existing.id)
        return {
            "status": "already_applied",
            "kind": proposal.kind,
            "proposalId": proposal.proposal_id,
            "activityId": existing.id,
        }

    try:
        if isinstance(proposal, UpdateInvestorProposal):
            result = _apply_update(session, proposal, user_id)
        elif isinstance(proposal, CreateInvestorProposal):
            result = _apply_create_investor(session, proposal, user_id)
        elif isinstance(proposal, CreateContactProposal):
            result = _apply_create_contact(session, proposal, user_id)
        else:
            raise ProposalError(f"Unsupported proposal type: {type(proposal).__name__}")
        session.commit()
    except (ProposalError, SQLAlchemyError):
        session.rollback()
        raise
    except ValueError as exc:
        session.rollback()
        raise ProposalError(str(exc)) from exc

    log.info("Applied %s proposal %s for user %s", proposal.kind, proposal.proposal_id, user_id)
    return {"status": "applied", "kind": proposal.kind, "proposalId": proposal.proposal_id, **result}


def reject_proposal(proposal, user_id: str | None) -> dict[str, Any]:
    """Discard a proposal. Nothing is written."""
    log.info("Rejected %s proposal %s for user %s", proposal.kind, proposal.proposal_id, user_id)
    return {"status": "rejected", "kind": proposal.kind, "proposalId": proposal.proposal_id}


def _require_investor(session: Session, investor_id: str, firm_name: str):
    investor = services.get_investor(session, investor_id)
    if investor is None:
        raise ProposalError(f"{firm_name} no longer exists; the proposal cannot be applied.", status_code=409)
    return investor


def _apply_update(session: Session, proposal: UpdateInvestorProposal, user_id: str | None) -> dict[str, Any]:
    investor = _require_investor(session, proposal.investor_id, proposal.firm_name)
    activity = services.update_investor_field(
        session, investor, proposal.field, proposal.new_value,
        user_id=user_id, reason=proposal.reason, proposal_id=proposal.proposal_id, source=APPROVED_SOURCE,
    )
    return {
        "investorId": investor.id,
        "firmName": investor.firm_name,
        "field": proposal.field,
        "newValue": services.field_value(investor, proposal.field),
        "activityId": activity.id if activity else None,
    }


def _revalidate(schema, proposal, fields: set[str]):
    """Check a create proposal against the same constraints its tool input had."""
    try:
        return schema.model_validate(proposal.model_dump(include=fields))
    except ValidationError as exc:
        raise ProposalError(f"Invalid proposal: {validation_summary(exc)}") from exc


def _apply_create_investor(session: Session, proposal: CreateInvestorProposal, user_id: str | None) -> dict[str, Any]:
    values = _revalidate(
        CreateInvestorInput, proposal, {"firm_name", "stage", "relationship_owner", "est_value", "notes"},
    )
    investor = services.create_investor(
        session,
        firm_name=values.firm_name,
        stage=values.stage,
        relationship_owner=values.relationship_owner,
        est_value=values.est_value,
        notes=values.notes,
        user_id=user_id,
        proposal_id=proposal.proposal_id,
        source=APPROVED_SOURCE,
    )
    return {"investorId": investor.id, "firmName": investor.firm_name}


def _apply_create_contact(session: Session, proposal: CreateContactProposal, user_id: str | None) -> dict[str, Any]:
    values = _revalidate(
        CreateContactInput, proposal, {"firm_name", "name", "phone", "email", "title", "is_primary"},
    )
    investor = _require_investor(session, proposal.investor_id, proposal.firm_name)
    contact = services.create_contact(
        session, investor,
        name=values.name,
        phone=values.phone,
        email=values.email,
        title=values.title,
        is_primary=bool(values.is_primary),
        user_id=user_id,
        proposal_id=proposal.proposal_id,
        source=APPROVED_SOURCE,
    )
    return {"investorId": investor.id, "firmName": investor.firm_name, "contactId": contact.id}
