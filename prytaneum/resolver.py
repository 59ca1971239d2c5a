"""Resolve free-text firm names to investors.

Every tool that accepts a firm name goes through ``resolve_investor`` so that
not-found and ambiguous references produce the same envelopes everywhere.
Ambiguity is never settled by picking a "best" match.
"""
from __future__ import annotations

from sqlalchemy import select
from sqlalchemy.orm import Session

from prytaneum.models import Investor
from prytaneum.schemas import ClarificationNeeded, ToolError

MAX_MATCHES = 5


def _escape_like(value: str) -> str:
    return value.replace("\\", "\\\\").replace("%", "\\%").replace("_", "\\_")


def find_investors(session: Session, fragment: str, limit: int = MAX_MATCHES) -> list[Investor]:
    """Case-insensitive substring match on firm name over non-deleted investors."""
    pattern = f"%{_escape_like(fragment.strip())}%"
    stmt = (
        select(Investor)
        .where(Investor.firm_name.ilike(pattern, escape="\\"), Investor.deleted_at.is_(None))
        .order_by(Investor.firm_name)
        .limit(limit)
    )
    return list(session.execute(stmt).scalars().all())


def resolve_investor(
    session: Session, firm_name: str,
) -> tuple[Investor | None, ToolError | ClarificationNeeded | None]:
    """Return ``(investor, None)`` on a unique match, else ``(None, envelope)``."""
    matches = find_investors(session, firm_name)
    if not matches:
        return None, ToolError(
            message=f'No investor found matching "{firm_name}". Try a different search term.',
        )
    if len(matches) > 1:
        return None, ClarificationNeeded(
            message=f'Multiple investors match "{firm_name}". Please be more specific.',
            matches=[inv.firm_name for inv in matches],
        )
    return matches[0], None
