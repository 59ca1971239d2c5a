from __future__ import annotations

import json
import logging
import os
from collections.abc import AsyncIterator
from contextlib import asynccontextmanager
from typing import Any

from mcp.server.fastmcp import FastMCP

from prytaneum import services
from prytaneum.db import init_db, session_scope
from prytaneum.registry import build_registry
from prytaneum.stages import STAGE_ORDER, TERMINAL_STAGES
from prytaneum.tools import ToolContext

log = logging.getLogger(__name__)

# No apply/reject tools here: MCP clients can only propose.
registry = build_registry()


# ---------------------------------------------------------------------------
# Lifespan
# ---------------------------------------------------------------------------


@asynccontextmanager
async def prytaneum_lifespan(server: FastMCP) -> AsyncIterator[None]:
    init_db()
    yield


mcp = FastMCP(
    "Prytaneum",
    instructions=(
        "Prytaneum is an investor CRM. Use these tools to query the fundraising pipeline, "
        "inspect investors, log activities and meetings, and propose changes. "
        "update_investor, create_investor and create_contact only return proposals; "
        "a person applies them in the Prytaneum web app. "
        "Start with query_pipeline('pipeline_summary') for an overview."
    ),
    lifespan=prytaneum_lifespan,
    json_response=True,
)


# ---------------------------------------------------------------------------
# Helpers
# ---------------------------------------------------------------------------


def _acting_user() -> str | None:
    return os.environ.get("PRYTANEUM_USER_ID") or None


async def _run(tool: str, args: dict[str, Any]) -> dict:
    with session_scope() as session:
        ctx = ToolContext(session=session, user_id=_acting_user())
        return await registry.execute(tool, {k: v for k, v in args.items() if v is not None}, ctx)


# ---------------------------------------------------------------------------
# Resource
# ---------------------------------------------------------------------------


@mcp.resource("prytaneum://overview")
def prytaneum_overview() -> str:
    """Overview of Prytaneum: data model, pipeline stages, and tool classes."""
    with session_scope() as session:
        stats = services.compute_stats(session)
    return json.dumps({
        "system": "Prytaneum investor CRM",
        "data_model": {
            "investor": "A firm in the fundraising pipeline with a stage, owner, value and strategy notes.",
            "contact": "A person at an investor firm. At most one primary contact per investor.",
            "activity": "Append-only timeline entry (note, call, email, meeting, plus system entries).",
            "meeting": "A scheduled or held meeting with an investor.",
        },
        "stages": STAGE_ORDER,
        "terminal_stages": [s for s in STAGE_ORDER if s in TERMINAL_STAGES],
        "tools": registry.grouped(),
        "stats": stats,
    })


# ---------------------------------------------------------------------------
# Tools: read-only
# ---------------------------------------------------------------------------


@mcp.tool()
async def query_pipeline(
    intent: str, stage: str | None = None, min_value: float | None = None,
    max_value: float | None = None, timeframe_days: int | None = None, conviction: str | None = None,
) -> dict:
    """Run a predefined pipeline query.

    intent: stalled_investors, investors_by_stage, high_value_pipeline,
    recent_activity, pipeline_summary or upcoming_actions.
    """
    filters = {
        "stage": stage, "minValue": min_value, "maxValue": max_value,
        "timeframeDays": timeframe_days, "conviction": conviction,
    }
    filters = {k: v for k, v in filters.items() if v is not None}
    return await _run("queryPipeline", {"intent": intent, "filters": filters or None})


@mcp.tool()
async def get_investor_detail(firm_name: str) -> dict:
    """Get details, contacts (no email/phone) and recent activity for one firm (partial name)."""
    return await _run("getInvestorDetail", {"firmName": firm_name})


@mcp.tool()
async def strategy_advisor(investor_id: str, request_type: str) -> dict:
    """Strategic context for one investor by ID.

    request_type: next_steps, risk_assessment, prioritization or objection_handling.
    """
    return await _run("strategyAdvisor", {"investorId": investor_id, "requestType": request_type})


# ---------------------------------------------------------------------------
# Tools: direct-write
# ---------------------------------------------------------------------------


@mcp.tool()
async def log_activity(firm_name: str, activity_type: str, description: str) -> dict:
    """Log a note, call, email or meeting against an investor. Saved immediately."""
    return await _run("logActivity", {
        "firmName": firm_name, "activityType": activity_type, "description": description,
    })


@mcp.tool()
async def create_meeting(
    firm_name: str, meeting_title: str, meeting_date: str,
    duration_minutes: int | None = None, notes: str | None = None,
) -> dict:
    """Record a meeting (date as YYYY-MM-DD or ISO 8601). Saved immediately."""
    return await _run("createMeeting", {
        "firmName": firm_name, "meeting_title": meeting_title, "meeting_date": meeting_date,
        "duration_minutes": duration_minutes, "notes": notes,
    })


# ---------------------------------------------------------------------------
# Tools: proposals only
# ---------------------------------------------------------------------------


@mcp.tool()
async def update_investor(firm_name: str, field: str, new_value: str, reason: str) -> dict:
    """Propose a change to one investor field. Nothing is saved until a person approves it."""
    return await _run("updateInvestor", {
        "firmName": firm_name, "field": field, "newValue": new_value, "reason": reason,
    })


@mcp.tool()
async def create_investor(
    firm_name: str, stage: str, relationship_owner: str,
    est_value: float | None = None, notes: str | None = None,
) -> dict:
    """Propose a new investor record; similar existing firms are listed. Nothing is saved."""
    return await _run("createInvestor", {
        "firm_name": firm_name, "stage": stage, "relationship_owner": relationship_owner,
        "est_value": est_value, "notes": notes,
    })


@mcp.tool()
async def create_contact(
    firm_name: str, name: str, phone: str | None = None, email: str | None = None,
    title: str | None = None, is_primary: bool | None = None,
) -> dict:
    """Propose a new contact for an investor. Nothing is saved."""
    return await _run("createContact", {
        "firm_name": firm_name, "name": name, "phone": phone, "email": email,
        "title": title, "is_primary": is_primary,
    })


# ---------------------------------------------------------------------------
# Entry point
# ---------------------------------------------------------------------------


def main():
    """Run the Prytaneum MCP server over stdio."""
    mcp.run()


if __name__ == "__main__":
    main()
