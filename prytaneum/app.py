from __future__ import annotations

import json
import logging
from contextlib import asynccontextmanager
from typing import Any, Generator

from fastapi import Depends, FastAPI, Header, HTTPException, Request
from fastapi.responses import StreamingResponse
from sqlalchemy.exc import SQLAlchemyError
from sqlalchemy.orm import Session

from prytaneum import services
from prytaneum.agent import ChatAgent, LLMCallError, LLMClient
from prytaneum.db import init_db, session_generator, session_scope
from prytaneum.proposals import ProposalError, apply_proposal, reject_proposal
from prytaneum.registry import ToolRegistry, build_registry
from prytaneum.schemas import ChatRequest, ProposalDecision
from prytaneum.security import validate_user_input
from prytaneum.tools import ToolContext

log = logging.getLogger(__name__)


@asynccontextmanager
async def lifespan(app: FastAPI):
    init_db()
    app.state.registry = build_registry()
    app.state.llm_client = None
    yield


app = FastAPI(
    title="Prytaneum",
    version="0.1.0",
    description=(
        "Investor CRM assistant API. The chat endpoint drives an LLM that can read the "
        "pipeline, log activities and propose changes; proposals are applied only through "
        "the proposal endpoints after a person approves them."
    ),
    lifespan=lifespan,
    openapi_tags=[
        {"name": "Chat", "description": "Streamed assistant conversation with tool calls."},
        {"name": "Proposals", "description": "Approve or reject changes proposed by the assistant."},
        {"name": "Investors", "description": "Read investor records."},
        {"name": "Stats", "description": "Pipeline counts and tool catalogue."},
    ],
)


# ---------------------------------------------------------------------------
# Dependencies & Helpers
# ---------------------------------------------------------------------------


def db_session() -> Generator[Session, None, None]:
    yield from session_generator()


def current_user(x_user_id: str | None = Header(None)) -> str:
    if not x_user_id or not x_user_id.strip():
        raise HTTPException(401, "Unauthorized - user not authenticated")
    return x_user_id.strip()


def get_registry(request: Request) -> ToolRegistry:
    return request.app.state.registry


def get_agent(request: Request, registry: ToolRegistry = Depends(get_registry)) -> ChatAgent:
    if request.app.state.llm_client is None:
        try:
            request.app.state.llm_client = LLMClient()
        except Exception as exc:
            raise HTTPException(503, f"LLM client unavailable: {exc}") from exc
    return ChatAgent(registry, request.app.state.llm_client)


def _get_investor_or_404(session: Session, investor_id: str):
    inv = services.get_investor(session, investor_id)
    if not inv:
        raise HTTPException(404, "Investor not found")
    return inv


def _sse(event: dict[str, Any]) -> str:
    return f"data: {json.dumps(event, default=str)}\n\n"


# ---------------------------------------------------------------------------
# Routes: Chat
# ---------------------------------------------------------------------------


def _conversation(body: ChatRequest) -> list[dict[str, Any]]:
    messages = [{"role": m.role, "content": m.text()} for m in body.messages]
    messages = [m for m in messages if m["content"]]
    if not messages or messages[-1]["role"] != "user":
        raise HTTPException(400, "The last message must be a non-empty user message")

    check = validate_user_input(messages[-1]["content"])
    if not check.valid:
        raise HTTPException(400, check.reason)
    messages[-1]["content"] = check.sanitized
    return messages


@app.post("/api/chat", tags=["Chat"], summary="Chat with the assistant (SSE stream)")
async def chat(body: ChatRequest, user_id: str = Depends(current_user), agent: ChatAgent = Depends(get_agent)):
    messages = _conversation(body)

    async def stream():
        with session_scope() as session:
            try:
                ctx = ToolContext(session=session, user_id=user_id)
                async for event in agent.stream(messages, ctx):
                    yield _sse(event)
            except LLMCallError as exc:
                log.warning("Chat turn failed for %s: %s", user_id, exc)
                yield _sse({"type": "error", "message": str(exc), "retryable": exc.retryable})

    return StreamingResponse(stream(), media_type="text/event-stream")


# ---------------------------------------------------------------------------
# Routes: Proposals
# ---------------------------------------------------------------------------


@app.post("/api/proposals/apply", tags=["Proposals"], summary="Apply an approved proposal")
async def apply(body: ProposalDecision, user_id: str = Depends(current_user),
                session: Session = Depends(db_session)):
    try:
        return apply_proposal(session, body.proposal, user_id)
    except ProposalError as exc:
        raise HTTPException(exc.status_code, exc.message) from exc
    except SQLAlchemyError as exc:
        raise HTTPException(500, f"Apply failed: {exc}") from exc


@app.post("/api/proposals/reject", tags=["Proposals"], summary="Reject a proposal (nothing is written)")
async def reject(body: ProposalDecision, user_id: str = Depends(current_user)):
    return reject_proposal(body.proposal, user_id)


# ---------------------------------------------------------------------------
# Routes: Investors
# ---------------------------------------------------------------------------


@app.get("/api/investors", tags=["Investors"], summary="List active investors")
async def list_investors(session: Session = Depends(db_session)):
    return [services.investor_summary(inv) for inv in services.list_investors(session)]


@app.get("/api/investors/{investor_id}", tags=["Investors"],
         summary="Get one investor with contacts and recent activities")
async def get_investor(investor_id: str, session: Session = Depends(db_session)):
    return services.investor_detail(session, _get_investor_or_404(session, investor_id))


# ---------------------------------------------------------------------------
# Routes: Stats
# ---------------------------------------------------------------------------


@app.get("/api/stats", tags=["Stats"], summary="Pipeline counts by stage and stalled count")
async def get_stats(session: Session = Depends(db_session)):
    return services.compute_stats(session)


@app.get("/api/tools", tags=["Stats"], summary="Assistant tools grouped by classification")
async def list_tools(registry: ToolRegistry = Depends(get_registry)):
    return registry.grouped()


def main():
    import uvicorn
    uvicorn.run("prytaneum.app:app", host="127.0.0.1", port=8001, reload=True)


if __name__ == "__main__":
    main()
