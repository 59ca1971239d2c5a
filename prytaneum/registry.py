"""Tool registry: which tools exist, what class each belongs to, and how to run them.

The registry is built once at startup by ``build_registry()`` and passed to the
chat agent and the MCP server. It never changes after construction.
"""
from __future__ import annotations

import enum
import logging
from dataclasses import dataclass, field
from types import MappingProxyType
from typing import Any, Awaitable, Callable, Mapping

from pydantic import BaseModel, ValidationError
from sqlalchemy.exc import SQLAlchemyError

from prytaneum import tools
from prytaneum.schemas import (
    CreateContactInput,
    CreateInvestorInput,
    CreateMeetingInput,
    Envelope,
    GetInvestorDetailInput,
    LogActivityInput,
    QueryPipelineInput,
    StrategyAdvisorInput,
    ToolError,
    UpdateInvestorInput,
)
from prytaneum.security import sanitize_tool_output
from prytaneum.tools import ToolContext

log = logging.getLogger(__name__)

UNAUTHORIZED_MESSAGE = "Unauthorized - user not authenticated"


class ToolClass(str, enum.Enum):
    READ_ONLY = "read-only"
    DIRECT_WRITE = "direct-write"
    CONFIRMATION_REQUIRED = "confirmation-required"


Executor = Callable[[ToolContext, Any], Awaitable[Any]]


@dataclass(frozen=True)
class ToolSpec:
    name: str
    description: str
    input_model: type[BaseModel]
    executor: Executor
    tool_class: ToolClass

    def input_schema(self) -> dict[str, Any]:
        schema = self.input_model.model_json_schema(by_alias=True)
        schema.pop("title", None)
        return schema


@dataclass(frozen=True)
class ToolRegistry:
    specs: Mapping[str, ToolSpec]
    read_only: frozenset[str] = field(init=False)
    direct_write: frozenset[str] = field(init=False)
    confirmation_required: frozenset[str] = field(init=False)

    def __post_init__(self):
        specs = MappingProxyType(dict(self.specs))
        object.__setattr__(self, "specs", specs)
        for attr, cls in (
            ("read_only", ToolClass.READ_ONLY),
            ("direct_write", ToolClass.DIRECT_WRITE),
            ("confirmation_required", ToolClass.CONFIRMATION_REQUIRED),
        ):
            object.__setattr__(self, attr, frozenset(n for n, s in specs.items() if s.tool_class is cls))

    def __contains__(self, name: str) -> bool:
        return name in self.specs

    def get(self, name: str) -> ToolSpec | None:
        return self.specs.get(name)

    def names(self) -> list[str]:
        return list(self.specs)

    def classify(self, name: str) -> ToolClass:
        return self.specs[name].tool_class

    def grouped(self) -> dict[str, list[str]]:
        return {
            ToolClass.READ_ONLY.value: sorted(self.read_only),
            ToolClass.DIRECT_WRITE.value: sorted(self.direct_write),
            ToolClass.CONFIRMATION_REQUIRED.value: sorted(self.confirmation_required),
        }

    async def execute(self, name: str, raw_args: dict[str, Any] | None, ctx: ToolContext) -> dict[str, Any]:
        """Validate, authorize and run one tool call; always returns a result dict.

        Argument validation happens before any data-store access, so a field
        outside the allow-list never reaches the resolver.
        """
        spec = self.specs.get(name)
        if spec is None:
            return ToolError(message=f"Unknown tool: {name}").to_wire()

        try:
            args = spec.input_model.model_validate(raw_args or {})
        except ValidationError as exc:
            return ToolError(message=f"Invalid arguments for {name}: {validation_summary(exc)}").to_wire()

        if not ctx.user_id:
            return ToolError(message=UNAUTHORIZED_MESSAGE).to_wire()

        try:
            result = await spec.executor(ctx, args)
        except SQLAlchemyError as exc:
            ctx.session.rollback()
            log.exception("Tool %s failed in the data store", name)
            return ToolError(message=str(exc.orig) if getattr(exc, "orig", None) else str(exc)).to_wire()
        except Exception as exc:
            ctx.session.rollback()
            log.exception("Tool %s failed", name)
            return ToolError(message=str(exc) or type(exc).__name__).to_wire()

        wire = result.to_wire() if isinstance(result, Envelope) else result
        if spec.tool_class is ToolClass.READ_ONLY:
            wire = sanitize_tool_output(wire)
        return wire

    # -- provider tool definitions ------------------------------------------

    def anthropic_tools(self) -> list[dict[str, Any]]:
        return [
            {"name": s.name, "description": s.description, "input_schema": s.input_schema()}
            for s in self.specs.values()
        ]

    def openai_tools(self) -> list[dict[str, Any]]:
        return [
            {
                "type": "function",
                "function": {"name": s.name, "description": s.description, "parameters": s.input_schema()},
            }
            for s in self.specs.values()
        ]


def validation_summary(exc: ValidationError) -> str:
    parts = []
    for err in exc.errors():
        loc = ".".join(str(p) for p in err.get("loc", ()))
        parts.append(f"{loc}: {err.get('msg')}" if loc else str(err.get("msg")))
    return "; ".join(parts)


def build_registry() -> ToolRegistry:
    """Construct the tool registry. Call once at process start."""
    specs = [
        ToolSpec(
            "queryPipeline",
            "Query the investor pipeline using a predefined intent: stalled investors, investors in a "
            "stage, high-value pipeline, recent activity, upcoming actions, or a pipeline summary.",
            QueryPipelineInput, tools.query_pipeline, ToolClass.READ_ONLY,
        ),
        ToolSpec(
            "getInvestorDetail",
            "Get full details for one investor by firm name (partial match), including contacts, "
            "recent activities and stall metrics.",
            GetInvestorDetailInput, tools.get_investor_detail, ToolClass.READ_ONLY,
        ),
        ToolSpec(
            "strategyAdvisor",
            "Gather strategic context for an investor by ID (from getInvestorDetail) so you can advise on "
            "next steps, risks, prioritization or objection handling.",
            StrategyAdvisorInput, tools.strategy_advisor, ToolClass.READ_ONLY,
        ),
        ToolSpec(
            "logActivity",
            "Log a note, call, email or meeting against an investor. Executes immediately.",
            LogActivityInput, tools.log_activity, ToolClass.DIRECT_WRITE,
        ),
        ToolSpec(
            "createMeeting",
            "Record a meeting with an investor and add it to their timeline. Executes immediately.",
            CreateMeetingInput, tools.create_meeting, ToolClass.DIRECT_WRITE,
        ),
        ToolSpec(
            "updateInvestor",
            "Propose a change to one investor field. The user must confirm before anything is saved.",
            UpdateInvestorInput, tools.update_investor, ToolClass.CONFIRMATION_REQUIRED,
        ),
        ToolSpec(
            "createInvestor",
            "Propose a new investor record. Similar existing firms are listed as possible duplicates. "
            "The user must confirm before anything is saved.",
            CreateInvestorInput, tools.create_investor, ToolClass.CONFIRMATION_REQUIRED,
        ),
        ToolSpec(
            "createContact",
            "Propose a new contact for an investor. The user must confirm before anything is saved.",
            CreateContactInput, tools.create_contact, ToolClass.CONFIRMATION_REQUIRED,
        ),
    ]
    return ToolRegistry({s.name: s for s in specs})
