"""Chat orchestration: the LLM client and the tool-calling loop.

``LLMClient`` speaks to Anthropic or OpenAI (or any OpenAI-compatible server)
and normalizes tool calls into ``ToolCall`` objects. ``ChatAgent`` drives the
conversation, routes tool calls through the registry, and yields events that
the HTTP layer streams to the browser.
"""
from __future__ import annotations

import json
import logging
import os
from dataclasses import dataclass, field
from typing import Any, AsyncIterator

from prytaneum.registry import ToolRegistry
from prytaneum.stages import STAGE_ORDER, TERMINAL_STAGES
from prytaneum.tools import ToolContext
from prytaneum.utils import json_parse, today

log = logging.getLogger(__name__)

DEFAULT_MAX_STEPS = 5


class LLMCallError(Exception):
    """LLM call failed or returned an unusable response."""
    def __init__(self, message: str, retryable: bool = False):
        super().__init__(message)
        self.retryable = retryable


@dataclass
class ToolCall:
    id: str
    name: str
    arguments: dict[str, Any]


@dataclass
class LLMTurn:
    text: str = ""
    tool_calls: list[ToolCall] = field(default_factory=list)


# ---------------------------------------------------------------------------
# System prompt
# ---------------------------------------------------------------------------

_STAGE_LIST = "\n".join(f"{i}. {stage}" for i, stage in enumerate(STAGE_ORDER, 1))
_TERMINAL_LIST = ", ".join(s for s in STAGE_ORDER if s in TERMINAL_STAGES)

SYSTEM_PROMPT = f"""\
You are an AI BDR (Business Development Representative) assistant for Prytaneum's investor CRM, codenamed "Valhros Archon".

# Your Role

You help the Prytaneum team manage their investor pipeline by:
- Answering questions about specific investors and pipeline status
- Providing strategic recommendations for advancing relationships
- Logging activities and meetings the team tells you about
- Proposing record changes for the team to approve

# Tools

Read-only:
1. **queryPipeline**: predefined pipeline queries (stalled investors, stage, high value, recent activity, upcoming actions, summary). Returns up to 50 investors.
2. **getInvestorDetail**: full details for one firm (partial names work). Call this whenever a firm is mentioned, even in passing.
3. **strategyAdvisor**: strategic context for one investor by ID (take the ID from getInvestorDetail). You analyze the data and give the advice.

Executed immediately:
4. **logActivity**: add a note, call, email or meeting to an investor's timeline.
5. **createMeeting**: record a meeting with an investor.

Require the user's confirmation:
6. **updateInvestor**: change one field (stage, internal_conviction, est_value, next_action, next_action_date, current_strategy_notes, key_objection_risk).
7. **createInvestor**: add a new investor record.
8. **createContact**: add a contact to an investor.

Confirmation tools do NOT save anything. They return a proposal that the user approves or rejects in the interface. Tell the user what you proposed and that it is waiting for their approval; never claim the change has been made.

If a tool returns clarification_needed, list the matching firms and ask the user which one they meant. Never pick one yourself.

# Security Constraints

- **No fabrication**: Never make up investor data. Always cite which investors your analysis comes from.
- **Privacy**: You receive sanitized data without email addresses or phone numbers.
- **Transparency**: If you don't have enough information, say so and suggest what data would help.

# Pipeline Context

Today is {{today}}. The investor pipeline follows this stage progression:

{_STAGE_LIST}

Terminal stages ({_TERMINAL_LIST}) represent pipeline endpoints but can re-engage to active stages.

**Stalled status**: an investor is "stalled" if no meaningful action has occurred in 30+ days (excluding terminal stages).

# Communication Style

- Professional and concise
- Use investor/fundraising terminology (LP, allocator, due diligence, LPA, etc.)
- Data-driven: cite specific metrics, dates, and activity
- Suggest concrete, actionable next steps with rationale
"""


def system_prompt() -> str:
    return SYSTEM_PROMPT.replace("{today}", today().isoformat())


# ---------------------------------------------------------------------------
# LLM client
# ---------------------------------------------------------------------------


class LLMClient:
    """Unified async LLM client with tool calling for Anthropic and OpenAI.

    Conversation history is kept in a provider-neutral shape::

        {"role": "user", "content": "..."}
        {"role": "assistant", "content": "...", "tool_calls": [ToolCall, ...]}
        {"role": "tool", "tool_call_id": "...", "name": "...", "content": {...}}
    """

    def __init__(
        self,
        provider: str | None = None,
        model: str | None = None,
        api_key: str | None = None,
        base_url: str | None = None,
    ):
        self.provider = provider or os.environ.get("LLM_PROVIDER", "anthropic")
        self.model = model or os.environ.get("LLM_MODEL", "")
        self._api_key = api_key
        self._base_url = base_url
        self._client: Any = None
        self._init_client()

    def _init_client(self) -> None:
        if self.provider == "anthropic":
            import anthropic
            self.model = self.model or "claude-sonnet-4-5"
            self._client = anthropic.AsyncAnthropic(
                api_key=self._api_key or os.environ.get("ANTHROPIC_API_KEY")
            )
        elif self.provider in ("openai", "openai_compatible"):
            import openai
            self.model = self.model or "gpt-4o-mini"
            kwargs: dict[str, Any] = {}
            key = self._api_key or os.environ.get("OPENAI_API_KEY")
            if key:
                kwargs["api_key"] = key
            url = self._base_url or os.environ.get("OPENAI_BASE_URL")
            if url:
                kwargs["base_url"] = url
            self._client = openai.AsyncOpenAI(**kwargs)
        else:
            raise ValueError(f"Unknown LLM provider: {self.provider!r}")

    def tool_definitions(self, registry: ToolRegistry) -> list[dict[str, Any]]:
        if self.provider == "anthropic":
            return registry.anthropic_tools()
        return registry.openai_tools()

    async def complete(
        self,
        system: str,
        messages: list[dict[str, Any]],
        tools: list[dict[str, Any]] | None = None,
        allow_tools: bool = True,
    ) -> LLMTurn:
        """Run one completion. With ``allow_tools=False`` the model must answer in text."""
        try:
            if self.provider == "anthropic":
                kwargs: dict[str, Any] = {}
                if tools:
                    kwargs["tools"] = tools
                    if not allow_tools:
                        kwargs["tool_choice"] = {"type": "none"}
                response = await self._client.messages.create(
                    model=self.model,
                    max_tokens=2048,
                    system=system,
                    messages=_to_anthropic(messages),
                    **kwargs,
                )
                return _from_anthropic(response)

            kwargs = {}
            if tools:
                kwargs["tools"] = tools
                kwargs["tool_choice"] = "auto" if allow_tools else "none"
            response = await self._client.chat.completions.create(
                model=self.model,
                max_tokens=2048,
                messages=[{"role": "system", "content": system}, *_to_openai(messages)],
                **kwargs,
            )
            return _from_openai(response)
        except LLMCallError:
            raise
        except Exception as exc:
            raise LLMCallError(f"LLM API call failed: {exc}", retryable=True) from exc


def _to_anthropic(messages: list[dict[str, Any]]) -> list[dict[str, Any]]:
    out: list[dict[str, Any]] = []
    for msg in messages:
        role = msg["role"]
        if role == "user":
            out.append({"role": "user", "content": msg["content"]})
        elif role == "assistant":
            blocks: list[dict[str, Any]] = []
            if msg.get("content"):
                blocks.append({"type": "text", "text": msg["content"]})
            for call in msg.get("tool_calls") or []:
                blocks.append({"type": "tool_use", "id": call.id, "name": call.name, "input": call.arguments})
            out.append({"role": "assistant", "content": blocks or msg.get("content", "")})
        elif role == "tool":
            block = {
                "type": "tool_result",
                "tool_use_id": msg["tool_call_id"],
                "content": json.dumps(msg["content"], default=str),
            }
            # Consecutive tool results share one user turn
            if out and out[-1]["role"] == "user" and isinstance(out[-1]["content"], list):
                out[-1]["content"].append(block)
            else:
                out.append({"role": "user", "content": [block]})
    return out


def _from_anthropic(response) -> LLMTurn:
    turn = LLMTurn()
    texts = []
    for block in response.content:
        if block.type == "text":
            texts.append(block.text)
        elif block.type == "tool_use":
            turn.tool_calls.append(ToolCall(block.id, block.name, dict(block.input or {})))
    turn.text = "".join(texts).strip()
    return turn


def _to_openai(messages: list[dict[str, Any]]) -> list[dict[str, Any]]:
    out: list[dict[str, Any]] = []
    for msg in messages:
        role = msg["role"]
        if role == "user":
            out.append({"role": "user", "content": msg["content"]})
        elif role == "assistant":
            entry: dict[str, Any] = {"role": "assistant", "content": msg.get("content") or None}
            calls = msg.get("tool_calls") or []
            if calls:
                entry["tool_calls"] = [
                    {
                        "id": c.id,
                        "type": "function",
                        "function": {"name": c.name, "arguments": json.dumps(c.arguments)},
                    }
                    for c in calls
                ]
            out.append(entry)
        elif role == "tool":
            out.append({
                "role": "tool",
                "tool_call_id": msg["tool_call_id"],
                "content": json.dumps(msg["content"], default=str),
            })
    return out


def _from_openai(response) -> LLMTurn:
    message = response.choices[0].message
    turn = LLMTurn(text=(message.content or "").strip())
    for tc in message.tool_calls or []:
        args = json_parse(tc.function.arguments, {})
        if not isinstance(args, dict):
            args = {}
        turn.tool_calls.append(ToolCall(tc.id, tc.function.name, args))
    return turn


# ---------------------------------------------------------------------------
# Tool loop
# ---------------------------------------------------------------------------


class ChatAgent:
    """Runs the model/tool loop for one chat turn.

    Tool calls go through ``ToolRegistry.execute`` so classification, argument
    validation and auth apply identically whichever model is driving.
    """

    def __init__(self, registry: ToolRegistry, client: LLMClient, max_steps: int | None = None):
        self.registry = registry
        self.client = client
        self.max_steps = max_steps or int(os.environ.get("PRYTANEUM_MAX_TOOL_STEPS", DEFAULT_MAX_STEPS))

    async def stream(self, messages: list[dict[str, Any]], ctx: ToolContext) -> AsyncIterator[dict[str, Any]]:
        """Yield ``text``, ``tool_result`` and finally ``complete`` events.

        Raises LLMCallError if the provider fails; tool failures never raise.
        """
        system = system_prompt()
        tools = self.client.tool_definitions(self.registry)
        transcript = list(messages)
        produced_text = False

        for step in range(self.max_steps):
            turn = await self.client.complete(system, list(transcript), tools)
            if turn.text:
                produced_text = True
                yield {"type": "text", "text": turn.text}
            transcript.append({"role": "assistant", "content": turn.text, "tool_calls": turn.tool_calls})
            if not turn.tool_calls:
                break

            for call in turn.tool_calls:
                result = await self.registry.execute(call.name, call.arguments, ctx)
                spec = self.registry.get(call.name)
                log.info("Step %d: %s -> %s", step + 1, call.name, result.get("status", "data"))
                yield {
                    "type": "tool_result",
                    "toolCallId": call.id,
                    "tool": call.name,
                    "toolClass": spec.tool_class.value if spec else None,
                    "result": result,
                }
                transcript.append({
                    "role": "tool", "tool_call_id": call.id, "name": call.name, "content": result,
                })

        # Tool-only turns still owe the user a written answer
        if not produced_text:
            turn = await self.client.complete(system, list(transcript), tools, allow_tools=False)
            if turn.text:
                yield {"type": "text", "text": turn.text}

        yield {"type": "complete"}
