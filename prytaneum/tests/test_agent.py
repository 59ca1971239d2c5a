"""Tests for the chat loop and provider message conversion. No real LLM is called."""
from __future__ import annotations

import json
from types import SimpleNamespace
from unittest.mock import AsyncMock, MagicMock

import pytest
from conftest import count_rows

from prytaneum.agent import (
    ChatAgent,
    LLMCallError,
    LLMClient,
    LLMTurn,
    ToolCall,
    _from_anthropic,
    _from_openai,
    _to_anthropic,
    _to_openai,
    system_prompt,
)
from prytaneum.models import Activity


def fake_client(*turns: LLMTurn) -> MagicMock:
    client = MagicMock(spec=LLMClient)
    client.provider = "anthropic"
    client.tool_definitions.return_value = []
    client.complete = AsyncMock(side_effect=list(turns))
    return client


async def collect(agent: ChatAgent, messages, ctx) -> list[dict]:
    return [event async for event in agent.stream(messages, ctx)]


class TestChatAgent:
    @pytest.mark.asyncio
    async def test_tool_call_then_answer(self, registry, ctx, session, sequoia):
        client = fake_client(
            LLMTurn(tool_calls=[ToolCall("call_1", "logActivity", {
                "firmName": "Sequoia", "activityType": "note", "description": "Great call today",
            })]),
            LLMTurn(text="Logged the note for Sequoia Capital."),
        )
        events = await collect(ChatAgent(registry, client, max_steps=5),
                               [{"role": "user", "content": "Log a note for Sequoia"}], ctx)

        assert [e["type"] for e in events] == ["tool_result", "text", "complete"]
        tool_event = events[0]
        assert tool_event["tool"] == "logActivity"
        assert tool_event["toolClass"] == "direct-write"
        assert tool_event["result"]["status"] == "success"
        assert session.query(Activity).count() == 1

        # Second round sees the tool result in the transcript
        transcript = client.complete.await_args_list[1].args[1]
        assert transcript[-1]["role"] == "tool"
        assert transcript[-1]["tool_call_id"] == "call_1"

    @pytest.mark.asyncio
    async def test_confirmation_tool_only_proposes(self, registry, ctx, session, sequoia):
        before = count_rows(session)
        client = fake_client(
            LLMTurn(tool_calls=[ToolCall("call_1", "updateInvestor", {
                "firmName": "Sequoia", "field": "stage", "newValue": "LPA / Legal", "reason": "DD finished",
            })]),
            LLMTurn(text="I've proposed moving Sequoia Capital to LPA / Legal. Please approve it."),
        )
        events = await collect(ChatAgent(registry, client), [{"role": "user", "content": "Move Sequoia on"}], ctx)
        assert events[0]["result"]["status"] == "confirmation_required"
        assert events[0]["toolClass"] == "confirmation-required"
        assert count_rows(session) == before

    @pytest.mark.asyncio
    async def test_follow_up_when_no_text(self, registry, ctx, sequoia):
        client = fake_client(
            LLMTurn(tool_calls=[ToolCall("call_1", "queryPipeline", {"intent": "pipeline_summary"})]),
            LLMTurn(),
            LLMTurn(text="You have one investor in Active Due Diligence."),
        )
        events = await collect(ChatAgent(registry, client), [{"role": "user", "content": "Summary?"}], ctx)
        assert events[-2] == {"type": "text", "text": "You have one investor in Active Due Diligence."}
        assert events[-1] == {"type": "complete"}
        assert client.complete.await_args_list[-1].kwargs == {"allow_tools": False}

    @pytest.mark.asyncio
    async def test_max_steps_caps_tool_rounds(self, registry, ctx, sequoia):
        call = ToolCall("c", "queryPipeline", {"intent": "pipeline_summary"})
        client = fake_client(
            LLMTurn(tool_calls=[call]), LLMTurn(tool_calls=[call]), LLMTurn(tool_calls=[call]),
            LLMTurn(text="Done."),
        )
        events = await collect(ChatAgent(registry, client, max_steps=2), [{"role": "user", "content": "go"}], ctx)
        assert sum(1 for e in events if e["type"] == "tool_result") == 2
        assert client.complete.await_count == 3

    @pytest.mark.asyncio
    async def test_tool_errors_do_not_raise(self, registry, ctx):
        client = fake_client(
            LLMTurn(tool_calls=[ToolCall("c", "getInvestorDetail", {"firmName": "Nobody"})]),
            LLMTurn(text="I couldn't find that firm."),
        )
        events = await collect(ChatAgent(registry, client), [{"role": "user", "content": "Nobody?"}], ctx)
        assert events[0]["result"]["status"] == "error"

    @pytest.mark.asyncio
    async def test_llm_failure_propagates(self, registry, ctx):
        client = fake_client()
        client.complete = AsyncMock(side_effect=LLMCallError("LLM API call failed: 529", retryable=True))
        with pytest.raises(LLMCallError):
            await collect(ChatAgent(registry, client), [{"role": "user", "content": "hi"}], ctx)

    def test_max_steps_from_env(self, registry, monkeypatch):
        monkeypatch.setenv("PRYTANEUM_MAX_TOOL_STEPS", "3")
        assert ChatAgent(registry, fake_client()).max_steps == 3


class TestMessageConversion:
    HISTORY = [
        {"role": "user", "content": "Log a call with Sequoia"},
        {"role": "assistant", "content": "", "tool_calls": [
            ToolCall("t1", "getInvestorDetail", {"firmName": "Sequoia"}),
            ToolCall("t2", "logActivity", {"firmName": "Sequoia", "activityType": "call", "description": "Intro call"}),
        ]},
        {"role": "tool", "tool_call_id": "t1", "name": "getInvestorDetail", "content": {"found": True}},
        {"role": "tool", "tool_call_id": "t2", "name": "logActivity", "content": {"status": "success"}},
    ]

    def test_anthropic_groups_tool_results(self):
        out = _to_anthropic(self.HISTORY)
        assert [m["role"] for m in out] == ["user", "assistant", "user"]
        assert [b["type"] for b in out[1]["content"]] == ["tool_use", "tool_use"]
        assert [b["tool_use_id"] for b in out[2]["content"]] == ["t1", "t2"]
        assert json.loads(out[2]["content"][1]["content"]) == {"status": "success"}

    def test_openai_tool_messages(self):
        out = _to_openai(self.HISTORY)
        assert [m["role"] for m in out] == ["user", "assistant", "tool", "tool"]
        assert out[1]["content"] is None
        assert json.loads(out[1]["tool_calls"][1]["function"]["arguments"])["activityType"] == "call"

    def test_from_anthropic(self):
        response = SimpleNamespace(content=[
            SimpleNamespace(type="text", text="Checking. "),
            SimpleNamespace(type="tool_use", id="tu_1", name="queryPipeline", input={"intent": "stalled_investors"}),
        ])
        turn = _from_anthropic(response)
        assert turn.text == "Checking."
        assert turn.tool_calls == [ToolCall("tu_1", "queryPipeline", {"intent": "stalled_investors"})]

    def test_from_openai_bad_arguments(self):
        tc = SimpleNamespace(id="c1", function=SimpleNamespace(name="queryPipeline", arguments="{not json"))
        response = SimpleNamespace(choices=[SimpleNamespace(message=SimpleNamespace(content=None, tool_calls=[tc]))])
        turn = _from_openai(response)
        assert turn.text == ""
        assert turn.tool_calls == [ToolCall("c1", "queryPipeline", {})]


class TestLLMClient:
    @pytest.mark.asyncio
    async def test_provider_failure_wrapped(self):
        client = LLMClient(provider="anthropic", api_key="test-key")
        client._client = MagicMock()
        client._client.messages.create = AsyncMock(side_effect=RuntimeError("overloaded"))
        with pytest.raises(LLMCallError) as exc_info:
            await client.complete("sys", [{"role": "user", "content": "hi"}])
        assert exc_info.value.retryable is True

    @pytest.mark.asyncio
    async def test_follow_up_disables_tools(self):
        client = LLMClient(provider="openai", api_key="test-key")
        message = SimpleNamespace(content="Answer", tool_calls=None)
        client._client = MagicMock()
        client._client.chat.completions.create = AsyncMock(
            return_value=SimpleNamespace(choices=[SimpleNamespace(message=message)]),
        )
        turn = await client.complete("sys", [{"role": "user", "content": "hi"}], [{"type": "function"}],
                                     allow_tools=False)
        assert turn.text == "Answer"
        assert client._client.chat.completions.create.await_args.kwargs["tool_choice"] == "none"

    def test_unknown_provider(self):
        with pytest.raises(ValueError):
            LLMClient(provider="palm")

    def test_system_prompt_has_date_and_stages(self):
        prompt = system_prompt()
        assert "{today}" not in prompt
        assert "Valhros Archon" in prompt
        assert "12. Delayed" in prompt
