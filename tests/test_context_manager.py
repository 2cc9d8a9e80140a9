"""Tests for the ContextManager."""

import pytest

from conftest import make_context

from mcpilot.context.compression import OldestRemovalStrategy
from mcpilot.context.formatters import AnthropicMessageFormatter
from mcpilot.context.history import InMemoryHistoryProvider
from mcpilot.context.manager import create_context_manager
from mcpilot.context.messages import InternalMessage, ToolCall
from mcpilot.context.tokenizer import AnthropicTokenizer, DefaultTokenizer, estimate_messages_tokens
from mcpilot.errors import CompressionBudgetUnsatisfiable, HistoryInvariantError, MessageValidationError
from mcpilot.events import EventBus, EventType
from mcpilot.validation.config import LLMConfig


class TestAppend:
    """Tests for the validated append operations."""

    @pytest.mark.asyncio
    async def test_round_trip(self):
        ctx = make_context()

        await ctx.add_user_message("list files")
        await ctx.add_assistant_message(None, [ToolCall(id="c1", name="ls", arguments={"path": "/"})])
        await ctx.add_tool_result("c1", "ls", {"content": [{"type": "text", "text": "a.txt"}]})
        await ctx.add_assistant_message("There is a.txt")

        history = ctx.get_history()
        assert [m.role for m in history] == ["user", "assistant", "tool", "assistant"]
        assert history[2].content == "a.txt"
        assert history[2].tool_call_id == "c1"

    @pytest.mark.asyncio
    async def test_get_history_is_a_copy(self):
        ctx = make_context()
        await ctx.add_user_message("hi")

        ctx.get_history().clear()

        assert len(ctx.get_history()) == 1

    @pytest.mark.asyncio
    async def test_error_payload_becomes_tool_text(self):
        ctx = make_context()
        await ctx.add_user_message("delete it")
        await ctx.add_assistant_message(None, [ToolCall(id="c1", name="rm")])

        await ctx.add_tool_result("c1", "rm", {"error": "denied", "code": "tools_execution_denied"})

        assert "tools_execution_denied" in ctx.get_history()[-1].content

    @pytest.mark.asyncio
    async def test_orphan_tool_result_rejected(self):
        ctx = make_context()
        await ctx.add_user_message("hi")

        with pytest.raises(HistoryInvariantError):
            await ctx.add_tool_result("ghost", "ls", "result")

        assert len(ctx.get_history()) == 1

    @pytest.mark.asyncio
    async def test_duplicate_tool_result_rejected(self):
        ctx = make_context()
        await ctx.add_user_message("hi")
        await ctx.add_assistant_message(None, [ToolCall(id="c1", name="ls")])
        await ctx.add_tool_result("c1", "ls", "first")

        with pytest.raises(HistoryInvariantError):
            await ctx.add_tool_result("c1", "ls", "again")

    @pytest.mark.asyncio
    async def test_invalid_user_message(self):
        ctx = make_context()
        with pytest.raises(MessageValidationError):
            await ctx.add_user_message("")

    @pytest.mark.asyncio
    async def test_appends_are_persisted(self):
        provider = InMemoryHistoryProvider()
        ctx = make_context(history_provider=provider)

        await ctx.add_user_message("hi")
        await ctx.add_system_message("Tools were reloaded.")

        assert [m.role for m in await provider.get_history()] == ["user", "system"]


class TestFormattedMessages:
    """Tests for get_formatted_messages_with_compression."""

    @pytest.mark.asyncio
    async def test_within_budget(self):
        ctx = make_context()
        await ctx.add_user_message("hello")

        prepared = await ctx.get_formatted_messages_with_compression()

        assert prepared.formatted_messages == [
            {"role": "system", "content": "You are helpful."},
            {"role": "user", "content": "hello"},
        ]
        assert prepared.system_prompt is None
        assert prepared.compression is None
        assert prepared.tokens_used == estimate_messages_tokens(
            DefaultTokenizer(), ctx.get_history(), "You are helpful."
        )

    @pytest.mark.asyncio
    async def test_long_conversation_fits_budget(self):
        """500 messages are cut down to the budget; the latest user turn survives."""
        ctx = make_context(max_input_tokens=4000)
        for i in range(500):
            if i % 2 == 0:
                await ctx.add_assistant_message(f"answer {i} " + "a" * 90)
            else:
                await ctx.add_user_message(f"question {i} " + "q" * 90)

        prepared = await ctx.get_formatted_messages_with_compression()

        assert prepared.tokens_used <= 4000
        assert prepared.compression.budget_satisfied
        assert prepared.compression.removed_count > 0
        assert prepared.formatted_messages[-1]["content"].startswith("question 499 ")
        # The canonical log is untouched without pruning.
        assert len(ctx.get_history()) == 500

    @pytest.mark.asyncio
    async def test_prune_replaces_log(self):
        provider = InMemoryHistoryProvider()
        ctx = make_context(
            max_input_tokens=200,
            strategy=OldestRemovalStrategy(preserve_last_n=2, min_messages=2, prune=True),
            history_provider=provider,
        )
        for i in range(30):
            await ctx.add_user_message(f"message number {i}")

        prepared = await ctx.get_formatted_messages_with_compression()

        assert len(ctx.get_history()) == len(prepared.formatted_messages) - 1
        assert len(ctx.get_history()) < 30
        assert await provider.get_history() == ctx.get_history()

    @pytest.mark.asyncio
    async def test_unsatisfiable_budget_is_reported(self):
        """When compression cannot reach the budget an ERROR event carries the reason."""
        bus = EventBus("s1")
        errors = []
        bus.subscribe(EventType.ERROR, errors.append)
        ctx = make_context(max_input_tokens=10, event_bus=bus)
        for i in range(6):
            await ctx.add_user_message("x" * 200)

        prepared = await ctx.get_formatted_messages_with_compression()

        assert prepared.tokens_used > 10
        assert prepared.formatted_messages[-1]["role"] == "user"
        assert len(errors) == 1
        assert isinstance(errors[0].payload["error"], CompressionBudgetUnsatisfiable)
        assert errors[0].session_id == "s1"

    @pytest.mark.asyncio
    async def test_dynamic_prompt_sees_collaborators(self):
        from mcpilot.context.prompt import DynamicContributor

        ctx = make_context()
        ctx.prompt_manager.add_contributor(
            DynamicContributor("who", lambda collaborators: f"Agent: {collaborators['name']}", priority=10)
        )
        await ctx.add_user_message("hi")

        prepared = await ctx.get_formatted_messages_with_compression({"name": "bot"})

        assert prepared.formatted_messages[0]["content"] == "You are helpful.\n\nAgent: bot"


class TestTokenAccounting:
    """Tests for update_actual_token_count."""

    @pytest.mark.asyncio
    async def test_actual_count_plus_newer_estimates(self):
        ctx = make_context()
        await ctx.add_user_message("hi")
        ctx.update_actual_token_count(1000)
        assert ctx.estimate_tokens() == 1000

        await ctx.add_assistant_message("a" * 40)

        assert ctx.estimate_tokens() == 1000 + 4 + 10

    @pytest.mark.asyncio
    async def test_actual_count_drives_compression(self):
        """A large reported count triggers compression even if the local estimate is small."""
        ctx = make_context(max_input_tokens=500, strategy=OldestRemovalStrategy(preserve_last_n=1, min_messages=0))
        for i in range(10):
            await ctx.add_user_message(f"short {i}")
        ctx.update_actual_token_count(600)

        prepared = await ctx.get_formatted_messages_with_compression()

        assert prepared.compression is not None
        assert prepared.compression.removed_count > 0


class TestLifecycle:
    """Tests for initialize, reset and model switching."""

    @pytest.mark.asyncio
    async def test_initialize_restores_history(self):
        provider = InMemoryHistoryProvider()
        await provider.save_message(InternalMessage(role="user", content="earlier"))
        ctx = make_context(history_provider=provider)

        await ctx.initialize()

        assert [m.content for m in ctx.get_history()] == ["earlier"]

    @pytest.mark.asyncio
    async def test_reset(self):
        provider = InMemoryHistoryProvider()
        bus = EventBus()
        resets = []
        bus.subscribe(EventType.CONVERSATION_RESET, resets.append)
        ctx = make_context(max_input_tokens=1234, history_provider=provider, event_bus=bus)
        await ctx.add_user_message("hi")

        await ctx.reset()

        assert ctx.get_history() == []
        assert await provider.get_history() == []
        assert len(resets) == 1
        assert ctx.max_input_tokens == 1234
        prepared = await ctx.get_formatted_messages_with_compression()
        assert prepared.formatted_messages == [{"role": "system", "content": "You are helpful."}]

    def test_create_context_manager(self):
        ctx = create_context_manager(LLMConfig(provider="anthropic", model="claude-3-opus-20240229"))

        assert ctx.max_input_tokens == 180_000
        assert isinstance(ctx.formatter, AnthropicMessageFormatter)
        assert isinstance(ctx.tokenizer, AnthropicTokenizer)

    def test_create_context_manager_override(self):
        ctx = create_context_manager(
            LLMConfig(provider="openai", model="gpt-4o", max_input_tokens=5000, system_prompt="Hi")
        )
        assert ctx.max_input_tokens == 5000

    @pytest.mark.asyncio
    async def test_apply_llm_config_keeps_history(self):
        ctx = make_context()
        await ctx.add_user_message("hi")

        ctx.apply_llm_config(LLMConfig(provider="anthropic", model="claude-3-haiku-20240307"))

        assert isinstance(ctx.formatter, AnthropicMessageFormatter)
        assert len(ctx.get_history()) == 1
