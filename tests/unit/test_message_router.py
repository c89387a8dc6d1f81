"""Tests for message routing and bridge commands."""

from unittest.mock import AsyncMock

import pytest

from chatbridge.message_router import MessageRouter
from chatbridge.models import (
    BridgeCommand,
    InboundEvent,
    NormalizedMessage,
    SampleOutcome,
    SampleResult,
    SessionState,
)


class Replies:
    """Collects reply texts."""

    def __init__(self):
        self.texts = []

    async def __call__(self, text):
        self.texts.append(text)
        return True

    @property
    def last(self):
        return self.texts[-1]


@pytest.fixture
def replies() -> Replies:
    return Replies()


def event(text: str, event_id: str = "telegram_42_1", channel_id: str = "42", is_bot: bool = False) -> InboundEvent:
    return InboundEvent(id=event_id, text=text, channel_id=channel_id, is_bot=is_bot)


class TestHandleInbound:
    @pytest.mark.asyncio
    async def test_plain_text_sent_verbatim(self, router, mock_tmux, replies):
        assert await router.handle_inbound(event("  fix the bug  "), replies) is True

        mock_tmux.send_input_async.assert_awaited_once_with("agent", "  fix the bug  ")
        assert replies.texts == []

    @pytest.mark.asyncio
    async def test_duplicate_event_processed_once(self, router, mock_tmux, replies):
        assert await router.handle_inbound(event("hello"), replies) is True
        assert await router.handle_inbound(event("hello"), replies) is False

        assert mock_tmux.send_input_async.await_count == 1
        assert router.duplicates_dropped == 1

    @pytest.mark.asyncio
    async def test_other_channel_ignored(self, router, mock_tmux):
        assert await router.handle_inbound(event("hello", channel_id="99")) is False
        mock_tmux.send_input_async.assert_not_awaited()

    @pytest.mark.asyncio
    async def test_bot_messages_ignored(self, router, mock_tmux):
        assert await router.handle_inbound(event("hello", is_bot=True)) is False
        await router.route(NormalizedMessage(text="hello", is_bot=True))

        mock_tmux.send_input_async.assert_not_awaited()

    @pytest.mark.asyncio
    async def test_empty_text_ignored(self, router, inbound_cache):
        assert await router.handle_inbound(event("   ")) is False
        assert inbound_cache.is_processed("telegram_42_1") is False


class TestConfirmation:
    @pytest.mark.asyncio
    @pytest.mark.parametrize("word", ["yes", "Y", "confirm", "确认", "是"])
    async def test_confirm_words_send_confirm_keys(self, router, mock_tmux, word):
        await router.route(NormalizedMessage(text=word))

        mock_tmux.send_key_sequence.assert_awaited_once_with("agent", ["Enter"])
        mock_tmux.send_input_async.assert_not_awaited()

    @pytest.mark.asyncio
    @pytest.mark.parametrize("word", ["no", "N", "cancel", "取消", "否"])
    async def test_cancel_words_send_cancel_keys(self, router, mock_tmux, word):
        await router.route(NormalizedMessage(text=word))

        mock_tmux.send_key_sequence.assert_awaited_once_with("agent", ["Escape"])
        mock_tmux.send_input_async.assert_not_awaited()

    @pytest.mark.asyncio
    async def test_sentence_containing_yes_is_plain_input(self, router, mock_tmux):
        await router.route(NormalizedMessage(text="yes please"))

        mock_tmux.send_input_async.assert_awaited_once_with("agent", "yes please")
        mock_tmux.send_key_sequence.assert_not_awaited()

    @pytest.mark.asyncio
    async def test_configured_words_and_keys(self, registry, mock_tmux, scripted_pm, monitor, notifier, inbound_cache):
        config = {"router": {"confirm_words": ["ok", True], "confirm_keys": ["1", "Enter"]}}
        router = MessageRouter(registry, mock_tmux, scripted_pm, monitor, notifier, inbound_cache, config=config)

        await router.route(NormalizedMessage(text="OK"))
        await router.route(NormalizedMessage(text="yes"))

        mock_tmux.send_key_sequence.assert_awaited_once_with("agent", ["1", "Enter"])
        mock_tmux.send_input_async.assert_awaited_once_with("agent", "yes")

    @pytest.mark.asyncio
    async def test_failed_keys_reported(self, router, mock_tmux, replies):
        mock_tmux.send_key_sequence.return_value = False

        await router.route(NormalizedMessage(text="y"), replies)

        assert replies.last.startswith("❌")
        assert not router.history


class TestShellCommand:
    @pytest.mark.asyncio
    async def test_prefix_runs_command_and_relays_new_output(self, router, mock_tmux, scripted_pm, replies):
        scripted_pm.push("$ \n", "$ ls\nREADME.md\nsetup.py\n$ \n")

        await router.route(NormalizedMessage(text="!ls"), replies)

        mock_tmux.send_input_async.assert_awaited_once_with("agent", "ls")
        assert replies.last.startswith("$ ls\n")
        assert "README.md" in replies.last
        assert router.history[-1].kind == "shell"

    @pytest.mark.asyncio
    async def test_long_output_is_bounded(self, router, scripted_pm, replies):
        router.max_output_chars = 100
        scripted_pm.push("", "\n".join(f"line {i}" for i in range(200)))

        await router.route(NormalizedMessage(text="!seq 200"), replies)

        body = replies.last.split("\n", 1)[1]
        assert len(body) <= 100 + len("...\n")
        assert "line 199" in body

    @pytest.mark.asyncio
    async def test_capture_failure(self, router, scripted_pm, replies):
        scripted_pm.push("", SampleResult(outcome=SampleOutcome.TIMED_OUT, signal="TIMEOUT"))

        await router.route(NormalizedMessage(text="!ls"), replies)

        assert "could not capture output" in replies.last

    @pytest.mark.asyncio
    async def test_bare_prefix_shows_usage(self, router, mock_tmux, replies):
        await router.route(NormalizedMessage(text="!"), replies)

        assert replies.last.startswith("Usage")
        mock_tmux.send_input_async.assert_not_awaited()


class TestRouteErrors:
    @pytest.mark.asyncio
    async def test_no_session(self, router, registry, replies):
        registry._current = None

        await router.route(NormalizedMessage(text="hello"), replies)

        assert "No active session" in replies.last

    @pytest.mark.asyncio
    async def test_exception_becomes_bounded_reply(self, router, mock_tmux, replies):
        mock_tmux.send_input_async.side_effect = RuntimeError("x" * 5000)

        await router.route(NormalizedMessage(text="hello"), replies)

        assert replies.last.startswith("❌")
        assert len(replies.last) < 400

    @pytest.mark.asyncio
    async def test_reply_defaults_to_notifier(self, router, mock_tmux, fake_chat):
        mock_tmux.send_input_async.return_value = False

        await router.route(NormalizedMessage(text="hello"))

        fake_chat.send_text.assert_awaited_once()


class TestCommands:
    def test_every_command_has_a_handler(self, router):
        assert set(router._handlers) == set(BridgeCommand)

    @pytest.mark.asyncio
    async def test_switch_lists_sessions(self, router, mock_tmux, replies):
        mock_tmux.list_sessions.return_value = ["agent", "other"]

        await router.execute(BridgeCommand.SWITCH, "", replies)

        assert "▶ agent" in replies.last
        assert "  other" in replies.last

    @pytest.mark.asyncio
    async def test_switch_to_session(self, router, registry, replies):
        await router.execute(BridgeCommand.SWITCH, "other", replies)

        assert replies.last == "✅ Now monitoring other"
        assert registry.current == "other"

    @pytest.mark.asyncio
    async def test_switch_unknown(self, router, mock_tmux, replies):
        mock_tmux.session_exists.return_value = False

        await router.execute(BridgeCommand.SWITCH, "ghost", replies)

        assert replies.last == "❌ Session ghost not found"

    @pytest.mark.asyncio
    async def test_tab_sends_each_number(self, router, mock_tmux, replies):
        await router.execute(BridgeCommand.TAB, "1, 3", replies)

        mock_tmux.send_key_sequence.assert_awaited_once_with("agent", ["1", "3"])
        assert replies.last == "✅ Selected 1, 3"

    @pytest.mark.asyncio
    async def test_tab_rejects_non_numbers(self, router, mock_tmux, replies):
        await router.execute(BridgeCommand.TAB, "two", replies)

        assert replies.last.startswith("Usage")
        mock_tmux.send_key_sequence.assert_not_awaited()

    @pytest.mark.asyncio
    async def test_show(self, router, scripted_pm, replies):
        scripted_pm.push("● Hello\n╭────╮\n")

        await router.execute(BridgeCommand.SHOW, "", replies)

        assert replies.last == "📺 agent\n● Hello"

    @pytest.mark.asyncio
    async def test_new_session(self, router, mock_tmux, registry, replies):
        await router.execute(BridgeCommand.NEW, "work", replies)

        mock_tmux.new_session.assert_called_once_with("work", working_dir=None, command="claude")
        assert registry.current == "work"
        assert replies.last.startswith("✅")

    @pytest.mark.asyncio
    async def test_new_invalid_name(self, router, mock_tmux, replies):
        await router.execute(BridgeCommand.NEW, "a:b", replies)

        assert "Invalid name" in replies.last
        mock_tmux.new_session.assert_not_called()

    @pytest.mark.asyncio
    async def test_kill(self, router, mock_tmux, replies):
        mock_tmux.list_sessions.return_value = ["other"]

        await router.execute(BridgeCommand.KILL, "", replies)

        assert replies.last == "✅ Killed agent. Now monitoring other."

    @pytest.mark.asyncio
    async def test_redelivered_kill_runs_once(self, router, mock_tmux, registry, replies):
        mock_tmux.list_sessions.return_value = ["other"]

        first = await router.handle_command(BridgeCommand.KILL, "", replies, event_id="telegram_42_7")
        second = await router.handle_command(BridgeCommand.KILL, "", replies, event_id="telegram_42_7")

        assert (first, second) == (True, False)
        mock_tmux.kill_session.assert_called_once_with("agent")
        assert registry.current == "other"
        assert replies.texts == ["✅ Killed agent. Now monitoring other."]
        assert router.duplicates_dropped == 1

    @pytest.mark.asyncio
    async def test_command_and_message_share_the_inbound_cache(self, router, inbound_cache, replies):
        await router.handle_command(BridgeCommand.HELP, "", replies, event_id="telegram_42_9")

        assert inbound_cache.is_processed("telegram_42_9") is True
        assert await router.handle_inbound(event("hello", event_id="telegram_42_9"), replies) is False

    @pytest.mark.asyncio
    async def test_command_without_event_id_always_runs(self, router, replies):
        await router.handle_command(BridgeCommand.HELP, "", replies)
        await router.handle_command(BridgeCommand.HELP, "", replies)

        assert len(replies.texts) == 2

    @pytest.mark.asyncio
    async def test_kill_without_session(self, router, registry, replies):
        registry._current = None

        await router.execute(BridgeCommand.KILL, "", replies)

        assert "no active session" in replies.last

    @pytest.mark.asyncio
    async def test_reset_clears_baseline(self, router, mock_tmux, monitor, detector, registry, replies):
        await detector.detect("Error: old\n")
        registry.buffer.update("old")

        await router.execute(BridgeCommand.RESET, "", replies)

        mock_tmux.send_input_async.assert_awaited_once_with("agent", "/clear")
        assert detector.get_current_state() == SessionState.NONE
        assert monitor.context.current_state == SessionState.NONE
        assert registry.buffer.text == ""

    @pytest.mark.asyncio
    async def test_status(self, router, replies):
        await router.execute(BridgeCommand.STATUS, "", replies)

        assert "Session: agent" in replies.last
        assert "State: none" in replies.last

    @pytest.mark.asyncio
    async def test_history(self, router, replies):
        await router.execute(BridgeCommand.HISTORY, "", replies)
        assert replies.last == "No inputs sent yet."

        await router.route(NormalizedMessage(text="do the thing"))
        await router.execute(BridgeCommand.HISTORY, "", replies)
        assert "[input] do the thing" in replies.last

    @pytest.mark.asyncio
    async def test_help_mentions_prefix(self, router, replies):
        await router.execute(BridgeCommand.HELP, "", replies)

        assert "!command" in replies.last
        assert "/tab" in replies.last

    @pytest.mark.asyncio
    async def test_watch_toggles(self, router, monitor, replies):
        await router.execute(BridgeCommand.WATCH, "", replies)
        assert monitor.context.watching is True

        await router.execute(BridgeCommand.WATCH, "", replies)
        assert monitor.context.watching is False
        assert replies.last == "Watch off"

    @pytest.mark.asyncio
    async def test_clear(self, router, registry, replies):
        registry.buffer.update("text")

        await router.execute(BridgeCommand.CLEAR, "", replies)

        assert registry.buffer.text == ""

    @pytest.mark.asyncio
    async def test_dedupstats(self, router, replies):
        await router.handle_inbound(event("hi"))
        await router.handle_inbound(event("hi"))

        await router.execute(BridgeCommand.DEDUPSTATS, "", replies)

        assert "inbound: 1/100 keys" in replies.last
        assert "outbound:" in replies.last
        assert "Duplicate messages dropped: 1" in replies.last

    @pytest.mark.asyncio
    async def test_config(self, router, replies):
        await router.execute(BridgeCommand.CONFIG, "", replies)

        assert "Notify on: completed, error, input_prompt" in replies.last
        assert "Command prefix: !" in replies.last

    @pytest.mark.asyncio
    async def test_handler_exception_is_reported(self, router, mock_tmux, replies):
        mock_tmux.list_sessions.side_effect = RuntimeError("tmux exploded")

        await router.execute(BridgeCommand.SWITCH, "", replies)

        assert replies.last == "❌ /switch failed: tmux exploded"
