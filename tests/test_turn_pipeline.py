"""Unit tests for TurnPipeline."""
import sys
from pathlib import Path

# Add backend to path
sys.path.insert(0, str(Path(__file__).parent.parent / "backend"))

import asyncio
import pytest
from unittest.mock import AsyncMock, Mock
from messages import ERROR_TEXT, PLACEHOLDER_TEXT
from models.conversation import Role, Turn
from services.completion_client import (
    CompletionError,
    CompletionResponse,
    CompletionAPIError,
    MalformedResponseError,
    TransportError,
)
from services.conversation_manager import ConversationManager
from services.turn_pipeline import PlatformDeliveryError, TurnPipeline

CHAT_ID = 1001


class FakeGateway:
    """Records outbound chat traffic."""

    def __init__(self):
        self.sent = []
        self.deleted = []
        self.next_id = 1
        self.fail_send_for = set()
        self.fail_delete = False

    async def send_message(self, chat_id, text):
        if text in self.fail_send_for:
            raise PlatformDeliveryError(f"cannot send {text!r}")
        message_id = self.next_id
        self.next_id += 1
        self.sent.append((chat_id, text, message_id))
        return message_id

    async def delete_message(self, chat_id, message_id):
        self.deleted.append((chat_id, message_id))
        if self.fail_delete:
            raise PlatformDeliveryError("cannot delete")

    @property
    def texts(self):
        return [text for _, text, _ in self.sent]


def _completion(text="Hello! How can I help?"):
    return CompletionResponse(
        text=text,
        tokens_input=10,
        tokens_output=5,
        latency_ms=120,
        model_used="deepseek-ai/DeepSeek-V3-0324"
    )


def _failure(error_class, code="API_ERROR"):
    return error_class(CompletionError(code=code, message="failed", details={}))


@pytest.fixture
def gateway():
    return FakeGateway()


@pytest.fixture
def manager():
    return ConversationManager(max_turns=0)


@pytest.fixture
def completion_client():
    client = Mock()
    client.complete = AsyncMock(return_value=_completion())
    return client


@pytest.fixture
def pipeline(manager, completion_client, gateway):
    return TurnPipeline(
        conversation_manager=manager,
        completion_client=completion_client,
        gateway=gateway
    )


def _seed_history(manager, turns):
    conversation = manager.get_or_create_conversation(CHAT_ID)
    for i in range(turns):
        role = Role.USER if i % 2 == 0 else Role.ASSISTANT
        conversation.append(Turn(role=role, content=f"Earlier message {i + 1}"))
    return conversation


class TestTurnPipelineSuccess:
    """Successful request/response cycles."""

    def test_fresh_session_hello(self, pipeline, manager, completion_client, gateway):
        """Test the first message of a chat end to end."""
        result = asyncio.run(pipeline.run(CHAT_ID, "Hello"))

        completion_client.complete.assert_awaited_once_with(
            [{"role": "user", "content": "Hello"}]
        )
        assert gateway.texts == [PLACEHOLDER_TEXT, "Hello! How can I help?"]
        placeholder_id = gateway.sent[0][2]
        assert gateway.deleted == [(CHAT_ID, placeholder_id)]

        turns = manager.get_conversation(CHAT_ID).turns
        assert len(turns) == 2
        assert result.success is True
        assert result.reply_text == "Hello! How can I help?"
        assert result.completion.tokens_output == 5

    def test_history_grows_by_user_then_assistant(self, pipeline, manager):
        """Test a successful run appends exactly one user and one assistant turn."""
        conversation = _seed_history(manager, 4)

        asyncio.run(pipeline.run(CHAT_ID, "Next question"))

        assert len(conversation.turns) == 6
        assert conversation.turns[4].role is Role.USER
        assert conversation.turns[4].content == "Next question"
        assert conversation.turns[5].role is Role.ASSISTANT
        assert conversation.turns[5].content == "Hello! How can I help?"

    def test_request_contains_full_ordered_history(self, pipeline, manager, completion_client):
        """Test the completion request carries every earlier turn in order."""
        _seed_history(manager, 4)

        asyncio.run(pipeline.run(CHAT_ID, "Latest"))

        messages = completion_client.complete.await_args.args[0]
        assert [m["content"] for m in messages] == [
            "Earlier message 1",
            "Earlier message 2",
            "Earlier message 3",
            "Earlier message 4",
            "Latest",
        ]
        assert [m["role"] for m in messages] == ["user", "assistant", "user", "assistant", "user"]

    def test_placeholder_sent_before_completion(self, pipeline, completion_client, gateway):
        """Test the user sees the placeholder while the API is working."""
        sent_before_call = []

        async def complete(messages):
            sent_before_call.extend(gateway.texts)
            return _completion()

        completion_client.complete = AsyncMock(side_effect=complete)

        asyncio.run(pipeline.run(CHAT_ID, "Hello"))

        assert sent_before_call == [PLACEHOLDER_TEXT]

    def test_identical_messages_are_not_deduplicated(self, pipeline, manager):
        """Test the same text twice produces two independent runs."""
        asyncio.run(pipeline.run(CHAT_ID, "Ping"))
        asyncio.run(pipeline.run(CHAT_ID, "Ping"))

        turns = manager.get_conversation(CHAT_ID).turns
        assert [t.content for t in turns if t.role is Role.USER] == ["Ping", "Ping"]
        assert len(turns) == 4

    def test_delete_failure_still_delivers_reply(self, pipeline, gateway):
        """Test an undeletable placeholder does not block the reply."""
        gateway.fail_delete = True

        result = asyncio.run(pipeline.run(CHAT_ID, "Hello"))

        assert result.success is True
        assert gateway.texts == [PLACEHOLDER_TEXT, "Hello! How can I help?"]
        assert len(gateway.deleted) == 1


class TestTurnPipelineFailure:
    """Failure handling."""

    @pytest.mark.parametrize("failure", [
        _failure(CompletionAPIError),
        _failure(MalformedResponseError, code="MALFORMED_RESPONSE"),
        _failure(TransportError, code="TIMEOUT_ERROR"),
    ])
    def test_completion_failure_sends_error_notice(self, pipeline, manager, completion_client, gateway, failure):
        """Test every completion failure yields exactly the fixed notice."""
        completion_client.complete = AsyncMock(side_effect=failure)

        result = asyncio.run(pipeline.run(CHAT_ID, "Hello"))

        assert result.success is False
        assert result.reply_text == ERROR_TEXT
        assert gateway.texts == [PLACEHOLDER_TEXT, ERROR_TEXT]
        assert len(gateway.deleted) == 1

        turns = manager.get_conversation(CHAT_ID).turns
        assert len(turns) == 1
        assert turns[0].role is Role.USER
        assert turns[0].content == "Hello"

    def test_service_unavailable_keeps_orphaned_user_turn(self, pipeline, manager, completion_client, gateway):
        """Test a 503 on a 4-turn history leaves 5 turns and no assistant reply."""
        conversation = _seed_history(manager, 4)
        completion_client.complete = AsyncMock(side_effect=_failure(CompletionAPIError))

        asyncio.run(pipeline.run(CHAT_ID, "Are you there?"))

        assert len(conversation.turns) == 5
        assert conversation.turns[-1].role is Role.USER
        assert conversation.turns[-1].content == "Are you there?"
        assert gateway.texts[-1] == ERROR_TEXT
        assert len(gateway.deleted) == 1

    def test_unexpected_error_sends_error_notice(self, pipeline, completion_client, gateway):
        """Test errors outside the taxonomy are still hidden from the user."""
        completion_client.complete = AsyncMock(side_effect=RuntimeError("boom"))

        result = asyncio.run(pipeline.run(CHAT_ID, "Hello"))

        assert result.success is False
        assert gateway.texts == [PLACEHOLDER_TEXT, ERROR_TEXT]
        assert len(gateway.deleted) == 1

    def test_reply_delivery_failure_sends_error_notice(self, pipeline, manager, gateway):
        """Test a reply that cannot be sent is replaced by the notice without a second delete."""
        gateway.fail_send_for.add("Hello! How can I help?")

        result = asyncio.run(pipeline.run(CHAT_ID, "Hello"))

        assert result.success is False
        assert gateway.texts == [PLACEHOLDER_TEXT, ERROR_TEXT]
        assert len(gateway.deleted) == 1
        assert len(manager.get_conversation(CHAT_ID).turns) == 2

    def test_delete_failure_on_error_path_is_swallowed(self, pipeline, completion_client, gateway):
        """Test the notice is still sent when the placeholder cannot be deleted."""
        gateway.fail_delete = True
        completion_client.complete = AsyncMock(side_effect=_failure(TransportError))

        result = asyncio.run(pipeline.run(CHAT_ID, "Hello"))

        assert result.success is False
        assert gateway.texts == [PLACEHOLDER_TEXT, ERROR_TEXT]

    def test_placeholder_failure_propagates(self, pipeline, manager, completion_client, gateway):
        """Test nothing else happens when the placeholder cannot be sent."""
        gateway.fail_send_for.add(PLACEHOLDER_TEXT)

        with pytest.raises(PlatformDeliveryError):
            asyncio.run(pipeline.run(CHAT_ID, "Hello"))

        completion_client.complete.assert_not_awaited()
        assert manager.get_conversation(CHAT_ID).turns == []

    def test_error_notice_failure_propagates(self, pipeline, completion_client, gateway):
        """Test a failing error notice is not retried."""
        gateway.fail_send_for.add(ERROR_TEXT)
        completion_client.complete = AsyncMock(side_effect=_failure(CompletionAPIError))

        with pytest.raises(PlatformDeliveryError):
            asyncio.run(pipeline.run(CHAT_ID, "Hello"))

        assert len(gateway.deleted) == 1

    @pytest.mark.parametrize("text", ["", "   ", None])
    def test_empty_message_rejected(self, pipeline, completion_client, gateway, text):
        """Test empty input is rejected before any side effect."""
        with pytest.raises(ValueError, match="cannot be empty"):
            asyncio.run(pipeline.run(CHAT_ID, text))

        assert gateway.sent == []
        completion_client.complete.assert_not_awaited()


class TestTurnPipelineConcurrency:
    """Interleaving of concurrent runs."""

    def test_same_chat_runs_are_serialized(self, pipeline, manager, completion_client):
        """Test a second message waits for the first reply before joining the history."""
        seen = []

        async def complete(messages):
            seen.append([m["content"] for m in messages])
            await asyncio.sleep(0.01)
            return _completion(f"Reply {len(seen)}")

        completion_client.complete = AsyncMock(side_effect=complete)

        async def scenario():
            await asyncio.gather(
                pipeline.run(CHAT_ID, "First"),
                pipeline.run(CHAT_ID, "Second"),
            )

        asyncio.run(scenario())

        assert seen == [["First"], ["First", "Reply 1", "Second"]]
        assert [t.content for t in manager.get_conversation(CHAT_ID).turns] == [
            "First", "Reply 1", "Second", "Reply 2"
        ]

    def test_different_chats_interleave(self, pipeline, manager, completion_client):
        """Test one chat's pending request does not block another chat."""
        in_flight = 0
        max_in_flight = 0

        async def complete(messages):
            nonlocal in_flight, max_in_flight
            in_flight += 1
            max_in_flight = max(max_in_flight, in_flight)
            await asyncio.sleep(0.01)
            in_flight -= 1
            return _completion()

        completion_client.complete = AsyncMock(side_effect=complete)

        async def scenario():
            await asyncio.gather(
                pipeline.run(1, "Hello from one"),
                pipeline.run(2, "Hello from two"),
            )

        asyncio.run(scenario())

        assert max_in_flight == 2
        assert len(manager.get_conversation(1).turns) == 2
        assert len(manager.get_conversation(2).turns) == 2

    def test_discard_between_queued_runs_keeps_serialization(self, pipeline, manager, completion_client):
        """Test ending the session while runs are queued does not let a new run overlap them."""
        in_flight = 0
        peak = 0

        async def complete(messages):
            nonlocal in_flight, peak
            in_flight += 1
            peak = max(peak, in_flight)
            await asyncio.sleep(0.01)
            in_flight -= 1
            return _completion()

        completion_client.complete = AsyncMock(side_effect=complete)

        async def scenario():
            first = asyncio.create_task(pipeline.run(CHAT_ID, "First"))
            second = asyncio.create_task(pipeline.run(CHAT_ID, "Second"))
            await asyncio.sleep(0)

            lock = manager.lock_for(CHAT_ID)
            while lock.locked():
                await asyncio.sleep(0)
            manager.discard(CHAT_ID)

            third = asyncio.create_task(pipeline.run(CHAT_ID, "Third"))
            await asyncio.gather(first, second, third)

        asyncio.run(scenario())

        assert peak == 1
        assert completion_client.complete.await_count == 3
