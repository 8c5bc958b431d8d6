from __future__ import annotations

import asyncio
import gc

import pytest

from conftest import BAD_NAME, CUBE, CUBE_WITH_PARAMS, FakeClient
from solidgen.core.code_processor import UNIDENTIFIABLE_SENTINEL
from solidgen.core.conversation_store import (
    CodeAccepted,
    Conversation,
    ConversationTurn,
    TurnAppended,
    TurnReplaced,
)
from solidgen.core.errors import ConfigurationError, ConversationBusyError, TransportError
from solidgen.core.image_utils import ImageAttachment
from solidgen.core.orchestrator import (
    EMPTY_REPLY,
    PLACEHOLDER_REPLY,
    RetryOrchestrator,
    SingleFlight,
    TurnState,
    TurnStatus,
)

IMAGE = ImageAttachment(data=b"\x89PNG fake", mime_type="image/png", width=1, height=1)


def _run(orchestrator, prompt="a cube", **kwargs):
    return asyncio.run(orchestrator.run_turn(prompt, **kwargs))


def _collect(orchestrator, prompt="a cube", **kwargs):
    async def _go():
        return [p async for p in orchestrator.stream_turn(prompt, **kwargs)]
    return asyncio.run(_go())


class TestAcceptance:
    def test_first_attempt_accepted(self, executor):
        client = FakeClient([CUBE_WITH_PARAMS])
        result = _run(RetryOrchestrator(client, executor))

        assert result.success
        assert result.status == TurnStatus.accepted
        assert result.attempt_count == 1
        assert result.code == CUBE_WITH_PARAMS
        assert result.parameters == ["size", "overlap"]
        assert result.meshes[0].triangle_count == 12
        assert result.cost_summary.calls == 1
        assert result.cost_summary.total_input_tokens == 100

        user, assistant, accepted = result.events
        assert isinstance(user, TurnAppended) and user.turn.content == "a cube"
        assert isinstance(assistant, TurnAppended) and assistant.turn.content == CUBE_WITH_PARAMS
        assert isinstance(accepted, CodeAccepted) and accepted.prompt == "a cube"

    def test_repair_after_name_error(self, executor):
        client = FakeClient([BAD_NAME, CUBE])
        result = _run(RetryOrchestrator(client, executor, max_attempts=3))

        assert result.success
        assert [e.success for e in result.attempts] == [False, True]
        assert "NameError" in result.attempts[0].error_text

        retry = client.requests[1].messages
        assert retry[-2].role == "assistant"
        assert retry[-2].content == BAD_NAME
        assert "NameError" in retry[-1].content
        # The synthetic pair never reaches the conversation
        assert all(getattr(e, "turn", None) is None or e.turn.content != BAD_NAME for e in result.events)

    def test_empty_reply_is_retried_with_a_placeholder(self, executor):
        client = FakeClient(["", CUBE])
        result = _run(RetryOrchestrator(client, executor))

        assert result.success
        assert result.attempts[0].error_text == "script has no return statement"
        retry = client.requests[1].messages
        assert retry[-2].role == "assistant"
        assert retry[-2].content == EMPTY_REPLY
        assert all(m.content.strip() for m in retry)

    def test_only_latest_failure_is_sent(self, executor):
        client = FakeClient([BAD_NAME, "return 5", CUBE])
        _run(RetryOrchestrator(client, executor, max_attempts=3))
        third = client.requests[2].messages
        assert len(third) == 3
        assert third[1].content == "return 5"

    def test_state_sequence(self, executor):
        progress = _collect(RetryOrchestrator(FakeClient([CUBE]), executor))
        states = [p.state for p in progress if p.kind == "state"]
        assert states == [TurnState.thinking, TurnState.generating, TurnState.validating]
        assert "".join(p.text for p in progress if p.kind == "delta") == CUBE
        assert progress[-1].kind == "result"

    def test_retry_state_carries_error(self, executor):
        progress = _collect(RetryOrchestrator(FakeClient([BAD_NAME, CUBE]), executor))
        retrying = [p for p in progress if p.state == TurnState.retrying]
        assert len(retrying) == 1
        assert retrying[0].error.startswith("NameError")


class TestTerminalFailures:
    def test_exhausted(self, executor):
        client = FakeClient([BAD_NAME, BAD_NAME, "return 5"])
        result = _run(RetryOrchestrator(client, executor, max_attempts=3))

        assert result.status == TurnStatus.exhausted
        assert "3 attempts" in result.message
        assert "rephrasing" in result.message
        assert len(client.requests) == 3
        user, placeholder = result.events
        assert user.turn.role == "user"
        assert placeholder.turn.content == PLACEHOLDER_REPLY

    def test_exhausted_with_image_suggests_words(self, executor):
        client = FakeClient([BAD_NAME])
        result = _run(RetryOrchestrator(client, executor, max_attempts=1), image=IMAGE)
        assert result.status == TurnStatus.exhausted
        assert "describing the object in words" in result.message

    def test_configuration_error_consumes_no_attempt(self, executor):
        client = FakeClient([ConfigurationError("ANTHROPIC_API_KEY not set")])
        result = _run(RetryOrchestrator(client, executor))
        assert result.status == TurnStatus.configuration_error
        assert result.attempts == []
        assert len(client.requests) == 1
        assert result.events[-1].turn.content == PLACEHOLDER_REPLY

    def test_transport_error_is_terminal(self, executor):
        client = FakeClient([TransportError("connection reset"), CUBE])
        result = _run(RetryOrchestrator(client, executor))
        assert result.status == TurnStatus.transport_error
        assert len(client.requests) == 1

    def test_unexpected_client_error_is_transport(self, executor):
        result = _run(RetryOrchestrator(FakeClient([RuntimeError("boom")]), executor))
        assert result.status == TurnStatus.transport_error
        assert "boom" in result.error

    def test_overload_is_retried_by_the_client(self, executor):
        client = FakeClient([RuntimeError("Error code: 529 overloaded"), CUBE])
        result = _run(RetryOrchestrator(client, executor))
        assert result.success
        assert len(client.requests) == 2


class TestImages:
    def test_image_only_on_first_attempt(self, executor):
        client = FakeClient([BAD_NAME, CUBE])
        result = _run(RetryOrchestrator(client, executor), image=IMAGE)
        assert result.success
        assert client.requests[0].messages[-1].image_data == IMAGE.data
        assert all(m.image_data is None for m in client.requests[1].messages)
        assert result.events[0].turn.image_attachment.mime_type == "image/png"

    def test_unidentifiable_object(self, executor):
        client = FakeClient([UNIDENTIFIABLE_SENTINEL, CUBE])
        result = _run(RetryOrchestrator(client, executor), image=IMAGE)
        assert result.status == TurnStatus.unidentifiable
        assert len(client.requests) == 1

    def test_sentinel_without_image_goes_to_sandbox(self, executor):
        client = FakeClient([UNIDENTIFIABLE_SENTINEL, CUBE])
        result = _run(RetryOrchestrator(client, executor))
        assert result.success
        assert result.attempts[0].error_text == "script has no return statement"


class TestConversationEvents:
    def test_trailing_user_turn_is_replaced(self, executor):
        history = [
            ConversationTurn(role="user", content="first"),
            ConversationTurn(role="assistant", content=CUBE),
            ConversationTurn(role="user", content="orphan"),
        ]
        client = FakeClient([CUBE])
        result = _run(RetryOrchestrator(client, executor), prompt="second", history=history)

        assert isinstance(result.events[0], TurnReplaced)
        assert result.events[0].index == 2
        sent = [m.content for m in client.requests[0].messages]
        assert sent == ["first", CUBE, "second"]

        conversation = Conversation(turns=history).apply_all(result.events)
        assert [t.role for t in conversation.turns] == ["user", "assistant", "user", "assistant"]

    def test_expanded_prompt_is_sent_but_original_is_kept(self, executor):
        client = FakeClient([CUBE])
        result = _run(RetryOrchestrator(client, executor), prompt="a 2 inch cube")
        assert "50.8mm" in client.requests[0].messages[-1].content
        assert result.events[0].turn.content == "a 2 inch cube"

    def test_current_code_reaches_the_system_prompt(self, executor):
        client = FakeClient([CUBE])
        _run(RetryOrchestrator(client, executor), current_code="return sphere(3)")
        assert "return sphere(3)" in client.requests[0].system


class TestSingleFlight:
    def test_busy_conversation_is_refused(self, executor):
        guard = SingleFlight()
        guard.claim("c1")
        orchestrator = RetryOrchestrator(FakeClient([CUBE]), executor, guard=guard)
        with pytest.raises(ConversationBusyError):
            orchestrator.stream_turn("a cube", conversation_id="c1")

    def test_guard_released_after_turn(self, executor):
        guard = SingleFlight()
        _run(RetryOrchestrator(FakeClient([CUBE]), executor, guard=guard), conversation_id="c1")
        assert not guard.busy("c1")

    def test_closing_an_unstarted_stream_releases(self, executor):
        guard = SingleFlight()
        orchestrator = RetryOrchestrator(FakeClient([CUBE, CUBE]), executor, guard=guard)

        async def _go():
            stream = orchestrator.stream_turn("a cube", conversation_id="c1")
            assert guard.busy("c1")
            await stream.aclose()

        asyncio.run(_go())
        assert not guard.busy("c1")
        assert _run(orchestrator, conversation_id="c1").success

    def test_dropping_an_unstarted_stream_releases(self, executor):
        guard = SingleFlight()
        orchestrator = RetryOrchestrator(FakeClient([CUBE]), executor, guard=guard)
        stream = orchestrator.stream_turn("a cube", conversation_id="c1")
        del stream
        gc.collect()
        assert not guard.busy("c1")

    def test_release_happens_once(self, executor):
        guard = SingleFlight()
        orchestrator = RetryOrchestrator(FakeClient([CUBE]), executor, guard=guard)
        first = orchestrator.stream_turn("a cube", conversation_id="c1")
        asyncio.run(first.aclose())
        second = orchestrator.stream_turn("again", conversation_id="c1")
        # A late close of the finished stream must not free the new claim
        asyncio.run(first.aclose())
        assert guard.busy("c1")
        asyncio.run(second.aclose())
        assert not guard.busy("c1")

    def test_invalid_attempt_count(self, executor):
        with pytest.raises(ValueError):
            RetryOrchestrator(FakeClient([]), executor, max_attempts=0)
