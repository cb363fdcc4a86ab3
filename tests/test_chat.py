"""Tests for chat orchestration through the service facade."""

import asyncio
import sqlite3
from unittest.mock import Mock, patch

import pytest

from feedback_rag.chat import (
    DEGRADED_MESSAGE,
    EMPTY_ANSWER,
    FOLLOW_UP_TEMPLATES,
    NO_CONTEXT_CONFIDENCE,
    build_sources,
    extract_suggestions,
    score_confidence,
)
from feedback_rag.errors import (
    AccessDeniedError,
    InvalidFilterError,
    InvalidRequestError,
    SessionArchivedError,
    SessionNotFoundError,
)
from feedback_rag.health import COMPLETION, EMBEDDING, SESSION_STORE, HealthStatus
from feedback_rag.models import OrganizationProfile, RetrievedPassage
from feedback_rag.streaming import (
    TokenReceived,
    TurnCancelled,
    TurnCompleted,
    TurnFailed,
    TurnStarted,
)

from .conftest import TestConstants

ORG = TestConstants.ORG_ID
USER = TestConstants.USER_ID


async def _drain(subscription):
    events = []
    while True:
        try:
            event = await subscription.get(timeout=0.05)
        except TimeoutError:
            return events
        if event is None:
            return events
        events.append(event)


async def _wait_for_token(subscription):
    while True:
        event = await subscription.get(timeout=2)
        if isinstance(event, TokenReceived):
            return event


async def test_chat_answers_with_sources(indexed_service):
    response = await indexed_service.chat(ORG, USER, "What are the mobile login problems?")

    assert response.message == TestConstants.DEFAULT_REPLY
    assert not response.degraded
    assert not response.incomplete
    assert response.sources[0].source_item_id == "F1"
    assert response.sources[0].title == "Login button broken on mobile"
    assert 0.0 < response.confidence <= 1.0
    assert response.suggestions == [
        "You should fix the login button on mobile first",
        "Consider adding CSV export for smaller customers",
    ]
    assert response.follow_up_questions == FOLLOW_UP_TEMPLATES[:2]
    assert response.processing_time_ms >= 0

    session = await indexed_service.get_session(response.session_id, USER)
    user_msg, assistant_msg = session.messages
    assert user_msg.content == "What are the mobile login problems?"
    assert assistant_msg.content == TestConstants.DEFAULT_REPLY
    assert assistant_msg.metadata["turn_id"] == response.turn_id
    assert assistant_msg.metadata["sources"] == [
        s.source_item_id for s in response.sources
    ]


async def test_prompt_carries_context_passages_and_question(
    indexed_service, mock_completion_service
):
    await indexed_service.chat(ORG, USER, "What are the mobile login problems?")

    system, user = mock_completion_service.calls[-1]
    assert system["role"] == "system"
    assert "project management platform" in system["content"]
    assert "Cite the feedback items" in system["content"]
    assert user["content"].startswith("=== Relevant Customer Feedback ===")
    assert "[F1] Login button broken on mobile (category: bug" in user["content"]
    assert user["content"].endswith("Current Question: What are the mobile login problems?")


async def test_chat_creates_session_when_missing(indexed_service):
    response = await indexed_service.chat(ORG, USER, "Top complaints?")

    session = await indexed_service.get_session(response.session_id, USER)
    assert session.title == "New Chat"
    assert session.organization_id == ORG


async def test_follow_up_includes_history_and_rewrites_query(
    indexed_service, mock_completion_service
):
    mock_completion_service.rewrite_reply = "Which mobile login bugs affect enterprise?"
    first = await indexed_service.chat(ORG, USER, "What are the mobile login problems?")

    await indexed_service.chat(ORG, USER, "Which affect enterprise?", first.session_id)

    [rewrite_prompt] = mock_completion_service.rewrite_calls
    assert "Human: What are the mobile login problems?" in rewrite_prompt
    assert "Follow-up Question: Which affect enterprise?" in rewrite_prompt
    messages = mock_completion_service.calls[-1]
    assert [m["role"] for m in messages] == ["system", "user", "assistant", "user"]
    assert messages[1]["content"] == "What are the mobile login problems?"
    assert messages[-1]["content"].endswith("Current Question: Which affect enterprise?")


async def test_failed_rewrite_falls_back_to_question(
    indexed_service, mock_completion_service
):
    mock_completion_service.fail_rewrite = True
    first = await indexed_service.chat(ORG, USER, "What are the mobile login problems?")

    response = await indexed_service.chat(ORG, USER, "Any on desktop?", first.session_id)

    assert len(mock_completion_service.rewrite_calls) == 1
    assert not response.degraded
    assert response.message == TestConstants.DEFAULT_REPLY


async def test_completion_failure_returns_degraded_response(
    indexed_service, mock_completion_service
):
    mock_completion_service.fail = True
    monitor = indexed_service.monitor

    with patch.object(monitor, "report_failure", wraps=monitor.report_failure) as spy:
        response = await indexed_service.chat(ORG, USER, "What are the top complaints?")

    assert response.degraded
    assert response.message == DEGRADED_MESSAGE
    assert response.sources == []
    assert response.confidence <= 0.2
    assert response.suggestions
    assert spy.call_args.args[0] == COMPLETION

    session = await indexed_service.get_session(response.session_id, USER)
    assert len(session.messages) == 2
    assert session.messages[1].metadata["degraded"] is True


async def test_embedding_failure_is_reported_against_embedding(
    indexed_service, mock_embedding_service
):
    mock_embedding_service.fail = True
    monitor = indexed_service.monitor

    with patch.object(monitor, "report_failure", wraps=monitor.report_failure) as spy:
        response = await indexed_service.chat(ORG, USER, "What are the top complaints?")

    assert response.degraded
    assert spy.call_args.args[0] == EMBEDDING


async def test_unexpected_failure_is_not_blamed_on_a_dependency(indexed_service):
    monitor = indexed_service.monitor
    composer = indexed_service.composer

    with (
        patch.object(composer, "build_context", side_effect=RuntimeError("profile boom")),
        patch.object(monitor, "report_failure", wraps=monitor.report_failure) as spy,
    ):
        response = await indexed_service.chat(ORG, USER, "What are the top complaints?")

    assert response.degraded
    spy.assert_not_called()


async def test_persistence_failure_degrades_session_store_health(indexed_service):
    store = indexed_service.session_manager.store

    with patch.object(
        store, "append_messages", side_effect=sqlite3.OperationalError("disk I/O error")
    ) as append:
        response = await indexed_service.chat(ORG, USER, "What are the top complaints?")

    assert response.message == TestConstants.DEFAULT_REPLY
    assert append.call_count == 3
    health = await indexed_service.monitor.get_system_health(force_refresh=True)
    session_health = health.components[SESSION_STORE]
    assert session_health.status is HealthStatus.DEGRADED
    assert "disk I/O error" in session_health.error


async def test_degraded_turns_are_left_out_of_memory(
    indexed_service, mock_completion_service
):
    mock_completion_service.fail = True
    first = await indexed_service.chat(ORG, USER, "What are the top complaints?")
    mock_completion_service.fail = False

    await indexed_service.chat(ORG, USER, "Tell me more", first.session_id)

    assert mock_completion_service.rewrite_calls == []
    assert [m["role"] for m in mock_completion_service.calls[-1]] == ["system", "user"]


async def test_filters_restrict_sources(indexed_service):
    response = await indexed_service.chat(
        ORG, USER, "What do people like?", filters={"categories": ["praise"]}
    )

    assert [s.source_item_id for s in response.sources] == ["F4"]


async def test_invalid_filters_are_rejected(indexed_service):
    with pytest.raises(InvalidFilterError):
        await indexed_service.chat(ORG, USER, "Anything?", filters={"colour": ["red"]})


async def test_no_matching_feedback_still_answers(indexed_service):
    response = await indexed_service.chat(
        ORG, USER, "What about billing?", filters={"categories": ["billing"]}
    )

    assert not response.degraded
    assert response.sources == []
    assert response.confidence == NO_CONTEXT_CONFIDENCE


async def test_empty_model_reply_uses_fallback_text(
    indexed_service, mock_completion_service
):
    mock_completion_service.reply = ""

    response = await indexed_service.chat(ORG, USER, "Top complaints?")

    assert response.message == EMPTY_ANSWER


@pytest.mark.parametrize("message", ["", "   "])
async def test_empty_message_is_rejected(rag_service, message):
    with pytest.raises(InvalidRequestError):
        await rag_service.chat(ORG, USER, message)

    assert await rag_service.list_sessions(ORG, USER) == []


async def test_invalid_top_k_is_rejected(rag_service):
    with pytest.raises(InvalidRequestError):
        await rag_service.chat(ORG, USER, "Top complaints?", top_k=0)


async def test_top_k_above_mmr_candidate_cap_is_rejected(rag_service):
    rag_service.orchestrator.mmr_lambda = 0.5
    cap = rag_service.search_engine.fetch_k_cap

    with pytest.raises(InvalidRequestError, match="with MMR"):
        await rag_service.chat(ORG, USER, "Top complaints?", top_k=cap + 1)

    assert await rag_service.list_sessions(ORG, USER) == []


async def test_archived_session_rejects_messages(indexed_service):
    session = await indexed_service.create_session(ORG, USER)
    await indexed_service.delete_session(session.id, USER)

    with pytest.raises(SessionArchivedError):
        await indexed_service.chat(ORG, USER, "Top complaints?", session.id)

    stored = await indexed_service.get_session(session.id, USER)
    assert stored.messages == []


async def test_session_access_is_checked(indexed_service):
    session = await indexed_service.create_session(ORG, USER)

    with pytest.raises(AccessDeniedError):
        await indexed_service.chat(
            ORG, TestConstants.OTHER_USER_ID, "Top complaints?", session.id
        )
    with pytest.raises(AccessDeniedError):
        await indexed_service.chat(
            TestConstants.OTHER_ORG_ID, USER, "Top complaints?", session.id
        )
    with pytest.raises(SessionNotFoundError):
        await indexed_service.chat(ORG, USER, "Top complaints?", "missing-session")


async def test_concurrent_turns_are_serialized(indexed_service):
    session = await indexed_service.create_session(ORG, USER)

    await asyncio.gather(
        *(
            indexed_service.chat(ORG, USER, f"Question {i}", session.id)
            for i in range(3)
        )
    )

    stored = await indexed_service.get_session(session.id, USER)
    assert [m.role for m in stored.messages] == ["user", "assistant"] * 3


async def test_clear_cache_picks_up_profile_changes(
    indexed_service, profile_store, mock_completion_service
):
    await indexed_service.chat(ORG, USER, "Top complaints?")
    profile_store.put(ORG, OrganizationProfile(industry="E-commerce", product_type="shop"))

    await indexed_service.chat(ORG, USER, "Top complaints?")
    assert "project management platform" in mock_completion_service.calls[-1][0]["content"]

    indexed_service.clear_cache(ORG)
    await indexed_service.chat(ORG, USER, "Top complaints?")
    assert "shop in the E-commerce industry" in mock_completion_service.calls[-1][0]["content"]


# Streaming


async def test_streaming_publishes_tokens_then_completion(indexed_service):
    session = await indexed_service.create_session(ORG, USER)
    subscription = indexed_service.subscribe(session.id)

    response = await indexed_service.chat(
        ORG, USER, "Top complaints?", session.id, enable_streaming=True
    )
    events = await _drain(subscription)

    assert isinstance(events[0], TurnStarted)
    assert events[0].message == "Top complaints?"
    assert isinstance(events[-1], TurnCompleted)
    assert events[-1].response is response
    tokens = [e for e in events if isinstance(e, TokenReceived)]
    assert [t.index for t in tokens] == list(range(len(tokens)))
    assert "".join(t.token for t in tokens).strip() == response.message
    assert {e.turn_id for e in events} == {response.turn_id}
    assert response.message == TestConstants.DEFAULT_REPLY


async def test_streaming_without_subscribers_uses_single_completion(
    indexed_service, mock_completion_service
):
    mock_completion_service.stream = Mock(side_effect=AssertionError("not streamed"))

    response = await indexed_service.chat(ORG, USER, "Top complaints?", enable_streaming=True)

    assert not response.degraded
    mock_completion_service.stream.assert_not_called()


async def test_streaming_failure_publishes_turn_failed(
    indexed_service, mock_completion_service
):
    mock_completion_service.fail = True
    session = await indexed_service.create_session(ORG, USER)
    subscription = indexed_service.subscribe(session.id)

    response = await indexed_service.chat(
        ORG, USER, "Top complaints?", session.id, enable_streaming=True
    )
    events = await _drain(subscription)

    assert response.degraded
    failed = [e for e in events if isinstance(e, TurnFailed)]
    assert failed[0].error_code == "COMPLETION_BACKEND_UNAVAILABLE"
    assert failed[0].message == DEGRADED_MESSAGE
    assert isinstance(events[-1], TurnCompleted)


async def test_cancel_turn_returns_incomplete_response(
    indexed_service, mock_completion_service
):
    mock_completion_service.token_delay = 0.02
    session = await indexed_service.create_session(ORG, USER)
    subscription = indexed_service.subscribe(session.id)

    task = asyncio.create_task(
        indexed_service.chat(ORG, USER, "Top complaints?", session.id, enable_streaming=True)
    )
    await _wait_for_token(subscription)
    assert indexed_service.cancel_turn(session.id) is True
    response = await task

    assert response.incomplete
    assert not response.degraded
    assert response.message
    assert len(response.message) < len(TestConstants.DEFAULT_REPLY)
    assert response.suggestions == []
    assert response.follow_up_questions == []
    events = await _drain(subscription)
    assert isinstance(events[-1], TurnCancelled)
    assert events[-1].partial_content == response.message

    stored = await indexed_service.get_session(session.id, USER)
    assert stored.messages[1].metadata["incomplete"] is True
    assert indexed_service.cancel_turn(session.id) is False


async def test_cancel_turn_stops_token_emission(indexed_service, mock_completion_service):
    mock_completion_service.token_delay = 0.05
    session = await indexed_service.create_session(ORG, USER)
    subscription = indexed_service.subscribe(session.id)

    task = asyncio.create_task(
        indexed_service.chat(ORG, USER, "Top complaints?", session.id, enable_streaming=True)
    )
    first = await _wait_for_token(subscription)
    indexed_service.cancel_turn(session.id)
    response = await task

    events = await _drain(subscription)
    assert [e for e in events if isinstance(e, TokenReceived)] == []
    assert response.message == first.token.strip()


async def test_cancel_turn_interrupts_stalled_stream(
    indexed_service, mock_completion_service
):
    async def stalled(messages, **kwargs):
        yield "Partial "
        await asyncio.Event().wait()

    mock_completion_service.stream = stalled
    session = await indexed_service.create_session(ORG, USER)
    subscription = indexed_service.subscribe(session.id)

    task = asyncio.create_task(
        indexed_service.chat(ORG, USER, "Top complaints?", session.id, enable_streaming=True)
    )
    await _wait_for_token(subscription)
    assert indexed_service.cancel_turn(session.id) is True
    response = await asyncio.wait_for(task, timeout=1)

    assert response.incomplete
    assert response.message == "Partial"


async def test_cancelled_task_persists_partial_reply(
    indexed_service, mock_completion_service
):
    mock_completion_service.token_delay = 0.02
    session = await indexed_service.create_session(ORG, USER)
    subscription = indexed_service.subscribe(session.id)

    task = asyncio.create_task(
        indexed_service.chat(ORG, USER, "Top complaints?", session.id, enable_streaming=True)
    )
    await _wait_for_token(subscription)
    task.cancel()
    with pytest.raises(asyncio.CancelledError):
        await task

    stored = await indexed_service.get_session(session.id, USER)
    user_msg, assistant_msg = stored.messages
    assert user_msg.content == "Top complaints?"
    assert assistant_msg.metadata == {"incomplete": True}
    assert TestConstants.DEFAULT_REPLY.startswith(assistant_msg.content)
    events = await _drain(subscription)
    assert isinstance(events[-1], TurnCancelled)

    # the session is usable again afterwards
    mock_completion_service.token_delay = 0.0
    response = await indexed_service.chat(ORG, USER, "Top complaints?", session.id)
    assert not response.incomplete


async def test_cancel_turn_without_running_turn(rag_service):
    assert rag_service.cancel_turn("no-such-session") is False


# Response helpers


def _passage(source_id, text, score):
    return RetrievedPassage(
        source_item_id=source_id,
        text=text,
        metadata={"title": source_id},
        similarity_score=score,
    )


def test_build_sources_truncates_long_excerpts():
    short, long = build_sources([_passage("A", "short", 0.9), _passage("B", "x" * 250, 0.5)])

    assert short.excerpt == "short"
    assert long.excerpt == "x" * 200 + "..."
    assert (long.title, long.similarity) == ("B", 0.5)


def test_score_confidence():
    assert score_confidence([]) == NO_CONTEXT_CONFIDENCE
    passages = [_passage("A", "a", 0.9), _passage("B", "b", 0.5)]
    assert score_confidence(passages) == pytest.approx(0.7)


def test_extract_suggestions_limits_to_three():
    answer = (
        "You should fix login. Consider faster dashboards. We recommend CSV export. "
        "Try offline mode. Users are happy."
    )

    assert extract_suggestions(answer) == [
        "You should fix login",
        "Consider faster dashboards",
        "We recommend CSV export",
    ]
