"""Tests for CompletionService."""

import asyncio
from unittest.mock import Mock

import pytest

from feedback_rag.errors import CompletionBackendUnavailable
from feedback_rag.health import CircuitBreaker
from feedback_rag.llm import CompletionService

from .conftest import TestConstants, create_mock_chat_response, create_mock_stream

MESSAGES = [
    {"role": "system", "content": "You are a feedback analyst."},
    {"role": "user", "content": "What are the top complaints?"},
]


@pytest.fixture
def completion_service(no_delay_policy):
    return CompletionService(
        api_key=TestConstants.TEST_API_KEY,
        model="gpt-test",
        retry_policy=no_delay_policy,
        breaker=CircuitBreaker("completion"),
    )


async def test_complete_returns_stripped_content(
    openai_completions_api_mock, completion_service
):
    openai_completions_api_mock.return_value = create_mock_chat_response(
        "  Mobile login is the top complaint.  \n"
    )

    reply = await completion_service.complete(MESSAGES, max_tokens=50, temperature=0.1)

    assert reply == "Mobile login is the top complaint."
    openai_completions_api_mock.assert_awaited_once_with(
        model="gpt-test",
        messages=MESSAGES,
        max_tokens=50,
        temperature=0.1,
    )


async def test_complete_handles_empty_content(
    openai_completions_api_mock, completion_service
):
    openai_completions_api_mock.return_value = create_mock_chat_response(None)

    assert await completion_service.complete(MESSAGES) == ""


async def test_complete_retries_then_fails(
    openai_completions_api_mock, completion_service
):
    openai_completions_api_mock.side_effect = TimeoutError("read timed out")

    with pytest.raises(CompletionBackendUnavailable) as exc_info:
        await completion_service.complete(MESSAGES)

    assert openai_completions_api_mock.await_count == 3
    assert exc_info.value.details["attempts"] == 3
    assert completion_service.breaker.failures == 1


async def test_stream_yields_tokens_in_order(
    openai_completions_api_mock, completion_service
):
    openai_completions_api_mock.return_value = create_mock_stream(
        ["Mobile ", None, "login ", "", "fails."]
    )

    tokens = [token async for token in completion_service.stream(MESSAGES)]

    assert tokens == ["Mobile ", "login ", "fails."]
    assert openai_completions_api_mock.await_args.kwargs["stream"] is True


async def test_stream_failure_after_first_token(
    openai_completions_api_mock, completion_service
):
    async def broken_stream():
        yield create_mock_chat_chunk("Mobile ")
        raise ConnectionError("connection reset by peer")

    openai_completions_api_mock.return_value = broken_stream()
    received = []

    with pytest.raises(CompletionBackendUnavailable, match="interrupted"):
        async for token in completion_service.stream(MESSAGES):
            received.append(token)

    assert received == ["Mobile "]
    # the stream was opened once; mid-stream failures are not retried
    assert openai_completions_api_mock.await_count == 1
    assert completion_service.breaker.failures == 1


async def test_stream_stall_times_out(openai_completions_api_mock, no_delay_policy):
    async def stalled_stream():
        yield create_mock_chat_chunk("Mobile ")
        await asyncio.sleep(10)
        yield create_mock_chat_chunk("never")

    openai_completions_api_mock.return_value = stalled_stream()
    service = CompletionService(
        api_key=TestConstants.TEST_API_KEY, retry_policy=no_delay_policy, timeout=0.05
    )

    with pytest.raises(CompletionBackendUnavailable):
        async for _ in service.stream(MESSAGES):
            pass


def create_mock_chat_chunk(token: str) -> Mock:
    return Mock(choices=[Mock(delta=Mock(content=token))])
