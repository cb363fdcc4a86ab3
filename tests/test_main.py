"""Tests for the command-line entry point."""

import json
from unittest.mock import patch

import pytest

import main
from feedback_rag.errors import SessionNotFoundError

from .conftest import TestConstants

ORG = TestConstants.ORG_ID


def _output(capsys):
    return json.loads(capsys.readouterr().out)


def test_parse_args_search():
    args = main.parse_args(
        ["--org", ORG, "search", "mobile login", "-k", "3", "--category", "bug",
         "--category", "performance", "--mmr", "0.7"]
    )

    assert args.org == ORG
    assert args.command == "search"
    assert args.query == "mobile login"
    assert args.k == 3
    assert args.categories == ["bug", "performance"]
    assert args.sentiments is None
    assert args.mmr == 0.7


def test_parse_args_chat_defaults():
    args = main.parse_args(["--org", ORG, "chat", "Top complaints?"])

    assert args.user == "cli"
    assert args.session is None
    assert args.stream is False


def test_parse_args_requires_command():
    with pytest.raises(SystemExit):
        main.parse_args(["--org", ORG])


def test_parse_args_requires_org():
    with pytest.raises(SystemExit):
        main.parse_args(["health"])


async def test_ingest_command(rag_service, capsys):
    args = main.parse_args(["--org", ORG, "ingest", "F1", "F2", "ghost"])

    exit_code = await main.run_command(args, rag_service)

    assert exit_code == 1
    assert _output(capsys) == {
        "indexed": 2,
        "failed": [{"source_item_id": "ghost", "error": "not_found"}],
    }


async def test_ingest_defaults_to_every_feedback_item(rag_service, capsys):
    args = main.parse_args(["--org", ORG, "ingest"])

    assert await main.run_command(args, rag_service) == 0
    assert _output(capsys)["indexed"] == 5


async def test_search_command(indexed_service, capsys):
    args = main.parse_args(
        ["--org", ORG, "search", "mobile login issue", "-k", "2", "--category", "bug"]
    )

    assert await main.run_command(args, indexed_service) == 0
    results = _output(capsys)
    assert [r["source_item_id"] for r in results] == ["F1", "F5"]
    assert results[0]["title"] == "Login button broken on mobile"


async def test_chat_and_sessions_commands(indexed_service, capsys):
    chat_args = main.parse_args(["--org", ORG, "chat", "Top complaints?", "--user", "ana"])
    assert await main.run_command(chat_args, indexed_service) == 0
    response = _output(capsys)
    assert response["message"] == TestConstants.DEFAULT_REPLY

    sessions_args = main.parse_args(["--org", ORG, "sessions", "--user", "ana"])
    assert await main.run_command(sessions_args, indexed_service) == 0
    [session] = _output(capsys)
    assert session["id"] == response["session_id"]
    assert session["messages"] == 2

    archive_args = main.parse_args(
        ["--org", ORG, "sessions", "--user", "ana", "--archive", session["id"]]
    )
    assert await main.run_command(archive_args, indexed_service) == 0
    assert _output(capsys) == []


async def test_streamed_chat_prints_tokens(indexed_service, capsys):
    args = main.parse_args(["--org", ORG, "chat", "Top complaints?", "--stream"])

    assert await main.run_command(args, indexed_service) == 0

    out = capsys.readouterr().out
    streamed, _, payload = out.partition("\n{")
    assert streamed.strip() == TestConstants.DEFAULT_REPLY
    assert json.loads("{" + payload)["message"] == TestConstants.DEFAULT_REPLY


async def test_health_command(indexed_service, capsys):
    args = main.parse_args(["--org", ORG, "health", "--detailed"])

    assert await main.run_command(args, indexed_service) == 0
    assert _output(capsys)["status"] == "healthy"


def test_main_rejects_invalid_configuration():
    with (
        patch.object(main.config, "setup_logging"),
        patch.object(main.config, "validate", side_effect=ValueError("no key")),
        patch.object(main, "build_service") as build,
    ):
        assert main.main(["--org", ORG, "health"]) == 1

    build.assert_not_called()


def test_main_reports_domain_errors(capsys):
    async def fail(args, service):
        raise SessionNotFoundError("s-1")

    with (
        patch.object(main.config, "setup_logging"),
        patch.object(main.config, "validate"),
        patch.object(main, "build_service"),
        patch.object(main, "run_command", side_effect=fail),
    ):
        assert main.main(["--org", ORG, "sessions"]) == 1

    assert _output(capsys)["code"] == "SESSION_NOT_FOUND"
