"""Tests for the CLI client helpers and the entry point's argument parsing."""

import httpx

from turnkeeper.client.cli import (
    call_api,
    show_response,
)
from turnkeeper.common import shorten
from turnkeeper.main import build_parser

BASE_URL = "http://api.local"


def test_call_api_sends_method_and_body() -> None:
    """The helper sends the requested method to the requested path."""

    seen = []

    def handler(request: httpx.Request) -> httpx.Response:
        seen.append((request.method, request.url.path))
        return httpx.Response(200, json={"session_id": "s1", "cleared": True})

    body = call_api(
        "/sessions/s1/history",
        method="DELETE",
        base_url=BASE_URL,
        transport=httpx.MockTransport(handler),
    )
    assert body["cleared"] is True
    assert seen == [("DELETE", "/sessions/s1/history")]


def test_call_api_reports_api_errors() -> None:
    """HTTP errors are turned into a reply carrying the API's detail."""

    def handler(request: httpx.Request) -> httpx.Response:
        return httpx.Response(404, json={"detail": "Unknown session 'x'"})

    body = call_api(
        "/sessions/x/history",
        method="DELETE",
        base_url=BASE_URL,
        transport=httpx.MockTransport(handler),
    )
    assert body == {"reply": "API error: Unknown session 'x'", "error": True}


def test_call_api_gives_up_after_retries() -> None:
    """Connection failures end in an error reply once retries run out."""

    def handler(request: httpx.Request) -> httpx.Response:
        raise httpx.ConnectError("refused", request=request)

    body = call_api(
        "/health",
        method="GET",
        max_retries=1,
        base_url=BASE_URL,
        transport=httpx.MockTransport(handler),
    )
    assert body["error"] is True
    assert "refused" in body["reply"]


def test_show_response_prints_tools_and_reply(capsys) -> None:
    """Tool results are printed before the reply."""

    show_response(
        {
            "reply": "Booked!",
            "tool_results": [{"name": "book", "result": {"success": True, "id": "b1"}}],
        }
    )
    out = capsys.readouterr().out
    assert "[book]" in out
    assert "Booked!" in out


def test_shorten() -> None:
    """Values are flattened to one line and cut to the limit."""

    assert shorten({"a": 1}) == '{"a": 1}'
    assert shorten("x" * 10, limit=5) == "xx..."
    assert shorten("a\n  b") == "a b"


def test_parser_defaults() -> None:
    """The entry point defaults to API mode and lower-cases its options."""

    args = build_parser().parse_args([])
    assert args.mode == "api"
    assert args.role == "customer"

    args = build_parser().parse_args(["--mode", "CLI", "--role", "admin", "--log-level", "debug"])
    assert (args.mode, args.role, args.log_level) == ("cli", "admin", "debug")
