"""Shared fixtures: a scripted model client standing in for a real provider."""

from typing import (
    Any,
    Dict,
    List,
    Sequence,
)

import pytest

from turnkeeper.agent.model_client import (
    BaseModelClient,
    ModelReply,
)


class ScriptedModelClient(BaseModelClient):
    """Replays a fixed list of replies (or raises the exceptions in it) and records requests."""

    provider = "scripted"

    def __init__(self, replies: Sequence[ModelReply | Exception]) -> None:
        self._replies = list(replies)
        self.requests: List[Dict[str, Any]] = []

    async def complete(
        self,
        messages: Sequence[Dict[str, Any]],
        tools: Sequence[Dict[str, Any]] | None = None,
    ) -> ModelReply:
        self.requests.append({"messages": list(messages), "tools": tools})
        if not self._replies:
            raise AssertionError("model called more often than scripted")
        reply = self._replies.pop(0)
        if isinstance(reply, Exception):
            raise reply
        return reply


@pytest.fixture
def scripted_client():
    """Factory fixture: ``scripted_client(reply, ...)`` builds a fresh scripted model."""

    def _make(*replies: ModelReply | Exception) -> ScriptedModelClient:
        return ScriptedModelClient(replies)

    return _make


def tool_call(call_id: str, name: str, arguments: Any = "{}") -> Dict[str, Any]:
    """Tool call in the chat-completions wire shape."""
    return {"id": call_id, "type": "function", "function": {"name": name, "arguments": arguments}}


@pytest.fixture
def make_call():
    return tool_call
