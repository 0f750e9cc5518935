"""End-to-end turn tests against a scripted model."""

import asyncio
import json
from typing import (
    Any,
    Dict,
)

import pytest

from turnkeeper.agent.model_client import ModelReply
from turnkeeper.agent.orchestrator import (
    APOLOGY_MESSAGE,
    EMPTY_REPLY_MESSAGE,
    Orchestrator,
    normalize_tool_call,
)
from turnkeeper.core.errors import ModelInvocationError
from turnkeeper.core.schema import (
    ConversationContext,
    Message,
    Role,
    Session,
    SessionRole,
    Success,
    TurnState,
)
from turnkeeper.tools import (
    ToolRegistry,
    capability_from_function,
)

TOOL_SEQUENCE_ERROR = (
    "Invalid parameter: messages with role 'tool' must be a response to a preceeding message "
    "with 'tool_calls'."
)


def echo(v: int) -> Success:
    """Return the value it was given."""
    return Success(payload={"v": v})


def set_x(memory: Dict[str, Any]) -> str:
    memory["x"] = 1
    return "set"


def read_x(memory: Dict[str, Any]) -> Dict[str, Any]:
    return {"x": memory.get("x")}


def _factory(*fns: Any):
    def build(context: ConversationContext, role: SessionRole) -> ToolRegistry:
        return ToolRegistry(capability_from_function(fn).bind(context.memory) for fn in fns)

    return build


def _run(orchestrator: Orchestrator, session: Session, text: str):
    return asyncio.run(orchestrator.run_turn(session, text))


def _tool_payloads(session: Session):
    return [json.loads(msg.content) for msg in session.context.history if msg.role is Role.TOOL]


def test_plain_answer(scripted_client) -> None:
    """No tool calls: the turn appends the user message and the answer."""

    client = scripted_client(ModelReply(content="Hello! How can I help?"))
    session = Session(id="s1")

    result = _run(Orchestrator(client, registry_factory=_factory(echo)), session, "hello")

    assert result.output_text == "Hello! How can I help?"
    assert result.history_repaired is False
    assert [msg.role for msg in session.context.history] == [Role.USER, Role.ASSISTANT]
    assert all(msg.timestamp is not None for msg in session.context.history)
    assert session.state is TurnState.DONE

    request = client.requests[0]
    assert request["messages"][0]["role"] == "system"
    assert request["messages"][-1] == {"role": "user", "content": "hello"}
    assert [tool["function"]["name"] for tool in request["tools"]] == ["echo"]


def test_single_tool_round_trip(scripted_client, make_call) -> None:
    """A tool call is executed and followed by the model's final answer."""

    client = scripted_client(
        ModelReply(tool_calls=[make_call("c1", "echo", '{"v":5}')]),
        ModelReply(content="done"),
    )
    session = Session(id="s1")

    result = _run(Orchestrator(client, registry_factory=_factory(echo)), session, "echo 5")

    history = session.context.history
    assert result.output_text == "done"
    assert history[-3].role is Role.ASSISTANT
    assert [call.id for call in history[-3].tool_calls] == ["c1"]
    assert history[-2].role is Role.TOOL
    assert history[-2].tool_call_id == "c1"
    assert json.loads(history[-2].content) == {"success": True, "v": 5}
    assert history[-1].content == "done"
    assert len(result.tool_messages) == 1

    final_request = client.requests[1]
    assert final_request["tools"] is None
    assert [msg["role"] for msg in final_request["messages"][-3:]] == ["user", "assistant", "tool"]


def test_tools_run_in_issued_order(scripted_client, make_call) -> None:
    """A later tool sees the memory written by an earlier one in the same turn."""

    client = scripted_client(
        ModelReply(tool_calls=[make_call("a", "set_x"), make_call("b", "read_x")]),
        ModelReply(content="ok"),
    )
    session = Session(id="s1")

    _run(Orchestrator(client, registry_factory=_factory(set_x, read_x)), session, "go")

    assert _tool_payloads(session)[1] == {"success": True, "x": 1}
    assert session.context.memory == {"x": 1}


def test_unknown_tool_does_not_abort_the_turn(scripted_client, make_call) -> None:
    """A call to an unregistered tool is answered with *ToolNotFound* and the turn completes."""

    client = scripted_client(
        ModelReply(tool_calls=[make_call("g1", "ghost")]),
        ModelReply(content="I could not do that."),
    )
    session = Session(id="s1")

    result = _run(Orchestrator(client, registry_factory=_factory(echo)), session, "haunt me")

    assert _tool_payloads(session)[0]["error"] == "ToolNotFound"
    assert _tool_payloads(session)[0]["success"] is False
    assert result.output_text == "I could not do that."
    assert session.context.history[-1].role is Role.ASSISTANT


def test_malformed_arguments_are_reported_to_the_model(scripted_client, make_call) -> None:
    """Unparseable arguments reach the model as *ArgumentParseError*; the tool never runs."""

    calls = []

    def spy(value: int = 0) -> int:
        calls.append(value)
        return value

    client = scripted_client(
        ModelReply(tool_calls=[make_call("c1", "spy", "{not json")]),
        ModelReply(content="sorry"),
    )
    session = Session(id="s1")

    _run(Orchestrator(client, registry_factory=_factory(spy)), session, "spy")

    assert _tool_payloads(session)[0]["error"] == "ArgumentParseError"
    assert not calls


def test_legacy_tool_call_shape_is_normalized(scripted_client) -> None:
    """``{id, name, args}`` calls are executed and stored in the canonical shape."""

    client = scripted_client(
        ModelReply(tool_calls=[{"id": "c9", "name": "echo", "args": {"v": 2}}]),
        ModelReply(content="two"),
    )
    session = Session(id="s1")

    _run(Orchestrator(client, registry_factory=_factory(echo)), session, "echo 2")

    assistant = session.context.history[1]
    assert assistant.tool_calls[0].to_wire() == {
        "id": "c9",
        "type": "function",
        "function": {"name": "echo", "arguments": '{"v": 2}'},
    }
    assert _tool_payloads(session) == [{"success": True, "v": 2}]


def test_calls_without_id_are_dropped(scripted_client) -> None:
    """If no call survives normalization the reply text is the answer."""

    client = scripted_client(
        ModelReply(content="Let me think.", tool_calls=[{"function": {"name": "echo"}}])
    )
    session = Session(id="s1")

    result = _run(Orchestrator(client, registry_factory=_factory(echo)), session, "hm")

    assert result.output_text == "Let me think."
    assert len(session.context.history) == 2
    assert len(client.requests) == 1


def test_empty_reply_gets_a_placeholder(scripted_client) -> None:
    """An empty answer is replaced by a placeholder."""

    client = scripted_client(ModelReply(content=""))
    session = Session(id="s1")

    result = _run(Orchestrator(client, registry_factory=_factory()), session, "hm")

    assert result.output_text == EMPTY_REPLY_MESSAGE
    assert client.requests[0]["tools"] is None


def test_rejected_tool_sequence_recovers_with_fallback(scripted_client, make_call) -> None:
    """The final call failing triggers one minimal retry; only user and reply are kept."""

    client = scripted_client(
        ModelReply(tool_calls=[make_call("c1", "echo", '{"v": 1}')]),
        ModelInvocationError(TOOL_SEQUENCE_ERROR),
        ModelReply(content="Here is a plain answer."),
    )
    session = Session(id="s1")

    result = _run(Orchestrator(client, registry_factory=_factory(echo)), session, "echo 1")

    assert result.output_text == "Here is a plain answer."
    assert result.history_repaired is True
    assert result.failed is False
    assert [msg.role for msg in session.context.history] == [Role.USER, Role.ASSISTANT]

    fallback = client.requests[2]
    assert [msg["role"] for msg in fallback["messages"]] == ["system", "user"]
    assert fallback["tools"] is None


def test_exhausted_fallback_returns_apology(scripted_client, make_call) -> None:
    """When the fallback fails too, the turn ends on the apology."""

    client = scripted_client(
        ModelReply(tool_calls=[make_call("c1", "echo", '{"v": 1}')]),
        ModelInvocationError("upstream timeout"),
        ModelInvocationError("upstream timeout"),
    )
    session = Session(id="s1")

    result = _run(Orchestrator(client, registry_factory=_factory(echo)), session, "echo 1")

    assert result.output_text == APOLOGY_MESSAGE
    assert result.failed is True
    assert result.history_repaired is False
    assert session.context.history[-1].content == APOLOGY_MESSAGE
    assert session.state is TurnState.DONE


def test_first_call_failure_propagates_and_keeps_history(scripted_client) -> None:
    """A failing first call raises and leaves the stored history as it was."""

    client = scripted_client(ModelInvocationError("provider down"))
    session = Session(id="s1")
    session.context.add_message(Message.user("earlier"))
    session.context.add_message(Message.assistant("reply"))
    before = list(session.context.history)

    with pytest.raises(ModelInvocationError):
        _run(Orchestrator(client, registry_factory=_factory()), session, "again")

    assert session.context.history == before
    assert session.state is TurnState.IDLE


def test_corrupt_history_is_repaired_before_the_turn(scripted_client) -> None:
    """Orphan tool messages are removed before anything is sent to the model."""

    client = scripted_client(ModelReply(content="fresh start"))
    session = Session(id="s1")
    session.context.history = [
        Message.user("hi"),
        Message.tool("x", "echo", "{}"),
    ]

    result = _run(Orchestrator(client, registry_factory=_factory()), session, "hello")

    assert result.history_repaired is True
    assert [msg.role for msg in session.context.history] == [Role.USER, Role.USER, Role.ASSISTANT]
    sent_roles = [msg["role"] for msg in client.requests[0]["messages"]]
    assert "tool" not in sent_roles


def test_history_window_limits_the_prompt(scripted_client) -> None:
    """Only the most recent messages are sent; the full history is kept."""

    client = scripted_client(ModelReply(content="ok"))
    session = Session(id="s1")
    for i in range(10):
        session.context.add_message(Message.user(f"q{i}"))
        session.context.add_message(Message.assistant(f"a{i}"))

    _run(Orchestrator(client, history_window=4, registry_factory=_factory()), session, "next")

    messages = client.requests[0]["messages"]
    assert len(messages) == 6
    assert messages[1]["content"] == "q8"
    assert len(session.context.history) == 22


def test_system_prompt_carries_persona_and_memory(scripted_client) -> None:
    """The system prompt follows the session role and includes its memory."""

    client = scripted_client(ModelReply(content="ok"))
    session = Session(id="s1", role=SessionRole.ADMIN)
    session.context.memory["customer"] = "Dana"

    _run(Orchestrator(client, registry_factory=_factory(echo)), session, "who?")

    system = client.requests[0]["messages"][0]["content"]
    assert "member of staff" in system
    assert "Available tools: echo" in system
    assert '"customer": "Dana"' in system


def test_normalize_tool_call_shapes() -> None:
    """Both wire shapes normalize; calls without an id or a name do not."""

    canonical = normalize_tool_call(
        {"id": "a", "function": {"name": "echo", "arguments": {"v": 1}}}
    )
    assert canonical is not None
    assert canonical.raw_arguments == '{"v": 1}'

    legacy = normalize_tool_call({"id": "b", "name": "echo"})
    assert legacy is not None
    assert legacy.raw_arguments == "{}"

    assert normalize_tool_call({"name": "echo"}) is None
    assert normalize_tool_call({"id": "c"}) is None


def test_final_call_failure_recovers_without_flagging_a_repair(scripted_client, make_call) -> None:
    """Any final-call failure gets the fallback; only sequence rejections count as repairs."""

    client = scripted_client(
        ModelReply(tool_calls=[make_call("c1", "echo", '{"v": 1}')]),
        ModelInvocationError("upstream timeout"),
        ModelReply(content="Here is a plain answer."),
    )
    session = Session(id="s1")

    result = _run(Orchestrator(client, registry_factory=_factory(echo)), session, "echo 1")

    assert result.output_text == "Here is a plain answer."
    assert result.history_repaired is False
    assert result.failed is False
    assert [msg.role for msg in session.context.history] == [Role.USER, Role.ASSISTANT]
    assert session.context.history[-1].content == "Here is a plain answer."
    assert [msg["role"] for msg in client.requests[2]["messages"]] == ["system", "user"]
