"""
Schema definitions for model <-> orchestrator <-> tool messages.

These data models serve as the contract between the language model, the turn orchestrator, the
tools and the context store.  We keep them separate from runtime logic so they can be imported
anywhere without side-effects.
"""

import json
from datetime import (
    datetime,
    timezone,
)
from enum import Enum
from typing import (
    Any,
    Dict,
    List,
    Literal,
    Optional,
    Union,
)

from pydantic import (
    BaseModel,
    ConfigDict,
    Field,
    field_validator,
)


def utcnow() -> datetime:
    """Timezone-aware current time, used for every timestamp we persist."""
    return datetime.now(timezone.utc)


def _dump_arguments(value: Any) -> str:
    if value is None:
        return "{}"
    if isinstance(value, str):
        return value
    return json.dumps(value, ensure_ascii=False, default=str)


# ---------------------------------------------------------------------------
# Enumerations
# ---------------------------------------------------------------------------
class Role(str, Enum):
    """Author of a message in the conversation."""

    SYSTEM = "system"
    USER = "user"
    ASSISTANT = "assistant"
    TOOL = "tool"


class SessionRole(str, Enum):
    """Who the session is talking to; selects the persona and the tool set."""

    CUSTOMER = "customer"
    ADMIN = "admin"


class ErrorKind(str, Enum):
    """Failure categories surfaced by the engine."""

    ARGUMENT_PARSE = "ArgumentParseError"
    TOOL_NOT_FOUND = "ToolNotFound"
    TOOL_EXECUTION = "ToolExecutionError"
    MODEL_INVOCATION = "ModelInvocationError"
    HISTORY_CORRUPTION = "HistoryCorruption"
    FALLBACK_EXHAUSTED = "TurnFallbackExhausted"


class TurnState(str, Enum):
    """States of the turn executor."""

    IDLE = "idle"
    BUILDING_PROMPT = "building_prompt"
    AWAITING_MODEL = "awaiting_model"
    INVOKING_TOOLS = "invoking_tools"
    AWAITING_FINAL_MODEL = "awaiting_final_model"
    ERROR_RECOVERY = "error_recovery"
    DONE = "done"


# ---------------------------------------------------------------------------
# Messages
# ---------------------------------------------------------------------------
class FunctionCall(BaseModel):
    """Name and serialized arguments of a requested function."""

    model_config = ConfigDict(extra="ignore")

    name: str = ""
    arguments: str = Field("{}", description="JSON-encoded arguments, parsed only at invocation")

    @field_validator("arguments", mode="before")
    @classmethod
    def _serialize_arguments(cls, value: Any) -> str:
        return _dump_arguments(value)

    @field_validator("name", mode="before")
    @classmethod
    def _none_name(cls, value: Any) -> Any:
        return "" if value is None else value


class ToolCallRequest(BaseModel):
    """A call that the model wants the orchestrator to execute (normalized form)."""

    model_config = ConfigDict(extra="ignore")

    id: str = ""
    type: Literal["function"] = "function"
    function: FunctionCall = Field(default_factory=FunctionCall)

    @field_validator("id", mode="before")
    @classmethod
    def _none_id(cls, value: Any) -> Any:
        return "" if value is None else value

    @field_validator("type", mode="before")
    @classmethod
    def _force_function(cls, _value: Any) -> str:
        return "function"

    @property
    def name(self) -> str:
        return self.function.name

    @property
    def raw_arguments(self) -> str:
        return self.function.arguments

    def is_valid(self) -> bool:
        """True when the call carries a non-empty id and name."""
        return bool(self.id) and bool(self.function.name)

    def to_wire(self) -> Dict[str, Any]:
        return {
            "id": self.id,
            "type": "function",
            "function": {"name": self.function.name, "arguments": self.function.arguments},
        }


class Message(BaseModel):
    """One element of the conversation history."""

    model_config = ConfigDict(extra="ignore")

    role: Role
    content: str = ""
    tool_calls: Optional[List[ToolCallRequest]] = None
    tool_call_id: Optional[str] = None
    name: Optional[str] = None
    timestamp: Optional[datetime] = None

    @field_validator("content", mode="before")
    @classmethod
    def _coerce_content(cls, value: Any) -> str:
        if value is None:
            return ""
        if isinstance(value, str):
            return value
        return json.dumps(value, ensure_ascii=False, default=str)

    @classmethod
    def system(cls, content: str) -> "Message":
        return cls(role=Role.SYSTEM, content=content)

    @classmethod
    def user(cls, content: str) -> "Message":
        return cls(role=Role.USER, content=content)

    @classmethod
    def assistant(
        cls, content: str = "", tool_calls: Optional[List[ToolCallRequest]] = None
    ) -> "Message":
        return cls(role=Role.ASSISTANT, content=content, tool_calls=tool_calls or None)

    @classmethod
    def tool(cls, tool_call_id: str, name: str, content: str) -> "Message":
        return cls(role=Role.TOOL, tool_call_id=tool_call_id, name=name, content=content)

    def signature(self) -> Dict[str, Any]:
        """Structural identity used to decide whether a repair changed anything."""
        return self.model_dump(mode="json", exclude={"timestamp"})

    def to_wire(self) -> Dict[str, Any]:
        """Render the message the way chat-completion providers expect it."""
        data: Dict[str, Any] = {"role": self.role.value, "content": self.content}
        if self.role is Role.ASSISTANT and self.tool_calls:
            data["tool_calls"] = [call.to_wire() for call in self.tool_calls]
        elif self.role is Role.TOOL:
            data["tool_call_id"] = self.tool_call_id
            if self.name:
                data["name"] = self.name
        return data


# ---------------------------------------------------------------------------
# Tool outcomes
# ---------------------------------------------------------------------------
class Success(BaseModel):
    """Successful tool result; *payload* shape is tool-specific."""

    success: Literal[True] = True
    payload: Any = None

    def to_content(self) -> str:
        if isinstance(self.payload, dict):
            body: Dict[str, Any] = {**self.payload, "success": True}
        else:
            body = {"success": True, "result": self.payload}
        return json.dumps(body, ensure_ascii=False, default=str)


class Failure(BaseModel):
    """Failed tool result the model can read and react to."""

    success: Literal[False] = False
    error: ErrorKind
    message: str = ""

    def to_content(self) -> str:
        return json.dumps(
            {"success": False, "error": self.error.value, "message": self.message},
            ensure_ascii=False,
        )


ToolOutcome = Union[Success, Failure]


# ---------------------------------------------------------------------------
# Sessions
# ---------------------------------------------------------------------------
class ConversationContext(BaseModel):
    """History plus the free-form memory tools share within a session."""

    model_config = ConfigDict(extra="ignore")

    history: List[Message] = Field(default_factory=list)
    memory: Dict[str, Any] = Field(default_factory=dict)
    last_updated: datetime = Field(default_factory=utcnow)

    def touch(self) -> None:
        self.last_updated = utcnow()

    def add_message(self, message: Message) -> Message:
        if message.timestamp is None:
            message = message.model_copy(update={"timestamp": utcnow()})
        self.history.append(message)
        self.touch()
        return message

    def clear_history(self) -> None:
        """Drop the history; memory survives."""
        self.history = []
        self.touch()


class Session(BaseModel):
    """A conversation tracked by the session store."""

    id: str
    role: SessionRole = SessionRole.CUSTOMER
    context: ConversationContext = Field(default_factory=ConversationContext)
    state: TurnState = TurnState.IDLE


class TurnResult(BaseModel):
    """What one call to the orchestrator hands back to the transport layer."""

    output_text: str
    history_repaired: bool = False
    failed: bool = False
    tool_messages: List[Message] = Field(default_factory=list)
