"""Exceptions raised across the orchestration boundary."""

from turnkeeper.core.schema import ErrorKind

# Fragments providers use when they reject a malformed tool-call sequence.
_TOOL_SEQUENCE_MARKERS = (
    "tool_calls",
    "tool_call_id",
    "tool must be a response",
    "tool_use",
    "tool_result",
)


class TurnkeeperError(RuntimeError):
    """Base class for engine errors."""

    kind: ErrorKind


class ModelInvocationError(TurnkeeperError):
    """Raised when the model provider fails or rejects a request."""

    kind = ErrorKind.MODEL_INVOCATION

    def __init__(self, message: str, provider: str | None = None) -> None:
        super().__init__(message)
        self.provider = provider

    @property
    def is_tool_sequence_error(self) -> bool:
        return is_tool_sequence_error(self)


class TurnFallbackExhausted(TurnkeeperError):
    """Raised when the minimal fallback request also fails."""

    kind = ErrorKind.FALLBACK_EXHAUSTED


def is_tool_sequence_error(exc: BaseException) -> bool:
    """Return *True* if *exc* reads like a rejection of the tool-call message sequence."""
    text = str(exc).lower()
    return any(marker in text for marker in _TOOL_SEQUENCE_MARKERS)
