"""
Message grammar for conversation histories.

A history is well-formed when:

* every ``tool`` message answers a tool call declared by a strictly earlier ``assistant`` message;
* every tool call on an ``assistant`` message carries a non-empty id and name;
* ``system`` and ``user`` messages carry no tool-call fields.

:func:`validate_history` repairs a history that breaks these rules by dropping what cannot be
trusted; it never invents data and never raises.
"""

import logging
from typing import (
    Any,
    Dict,
    List,
    Mapping,
    NamedTuple,
    Sequence,
    Union,
)

from pydantic import ValidationError

from turnkeeper.core.schema import (
    ErrorKind,
    Message,
    Role,
)

logger = logging.getLogger(__name__)

UNKNOWN_TOOL_NAME = "unknown_tool"

HistoryItem = Union[Message, Mapping[str, Any]]


class ValidationResult(NamedTuple):
    """Clean history and whether producing it changed anything."""

    clean: List[Message]
    was_repaired: bool


# ---------------------------------------------------------------------------
# Helpers
# ---------------------------------------------------------------------------
def _coerce(item: HistoryItem) -> Message | None:
    if isinstance(item, Message):
        return item
    try:
        return Message.model_validate(item)
    except ValidationError as exc:
        logger.warning("Dropping unreadable history entry: %s", exc.errors()[:1])
        return None


def sanitize_message(msg: Message) -> Message:
    """Keep only the fields the message's role allows; strip invalid tool calls."""
    update: Dict[str, Any] = {}
    if msg.role in (Role.SYSTEM, Role.USER):
        update = {"tool_calls": None, "tool_call_id": None, "name": None}
    elif msg.role is Role.ASSISTANT:
        calls = [call for call in msg.tool_calls or [] if call.is_valid()]
        update = {"tool_calls": calls or None, "tool_call_id": None, "name": None}
    elif msg.role is Role.TOOL:
        # Providers expect a name on every tool result
        update = {"tool_calls": None, "name": msg.name or UNKNOWN_TOOL_NAME}
    return msg.model_copy(update=update)


def _differs(original: Sequence[Message | None], clean: Sequence[Message]) -> bool:
    if len(original) != len(clean):
        return True
    return any(
        before is None or before.signature() != after.signature()
        for before, after in zip(original, clean)
    )


# ---------------------------------------------------------------------------
# Public API
# ---------------------------------------------------------------------------
def validate_history(history: Sequence[HistoryItem] | None) -> ValidationResult:
    """
    Return the largest well-formed subsequence of *history*.

    Parameters
    ----------
    history:
        Messages in conversation order.  Raw mappings (as loaded from a context store) are
        accepted and coerced; entries that cannot be read at all are dropped.

    Returns
    -------
    ValidationResult
        ``clean`` is safe to send to a model provider; ``was_repaired`` tells the caller the
        corrected history should be persisted.
    """
    if not history:
        return ValidationResult([], False)

    coerced = [_coerce(item) for item in history]
    messages = [msg for msg in coerced if msg is not None]

    if not any(msg.role is Role.TOOL for msg in messages):
        clean = [sanitize_message(msg) for msg in messages]
        return ValidationResult(clean, _differs(coerced, clean))

    # Position of the assistant message that first declared each valid call id
    declared: Dict[str, int] = {}
    for index, msg in enumerate(messages):
        if msg.role is Role.ASSISTANT:
            for call in msg.tool_calls or []:
                if call.is_valid():
                    declared.setdefault(call.id, index)

    if not declared:
        logger.warning(
            "%s: %d tool message(s) but no declared tool calls; keeping system/user only",
            ErrorKind.HISTORY_CORRUPTION.value,
            sum(1 for msg in messages if msg.role is Role.TOOL),
        )
        clean = [
            sanitize_message(msg) for msg in messages if msg.role in (Role.SYSTEM, Role.USER)
        ]
        return ValidationResult(clean, True)

    clean = []
    for index, msg in enumerate(messages):
        if msg.role is Role.TOOL:
            origin = declared.get(msg.tool_call_id or "")
            if origin is None:
                logger.warning("Dropping tool message with undeclared id %r", msg.tool_call_id)
                continue
            if index <= origin:
                logger.warning("Dropping tool message %r placed before its call", msg.tool_call_id)
                continue
        clean.append(sanitize_message(msg))

    repaired = _differs(coerced, clean)
    if repaired:
        logger.info("History repaired: kept %d of %d messages", len(clean), len(history))
    return ValidationResult(clean, repaired)


def recent_window(messages: Sequence[Message], limit: int) -> List[Message]:
    """
    Return at most *limit* trailing messages of a clean history.

    The window never starts with a ``tool`` message: when the cut falls between an assistant
    message and its tool results, the orphaned results are left out as well.
    """
    if limit <= 0:
        return []
    window = list(messages[-limit:])
    while window and window[0].role is Role.TOOL:
        window.pop(0)
    return window
