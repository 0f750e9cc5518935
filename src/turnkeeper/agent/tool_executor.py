"""Executes tool calls against a ``ToolRegistry`` and turns every result into a tool message."""

import json
import logging
from typing import (
    Any,
    Dict,
    Mapping,
)

from pydantic import ValidationError

from turnkeeper.core.schema import (
    ErrorKind,
    Failure,
    Message,
    ToolCallRequest,
    ToolOutcome,
)
from turnkeeper.tools import ToolRegistry

logger = logging.getLogger(__name__)


class ArgumentParseError(ValueError):
    """Raised when raw tool-call arguments are not a JSON object."""


def parse_arguments(raw: Any) -> Dict[str, Any]:
    """
    Turn the model's raw arguments into a keyword mapping.

    ``None`` and blank strings mean "no arguments".  Strings must decode to a JSON object.

    Raises
    ------
    ArgumentParseError
        If *raw* cannot be read as an object.
    """
    if raw is None:
        return {}
    if isinstance(raw, Mapping):
        return dict(raw)
    if isinstance(raw, (str, bytes)):
        text = raw.decode("utf-8", "replace") if isinstance(raw, bytes) else raw
        if not text.strip():
            return {}
        try:
            parsed = json.loads(text)
        except json.JSONDecodeError as exc:
            raise ArgumentParseError(f"arguments are not valid JSON: {exc.msg}") from exc
        if not isinstance(parsed, dict):
            raise ArgumentParseError(
                f"arguments must be a JSON object, got {type(parsed).__name__}"
            )
        return parsed
    raise ArgumentParseError(f"unsupported argument type {type(raw).__name__}")


async def execute_tool_call(call: ToolCallRequest, registry: ToolRegistry) -> ToolOutcome:
    """
    Resolve and run *call*, never raising.

    Parameters
    ----------
    call:
        Normalized tool call from the model.
    registry:
        Tools available in this turn.

    Returns
    -------
    ToolOutcome
        ``Success`` with the tool's payload, or ``Failure`` tagged ``ArgumentParseError``,
        ``ToolNotFound`` or ``ToolExecutionError``.  Memory written by the tool before it
        failed is kept.
    """
    name = call.function.name

    try:
        args = parse_arguments(call.raw_arguments)
    except ArgumentParseError as exc:
        logger.warning("Not invoking '%s': %s", name, exc)
        return Failure(
            error=ErrorKind.ARGUMENT_PARSE, message=f"Invalid arguments for '{name}': {exc}"
        )

    capability = registry.resolve(name)
    if capability is None:
        logger.warning("Model requested unknown tool '%s'", name)
        return Failure(error=ErrorKind.TOOL_NOT_FOUND, message=f"Tool '{name}' is not registered.")

    try:
        args = capability.validate_arguments(args)
    except ValidationError as exc:
        logger.warning("Arguments for '%s' do not match its schema: %s", name, exc)
        return Failure(
            error=ErrorKind.ARGUMENT_PARSE,
            message=f"Invalid arguments for '{name}': {exc.error_count()} validation error(s)",
        )

    try:
        logger.debug("Executing tool '%s' with args=%s", name, args)
        outcome = await capability.invoke(args)
    except Exception as exc:  # noqa: BLE001
        logger.exception("Unhandled error in tool '%s'", name)
        return Failure(
            error=ErrorKind.TOOL_EXECUTION, message=f"Tool '{name}' raised an error: {exc}"
        )

    logger.debug("Tool '%s' returned success=%s", name, outcome.success)
    return outcome


async def invoke_tool_call(call: ToolCallRequest, registry: ToolRegistry) -> Message:
    """Run *call* and wrap its outcome in the ``tool`` message answering it."""
    outcome = await execute_tool_call(call, registry)
    return Message.tool(
        tool_call_id=call.id,
        name=call.function.name,
        content=outcome.to_content(),
    )
