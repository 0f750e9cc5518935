"""Built-in tools available to every session."""

from typing import (
    Any,
    Dict,
)

from turnkeeper.core.schema import (
    ErrorKind,
    Failure,
    ToolOutcome,
)
from turnkeeper.tools import register_tool

FACTS_KEY = "facts"


@register_tool("echo")
def echo_tool(text: str) -> str:
    """Echo the input text back to the caller."""
    return text


@register_tool("remember")
def remember_tool(key: str, value: str, memory: Dict[str, Any]) -> Dict[str, Any]:
    """Store a short fact about the conversation so later turns can refer back to it."""
    facts = memory.setdefault(FACTS_KEY, {})
    facts[key] = value
    return {"key": key, "stored": True}


@register_tool("recall")
def recall_tool(key: str, memory: Dict[str, Any]) -> ToolOutcome | Dict[str, Any]:
    """Look up a fact stored earlier with the remember tool."""
    facts = memory.get(FACTS_KEY, {})
    if key not in facts:
        known = ", ".join(sorted(facts)) or "none"
        return Failure(
            error=ErrorKind.TOOL_EXECUTION,
            message=f"No fact stored under '{key}' (known keys: {known}).",
        )
    return {"key": key, "value": facts[key]}
