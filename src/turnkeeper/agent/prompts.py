"""System prompts for the customer and admin personas."""

import json
from datetime import datetime
from typing import (
    Any,
    Dict,
    Mapping,
    Sequence,
)

from turnkeeper.core.schema import SessionRole

_CUSTOMER_PROMPT = """\
You are the booking assistant of a beauty salon, chatting with a customer.
Help them find services, check availability, and book, change or cancel appointments.
Use the available tools whenever you need facts; never invent availability, prices or bookings.
If a tool reports success=false, explain the problem briefly and ask for what is missing.
Keep replies short and friendly."""

_ADMIN_PROMPT = """\
You are the operations assistant of a beauty salon, working with a member of staff.
You may look up any customer and create, update or cancel appointments on their behalf.
Use the available tools for every lookup or change and confirm identifiers before acting.
If a tool reports success=false, say exactly what failed.
Be concise and precise."""

PERSONAS: Dict[SessionRole, str] = {
    SessionRole.CUSTOMER: _CUSTOMER_PROMPT,
    SessionRole.ADMIN: _ADMIN_PROMPT,
}


def build_system_prompt(
    role: SessionRole,
    memory: Mapping[str, Any],
    tool_names: Sequence[str] = (),
    now: datetime | None = None,
) -> str:
    """
    Compose the system message for one turn.

    The persona depends on *role*; the rest grounds the model in the current date, the tools it
    may call and a snapshot of the session memory.
    """
    now = now or datetime.now().astimezone()
    parts = [
        PERSONAS.get(role, _CUSTOMER_PROMPT),
        f"Today is {now.strftime('%A, %d %B %Y')}.",
    ]
    if tool_names:
        parts.append("Available tools: " + ", ".join(tool_names))
    parts.append(
        "Context Memory: " + json.dumps(dict(memory), indent=2, ensure_ascii=False, default=str)
    )
    return "\n\n".join(parts)
