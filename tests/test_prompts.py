from datetime import datetime

from turnkeeper.agent.prompts import (
    PERSONAS,
    build_system_prompt,
)
from turnkeeper.core.schema import SessionRole


def test_prompt_sections() -> None:
    """The prompt is built from persona, date, tools and memory in that order."""

    prompt = build_system_prompt(
        SessionRole.CUSTOMER,
        {"facts": {"stylist": "Ana"}},
        ["remember", "recall"],
        now=datetime(2024, 3, 1, 10, 0),
    )
    assert prompt.startswith(PERSONAS[SessionRole.CUSTOMER])
    assert "Today is Friday, 01 March 2024." in prompt
    assert "Available tools: remember, recall" in prompt
    assert prompt.endswith('"stylist": "Ana"\n  }\n}')


def test_prompt_without_tools() -> None:
    """Without tools the tool line is left out."""

    prompt = build_system_prompt(SessionRole.ADMIN, {})
    assert "Available tools" not in prompt
    assert prompt.endswith("Context Memory: {}")
