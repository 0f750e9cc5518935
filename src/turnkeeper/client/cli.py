"""CLI client for the Turnkeeper API."""

from __future__ import annotations

import logging
import time
from typing import (
    Any,
    Dict,
    Optional,
    Tuple,
    cast,
)

import httpx

from turnkeeper.common import (
    AnsiColors,
    colored_print,
    shorten,
)
from turnkeeper.config import settings

logger = logging.getLogger(__name__)

EXIT_COMMANDS = {"exit", "quit"}
CLEAR_COMMAND = "/clear"


# ---------------------------------------------------------------------------
# CLI Client
# ---------------------------------------------------------------------------
def get_user_message() -> Tuple[str, bool]:
    """
    Get a message from the user via standard input.

    Returns:
        Tuple of (user_input, success_flag)
        The success_flag is False if input couldn't be read (e.g., Ctrl+C)
    """
    import signal  # pylint: disable=import-outside-toplevel

    # Ensure SIGINT breaks out of slow system calls such as read()
    signal.siginterrupt(signal.SIGINT, True)

    try:
        user_input = input().strip()
        return user_input, True
    except (EOFError, KeyboardInterrupt):
        return "", False


def call_api(
    endpoint: str,
    data: Optional[Dict[str, Any]] = None,
    method: str = "POST",
    max_retries: int = 5,
    base_url: str | None = None,
    transport: httpx.BaseTransport | None = None,
) -> Dict[str, Any]:
    """
    Send a request to the API and return the decoded JSON body.

    Connection failures are retried with exponential back-off; any other error is reported and
    returned as ``{"reply": <message>, "error": True}``.
    """
    base_url = base_url or f"http://localhost:{settings.API_PORT}"

    for attempt in range(max_retries):
        response: httpx.Response | None = None
        try:
            with httpx.Client(base_url=base_url, timeout=30.0, transport=transport) as client:
                response = client.request(method, endpoint, json=data)
                response.raise_for_status()
                return cast(Dict[str, Any], response.json())
        except httpx.HTTPError as e:
            # On connection refused, retry with exponential backoff
            if isinstance(e, httpx.ConnectError) and attempt < max_retries - 1:
                retry_delay = 0.5 * (2**attempt)  # 0.5s, 1s, 2s, 4s...
                logger.info(
                    "API not ready yet, retrying in %.1f seconds (attempt %d/%d)...",
                    retry_delay,
                    attempt + 1,
                    max_retries,
                )
                time.sleep(retry_delay)
                continue

            logger.error("API request error: %s", e)
            error_msg = f"Error connecting to API: {e}"
            if response is not None:
                try:
                    detail = response.json().get("detail")
                except ValueError:
                    detail = None
                if detail:
                    error_msg = f"API error: {detail}"
            return {"reply": error_msg, "error": True}

    return {"reply": f"Failed to connect to API after {max_retries} attempts", "error": True}


def show_response(response: Dict[str, Any]) -> None:
    """Print the tool outcomes and the reply of one ``/agent`` response."""
    if response.get("error"):
        colored_print(response.get("reply", "Unknown error"), AnsiColors.RED)
        return
    for tool in response.get("tool_results") or []:
        colored_print(f"[{tool.get('name')}] {shorten(tool.get('result'))}", AnsiColors.GREEN)
    if response.get("history_repaired"):
        colored_print("(stored history was repaired)", AnsiColors.GREY)
    color = AnsiColors.RED if response.get("failed") else AnsiColors.YELLOW
    colored_print(response.get("reply", "No response from API"), color)


def run_cli(role: str = "customer") -> None:
    """Run the CLI client that communicates with the API."""
    session_response = call_api("/sessions", {"role": role})
    session_id = session_response.get("session_id")

    if not session_id:
        colored_print("⚠️ Failed to create a session", AnsiColors.RED)
        colored_print(session_response.get("reply", ""), AnsiColors.RED)
        return

    colored_print(
        f"\n💈 Turnkeeper shell ({role}) - '{CLEAR_COMMAND}' forgets the conversation, "
        "'exit' or 'quit' (or Ctrl+C) leaves",
        AnsiColors.GREEN,
    )
    while True:
        colored_print("\n🧑 You: ", AnsiColors.BLUE, end="")
        user_msg, ok = get_user_message()
        if not ok:
            break  # Exit if user input couldn't be retrieved (e.g., Ctrl+C)
        if not user_msg:
            continue
        if user_msg.lower() in EXIT_COMMANDS:
            break

        if user_msg.lower() == CLEAR_COMMAND:
            cleared = call_api(f"/sessions/{session_id}/history", method="DELETE")
            if cleared.get("cleared"):
                colored_print("History cleared.", AnsiColors.GREY)
            else:
                show_response(cleared)
            continue

        response = call_api(
            "/agent", {"message": user_msg, "session_id": session_id, "role": role}
        )
        show_response(response)


if __name__ == "__main__":
    run_cli()
