"""Turn orchestration: one user input through to one user-visible reply."""

from __future__ import annotations

import logging
from typing import (
    Any,
    Callable,
    Dict,
    List,
    Mapping,
    Sequence,
)

from turnkeeper.agent.model_client import BaseModelClient
from turnkeeper.agent.prompts import build_system_prompt
from turnkeeper.agent.tool_executor import invoke_tool_call
from turnkeeper.config import settings
from turnkeeper.core.errors import (
    ModelInvocationError,
    TurnFallbackExhausted,
)
from turnkeeper.core.schema import (
    ConversationContext,
    ErrorKind,
    Message,
    Session,
    SessionRole,
    ToolCallRequest,
    TurnResult,
    TurnState,
)
from turnkeeper.core.validator import (
    recent_window,
    validate_history,
)
from turnkeeper.tools import (
    ToolRegistry,
    build_registry,
)

logger = logging.getLogger(__name__)

APOLOGY_MESSAGE = (
    "I'm sorry, I encountered an issue while processing your request. Please try again."
)
EMPTY_REPLY_MESSAGE = "I'm sorry, I don't have an answer for that yet. Could you rephrase?"

RegistryFactory = Callable[[ConversationContext, SessionRole], ToolRegistry]


# ---------------------------------------------------------------------------
# Tool-call normalization
# ---------------------------------------------------------------------------
def _field(obj: Any, key: str) -> Any:
    if isinstance(obj, Mapping):
        return obj.get(key)
    return getattr(obj, key, None)


def normalize_tool_call(raw: Any) -> ToolCallRequest | None:
    """
    Bring a model-issued tool call into ``{id, function: {name, arguments}}`` form.

    Two wire shapes are understood, as mappings or attribute objects:

    * ``{id, function: {name, arguments}}``
    * ``{id, name, args}`` (legacy)

    Arguments may be a string or a mapping; mappings are serialized to JSON.  Returns *None*
    for anything without an id and a name.
    """
    function = _field(raw, "function")
    if function is not None and _field(function, "name"):
        name = _field(function, "name")
        arguments = _field(function, "arguments")
    elif _field(raw, "name"):
        name = _field(raw, "name")
        arguments = _field(raw, "args")
        if arguments is None:
            arguments = _field(raw, "arguments")
    else:
        return None

    call_id = _field(raw, "id")
    if not call_id or not isinstance(name, str) or not isinstance(call_id, str):
        return None
    return ToolCallRequest.model_validate(
        {"id": call_id, "function": {"name": name, "arguments": arguments}}
    )


def _wire(messages: Sequence[Message]) -> List[Dict[str, Any]]:
    return [msg.to_wire() for msg in messages]


# ---------------------------------------------------------------------------
# Orchestrator
# ---------------------------------------------------------------------------
class Orchestrator:
    """
    Drives a session through one turn of the tool-calling protocol.

    Parameters
    ----------
    model_client:
        Provider used for both model calls of a turn.
    history_window:
        Number of most recent history messages sent with each turn.
    registry_factory:
        Builds the per-turn tool registry from the session context and role.
    """

    def __init__(
        self,
        model_client: BaseModelClient,
        history_window: int | None = None,
        registry_factory: RegistryFactory = build_registry,
    ) -> None:
        self._model = model_client
        self._history_window = (
            settings.HISTORY_WINDOW if history_window is None else history_window
        )
        self._registry_factory = registry_factory

    @staticmethod
    def _transition(session: Session, state: TurnState) -> None:
        logger.debug("Session %s: %s -> %s", session.id, session.state.value, state.value)
        session.state = state

    def _normalize_all(self, raw_calls: Sequence[Any]) -> List[ToolCallRequest]:
        calls: List[ToolCallRequest] = []
        for raw in raw_calls:
            call = normalize_tool_call(raw)
            if call is None:
                logger.warning("Dropping tool call that could not be normalized: %r", raw)
                continue
            calls.append(call)
        return calls

    async def _recover(self, system: Message, user: Message) -> str:
        """Ask once more with only the system prompt and the user input."""
        try:
            reply = await self._model.complete(_wire([system, user]), tools=None)
        except ModelInvocationError as exc:
            raise TurnFallbackExhausted(f"Fallback request failed: {exc}") from exc
        return reply.content or EMPTY_REPLY_MESSAGE

    async def run_turn(self, session: Session, user_input: str) -> TurnResult:
        """
        Process *user_input* for *session* and append the turn to its history.

        Returns
        -------
        TurnResult
            The reply text, whether the stored history was repaired (the caller should persist
            it), and whether the turn ended on the fixed apology.

        Raises
        ------
        ModelInvocationError
            If the first model call fails.  The history is left untouched in that case.
        """
        context = session.context

        # --- Building prompt -------------------------------------------------------------
        self._transition(session, TurnState.BUILDING_PROMPT)
        validation = validate_history(context.history)
        history_repaired = validation.was_repaired
        if history_repaired:
            logger.warning("Session %s: stored history was repaired", session.id)
            context.history = list(validation.clean)
            context.touch()

        registry = self._registry_factory(context, session.role)
        system = Message.system(build_system_prompt(session.role, context.memory, registry.names()))
        user = Message.user(user_input)
        prompt = [system, *recent_window(validation.clean, self._history_window), user]

        # --- First model call ------------------------------------------------------------
        self._transition(session, TurnState.AWAITING_MODEL)
        try:
            reply = await self._model.complete(_wire(prompt), tools=registry.declarations() or None)
        except ModelInvocationError:
            logger.exception("Session %s: model call failed", session.id)
            self._transition(session, TurnState.IDLE)
            raise

        calls = self._normalize_all(reply.tool_calls)
        if not calls:
            text = reply.content or EMPTY_REPLY_MESSAGE
            self._commit(context, [user, Message.assistant(text)])
            self._transition(session, TurnState.DONE)
            logger.info("Session %s: answered without tools", session.id)
            return TurnResult(output_text=text, history_repaired=history_repaired)

        # --- Tool execution, strictly in the order the model issued the calls ------------
        self._transition(session, TurnState.INVOKING_TOOLS)
        logger.info(
            "Session %s: model requested %d tool call(s): %s",
            session.id,
            len(calls),
            [call.name for call in calls],
        )
        assistant = Message.assistant(reply.content, calls)
        tool_messages = [await invoke_tool_call(call, registry) for call in calls]
        working = [user, assistant, *tool_messages]

        # --- Final answer ----------------------------------------------------------------
        self._transition(session, TurnState.AWAITING_FINAL_MODEL)
        failed = False
        try:
            final = await self._model.complete(_wire([*prompt, assistant, *tool_messages]))
            text = final.content or reply.content or EMPTY_REPLY_MESSAGE
            committed = [*working, Message.assistant(text)]
        except ModelInvocationError as exc:
            self._transition(session, TurnState.ERROR_RECOVERY)
            if exc.is_tool_sequence_error:
                logger.warning(
                    "Session %s: provider rejected the tool sequence: %s", session.id, exc
                )
                history_repaired = True
            else:
                logger.warning("Session %s: final model call failed: %s", session.id, exc)
            try:
                text = await self._recover(system, user)
            except TurnFallbackExhausted as fallback_exc:
                logger.error(
                    "Session %s: %s: %s",
                    session.id,
                    ErrorKind.FALLBACK_EXHAUSTED.value,
                    fallback_exc,
                )
                text, failed = APOLOGY_MESSAGE, True
            committed = [user, Message.assistant(text)]

        self._commit(context, committed)
        self._transition(session, TurnState.DONE)
        logger.info(
            "Session %s: turn finished (tools=%d, repaired=%s, failed=%s)",
            session.id,
            len(tool_messages),
            history_repaired,
            failed,
        )
        return TurnResult(
            output_text=text,
            history_repaired=history_repaired,
            failed=failed,
            tool_messages=tool_messages,
        )

    @staticmethod
    def _commit(context: ConversationContext, messages: Sequence[Message]) -> None:
        for msg in messages:
            context.add_message(msg)
