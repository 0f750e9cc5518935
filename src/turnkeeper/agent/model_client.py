"""
Model-provider interface for Turnkeeper.

This module is the only place that *directly* calls an LLM.  Everything else (orchestrator, tools,
session store) stays model-agnostic and speaks the chat-completions message format.

We support three back-ends out of the box:

1. **OpenAI** chat completions (requires ``OPENAI_API_KEY``).
2. **Anthropic** messages API (requires ``ANTHROPIC_API_KEY``); messages and tool calls are
   translated to and from Anthropic content blocks.
3. **TGI** or any other self-hosted server exposing an OpenAI-compatible
   ``/v1/chat/completions`` endpoint, reached with plain ``httpx``.

Additional providers can be added by subclassing :class:`BaseModelClient` and registering via
:func:`register_model_client`.
"""

import json
import logging
from abc import (
    ABC,
    abstractmethod,
)
from typing import (
    Any,
    Callable,
    Dict,
    List,
    Sequence,
    Tuple,
    Type,
)

import httpx
from pydantic import (
    BaseModel,
    Field,
)

from turnkeeper.config import settings
from turnkeeper.core.errors import ModelInvocationError

logger = logging.getLogger(__name__)


# ---------------------------------------------------------------------------
# Reply model
# ---------------------------------------------------------------------------
class ModelReply(BaseModel):
    """Text and raw tool calls returned by one model invocation."""

    content: str = ""
    tool_calls: List[Any] = Field(default_factory=list)


# ---------------------------------------------------------------------------
# Registry helpers
# ---------------------------------------------------------------------------
_MODEL_CLIENT_REGISTRY: dict[str, Type["BaseModelClient"]] = {}


def register_model_client(name: str) -> Callable:
    """Decorator to register a model client class under *name*."""

    def wrapper(cls: Type["BaseModelClient"]) -> Type["BaseModelClient"]:
        _MODEL_CLIENT_REGISTRY[name] = cls
        return cls

    return wrapper


def load_model_client(name: str | None = None) -> "BaseModelClient":
    """
    Factory that returns an instantiated model client.

    Fallback order:
    1. *name* arg
    2. ``settings.MODEL_PROVIDER`` env option
    3. default: ``"openai"``
    """

    target = name or getattr(settings, "MODEL_PROVIDER", "openai")
    cls = _MODEL_CLIENT_REGISTRY.get(target.lower())
    if cls is None:
        raise ValueError(f"Model provider '{target}' is not registered.")
    return cls()


# ---------------------------------------------------------------------------
# Base class
# ---------------------------------------------------------------------------
class BaseModelClient(ABC):
    """Abstract chat model that may answer with text, tool calls or both."""

    provider: str = "base"

    @abstractmethod
    async def complete(
        self,
        messages: Sequence[Dict[str, Any]],
        tools: Sequence[Dict[str, Any]] | None = None,
    ) -> ModelReply:
        """
        Send *messages* to the model.

        When *tools* is given the model may call any of them (``tool_choice="auto"``); when it is
        *None* no tool declarations are sent and the model must answer in text.

        Raises
        ------
        ModelInvocationError
            If the provider fails or rejects the request.
        """


# ---------------------------------------------------------------------------
# Concrete clients
# ---------------------------------------------------------------------------
@register_model_client("openai")
class OpenAIModelClient(BaseModelClient):
    """OpenAI chat-completions client."""

    provider = "openai"

    def __init__(self, client: Any = None, model: str | None = None) -> None:
        import openai  # pylint: disable=import-outside-toplevel

        self._client = client or openai.AsyncOpenAI(
            api_key=settings.OPENAI_API_KEY, timeout=settings.MODEL_TIMEOUT
        )
        self._model = model or settings.OPENAI_MODEL

    async def complete(
        self,
        messages: Sequence[Dict[str, Any]],
        tools: Sequence[Dict[str, Any]] | None = None,
    ) -> ModelReply:
        import openai  # pylint: disable=import-outside-toplevel

        extra: Dict[str, Any] = {}
        if tools:
            extra = {"tools": list(tools), "tool_choice": "auto"}

        try:
            resp = await self._client.chat.completions.create(
                model=self._model,
                messages=list(messages),
                temperature=settings.MODEL_TEMPERATURE,
                max_tokens=settings.MODEL_MAX_TOKENS,
                **extra,
            )
        except openai.OpenAIError as exc:
            logger.error("OpenAI request failed: %s", exc)
            raise ModelInvocationError(str(exc), provider=self.provider) from exc

        if not resp.choices:
            raise ModelInvocationError("Empty response from OpenAI", provider=self.provider)

        message = resp.choices[0].message
        calls = [call.model_dump() for call in message.tool_calls or []]
        logger.debug(
            "OpenAI reply: %d chars, %d tool call(s)", len(message.content or ""), len(calls)
        )
        return ModelReply(content=message.content or "", tool_calls=calls)


def _to_anthropic(
    messages: Sequence[Dict[str, Any]],
) -> Tuple[str, List[Dict[str, Any]]]:
    """Split out the system prompt and convert chat messages to Anthropic content blocks."""
    system_parts: List[str] = []
    converted: List[Dict[str, Any]] = []

    def _append(role: str, blocks: List[Dict[str, Any]]) -> None:
        # Anthropic wants strictly alternating roles; merge consecutive blocks of one role
        if converted and converted[-1]["role"] == role:
            converted[-1]["content"].extend(blocks)
        else:
            converted.append({"role": role, "content": blocks})

    for msg in messages:
        role = msg.get("role")
        content = msg.get("content") or ""
        if role == "system":
            system_parts.append(content)
        elif role == "user":
            _append("user", [{"type": "text", "text": content}])
        elif role == "assistant":
            blocks: List[Dict[str, Any]] = []
            if content:
                blocks.append({"type": "text", "text": content})
            for call in msg.get("tool_calls") or []:
                function = call.get("function", {})
                try:
                    arguments = json.loads(function.get("arguments") or "{}")
                except json.JSONDecodeError:
                    arguments = {}
                blocks.append(
                    {
                        "type": "tool_use",
                        "id": call.get("id"),
                        "name": function.get("name"),
                        "input": arguments if isinstance(arguments, dict) else {},
                    }
                )
            if blocks:
                _append("assistant", blocks)
        elif role == "tool":
            _append(
                "user",
                [
                    {
                        "type": "tool_result",
                        "tool_use_id": msg.get("tool_call_id"),
                        "content": content,
                    }
                ],
            )

    return "\n\n".join(system_parts), converted


@register_model_client("anthropic")
class AnthropicModelClient(BaseModelClient):
    """Anthropic Claude client using native tool use."""

    provider = "anthropic"

    def __init__(self, client: Any = None, model: str | None = None) -> None:
        import anthropic  # pylint: disable=import-outside-toplevel

        self._client = client or anthropic.AsyncAnthropic(
            api_key=settings.ANTHROPIC_API_KEY, timeout=settings.MODEL_TIMEOUT
        )
        self._model = model or settings.ANTHROPIC_MODEL

    async def complete(
        self,
        messages: Sequence[Dict[str, Any]],
        tools: Sequence[Dict[str, Any]] | None = None,
    ) -> ModelReply:
        import anthropic  # pylint: disable=import-outside-toplevel

        system_prompt, converted = _to_anthropic(messages)
        extra: Dict[str, Any] = {}
        if tools:
            extra = {
                "tools": [
                    {
                        "name": tool["function"]["name"],
                        "description": tool["function"].get("description", ""),
                        "input_schema": tool["function"].get("parameters", {}),
                    }
                    for tool in tools
                ],
                "tool_choice": {"type": "auto"},
            }

        try:
            response = await self._client.messages.create(
                model=self._model,
                max_tokens=settings.MODEL_MAX_TOKENS,
                system=system_prompt,
                messages=converted,
                temperature=settings.MODEL_TEMPERATURE,
                **extra,
            )
        except anthropic.AnthropicError as exc:
            logger.error("Anthropic request failed: %s", exc)
            raise ModelInvocationError(str(exc), provider=self.provider) from exc

        texts: List[str] = []
        calls: List[Dict[str, Any]] = []
        for block in response.content:
            if block.type == "text":
                texts.append(block.text)
            elif block.type == "tool_use":
                # Handed on in the flat {id, name, args} shape
                calls.append({"id": block.id, "name": block.name, "args": block.input})

        logger.debug("Anthropic reply: %d text block(s), %d tool call(s)", len(texts), len(calls))
        return ModelReply(content="\n".join(texts), tool_calls=calls)


@register_model_client("tgi")
class TGIModelClient(BaseModelClient):
    """Self-hosted model behind an OpenAI-compatible HTTP endpoint."""

    provider = "tgi"

    def __init__(
        self, endpoint: str | None = None, transport: httpx.AsyncBaseTransport | None = None
    ) -> None:
        self._endpoint = endpoint or settings.TGI_ENDPOINT
        self._transport = transport

    async def complete(
        self,
        messages: Sequence[Dict[str, Any]],
        tools: Sequence[Dict[str, Any]] | None = None,
    ) -> ModelReply:
        payload: Dict[str, Any] = {
            "model": "tgi",
            "messages": list(messages),
            "temperature": settings.MODEL_TEMPERATURE,
            "max_tokens": settings.MODEL_MAX_TOKENS,
        }
        if tools:
            payload["tools"] = list(tools)
            payload["tool_choice"] = "auto"

        try:
            async with httpx.AsyncClient(
                timeout=settings.MODEL_TIMEOUT, transport=self._transport
            ) as client:
                resp = await client.post(self._endpoint, json=payload)
                resp.raise_for_status()
                message = resp.json()["choices"][0]["message"]
        except httpx.HTTPStatusError as exc:
            logger.error("TGI request rejected: %s", exc.response.text)
            raise ModelInvocationError(
                f"{exc}: {exc.response.text}", provider=self.provider
            ) from exc
        except httpx.HTTPError as exc:
            logger.error("TGI request error: %s", str(exc))
            raise ModelInvocationError(str(exc), provider=self.provider) from exc
        except (KeyError, IndexError, TypeError, ValueError) as exc:
            logger.error("Unexpected TGI response: %s", str(exc))
            raise ModelInvocationError(
                f"Malformed response from TGI endpoint: {exc}", provider=self.provider
            ) from exc

        logger.debug("TGI response: %s", message)
        return ModelReply(
            content=message.get("content") or "", tool_calls=message.get("tool_calls") or []
        )
