"""Persist a ``ConversationContext`` per customer/session key."""

import hashlib
import json
import logging
import re
from abc import (
    ABC,
    abstractmethod,
)
from pathlib import Path
from typing import Dict

from turnkeeper.config import Settings
from turnkeeper.core.schema import ConversationContext
from turnkeeper.core.validator import validate_history

logger = logging.getLogger(__name__)

_UNSAFE_CHARS = re.compile(r"[^A-Za-z0-9_.-]")


def load_context(raw: str | bytes) -> ConversationContext:
    """
    Rebuild a stored context, repairing its history instead of rejecting the whole document.

    History entries that cannot be read, or that break the message grammar, are dropped; memory
    and ``last_updated`` are kept.

    Raises
    ------
    ValueError
        If *raw* is not a JSON object, or its memory or timestamp cannot be read.
    """
    document = json.loads(raw)
    if not isinstance(document, dict):
        raise ValueError(f"stored context must be a JSON object, got {type(document).__name__}")

    history = document.pop("history", None) or []
    if not isinstance(history, list):
        logger.warning("Discarding stored history of type %s", type(history).__name__)
        history = []
    context = ConversationContext.model_validate(document)

    validation = validate_history(history)
    if validation.was_repaired:
        logger.warning(
            "Stored history repaired on load: kept %d of %d entries",
            len(validation.clean),
            len(history),
        )
    context.history = validation.clean
    return context


class ContextStore(ABC):
    """Storage for conversation contexts, keyed by an externally resolved identifier."""

    @abstractmethod
    def get(self, key: str) -> ConversationContext | None:
        """Return the stored context for *key*, or *None*."""

    @abstractmethod
    def put(self, key: str, context: ConversationContext) -> bool:
        """Store *context* under *key*; return *False* if it could not be written."""

    @abstractmethod
    def delete(self, key: str) -> bool:
        """Remove *key*; return *True* if something was removed."""


class InMemoryContextStore(ContextStore):
    """Process-local store; contexts are kept as JSON so callers never share live objects."""

    def __init__(self) -> None:
        self._data: Dict[str, str] = {}

    def get(self, key: str) -> ConversationContext | None:
        raw = self._data.get(key)
        if raw is None:
            return None
        return load_context(raw)

    def put(self, key: str, context: ConversationContext) -> bool:
        self._data[key] = context.model_dump_json()
        return True

    def delete(self, key: str) -> bool:
        return self._data.pop(key, None) is not None


class JsonFileContextStore(ContextStore):
    """
    One JSON document per key under *directory*.

    The document is the persisted history shape: ``history`` (ordered messages), ``memory`` and
    an ISO-8601 ``last_updated`` timestamp.
    """

    def __init__(self, directory: str | Path) -> None:
        self._dir = Path(directory)
        self._dir.mkdir(parents=True, exist_ok=True)

    def _path(self, key: str) -> Path:
        safe = _UNSAFE_CHARS.sub("_", key)
        if safe != key:
            # Keep distinct keys distinct after sanitizing
            safe = f"{safe}-{hashlib.sha1(key.encode('utf-8')).hexdigest()[:8]}"
        return self._dir / f"{safe}.json"

    def get(self, key: str) -> ConversationContext | None:
        path = self._path(key)
        if not path.exists():
            return None
        try:
            return load_context(path.read_text(encoding="utf-8"))
        except (OSError, ValueError) as exc:
            logger.error("Ignoring unreadable context file %s: %s", path, exc)
            return None

    def put(self, key: str, context: ConversationContext) -> bool:
        path = self._path(key)
        tmp = path.with_suffix(".tmp")
        try:
            tmp.write_text(
                json.dumps(context.model_dump(mode="json"), ensure_ascii=False, indent=2),
                encoding="utf-8",
            )
            tmp.replace(path)
        except OSError as exc:
            logger.error("Failed to persist context for %s: %s", key, exc)
            return False
        logger.debug("Persisted context for %s to %s", key, path)
        return True

    def delete(self, key: str) -> bool:
        path = self._path(key)
        try:
            path.unlink()
        except FileNotFoundError:
            return False
        return True


def load_context_store(config: Settings) -> ContextStore:
    """Build the store selected by ``CONTEXT_STORE``."""
    kind = config.CONTEXT_STORE.lower()
    if kind == "memory":
        return InMemoryContextStore()
    if kind == "json":
        return JsonFileContextStore(Path(config.DATA_DIR) / "contexts")
    raise ValueError(f"Unknown context store '{config.CONTEXT_STORE}'.")
