"""
Tool registry for Turnkeeper.

This module provides a decorator to register tools, an adapter for tool objects written against
older shapes, and the per-turn :class:`ToolRegistry` the orchestrator resolves tool calls with.

Every tool ends up behind one interface, :class:`ToolCapability`: a name, a description, a JSON
schema for its input, and an ``invoke(args)`` coroutine returning a ``ToolOutcome``.
"""

import functools
import inspect
import logging
from typing import (
    Any,
    Awaitable,
    Callable,
    Dict,
    FrozenSet,
    Iterable,
    Iterator,
    List,
    Mapping,
    Optional,
    Tuple,
    Type,
    get_type_hints,
)

from pydantic import (
    BaseModel,
    ConfigDict,
    create_model,
)

from turnkeeper.core.schema import (
    ConversationContext,
    Failure,
    SessionRole,
    Success,
    ToolOutcome,
)

logger = logging.getLogger(__name__)

MEMORY_PARAM = "memory"
"""Parameter name through which a tool receives the session memory (hidden from the model)."""

ALL_ROLES: FrozenSet[SessionRole] = frozenset(SessionRole)

_INVOKE_ATTRS = ("invoke", "_call", "run")


def empty_schema() -> Dict[str, Any]:
    """Parameter schema used when a tool declares none."""
    return {"type": "object", "properties": {}, "required": []}


# ---------------------------------------------------------------------------
# Capability
# ---------------------------------------------------------------------------
class ToolCapability:
    """
    Engine-side implementation backing one tool name.

    Parameters
    ----------
    name, description:
        What the model sees in the function declaration.
    call:
        Callable receiving the validated argument mapping.  It may be sync or async and may
        return a ``ToolOutcome`` or any plain value (wrapped as ``Success``).
    input_schema:
        JSON schema for the arguments; defaults to an empty object schema.
    args_model:
        Optional pydantic model the arguments are validated against before invocation.
    roles:
        Session roles allowed to use the tool.
    accepts_memory:
        If *True*, *call* takes a ``memory`` keyword bound by :meth:`bind`.
    """

    def __init__(
        self,
        name: str,
        description: str,
        call: Callable[..., Any],
        input_schema: Optional[Mapping[str, Any]] = None,
        args_model: Optional[Type[BaseModel]] = None,
        roles: Iterable[SessionRole] = ALL_ROLES,
        accepts_memory: bool = False,
    ) -> None:
        if not name:
            raise ValueError("Tool name must not be empty.")
        self.name = name
        self.description = description or f"Tool: {name}"
        self.input_schema: Dict[str, Any] = dict(input_schema or empty_schema())
        self.args_model = args_model
        self.roles: FrozenSet[SessionRole] = frozenset(roles)
        self.accepts_memory = accepts_memory
        self._call = call

    def __repr__(self) -> str:
        return f"ToolCapability(name={self.name!r})"

    def declaration(self) -> Dict[str, Any]:
        """Function declaration handed to the model."""
        return {
            "type": "function",
            "function": {
                "name": self.name,
                "description": self.description,
                "parameters": self.input_schema,
            },
        }

    def bind(self, memory: Dict[str, Any]) -> "ToolCapability":
        """Return a copy whose calls receive *memory*; tools without a memory slot are shared."""
        if not self.accepts_memory:
            return self
        return ToolCapability(
            name=self.name,
            description=self.description,
            call=functools.partial(self._call, memory=memory),
            input_schema=self.input_schema,
            args_model=self.args_model,
            roles=self.roles,
        )

    def validate_arguments(self, args: Mapping[str, Any]) -> Dict[str, Any]:
        """Check *args* against the tool's model; raises ``pydantic.ValidationError``."""
        if self.args_model is None:
            return dict(args)
        model = self.args_model.model_validate(dict(args))
        return {field: getattr(model, field) for field in type(model).model_fields}

    async def invoke(self, args: Mapping[str, Any]) -> ToolOutcome:
        """Run the tool.  Exceptions are left to the caller (the tool invoker)."""
        result = self._call(dict(args))
        if inspect.isawaitable(result):
            result = await result
        if isinstance(result, (Success, Failure)):
            return result
        return Success(payload=result)


# ---------------------------------------------------------------------------
# Adapting functions and legacy tool objects
# ---------------------------------------------------------------------------
def _signature_model(name: str, fn: Callable[..., Any]) -> Tuple[Type[BaseModel], bool]:
    """Build a pydantic model from *fn*'s signature; report whether it wants ``memory``."""
    sig = inspect.signature(fn)
    try:
        type_hints = get_type_hints(fn)
    except (NameError, TypeError):
        type_hints = {}

    fields: Dict[str, Any] = {}
    accepts_memory = False
    for param_name, param in sig.parameters.items():
        if param_name == MEMORY_PARAM:
            accepts_memory = True
            continue
        if param_name == "self" or param.kind in (param.VAR_POSITIONAL, param.VAR_KEYWORD):
            continue
        annotation = type_hints.get(param_name, Any)
        default = ... if param.default is inspect.Parameter.empty else param.default
        fields[param_name] = (annotation, default)

    model = create_model(  # type: ignore[call-overload]
        f"{name}_arguments", __config__=ConfigDict(extra="ignore"), **fields
    )
    return model, accepts_memory


def _schema_from_model(model: Type[BaseModel]) -> Dict[str, Any]:
    raw = model.model_json_schema()
    schema: Dict[str, Any] = {
        "type": "object",
        "properties": raw.get("properties", {}),
        "required": raw.get("required", []),
    }
    if "$defs" in raw:
        schema["$defs"] = raw["$defs"]
    return schema


def _wants_memory(fn: Callable[..., Any]) -> bool:
    try:
        return MEMORY_PARAM in inspect.signature(fn).parameters
    except (TypeError, ValueError):
        return False


def _first_line(text: str | None) -> str:
    return inspect.cleandoc(text).split("\n\n")[0].replace("\n", " ") if text else ""


def capability_from_function(
    fn: Callable[..., Any],
    name: str | None = None,
    description: str | None = None,
    roles: Iterable[SessionRole] = ALL_ROLES,
) -> ToolCapability:
    """Wrap a plain (sync or async) function taking keyword arguments."""
    tool_name = name or fn.__name__
    model, accepts_memory = _signature_model(tool_name, fn)

    def call(args: Dict[str, Any], **bound: Any) -> Any:
        return fn(**args, **bound)

    return ToolCapability(
        name=tool_name,
        description=description or _first_line(fn.__doc__),
        call=call,
        input_schema=_schema_from_model(model),
        args_model=model,
        roles=roles,
        accepts_memory=accepts_memory,
    )


def _legacy_method(obj: Any) -> Callable[..., Any]:
    for attr in _INVOKE_ATTRS:
        method = getattr(obj, attr, None)
        if callable(method):
            return method
    raise TypeError(f"Tool object {obj!r} has none of {', '.join(_INVOKE_ATTRS)}.")


def as_capability(
    obj: Any,
    name: str | None = None,
    description: str | None = None,
    roles: Iterable[SessionRole] = ALL_ROLES,
) -> ToolCapability:
    """
    Adapt *obj* to a :class:`ToolCapability`.

    Accepted shapes, checked in order:

    1. a ``ToolCapability`` (returned unchanged);
    2. an object with an ``input_schema`` mapping;
    3. an object with a ``get_parameters_schema()`` method;
    4. an object with a ``schema`` attribute holding a pydantic model class or a JSON schema;
    5. a plain callable, whose signature becomes the schema.

    Object shapes (2-4) are invoked with the argument mapping as a single positional argument
    through ``invoke``, ``_call`` or ``run``.

    Raises
    ------
    TypeError
        If *obj* matches none of the shapes.
    """
    if isinstance(obj, ToolCapability):
        return obj

    schema: Mapping[str, Any] | None = None
    args_model: Type[BaseModel] | None = None
    legacy = False

    if isinstance(getattr(obj, "input_schema", None), Mapping):
        schema, legacy = obj.input_schema, True
    elif callable(getattr(obj, "get_parameters_schema", None)):
        schema, legacy = obj.get_parameters_schema(), True
    elif hasattr(obj, "schema") and not inspect.isfunction(obj):
        declared = obj.schema
        if isinstance(declared, type) and issubclass(declared, BaseModel):
            args_model, schema, legacy = declared, _schema_from_model(declared), True
        elif isinstance(declared, Mapping):
            schema, legacy = declared, True

    if not legacy:
        if callable(obj):
            return capability_from_function(obj, name=name, description=description, roles=roles)
        raise TypeError(f"Cannot adapt {obj!r} to a tool capability.")

    method = _legacy_method(obj)
    tool_name = name or getattr(obj, "name", None)
    if not tool_name:
        raise TypeError(f"Tool object {obj!r} has no name.")

    def call(args: Dict[str, Any], **bound: Any) -> Any:
        if args_model is not None:
            return method(args_model.model_validate(args).model_dump(), **bound)
        return method(args, **bound)

    return ToolCapability(
        name=tool_name,
        description=description or getattr(obj, "description", "") or "",
        call=call,
        input_schema=schema,
        args_model=args_model,
        roles=roles,
        accepts_memory=_wants_memory(method),
    )


# ---------------------------------------------------------------------------
# Process-wide catalogue
# ---------------------------------------------------------------------------
TOOL_REGISTRY: Dict[str, ToolCapability] = {}
"""Global catalogue of tool capabilities, bound to a session when a turn starts."""


def add_tool(
    obj: Any,
    name: str | None = None,
    description: str | None = None,
    roles: Iterable[SessionRole] = ALL_ROLES,
) -> ToolCapability:
    """
    Adapt *obj* and add it to :data:`TOOL_REGISTRY`.

    Raises
    ------
    ValueError
        If a tool with the same name is already registered.
    """
    capability = as_capability(obj, name=name, description=description, roles=roles)
    if capability.name in TOOL_REGISTRY:
        raise ValueError(f"Tool '{capability.name}' is already registered.")
    logger.debug("Registering tool '%s'", capability.name)
    TOOL_REGISTRY[capability.name] = capability
    return capability


def register_tool(
    name: str,
    description: str | None = None,
    roles: Iterable[SessionRole] = ALL_ROLES,
) -> Callable:
    """
    Register a tool function with the given name.

    The function is registered as a decorator, so it can be used like this:

        @register_tool("my_tool")
        def my_tool_function(arg1: str, memory: dict) -> dict:
            memory["seen"] = arg1
            return {"echo": arg1}

    The JSON schema shown to the model is derived from the signature and type hints.  A
    parameter named ``memory`` is not shown to the model; it receives the session memory.

    Raises
    ------
    ValueError
        If a function with the same name is already registered.
    """
    if name in TOOL_REGISTRY:
        raise ValueError(f"Tool '{name}' is already registered.")

    def wrapper(fn: Callable[..., Any] | Callable[..., Awaitable[Any]]) -> Callable:
        add_tool(fn, name=name, description=description, roles=roles)
        return fn

    return wrapper


# ---------------------------------------------------------------------------
# Per-turn registry
# ---------------------------------------------------------------------------
class ToolRegistry:
    """Lookup from tool name to capability for one turn of one session."""

    def __init__(self, capabilities: Iterable[ToolCapability] = ()) -> None:
        self._tools: Dict[str, ToolCapability] = {}
        for capability in capabilities:
            self._tools[capability.name] = capability

    def __contains__(self, name: object) -> bool:
        return name in self._tools

    def __len__(self) -> int:
        return len(self._tools)

    def __iter__(self) -> Iterator[ToolCapability]:
        return iter(self._tools.values())

    def resolve(self, name: str) -> ToolCapability | None:
        """Return the capability for *name*, or *None* when no such tool exists."""
        return self._tools.get(name)

    def names(self) -> List[str]:
        return list(self._tools)

    def declarations(self) -> List[Dict[str, Any]]:
        return [capability.declaration() for capability in self._tools.values()]


def build_registry(
    context: ConversationContext,
    role: SessionRole = SessionRole.CUSTOMER,
    catalogue: Mapping[str, ToolCapability] | None = None,
) -> ToolRegistry:
    """Bind the catalogue's tools available to *role* to the session's memory."""
    source = TOOL_REGISTRY if catalogue is None else catalogue
    return ToolRegistry(
        capability.bind(context.memory)
        for capability in source.values()
        if role in capability.roles
    )


from turnkeeper.tools import builtin  # noqa: E402,F401  pylint: disable=wrong-import-position
