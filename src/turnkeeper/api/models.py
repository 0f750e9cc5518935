"""
Pydantic models for Turnkeeper API requests and responses.
This module defines the request and response schemas used by the Turnkeeper API.
"""

from typing import (
    Any,
    Dict,
    List,
    Optional,
)

from pydantic import (
    BaseModel,
    Field,
)

from turnkeeper.core.schema import SessionRole


# ---------------------------------------------------------------------------
# Pydantic request / response schema
# ---------------------------------------------------------------------------
class SessionRequest(BaseModel):
    """Request to create a new session."""

    role: SessionRole = Field(SessionRole.CUSTOMER, description="Persona and tool set to use")


class SessionResponse(BaseModel):
    """Response with session information."""

    session_id: str
    role: SessionRole


class MessageRequest(BaseModel):
    """Incoming user message."""

    message: str = Field(..., min_length=1, description="User message for the assistant")
    session_id: Optional[str] = Field(None, description="Session ID for conversation context")
    role: SessionRole = Field(
        SessionRole.CUSTOMER, description="Role used when the session has to be created"
    )


class ToolResult(BaseModel):
    """One tool outcome produced during the turn."""

    tool_call_id: str
    name: str
    result: Any


class MessageResponse(BaseModel):
    """API response returned to the caller."""

    reply: str
    session_id: str
    history_repaired: bool = False
    failed: bool = False
    tool_results: List[ToolResult] | None = None


class ClearResponse(BaseModel):
    """Result of a history reset."""

    session_id: str
    cleared: bool


class HealthResponse(BaseModel):
    """Liveness payload."""

    status: str
    sessions: int
    detail: Dict[str, Any] = Field(default_factory=dict)
