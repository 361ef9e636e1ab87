from pydantic import BaseModel, Field
from typing import Any, Dict, Literal, Optional


class RouteRequest(BaseModel):
    message: str
    conversation_id: Optional[str] = None


class RouteResponse(BaseModel):
    conversation_id: str
    routed_to: Literal["conversation", "agent", "error"]
    session_id: Optional[str] = None
    agent_name: Optional[str] = None
    response: Optional[str] = None
    error: Optional[str] = None
    should_continue: Optional[bool] = None


class AutoChatEnableRequest(BaseModel):
    conversation_id: str
    agent_name: str = Field(min_length=1)
    document_path: Optional[str] = None  # workspace-relative
    template_id: Optional[str] = None


class ConversationRef(BaseModel):
    conversation_id: str


class AutoChatStatusResponse(BaseModel):
    conversation_id: str
    is_active: bool
    agent_name: Optional[str] = None
    document_path: Optional[str] = None
    message_count: int = 0
    session_duration: Optional[int] = None
    prompt: Optional[str] = None


class SessionSnapshotResponse(BaseModel):
    conversation_id: str
    state: Dict[str, Any]
