from __future__ import annotations

from enum import Enum
from typing import Any, Dict, List, Literal, Optional
from pydantic import BaseModel, Field

from .personas import Speaker


class SessionStatus(str, Enum):
    ACTIVE = "active"
    ENDED = "ended"


class ThreadState(str, Enum):
    IDLE = "idle"
    COLLECTING = "collecting"
    AWAITING_SHARE_DECISION = "awaiting_share_decision"
    SHARED = "shared"
    DECLINED = "declined"


class SessionCreate(BaseModel):
    title: str = Field(min_length=1)
    goal: Optional[str] = None


class Session(BaseModel):
    session_id: str
    title: str
    goal: Optional[str] = None
    slug: str
    status: SessionStatus = SessionStatus.ACTIVE
    created_by: str
    created_at: str
    triggered_thresholds: List[str] = Field(default_factory=list)

    @property
    def is_active(self) -> bool:
        return self.status == SessionStatus.ACTIVE


class MessageCreate(BaseModel):
    content: str = Field(min_length=1)


class Message(BaseModel):
    message_id: str
    session_id: str
    content: str
    speaker: Speaker
    created_at: str
    author_id: Optional[str] = None
    is_anonymous: bool = False

    def public(self) -> Dict[str, Any]:
        """Row as shown to other participants; anonymous authors are never exposed."""
        data = self.model_dump(mode="json")
        if self.is_anonymous:
            data["author_id"] = None
        return data


class Participant(BaseModel):
    session_id: str
    user_id: str
    display_name: str
    joined_at: str


class ConceptNodeCreate(BaseModel):
    label: str = Field(min_length=1)
    x: Optional[float] = None
    y: Optional[float] = None


class ConceptNodeUpdate(BaseModel):
    label: Optional[str] = None
    x: Optional[float] = None
    y: Optional[float] = None
    is_cancelled: Optional[bool] = None
    highlight: Optional[str] = None


class ConceptNode(BaseModel):
    node_id: str
    session_id: str
    label: str
    x: float = 0.0
    y: float = 0.0
    speaker: Optional[Speaker] = None
    message_id: Optional[str] = None
    is_cancelled: bool = False
    highlight: Optional[str] = None
    created_at: str


class ConceptEdgeCreate(BaseModel):
    source_node_id: str
    target_node_id: str


class ConceptEdge(BaseModel):
    edge_id: str
    session_id: str
    source_node_id: str
    target_node_id: str
    created_at: str


class MindMap(BaseModel):
    nodes: List[ConceptNode]
    edges: List[ConceptEdge]


PrivateOrigin = Literal["user", "facilitator"]


class PrivateMessageCreate(BaseModel):
    content: str = Field(min_length=1)


class PrivateMessage(BaseModel):
    private_message_id: str
    session_id: str
    user_id: str
    content: str
    origin: PrivateOrigin
    created_at: str


class PrivateThread(BaseModel):
    session_id: str
    user_id: str
    state: ThreadState = ThreadState.IDLE
    updated_at: Optional[str] = None


class SessionSummary(BaseModel):
    summary_id: str
    session_id: str
    summary_text: str
    key_insights: List[str] = Field(default_factory=list)
    main_ideas: List[str] = Field(default_factory=list)
    action_items: List[str] = Field(default_factory=list)
    snapshot_ref: Optional[str] = None
    image_ref: Optional[str] = None
    created_at: str


class Notification(BaseModel):
    level: Literal["info", "warning", "error"] = "info"
    title: str
    detail: Optional[str] = None


class PostMessageResult(BaseModel):
    message: Message
    reply: Optional[Message] = None
    notifications: List[Notification] = Field(default_factory=list)


class PrivateExchange(BaseModel):
    state: ThreadState
    messages: List[PrivateMessage]
    shared_message: Optional[Message] = None


class EndSessionRequest(BaseModel):
    snapshot_ref: Optional[str] = None


class EndSessionResult(BaseModel):
    session: Session
    summary: Optional[SessionSummary] = None
    notifications: List[Notification] = Field(default_factory=list)


class SessionView(BaseModel):
    session: Session
    messages: List[Dict[str, Any]]
    participant_count: int
