from sqlmodel import SQLModel, Field, Column, JSON
from typing import Optional, List, Dict, Any
from datetime import datetime, timezone
from enum import Enum
import uuid


def utcnow() -> datetime:
    # timestamps are stored as naive UTC
    return datetime.now(timezone.utc).replace(tzinfo=None)

def new_id() -> str:
    return uuid.uuid4().hex

def empty_token_usage() -> Dict[str, int]:
    return {"promptTokens": 0, "completionTokens": 0, "totalTokens": 0}

class SessionStatus(str, Enum):
    ACTIVE = "ACTIVE"
    ENDED = "ENDED"

class MessageType(str, Enum):
    USER = "USER"
    AGENT = "AGENT"

class AnonymousSession(SQLModel, table=True):
    id: str = Field(default_factory=new_id, primary_key=True)
    session_identifier: str = Field(index=True, unique=True)
    free_messages_used: int = Field(default=0)
    created_at: datetime = Field(default_factory=utcnow)
    last_used: datetime = Field(default_factory=utcnow)

class AgentSession(SQLModel, table=True):
    id: str = Field(default_factory=new_id, primary_key=True)
    # exactly one of user_id / anonymous_session_id is set
    user_id: Optional[str] = Field(default=None, index=True)
    anonymous_session_id: Optional[str] = Field(default=None, index=True)
    agent_id: str
    agent_name: str
    system_prompt: str
    conversation: List[Dict[str, Any]] = Field(default_factory=list, sa_column=Column(JSON))
    model: Optional[str] = Field(default=None)
    temperature: Optional[float] = Field(default=None)
    status: SessionStatus = Field(default=SessionStatus.ACTIVE, index=True)
    created_at: datetime = Field(default_factory=utcnow, index=True)
    last_used: datetime = Field(default_factory=utcnow, index=True)
    ended_at: Optional[datetime] = Field(default=None)
    duration: Optional[int] = Field(default=None) # seconds
    message_count: int = Field(default=0)
    token_usage: Dict[str, int] = Field(default_factory=empty_token_usage, sa_column=Column(JSON))
    version: int = Field(default=0)

class ChatMessage(SQLModel, table=True):
    id: str = Field(default_factory=new_id, primary_key=True)
    session_id: str = Field(index=True)
    user_id: Optional[str] = Field(default=None)
    anonymous_session_id: Optional[str] = Field(default=None)
    message_text: str
    message_type: MessageType # USER | AGENT
    token_count: int = Field(default=0)
    processing_time: Optional[int] = Field(default=None) # milliseconds
    meta: Optional[Dict[str, Any]] = Field(default=None, sa_column=Column(JSON))
    created_at: datetime = Field(default_factory=utcnow, index=True)
    # breaks created_at ties between the USER and AGENT row of one exchange
    seq: int = Field(default=0)
