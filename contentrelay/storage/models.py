from __future__ import annotations

import time
from dataclasses import dataclass, field
from datetime import datetime
from typing import Any, Dict, List, Optional


@dataclass
class Message:
    role: str
    content: str
    created_at: datetime = field(default_factory=datetime.utcnow)

    def as_prompt(self) -> Dict[str, str]:
        return {"role": self.role, "content": self.content}


@dataclass
class ConversationSession:
    """Short-term chat memory for one (tenant, session) pair."""

    session_id: str
    tenant_id: str
    messages: List[Message] = field(default_factory=list)
    created_at: float = field(default_factory=time.monotonic)
    last_activity: float = field(default_factory=time.monotonic)

    def touch(self, now: float) -> None:
        self.last_activity = now


@dataclass
class CacheEntry:
    key: str
    payload: Any
    expires_at: float

    def is_expired(self, now: float) -> bool:
        return now >= self.expires_at


@dataclass
class ToolDescriptor:
    name: str
    description: str = ""
    input_schema: Optional[Dict[str, Any]] = None

    def as_dict(self) -> Dict[str, str]:
        return {"name": self.name, "description": self.description}


@dataclass
class ContentTypeDescriptor:
    uid: str
    title: str = ""
    description: str = ""
