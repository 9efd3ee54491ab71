# companion_relay/memory/models.py

from dataclasses import dataclass
from datetime import datetime, timezone
from enum import Enum
from typing import Any, Dict, Optional

ISO_FMT = "%Y-%m-%dT%H:%M:%S.%fZ"


def now_iso() -> str:
    return datetime.now(timezone.utc).strftime(ISO_FMT)


def parse_iso(value: str) -> datetime:
    return datetime.strptime(value, ISO_FMT).replace(tzinfo=timezone.utc)


class MessageRole(str, Enum):
    USER = "user"
    COMPANION = "companion"
    ASSISTANT = "assistant"


@dataclass
class Conversation:
    id: int
    name: str
    is_ai_companion: bool
    created_at: str
    continuation_token: Optional[str] = None

    def to_wire(self) -> Dict[str, Any]:
        return {
            "id": self.id,
            "name": self.name,
            "isAiCompanion": self.is_ai_companion,
            "createdAt": self.created_at,
        }


@dataclass(frozen=True)
class Message:
    id: int
    conversation_id: int
    role: str            # one of MessageRole values
    content: str
    timestamp: str

    def to_wire(self) -> Dict[str, Any]:
        """Shape sent to clients, in REST responses and WebSocket frames alike."""
        return {
            "id": self.id,
            "conversationId": self.conversation_id,
            "role": self.role,
            "content": self.content,
            "timestamp": self.timestamp,
        }
