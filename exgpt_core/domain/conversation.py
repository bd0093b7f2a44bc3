from dataclasses import dataclass, field
from datetime import datetime
from typing import Any, Callable, Dict, List, Optional, Protocol

from .models import Message, format_timestamp, parse_timestamp


@dataclass
class Conversation:
    id: str
    title: str
    created_at: datetime
    updated_at: datetime
    messages: List[Message] = field(default_factory=list)

    def to_payload(self) -> Dict[str, Any]:
        return {
            "id": self.id,
            "title": self.title,
            "messages": [m.to_payload() for m in self.messages],
            "created_at": format_timestamp(self.created_at),
            "updated_at": format_timestamp(self.updated_at),
        }

    @classmethod
    def from_payload(cls, data: Dict[str, Any]) -> "Conversation":
        return cls(
            id=data["id"],
            title=data.get("title") or "",
            created_at=parse_timestamp(data["created_at"]),
            updated_at=parse_timestamp(data["updated_at"]),
            messages=[Message.from_payload(m) for m in data.get("messages") or []],
        )


# 会话的修改函数：接收从存储中刚读出的记录，原地修改
ConversationMutator = Callable[[Conversation], None]


class ConversationStore(Protocol):
    async def list(self) -> List[Conversation]:
        ...

    async def create(self, title: str) -> Conversation:
        ...

    async def get(self, conversation_id: str) -> Optional[Conversation]:
        ...

    async def update(self, conversation_id: str, mutator: ConversationMutator) -> Conversation:
        ...

    async def delete(self, conversation_id: str) -> None:
        ...
