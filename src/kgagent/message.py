import time
import uuid
from enum import Enum

from pydantic import BaseModel, Field, field_serializer


def generate_message_id() -> str:
    return f"msg_{uuid.uuid4().hex[:16]}"


class MessageRole(Enum):
    USER = "user"
    ASSISTANT = "assistant"


class Message(BaseModel):
    id: str = Field(default_factory=generate_message_id)
    role: MessageRole
    content: str
    timestamp: float = Field(default_factory=time.time)

    @field_serializer('role')
    def serialize_role(self, role: MessageRole, _info) -> str:
        return role.value

    def to_wire(self) -> dict[str, str]:
        """The ``{"role", "content"}`` pair sent to chat-style APIs."""
        return {"role": self.role.value, "content": self.content}
