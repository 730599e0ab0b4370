"""The conversation store.

Messages live in insertion order and are addressed by the id the store
assigns when they are added.  Only the orchestrator mutates a session;
readers get copies so they cannot change content behind its back.
"""

import logging
import uuid

from pydantic import BaseModel, Field, PrivateAttr

from kgagent.message import Message, MessageRole

logger = logging.getLogger(__name__)


def generate_conversation_id() -> str:
    return f"conv_{uuid.uuid4().hex[:16]}"


class Session(BaseModel):
    session_id: str = Field(default_factory=generate_conversation_id)
    transcript: list[Message] = Field(default_factory=list)

    _index: dict[str, int] = PrivateAttr(default_factory=dict)

    def model_post_init(self, __context) -> None:
        self._reindex()

    def _reindex(self) -> None:
        self._index = {m.id: i for i, m in enumerate(self.transcript)}

    def add_message(self, role: MessageRole, content: str) -> str:
        """Append a message and return its id."""
        message = Message(role=role, content=content)
        self._index[message.id] = len(self.transcript)
        self.transcript.append(message)
        return message.id

    def update_message(self, message_id: str, content: str) -> bool:
        """Replace the content of the message at ``message_id``."""
        position = self._index.get(message_id)
        if position is None:
            return False
        self.transcript[position].content = content
        return True

    def remove_message(self, message_id: str) -> bool:
        position = self._index.get(message_id)
        if position is None:
            return False
        del self.transcript[position]
        self._reindex()
        return True

    def remove_last(self, count: int) -> None:
        if count <= 0:
            return
        del self.transcript[-count:]
        self._reindex()

    def get(self, message_id: str) -> Message | None:
        position = self._index.get(message_id)
        if position is None:
            return None
        return self.transcript[position].model_copy()

    def messages(self) -> list[Message]:
        return [m.model_copy() for m in self.transcript]

    def snapshot(self) -> tuple[Message, ...]:
        """Immutable copy of the conversation handed to a provider."""
        return tuple(m.model_copy() for m in self.transcript)

    def recent(self, count: int) -> list[Message]:
        if count <= 0:
            return []
        return [m.model_copy() for m in self.transcript[-count:]]

    def clear(self) -> None:
        logger.debug(f"Clearing {len(self.transcript)} messages from {self.session_id}")
        self.transcript.clear()
        self._index.clear()

    def __len__(self) -> int:
        return len(self.transcript)
