from typing import Optional

from conduit.llm.prompts import estimate_tokens
from conduit.llm.types import ConversationMessage, ResponseMetadata, Role
from conduit.observability.logger import get_logger

log = get_logger("history")

MAX_MESSAGES = 1000
MAX_TOKENS = 32_000


class ConversationHistory:
    """In-memory rolling conversation, oldest messages trimmed first."""

    def __init__(self, max_messages: int = MAX_MESSAGES, max_tokens: int = MAX_TOKENS):
        self.max_messages = max_messages
        self.max_tokens = max_tokens
        self._messages: list[ConversationMessage] = []

    def append(self, message: ConversationMessage) -> ConversationMessage:
        self._messages.append(message)
        self._trim_if_needed()
        return message

    def add(self, role: Role, content: str, context_snapshot: Optional[str] = None,
            metadata: Optional[ResponseMetadata] = None) -> ConversationMessage:
        return self.append(ConversationMessage(
            role=role,
            content=content,
            context_snapshot=context_snapshot,
            response_metadata=metadata,
        ))

    def update_content(self, message_id: str, text: str, metadata: Optional[ResponseMetadata] = None) -> bool:
        """Rewrite a message in place; only used for the streaming placeholder."""
        for message in reversed(self._messages):
            if message.id == message_id:
                message.content = text
                if metadata is not None:
                    message.response_metadata = metadata
                return True
        log.warning("history_message_missing", message_id=message_id)
        return False

    def get(self, message_id: str) -> Optional[ConversationMessage]:
        return next((m for m in self._messages if m.id == message_id), None)

    def recent_messages(self, limit: int) -> list[ConversationMessage]:
        if limit <= 0:
            return []
        return list(self._messages[-limit:])

    def messages(self) -> list[ConversationMessage]:
        return list(self._messages)

    def count(self) -> int:
        return len(self._messages)

    def clear(self):
        self._messages = []

    def estimated_tokens(self) -> int:
        return sum(estimate_tokens(m.content) for m in self._messages)

    def _trim_if_needed(self):
        trimmed = 0
        while len(self._messages) > self.max_messages:
            self._messages.pop(0)
            trimmed += 1
        while self.estimated_tokens() > self.max_tokens and len(self._messages) > 2:
            self._messages.pop(0)
            trimmed += 1
        if trimmed:
            log.info("history_trimmed", removed=trimmed, remaining=len(self._messages))
