"""
ConversationManager - Pure Python transcript container.

Holds the ordered chat transcript for one session. Only the reconciler
mutates it while a query is in flight; the history loader replaces it
wholesale while idle.
"""

from dataclasses import dataclass, replace
from datetime import datetime
from typing import Any, Literal
from uuid import uuid4

__all__ = ["ConversationMessage", "ConversationManager", "Sender"]

Sender = Literal["user", "assistant", "system"]


@dataclass
class ConversationMessage:
    """Represents a single message in the conversation transcript."""

    message_id: str
    sender: Sender
    text: str
    created_at: datetime
    generated_code: str | None = None  # Only for assistant messages that involved code


class ConversationManager:
    """
    Ordered, insertion-significant list of ConversationMessage.

    Pure Python class with no I/O.
    """

    def __init__(self) -> None:
        """Initialize empty conversation manager."""
        self._messages: list[ConversationMessage] = []

    def __len__(self) -> int:
        return len(self._messages)

    def add_message(
        self,
        sender: Sender,
        text: str,
        message_id: str | None = None,
        generated_code: str | None = None,
        created_at: datetime | None = None,
    ) -> str:
        """
        Append a message to the transcript.

        Args:
            sender: "user", "assistant" or "system"
            text: Message text
            message_id: Identifier; a uuid4 hex is minted when omitted
            generated_code: Optional generated code
            created_at: Creation time (default: now)

        Returns:
            Message ID

        Raises:
            ValueError: If message_id is already in the transcript
        """
        message_id = message_id or uuid4().hex
        if self.get_message(message_id) is not None:
            raise ValueError(f"Duplicate message_id: {message_id}")

        self._messages.append(
            ConversationMessage(
                message_id=message_id,
                sender=sender,
                text=text,
                created_at=created_at or datetime.now(),
                generated_code=generated_code,
            )
        )
        return message_id

    def get_transcript(self) -> list[ConversationMessage]:
        """
        Get a copy of the transcript.

        Messages are copied too, so callers can hold the result across later mutations.

        Returns:
            List of messages in chronological order
        """
        return [replace(msg) for msg in self._messages]

    def get_message(self, message_id: str) -> ConversationMessage | None:
        """Return the live message with message_id, or None."""
        for msg in self._messages:
            if msg.message_id == message_id:
                return msg
        return None

    def update_message(self, message_id: str, **updates: Any) -> bool:
        """
        Update an existing message by ID.

        Args:
            message_id: The unique ID of the message to update
            **updates: Fields to update (text, generated_code)

        Returns:
            True if message was found and updated, False if not found
        """
        msg = self.get_message(message_id)
        if msg is None:
            return False
        for key, value in updates.items():
            if hasattr(msg, key):
                setattr(msg, key, value)
        return True

    def append_text(self, message_id: str, fragment: str) -> bool:
        """Append fragment to a message's text. Returns False if not found."""
        msg = self.get_message(message_id)
        if msg is None:
            return False
        msg.text += fragment
        return True

    def remove_messages(self, *message_ids: str) -> int:
        """
        Remove messages by ID.

        Returns:
            Number of messages removed
        """
        doomed = set(message_ids)
        before = len(self._messages)
        self._messages = [msg for msg in self._messages if msg.message_id not in doomed]
        return before - len(self._messages)

    def replace_all(self, messages: list[ConversationMessage]) -> None:
        """Replace the transcript wholesale (history load)."""
        self._messages = [replace(msg) for msg in messages]
