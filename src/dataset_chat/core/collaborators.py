"""
Interfaces of the external collaborators the reconciler depends on.

Implementations live elsewhere: api.client.ApiClient (history, datasets) and
ui.notifications (notification surfaces). Tests use in-memory fakes.
"""

from dataclasses import dataclass
from typing import Protocol

from dataset_chat.core.conversation_manager import ConversationMessage

__all__ = ["DatasetRef", "DatasetRegistry", "HistoryLoader", "Notifier"]


@dataclass(frozen=True)
class DatasetRef:
    """A dataset attached to a chat session."""

    dataset_url: str
    name: str = "Dataset"
    file_type: str | None = None


class HistoryLoader(Protocol):
    """Loads the persisted transcript of a session."""

    def load_history(self, session_id: str) -> list[ConversationMessage]: ...


class DatasetRegistry(Protocol):
    """Lists datasets attached to a session. At least one is required to submit a query."""

    def attached_datasets(self, session_id: str) -> list[DatasetRef]: ...


class Notifier(Protocol):
    """User-visible success and error notices."""

    def success(self, message: str) -> None: ...

    def error(self, message: str) -> None: ...
