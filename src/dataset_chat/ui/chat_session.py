"""
ChatSession - one open chat: its history, attached datasets and query lifecycle.

UI-agnostic controller. Loads persisted state through ApiClient, keeps the
attached datasets cached (so a submit never needs a registry round-trip), and
delegates queries to ConversationReconciler.
"""

from collections.abc import Callable
from datetime import datetime

import structlog

from dataset_chat.api.client import ApiClient, ApiError, SessionAccessDenied, SessionNotFound
from dataset_chat.core.cancellation import CancellationToken
from dataset_chat.core.collaborators import DatasetRef, Notifier
from dataset_chat.core.reconciler import ConversationReconciler, QueryStreamer, ReconcilerSnapshot, SubmissionOutcome
from dataset_chat.ui import messages
from dataset_chat.ui.notifications import LoggingNotifier

logger = structlog.get_logger()


class ChatSession:
    """
    Controller for one chat session.

    Acts as the reconciler's DatasetRegistry, answering from the cached list
    populated by load() and refresh_datasets(). Without a notifier, notices
    go to the log.
    """

    def __init__(
        self,
        session_id: str,
        api_client: ApiClient,
        stream_client: QueryStreamer,
        notifier: Notifier | None = None,
        id_factory: Callable[[], str] | None = None,
        clock: Callable[[], datetime] | None = None,
    ) -> None:
        self.session_id = session_id
        self._api = api_client
        self._notifier = notifier if notifier is not None else LoggingNotifier()
        self._datasets: list[DatasetRef] = []
        self.reconciler = ConversationReconciler(
            session_id=session_id,
            stream_client=stream_client,
            dataset_registry=self,
            notifier=self._notifier,
            id_factory=id_factory,
            clock=clock,
        )

    @property
    def datasets(self) -> list[DatasetRef]:
        return list(self._datasets)

    @property
    def has_datasets(self) -> bool:
        return bool(self._datasets)

    def attached_datasets(self, session_id: str) -> list[DatasetRef]:
        if session_id != self.session_id:
            return []
        return list(self._datasets)

    def load(self) -> bool:
        """
        Load history and attached datasets.

        Failures are reported through the notifier.

        Returns:
            True if both loaded
        """
        try:
            history = self._api.load_history(self.session_id)
            self._datasets = self._api.attached_datasets(self.session_id)
        except SessionAccessDenied:
            self._notifier.error(messages.SESSION_ACCESS_DENIED)
            return False
        except SessionNotFound:
            self._notifier.error(messages.SESSION_NOT_FOUND)
            return False
        except ApiError as e:
            logger.warning("chat_session_load_failed", session_id=self.session_id, error=str(e))
            self._notifier.error(messages.SESSION_LOAD_FAILED)
            return False

        self.reconciler.load_history(history)
        logger.info(
            "chat_session_loaded",
            session_id=self.session_id,
            message_count=len(history),
            dataset_count=len(self._datasets),
        )
        return True

    def refresh_datasets(self) -> list[DatasetRef]:
        """Re-fetch attached datasets, keeping the cached list on failure."""
        try:
            self._datasets = self._api.attached_datasets(self.session_id)
        except ApiError as e:
            logger.warning("chat_session_datasets_failed", session_id=self.session_id, error=str(e))
            self._notifier.error(messages.DATASETS_LOAD_FAILED)
        return self.datasets

    def ask(self, query: str | None, cancellation: CancellationToken | None = None) -> SubmissionOutcome:
        """Submit a query; blocks until its answer is finalized or rolled back."""
        return self.reconciler.submit(query, cancellation=cancellation)

    def cancel(self) -> bool:
        return self.reconciler.cancel()

    def snapshot(self) -> ReconcilerSnapshot:
        return self.reconciler.snapshot()
