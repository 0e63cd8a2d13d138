"""
ConversationReconciler - folds a streamed query answer into the transcript.

Lifecycle of one query:

    IDLE → SUBMITTING → GENERATING → (EXECUTING) → RESPONDING → FINALIZING → IDLE
                  any non-idle phase → ROLLED_BACK → IDLE

On submit the user's question and an empty assistant placeholder are appended
optimistically. Stream events then mutate the placeholder in place. On success
the placeholder's text and code are replaced with the server's authoritative
values; on any failure both optimistic messages are removed, so a failed
attempt leaves no trace in the transcript.

At most one query is in flight per reconciler.
"""

from collections.abc import Callable
from dataclasses import dataclass, field
from datetime import UTC, datetime
from enum import Enum
from typing import Protocol
from uuid import uuid4

import structlog

from dataset_chat.core.cancellation import CancellationToken
from dataset_chat.core.collaborators import DatasetRegistry, Notifier
from dataset_chat.core.conversation_manager import ConversationManager, ConversationMessage
from dataset_chat.core.event_dispatcher import StreamCallbacks
from dataset_chat.core.query_stream import hash_query
from dataset_chat.ui import messages

logger = structlog.get_logger()

__all__ = [
    "CodeSectionState",
    "ConversationReconciler",
    "InFlightRequest",
    "QueryPhase",
    "QueryStreamer",
    "ReconcilerSnapshot",
    "SubmissionOutcome",
]


class QueryPhase(Enum):
    """Phase of the reconciler's single in-flight query."""

    IDLE = "idle"
    SUBMITTING = "submitting"
    GENERATING = "generating"
    EXECUTING = "executing"
    RESPONDING = "responding"
    FINALIZING = "finalizing"
    ROLLED_BACK = "rolled_back"


class CodeSectionState(Enum):
    """Whether a message's generated-code section is shown."""

    COLLAPSED = "collapsed"
    EXPANDED = "expanded"


class SubmissionOutcome(Enum):
    """Result of ConversationReconciler.submit()."""

    COMPLETED = "completed"
    FAILED = "failed"
    REJECTED = "rejected"  # precondition failed, nothing was sent
    CANCELLED = "cancelled"


class QueryStreamer(Protocol):
    """The part of QueryStreamClient the reconciler needs."""

    def execute_stream(
        self,
        query: str,
        dataset_url: str,
        chat_session_id: str,
        callbacks: StreamCallbacks,
        cancellation: CancellationToken | None = None,
    ) -> object: ...


@dataclass
class InFlightRequest:
    """The one query currently being streamed."""

    query_text: str
    dataset_reference: str
    session_reference: str
    user_message_id: str
    assistant_message_id: str
    cancellation: CancellationToken
    phase: QueryPhase = QueryPhase.SUBMITTING


@dataclass(frozen=True)
class ReconcilerSnapshot:
    """Immutable view handed to listeners after every transition."""

    transcript: tuple[ConversationMessage, ...]
    phase: QueryPhase
    streaming_code: str
    is_executing: bool
    streaming_message_id: str | None
    code_sections: dict[str, CodeSectionState] = field(default_factory=dict)

    @property
    def is_loading(self) -> bool:
        return self.streaming_message_id is not None

    def code_section_state(self, message_id: str) -> CodeSectionState:
        return self.code_sections.get(message_id, CodeSectionState.COLLAPSED)


Listener = Callable[[ReconcilerSnapshot], None]


def _utc_now() -> datetime:
    return datetime.now(UTC)


class ConversationReconciler:
    """
    Owns the transcript of one chat session and the lifecycle of its queries.

    Args:
        session_id: Chat session the transcript belongs to
        stream_client: Issues the query and dispatches its events
        dataset_registry: Source of the session's attached datasets
        notifier: User-visible notices (rejections and failures)
        conversation: Transcript container (default: empty)
        id_factory: Mints ids for optimistic user messages
        clock: Timestamp source for optimistic messages
    """

    def __init__(
        self,
        session_id: str,
        stream_client: QueryStreamer,
        dataset_registry: DatasetRegistry,
        notifier: Notifier,
        conversation: ConversationManager | None = None,
        id_factory: Callable[[], str] | None = None,
        clock: Callable[[], datetime] | None = None,
    ) -> None:
        self.session_id = session_id
        self._client = stream_client
        self._datasets = dataset_registry
        self._notifier = notifier
        self._conversation = conversation or ConversationManager()
        self._id_factory = id_factory or (lambda: uuid4().hex)
        self._clock = clock or _utc_now

        self._in_flight: InFlightRequest | None = None
        self._streaming_code = ""
        self._is_executing = False
        self._code_sections: dict[str, CodeSectionState] = {}
        self._listeners: list[Listener] = []
        self._outcome: SubmissionOutcome | None = None

    # ------------------------------------------------------------------
    # Observation
    # ------------------------------------------------------------------

    @property
    def phase(self) -> QueryPhase:
        return self._in_flight.phase if self._in_flight else QueryPhase.IDLE

    @property
    def is_loading(self) -> bool:
        return self._in_flight is not None

    @property
    def in_flight(self) -> InFlightRequest | None:
        return self._in_flight

    @property
    def streaming_code(self) -> str:
        return self._streaming_code

    @property
    def is_executing(self) -> bool:
        return self._is_executing

    def transcript(self) -> list[ConversationMessage]:
        """Copy of the transcript in chronological order."""
        return self._conversation.get_transcript()

    def snapshot(self) -> ReconcilerSnapshot:
        return ReconcilerSnapshot(
            transcript=tuple(self._conversation.get_transcript()),
            phase=self.phase,
            streaming_code=self._streaming_code,
            is_executing=self._is_executing,
            streaming_message_id=self._in_flight.assistant_message_id if self._in_flight else None,
            code_sections=dict(self._code_sections),
        )

    def add_listener(self, listener: Listener) -> Callable[[], None]:
        """
        Register a listener called with a snapshot after every transition.

        Returns:
            Callable that unregisters the listener
        """
        self._listeners.append(listener)

        def remove() -> None:
            if listener in self._listeners:
                self._listeners.remove(listener)

        return remove

    def _publish(self) -> None:
        if not self._listeners:
            return
        snapshot = self.snapshot()
        for listener in list(self._listeners):
            listener(snapshot)

    # ------------------------------------------------------------------
    # Code sections
    # ------------------------------------------------------------------

    def code_section_state(self, message_id: str) -> CodeSectionState:
        return self._code_sections.get(message_id, CodeSectionState.COLLAPSED)

    def toggle_code_section(self, message_id: str) -> CodeSectionState | None:
        """
        Flip a message's code section between collapsed and expanded.

        Returns:
            The new state, or None if the message is not in the transcript
        """
        if self._conversation.get_message(message_id) is None:
            return None
        new_state = (
            CodeSectionState.COLLAPSED
            if self.code_section_state(message_id) is CodeSectionState.EXPANDED
            else CodeSectionState.EXPANDED
        )
        self._code_sections[message_id] = new_state
        self._publish()
        return new_state

    # ------------------------------------------------------------------
    # History
    # ------------------------------------------------------------------

    def load_history(self, history: list[ConversationMessage]) -> None:
        """
        Replace the transcript with persisted history.

        Raises:
            RuntimeError: If a query is in flight
        """
        if self._in_flight is not None:
            raise RuntimeError("Cannot replace the transcript while a query is in flight")
        self._conversation.replace_all(history)
        live_ids = {msg.message_id for msg in history}
        self._code_sections = {mid: state for mid, state in self._code_sections.items() if mid in live_ids}
        logger.debug("transcript_history_loaded", session_id=self.session_id, message_count=len(history))
        self._publish()

    # ------------------------------------------------------------------
    # Submission
    # ------------------------------------------------------------------

    def submit(self, query: str | None, cancellation: CancellationToken | None = None) -> SubmissionOutcome:
        """
        Submit a query and stream its answer into the transcript.

        Blocks until the stream ends. Rejected submissions notify the user and
        leave the transcript untouched without any network call.

        Args:
            query: Raw input text (stripped before use)
            cancellation: Optional token; see cancel()

        Returns:
            SubmissionOutcome
        """
        query_text = (query or "").strip()
        if self._in_flight is not None:
            return self._reject(messages.QUERY_ALREADY_RUNNING, reason="in_flight")
        if not query_text:
            return self._reject(messages.EMPTY_QUERY, reason="empty_query")

        datasets = self._datasets.attached_datasets(self.session_id)
        if not datasets:
            return self._reject(messages.NO_DATASET_ATTACHED, reason="no_dataset")

        user_message_id = self._id_factory()
        assistant_message_id = f"{user_message_id}_assistant"
        created_at = self._clock()

        self._conversation.add_message("user", query_text, message_id=user_message_id, created_at=created_at)
        self._conversation.add_message(
            "assistant", "", message_id=assistant_message_id, generated_code=None, created_at=created_at
        )
        self._code_sections[assistant_message_id] = CodeSectionState.EXPANDED
        self._streaming_code = ""
        self._is_executing = False
        self._outcome = None

        request = InFlightRequest(
            query_text=query_text,
            dataset_reference=datasets[0].dataset_url,
            session_reference=self.session_id,
            user_message_id=user_message_id,
            assistant_message_id=assistant_message_id,
            cancellation=cancellation or CancellationToken(),
        )
        self._in_flight = request
        logger.info(
            "query_submitted",
            session_id=self.session_id,
            query_hash=hash_query(query_text),
            dataset_url=request.dataset_reference,
            assistant_message_id=assistant_message_id,
        )
        self._publish()

        callbacks = StreamCallbacks(
            on_done=self._on_done,
            on_error=self._on_error,
            on_code_chunk=self._on_code_chunk,
            on_code_complete=self._on_code_complete,
            on_executing=self._on_executing,
            on_result_chunk=self._on_result_chunk,
            on_chunk=self._on_chunk,
        )
        try:
            self._client.execute_stream(
                request.query_text,
                request.dataset_reference,
                request.session_reference,
                callbacks,
                cancellation=request.cancellation,
            )
        except Exception:
            if self._in_flight is request:
                self._rollback(messages.STREAM_ERROR)
            raise

        if self._in_flight is request:
            # Stream client returned without a terminal callback
            self._rollback(messages.STREAM_ENDED_WITHOUT_RESULT)

        if self._outcome is SubmissionOutcome.FAILED and request.cancellation.cancelled:
            return SubmissionOutcome.CANCELLED
        return self._outcome or SubmissionOutcome.FAILED

    def cancel(self) -> bool:
        """
        Cancel the in-flight query from any thread.

        Returns:
            True if a query was in flight
        """
        request = self._in_flight
        if request is None:
            return False
        logger.info("query_cancel_requested", assistant_message_id=request.assistant_message_id)
        request.cancellation.cancel()
        return True

    def _reject(self, notice: str, reason: str) -> SubmissionOutcome:
        logger.info("query_rejected", session_id=self.session_id, reason=reason)
        self._notifier.error(notice)
        return SubmissionOutcome.REJECTED

    # ------------------------------------------------------------------
    # Stream callbacks
    # ------------------------------------------------------------------

    def _enter(self, phase: QueryPhase) -> InFlightRequest | None:
        request = self._in_flight
        if request is None:
            logger.warning("stream_event_without_request", phase=phase.value)
            return None
        if request.phase is not phase:
            logger.debug("query_phase_changed", from_phase=request.phase.value, to_phase=phase.value)
            request.phase = phase
        return request

    def _on_code_chunk(self, chunk: str) -> None:
        if self._enter(QueryPhase.GENERATING) is None:
            return
        self._streaming_code += chunk
        self._publish()

    def _on_code_complete(self, code: str) -> None:
        request = self._enter(QueryPhase.GENERATING)
        if request is None:
            return
        self._conversation.update_message(request.assistant_message_id, generated_code=code)
        self._publish()

    def _on_executing(self) -> None:
        if self._enter(QueryPhase.EXECUTING) is None:
            return
        self._is_executing = True
        self._publish()

    def _on_result_chunk(self, chunk: str) -> None:
        request = self._enter(QueryPhase.RESPONDING)
        if request is None:
            return
        self._conversation.append_text(request.assistant_message_id, chunk)
        self._is_executing = False
        self._publish()

    def _on_chunk(self, chunk: str) -> None:
        request = self._enter(QueryPhase.RESPONDING)
        if request is None:
            return
        self._conversation.append_text(request.assistant_message_id, chunk)
        self._publish()

    def _on_done(self, full_response: str, generated_code: str | None) -> None:
        request = self._enter(QueryPhase.FINALIZING)
        if request is None:
            return
        updates: dict[str, str] = {"text": full_response}
        if generated_code:
            updates["generated_code"] = generated_code
        self._conversation.update_message(request.assistant_message_id, **updates)
        self._publish()

        self._code_sections[request.assistant_message_id] = CodeSectionState.COLLAPSED
        self._streaming_code = ""
        self._is_executing = False
        self._in_flight = None
        self._outcome = SubmissionOutcome.COMPLETED
        logger.info("query_finalized", assistant_message_id=request.assistant_message_id)
        self._publish()

    def _on_error(self, message: str) -> None:
        if self._in_flight is None:
            logger.warning("stream_error_without_request", reason=message)
            return
        self._rollback(message)

    def _rollback(self, message: str) -> None:
        request = self._in_flight
        if request is None:
            return
        request.phase = QueryPhase.ROLLED_BACK
        removed = self._conversation.remove_messages(request.user_message_id, request.assistant_message_id)
        self._code_sections.pop(request.user_message_id, None)
        self._code_sections.pop(request.assistant_message_id, None)
        self._streaming_code = ""
        self._is_executing = False
        self._outcome = SubmissionOutcome.FAILED
        logger.warning(
            "query_rolled_back",
            assistant_message_id=request.assistant_message_id,
            removed=removed,
            reason=message,
        )
        self._publish()

        self._in_flight = None
        self._notifier.error(message)
        self._publish()
