"""
Dispatch classified stream events to registered callbacks.

Callbacks run synchronously on the thread that reads the stream, in arrival
order. A malformed frame or an unknown event kind is counted and skipped; it
never aborts the stream.
"""

from collections.abc import Callable
from dataclasses import dataclass

import structlog

from dataset_chat.core.stream_events import (
    CodeFinalized,
    CodeFragment,
    Completed,
    ExecutionEntered,
    Failed,
    PayloadRejected,
    ResultFragment,
    StreamEvent,
    TextFragment,
    parse_event,
)

logger = structlog.get_logger()

__all__ = ["DispatchStats", "EventDispatcher", "StreamCallbacks"]


@dataclass
class StreamCallbacks:
    """
    Handlers for each event kind.

    on_done and on_error are mandatory: the caller must always learn how the
    stream ended. The rest are optional.
    """

    on_done: Callable[[str, str | None], None]
    on_error: Callable[[str], None]
    on_code_chunk: Callable[[str], None] | None = None
    on_code_complete: Callable[[str], None] | None = None
    on_executing: Callable[[], None] | None = None
    on_result_chunk: Callable[[str], None] | None = None
    on_chunk: Callable[[str], None] | None = None


@dataclass
class DispatchStats:
    """Per-stream counters, kept so swallowed frames still leave a trace."""

    dispatched: int = 0
    malformed_frames: int = 0
    unknown_discriminants: int = 0
    after_terminal: int = 0


class EventDispatcher:
    """Classifies frame payloads and routes them to StreamCallbacks."""

    def __init__(self, callbacks: StreamCallbacks) -> None:
        self.callbacks = callbacks
        self.stats = DispatchStats()
        self.terminal_event: Completed | Failed | None = None

    @property
    def finished(self) -> bool:
        """True once a done or error event has been dispatched."""
        return self.terminal_event is not None

    def dispatch_payload(self, payload: str) -> StreamEvent | None:
        """
        Classify one frame payload and dispatch it.

        Args:
            payload: Text following the frame marker

        Returns:
            The dispatched event, or None if the payload was skipped
        """
        try:
            event = parse_event(payload)
        except PayloadRejected as e:
            if e.unknown_kind:
                self.stats.unknown_discriminants += 1
                logger.debug("stream_event_unknown_type", reason=e.reason)
            else:
                self.stats.malformed_frames += 1
                logger.warning(
                    "stream_frame_malformed",
                    reason=e.reason,
                    payload_preview=payload[:100],
                    malformed_frames=self.stats.malformed_frames,
                )
            return None

        return event if self.dispatch(event) else None

    def dispatch(self, event: StreamEvent) -> bool:
        """
        Invoke the callback registered for event.

        Events arriving after the terminal event are dropped.

        Returns:
            True if the event was dispatched
        """
        if self.finished:
            self.stats.after_terminal += 1
            logger.warning("stream_event_after_terminal", kind=event.kind.value)
            return False

        callbacks = self.callbacks
        match event:
            case CodeFragment(text=text):
                if callbacks.on_code_chunk:
                    callbacks.on_code_chunk(text)
            case CodeFinalized(full_text=full_text):
                if callbacks.on_code_complete:
                    callbacks.on_code_complete(full_text)
            case ExecutionEntered():
                if callbacks.on_executing:
                    callbacks.on_executing()
            case ResultFragment(text=text):
                if callbacks.on_result_chunk:
                    callbacks.on_result_chunk(text)
            case TextFragment(text=text):
                if callbacks.on_chunk:
                    callbacks.on_chunk(text)
            case Completed(full_response=full_response, generated_code=generated_code):
                self.terminal_event = event
                callbacks.on_done(full_response, generated_code)
            case Failed(message=message):
                self.terminal_event = event
                callbacks.on_error(message)

        self.stats.dispatched += 1
        return True
