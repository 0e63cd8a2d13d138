"""
Streaming client for POST /query/execute/stream.

Issues the query request and runs a sequential pull loop over the response
body: read chunk → decode frames → classify → dispatch → read next chunk.
Every exit path reports exactly one terminal callback (on_done or on_error),
including transport failures, idle timeouts, truncated streams and
cancellation.
"""

import hashlib
import time
from collections.abc import Callable, Iterator
from contextlib import closing
from dataclasses import dataclass
from enum import Enum
from typing import Any

import requests
import structlog
from pydantic import ValidationError
from urllib3.exceptions import DecodeError, ProtocolError, ReadTimeoutError
from urllib3.exceptions import SSLError as Urllib3SSLError

from dataset_chat.api.models.schemas import ErrorDetail, QueryStreamRequest
from dataset_chat.core.cancellation import CancellationToken, QueryCancelledError, raise_if_cancelled
from dataset_chat.core.config_loader import load_client_config
from dataset_chat.core.event_dispatcher import DispatchStats, EventDispatcher, StreamCallbacks
from dataset_chat.core.frame_decoder import FrameDecoder
from dataset_chat.core.stream_events import Failed
from dataset_chat.ui import messages

logger = structlog.get_logger()

__all__ = ["QueryStreamClient", "StreamOutcome", "StreamResult", "hash_query", "iter_body"]


class StreamOutcome(Enum):
    """How a query stream ended."""

    COMPLETED = "completed"
    FAILED = "failed"  # server sent an error event
    REJECTED = "rejected"  # non-2xx response
    TRANSPORT_ERROR = "transport_error"
    TIMED_OUT = "timed_out"  # no event within the idle deadline
    TRUNCATED = "truncated"  # body ended without done/error
    CANCELLED = "cancelled"


@dataclass
class StreamResult:
    """
    Summary of one streamed query.

    Attributes:
        outcome: How the stream ended
        message: Failure message passed to on_error (None on success)
        stats: Dispatcher counters (dispatched, malformed, unknown)
        partial_frames_discarded: Unterminated frames dropped at end-of-stream
        latency_ms: Wall time from request to terminal callback
    """

    outcome: StreamOutcome
    message: str | None
    stats: DispatchStats
    partial_frames_discarded: int
    latency_ms: float


def hash_query(query: str) -> str:
    """SHA256 of the query text; logs carry this instead of the raw query."""
    return hashlib.sha256(query.encode()).hexdigest()


class QueryStreamClient:
    """
    Client for the analysis service's streaming query endpoint.

    A stream stalls when no event is dispatched for stream_idle_timeout_s.
    The socket read timeout catches a silent connection; the pull loop
    catches one that only sends keep-alive pings.
    """

    STREAM_PATH = "/query/execute/stream"
    READ_SIZE = 8192

    def __init__(
        self,
        base_url: str = "http://localhost:8000",
        connect_timeout_s: float = 5.0,
        stream_idle_timeout_s: float = 60.0,
        default_error_message: str = messages.QUERY_FAILED_DEFAULT,
        session: requests.Session | None = None,
        clock: Callable[[], float] = time.monotonic,
    ):
        """
        Initialize the streaming client.

        Args:
            base_url: Service base URL (default: http://localhost:8000)
            connect_timeout_s: Seconds allowed to establish the connection
            stream_idle_timeout_s: Seconds allowed between two dispatched events
            default_error_message: Failure message when a non-2xx body carries no detail
            session: Optional requests.Session (shared connection pool)
            clock: Monotonic time source for the idle deadline
        """
        self.base_url = base_url.rstrip("/")
        self.connect_timeout_s = connect_timeout_s
        self.stream_idle_timeout_s = stream_idle_timeout_s
        self.default_error_message = default_error_message
        self._session = session or requests.Session()
        self._clock = clock

    @classmethod
    def from_config(
        cls, config: dict[str, Any] | None = None, session: requests.Session | None = None
    ) -> "QueryStreamClient":
        """Build a client from load_client_config() output."""
        config = config or load_client_config()
        return cls(
            base_url=config["api_base_url"],
            connect_timeout_s=config["connect_timeout_s"],
            stream_idle_timeout_s=config["stream_idle_timeout_s"],
            default_error_message=config["default_error_message"],
            session=session,
        )

    def execute_stream(
        self,
        query: str,
        dataset_url: str,
        chat_session_id: str,
        callbacks: StreamCallbacks,
        cancellation: CancellationToken | None = None,
    ) -> StreamResult:
        """
        Submit a query and dispatch its event stream to callbacks.

        Blocks until the stream ends. Callbacks run on the calling thread.

        Args:
            query: Natural language query
            dataset_url: Dataset reference to query
            chat_session_id: Chat session reference
            callbacks: Event handlers; on_done or on_error is always called exactly once
            cancellation: Optional token; cancelling closes the response and reports on_error

        Returns:
            StreamResult describing how the stream ended
        """
        start_time = time.perf_counter()
        dispatcher = EventDispatcher(callbacks)
        decoder = FrameDecoder()
        log = logger.bind(query_hash=hash_query(query), dataset_url=dataset_url, chat_session_id=chat_session_id)

        def finish(outcome: StreamOutcome, message: str | None = None) -> StreamResult:
            if message is not None and not dispatcher.finished:
                dispatcher.dispatch(Failed(message=message))
            latency_ms = (time.perf_counter() - start_time) * 1000
            if outcome is StreamOutcome.COMPLETED:
                log.info("query_stream_completed", latency_ms=latency_ms, dispatched=dispatcher.stats.dispatched)
            else:
                log.warning("query_stream_failed", outcome=outcome.value, reason=message, latency_ms=latency_ms)
            return StreamResult(
                outcome=outcome,
                message=message,
                stats=dispatcher.stats,
                partial_frames_discarded=decoder.partial_frames_discarded,
                latency_ms=latency_ms,
            )

        log.info("query_stream_started")
        try:
            body = QueryStreamRequest(query=query, dataset_url=dataset_url, chat_session_id=chat_session_id)
        except ValidationError as e:
            log.warning("query_stream_request_invalid", errors=e.error_count())
            return finish(StreamOutcome.REJECTED, messages.EMPTY_QUERY)

        try:
            raise_if_cancelled(cancellation)
            response = self._session.post(
                f"{self.base_url}{self.STREAM_PATH}",
                json=body.model_dump(),
                headers={"Accept": "text/event-stream"},
                stream=True,
                timeout=(self.connect_timeout_s, self.stream_idle_timeout_s),
            )
        except QueryCancelledError:
            return finish(StreamOutcome.CANCELLED, messages.QUERY_CANCELLED)
        except requests.Timeout as e:
            log.warning("query_stream_connect_timeout", error=str(e))
            return finish(StreamOutcome.TIMED_OUT, messages.STREAM_TIMED_OUT)
        except requests.RequestException as e:
            log.warning("query_stream_connect_failed", error=str(e))
            return finish(StreamOutcome.TRANSPORT_ERROR, messages.STREAM_CONNECTION_FAILED)

        with closing(response):
            if not 200 <= response.status_code < 300:
                return finish(StreamOutcome.REJECTED, self._error_detail(response))
            if response.raw is None:
                return finish(StreamOutcome.TRANSPORT_ERROR, messages.NO_RESPONSE_BODY)

            if cancellation is not None:
                cancellation.add_callback(response.close)

            # Bytes alone (keep-alive pings) do not extend the deadline; only dispatched events do
            idle_deadline = self._clock() + self.stream_idle_timeout_s
            try:
                for chunk in iter_body(response.raw, self.READ_SIZE):
                    raise_if_cancelled(cancellation)
                    dispatched_before = dispatcher.stats.dispatched
                    for payload in decoder.feed(chunk):
                        dispatcher.dispatch_payload(payload)
                        if dispatcher.finished:
                            break
                    if dispatcher.finished:
                        break
                    now = self._clock()
                    if dispatcher.stats.dispatched > dispatched_before:
                        idle_deadline = now + self.stream_idle_timeout_s
                    elif now >= idle_deadline:
                        log.warning("query_stream_idle", idle_timeout_s=self.stream_idle_timeout_s)
                        return finish(StreamOutcome.TIMED_OUT, messages.STREAM_TIMED_OUT)
                raise_if_cancelled(cancellation)
            except QueryCancelledError:
                return finish(StreamOutcome.CANCELLED, messages.QUERY_CANCELLED)
            except requests.RequestException as e:
                if cancellation is not None and cancellation.cancelled:
                    return finish(StreamOutcome.CANCELLED, messages.QUERY_CANCELLED)
                if isinstance(e, requests.Timeout):
                    return finish(StreamOutcome.TIMED_OUT, messages.STREAM_TIMED_OUT)
                log.warning("query_stream_read_failed", error=str(e), error_type=type(e).__name__)
                return finish(StreamOutcome.TRANSPORT_ERROR, messages.STREAM_ERROR)
            except (AttributeError, ValueError, OSError):
                # Closing the response from another thread interrupts the blocked read
                if cancellation is not None and cancellation.cancelled:
                    return finish(StreamOutcome.CANCELLED, messages.QUERY_CANCELLED)
                raise

        decoder.close()
        if dispatcher.terminal_event is None:
            return finish(StreamOutcome.TRUNCATED, messages.STREAM_ENDED_WITHOUT_RESULT)
        if isinstance(dispatcher.terminal_event, Failed):
            return finish(StreamOutcome.FAILED, dispatcher.terminal_event.message)
        return finish(StreamOutcome.COMPLETED)

    def _error_detail(self, response: requests.Response) -> str:
        """Extract {"detail": ...} from a non-2xx response, falling back to the default message."""
        try:
            error = ErrorDetail.model_validate(response.json())
        except (ValueError, ValidationError):
            logger.debug("query_stream_error_body_unparsable", status_code=response.status_code)
            return self.default_error_message
        return error.detail or self.default_error_message


def iter_body(raw: Any, read_size: int) -> Iterator[bytes]:
    """
    Yield response body bytes as soon as they arrive.

    read1() returns whatever the socket has buffered, so a close-delimited
    body (no chunked transfer encoding) still streams instead of blocking
    until EOF. urllib3 errors are re-raised as the requests exceptions
    iter_content would raise.
    """
    try:
        while True:
            chunk = raw.read1(read_size, decode_content=True)
            if not chunk:
                return
            yield chunk
    except ReadTimeoutError as e:
        raise requests.exceptions.ReadTimeout(e) from e
    except ProtocolError as e:
        raise requests.exceptions.ChunkedEncodingError(e) from e
    except DecodeError as e:
        raise requests.exceptions.ContentDecodingError(e) from e
    except Urllib3SSLError as e:
        raise requests.exceptions.SSLError(e) from e
