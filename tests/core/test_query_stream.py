"""
Tests for QueryStreamClient - POST, read loop and failure mapping.

HTTP is mocked: the client gets a MagicMock session whose post() returns a
FakeStreamResponse. One suite runs against a real local HTTP/1.0 server.
"""

import itertools
import threading
from http.server import BaseHTTPRequestHandler, HTTPServer
from unittest.mock import MagicMock, patch

import pytest
import requests
from urllib3.exceptions import DecodeError, ProtocolError, ReadTimeoutError

from dataset_chat.core.cancellation import CancellationToken
from dataset_chat.core.event_dispatcher import StreamCallbacks
from dataset_chat.core.query_stream import QueryStreamClient, StreamOutcome, hash_query, iter_body
from dataset_chat.ui import messages


@pytest.fixture
def callbacks():
    """StreamCallbacks with every handler mocked."""
    return StreamCallbacks(
        on_done=MagicMock(),
        on_error=MagicMock(),
        on_code_chunk=MagicMock(),
        on_code_complete=MagicMock(),
        on_executing=MagicMock(),
        on_result_chunk=MagicMock(),
        on_chunk=MagicMock(),
    )


@pytest.fixture
def http_session():
    """Mocked requests.Session."""
    return MagicMock(spec=requests.Session)


@pytest.fixture
def client(http_session):
    """QueryStreamClient bound to the mocked session."""
    return QueryStreamClient(base_url="http://api.test/", session=http_session)


def _execute(client, callbacks, cancellation=None):
    return client.execute_stream(
        "average of column A", "s3://bucket/sales.csv", "session-1", callbacks, cancellation=cancellation
    )


class TestQueryStreamRequest:
    """Test suite for the outgoing request."""

    def test_execute_stream_posts_json_body_with_stream_and_timeouts(
        self, client, http_session, callbacks, stream_response, average_frames
    ):
        # Arrange
        http_session.post.return_value = stream_response(average_frames)

        # Act
        _execute(client, callbacks)

        # Assert
        http_session.post.assert_called_once()
        args, kwargs = http_session.post.call_args
        assert args[0] == "http://api.test/query/execute/stream"
        assert kwargs["json"] == {
            "query": "average of column A",
            "dataset_url": "s3://bucket/sales.csv",
            "chat_session_id": "session-1",
        }
        assert kwargs["stream"] is True
        assert kwargs["timeout"] == (5.0, 60.0)
        assert kwargs["headers"]["Accept"] == "text/event-stream"

    def test_execute_stream_uses_requests_session_by_default(self, callbacks, stream_response, average_frames):
        # Arrange
        with patch.object(requests.Session, "post", return_value=stream_response(average_frames)) as mock_post:
            client = QueryStreamClient(base_url="http://api.test")

            # Act
            result = _execute(client, callbacks)

        # Assert
        mock_post.assert_called_once()
        assert result.outcome is StreamOutcome.COMPLETED

    def test_from_config_reads_timeouts_and_base_url(self, http_session):
        # Arrange
        config = {
            "api_base_url": "http://svc:9000",
            "connect_timeout_s": 1.5,
            "stream_idle_timeout_s": 30.0,
            "request_timeout_s": 10.0,
            "default_error_message": "Nope",
        }

        # Act
        client = QueryStreamClient.from_config(config, session=http_session)

        # Assert
        assert client.base_url == "http://svc:9000"
        assert client.connect_timeout_s == 1.5
        assert client.stream_idle_timeout_s == 30.0
        assert client.default_error_message == "Nope"

    def test_hash_query_is_stable_and_hides_text(self):
        # Act
        digest = hash_query("average of column A")

        # Assert
        assert digest == hash_query("average of column A")
        assert len(digest) == 64
        assert "average" not in digest


class TestQueryStreamSuccess:
    """Test suite for successful streams."""

    def test_success_dispatches_all_events_and_closes_response(
        self, client, http_session, callbacks, stream_response, average_frames
    ):
        # Arrange
        response = stream_response(average_frames)
        http_session.post.return_value = response

        # Act
        result = _execute(client, callbacks)

        # Assert
        assert result.outcome is StreamOutcome.COMPLETED
        assert result.message is None
        assert result.stats.dispatched == 6
        assert callbacks.on_code_chunk.call_count == 2
        callbacks.on_done.assert_called_once_with("4.2", "df['A'].mean()")
        callbacks.on_error.assert_not_called()
        assert response.closed is True

    def test_frames_split_across_reads_dispatch_once(self, client, http_session, callbacks, stream_response, sse):
        # Arrange
        http_session.post.return_value = stream_response(
            [b'data: {"typ', b'e":"chunk","content":"hello"}\n\n', sse("done", full_response="hello")]
        )

        # Act
        result = _execute(client, callbacks)

        # Assert
        callbacks.on_chunk.assert_called_once_with("hello")
        assert result.outcome is StreamOutcome.COMPLETED

    def test_reading_stops_after_terminal_event(self, client, http_session, callbacks, stream_response, sse):
        # Arrange: trailing frames in the same read and a later read
        response = stream_response(
            [
                sse("done", full_response="ok") + sse("chunk", content="late"),
                sse("error", content="late error"),
            ]
        )
        http_session.post.return_value = response

        # Act
        result = _execute(client, callbacks)

        # Assert
        assert result.outcome is StreamOutcome.COMPLETED
        callbacks.on_chunk.assert_not_called()
        callbacks.on_error.assert_not_called()
        assert response.raw.reads == 1

    def test_frames_with_trailing_id_line_still_complete(self, client, http_session, callbacks, stream_response):
        # Arrange
        http_session.post.return_value = stream_response(
            [
                b'data: {"type": "chunk", "content": "4"}\nid: 6\n\n',
                b'data: {"type": "done", "full_response": "4.2"}\nid: 7\n\n',
            ]
        )

        # Act
        result = _execute(client, callbacks)

        # Assert
        assert result.outcome is StreamOutcome.COMPLETED
        assert result.stats.malformed_frames == 0
        callbacks.on_chunk.assert_called_once_with("4")
        callbacks.on_done.assert_called_once_with("4.2", None)

    def test_malformed_frames_are_skipped(self, client, http_session, callbacks, stream_response, sse):
        # Arrange
        http_session.post.return_value = stream_response(
            [b"data: {oops\n\n", sse("chunk", content="a"), sse("done", full_response="a")]
        )

        # Act
        result = _execute(client, callbacks)

        # Assert
        assert result.outcome is StreamOutcome.COMPLETED
        assert result.stats.malformed_frames == 1
        callbacks.on_chunk.assert_called_once_with("a")


class TestQueryStreamFailures:
    """Test suite for failure mapping. Every failure reports on_error exactly once."""

    def test_error_event_reports_server_message(self, client, http_session, callbacks, stream_response, sse):
        # Arrange
        http_session.post.return_value = stream_response(
            [sse("code_chunk", content="x"), sse("error", content="dataset not found")]
        )

        # Act
        result = _execute(client, callbacks)

        # Assert
        assert result.outcome is StreamOutcome.FAILED
        assert result.message == "dataset not found"
        callbacks.on_error.assert_called_once_with("dataset not found")
        callbacks.on_done.assert_not_called()

    def test_non_2xx_reports_detail_from_body(self, client, http_session, callbacks, stream_response):
        # Arrange
        response = stream_response(status_code=400, json_body={"detail": "Dataset not found"})
        http_session.post.return_value = response

        # Act
        result = _execute(client, callbacks)

        # Assert
        assert result.outcome is StreamOutcome.REJECTED
        callbacks.on_error.assert_called_once_with("Dataset not found")
        assert response.closed is True

    @pytest.mark.parametrize("json_body", [None, {"detail": None}, {"error": "boom"}, ["detail"]])
    def test_non_2xx_without_detail_reports_default_message(
        self, client, http_session, callbacks, stream_response, json_body
    ):
        # Arrange
        http_session.post.return_value = stream_response(status_code=500, json_body=json_body)

        # Act
        result = _execute(client, callbacks)

        # Assert
        assert result.outcome is StreamOutcome.REJECTED
        callbacks.on_error.assert_called_once_with(messages.QUERY_FAILED_DEFAULT)

    def test_missing_body_reports_no_response_body(self, client, http_session, callbacks, stream_response):
        # Arrange
        http_session.post.return_value = stream_response(raw=False)

        # Act
        result = _execute(client, callbacks)

        # Assert
        assert result.outcome is StreamOutcome.TRANSPORT_ERROR
        callbacks.on_error.assert_called_once_with(messages.NO_RESPONSE_BODY)

    def test_connection_failure_reports_connection_message(self, client, http_session, callbacks):
        # Arrange
        http_session.post.side_effect = requests.ConnectionError("Connection refused")

        # Act
        result = _execute(client, callbacks)

        # Assert
        assert result.outcome is StreamOutcome.TRANSPORT_ERROR
        callbacks.on_error.assert_called_once_with(messages.STREAM_CONNECTION_FAILED)

    def test_connect_timeout_reports_timed_out(self, client, http_session, callbacks):
        # Arrange
        http_session.post.side_effect = requests.ConnectTimeout("connect timed out")

        # Act
        result = _execute(client, callbacks)

        # Assert
        assert result.outcome is StreamOutcome.TIMED_OUT
        callbacks.on_error.assert_called_once_with(messages.STREAM_TIMED_OUT)

    def test_idle_read_timeout_reports_timed_out(self, client, http_session, callbacks, stream_response, sse):
        # Arrange: the socket read timeout fires while waiting for the next chunk
        http_session.post.return_value = stream_response(
            [sse("code_chunk", content="x"), ReadTimeoutError(None, None, "Read timed out. (read timeout=60.0)")]
        )

        # Act
        result = _execute(client, callbacks)

        # Assert
        assert result.outcome is StreamOutcome.TIMED_OUT
        callbacks.on_error.assert_called_once_with(messages.STREAM_TIMED_OUT)

    def test_broken_stream_reports_stream_error(self, client, http_session, callbacks, stream_response, sse):
        # Arrange
        http_session.post.return_value = stream_response(
            [sse("chunk", content="par"), ProtocolError("Connection broken: IncompleteRead")]
        )

        # Act
        result = _execute(client, callbacks)

        # Assert
        assert result.outcome is StreamOutcome.TRANSPORT_ERROR
        callbacks.on_error.assert_called_once_with(messages.STREAM_ERROR)

    def test_end_of_stream_without_terminal_event_is_truncation(
        self, client, http_session, callbacks, stream_response, sse
    ):
        # Arrange: last frame never terminated
        http_session.post.return_value = stream_response(
            [sse("chunk", content="partial"), b'data: {"type": "done", "full_response": "par']
        )

        # Act
        result = _execute(client, callbacks)

        # Assert
        assert result.outcome is StreamOutcome.TRUNCATED
        assert result.partial_frames_discarded == 1
        callbacks.on_done.assert_not_called()
        callbacks.on_error.assert_called_once_with(messages.STREAM_ENDED_WITHOUT_RESULT)

    def test_redirect_status_is_rejected(self, client, http_session, callbacks, stream_response, sse):
        # Arrange
        response = stream_response([sse("done", full_response="ok")], status_code=302)
        http_session.post.return_value = response

        # Act
        result = _execute(client, callbacks)

        # Assert
        assert result.outcome is StreamOutcome.REJECTED
        callbacks.on_done.assert_not_called()
        callbacks.on_error.assert_called_once_with(messages.QUERY_FAILED_DEFAULT)
        assert response.raw.reads == 0

    def test_empty_query_reports_error_without_request(self, client, http_session, callbacks):
        # Act
        result = client.execute_stream("", "s3://bucket/sales.csv", "session-1", callbacks)

        # Assert
        http_session.post.assert_not_called()
        assert result.outcome is StreamOutcome.REJECTED
        callbacks.on_error.assert_called_once_with(messages.EMPTY_QUERY)
        callbacks.on_done.assert_not_called()


class TestQueryStreamIdleDeadline:
    """Test suite for the no-event idle deadline."""

    @pytest.fixture
    def ticking_client(self, http_session):
        """Client whose clock advances 0.2 s per reading, with a 0.5 s idle deadline."""
        ticks = itertools.count(step=0.2)
        return QueryStreamClient(
            base_url="http://api.test", stream_idle_timeout_s=0.5, session=http_session, clock=lambda: next(ticks)
        )

    def test_keepalive_pings_alone_time_out(self, ticking_client, http_session, callbacks, stream_response):
        # Arrange: bytes keep arriving but no event is ever dispatched
        response = stream_response([b": ping\n\n"] * 20)
        http_session.post.return_value = response

        # Act
        result = _execute(ticking_client, callbacks)

        # Assert
        assert result.outcome is StreamOutcome.TIMED_OUT
        callbacks.on_error.assert_called_once_with(messages.STREAM_TIMED_OUT)
        callbacks.on_done.assert_not_called()
        assert response.raw.reads == 3
        assert response.closed is True

    def test_pings_after_an_event_time_out_from_that_event(
        self, ticking_client, http_session, callbacks, stream_response, sse
    ):
        # Arrange
        http_session.post.return_value = stream_response([sse("executing")] + [b": ping\n\n"] * 20)

        # Act
        result = _execute(ticking_client, callbacks)

        # Assert
        assert result.outcome is StreamOutcome.TIMED_OUT
        callbacks.on_executing.assert_called_once_with()

    def test_dispatched_events_extend_the_deadline(self, ticking_client, http_session, callbacks, stream_response, sse):
        # Arrange: six readings span well past 0.5 s, each carrying an event
        chunks = [sse("chunk", content=str(i)) for i in range(5)] + [sse("done", full_response="01234")]
        http_session.post.return_value = stream_response(chunks)

        # Act
        result = _execute(ticking_client, callbacks)

        # Assert
        assert result.outcome is StreamOutcome.COMPLETED
        assert callbacks.on_chunk.call_count == 5

    def test_malformed_frames_do_not_extend_the_deadline(
        self, ticking_client, http_session, callbacks, stream_response
    ):
        # Arrange
        http_session.post.return_value = stream_response([b"data: {oops\n\n"] * 20)

        # Act
        result = _execute(ticking_client, callbacks)

        # Assert
        assert result.outcome is StreamOutcome.TIMED_OUT
        assert result.stats.malformed_frames == 3


class TestIterBody:
    """Test suite for iter_body()."""

    def test_yields_until_empty_read(self):
        # Arrange
        raw = MagicMock()
        raw.read1.side_effect = [b"data: ", b"{}\n\n", b""]

        # Act
        chunks = list(iter_body(raw, 8192))

        # Assert
        assert chunks == [b"data: ", b"{}\n\n"]
        raw.read1.assert_called_with(8192, decode_content=True)

    @pytest.mark.parametrize(
        ("raised", "expected"),
        [
            (ReadTimeoutError(None, None, "Read timed out."), requests.exceptions.ReadTimeout),
            (ProtocolError("Connection broken"), requests.exceptions.ChunkedEncodingError),
            (DecodeError("bad gzip"), requests.exceptions.ContentDecodingError),
        ],
    )
    def test_urllib3_errors_become_requests_errors(self, raised, expected):
        # Arrange
        raw = MagicMock()
        raw.read1.side_effect = raised

        # Act & Assert
        with pytest.raises(expected):
            list(iter_body(raw, 8192))


class _CloseDelimitedStreamHandler(BaseHTTPRequestHandler):
    """HTTP/1.0 handler: no Content-Length and no chunked encoding, body ends at close."""

    protocol_version = "HTTP/1.0"
    release = None
    done_sent = None

    def do_POST(self):
        self.rfile.read(int(self.headers.get("Content-Length", 0)))
        self.send_response(200)
        self.send_header("Content-Type", "text/event-stream")
        self.end_headers()
        self.wfile.write(b'data: {"type": "chunk", "content": "first"}\n\n')
        self.wfile.flush()
        self.release.wait(timeout=5.0)
        self.done_sent.set()
        self.wfile.write(b'data: {"type": "done", "full_response": "first"}\n\n')
        self.wfile.flush()

    def log_message(self, format, *args):
        pass


@pytest.fixture
def close_delimited_server():
    """Local HTTP/1.0 server that holds the terminal frame until released."""
    release = threading.Event()
    done_sent = threading.Event()
    handler = type(
        "Handler", (_CloseDelimitedStreamHandler,), {"release": release, "done_sent": done_sent}
    )
    server = HTTPServer(("127.0.0.1", 0), handler)
    thread = threading.Thread(target=server.serve_forever, daemon=True)
    thread.start()
    yield f"http://127.0.0.1:{server.server_port}", release, done_sent
    release.set()
    server.shutdown()
    server.server_close()


class TestQueryStreamOverHttp:
    """Test suite against a real local server."""

    def test_close_delimited_body_dispatches_before_end_of_body(self, close_delimited_server):
        # Arrange
        base_url, release, done_sent = close_delimited_server
        session = requests.Session()
        session.trust_env = False
        seen_before_done = []

        def on_chunk(text):
            seen_before_done.append(not done_sent.is_set())
            release.set()

        callbacks = StreamCallbacks(on_done=MagicMock(), on_error=MagicMock(), on_chunk=on_chunk)
        client = QueryStreamClient(base_url=base_url, stream_idle_timeout_s=10.0, session=session)

        # Act
        result = _execute(client, callbacks)

        # Assert
        assert seen_before_done == [True]
        assert result.outcome is StreamOutcome.COMPLETED
        callbacks.on_done.assert_called_once_with("first", None)


class TestQueryStreamCancellation:
    """Test suite for cancellation."""

    def test_cancelled_before_request_sends_nothing(self, client, http_session, callbacks):
        # Arrange
        token = CancellationToken()
        token.cancel()

        # Act
        result = _execute(client, callbacks, cancellation=token)

        # Assert
        http_session.post.assert_not_called()
        assert result.outcome is StreamOutcome.CANCELLED
        callbacks.on_error.assert_called_once_with(messages.QUERY_CANCELLED)

    def test_cancel_mid_stream_stops_reading_and_closes_response(
        self, client, http_session, stream_response, sse
    ):
        # Arrange: cancel from inside the first chunk handler
        token = CancellationToken()
        on_chunk = MagicMock(side_effect=lambda text: token.cancel())
        on_error = MagicMock()
        callbacks = StreamCallbacks(on_done=MagicMock(), on_error=on_error, on_chunk=on_chunk)
        response = stream_response(
            [sse("chunk", content="a"), sse("chunk", content="b"), sse("done", full_response="ab")]
        )
        http_session.post.return_value = response

        # Act
        result = _execute(client, callbacks, cancellation=token)

        # Assert
        assert result.outcome is StreamOutcome.CANCELLED
        on_chunk.assert_called_once_with("a")
        on_error.assert_called_once_with(messages.QUERY_CANCELLED)
        assert response.closed is True

    def test_read_error_after_cancel_is_reported_as_cancellation(
        self, client, http_session, callbacks, stream_response, sse
    ):
        # Arrange: closing the response from another thread breaks the blocked read
        token = CancellationToken()
        response = stream_response(
            [sse("chunk", content="a"), AttributeError("'NoneType' object has no attribute 'read'")]
        )
        http_session.post.return_value = response
        callbacks.on_chunk.side_effect = lambda text: token.cancel()

        # Act
        result = _execute(client, callbacks, cancellation=token)

        # Assert
        assert result.outcome is StreamOutcome.CANCELLED
        callbacks.on_error.assert_called_once_with(messages.QUERY_CANCELLED)
