"""
Pytest configuration and fixtures for dataset chat client tests.
"""

import itertools
import json
import sys
from datetime import UTC, datetime
from pathlib import Path

import pytest

# Add src to path
sys.path.insert(0, str(Path(__file__).parent.parent / "src"))

from dataset_chat.core.collaborators import DatasetRef  # noqa: E402
from dataset_chat.core.event_dispatcher import EventDispatcher  # noqa: E402

FIXED_NOW = datetime(2024, 5, 1, 12, 0, 0, tzinfo=UTC)


def sse_frame(event_type: str, **fields) -> bytes:
    """Encode one event as a wire frame: data: <json>\\n\\n"""
    return f"data: {json.dumps({'type': event_type, **fields})}\n\n".encode()


def success_frames() -> list[bytes]:
    """Frames for the "average of column A" success scenario."""
    return [
        sse_frame("code_chunk", content="df"),
        sse_frame("code_chunk", content="['A'].mean()"),
        sse_frame("code_complete", code="df['A'].mean()"),
        sse_frame("executing"),
        sse_frame("result", content="4.2"),
        sse_frame("done", full_response="4.2", generated_code="df['A'].mean()"),
    ]


class RecordingNotifier:
    """Notifier that keeps every notice for assertions."""

    def __init__(self):
        self.successes: list[str] = []
        self.errors: list[str] = []

    def success(self, message: str) -> None:
        self.successes.append(message)

    def error(self, message: str) -> None:
        self.errors.append(message)


class StaticDatasets:
    """DatasetRegistry returning a fixed list and counting lookups."""

    def __init__(self, datasets=None):
        self.datasets = list(datasets or [])
        self.lookups = 0

    def attached_datasets(self, session_id: str) -> list[DatasetRef]:
        self.lookups += 1
        return list(self.datasets)


class ScriptedStreamClient:
    """
    Stream client that dispatches a fixed list of StreamEvents.

    on_event(event) runs after each dispatch so tests can observe intermediate state.
    raises is raised after the events are dispatched.
    """

    def __init__(self, events=(), raises=None, on_event=None):
        self.events = list(events)
        self.raises = raises
        self.on_event = on_event
        self.calls: list[dict] = []

    def execute_stream(self, query, dataset_url, chat_session_id, callbacks, cancellation=None):
        self.calls.append(
            {
                "query": query,
                "dataset_url": dataset_url,
                "chat_session_id": chat_session_id,
                "cancellation": cancellation,
            }
        )
        dispatcher = EventDispatcher(callbacks)
        for event in self.events:
            dispatcher.dispatch(event)
            if self.on_event:
                self.on_event(event)
        if self.raises is not None:
            raise self.raises
        return dispatcher.stats


class FakeRawBody:
    """Stand-in for urllib3's HTTPResponse: read1() hands out one scripted chunk per call."""

    def __init__(self, chunks):
        self._chunks = list(chunks)
        self.reads = 0

    def read1(self, amt=None, decode_content=None):
        self.reads += 1
        if not self._chunks:
            return b""
        chunk = self._chunks.pop(0)
        if isinstance(chunk, BaseException):
            raise chunk
        return chunk


class FakeStreamResponse:
    """
    Stand-in for a streaming requests.Response.

    chunks may contain exceptions, which are raised when reached.
    """

    def __init__(self, chunks=(), status_code=200, json_body=None, raw=True):
        self.status_code = status_code
        self._json_body = json_body
        self.raw = FakeRawBody(chunks) if raw else None
        self.closed = False

    def json(self):
        if self._json_body is None:
            raise ValueError("No JSON object could be decoded")
        return self._json_body

    def close(self):
        self.closed = True


@pytest.fixture
def notifier():
    """Recording notifier."""
    return RecordingNotifier()


@pytest.fixture
def one_dataset():
    """Registry with a single attached dataset."""
    return StaticDatasets([DatasetRef(dataset_url="s3://bucket/sales.csv", name="sales.csv", file_type="csv")])


@pytest.fixture
def no_datasets():
    """Registry with nothing attached."""
    return StaticDatasets()


@pytest.fixture
def id_factory():
    """Deterministic message ids: msg-1, msg-2, ..."""
    counter = itertools.count(1)
    return lambda: f"msg-{next(counter)}"


@pytest.fixture
def fixed_clock():
    """Clock that always returns FIXED_NOW."""
    return lambda: FIXED_NOW


@pytest.fixture
def sse():
    """Frame builder: sse("chunk", content="hi") -> b'data: {...}\\n\\n'."""
    return sse_frame


@pytest.fixture
def average_frames():
    """Wire frames for the "average of column A" answer."""
    return success_frames()


@pytest.fixture
def scripted_client():
    """Factory for ScriptedStreamClient."""
    return ScriptedStreamClient


@pytest.fixture
def stream_response():
    """Factory for FakeStreamResponse."""
    return FakeStreamResponse
