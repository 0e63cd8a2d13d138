"""
Stream event types and payload classification.

Every frame payload on the query stream is a JSON object with a string
``type`` discriminant. classify_payload() is the single choke point that turns
a payload into one of the closed set of StreamEvent variants below.

Design principles:
- Closed variant set, one frozen dataclass per discriminant
- Graceful degradation (return None on any failure, never raise)
- Unknown discriminants are ignored so the server can add event kinds
"""

import json
from dataclasses import dataclass, field
from enum import Enum
from typing import Any

import structlog

logger = structlog.get_logger()


class EventKind(Enum):
    """Wire discriminants of the query event stream."""

    CODE_CHUNK = "code_chunk"
    CODE_COMPLETE = "code_complete"
    EXECUTING = "executing"
    RESULT = "result"
    CHUNK = "chunk"
    DONE = "done"
    ERROR = "error"

    @property
    def is_terminal(self) -> bool:
        """True for the two kinds that end a stream."""
        return self in (EventKind.DONE, EventKind.ERROR)


@dataclass(frozen=True)
class CodeFragment:
    """Incremental slice of generated program source."""

    text: str
    kind: EventKind = field(default=EventKind.CODE_CHUNK, init=False, repr=False)


@dataclass(frozen=True)
class CodeFinalized:
    """Complete generated program, superseding accumulated fragments."""

    full_text: str
    kind: EventKind = field(default=EventKind.CODE_COMPLETE, init=False, repr=False)


@dataclass(frozen=True)
class ExecutionEntered:
    """The generated program has started executing server-side."""

    kind: EventKind = field(default=EventKind.EXECUTING, init=False, repr=False)


@dataclass(frozen=True)
class ResultFragment:
    """Incremental slice of the natural-language result produced after execution."""

    text: str
    kind: EventKind = field(default=EventKind.RESULT, init=False, repr=False)


@dataclass(frozen=True)
class TextFragment:
    """Incremental slice of text not tied to execution."""

    text: str
    kind: EventKind = field(default=EventKind.CHUNK, init=False, repr=False)


@dataclass(frozen=True)
class Completed:
    """Terminal success with the authoritative final values."""

    full_response: str
    generated_code: str | None = None
    kind: EventKind = field(default=EventKind.DONE, init=False, repr=False)


@dataclass(frozen=True)
class Failed:
    """Terminal failure."""

    message: str
    kind: EventKind = field(default=EventKind.ERROR, init=False, repr=False)


StreamEvent = CodeFragment | CodeFinalized | ExecutionEntered | ResultFragment | TextFragment | Completed | Failed


# Required fields per discriminant and their expected types
_EVENT_SCHEMAS: dict[EventKind, dict[str, Any]] = {
    EventKind.CODE_CHUNK: {"required_fields": {"content": str}},
    EventKind.CODE_COMPLETE: {"required_fields": {"code": str}},
    EventKind.EXECUTING: {"required_fields": {}},
    EventKind.RESULT: {"required_fields": {"content": str}},
    EventKind.CHUNK: {"required_fields": {"content": str}},
    EventKind.DONE: {
        "required_fields": {"full_response": str},
        "optional_fields": {"generated_code": (str, type(None))},
    },
    EventKind.ERROR: {"required_fields": {"content": str}},
}


class PayloadRejected(ValueError):
    """A frame payload could not be turned into a StreamEvent."""

    def __init__(self, reason: str, *, unknown_kind: bool = False) -> None:
        super().__init__(reason)
        self.reason = reason
        self.unknown_kind = unknown_kind


def parse_event(payload: str) -> StreamEvent:
    """
    Parse one frame payload into a StreamEvent.

    Args:
        payload: Text following the frame marker

    Returns:
        The matching StreamEvent variant

    Raises:
        PayloadRejected: If the payload is not JSON, not an object, lacks a
            string ``type``, names an unknown kind, or misses a required field
    """
    try:
        data = json.loads(payload)
    except json.JSONDecodeError as e:
        raise PayloadRejected(f"invalid JSON: {e}") from e

    if not isinstance(data, dict):
        raise PayloadRejected(f"expected object, got {type(data).__name__}")

    discriminant = data.get("type")
    if not isinstance(discriminant, str):
        raise PayloadRejected("missing string field 'type'")

    try:
        kind = EventKind(discriminant)
    except ValueError:
        raise PayloadRejected(f"unknown event type: {discriminant}", unknown_kind=True) from None

    schema = _EVENT_SCHEMAS[kind]
    for field_name, expected_type in schema["required_fields"].items():
        if field_name not in data:
            raise PayloadRejected(f"'{discriminant}' missing required field: {field_name}")
        if not isinstance(data[field_name], expected_type):
            raise PayloadRejected(
                f"'{discriminant}' field '{field_name}' has wrong type: "
                f"expected {expected_type.__name__}, got {type(data[field_name]).__name__}"
            )
    for field_name, expected_types in schema.get("optional_fields", {}).items():
        if field_name in data and not isinstance(data[field_name], expected_types):
            raise PayloadRejected(
                f"'{discriminant}' field '{field_name}' has wrong type: {type(data[field_name]).__name__}"
            )

    match kind:
        case EventKind.CODE_CHUNK:
            return CodeFragment(text=data["content"])
        case EventKind.CODE_COMPLETE:
            return CodeFinalized(full_text=data["code"])
        case EventKind.EXECUTING:
            return ExecutionEntered()
        case EventKind.RESULT:
            return ResultFragment(text=data["content"])
        case EventKind.CHUNK:
            return TextFragment(text=data["content"])
        case EventKind.DONE:
            return Completed(full_response=data["full_response"], generated_code=data.get("generated_code"))
        case EventKind.ERROR:
            return Failed(message=data["content"])


def classify_payload(payload: str) -> StreamEvent | None:
    """
    Classify a frame payload, returning None instead of raising.

    Examples:
        >>> classify_payload('{"type": "chunk", "content": "hi"}')
        TextFragment(text='hi')
        >>> classify_payload('not json') is None
        True
    """
    try:
        return parse_event(payload)
    except PayloadRejected as e:
        logger.debug("stream_payload_rejected", reason=e.reason, payload_preview=payload[:100])
        return None
