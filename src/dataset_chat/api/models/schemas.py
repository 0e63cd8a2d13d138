"""Pydantic models for the analysis service's HTTP contracts.

Requests we send use extra="forbid" so a typo never reaches the wire.
Responses we receive use extra="ignore": the service may add fields at any time.

Reference: the service's /query/execute/stream, /chat-sessions and /datasets routes.
"""

from datetime import datetime
from typing import Literal, Optional

from pydantic import BaseModel, ConfigDict, Field, RootModel

# ============================================================================
# Query Execution Schemas
# ============================================================================


class QueryStreamRequest(BaseModel):
    """Body of POST /query/execute and /query/execute/stream."""

    model_config = ConfigDict(extra="forbid")

    query: str = Field(..., min_length=1, description="Natural language query")
    dataset_url: str = Field(..., description="Reference of the dataset to query")
    chat_session_id: str = Field(..., description="Chat session the query belongs to")


class QueryExecuteResponse(BaseModel):
    """Response of POST /query/execute (non-streaming)."""

    model_config = ConfigDict(extra="ignore")

    full_response: str = Field("", description="Final answer text")
    generated_code: Optional[str] = Field(None, description="Analysis code that produced the answer")


class ErrorDetail(BaseModel):
    """Structured error body returned with non-2xx responses."""

    model_config = ConfigDict(extra="ignore")

    detail: Optional[str] = Field(None, description="Human-readable failure reason")


# ============================================================================
# Chat Session Schemas
# ============================================================================


class MessageRecord(BaseModel):
    """Persisted chat message as returned by the history endpoints."""

    model_config = ConfigDict(extra="ignore")

    message_id: str = Field(..., description="Server-assigned message identifier")
    sender: Literal["user", "assistant", "system"] = Field(..., description="Message sender")
    message_txt: str = Field("", description="Message text")
    created_at: datetime = Field(..., description="Creation timestamp")
    generated_code: Optional[str] = Field(None, description="Generated analysis code (assistant messages)")


class SessionResponse(BaseModel):
    """Response of GET /chat-sessions/{session_id}."""

    model_config = ConfigDict(extra="ignore")

    chat_session_id: Optional[str] = Field(None, description="Session identifier")
    title: Optional[str] = Field(None, description="Session title")
    created_at: Optional[datetime] = Field(None, description="Creation timestamp")


class SessionMessagesResponse(RootModel[list[MessageRecord]]):
    """Response of GET /chat-sessions/{session_id}/messages: a bare list."""


class SessionFullResponse(BaseModel):
    """Response of GET /chat-sessions/{session_id}/full."""

    model_config = ConfigDict(extra="ignore")

    chat_session_id: Optional[str] = Field(None, description="Session identifier")
    title: Optional[str] = Field(None, description="Session title")
    messages: list[MessageRecord] = Field(default_factory=list, description="Messages in chronological order")


# ============================================================================
# Dataset Schemas
# ============================================================================


class DatasetRecord(BaseModel):
    """Dataset attached to a chat session."""

    model_config = ConfigDict(extra="ignore")

    dataset_url: str = Field(..., description="Storage URL identifying the dataset")
    name: str = Field("Dataset", description="Human-readable dataset name")
    file_type: Optional[str] = Field(None, description="csv or excel")


class SessionDatasetsResponse(BaseModel):
    """Response of GET /chat-sessions/{session_id}/datasets."""

    model_config = ConfigDict(extra="ignore")

    datasets: list[DatasetRecord] = Field(default_factory=list, description="Attached datasets")


class HealthResponse(BaseModel):
    """Response of GET /health."""

    model_config = ConfigDict(extra="ignore")

    status: str = Field(..., description="Service status")
