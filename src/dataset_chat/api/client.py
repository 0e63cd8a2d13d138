"""
HTTP client for the analysis service's session, dataset and query endpoints.

Implements the HistoryLoader and DatasetRegistry collaborator interfaces on top
of the service's REST routes. Streaming queries live in core.query_stream.
"""

from collections.abc import Callable
from typing import Any

import requests
import structlog
from pydantic import BaseModel, ValidationError

from dataset_chat.api.models.schemas import (
    ErrorDetail,
    HealthResponse,
    MessageRecord,
    QueryExecuteResponse,
    QueryStreamRequest,
    SessionDatasetsResponse,
    SessionFullResponse,
    SessionMessagesResponse,
    SessionResponse,
)
from dataset_chat.core.collaborators import DatasetRef
from dataset_chat.core.config_loader import load_client_config
from dataset_chat.core.conversation_manager import ConversationMessage
from dataset_chat.core.query_stream import hash_query

logger = structlog.get_logger()

__all__ = ["ApiClient", "ApiError", "SessionAccessDenied", "SessionNotFound"]


class ApiError(Exception):
    """A service call failed. status_code is None for network-level failures."""

    def __init__(self, message: str, status_code: int | None = None, detail: str | None = None) -> None:
        super().__init__(message)
        self.status_code = status_code
        self.detail = detail


class SessionAccessDenied(ApiError):
    """403 on a session route."""


class SessionNotFound(ApiError):
    """404 on a session route."""


def message_from_record(record: MessageRecord) -> ConversationMessage:
    """Convert a persisted message into a transcript entry."""
    return ConversationMessage(
        message_id=record.message_id,
        sender=record.sender,
        text=record.message_txt,
        created_at=record.created_at,
        generated_code=record.generated_code,
    )


class ApiClient:
    """
    Client for /chat-sessions, /query/execute and /health.

    All requests time out after request_timeout_s.
    """

    def __init__(
        self,
        base_url: str = "http://localhost:8000",
        timeout: float = 15.0,
        email: str | None = None,
        session: requests.Session | None = None,
    ):
        """
        Initialize API client.

        Args:
            base_url: Service base URL (default: http://localhost:8000)
            timeout: Request timeout in seconds (default: 15.0)
            email: Signed-in user's email, sent where the service scopes by owner
            session: Optional requests.Session (shared with QueryStreamClient)
        """
        self.base_url = base_url.rstrip("/")
        self.timeout = timeout
        self.email = email
        self.session = session or requests.Session()

    @classmethod
    def from_config(
        cls,
        config: dict[str, Any] | None = None,
        email: str | None = None,
        session: requests.Session | None = None,
    ) -> "ApiClient":
        """Build a client from load_client_config() output."""
        config = config or load_client_config()
        return cls(
            base_url=config["api_base_url"],
            timeout=config["request_timeout_s"],
            email=email,
            session=session,
        )

    def _get(self, path: str, model: type[BaseModel], params: dict[str, Any] | None = None) -> Any:
        return self._send(path, model, lambda url: self.session.get(url, params=params, timeout=self.timeout))

    def _post(self, path: str, model: type[BaseModel], body: dict[str, Any]) -> Any:
        return self._send(path, model, lambda url: self.session.post(url, json=body, timeout=self.timeout))

    def _send(self, path: str, model: type[BaseModel], send: Callable[[str], requests.Response]) -> Any:
        url = f"{self.base_url}{path}"
        try:
            response = send(url)
        except requests.RequestException as e:
            logger.warning("api_request_failed", path=path, error=str(e))
            raise ApiError(f"Request to {path} failed: {e}") from e

        if not 200 <= response.status_code < 300:
            detail = _error_detail(response)
            logger.warning("api_request_rejected", path=path, status_code=response.status_code, detail=detail)
            error_cls = {403: SessionAccessDenied, 404: SessionNotFound}.get(response.status_code, ApiError)
            raise error_cls(
                f"{path} returned {response.status_code}", status_code=response.status_code, detail=detail
            )

        try:
            return model.model_validate(response.json())
        except (ValueError, ValidationError) as e:
            logger.warning("api_response_invalid", path=path, error=str(e))
            raise ApiError(f"Unexpected response from {path}", status_code=response.status_code) from e

    def get_session_full(self, session_id: str) -> SessionFullResponse:
        """
        Fetch a session with its messages.

        Raises:
            SessionAccessDenied: 403
            SessionNotFound: 404
            ApiError: Any other failure
        """
        params = {"email": self.email} if self.email else None
        return self._get(f"/chat-sessions/{session_id}/full", SessionFullResponse, params=params)

    def get_session(self, session_id: str) -> SessionResponse:
        """Fetch session metadata without its messages."""
        return self._get(f"/chat-sessions/{session_id}", SessionResponse)

    def get_messages(self, session_id: str) -> list[MessageRecord]:
        """Fetch a session's messages in chronological order."""
        return self._get(f"/chat-sessions/{session_id}/messages", SessionMessagesResponse).root

    def get_session_datasets(self, session_id: str) -> SessionDatasetsResponse:
        """Fetch datasets attached to a session."""
        return self._get(f"/chat-sessions/{session_id}/datasets", SessionDatasetsResponse)

    def execute_query(self, query: str, dataset_url: str, chat_session_id: str) -> QueryExecuteResponse:
        """
        Run a query and wait for the whole answer.

        Non-streaming counterpart of QueryStreamClient.execute_stream; the
        request body is the same.

        Raises:
            ApiError: Empty query, non-2xx response or network failure
        """
        try:
            body = QueryStreamRequest(query=query, dataset_url=dataset_url, chat_session_id=chat_session_id)
        except ValidationError as e:
            raise ApiError("Query must not be empty") from e
        logger.info("query_execute_started", query_hash=hash_query(query), dataset_url=dataset_url)
        return self._post("/query/execute", QueryExecuteResponse, body.model_dump())

    def health(self) -> HealthResponse:
        """Check the service health endpoint."""
        return self._get("/health", HealthResponse)

    # HistoryLoader
    def load_history(self, session_id: str) -> list[ConversationMessage]:
        response = self.get_session_full(session_id)
        logger.debug("session_history_loaded", session_id=session_id, message_count=len(response.messages))
        return [message_from_record(record) for record in response.messages]

    # DatasetRegistry
    def attached_datasets(self, session_id: str) -> list[DatasetRef]:
        response = self.get_session_datasets(session_id)
        return [
            DatasetRef(dataset_url=record.dataset_url, name=record.name, file_type=record.file_type)
            for record in response.datasets
        ]


def _error_detail(response: requests.Response) -> str | None:
    try:
        return ErrorDetail.model_validate(response.json()).detail
    except (ValueError, ValidationError):
        return None
