#!/usr/bin/env python3
"""
dataset-chat - ask questions about a chat session's datasets from the terminal.

Usage:
    dataset-chat --session <chat_session_id> [--query "How many rows?"]

Without --query, questions are read from stdin one per line. Ctrl-C cancels
the running query; Ctrl-C at the prompt exits.
"""

import argparse
import sys
import threading
from pathlib import Path

import requests
import structlog

from dataset_chat.api.client import ApiClient
from dataset_chat.core.cancellation import CancellationToken
from dataset_chat.core.config_loader import load_client_config
from dataset_chat.core.query_stream import QueryStreamClient
from dataset_chat.core.reconciler import ReconcilerSnapshot, SubmissionOutcome
from dataset_chat.ui.chat_session import ChatSession
from dataset_chat.ui.logging_config import configure_logging
from dataset_chat.ui.notifications import ConsoleNotifier
from dataset_chat.ui.transcript_view import progress_label, render_message, render_transcript

logger = structlog.get_logger()


class ProgressPrinter:
    """Listener that prints the progress label whenever it changes."""

    def __init__(self, stream=None) -> None:
        self.stream = stream or sys.stderr
        self._last_label: str | None = None

    def __call__(self, snapshot: ReconcilerSnapshot) -> None:
        label = progress_label(snapshot)
        if label != self._last_label and label is not None:
            print(f"… {label}", file=self.stream, flush=True)
        self._last_label = label


def run_query(session: ChatSession, query: str) -> SubmissionOutcome:
    """
    Run one query on a worker thread so Ctrl-C can cancel it.

    Returns:
        SubmissionOutcome of the query
    """
    token = CancellationToken()
    result: dict[str, SubmissionOutcome] = {}

    def worker() -> None:
        result["outcome"] = session.ask(query, cancellation=token)

    thread = threading.Thread(target=worker, name="dataset-chat-query", daemon=True)
    thread.start()
    while thread.is_alive():
        try:
            thread.join(timeout=0.2)
        except KeyboardInterrupt:
            token.cancel()
    thread.join()
    return result.get("outcome", SubmissionOutcome.FAILED)


def print_answer(session: ChatSession, outcome: SubmissionOutcome) -> None:
    if outcome is not SubmissionOutcome.COMPLETED:
        return
    snapshot = session.snapshot()
    if snapshot.transcript:
        print(render_message(snapshot, snapshot.transcript[-1]), flush=True)


def main(argv: list[str] | None = None) -> int:
    """Run the terminal chat client."""
    parser = argparse.ArgumentParser(description="Ask natural-language questions about a chat session's datasets")
    parser.add_argument("--session", required=True, help="Chat session id")
    parser.add_argument("--api-url", help="Service base URL (overrides config/client.yaml)")
    parser.add_argument("--config", type=Path, help="Path to client config YAML")
    parser.add_argument("--email", help="Signed-in user's email for session ownership checks")
    parser.add_argument("--log-level", default="WARNING", help="Root log level (default: WARNING)")
    parser.add_argument("--query", help="Ask a single question and exit")
    args = parser.parse_args(argv)

    configure_logging(args.log_level)

    config = load_client_config(args.config)
    if args.api_url:
        config["api_base_url"] = args.api_url.rstrip("/")

    http = requests.Session()
    notifier = ConsoleNotifier()
    session = ChatSession(
        session_id=args.session,
        api_client=ApiClient.from_config(config, email=args.email, session=http),
        stream_client=QueryStreamClient.from_config(config, session=http),
        notifier=notifier,
    )
    session.reconciler.add_listener(ProgressPrinter())

    if not session.load():
        return 1

    logger.info("terminal_session_ready", session_id=args.session, api_base_url=config["api_base_url"])

    if args.query is not None:
        outcome = run_query(session, args.query)
        print_answer(session, outcome)
        return 0 if outcome is SubmissionOutcome.COMPLETED else 1

    print(render_transcript(session.snapshot(), has_datasets=session.has_datasets), flush=True)
    while True:
        try:
            line = input("\n> ")
        except (EOFError, KeyboardInterrupt):
            print()
            return 0
        if line.strip() in {"/quit", "/exit"}:
            return 0
        if line.strip() == "/datasets":
            for dataset in session.refresh_datasets():
                print(f"  {dataset.name} ({dataset.dataset_url})")
            continue
        print_answer(session, run_query(session, line))


if __name__ == "__main__":
    sys.exit(main())
