"""
Derived presentation state for the transcript.

Pure functions of a ReconcilerSnapshot: nothing here mutates the transcript.
"""

from dataclasses import dataclass

from dataset_chat.core.conversation_manager import ConversationMessage
from dataset_chat.core.reconciler import CodeSectionState, ReconcilerSnapshot
from dataset_chat.ui import messages


@dataclass(frozen=True)
class CodeSectionView:
    """How a message's generated-code section should be shown."""

    visible: bool
    expanded: bool
    label: str
    code: str


def progress_label(snapshot: ReconcilerSnapshot) -> str | None:
    """
    Label for the in-flight query indicator.

    Returns:
        "Executing code...", "Generating code..." or "Analyzing...", or None when idle
    """
    if not snapshot.is_loading:
        return None
    if snapshot.is_executing:
        return messages.PROGRESS_EXECUTING_CODE
    if snapshot.streaming_code:
        return messages.PROGRESS_GENERATING_CODE
    return messages.PROGRESS_ANALYZING


def code_section(snapshot: ReconcilerSnapshot, message: ConversationMessage) -> CodeSectionView:
    """
    Compute the code section of one message.

    While a message is being streamed and no authoritative code has arrived,
    the transient streaming buffer is shown instead.
    """
    streaming = snapshot.streaming_message_id == message.message_id
    code = message.generated_code or (snapshot.streaming_code if streaming else "")

    if streaming and not message.generated_code:
        label = messages.PROGRESS_GENERATING_CODE
    elif streaming and snapshot.is_executing:
        label = messages.PROGRESS_EXECUTING_CODE
    else:
        label = messages.VIEW_GENERATED_CODE

    return CodeSectionView(
        visible=bool(code),
        expanded=snapshot.code_section_state(message.message_id) is CodeSectionState.EXPANDED,
        label=label,
        code=code,
    )


def render_message(snapshot: ReconcilerSnapshot, message: ConversationMessage) -> str:
    """Plain-text rendering of one transcript entry."""
    prefix = {"user": "You", "assistant": "Assistant", "system": "System"}[message.sender]
    lines = [f"{prefix}: {message.text}"]

    section = code_section(snapshot, message)
    if section.visible:
        marker = "▼" if section.expanded else "▶"
        lines.append(f"  {marker} {section.label}")
        if section.expanded:
            lines.extend(f"    {line}" for line in section.code.splitlines())
    return "\n".join(lines)


def render_transcript(snapshot: ReconcilerSnapshot, has_datasets: bool = True) -> str:
    """Plain-text rendering of the whole transcript, with empty-state hints."""
    if not snapshot.transcript:
        return messages.ASK_A_QUESTION_HINT if has_datasets else messages.NO_DATASETS_HINT
    return "\n\n".join(render_message(snapshot, message) for message in snapshot.transcript)
