"""Streaming response assembler.

Consumes the incremental events of one in-flight turn and keeps a single
placeholder model message on the node up to date, so readers of the tree see
the response grow in place. Phase transitions:

    IDLE → THINKING → ANSWERING → COMPLETE
    any non-terminal phase → ERRORED

An upstream error keeps whatever partial content was already written.
"""

import logging
import time
from collections.abc import AsyncIterable
from enum import Enum

from canopy.models import Attachment, Message, StreamEvent, compose_content
from canopy.trees.store import InvalidOperationError, TreeStore

logger = logging.getLogger(__name__)

AUDIO_ATTACHMENT_NAME = "audio_response.wav"
AUDIO_MIME_TYPE = "audio/wav"


class Phase(str, Enum):
    IDLE = "idle"
    THINKING = "thinking"
    ANSWERING = "answering"
    COMPLETE = "complete"
    ERRORED = "errored"


TERMINAL_PHASES = {Phase.COMPLETE, Phase.ERRORED}


class StreamingResponseAssembler:
    """Reconstitutes one model message on node_id from a stream of events."""

    def __init__(self, store: TreeStore, node_id: str, *, model_id: str | None = None) -> None:
        self._store = store
        self.node_id = node_id
        self.model_id = model_id
        self.phase = Phase.IDLE
        self.thoughts = ""
        self.answer = ""
        self.audio_data: str | None = None
        self.error_message: str | None = None
        self._started_at: float | None = None
        self.thinking_duration_ms: int | None = None
        self._placeholder_index: int | None = None

    @property
    def content(self) -> str:
        """Current composite content of the placeholder."""
        if self.phase == Phase.THINKING and not self.answer:
            return f"Thoughts:{self.thoughts}" if self.thoughts else ""
        return compose_content(self.thoughts, self.answer)

    @property
    def is_terminal(self) -> bool:
        return self.phase in TERMINAL_PHASES

    def start(self) -> None:
        if self.phase != Phase.IDLE:
            raise InvalidOperationError(f"Assembler already started ({self.phase.value})")
        self._store.add_message(
            self.node_id, Message(role="model", content="", model_id=self.model_id)
        )
        self._placeholder_index = len(self._store.get_node(self.node_id).chat_history) - 1
        self._started_at = time.monotonic()
        self.phase = Phase.THINKING

    def thought_delta(self, text: str) -> None:
        self._require_active()
        self.thoughts += text
        self._write()

    def message_delta(self, text: str) -> None:
        self._require_active()
        if self.phase == Phase.THINKING:
            self.phase = Phase.ANSWERING
            if self._started_at is not None:
                self.thinking_duration_ms = int((time.monotonic() - self._started_at) * 1000)
        self.answer += text
        self._write()

    def complete(self, audio_data: str | None = None) -> Message:
        self._require_active()
        self.phase = Phase.COMPLETE
        self.audio_data = audio_data
        attachments = None
        if audio_data:
            attachments = [
                Attachment(
                    name=AUDIO_ATTACHMENT_NAME,
                    mime_type=AUDIO_MIME_TYPE,
                    data=audio_data,
                    preview_url=f"data:{AUDIO_MIME_TYPE};base64,{audio_data}",
                )
            ]
        self._write(attachments=attachments)
        logger.info(
            "Response assembled on %s: %d thought chars, %d answer chars, audio=%s",
            self.node_id, len(self.thoughts), len(self.answer), bool(audio_data),
        )
        return self._store.get_node(self.node_id).chat_history[-1]

    def error(self, message: str) -> None:
        """Mark the turn failed. Partial content stays on the placeholder."""
        if self.is_terminal:
            return
        self.phase = Phase.ERRORED
        self.error_message = message
        logger.warning("Stream errored on %s: %s", self.node_id, message)

    def discard(self) -> None:
        """Remove the placeholder from the node, if it is still the newest message."""
        if self._placeholder_index is None or not self._store.has_node(self.node_id):
            return
        history = self._store.get_node(self.node_id).chat_history
        if len(history) - 1 == self._placeholder_index and history[-1].role == "model":
            self._store.remove_last_message(self.node_id)
        self._placeholder_index = None

    def feed(self, event: StreamEvent) -> None:
        """Apply one event. Starts the assembler on the first event if needed."""
        if self.phase == Phase.IDLE:
            self.start()
        if event.type == "thought":
            self.thought_delta(event.content)
        elif event.type == "message":
            self.message_delta(event.content)
        elif event.type == "complete":
            self.complete(event.audio_data)
        elif event.type == "error":
            self.error(event.content)

    async def consume(self, events: AsyncIterable[StreamEvent]) -> Phase:
        """Pull events until completion, an error record, or the source ends."""
        async for event in events:
            self.feed(event)
            if self.is_terminal:
                break
        return self.phase

    def _require_active(self) -> None:
        if self.phase == Phase.IDLE:
            raise InvalidOperationError("Assembler has not been started")
        if self.is_terminal:
            raise InvalidOperationError(f"Stream already {self.phase.value}")

    def _write(self, attachments: list[Attachment] | None = None) -> None:
        # The placeholder is always the newest message while a turn is in flight
        self._store.update_last_message(
            self.node_id, content=self.content, attachments=attachments
        )
