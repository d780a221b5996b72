"""Turn service: runs one user turn at a node end to end.

Appends the user message, resolves the node's thread (inheriting documents
from the parent branch), streams the response into the node through the
assembler and schedules a new label. Upstream failures become an
"Error: ..." model message on the node; cancellation rolls the turn back.
"""

import asyncio
import logging
from collections.abc import AsyncIterator
from contextlib import aclosing
from typing import Literal

from pydantic import BaseModel, Field

from canopy.generation.assembler import Phase, StreamingResponseAssembler
from canopy.generation.context import ERROR_PREFIX
from canopy.generation.titles import TitleGenerator
from canopy.models import Attachment, CapabilityFlags, Message, StreamEvent
from canopy.providers.base import TextGenerationProvider, UpstreamError
from canopy.threads.manager import ThreadContextManager
from canopy.trees.store import InvalidOperationError, TreeStore

logger = logging.getLogger(__name__)


class TurnInput(BaseModel):
    content: str = ""
    attachments: list[Attachment] = Field(default_factory=list)


class TurnOutcome(BaseModel):
    status: Literal["completed", "errored", "cancelled"]
    node_id: str
    message: Message | None = None
    error: str | None = None
    # Set on cancellation so the caller can put the input back verbatim
    restored_input: str | None = None
    restored_attachments: list[Attachment] = Field(default_factory=list)


class TurnService:
    """Orchestrates a turn: tree mutation, thread routing, streaming assembly."""

    def __init__(
        self,
        store: TreeStore,
        threads: ThreadContextManager,
        titles: TitleGenerator | None = None,
    ) -> None:
        self._store = store
        self._threads = threads
        self._titles = titles
        self._in_flight: set[str] = set()

    def is_busy(self, node_id: str) -> bool:
        return node_id in self._in_flight

    def has_active_turns(self) -> bool:
        return bool(self._in_flight)

    async def submit_turn(
        self,
        node_id: str,
        turn: TurnInput,
        *,
        provider: TextGenerationProvider | None = None,
        model: str | None = None,
        capabilities: CapabilityFlags | None = None,
    ) -> TurnOutcome:
        """Run a turn to completion and report how it ended."""
        handle = self.start_turn(
            node_id, turn, provider=provider, model=model, capabilities=capabilities,
        )
        return await handle.outcome()

    def start_turn(
        self,
        node_id: str,
        turn: TurnInput,
        *,
        provider: TextGenerationProvider | None = None,
        model: str | None = None,
        capabilities: CapabilityFlags | None = None,
    ) -> "TurnHandle":
        """Start a turn in the background. The returned handle can cancel it."""
        self.validate_turn(node_id, turn)
        # Claimed before the task runs so a second start_turn is rejected here
        self._in_flight.add(node_id)
        task = asyncio.create_task(
            _drain(self._run(node_id, turn, provider, model, capabilities))
        )
        task.add_done_callback(lambda _: self._in_flight.discard(node_id))
        return TurnHandle(self._store, node_id, turn, task)

    async def stream_turn(
        self,
        node_id: str,
        turn: TurnInput,
        *,
        provider: TextGenerationProvider | None = None,
        model: str | None = None,
        capabilities: CapabilityFlags | None = None,
    ) -> AsyncIterator[StreamEvent]:
        """Run a turn, yielding each event as it is applied to the node.

        Upstream failures end the stream with one "error" event instead of
        raising. Cancelling or closing the stream mid-turn removes the turn
        from the node.
        """
        self.validate_turn(node_id, turn)
        self._in_flight.add(node_id)
        try:
            async with aclosing(self._run(node_id, turn, provider, model, capabilities)) as run:
                async for event in run:
                    yield event
        finally:
            self._in_flight.discard(node_id)

    def validate_turn(self, node_id: str, turn: TurnInput) -> None:
        """Raise if the turn can't start. Called before any state changes."""
        if not turn.content.strip() and not turn.attachments:
            raise InvalidOperationError("A turn needs text or at least one attachment")
        self._store.get_node(node_id)
        if node_id in self._in_flight:
            raise TurnInProgressError(node_id)

    async def _run(
        self,
        node_id: str,
        turn: TurnInput,
        provider: TextGenerationProvider | None,
        model: str | None,
        capabilities: CapabilityFlags | None,
    ) -> AsyncIterator[StreamEvent]:
        history = self._store.path_messages(node_id)
        # Session setup happens before the tree is touched
        thread = self._threads.resolve_thread(
            node_id,
            history,
            parent_id=self._store.parent_of(node_id),
            provider=provider,
            model=model,
        )
        thread.session.reconfigure(provider=provider, model=model, capabilities=capabilities)

        self._store.add_message(
            node_id,
            Message(role="user", content=turn.content, attachments=turn.attachments),
        )
        # Own history only: ancestors' later documents must not leak in
        self._threads.refresh_documents(
            node_id, self._store.get_node(node_id).chat_history
        )

        assembler = StreamingResponseAssembler(
            self._store, node_id, model_id=thread.session.model
        )
        assembler.start()
        logger.info(
            "Turn started on %s with %s (%d prior messages)",
            node_id, thread.session.model, len(history),
        )

        events = self._threads.stream_turn(node_id, turn.content, turn.attachments)
        try:
            async with aclosing(events):
                async for event in events:
                    assembler.feed(event)
                    if assembler.phase == Phase.COMPLETE:
                        self._schedule_title(node_id)
                    yield event
            if not assembler.is_terminal:
                # Source closed without a completion record
                assembler.complete()
                self._schedule_title(node_id)
                yield StreamEvent(type="complete")
        except (asyncio.CancelledError, GeneratorExit):
            if assembler.phase != Phase.COMPLETE:
                self._rollback(node_id, assembler)
            raise
        except UpstreamError as e:
            assembler.error(str(e))
            self._record_error(node_id, assembler, str(e))
            yield StreamEvent(type="error", content=str(e))

    def _schedule_title(self, node_id: str) -> None:
        if self._titles is not None and self._store.has_node(node_id):
            self._titles.schedule(self._store, node_id)

    def _record_error(
        self, node_id: str, assembler: StreamingResponseAssembler, message: str
    ) -> None:
        if not self._store.has_node(node_id):
            return
        if not assembler.content:
            # Nothing partial worth keeping; the error replaces the placeholder
            assembler.discard()
        self._store.add_message(
            node_id,
            Message(role="model", content=f"{ERROR_PREFIX}{message}", model_id=assembler.model_id),
        )

    def _rollback(self, node_id: str, assembler: StreamingResponseAssembler) -> None:
        if not self._store.has_node(node_id):
            return
        assembler.discard()
        history = self._store.get_node(node_id).chat_history
        if history and history[-1].role == "user":
            self._store.remove_last_message(node_id)
        logger.info("Turn on %s cancelled; user message withdrawn", node_id)


async def _drain(events: AsyncIterator[StreamEvent]) -> StreamEvent | None:
    last: StreamEvent | None = None
    async with aclosing(events):
        async for event in events:
            last = event
    return last


class TurnHandle:
    """A running turn. cancel() aborts it; outcome() waits for the result."""

    def __init__(
        self, store: TreeStore, node_id: str, turn: TurnInput, task: asyncio.Task
    ) -> None:
        self._store = store
        self.node_id = node_id
        self._turn = turn
        self._task = task

    @property
    def done(self) -> bool:
        return self._task.done()

    def cancel(self) -> bool:
        return self._task.cancel()

    async def outcome(self) -> TurnOutcome:
        try:
            last = await self._task
        except asyncio.CancelledError:
            if not self._task.cancelled():
                # The awaiting task itself was cancelled, not the turn
                raise
            return TurnOutcome(
                status="cancelled",
                node_id=self.node_id,
                restored_input=self._turn.content,
                restored_attachments=list(self._turn.attachments),
            )

        message = self._last_message()
        if last is not None and last.type == "error":
            return TurnOutcome(
                status="errored", node_id=self.node_id, message=message, error=last.content
            )
        return TurnOutcome(status="completed", node_id=self.node_id, message=message)

    def _last_message(self) -> Message | None:
        if not self._store.has_node(self.node_id):
            return None
        history = self._store.get_node(self.node_id).chat_history
        return history[-1] if history else None


class TurnInProgressError(Exception):
    def __init__(self, node_id: str) -> None:
        self.node_id = node_id
        super().__init__(f"A turn is already running on node {node_id}")
