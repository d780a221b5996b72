"""Shared test helpers."""

import asyncio
import base64
from collections.abc import AsyncIterator

from canopy.models import Attachment, Message, StreamEvent
from canopy.providers.base import (
    GenerationRequest,
    GenerationResult,
    TextGenerationProvider,
)
from canopy.threads.session import ChatSession
from canopy.trees.store import TreeStore


class FakeProvider(TextGenerationProvider):
    """Test provider that replays a scripted event sequence.

    `events` defaults to a plain two-delta answer. `error` is raised after the
    scripted events. When `gate` is set, the stream waits on it before
    completing, which lets tests cancel a turn mid-flight.
    """

    suggested_models = ["fake-model"]

    def __init__(
        self,
        events: list[StreamEvent] | None = None,
        *,
        error: Exception | None = None,
        gate: asyncio.Event | None = None,
        content: str = "Fake response",
        thoughts: str | None = None,
        provider_name: str = "fake",
    ) -> None:
        self.events = events if events is not None else [
            StreamEvent(type="message", content="Fake "),
            StreamEvent(type="message", content="response"),
        ]
        self.error = error
        self.gate = gate
        self.content = content
        self.thoughts = thoughts
        self.provider_name = provider_name
        self.requests: list[GenerationRequest] = []
        self.started = asyncio.Event()

    @property
    def name(self) -> str:
        return self.provider_name

    async def generate(self, request: GenerationRequest) -> GenerationResult:
        self.requests.append(request)
        if self.error is not None:
            raise self.error
        return GenerationResult(
            content=self.content,
            thoughts=self.thoughts,
            model=request.model,
            finish_reason="end_turn",
        )

    async def generate_stream(
        self, request: GenerationRequest
    ) -> AsyncIterator[StreamEvent]:
        self.requests.append(request)
        self.started.set()
        for event in self.events:
            yield event
        if self.gate is not None:
            await self.gate.wait()
        if self.error is not None:
            raise self.error
        yield StreamEvent(type="complete")


def make_document(name: str = "notes.txt", mime_type: str = "text/plain", text: str = "hello") -> Attachment:
    return Attachment(
        name=name,
        mime_type=mime_type,
        data=base64.b64encode(text.encode()).decode(),
    )


def make_image(name: str = "cat.png") -> Attachment:
    return Attachment(name=name, mime_type="image/png", data="iVBORw0KGgo=")


def user(content: str, attachments: list[Attachment] | None = None) -> Message:
    return Message(role="user", content=content, attachments=attachments or [])


def model(content: str) -> Message:
    return Message(role="model", content=content, model_id="fake-model")


def build_chain(store: TreeStore, depth: int) -> list[str]:
    """Create a straight line of `depth` nodes below root. Returns their ids."""
    ids: list[str] = []
    parent = "root"
    for _ in range(depth):
        parent = store.create_response_node(parent)
        ids.append(parent)
    return ids


def fake_session_factory(default: TextGenerationProvider, model_name: str = "fake-model"):
    """Session factory bound to one provider, for ThreadContextManager."""

    def factory(
        node_id: str,
        history: list[Message],
        *,
        provider: TextGenerationProvider | None = None,
        model: str | None = None,
    ) -> ChatSession:
        return ChatSession(provider or default, model or model_name, history=history)

    return factory
