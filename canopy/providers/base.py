"""Abstract generative-text provider interface and shared data types."""

from abc import ABC, abstractmethod
from collections.abc import AsyncIterator
from typing import Any

from pydantic import BaseModel, Field

from canopy.models import Attachment, CapabilityFlags, StreamEvent


class GenerationRequest(BaseModel):
    """Everything a provider needs to make an API call for one new turn."""

    model: str
    history: list[dict[str, Any]] = Field(default_factory=list)
    prompt: str
    attachments: list[Attachment] = Field(default_factory=list)
    documents: list[Attachment] = Field(default_factory=list)
    system_prompt: str | None = None
    capabilities: CapabilityFlags = Field(default_factory=CapabilityFlags)


class GenerationResult(BaseModel):
    """Full response from a provider after generation completes."""

    content: str
    model: str
    thoughts: str | None = None
    finish_reason: str | None = None
    usage: dict[str, int] | None = None
    latency_ms: int | None = None
    audio_data: str | None = None


class TextGenerationProvider(ABC):
    """Abstract interface for generative-text services."""

    suggested_models: list[str] = []

    @property
    @abstractmethod
    def name(self) -> str:
        """Provider identifier (e.g., 'anthropic')."""
        ...

    @abstractmethod
    async def generate(self, request: GenerationRequest) -> GenerationResult:
        """Send a non-streaming generation request. Returns the full result."""
        ...

    @abstractmethod
    def generate_stream(
        self, request: GenerationRequest
    ) -> AsyncIterator[StreamEvent]:
        """Send a streaming generation request.

        Yields thought and message deltas, then one final "complete" event.
        Failures are raised, not yielded.
        """
        ...


def request_turns(request: GenerationRequest) -> list[dict[str, Any]]:
    """History plus the new user turn, with documents folded into the new turn.

    Documents already present in the history (by name and mime type) are not
    repeated.
    """
    turns = [dict(entry) for entry in request.history]
    seen = {
        att.document_key
        for entry in turns
        for att in entry.get("attachments", [])
    }
    seen.update(att.document_key for att in request.attachments)
    extra_docs = [doc for doc in request.documents if doc.document_key not in seen]
    turns.append({
        "role": "user",
        "content": request.prompt,
        "attachments": extra_docs + list(request.attachments),
    })
    return turns


class UpstreamError(Exception):
    """Base class for failures reported by the generative-text service."""


class InvalidCredentialError(UpstreamError):
    def __init__(self, detail: str | None = None) -> None:
        self.detail = detail
        super().__init__(
            "The provided API key is not valid. Please check and try again."
        )


class ContentPolicyViolationError(UpstreamError):
    def __init__(self, detail: str | None = None) -> None:
        self.detail = detail
        super().__init__(
            "The request was blocked due to safety settings. Please modify your prompt."
        )


class UpstreamFailureError(UpstreamError):
    def __init__(self, detail: str | None = None) -> None:
        self.detail = detail
        super().__init__("An unexpected error occurred with the generation service.")
