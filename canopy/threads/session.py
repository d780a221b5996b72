"""Chat sessions: one isolated conversation with a generative-text provider."""

import logging
from collections.abc import AsyncIterator, Callable

from canopy.generation.context import ContextBuilder, get_model_context_limit
from canopy.models import (
    Attachment,
    CapabilityFlags,
    ContextUsage,
    Message,
    StreamEvent,
    compose_content,
)
from canopy.providers.base import (
    GenerationRequest,
    GenerationResult,
    TextGenerationProvider,
    UpstreamFailureError,
)
from canopy.providers.registry import (
    ProviderNotFoundError,
    get_model_capabilities,
    get_provider,
)

logger = logging.getLogger(__name__)


class ChatSession:
    """Holds a private message history and issues requests against it.

    The history only grows through successful turns; a failed or abandoned
    request leaves it untouched.
    """

    def __init__(
        self,
        provider: TextGenerationProvider | None,
        model: str,
        *,
        history: list[Message] | None = None,
        capabilities: CapabilityFlags | None = None,
        system_prompt: str | None = None,
        context_builder: ContextBuilder | None = None,
    ) -> None:
        self.provider = provider
        self.model = model
        self.capabilities = capabilities or get_model_capabilities(model)
        self.system_prompt = system_prompt
        self._history = [m.model_copy(deep=True) for m in history or []]
        self._builder = context_builder or ContextBuilder()
        self._closed = False
        self.last_context_usage: ContextUsage | None = None

    @property
    def history(self) -> list[Message]:
        return [m.model_copy(deep=True) for m in self._history]

    def reconfigure(
        self,
        *,
        provider: TextGenerationProvider | None = None,
        model: str | None = None,
        capabilities: CapabilityFlags | None = None,
    ) -> None:
        """Switch provider, model or capabilities for subsequent turns."""
        if provider is not None:
            self.provider = provider
        if model is not None:
            self.model = model
            if capabilities is None:
                self.capabilities = get_model_capabilities(model)
        if capabilities is not None:
            self.capabilities = capabilities

    def build_request(
        self,
        message: str,
        attachments: list[Attachment] | None = None,
        documents: list[Attachment] | None = None,
    ) -> GenerationRequest:
        if self._closed:
            raise UpstreamFailureError("Session has been closed")
        if self.provider is None:
            raise UpstreamFailureError("No provider configured for this session")
        payload, usage = self._builder.build(
            self._history,
            model_context_limit=get_model_context_limit(self.model),
        )
        self.last_context_usage = usage
        return GenerationRequest(
            model=self.model,
            history=payload,
            prompt=message,
            attachments=attachments or [],
            documents=documents or [],
            system_prompt=self.system_prompt,
            capabilities=self.capabilities,
        )

    async def send(
        self,
        message: str,
        attachments: list[Attachment] | None = None,
        documents: list[Attachment] | None = None,
    ) -> GenerationResult:
        request = self.build_request(message, attachments, documents)
        result = await self.provider.generate(request)
        self._record_turn(message, attachments, compose_content(result.thoughts, result.content))
        return result

    async def stream(
        self,
        message: str,
        attachments: list[Attachment] | None = None,
        documents: list[Attachment] | None = None,
    ) -> AsyncIterator[StreamEvent]:
        """Yield events from the provider; record the turn on completion."""
        request = self.build_request(message, attachments, documents)
        thoughts = ""
        answer = ""
        async for event in self.provider.generate_stream(request):
            if event.type == "error":
                raise UpstreamFailureError(event.content)
            if event.type == "thought":
                thoughts += event.content
            elif event.type == "message":
                answer += event.content
            elif event.type == "complete":
                self._record_turn(message, attachments, compose_content(thoughts, answer))
            yield event

    def close(self) -> None:
        self._closed = True
        self._history.clear()

    def _record_turn(
        self, message: str, attachments: list[Attachment] | None, response: str
    ) -> None:
        self._history.append(
            Message(role="user", content=message, attachments=list(attachments or []))
        )
        self._history.append(Message(role="model", content=response, model_id=self.model))


SessionFactory = Callable[..., ChatSession]


class RegistrySessionFactory:
    """Creates sessions against a registered provider by name.

    A provider passed at call time wins over the configured name. When neither
    resolves, the session is created without one and the first request fails
    as an upstream error.
    """

    def __init__(
        self,
        provider_name: str,
        model: str,
        *,
        system_prompt: str | None = None,
    ) -> None:
        self.provider_name = provider_name
        self.model = model
        self.system_prompt = system_prompt

    def __call__(
        self,
        node_id: str,
        history: list[Message],
        *,
        provider: TextGenerationProvider | None = None,
        model: str | None = None,
    ) -> ChatSession:
        logger.debug("Opening session for node %s (%d messages)", node_id, len(history))
        if provider is None:
            try:
                provider = get_provider(self.provider_name)
            except ProviderNotFoundError as e:
                logger.warning("Session for %s has no provider: %s", node_id, e)
        return ChatSession(
            provider,
            model or self.model,
            history=history,
            system_prompt=self.system_prompt,
        )
