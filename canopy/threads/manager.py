"""Thread context manager: one isolated session per node, with document inheritance.

A branched node gets its thread at branch time, seeded from the path it can
see and a one-time snapshot of the parent thread's documents. Other nodes get
one lazily on their first turn. Nothing added to the parent afterwards
reaches the child.
"""

import logging
from collections.abc import AsyncIterator
from dataclasses import dataclass, field

from canopy.models import Attachment, Message, StreamEvent, compose_content
from canopy.providers.base import (
    ContentPolicyViolationError,
    InvalidCredentialError,
    TextGenerationProvider,
    UpstreamError,
    UpstreamFailureError,
)
from canopy.threads.documents import extract_documents, filter_documents, merge_documents
from canopy.threads.session import ChatSession, SessionFactory

logger = logging.getLogger(__name__)

# Substrings that identify failures coming from providers without typed errors
_CREDENTIAL_MARKERS = ("api key not valid", "invalid api key", "invalid x-api-key")
_POLICY_MARKERS = ("request had content", "safety", "content policy")


@dataclass
class Thread:
    node_id: str
    session: ChatSession
    document_context: list[Attachment] = field(default_factory=list)
    parent_thread_id: str | None = None
    inherited_documents: list[Attachment] = field(default_factory=list)
    is_loading: bool = False

    def effective_documents(self) -> list[Attachment]:
        return merge_documents(self.document_context, self.inherited_documents)


class ThreadContextManager:
    """Maps node id → Thread and routes turns to the right session."""

    def __init__(self, session_factory: SessionFactory) -> None:
        self._session_factory = session_factory
        self._threads: dict[str, Thread] = {}

    def has_thread(self, node_id: str) -> bool:
        return node_id in self._threads

    def get_thread(self, node_id: str) -> Thread:
        try:
            return self._threads[node_id]
        except KeyError:
            raise ThreadNotFoundError(node_id)

    def threads(self) -> list[str]:
        return list(self._threads)

    def resolve_thread(
        self,
        node_id: str,
        history: list[Message],
        parent_id: str | None = None,
        *,
        provider: TextGenerationProvider | None = None,
        model: str | None = None,
    ) -> Thread:
        """Return node_id's thread, creating it (with inheritance) if needed.

        provider and model only apply to a newly created session.
        """
        existing = self._threads.get(node_id)
        if existing is not None:
            return existing

        current = extract_documents(history)
        inherited: list[Attachment] = []
        parent = self._threads.get(parent_id) if parent_id else None
        if parent is not None:
            inherited = [d.model_copy() for d in parent.effective_documents()]
            logger.info(
                "Inheriting %d documents from %s into %s",
                len(inherited), parent_id, node_id,
            )

        # Own documents take precedence over inherited ones with the same key
        own_keys = {d.document_key for d in current}
        inherited = [d for d in inherited if d.document_key not in own_keys]

        thread = Thread(
            node_id=node_id,
            session=self._session_factory(
                node_id, history, provider=provider, model=model
            ),
            document_context=current,
            parent_thread_id=parent_id if parent is not None else None,
            inherited_documents=inherited,
        )
        self._threads[node_id] = thread
        logger.info(
            "Thread created for %s: %d own documents, %d inherited",
            node_id, len(current), len(inherited),
        )
        return thread

    def branch_thread(self, source_id: str, new_id: str, history: list[Message]) -> Thread:
        return self.resolve_thread(new_id, history, parent_id=source_id)

    def refresh_documents(self, node_id: str, history: list[Message]) -> Thread:
        """Merge any documents in history not yet in the thread. Append-only."""
        thread = self.get_thread(node_id)
        before = len(thread.document_context)
        thread.document_context = merge_documents(
            thread.document_context, extract_documents(history)
        )
        added = len(thread.document_context) - before
        if added:
            logger.info("Added %d documents to thread %s", added, node_id)
        return thread

    def document_context(self, node_id: str) -> list[Attachment]:
        thread = self._threads.get(node_id)
        if thread is None:
            return []
        return thread.effective_documents()

    async def send_turn(
        self,
        node_id: str,
        message: str,
        attachments: list[Attachment] | None = None,
    ) -> str:
        """Send one turn and return the model's (composite) response text."""
        thread = self._prepare_turn(node_id, attachments)
        thread.is_loading = True
        try:
            result = await thread.session.send(
                message, attachments, documents=thread.effective_documents()
            )
        except UpstreamError as e:
            logger.error("Turn failed on %s: %s", node_id, e)
            raise
        except Exception as e:
            raise self._translate_error(node_id, e) from e
        finally:
            thread.is_loading = False
        return compose_content(result.thoughts, result.content)

    async def stream_turn(
        self,
        node_id: str,
        message: str,
        attachments: list[Attachment] | None = None,
    ) -> AsyncIterator[StreamEvent]:
        """Streaming form of send_turn. Errors are raised, not yielded."""
        thread = self._prepare_turn(node_id, attachments)
        thread.is_loading = True
        try:
            async for event in thread.session.stream(
                message, attachments, documents=thread.effective_documents()
            ):
                yield event
        except UpstreamError as e:
            logger.error("Turn failed on %s: %s", node_id, e)
            raise
        except Exception as e:
            raise self._translate_error(node_id, e) from e
        finally:
            thread.is_loading = False

    def dispose(self, node_id: str) -> None:
        thread = self._threads.pop(node_id, None)
        if thread is None:
            return
        thread.session.close()
        logger.info(
            "Disposed thread %s (%d documents, %d inherited)",
            node_id, len(thread.document_context), len(thread.inherited_documents),
        )

    def dispose_many(self, node_ids: list[str]) -> None:
        for node_id in node_ids:
            self.dispose(node_id)

    def dispose_all(self) -> None:
        logger.info("Clearing %d threads", len(self._threads))
        for thread in self._threads.values():
            thread.session.close()
        self._threads.clear()

    def _prepare_turn(self, node_id: str, attachments: list[Attachment] | None) -> Thread:
        thread = self.get_thread(node_id)
        new_docs = filter_documents(attachments or [])
        if new_docs:
            thread.document_context = merge_documents(thread.document_context, new_docs)
        return thread

    @staticmethod
    def _translate_error(node_id: str, error: Exception) -> UpstreamError:
        logger.error("Turn failed on %s with unexpected error: %r", node_id, error)
        text = str(error).lower()
        if any(marker in text for marker in _CREDENTIAL_MARKERS):
            return InvalidCredentialError(str(error))
        if any(marker in text for marker in _POLICY_MARKERS):
            return ContentPolicyViolationError(str(error))
        return UpstreamFailureError(str(error))


class ThreadNotFoundError(Exception):
    def __init__(self, node_id: str) -> None:
        self.node_id = node_id
        super().__init__(f"No chat thread found for node {node_id}")
