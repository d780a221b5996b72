"""Background label generation for nodes.

Titles are produced off the critical path of a turn. The task only ever
writes a node's label; on any failure it falls back to a local summary.
"""

import asyncio
import logging

from canopy.models import DEFAULT_BRANCH_LABEL, Message, split_content
from canopy.providers.base import GenerationRequest, TextGenerationProvider
from canopy.trees.store import TreeStore

logger = logging.getLogger(__name__)

MAX_TITLE_LENGTH = 30
TITLE_SYSTEM_PROMPT = (
    "You name conversations. Reply with a short title of at most 5 words. "
    "No quotes, no punctuation at the end, no preamble."
)


def truncate_title(text: str, limit: int = MAX_TITLE_LENGTH) -> str:
    text = " ".join(text.split())
    if len(text) <= limit:
        return text
    return text[: limit - 3] + "..."


def fallback_title(messages: list[Message]) -> str:
    """Deterministic label from the newest message with any text."""
    for message in reversed(messages):
        text = split_content(message.content).answer.strip()
        if text:
            return truncate_title(text)
    return DEFAULT_BRANCH_LABEL


class TitleGenerator:
    """Relabels nodes in the background. Without a provider every title is the
    local fallback.
    """

    def __init__(self, provider: TextGenerationProvider | None, model: str) -> None:
        self.provider = provider
        self.model = model
        self._tasks: set[asyncio.Task] = set()

    async def generate_title(self, messages: list[Message]) -> str:
        """Ask the provider for a title; fall back locally on any failure."""
        if not messages:
            return DEFAULT_BRANCH_LABEL
        if self.provider is None:
            return fallback_title(messages)
        try:
            result = await self.provider.generate(
                GenerationRequest(
                    model=self.model,
                    prompt=self._build_prompt(messages),
                    system_prompt=TITLE_SYSTEM_PROMPT,
                )
            )
        except Exception as e:
            logger.warning("Title generation failed, using fallback: %s", e)
            return fallback_title(messages)

        title = result.content.strip().strip("\"'").strip()
        if not title:
            return fallback_title(messages)
        return truncate_title(title)

    def schedule(self, store: TreeStore, node_id: str) -> asyncio.Task:
        """Start a detached task that relabels node_id. Never awaited by the turn."""
        messages = store.get_node(node_id).chat_history
        task = asyncio.create_task(self._relabel(store, node_id, messages))
        self._tasks.add(task)
        task.add_done_callback(self._tasks.discard)
        return task

    async def drain(self) -> None:
        """Wait for all pending title tasks. Used at shutdown and in tests."""
        if self._tasks:
            await asyncio.gather(*list(self._tasks), return_exceptions=True)

    async def _relabel(self, store: TreeStore, node_id: str, messages: list[Message]) -> None:
        try:
            title = await self.generate_title(messages)
        except Exception:
            logger.exception("Title task for %s failed", node_id)
            title = fallback_title(messages)
        # The node may have been deleted or reset while the title was in flight
        if not store.has_node(node_id):
            logger.debug("Node %s removed before its title arrived", node_id)
            return
        current = store.get_node(node_id).chat_history
        if current[: len(messages)] != messages:
            logger.debug("Node %s changed before its title arrived", node_id)
            return
        store.set_label(node_id, title)
        logger.info("Relabelled %s: %r", node_id, title)

    @staticmethod
    def _build_prompt(messages: list[Message]) -> str:
        lines = []
        doc_types: set[str] = set()
        for message in messages:
            text = split_content(message.content).answer
            role = "User" if message.role == "user" else "Assistant"
            lines.append(f"{role}: {text}")
            doc_types.update(a.mime_type for a in message.attachments if a.is_document)
        prompt = "Title this conversation:\n\n" + "\n".join(lines)
        if doc_types:
            prompt += "\n\nThe conversation includes documents of type: " + ", ".join(
                sorted(doc_types)
            )
        return prompt
