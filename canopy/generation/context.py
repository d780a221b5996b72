"""Context assembly for a new turn.

ContextBuilder flattens the root-to-node message path into the ordered payload
sent to the generative-text service. It strips reasoning out of model turns,
skips failed-turn error messages, counts tokens, and drops whole messages from
the front when the path no longer fits the model's context window.
"""

from typing import Any

from canopy.generation.tokens import ApproximateTokenCounter, TokenCounter
from canopy.models import ContextUsage, Message, split_content
from canopy.trees.store import TreeStore

# Known model context limits (tokens). Falls back to DEFAULT for unknown models.
MODEL_CONTEXT_LIMITS: dict[str, int] = {
    # Anthropic
    "claude-opus-4-6": 200_000,
    "claude-sonnet-4-5-20250929": 200_000,
    "claude-haiku-4-5-20251001": 200_000,
    "claude-3-5-sonnet-20241022": 200_000,
    # OpenAI
    "gpt-4o": 128_000,
    "gpt-4o-mini": 128_000,
    "gpt-4-turbo": 128_000,
    "o4-mini": 200_000,
    "o3-mini": 200_000,
}
DEFAULT_CONTEXT_LIMIT = 200_000

ERROR_PREFIX = "Error: "


def get_model_context_limit(model: str) -> int:
    """Look up context limit for a model, falling back to a conservative default."""
    return MODEL_CONTEXT_LIMITS.get(model, DEFAULT_CONTEXT_LIMIT)


class ContextBuilder:
    """Assembles the history payload for a generation request.

    Payload entries are {"role", "content", "attachments"} dicts in
    conversation order. Attachments are carried as Attachment models so
    providers can render them in their own block format.
    """

    def __init__(self, counter: TokenCounter | None = None) -> None:
        self._counter = counter or ApproximateTokenCounter()

    def build(
        self,
        messages: list[Message],
        *,
        model_context_limit: int = DEFAULT_CONTEXT_LIMIT,
        include_thinking: bool = False,
    ) -> tuple[list[dict[str, Any]], ContextUsage]:
        """Build the payload with boundary-safe truncation.

        Returns (payload, context_usage).
        """
        payload: list[dict[str, Any]] = []
        for msg in messages:
            if msg.role == "model" and msg.content.startswith(ERROR_PREFIX):
                continue
            content = self._render_content(msg, include_thinking)
            if not content and not msg.attachments:
                continue
            payload.append({
                "role": msg.role,
                "content": content,
                "attachments": list(msg.attachments),
            })

        token_counts = [self._count_entry(entry) for entry in payload]
        total = sum(token_counts)

        dropped = 0
        dropped_tokens = 0
        # Oldest first, but never the final message
        while total > model_context_limit and len(payload) > 1:
            freed = token_counts.pop(0)
            payload.pop(0)
            total -= freed
            dropped += 1
            dropped_tokens += freed

        # Provider APIs require the conversation to open with a user turn
        while payload and payload[0]["role"] != "user":
            freed = token_counts.pop(0)
            payload.pop(0)
            total -= freed
            dropped += 1
            dropped_tokens += freed

        breakdown: dict[str, int] = {}
        for entry, tok in zip(payload, token_counts):
            breakdown[entry["role"]] = breakdown.get(entry["role"], 0) + tok

        usage = ContextUsage(
            total_tokens=total,
            max_tokens=model_context_limit,
            breakdown=breakdown,
            dropped_count=dropped,
            dropped_tokens=dropped_tokens,
        )
        return payload, usage

    @staticmethod
    def _render_content(msg: Message, include_thinking: bool) -> str:
        if msg.role != "model":
            return msg.content
        parts = split_content(msg.content)
        if include_thinking and parts.thoughts:
            return f"[Model thinking: {parts.thoughts}]\n\n{parts.answer}"
        return parts.answer

    def _count_entry(self, entry: dict[str, Any]) -> int:
        return self._counter.count_turn(entry["content"], entry["attachments"])


def assemble_history(
    store: TreeStore,
    node_id: str,
    *,
    model: str,
    include_thinking: bool = False,
    builder: ContextBuilder | None = None,
) -> tuple[list[dict[str, Any]], ContextUsage]:
    """Walk path(root, node_id) in the store and build its payload."""
    builder = builder or ContextBuilder()
    return builder.build(
        store.path_messages(node_id),
        model_context_limit=get_model_context_limit(model),
        include_thinking=include_thinking,
    )
