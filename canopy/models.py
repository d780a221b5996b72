"""Canonical data structures for Canopy.

Defined once here, referenced everywhere else. The tree (nodes, edges, active
node) is the persisted aggregate; messages live inside nodes. Model content may
carry a thoughts/answer composite, which is parsed into ComposedContent at the
edges of the system.
"""

import base64
import binascii
import re
from typing import Literal

from pydantic import BaseModel, Field

ROOT_NODE_ID = "root"
ROOT_LABEL = "Start your conversation"
DEFAULT_BRANCH_LABEL = "New Chat"

THOUGHTS_MARKER = "Thoughts:"
ANSWER_SEPARATOR = "\n---\nAnswer:"

# Markdown form written by earlier clients: **Thoughts:**\n...\n\n---\n\n**Answer:**\n...
_LEGACY_COMPOSITE = re.compile(
    r"^\*\*Thoughts:\*\*\n(?P<thoughts>.*?)\n\n---\n\n\*\*Answer:\*\*\n(?P<answer>.*)$",
    re.DOTALL,
)

DOCUMENT_CODE_TYPES = ("javascript", "typescript", "python", "json", "x-sh")

# ---------------------------------------------------------------------------
# Messages and attachments
# ---------------------------------------------------------------------------


class Attachment(BaseModel):
    name: str
    mime_type: str
    data: str  # base64, optionally with a data: URL prefix
    preview_url: str = ""

    @property
    def is_document(self) -> bool:
        """PDFs, text files, and a handful of code types. Never images or audio."""
        mime = self.mime_type.lower()
        if mime == "application/pdf" or mime.startswith("text/"):
            return True
        return any(code in mime for code in DOCUMENT_CODE_TYPES)

    @property
    def document_key(self) -> tuple[str, str]:
        return (self.name, self.mime_type)

    @property
    def raw_data(self) -> str:
        """Base64 payload without any data: URL prefix."""
        if self.data.startswith("data:") and "," in self.data:
            return self.data.split(",", 1)[1]
        return self.data

    def decoded_text(self) -> str:
        """Text documents travel base64-encoded; fall back to the raw string."""
        try:
            return base64.b64decode(self.raw_data, validate=True).decode("utf-8", errors="replace")
        except (binascii.Error, ValueError):
            return self.raw_data


class Message(BaseModel):
    role: Literal["user", "model"]
    content: str
    attachments: list[Attachment] = Field(default_factory=list)
    model_id: str | None = None


class ComposedContent(BaseModel):
    """Tagged form of a model turn: optional reasoning plus the answer."""

    thoughts: str | None = None
    answer: str


def compose_content(thoughts: str | None, answer: str) -> str:
    """Encode thoughts + answer as the stored composite string."""
    if thoughts:
        return f"{THOUGHTS_MARKER}{thoughts}{ANSWER_SEPARATOR}{answer}"
    return answer


def split_content(content: str) -> ComposedContent:
    """Parse stored content back into thoughts and answer.

    Accepts the current composite, a thoughts-only placeholder written while a
    response is still streaming, and the older markdown composite.
    """
    legacy = _LEGACY_COMPOSITE.match(content)
    if legacy:
        return ComposedContent(thoughts=legacy["thoughts"], answer=legacy["answer"])
    if not content.startswith(THOUGHTS_MARKER):
        return ComposedContent(answer=content)

    body = content[len(THOUGHTS_MARKER):]
    thoughts, sep, answer = body.partition(ANSWER_SEPARATOR)
    if not sep:
        return ComposedContent(thoughts=body, answer="")
    return ComposedContent(thoughts=thoughts, answer=answer)


# ---------------------------------------------------------------------------
# Tree structure
# ---------------------------------------------------------------------------


class Position(BaseModel):
    x: float = 0.0
    y: float = 0.0


class Node(BaseModel):
    id: str
    label: str
    chat_history: list[Message] = Field(default_factory=list)
    position: Position = Field(default_factory=Position)
    # How many of the parent's messages this node sees. None on root and on
    # trees saved before branch points were recorded.
    branch_point: int | None = None


class Edge(BaseModel):
    id: str
    source: str
    target: str


class ActivePath(BaseModel):
    """Root-first node ids plus the edges connecting them. Presentation only."""

    node_ids: list[str]
    edge_ids: list[str]


class TreeSnapshot(BaseModel):
    """The whole tree as persisted by the blob store."""

    nodes: list[Node]
    edges: list[Edge]
    active_node_id: str | None = None


# ---------------------------------------------------------------------------
# Generation
# ---------------------------------------------------------------------------


class CapabilityFlags(BaseModel):
    thinking: bool = False
    thinking_budget: int | None = None
    audio_output: bool = False
    documents: bool = True
    max_tokens: int = 4096
    temperature: float | None = None


class ContextUsage(BaseModel):
    total_tokens: int
    max_tokens: int
    breakdown: dict[str, int]  # by role: user, model
    dropped_count: int = 0
    dropped_tokens: int = 0


class StreamEvent(BaseModel):
    """One incremental record of a streamed response."""

    type: Literal["thought", "message", "complete", "error"]
    content: str = ""
    audio_data: str | None = Field(default=None, alias="audioData")

    model_config = {"populate_by_name": True}
