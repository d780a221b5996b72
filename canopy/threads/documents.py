"""Document extraction and deduplication.

Documents are deduplicated by (name, mime type) only. Two different files
that share both collide and the first one wins.
"""

import logging
from collections.abc import Iterable

from canopy.models import Attachment, Message

logger = logging.getLogger(__name__)


def extract_documents(history: Iterable[Message]) -> list[Attachment]:
    """Document attachments from a message history, in order, deduplicated."""
    documents: list[Attachment] = []
    seen: set[tuple[str, str]] = set()
    for index, msg in enumerate(history):
        for att in msg.attachments:
            if not att.is_document or att.document_key in seen:
                continue
            seen.add(att.document_key)
            documents.append(att)
            logger.debug(
                "Document extracted from history: message=%d name=%s type=%s",
                index, att.name, att.mime_type,
            )
    return documents


def filter_documents(attachments: Iterable[Attachment]) -> list[Attachment]:
    return [att for att in attachments if att.is_document]


def merge_documents(
    existing: list[Attachment], incoming: Iterable[Attachment]
) -> list[Attachment]:
    """Append incoming documents whose key is not already present.

    Never removes or reorders existing entries. Returns a new list.
    """
    merged = list(existing)
    seen = {doc.document_key for doc in merged}
    for doc in incoming:
        if doc.document_key in seen:
            continue
        seen.add(doc.document_key)
        merged.append(doc)
    return merged
