"""Newline-delimited framing for streamed response events.

Each record is one JSON object on its own line:
    {"type": "thought" | "message" | "complete" | "error", "content": str, "audioData"?: str}
The stream ends when the channel closes; there is no end-of-stream record.
"""

import codecs
import json
import logging
from collections.abc import AsyncIterable, AsyncIterator

from pydantic import ValidationError

from canopy.models import StreamEvent

logger = logging.getLogger(__name__)

MEDIA_TYPE = "application/x-ndjson"


def encode_event(event: StreamEvent) -> str:
    """Serialize one event as a single newline-terminated line."""
    record: dict[str, str] = {"type": event.type, "content": event.content}
    if event.audio_data:
        record["audioData"] = event.audio_data
    return json.dumps(record, ensure_ascii=False) + "\n"


def decode_line(line: str) -> StreamEvent | None:
    """Parse one record. Returns None (and logs) for malformed records."""
    line = line.strip()
    if not line:
        return None
    # Tolerate SSE-style "data: " prefixes from older servers
    if line.startswith("data: "):
        line = line[len("data: "):]
    try:
        return StreamEvent.model_validate(json.loads(line))
    except (ValueError, ValidationError):
        logger.warning("Skipping malformed stream record: %.200s", line)
        return None


async def decode_events(chunks: AsyncIterable[str | bytes]) -> AsyncIterator[StreamEvent]:
    """Decode a byte/text chunk stream into events.

    Chunks may split records anywhere; lines are reassembled before parsing.
    A trailing partial record is parsed when the stream closes.
    """
    decoder = codecs.getincrementaldecoder("utf-8")(errors="replace")
    buffer = ""
    async for chunk in chunks:
        buffer += decoder.decode(chunk) if isinstance(chunk, bytes) else chunk
        *lines, buffer = buffer.split("\n")
        for line in lines:
            event = decode_line(line)
            if event is not None:
                yield event
    if buffer.strip():
        event = decode_line(buffer)
        if event is not None:
            yield event
