"""Anthropic (Claude) provider implementation."""

import logging
import time
from collections.abc import AsyncIterator
from typing import Any

import anthropic
from anthropic import AsyncAnthropic

from canopy.models import Attachment, StreamEvent
from canopy.providers.base import (
    ContentPolicyViolationError,
    GenerationRequest,
    GenerationResult,
    InvalidCredentialError,
    TextGenerationProvider,
    UpstreamFailureError,
    request_turns,
)

logger = logging.getLogger(__name__)

DEFAULT_THINKING_BUDGET = 2048


class AnthropicProvider(TextGenerationProvider):
    """Provider backed by Anthropic's Messages API."""

    suggested_models = [
        "claude-sonnet-4-5-20250929",
        "claude-opus-4-6",
        "claude-haiku-4-5-20251001",
    ]

    def __init__(self, client: AsyncAnthropic) -> None:
        self._client = client

    @property
    def name(self) -> str:
        return "anthropic"

    async def generate(self, request: GenerationRequest) -> GenerationResult:
        params = self._build_params(request)
        start = time.monotonic()
        try:
            response = await self._client.messages.create(**params)
        except anthropic.APIError as e:
            raise self._translate_error(e) from e
        latency_ms = int((time.monotonic() - start) * 1000)

        if response.stop_reason == "refusal":
            raise ContentPolicyViolationError("Model refused the request")

        thoughts, content = self._extract_text(response)
        return GenerationResult(
            content=content,
            thoughts=thoughts or None,
            model=response.model,
            finish_reason=response.stop_reason,
            usage={
                "input_tokens": response.usage.input_tokens,
                "output_tokens": response.usage.output_tokens,
            },
            latency_ms=latency_ms,
        )

    async def generate_stream(
        self, request: GenerationRequest
    ) -> AsyncIterator[StreamEvent]:
        params = self._build_params(request)
        stop_reason: str | None = None

        try:
            stream = await self._client.messages.create(**params, stream=True)
            async for event in stream:
                if event.type == "content_block_delta":
                    delta_type = getattr(event.delta, "type", None)
                    if delta_type == "thinking_delta":
                        yield StreamEvent(type="thought", content=event.delta.thinking)
                    elif delta_type == "text_delta":
                        yield StreamEvent(type="message", content=event.delta.text)
                elif event.type == "message_delta":
                    stop_reason = event.delta.stop_reason
        except anthropic.APIError as e:
            raise self._translate_error(e) from e

        if stop_reason == "refusal":
            raise ContentPolicyViolationError("Model refused the request")
        yield StreamEvent(type="complete")

    @staticmethod
    def _translate_error(error: anthropic.APIError) -> Exception:
        if isinstance(error, anthropic.AuthenticationError):
            return InvalidCredentialError(str(error))
        if isinstance(error, anthropic.PermissionDeniedError):
            return ContentPolicyViolationError(str(error))
        return UpstreamFailureError(str(error))

    @classmethod
    def _build_params(cls, request: GenerationRequest) -> dict[str, Any]:
        """Build kwargs dict for client.messages.create()."""
        caps = request.capabilities
        params: dict[str, Any] = {
            "model": request.model,
            "max_tokens": caps.max_tokens,
            "messages": [cls._to_message(turn) for turn in request_turns(request)],
        }
        if request.system_prompt is not None:
            params["system"] = request.system_prompt
        if caps.thinking:
            budget = caps.thinking_budget or DEFAULT_THINKING_BUDGET
            params["thinking"] = {"type": "enabled", "budget_tokens": budget}
            # max_tokens must leave room for the answer after the budget
            params["max_tokens"] = max(caps.max_tokens, budget + 1024)
        elif caps.temperature is not None:
            params["temperature"] = caps.temperature
        return params

    @classmethod
    def _to_message(cls, turn: dict[str, Any]) -> dict[str, Any]:
        role = "assistant" if turn["role"] == "model" else "user"
        attachments: list[Attachment] = turn.get("attachments") or []
        if not attachments:
            return {"role": role, "content": turn["content"]}

        blocks = [b for b in (cls._to_block(att) for att in attachments) if b is not None]
        if turn["content"]:
            blocks.append({"type": "text", "text": turn["content"]})
        return {"role": role, "content": blocks}

    @staticmethod
    def _to_block(att: Attachment) -> dict[str, Any] | None:
        mime = att.mime_type.lower()
        if mime == "application/pdf":
            return {
                "type": "document",
                "title": att.name,
                "source": {"type": "base64", "media_type": "application/pdf", "data": att.raw_data},
            }
        if att.is_document:
            return {
                "type": "document",
                "title": att.name,
                "source": {"type": "text", "media_type": "text/plain", "data": att.decoded_text()},
            }
        if mime.startswith("image/"):
            return {
                "type": "image",
                "source": {"type": "base64", "media_type": mime, "data": att.raw_data},
            }
        logger.warning("Skipping unsupported attachment %s (%s)", att.name, att.mime_type)
        return None

    @staticmethod
    def _extract_text(response: Any) -> tuple[str, str]:
        """Split an Anthropic Message into (thinking, text)."""
        thoughts: list[str] = []
        parts: list[str] = []
        for block in response.content:
            if block.type == "thinking":
                thoughts.append(block.thinking)
            elif block.type == "text":
                parts.append(block.text)
        return "".join(thoughts), "".join(parts)
