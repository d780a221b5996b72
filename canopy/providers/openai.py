"""OpenAI provider, usable with any endpoint that speaks chat completions.

Handles parameter building, attachment rendering, streaming, and error
translation. Pass base_url to point it at a compatible server.
"""

import logging
import time
from collections.abc import AsyncIterator
from typing import Any

import openai
from openai import AsyncOpenAI

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

_POLICY_CODES = {"content_policy_violation", "content_filter"}


class OpenAIProvider(TextGenerationProvider):
    """Provider backed by OpenAI's Chat Completions API."""

    suggested_models = [
        "gpt-4o",
        "gpt-4o-mini",
        "gpt-4o-audio-preview",
        "o4-mini",
    ]

    def __init__(
        self,
        *,
        client: AsyncOpenAI | None = None,
        api_key: str | None = None,
        base_url: str | None = None,
    ) -> None:
        self._client = client or AsyncOpenAI(api_key=api_key, base_url=base_url)

    @property
    def name(self) -> str:
        return "openai"

    async def generate(self, request: GenerationRequest) -> GenerationResult:
        params = self._build_params(request)
        start = time.monotonic()
        try:
            response = await self._client.chat.completions.create(**params)
        except openai.APIError as e:
            raise self._translate_error(e) from e
        latency_ms = int((time.monotonic() - start) * 1000)

        choice = response.choices[0]
        if choice.finish_reason == "content_filter":
            raise ContentPolicyViolationError("Response was filtered")

        audio = getattr(choice.message, "audio", None)
        usage = None
        if response.usage is not None:
            usage = {
                "input_tokens": response.usage.prompt_tokens,
                "output_tokens": response.usage.completion_tokens,
            }
        return GenerationResult(
            content=choice.message.content or (audio.transcript if audio else ""),
            thoughts=getattr(choice.message, "reasoning_content", None),
            model=response.model,
            finish_reason=choice.finish_reason,
            usage=usage,
            latency_ms=latency_ms,
            audio_data=audio.data if audio else None,
        )

    async def generate_stream(
        self, request: GenerationRequest
    ) -> AsyncIterator[StreamEvent]:
        if request.capabilities.audio_output:
            # Audio arrives whole; replay the full result as events
            result = await self.generate(request)
            if result.thoughts:
                yield StreamEvent(type="thought", content=result.thoughts)
            if result.content:
                yield StreamEvent(type="message", content=result.content)
            yield StreamEvent(type="complete", audio_data=result.audio_data)
            return

        params = self._build_params(request)
        params["stream"] = True

        try:
            stream = await self._client.chat.completions.create(**params)
            async for chunk in stream:
                if not chunk.choices:
                    continue
                choice = chunk.choices[0]
                delta = choice.delta
                # Compatible servers expose reasoning as reasoning_content
                reasoning = getattr(delta, "reasoning_content", None)
                if isinstance(reasoning, str) and reasoning:
                    yield StreamEvent(type="thought", content=reasoning)
                if delta.content:
                    yield StreamEvent(type="message", content=delta.content)
                if choice.finish_reason == "content_filter":
                    raise ContentPolicyViolationError("Response was filtered")
        except openai.APIError as e:
            raise self._translate_error(e) from e

        yield StreamEvent(type="complete")

    @staticmethod
    def _translate_error(error: openai.APIError) -> Exception:
        if isinstance(error, openai.AuthenticationError):
            return InvalidCredentialError(str(error))
        if isinstance(error, openai.PermissionDeniedError):
            return ContentPolicyViolationError(str(error))
        if getattr(error, "code", None) in _POLICY_CODES:
            return ContentPolicyViolationError(str(error))
        return UpstreamFailureError(str(error))

    @classmethod
    def _build_params(cls, request: GenerationRequest) -> dict[str, Any]:
        """Build kwargs dict for client.chat.completions.create()."""
        caps = request.capabilities
        messages: list[dict[str, Any]] = []

        # System prompt → prepended as system message
        if request.system_prompt is not None:
            messages.append({"role": "system", "content": request.system_prompt})
        messages.extend(cls._to_message(turn) for turn in request_turns(request))

        params: dict[str, Any] = {
            "model": request.model,
            "max_tokens": caps.max_tokens,
            "messages": messages,
        }
        if caps.temperature is not None:
            params["temperature"] = caps.temperature
        if caps.audio_output:
            params["modalities"] = ["text", "audio"]
            params["audio"] = {"voice": "alloy", "format": "wav"}
        return params

    @classmethod
    def _to_message(cls, turn: dict[str, Any]) -> dict[str, Any]:
        role = "assistant" if turn["role"] == "model" else "user"
        attachments: list[Attachment] = turn.get("attachments") or []
        if role == "assistant" or not attachments:
            return {"role": role, "content": turn["content"]}

        parts = [p for p in (cls._to_part(att) for att in attachments) if p is not None]
        if turn["content"]:
            parts.append({"type": "text", "text": turn["content"]})
        return {"role": role, "content": parts}

    @staticmethod
    def _to_part(att: Attachment) -> dict[str, Any] | None:
        mime = att.mime_type.lower()
        if mime == "application/pdf":
            return {
                "type": "file",
                "file": {
                    "filename": att.name,
                    "file_data": f"data:application/pdf;base64,{att.raw_data}",
                },
            }
        if att.is_document:
            return {"type": "text", "text": f"[{att.name}]\n{att.decoded_text()}"}
        if mime.startswith("image/"):
            return {
                "type": "image_url",
                "image_url": {"url": f"data:{mime};base64,{att.raw_data}"},
            }
        logger.warning("Skipping unsupported attachment %s (%s)", att.name, att.mime_type)
        return None
