"""
Model Gateway

Thin async wrapper around the OpenAI SDK. Component code talks to this gateway
rather than to AsyncOpenAI directly so that the reasoning tier, grounding and
cached-context handling of a responder are applied in exactly one place.

Cached contexts are implemented with OpenAI prompt caching: the combined
system instruction of every responder on a model is sent as an identical
prefix together with a stable `prompt_cache_key`, which keeps the prefix warm
on the provider side.
"""

import logging
import time
import uuid
from dataclasses import dataclass, field
from typing import AsyncIterator, Dict, List, Optional

from openai import AsyncOpenAI

from multi_ai_tutor.config import TutorSettings, get_settings
from multi_ai_tutor.errors import UpstreamServiceError
from multi_ai_tutor.responders import (
    ReasoningTier,
    Responder,
    is_grounded,
    model_for,
    reasoning_tier,
)

logger = logging.getLogger(__name__)


@dataclass
class CachedContext:
    """Handle for a provider-side cached system instruction."""
    name: str
    model_id: str
    system_instruction: str
    ttl_seconds: int
    created_at: float = field(default_factory=time.time)


@dataclass
class PromptInput:
    """Dynamic (per-turn) part of a model request."""
    text: str
    image_base64: Optional[str] = None
    image_mime_type: Optional[str] = None


class ModelGateway:
    """Chat, streaming and transcription calls with responder-aware settings."""

    def __init__(self, client: Optional[AsyncOpenAI] = None, settings: Optional[TutorSettings] = None):
        self.settings = settings or get_settings()
        if client is None:
            if not self.settings.openai_api_key:
                raise ValueError("OPENAI_API_KEY not found in environment variables")
            client = AsyncOpenAI(api_key=self.settings.openai_api_key)
        self.client = client

    def _build_request(
        self,
        responder: Responder,
        prompt: PromptInput,
        system_prompt: str,
        cache_handle: Optional[CachedContext] = None,
        json_mode: bool = True,
        reasoning: Optional[ReasoningTier] = None,
    ) -> Dict:
        model_id = model_for(responder, self.settings)
        if cache_handle is not None and cache_handle.model_id != model_id:
            logger.debug(
                f"[ModelGateway] Ignoring cache {cache_handle.name} for {responder.value}: "
                f"built for {cache_handle.model_id}, request uses {model_id}"
            )
            cache_handle = None

        user_text = prompt.text
        if cache_handle is not None:
            # Shared instruction covers every responder on this model
            system_text = cache_handle.system_instruction
            user_text = f"ACTIVE AGENT: {responder.value}\n\n{prompt.text}"
        else:
            system_text = system_prompt

        if prompt.image_base64:
            user_content = [
                {"type": "text", "text": user_text},
                {
                    "type": "image_url",
                    "image_url": {"url": f"data:{prompt.image_mime_type};base64,{prompt.image_base64}"},
                },
            ]
        else:
            user_content = user_text

        messages: List[Dict] = [
            {"role": "system", "content": system_text},
            {"role": "user", "content": user_content},
        ]

        request: Dict = {"model": model_id, "messages": messages}
        if is_grounded(responder):
            # Search models reject reasoning_effort and response_format
            request["web_search_options"] = {}
        else:
            request["reasoning_effort"] = (reasoning or reasoning_tier(responder)).value
            if json_mode:
                request["response_format"] = {"type": "json_object"}

        if cache_handle is not None:
            request["extra_body"] = {"prompt_cache_key": cache_handle.name}
        return request

    async def stream_text(
        self,
        responder: Responder,
        prompt: PromptInput,
        system_prompt: str,
        cache_handle: Optional[CachedContext] = None,
    ) -> AsyncIterator[str]:
        """
        Stream the raw text of a JSON teaching response.

        Yields:
            Content deltas as they arrive

        Raises:
            UpstreamServiceError: if the request or the stream fails
        """
        request = self._build_request(responder, prompt, system_prompt, cache_handle)
        try:
            stream = await self.client.chat.completions.create(stream=True, **request)
            async for chunk in stream:
                if chunk.choices and len(chunk.choices) > 0:
                    delta = chunk.choices[0].delta
                    if delta and delta.content:
                        yield delta.content
        except Exception as e:
            raise UpstreamServiceError(f"Streaming call failed for {responder.value}: {e}") from e

    async def generate_text(
        self,
        responder: Responder,
        prompt: PromptInput,
        system_prompt: str,
        cache_handle: Optional[CachedContext] = None,
        json_mode: bool = True,
        reasoning: Optional[ReasoningTier] = None,
    ) -> str:
        """
        Single-shot (non-streaming) call.

        Returns:
            Raw message content

        Raises:
            UpstreamServiceError: if the request fails or returns nothing
        """
        request = self._build_request(
            responder, prompt, system_prompt, cache_handle, json_mode=json_mode, reasoning=reasoning
        )
        try:
            response = await self.client.chat.completions.create(**request)
        except Exception as e:
            raise UpstreamServiceError(f"Model call failed for {responder.value}: {e}") from e

        content = response.choices[0].message.content if response.choices else None
        if not content:
            raise UpstreamServiceError(f"Model returned empty content for {responder.value}")
        return content

    async def transcribe(self, audio_bytes: bytes, mime_type: str) -> str:
        """
        Transcribe learner audio to text.

        Raises:
            UpstreamServiceError: if transcription fails
        """
        extension = (mime_type.split("/")[-1].split(";")[0] or "webm").strip()
        try:
            result = await self.client.audio.transcriptions.create(
                model=self.settings.transcribe_model,
                file=(f"turn.{extension}", audio_bytes, mime_type),
            )
        except Exception as e:
            raise UpstreamServiceError(f"Transcription failed: {e}") from e
        return (result.text or "").strip()


class OpenAIPromptCacheBackend:
    """
    Creates and renews prompt-cache entries.

    Priming sends the instruction once with a tiny completion limit so the
    provider caches the prefix under `prompt_cache_key`.
    """

    PRIME_MAX_TOKENS = 16

    def __init__(self, client: AsyncOpenAI):
        self.client = client

    async def _prime(self, model_id: str, name: str, system_instruction: str):
        await self.client.chat.completions.create(
            model=model_id,
            messages=[{"role": "system", "content": system_instruction}],
            max_completion_tokens=self.PRIME_MAX_TOKENS,
            extra_body={"prompt_cache_key": name},
        )

    async def create(self, model_id: str, system_instruction: str, ttl_seconds: int) -> CachedContext:
        name = f"tutor-{model_id}-{uuid.uuid4().hex[:8]}"
        await self._prime(model_id, name, system_instruction)
        logger.info(f"✅ [PromptCache] Primed cache {name} ({len(system_instruction)} chars)")
        return CachedContext(
            name=name,
            model_id=model_id,
            system_instruction=system_instruction,
            ttl_seconds=ttl_seconds,
        )

    async def renew(self, handle: CachedContext) -> CachedContext:
        await self._prime(handle.model_id, handle.name, handle.system_instruction)
        return CachedContext(
            name=handle.name,
            model_id=handle.model_id,
            system_instruction=handle.system_instruction,
            ttl_seconds=handle.ttl_seconds,
        )

    async def delete(self, handle: CachedContext):
        # Provider entries expire on their own; only the local handle is dropped
        logger.debug(f"[PromptCache] Released {handle.name}")
