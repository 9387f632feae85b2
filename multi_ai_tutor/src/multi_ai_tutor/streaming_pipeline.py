"""
Streaming Response Pipeline

Produces a responder's reply (text + audio) with the lowest achievable
latency, demoting through three tiers on failure:

1. progressive  - stream the model output, detect the first complete sentence
                  of `audioText` while streaming and synthesize it immediately;
                  the remainder is synthesized once the stream completes
2. streaming    - stream the full reply, then synthesize it
3. single_shot  - one non-streaming call, then synthesize

Malformed model output counts as an upstream failure and demotes the tier.
"""

import asyncio
import json
import logging
import re
import time
from dataclasses import dataclass
from typing import Any, List, Optional, Tuple

from pydantic import BaseModel, ConfigDict, Field, ValidationError

from multi_ai_tutor.errors import (
    MalformedModelOutputError,
    ResponseGenerationError,
    UpstreamServiceError,
)
from multi_ai_tutor.llm_client import CachedContext, PromptInput
from multi_ai_tutor.responders import Responder

logger = logging.getLogger(__name__)

TIER_PROGRESSIVE = "progressive"
TIER_STREAMING = "streaming"
TIER_SINGLE_SHOT = "single_shot"

_AUDIO_FIELD_RE = re.compile(r'"audioText"\s*:\s*"((?:[^"\\]|\\.)*)(")?')
_FIRST_SENTENCE_RE = re.compile(r"^[^.!?]+[.!?]+(?=\s)")
_CODE_FENCE_RE = re.compile(r"^```(?:json)?\s*|\s*```$")
_SVG_BLOCK_RE = re.compile(r"\[SVG\](.*?)\[/SVG\]", re.IGNORECASE | re.DOTALL)
_RAW_SVG_RE = re.compile(r"<svg\b.*?</svg>", re.IGNORECASE | re.DOTALL)


class TeachingResponse(BaseModel):
    """Structured reply every teaching responder must return."""
    model_config = ConfigDict(populate_by_name=True, extra="ignore")

    audio_text: str = Field(default="", alias="audioText")
    display_text: str = Field(default="", alias="displayText")
    svg: Optional[str] = None
    lesson_complete: bool = Field(default=False, alias="lessonComplete")
    teaching_phase: Optional[Any] = Field(default=None, alias="teachingPhase")


@dataclass
class PipelineResult:
    spoken_text: str
    display_text: str
    responder: Responder
    lesson_complete_claim: bool
    audio: bytes
    tier: str
    svg: Optional[str] = None
    teaching_phase: Optional[Any] = None


def _unescape_json_fragment(fragment: str) -> str:
    try:
        return json.loads(f'"{fragment}"')
    except json.JSONDecodeError:
        return (
            fragment.replace('\\n', '\n')
            .replace('\\t', '\t')
            .replace('\\"', '"')
            .replace('\\\\', '\\')
        )


def extract_first_sentence(buffer: str) -> Optional[str]:
    """
    First complete sentence of the `audioText` value in a partial JSON buffer.

    A sentence counts as complete once its terminal punctuation is followed by
    whitespace, or once the string value itself is closed.

    Returns:
        The sentence, or None if none is complete yet
    """
    match = _AUDIO_FIELD_RE.search(buffer)
    if not match:
        return None
    text = _unescape_json_fragment(match.group(1))
    closed = match.group(2) is not None

    sentence = _FIRST_SENTENCE_RE.match(text.lstrip())
    if sentence:
        return sentence.group(0).strip()
    if closed and text.strip():
        return text.strip()
    return None


def extract_svg_from_text(text: str) -> Tuple[str, Optional[str]]:
    """
    Pull an SVG out of free text.

    Handles `[SVG]...[/SVG]` wrappers and raw `<svg>` elements.

    Returns:
        (text without the SVG, svg markup or None)
    """
    if not text:
        return text, None
    block = _SVG_BLOCK_RE.search(text)
    if block:
        inner = block.group(1).strip()
        raw = _RAW_SVG_RE.search(inner)
        cleaned = (text[:block.start()] + text[block.end():]).strip()
        return cleaned, raw.group(0) if raw else inner
    raw = _RAW_SVG_RE.search(text)
    if raw:
        cleaned = (text[:raw.start()] + text[raw.end():]).strip()
        return cleaned, raw.group(0)
    return text, None


def parse_teaching_response(raw: str) -> TeachingResponse:
    """
    Parse and validate a teaching reply.

    Raises:
        MalformedModelOutputError: if the text is not a valid teaching response
    """
    text = _CODE_FENCE_RE.sub("", (raw or "").strip())
    try:
        # strict=False tolerates raw control characters inside strings
        data = json.loads(text, strict=False)
    except json.JSONDecodeError:
        start, end = text.find("{"), text.rfind("}")
        if start == -1 or end <= start:
            raise MalformedModelOutputError(f"No JSON object in model output: {text[:120]!r}")
        try:
            data = json.loads(text[start:end + 1], strict=False)
        except json.JSONDecodeError as e:
            raise MalformedModelOutputError(f"Invalid JSON in model output: {e}") from e

    if not isinstance(data, dict):
        raise MalformedModelOutputError("Model output is not a JSON object")
    try:
        response = TeachingResponse.model_validate(data)
    except ValidationError as e:
        raise MalformedModelOutputError(f"Model output failed validation: {e}") from e

    display = response.display_text.replace("\\n", "\n")
    display, display_svg = extract_svg_from_text(display)
    audio, audio_svg = extract_svg_from_text(response.audio_text)
    svg = response.svg or display_svg or audio_svg

    if not audio.strip():
        audio = display
    if not audio.strip():
        raise MalformedModelOutputError("Model output has neither audioText nor displayText")

    return response.model_copy(update={
        "audio_text": audio.strip(),
        "display_text": display.strip() or audio.strip(),
        "svg": svg or None,
    })


def _remainder_after(audio_text: str, first_sentence: str) -> Optional[str]:
    stripped = audio_text.lstrip()
    if stripped.startswith(first_sentence):
        return stripped[len(first_sentence):].strip()
    return None


def _consume_result(task: asyncio.Task):
    if not task.cancelled():
        task.exception()


class StreamingResponsePipeline:
    """Runs a responder call through the progressive/streaming/single-shot tiers."""

    def __init__(self, gateway, speech):
        self.gateway = gateway
        self.speech = speech

    async def run(
        self,
        responder: Responder,
        prompt: PromptInput,
        system_prompt: str,
        cache_handle: Optional[CachedContext] = None,
    ) -> PipelineResult:
        """
        Generate a reply with audio.

        Raises:
            ResponseGenerationError: if every tier fails
        """
        tiers = (
            (TIER_PROGRESSIVE, self._run_progressive),
            (TIER_STREAMING, self._run_streaming),
            (TIER_SINGLE_SHOT, self._run_single_shot),
        )
        failures: List[str] = []
        for tier, runner in tiers:
            start = time.time()
            try:
                result = await runner(responder, prompt, system_prompt, cache_handle)
            except UpstreamServiceError as e:
                failures.append(f"{tier}: {e}")
                logger.warning(f"⚠️ [Pipeline] Tier '{tier}' failed for {responder.value}, demoting: {e}")
                continue

            elapsed = (time.time() - start) * 1000
            logger.info(
                f"✅ [Pipeline] {responder.value} answered via '{tier}' in {elapsed:.0f}ms "
                f"({len(result.audio)} audio bytes)"
            )
            return result

        logger.error(f"❌ [Pipeline] All tiers failed for {responder.value}: {failures}")
        raise ResponseGenerationError(f"All response tiers failed for {responder.value}", failures)

    def _result(self, responder: Responder, parsed: TeachingResponse, audio: bytes, tier: str) -> PipelineResult:
        return PipelineResult(
            spoken_text=parsed.audio_text,
            display_text=parsed.display_text,
            responder=responder,
            lesson_complete_claim=parsed.lesson_complete,
            audio=audio,
            tier=tier,
            svg=parsed.svg,
            teaching_phase=parsed.teaching_phase,
        )

    async def _run_progressive(self, responder, prompt, system_prompt, cache_handle) -> PipelineResult:
        raw = ""
        first_sentence: Optional[str] = None
        first_task: Optional[asyncio.Task] = None
        rest_task: Optional[asyncio.Task] = None
        try:
            async for delta in self.gateway.stream_text(responder, prompt, system_prompt, cache_handle):
                raw += delta
                if first_task is None:
                    first_sentence = extract_first_sentence(raw)
                    if first_sentence:
                        logger.info(f"🔊 [Pipeline] First sentence ready mid-stream ({len(first_sentence)} chars)")
                        first_task = asyncio.create_task(self.speech.generate_speech(first_sentence, responder))
                        first_task.add_done_callback(_consume_result)

            parsed = parse_teaching_response(raw)

            if first_task is None:
                audio = await self.speech.generate_speech_chunked(parsed.audio_text, responder)
                return self._result(responder, parsed, audio, TIER_PROGRESSIVE)

            remainder = _remainder_after(parsed.audio_text, first_sentence)
            if remainder is None:
                # Final text diverged from the streamed prefix
                first_task.cancel()
                audio = await self.speech.generate_speech_chunked(parsed.audio_text, responder)
            elif remainder:
                rest_task = asyncio.create_task(self.speech.generate_speech_chunked(remainder, responder))
                rest_task.add_done_callback(_consume_result)
                first_audio, rest_audio = await asyncio.gather(first_task, rest_task)
                audio = first_audio + rest_audio
            else:
                audio = await first_task
            return self._result(responder, parsed, audio, TIER_PROGRESSIVE)
        finally:
            for task in (first_task, rest_task):
                if task is not None and not task.done():
                    task.cancel()

    async def _run_streaming(self, responder, prompt, system_prompt, cache_handle) -> PipelineResult:
        chunks = []
        async for delta in self.gateway.stream_text(responder, prompt, system_prompt, cache_handle):
            chunks.append(delta)
        parsed = parse_teaching_response("".join(chunks))
        audio = await self.speech.generate_speech_chunked(parsed.audio_text, responder)
        return self._result(responder, parsed, audio, TIER_STREAMING)

    async def _run_single_shot(self, responder, prompt, system_prompt, cache_handle) -> PipelineResult:
        raw = await self.gateway.generate_text(responder, prompt, system_prompt, cache_handle)
        parsed = parse_teaching_response(raw)
        audio = await self.speech.generate_speech_chunked(parsed.audio_text, responder)
        return self._result(responder, parsed, audio, TIER_SINGLE_SHOT)
