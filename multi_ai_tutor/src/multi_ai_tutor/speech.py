"""
Speech Synthesis

Text-to-speech via the OpenAI audio API. Long replies are split into
sentence-sized chunks that are synthesized in parallel and concatenated
(MP3 frames concatenate cleanly).
"""

import asyncio
import logging
import re
import time
from typing import List, Optional

from openai import AsyncOpenAI

from multi_ai_tutor.config import TutorSettings, get_settings
from multi_ai_tutor.errors import SpeechSynthesisError
from multi_ai_tutor.responders import Responder, voice_for

logger = logging.getLogger(__name__)

MIN_CHUNK_LENGTH = 20
MAX_CHUNK_LENGTH = 200
MAX_PARALLEL_CHUNKS = 6
NATURAL_BREAK_FRACTION = 0.7

_SENTENCE_RE = re.compile(r"[^.!?]+[.!?]+\s*")


def split_long_sentence(sentence: str) -> List[str]:
    """
    Split a sentence longer than MAX_CHUNK_LENGTH.

    Prefers the last comma, semicolon or " - " in the window when it falls in
    the last 30% of the window, otherwise the last space, otherwise a hard cut.
    """
    if len(sentence) <= MAX_CHUNK_LENGTH:
        return [sentence]

    chunks = []
    remaining = sentence
    while len(remaining) > MAX_CHUNK_LENGTH:
        window = remaining[:MAX_CHUNK_LENGTH]
        split_index = max(window.rfind(","), window.rfind(";"), window.rfind(" - "))
        if split_index == -1 or split_index < MAX_CHUNK_LENGTH * NATURAL_BREAK_FRACTION:
            split_index = window.rfind(" ")
        if split_index == -1:
            split_index = MAX_CHUNK_LENGTH - 1

        chunks.append(remaining[:split_index + 1].strip())
        remaining = remaining[split_index + 1:].strip()

    if remaining:
        chunks.append(remaining)
    return chunks


def split_into_sentences(text: str) -> List[str]:
    """
    Split text at sentence boundaries, merging pieces shorter than
    MIN_CHUNK_LENGTH into their neighbours. Trailing text without terminal
    punctuation is kept.
    """
    if not text or not text.strip():
        return []

    matches = _SENTENCE_RE.findall(text)
    consumed = sum(len(m) for m in matches)
    pieces = [m.strip() for m in matches if m.strip()]
    tail = text[consumed:].strip()
    if tail:
        pieces.append(tail)
    if not pieces:
        return [text.strip()]

    merged: List[str] = []
    buffer = ""
    for piece in pieces:
        buffer = f"{buffer} {piece}" if buffer else piece
        if len(buffer) >= MIN_CHUNK_LENGTH:
            merged.append(buffer)
            buffer = ""

    if buffer:
        if merged:
            merged[-1] = f"{merged[-1]} {buffer}"
        else:
            merged.append(buffer)
    return merged


class SpeechSynthesizer:
    """Responder-voiced TTS with parallel chunking."""

    def __init__(self, client: Optional[AsyncOpenAI] = None, settings: Optional[TutorSettings] = None):
        self.settings = settings or get_settings()
        if client is None:
            if not self.settings.openai_api_key:
                raise ValueError("OPENAI_API_KEY not found in environment variables")
            client = AsyncOpenAI(api_key=self.settings.openai_api_key)
        self.client = client

    async def generate_speech(self, text: str, responder: Optional[Responder] = None) -> bytes:
        """
        Synthesize a single piece of text.

        Args:
            text: Text to speak
            responder: Responder whose voice to use

        Returns:
            MP3 bytes

        Raises:
            SpeechSynthesisError: on empty input, provider failure or empty audio
        """
        if not text or not text.strip():
            raise SpeechSynthesisError("Text input is required and must be a non-empty string")

        voice = voice_for(responder) if responder else voice_for(Responder.COORDINATOR)
        try:
            response = await self.client.audio.speech.create(
                model=self.settings.tts_model,
                voice=voice,
                input=text,
                response_format="mp3",
            )
            audio = response.content
        except Exception as e:
            raise SpeechSynthesisError(f"TTS request failed: {e}") from e

        if not audio:
            raise SpeechSynthesisError("TTS returned no audio content")
        return audio

    async def generate_speech_chunked(self, text: str, responder: Optional[Responder] = None) -> bytes:
        """
        Synthesize text as parallel sentence chunks and concatenate the audio.

        Raises:
            SpeechSynthesisError: if any chunk fails
        """
        if not text or not text.strip():
            raise SpeechSynthesisError("Text input is required and must be a non-empty string")

        sentences = split_into_sentences(text)
        if len(sentences) <= 1 and len(text) <= MAX_CHUNK_LENGTH:
            return await self.generate_speech(text, responder)

        chunks: List[str] = []
        for sentence in sentences:
            chunks.extend(split_long_sentence(sentence))

        start = time.time()
        semaphore = asyncio.Semaphore(MAX_PARALLEL_CHUNKS)

        async def synthesize(chunk: str) -> bytes:
            async with semaphore:
                return await self.generate_speech(chunk, responder)

        buffers = await asyncio.gather(*(synthesize(chunk) for chunk in chunks))
        audio = b"".join(buffers)

        elapsed = (time.time() - start) * 1000
        logger.info(f"🔊 [Speech] Synthesized {len(chunks)} chunks ({len(audio)} bytes) in {elapsed:.0f}ms")
        return audio
