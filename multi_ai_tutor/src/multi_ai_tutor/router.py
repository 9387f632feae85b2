"""
Responder Router

Decides which responder handles a turn.

Order of precedence:
1. lesson-start trigger       -> coordinator greeting
2. active specialist          -> fast path, no coordinator call
3. voice/media-only turn      -> specialist for the lesson subject
4. otherwise                  -> coordinator routing call (LOW reasoning)

A coordinator answer that cannot be parsed or names an unknown responder is
treated as a self-answer with a generic prompt back to the learner.
"""

import json
import logging
import re
from dataclasses import dataclass
from typing import Optional

from multi_ai_tutor.context_assembler import TurnContext
from multi_ai_tutor.errors import ResponderNotFoundError, SpeechSynthesisError, UpstreamServiceError
from multi_ai_tutor.llm_client import PromptInput
from multi_ai_tutor.models import TurnRequest
from multi_ai_tutor.prompts import build_routing_prompt
from multi_ai_tutor.responders import (
    ReasoningTier,
    Responder,
    ResponderRegistry,
    resolve_responder,
    responder_for_subject,
)

logger = logging.getLogger(__name__)

FALLBACK_SELF_RESPONSE = "I'm here to help! Could you tell me what you'd like to learn today?"

_ROUTE_TO_RE = re.compile(r'"route_to"\s*:\s*"([^"]+)"')
_REASON_RE = re.compile(r'"reason"\s*:\s*"([^"]+)"')


@dataclass
class RoutingDecision:
    responder: Responder
    reason: str
    handoff_message: Optional[str] = None
    self_response: Optional[str] = None
    self_audio: bytes = b""
    is_lesson_start: bool = False

    @property
    def answered_by_coordinator(self) -> bool:
        """Coordinator already produced the reply; no teaching call needed."""
        return self.self_response is not None


def parse_routing_reply(raw: str) -> Optional[dict]:
    """
    Parse the coordinator's routing JSON, falling back to regex extraction.

    Returns:
        Dict with at least `route_to`, or None
    """
    text = (raw or "").strip()
    if text.startswith("```json"):
        text = re.sub(r"^```json\s*", "", text)
        text = re.sub(r"\s*```$", "", text)
    elif text.startswith("```"):
        text = re.sub(r"^```\s*", "", text)
        text = re.sub(r"\s*```$", "", text)

    try:
        data = json.loads(text, strict=False)
        if isinstance(data, dict) and data.get("route_to"):
            return data
    except json.JSONDecodeError:
        pass

    route = _ROUTE_TO_RE.search(text)
    if not route:
        return None
    reason = _REASON_RE.search(text)
    logger.info("🔀 [Router] Using regex fallback for routing reply")
    return {"route_to": route.group(1), "reason": reason.group(1) if reason else "Extracted via fallback"}


class Router:
    def __init__(self, gateway, registry: ResponderRegistry, speech, cache_coordinator=None):
        self.gateway = gateway
        self.registry = registry
        self.speech = speech
        self.cache_coordinator = cache_coordinator

    async def route(self, request: TurnRequest, context: TurnContext) -> RoutingDecision:
        """
        Pick the responder for a turn.

        Args:
            request: The learner's turn
            context: Assembled turn context

        Returns:
            RoutingDecision
        """
        if request.is_lesson_start:
            return RoutingDecision(
                responder=Responder.COORDINATOR,
                reason="Lesson start introduction by coordinator",
                is_lesson_start=True,
            )

        active = context.active_responder
        if active is not None and active != Responder.COORDINATOR:
            logger.info(f"⚡ [Router] Fast path: continuing with {active.value}")
            return RoutingDecision(responder=active, reason=f"Continuing with {active.value} (session-scoped)")

        if not request.has_text:
            responder = responder_for_subject(context.lesson.subject)
            logger.info(f"🎙️ [Router] No text input, routing by subject '{context.lesson.subject}' to {responder.value}")
            return RoutingDecision(responder=responder, reason=f"Subject routing for {context.lesson.subject}")

        return await self._route_with_coordinator(request, context)

    async def _route_with_coordinator(self, request: TurnRequest, context: TurnContext) -> RoutingDecision:
        coordinator = await self.registry.get(Responder.COORDINATOR)
        cache_handle = None
        if self.cache_coordinator is not None:
            cache_handle = await self.cache_coordinator.ensure_fresh(coordinator.model_id)

        prompt = build_routing_prompt(
            request.message,
            context.profile,
            context.lesson,
            context.history,
            context.active_responder,
        )
        try:
            raw = await self.gateway.generate_text(
                Responder.COORDINATOR,
                PromptInput(text=prompt),
                coordinator.system_prompt,
                cache_handle,
                reasoning=ReasoningTier.LOW,
            )
        except UpstreamServiceError as e:
            logger.error(f"❌ [Router] Coordinator routing call failed: {e}")
            return await self._self_answer(FALLBACK_SELF_RESPONSE, "Routing error - handling directly")

        routing = parse_routing_reply(raw)
        if routing is None:
            logger.warning(f"⚠️ [Router] Could not parse routing reply: {raw[:200]!r}")
            return await self._self_answer(FALLBACK_SELF_RESPONSE, "Routing error - handling directly")

        reason = routing.get("reason") or ""
        target = str(routing.get("route_to")).strip().lower()
        if target == "self":
            response = routing.get("response") or FALLBACK_SELF_RESPONSE
            return await self._self_answer(response, reason or "General question handled by coordinator")

        try:
            responder = resolve_responder(target)
        except ResponderNotFoundError:
            logger.warning(f"⚠️ [Router] Coordinator named unknown responder '{target}'")
            return await self._self_answer(FALLBACK_SELF_RESPONSE, "Routing error - handling directly")

        if responder == Responder.COORDINATOR:
            response = routing.get("response") or FALLBACK_SELF_RESPONSE
            return await self._self_answer(response, reason)

        handoff = routing.get("handoff_message")
        if handoff and responder == context.active_responder:
            handoff = None

        logger.info(f"🔀 [Router] Routed to {responder.value}: {reason}")
        return RoutingDecision(responder=responder, reason=reason, handoff_message=handoff or None)

    async def _self_answer(self, text: str, reason: str) -> RoutingDecision:
        try:
            audio = await self.speech.generate_speech_chunked(text, Responder.COORDINATOR)
        except SpeechSynthesisError as e:
            logger.warning(f"⚠️ [Router] TTS failed for coordinator answer, returning text only: {e}")
            audio = b""
        return RoutingDecision(
            responder=Responder.COORDINATOR,
            reason=reason,
            self_response=text,
            self_audio=audio,
        )
