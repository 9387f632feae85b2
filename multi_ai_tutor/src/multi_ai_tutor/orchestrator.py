"""
Teaching Orchestrator

Entry point for one tutoring turn:

    validate -> context (+ transcription) -> directives -> route
             -> response pipeline -> mastery gate -> result
             -> background: persistence, adaptation log,
                            evidence extraction -> profile enrichment,
                            specialist validation, veto record

A newer turn for the same session cancels the in-flight one; the superseded
caller receives TurnSupersededError.
"""

import asyncio
import base64
import binascii
import logging
import time
from typing import Dict, Optional

from openai import AsyncOpenAI

from multi_ai_tutor.adaptation_logger import AdaptationLogger
from multi_ai_tutor.adaptive_directives import DirectiveGenerator, DirectiveThresholds
from multi_ai_tutor.background_tasks import BackgroundTaskSupervisor
from multi_ai_tutor.cache_coordinator import CacheCoordinator
from multi_ai_tutor.config import TutorSettings, get_settings
from multi_ai_tutor.context_assembler import ContextAssembler, TurnContext
from multi_ai_tutor.errors import TurnSupersededError, TurnValidationError, UpstreamServiceError
from multi_ai_tutor.evidence_extractor import EvidenceExtractor
from multi_ai_tutor.evidence_manager import MasteryEvidenceManager
from multi_ai_tutor.lesson_manager import LessonManager
from multi_ai_tutor.llm_client import ModelGateway, OpenAIPromptCacheBackend, PromptInput
from multi_ai_tutor.mastery_engine import MasteryEngine, MasteryEvaluation
from multi_ai_tutor.models import TurnRequest, TurnResult
from multi_ai_tutor.profile_enricher import ProfileEnricher
from multi_ai_tutor.profile_manager import ProfileManager
from multi_ai_tutor.prompts import build_lesson_start_prompt, build_teaching_prompt
from multi_ai_tutor.response_validator import PendingCorrection, ResponseValidator
from multi_ai_tutor.responders import Responder, ResponderRegistry, is_grounded
from multi_ai_tutor.router import RoutingDecision, Router
from multi_ai_tutor.session_manager import SessionManager
from multi_ai_tutor.speech import SpeechSynthesizer
from multi_ai_tutor.streaming_pipeline import PipelineResult, StreamingResponsePipeline

logger = logging.getLogger(__name__)

VALID_IMAGE_TYPES = ("image/jpeg", "image/png", "image/webp")
VALID_VIDEO_TYPES = ("video/mp4", "video/webm")

UNTRANSCRIBED_AUDIO_NOTE = (
    "(The student sent a voice message that could not be transcribed. "
    "Kindly ask them to repeat or type their answer.)"
)


def _is_valid_base64(payload: str) -> bool:
    try:
        base64.b64decode(payload, validate=True)
    except (binascii.Error, ValueError):
        return False
    return True


def validate_turn_request(request: TurnRequest):
    """
    Reject malformed turns before any upstream call.

    Raises:
        TurnValidationError: describing the first problem found
    """
    for field_name, label in (("user_id", "userId"), ("session_id", "sessionId"), ("lesson_id", "lessonId")):
        value = getattr(request, field_name)
        if not isinstance(value, str) or not value.strip():
            raise TurnValidationError(f"{label} is required and must be a string")

    provided = [
        name for name, present in (
            ("userMessage", request.message is not None and request.message.strip() != ""),
            ("audioBase64", bool(request.audio_base64)),
            ("mediaBase64", bool(request.media_base64)),
        ) if present
    ]
    if not provided:
        raise TurnValidationError("Exactly one of userMessage, audioBase64, or mediaBase64 must be provided")
    if len(provided) > 1:
        raise TurnValidationError(f"Only one input type may be provided per turn (got {', '.join(provided)})")

    if request.audio_base64:
        if not request.audio_mime_type:
            raise TurnValidationError("audioMimeType is required when audioBase64 is provided")
        if not _is_valid_base64(request.audio_base64):
            raise TurnValidationError("audioBase64 is not valid base64")

    if request.media_base64:
        if not request.media_mime_type or not request.media_type:
            raise TurnValidationError("mediaMimeType and mediaType are required when mediaBase64 is provided")
        if request.media_type not in ("image", "video"):
            raise TurnValidationError('mediaType must be "image" or "video"')
        if request.media_type == "image" and request.media_mime_type not in VALID_IMAGE_TYPES:
            raise TurnValidationError(f"Invalid image MIME type. Supported: {', '.join(VALID_IMAGE_TYPES)}")
        if request.media_type == "video" and request.media_mime_type not in VALID_VIDEO_TYPES:
            raise TurnValidationError(f"Invalid video MIME type. Supported: {', '.join(VALID_VIDEO_TYPES)}")
        if not _is_valid_base64(request.media_base64):
            raise TurnValidationError("mediaBase64 is not valid base64")


class TeachingOrchestrator:
    """Runs tutoring turns end to end."""

    def __init__(
        self,
        gateway,
        speech,
        registry: ResponderRegistry,
        cache_coordinator: CacheCoordinator,
        profile_manager: ProfileManager,
        session_manager: SessionManager,
        lesson_manager: LessonManager,
        evidence_manager: MasteryEvidenceManager,
        settings: Optional[TutorSettings] = None,
        supabase_client=None,
        background: Optional[BackgroundTaskSupervisor] = None,
        mastery_engine: Optional[MasteryEngine] = None,
    ):
        self.settings = settings or get_settings()
        self.gateway = gateway
        self.speech = speech
        self.registry = registry
        self.cache_coordinator = cache_coordinator
        self.profile_manager = profile_manager
        self.session_manager = session_manager
        self.lesson_manager = lesson_manager
        self.evidence_manager = evidence_manager

        self.context_assembler = ContextAssembler(
            profile_manager,
            session_manager,
            lesson_manager,
            evidence_manager,
            history_limit=self.settings.history_limit,
        )
        self.directive_generator = DirectiveGenerator(DirectiveThresholds.from_settings(self.settings))
        self.router = Router(gateway, registry, speech, cache_coordinator)
        self.pipeline = StreamingResponsePipeline(gateway, speech)
        self.evidence_extractor = EvidenceExtractor(
            gateway,
            evidence_manager,
            confidence_threshold=self.settings.evidence_confidence_threshold,
            timeout_seconds=self.settings.classifier_timeout_seconds,
        )
        self.mastery_engine = mastery_engine or MasteryEngine(
            evidence_manager,
            lesson_manager,
            session_manager,
            supabase_client=supabase_client,
            timeout_seconds=self.settings.mastery_timeout_seconds,
        )
        self.profile_enricher = ProfileEnricher(
            evidence_manager, profile_manager, window=self.settings.enrichment_window
        )
        self.response_validator = ResponseValidator(
            gateway,
            registry,
            cache_coordinator,
            supabase_client=supabase_client,
            timeout_seconds=self.settings.validation_timeout_seconds,
        )
        self.adaptation_logger = AdaptationLogger(supabase_client)
        self.background = background or BackgroundTaskSupervisor()

        self._inflight: Dict[str, asyncio.Task] = {}

    @classmethod
    def create(
        cls,
        supabase_client=None,
        settings: Optional[TutorSettings] = None,
        openai_client: Optional[AsyncOpenAI] = None,
    ) -> "TeachingOrchestrator":
        """Wire up a production orchestrator."""
        settings = settings or get_settings()
        if openai_client is None:
            if not settings.openai_api_key:
                raise ValueError("OPENAI_API_KEY not found in environment variables")
            openai_client = AsyncOpenAI(api_key=settings.openai_api_key)

        registry = ResponderRegistry(supabase_client, settings)
        return cls(
            gateway=ModelGateway(openai_client, settings),
            speech=SpeechSynthesizer(openai_client, settings),
            registry=registry,
            cache_coordinator=CacheCoordinator(registry, OpenAIPromptCacheBackend(openai_client), settings),
            profile_manager=ProfileManager(supabase_client, cache_ttl_seconds=settings.profile_cache_ttl_seconds),
            session_manager=SessionManager(
                supabase_client, routing_state_ttl_seconds=settings.routing_state_ttl_seconds
            ),
            lesson_manager=LessonManager(supabase_client),
            evidence_manager=MasteryEvidenceManager(supabase_client),
            settings=settings,
            supabase_client=supabase_client,
        )

    # ------------------------------------------------------------------
    # Turn handling
    # ------------------------------------------------------------------

    async def handle_turn(self, request: TurnRequest) -> TurnResult:
        """
        Run one tutoring turn.

        Raises:
            TurnValidationError: malformed request
            ContextAssemblyError: required context missing or unreadable
            ResponseGenerationError: every response tier failed
            TurnSupersededError: a newer turn for this session replaced this one
        """
        validate_turn_request(request)

        session_id = request.session_id
        previous = self._inflight.get(session_id)
        if previous is not None and not previous.done():
            logger.info(f"⏭️ [Orchestrator] New turn for session {session_id}, cancelling in-flight turn")
            previous.cancel()

        task = asyncio.create_task(self._run_turn(request))
        self._inflight[session_id] = task
        try:
            return await task
        except asyncio.CancelledError:
            if self._inflight.get(session_id) is not task:
                raise TurnSupersededError(session_id)
            raise
        finally:
            if self._inflight.get(session_id) is task:
                del self._inflight[session_id]

    async def _transcribe(self, request: TurnRequest) -> Optional[str]:
        try:
            audio = base64.b64decode(request.audio_base64)
            transcript = await self.gateway.transcribe(audio, request.audio_mime_type)
        except UpstreamServiceError as e:
            logger.warning(f"⚠️ [Orchestrator] Transcription failed, continuing without transcript: {e}")
            return None
        logger.info(f"🎙️ [Orchestrator] Transcribed {len(transcript)} chars of learner audio")
        return transcript or None

    async def _run_turn(self, request: TurnRequest) -> TurnResult:
        start = time.time()

        if request.audio_base64:
            context, transcript = await asyncio.gather(
                self.context_assembler.assemble(request.user_id, request.session_id, request.lesson_id),
                self._transcribe(request),
            )
            learner_message = transcript or UNTRANSCRIBED_AUDIO_NOTE
        else:
            context = await self.context_assembler.assemble(
                request.user_id, request.session_id, request.lesson_id
            )
            learner_message = request.message or ""

        directives = self.directive_generator.generate(context.profile, context.history, context.mastery_score)
        directives_text = self.directive_generator.format(directives)

        decision = await self.router.route(request, context)

        correction: Optional[PendingCorrection] = None
        if decision.answered_by_coordinator:
            response = PipelineResult(
                spoken_text=decision.self_response,
                display_text=decision.self_response,
                responder=Responder.COORDINATOR,
                lesson_complete_claim=False,
                audio=decision.self_audio,
                tier="coordinator",
            )
        else:
            if not decision.is_lesson_start:
                correction = await self.response_validator.get_pending_correction(request.session_id)
            response = await self._generate(
                request, context, decision, learner_message, directives_text, correction
            )

        if decision.is_lesson_start:
            topic_complete, evaluation = False, None
        else:
            topic_complete, evaluation = await self.mastery_engine.gate_completion(
                response.lesson_complete_claim,
                request.user_id,
                context.lesson,
                request.session_id,
            )

        self.session_manager.set_active_responder(request.session_id, decision.responder)

        response_time_ms = int((time.time() - start) * 1000)
        result = TurnResult(
            spoken_text=response.spoken_text,
            display_text=response.display_text,
            responder_id=decision.responder.value,
            audio=response.audio,
            diagram_markup=response.svg,
            handoff_text=decision.handoff_message,
            topic_complete=topic_complete,
            routing_reason=decision.reason,
        )

        self._submit_background_work(
            request, context, decision, learner_message, response, directives, evaluation, response_time_ms,
            correction,
        )

        logger.info(
            f"✅ [Orchestrator] Turn for session {request.session_id} answered by {decision.responder.value} "
            f"via {response.tier} in {response_time_ms}ms (topicComplete={topic_complete})"
        )
        return result

    async def _generate(
        self,
        request: TurnRequest,
        context: TurnContext,
        decision: RoutingDecision,
        learner_message: str,
        directives_text: str,
        correction: Optional[PendingCorrection] = None,
    ) -> PipelineResult:
        definition = await self.registry.get(decision.responder)
        cache_handle = None
        if not is_grounded(decision.responder):
            cache_handle = await self.cache_coordinator.ensure_fresh(definition.model_id)

        image_base64 = None
        image_mime_type = None
        media_note = None
        if request.media_base64:
            if request.media_type == "image":
                image_base64 = request.media_base64
                image_mime_type = request.media_mime_type
                learner_message = learner_message or "(The student shared an image.)"
            else:
                media_note = (
                    f"NOTE: The student shared a video ({request.media_mime_type}). You cannot view it; "
                    "ask them to describe what it shows."
                )

        if decision.is_lesson_start:
            text = build_lesson_start_prompt(context.profile, context.lesson, directives_text)
        else:
            text = build_teaching_prompt(
                decision.responder,
                learner_message,
                context.profile,
                context.lesson,
                context.history,
                directives_text=directives_text,
                handed_off_from=Responder.COORDINATOR if decision.handoff_message else None,
                media_note=media_note,
                correction_note=correction.to_prompt() if correction else None,
            )

        prompt = PromptInput(text=text, image_base64=image_base64, image_mime_type=image_mime_type)
        return await self.pipeline.run(decision.responder, prompt, definition.system_prompt, cache_handle)

    # ------------------------------------------------------------------
    # Background work
    # ------------------------------------------------------------------

    def _submit_background_work(
        self,
        request: TurnRequest,
        context: TurnContext,
        decision: RoutingDecision,
        learner_message: str,
        response: PipelineResult,
        directives,
        evaluation: Optional[MasteryEvaluation],
        response_time_ms: int,
        correction: Optional[PendingCorrection] = None,
    ):
        session_id = request.session_id
        if not decision.is_lesson_start:
            # The lesson-start trigger is synthetic; only real learner turns enter history
            self.background.submit(
                "save_interaction",
                self.session_manager.save_interaction(session_id, learner_message, response.spoken_text),
            )
        self.background.submit(
            "save_agent_interaction",
            self._save_agent_interaction(session_id, decision, learner_message, response, response_time_ms),
        )
        entry = self.adaptation_logger.build_entry(
            user_id=request.user_id,
            session_id=session_id,
            lesson_id=request.lesson_id,
            responder=decision.responder.value,
            directives=directives,
            learning_style=context.profile.learning_style,
            response_text=response.display_text,
            has_svg=bool(response.svg),
        )
        self.background.submit("adaptation_log", self.adaptation_logger.log(entry))

        if not decision.is_lesson_start:
            self.background.submit(
                "evidence_and_enrichment",
                self._extract_and_enrich(request, context, learner_message, response.spoken_text),
            )

        if correction is not None:
            self.background.submit(
                "mark_correction_delivered", self.response_validator.mark_delivered(correction.id)
            )

        if (
            not decision.is_lesson_start
            and not decision.answered_by_coordinator
            and self.response_validator.should_validate(decision.responder)
        ):
            self.background.submit("validate_response", self._validate_response(request, context, decision, response))

        if evaluation is not None and not evaluation.approved:
            self.background.submit(
                "record_mastery_veto",
                self.mastery_engine.record_veto(request.user_id, request.lesson_id, session_id, evaluation),
            )

    async def _save_agent_interaction(
        self,
        session_id: str,
        decision: RoutingDecision,
        learner_message: str,
        response: PipelineResult,
        response_time_ms: int,
    ):
        agent_id = await self.registry.get_agent_id(decision.responder)
        await self.session_manager.save_agent_interaction(
            session_id=session_id,
            agent_id=agent_id,
            responder=decision.responder,
            user_message=learner_message,
            agent_response=response.spoken_text,
            routing_reason=decision.reason,
            response_time_ms=response_time_ms,
        )

    async def _validate_response(
        self,
        request: TurnRequest,
        context: TurnContext,
        decision: RoutingDecision,
        response: PipelineResult,
    ):
        agent_id = await self.registry.get_agent_id(decision.responder)
        await self.response_validator.validate_and_record(
            session_id=request.session_id,
            responder=decision.responder,
            profile=context.profile,
            lesson=context.lesson,
            spoken_text=response.spoken_text,
            display_text=response.display_text,
            svg=response.svg,
            agent_id=agent_id,
        )

    async def _extract_and_enrich(
        self,
        request: TurnRequest,
        context: TurnContext,
        learner_message: str,
        responder_message: str,
    ):
        record = await self.evidence_extractor.extract_and_record(
            user_id=request.user_id,
            lesson_id=request.lesson_id,
            session_id=request.session_id,
            learner_message=learner_message,
            responder_message=responder_message,
            topic=context.lesson.title,
        )
        if record is not None:
            await self.profile_enricher.enrich_profile_if_needed(request.user_id, request.session_id)

    # ------------------------------------------------------------------
    # Session lifecycle
    # ------------------------------------------------------------------

    async def start_session(self, user_id: str, lesson_id: str) -> Dict:
        """Create a session and warm the context cache in the background."""
        session = await self.session_manager.start_session(user_id, lesson_id)
        self.background.submit("cache_warmup", self.cache_coordinator.warmup())
        return session

    async def end_session(self, session_id: str) -> Optional[Dict]:
        """End a session, add its duration to the learner's total and drop routing state."""
        inflight = self._inflight.pop(session_id, None)
        if inflight is not None and not inflight.done():
            inflight.cancel()
        summary = await self.session_manager.end_session(session_id)
        if summary and summary.get('user_id'):
            await self.profile_manager.add_learning_time(summary['user_id'], summary['duration_minutes'])
        return summary

    async def shutdown(self):
        await self.cache_coordinator.wait_for_renewals()
        await self.background.drain(timeout=10)
