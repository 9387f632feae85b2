"""
End-to-end tests for tutoring turns.

Runs the real orchestrator with in-memory stores and scripted model/speech
doubles: lesson start, coordinator hand-off, the specialist fast path, the
mastery veto, supersession and voice turns.
"""

import asyncio
import base64
import json
import os
import sys

import pytest

sys.path.insert(0, os.path.join(os.path.dirname(__file__), '..'))
sys.path.insert(0, os.path.join(os.path.dirname(__file__), '..', '..', 'multi_ai_tutor', 'src'))

from multi_ai_tutor.errors import TurnSupersededError
from multi_ai_tutor.models import TurnRequest
from multi_ai_tutor.responders import ReasoningTier, Responder

from fakes import Blocked, FakeGateway, FakeSpeech, build_orchestrator, chunk, teaching_json

USER_ID = "user-1"
LESSON_ID = "lesson-fractions-1"


def turn(session_id: str, message=None, **kwargs) -> TurnRequest:
    return TurnRequest(user_id=USER_ID, session_id=session_id, lesson_id=LESSON_ID, message=message, **kwargs)


class TestTeachingTurnFlow:
    """Three-turn conversation: greeting, hand-off to math, premature completion claim."""

    @pytest.fixture
    def gateway(self):
        return FakeGateway()

    @pytest.fixture
    def speech(self):
        return FakeSpeech()

    @pytest.fixture
    def orchestrator(self, gateway, speech):
        return build_orchestrator(gateway, speech)

    @pytest.mark.asyncio
    async def test_full_conversation(self, orchestrator, gateway, speech):
        session = await orchestrator.start_session(USER_ID, LESSON_ID)
        session_id = session["id"]

        # Turn 1: lesson start, answered by the coordinator without a routing call
        gateway.script_stream(chunk(teaching_json("Hi Sam! Today we will learn to add fractions.")))
        greeting = await orchestrator.handle_turn(turn(session_id, "[AUTO_START] Begin the lesson"))

        assert greeting.responder_id == "coordinator"
        assert greeting.topic_complete is False
        assert greeting.audio
        assert gateway.calls_for("generate", Responder.COORDINATOR) == []
        await orchestrator.background.drain()

        # Turn 2: coordinator hands off to the math specialist
        gateway.script_reply(Responder.COORDINATOR, json.dumps({
            "route_to": "math_specialist",
            "reason": "Fraction arithmetic question",
            "handoff_message": "Let me bring in our Math Specialist!",
        }))
        gateway.script_stream(chunk(teaching_json(
            "Great question! To add one half and one quarter, first make the denominators match.",
            svg="<svg><rect/></svg>",
        )))
        gateway.script_reply(Responder.ASSESSOR, json.dumps({
            "evidenceType": "correct_answer",
            "qualityScore": 95,
            "confidence": 0.9,
            "reasoning": "Correct setup of the problem",
        }))

        routed = await orchestrator.handle_turn(turn(session_id, "Can you help me add 1/2 and 1/4?"))

        assert routed.responder_id == "math_specialist"
        assert routed.handoff_text == "Let me bring in our Math Specialist!"
        assert routed.diagram_markup == "<svg><rect/></svg>"
        assert routed.routing_reason == "Fraction arithmetic question"
        payload = routed.to_dict()
        assert payload["responderId"] == "math_specialist"
        assert base64.b64decode(payload["audioPayload"]).startswith(b"<Great question!>")
        await orchestrator.background.drain()

        evidence = await orchestrator.evidence_manager.get_for_lesson(USER_ID, LESSON_ID)
        assert len(evidence) == 1
        profile = await orchestrator.profile_manager.get_profile(USER_ID)
        assert "Adding Fractions" in profile.strengths

        # Turn 3: fast path back to math; the completion claim is vetoed
        gateway.script_stream(chunk(teaching_json(
            "Yes! One half plus one quarter is three quarters.", lesson_complete=True,
        )))
        answer = await orchestrator.handle_turn(turn(session_id, "So the answer is 3/4?"))

        assert answer.responder_id == "math_specialist"
        assert answer.routing_reason.startswith("Continuing with math_specialist")
        assert answer.topic_complete is False
        assert len(gateway.calls_for("generate", Responder.COORDINATOR)) == 1
        await orchestrator.background.drain()

        assert len(orchestrator.mastery_engine.vetoes) == 1
        veto = orchestrator.mastery_engine.vetoes[0]
        assert veto["approved"] is False
        assert veto["unmet_criteria"]

        # Adaptation logging ran for every turn; history holds only real learner turns
        history = await orchestrator.session_manager.get_recent_history(session_id, limit=10)
        assert len(history) == 2
        assert not any(entry.user_message.startswith("[AUTO_START]") for entry in history)
        assert len(orchestrator.adaptation_logger.entries) == 3
        assert orchestrator.background.stats["failed"] == 0

        summary = await orchestrator.end_session(session_id)
        assert summary["user_id"] == USER_ID
        assert session_id not in orchestrator.session_manager._active_responders
        await orchestrator.shutdown()

    @pytest.mark.asyncio
    async def test_coordinator_self_answer_skips_teaching_call(self, orchestrator, gateway, speech):
        gateway.script_reply(Responder.COORDINATOR, json.dumps({
            "route_to": "self",
            "reason": "Greeting",
            "response": "Hello! Ready to keep going with fractions?",
        }))

        result = await orchestrator.handle_turn(turn("session-self", "hello!"))

        assert result.responder_id == "coordinator"
        assert result.spoken_text == "Hello! Ready to keep going with fractions?"
        assert result.audio == b"<Hello! Ready to keep going with fractions?>"
        assert gateway.calls_for("stream") == []
        await orchestrator.background.drain()
        assert gateway.calls_for("generate", Responder.VALIDATOR) == []


class TestSupersession:
    @pytest.mark.asyncio
    async def test_newer_turn_cancels_in_flight_turn(self):
        gateway = FakeGateway()
        orchestrator = build_orchestrator(gateway, FakeSpeech())
        stuck = Blocked(chunk(teaching_json("This reply never arrives.")))
        gateway.script_stream(stuck, chunk(teaching_json("Welcome back, Sam!")))

        first = asyncio.create_task(orchestrator.handle_turn(turn("session-x", "[AUTO_START] Begin")))
        await gateway.stream_started.wait()

        second = await orchestrator.handle_turn(turn("session-x", "[AUTO_START] Begin again"))

        assert second.spoken_text == "Welcome back, Sam!"
        with pytest.raises(TurnSupersededError):
            await first
        await orchestrator.background.drain()

    @pytest.mark.asyncio
    async def test_different_sessions_run_independently(self):
        gateway = FakeGateway()
        orchestrator = build_orchestrator(gateway, FakeSpeech())
        gateway.script_stream(
            chunk(teaching_json("Hello from session A.")),
            chunk(teaching_json("Hello from session B.")),
        )

        results = await asyncio.gather(
            orchestrator.handle_turn(turn("session-a", "[AUTO_START] Begin")),
            orchestrator.handle_turn(turn("session-b", "[AUTO_START] Begin")),
        )

        assert sorted(r.spoken_text for r in results) == ["Hello from session A.", "Hello from session B."]
        await orchestrator.background.drain()


class TestVoiceTurns:
    AUDIO = base64.b64encode(b"fake-webm-bytes").decode()

    @pytest.mark.asyncio
    async def test_audio_turn_is_transcribed_and_routed_by_subject(self):
        gateway = FakeGateway()
        orchestrator = build_orchestrator(gateway, FakeSpeech())
        gateway.script_stream(chunk(teaching_json("That's right, three quarters!")))

        result = await orchestrator.handle_turn(turn(
            "session-voice", audio_base64=self.AUDIO, audio_mime_type="audio/webm",
        ))

        assert result.responder_id == "math_specialist"
        assert len(gateway.calls_for("transcribe")) == 1
        assert gateway.calls_for("generate", Responder.COORDINATOR) == []
        prompt = gateway.calls_for("stream", Responder.MATH_SPECIALIST)[0]["prompt"]
        assert gateway.transcript in prompt.text
        await orchestrator.background.drain()

    @pytest.mark.asyncio
    async def test_failed_transcription_still_answers(self):
        from multi_ai_tutor.errors import UpstreamServiceError

        gateway = FakeGateway()
        gateway.transcribe_error = UpstreamServiceError("whisper unavailable")
        orchestrator = build_orchestrator(gateway, FakeSpeech())
        gateway.script_stream(chunk(teaching_json("Sorry, could you say that again?")))

        result = await orchestrator.handle_turn(turn(
            "session-voice", audio_base64=self.AUDIO, audio_mime_type="audio/webm",
        ))

        assert result.spoken_text == "Sorry, could you say that again?"
        prompt = gateway.calls_for("stream", Responder.MATH_SPECIALIST)[0]["prompt"]
        assert "could not be transcribed" in prompt.text
        await orchestrator.background.drain()


class TestSelfCorrection:
    """A specialist reply rejected by the validator is corrected on the next turn."""

    @pytest.fixture
    def gateway(self):
        return FakeGateway()

    @pytest.fixture
    def orchestrator(self, gateway):
        orchestrator = build_orchestrator(gateway, FakeSpeech())
        orchestrator.session_manager.set_active_responder("session-fix", Responder.MATH_SPECIALIST)
        return orchestrator

    @pytest.mark.asyncio
    async def test_rejected_reply_is_corrected_on_next_turn(self, orchestrator, gateway):
        gateway.script_stream(chunk(teaching_json("One half plus one quarter is two sixths.")))
        gateway.script_reply(Responder.VALIDATOR, json.dumps({
            "approved": False,
            "confidenceScore": 0.95,
            "issues": ["1/2 + 1/4 is 3/4, not 2/6"],
            "requiredFixes": ["State that the sum is 3/4"],
        }))

        await orchestrator.handle_turn(turn("session-fix", "What is 1/2 + 1/4?"))
        await orchestrator.background.drain()

        validator = orchestrator.response_validator
        assert len(validator.corrections) == 1
        assert validator.corrections[0]["status"] == "pending"
        assert validator.failures[0]["specialist_name"] == "math_specialist"
        review = gateway.calls_for("generate", Responder.VALIDATOR)[0]
        assert review["reasoning"] == ReasoningTier.HIGH
        assert review["cache_handle"].model_id == orchestrator.settings.deep_model
        assert "two sixths" in review["prompt"].text

        gateway.script_stream(chunk(teaching_json("I made a mistake earlier: it is three quarters.")))
        gateway.script_reply(Responder.VALIDATOR, json.dumps({
            "approved": True, "confidenceScore": 0.9, "issues": [], "requiredFixes": [],
        }))

        await orchestrator.handle_turn(turn("session-fix", "Okay, what is next?"))
        await orchestrator.background.drain()

        prompt = gateway.calls_for("stream", Responder.MATH_SPECIALIST)[1]["prompt"].text
        assert "[SELF-CORRECTION REQUIRED]" in prompt
        assert "1/2 + 1/4 is 3/4, not 2/6" in prompt
        assert "State that the sum is 3/4" in prompt
        assert validator.corrections[0]["status"] == "delivered"
        assert len(validator.corrections) == 1
        assert orchestrator.background.stats["failed"] == 0

    @pytest.mark.asyncio
    async def test_validator_outage_auto_approves(self, orchestrator, gateway):
        gateway.script_stream(chunk(teaching_json("Three quarters is the answer.")))

        result = await orchestrator.handle_turn(turn("session-fix", "What is 1/2 + 1/4?"))
        await orchestrator.background.drain()

        assert result.spoken_text == "Three quarters is the answer."
        assert len(gateway.calls_for("generate", Responder.VALIDATOR)) == 1
        assert orchestrator.response_validator.corrections == []
        assert orchestrator.background.stats["failed"] == 0


class TestGroundedResponders:
    @pytest.mark.asyncio
    async def test_grounded_turn_runs_without_cached_context(self):
        gateway = FakeGateway()
        orchestrator = build_orchestrator(gateway, FakeSpeech())
        orchestrator.session_manager.set_active_responder("session-sci", Responder.SCIENCE_SPECIALIST)
        gateway.script_stream(chunk(teaching_json("Plants make food from sunlight.")))

        result = await orchestrator.handle_turn(turn("session-sci", "How do plants eat?"))
        await orchestrator.background.drain()

        assert result.responder_id == "science_specialist"
        call = gateway.calls_for("stream", Responder.SCIENCE_SPECIALIST)[0]
        assert call["cache_handle"] is None
        assert call["system_prompt"].startswith("You are the Science Specialist")
