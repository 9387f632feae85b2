"""
Unit Tests for the Evidence Extractor

Tests classification parsing, the confidence threshold and fallbacks.
"""

import json

import pytest

from multi_ai_tutor.errors import UpstreamServiceError
from multi_ai_tutor.evidence_extractor import FALLBACK_CLASSIFICATION, EvidenceExtractor
from multi_ai_tutor.evidence_manager import MasteryEvidenceManager, compute_mastery_level
from multi_ai_tutor.models import EvidenceKind
from multi_ai_tutor.responders import ReasoningTier, Responder

from fakes import Delayed, FakeGateway


def classification(kind="correct_answer", quality=100, confidence=0.9):
    return json.dumps({"evidenceType": kind, "qualityScore": quality, "confidence": confidence, "reasoning": "r"})


class TestEvidenceExtractor:
    """Test suite for EvidenceExtractor."""

    @pytest.fixture
    def gateway(self):
        return FakeGateway()

    @pytest.fixture
    def evidence_manager(self):
        return MasteryEvidenceManager()

    @pytest.fixture
    def extractor(self, gateway, evidence_manager):
        return EvidenceExtractor(gateway, evidence_manager, confidence_threshold=0.7, timeout_seconds=0.5)

    async def extract(self, extractor, learner_message="3/4"):
        return await extractor.extract_and_record(
            user_id="user-1",
            lesson_id="lesson-1",
            session_id="session-1",
            learner_message=learner_message,
            responder_message="That's right!",
            topic="Adding Fractions",
        )

    @pytest.mark.asyncio
    async def test_confident_classification_is_recorded(self, extractor, gateway, evidence_manager):
        gateway.script_reply(Responder.ASSESSOR, classification(confidence=0.95))

        record = await self.extract(extractor)

        assert record.kind == EvidenceKind.CORRECT_ANSWER
        assert record.topic == "Adding Fractions"
        assert await evidence_manager.get_for_lesson("user-1", "lesson-1") == [record]
        assert gateway.calls[0]["reasoning"] == ReasoningTier.LOW

    @pytest.mark.asyncio
    @pytest.mark.parametrize("confidence", [0.3, 0.69, 0.7])
    async def test_low_confidence_is_never_recorded(self, extractor, gateway, evidence_manager, confidence):
        gateway.script_reply(Responder.ASSESSOR, classification(confidence=confidence))

        assert await self.extract(extractor) is None
        assert await evidence_manager.get_for_lesson("user-1", "lesson-1") == []

    @pytest.mark.asyncio
    async def test_classifier_failure_uses_fallback(self, extractor, gateway, evidence_manager):
        gateway.script_reply(Responder.ASSESSOR, UpstreamServiceError("down"))

        assert await extractor.classify("a", "b", "c") == FALLBACK_CLASSIFICATION

    @pytest.mark.asyncio
    async def test_classifier_timeout_uses_fallback(self, extractor, gateway):
        gateway.script_reply(Responder.ASSESSOR, Delayed(classification(), seconds=2))

        assert await extractor.classify("a", "b", "c") == FALLBACK_CLASSIFICATION

    @pytest.mark.asyncio
    @pytest.mark.parametrize("raw", ["not json", classification(kind="daydreaming")])
    async def test_unusable_reply_uses_fallback(self, extractor, gateway, raw):
        gateway.script_reply(Responder.ASSESSOR, raw)
        assert await extractor.classify("a", "b", "c") == FALLBACK_CLASSIFICATION

    @pytest.mark.asyncio
    async def test_scores_are_clamped(self, extractor, gateway):
        gateway.script_reply(Responder.ASSESSOR, classification(kind="EXPLANATION", quality=140, confidence=3))

        result = await extractor.classify("a", "b", "c")

        assert result.kind == EvidenceKind.EXPLANATION
        assert result.quality_score == 100
        assert result.confidence == 1.0

    @pytest.mark.asyncio
    async def test_empty_learner_message_is_skipped(self, extractor, gateway):
        assert await self.extract(extractor, learner_message="  ") is None
        assert gateway.calls == []


class TestMasteryLevel:
    def test_default_without_evidence(self):
        assert compute_mastery_level([]) == 50
