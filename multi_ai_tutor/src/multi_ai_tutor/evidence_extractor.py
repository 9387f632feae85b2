"""
Evidence Extractor

Classifies each exchange into a mastery evidence kind with a quality score and
a confidence. Only confident classifications are recorded; everything here
runs in the background after the response has been returned.
"""

import asyncio
import json
import logging
from dataclasses import dataclass
from typing import Optional

from multi_ai_tutor.evidence_manager import MasteryEvidenceManager
from multi_ai_tutor.llm_client import PromptInput
from multi_ai_tutor.models import EvidenceKind, MasteryEvidenceRecord
from multi_ai_tutor.responders import ReasoningTier, Responder

logger = logging.getLogger(__name__)

CLASSIFIER_SYSTEM_PROMPT = "You classify learning evidence from tutoring exchanges. Reply with JSON only."

CONTENT_SNIPPET_LENGTH = 500

CLASSIFIER_PROMPT = """You are analyzing a student's learning evidence during a lesson.

CONCEPT BEING TAUGHT: {topic}

STUDENT RESPONSE: "{learner_message}"

TEACHER RESPONSE: "{responder_message}"

Classify the student's response.

EVIDENCE TYPES:
- correct_answer: Student answered correctly
- incorrect_answer: Student answered incorrectly
- explanation: Student explained a concept (assess quality)
- application: Student applied knowledge to solve a problem
- struggle: Student showed confusion or asked for help

QUALITY SCORE (0-100):
- correct_answer: 100 if fully correct, 80 if mostly correct
- explanation: clarity, completeness, understanding
- application: success in applying the concept
- incorrect_answer: 0-30 (closer to correct = higher)
- struggle: 0

CONFIDENCE (0-1): How certain are you of this classification?

Return JSON: {{"evidenceType": "...", "qualityScore": 0, "confidence": 0.0, "reasoning": "..."}}"""


@dataclass
class EvidenceClassification:
    kind: EvidenceKind
    quality_score: int
    confidence: float
    reasoning: str = ""


FALLBACK_CLASSIFICATION = EvidenceClassification(
    kind=EvidenceKind.EXPLANATION,
    quality_score=50,
    confidence=0.3,
    reasoning="Classifier unavailable",
)


class EvidenceExtractor:
    def __init__(
        self,
        gateway,
        evidence_manager: MasteryEvidenceManager,
        confidence_threshold: float = 0.7,
        timeout_seconds: float = 10.0,
    ):
        self.gateway = gateway
        self.evidence_manager = evidence_manager
        self.confidence_threshold = confidence_threshold
        self.timeout_seconds = timeout_seconds

    async def classify(self, learner_message: str, responder_message: str, topic: str) -> EvidenceClassification:
        """
        Classify one exchange. Never raises; failures return a low-confidence default.
        """
        prompt = CLASSIFIER_PROMPT.format(
            topic=topic,
            learner_message=learner_message,
            responder_message=responder_message,
        )
        try:
            raw = await asyncio.wait_for(
                self.gateway.generate_text(
                    Responder.ASSESSOR,
                    PromptInput(text=prompt),
                    CLASSIFIER_SYSTEM_PROMPT,
                    reasoning=ReasoningTier.LOW,
                ),
                timeout=self.timeout_seconds,
            )
            data = json.loads(raw)
            kind = EvidenceKind.parse(data.get("evidenceType"))
            if kind is None:
                raise ValueError(f"unknown evidence type {data.get('evidenceType')!r}")
            quality = max(0, min(100, int(round(float(data.get("qualityScore", 0))))))
            confidence = max(0.0, min(1.0, float(data.get("confidence", 0))))
        except asyncio.TimeoutError:
            logger.warning(f"⚠️ [EvidenceExtractor] Classifier timed out after {self.timeout_seconds}s")
            return FALLBACK_CLASSIFICATION
        except Exception as e:
            logger.warning(f"⚠️ [EvidenceExtractor] Classification failed, using fallback: {e}")
            return FALLBACK_CLASSIFICATION

        return EvidenceClassification(
            kind=kind,
            quality_score=quality,
            confidence=confidence,
            reasoning=str(data.get("reasoning") or ""),
        )

    async def extract_and_record(
        self,
        user_id: str,
        lesson_id: str,
        session_id: str,
        learner_message: str,
        responder_message: str,
        topic: str,
    ) -> Optional[MasteryEvidenceRecord]:
        """
        Classify an exchange and record it when confidence is above threshold.

        Returns:
            The recorded evidence, or None if nothing was recorded
        """
        if not learner_message or not learner_message.strip():
            return None

        classification = await self.classify(learner_message, responder_message, topic)
        if classification.confidence <= self.confidence_threshold:
            logger.info(
                f"🔍 [EvidenceExtractor] Skipping {classification.kind.value} "
                f"(confidence {classification.confidence:.2f} <= {self.confidence_threshold})"
            )
            return None

        record = MasteryEvidenceRecord(
            user_id=user_id,
            lesson_id=lesson_id,
            session_id=session_id,
            kind=classification.kind,
            quality_score=classification.quality_score,
            confidence=classification.confidence,
            content=learner_message[:CONTENT_SNIPPET_LENGTH],
            topic=topic,
        )
        stored = await self.evidence_manager.record(record)
        return record if stored else None
