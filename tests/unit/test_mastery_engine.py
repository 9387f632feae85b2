"""
Unit Tests for Mastery Engine

Tests the six mastery criteria, rule layering and the completion gate.
"""

import asyncio
from datetime import datetime, timedelta, timezone

import pytest

from multi_ai_tutor.evidence_manager import MasteryEvidenceManager
from multi_ai_tutor.lesson_manager import LessonManager
from multi_ai_tutor.mastery_engine import (
    APPLICATION,
    CORRECT_RATIO,
    EVIDENCE_VOLUME,
    EXPLANATIONS,
    SELF_CORRECTION,
    TIME_ON_TASK,
    MasteryEngine,
    MasteryRules,
    count_self_corrections,
    evaluate_evidence,
)
from multi_ai_tutor.models import EvidenceKind, MasteryEvidenceRecord
from multi_ai_tutor.session_manager import SessionManager

from fakes import make_lesson

T0 = datetime(2026, 3, 1, 10, 0, tzinfo=timezone.utc)


def evidence(kind: EvidenceKind, quality: int = 100, minute: int = 0, lesson_id: str = "lesson-fractions-1"):
    return MasteryEvidenceRecord(
        user_id="user-1",
        lesson_id=lesson_id,
        session_id="session-1",
        kind=kind,
        quality_score=quality,
        confidence=0.9,
        content="...",
        topic="Adding Fractions",
        recorded_at=T0 + timedelta(minutes=minute),
    )


def full_mastery_records():
    return [
        evidence(EvidenceKind.INCORRECT_ANSWER, 20, 0),
        evidence(EvidenceKind.CORRECT_ANSWER, 100, 1),
        evidence(EvidenceKind.CORRECT_ANSWER, 100, 2),
        evidence(EvidenceKind.CORRECT_ANSWER, 100, 3),
        evidence(EvidenceKind.EXPLANATION, 85, 4),
        evidence(EvidenceKind.EXPLANATION, 75, 5),
        evidence(EvidenceKind.APPLICATION, 90, 6),
    ]


class TestEvaluateEvidence:
    def test_single_correct_answer_after_two_minutes_is_not_mastery(self):
        evaluation = evaluate_evidence([evidence(EvidenceKind.CORRECT_ANSWER)], 2, MasteryRules())

        assert evaluation.approved is False
        assert evaluation.criteria_met[CORRECT_RATIO] is True
        for criterion in (EXPLANATIONS, APPLICATION, TIME_ON_TASK):
            assert criterion in evaluation.unmet_criteria

    def test_all_criteria_met(self):
        evaluation = evaluate_evidence(full_mastery_records(), 12, MasteryRules())

        assert evaluation.approved is True
        assert all(evaluation.criteria_met.values())
        assert evaluation.stats["self_corrections"] == 1
        assert evaluation.stats["correct_ratio"] == 0.75

    def test_self_correction_is_a_bonus_criterion(self):
        records = [r for r in full_mastery_records() if r.kind != EvidenceKind.INCORRECT_ANSWER]
        evaluation = evaluate_evidence(records, 12, MasteryRules())

        assert evaluation.criteria_met[SELF_CORRECTION] is False
        assert evaluation.approved is True
        assert evaluation.unmet_required == []

    def test_no_answers_fails_correct_ratio(self):
        records = [evidence(EvidenceKind.EXPLANATION, 90, i) for i in range(3)]
        evaluation = evaluate_evidence(records, 10, MasteryRules())

        assert evaluation.criteria_met[CORRECT_RATIO] is False
        assert evaluation.criteria_met[EVIDENCE_VOLUME] is True

    def test_low_quality_explanations_do_not_count(self):
        records = [evidence(EvidenceKind.EXPLANATION, 60, i) for i in range(4)]
        evaluation = evaluate_evidence(records, 10, MasteryRules())

        assert evaluation.stats["strong_explanations"] == 0
        assert evaluation.criteria_met[EXPLANATIONS] is False

    def test_self_correction_requires_incorrect_before_correct(self):
        correct_first = [evidence(EvidenceKind.CORRECT_ANSWER, minute=0), evidence(EvidenceKind.INCORRECT_ANSWER, minute=1)]
        # Listed out of order on purpose; recorded_at decides
        incorrect_first = [evidence(EvidenceKind.CORRECT_ANSWER, minute=1), evidence(EvidenceKind.INCORRECT_ANSWER, minute=0)]

        assert count_self_corrections(correct_first) == 0
        assert count_self_corrections(incorrect_first) == 1


class TestMasteryRules:
    def test_overrides_apply_and_unknown_keys_are_ignored(self):
        rules = MasteryRules().merged_with({"min_elapsed_minutes": 10, "bogus": 1, "min_applications": None})

        assert rules.min_elapsed_minutes == 10
        assert rules.min_applications == 1

    def test_required_criteria_override_drops_unknown_names(self):
        rules = MasteryRules().merged_with({"required_criteria": [CORRECT_RATIO, "vibes"]})
        assert rules.required_criteria == frozenset({CORRECT_RATIO})


class TestMasteryEngine:
    """Test suite for the completion gate."""

    @pytest.fixture
    def evidence_manager(self):
        return MasteryEvidenceManager()

    @pytest.fixture
    def lesson_manager(self):
        return LessonManager()

    @pytest.fixture
    def session_manager(self):
        manager = SessionManager()
        manager._sessions["session-1"] = {
            "id": "session-1",
            "user_id": "user-1",
            "lesson_id": "lesson-fractions-1",
            "started_at": T0.isoformat(),
            "interaction_count": 0,
        }
        return manager

    def engine_at(self, evidence_manager, lesson_manager, session_manager, minutes: float, **kwargs):
        return MasteryEngine(
            evidence_manager,
            lesson_manager,
            session_manager,
            now=lambda: T0 + timedelta(minutes=minutes),
            **kwargs,
        )

    @pytest.mark.asyncio
    async def test_no_claim_skips_evaluation(self, evidence_manager, lesson_manager, session_manager):
        engine = self.engine_at(evidence_manager, lesson_manager, session_manager, 30)

        assert await engine.gate_completion(False, "user-1", make_lesson(), "session-1") == (False, None)

    @pytest.mark.asyncio
    async def test_claim_is_vetoed_without_evidence(self, evidence_manager, lesson_manager, session_manager):
        await evidence_manager.record(evidence(EvidenceKind.CORRECT_ANSWER))
        engine = self.engine_at(evidence_manager, lesson_manager, session_manager, 2)

        complete, evaluation = await engine.gate_completion(True, "user-1", make_lesson(), "session-1")

        assert complete is False
        assert set(evaluation.unmet_required) >= {EXPLANATIONS, APPLICATION, TIME_ON_TASK}

        await engine.record_veto("user-1", "lesson-fractions-1", "session-1", evaluation)
        assert engine.vetoes[0]["unmet_criteria"] == evaluation.unmet_required

    @pytest.mark.asyncio
    async def test_claim_is_approved_with_evidence(self, evidence_manager, lesson_manager, session_manager):
        for record in full_mastery_records():
            await evidence_manager.record(record)
        engine = self.engine_at(evidence_manager, lesson_manager, session_manager, 12)

        complete, evaluation = await engine.gate_completion(True, "user-1", make_lesson(), "session-1")

        assert complete is True
        assert evaluation.approved is True

    @pytest.mark.asyncio
    async def test_evidence_from_other_lessons_is_ignored(self, evidence_manager, lesson_manager, session_manager):
        for record in full_mastery_records():
            record.lesson_id = "lesson-other"
            await evidence_manager.record(record)
        engine = self.engine_at(evidence_manager, lesson_manager, session_manager, 12)

        complete, _ = await engine.gate_completion(True, "user-1", make_lesson(), "session-1")
        assert complete is False

    @pytest.mark.asyncio
    async def test_rules_layer_subject_then_lesson(self, evidence_manager, lesson_manager, session_manager):
        lesson_manager.set_subject_rules("math", "4", {"min_elapsed_minutes": 20, "min_applications": 2})
        lesson = make_lesson(mastery_rules={"min_elapsed_minutes": 8})
        engine = self.engine_at(evidence_manager, lesson_manager, session_manager, 0)

        rules = await engine.get_effective_rules(lesson)

        assert rules.min_elapsed_minutes == 8
        assert rules.min_applications == 2
        assert rules.min_total_evidence == 3

    @pytest.mark.asyncio
    async def test_timeout_trusts_the_claim(self, evidence_manager, lesson_manager, session_manager):
        engine = self.engine_at(evidence_manager, lesson_manager, session_manager, 12, timeout_seconds=0.01)

        async def slow_evaluate(*args, **kwargs):
            await asyncio.sleep(1)

        engine.evaluate = slow_evaluate
        assert await engine.gate_completion(True, "user-1", make_lesson(), "session-1") == (True, None)

    @pytest.mark.asyncio
    async def test_store_failure_trusts_the_claim(self, evidence_manager, lesson_manager, session_manager):
        engine = self.engine_at(evidence_manager, lesson_manager, session_manager, 12)

        async def broken(*args, **kwargs):
            raise RuntimeError("database unavailable")

        evidence_manager.get_for_lesson = broken
        assert await engine.gate_completion(True, "user-1", make_lesson(), "session-1") == (True, None)
