"""
Mastery Engine

Deterministic rules evaluator that decides whether a learner has mastered the
current lesson. The model's own "lesson complete" claim is only a trigger for
evaluation; a failed evaluation vetoes the claim.

Criteria (defaults):
1. correct_ratio     >= 70% of answers correct
2. explanations      >= 2 explanations with quality >= 70
3. application       >= 1 application record
4. self_correction   >= 1 incorrect answer later followed by a correct one (bonus)
5. time_on_task      >= 5 minutes since session start
6. evidence_volume   >= 3 evidence records

Rules are layered: built-in defaults, then subject/grade configuration, then the
lesson's own override.
"""

import asyncio
import logging
from dataclasses import dataclass, field, fields, replace
from datetime import datetime, timezone
from typing import Any, Callable, Dict, FrozenSet, List, Optional

from multi_ai_tutor.evidence_manager import MasteryEvidenceManager
from multi_ai_tutor.lesson_manager import LessonManager
from multi_ai_tutor.models import EvidenceKind, LessonDescriptor, MasteryEvidenceRecord
from multi_ai_tutor.session_manager import SessionManager

logger = logging.getLogger(__name__)

CORRECT_RATIO = "correct_ratio"
EXPLANATIONS = "explanations"
APPLICATION = "application"
SELF_CORRECTION = "self_correction"
TIME_ON_TASK = "time_on_task"
EVIDENCE_VOLUME = "evidence_volume"

ALL_CRITERIA = (CORRECT_RATIO, EXPLANATIONS, APPLICATION, SELF_CORRECTION, TIME_ON_TASK, EVIDENCE_VOLUME)


@dataclass(frozen=True)
class MasteryRules:
    min_correct_ratio: float = 0.7
    min_high_quality_explanations: int = 2
    explanation_quality_threshold: int = 70
    min_applications: int = 1
    min_self_corrections: int = 1
    min_elapsed_minutes: float = 5
    min_total_evidence: int = 3
    required_criteria: FrozenSet[str] = field(
        default_factory=lambda: frozenset({CORRECT_RATIO, EXPLANATIONS, APPLICATION, TIME_ON_TASK, EVIDENCE_VOLUME})
    )

    def merged_with(self, overrides: Optional[Dict[str, Any]]) -> "MasteryRules":
        """Apply a partial override dict; unknown keys are ignored."""
        if not overrides:
            return self
        known = {f.name for f in fields(self)}
        updates = {}
        for key, value in overrides.items():
            if key not in known or value is None:
                continue
            if key == "required_criteria":
                value = frozenset(c for c in value if c in ALL_CRITERIA)
            updates[key] = value
        return replace(self, **updates)


@dataclass
class MasteryEvaluation:
    approved: bool
    criteria_met: Dict[str, bool]
    required: FrozenSet[str]
    stats: Dict[str, Any] = field(default_factory=dict)

    @property
    def unmet_criteria(self) -> List[str]:
        return [name for name in ALL_CRITERIA if not self.criteria_met.get(name, False)]

    @property
    def unmet_required(self) -> List[str]:
        return [name for name in ALL_CRITERIA if name in self.required and not self.criteria_met.get(name, False)]


def count_self_corrections(records: List[MasteryEvidenceRecord]) -> int:
    """Incorrect answers that were later followed by a correct answer."""
    corrections = 0
    pending_incorrect = 0
    for record in sorted(records, key=lambda r: r.recorded_at):
        if record.kind == EvidenceKind.INCORRECT_ANSWER:
            pending_incorrect += 1
        elif record.kind == EvidenceKind.CORRECT_ANSWER and pending_incorrect:
            corrections += 1
            pending_incorrect = 0
    return corrections


def evaluate_evidence(
    records: List[MasteryEvidenceRecord],
    elapsed_minutes: float,
    rules: MasteryRules,
) -> MasteryEvaluation:
    """Pure evaluation of the six criteria."""
    correct = sum(1 for r in records if r.kind == EvidenceKind.CORRECT_ANSWER)
    incorrect = sum(1 for r in records if r.kind == EvidenceKind.INCORRECT_ANSWER)
    strong_explanations = sum(
        1 for r in records
        if r.kind == EvidenceKind.EXPLANATION and r.quality_score >= rules.explanation_quality_threshold
    )
    applications = sum(1 for r in records if r.kind == EvidenceKind.APPLICATION)
    self_corrections = count_self_corrections(records)
    answered = correct + incorrect
    correct_ratio = correct / answered if answered else 0.0

    criteria_met = {
        CORRECT_RATIO: answered > 0 and correct_ratio >= rules.min_correct_ratio,
        EXPLANATIONS: strong_explanations >= rules.min_high_quality_explanations,
        APPLICATION: applications >= rules.min_applications,
        SELF_CORRECTION: self_corrections >= rules.min_self_corrections,
        TIME_ON_TASK: elapsed_minutes >= rules.min_elapsed_minutes,
        EVIDENCE_VOLUME: len(records) >= rules.min_total_evidence,
    }
    approved = all(criteria_met[name] for name in rules.required_criteria)
    return MasteryEvaluation(
        approved=approved,
        criteria_met=criteria_met,
        required=rules.required_criteria,
        stats={
            "correct": correct,
            "incorrect": incorrect,
            "correct_ratio": round(correct_ratio, 3),
            "strong_explanations": strong_explanations,
            "applications": applications,
            "self_corrections": self_corrections,
            "elapsed_minutes": round(elapsed_minutes, 1),
            "total_evidence": len(records),
        },
    )


class MasteryEngine:
    def __init__(
        self,
        evidence_manager: MasteryEvidenceManager,
        lesson_manager: LessonManager,
        session_manager: SessionManager,
        supabase_client=None,
        default_rules: Optional[MasteryRules] = None,
        timeout_seconds: float = 3.0,
        now: Callable[[], datetime] = lambda: datetime.now(timezone.utc),
    ):
        self.evidence_manager = evidence_manager
        self.lesson_manager = lesson_manager
        self.session_manager = session_manager
        self.supabase = supabase_client
        self.use_supabase = supabase_client is not None
        self.default_rules = default_rules or MasteryRules()
        self.timeout_seconds = timeout_seconds
        self.now = now
        self.vetoes: List[Dict[str, Any]] = []

    async def get_effective_rules(self, lesson: LessonDescriptor) -> MasteryRules:
        """Defaults, then subject/grade configuration, then the lesson override."""
        rules = self.default_rules
        subject_rules = await self.lesson_manager.get_subject_mastery_rules(lesson.subject, lesson.grade_level)
        rules = rules.merged_with(subject_rules)
        return rules.merged_with(lesson.mastery_rules)

    async def evaluate(self, user_id: str, lesson: LessonDescriptor, session_id: str) -> MasteryEvaluation:
        """
        Evaluate mastery for a learner on a lesson.

        Raises:
            Exception: store failures propagate
        """
        records, started_at, rules = await asyncio.gather(
            self.evidence_manager.get_for_lesson(user_id, lesson.id),
            self.session_manager.get_session_start(session_id),
            self.get_effective_rules(lesson),
        )
        elapsed = 0.0
        if started_at is not None:
            elapsed = max(0.0, (self.now() - started_at).total_seconds() / 60)

        evaluation = evaluate_evidence(records, elapsed, rules)
        met = sum(1 for v in evaluation.criteria_met.values() if v)
        logger.info(
            f"🎓 [MasteryEngine] Lesson {lesson.id[:8]}: approved={evaluation.approved} "
            f"({met}/{len(ALL_CRITERIA)} criteria met)"
        )
        return evaluation

    async def gate_completion(
        self,
        raw_claim: bool,
        user_id: str,
        lesson: LessonDescriptor,
        session_id: str,
    ) -> tuple:
        """
        Decide the final completion flag for a turn.

        Only evaluates when the model claims completion. A failed or timed-out
        evaluation trusts the claim.

        Returns:
            (topic_complete, MasteryEvaluation or None)
        """
        if not raw_claim:
            return False, None

        try:
            evaluation = await asyncio.wait_for(
                self.evaluate(user_id, lesson, session_id),
                timeout=self.timeout_seconds,
            )
        except asyncio.TimeoutError:
            logger.warning(f"⚠️ [MasteryEngine] Evaluation timed out after {self.timeout_seconds}s, trusting model claim")
            return True, None
        except Exception as e:
            logger.error(f"❌ [MasteryEngine] Evaluation failed, trusting model claim: {e}", exc_info=True)
            return True, None

        if not evaluation.approved:
            logger.info(f"🚫 [MasteryEngine] Vetoed completion claim, unmet: {evaluation.unmet_required}")
        return evaluation.approved, evaluation

    async def record_veto(self, user_id: str, lesson_id: str, session_id: str, evaluation: MasteryEvaluation):
        """Persist unmet criteria of a vetoed completion claim for review."""
        row = {
            'user_id': user_id,
            'lesson_id': lesson_id,
            'session_id': session_id,
            'approved': evaluation.approved,
            'criteria_met': evaluation.criteria_met,
            'unmet_criteria': evaluation.unmet_required,
            'stats': evaluation.stats,
            'evaluated_at': self.now().isoformat(),
        }
        if self.use_supabase:
            await asyncio.to_thread(
                lambda: self.supabase.table('mastery_evaluations').insert(row).execute()
            )
        else:
            self.vetoes.append(row)
