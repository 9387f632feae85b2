"""
Mastery Evidence Manager

Append-only store for mastery evidence (`mastery_evidence` table) and the
derived current-mastery score.
"""

import asyncio
import logging
from typing import Dict, List

from multi_ai_tutor.models import EvidenceKind, MasteryEvidenceRecord

logger = logging.getLogger(__name__)

DEFAULT_MASTERY_LEVEL = 50


def compute_mastery_level(records: List[MasteryEvidenceRecord]) -> int:
    """
    Current mastery score (0-100).

    Correct / (correct + incorrect) when any answers exist, otherwise the mean
    quality score, otherwise 50.
    """
    correct = sum(1 for r in records if r.kind == EvidenceKind.CORRECT_ANSWER)
    incorrect = sum(1 for r in records if r.kind == EvidenceKind.INCORRECT_ANSWER)
    if correct + incorrect > 0:
        return round(correct / (correct + incorrect) * 100)
    if records:
        return round(sum(r.quality_score for r in records) / len(records))
    return DEFAULT_MASTERY_LEVEL


class MasteryEvidenceManager:
    def __init__(self, supabase_client=None):
        self.supabase = supabase_client
        self.use_supabase = supabase_client is not None
        self._records: List[MasteryEvidenceRecord] = []

    async def record(self, record: MasteryEvidenceRecord) -> bool:
        """
        Append an evidence record.

        Returns:
            True if stored
        """
        try:
            if self.use_supabase:
                row = record.to_row()
                await asyncio.to_thread(
                    lambda: self.supabase.table('mastery_evidence').insert(row).execute()
                )
            else:
                self._records.append(record)
        except Exception as e:
            logger.error(f"❌ [EvidenceManager] Failed to record evidence: {e}", exc_info=True)
            return False

        logger.info(
            f"📊 [EvidenceManager] Recorded {record.kind.value} "
            f"(quality {record.quality_score}, confidence {record.confidence:.2f})"
        )
        return True

    def _rows_to_records(self, rows: List[Dict]) -> List[MasteryEvidenceRecord]:
        records = []
        for row in rows:
            record = MasteryEvidenceRecord.from_row(row)
            if record is not None:
                records.append(record)
        return records

    async def get_for_lesson(self, user_id: str, lesson_id: str) -> List[MasteryEvidenceRecord]:
        """All evidence for a learner and lesson, oldest first."""
        if not self.use_supabase:
            return [r for r in self._records if r.user_id == user_id and r.lesson_id == lesson_id]

        result = await asyncio.to_thread(
            lambda: self.supabase.table('mastery_evidence')
            .select('*')
            .eq('user_id', user_id)
            .eq('lesson_id', lesson_id)
            .order('recorded_at')
            .execute()
        )
        return self._rows_to_records(result.data or [])

    async def get_recent_for_session(self, session_id: str, limit: int = 10) -> List[MasteryEvidenceRecord]:
        """Most recent evidence of a session, newest first."""
        if not self.use_supabase:
            matching = [r for r in self._records if r.session_id == session_id]
            return list(reversed(matching))[:limit]

        result = await asyncio.to_thread(
            lambda: self.supabase.table('mastery_evidence')
            .select('*')
            .eq('session_id', session_id)
            .order('recorded_at', desc=True)
            .limit(limit)
            .execute()
        )
        return self._rows_to_records(result.data or [])

    async def get_current_mastery_level(self, user_id: str, lesson_id: str) -> int:
        records = await self.get_for_lesson(user_id, lesson_id)
        return compute_mastery_level(records)
