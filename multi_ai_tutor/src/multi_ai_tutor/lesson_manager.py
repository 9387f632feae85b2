"""
Lesson Manager

Loads lesson descriptors and per-subject configuration. Lessons are immutable
for the lifetime of a session, so loaded descriptors are memoised.
"""

import asyncio
import logging
from typing import Any, Dict, Optional, Tuple

from multi_ai_tutor.models import LessonDescriptor

logger = logging.getLogger(__name__)


class LessonManager:
    def __init__(self, supabase_client=None):
        self.supabase = supabase_client
        self.use_supabase = supabase_client is not None
        self._lessons: Dict[str, LessonDescriptor] = {}
        self._subject_rules: Dict[Tuple[str, Optional[str]], Dict[str, Any]] = {}

    def add_lesson(self, lesson: LessonDescriptor):
        """Register a lesson (in-memory mode and tests)."""
        self._lessons[lesson.id] = lesson

    def set_subject_rules(self, subject: str, grade_level: Optional[str], rules: Dict[str, Any]):
        """Register subject/grade mastery rules (in-memory mode and tests)."""
        self._subject_rules[(subject.lower(), grade_level)] = dict(rules)

    def _fetch_lesson(self, lesson_id: str) -> Optional[Dict[str, Any]]:
        result = self.supabase.table('lessons') \
            .select('*') \
            .eq('id', lesson_id) \
            .limit(1) \
            .execute()
        return result.data[0] if result.data else None

    async def get_lesson(self, lesson_id: str) -> Optional[LessonDescriptor]:
        """
        Get a lesson descriptor.

        Returns:
            LessonDescriptor, or None if the lesson does not exist

        Raises:
            Exception: store errors propagate to the caller
        """
        if lesson_id in self._lessons:
            return self._lessons[lesson_id]
        if not self.use_supabase:
            return None

        row = await asyncio.to_thread(self._fetch_lesson, lesson_id)
        if not row:
            return None
        lesson = LessonDescriptor.from_row(row)
        self._lessons[lesson_id] = lesson
        return lesson

    async def get_subject_mastery_rules(self, subject: str, grade_level: Optional[str]) -> Optional[Dict[str, Any]]:
        """Subject/grade default mastery rules from `subject_configurations`."""
        key = (subject.lower(), grade_level)
        if key in self._subject_rules:
            return self._subject_rules[key]
        if not self.use_supabase:
            return None

        def fetch():
            query = self.supabase.table('subject_configurations') \
                .select('default_mastery_rules') \
                .eq('subject', subject.lower())
            if grade_level is not None:
                query = query.eq('grade_level', grade_level)
            return query.limit(1).execute()

        result = await asyncio.to_thread(fetch)
        rules = result.data[0].get('default_mastery_rules') if result.data else None
        if rules:
            self._subject_rules[key] = rules
        return rules
