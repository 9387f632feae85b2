"""
Context Assembler

Loads everything a turn needs with all independent reads issued concurrently.
History is optional (a failure degrades to an empty history); every other read
is required.
"""

import asyncio
import logging
import time
from dataclasses import dataclass, field
from typing import List, Optional

from multi_ai_tutor.errors import (
    ContextAssemblyError,
    LessonNotFoundError,
    ProfileNotFoundError,
)
from multi_ai_tutor.evidence_manager import MasteryEvidenceManager
from multi_ai_tutor.lesson_manager import LessonManager
from multi_ai_tutor.models import HistoryEntry, LessonDescriptor
from multi_ai_tutor.profile_manager import LearnerProfile, ProfileManager
from multi_ai_tutor.responders import Responder
from multi_ai_tutor.session_manager import SessionManager

logger = logging.getLogger(__name__)


@dataclass
class TurnContext:
    profile: LearnerProfile
    lesson: LessonDescriptor
    history: List[HistoryEntry] = field(default_factory=list)
    active_responder: Optional[Responder] = None
    mastery_score: int = 50


class ContextAssembler:
    def __init__(
        self,
        profile_manager: ProfileManager,
        session_manager: SessionManager,
        lesson_manager: LessonManager,
        evidence_manager: MasteryEvidenceManager,
        history_limit: int = 5,
    ):
        self.profile_manager = profile_manager
        self.session_manager = session_manager
        self.lesson_manager = lesson_manager
        self.evidence_manager = evidence_manager
        self.history_limit = history_limit

    async def assemble(self, user_id: str, session_id: str, lesson_id: str) -> TurnContext:
        """
        Load turn context in parallel.

        Raises:
            LessonNotFoundError: lesson does not exist
            ProfileNotFoundError: learner does not exist
            ContextAssemblyError: any required read failed
        """
        start = time.time()
        profile, history, lesson, active, mastery = await asyncio.gather(
            self.profile_manager.get_profile(user_id),
            self.session_manager.get_recent_history(session_id, self.history_limit),
            self.lesson_manager.get_lesson(lesson_id),
            self.session_manager.get_active_responder(session_id),
            self.evidence_manager.get_current_mastery_level(user_id, lesson_id),
            return_exceptions=True,
        )

        if isinstance(history, Exception):
            logger.warning(f"⚠️ [ContextAssembler] History fetch failed, continuing without it: {history}")
            history = []

        for label, value in (
            ("profile", profile),
            ("lesson", lesson),
            ("active responder", active),
            ("mastery level", mastery),
        ):
            if isinstance(value, Exception):
                logger.error(f"❌ [ContextAssembler] Failed to load {label}: {value}")
                raise ContextAssemblyError(f"Failed to load {label}") from value

        if lesson is None:
            raise LessonNotFoundError(lesson_id)
        if profile is None:
            raise ProfileNotFoundError(user_id)

        elapsed = (time.time() - start) * 1000
        logger.info(
            f"📦 [ContextAssembler] Context ready in {elapsed:.0f}ms "
            f"(history={len(history)}, active={active.value if active else None}, mastery={mastery})"
        )
        return TurnContext(
            profile=profile,
            lesson=lesson,
            history=history,
            active_responder=active,
            mastery_score=mastery,
        )
