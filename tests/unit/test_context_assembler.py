"""
Unit Tests for the Context Assembler

Tests the parallel context fetch and its failure semantics.
"""

import asyncio

import pytest

from multi_ai_tutor.context_assembler import ContextAssembler
from multi_ai_tutor.errors import ContextAssemblyError, LessonNotFoundError, ProfileNotFoundError
from multi_ai_tutor.evidence_manager import MasteryEvidenceManager
from multi_ai_tutor.lesson_manager import LessonManager
from multi_ai_tutor.models import EvidenceKind, MasteryEvidenceRecord
from multi_ai_tutor.profile_manager import ProfileManager
from multi_ai_tutor.responders import Responder
from multi_ai_tutor.session_manager import SessionManager

from fakes import make_lesson, make_profile


class TestContextAssembler:
    """Test suite for ContextAssembler."""

    @pytest.fixture
    def profile_manager(self):
        manager = ProfileManager()
        manager.save_in_memory(make_profile())
        return manager

    @pytest.fixture
    def session_manager(self):
        return SessionManager()

    @pytest.fixture
    def lesson_manager(self):
        manager = LessonManager()
        manager.add_lesson(make_lesson())
        return manager

    @pytest.fixture
    def evidence_manager(self):
        return MasteryEvidenceManager()

    @pytest.fixture
    def assembler(self, profile_manager, session_manager, lesson_manager, evidence_manager):
        return ContextAssembler(profile_manager, session_manager, lesson_manager, evidence_manager, history_limit=2)

    @pytest.mark.asyncio
    async def test_assembles_full_context(self, assembler, session_manager, evidence_manager):
        for i in range(3):
            await session_manager.save_interaction("session-1", f"q{i}", f"a{i}")
        session_manager.set_active_responder("session-1", Responder.MATH_SPECIALIST)
        await evidence_manager.record(MasteryEvidenceRecord(
            user_id="user-1", lesson_id="lesson-fractions-1", session_id="session-1",
            kind=EvidenceKind.CORRECT_ANSWER, quality_score=100, confidence=0.9, content="", topic="t",
        ))

        context = await assembler.assemble("user-1", "session-1", "lesson-fractions-1")

        assert context.profile.user_id == "user-1"
        assert context.lesson.title == "Adding Fractions"
        assert [h.user_message for h in context.history] == ["q1", "q2"]
        assert context.active_responder == Responder.MATH_SPECIALIST
        assert context.mastery_score == 100

    @pytest.mark.asyncio
    async def test_reads_run_concurrently(self, assembler, profile_manager, lesson_manager):
        started = []

        def slow(label, original):
            async def wrapper(*args, **kwargs):
                started.append(label)
                await asyncio.sleep(0.05)
                return await original(*args, **kwargs)
            return wrapper

        profile_manager.get_profile = slow("profile", profile_manager.get_profile)
        lesson_manager.get_lesson = slow("lesson", lesson_manager.get_lesson)

        loop = asyncio.get_running_loop()
        start = loop.time()
        await assembler.assemble("user-1", "session-1", "lesson-fractions-1")

        assert sorted(started) == ["lesson", "profile"]
        assert loop.time() - start < 0.095

    @pytest.mark.asyncio
    async def test_history_failure_degrades_to_empty(self, assembler, session_manager):
        async def broken(*args, **kwargs):
            raise RuntimeError("interactions table unavailable")

        session_manager.get_recent_history = broken

        context = await assembler.assemble("user-1", "session-1", "lesson-fractions-1")
        assert context.history == []

    @pytest.mark.asyncio
    async def test_missing_lesson(self, assembler):
        with pytest.raises(LessonNotFoundError):
            await assembler.assemble("user-1", "session-1", "no-such-lesson")

    @pytest.mark.asyncio
    async def test_missing_profile(self, assembler):
        with pytest.raises(ProfileNotFoundError):
            await assembler.assemble("ghost", "session-1", "lesson-fractions-1")

    @pytest.mark.asyncio
    async def test_profile_store_failure_is_fatal(self, assembler, profile_manager):
        async def broken(*args, **kwargs):
            raise RuntimeError("users table unavailable")

        profile_manager.get_profile = broken

        with pytest.raises(ContextAssemblyError) as excinfo:
            await assembler.assemble("user-1", "session-1", "lesson-fractions-1")
        assert not isinstance(excinfo.value, ProfileNotFoundError)
