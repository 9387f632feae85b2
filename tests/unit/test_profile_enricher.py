"""
Unit Tests for Profile Enrichment

Tests strength/struggle detection, mutual exclusion and cache invalidation.
"""

import asyncio

import pytest

from multi_ai_tutor.evidence_manager import MasteryEvidenceManager
from multi_ai_tutor.models import EvidenceKind, MasteryEvidenceRecord
from multi_ai_tutor.profile_enricher import ProfileEnricher, merge_topics
from multi_ai_tutor.profile_manager import ProfileManager

from fakes import FakeClock, FakeSupabase, make_profile


def record(topic: str, quality: int, session_id: str = "session-1", kind=EvidenceKind.EXPLANATION):
    return MasteryEvidenceRecord(
        user_id="user-1",
        lesson_id="lesson-1",
        session_id=session_id,
        kind=kind,
        quality_score=quality,
        confidence=0.9,
        content="...",
        topic=topic,
    )


class TestMergeTopics:
    def test_new_strength_leaves_struggles(self):
        strengths, struggles = merge_topics([], ["fractions"], ["fractions"], [])
        assert strengths == ["fractions"]
        assert struggles == []

    def test_new_struggle_demotes_existing_strength(self):
        strengths, struggles = merge_topics(["decimals"], [], [], ["decimals"])
        assert strengths == []
        assert struggles == ["decimals"]

    def test_same_topic_strong_and_weak_counts_as_strength(self):
        strengths, struggles = merge_topics([], [], ["angles"], ["angles"])
        assert strengths == ["angles"]
        assert struggles == []

    def test_existing_topics_are_kept_without_duplicates(self):
        strengths, struggles = merge_topics(["a", "b"], ["c"], ["a"], ["c", "d"])
        assert strengths == ["a", "b"]
        assert struggles == ["c", "d"]


class TestProfileEnricher:
    """Test suite for ProfileEnricher."""

    @pytest.fixture
    def evidence_manager(self):
        return MasteryEvidenceManager()

    @pytest.fixture
    def profile_manager(self):
        manager = ProfileManager(clock=FakeClock())
        manager.save_in_memory(make_profile(strengths=["multiplication"], struggles=[]))
        return manager

    @pytest.fixture
    def enricher(self, evidence_manager, profile_manager):
        return ProfileEnricher(evidence_manager, profile_manager, window=10)

    @pytest.mark.asyncio
    async def test_repeated_low_quality_becomes_struggle(self, enricher, evidence_manager, profile_manager):
        await profile_manager.get_profile("user-1")  # warm the cache
        for score in (20, 35, 10):
            await evidence_manager.record(record("fractions", score))

        result = await enricher.enrich_profile_if_needed("user-1", "session-1")

        assert result.updated is True
        assert profile_manager.get_cache_stats()["invalidations"] == 1
        profile = await profile_manager.get_profile("user-1")
        assert "fractions" in profile.struggles
        assert profile.strengths == ["multiplication"]

    @pytest.mark.asyncio
    async def test_two_low_quality_records_are_not_enough(self, enricher, evidence_manager):
        for score in (20, 35):
            await evidence_manager.record(record("fractions", score))

        result = await enricher.enrich_profile_if_needed("user-1", "session-1")

        assert result.updated is False
        assert result.new_struggles == []

    @pytest.mark.asyncio
    async def test_strength_removes_struggle(self, enricher, evidence_manager, profile_manager):
        profile_manager.save_in_memory(make_profile(strengths=[], struggles=["fractions"]))
        await evidence_manager.record(record("fractions", 95, kind=EvidenceKind.CORRECT_ANSWER))

        await enricher.enrich_profile_if_needed("user-1", "session-1")

        profile = await profile_manager.get_profile("user-1")
        assert profile.strengths == ["fractions"]
        assert "fractions" not in profile.struggles

    @pytest.mark.asyncio
    async def test_no_change_means_no_write(self, enricher, evidence_manager, profile_manager):
        await evidence_manager.record(record("multiplication", 90))

        result = await enricher.enrich_profile_if_needed("user-1", "session-1")

        assert result.updated is False
        assert profile_manager.get_cache_stats()["invalidations"] == 0

    @pytest.mark.asyncio
    async def test_only_current_session_is_considered(self, enricher, evidence_manager):
        for score in (20, 35, 10):
            await evidence_manager.record(record("fractions", score, session_id="old-session"))

        result = await enricher.enrich_profile_if_needed("user-1", "session-1")
        assert result.updated is False

    @pytest.mark.asyncio
    async def test_writes_through_supabase(self, evidence_manager):
        db = FakeSupabase({"users": [{"id": "user-1", "name": "Sam", "strengths": [], "struggles": []}]})
        profile_manager = ProfileManager(db)
        enricher = ProfileEnricher(evidence_manager, profile_manager)
        for score in (5, 15, 25):
            await evidence_manager.record(record("fractions", score))

        await enricher.enrich_profile_if_needed("user-1", "session-1")

        assert db.tables["users"][0]["struggles"] == ["fractions"]
        assert (await profile_manager.get_profile("user-1")).struggles == ["fractions"]


class TestProfileEnricherFreshReads:
    """Enrichment merges into the stored profile, not a cached or concurrent copy."""

    @pytest.fixture
    def evidence_manager(self):
        return MasteryEvidenceManager()

    @pytest.fixture
    def db(self):
        return FakeSupabase({"users": [{"id": "user-1", "name": "Sam", "strengths": [], "struggles": []}]})

    @pytest.fixture
    def profile_manager(self, db):
        return ProfileManager(db, cache_ttl_seconds=300, clock=FakeClock())

    @pytest.mark.asyncio
    async def test_stale_cache_does_not_drop_stored_struggles(self, evidence_manager, db, profile_manager):
        await profile_manager.get_profile("user-1")  # warm the cache with empty lists
        db.tables["users"][0]["struggles"] = ["decimals"]
        for score in (20, 35, 10):
            await evidence_manager.record(record("fractions", score))
        enricher = ProfileEnricher(evidence_manager, profile_manager)

        result = await enricher.enrich_profile_if_needed("user-1", "session-1")

        assert result.updated is True
        assert db.tables["users"][0]["struggles"] == ["decimals", "fractions"]

    @pytest.mark.asyncio
    async def test_concurrent_sessions_keep_both_struggles(self, evidence_manager, db, profile_manager):
        await profile_manager.get_profile("user-1")
        for score in (20, 35, 10):
            await evidence_manager.record(record("fractions", score, session_id="session-A"))
            await evidence_manager.record(record("decimals", score, session_id="session-B"))
        enricher = ProfileEnricher(evidence_manager, profile_manager)

        await asyncio.gather(
            enricher.enrich_profile_if_needed("user-1", "session-A"),
            enricher.enrich_profile_if_needed("user-1", "session-B"),
        )

        assert set(db.tables["users"][0]["struggles"]) == {"fractions", "decimals"}
        assert set((await profile_manager.get_profile("user-1")).struggles) == {"fractions", "decimals"}
