"""
Profile Enrichment

Promotes recurring evidence patterns into the learner profile: topics where a
learner keeps producing low-quality evidence become struggles, topics with
high-quality evidence become strengths. Strengths always win over struggles,
so the two lists stay disjoint.
"""

import logging
from collections import defaultdict
from dataclasses import dataclass
from typing import Dict, List, Set

from multi_ai_tutor.evidence_manager import MasteryEvidenceManager
from multi_ai_tutor.profile_manager import ProfileManager

logger = logging.getLogger(__name__)

LOW_QUALITY_THRESHOLD = 50
HIGH_QUALITY_THRESHOLD = 80
MIN_LOW_QUALITY_RECORDS = 3


@dataclass
class EnrichmentResult:
    updated: bool
    strengths: List[str]
    struggles: List[str]
    new_strengths: List[str]
    new_struggles: List[str]


def _dedupe(items) -> List[str]:
    seen: Set[str] = set()
    result = []
    for item in items:
        if item and item not in seen:
            seen.add(item)
            result.append(item)
    return result


def merge_topics(
    strengths: List[str],
    struggles: List[str],
    new_strengths: List[str],
    new_struggles: List[str],
) -> tuple:
    """
    Merge detected topics into existing lists.

    A newly strong topic leaves struggles. A new struggle demotes an existing
    strength unless the topic is also newly strong.

    Returns:
        (strengths, struggles)
    """
    new_strength_set = set(new_strengths)
    new_struggles = [t for t in new_struggles if t not in new_strength_set]

    final_strengths = _dedupe(
        [s for s in strengths if s not in new_struggles] + list(new_strengths)
    )
    strength_set = set(final_strengths)
    final_struggles = _dedupe(t for t in list(struggles) + new_struggles if t not in strength_set)
    return final_strengths, final_struggles


class ProfileEnricher:
    def __init__(
        self,
        evidence_manager: MasteryEvidenceManager,
        profile_manager: ProfileManager,
        window: int = 10,
    ):
        self.evidence_manager = evidence_manager
        self.profile_manager = profile_manager
        self.window = window

    async def enrich_profile_if_needed(self, user_id: str, session_id: str) -> EnrichmentResult:
        """
        Update strengths/struggles from the session's recent evidence.

        The merge runs against a fresh (uncached) read of the profile under
        the learner's write lock, so topics written by another session in the
        meantime are kept. Writes only on an actual change and invalidates the
        profile cache after the write.
        """
        records = await self.evidence_manager.get_recent_for_session(session_id, self.window)
        by_topic: Dict[str, List[int]] = defaultdict(list)
        for record in records:
            if record.topic:
                by_topic[record.topic].append(record.quality_score)

        detected_struggles = []
        detected_strengths = []
        for topic, scores in by_topic.items():
            low = sum(1 for s in scores if s < LOW_QUALITY_THRESHOLD)
            if any(s >= HIGH_QUALITY_THRESHOLD for s in scores) or sum(scores) / len(scores) >= HIGH_QUALITY_THRESHOLD:
                detected_strengths.append(topic)
            elif low >= MIN_LOW_QUALITY_RECORDS:
                detected_struggles.append(topic)

        if not detected_strengths and not detected_struggles:
            return EnrichmentResult(False, [], [], detected_strengths, detected_struggles)

        async with self.profile_manager.write_lock(user_id):
            profile = await self.profile_manager.get_profile(user_id, use_cache=False)
            if profile is None:
                logger.warning(f"⚠️ [ProfileEnricher] No profile for {user_id[:20]}, skipping enrichment")
                return EnrichmentResult(False, [], [], detected_strengths, detected_struggles)

            strengths, struggles = merge_topics(
                profile.strengths, profile.struggles, detected_strengths, detected_struggles
            )
            changed = set(strengths) != set(profile.strengths) or set(struggles) != set(profile.struggles)
            if not changed:
                return EnrichmentResult(False, strengths, struggles, detected_strengths, detected_struggles)

            updated = await self.profile_manager.update_strengths_struggles(user_id, strengths, struggles)
        if updated:
            logger.info(
                f"🧠 [ProfileEnricher] Enriched {user_id[:20]}: "
                f"+strengths={detected_strengths} +struggles={detected_struggles}"
            )
        return EnrichmentResult(updated, strengths, struggles, detected_strengths, detected_struggles)
