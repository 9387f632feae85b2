"""
Learner Profile Manager

Reads and writes learner profiles (`users` table) behind a short TTL cache.
The cache is invalidated explicitly whenever a profile is written, so a
profile update is visible on the next turn.
"""

import asyncio
import logging
import time
from dataclasses import dataclass, field, replace
from typing import Any, Callable, Dict, List, Optional, Tuple

logger = logging.getLogger(__name__)


@dataclass
class LearnerProfile:
    """Learner profile as used by the tutor."""
    user_id: str
    name: str = ""
    age: Optional[int] = None
    grade_level: Optional[str] = None
    learning_style: Optional[str] = None
    strengths: List[str] = field(default_factory=list)
    struggles: List[str] = field(default_factory=list)
    preferences: Dict[str, Any] = field(default_factory=dict)
    total_learning_time: int = 0
    role: str = "student"

    @classmethod
    def from_row(cls, row: Dict[str, Any]) -> "LearnerProfile":
        return cls(
            user_id=str(row["id"]),
            name=row.get("name") or "",
            age=row.get("age"),
            grade_level=str(row["grade_level"]) if row.get("grade_level") is not None else None,
            learning_style=row.get("learning_style"),
            strengths=list(row.get("strengths") or []),
            struggles=list(row.get("struggles") or []),
            preferences=row.get("preferences") or {},
            total_learning_time=row.get("total_learning_time") or 0,
            role=row.get("role") or "student",
        )


class ProfileManager:
    """
    Manages learner profiles with a TTL cache.

    Falls back to an in-memory store when Supabase is not configured.
    """

    def __init__(
        self,
        supabase_client=None,
        cache_ttl_seconds: int = 300,
        clock: Callable[[], float] = time.time,
    ):
        """
        Initialize ProfileManager.

        Args:
            supabase_client: Supabase client instance (optional)
            cache_ttl_seconds: How long a cached profile stays valid
            clock: Time source (injectable for tests)
        """
        self.supabase = supabase_client
        self.use_supabase = supabase_client is not None
        self.cache_ttl_seconds = cache_ttl_seconds
        self.clock = clock

        self._cache: Dict[str, Tuple[LearnerProfile, float]] = {}
        self._stats = {"hits": 0, "misses": 0, "invalidations": 0}
        self._in_memory_profiles: Dict[str, LearnerProfile] = {}
        self._write_locks: Dict[str, asyncio.Lock] = {}

        if not self.use_supabase:
            logger.warning("⚠️ [ProfileManager] Supabase not available, using in-memory fallback")

    def save_in_memory(self, profile: LearnerProfile):
        """Register a profile for in-memory mode."""
        self._in_memory_profiles[profile.user_id] = profile
        self.invalidate_cache(profile.user_id)

    def _fetch_row(self, user_id: str) -> Optional[Dict[str, Any]]:
        result = self.supabase.table('users') \
            .select('*') \
            .eq('id', user_id) \
            .limit(1) \
            .execute()
        return result.data[0] if result.data else None

    def write_lock(self, user_id: str) -> asyncio.Lock:
        """
        Per-learner lock for read-merge-write updates.

        Hold it around an uncached read and the write that follows, so two
        enrichments for the same learner never overwrite each other's topics.
        """
        if user_id not in self._write_locks:
            self._write_locks[user_id] = asyncio.Lock()
        return self._write_locks[user_id]

    async def get_profile(self, user_id: str, use_cache: bool = True) -> Optional[LearnerProfile]:
        """
        Get a learner profile, served from cache when fresh.

        Args:
            user_id: Learner id
            use_cache: False reads straight from the store (for read-merge-write)

        Returns:
            LearnerProfile, or None if the user does not exist

        Raises:
            Exception: store errors propagate to the caller
        """
        cached = self._cache.get(user_id) if use_cache else None
        if cached and self.clock() - cached[1] < self.cache_ttl_seconds:
            self._stats["hits"] += 1
            return replace(cached[0], strengths=list(cached[0].strengths), struggles=list(cached[0].struggles))

        self._stats["misses"] += 1
        if self.use_supabase:
            row = await asyncio.to_thread(self._fetch_row, user_id)
            profile = LearnerProfile.from_row(row) if row else None
        else:
            stored = self._in_memory_profiles.get(user_id)
            profile = replace(stored, strengths=list(stored.strengths), struggles=list(stored.struggles)) if stored else None

        if profile is not None:
            self._cache[user_id] = (profile, self.clock())
        return profile

    async def update_strengths_struggles(
        self,
        user_id: str,
        strengths: List[str],
        struggles: List[str],
    ) -> bool:
        """
        Persist new strengths/struggles and invalidate the cached profile.

        Returns:
            True if the write succeeded
        """
        try:
            if self.use_supabase:
                await asyncio.to_thread(
                    lambda: self.supabase.table('users')
                    .update({'strengths': strengths, 'struggles': struggles})
                    .eq('id', user_id)
                    .execute()
                )
            else:
                stored = self._in_memory_profiles.get(user_id)
                if stored is None:
                    logger.warning(f"⚠️ [ProfileManager] No in-memory profile for {user_id[:20]}, cannot update")
                    return False
                stored.strengths = list(strengths)
                stored.struggles = list(struggles)
        except Exception as e:
            logger.error(f"❌ [ProfileManager] Error updating strengths/struggles: {e}", exc_info=True)
            return False

        self.invalidate_cache(user_id)
        logger.info(
            f"✅ [ProfileManager] Updated profile {user_id[:20]}: "
            f"{len(strengths)} strengths, {len(struggles)} struggles"
        )
        return True

    async def add_learning_time(self, user_id: str, minutes: int) -> bool:
        """Add minutes to the learner's total learning time."""
        if minutes <= 0:
            return True
        try:
            async with self.write_lock(user_id):
                profile = await self.get_profile(user_id, use_cache=False)
                if profile is None:
                    return False
                total = (profile.total_learning_time or 0) + minutes
                if self.use_supabase:
                    await asyncio.to_thread(
                        lambda: self.supabase.table('users')
                        .update({'total_learning_time': total})
                        .eq('id', user_id)
                        .execute()
                    )
                else:
                    self._in_memory_profiles[user_id].total_learning_time = total
        except Exception as e:
            logger.error(f"❌ [ProfileManager] Error updating learning time: {e}", exc_info=True)
            return False

        self.invalidate_cache(user_id)
        return True

    def invalidate_cache(self, user_id: str):
        if self._cache.pop(user_id, None) is not None:
            self._stats["invalidations"] += 1
            logger.debug(f"[ProfileManager] Invalidated cached profile {user_id[:20]}")

    def get_cache_stats(self) -> Dict[str, Any]:
        total = self._stats["hits"] + self._stats["misses"]
        return {
            **self._stats,
            "size": len(self._cache),
            "hit_rate": round(self._stats["hits"] / total, 3) if total else 0.0,
        }
