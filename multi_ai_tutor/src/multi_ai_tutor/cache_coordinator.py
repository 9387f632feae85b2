"""
Context Cache Coordinator

Keeps one cached system-instruction entry per backing model, built from the
system prompts of every active responder on that model. Entries are renewed in
the background once they pass a fraction of their TTL so that a turn never
waits on renewal.

Failure handling:
- creation failure -> None is returned and callers send the responder's own
  system prompt (no-cache path)
- renewal failure -> the entry is dropped and recreated on next use
"""

import asyncio
import logging
import time
from dataclasses import dataclass
from typing import Any, Callable, Dict, List, Optional, Set

from multi_ai_tutor.config import TutorSettings, get_settings
from multi_ai_tutor.llm_client import CachedContext
from multi_ai_tutor.responders import ResponderDefinition, ResponderRegistry, is_grounded

logger = logging.getLogger(__name__)

INSTRUCTION_SEPARATOR = "\n\n---\n\n"


@dataclass
class CacheEntry:
    model_id: str
    handle: CachedContext
    created_at: float
    ttl_seconds: int
    responder_count: int = 0


def build_combined_instruction(definitions: List[ResponderDefinition]) -> str:
    """Concatenate responder prompts in a stable order."""
    ordered = sorted(definitions, key=lambda d: d.responder.value)
    return INSTRUCTION_SEPARATOR.join(
        f"AGENT: {d.responder.value}\nSYSTEM_PROMPT:\n{d.system_prompt}" for d in ordered
    )


class CacheCoordinator:
    """
    Owns the lifecycle of cached contexts.

    The backend must provide async `create(model_id, instruction, ttl)`,
    `renew(handle)` and `delete(handle)`.
    """

    def __init__(
        self,
        registry: ResponderRegistry,
        backend,
        settings: Optional[TutorSettings] = None,
        clock: Callable[[], float] = time.monotonic,
    ):
        self.registry = registry
        self.backend = backend
        self.settings = settings or get_settings()
        self.clock = clock
        self.ttl_seconds = self.settings.context_cache_ttl_seconds
        self.renewal_fraction = self.settings.context_cache_renewal_fraction

        self._entries: Dict[str, CacheEntry] = {}
        self._locks: Dict[str, asyncio.Lock] = {}
        self._renewing: Set[str] = set()
        self._renewal_tasks: Set[asyncio.Task] = set()
        self._warmup_task: Optional[asyncio.Task] = None

    def _lock_for(self, model_id: str) -> asyncio.Lock:
        if model_id not in self._locks:
            self._locks[model_id] = asyncio.Lock()
        return self._locks[model_id]

    def _age(self, entry: CacheEntry) -> float:
        return self.clock() - entry.created_at

    def _needs_renewal(self, entry: CacheEntry) -> bool:
        return self._age(entry) > entry.ttl_seconds * self.renewal_fraction

    @staticmethod
    def _group_by_model(definitions: Dict[Any, ResponderDefinition]) -> Dict[str, List[ResponderDefinition]]:
        groups: Dict[str, List[ResponderDefinition]] = {}
        for definition in definitions.values():
            if is_grounded(definition.responder):
                # Search models run without a cached context
                continue
            groups.setdefault(definition.model_id, []).append(definition)
        return groups

    async def warmup(self, force: bool = False) -> Dict[str, bool]:
        """
        Create (or renew) entries for every backing model.

        Concurrent callers share the in-flight warmup.

        Args:
            force: Recreate every entry even if it is fresh

        Returns:
            Mapping of model id to whether it has a usable entry afterwards
        """
        if self._warmup_task is not None and not self._warmup_task.done():
            logger.info("🔄 [CacheCoordinator] Warmup already running, joining it")
            return await asyncio.shield(self._warmup_task)

        self._warmup_task = asyncio.create_task(self._run_warmup(force))
        return await asyncio.shield(self._warmup_task)

    async def _run_warmup(self, force: bool) -> Dict[str, bool]:
        start = time.time()
        try:
            definitions = await self.registry.load()
        except Exception as e:
            logger.error(f"❌ [CacheCoordinator] Could not load responder definitions: {e}", exc_info=True)
            return {}

        groups = self._group_by_model(definitions)
        results: Dict[str, bool] = {}
        for model_id, group in groups.items():
            entry = self._entries.get(model_id)
            if entry is not None and not force:
                if self._needs_renewal(entry) and model_id not in self._renewing:
                    self._renewing.add(model_id)
                    await self._renew(model_id)
                results[model_id] = model_id in self._entries
                continue

            if entry is not None and force:
                await self._delete_entry(model_id)

            handle = await self._create(model_id, group, force=force)
            results[model_id] = handle is not None

        elapsed = (time.time() - start) * 1000
        logger.info(f"✅ [CacheCoordinator] Warmup finished for {len(results)} model(s) in {elapsed:.0f}ms")
        return results

    async def ensure_fresh(self, model_id: str) -> Optional[CachedContext]:
        """
        Get a usable handle for a model.

        Returns the existing handle immediately; schedules at most one
        background renewal when the entry is past the renewal threshold; creates
        the entry synchronously when none exists.

        Returns:
            Cached context handle, or None if creation failed
        """
        entry = self._entries.get(model_id)
        if entry is not None:
            if self._needs_renewal(entry):
                self._schedule_renewal(model_id)
            return entry.handle
        return await self._create(model_id)

    async def _create(
        self,
        model_id: str,
        group: Optional[List[ResponderDefinition]] = None,
        force: bool = False,
    ) -> Optional[CachedContext]:
        async with self._lock_for(model_id):
            existing = self._entries.get(model_id)
            if existing is not None and not force:
                return existing.handle

            try:
                if group is None:
                    definitions = await self.registry.load()
                    group = self._group_by_model(definitions).get(model_id, [])
                if not group:
                    logger.warning(f"⚠️ [CacheCoordinator] No responders use model {model_id}, nothing to cache")
                    return None

                instruction = build_combined_instruction(group)
                handle = await self.backend.create(model_id, instruction, self.ttl_seconds)
            except Exception as e:
                logger.error(f"❌ [CacheCoordinator] Cache creation failed for {model_id}: {e}", exc_info=True)
                return None

            self._entries[model_id] = CacheEntry(
                model_id=model_id,
                handle=handle,
                created_at=self.clock(),
                ttl_seconds=self.ttl_seconds,
                responder_count=len(group),
            )
            logger.info(f"💾 [CacheCoordinator] Created cache for {model_id} ({len(group)} responders)")
            return handle

    def _schedule_renewal(self, model_id: str):
        if model_id in self._renewing:
            return
        self._renewing.add(model_id)
        task = asyncio.create_task(self._renew(model_id))
        self._renewal_tasks.add(task)
        task.add_done_callback(self._renewal_tasks.discard)
        logger.info(f"🔄 [CacheCoordinator] Scheduled background renewal for {model_id}")

    async def _renew(self, model_id: str):
        """Renew an entry in place. Caller must have added model_id to _renewing."""
        try:
            entry = self._entries.get(model_id)
            if entry is None:
                return
            handle = await self.backend.renew(entry.handle)
            self._entries[model_id] = CacheEntry(
                model_id=model_id,
                handle=handle,
                created_at=self.clock(),
                ttl_seconds=entry.ttl_seconds,
                responder_count=entry.responder_count,
            )
            logger.info(f"✅ [CacheCoordinator] Renewed cache for {model_id}")
        except Exception as e:
            logger.warning(f"⚠️ [CacheCoordinator] Renewal failed for {model_id}, dropping entry: {e}")
            self._entries.pop(model_id, None)
        finally:
            self._renewing.discard(model_id)

    async def _delete_entry(self, model_id: str):
        entry = self._entries.pop(model_id, None)
        if entry is None:
            return
        try:
            await self.backend.delete(entry.handle)
        except Exception as e:
            logger.warning(f"⚠️ [CacheCoordinator] Failed to delete cache for {model_id}: {e}")

    async def invalidate(self) -> int:
        """
        Delete every entry. They are recreated lazily on next use.

        Returns:
            Number of entries removed
        """
        model_ids = list(self._entries.keys())
        for model_id in model_ids:
            await self._delete_entry(model_id)
        logger.info(f"🗑️ [CacheCoordinator] Invalidated {len(model_ids)} cache entries")
        return len(model_ids)

    async def wait_for_renewals(self):
        """Wait for scheduled background renewals (shutdown and tests)."""
        if self._renewal_tasks:
            await asyncio.gather(*list(self._renewal_tasks), return_exceptions=True)

    def get_status(self) -> Dict[str, Any]:
        models = {}
        for model_id, entry in self._entries.items():
            age = self._age(entry)
            models[model_id] = {
                "cache_name": entry.handle.name,
                "age_seconds": round(age, 1),
                "ttl_seconds": entry.ttl_seconds,
                "renewal_due": self._needs_renewal(entry),
                "renewing": model_id in self._renewing,
                "responder_count": entry.responder_count,
            }
        return {
            "entries": len(self._entries),
            "warmup_in_progress": self._warmup_task is not None and not self._warmup_task.done(),
            "models": models,
        }
