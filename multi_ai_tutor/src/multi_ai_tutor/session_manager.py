"""
Session Manager

Session lifecycle, interaction history and routing state.

Routing state (which responder is actively teaching a session) is held in
process and falls back to the most recent `agent_interactions` row when the
process has no entry, e.g. after a restart. In-process entries expire after
`routing_state_ttl_seconds` so abandoned sessions do not accumulate.
"""

import asyncio
import logging
import time
import uuid
from datetime import datetime, timezone
from typing import Any, Callable, Dict, List, Optional, Tuple

from multi_ai_tutor.models import HistoryEntry
from multi_ai_tutor.responders import Responder

logger = logging.getLogger(__name__)


def _now() -> datetime:
    return datetime.now(timezone.utc)


def _parse_timestamp(value) -> Optional[datetime]:
    if value is None:
        return None
    if isinstance(value, datetime):
        return value if value.tzinfo else value.replace(tzinfo=timezone.utc)
    parsed = datetime.fromisoformat(str(value).replace("Z", "+00:00"))
    return parsed if parsed.tzinfo else parsed.replace(tzinfo=timezone.utc)


class SessionManager:
    """
    Manages sessions and their interaction log.

    Falls back to in-memory storage when Supabase is not configured.
    """

    def __init__(
        self,
        supabase_client=None,
        routing_state_ttl_seconds: int = 7200,
        clock: Callable[[], float] = time.time,
    ):
        """
        Initialize SessionManager.

        Args:
            supabase_client: Supabase client instance (optional)
            routing_state_ttl_seconds: Age after which an in-process routing entry is dropped
            clock: Time source (injectable for tests)
        """
        self.supabase = supabase_client
        self.use_supabase = supabase_client is not None
        self.routing_state_ttl_seconds = routing_state_ttl_seconds
        self.clock = clock

        # session_id -> (responder or None, last set at)
        self._active_responders: Dict[str, Tuple[Optional[Responder], float]] = {}

        # In-memory fallback
        self._sessions: Dict[str, Dict[str, Any]] = {}
        self._interactions: Dict[str, List[Dict[str, Any]]] = {}
        self._agent_interactions: Dict[str, List[Dict[str, Any]]] = {}

    # ------------------------------------------------------------------
    # Lifecycle
    # ------------------------------------------------------------------

    async def start_session(self, user_id: str, lesson_id: str) -> Dict[str, Any]:
        """
        Create a session row.

        Returns:
            Session dict with at least `id` and `started_at`
        """
        row = {
            'user_id': user_id,
            'lesson_id': lesson_id,
            'started_at': _now().isoformat(),
            'interaction_count': 0,
        }
        if self.use_supabase:
            result = await asyncio.to_thread(
                lambda: self.supabase.table('sessions').insert(row).execute()
            )
            session = result.data[0]
        else:
            session = {'id': str(uuid.uuid4()), **row}
            self._sessions[session['id']] = session

        logger.info(f"🚀 [SessionManager] Started session {session['id']} for lesson {lesson_id}")
        return session

    async def get_session(self, session_id: str) -> Optional[Dict[str, Any]]:
        if not self.use_supabase:
            return self._sessions.get(session_id)

        result = await asyncio.to_thread(
            lambda: self.supabase.table('sessions')
            .select('*')
            .eq('id', session_id)
            .limit(1)
            .execute()
        )
        return result.data[0] if result.data else None

    async def get_session_start(self, session_id: str) -> Optional[datetime]:
        session = await self.get_session(session_id)
        if not session:
            return None
        return _parse_timestamp(session.get('started_at'))

    async def end_session(self, session_id: str) -> Optional[Dict[str, Any]]:
        """
        Stamp `ended_at` and discard routing state.

        Returns:
            Dict with `user_id` and `duration_minutes`, or None if unknown
        """
        self.clear_active_responder(session_id)
        session = await self.get_session(session_id)
        if not session:
            logger.warning(f"⚠️ [SessionManager] end_session: unknown session {session_id}")
            return None

        ended_at = _now()
        started_at = _parse_timestamp(session.get('started_at')) or ended_at
        duration_minutes = max(0, int((ended_at - started_at).total_seconds() // 60))

        if self.use_supabase:
            await asyncio.to_thread(
                lambda: self.supabase.table('sessions')
                .update({'ended_at': ended_at.isoformat()})
                .eq('id', session_id)
                .execute()
            )
        else:
            session['ended_at'] = ended_at.isoformat()

        logger.info(f"🏁 [SessionManager] Ended session {session_id} after {duration_minutes} min")
        return {'user_id': session.get('user_id'), 'duration_minutes': duration_minutes}

    # ------------------------------------------------------------------
    # History
    # ------------------------------------------------------------------

    async def get_recent_history(self, session_id: str, limit: int = 5) -> List[HistoryEntry]:
        """
        Last `limit` exchanges of a session, oldest first.

        Raises:
            Exception: store errors propagate to the caller
        """
        if not self.use_supabase:
            rows = self._interactions.get(session_id, [])[-limit:]
        else:
            result = await asyncio.to_thread(
                lambda: self.supabase.table('interactions')
                .select('user_message, ai_response, timestamp')
                .eq('session_id', session_id)
                .order('timestamp', desc=True)
                .limit(limit)
                .execute()
            )
            rows = list(reversed(result.data or []))

        return [
            HistoryEntry(
                user_message=row.get('user_message') or "",
                ai_response=row.get('ai_response') or "",
                timestamp=row.get('timestamp'),
            )
            for row in rows
        ]

    async def save_interaction(self, session_id: str, user_message: str, ai_response: str):
        row = {
            'session_id': session_id,
            'user_message': user_message,
            'ai_response': ai_response,
            'timestamp': _now().isoformat(),
        }
        if self.use_supabase:
            await asyncio.to_thread(lambda: self.supabase.table('interactions').insert(row).execute())
        else:
            self._interactions.setdefault(session_id, []).append(row)
            if session_id in self._sessions:
                self._sessions[session_id]['interaction_count'] += 1

    async def save_agent_interaction(
        self,
        session_id: str,
        agent_id: Optional[str],
        responder: Responder,
        user_message: str,
        agent_response: str,
        routing_reason: str,
        response_time_ms: int,
    ):
        row = {
            'session_id': session_id,
            'agent_id': agent_id,
            'user_message': user_message,
            'agent_response': agent_response,
            'routing_reason': routing_reason,
            'response_time_ms': response_time_ms,
            'timestamp': _now().isoformat(),
        }
        if self.use_supabase:
            if agent_id is None:
                logger.warning(f"⚠️ [SessionManager] No agent id for {responder.value}, skipping agent interaction")
                return
            await asyncio.to_thread(lambda: self.supabase.table('agent_interactions').insert(row).execute())
        else:
            self._agent_interactions.setdefault(session_id, []).append({**row, 'agent_name': responder.value})

    # ------------------------------------------------------------------
    # Routing state
    # ------------------------------------------------------------------

    def set_active_responder(self, session_id: str, responder: Responder):
        """Record the responder that produced the latest output. Coordinator output clears it."""
        now = self.clock()
        self._evict_expired_routing_state(now)
        self._active_responders[session_id] = (None if responder == Responder.COORDINATOR else responder, now)

    def clear_active_responder(self, session_id: str):
        self._active_responders.pop(session_id, None)

    def _is_expired(self, set_at: float, now: float) -> bool:
        return now - set_at >= self.routing_state_ttl_seconds

    def _evict_expired_routing_state(self, now: float):
        expired = [sid for sid, (_, set_at) in self._active_responders.items() if self._is_expired(set_at, now)]
        for sid in expired:
            del self._active_responders[sid]
        if expired:
            logger.debug(f"[SessionManager] Evicted routing state for {len(expired)} idle session(s)")

    async def get_active_responder(self, session_id: str) -> Optional[Responder]:
        """
        Active non-coordinator responder for a session, or None.

        Raises:
            Exception: store errors propagate to the caller
        """
        entry = self._active_responders.get(session_id)
        if entry is not None:
            responder, set_at = entry
            if not self._is_expired(set_at, self.clock()):
                return responder
            del self._active_responders[session_id]

        if self.use_supabase:
            result = await asyncio.to_thread(
                lambda: self.supabase.table('agent_interactions')
                .select('agent_id, ai_agents!inner(name)')
                .eq('session_id', session_id)
                .order('timestamp', desc=True)
                .limit(1)
                .execute()
            )
            name = None
            if result.data:
                agent = result.data[0].get('ai_agents') or {}
                name = agent.get('name')
        else:
            rows = self._agent_interactions.get(session_id, [])
            name = rows[-1]['agent_name'] if rows else None

        try:
            responder = Responder(name) if name else None
        except ValueError:
            responder = None
        if responder == Responder.COORDINATOR:
            responder = None
        return responder
