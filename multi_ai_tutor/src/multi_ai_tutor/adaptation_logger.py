"""
Adaptation audit log.

Directives are never persisted; this records the decision they produced so
that adaptation can be reviewed later (`adaptation_logs` table).
"""

import asyncio
import logging
from datetime import datetime, timezone
from typing import Any, Dict, List, Optional

from multi_ai_tutor.adaptive_directives import AdaptiveDirectiveSet, normalize_learning_style

logger = logging.getLogger(__name__)

RESPONSE_PREVIEW_LENGTH = 200


class AdaptationLogger:
    def __init__(self, supabase_client=None):
        self.supabase = supabase_client
        self.use_supabase = supabase_client is not None
        self.entries: List[Dict[str, Any]] = []

    @staticmethod
    def build_entry(
        user_id: str,
        session_id: str,
        lesson_id: str,
        responder: str,
        directives: AdaptiveDirectiveSet,
        learning_style: Optional[str],
        response_text: str,
        has_svg: bool,
    ) -> Dict[str, Any]:
        return {
            'user_id': user_id,
            'session_id': session_id,
            'lesson_id': lesson_id,
            'agent_name': responder,
            'mastery_level': directives.current_mastery,
            'learning_style': normalize_learning_style(learning_style) or 'unknown',
            'difficulty_level': directives.difficulty_level,
            'scaffolding_level': directives.scaffolding_level,
            'encouragement_level': directives.encouragement_level,
            'directive_count': directives.directive_count,
            'response_preview': (response_text or '')[:RESPONSE_PREVIEW_LENGTH],
            'has_svg': has_svg,
            'created_at': datetime.now(timezone.utc).isoformat(),
        }

    async def log(self, entry: Dict[str, Any]):
        if self.use_supabase:
            await asyncio.to_thread(
                lambda: self.supabase.table('adaptation_logs').insert(entry).execute()
            )
        else:
            self.entries.append(entry)
        logger.debug(
            f"[AdaptationLogger] {entry['agent_name']}: {entry['difficulty_level']} / "
            f"{entry['scaffolding_level']} ({entry['directive_count']} directives)"
        )
