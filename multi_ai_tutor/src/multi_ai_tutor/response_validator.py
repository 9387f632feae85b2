"""
Response Validator

Reviews specialist replies on the deep model after they have been delivered.
A rejected reply becomes a pending correction for its session; the next turn
injects it into the teaching prompt so the responder corrects itself, and the
correction is marked delivered once that turn has been answered.

Validation never blocks or fails a turn: errors and timeouts auto-approve.
"""

import asyncio
import json
import logging
import uuid
from dataclasses import dataclass, field
from datetime import datetime, timezone
from typing import Any, Callable, Dict, List, Optional

from multi_ai_tutor.llm_client import PromptInput
from multi_ai_tutor.models import LessonDescriptor
from multi_ai_tutor.prompts import build_validation_prompt, format_correction
from multi_ai_tutor.responders import ReasoningTier, Responder, ResponderRegistry

logger = logging.getLogger(__name__)

# Conversational roles whose replies carry no subject content to check
SKIP_VALIDATION = frozenset({
    Responder.COORDINATOR,
    Responder.MOTIVATOR,
    Responder.ASSESSOR,
    Responder.VALIDATOR,
})

PENDING = "pending"
DELIVERED = "delivered"


@dataclass
class ValidationResult:
    approved: bool
    confidence: float
    issues: List[str] = field(default_factory=list)
    required_fixes: List[str] = field(default_factory=list)

    @classmethod
    def auto_approved(cls, reason: str) -> "ValidationResult":
        return cls(approved=True, confidence=0.5, issues=[f"{reason} - auto-approved as fail-safe"])


@dataclass
class PendingCorrection:
    id: str
    session_id: str
    responder: str
    display_text: str
    issues: List[str]
    required_fixes: List[str]

    @classmethod
    def from_row(cls, row: Dict[str, Any]) -> "PendingCorrection":
        original = row.get('original_response') or {}
        return cls(
            id=str(row['id']),
            session_id=row['session_id'],
            responder=row.get('specialist_name') or "",
            display_text=original.get('displayText') or original.get('audioText') or "",
            issues=list(row.get('validation_issues') or []),
            required_fixes=list(row.get('required_fixes') or []),
        )

    def to_prompt(self) -> str:
        return format_correction(self.display_text, self.issues, self.required_fixes)


def _string_list(value) -> List[str]:
    if not isinstance(value, list):
        return []
    return [str(item) for item in value if item]


class ResponseValidator:
    """
    Background validation of delivered specialist replies.

    Falls back to in-memory storage when Supabase is not configured.
    """

    def __init__(
        self,
        gateway,
        registry: ResponderRegistry,
        cache_coordinator=None,
        supabase_client=None,
        timeout_seconds: float = 10.0,
        now: Callable[[], datetime] = lambda: datetime.now(timezone.utc),
    ):
        self.gateway = gateway
        self.registry = registry
        self.cache_coordinator = cache_coordinator
        self.supabase = supabase_client
        self.use_supabase = supabase_client is not None
        self.timeout_seconds = timeout_seconds
        self.now = now

        # In-memory fallback
        self.corrections: List[Dict[str, Any]] = []
        self.failures: List[Dict[str, Any]] = []

    @staticmethod
    def should_validate(responder: Responder) -> bool:
        return responder not in SKIP_VALIDATION

    async def validate(
        self,
        responder: Responder,
        profile,
        lesson: LessonDescriptor,
        spoken_text: str,
        display_text: str,
        svg: Optional[str] = None,
    ) -> ValidationResult:
        """
        Review one reply on the validator's (deep) model.

        Never raises; errors and timeouts return an auto-approved result.
        """
        prompt = build_validation_prompt(responder, profile, lesson, spoken_text, display_text, svg)
        try:
            definition = await self.registry.get(Responder.VALIDATOR)
            cache_handle = None
            if self.cache_coordinator is not None:
                cache_handle = await self.cache_coordinator.ensure_fresh(definition.model_id)
            raw = await asyncio.wait_for(
                self.gateway.generate_text(
                    Responder.VALIDATOR,
                    PromptInput(text=prompt),
                    definition.system_prompt,
                    cache_handle,
                    reasoning=ReasoningTier.HIGH,
                ),
                timeout=self.timeout_seconds,
            )
            data = json.loads(raw)
            if not isinstance(data, dict) or not isinstance(data.get("approved"), bool):
                raise ValueError("validator reply has no boolean 'approved'")
            confidence = max(0.0, min(1.0, float(data.get("confidenceScore", 0.5))))
        except asyncio.TimeoutError:
            logger.warning(f"⚠️ [ResponseValidator] Validation timed out after {self.timeout_seconds}s")
            return ValidationResult.auto_approved("Validation timed out")
        except Exception as e:
            logger.warning(f"⚠️ [ResponseValidator] Validation failed, auto-approving: {e}")
            return ValidationResult.auto_approved("Validation system error")

        return ValidationResult(
            approved=data["approved"],
            confidence=confidence,
            issues=_string_list(data.get("issues")),
            required_fixes=_string_list(data.get("requiredFixes")),
        )

    async def validate_and_record(
        self,
        session_id: str,
        responder: Responder,
        profile,
        lesson: LessonDescriptor,
        spoken_text: str,
        display_text: str,
        svg: Optional[str] = None,
        agent_id: Optional[str] = None,
    ) -> Optional[ValidationResult]:
        """
        Validate a delivered reply and queue a correction when it is rejected.

        Returns:
            The validation result, or None if this responder is not validated
        """
        if not self.should_validate(responder):
            return None

        result = await self.validate(responder, profile, lesson, spoken_text, display_text, svg)
        if result.approved:
            logger.info(
                f"✅ [ResponseValidator] {responder.value} reply approved (confidence {result.confidence:.2f})"
            )
            return result

        logger.warning(
            f"🚨 [ResponseValidator] {responder.value} reply rejected for session {session_id}: "
            f"{len(result.issues)} issue(s)"
        )
        original = {'audioText': spoken_text, 'displayText': display_text, 'svg': svg}
        created_at = self.now().isoformat()
        correction_row = {
            'session_id': session_id,
            'specialist_name': responder.value,
            'original_response': original,
            'validation_issues': result.issues,
            'required_fixes': result.required_fixes,
            'status': PENDING,
            'created_at': created_at,
        }
        failure_row = {
            'session_id': session_id,
            'agent_id': agent_id,
            'specialist_name': responder.value,
            'original_response': original,
            'validation_result': {
                'approved': result.approved,
                'confidenceScore': result.confidence,
                'issues': result.issues,
                'requiredFixes': result.required_fixes,
            },
            'retry_count': 0,
            'created_at': created_at,
        }

        if self.use_supabase:
            await asyncio.to_thread(
                lambda: self.supabase.table('pending_corrections').insert(correction_row).execute()
            )
            await asyncio.to_thread(
                lambda: self.supabase.table('validation_failures').insert(failure_row).execute()
            )
        else:
            self.corrections.append({'id': str(uuid.uuid4()), **correction_row})
            self.failures.append(failure_row)
        return result

    async def get_pending_correction(self, session_id: str) -> Optional[PendingCorrection]:
        """
        Oldest undelivered correction for a session.

        Returns None when there is none or the store cannot be read; a missing
        correction must not fail the turn.
        """
        if not self.use_supabase:
            for row in self.corrections:
                if row['session_id'] == session_id and row['status'] == PENDING:
                    return PendingCorrection.from_row(row)
            return None

        try:
            result = await asyncio.to_thread(
                lambda: self.supabase.table('pending_corrections')
                .select('*')
                .eq('session_id', session_id)
                .eq('status', PENDING)
                .order('created_at')
                .limit(1)
                .execute()
            )
        except Exception as e:
            logger.warning(f"⚠️ [ResponseValidator] Could not load pending correction for {session_id}: {e}")
            return None
        return PendingCorrection.from_row(result.data[0]) if result.data else None

    async def mark_delivered(self, correction_id: str):
        delivered_at = self.now().isoformat()
        if self.use_supabase:
            await asyncio.to_thread(
                lambda: self.supabase.table('pending_corrections')
                .update({'status': DELIVERED, 'delivered_at': delivered_at})
                .eq('id', correction_id)
                .execute()
            )
        else:
            for row in self.corrections:
                if row['id'] == correction_id:
                    row['status'] = DELIVERED
                    row['delivered_at'] = delivered_at
        logger.info(f"✅ [ResponseValidator] Correction {correction_id} delivered")
