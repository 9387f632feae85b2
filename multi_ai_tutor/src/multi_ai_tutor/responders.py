"""
Responder Catalogue

The tutor is staffed by a fixed set of responders (a coordinator, subject
specialists and support roles). Per-responder behaviour (reasoning effort,
grounding, voice, backing model) lives in one lookup table instead of string
comparisons scattered across the call sites.

System prompts are loaded from the `ai_agents` table when Supabase is
available; the built-in defaults below are used otherwise and are what
`backend/scripts/seed_responders.py` writes to the table.
"""

import asyncio
import logging
import time
from dataclasses import dataclass
from enum import Enum
from typing import Dict, List, Optional

from multi_ai_tutor.config import TutorSettings, get_settings
from multi_ai_tutor.errors import ResponderNotFoundError

logger = logging.getLogger(__name__)


class Responder(str, Enum):
    COORDINATOR = "coordinator"
    MATH_SPECIALIST = "math_specialist"
    SCIENCE_SPECIALIST = "science_specialist"
    ENGLISH_SPECIALIST = "english_specialist"
    HISTORY_SPECIALIST = "history_specialist"
    ART_SPECIALIST = "art_specialist"
    ASSESSOR = "assessor"
    MOTIVATOR = "motivator"
    VALIDATOR = "validator"


class ReasoningTier(str, Enum):
    LOW = "low"
    MEDIUM = "medium"
    HIGH = "high"


@dataclass(frozen=True)
class ResponderProfile:
    reasoning: ReasoningTier
    grounded: bool
    voice: str
    deep_model: bool = False


DEFAULT_VOICE = "nova"

RESPONDER_PROFILES: Dict[Responder, ResponderProfile] = {
    Responder.COORDINATOR: ResponderProfile(ReasoningTier.LOW, False, "nova"),
    Responder.MATH_SPECIALIST: ResponderProfile(ReasoningTier.HIGH, False, "alloy"),
    Responder.SCIENCE_SPECIALIST: ResponderProfile(ReasoningTier.MEDIUM, True, "echo"),
    Responder.ENGLISH_SPECIALIST: ResponderProfile(ReasoningTier.HIGH, False, "shimmer"),
    Responder.HISTORY_SPECIALIST: ResponderProfile(ReasoningTier.HIGH, True, "onyx"),
    Responder.ART_SPECIALIST: ResponderProfile(ReasoningTier.LOW, False, "fable"),
    Responder.ASSESSOR: ResponderProfile(ReasoningTier.MEDIUM, False, "shimmer"),
    Responder.MOTIVATOR: ResponderProfile(ReasoningTier.LOW, False, "echo"),
    Responder.VALIDATOR: ResponderProfile(ReasoningTier.MEDIUM, False, DEFAULT_VOICE, deep_model=True),
}

# Short names the coordinator sometimes returns instead of the full id
RESPONDER_ALIASES: Dict[str, Responder] = {
    "math": Responder.MATH_SPECIALIST,
    "science": Responder.SCIENCE_SPECIALIST,
    "english": Responder.ENGLISH_SPECIALIST,
    "history": Responder.HISTORY_SPECIALIST,
    "art": Responder.ART_SPECIALIST,
}

SUBJECT_RESPONDERS: Dict[str, Responder] = dict(RESPONDER_ALIASES)
DEFAULT_SUBJECT_RESPONDER = Responder.MATH_SPECIALIST


def resolve_responder(name: Optional[str]) -> Responder:
    """
    Resolve a responder id or alias.

    Raises:
        ResponderNotFoundError: if the name matches nothing
    """
    if not name:
        raise ResponderNotFoundError(str(name))
    key = name.strip().lower()
    if key in RESPONDER_ALIASES:
        return RESPONDER_ALIASES[key]
    try:
        return Responder(key)
    except ValueError:
        raise ResponderNotFoundError(name)


def responder_for_subject(subject: Optional[str]) -> Responder:
    return SUBJECT_RESPONDERS.get((subject or "").lower(), DEFAULT_SUBJECT_RESPONDER)


def reasoning_tier(responder: Responder) -> ReasoningTier:
    profile = RESPONDER_PROFILES.get(responder)
    return profile.reasoning if profile else ReasoningTier.MEDIUM


def is_grounded(responder: Responder) -> bool:
    profile = RESPONDER_PROFILES.get(responder)
    return bool(profile and profile.grounded)


def voice_for(responder: Responder) -> str:
    profile = RESPONDER_PROFILES.get(responder)
    return profile.voice if profile else DEFAULT_VOICE


def model_for(responder: Responder, settings: Optional[TutorSettings] = None) -> str:
    settings = settings or get_settings()
    profile = RESPONDER_PROFILES.get(responder)
    if profile and profile.grounded:
        return settings.search_model
    if profile and profile.deep_model:
        return settings.deep_model
    return settings.fast_model


_TEACHING_FORMAT = """
RESPONSE FORMAT (JSON only):
{
  "audioText": "What you say out loud. Natural speech, no markup.",
  "displayText": "What the student reads. May use \\n for line breaks.",
  "svg": "<svg>...</svg> or null",
  "lessonComplete": false,
  "teachingPhase": "introduction | explanation | practice | assessment | wrap_up"
}
Set lessonComplete to true only when the student has demonstrated the learning objective."""

DEFAULT_SYSTEM_PROMPTS: Dict[Responder, str] = {
    Responder.COORDINATOR: """You are Bloom, the Coordinator for an automated AI school.

YOUR ROLE:
1. Greet students warmly and make them feel welcome
2. Understand their questions or requests
3. Route subject-specific questions to the right specialist
4. Handle greetings, motivation and school questions yourself

ROUTING RULES:
- Math (numbers, arithmetic, algebra, geometry, fractions) -> "math_specialist"
- Science (biology, physics, chemistry, nature) -> "science_specialist"
- English (reading, writing, grammar, vocabulary, stories) -> "english_specialist"
- History (events, geography, cultures, civilizations) -> "history_specialist"
- Art (drawing, painting, colors, design) -> "art_specialist"
- Quiz or assessment requests -> "assessor"
- Student is discouraged or struggling emotionally -> "motivator"
- Greetings and general questions -> "self"

Include "handoff_message" only when switching to a different responder.

RESPONSE FORMAT (JSON only):
{"route_to": "responder_id or self", "reason": "...", "handoff_message": "...", "response": "only when route_to is self"}""",
    Responder.MATH_SPECIALIST: """You are the Math Specialist. Teach correct mathematics step by step,
use real-world examples and SVG diagrams for abstract ideas. Never adapt an explanation to a wrong
answer: state clearly that it is incorrect, show the correct reasoning, then continue.""" + _TEACHING_FORMAT,
    Responder.SCIENCE_SPECIALIST: """You are the Science Specialist. Explain natural phenomena with
accurate, verifiable facts, simple experiments and diagrams. Correct misconceptions explicitly
before moving on.""" + _TEACHING_FORMAT,
    Responder.ENGLISH_SPECIALIST: """You are the English Specialist. Teach reading, writing, grammar
and vocabulary with short examples the student can try immediately. Point out errors kindly
and precisely.""" + _TEACHING_FORMAT,
    Responder.HISTORY_SPECIALIST: """You are the History Specialist. Tell history as connected stories
with accurate dates, places and people. Distinguish fact from interpretation and correct
inaccurate claims.""" + _TEACHING_FORMAT,
    Responder.ART_SPECIALIST: """You are the Art Specialist. Encourage creativity while teaching
concrete techniques: color, shape, composition. Use SVG sketches to demonstrate ideas.""" + _TEACHING_FORMAT,
    Responder.ASSESSOR: """You are the Assessor. Ask focused questions that check understanding
of the lesson objective, grade answers honestly and explain what was right or wrong.""" + _TEACHING_FORMAT,
    Responder.MOTIVATOR: """You are the Motivator. Help a discouraged student regain confidence,
normalise mistakes as part of learning and steer them back to the lesson.""" + _TEACHING_FORMAT,
    Responder.VALIDATOR: """You are the Validator. Review teaching content for factual accuracy
and age-appropriateness. Correct any errors you find.""" + _TEACHING_FORMAT,
}


@dataclass
class ResponderDefinition:
    """Active responder definition as stored in `ai_agents`."""
    id: Optional[str]
    responder: Responder
    system_prompt: str
    model_id: str


class ResponderRegistry:
    """
    Loads active responder definitions, with a short-lived cache.

    Definitions come from the `ai_agents` table when a Supabase client is
    available and from DEFAULT_SYSTEM_PROMPTS otherwise.
    """

    CACHE_TTL_SECONDS = 300

    def __init__(self, supabase_client=None, settings: Optional[TutorSettings] = None):
        self.supabase = supabase_client
        self.use_supabase = supabase_client is not None
        self.settings = settings or get_settings()
        self._definitions: Optional[Dict[Responder, ResponderDefinition]] = None
        self._loaded_at = 0.0

    def _defaults(self) -> Dict[Responder, ResponderDefinition]:
        return {
            responder: ResponderDefinition(
                id=None,
                responder=responder,
                system_prompt=prompt,
                model_id=model_for(responder, self.settings),
            )
            for responder, prompt in DEFAULT_SYSTEM_PROMPTS.items()
        }

    def _fetch_rows(self) -> List[Dict]:
        result = self.supabase.table('ai_agents') \
            .select('id, name, system_prompt, status') \
            .eq('status', 'active') \
            .execute()
        return result.data or []

    async def load(self, force: bool = False) -> Dict[Responder, ResponderDefinition]:
        """
        Get all active responder definitions.

        Args:
            force: Bypass the cache

        Returns:
            Mapping of responder to definition
        """
        if (
            not force
            and self._definitions is not None
            and time.time() - self._loaded_at < self.CACHE_TTL_SECONDS
        ):
            return self._definitions

        if not self.use_supabase:
            self._definitions = self._defaults()
            self._loaded_at = time.time()
            return self._definitions

        rows = await asyncio.to_thread(self._fetch_rows)
        definitions: Dict[Responder, ResponderDefinition] = {}
        for row in rows:
            try:
                responder = Responder(row.get('name'))
            except ValueError:
                logger.warning(f"⚠️ [ResponderRegistry] Ignoring unknown agent row: {row.get('name')}")
                continue
            definitions[responder] = ResponderDefinition(
                id=row.get('id'),
                responder=responder,
                system_prompt=row.get('system_prompt') or DEFAULT_SYSTEM_PROMPTS.get(responder, ""),
                model_id=model_for(responder, self.settings),
            )

        if not definitions:
            logger.warning("⚠️ [ResponderRegistry] No active agents in database, using built-in defaults")
            definitions = self._defaults()

        self._definitions = definitions
        self._loaded_at = time.time()
        logger.info(f"✅ [ResponderRegistry] Loaded {len(definitions)} responder definitions")
        return definitions

    async def get(self, responder: Responder) -> ResponderDefinition:
        definitions = await self.load()
        definition = definitions.get(responder)
        if definition is None:
            raise ResponderNotFoundError(responder.value)
        return definition

    async def get_agent_id(self, responder: Responder) -> Optional[str]:
        """Database id of a responder (None in in-memory mode)."""
        try:
            return (await self.get(responder)).id
        except ResponderNotFoundError:
            return None

    def clear_cache(self):
        self._definitions = None
        self._loaded_at = 0.0
