"""
Adaptive Teaching Directives

Turns learner context (profile, recent history, current mastery) into explicit
teaching instructions that are injected into the responder prompt. Generation
is a pure function of its inputs; nothing here touches the store.

Adaptations:
- learning style -> style directives
- mastery level -> simplify / standard / accelerate
- recent correction ratio -> scaffolding intensity and encouragement
- known strengths and struggles -> bridge and pre-empt
"""

from dataclasses import dataclass, field
from typing import List, Optional, Sequence

from multi_ai_tutor.config import TutorSettings
from multi_ai_tutor.models import HistoryEntry

STRUGGLE_INDICATORS = [
    "not quite",
    "incorrect",
    "try again",
    "let me explain again",
    "let's break this down",
    "having trouble",
    "struggling",
]

EXTENDED_PHASE_THRESHOLD = 30

_STYLE_DIRECTIVES = {
    "visual": [
        "🎨 VISUAL LEARNER ADAPTATIONS:",
        "- CRITICAL: Generate an SVG diagram for EVERY major concept explained",
        "- Use visual metaphors and spatial descriptions (top/bottom, left/right, inside/outside)",
        "- Reference colors, shapes, sizes, and visual patterns frequently",
        "- Organize information spatially (lists, tables, visual hierarchies)",
        '- Use phrases like "picture this", "imagine", "visualize", "see how"',
    ],
    "auditory": [
        "🎵 AUDITORY LEARNER ADAPTATIONS:",
        "- Use conversational, rhythmic language with natural flow",
        "- Include sound-based metaphors (rhythm, melody, echoes, harmony)",
        "- Repeat key concepts in different phrasings for reinforcement",
        '- Use verbal cues like "listen to this", "hear how", "sounds like"',
        "- Structure explanations like a spoken story with clear verbal signposts",
    ],
    "kinesthetic": [
        "🤸 KINESTHETIC LEARNER ADAPTATIONS:",
        '- Describe physical actions and hands-on activities ("try this", "move", "build")',
        "- Use movement-based metaphors (walking, touching, building, manipulating)",
        "- Suggest concrete manipulatives or physical demonstrations",
        '- Encourage active engagement ("draw it out", "act it out", "use your fingers")',
        "- Connect concepts to body sensations and physical experiences",
    ],
    "reading/writing": [
        "📚 READING/WRITING LEARNER ADAPTATIONS:",
        "- Provide detailed written explanations with rich text descriptions",
        "- Use lists, bullet points, and well-organized text structures",
        "- Encourage note-taking and written summaries",
        "- Include vocabulary definitions and written examples",
        "- Suggest writing exercises or journaling about the concept",
    ],
    "logical": [
        "🧮 LOGICAL/MATHEMATICAL LEARNER ADAPTATIONS:",
        "- Present information in logical sequences with clear cause-effect relationships",
        "- Use numbered steps, formulas, and systematic problem-solving approaches",
        "- Include patterns, classifications, and categorical organization",
        '- Emphasize reasoning chains: "if...then", "therefore", "because"',
        "- Connect concepts to logic puzzles, equations, or systematic thinking",
    ],
    "social": [
        "👥 SOCIAL/INTERPERSONAL LEARNER ADAPTATIONS:",
        "- Frame concepts through human interactions and group scenarios",
        "- Use dialogue, conversations, and collaborative examples",
        "- Reference how concepts apply to working with others",
        '- Encourage "teach it to someone else" or "explain it to a friend"',
        "- Connect learning to social contexts and interpersonal relationships",
    ],
    "solitary": [
        "🧘 SOLITARY/INTRAPERSONAL LEARNER ADAPTATIONS:",
        "- Support independent reflection and self-paced discovery",
        '- Encourage personal connections: "How does this relate to your experience?"',
        "- Provide time for internal processing before asking for responses",
        "- Frame learning as personal growth and self-understanding",
        '- Use introspective prompts: "What do you think?", "In your own words"',
    ],
}

_STYLE_ALIASES = {
    "reading-writing": "reading/writing",
    "reading": "reading/writing",
    "mathematical": "logical",
    "interpersonal": "social",
    "intrapersonal": "solitary",
}


@dataclass(frozen=True)
class DirectiveThresholds:
    mastery_low: float = 50
    mastery_high: float = 80
    struggle_high: float = 0.4
    struggle_moderate: float = 0.2

    @classmethod
    def from_settings(cls, settings: TutorSettings) -> "DirectiveThresholds":
        return cls(
            mastery_low=settings.mastery_low_threshold,
            mastery_high=settings.mastery_high_threshold,
            struggle_high=settings.struggle_high_ratio,
            struggle_moderate=settings.struggle_moderate_ratio,
        )


@dataclass
class AdaptiveDirectiveSet:
    """Per-turn teaching instructions. Never persisted."""
    style_adjustments: List[str] = field(default_factory=list)
    difficulty_adjustments: List[str] = field(default_factory=list)
    scaffolding_needs: List[str] = field(default_factory=list)
    phase_guidance: List[str] = field(default_factory=list)
    encouragement_level: str = "standard"
    current_mastery: float = 50
    difficulty_level: str = "standard"
    scaffolding_level: str = "standard"

    @property
    def directive_count(self) -> int:
        return (
            len(self.style_adjustments)
            + len(self.difficulty_adjustments)
            + len(self.scaffolding_needs)
            + len(self.phase_guidance)
        )


def normalize_learning_style(style: Optional[str]) -> Optional[str]:
    if not style:
        return None
    key = style.strip().lower()
    key = _STYLE_ALIASES.get(key, key)
    return key if key in _STYLE_DIRECTIVES else None


def struggle_ratio(history: Sequence[HistoryEntry]) -> float:
    """Share of recent replies that signal a correction."""
    corrections = sum(
        1 for entry in history
        if any(indicator in (entry.ai_response or "").lower() for indicator in STRUGGLE_INDICATORS)
    )
    return corrections / max(len(history), 1)


class DirectiveGenerator:
    """Builds AdaptiveDirectiveSets from learner context."""

    def __init__(self, thresholds: Optional[DirectiveThresholds] = None):
        self.thresholds = thresholds or DirectiveThresholds()

    def generate(self, profile, history: Sequence[HistoryEntry], mastery_score: float) -> AdaptiveDirectiveSet:
        """
        Generate directives for one turn.

        Args:
            profile: LearnerProfile (learning_style, strengths, struggles)
            history: Recent exchanges, oldest first
            mastery_score: Current mastery 0-100

        Returns:
            AdaptiveDirectiveSet
        """
        t = self.thresholds
        directives = AdaptiveDirectiveSet(current_mastery=mastery_score)

        style = normalize_learning_style(getattr(profile, "learning_style", None))
        if style:
            directives.style_adjustments.extend(_STYLE_DIRECTIVES[style])

        if mastery_score < t.mastery_low:
            directives.difficulty_level = "simplified"
            directives.difficulty_adjustments.extend([
                f"📉 LOW MASTERY (<{t.mastery_low:g}%) - SIMPLIFICATION MODE:",
                "- SLOW DOWN: Break every concept into the smallest possible steps",
                "- Use ONLY simple vocabulary appropriate for grade level (avoid technical jargon)",
                "- Provide MORE examples (minimum 3 concrete examples per concept)",
                '- Check understanding after EVERY step before proceeding ("Got it?")',
                "- Use analogies from everyday life that the student can relate to",
                "- If they struggle with a step, break it down even further",
            ])
        elif mastery_score <= t.mastery_high:
            directives.difficulty_adjustments.extend([
                f"📊 MEDIUM MASTERY ({t.mastery_low:g}-{t.mastery_high:g}%) - STANDARD TEACHING:",
                "- Balanced pace: Explain clearly with 1-2 examples per concept",
                "- Introduce concepts progressively with logical connections",
                "- Check understanding periodically (not after every step)",
                "- Use appropriate grade-level vocabulary with occasional challenges",
                "- Build on previous knowledge systematically",
            ])
        else:
            directives.difficulty_level = "accelerated"
            directives.difficulty_adjustments.extend([
                f"📈 HIGH MASTERY (>{t.mastery_high:g}%) - ACCELERATION MODE:",
                "- ACCELERATE: Student is ready for more complexity and depth",
                "- Introduce advanced vocabulary and more sophisticated concepts",
                "- Ask deeper questions that require synthesis and critical thinking",
                '- Provide challenging extensions: "What if...", "How would you...", "Can you apply this to..."',
                "- Move faster through basics, spend more time on nuances and applications",
                "- Trust the student to connect dots independently",
            ])

        ratio = struggle_ratio(history)
        if history and ratio > t.struggle_high:
            directives.scaffolding_level = "maximum"
            directives.encouragement_level = "high"
            directives.scaffolding_needs.extend([
                "🆘 HIGH STRUGGLE DETECTED - MAXIMUM SCAFFOLDING:",
                "- Structure every step as DEMONSTRATE -> GUIDE -> RELEASE",
                "- Demonstrate: show a COMPLETE worked example before asking anything",
                "- Guide: walk through the next example together, providing sentence starters and templates",
                "- Release: give an easier problem than expected to build confidence first",
                "- Praise small wins frequently",
                "- Be extremely patient and encouraging - confidence is more important than speed",
            ])
        elif not history or ratio >= t.struggle_moderate:
            directives.scaffolding_needs.extend([
                "🤝 MODERATE STRUGGLE - STANDARD SCAFFOLDING:",
                "- Provide hints when student gets stuck (not full solutions)",
                "- Ask guiding questions to prompt thinking: \"What do you know?\", \"What's the first step?\"",
                "- Offer partial examples or analogies",
                "- Check in regularly but don't over-help",
            ])
        else:
            directives.scaffolding_level = "minimal"
            directives.encouragement_level = "minimal"
            directives.scaffolding_needs.extend([
                "🚀 LOW STRUGGLE - MINIMAL SCAFFOLDING:",
                "- Student is confident and capable - reduce scaffolding",
                "- Let student work independently and discover solutions",
                "- Only intervene if they explicitly ask for help",
                "- Pose open-ended questions that encourage exploration",
            ])

        strengths = list(getattr(profile, "strengths", None) or [])
        if strengths:
            directives.scaffolding_needs.extend([
                f"💪 LEVERAGE STRENGTHS: Student excels at {', '.join(strengths)}.",
                "- Connect new concepts to these strengths as bridges to understanding",
                f'- Reference their expertise: "You\'re good at {strengths[0]}, this is similar..."',
            ])

        struggles = list(getattr(profile, "struggles", None) or [])
        if struggles:
            directives.scaffolding_needs.extend([
                f"⚠️ KNOWN STRUGGLES: Student has difficulty with {', '.join(struggles)}.",
                "- Anticipate confusion in these areas and pre-explain connections",
                "- Avoid assuming prior knowledge in struggle areas - review basics first",
            ])

        directives.phase_guidance.extend(self._phase_guidance(mastery_score, ratio, bool(history)))
        return directives

    def _phase_guidance(self, mastery_score: float, ratio: float, has_history: bool) -> List[str]:
        t = self.thresholds
        if mastery_score > t.mastery_high and ratio < t.struggle_moderate:
            return [
                "⚡ PHASE ACCELERATION ENABLED:",
                "- Compress introduction and guided practice",
                "- Spend the saved time on challenging transfer questions",
            ]
        if mastery_score < EXTENDED_PHASE_THRESHOLD:
            return [
                "🐢 EXTENDED PHASE MODE:",
                "- Use 3+ worked examples before independent practice",
                "- Do NOT rush any phase transition",
                "- Watch for frustration signals - hand off to the motivator if needed",
            ]
        if has_history and ratio > t.struggle_high and mastery_score >= t.mastery_low:
            return [
                "🔄 CORRECTION-HEAVY MODE:",
                "- Student knows some material but makes frequent errors",
                "- Verify each step before proceeding to the next",
            ]
        return []

    @staticmethod
    def format(directives: AdaptiveDirectiveSet) -> str:
        """Render directives as a prompt block."""
        rule = "═" * 59
        lines = [
            rule,
            "         🎯 ADAPTIVE TEACHING DIRECTIVES 🎯",
            "  CRITICAL: Follow these instructions to personalize teaching",
            rule,
        ]
        for group in (
            directives.style_adjustments,
            directives.difficulty_adjustments,
            directives.scaffolding_needs,
            directives.phase_guidance,
        ):
            if group:
                lines.append("")
                lines.extend(group)

        lines.append("")
        lines.append(f"🎭 ENCOURAGEMENT LEVEL: {directives.encouragement_level.upper()}")
        lines.append("- Adjust your tone and enthusiasm accordingly")
        if directives.encouragement_level == "high":
            lines.append("- Be VERY encouraging, celebrate every small success")
        elif directives.encouragement_level == "minimal":
            lines.append("- Be supportive but not overbearing - student is doing well")

        lines.append("")
        lines.append(rule)
        lines.append(f"📊 Current Mastery: {directives.current_mastery:g}%")
        return "\n".join(lines)
