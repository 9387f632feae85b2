"""
Prompt builders for teaching and routing calls.

System prompts live with the responder definitions (and in the cached
context); these helpers only build the dynamic per-turn part.
"""

from typing import List, Optional

from multi_ai_tutor.models import HistoryEntry, LessonDescriptor
from multi_ai_tutor.responders import Responder

HISTORY_IN_PROMPT = 3
HISTORY_RESPONSE_PREVIEW = 200

TEACHING_OUTPUT_GUIDANCE = """IMPORTANT: Respond with a single JSON object.
- audioText: Natural spoken language (what you SAY to the student). No code or symbols.
- displayText: Written board notes with markdown (what you WRITE). No SVG code here.
- svg: Full SVG diagram string, or null. SVG code goes ONLY here.
- teachingPhase: Your current teaching phase.
- lessonComplete: true ONLY when the student has demonstrated mastery of the objective."""


def _profile_block(profile) -> str:
    lines = [
        "STUDENT PROFILE:",
        f"- Name: {profile.name or 'Student'}",
    ]
    if profile.age:
        lines.append(f"- Age: {profile.age} years old")
    if profile.grade_level:
        lines.append(f"- Grade Level: {profile.grade_level}")
    if profile.learning_style:
        lines.append(f"- Learning Style: {profile.learning_style}")
    if profile.strengths:
        lines.append(f"- Strengths: {', '.join(profile.strengths)}")
    if profile.struggles:
        lines.append(f"- Areas to improve: {', '.join(profile.struggles)}")
    return "\n".join(lines)


def _history_block(history: List[HistoryEntry]) -> str:
    if not history:
        return ""
    lines = ["RECENT CONVERSATION:"]
    for entry in history[-HISTORY_IN_PROMPT:]:
        lines.append(f"Student: {entry.user_message}")
        lines.append(f"Teacher: {entry.ai_response[:HISTORY_RESPONSE_PREVIEW]}")
    return "\n".join(lines)


def _lesson_block(lesson: LessonDescriptor) -> str:
    return "\n".join([
        "CURRENT LESSON:",
        f"- Title: {lesson.title}",
        f"- Subject: {lesson.subject}",
        f"- Objective: {lesson.learning_objective}",
    ])


def build_teaching_prompt(
    responder: Responder,
    learner_message: Optional[str],
    profile,
    lesson: LessonDescriptor,
    history: List[HistoryEntry],
    directives_text: str = "",
    handed_off_from: Optional[Responder] = None,
    media_note: Optional[str] = None,
    correction_note: Optional[str] = None,
) -> str:
    """Dynamic prompt for a teaching responder."""
    sections = [f'You are acting as the "{responder.value}" agent.']
    if correction_note:
        sections.append(correction_note)
    sections.append(_profile_block(profile))
    if directives_text:
        sections.append(directives_text)
    history_text = _history_block(history)
    if history_text:
        sections.append(history_text)
    sections.append(_lesson_block(lesson))
    if handed_off_from is not None:
        sections.append(
            f"NOTE: Student was just handed off to you from {handed_off_from.value}. Make a smooth transition."
        )
    sections.append(TEACHING_OUTPUT_GUIDANCE)
    if media_note:
        sections.append(media_note)
    sections.append(f"Student: {learner_message or '(no text provided)'}")
    return "\n\n".join(sections)


def build_lesson_start_prompt(profile, lesson: LessonDescriptor, directives_text: str = "") -> str:
    """Coordinator greeting at the start of a lesson."""
    sections = [
        'You are acting as the "coordinator" agent. The student has just opened a lesson.',
        _profile_block(profile),
        _lesson_block(lesson),
    ]
    if directives_text:
        sections.append(directives_text)
    sections.append(
        "Greet the student by name, introduce the lesson title and what they will be able to do "
        "by the end (the objective), then ask if they are ready to begin. Keep it short and warm."
    )
    sections.append(TEACHING_OUTPUT_GUIDANCE)
    return "\n\n".join(sections)


def build_routing_prompt(
    learner_message: str,
    profile,
    lesson: LessonDescriptor,
    history: List[HistoryEntry],
    active_responder: Optional[Responder] = None,
) -> str:
    """Routing decision prompt for the coordinator."""
    sections = [
        _profile_block(profile),
        _lesson_block(lesson),
    ]
    history_text = _history_block(history)
    if history_text:
        sections.append(history_text)
    sections.append(
        f"CURRENTLY ACTIVE AGENT: {active_responder.value if active_responder else 'none'}"
    )
    sections.append(f'STUDENT MESSAGE: "{learner_message}"')
    sections.append(
        "Decide who should answer. Respond ONLY with JSON: "
        '{"route_to": "<agent id or self>", "reason": "...", '
        '"handoff_message": "... (only when switching agents)", '
        '"response": "... (only when route_to is self)"}'
    )
    return "\n\n".join(sections)


CORRECTION_PREVIEW = 300


def format_correction(display_text: str, issues: List[str], required_fixes: List[str]) -> str:
    """Self-correction block for the responder whose previous reply failed validation."""
    lines = [
        "[SELF-CORRECTION REQUIRED]",
        "Your previous response contained errors that were caught after it was delivered.",
        f'Your incorrect statement: "{display_text[:CORRECTION_PREVIEW]}"',
        "Issues found:",
    ]
    lines.extend(f"- {issue}" for issue in issues)
    if required_fixes:
        lines.append("Required fixes:")
        lines.extend(f"- {fix}" for fix in required_fixes)
    lines.append(
        "Begin this response by briefly acknowledging the mistake and giving the correct information, "
        "then continue with the student's message. Keep the acknowledgement natural and short."
    )
    lines.append("[END SELF-CORRECTION]")
    return "\n".join(lines)


def build_validation_prompt(
    responder: Responder,
    profile,
    lesson: LessonDescriptor,
    spoken_text: str,
    display_text: str,
    svg: Optional[str],
) -> str:
    """Review prompt for a specialist reply that was already delivered."""
    sections = [
        "VALIDATE THE FOLLOWING TEACHING RESPONSE",
        "\n".join([
            "CONTEXT:",
            f"- Student grade: {profile.grade_level or 'unknown'}",
            f"- Student age: {profile.age or 'unknown'}",
            f"- Lesson: {lesson.title}",
            f"- Objective: {lesson.learning_objective}",
            f"- Specialist: {responder.value}",
        ]),
        f'AUDIO TEXT (what was said): "{spoken_text}"',
        f'DISPLAY TEXT (what was shown): "{display_text}"',
        f"SVG: {svg if svg else 'none'}",
        "\n".join([
            "CHECK:",
            "1. Factual accuracy: every fact, number and worked step is correct",
            "2. Audio and display text agree with each other",
            "3. Any diagram matches the explanation",
            "4. Language and difficulty suit the student's grade",
            "5. A wrong student answer was not accepted as correct",
        ]),
        "Respond ONLY with JSON: "
        '{"approved": true|false, "confidenceScore": 0.0-1.0, '
        '"issues": ["..."], "requiredFixes": ["..."]}',
    ]
    return "\n\n".join(sections)
