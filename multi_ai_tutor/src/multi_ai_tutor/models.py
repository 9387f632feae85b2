"""
Shared data types for tutoring turns.
"""

import base64
from dataclasses import dataclass, field
from datetime import datetime, timezone
from enum import Enum
from typing import Any, Dict, Optional


class EvidenceKind(str, Enum):
    """Kinds of mastery evidence a learner turn can produce."""
    CORRECT_ANSWER = "correct_answer"
    INCORRECT_ANSWER = "incorrect_answer"
    EXPLANATION = "explanation"
    APPLICATION = "application"
    STRUGGLE = "struggle"

    @classmethod
    def parse(cls, value: Any) -> Optional["EvidenceKind"]:
        try:
            return cls(str(value).strip().lower())
        except ValueError:
            return None


@dataclass(frozen=True)
class LessonDescriptor:
    """Lesson the session is bound to. Immutable for the session's lifetime."""
    id: str
    title: str
    subject: str
    grade_level: Optional[str] = None
    learning_objective: str = ""
    difficulty: Optional[str] = None
    mastery_rules: Optional[Dict[str, Any]] = None

    @classmethod
    def from_row(cls, row: Dict[str, Any]) -> "LessonDescriptor":
        return cls(
            id=str(row["id"]),
            title=row.get("title") or "",
            subject=(row.get("subject") or "").lower(),
            grade_level=str(row["grade_level"]) if row.get("grade_level") is not None else None,
            learning_objective=row.get("learning_objective") or "",
            difficulty=row.get("difficulty"),
            mastery_rules=row.get("mastery_rules") or None,
        )


@dataclass
class HistoryEntry:
    """One exchange in a session, oldest first in every list."""
    user_message: str
    ai_response: str
    timestamp: Optional[str] = None


@dataclass
class MasteryEvidenceRecord:
    """Append-only mastery evidence row."""
    user_id: str
    lesson_id: str
    session_id: str
    kind: EvidenceKind
    quality_score: int
    confidence: float
    content: str
    topic: str
    recorded_at: datetime = field(default_factory=lambda: datetime.now(timezone.utc))

    def to_row(self) -> Dict[str, Any]:
        return {
            "user_id": self.user_id,
            "lesson_id": self.lesson_id,
            "session_id": self.session_id,
            "evidence_type": self.kind.value,
            "content": self.content,
            "metadata": {
                "quality_score": self.quality_score,
                "confidence": self.confidence,
                "context": self.topic,
            },
            "recorded_at": self.recorded_at.isoformat(),
        }

    @classmethod
    def from_row(cls, row: Dict[str, Any]) -> Optional["MasteryEvidenceRecord"]:
        kind = EvidenceKind.parse(row.get("evidence_type"))
        if kind is None:
            return None
        metadata = row.get("metadata") or {}
        recorded_at = row.get("recorded_at")
        if isinstance(recorded_at, str):
            recorded_at = datetime.fromisoformat(recorded_at.replace("Z", "+00:00"))
        if isinstance(recorded_at, datetime) and recorded_at.tzinfo is None:
            recorded_at = recorded_at.replace(tzinfo=timezone.utc)
        return cls(
            user_id=row.get("user_id", ""),
            lesson_id=row.get("lesson_id", ""),
            session_id=row.get("session_id", ""),
            kind=kind,
            quality_score=int(metadata.get("quality_score", 0) or 0),
            confidence=float(metadata.get("confidence", 0) or 0),
            content=row.get("content") or "",
            topic=metadata.get("context") or "",
            recorded_at=recorded_at or datetime.now(timezone.utc),
        )


@dataclass
class TurnRequest:
    """One learner turn. Exactly one input kind must be present."""
    user_id: str
    session_id: str
    lesson_id: str
    message: Optional[str] = None
    audio_base64: Optional[str] = None
    audio_mime_type: Optional[str] = None
    media_base64: Optional[str] = None
    media_mime_type: Optional[str] = None
    media_type: Optional[str] = None

    AUTO_START_PREFIX = "[AUTO_START]"

    @property
    def is_lesson_start(self) -> bool:
        return bool(self.message) and self.message.startswith(self.AUTO_START_PREFIX)

    @property
    def has_text(self) -> bool:
        return bool(self.message and self.message.strip())


@dataclass
class TurnResult:
    """Response returned to the caller for a completed turn."""
    spoken_text: str
    display_text: str
    responder_id: str
    audio: bytes = b""
    diagram_markup: Optional[str] = None
    handoff_text: Optional[str] = None
    topic_complete: bool = False
    routing_reason: str = ""

    def to_dict(self) -> Dict[str, Any]:
        return {
            "spokenText": self.spoken_text,
            "displayText": self.display_text,
            "diagramMarkup": self.diagram_markup,
            "audioPayload": base64.b64encode(self.audio).decode("ascii") if self.audio else "",
            "responderId": self.responder_id,
            "handoffText": self.handoff_text,
            "topicComplete": self.topic_complete,
            "routingReason": self.routing_reason,
        }
