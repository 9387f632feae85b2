"""
Tutor error types.

Every failure the orchestrator can surface to a caller derives from TutorError,
so the HTTP layer can map them to status codes in one place.
"""


class TutorError(Exception):
    """Base class for tutor failures."""


class TurnValidationError(TutorError):
    """Request is malformed; raised before any upstream call."""


class ContextAssemblyError(TutorError):
    """A required piece of turn context could not be loaded."""


class LessonNotFoundError(ContextAssemblyError):
    def __init__(self, lesson_id: str):
        super().__init__(f"Lesson not found: {lesson_id}")
        self.lesson_id = lesson_id


class ProfileNotFoundError(ContextAssemblyError):
    def __init__(self, user_id: str):
        super().__init__(f"User profile not found: {user_id}")
        self.user_id = user_id


class ResponderNotFoundError(TutorError):
    def __init__(self, name: str):
        super().__init__(f"Unknown responder: {name}")
        self.name = name


class UpstreamServiceError(TutorError):
    """The generative model or speech service failed."""


class MalformedModelOutputError(UpstreamServiceError):
    """The model returned output that does not match the expected structure."""


class SpeechSynthesisError(UpstreamServiceError):
    """Text-to-speech failed or returned no audio."""


class ResponseGenerationError(TutorError):
    """Every response tier failed for a turn."""

    def __init__(self, message: str, failures=None):
        super().__init__(message)
        self.failures = failures or []


class TurnSupersededError(TutorError):
    """A newer turn for the same session replaced this one."""

    def __init__(self, session_id: str):
        super().__init__(f"Turn superseded by a newer request for session {session_id}")
        self.session_id = session_id
