"""
FastAPI Backend for the Multi-AI Tutor

Provides REST API endpoints with:
- JWT Authentication
- One tutoring turn per request (routing, reply, speech, mastery gate)
- Session start/end with context cache warmup
- Cache status and invalidation for teachers
"""

from fastapi import FastAPI, HTTPException, Depends
from fastapi.middleware.cors import CORSMiddleware
from pydantic import BaseModel, ConfigDict, Field
from typing import Optional
import os
import sys
import time
import logging
import signal

from lib.logger import setup_logging, get_logger

setup_logging(level=getattr(logging, os.getenv("LOG_LEVEL", "INFO").upper(), logging.INFO), use_colors=True)

logger = get_logger("backend.main")

# Add the multi_ai_tutor package to Python path
backend_dir = os.path.dirname(os.path.abspath(__file__))
project_root = os.path.dirname(backend_dir)

package_src = os.path.join(project_root, 'multi_ai_tutor', 'src')
if os.path.exists(package_src) and package_src not in sys.path:
    sys.path.insert(0, package_src)

from lib.supabase_client import get_supabase_client, supabase_configured
from lib.auth import get_current_user, require_teacher

from multi_ai_tutor.errors import (
    ContextAssemblyError,
    LessonNotFoundError,
    ProfileNotFoundError,
    ResponseGenerationError,
    TutorError,
    TurnSupersededError,
    TurnValidationError,
)
from multi_ai_tutor.models import TurnRequest
from multi_ai_tutor.orchestrator import TeachingOrchestrator

_orchestrator: Optional[TeachingOrchestrator] = None


def get_orchestrator() -> TeachingOrchestrator:
    """Get or create the singleton TeachingOrchestrator."""
    global _orchestrator
    if _orchestrator is None:
        supabase = get_supabase_client() if supabase_configured() else None
        if supabase is None:
            logger.warning("Supabase not configured, using in-memory stores")
        _orchestrator = TeachingOrchestrator.create(supabase_client=supabase)
    return _orchestrator


app = FastAPI(
    title="Multi-AI Tutor API",
    description="Voice-first multi-responder tutoring with evidence-based mastery",
    version="1.0.0"
)

cors_origins = [
    origin.strip()
    for origin in os.getenv("CORS_ORIGINS", "http://localhost:3000,http://127.0.0.1:3000").split(",")
    if origin.strip()
]

app.add_middleware(
    CORSMiddleware,
    allow_origins=cors_origins,
    allow_credentials=True,
    allow_methods=["*"],
    allow_headers=["*"],
)

# ==================== Pydantic Models ====================

class TeachRequest(BaseModel):
    model_config = ConfigDict(populate_by_name=True)

    # Presence and shape are checked by validate_turn_request so errors map to 400
    user_id: Optional[str] = Field(None, alias="userId")
    session_id: Optional[str] = Field(None, alias="sessionId")
    lesson_id: Optional[str] = Field(None, alias="lessonId")
    user_message: Optional[str] = Field(None, alias="userMessage")
    audio_base64: Optional[str] = Field(None, alias="audioBase64")
    audio_mime_type: Optional[str] = Field(None, alias="audioMimeType")
    media_base64: Optional[str] = Field(None, alias="mediaBase64")
    media_mime_type: Optional[str] = Field(None, alias="mediaMimeType")
    media_type: Optional[str] = Field(None, alias="mediaType")

    def to_turn_request(self) -> TurnRequest:
        return TurnRequest(
            user_id=self.user_id,
            session_id=self.session_id,
            lesson_id=self.lesson_id,
            message=self.user_message,
            audio_base64=self.audio_base64,
            audio_mime_type=self.audio_mime_type,
            media_base64=self.media_base64,
            media_mime_type=self.media_mime_type,
            media_type=self.media_type,
        )


class StartSessionRequest(BaseModel):
    model_config = ConfigDict(populate_by_name=True)

    user_id: str = Field(alias="userId")
    lesson_id: str = Field(alias="lessonId")


class EndSessionRequest(BaseModel):
    model_config = ConfigDict(populate_by_name=True)

    session_id: str = Field(alias="sessionId")


# ==================== Helper Functions ====================

def ensure_same_user_or_teacher(user: dict, user_id: Optional[str]):
    """Learners may only act for themselves; teachers may act for anyone."""
    if user_id and user_id != user.get("id") and user.get("role") != "teacher":
        raise HTTPException(status_code=403, detail="Cannot act on behalf of another user")


def to_http_error(error: TutorError) -> HTTPException:
    if isinstance(error, TurnValidationError):
        return HTTPException(status_code=400, detail=str(error))
    if isinstance(error, (LessonNotFoundError, ProfileNotFoundError)):
        return HTTPException(status_code=404, detail=str(error))
    if isinstance(error, TurnSupersededError):
        return HTTPException(status_code=409, detail="Superseded by a newer message")
    if isinstance(error, ResponseGenerationError):
        return HTTPException(status_code=502, detail="The tutor could not generate a response. Please try again.")
    if isinstance(error, ContextAssemblyError):
        return HTTPException(status_code=500, detail="Could not load lesson context")
    return HTTPException(status_code=500, detail="Internal tutor error")


# ==================== API Endpoints ====================

@app.get("/")
async def root():
    """Health check endpoint."""
    return {
        "status": "ok",
        "service": "Multi-AI Tutor API",
        "version": "1.0.0",
        "supabase_connected": supabase_configured(),
    }


@app.post("/api/teach/multi-ai-stream")
async def teach_multi_ai(
    body: TeachRequest,
    user: dict = Depends(get_current_user),
    orchestrator: TeachingOrchestrator = Depends(get_orchestrator),
):
    """
    Run one tutoring turn.

    The reply carries the responder's spoken and display text, base64 MP3
    audio, an optional SVG diagram, a handoff line when routing switched
    responders, and the evidence-gated topicComplete flag.
    """
    ensure_same_user_or_teacher(user, body.user_id)

    start = time.time()
    logger.request("POST", "/api/teach/multi-ai-stream", user.get("id"), {
        "session": body.session_id,
        "lesson": body.lesson_id,
    })

    try:
        result = await orchestrator.handle_turn(body.to_turn_request())
    except TutorError as e:
        http_error = to_http_error(e)
        if http_error.status_code >= 500:
            logger.error("Turn failed", error=e, data={"session": body.session_id})
        else:
            logger.warning(f"Turn rejected: {e}", {"status": http_error.status_code})
        raise http_error
    except Exception as e:
        logger.error("Unexpected error during turn", error=e, data={"session": body.session_id})
        raise HTTPException(status_code=500, detail="Internal tutor error")

    payload = result.to_dict()
    logger.response(200, "/api/teach/multi-ai-stream", time.time() - start, {
        "responder": payload["responderId"],
        "topic_complete": payload["topicComplete"],
    })
    return {"success": True, **payload}


@app.post("/api/sessions/start")
async def start_session(
    body: StartSessionRequest,
    user: dict = Depends(get_current_user),
    orchestrator: TeachingOrchestrator = Depends(get_orchestrator),
):
    """Create a learning session and warm the context cache in the background."""
    ensure_same_user_or_teacher(user, body.user_id)
    try:
        session = await orchestrator.start_session(body.user_id, body.lesson_id)
    except Exception as e:
        logger.error("Failed to start session", error=e)
        raise HTTPException(status_code=500, detail="Failed to create session")

    logger.success("Session started", {"session": session["id"], "lesson": body.lesson_id})
    return {"success": True, "sessionId": session["id"], "startedAt": session["started_at"]}


@app.post("/api/sessions/end")
async def end_session(
    body: EndSessionRequest,
    user: dict = Depends(get_current_user),
    orchestrator: TeachingOrchestrator = Depends(get_orchestrator),
):
    """End a session and add its duration to the learner's total learning time."""
    session = await orchestrator.session_manager.get_session(body.session_id)
    if not session:
        raise HTTPException(status_code=404, detail="Session not found")
    ensure_same_user_or_teacher(user, session.get("user_id"))

    summary = await orchestrator.end_session(body.session_id)
    return {
        "success": True,
        "sessionId": body.session_id,
        "durationMinutes": (summary or {}).get("duration_minutes", 0),
    }


@app.get("/api/cache/status")
async def cache_status(
    user: dict = Depends(get_current_user),
    orchestrator: TeachingOrchestrator = Depends(get_orchestrator),
):
    return orchestrator.cache_coordinator.get_status()


@app.post("/api/admin/cache/invalidate")
async def invalidate_cache(
    user: dict = Depends(get_current_user),
    orchestrator: TeachingOrchestrator = Depends(get_orchestrator),
):
    """Drop every context cache so the next turn rebuilds them from current prompts."""
    require_teacher(user)
    orchestrator.registry.clear_cache()
    removed = await orchestrator.cache_coordinator.invalidate()
    logger.info(f"🗑️ Invalidated {removed} context cache(s)", {"by": user.get("id")})
    return {"success": True, "invalidated": removed}


@app.on_event("startup")
async def startup_event():
    """Startup event - warm the context caches."""
    if not os.getenv("OPENAI_API_KEY"):
        logger.warning("OPENAI_API_KEY not set, skipping cache warmup")
        return
    try:
        with logger.timed("Context cache warmup"):
            results = await get_orchestrator().cache_coordinator.warmup()
        logger.success("Context caches warmed", {"models": len(results), "ok": sum(results.values())})
    except Exception as e:
        logger.error("Cache warmup failed; caches will be created on first use", error=e)


@app.on_event("shutdown")
async def shutdown_event():
    """Shutdown event - let background work finish."""
    if _orchestrator is not None:
        await _orchestrator.shutdown()
        logger.info("🛑 Background tasks drained")


if __name__ == "__main__":
    import uvicorn

    def handle_exit(*args):
        """Handle graceful shutdown."""
        logger.section("SERVER SHUTDOWN", {"reason": "signal received"})
        sys.exit(0)

    signal.signal(signal.SIGINT, handle_exit)
    signal.signal(signal.SIGTERM, handle_exit)

    try:
        uvicorn.run(app, host="0.0.0.0", port=int(os.getenv("PORT", "8000")))
    except KeyboardInterrupt:
        logger.info("🛑 Server stopped.")
        sys.exit(0)
