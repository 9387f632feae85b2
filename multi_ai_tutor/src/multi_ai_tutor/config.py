"""
Tutor Configuration

Environment-driven settings for the multi-AI tutor. Every tunable threshold
lives here with its default so that tests and deployments can override them
without touching component code.
"""

import os
from dataclasses import dataclass
from typing import Optional

from dotenv import load_dotenv

load_dotenv()


def _env_float(name: str, default: float) -> float:
    value = os.getenv(name)
    if value is None or value == "":
        return default
    return float(value)


def _env_int(name: str, default: int) -> int:
    value = os.getenv(name)
    if value is None or value == "":
        return default
    return int(value)


@dataclass(frozen=True)
class TutorSettings:
    """Runtime settings for a tutor deployment."""
    openai_api_key: Optional[str] = None
    fast_model: str = "gpt-5-mini"
    deep_model: str = "gpt-5"
    search_model: str = "gpt-4o-mini-search-preview"
    tts_model: str = "gpt-4o-mini-tts"
    transcribe_model: str = "gpt-4o-mini-transcribe"

    # Context cache
    context_cache_ttl_seconds: int = 7200
    context_cache_renewal_fraction: float = 0.75

    # Profile cache / history
    profile_cache_ttl_seconds: int = 300
    history_limit: int = 5
    routing_state_ttl_seconds: int = 7200

    # Evidence + mastery
    evidence_confidence_threshold: float = 0.7
    classifier_timeout_seconds: float = 10.0
    mastery_timeout_seconds: float = 3.0
    enrichment_window: int = 10
    validation_timeout_seconds: float = 10.0

    # Directive thresholds
    struggle_high_ratio: float = 0.4
    struggle_moderate_ratio: float = 0.2
    mastery_low_threshold: float = 50
    mastery_high_threshold: float = 80

    @classmethod
    def from_env(cls) -> "TutorSettings":
        """Build settings from environment variables (and .env if present)."""
        return cls(
            openai_api_key=os.getenv("OPENAI_API_KEY"),
            fast_model=os.getenv("OPENAI_MODEL", cls.fast_model),
            deep_model=os.getenv("OPENAI_DEEP_MODEL", cls.deep_model),
            search_model=os.getenv("OPENAI_SEARCH_MODEL", cls.search_model),
            tts_model=os.getenv("OPENAI_TTS_MODEL", cls.tts_model),
            transcribe_model=os.getenv("OPENAI_TRANSCRIBE_MODEL", cls.transcribe_model),
            context_cache_ttl_seconds=_env_int("CONTEXT_CACHE_TTL_SECONDS", cls.context_cache_ttl_seconds),
            context_cache_renewal_fraction=_env_float(
                "CONTEXT_CACHE_RENEWAL_FRACTION", cls.context_cache_renewal_fraction
            ),
            profile_cache_ttl_seconds=_env_int("PROFILE_CACHE_TTL_SECONDS", cls.profile_cache_ttl_seconds),
            history_limit=_env_int("HISTORY_LIMIT", cls.history_limit),
            routing_state_ttl_seconds=_env_int("ROUTING_STATE_TTL_SECONDS", cls.routing_state_ttl_seconds),
            evidence_confidence_threshold=_env_float(
                "EVIDENCE_CONFIDENCE_THRESHOLD", cls.evidence_confidence_threshold
            ),
            classifier_timeout_seconds=_env_float("CLASSIFIER_TIMEOUT_SECONDS", cls.classifier_timeout_seconds),
            mastery_timeout_seconds=_env_float("MASTERY_TIMEOUT_SECONDS", cls.mastery_timeout_seconds),
            enrichment_window=_env_int("ENRICHMENT_WINDOW", cls.enrichment_window),
            validation_timeout_seconds=_env_float(
                "VALIDATION_TIMEOUT_SECONDS", cls.validation_timeout_seconds
            ),
            struggle_high_ratio=_env_float("STRUGGLE_HIGH_RATIO", cls.struggle_high_ratio),
            struggle_moderate_ratio=_env_float("STRUGGLE_MODERATE_RATIO", cls.struggle_moderate_ratio),
            mastery_low_threshold=_env_float("MASTERY_LOW_THRESHOLD", cls.mastery_low_threshold),
            mastery_high_threshold=_env_float("MASTERY_HIGH_THRESHOLD", cls.mastery_high_threshold),
        )


_settings: Optional[TutorSettings] = None


def get_settings() -> TutorSettings:
    """Get or create the process-wide settings singleton."""
    global _settings
    if _settings is None:
        _settings = TutorSettings.from_env()
    return _settings
