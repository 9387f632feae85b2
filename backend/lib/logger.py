"""
Backend logging.

Colour-coded console output with per-component icons, plus a small
structured logger for request/response and turn timing lines.
"""

import logging
import sys
import time
from contextlib import contextmanager
from datetime import datetime
from typing import Any, Dict, Optional


class Colors:
    """ANSI escape codes."""
    RESET = '\033[0m'
    BOLD = '\033[1m'

    DEBUG = '\033[36m'
    INFO = '\033[32m'
    WARNING = '\033[33m'
    ERROR = '\033[31m'
    CRITICAL = '\033[35m'

    SECTION = '\033[94m'
    KEY = '\033[93m'
    TIMESTAMP = '\033[90m'


LEVEL_COLORS = {
    'DEBUG': Colors.DEBUG,
    'INFO': Colors.INFO,
    'WARNING': Colors.WARNING,
    'ERROR': Colors.ERROR,
    'CRITICAL': Colors.CRITICAL,
}


class ColoredFormatter(logging.Formatter):
    """Formats records as `[time] icon LEVEL component | message`."""

    LEVEL_ICONS = {
        'DEBUG': '🔍',
        'INFO': 'ℹ️',
        'WARNING': '⚠️',
        'ERROR': '❌',
        'CRITICAL': '🚨',
    }

    # Keyed on the last component of the logger name
    COMPONENT_ICONS = {
        'main': '🌐',
        'orchestrator': '🎓',
        'router': '🔀',
        'streaming_pipeline': '🌊',
        'speech': '🔊',
        'cache_coordinator': '💾',
        'context_assembler': '📦',
        'mastery_engine': '🏅',
        'evidence_extractor': '🔬',
        'profile_enricher': '🧠',
        'background_tasks': '⏳',
        'session_manager': '🗂️',
    }

    def __init__(self, use_colors: bool = True):
        super().__init__()
        self.use_colors = use_colors and sys.stdout.isatty()

    def format(self, record: logging.LogRecord) -> str:
        component = record.name.split('.')[-1]
        icon = self.COMPONENT_ICONS.get(component, self.LEVEL_ICONS.get(record.levelname, '•'))
        timestamp = datetime.fromtimestamp(record.created).strftime('%H:%M:%S.%f')[:-3]

        if self.use_colors:
            level = f"{LEVEL_COLORS.get(record.levelname, Colors.RESET)}{record.levelname:8s}{Colors.RESET}"
            stamp = f"{Colors.TIMESTAMP}[{timestamp}]{Colors.RESET}"
            name = f"{Colors.BOLD}{component}{Colors.RESET}"
        else:
            level = f"{record.levelname:8s}"
            stamp = f"[{timestamp}]"
            name = component

        formatted = f"{stamp} {icon} {level} {name} | {record.getMessage()}"
        if record.exc_info:
            formatted += f"\n{self.formatException(record.exc_info)}"
        return formatted


class StructuredLogger:
    """Logger wrapper with key/value payloads and timing helpers."""

    def __init__(self, name: str, logger: Optional[logging.Logger] = None):
        self.name = name
        self.logger = logger or logging.getLogger(name)

    @staticmethod
    def _format_data(data: Dict[str, Any]) -> str:
        parts = []
        for key, value in data.items():
            if value is None:
                continue
            if isinstance(value, str) and len(value) > 80:
                value = value[:77] + "..."
            parts.append(f"{key}={value}")
        return " ".join(parts)

    def _line(self, message: str, data: Optional[Dict[str, Any]]) -> str:
        return f"{message} ({self._format_data(data)})" if data else message

    def section(self, title: str, data: Optional[Dict[str, Any]] = None):
        separator = "=" * 60
        self.logger.info(separator)
        self.logger.info(self._line(f"📋 {title.upper()}", data))
        self.logger.info(separator)

    def debug(self, message: str, data: Optional[Dict[str, Any]] = None):
        self.logger.debug(self._line(message, data))

    def info(self, message: str, data: Optional[Dict[str, Any]] = None):
        self.logger.info(self._line(message, data))

    def warning(self, message: str, data: Optional[Dict[str, Any]] = None):
        self.logger.warning(self._line(message, data))

    def error(self, message: str, error: Optional[Exception] = None, data: Optional[Dict[str, Any]] = None):
        if error is not None:
            message = f"{message} ({type(error).__name__}: {error})"
        self.logger.error(self._line(message, data), exc_info=error)

    def success(self, message: str, data: Optional[Dict[str, Any]] = None):
        self.logger.info(self._line(f"✅ {message}", data))

    def request(self, method: str, path: str, user_id: Optional[str] = None, data: Optional[Dict[str, Any]] = None):
        payload = {"user": user_id[:20] if user_id else None}
        payload.update(data or {})
        self.logger.info(self._line(f"📥 {method} {path}", payload))

    def response(self, status: int, path: str, duration: Optional[float] = None, data: Optional[Dict[str, Any]] = None):
        payload = {"duration_ms": f"{duration * 1000:.0f}" if duration is not None else None}
        payload.update(data or {})
        self.logger.info(self._line(f"📤 {status} {path}", payload))

    @contextmanager
    def timed(self, label: str):
        """Log how long the wrapped block took."""
        start = time.time()
        try:
            yield
        finally:
            self.logger.info(f"⏱️ {label} took {(time.time() - start) * 1000:.0f}ms")


def setup_logging(level: int = logging.INFO, use_colors: bool = True) -> logging.Logger:
    """Install the coloured console handler on the root logger."""
    root_logger = logging.getLogger()
    for handler in root_logger.handlers[:]:
        root_logger.removeHandler(handler)

    console_handler = logging.StreamHandler(sys.stdout)
    console_handler.setLevel(level)
    console_handler.setFormatter(ColoredFormatter(use_colors=use_colors))

    root_logger.setLevel(level)
    root_logger.addHandler(console_handler)

    for noisy in ('asyncio', 'httpx', 'httpcore', 'openai', 'hpack'):
        logging.getLogger(noisy).setLevel(logging.WARNING)

    return root_logger


def get_logger(name: str) -> StructuredLogger:
    return StructuredLogger(name, logging.getLogger(name))
