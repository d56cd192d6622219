"""
Console logging for the tutor-memory backend.

- Colour-coded levels with an icon per component (quota, facts, decoder, ...)
- StructuredLogger helpers for sections, request/response lines and
  key/value payloads
"""

import logging
import sys
from datetime import datetime
from typing import Any, Dict, Optional


class Colors:
    """ANSI colour codes."""
    RESET = '\033[0m'
    BOLD = '\033[1m'

    DEBUG = '\033[36m'      # Cyan
    INFO = '\033[32m'       # Green
    WARNING = '\033[33m'    # Yellow
    ERROR = '\033[31m'      # Red
    CRITICAL = '\033[35m'   # Magenta
    TIMESTAMP = '\033[90m'  # Dark Gray


LEVEL_COLORS = {
    'DEBUG': Colors.DEBUG,
    'INFO': Colors.INFO,
    'WARNING': Colors.WARNING,
    'ERROR': Colors.ERROR,
    'CRITICAL': Colors.CRITICAL,
}

LEVEL_ICONS = {
    'DEBUG': '🔍',
    'INFO': 'ℹ️',
    'WARNING': '⚠️',
    'ERROR': '❌',
    'CRITICAL': '🚨',
}

# Keyed by the last dotted part of the logger name
COMPONENT_ICONS = {
    'main': '🌐',
    'protocol_decoder': '🔤',
    'fact_extraction': '🧠',
    'fact_reconciliation': '🎓',
    'report_generator': '📈',
    'quota_tracker': '🎫',
    'quota_sweep': '🔄',
    'supabase_store': '💾',
    'tutor_turn': '💬',
    'auth': '🔐',
}


class ColoredFormatter(logging.Formatter):
    """``[HH:MM:SS.mmm] icon LEVEL logger | message`` with optional colours."""

    def __init__(self, use_colors: bool = True):
        super().__init__()
        self.use_colors = use_colors and sys.stdout.isatty()

    def _paint(self, color: str, text: str) -> str:
        return f"{color}{text}{Colors.RESET}" if self.use_colors else text

    def format(self, record: logging.LogRecord) -> str:
        component = record.name.split('.')[-1]
        icon = COMPONENT_ICONS.get(component, LEVEL_ICONS.get(record.levelname, '•'))
        timestamp = datetime.fromtimestamp(record.created).strftime('%H:%M:%S.%f')[:-3]

        line = (
            f"{self._paint(Colors.TIMESTAMP, f'[{timestamp}]')} "
            f"{icon} {self._paint(LEVEL_COLORS.get(record.levelname, Colors.RESET), f'{record.levelname:8s}')} "
            f"{self._paint(Colors.BOLD, record.name)} | {record.getMessage()}"
        )
        if record.exc_info:
            line += f"\n{self.formatException(record.exc_info)}"
        return line


def format_data(data: Any, indent: int = 2, max_items: int = 5) -> str:
    """Indented rendering of nested dicts/lists; long lists are truncated."""
    pad = ' ' * indent
    if isinstance(data, dict):
        lines = [f"{pad}{key}: {format_data(value, indent + 2, max_items)}" for key, value in data.items()]
        return "{\n" + "\n".join(lines) + f"\n{' ' * (indent - 2)}}}"
    if isinstance(data, list):
        shown = [f"{pad}{format_data(item, indent + 2, max_items)}" for item in data[:max_items]]
        if len(data) > max_items:
            shown.append(f"{pad}... ({len(data)} items total)")
        return "[\n" + ",\n".join(shown) + f"\n{' ' * (indent - 2)}]"
    return str(data)


class StructuredLogger:
    """Thin wrapper adding payload formatting and section banners."""

    def __init__(self, name: str, logger: Optional[logging.Logger] = None):
        self.name = name
        self.logger = logger or logging.getLogger(name)

    @staticmethod
    def _with_data(message: str, data: Optional[Dict[str, Any]]) -> str:
        return f"{message}\n{format_data(data)}" if data else message

    def section(self, title: str, data: Optional[Dict[str, Any]] = None):
        separator = "=" * 60
        self.logger.info(self._with_data(f"\n{separator}\n📋 {title.upper()}\n{separator}", data))

    def debug(self, message: str, data: Optional[Dict[str, Any]] = None):
        self.logger.debug(self._with_data(message, data))

    def info(self, message: str, data: Optional[Dict[str, Any]] = None):
        self.logger.info(self._with_data(message, data))

    def success(self, message: str, data: Optional[Dict[str, Any]] = None):
        self.logger.info(self._with_data(f"✅ {message}", data))

    def warning(self, message: str, data: Optional[Dict[str, Any]] = None):
        self.logger.warning(self._with_data(message, data))

    def error(self, message: str, error: Optional[Exception] = None, data: Optional[Dict[str, Any]] = None):
        if error is not None:
            message = f"{message} ({type(error).__name__}: {error})"
        self.logger.error(self._with_data(message, data), exc_info=error)

    def request(self, method: str, path: str, user_id: Optional[str] = None, data: Optional[Dict[str, Any]] = None):
        payload = {"user_id": f"{user_id[:20]}..." if user_id and len(user_id) > 20 else user_id}
        payload.update(data or {})
        self.logger.info(self._with_data(f"📥 REQUEST: {method} {path}", payload))

    def response(self, status: int, path: str, duration: Optional[float] = None, data: Optional[Dict[str, Any]] = None):
        payload = {"duration_ms": f"{duration * 1000:.2f}" if duration is not None else None}
        payload.update(data or {})
        self.logger.info(self._with_data(f"📤 RESPONSE: {status} {path}", payload))


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

    for noisy in ('asyncio', 'httpx', 'httpcore', 'hpack', 'urllib3'):
        logging.getLogger(noisy).setLevel(logging.WARNING)

    return root_logger


def level_from_env(value: Optional[str]) -> int:
    """Map a LOG_LEVEL string to a logging level, defaulting to INFO."""
    return getattr(logging, (value or "INFO").upper(), logging.INFO)


def get_logger(name: str) -> StructuredLogger:
    return StructuredLogger(name, logging.getLogger(name))
