# Copyright 2025 John Brosnihan
#
# Licensed under the Apache License, Version 2.0 (the "License");
# you may not use this file except in compliance with the License.
# You may obtain a copy of the License at
#
#     http://www.apache.org/licenses/LICENSE-2.0
#
# Unless required by applicable law or agreed to in writing, software
# distributed under the License is distributed on an "AS IS" BASIS,
# WITHOUT WARRANTIES OR CONDITIONS OF ANY KIND, either express or implied.
# See the License for the specific language governing permissions and
# limitations under the License.
"""Structured logging utilities for storyforge.

This module provides:
- Context management for request_id and session_id correlation
- Structured log helpers for pipeline phases
- Secret redaction for provider API keys and tokens
- JSON logging formatter option
"""

import json
import logging
import re
import time
from contextvars import ContextVar
from typing import Any, Dict, Optional

# Context variables for request correlation
request_id_ctx: ContextVar[Optional[str]] = ContextVar('request_id', default=None)
session_id_ctx: ContextVar[Optional[str]] = ContextVar('session_id', default=None)

# Attributes set by logging.LogRecord itself; passing them in extra raises KeyError
RESERVED_LOG_RECORD_ATTRS = frozenset({
    'name', 'msg', 'args', 'levelname', 'levelno', 'pathname', 'filename',
    'module', 'exc_info', 'exc_text', 'stack_info', 'lineno', 'funcName',
    'created', 'msecs', 'relativeCreated', 'thread', 'threadName',
    'processName', 'process', 'message', 'asctime', 'taskName'
})


def set_request_id(request_id: str) -> None:
    """Set the request ID in context for correlation.

    Args:
        request_id: Unique identifier for the request
    """
    request_id_ctx.set(request_id)


def get_request_id() -> Optional[str]:
    """Get the current request ID from context."""
    return request_id_ctx.get()


def set_session_id(session_id: str) -> None:
    """Set the game session ID in context for correlation.

    Args:
        session_id: Game session identifier supplied by the client
    """
    session_id_ctx.set(session_id)


def get_session_id() -> Optional[str]:
    """Get the current game session ID from context."""
    return session_id_ctx.get()


def clear_context() -> None:
    """Clear all context variables.

    Should be called at the end of request processing to avoid leaks.
    """
    request_id_ctx.set(None)
    session_id_ctx.set(None)


def redact_secrets(text: str) -> str:
    """Redact API keys and secrets from text for safe logging.

    Redacts:
    - OpenAI-style keys (sk-...) used by DeepSeek and SiliconFlow
    - Google API keys (AIza...) used by Gemini
    - Generic api_key patterns
    - Bearer tokens

    Args:
        text: Text that may contain secrets

    Returns:
        Text with secrets redacted
    """
    text = re.sub(r'sk-[a-zA-Z0-9]{20,}', 'sk-***REDACTED***', text)
    text = re.sub(r'AIza[0-9A-Za-z_\-]{30,}', 'AIza***REDACTED***', text)
    text = re.sub(r'api[_-]?key["\']?\s*[:=]\s*["\']?([a-zA-Z0-9_\-]{16,})',
                  'api_key=***REDACTED***', text, flags=re.IGNORECASE)
    text = re.sub(r'Bearer\s+[a-zA-Z0-9\-._~+/]+', 'Bearer ***REDACTED***', text, flags=re.IGNORECASE)
    return text


def sanitize_for_log(text: str, max_length: int = 200) -> str:
    """Sanitize text for safe logging (prevents log injection).

    Removes control characters and truncates to prevent log flooding.
    This is different from redact_secrets() which focuses on sensitive data.

    Args:
        text: Text to sanitize
        max_length: Maximum length to truncate to

    Returns:
        Sanitized text safe for logging
    """
    sanitized = re.sub(r'[\r\n\t\x00-\x1f\x7f-\x9f]', '', str(text))
    if len(sanitized) > max_length:
        sanitized = sanitized[:max_length] + "..."
    return sanitized


def get_structured_extras() -> Dict[str, Any]:
    """Get structured logging extras with correlation IDs.

    Returns:
        Dictionary with request_id and session_id if available
    """
    extras: Dict[str, Any] = {}

    request_id = get_request_id()
    if request_id:
        extras['request_id'] = request_id

    session_id = get_session_id()
    if session_id:
        extras['session_id'] = session_id

    return extras


class StructuredLogger:
    """Structured logger with correlation IDs and phase tracking.

    Automatically includes request_id and session_id from context
    in all log messages. Keyword fields that collide with LogRecord
    attributes are renamed with a "field_" prefix and reported.
    """

    def __init__(self, name: str):
        """Initialize structured logger.

        Args:
            name: Logger name (usually __name__)
        """
        self.logger = logging.getLogger(name)

    def _log(self, level: int, message: str, **kwargs) -> None:
        """Internal logging method that adds correlation IDs.

        Args:
            level: Logging level (e.g., logging.INFO)
            message: Log message
            **kwargs: Additional fields to include in log
        """
        extras = get_structured_extras()
        for key, value in kwargs.items():
            if key in RESERVED_LOG_RECORD_ATTRS:
                self.logger.warning(
                    f"Log field '{key}' is a reserved LogRecord attribute; "
                    f"renamed to 'field_{key}'"
                )
                key = f"field_{key}"
            extras[key] = value

        if extras:
            extra_str = ' '.join(f'{k}={v}' for k, v in extras.items() if v is not None)
            if extra_str:
                message = f"{message} | {extra_str}"

        self.logger.log(level, message, extra=extras)

    def debug(self, message: str, **kwargs) -> None:
        """Log debug message with correlation IDs."""
        self._log(logging.DEBUG, message, **kwargs)

    def info(self, message: str, **kwargs) -> None:
        """Log info message with correlation IDs."""
        self._log(logging.INFO, message, **kwargs)

    def warning(self, message: str, **kwargs) -> None:
        """Log warning message with correlation IDs."""
        self._log(logging.WARNING, message, **kwargs)

    def error(self, message: str, **kwargs) -> None:
        """Log error message with correlation IDs."""
        self._log(logging.ERROR, message, **kwargs)

    def critical(self, message: str, **kwargs) -> None:
        """Log critical message with correlation IDs."""
        self._log(logging.CRITICAL, message, **kwargs)


class PhaseTimer:
    """Context manager for timing and logging pipeline phases.

    Usage:
        with PhaseTimer("prompt_build", logger):
            # do work
            pass
    """

    def __init__(self, phase: str, logger: StructuredLogger):
        """Initialize phase timer.

        Args:
            phase: Name of the phase (e.g., "prompt_build", "provider_call")
            logger: Structured logger instance
        """
        self.phase = phase
        self.logger = logger
        self.start_time = 0.0
        self.duration_ms = 0.0

    def __enter__(self):
        """Start the phase timer."""
        self.start_time = time.perf_counter()
        self.logger.debug(f"Phase started: {self.phase}")
        return self

    def __exit__(self, exc_type, exc_val, exc_tb):
        """End the phase timer and log duration."""
        self.duration_ms = (time.perf_counter() - self.start_time) * 1000

        if exc_type:
            self.logger.error(
                f"Phase failed: {self.phase}",
                duration_ms=f"{self.duration_ms:.2f}",
                error_type=exc_type.__name__
            )
        else:
            self.logger.info(
                f"Phase completed: {self.phase}",
                duration_ms=f"{self.duration_ms:.2f}"
            )


class JsonFormatter(logging.Formatter):
    """JSON log formatter for structured logging.

    Outputs logs as JSON with consistent fields:
    - timestamp
    - level
    - logger
    - message
    - request_id / session_id (if available)
    - additional fields from extra
    """

    def format(self, record: logging.LogRecord) -> str:
        """Format log record as JSON.

        Args:
            record: Log record to format

        Returns:
            JSON-formatted log string
        """
        log_data = {
            'timestamp': self.formatTime(record),
            'level': record.levelname,
            'logger': record.name,
            'message': record.getMessage()
        }

        for key, value in record.__dict__.items():
            if key not in RESERVED_LOG_RECORD_ATTRS and key not in log_data:
                log_data[key] = value

        if record.exc_info:
            log_data['exception'] = self.formatException(record.exc_info)

        return json.dumps(log_data, ensure_ascii=False, default=str)


def configure_logging(
    level: str = "INFO",
    json_format: bool = False,
    service_name: str = "storyforge"
) -> None:
    """Configure application logging.

    Args:
        level: Logging level (DEBUG, INFO, WARNING, ERROR, CRITICAL)
        json_format: If True, use JSON formatter; otherwise use standard formatter
        service_name: Service name to include in logs
    """
    log_level = getattr(logging, level.upper(), logging.INFO)

    root_logger = logging.getLogger()
    root_logger.setLevel(log_level)

    for handler in root_logger.handlers[:]:
        root_logger.removeHandler(handler)

    console_handler = logging.StreamHandler()
    console_handler.setLevel(log_level)

    if json_format:
        formatter = JsonFormatter()
    else:
        formatter = logging.Formatter(
            '%(asctime)s - %(name)s - %(levelname)s - %(message)s'
        )

    console_handler.setFormatter(formatter)
    root_logger.addHandler(console_handler)

    root_logger.info(
        f"Logging configured: level={level}, json_format={json_format}, service={service_name}"
    )
