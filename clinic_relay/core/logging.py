"""
structlog setup and the relay's audit trail.

Both upstream services take their credential as a `key=` query parameter,
so every rendered event passes through `redact_credentials` first.
"""

import logging
import re
from datetime import datetime, timezone
from typing import Any, Dict, Optional

import structlog

from clinic_relay.config import Environment, Settings

_KEY_PARAM = re.compile(r"([?&]key=)[^&\s\"']+")
_REDACTED = "***"


def _scrub(value: Any) -> Any:
    if isinstance(value, str):
        return _KEY_PARAM.sub(r"\1" + _REDACTED, value)
    if isinstance(value, dict):
        return {k: _scrub(v) for k, v in value.items()}
    if isinstance(value, list):
        return [_scrub(v) for v in value]
    if isinstance(value, tuple):
        return tuple(_scrub(v) for v in value)
    return value


def redact_credentials(logger, method_name: str, event_dict: Dict[str, Any]) -> Dict[str, Any]:
    """Mask `key=` query values anywhere in the event, including URLs inside messages."""
    return {name: _scrub(value) for name, value in event_dict.items()}


def setup_logging(settings: Settings):
    processors = [
        structlog.contextvars.merge_contextvars,
        structlog.processors.add_log_level,
        structlog.processors.TimeStamper(fmt="ISO", utc=True),
        structlog.processors.StackInfoRenderer(),
        structlog.processors.format_exc_info,
        redact_credentials,
    ]

    if settings.environment == Environment.DEVELOPMENT:
        processors.append(structlog.dev.ConsoleRenderer(colors=True))
    else:
        processors += [structlog.processors.dict_tracebacks, structlog.processors.JSONRenderer()]

    structlog.configure(
        processors=processors,
        context_class=dict,
        logger_factory=structlog.PrintLoggerFactory(),
        wrapper_class=structlog.make_filtering_bound_logger(
            getattr(logging, settings.log_level.upper(), logging.INFO)
        ),
        cache_logger_on_first_use=True,
    )


def get_logger(name: Optional[str] = None):
    return structlog.get_logger(name or __name__)


class AuditLogger:
    """
    One event per stage of a relay request, all keyed by request_id:

    - request_received: a client hit an endpoint
    - recording_transcribed: the /stt pipeline finished a recording
    - upstream_call: one HTTP exchange with speech or generation
    - request_failed: a RelayError was turned into an error response
    """

    def __init__(self, logger=None):
        self.logger = logger or get_logger("audit")

    def _emit(self, level: str, event: str, request_id: str, **fields):
        fields["recorded_at"] = datetime.now(timezone.utc).isoformat()
        getattr(self.logger, level)(event, request_id=request_id, **fields)

    def log_request(
        self,
        request_id: str,
        endpoint: str,
        method: str,
        client_ip: Optional[str] = None,
        user_agent: Optional[str] = None,
    ):
        self._emit(
            "info", "request_received", request_id,
            endpoint=endpoint, method=method, client_ip=client_ip, user_agent=user_agent,
        )

    def log_transcription(
        self,
        request_id: str,
        duration_seconds: float,
        audio_bytes: int,
        language_code: str,
        chunk_count: int,
        elapsed_ms: int,
    ):
        self._emit(
            "info", "recording_transcribed", request_id,
            duration_seconds=round(duration_seconds, 3),
            audio_bytes=audio_bytes,
            language_code=language_code,
            chunk_count=chunk_count,
            elapsed_ms=elapsed_ms,
        )

    def log_upstream_call(
        self,
        request_id: str,
        service: str,
        operation: str,
        status_code: Optional[int],
        elapsed_ms: int,
        **details
    ):
        # non-2xx answers are still audited, at warning level
        level = "info" if status_code is not None and 200 <= status_code < 300 else "warning"
        self._emit(
            level, "upstream_call", request_id,
            service=service, operation=operation, status_code=status_code, elapsed_ms=elapsed_ms, **details
        )

    def log_failure(self, request_id: str, error_type: str, message: str, status_code: int):
        self._emit(
            "error", "request_failed", request_id,
            error_type=error_type, message=message, status_code=status_code,
        )


audit_logger = AuditLogger()
