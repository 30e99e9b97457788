"""
Error taxonomy for the relay pipeline.

Every failure that should reach the caller as a JSON error body is a
RelayError carrying the HTTP status to answer with. Upstream payloads are
kept so recognition errors can be passed through verbatim.
"""

from typing import Any, Dict, Optional

from fastapi import status


class RelayError(Exception):
    """Base class for errors translated into HTTP responses."""

    status_code: int = status.HTTP_500_INTERNAL_SERVER_ERROR
    error_type: str = "relay_error"

    def __init__(
        self,
        message: str,
        status_code: Optional[int] = None,
        payload: Optional[Dict[str, Any]] = None,
    ):
        super().__init__(message)
        self.message = message
        if status_code is not None:
            self.status_code = status_code
        self.payload = payload

    def to_response_body(self) -> Dict[str, Any]:
        """Upstream error payloads pass through untouched, anything else is wrapped."""
        if isinstance(self.payload, dict) and ("error" in self.payload or "errors" in self.payload):
            return self.payload
        return {"error": {"message": self.message, "type": self.error_type}}


class ConfigError(RelayError):
    """Missing credential or model; the endpoint stays unusable until restart."""
    error_type = "config_error"


class BadRequestError(RelayError):
    """Malformed request body."""
    status_code = status.HTTP_400_BAD_REQUEST
    error_type = "invalid_request"


class PayloadTooLargeError(RelayError):
    status_code = 413
    error_type = "payload_too_large"


class ProbeError(RelayError):
    """Duration inspection binary unavailable or failed."""
    error_type = "probe_error"


class TranscodeError(RelayError):
    """Transcoding binary unavailable or failed."""
    error_type = "transcode_error"


class RecognitionError(RelayError):
    """Upstream speech recognition rejected a chunk."""
    error_type = "recognition_error"


class OperationTimeoutError(RelayError, TimeoutError):
    """Long-running recognition did not finish within its wall-clock budget."""
    status_code = status.HTTP_504_GATEWAY_TIMEOUT
    error_type = "timeout"


class ProtocolError(RelayError):
    """Upstream response is missing a field the protocol requires."""
    status_code = status.HTTP_502_BAD_GATEWAY
    error_type = "protocol_error"


class GenerationError(RelayError):
    """Summarization service call failed."""
    error_type = "generation_error"


class SchemaParseError(RelayError):
    """Generated text does not parse as the declared report schema."""
    status_code = status.HTTP_502_BAD_GATEWAY
    error_type = "schema_parse_error"

    RAW_EXCERPT_LIMIT = 2000

    def __init__(self, message: str, raw_text: Optional[str]):
        super().__init__(message)
        self.raw_excerpt = (raw_text or "")[: self.RAW_EXCERPT_LIMIT]

    def to_response_body(self) -> Dict[str, Any]:
        body = super().to_response_body()
        body["rawText"] = self.raw_excerpt
        return body
