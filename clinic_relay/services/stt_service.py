"""
Speech-to-Text Service
Uses the Google Speech-to-Text REST API with speaker diarization.
"""

import asyncio
import base64
import time
from typing import Any, Awaitable, Callable, Dict, Optional, Tuple
from urllib.parse import quote

import httpx
from tenacity import AsyncRetrying, RetryError, retry_if_result, stop_before_delay, wait_chain, wait_fixed

from clinic_relay.config import Settings
from clinic_relay.core.exceptions import ConfigError, OperationTimeoutError, ProtocolError, RecognitionError
from clinic_relay.core.logging import audit_logger, get_logger

logger = get_logger(__name__)

# Rejections meaning "too long for a synchronous call, use LongRunningRecognize".
# These mirror the upstream error text and need revisiting if it changes.
SYNC_TOO_LONG_MARKERS = (
    "Sync input too long",
    "For audio longer than 1 min use LongRunningRecognize",
)

# Seconds between operation polls; the last value repeats once exhausted.
POLL_BACKOFF_SECONDS = (0.5, 1.0, 1.5, 2.0, 2.5, 3.0)

RecognitionResult = Dict[str, Any]


def is_sync_too_long(message: Optional[str]) -> bool:
    return isinstance(message, str) and any(marker in message for marker in SYNC_TOO_LONG_MARKERS)


def _operation_not_done(operation: Dict[str, Any]) -> bool:
    return not operation.get("done")


def _json_or_empty(response: httpx.Response) -> Dict[str, Any]:
    try:
        body = response.json()
    except ValueError:
        return {}
    return body if isinstance(body, dict) else {}


def _error_message(body: Dict[str, Any], default: str) -> str:
    error = body.get("error")
    if isinstance(error, dict) and error.get("message"):
        return error["message"]
    return default


class RecognitionClient:
    """Client for synchronous and long-running speech recognition."""

    def __init__(
        self,
        settings: Settings,
        transport: Optional[httpx.AsyncBaseTransport] = None,
        sleep: Callable[[float], Awaitable[None]] = asyncio.sleep,
    ):
        if not settings.google_api_key:
            raise ConfigError("Server is missing GOOGLE_API_KEY / EXPO_PUBLIC_GOOGLE_API_KEY")
        self.api_key = settings.google_api_key
        self.base_url = settings.speech_api_base_url.rstrip("/")
        self.sample_rate = settings.sample_rate_hertz
        self.min_speakers = settings.min_speaker_count
        self.max_speakers = settings.max_speaker_count
        self.request_timeout = settings.stt_timeout
        self.longrun_timeout = settings.longrun_timeout_seconds
        self._transport = transport
        self._sleep = sleep

    def build_request_body(self, audio_content: bytes, language_code: str) -> Dict[str, Any]:
        return {
            "config": {
                "encoding": "FLAC",
                "sampleRateHertz": self.sample_rate,
                "languageCode": language_code,
                "enableAutomaticPunctuation": True,
                "enableWordTimeOffsets": True,
                "diarizationConfig": {
                    "enableSpeakerDiarization": True,
                    "minSpeakerCount": self.min_speakers,
                    "maxSpeakerCount": self.max_speakers,
                },
                "useEnhanced": True,
                "model": "default",
            },
            "audio": {"content": base64.b64encode(audio_content).decode("ascii")},
        }

    async def recognize(
        self,
        audio_content: bytes,
        language_code: str,
        request_id: str = "-",
    ) -> RecognitionResult:
        """
        Recognizes one chunk of normalized audio.

        Tries the synchronous endpoint first and escalates to LongRunningRecognize
        only when the rejection says the input is too long for a sync call. Any
        other failure propagates with the upstream status and payload.
        """
        request_body = self.build_request_body(audio_content, language_code)

        async with httpx.AsyncClient(timeout=self.request_timeout, transport=self._transport) as client:
            status_code, body = await self._post(client, "speech:recognize", request_body, request_id)
            if 200 <= status_code < 300:
                return body

            message = _error_message(body, "")
            if not is_sync_too_long(message):
                raise RecognitionError(
                    message or "Synchronous speech recognition failed",
                    status_code=status_code,
                    payload=body,
                )

            logger.warning(f"[{request_id}] Sync recognition rejected as too long, escalating to LongRunningRecognize")
            return await self._recognize_long_running(client, request_body, request_id)

    async def _recognize_long_running(
        self,
        client: httpx.AsyncClient,
        request_body: Dict[str, Any],
        request_id: str,
    ) -> RecognitionResult:
        status_code, operation = await self._post(client, "speech:longrunningrecognize", request_body, request_id)
        if not 200 <= status_code < 300:
            raise RecognitionError(
                _error_message(operation, "Failed to start long-running speech recognition"),
                status_code=status_code,
                payload=operation,
            )

        operation_name = operation.get("name")
        if not operation_name:
            raise ProtocolError("Long-running recognition did not return an operation name", payload=operation)

        logger.info(f"[{request_id}] Polling long-running operation {operation_name}")
        operation_url = f"{self.base_url}/operations/{quote(str(operation_name), safe='')}"

        # no poll may start past the budget, so the upcoming sleep counts against it
        retrying = AsyncRetrying(
            retry=retry_if_result(_operation_not_done),
            wait=wait_chain(*[wait_fixed(delay) for delay in POLL_BACKOFF_SECONDS]),
            stop=stop_before_delay(self.longrun_timeout),
            sleep=self._sleep,
        )
        try:
            finished = await retrying(self._poll_operation, client, operation_url, request_id)
        except RetryError as e:
            raise OperationTimeoutError(
                "Long-running speech recognition timed out (operation not finished)",
                payload={"operation": operation_name},
            ) from e

        if finished.get("error"):
            raise RecognitionError(
                _error_message(finished, "Long-running speech recognition failed"),
                status_code=502,
                payload=finished,
            )
        return finished.get("response") or {}

    async def _poll_operation(self, client: httpx.AsyncClient, url: str, request_id: str) -> Dict[str, Any]:
        started = time.monotonic()
        try:
            response = await client.get(url, params={"key": self.api_key})
        except httpx.HTTPError as e:
            raise RecognitionError(f"Speech recognition transport failure: {e}") from e

        body = _json_or_empty(response)
        audit_logger.log_upstream_call(
            request_id=request_id,
            service="google-speech",
            operation="operations.get",
            status_code=response.status_code,
            elapsed_ms=int((time.monotonic() - started) * 1000),
            done=bool(body.get("done")),
        )
        if not response.is_success:
            raise RecognitionError(
                _error_message(body, "Polling the speech recognition operation failed"),
                status_code=response.status_code,
                payload=body,
            )
        return body

    async def _post(
        self,
        client: httpx.AsyncClient,
        method: str,
        request_body: Dict[str, Any],
        request_id: str,
    ) -> Tuple[int, Dict[str, Any]]:
        started = time.monotonic()
        try:
            response = await client.post(
                f"{self.base_url}/{method}",
                params={"key": self.api_key},
                json=request_body,
            )
        except httpx.HTTPError as e:
            raise RecognitionError(f"Speech recognition transport failure: {e}") from e

        audit_logger.log_upstream_call(
            request_id=request_id,
            service="google-speech",
            operation=method,
            status_code=response.status_code,
            elapsed_ms=int((time.monotonic() - started) * 1000),
        )
        return response.status_code, _json_or_empty(response)
