import os

os.environ.setdefault("RATE_LIMIT_ENABLED", "false")

from typing import Any, Dict, List, Optional, Sequence, Tuple, Union

import pytest

from clinic_relay.config import Settings
from clinic_relay.core.exceptions import TranscodeError


def make_settings(**overrides) -> Settings:
    values = {
        "google_api_key": "test-key",
        "gemini_api_key": None,
        "gemini_model": "gemini-1.5-flash-latest",
        "rate_limit_enabled": False,
    }
    values.update(overrides)
    return Settings(_env_file=None, **values)


class FakeProber:
    def __init__(self, duration: float):
        self.duration = duration
        self.calls: List[str] = []

    async def probe_duration(self, path: str) -> float:
        self.calls.append(path)
        return self.duration


class FakeTranscoder:
    def __init__(self, fail_at: Optional[int] = None):
        self.calls: List[Tuple[str, str, Optional[float], Optional[float]]] = []
        self.fail_at = fail_at

    async def transcode(self, source, destination, start=None, duration=None) -> None:
        if self.fail_at is not None and len(self.calls) == self.fail_at:
            raise TranscodeError("ffmpeg transcoding failed (code=1)")
        self.calls.append((source, destination, start, duration))
        with open(destination, "wb") as f:
            f.write(b"fLaC" + str(len(self.calls) - 1).encode())


class FakeRecognizer:
    """Returns queued results (or raises queued errors) one chunk at a time."""

    def __init__(self, outcomes: Sequence[Union[Dict[str, Any], Exception]]):
        self.outcomes = list(outcomes)
        self.calls: List[Tuple[bytes, str]] = []

    async def recognize(self, audio_content: bytes, language_code: str, request_id: str = "-") -> Dict[str, Any]:
        self.calls.append((audio_content, language_code))
        outcome = self.outcomes[len(self.calls) - 1]
        if isinstance(outcome, Exception):
            raise outcome
        return outcome


def words(*pairs) -> List[Dict[str, Any]]:
    """words(("hello", 1), ("there", None)) -> recognition word list"""
    out = []
    for word, tag in pairs:
        item = {"word": word, "startTime": "0s", "endTime": "0.5s"}
        if tag is not None:
            item["speakerTag"] = tag
        out.append(item)
    return out


def segment(transcript: str = "", word_list: Optional[List[Dict[str, Any]]] = None) -> Dict[str, Any]:
    alternative: Dict[str, Any] = {"transcript": transcript, "confidence": 0.9}
    if word_list is not None:
        alternative["words"] = word_list
    return {"alternatives": [alternative], "languageCode": "en-us"}


def diarized_result(*pairs) -> Dict[str, Any]:
    """Result shaped like the service's: a plain segment, then the diarized summary segment."""
    text = " ".join(word for word, _ in pairs)
    return {
        "results": [
            segment(text, words(*[(w, None) for w, _ in pairs])),
            segment("", words(*pairs)),
        ]
    }


def plain_result(*transcripts: str) -> Dict[str, Any]:
    return {"results": [segment(t) for t in transcripts]}


@pytest.fixture
def settings() -> Settings:
    return make_settings()
