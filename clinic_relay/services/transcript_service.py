"""
Transcript reconciliation across recognition chunks
"""

from typing import Any, Dict, List, Optional, Sequence

from clinic_relay.core.logging import get_logger
from clinic_relay.models.recognition import RecognitionResponse, WordInfo

logger = get_logger(__name__)

SPEAKER_LABEL = "[speaker {tag}]: "
DEFAULT_UNSPACED_PREFIXES = ("zh", "ja", "yue", "cmn")


def word_joiner(language_code: Optional[str], unspaced_prefixes: Sequence[str] = DEFAULT_UNSPACED_PREFIXES) -> str:
    """CJK scripts are written without spaces between words."""
    code = (language_code or "").lower()
    return "" if any(code.startswith(prefix) for prefix in unspaced_prefixes) else " "


def find_diarized_words(response: RecognitionResponse) -> List[WordInfo]:
    """
    Returns the word stream of the last segment that carries speaker tags.

    Diarization is only complete on the late summary segment; earlier
    segments hold partial tags and would duplicate speaker runs.
    """
    for segment in reversed(response.results):
        top = segment.top
        if top and any(w.speaker_tag is not None for w in top.words):
            return top.words
    return []


def plain_transcript(response: RecognitionResponse) -> str:
    texts = [segment.top.transcript for segment in response.results if segment.top and segment.top.transcript]
    return "\n".join(texts)


class TranscriptReconciler:
    """Folds ordered per-chunk recognition results into one transcript string."""

    def __init__(self, language_code: Optional[str], unspaced_prefixes: Sequence[str] = DEFAULT_UNSPACED_PREFIXES):
        self.joiner = word_joiner(language_code, unspaced_prefixes)
        self._parts: List[str] = []
        self._current_speaker: Optional[int] = None
        # set once a labelled run, plain text or a finished chunk has been emitted
        self._started = False

    def add_chunk(self, result: Dict[str, Any]) -> None:
        response = RecognitionResponse.model_validate(result or {})
        words = find_diarized_words(response)
        if words:
            self._add_diarized(words)
        else:
            self._add_plain(plain_transcript(response))

    def _add_diarized(self, words: List[WordInfo]) -> None:
        # current speaker carries over from the previous chunk
        for info in words:
            if not info.word:
                continue
            tag = info.speaker_tag
            if tag is not None and tag != self._current_speaker:
                if self._started:
                    self._parts.append("\n\n")
                self._parts.append(SPEAKER_LABEL.format(tag=tag))
                self._current_speaker = tag
                self._started = True
            self._parts.append(info.word + self.joiner)
        if self._parts:
            self._started = True

    def _add_plain(self, text: str) -> None:
        if not text:
            return
        if self._started:
            self._parts.append("\n")
        self._parts.append(text)
        self._started = True
        # unlabeled text ends any open speaker run
        self._current_speaker = None

    def transcript(self) -> str:
        return "".join(self._parts).rstrip()


def reconcile_transcript(
    results: Sequence[Dict[str, Any]],
    language_code: Optional[str],
    unspaced_prefixes: Sequence[str] = DEFAULT_UNSPACED_PREFIXES,
) -> str:
    reconciler = TranscriptReconciler(language_code, unspaced_prefixes)
    for result in results:
        reconciler.add_chunk(result)
    transcript = reconciler.transcript()
    logger.info(f"Reconciled {len(results)} chunk result(s) into {len(transcript)} characters")
    return transcript
