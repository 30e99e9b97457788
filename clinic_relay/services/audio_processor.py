"""
Audio decoding, normalization and chunking
"""

import asyncio
import base64
import binascii
import math
import os
import re
from typing import List, Optional, Protocol, Tuple

from mutagen import File as MutagenFile
from mutagen import MutagenError

from clinic_relay.config import DurationProberKind, Settings
from clinic_relay.core.exceptions import BadRequestError, PayloadTooLargeError, ProbeError, TranscodeError
from clinic_relay.core.logging import get_logger
from clinic_relay.models.recognition import AudioChunk

logger = get_logger(__name__)

_DATA_URI_PREFIX = re.compile(r"^data:[^,]*;base64,", re.IGNORECASE)
_WHITESPACE = re.compile(r"\s+")

# shortest trailing window worth transcoding on its own
MIN_TAIL_SECONDS = 0.001


class Transcoder(Protocol):
    async def transcode(
        self,
        source: str,
        destination: str,
        start: Optional[float] = None,
        duration: Optional[float] = None,
    ) -> None:
        """Write `source` (optionally trimmed) to `destination` as mono FLAC."""


class DurationProber(Protocol):
    async def probe_duration(self, path: str) -> float:
        """Return the duration of the audio file at `path` in seconds."""


async def _run_process(args: List[str], timeout: float) -> Tuple[int, bytes, bytes]:
    """Spawn a binary, capture its output and kill it when it overruns."""
    process = await asyncio.create_subprocess_exec(
        *args,
        stdin=asyncio.subprocess.DEVNULL,
        stdout=asyncio.subprocess.PIPE,
        stderr=asyncio.subprocess.PIPE,
    )
    try:
        stdout, stderr = await asyncio.wait_for(process.communicate(), timeout=timeout)
    except asyncio.TimeoutError:
        process.kill()
        await process.wait()
        raise
    return process.returncode, stdout, stderr


def _write_bytes(path: str, data: bytes) -> None:
    with open(path, "wb") as f:
        f.write(data)


def _format_seconds(value: float) -> str:
    return str(round(value, 3))


class FFmpegTranscoder:
    """Normalizes audio to single-channel FLAC at the recognition sample rate."""

    def __init__(self, settings: Settings):
        self.binary = settings.ffmpeg_path
        self.sample_rate = settings.sample_rate_hertz
        self.timeout = settings.process_timeout_seconds

    def build_args(
        self,
        source: str,
        destination: str,
        start: Optional[float] = None,
        duration: Optional[float] = None,
    ) -> List[str]:
        args = [self.binary, "-y", "-hide_banner", "-loglevel", "error", "-i", source]
        if start is not None:
            args += ["-ss", _format_seconds(start)]
        if duration is not None:
            args += ["-t", _format_seconds(duration)]
        args += ["-ac", "1", "-ar", str(self.sample_rate), "-vn", "-c:a", "flac", destination]
        return args

    async def transcode(
        self,
        source: str,
        destination: str,
        start: Optional[float] = None,
        duration: Optional[float] = None,
    ) -> None:
        args = self.build_args(source, destination, start, duration)
        try:
            code, _, stderr = await _run_process(args, self.timeout)
        except OSError as e:
            raise TranscodeError(f"ffmpeg is not available ({self.binary}): {e}") from e
        except asyncio.TimeoutError as e:
            raise TranscodeError(f"ffmpeg timed out after {self.timeout}s") from e

        if code != 0:
            detail = stderr.decode(errors="replace").strip()
            raise TranscodeError(f"ffmpeg transcoding failed (code={code})\n{detail}")


def parse_duration(raw: str) -> float:
    """Parse a probed duration; anything but a positive finite number is a ProbeError."""
    try:
        duration = float(raw.strip())
    except ValueError as e:
        raise ProbeError(f"Could not read audio duration from {raw.strip()!r}") from e
    if not math.isfinite(duration) or duration <= 0:
        raise ProbeError(f"Invalid audio duration: {raw.strip()!r}")
    return duration


class FFprobeDurationProber:
    def __init__(self, settings: Settings):
        self.binary = settings.ffprobe_path
        self.timeout = settings.process_timeout_seconds

    async def probe_duration(self, path: str) -> float:
        args = [
            self.binary,
            "-v", "error",
            "-show_entries", "format=duration",
            "-of", "default=noprint_wrappers=1:nokey=1",
            path,
        ]
        try:
            code, stdout, stderr = await _run_process(args, self.timeout)
        except OSError as e:
            raise ProbeError(f"ffprobe is not available ({self.binary}): {e}") from e
        except asyncio.TimeoutError as e:
            raise ProbeError(f"ffprobe timed out after {self.timeout}s") from e

        if code != 0:
            detail = stderr.decode(errors="replace").strip()
            raise ProbeError(f"ffprobe failed (code={code})\n{detail}")
        return parse_duration(stdout.decode(errors="replace"))


class MutagenDurationProber:
    """Reads the duration from container metadata without spawning a binary."""

    async def probe_duration(self, path: str) -> float:
        return await asyncio.to_thread(self._read_duration, path)

    @staticmethod
    def _read_duration(path: str) -> float:
        try:
            audio = MutagenFile(path)
        except MutagenError as e:
            raise ProbeError(f"Could not load audio file with mutagen: {e}") from e
        if audio is None or not hasattr(audio.info, "length"):
            raise ProbeError("Could not load audio file with mutagen.")
        return parse_duration(str(audio.info.length))


def build_duration_prober(settings: Settings) -> DurationProber:
    if settings.duration_prober == DurationProberKind.MUTAGEN:
        return MutagenDurationProber()
    return FFprobeDurationProber(settings)


def plan_chunks(
    duration: float,
    chunk_seconds: float,
    single_chunk_max_seconds: float,
) -> List[Tuple[float, float]]:
    """Return (start, duration) windows covering [0, duration)."""
    if duration <= single_chunk_max_seconds:
        return [(0.0, duration)]

    count = math.ceil(duration / chunk_seconds)
    # a float sliver past the last boundary would become an empty "-t 0" chunk
    if count > 1 and duration - (count - 1) * chunk_seconds < MIN_TAIL_SECONDS:
        count -= 1
    windows = []
    for index in range(count):
        start = index * chunk_seconds
        length = duration - start if index == count - 1 else chunk_seconds
        windows.append((start, length))
    return windows


class AudioProcessor:
    """Audio validation, normalization and chunking"""

    def __init__(self, settings: Settings, transcoder: Transcoder, prober: DurationProber):
        self.settings = settings
        self.transcoder = transcoder
        self.prober = prober

    def decode_audio_base64(self, audio_base64: str) -> bytes:
        """Strictly decodes the uploaded audio, rejecting empty, invalid and oversized input."""
        payload = _WHITESPACE.sub("", audio_base64 or "")
        if _DATA_URI_PREFIX.match(payload):
            logger.warning("audioBase64 carried a data URI prefix; stripping it.")
            payload = _DATA_URI_PREFIX.sub("", payload, count=1)
        if not payload:
            raise BadRequestError("Missing audioBase64 (string)")

        if len(payload) * 3 // 4 > self.settings.max_audio_bytes:
            raise PayloadTooLargeError(
                f"Audio is too large (limit {self.settings.max_audio_bytes} bytes)"
            )

        try:
            audio_data = base64.b64decode(payload, validate=True)
        except (binascii.Error, ValueError) as e:
            raise BadRequestError(f"audioBase64 is not valid base64: {e}") from e

        if not audio_data:
            raise BadRequestError("audioBase64 decoded to empty audio")
        return audio_data

    async def write_input(self, audio_data: bytes, work_dir: str) -> str:
        content_type = self.detect_content_type(audio_data)
        input_path = os.path.join(work_dir, "input" + self._get_extension_from_content_type(content_type))
        await asyncio.to_thread(_write_bytes, input_path, audio_data)
        logger.info(f"Saved {len(audio_data)} bytes of {content_type} audio to {input_path}")
        return input_path

    async def split_into_chunks(self, input_path: str, work_dir: str) -> Tuple[float, List[AudioChunk]]:
        """
        Probes the recording and materializes normalized chunk files.

        Recordings up to `single_chunk_max_seconds` become one chunk converted in
        full; longer ones are cut into `chunk_seconds` windows, the last one shorter.
        Any transcoding failure aborts the whole split.
        """
        duration = await self.prober.probe_duration(input_path)
        windows = plan_chunks(
            duration,
            chunk_seconds=self.settings.chunk_seconds,
            single_chunk_max_seconds=self.settings.single_chunk_max_seconds,
        )
        logger.info(f"Audio duration {duration:.2f}s, splitting into {len(windows)} chunk(s)")

        chunks: List[AudioChunk] = []
        for index, (start, length) in enumerate(windows):
            chunk_path = os.path.join(work_dir, f"chunk_{index}.flac")
            if len(windows) == 1:
                await self.transcoder.transcode(input_path, chunk_path)
            else:
                await self.transcoder.transcode(input_path, chunk_path, start=start, duration=length)
            chunks.append(
                AudioChunk(
                    path=chunk_path,
                    start_offset_seconds=start,
                    duration_seconds=length,
                    index=index,
                )
            )
        return duration, chunks

    @staticmethod
    def detect_content_type(audio_data: bytes) -> str:
        """Detects the content type from the file signature."""
        # MP4/M4A carries 'ftyp' a few bytes in
        if b"ftyp" in audio_data[4:12]:
            return "audio/mp4"

        signatures = {
            b"ID3": "audio/mpeg",       # MP3 with ID3 tag
            b"\xff\xfb": "audio/mpeg",  # MP3 frame
            b"\xff\xf3": "audio/mpeg",
            b"\xff\xf2": "audio/mpeg",
            b"RIFF": "audio/wav",
            b"OggS": "audio/ogg",
            b"fLaC": "audio/flac",
            b"\x1a\x45\xdf\xa3": "audio/webm",
        }
        for signature, content_type in signatures.items():
            if audio_data.startswith(signature):
                return content_type

        return "application/octet-stream"

    @staticmethod
    def _get_extension_from_content_type(content_type: str) -> str:
        return {
            "audio/mpeg": ".mp3",
            "audio/wav": ".wav",
            "audio/mp4": ".m4a",
            "audio/ogg": ".ogg",
            "audio/flac": ".flac",
            "audio/webm": ".webm",
        }.get(content_type, ".bin")
