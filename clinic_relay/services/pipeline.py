"""
Speech-to-text pipeline: decode, chunk, recognize, reconcile
"""

import asyncio
import shutil
import tempfile
import time
from contextlib import asynccontextmanager
from dataclasses import dataclass, field
from enum import Enum
from pathlib import Path
from typing import Any, AsyncIterator, Dict, List, Optional

from clinic_relay.config import Settings
from clinic_relay.core.exceptions import RelayError
from clinic_relay.core.logging import audit_logger, get_logger
from clinic_relay.models.recognition import AudioChunk
from clinic_relay.services.audio_processor import AudioProcessor, DurationProber, Transcoder
from clinic_relay.services.stt_service import RecognitionClient
from clinic_relay.services.transcript_service import reconcile_transcript

logger = get_logger(__name__)


class ChunkState(str, Enum):
    PENDING = "pending"
    SUCCEEDED = "succeeded"
    FAILED = "failed"


@dataclass
class ChunkJob:
    chunk: AudioChunk
    state: ChunkState = ChunkState.PENDING
    result: Optional[Dict[str, Any]] = None
    error: Optional[RelayError] = None


@dataclass
class PipelineResult:
    transcription: str
    chunks_processed: int
    raw: List[Dict[str, Any]] = field(default_factory=list)
    duration_seconds: float = 0.0


@asynccontextmanager
async def scratch_directory(root: Optional[str] = None) -> AsyncIterator[str]:
    """Per-request scratch directory, created and removed off the event loop."""
    work_dir = await asyncio.to_thread(tempfile.mkdtemp, prefix="stt-", dir=root)
    try:
        yield work_dir
    finally:
        try:
            await asyncio.to_thread(shutil.rmtree, work_dir)
        except OSError as e:
            logger.error(f"Failed to remove scratch directory {work_dir}: {e}")


class SttPipeline:
    """Runs one recording through chunking, recognition and reconciliation."""

    def __init__(
        self,
        settings: Settings,
        recognizer: RecognitionClient,
        transcoder: Transcoder,
        prober: DurationProber,
    ):
        self.settings = settings
        self.recognizer = recognizer
        self.audio_processor = AudioProcessor(settings, transcoder, prober)

    async def run(self, request_id: str, audio_data: bytes, language_code: str) -> PipelineResult:
        """
        Every scratch file lives in a per-request directory that is removed on
        every exit path. Chunks are recognized strictly in index order; the
        first failure aborts the request and is raised.
        """
        started = time.time()
        async with scratch_directory(self.settings.scratch_root) as work_dir:
            input_path = await self.audio_processor.write_input(audio_data, work_dir)
            duration, chunks = await self.audio_processor.split_into_chunks(input_path, work_dir)
            logger.info(f"[{request_id}] Processing {len(chunks)} chunk(s)")

            jobs = [ChunkJob(chunk=chunk) for chunk in chunks]
            for job in jobs:
                await self._run_job(job, language_code, request_id, total=len(jobs))
                if job.state is ChunkState.FAILED:
                    pending = sum(1 for j in jobs if j.state is ChunkState.PENDING)
                    logger.error(
                        f"[{request_id}] Chunk {job.chunk.index + 1}/{len(jobs)} failed, "
                        f"skipping {pending} remaining chunk(s)"
                    )
                    raise job.error

        results = [job.result for job in jobs]
        transcription = reconcile_transcript(
            results,
            language_code,
            unspaced_prefixes=self.settings.unspaced_language_prefixes,
        )

        audit_logger.log_transcription(
            request_id=request_id,
            duration_seconds=duration,
            audio_bytes=len(audio_data),
            language_code=language_code,
            chunk_count=len(jobs),
            elapsed_ms=int((time.time() - started) * 1000),
        )
        return PipelineResult(
            transcription=transcription,
            chunks_processed=len(jobs),
            raw=results,
            duration_seconds=duration,
        )

    async def _run_job(self, job: ChunkJob, language_code: str, request_id: str, total: int) -> None:
        logger.info(f"[{request_id}] Recognizing chunk {job.chunk.index + 1}/{total}")
        try:
            audio_content = await asyncio.to_thread(Path(job.chunk.path).read_bytes)
            job.result = await self.recognizer.recognize(audio_content, language_code, request_id=request_id)
            job.state = ChunkState.SUCCEEDED
        except RelayError as e:
            job.error = e
            job.state = ChunkState.FAILED
