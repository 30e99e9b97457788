import asyncio
from pathlib import Path

import pytest

from clinic_relay.core.exceptions import ProbeError, RecognitionError, TranscodeError
from clinic_relay.services.pipeline import SttPipeline, scratch_directory
from tests.conftest import FakeProber, FakeRecognizer, FakeTranscoder, diarized_result, make_settings, plain_result


class FailingProber:
    async def probe_duration(self, path):
        raise ProbeError("ffprobe failed (code=1)")


def build_pipeline(tmp_path, recognizer, duration=30.0, transcoder=None, prober=None):
    settings = make_settings(scratch_root=str(tmp_path))
    return SttPipeline(
        settings,
        recognizer=recognizer,
        transcoder=transcoder or FakeTranscoder(),
        prober=prober or FakeProber(duration),
    )


@pytest.mark.asyncio
async def test_short_recording_makes_one_recognition_call(tmp_path):
    recognizer = FakeRecognizer([diarized_result(("hello", 1))])
    pipeline = build_pipeline(tmp_path, recognizer, duration=30.0)

    result = await pipeline.run("req-1", b"\x00\x00\x00\x20ftypM4A audio", "en-US")

    assert result.chunks_processed == 1
    assert result.duration_seconds == 30.0
    assert result.transcription == "[speaker 1]: hello"
    assert len(recognizer.calls) == 1
    assert list(tmp_path.iterdir()) == []


@pytest.mark.asyncio
async def test_long_recording_recognized_in_chunk_order(tmp_path):
    recognizer = FakeRecognizer([plain_result("one"), plain_result("two"), plain_result("three")])
    pipeline = build_pipeline(tmp_path, recognizer, duration=125.0)

    result = await pipeline.run("req-2", b"audio", "en-US")

    assert result.chunks_processed == 3
    assert result.transcription == "one\ntwo\nthree"
    assert result.raw == [plain_result("one"), plain_result("two"), plain_result("three")]
    assert [content for content, _ in recognizer.calls] == [b"fLaC0", b"fLaC1", b"fLaC2"]
    assert list(tmp_path.iterdir()) == []


@pytest.mark.asyncio
async def test_failed_chunk_stops_remaining_chunks(tmp_path):
    rejection = RecognitionError("Invalid audio", status_code=400, payload={"error": {"message": "Invalid audio"}})
    recognizer = FakeRecognizer([plain_result("one"), rejection, plain_result("three")])
    pipeline = build_pipeline(tmp_path, recognizer, duration=140.0)

    with pytest.raises(RecognitionError) as exc_info:
        await pipeline.run("req-3", b"audio", "en-US")

    assert exc_info.value is rejection
    assert len(recognizer.calls) == 2
    assert list(tmp_path.iterdir()) == []


@pytest.mark.asyncio
async def test_transcode_failure_cleans_scratch(tmp_path):
    recognizer = FakeRecognizer([])
    pipeline = build_pipeline(tmp_path, recognizer, duration=200.0, transcoder=FakeTranscoder(fail_at=2))

    with pytest.raises(TranscodeError):
        await pipeline.run("req-4", b"audio", "en-US")

    assert recognizer.calls == []
    assert list(tmp_path.iterdir()) == []


@pytest.mark.asyncio
async def test_probe_failure_cleans_scratch(tmp_path):
    pipeline = build_pipeline(tmp_path, FakeRecognizer([]), prober=FailingProber())

    with pytest.raises(ProbeError):
        await pipeline.run("req-5", b"audio", "en-US")

    assert list(tmp_path.iterdir()) == []


@pytest.mark.asyncio
async def test_scratch_file_work_runs_in_worker_threads(tmp_path, monkeypatch):
    offloaded = []
    real_to_thread = asyncio.to_thread

    async def recording_to_thread(func, *args, **kwargs):
        offloaded.append(getattr(func, "__name__", repr(func)))
        return await real_to_thread(func, *args, **kwargs)

    monkeypatch.setattr(asyncio, "to_thread", recording_to_thread)
    pipeline = build_pipeline(tmp_path, FakeRecognizer([plain_result("one")]))

    await pipeline.run("req-6", b"audio", "en-US")

    assert offloaded[0] == "mkdtemp"
    assert "_write_bytes" in offloaded
    assert offloaded[-1] == "rmtree"
    assert list(tmp_path.iterdir()) == []


@pytest.mark.asyncio
async def test_scratch_directory_removed_when_body_raises(tmp_path):
    with pytest.raises(RuntimeError):
        async with scratch_directory(str(tmp_path)) as work_dir:
            (Path(work_dir) / "input.m4a").write_bytes(b"audio")
            raise RuntimeError("boom")

    assert list(tmp_path.iterdir()) == []
