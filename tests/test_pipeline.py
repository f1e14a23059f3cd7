from __future__ import annotations

import asyncio
import struct
import threading
import time
from pathlib import Path

import pytest

from fylvur.config import Settings
from fylvur.errors import ErrorKind, FetchError, Overloaded, PreviewCancelled, UnrecognizedFormat
from fylvur.models import CancelToken, FileIdentity, PipelineState, PreviewArtifact, QualitySpec
from fylvur.pipeline import PreviewPipeline

PNG = b"\x89PNG\r\n\x1a\n" + struct.pack(">I", 13) + b"IHDR" + struct.pack(">II", 1920, 1080) + b"\x00" * 4000


class _MemoryAdapter:
    seekable = True

    def __init__(self, payload: bytes = PNG, cut_at: int | None = None) -> None:
        self.payload = payload
        self.cut_at = cut_at

    def total_size(self) -> int:
        return len(self.payload)

    def read_range(self, offset: int, length: int) -> bytes:
        end = offset + length if self.cut_at is None else min(offset + length, self.cut_at)
        return self.payload[offset:end]


class _FakeEngine:
    """Stands in for the codec engine; blocks until released when `gate` is cleared.

    With `spool_dir` set it writes a small transport-stream file and returns it
    the way proxies are returned.
    """

    def __init__(self, spool_dir: Path | None = None, honor_cancel: bool = True) -> None:
        self.calls = 0
        self.gate = threading.Event()
        self.gate.set()
        self.started = threading.Event()
        self.exits: list[str] = []
        self.spool_dir = spool_dir
        self.honor_cancel = honor_cancel

    def produce(self, source, descriptor, quality, *, identity: FileIdentity, token: CancelToken) -> PreviewArtifact:
        self.calls += 1
        call = self.calls
        self.started.set()
        try:
            while not self.gate.wait(0.01):
                if self.honor_cancel:
                    token.raise_if_cancelled()
        except PreviewCancelled:
            self.exits.append("cancelled")
            raise

        if self.spool_dir is not None:
            path = self.spool_dir / f"proxy-{call}.ts"
            path.write_bytes(b"\x47" + b"\x00" * 187)
            artifact = PreviewArtifact(
                format="mpegts",
                media_type="video/mp2t",
                created_at=time.time(),
                size=path.stat().st_size,
                source=identity,
                path=path,
            )
        else:
            artifact = PreviewArtifact(
                format="webp",
                media_type="image/webp",
                created_at=time.time(),
                size=16,
                source=identity,
                width=quality.max_width,
                height=quality.max_height,
                data=b"w" * 16,
            )
        self.exits.append("done")
        return artifact


def _settings(tmp_path: Path, cache: dict | None = None, **scheduler: object) -> Settings:
    return Settings(
        scheduler={"cancel_grace_seconds": 1.0, **scheduler},
        cache={"spool_dir": tmp_path, **(cache or {})},
    )


def _identity(mtime: float = 1.0) -> FileIdentity:
    return FileIdentity(host="nas", path="/photos/beach.png", size=len(PNG), mtime=mtime)


async def _wait_for(predicate, timeout: float = 2.0) -> None:
    async def poll() -> None:
        while not predicate():
            await asyncio.sleep(0.01)

    await asyncio.wait_for(poll(), timeout)


@pytest.mark.asyncio
async def test_second_request_is_served_from_cache(tmp_path: Path) -> None:
    engine = _FakeEngine()
    quality = QualitySpec.thumbnail()

    async with PreviewPipeline(_settings(tmp_path), engine=engine) as pipeline:
        first = await pipeline.preview(_identity(), quality, _MemoryAdapter())
        request = pipeline.request_preview(_identity(), quality, _MemoryAdapter())

        assert request.state is PipelineState.HIT_DONE
        assert await request.result() is first
        assert engine.calls == 1


@pytest.mark.asyncio
async def test_concurrent_requests_share_one_production(tmp_path: Path) -> None:
    engine = _FakeEngine()
    engine.gate.clear()
    quality = QualitySpec.thumbnail()

    async with PreviewPipeline(_settings(tmp_path), engine=engine) as pipeline:
        requests = [pipeline.request_preview(_identity(), quality, _MemoryAdapter()) for _ in range(3)]
        await _wait_for(engine.started.is_set)
        assert requests[0].state is PipelineState.DECODING
        engine.gate.set()

        artifacts = await asyncio.gather(*(request.result() for request in requests))

    assert engine.calls == 1
    assert all(artifact is artifacts[0] for artifact in artifacts)
    assert all(request.state is PipelineState.DONE for request in requests)


@pytest.mark.asyncio
async def test_changed_remote_file_is_produced_again(tmp_path: Path) -> None:
    engine = _FakeEngine()
    quality = QualitySpec.thumbnail()

    async with PreviewPipeline(_settings(tmp_path), engine=engine) as pipeline:
        await pipeline.preview(_identity(mtime=1.0), quality, _MemoryAdapter())
        fresh = await pipeline.preview(_identity(mtime=2.0), quality, _MemoryAdapter())

        assert engine.calls == 2
        assert fresh.source.mtime == 2.0
        assert len(pipeline.cache) == 1


@pytest.mark.asyncio
async def test_result_for_outdated_identity_is_not_cached(tmp_path: Path) -> None:
    engine = _FakeEngine()
    engine.gate.clear()
    quality = QualitySpec.thumbnail()

    async with PreviewPipeline(_settings(tmp_path), engine=engine) as pipeline:
        request = pipeline.request_preview(_identity(mtime=1.0), quality, _MemoryAdapter())
        await _wait_for(engine.started.is_set)
        pipeline.cache.observe(_identity(mtime=2.0))
        engine.gate.set()

        artifact = await request.result()

        assert artifact.source.mtime == 1.0
        assert len(pipeline.cache) == 0


@pytest.mark.asyncio
async def test_truncated_fetch_fails_and_caches_nothing(tmp_path: Path) -> None:
    engine = _FakeEngine()

    async with PreviewPipeline(_settings(tmp_path), engine=engine) as pipeline:
        request = pipeline.request_preview(_identity(), QualitySpec.thumbnail(), _MemoryAdapter(cut_at=100))

        with pytest.raises(FetchError) as excinfo:
            await request.result()

        assert excinfo.value.kind is ErrorKind.TRUNCATED
        assert request.state is PipelineState.FAILED
        assert engine.calls == 0
        assert len(pipeline.cache) == 0


@pytest.mark.asyncio
async def test_cancelling_only_requester_stops_decode_work(tmp_path: Path) -> None:
    engine = _FakeEngine()
    engine.gate.clear()

    async with PreviewPipeline(_settings(tmp_path), engine=engine) as pipeline:
        request = pipeline.request_preview(_identity(), QualitySpec.thumbnail(), _MemoryAdapter())
        await _wait_for(engine.started.is_set)

        pipeline.cancel_preview(request)

        assert request.state is PipelineState.CANCELLED
        with pytest.raises(PreviewCancelled):
            await request.result()
        await _wait_for(lambda: bool(engine.exits))
        assert engine.exits == ["cancelled"]
        assert len(pipeline.cache) == 0
        assert not pipeline.scheduler.in_flight(request.key)


@pytest.mark.asyncio
async def test_overloaded_pipeline_fails_request_immediately(tmp_path: Path) -> None:
    engine = _FakeEngine()
    engine.gate.clear()
    settings = _settings(tmp_path, max_concurrent_jobs=1, max_queue_depth=0)

    async with PreviewPipeline(settings, engine=engine) as pipeline:
        busy = pipeline.request_preview(_identity(), QualitySpec.thumbnail(), _MemoryAdapter())
        rejected = pipeline.request_preview(_identity(), QualitySpec.thumbnail(640, 360), _MemoryAdapter())

        assert rejected.state is PipelineState.FAILED
        with pytest.raises(Overloaded):
            await rejected.result()
        assert rejected.error is not None and rejected.error.transient

        engine.gate.set()
        assert (await busy.result()).width == 320


@pytest.mark.asyncio
async def test_unrecognized_bytes_fail_before_decoding(tmp_path: Path, monkeypatch: pytest.MonkeyPatch) -> None:
    from fylvur.ingest import probe
    from fylvur.ingest.probe import ProbeUnavailable

    def _unavailable(prefix: bytes) -> dict:
        raise ProbeUnavailable("ffprobe executable was not found")

    monkeypatch.setattr(probe, "_run_ffprobe", _unavailable)
    engine = _FakeEngine()

    async with PreviewPipeline(_settings(tmp_path), engine=engine) as pipeline:
        request = pipeline.request_preview(
            _identity(), QualitySpec.thumbnail(), _MemoryAdapter(payload=b"plain text, not media" * 10)
        )

        with pytest.raises(UnrecognizedFormat) as excinfo:
            await request.result()

        assert excinfo.value.kind is ErrorKind.UNRECOGNIZED_FORMAT
        assert engine.calls == 0


@pytest.mark.asyncio
async def test_requester_that_never_awaits_still_sees_outcome(tmp_path: Path) -> None:
    engine = _FakeEngine()
    engine.gate.clear()
    quality = QualitySpec.thumbnail()

    async with PreviewPipeline(_settings(tmp_path), engine=engine) as pipeline:
        awaited = pipeline.request_preview(_identity(), quality, _MemoryAdapter())
        watched = pipeline.request_preview(_identity(), quality, _MemoryAdapter())
        await _wait_for(engine.started.is_set)
        engine.gate.set()

        artifact = await awaited.result()

        assert watched.done
        assert watched.state is PipelineState.DONE
        assert await watched.result() is artifact


@pytest.mark.asyncio
async def test_request_waiting_for_a_worker_reports_queued(tmp_path: Path) -> None:
    engine = _FakeEngine()
    engine.gate.clear()
    settings = _settings(tmp_path, max_concurrent_jobs=1)

    async with PreviewPipeline(settings, engine=engine) as pipeline:
        busy = pipeline.request_preview(_identity(), QualitySpec.thumbnail(), _MemoryAdapter())
        await _wait_for(engine.started.is_set)
        waiting = pipeline.request_preview(_identity(), QualitySpec.thumbnail(640, 360), _MemoryAdapter())

        assert busy.state is PipelineState.DECODING
        assert waiting.state is PipelineState.QUEUED
        assert not waiting.done

        engine.gate.set()
        assert (await waiting.result()).width == 640
        assert waiting.state is PipelineState.DONE


@pytest.mark.asyncio
async def test_replacement_job_keeps_its_stage_while_old_job_unwinds(tmp_path: Path) -> None:
    engine = _FakeEngine()
    engine.gate.clear()
    quality = QualitySpec.thumbnail()

    async with PreviewPipeline(_settings(tmp_path), engine=engine) as pipeline:
        first = pipeline.request_preview(_identity(), quality, _MemoryAdapter())
        await _wait_for(engine.started.is_set)
        first.cancel()
        second = pipeline.request_preview(_identity(), quality, _MemoryAdapter())

        await _wait_for(lambda: engine.calls == 2)
        await _wait_for(lambda: engine.exits == ["cancelled"])
        await asyncio.sleep(0.05)

        assert first.state is PipelineState.CANCELLED
        assert second.state is PipelineState.DECODING

        engine.gate.set()
        await second.result()
        assert second.state is PipelineState.DONE


@pytest.mark.asyncio
async def test_proxy_too_large_for_cache_is_deleted_after_last_release(tmp_path: Path) -> None:
    engine = _FakeEngine(spool_dir=tmp_path)
    settings = _settings(tmp_path, cache={"max_bytes": 100})

    async with PreviewPipeline(settings, engine=engine) as pipeline:
        first = pipeline.request_preview(_identity(), QualitySpec.proxy(), _MemoryAdapter())
        second = pipeline.request_preview(_identity(), QualitySpec.proxy(), _MemoryAdapter())
        artifact = await first.result()
        assert await second.result() is artifact
        assert len(pipeline.cache) == 0

        first.release()
        assert artifact.path.exists()
        second.release()
        second.release()

        assert not artifact.path.exists()
        assert engine.calls == 1


@pytest.mark.asyncio
async def test_cached_proxy_survives_release(tmp_path: Path) -> None:
    engine = _FakeEngine(spool_dir=tmp_path)

    async with PreviewPipeline(_settings(tmp_path), engine=engine) as pipeline:
        request = pipeline.request_preview(_identity(), QualitySpec.proxy(), _MemoryAdapter())
        artifact = await request.result()
        request.release()

        assert artifact.path.exists()
        assert pipeline.cache.owns(artifact.path)


@pytest.mark.asyncio
async def test_stale_proxy_is_deleted_after_release(tmp_path: Path) -> None:
    engine = _FakeEngine(spool_dir=tmp_path)
    engine.gate.clear()

    async with PreviewPipeline(_settings(tmp_path), engine=engine) as pipeline:
        request = pipeline.request_preview(_identity(mtime=1.0), QualitySpec.proxy(), _MemoryAdapter())
        await _wait_for(engine.started.is_set)
        pipeline.cache.observe(_identity(mtime=2.0))
        engine.gate.set()

        artifact = await request.result()
        assert artifact.path.exists()
        request.release()

        assert not artifact.path.exists()


@pytest.mark.asyncio
async def test_output_of_cancelled_job_is_deleted_when_it_finishes(tmp_path: Path) -> None:
    engine = _FakeEngine(spool_dir=tmp_path, honor_cancel=False)
    engine.gate.clear()

    async with PreviewPipeline(_settings(tmp_path), engine=engine) as pipeline:
        request = pipeline.request_preview(_identity(), QualitySpec.proxy(), _MemoryAdapter())
        await _wait_for(engine.started.is_set)
        request.cancel()
        await asyncio.sleep(0)
        engine.gate.set()

        await _wait_for(lambda: engine.exits == ["done"])
        await _wait_for(lambda: not list(tmp_path.glob("*.ts")))
        assert len(pipeline.cache) == 0


@pytest.mark.asyncio
async def test_proxy_jobs_use_their_own_timeout(tmp_path: Path) -> None:
    engine = _FakeEngine()
    engine.gate.clear()
    settings = Settings(
        scheduler={"job_timeout_seconds": 5.0, "cancel_grace_seconds": 1.0},
        proxy={"job_timeout_seconds": 900.0},
        cache={"spool_dir": tmp_path},
    )

    async with PreviewPipeline(settings, engine=engine) as pipeline:
        proxy = pipeline.request_preview(_identity(), QualitySpec.proxy(), _MemoryAdapter())
        thumbnail = pipeline.request_preview(_identity(), QualitySpec.thumbnail(), _MemoryAdapter())

        assert proxy._handle.job.timeout == 900.0
        assert thumbnail._handle.job.timeout == 5.0
        engine.gate.set()
        await asyncio.gather(proxy.result(), thumbnail.result())
