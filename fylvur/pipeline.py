from __future__ import annotations

import asyncio
import functools
import logging
from collections.abc import Callable
from concurrent.futures import ThreadPoolExecutor
from pathlib import Path
from typing import Any, TypeVar

from fylvur.cache.store import PreviewCache
from fylvur.config import Settings
from fylvur.errors import PreviewCancelled, PreviewError
from fylvur.ingest.fetch import FetchAdapter, RemoteReader, read_prefix
from fylvur.ingest.probe import identify_media
from fylvur.models import (
    CancelToken,
    FileIdentity,
    JobState,
    MediaDescriptor,
    PipelineState,
    PreviewArtifact,
    PreviewKey,
    PreviewKind,
    QualitySpec,
)
from fylvur.scheduler import JobHandle, JobScheduler
from fylvur.transcode.engine import TranscodeEngine

logger = logging.getLogger(__name__)

T = TypeVar("T")


class PreviewRequest:
    """Requester-side view of one preview: its pipeline state and eventual outcome.

    A request that produced a spooled artifact keeps a claim on the file until
    `release()` is called; uncached spool files are deleted once every
    requester has released them.
    """

    def __init__(self, pipeline: PreviewPipeline, key: PreviewKey) -> None:
        self._pipeline = pipeline
        self.key = key
        self.error: PreviewError | None = None
        self._state = PipelineState.REQUESTED
        self._artifact: PreviewArtifact | None = None
        self._unexpected: BaseException | None = None
        self._handle: JobHandle | None = None
        self._released = False

    @property
    def identity(self) -> FileIdentity:
        return self.key.identity

    @property
    def quality(self) -> QualitySpec:
        return self.key.quality

    @property
    def state(self) -> PipelineState:
        handle = self._handle
        if handle is None or self._state.terminal:
            return self._state
        if handle.future.done():
            self._resolve(handle.future)
            return self._state
        if handle.job.state is JobState.QUEUED:
            return PipelineState.QUEUED
        return self._pipeline.stage_of(handle.job.token)

    @property
    def done(self) -> bool:
        return self.state.terminal

    async def result(self) -> PreviewArtifact:
        if self._handle is not None and not self._state.terminal:
            await asyncio.wait({self._handle.future})
            self._resolve(self._handle.future)

        if self._unexpected is not None:
            raise self._unexpected
        if self.error is not None:
            raise self.error
        return self._artifact

    def cancel(self) -> None:
        if self.state.terminal:
            return
        if self._handle is not None:
            self._handle.cancel()
        self._settle(error=PreviewCancelled("preview request was cancelled"))

    def release(self) -> None:
        """Drop this request's claim on its artifact, cancelling it if still pending."""

        if not self.state.terminal:
            self.cancel()
            return
        self._drop_claim()

    def _attach(self, handle: JobHandle) -> None:
        self._handle = handle
        self._pipeline._claim(handle.job.token)
        handle.future.add_done_callback(self._resolve)

    def _resolve(self, future: asyncio.Future) -> None:
        if self._state.terminal:
            return
        if future.cancelled():
            self._settle(error=PreviewCancelled("preview request was cancelled"))
            return
        exc = future.exception()
        if exc is None:
            self._settle(artifact=future.result(), state=PipelineState.DONE)
        elif isinstance(exc, PreviewError):
            self._settle(error=exc)
        else:
            self._unexpected = exc
            self._state = PipelineState.FAILED
            self._drop_claim()

    def _settle(
        self,
        artifact: PreviewArtifact | None = None,
        error: PreviewError | None = None,
        state: PipelineState | None = None,
    ) -> None:
        if self._state.terminal:
            return
        self._artifact = artifact
        self.error = error
        if state is not None:
            self._state = state
        elif isinstance(error, PreviewCancelled):
            self._state = PipelineState.CANCELLED
        else:
            self._state = PipelineState.FAILED
        if error is not None:
            self._drop_claim()

    def _drop_claim(self) -> None:
        if self._handle is not None and not self._released:
            self._released = True
            self._pipeline._release(self._handle.job.token)


class PreviewPipeline:
    """Process-wide preview service: cache, job table and decode workers.

    Use as an async context manager, or call `start()` and `aclose()`.
    `request_preview` must be called from the event loop thread.
    """

    def __init__(
        self,
        settings: Settings | None = None,
        *,
        engine: TranscodeEngine | None = None,
        cache: PreviewCache | None = None,
        scheduler: JobScheduler | None = None,
    ) -> None:
        self.settings = settings or Settings()
        self.engine = engine or TranscodeEngine(self.settings)
        self.cache = cache or PreviewCache(
            max_bytes=self.settings.cache.max_bytes,
            max_entries=self.settings.cache.max_entries,
            spool_dir=self.settings.cache.spool_dir,
        )
        self.scheduler = scheduler or JobScheduler(
            max_concurrent=self.settings.scheduler.max_concurrent_jobs,
            max_queue_depth=self.settings.scheduler.max_queue_depth,
            job_timeout=self.settings.scheduler.job_timeout_seconds,
        )
        self._executor: ThreadPoolExecutor | None = None
        # Keyed by job token: a replacement job for the same key has its own entries.
        self._stages: dict[CancelToken, PipelineState] = {}
        self._claims: dict[CancelToken, int] = {}
        self._outputs: dict[CancelToken, Path] = {}

    async def __aenter__(self) -> PreviewPipeline:
        self.start()
        return self

    async def __aexit__(self, *exc_info: Any) -> None:
        await self.aclose()

    def start(self) -> None:
        if self._executor is None:
            self._executor = ThreadPoolExecutor(
                max_workers=self.settings.scheduler.max_concurrent_jobs,
                thread_name_prefix="fylvur-decode",
            )
            logger.debug("Preview pipeline started with %d decode workers", self.settings.scheduler.max_concurrent_jobs)

    async def aclose(self) -> None:
        await self.scheduler.shutdown(grace=self.settings.scheduler.cancel_grace_seconds)
        if self._executor is not None:
            self._executor.shutdown(wait=False, cancel_futures=True)
            self._executor = None
        self._claims.clear()
        self._outputs.clear()
        self.cache.clear()
        self.cache.purge_spool()

    def stage_of(self, token: CancelToken) -> PipelineState:
        return self._stages.get(token, PipelineState.MISS_FETCHING)

    def request_preview(
        self,
        identity: FileIdentity,
        quality: QualitySpec,
        adapter: FetchAdapter,
    ) -> PreviewRequest:
        """Answer from the cache or attach to (or start) the job for this preview."""

        self.start()
        key = PreviewKey(identity, quality)
        request = PreviewRequest(self, key)

        request._state = PipelineState.CACHE_CHECK
        self.cache.observe(identity)
        cached = self.cache.get(key)
        if cached is not None:
            request._settle(artifact=cached, state=PipelineState.HIT_DONE)
            return request

        try:
            handle = self.scheduler.request(
                key,
                functools.partial(self._produce, key, adapter),
                on_success=functools.partial(self._store, key),
                timeout=self.job_timeout(quality),
            )
        except PreviewError as exc:
            logger.warning("Preview for %s rejected: %s", identity.path, exc)
            request._settle(error=exc)
            return request

        request._attach(handle)
        return request

    def cancel_preview(self, request: PreviewRequest) -> None:
        request.cancel()

    async def preview(self, identity: FileIdentity, quality: QualitySpec, adapter: FetchAdapter) -> PreviewArtifact:
        """Produce one preview and return it.

        Spooled artifacts returned here stay claimed until the pipeline closes;
        long-lived callers should use `request_preview` and `release()`.
        """

        request = self.request_preview(identity, quality, adapter)
        try:
            return await request.result()
        except asyncio.CancelledError:
            request.cancel()
            raise

    def job_timeout(self, quality: QualitySpec) -> float:
        if quality.kind is PreviewKind.PROXY:
            return self.settings.proxy.job_timeout_seconds
        return self.settings.scheduler.job_timeout_seconds

    async def _produce(self, key: PreviewKey, adapter: FetchAdapter, token: CancelToken) -> PreviewArtifact:
        self._stages[token] = PipelineState.MISS_FETCHING
        try:
            descriptor, reader = await self._run_blocking(token, self._open_source, adapter, token)
            logger.debug("Identified %s as %s/%s", key.identity.path, descriptor.container, descriptor.codec)
            self._stages[token] = PipelineState.DECODING
            artifact = await self._run_blocking(
                token,
                functools.partial(self.engine.produce, identity=key.identity, token=token),
                reader,
                descriptor,
                key.quality,
            )
        finally:
            self._stages.pop(token, None)
        if artifact.path is not None:
            self._outputs[token] = artifact.path
        return artifact

    def _open_source(self, adapter: FetchAdapter, token: CancelToken) -> tuple[MediaDescriptor, RemoteReader]:
        block_size = self.settings.fetch.block_size
        prefix = read_prefix(adapter, self.settings.identify.prefix_bytes, token, block_size)
        descriptor = identify_media(prefix, seekable=bool(adapter.seekable))
        reader = RemoteReader(adapter, token, block_size, prefix=prefix)
        return descriptor, reader

    def _store(self, key: PreviewKey, artifact: PreviewArtifact) -> None:
        if not self.cache.is_current(key.identity):
            logger.warning("Remote file %s changed while its preview was produced; result not cached", key.identity.path)
            return
        self.cache.put(key, artifact)

    def _claim(self, token: CancelToken) -> None:
        self._claims[token] = self._claims.get(token, 0) + 1

    def _release(self, token: CancelToken) -> None:
        remaining = self._claims.get(token, 0) - 1
        if remaining > 0:
            self._claims[token] = remaining
            return
        self._claims.pop(token, None)
        path = self._outputs.pop(token, None)
        if path is not None and not self.cache.owns(path):
            path.unlink(missing_ok=True)
            logger.debug("Removed uncached spool file %s", path.name)

    def _discard_output(self, future: asyncio.Future) -> None:
        if future.cancelled() or future.exception() is not None:
            return
        artifact = future.result()
        if isinstance(artifact, PreviewArtifact) and artifact.path is not None:
            artifact.path.unlink(missing_ok=True)
            logger.debug("Removed spool file %s of a cancelled job", artifact.path.name)

    async def _run_blocking(self, cancel_token: CancelToken, func: Callable[..., T], *args: Any) -> T:
        loop = asyncio.get_running_loop()
        future = loop.run_in_executor(self._executor, func, *args)
        try:
            return await asyncio.shield(future)
        except asyncio.CancelledError:
            # Hold the worker slot until the thread notices the token.
            cancel_token.cancel()
            future.add_done_callback(self._discard_output)
            done, _ = await asyncio.wait({future}, timeout=self.settings.scheduler.cancel_grace_seconds)
            if not done:
                logger.warning("Decode worker ignored cancellation for %.1fs", self.settings.scheduler.cancel_grace_seconds)
            raise
