from __future__ import annotations

import io
import logging
import threading
import time
import uuid
from collections.abc import Iterator
from contextlib import contextmanager
from dataclasses import dataclass
from fractions import Fraction
from pathlib import Path
from typing import Any

import av
import numpy as np

from fylvur.config import Settings
from fylvur.errors import (
    CorruptMedia,
    PreviewCancelled,
    PreviewError,
    ResourceExhausted,
    UnsupportedCodec,
)
from fylvur.ingest.fetch import RemoteReader
from fylvur.models import (
    CancelToken,
    FileIdentity,
    MediaDescriptor,
    MediaType,
    PreviewArtifact,
    PreviewKind,
    QualitySpec,
)
from fylvur.transcode.frames import (
    display_rotation,
    encode_image,
    parse_display_matrix,
    render_waveform,
    resize_to_fit,
    rotate_frame,
)

logger = logging.getLogger(__name__)

VIDEO_ENCODERS = ("libx264", "mpeg4")
AUDIO_ENCODERS = ("aac", "libmp3lame", "mp2")
X264_OPTIONS = {"preset": "veryfast", "tune": "fastdecode"}
WAVEFORM_SAMPLE_RATE = 8000
CLIP_AUDIO_RATE = 44100
IMAGE_MIME_TYPES = {"webp": "image/webp", "png": "image/png", "jpeg": "image/jpeg", "jpg": "image/jpeg"}
# ISO base media files may keep their index after the media data.
RANDOM_ACCESS_CONTAINERS = frozenset({"mp4", "mov", "m4a", "heif"})


@dataclass(slots=True)
class VideoResult:
    frames: int
    fps: int
    width: int
    height: int

    @property
    def duration(self) -> float:
        return self.frames / self.fps


def thumbnail_seek_seconds(seek: float | None, duration: float | None, default_fraction: float) -> float | None:
    """Resolve a thumbnail seek request to seconds; `None` means "first frame"."""

    if seek is None:
        seek = default_fraction
    if seek < 1:
        return seek * duration if duration else None
    if duration:
        return min(seek, duration * 0.99)
    return seek


def clip_window_seconds(max_duration: float, duration: float | None, unknown_budget: float) -> float:
    if duration and duration > 0:
        return min(duration, max_duration)
    return min(max_duration, unknown_budget)


class TranscodeEngine:
    """Decode a byte source with PyAV and re-encode it into a preview.

    Every native handle (input and output containers) is acquired through
    `_native` and closed on every exit path. The engine refuses new handles
    once `max_contexts` are open, which surfaces as `ResourceExhausted`.
    """

    def __init__(self, settings: Settings | None = None, spool_dir: str | Path | None = None) -> None:
        self.settings = settings or Settings()
        self.spool_dir = Path(spool_dir or self.settings.cache.spool_dir).expanduser()
        max_contexts = self.settings.engine.max_contexts or 2 * self.settings.scheduler.max_concurrent_jobs
        self.max_contexts = max_contexts
        self._slots = threading.BoundedSemaphore(max_contexts)
        self._open_lock = threading.Lock()
        self._open_contexts = 0

    @property
    def open_contexts(self) -> int:
        with self._open_lock:
            return self._open_contexts

    def produce(
        self,
        source: RemoteReader,
        descriptor: MediaDescriptor,
        quality: QualitySpec,
        *,
        identity: FileIdentity,
        token: CancelToken | None = None,
    ) -> PreviewArtifact:
        token = token or source.token
        token.raise_if_cancelled()

        with self._translate_errors(source, descriptor, token):
            if descriptor.media_type is MediaType.IMAGE:
                if quality.kind is not PreviewKind.THUMBNAIL:
                    raise UnsupportedCodec(f"{descriptor.container} images only support thumbnails")
                return self._image_thumbnail(source, descriptor, quality, identity)

            if quality.kind is PreviewKind.THUMBNAIL:
                return self._media_thumbnail(source, descriptor, quality, identity, token)
            if quality.kind is PreviewKind.CLIP:
                return self._clip(source, descriptor, quality, identity, token)
            return self._proxy(source, descriptor, quality, identity, token)

    # -- thumbnails -----------------------------------------------------

    def _image_thumbnail(
        self,
        source: RemoteReader,
        descriptor: MediaDescriptor,
        quality: QualitySpec,
        identity: FileIdentity,
    ) -> PreviewArtifact:
        import cv2

        if source.size > self.settings.engine.max_image_bytes:
            raise UnsupportedCodec(f"Image of {source.size} bytes exceeds the preview limit")

        source.seek(0)
        raw = source.read()
        bgr = cv2.imdecode(np.frombuffer(raw, dtype=np.uint8), cv2.IMREAD_COLOR)
        if bgr is not None:
            rgb = cv2.cvtColor(bgr, cv2.COLOR_BGR2RGB)
        else:
            rgb = self._decode_image_with_av(raw)

        return self._thumbnail_artifact(rgb, quality, identity)

    def _decode_image_with_av(self, raw: bytes) -> np.ndarray:
        with self._native(io.BytesIO(raw), "r") as container:
            if not container.streams.video:
                raise CorruptMedia("Image has no decodable picture")
            for frame in container.decode(video=0):
                return frame.to_ndarray(format="rgb24")
        raise CorruptMedia("Image has no decodable picture")

    def _media_thumbnail(
        self,
        source: RemoteReader,
        descriptor: MediaDescriptor,
        quality: QualitySpec,
        identity: FileIdentity,
        token: CancelToken,
    ) -> PreviewArtifact:
        with self._native(source, "r") as container:
            stream, media_type = self._select_stream(container, descriptor)
            if media_type is MediaType.AUDIO:
                rgb = self._waveform(container, stream, descriptor, quality, token)
                return self._thumbnail_artifact(rgb, quality, identity)

            duration = descriptor.duration or _container_duration(container)
            target = thumbnail_seek_seconds(quality.seek, duration, self.settings.thumbnail.seek_fraction)
            if target and source.seekable():
                self._seek(container, stream, target)

            # One frame: the keyframe at or before the seek target.
            for frame in _decode(container, stream, token):
                rgb = frame.to_ndarray(format="rgb24")
                rgb = rotate_frame(rgb, _frame_rotation(frame, descriptor.rotation))
                return self._thumbnail_artifact(rgb, quality, identity)

        raise CorruptMedia("No decodable video frame found")

    def _waveform(
        self,
        container: Any,
        stream: Any,
        descriptor: MediaDescriptor,
        quality: QualitySpec,
        token: CancelToken,
    ) -> np.ndarray:
        window = clip_window_seconds(
            self.settings.clip.max_duration_seconds,
            descriptor.duration,
            self.settings.engine.unknown_duration_budget_seconds,
        )
        max_samples = int(window * WAVEFORM_SAMPLE_RATE)
        resampler = av.AudioResampler(format="flt", layout="mono", rate=WAVEFORM_SAMPLE_RATE)
        chunks: list[np.ndarray] = []
        collected = 0
        for frame in _decode(container, stream, token):
            for mono in resampler.resample(frame):
                samples = mono.to_ndarray().reshape(-1)
                chunks.append(samples)
                collected += samples.size
            if collected >= max_samples:
                break

        if not chunks:
            raise CorruptMedia("No decodable audio samples found")
        samples = np.concatenate(chunks)[:max_samples]
        return render_waveform(samples, quality.max_width, quality.max_height)

    def _thumbnail_artifact(self, rgb: np.ndarray, quality: QualitySpec, identity: FileIdentity) -> PreviewArtifact:
        scaled = resize_to_fit(rgb, quality.max_width, quality.max_height, fixed_aspect=quality.fixed_aspect)
        image_format = (quality.format or self.settings.thumbnail.format).lower()
        data = encode_image(scaled, image_format, self.settings.thumbnail.quality)
        height, width = scaled.shape[:2]
        return PreviewArtifact(
            format=image_format,
            media_type=IMAGE_MIME_TYPES.get(image_format, "application/octet-stream"),
            created_at=time.time(),
            size=len(data),
            source=identity,
            width=width,
            height=height,
            data=data,
        )

    # -- clips and proxies ----------------------------------------------

    def _clip(
        self,
        source: RemoteReader,
        descriptor: MediaDescriptor,
        quality: QualitySpec,
        identity: FileIdentity,
        token: CancelToken,
    ) -> PreviewArtifact:
        window = clip_window_seconds(
            quality.max_duration or self.settings.clip.max_duration_seconds,
            descriptor.duration,
            self.settings.engine.unknown_duration_budget_seconds,
        )
        buffer = io.BytesIO()
        with self._native(source, "r") as container:
            stream, media_type = self._select_stream(container, descriptor)
            with self._native(buffer, "w", container_format="mp4") as output:
                if media_type is MediaType.VIDEO:
                    result = self._transcode_video(
                        container,
                        stream,
                        output,
                        descriptor,
                        quality,
                        token,
                        max_fps=self.settings.clip.max_fps,
                        bitrate=quality.bitrate or self.settings.clip.bitrate,
                        limit_seconds=window,
                    )
                else:
                    samples, rate = self._transcode_audio(
                        container,
                        stream,
                        output,
                        token,
                        bitrate=quality.bitrate or self.settings.clip.bitrate,
                        limit_seconds=window,
                    )

        data = buffer.getvalue()
        if media_type is MediaType.VIDEO:
            return PreviewArtifact(
                format="mp4",
                media_type="video/mp4",
                created_at=time.time(),
                size=len(data),
                source=identity,
                width=result.width,
                height=result.height,
                duration=result.duration,
                data=data,
            )
        return PreviewArtifact(
            format="m4a",
            media_type="audio/mp4",
            created_at=time.time(),
            size=len(data),
            source=identity,
            duration=samples / rate,
            data=data,
        )

    def _proxy(
        self,
        source: RemoteReader,
        descriptor: MediaDescriptor,
        quality: QualitySpec,
        identity: FileIdentity,
        token: CancelToken,
    ) -> PreviewArtifact:
        self.spool_dir.mkdir(parents=True, exist_ok=True)
        name = uuid.uuid4().hex
        partial_path = self.spool_dir / f"{name}.ts.partial"
        final_path = self.spool_dir / f"{name}.ts"
        bitrate = quality.bitrate or self.settings.proxy.bitrate

        try:
            with self._native(source, "r") as container:
                stream, media_type = self._select_stream(container, descriptor)
                with self._native(str(partial_path), "w", container_format="mpegts") as output:
                    if media_type is MediaType.VIDEO:
                        result = self._transcode_video(
                            container,
                            stream,
                            output,
                            descriptor,
                            quality,
                            token,
                            max_fps=self.settings.proxy.max_fps,
                            bitrate=bitrate,
                            limit_seconds=None,
                        )
                        width, height, duration = result.width, result.height, result.duration
                    else:
                        samples, rate = self._transcode_audio(
                            container,
                            stream,
                            output,
                            token,
                            bitrate=bitrate,
                            limit_seconds=None,
                        )
                        width, height, duration = None, None, samples / rate
            partial_path.replace(final_path)
        except BaseException:
            partial_path.unlink(missing_ok=True)
            raise

        return PreviewArtifact(
            format="mpegts",
            media_type="video/mp2t",
            created_at=time.time(),
            size=final_path.stat().st_size,
            source=identity,
            width=width,
            height=height,
            duration=duration,
            path=final_path,
        )

    def _transcode_video(
        self,
        container: Any,
        stream: Any,
        output: Any,
        descriptor: MediaDescriptor,
        quality: QualitySpec,
        token: CancelToken,
        *,
        max_fps: float,
        bitrate: int,
        limit_seconds: float | None,
    ) -> VideoResult:
        source_fps = descriptor.frame_rate or (float(stream.average_rate) if stream.average_rate else None)
        fps = max(int(round(min(source_fps or max_fps, max_fps))), 1)
        max_frames = max(int(limit_seconds * fps), 1) if limit_seconds is not None else None
        stream.thread_type = "AUTO"

        out_stream = None
        written = 0
        start_time: float | None = None
        for frame in _decode(container, stream, token):
            if frame.time is not None:
                if start_time is None:
                    start_time = frame.time
                elapsed = frame.time - start_time
                # Drop frames that arrive before the next output slot to cap the frame rate.
                if elapsed < (written - 0.5) / fps:
                    continue

            rgb = frame.to_ndarray(format="rgb24")
            rgb = rotate_frame(rgb, _frame_rotation(frame, descriptor.rotation))
            rgb = resize_to_fit(rgb, quality.max_width, quality.max_height, fixed_aspect=quality.fixed_aspect, even=True)
            if out_stream is None:
                height, width = rgb.shape[:2]
                out_stream = _add_video_stream(output, fps, width, height, bitrate)
            elif rgb.shape[:2] != (out_stream.height, out_stream.width):
                rgb = resize_to_fit(rgb, out_stream.width, out_stream.height, fixed_aspect=True)

            out_frame = av.VideoFrame.from_ndarray(rgb, format="rgb24")
            out_frame.pts = written
            out_frame.time_base = Fraction(1, fps)
            for packet in out_stream.encode(out_frame):
                output.mux(packet)
            written += 1
            if max_frames is not None and written >= max_frames:
                break

        if out_stream is None:
            raise CorruptMedia("No decodable video frame found")
        for packet in out_stream.encode():
            output.mux(packet)
        return VideoResult(frames=written, fps=fps, width=out_stream.width, height=out_stream.height)

    def _transcode_audio(
        self,
        container: Any,
        stream: Any,
        output: Any,
        token: CancelToken,
        *,
        bitrate: int,
        limit_seconds: float | None,
    ) -> tuple[int, int]:
        rate = CLIP_AUDIO_RATE
        codec_name = _pick_encoder(AUDIO_ENCODERS)
        out_stream = output.add_stream(codec_name, rate=rate)
        out_stream.layout = "stereo"
        out_stream.bit_rate = min(bitrate, 192_000)
        codec_context = out_stream.codec_context
        # Open early so frame_size reflects the chosen encoder.
        codec_context.open()
        encoder_format = codec_context.format.name if codec_context.format else "fltp"
        resampler = av.AudioResampler(format=encoder_format, layout="stereo", rate=rate)
        fifo = av.AudioFifo()
        frame_size = codec_context.frame_size or 1024
        max_samples = int(limit_seconds * rate) if limit_seconds is not None else None
        written = 0

        def drain(final: bool) -> None:
            nonlocal written
            while fifo.samples >= frame_size or (final and fifo.samples > 0):
                wanted = min(frame_size, fifo.samples)
                if max_samples is not None:
                    wanted = min(wanted, max_samples - written)
                if wanted <= 0:
                    return
                chunk = fifo.read(wanted)
                chunk.pts = written
                chunk.time_base = Fraction(1, rate)
                for packet in out_stream.encode(chunk):
                    output.mux(packet)
                written += chunk.samples

        for frame in _decode(container, stream, token):
            for resampled in resampler.resample(frame):
                resampled.pts = None
                fifo.write(resampled)
            drain(final=False)
            if max_samples is not None and written >= max_samples:
                break
        else:
            for resampled in resampler.resample(None):
                resampled.pts = None
                fifo.write(resampled)

        drain(final=True)
        if written == 0:
            raise CorruptMedia("No decodable audio samples found")
        for packet in out_stream.encode():
            output.mux(packet)
        return written, rate

    # -- native handles -------------------------------------------------

    @contextmanager
    def _native(self, target: Any, mode: str, container_format: str | None = None) -> Iterator[Any]:
        if not self._slots.acquire(blocking=False):
            raise ResourceExhausted(f"All {self.max_contexts} codec contexts are in use")
        with self._open_lock:
            self._open_contexts += 1
        container = None
        try:
            container = av.open(target, mode=mode, format=container_format)
            yield container
        finally:
            try:
                if container is not None:
                    container.close()
            finally:
                with self._open_lock:
                    self._open_contexts -= 1
                self._slots.release()

    def _select_stream(self, container: Any, descriptor: MediaDescriptor) -> tuple[Any, MediaType]:
        if descriptor.media_type is MediaType.VIDEO and container.streams.video:
            stream, media_type = container.streams.video[0], MediaType.VIDEO
        elif container.streams.audio:
            stream, media_type = container.streams.audio[0], MediaType.AUDIO
        elif container.streams.video:
            stream, media_type = container.streams.video[0], MediaType.VIDEO
        else:
            raise UnsupportedCodec(f"No audio or video stream in {descriptor.container}")

        if stream.codec_context is None:
            raise UnsupportedCodec(f"No decoder for {media_type.value} codec in {descriptor.container}")
        return stream, media_type

    def _seek(self, container: Any, stream: Any, seconds: float) -> None:
        if stream.time_base is None:
            return
        try:
            container.seek(int(seconds / stream.time_base), stream=stream, backward=True, any_frame=False)
        except av.error.FFmpegError as exc:
            logger.debug("Seek to %.2fs failed (%s); decoding from current position", seconds, exc)

    @contextmanager
    def _translate_errors(self, source: RemoteReader, descriptor: MediaDescriptor, token: CancelToken) -> Iterator[None]:
        try:
            yield
        except PreviewError:
            raise
        except Exception as exc:
            raise _classify_failure(exc, source, descriptor, token) from exc


def _classify_failure(
    exc: Exception, source: RemoteReader, descriptor: MediaDescriptor, token: CancelToken
) -> PreviewError:
    if token.cancelled:
        return PreviewCancelled("preview work was cancelled")
    if source.error is not None:
        return source.error
    if source.refused_seek is not None:
        return UnsupportedCodec(
            f"{descriptor.container} needs random access; forward-only source refused a seek to {source.refused_seek}"
        )
    if (
        not source.seekable()
        and descriptor.container in RANDOM_ACCESS_CONTAINERS
        and isinstance(exc, av.error.FFmpegError)
    ):
        return UnsupportedCodec(f"{descriptor.container} cannot be read from a forward-only source: {exc}")
    if isinstance(exc, (MemoryError, BlockingIOError)):
        return ResourceExhausted(f"Codec resources unavailable: {exc}")
    if isinstance(exc, (av.error.DecoderNotFoundError, av.error.EncoderNotFoundError, av.error.PatchWelcomeError)):
        return UnsupportedCodec(f"No codec path available: {exc}")
    if isinstance(exc, io.UnsupportedOperation):
        return UnsupportedCodec(f"Container needs random access the source cannot provide: {exc}")
    return CorruptMedia(f"Decoding failed: {exc}")


def _decode(container: Any, stream: Any, token: CancelToken) -> Iterator[Any]:
    for packet in container.demux(stream):
        token.raise_if_cancelled()
        for frame in packet.decode():
            token.raise_if_cancelled()
            yield frame


def _frame_rotation(frame: Any, fallback: int) -> int:
    for item in getattr(frame, "side_data", None) or ():
        if "DISPLAYMATRIX" not in str(getattr(item, "type", "")).upper():
            continue
        try:
            angle = display_rotation(parse_display_matrix(bytes(item)))
        except ValueError:
            continue
        if angle is not None:
            return int(round(angle)) % 360
    return fallback


def _container_duration(container: Any) -> float | None:
    if container.duration is None:
        return None
    return container.duration / av.time_base


def _pick_encoder(candidates: tuple[str, ...]) -> str:
    for name in candidates:
        try:
            av.Codec(name, "w")
        except ValueError:
            continue
        return name
    raise UnsupportedCodec(f"None of the encoders {', '.join(candidates)} are available")


def _add_video_stream(output: Any, fps: int, width: int, height: int, bitrate: int) -> Any:
    codec_name = _pick_encoder(VIDEO_ENCODERS)
    options = dict(X264_OPTIONS) if codec_name == "libx264" else {}
    out_stream = output.add_stream(codec_name, rate=fps, options=options)
    out_stream.width = width
    out_stream.height = height
    out_stream.pix_fmt = "yuv420p"
    out_stream.bit_rate = bitrate
    return out_stream
