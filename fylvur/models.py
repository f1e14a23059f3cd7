from __future__ import annotations

import hashlib
import threading
from collections.abc import Iterator
from dataclasses import dataclass, field
from enum import Enum
from pathlib import Path

from fylvur.errors import PreviewCancelled


class PreviewKind(str, Enum):
    THUMBNAIL = "thumbnail"
    CLIP = "clip"
    PROXY = "proxy"


class MediaType(str, Enum):
    VIDEO = "video"
    AUDIO = "audio"
    IMAGE = "image"


class JobState(str, Enum):
    QUEUED = "queued"
    RUNNING = "running"
    DONE = "done"
    FAILED = "failed"
    CANCELLED = "cancelled"


class PipelineState(str, Enum):
    REQUESTED = "requested"
    CACHE_CHECK = "cache_check"
    HIT_DONE = "hit_done"
    QUEUED = "queued"
    MISS_FETCHING = "miss_fetching"
    DECODING = "decoding"
    CACHE_PUT = "cache_put"
    DONE = "done"
    FAILED = "failed"
    CANCELLED = "cancelled"

    @property
    def terminal(self) -> bool:
        return self in {PipelineState.HIT_DONE, PipelineState.DONE, PipelineState.FAILED, PipelineState.CANCELLED}


@dataclass(frozen=True, slots=True)
class FileIdentity:
    """Snapshot of a remote file as reported by the browsing layer."""

    host: str
    path: str
    size: int
    mtime: float
    content_hash: str | None = None

    @property
    def location(self) -> tuple[str, str]:
        return (self.host, self.path)

    def same_content(self, other: FileIdentity) -> bool:
        if self.content_hash and other.content_hash:
            return self.content_hash == other.content_hash
        return (self.host, self.path, self.size, self.mtime) == (other.host, other.path, other.size, other.mtime)

    def fingerprint(self) -> str:
        if self.content_hash:
            return f"sha:{self.content_hash}"
        return f"{self.host}|{self.path}|{self.size}|{self.mtime!r}"


@dataclass(frozen=True, slots=True)
class QualitySpec:
    """Requested output; `seek` < 1 is a fraction of the duration, >= 1 is seconds."""

    kind: PreviewKind
    max_width: int
    max_height: int
    max_duration: float | None = None
    bitrate: int | None = None
    format: str | None = None
    fixed_aspect: bool = False
    seek: float | None = None

    def __post_init__(self) -> None:
        if self.max_width <= 0 or self.max_height <= 0:
            raise ValueError("max_width and max_height must be positive")
        if self.max_duration is not None and self.max_duration <= 0:
            raise ValueError("max_duration must be positive")
        if self.seek is not None and self.seek < 0:
            raise ValueError("seek must not be negative")

    @classmethod
    def thumbnail(
        cls,
        max_width: int = 320,
        max_height: int = 180,
        *,
        format: str = "webp",
        seek: float | None = None,
        fixed_aspect: bool = False,
    ) -> QualitySpec:
        return cls(
            kind=PreviewKind.THUMBNAIL,
            max_width=max_width,
            max_height=max_height,
            format=format,
            seek=seek,
            fixed_aspect=fixed_aspect,
        )

    @classmethod
    def clip(
        cls,
        max_duration: float = 5.0,
        max_width: int = 640,
        max_height: int = 360,
        *,
        bitrate: int | None = 800_000,
    ) -> QualitySpec:
        return cls(
            kind=PreviewKind.CLIP,
            max_width=max_width,
            max_height=max_height,
            max_duration=max_duration,
            bitrate=bitrate,
        )

    @classmethod
    def proxy(cls, bitrate: int = 1_500_000, max_width: int = 854, max_height: int = 480) -> QualitySpec:
        return cls(kind=PreviewKind.PROXY, max_width=max_width, max_height=max_height, bitrate=bitrate)

    def fingerprint(self) -> str:
        return "|".join(
            str(part)
            for part in (
                self.kind.value,
                self.max_width,
                self.max_height,
                self.max_duration,
                self.bitrate,
                self.format,
                self.fixed_aspect,
                self.seek,
            )
        )


@dataclass(frozen=True, slots=True)
class PreviewKey:
    identity: FileIdentity
    quality: QualitySpec
    digest: str = field(init=False, compare=False, repr=False)

    def __post_init__(self) -> None:
        payload = f"{self.identity.fingerprint()}#{self.quality.fingerprint()}"
        object.__setattr__(self, "digest", hashlib.sha1(payload.encode("utf-8")).hexdigest())

    def __eq__(self, other: object) -> bool:
        if not isinstance(other, PreviewKey):
            return NotImplemented
        return self.digest == other.digest

    def __hash__(self) -> int:
        return hash(self.digest)


@dataclass(frozen=True, slots=True)
class MediaDescriptor:
    """Format facts gathered from a byte prefix; `None` means unknown."""

    container: str
    media_type: MediaType
    codec: str | None = None
    duration: float | None = None
    width: int | None = None
    height: int | None = None
    frame_rate: float | None = None
    seekable: bool = True
    rotation: int = 0
    sample_rate: int | None = None
    channels: int | None = None

    @property
    def has_duration(self) -> bool:
        return self.duration is not None and self.duration > 0

    @property
    def has_dimensions(self) -> bool:
        return bool(self.width) and bool(self.height)


@dataclass(frozen=True, slots=True)
class PreviewArtifact:
    """Produced preview; payload lives in `data` or in a spooled file at `path`."""

    format: str
    media_type: str
    created_at: float
    size: int
    source: FileIdentity
    width: int | None = None
    height: int | None = None
    duration: float | None = None
    data: bytes | None = None
    path: Path | None = None

    def __post_init__(self) -> None:
        if (self.data is None) == (self.path is None):
            raise ValueError("artifact needs exactly one of data or path")

    @property
    def streamable(self) -> bool:
        return self.path is not None

    def iter_chunks(self, chunk_size: int = 64 * 1024) -> Iterator[bytes]:
        if self.data is not None:
            for offset in range(0, len(self.data), chunk_size):
                yield self.data[offset : offset + chunk_size]
            return

        with open(self.path, "rb") as handle:
            while chunk := handle.read(chunk_size):
                yield chunk

    def read_bytes(self) -> bytes:
        if self.data is not None:
            return self.data
        return self.path.read_bytes()


@dataclass(slots=True)
class CacheEntry:
    key: PreviewKey
    artifact: PreviewArtifact
    last_access: float
    cost: int


class CancelToken:
    """Cooperative cancellation flag shared between the event loop and decode threads."""

    def __init__(self) -> None:
        self._event = threading.Event()

    def cancel(self) -> None:
        self._event.set()

    @property
    def cancelled(self) -> bool:
        return self._event.is_set()

    def raise_if_cancelled(self) -> None:
        if self._event.is_set():
            raise PreviewCancelled("preview work was cancelled")
