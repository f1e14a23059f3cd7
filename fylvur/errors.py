from __future__ import annotations

from enum import Enum


class ErrorKind(str, Enum):
    UNRECOGNIZED_FORMAT = "unrecognized_format"
    FETCH_TIMEOUT = "fetch_timeout"
    HOST_UNREACHABLE = "host_unreachable"
    TRUNCATED = "truncated"
    CORRUPT_MEDIA = "corrupt_media"
    UNSUPPORTED_CODEC = "unsupported_codec"
    RESOURCE_EXHAUSTED = "resource_exhausted"
    OVERLOADED = "overloaded"
    TIMEOUT = "timeout"
    CANCELLED = "cancelled"

    @property
    def user_message(self) -> str:
        return _USER_MESSAGES[self]


_USER_MESSAGES = {
    ErrorKind.UNRECOGNIZED_FORMAT: "format not recognized",
    ErrorKind.FETCH_TIMEOUT: "network issue (remote host is slow to respond)",
    ErrorKind.HOST_UNREACHABLE: "network issue (remote host unreachable)",
    ErrorKind.TRUNCATED: "network issue (file transfer was cut short)",
    ErrorKind.CORRUPT_MEDIA: "file appears to be damaged",
    ErrorKind.UNSUPPORTED_CODEC: "format not supported",
    ErrorKind.RESOURCE_EXHAUSTED: "system busy, try again shortly",
    ErrorKind.OVERLOADED: "too many previews requested, try again shortly",
    ErrorKind.TIMEOUT: "preview took too long",
    ErrorKind.CANCELLED: "preview cancelled",
}

TRANSIENT_KINDS = frozenset(
    {
        ErrorKind.FETCH_TIMEOUT,
        ErrorKind.RESOURCE_EXHAUSTED,
        ErrorKind.OVERLOADED,
    }
)


class PreviewError(Exception):
    """Base class for every failure reported to preview requesters."""

    kind: ErrorKind = ErrorKind.CORRUPT_MEDIA

    @property
    def transient(self) -> bool:
        """True when the caller may retry the same request after a backoff."""

        return self.kind in TRANSIENT_KINDS

    @property
    def user_message(self) -> str:
        return self.kind.user_message


class UnrecognizedFormat(PreviewError):
    kind = ErrorKind.UNRECOGNIZED_FORMAT


class FetchFailure(str, Enum):
    TIMEOUT = "timeout"
    HOST_UNREACHABLE = "host_unreachable"
    TRUNCATED = "truncated"


_FETCH_KINDS = {
    FetchFailure.TIMEOUT: ErrorKind.FETCH_TIMEOUT,
    FetchFailure.HOST_UNREACHABLE: ErrorKind.HOST_UNREACHABLE,
    FetchFailure.TRUNCATED: ErrorKind.TRUNCATED,
}


class FetchError(PreviewError):
    def __init__(self, reason: FetchFailure, message: str = "") -> None:
        super().__init__(message or f"fetch failed: {reason.value}")
        self.reason = reason

    @property
    def kind(self) -> ErrorKind:  # type: ignore[override]
        return _FETCH_KINDS[self.reason]


class CorruptMedia(PreviewError):
    kind = ErrorKind.CORRUPT_MEDIA


class UnsupportedCodec(PreviewError):
    kind = ErrorKind.UNSUPPORTED_CODEC


class ResourceExhausted(PreviewError):
    kind = ErrorKind.RESOURCE_EXHAUSTED


class Overloaded(PreviewError):
    kind = ErrorKind.OVERLOADED


class PreviewTimeout(PreviewError):
    kind = ErrorKind.TIMEOUT


class PreviewCancelled(PreviewError):
    kind = ErrorKind.CANCELLED
