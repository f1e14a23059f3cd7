from __future__ import annotations

import http.client
import io
import logging
import os
import threading
from pathlib import Path
from typing import Protocol, runtime_checkable
from urllib import request
from urllib.error import HTTPError, URLError

from fylvur.errors import FetchError, FetchFailure
from fylvur.models import CancelToken

logger = logging.getLogger(__name__)

DEFAULT_BLOCK_SIZE = 256 * 1024
FORWARD_HISTORY_BLOCKS = 4


@runtime_checkable
class FetchAdapter(Protocol):
    """Byte-range access to one remote file, supplied by the transport layer.

    Every call may be slow and may raise `FetchError`. Adapters with
    `seekable = False` only accept reads at increasing offsets.
    """

    seekable: bool

    def read_range(self, offset: int, length: int) -> bytes: ...

    def total_size(self) -> int: ...


class LocalFileFetcher:
    """Adapter over a file on a locally mounted media folder."""

    seekable = True

    def __init__(self, path: str | Path) -> None:
        self.path = Path(path).expanduser().resolve()
        self._lock = threading.Lock()
        self._handle: io.BufferedReader | None = None

    def total_size(self) -> int:
        try:
            return self.path.stat().st_size
        except OSError as exc:
            raise FetchError(FetchFailure.HOST_UNREACHABLE, f"Cannot stat {self.path}: {exc}") from exc

    def read_range(self, offset: int, length: int) -> bytes:
        with self._lock:
            try:
                if self._handle is None:
                    self._handle = open(self.path, "rb")
                self._handle.seek(offset)
                return self._handle.read(length)
            except OSError as exc:
                raise FetchError(FetchFailure.HOST_UNREACHABLE, f"Cannot read {self.path}: {exc}") from exc

    def close(self) -> None:
        with self._lock:
            if self._handle is not None:
                self._handle.close()
                self._handle = None


class HttpRangeFetcher:
    """Adapter over an HTTP(S) URL using `Range` requests.

    Servers that do not advertise `Accept-Ranges: bytes` are read as a single
    forward-only stream.
    """

    def __init__(self, url: str, timeout_seconds: float = 10.0) -> None:
        self.url = url
        self.timeout_seconds = timeout_seconds
        self.seekable = True
        self._size: int | None = None
        self._stream: http.client.HTTPResponse | None = None
        self._stream_offset = 0
        self._lock = threading.Lock()

    def total_size(self) -> int:
        if self._size is None:
            req = request.Request(self.url, method="HEAD")
            with self._open(req) as response:
                length = response.headers.get("Content-Length")
                if length is None:
                    raise FetchError(FetchFailure.TRUNCATED, f"{self.url} did not report a Content-Length")
                self._size = int(length)
                self.seekable = response.headers.get("Accept-Ranges", "").lower() == "bytes"
        return self._size

    def read_range(self, offset: int, length: int) -> bytes:
        if length <= 0:
            return b""
        with self._lock:
            if not self.seekable:
                return self._read_forward(offset, length)

            req = request.Request(self.url, headers={"Range": f"bytes={offset}-{offset + length - 1}"})
            response = self._open(req)
            if response.status != 206:
                # Range ignored; keep the response as a forward-only stream from offset 0.
                logger.info("%s ignores Range requests; reading it forward-only", self.url)
                self.seekable = False
                self._stream = response
                self._stream_offset = 0
                return self._read_forward(offset, length)
            try:
                return self._read_body(response, length)
            finally:
                response.close()

    def close(self) -> None:
        with self._lock:
            if self._stream is not None:
                self._stream.close()
                self._stream = None

    def _read_forward(self, offset: int, length: int) -> bytes:
        if self._stream is None:
            self._stream = self._open(request.Request(self.url))
            self._stream_offset = 0
        if offset < self._stream_offset:
            raise ValueError(f"forward-only source cannot read offset {offset} after {self._stream_offset}")
        if offset > self._stream_offset:
            self._read_body(self._stream, offset - self._stream_offset)
            self._stream_offset = offset
        data = self._read_body(self._stream, length)
        self._stream_offset += len(data)
        return data

    def _read_body(self, response: http.client.HTTPResponse, length: int) -> bytes:
        try:
            return response.read(length)
        except http.client.IncompleteRead as exc:
            raise FetchError(FetchFailure.TRUNCATED, f"Connection to {self.url} closed early") from exc
        except TimeoutError as exc:
            raise FetchError(FetchFailure.TIMEOUT, f"Timed out reading {self.url}") from exc
        except OSError as exc:
            raise FetchError(FetchFailure.HOST_UNREACHABLE, f"Lost connection to {self.url}: {exc}") from exc

    def _open(self, req: request.Request) -> http.client.HTTPResponse:
        try:
            return request.urlopen(req, timeout=self.timeout_seconds)
        except HTTPError as exc:
            raise FetchError(FetchFailure.HOST_UNREACHABLE, f"{self.url} answered HTTP {exc.code}") from exc
        except URLError as exc:
            if isinstance(exc.reason, TimeoutError):
                raise FetchError(FetchFailure.TIMEOUT, f"Timed out connecting to {self.url}") from exc
            raise FetchError(FetchFailure.HOST_UNREACHABLE, f"Cannot reach {self.url}: {exc.reason}") from exc
        except TimeoutError as exc:
            raise FetchError(FetchFailure.TIMEOUT, f"Timed out connecting to {self.url}") from exc


class RemoteReader(io.RawIOBase):
    """Binary file object over a `FetchAdapter`, handed to the codec library.

    Reads are block-aligned and buffered. The cancel token is checked before
    every adapter call. On forward-only adapters, seeking backwards is limited
    to the retained history window.
    """

    def __init__(
        self,
        adapter: FetchAdapter,
        token: CancelToken | None = None,
        block_size: int = DEFAULT_BLOCK_SIZE,
        prefix: bytes = b"",
    ) -> None:
        super().__init__()
        self.adapter = adapter
        self.token = token or CancelToken()
        self.block_size = block_size
        self.size = adapter.total_size()
        self.error: FetchError | None = None
        self.refused_seek: int | None = None
        self.bytes_fetched = 0
        self._position = 0
        self._buffer = prefix
        self._buffer_start = 0
        self._fetch_offset = len(prefix)

    def readable(self) -> bool:
        return True

    def seekable(self) -> bool:
        return bool(self.adapter.seekable)

    def tell(self) -> int:
        return self._position

    def seek(self, offset: int, whence: int = os.SEEK_SET) -> int:
        if whence == os.SEEK_SET:
            target = offset
        elif whence == os.SEEK_CUR:
            target = self._position + offset
        elif whence == os.SEEK_END:
            target = self.size + offset
        else:
            raise ValueError(f"invalid whence: {whence}")

        if target < 0:
            raise ValueError(f"negative seek position {target}")

        if not self.adapter.seekable and target < self._buffer_start:
            # The codec library may swallow this; keep it for error classification.
            self.refused_seek = target
            raise io.UnsupportedOperation("source is forward-only; cannot seek backwards")
        self._position = min(target, self.size)
        return self._position

    def readinto(self, buffer) -> int:
        data = self.read(len(buffer))
        buffer[: len(data)] = data
        return len(data)

    def read(self, size: int = -1) -> bytes:
        if size is None or size < 0:
            return self.readall()
        size = min(size, self.size - self._position)
        if size <= 0:
            return b""

        buffer_end = self._buffer_start + len(self._buffer)
        if not (self._buffer_start <= self._position < buffer_end):
            self._fill(self._position, size)
            buffer_end = self._buffer_start + len(self._buffer)

        start = self._position - self._buffer_start
        chunk = self._buffer[start : start + min(size, buffer_end - self._position)]
        self._position += len(chunk)
        return chunk

    def _fill(self, position: int, size: int) -> None:
        self.token.raise_if_cancelled()

        if self.adapter.seekable:
            offset = position - (position % self.block_size)
            end = -(-(position + size) // self.block_size) * self.block_size
            data = self._fetch(offset, min(end, self.size) - offset)
            self._buffer = data
            self._buffer_start = offset
            return

        # Forward-only: keep consuming sequentially, retaining a short history.
        history_limit = self.block_size * FORWARD_HISTORY_BLOCKS
        while self._fetch_offset <= position:
            self.token.raise_if_cancelled()
            length = min(max(size, self.block_size), self.size - self._fetch_offset)
            data = self._fetch(self._fetch_offset, length)
            self._buffer = self._buffer + data
            self._fetch_offset += len(data)
            keep = max(history_limit, len(data))
            if len(self._buffer) > keep:
                drop = len(self._buffer) - keep
                self._buffer = self._buffer[drop:]
                self._buffer_start += drop

    def _fetch(self, offset: int, length: int) -> bytes:
        try:
            data = self.adapter.read_range(offset, length)
        except FetchError as exc:
            self.error = exc
            raise
        if len(data) < length:
            self.error = FetchError(
                FetchFailure.TRUNCATED,
                f"expected {length} bytes at offset {offset}, got {len(data)}",
            )
            raise self.error
        self.bytes_fetched += len(data)
        return data


def read_prefix(
    adapter: FetchAdapter,
    limit: int,
    token: CancelToken | None = None,
    block_size: int = DEFAULT_BLOCK_SIZE,
) -> bytes:
    """Read up to `limit` leading bytes sequentially from offset 0."""

    token = token or CancelToken()
    wanted = min(limit, adapter.total_size())
    chunks: list[bytes] = []
    offset = 0
    while offset < wanted:
        token.raise_if_cancelled()
        length = min(block_size, wanted - offset)
        data = adapter.read_range(offset, length)
        if len(data) < length:
            raise FetchError(FetchFailure.TRUNCATED, f"prefix read stopped at {offset + len(data)} of {wanted} bytes")
        chunks.append(data)
        offset += len(data)
    return b"".join(chunks)
