from __future__ import annotations

import http.client
import io
from urllib import request
from urllib.error import HTTPError, URLError

import pytest

from fylvur.errors import ErrorKind, FetchError, FetchFailure
from fylvur.ingest.fetch import HttpRangeFetcher, RemoteReader

URL = "http://media.test/shows/pilot.mp4"
PAYLOAD = bytes(range(256)) * 16


class _Response:
    def __init__(self, body: bytes, status: int = 200, headers: dict[str, str] | None = None) -> None:
        self.status = status
        self.headers = headers or {}
        self.closed = False
        self._body = io.BytesIO(body)

    def read(self, amt: int | None = None) -> bytes:
        return self._body.read(amt)

    def close(self) -> None:
        self.closed = True

    def __enter__(self) -> _Response:
        return self

    def __exit__(self, *exc_info: object) -> None:
        self.close()


class _Server:
    """Answers `urlopen` calls the way a small media host would."""

    def __init__(self, *, advertise_ranges: bool = True, honor_ranges: bool = True, short_by: int = 0) -> None:
        self.advertise_ranges = advertise_ranges
        self.honor_ranges = honor_ranges
        self.short_by = short_by
        self.requests: list[tuple[str, str | None, float | None]] = []

    def urlopen(self, req: request.Request, timeout: float | None = None) -> _Response:
        range_header = req.get_header("Range")
        self.requests.append((req.get_method(), range_header, timeout))
        if req.get_method() == "HEAD":
            headers = {"Content-Length": str(len(PAYLOAD))}
            if self.advertise_ranges:
                headers["Accept-Ranges"] = "bytes"
            return _Response(b"", headers=headers)
        if range_header and self.honor_ranges:
            start, end = (int(part) for part in range_header.removeprefix("bytes=").split("-"))
            body = PAYLOAD[start : end + 1]
            return _Response(body[: len(body) - self.short_by], status=206)
        return _Response(PAYLOAD)


@pytest.fixture
def server(monkeypatch: pytest.MonkeyPatch) -> _Server:
    fake = _Server()
    monkeypatch.setattr(request, "urlopen", fake.urlopen)
    return fake


def test_head_reports_size_and_range_support(server: _Server) -> None:
    fetcher = HttpRangeFetcher(URL, timeout_seconds=2.5)

    assert fetcher.total_size() == len(PAYLOAD)
    assert fetcher.total_size() == len(PAYLOAD)
    assert fetcher.seekable is True
    assert server.requests == [("HEAD", None, 2.5)]


def test_partial_content_serves_requested_range(server: _Server) -> None:
    fetcher = HttpRangeFetcher(URL)
    fetcher.total_size()

    assert fetcher.read_range(100, 50) == PAYLOAD[100:150]
    assert fetcher.read_range(0, 4) == PAYLOAD[:4]
    assert [rng for method, rng, _ in server.requests if method == "GET"] == ["bytes=100-149", "bytes=0-3"]
    assert fetcher.seekable is True


def test_full_response_to_range_request_switches_to_forward_only(server: _Server) -> None:
    server.honor_ranges = False
    fetcher = HttpRangeFetcher(URL)
    fetcher.total_size()

    assert fetcher.read_range(10, 5) == PAYLOAD[10:15]
    assert fetcher.seekable is False
    assert fetcher.read_range(15, 5) == PAYLOAD[15:20]
    assert fetcher.read_range(100, 8) == PAYLOAD[100:108]
    assert len([method for method, _, _ in server.requests if method == "GET"]) == 1
    with pytest.raises(ValueError):
        fetcher.read_range(0, 4)
    fetcher.close()


def test_server_without_accept_ranges_is_read_sequentially(server: _Server) -> None:
    server.advertise_ranges = False
    fetcher = HttpRangeFetcher(URL)
    reader = RemoteReader(fetcher, block_size=512)

    assert reader.seekable() is False
    assert reader.read(700) == PAYLOAD[:700]
    assert reader.read(188) == PAYLOAD[700:888]
    assert all(rng is None for _, rng, _ in server.requests)


def test_short_partial_body_is_reported_as_truncated(server: _Server) -> None:
    server.short_by = 10
    reader = RemoteReader(HttpRangeFetcher(URL), block_size=1024)

    with pytest.raises(FetchError) as excinfo:
        reader.read(100)

    assert excinfo.value.reason is FetchFailure.TRUNCATED
    assert reader.error is excinfo.value


@pytest.mark.parametrize(
    ("raised", "reason"),
    [
        (lambda: URLError(TimeoutError("timed out")), FetchFailure.TIMEOUT),
        (lambda: TimeoutError("timed out"), FetchFailure.TIMEOUT),
        (lambda: URLError(ConnectionRefusedError(111, "Connection refused")), FetchFailure.HOST_UNREACHABLE),
        (lambda: HTTPError(URL, 503, "Service Unavailable", None, None), FetchFailure.HOST_UNREACHABLE),
    ],
)
def test_connection_failures_map_to_fetch_errors(monkeypatch: pytest.MonkeyPatch, raised, reason: FetchFailure) -> None:
    def fake_urlopen(req: request.Request, timeout: float | None = None) -> _Response:
        raise raised()

    monkeypatch.setattr(request, "urlopen", fake_urlopen)

    with pytest.raises(FetchError) as excinfo:
        HttpRangeFetcher(URL).total_size()

    assert excinfo.value.reason is reason
    assert excinfo.value.transient is (reason is FetchFailure.TIMEOUT)


@pytest.mark.parametrize(
    ("raised", "kind"),
    [
        (http.client.IncompleteRead(b"partial", 40), ErrorKind.TRUNCATED),
        (TimeoutError("read timed out"), ErrorKind.FETCH_TIMEOUT),
        (ConnectionResetError(104, "Connection reset by peer"), ErrorKind.HOST_UNREACHABLE),
    ],
)
def test_body_read_failures_map_to_fetch_errors(monkeypatch: pytest.MonkeyPatch, raised: Exception, kind: ErrorKind) -> None:
    class _BrokenBody(_Response):
        def read(self, amt: int | None = None) -> bytes:
            raise raised

    monkeypatch.setattr(request, "urlopen", lambda req, timeout=None: _BrokenBody(b"", status=206))

    with pytest.raises(FetchError) as excinfo:
        HttpRangeFetcher(URL).read_range(0, 64)

    assert excinfo.value.kind is kind
