from __future__ import annotations

import json
import logging
import struct
import subprocess
from dataclasses import dataclass, replace
from fractions import Fraction
from typing import Any

from fylvur.errors import UnrecognizedFormat
from fylvur.models import MediaDescriptor, MediaType

logger = logging.getLogger(__name__)

FFPROBE_TIMEOUT_SECONDS = 15
SHARED_LIBRARY_MARKER = "error while loading shared libraries"


class ProbeUnavailable(RuntimeError):
    """ffprobe cannot be run on this host."""


@dataclass(frozen=True, slots=True)
class Sniffed:
    container: str
    media_type: MediaType
    width: int | None = None
    height: int | None = None


def identify_media(prefix: bytes, *, seekable: bool = True) -> MediaDescriptor:
    """Classify a byte prefix and extract whatever metadata it exposes.

    Magic bytes decide the container first. Audio/video prefixes (and prefixes
    no signature matches) are then handed to ffprobe on stdin. Fields the
    prefix cannot answer are left as `None`.
    """

    if not prefix:
        raise UnrecognizedFormat("Empty file cannot be previewed")

    sniffed = sniff_container(prefix)
    if sniffed is not None and sniffed.media_type is MediaType.IMAGE:
        return MediaDescriptor(
            container=sniffed.container,
            media_type=MediaType.IMAGE,
            codec=sniffed.container,
            width=sniffed.width,
            height=sniffed.height,
            seekable=seekable,
        )

    try:
        payload = _run_ffprobe(prefix)
    except ProbeUnavailable as exc:
        if sniffed is None:
            raise UnrecognizedFormat(f"Unknown signature and ffprobe unavailable: {exc}") from exc
        logger.warning("ffprobe unavailable, using signature only for %s: %s", sniffed.container, exc)
        return _descriptor_from_sniff(sniffed, seekable)
    except UnrecognizedFormat:
        if sniffed is None:
            raise
        logger.warning("ffprobe could not parse %s prefix; metadata left unknown", sniffed.container)
        return _descriptor_from_sniff(sniffed, seekable)

    descriptor = _normalize_probe_payload(payload, sniffed, seekable)
    if descriptor is None:
        if sniffed is None:
            raise UnrecognizedFormat("No audio or video stream found in file prefix")
        return _descriptor_from_sniff(sniffed, seekable)
    return descriptor


def sniff_container(prefix: bytes) -> Sniffed | None:
    head = prefix[:64]

    if head.startswith(b"\xff\xd8\xff"):
        width, height = _jpeg_dimensions(prefix)
        return Sniffed("jpeg", MediaType.IMAGE, width, height)
    if head.startswith(b"\x89PNG\r\n\x1a\n") and len(head) >= 24:
        width, height = struct.unpack(">II", head[16:24])
        return Sniffed("png", MediaType.IMAGE, width, height)
    if head[:6] in (b"GIF87a", b"GIF89a") and len(head) >= 10:
        width, height = struct.unpack("<HH", head[6:10])
        return Sniffed("gif", MediaType.IMAGE, width, height)
    if head.startswith(b"BM") and len(head) >= 26:
        width, height = struct.unpack("<ii", head[18:26])
        return Sniffed("bmp", MediaType.IMAGE, abs(width), abs(height))
    if head[:4] in (b"II*\x00", b"MM\x00*"):
        return Sniffed("tiff", MediaType.IMAGE)

    if head.startswith(b"RIFF") and len(head) >= 12:
        form = head[8:12]
        if form == b"WEBP":
            width, height = _webp_dimensions(head)
            return Sniffed("webp", MediaType.IMAGE, width, height)
        if form == b"AVI ":
            return Sniffed("avi", MediaType.VIDEO)
        if form == b"WAVE":
            return Sniffed("wav", MediaType.AUDIO)

    if len(head) >= 12 and head[4:8] == b"ftyp":
        brand = head[8:12]
        if brand in (b"M4A ", b"M4B ", b"M4P "):
            return Sniffed("m4a", MediaType.AUDIO)
        if brand in (b"heic", b"heix", b"mif1", b"avif", b"msf1"):
            return Sniffed("heif", MediaType.IMAGE)
        if brand == b"qt  ":
            return Sniffed("mov", MediaType.VIDEO)
        return Sniffed("mp4", MediaType.VIDEO)

    if head.startswith(b"\x1a\x45\xdf\xa3"):
        container = "webm" if b"webm" in prefix[:64] else "matroska"
        return Sniffed(container, MediaType.VIDEO)
    if head.startswith(b"OggS"):
        media_type = MediaType.VIDEO if b"\x80theora" in prefix[:512] else MediaType.AUDIO
        return Sniffed("ogg", media_type)
    if head.startswith(b"FLV\x01"):
        return Sniffed("flv", MediaType.VIDEO)
    if head.startswith(b"0&\xb2u\x8ef\xcf\x11"):
        return Sniffed("asf", MediaType.VIDEO)
    if head[:4] in (b"\x00\x00\x01\xba", b"\x00\x00\x01\xb3"):
        return Sniffed("mpeg", MediaType.VIDEO)
    if len(prefix) > 376 and prefix[0] == 0x47 and prefix[188] == 0x47 and prefix[376] == 0x47:
        return Sniffed("mpegts", MediaType.VIDEO)

    if head.startswith(b"fLaC"):
        return Sniffed("flac", MediaType.AUDIO)
    if head.startswith(b"ID3"):
        return Sniffed("mp3", MediaType.AUDIO)
    if len(head) >= 2 and head[0] == 0xFF:
        if head[1] & 0xF6 == 0xF0:
            return Sniffed("aac", MediaType.AUDIO)
        if head[1] & 0xE0 == 0xE0:
            return Sniffed("mp3", MediaType.AUDIO)

    return None


def _descriptor_from_sniff(sniffed: Sniffed, seekable: bool) -> MediaDescriptor:
    return MediaDescriptor(
        container=sniffed.container,
        media_type=sniffed.media_type,
        width=sniffed.width,
        height=sniffed.height,
        seekable=seekable,
    )


def _jpeg_dimensions(data: bytes) -> tuple[int | None, int | None]:
    offset = 2
    while offset + 9 < len(data):
        if data[offset] != 0xFF:
            return None, None
        marker = data[offset + 1]
        if marker == 0xFF:
            offset += 1
            continue
        if marker in (0xD8, 0x01) or 0xD0 <= marker <= 0xD7:
            offset += 2
            continue
        (segment_length,) = struct.unpack(">H", data[offset + 2 : offset + 4])
        if 0xC0 <= marker <= 0xCF and marker not in (0xC4, 0xC8, 0xCC):
            height, width = struct.unpack(">HH", data[offset + 5 : offset + 9])
            return width, height
        offset += 2 + segment_length
    return None, None


def _webp_dimensions(head: bytes) -> tuple[int | None, int | None]:
    chunk = head[12:16]
    if chunk == b"VP8 " and len(head) >= 30:
        width, height = struct.unpack("<HH", head[26:30])
        return width & 0x3FFF, height & 0x3FFF
    if chunk == b"VP8L" and len(head) >= 25:
        bits = int.from_bytes(head[21:25], "little")
        return (bits & 0x3FFF) + 1, ((bits >> 14) & 0x3FFF) + 1
    if chunk == b"VP8X" and len(head) >= 30:
        width = int.from_bytes(head[24:27], "little") + 1
        height = int.from_bytes(head[27:30], "little") + 1
        return width, height
    return None, None


def _run_ffprobe(prefix: bytes) -> dict[str, Any]:
    command = [
        "ffprobe",
        "-v",
        "error",
        "-print_format",
        "json",
        "-show_format",
        "-show_streams",
        "-i",
        "pipe:0",
    ]

    try:
        completed = subprocess.run(
            command,
            input=prefix,
            check=True,
            capture_output=True,
            timeout=FFPROBE_TIMEOUT_SECONDS,
        )
    except FileNotFoundError as exc:
        raise ProbeUnavailable(
            "ffprobe executable was not found. Install FFmpeg so ffprobe is available on PATH."
        ) from exc
    except subprocess.TimeoutExpired as exc:
        raise ProbeUnavailable(f"ffprobe did not finish within {FFPROBE_TIMEOUT_SECONDS}s") from exc
    except subprocess.CalledProcessError as exc:
        stderr = _decode(exc.stderr).strip()
        if SHARED_LIBRARY_MARKER in stderr:
            raise ProbeUnavailable(
                "ffprobe is installed but failed to start because required shared libraries are missing."
                f" ffprobe stderr: {stderr}"
            ) from exc
        details = f" ffprobe stderr: {stderr}" if stderr else ""
        raise UnrecognizedFormat(f"ffprobe failed while probing media prefix.{details}") from exc

    try:
        return json.loads(_decode(completed.stdout))
    except json.JSONDecodeError as exc:
        raise UnrecognizedFormat("ffprobe returned invalid JSON output.") from exc


def _normalize_probe_payload(
    payload: dict[str, Any],
    sniffed: Sniffed | None,
    seekable: bool,
) -> MediaDescriptor | None:
    format_entry = payload.get("format", {})
    streams = payload.get("streams", [])

    video = next(
        (
            stream
            for stream in streams
            if stream.get("codec_type") == "video" and not stream.get("disposition", {}).get("attached_pic")
        ),
        None,
    )
    audio = next((stream for stream in streams if stream.get("codec_type") == "audio"), None)
    primary = video or audio
    if primary is None:
        return None

    container = sniffed.container if sniffed else str(format_entry.get("format_name", "unknown")).split(",")[0]
    duration = _to_float(format_entry.get("duration")) or _to_float(primary.get("duration"))

    descriptor = MediaDescriptor(
        container=container,
        media_type=MediaType.VIDEO if video is not None else MediaType.AUDIO,
        codec=primary.get("codec_name"),
        duration=duration if duration and duration > 0 else None,
        seekable=seekable,
    )
    if video is not None:
        descriptor = replace(
            descriptor,
            width=_to_int(video.get("width")) or None,
            height=_to_int(video.get("height")) or None,
            frame_rate=_to_rate(video.get("avg_frame_rate")) or _to_rate(video.get("r_frame_rate")),
            rotation=_stream_rotation(video),
        )
    if audio is not None:
        descriptor = replace(
            descriptor,
            sample_rate=_to_int(audio.get("sample_rate")),
            channels=_to_int(audio.get("channels")),
        )
    return descriptor


def _stream_rotation(stream: dict[str, Any]) -> int:
    for side_data in stream.get("side_data_list", []):
        if "rotation" in side_data:
            return int(round(float(side_data["rotation"]))) % 360
    rotate_tag = stream.get("tags", {}).get("rotate")
    if rotate_tag not in (None, ""):
        # The legacy tag is clockwise; display-matrix rotation is counterclockwise.
        return (-int(rotate_tag)) % 360
    return 0


def _decode(raw: bytes | str | None) -> str:
    if raw is None:
        return ""
    if isinstance(raw, bytes):
        return raw.decode("utf-8", errors="replace")
    return raw


def _to_rate(raw_value: Any) -> float | None:
    if raw_value in (None, "N/A", "", "0/0"):
        return None
    try:
        rate = float(Fraction(str(raw_value)))
    except (ValueError, ZeroDivisionError):
        return None
    return rate if rate > 0 else None


def _to_float(raw_value: Any) -> float | None:
    if raw_value in (None, "N/A", ""):
        return None
    return float(raw_value)


def _to_int(raw_value: Any) -> int | None:
    if raw_value in (None, "N/A", ""):
        return None
    return int(raw_value)
