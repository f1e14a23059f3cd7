from __future__ import annotations

import math
import struct
from typing import Any

import numpy as np

ENCODE_EXTENSIONS = {"webp": ".webp", "png": ".png", "jpeg": ".jpg", "jpg": ".jpg"}
WAVEFORM_BACKGROUND = (24, 24, 24)
WAVEFORM_COLOR = (90, 200, 250)


def fit_dimensions(
    width: int,
    height: int,
    max_width: int,
    max_height: int,
    *,
    fixed_aspect: bool = False,
    even: bool = False,
) -> tuple[int, int]:
    """Largest size within the bounds that keeps the source aspect ratio.

    Never upscales. `fixed_aspect` returns the bounds as-is; `even` rounds
    down to even numbers for encoders that need 4:2:0 chroma.
    """

    if fixed_aspect:
        target_w, target_h = max_width, max_height
    else:
        scale = min(max_width / width, max_height / height, 1.0)
        target_w = min(max(int(round(width * scale)), 1), max_width)
        target_h = min(max(int(round(height * scale)), 1), max_height)

    if even:
        target_w = max(target_w - target_w % 2, 2)
        target_h = max(target_h - target_h % 2, 2)
    return target_w, target_h


def resize_to_fit(
    frame: Any,
    max_width: int,
    max_height: int,
    *,
    fixed_aspect: bool = False,
    even: bool = False,
    cv2_module: Any | None = None,
) -> Any:
    """Scale an HxWxC frame into the bounding box; returns `frame` unchanged when it already fits."""

    height, width = frame.shape[:2]
    target_w, target_h = fit_dimensions(
        width,
        height,
        max_width,
        max_height,
        fixed_aspect=fixed_aspect,
        even=even,
    )
    if (target_w, target_h) == (width, height):
        return frame

    if cv2_module is None:
        import cv2 as cv2_module

    interpolation = cv2_module.INTER_AREA if target_w <= width else cv2_module.INTER_LINEAR
    return cv2_module.resize(frame, (target_w, target_h), interpolation=interpolation)


def parse_display_matrix(raw: bytes) -> list[int]:
    """Unpack the 36-byte display matrix side data into nine native-endian int32 values."""

    if len(raw) < 36:
        raise ValueError(f"display matrix needs 36 bytes, got {len(raw)}")
    return list(struct.unpack("=9i", raw[:36]))


def display_rotation(matrix: list[int]) -> float | None:
    """Counterclockwise rotation in degrees encoded by a display matrix, or None if singular."""

    scale_x = math.hypot(matrix[0], matrix[3])
    scale_y = math.hypot(matrix[1], matrix[4])
    if scale_x == 0 or scale_y == 0:
        return None

    rotation = math.degrees(math.atan2(matrix[1] / scale_y, matrix[0] / scale_x))
    return -rotation


def rotate_frame(frame: np.ndarray, rotation: int) -> np.ndarray:
    """Apply a counterclockwise rotation snapped to the nearest quarter turn."""

    quarter_turns = int(round(rotation / 90.0)) % 4
    if quarter_turns == 0:
        return frame
    return np.ascontiguousarray(np.rot90(frame, k=quarter_turns))


def encode_image(rgb: np.ndarray, image_format: str = "webp", quality: int = 50) -> bytes:
    import cv2

    extension = ENCODE_EXTENSIONS.get(image_format.lower())
    if extension is None:
        raise ValueError(f"Unsupported thumbnail format: {image_format}")

    params: list[int] = []
    if extension == ".webp":
        params = [cv2.IMWRITE_WEBP_QUALITY, int(quality)]
    elif extension == ".jpg":
        params = [cv2.IMWRITE_JPEG_QUALITY, int(quality)]

    bgr = cv2.cvtColor(rgb, cv2.COLOR_RGB2BGR) if rgb.ndim == 3 else rgb
    ok, encoded = cv2.imencode(extension, bgr, params)
    if not ok:
        raise RuntimeError(f"OpenCV failed to encode {image_format} image")
    return encoded.tobytes()


def render_waveform(samples: np.ndarray, width: int, height: int) -> np.ndarray:
    """Draw a min/max peak waveform of mono float samples as an RGB image."""

    import cv2

    canvas = np.empty((height, width, 3), dtype=np.uint8)
    canvas[:] = WAVEFORM_BACKGROUND
    middle = height // 2
    if samples.size == 0:
        cv2.line(canvas, (0, middle), (width - 1, middle), WAVEFORM_COLOR, 1)
        return canvas

    peak = float(np.max(np.abs(samples))) or 1.0
    normalized = samples / peak
    columns = np.array_split(normalized, width)
    for x, column in enumerate(columns):
        if column.size == 0:
            continue
        top = middle - int(float(column.max()) * (middle - 1))
        bottom = middle - int(float(column.min()) * (middle - 1))
        cv2.line(canvas, (x, top), (x, bottom), WAVEFORM_COLOR, 1)
    return canvas
