"""
Frame Decoding
==============

Helpers for encoded screenshots coming out of a browser session.

Design Rules:
    - This is the ONLY place in the codebase that decodes images
    - Fails fast on corrupt frames
    - Frames are passed through unchanged; only metadata is extracted
"""

import logging
from typing import Tuple

import cv2
import numpy as np

from watcher_agent.errors import CaptureError


logger = logging.getLogger(__name__)


def frame_dimensions(frame: bytes) -> Tuple[int, int]:
    """
    Decode an encoded frame far enough to read its size.

    Args:
        frame: JPEG or PNG bytes

    Returns:
        Tuple of (width, height)

    Raises:
        CaptureError: If the bytes are not a decodable image
    """
    if not frame:
        raise CaptureError("Empty frame")

    buffer = np.frombuffer(frame, np.uint8)
    image = cv2.imdecode(buffer, cv2.IMREAD_UNCHANGED)

    if image is None:
        raise CaptureError("Failed to decode frame: cv2.imdecode returned None")

    height, width = image.shape[:2]
    return width, height


def render_test_frame(
    width: int,
    height: int,
    frame_index: int = 0,
    quality: int = 80,
) -> bytes:
    """
    Render a synthetic JPEG frame.

    A moving bar makes consecutive frames differ, which keeps encoded sizes
    realistic for dry runs.
    """
    image = np.zeros((height, width, 3), dtype=np.uint8)
    bar_x = (frame_index * 16) % max(width, 1)
    image[:, bar_x:bar_x + 16] = (0, 200, 255)

    ok, encoded = cv2.imencode(".jpg", image, [cv2.IMWRITE_JPEG_QUALITY, quality])
    if not ok:
        raise CaptureError("Failed to encode synthetic frame")
    return encoded.tobytes()
