"""
Planar YUV 4:2:0 to interleaved RGB24 conversion.

Uses the full-range BT.601 coefficients:

    R = Y + 1.402 V
    G = Y - 0.344 U - 0.714 V
    B = Y + 1.772 U

with U and V centered on 128, rounded half-up and clamped to [0, 255].
"""

import numpy as np


def chroma_size(width: int, height: int) -> tuple[int, int]:
    """Width and height of each chroma plane for a 4:2:0 picture."""
    return (width + 1) // 2, (height + 1) // 2


def planar_size(width: int, height: int) -> int:
    """Byte length of a planar 4:2:0 buffer: one luma and two chroma planes."""
    chroma_width, chroma_height = chroma_size(width, height)
    return width * height + 2 * chroma_width * chroma_height


def yuv420_to_rgb(planar: bytes, width: int, height: int) -> bytes:
    """
    Convert a planar ``[Y][U][V]`` buffer to row-major interleaved RGB.

    Args:
        planar: Luma plane (``width * height`` bytes) followed by the two
            chroma planes (``ceil(width/2) * ceil(height/2)`` bytes each).
        width: Picture width in pixels.
        height: Picture height in pixels.

    Returns:
        ``width * height * 3`` bytes, one R, G, B triple per pixel.
    """
    if width <= 0 or height <= 0:
        raise ValueError(f"Invalid picture size {width}x{height}")
    expected = planar_size(width, height)
    if len(planar) < expected:
        raise ValueError(f"Planar buffer too short: {len(planar)} < {expected} bytes for {width}x{height}")

    chroma_width, chroma_height = chroma_size(width, height)
    luma_len = width * height
    chroma_len = chroma_width * chroma_height

    buf = np.frombuffer(planar, dtype=np.uint8, count=expected)
    y = buf[:luma_len].reshape(height, width).astype(np.float64)
    u = buf[luma_len : luma_len + chroma_len].reshape(chroma_height, chroma_width)
    v = buf[luma_len + chroma_len :].reshape(chroma_height, chroma_width)

    # Each chroma sample covers a 2x2 block of luma samples
    u = u.repeat(2, axis=0).repeat(2, axis=1)[:height, :width].astype(np.float64) - 128.0
    v = v.repeat(2, axis=0).repeat(2, axis=1)[:height, :width].astype(np.float64) - 128.0

    rgb = np.empty((height, width, 3), dtype=np.float64)
    rgb[..., 0] = y + 1.402 * v
    rgb[..., 1] = y - 0.344 * u - 0.714 * v
    rgb[..., 2] = y + 1.772 * u

    return np.clip(np.floor(rgb + 0.5), 0, 255).astype(np.uint8).tobytes()
