import io

from PIL import Image

from frameflow.configs import settings


def encode_png(rgb: bytes, width: int, height: int, compress_level: int | None = None) -> bytes:
    """Encode an interleaved RGB24 buffer as a PNG image."""
    if compress_level is None:
        compress_level = settings.png_compress_level
    image = Image.frombytes("RGB", (width, height), rgb)
    output = io.BytesIO()
    image.save(output, format="PNG", compress_level=compress_level)
    return output.getvalue()
