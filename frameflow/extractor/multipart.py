"""
Multipart framing of extracted frames.

Each frame becomes one self-delimited part of a ``multipart/form-data``
body. Payload bytes are never escaped: the boundary carries a 128-bit random
suffix, which makes an accidental match inside PNG data negligible.
"""

import secrets

from frameflow.const import FRAME_CONTENT_TYPE, FRAME_FIELD_NAME

CRLF = b"\r\n"


def generate_boundary(prefix: str = "----VideoFrameBoundary") -> str:
    """Generate a fresh boundary token for one response."""
    return f"{prefix}{secrets.token_hex(16)}"


class MultipartEncoder:
    """Frames binary payloads as parts of a multipart byte stream."""

    def __init__(self, boundary: str):
        if not boundary or any(c in boundary for c in "\r\n"):
            raise ValueError("Boundary must be a non-empty single-line token")
        self.boundary = boundary
        self._delimiter = f"--{boundary}".encode("ascii")

    @property
    def content_type(self) -> str:
        return f"multipart/form-data; boundary={self.boundary}"

    def encode_part(
        self,
        payload: bytes,
        filename: str,
        content_type: str = FRAME_CONTENT_TYPE,
        name: str = FRAME_FIELD_NAME,
    ) -> bytes:
        """
        Build one complete part: delimiter, headers, blank line, payload, CRLF.

        Args:
            payload: Raw part body.
            filename: Filename advertised in the Content-Disposition header.
            content_type: MIME type of the payload.
            name: Form field name.

        Returns:
            bytes: The framed part, ready to be written.
        """
        headers = CRLF.join(
            [
                self._delimiter,
                f'Content-Disposition: form-data; name="{name}"; filename="{filename}"'.encode("utf-8"),
                f"Content-Type: {content_type}".encode("ascii"),
                b"",
                b"",
            ]
        )
        return b"".join((headers, payload, CRLF))

    def encode_end(self) -> bytes:
        """The closing delimiter that terminates the multipart body."""
        return self._delimiter + b"--" + CRLF


class FramePackager:
    """Wraps encoded frames into parts, numbering them in emission order."""

    def __init__(self, encoder: MultipartEncoder):
        self.encoder = encoder
        self.frame_count = 0

    @staticmethod
    def frame_filename(index: int, seconds: float) -> str:
        return f"frame_{index}_{seconds:.2f}s.png"

    def package(self, image: bytes, seconds: float) -> bytes:
        chunk = self.encoder.encode_part(image, self.frame_filename(self.frame_count, seconds))
        self.frame_count += 1
        return chunk
