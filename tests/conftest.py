"""
Pytest configuration and synthetic pipeline collaborators.

The live test URL is loaded from the environment for privacy.
Locally, add it to your .env file. For CI/CD, configure GitHub Secrets.
"""

import os
from pathlib import Path

import httpx
import pytest
from dotenv import load_dotenv

from frameflow.extractor.decoder import DecodedPicture, DecodeStatus
from frameflow.extractor.demuxer import EncodedSample, TrackDescriptor
from frameflow.utils.http_utils import Streamer

# Load .env file from project root
project_root = Path(__file__).parent.parent
load_dotenv(project_root / ".env")

SYNTHETIC_TIMESCALE = 90000
SYNTHETIC_WIDTH = 4
SYNTHETIC_HEIGHT = 2


def pytest_configure(config):
    """Configure pytest-asyncio mode."""
    config.addinivalue_line("markers", "asyncio: mark test as async")


class SyntheticDemuxer:
    """Stands in for StreamingDemuxer: drains the source, then replays fixed samples."""

    def __init__(self, track: TrackDescriptor, samples: list[EncodedSample], error: Exception | None = None):
        self.track = track
        self.samples = samples
        self.error = error
        self.bytes_received = 0
        self.closed = False

    async def start(self, chunks) -> TrackDescriptor:
        async for chunk in chunks:
            assert chunk.offset == self.bytes_received
            self.bytes_received += len(chunk.data)
        return self.track

    async def iter_samples(self):
        for sample in self.samples:
            yield sample
        if self.error is not None:
            raise self.error

    async def close(self) -> None:
        self.closed = True


class SyntheticDecoder:
    """
    Decodes a sample to a uniform grey picture whose luma is the sample's
    first byte. Samples starting with 0x00 produce no picture.

    ``delay`` holds pictures back by that many samples, the way a decoder
    does for streams with B-frames, until ``flush``.
    """

    def __init__(self, width: int = SYNTHETIC_WIDTH, height: int = SYNTHETIC_HEIGHT, delay: int = 0):
        self.width = width
        self.height = height
        self.delay = delay
        self.fed: list[bytes] = []
        self.flushed = False
        self.closed = False
        self._held: list[DecodedPicture] = []
        self._ready: list[DecodedPicture] = []

    def decode(self, data: bytes, cts: int) -> DecodeStatus:
        self.fed.append(data)
        if data[0] != 0:
            chroma = ((self.width + 1) // 2) * ((self.height + 1) // 2)
            planar = bytes([data[0]]) * (self.width * self.height) + b"\x80" * (2 * chroma)
            self._held.append(DecodedPicture(cts, self.width, self.height, planar=planar))
        while len(self._held) > self.delay:
            self._ready.append(self._held.pop(0))
        return DecodeStatus.PICTURE_READY if self._ready else DecodeStatus.NEEDS_MORE_INPUT

    def flush(self) -> DecodeStatus:
        self.flushed = True
        self._ready.extend(self._held)
        self._held = []
        return DecodeStatus.PICTURE_READY if self._ready else DecodeStatus.NEEDS_MORE_INPUT

    def take_pictures(self) -> list[DecodedPicture]:
        pictures, self._ready = self._ready, []
        return pictures

    def close(self) -> None:
        self.closed = True


def make_synthetic_track(duration_seconds: float, fps: int = 30, timescale: int = SYNTHETIC_TIMESCALE):
    """A video track with one sample every 1/fps seconds, luma cycling 1..255."""
    duration = round(duration_seconds * timescale)
    track = TrackDescriptor(
        track_id=1,
        codec_name="synthetic",
        width=SYNTHETIC_WIDTH,
        height=SYNTHETIC_HEIGHT,
        timescale=timescale,
        duration=duration,
    )
    step = timescale // fps
    samples = [
        EncodedSample(track_id=1, data=bytes([i % 255 + 1]), cts=i * step, timescale=timescale, is_keyframe=i == 0)
        for i in range(duration // step)
    ]
    return track, samples


async def _in_chunks(data: bytes, size: int):
    for offset in range(0, len(data), size):
        yield data[offset : offset + size]


def make_mock_streamer(
    content: bytes = b"\x00" * 4096,
    status_code: int = 200,
    seen_requests: list | None = None,
    chunk_size: int | None = None,
    accept_ranges: bool = True,
):
    """
    A Streamer whose upstream is an in-process httpx MockTransport.

    ``bytes=<start>-`` range requests are answered with 206 unless
    ``accept_ranges`` is False, in which case the whole body comes back.
    """

    def handler(request: httpx.Request) -> httpx.Response:
        if seen_requests is not None:
            seen_requests.append(request)
        headers = {"content-type": "video/mp4"}
        body, status = content, status_code
        range_header = request.headers.get("range")
        if range_header and accept_ranges and status_code == 200:
            start = int(range_header.removeprefix("bytes=").split("-")[0])
            body, status = content[start:], 206
            headers["content-range"] = f"bytes {start}-{len(content) - 1}/{len(content)}"
        if chunk_size:
            return httpx.Response(status, content=_in_chunks(body, chunk_size), headers=headers)
        return httpx.Response(status, content=body, headers=headers)

    return Streamer(httpx.AsyncClient(transport=httpx.MockTransport(handler)))


@pytest.fixture
def synthetic_track():
    return make_synthetic_track


@pytest.fixture
def mock_streamer():
    return make_mock_streamer


@pytest.fixture
def synthetic_demuxer():
    return SyntheticDemuxer


@pytest.fixture
def synthetic_decoder():
    return SyntheticDecoder


@pytest.fixture
def get_test_url():
    """
    Returns the live video URL for network tests, or None.

    Usage:
        def test_something(get_test_url):
            url = get_test_url()
            if url is None:
                pytest.skip("TEST_VIDEO_URL not set")
    """

    def _get_url() -> str | None:
        return os.environ.get("TEST_VIDEO_URL")

    return _get_url
