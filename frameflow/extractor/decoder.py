"""
Stateful video decoder adapter around a PyAV codec context.

The decoder keeps reference-frame state between calls, so it must be fed
every sample of the track in container order and must never be shared
between requests.

Pictures come back in presentation order, possibly several samples after
the one that carried them when the stream reorders frames (B-frames), so
each picture keeps its own timestamp.
"""

import logging
from enum import Enum
from typing import Protocol

import av
import numpy as np

from frameflow.extractor.colorspace import chroma_size

logger = logging.getLogger(__name__)


class DecodeStatus(Enum):
    PICTURE_READY = "picture_ready"
    NEEDS_MORE_INPUT = "needs_more_input"


class DecodedPicture:
    """
    One decoded picture and its presentation timestamp in track ticks.

    ``planar`` is a 4:2:0 buffer (luma plane, then two chroma planes). When
    built from a PyAV frame it is extracted on first access, so pictures
    that match no target cost nothing beyond decoding.
    """

    __slots__ = ("cts", "width", "height", "_planar", "_frame")

    def __init__(self, cts: int, width: int, height: int, planar: bytes | None = None, frame=None) -> None:
        self.cts = cts
        self.width = width
        self.height = height
        self._planar = planar
        self._frame = frame

    @property
    def planar(self) -> bytes:
        if self._planar is None:
            self._planar = _frame_to_planar(self._frame)
            self._frame = None
        return self._planar


class FrameDecoder(Protocol):
    """Contract of the bitstream decoder driven by the decode coordinator."""

    def decode(self, data: bytes, cts: int) -> DecodeStatus: ...

    def flush(self) -> DecodeStatus: ...

    def take_pictures(self) -> list[DecodedPicture]: ...

    def close(self) -> None: ...


def _copy_plane(plane, width: int, height: int) -> bytes:
    """Copy the visible area of a plane, dropping the line padding."""
    rows = np.frombuffer(plane, dtype=np.uint8).reshape(-1, plane.line_size)
    return rows[:height, :width].tobytes()


def _frame_to_planar(frame: av.VideoFrame) -> bytes:
    if frame.format.name != "yuv420p":
        frame = frame.reformat(format="yuv420p")
    width, height = frame.width, frame.height
    chroma_width, chroma_height = chroma_size(width, height)
    return b"".join(
        (
            _copy_plane(frame.planes[0], width, height),
            _copy_plane(frame.planes[1], chroma_width, chroma_height),
            _copy_plane(frame.planes[2], chroma_width, chroma_height),
        )
    )


class PyAVFrameDecoder:
    """
    Decoder backed by ``av.CodecContext``.

    Codec configuration (e.g. H.264 SPS/PPS in avcC form) is passed as
    extradata so that length-prefixed samples from MP4 decode directly.
    Packets are stamped with the sample's composition timestamp; libavcodec
    carries it through reordering onto the frame that was coded in them.
    """

    def __init__(self, codec_name: str, extradata: bytes = b"") -> None:
        self._codec = av.CodecContext.create(codec_name, "r")
        if extradata:
            self._codec.extradata = extradata
        # Frame threading holds pictures back by one frame per thread
        self._codec.thread_count = 1
        self._codec_name = codec_name
        self._pending: list[DecodedPicture] = []
        self._last_cts = 0
        self._flushed = False
        self._samples_fed = 0
        self._pictures_ready = 0

        logger.info("[decoder] Initialized %s decoder (extradata=%d bytes)", codec_name, len(extradata))

    def decode(self, data: bytes, cts: int) -> DecodeStatus:
        """Feed one compressed sample; report whether pictures became available."""
        self._samples_fed += 1
        self._last_cts = cts
        packet = av.Packet(data)
        packet.pts = cts
        return self._receive(packet)

    def flush(self) -> DecodeStatus:
        """Signal the end of the track and collect the pictures still held back."""
        if self._codec is None or self._flushed:
            return DecodeStatus.NEEDS_MORE_INPUT
        self._flushed = True
        return self._receive(None)

    def _receive(self, packet: av.Packet | None) -> DecodeStatus:
        try:
            frames = self._codec.decode(packet)
        except av.error.FFmpegError as e:
            # Broken samples only cost their own pictures
            logger.debug("[decoder] Decode error on sample %d: %s", self._samples_fed, e)
            frames = []

        for frame in frames:
            if frame.pts is None:
                logger.debug("[decoder] Picture without pts, using the last sample's timestamp")
            cts = frame.pts if frame.pts is not None else self._last_cts
            self._pending.append(DecodedPicture(cts, frame.width, frame.height, frame=frame))
        self._pictures_ready += len(frames)

        return DecodeStatus.PICTURE_READY if self._pending else DecodeStatus.NEEDS_MORE_INPUT

    def take_pictures(self) -> list[DecodedPicture]:
        """Hand over the pictures decoded since the last call, in presentation order."""
        pictures, self._pending = self._pending, []
        return pictures

    def close(self) -> None:
        """Release the codec context. Safe to call more than once."""
        if self._codec is None:
            return
        logger.debug(
            "[decoder] Closing %s decoder: %d samples fed, %d pictures ready",
            self._codec_name,
            self._samples_fed,
            self._pictures_ready,
        )
        # PyAV frees the native context on garbage collection
        self._codec = None
        self._pending = []
