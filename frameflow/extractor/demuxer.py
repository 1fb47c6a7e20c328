"""
Streaming PyAV demuxer for a single video track.

Bridges the async chunk stream of the ingest coordinator to PyAV's
synchronous I/O using an OS pipe, so the container is demuxed on the fly
without holding the file in memory.

Architecture:
  AsyncIterator[SourceChunk] --> async feeder task --> queue.Queue --> writer thread (pipe)
                                                                           |
                                                                 OS pipe (kernel buffer)
                                                                           |
                                      demux thread: av.open + track discovery + demux
                                                                           |
                                                 queue.Queue --> run_in_executor consumer

Both queues are bounded, so a slow decoder stalls the demux thread, which
stalls the pipe, which stalls the network reads.

The container is read sequentially, so an MP4 must arrive with its ``moov``
box before ``mdat``; the ingest coordinator rearranges files that do not.
"""

import asyncio
import logging
import os
import queue
import threading
from collections.abc import AsyncIterator
from dataclasses import dataclass

import av

from frameflow.configs import settings
from frameflow.extractor.errors import DemuxError, NoCompatibleTrackError

logger = logging.getLogger(__name__)

# Sentinel object to signal end-of-stream in the sample queue
_SENTINEL = object()

# Poll period for threads blocked on a queue, so close() is noticed
_POLL_SECONDS = 0.1

# container.duration is expressed in AV_TIME_BASE units
_AV_TIME_BASE = 1_000_000


@dataclass(frozen=True, slots=True)
class SourceChunk:
    """A slice of the source file and its absolute position."""

    offset: int
    data: bytes


@dataclass(frozen=True, slots=True)
class TrackDescriptor:
    """The selected video track, as reported once the container is ready."""

    track_id: int
    codec_name: str
    width: int
    height: int
    timescale: int  # Ticks per second
    duration: int  # In ticks
    extradata: bytes = b""

    @property
    def duration_seconds(self) -> float:
        return self.duration / self.timescale if self.timescale else 0.0


@dataclass(frozen=True, slots=True)
class EncodedSample:
    """One compressed video sample with its composition timestamp."""

    track_id: int
    data: bytes
    cts: int  # Composition timestamp in ticks
    timescale: int
    is_keyframe: bool = False

    @property
    def seconds(self) -> float:
        if self.timescale == 0:
            return 0.0
        return self.cts / self.timescale


class StreamingDemuxer:
    """
    Pull-based demuxer over an async chunk source.

    Usage:
        demuxer = StreamingDemuxer()
        try:
            track = await demuxer.start(chunks)
            async for sample in demuxer.iter_samples():
                ...
        finally:
            await demuxer.close()
    """

    def __init__(self, source_queue_size: int | None = None, sample_queue_size: int | None = None) -> None:
        self._source_queue: queue.Queue = queue.Queue(maxsize=source_queue_size or settings.source_queue_size)
        self._sample_queue: queue.Queue = queue.Queue(maxsize=sample_queue_size or settings.sample_queue_size)
        self._feed_done = threading.Event()
        self._closing = threading.Event()
        self._track: TrackDescriptor | None = None
        self._bytes_fed = 0
        self._source_error: Exception | None = None
        self._demux_error: DemuxError | None = None
        self._feeder_task: asyncio.Task | None = None
        self._writer_thread: threading.Thread | None = None
        self._demux_thread: threading.Thread | None = None
        self._read_fd: int | None = None
        self._write_fd: int | None = None
        self._closed = False

    @property
    def track(self) -> TrackDescriptor | None:
        return self._track

    @property
    def bytes_fed(self) -> int:
        return self._bytes_fed

    # ── Writer side ──────────────────────────────────────────────────

    async def _async_feeder(self, chunks: AsyncIterator[SourceChunk]) -> None:
        """
        Async task: pull chunks from the source and push them into the
        writer queue. ``queue.Queue.put()`` blocks when the queue is full, so
        it runs in the default executor.
        """
        loop = asyncio.get_running_loop()
        sq = self._source_queue
        try:
            async for chunk in chunks:
                if chunk.offset != self._bytes_fed:
                    raise DemuxError(
                        f"Non-contiguous input: chunk starts at {chunk.offset}, expected {self._bytes_fed}"
                    )
                await loop.run_in_executor(None, sq.put, chunk.data)
                self._bytes_fed += len(chunk.data)
        except asyncio.CancelledError:
            raise
        except Exception as e:
            logger.warning("[demuxer] Source feed failed after %d bytes: %s", self._bytes_fed, e)
            self._source_error = e
        finally:
            self._feed_done.set()

    def _write_chunks_sync(self) -> None:
        """
        Writer thread: drain the writer queue into the pipe. Closing the
        write end once the feed is done is the end-of-input flush.
        """
        write_fd = self._write_fd
        sq = self._source_queue
        broken = False
        try:
            while True:
                try:
                    data = sq.get(timeout=_POLL_SECONDS)
                except queue.Empty:
                    if self._closing.is_set() or (self._feed_done.is_set() and sq.empty()):
                        break
                    continue
                if broken:
                    # Keep draining so a blocked feeder put can complete
                    continue
                try:
                    view = memoryview(data)
                    while view:
                        view = view[os.write(write_fd, view) :]
                except OSError as e:
                    logger.debug("[demuxer] Pipe closed by reader: %s", e)
                    broken = True
        finally:
            logger.debug("[demuxer] End of input after %d bytes, flushing", self._bytes_fed)
            try:
                os.close(write_fd)
            except OSError:
                pass
            self._write_fd = None

    # ── Demux side ───────────────────────────────────────────────────

    def _put_sample(self, item) -> bool:
        """Enqueue for the consumer; gives up once close() was requested."""
        while True:
            try:
                self._sample_queue.put(item, timeout=_POLL_SECONDS)
                return True
            except queue.Full:
                if self._closing.is_set():
                    return False

    def _select_track(self, container: "av.container.InputContainer") -> TrackDescriptor | None:
        """Describe the first video stream of the container, if any."""
        for stream in container.streams:
            if stream.type != "video":
                continue
            codec_ctx = stream.codec_context
            tb_num = stream.time_base.numerator
            timescale = stream.time_base.denominator
            if stream.duration:
                duration = int(stream.duration) * tb_num
            elif container.duration:
                duration = int(container.duration) * timescale // _AV_TIME_BASE
            else:
                duration = 0
            return TrackDescriptor(
                track_id=stream.index,
                codec_name=codec_ctx.name,
                width=codec_ctx.width,
                height=codec_ctx.height,
                timescale=timescale,
                duration=duration,
                extradata=bytes(codec_ctx.extradata) if codec_ctx.extradata else b"",
            )
        return None

    def _open_and_demux(self, streams_ready: threading.Event) -> None:
        """
        Demux thread: open the container on the read end of the pipe,
        report the video track, then enqueue its samples in container order.
        """
        read_file = None
        container = None
        sample_count = 0
        try:
            read_file = os.fdopen(self._read_fd, "rb")
            self._read_fd = None  # ownership transferred

            try:
                container = av.open(read_file, mode="r", options={"fflags": "+genpts"})
            except Exception as e:
                raise DemuxError(f"Could not open container: {e}") from e

            self._track = self._select_track(container)
            streams_ready.set()
            if self._track is None:
                return

            track = self._track
            stream = container.streams[track.track_id]
            tb_num = stream.time_base.numerator

            for packet in container.demux(stream):
                if self._closing.is_set():
                    break
                # Zero-size packets mark the end of the stream
                if packet.size == 0:
                    continue
                pts = packet.pts if packet.pts is not None else packet.dts
                sample = EncodedSample(
                    track_id=track.track_id,
                    data=bytes(packet),
                    cts=int(pts or 0) * tb_num,
                    timescale=track.timescale,
                    is_keyframe=packet.is_keyframe,
                )
                if not self._put_sample(sample):
                    break
                sample_count += 1

            logger.info("[demuxer] Demux complete: %d samples", sample_count)

        except DemuxError as e:
            self._demux_error = e
        except Exception as e:
            logger.debug("[demuxer] Demux thread error after %d samples: %s", sample_count, e)
            self._demux_error = DemuxError(f"Malformed container: {e}")
        finally:
            streams_ready.set()
            if container is not None:
                try:
                    container.close()
                except Exception as e:
                    logger.debug("[demuxer] Error closing container: %s", e)
            if read_file is not None:
                # Unblocks the writer with EPIPE if it is still writing
                read_file.close()
            self._put_sample(_SENTINEL)

    async def start(self, chunks: AsyncIterator[SourceChunk]) -> TrackDescriptor:
        """
        Start feeding the pipe and wait until the container reports its
        video track.

        Raises:
            DemuxError: The container could not be opened or the input was
                not contiguous.
            NoCompatibleTrackError: No video track, or one without a usable
                duration.
            Exception: Whatever the chunk source raised while the container
                header was being read (e.g. DownloadError).
        """
        if self._demux_thread is not None:
            raise RuntimeError("Demuxer already started")

        loop = asyncio.get_running_loop()
        self._read_fd, self._write_fd = os.pipe()

        self._feeder_task = asyncio.create_task(self._async_feeder(chunks))

        self._writer_thread = threading.Thread(target=self._write_chunks_sync, daemon=True, name="frameflow-writer")
        self._writer_thread.start()

        streams_ready = threading.Event()
        self._demux_thread = threading.Thread(
            target=self._open_and_demux, args=(streams_ready,), daemon=True, name="frameflow-demux"
        )
        self._demux_thread.start()

        await loop.run_in_executor(None, streams_ready.wait)

        if self._track is None:
            self._raise_pending_error()
            raise NoCompatibleTrackError("No compatible video track found in the container")

        track = self._track
        if track.duration <= 0 or track.timescale <= 0:
            raise NoCompatibleTrackError(f"Video track {track.track_id} has no usable duration")

        logger.info(
            "[demuxer] Video track %d: %s %dx%d, %.2fs (timescale=%d)",
            track.track_id,
            track.codec_name,
            track.width,
            track.height,
            track.duration_seconds,
            track.timescale,
        )
        return track

    async def iter_samples(self) -> AsyncIterator[EncodedSample]:
        """
        Yield the selected track's samples in container order.

        Raises the source error or demux error, if any, once the remaining
        samples have been delivered.
        """
        if self._demux_thread is None:
            raise RuntimeError("Call start() before iter_samples()")

        loop = asyncio.get_running_loop()
        sq = self._sample_queue
        while True:
            sample = await loop.run_in_executor(None, sq.get)
            if sample is _SENTINEL:
                break
            yield sample

        self._raise_pending_error()

    def _raise_pending_error(self) -> None:
        # A broken source also truncates the container; report the cause
        if self._source_error is not None:
            raise self._source_error
        if self._demux_error is not None:
            raise self._demux_error

    async def close(self) -> None:
        """
        Stop the feeder and both threads and release the pipe.

        The demux thread closes the container itself, so nothing here
        touches it while demuxing may still be in progress.
        """
        if self._closed:
            return
        self._closed = True
        self._closing.set()

        if self._feeder_task is not None:
            self._feeder_task.cancel()
            try:
                await self._feeder_task
            except (asyncio.CancelledError, Exception):
                pass
            self._feeder_task = None

        loop = asyncio.get_running_loop()
        for thread in (self._demux_thread, self._writer_thread):
            if thread is not None:
                await loop.run_in_executor(None, thread.join, 5.0)
        self._demux_thread = None
        self._writer_thread = None

        for fd_name in ("_read_fd", "_write_fd"):
            fd = getattr(self, fd_name)
            if fd is not None:
                try:
                    os.close(fd)
                except OSError:
                    pass
                setattr(self, fd_name, None)
