"""
Per-request frame extraction pipeline.

Wires fetch -> demux -> target selection -> decode -> RGB -> PNG -> multipart
into one async byte generator. Everything stateful (boundary, frame counter,
decoder) lives in objects created for the request and dropped with it.
"""

import logging
from collections.abc import AsyncIterator, Callable
from dataclasses import dataclass, field

import anyio.to_thread

from frameflow.configs import settings
from frameflow.extractor.decode_coordinator import DecodeCoordinator, ImageEncoder
from frameflow.extractor.decoder import FrameDecoder, PyAVFrameDecoder
from frameflow.extractor.demuxer import StreamingDemuxer, TrackDescriptor
from frameflow.extractor.errors import NoCompatibleTrackError
from frameflow.extractor.image_encoder import encode_png
from frameflow.extractor.ingest import iter_source_chunks, open_source
from frameflow.extractor.multipart import FramePackager, MultipartEncoder, generate_boundary
from frameflow.extractor.timestamps import TargetTimestamps
from frameflow.utils.http_utils import Streamer

logger = logging.getLogger(__name__)

DemuxerFactory = Callable[[], StreamingDemuxer]
DecoderFactory = Callable[[TrackDescriptor], FrameDecoder]


def create_decoder(track: TrackDescriptor) -> FrameDecoder:
    return PyAVFrameDecoder(track.codec_name, track.extradata)


@dataclass
class FrameRequestContext:
    """State scoped to one extraction request."""

    url: str
    headers: dict
    interval_seconds: float
    boundary: str
    match_fps: int = 30
    first_match_only: bool = False
    encoder: MultipartEncoder = field(init=False)
    packager: FramePackager = field(init=False)

    def __post_init__(self) -> None:
        self.encoder = MultipartEncoder(self.boundary)
        self.packager = FramePackager(self.encoder)

    @classmethod
    def create(cls, url: str, headers: dict, interval_seconds: float | None = None) -> "FrameRequestContext":
        return cls(
            url=url,
            headers=headers,
            interval_seconds=interval_seconds or settings.frame_interval_seconds,
            boundary=generate_boundary(settings.boundary_prefix),
            match_fps=settings.match_window_fps,
            first_match_only=settings.first_match_only,
        )

    @property
    def content_type(self) -> str:
        return self.encoder.content_type


class FramePipeline:
    """
    Produces the multipart body for one request.

    The demuxer, decoder and image encoder are injectable so the pipeline
    can run against synthetic sources.
    """

    def __init__(
        self,
        context: FrameRequestContext,
        streamer: Streamer,
        demuxer_factory: DemuxerFactory = StreamingDemuxer,
        decoder_factory: DecoderFactory = create_decoder,
        image_encoder: ImageEncoder = encode_png,
    ) -> None:
        self.context = context
        self.streamer = streamer
        self.demuxer_factory = demuxer_factory
        self.decoder_factory = decoder_factory
        self.image_encoder = image_encoder

    async def stream(self) -> AsyncIterator[bytes]:
        """
        Yield one chunk per extracted frame, then the closing delimiter.

        Any exception propagates to the caller, which aborts the response; the
        closing delimiter is only produced after a complete run. Decoder,
        demuxer and upstream connection are released however the generator
        ends, including when the consumer closes it early.
        """
        ctx = self.context
        demuxer = None
        decoder = None
        try:
            await open_source(self.streamer, ctx.url, ctx.headers)

            demuxer = self.demuxer_factory()
            track = await demuxer.start(iter_source_chunks(self.streamer, ctx.url, ctx.headers))

            targets = TargetTimestamps.for_track(
                track.duration,
                track.timescale,
                ctx.interval_seconds,
                match_fps=ctx.match_fps,
                first_match_only=ctx.first_match_only,
            )
            if not targets:
                raise NoCompatibleTrackError(f"Video track {track.track_id} has no frames to extract")

            decoder = self.decoder_factory(track)
            coordinator = DecodeCoordinator(decoder, targets, ctx.packager, self.image_encoder)

            async for sample in demuxer.iter_samples():
                if sample.track_id != track.track_id:
                    continue
                # One call at a time: the decoder is strictly sequential
                for chunk in await anyio.to_thread.run_sync(coordinator.process, sample):
                    yield chunk

            for chunk in await anyio.to_thread.run_sync(coordinator.finish):
                yield chunk

            yield ctx.encoder.encode_end()

            stats = coordinator.stats
            logger.info(
                "[pipeline] %s: %d frames from %d samples (%d pictures, %d matched)",
                ctx.url,
                stats.frames_emitted,
                stats.samples_fed,
                stats.pictures_ready,
                stats.pictures_matched,
            )
        finally:
            if decoder is not None:
                decoder.close()
            if demuxer is not None:
                await demuxer.close()
            await self.streamer.close()
