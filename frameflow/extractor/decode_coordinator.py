import logging
from dataclasses import dataclass
from typing import Callable

from frameflow.extractor.colorspace import yuv420_to_rgb
from frameflow.extractor.decoder import DecodeStatus, FrameDecoder
from frameflow.extractor.demuxer import EncodedSample
from frameflow.extractor.multipart import FramePackager
from frameflow.extractor.timestamps import TargetTimestamps

logger = logging.getLogger(__name__)

ImageEncoder = Callable[[bytes, int, int], bytes]


@dataclass
class DecodeStats:
    samples_fed: int = 0
    pictures_ready: int = 0
    pictures_matched: int = 0
    frames_emitted: int = 0


class DecodeCoordinator:
    """
    Drives the decoder over the sample stream and packages target frames.

    Every sample is fed to the decoder, matching or not, because later
    pictures may be predicted from the ones in between. The decoder hands
    pictures back in presentation order, possibly a few samples late, so
    targets are matched against each picture's own timestamp.
    """

    def __init__(
        self,
        decoder: FrameDecoder,
        targets: TargetTimestamps,
        packager: FramePackager,
        image_encoder: ImageEncoder,
    ) -> None:
        self.decoder = decoder
        self.targets = targets
        self.packager = packager
        self.image_encoder = image_encoder
        self.stats = DecodeStats()

    def process(self, sample: EncodedSample) -> list[bytes]:
        """
        Decode one sample.

        Returns:
            The framed parts of the selected pictures the decoder released,
            usually none or one.
        """
        if sample.is_keyframe:
            logger.debug("[decode] Keyframe sample at %.2fs", sample.seconds)

        status = self.decoder.decode(sample.data, sample.cts)
        self.stats.samples_fed += 1
        if status is not DecodeStatus.PICTURE_READY:
            return []
        return self._package_pictures()

    def finish(self) -> list[bytes]:
        """Flush the decoder at the end of the track and package what it held back."""
        if self.decoder.flush() is not DecodeStatus.PICTURE_READY:
            return []
        return self._package_pictures()

    def _package_pictures(self) -> list[bytes]:
        chunks = []
        for picture in self.decoder.take_pictures():
            self.stats.pictures_ready += 1
            target = self.targets.match(picture.cts)
            if target is None:
                continue
            self.stats.pictures_matched += 1

            rgb = yuv420_to_rgb(picture.planar, picture.width, picture.height)
            image = self.image_encoder(rgb, picture.width, picture.height)
            seconds = picture.cts / self.targets.timescale
            chunks.append(self.packager.package(image, seconds))
            self.targets.consume(target)
            self.stats.frames_emitted += 1

            logger.debug(
                "[decode] Frame %d at %.2fs (%dx%d, %d bytes)",
                self.stats.frames_emitted - 1,
                seconds,
                picture.width,
                picture.height,
                len(image),
            )
        return chunks
