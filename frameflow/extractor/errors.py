class FrameExtractionError(Exception):
    """Base class for fatal pipeline errors raised after streaming has started."""


class DemuxError(FrameExtractionError):
    """The container could not be parsed."""


class NoCompatibleTrackError(FrameExtractionError):
    """The container has no usable video track."""
