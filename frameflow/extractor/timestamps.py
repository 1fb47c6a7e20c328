"""
Target timestamp selection.

Targets are expressed in the track's own ticks so that demuxed sample
timestamps can be compared without converting every sample to seconds.
"""

import bisect
import logging
import math

logger = logging.getLogger(__name__)


def select_target_timestamps(duration: int, timescale: int, interval_seconds: float) -> tuple[int, ...]:
    """
    Compute the tick values at which a frame should be extracted.

    ``target[k] = floor(k * interval * timescale)`` for every ``k`` with
    ``k * interval < duration_seconds``. A track shorter than the interval
    yields the single target 0; a non-positive duration yields no targets.

    Args:
        duration: Track duration in ticks.
        timescale: Ticks per second.
        interval_seconds: Spacing between targets in seconds.

    Returns:
        Strictly increasing tuple of tick values.
    """
    if interval_seconds <= 0:
        raise ValueError(f"Sampling interval must be positive, got {interval_seconds}")
    if duration <= 0 or timescale <= 0:
        return ()

    duration_seconds = duration / timescale
    targets = []
    k = 0
    while k * interval_seconds < duration_seconds:
        tick = math.floor(k * interval_seconds * timescale)
        # Sub-tick intervals can floor two k values onto the same tick
        if not targets or tick > targets[-1]:
            targets.append(tick)
        k += 1
    return tuple(targets)


class TargetTimestamps:
    """
    The per-request set of target ticks and the sample match window.

    A sample at tick ``t`` matches target ``ts`` when
    ``ts <= t < ts + timescale / match_fps``. With ``first_match_only`` a
    target that already produced a frame no longer matches.
    """

    def __init__(self, targets: tuple[int, ...], timescale: int, match_fps: int = 30, first_match_only: bool = False):
        self._targets = targets
        self._timescale = timescale
        self._window = timescale / match_fps
        self._first_match_only = first_match_only
        self._consumed: set[int] = set()

    @classmethod
    def for_track(
        cls,
        duration: int,
        timescale: int,
        interval_seconds: float,
        match_fps: int = 30,
        first_match_only: bool = False,
    ) -> "TargetTimestamps":
        targets = select_target_timestamps(duration, timescale, interval_seconds)
        logger.info(
            "[timestamps] %d targets over %.2fs (interval=%.2fs, timescale=%d)",
            len(targets),
            duration / timescale if timescale else 0.0,
            interval_seconds,
            timescale,
        )
        return cls(targets, timescale, match_fps=match_fps, first_match_only=first_match_only)

    @property
    def targets(self) -> tuple[int, ...]:
        return self._targets

    @property
    def timescale(self) -> int:
        return self._timescale

    def __len__(self) -> int:
        return len(self._targets)

    def match(self, tick: int) -> int | None:
        """Return the target matched by a sample at ``tick``, or None."""
        # Windows can overlap when targets are closer than one window, so walk
        # back from the closest target not after ``tick``.
        i = bisect.bisect_right(self._targets, tick) - 1
        while i >= 0:
            target = self._targets[i]
            if tick >= target + self._window:
                return None
            if not self._first_match_only or target not in self._consumed:
                return target
            i -= 1
        return None

    def consume(self, target: int) -> None:
        """Record that ``target`` produced a frame."""
        if self._first_match_only:
            self._consumed.add(target)
