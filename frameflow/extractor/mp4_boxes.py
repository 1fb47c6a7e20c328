"""
ISO base media (MP4) box helpers for streaming a file whose ``moov`` box
comes after ``mdat``.

Such a file cannot be demuxed from a pipe as it arrives. Moving the
``moov`` box in front of the media data turns it into a faststart layout,
provided every chunk offset in its sample tables is shifted by the distance
the media data moved.
"""

import logging
import struct
from dataclasses import dataclass

from frameflow.extractor.errors import DemuxError

logger = logging.getLogger(__name__)

# Boxes on the path from moov down to the chunk offset tables
_OFFSET_TABLE_PARENTS = {b"moov", b"trak", b"mdia", b"minf", b"stbl"}


@dataclass(frozen=True, slots=True)
class BoxHeader:
    box_type: bytes
    offset: int
    header_size: int
    size: int  # 0 means the box runs to the end of the file

    @property
    def end(self) -> int:
        return self.offset + self.size


def read_box_header(data: bytes, offset: int) -> BoxHeader | None:
    """Read the box header at ``offset``, or None if ``data`` ends before it does."""
    if offset + 8 > len(data):
        return None
    size, box_type = struct.unpack_from(">I4s", data, offset)
    if size == 1:
        if offset + 16 > len(data):
            return None
        size = struct.unpack_from(">Q", data, offset + 8)[0]
        return BoxHeader(box_type, offset, 16, size)
    return BoxHeader(box_type, offset, 8, size)


def find_leading_mdat(data: bytes) -> tuple[bool, BoxHeader | None]:
    """
    Walk the top-level boxes at the start of a file up to the first ``moov``
    or ``mdat``.

    Returns:
        ``(complete, mdat)``. ``complete`` is False while more bytes are
        needed to decide. ``mdat`` is set only for an MP4 whose media data
        precedes its ``moov`` box; faststart files and anything that is not
        an MP4 give None.
    """
    pos = 0
    while True:
        header = read_box_header(data, pos)
        if header is None:
            return False, None
        if pos == 0 and header.box_type != b"ftyp":
            return True, None
        if header.box_type == b"moov":
            return True, None
        if header.box_type == b"mdat":
            # An open-ended mdat leaves no room for a moov after it
            return True, header if header.size else None
        if header.size < header.header_size:
            return True, None
        pos += header.size


def find_box(data: bytes, box_type: bytes) -> BoxHeader | None:
    """Find a top-level box by type in a run of consecutive boxes."""
    pos = 0
    while True:
        header = read_box_header(data, pos)
        if header is None:
            return None
        if header.box_type == box_type:
            return header
        if header.size < header.header_size:
            return None
        pos += header.size


def _shift_table(buf: bytearray, body: int, end: int, fmt: str, delta: int) -> int:
    entry_size = struct.calcsize(fmt)
    # version/flags, then the entry count
    if body + 8 > end:
        return 0
    entry_count = struct.unpack_from(">I", buf, body + 4)[0]
    pos = body + 8
    for _ in range(entry_count):
        if pos + entry_size > end:
            break
        value = struct.unpack_from(fmt, buf, pos)[0] + delta
        try:
            struct.pack_into(fmt, buf, pos, value)
        except struct.error as e:
            raise DemuxError(f"Chunk offset {value} does not fit the sample table") from e
        pos += entry_size
    return entry_count


def _shift_offsets(buf: bytearray, start: int, end: int, delta: int) -> int:
    count = 0
    pos = start
    while pos + 8 <= end:
        header = read_box_header(buf, pos)
        if header is None:
            break
        size = header.size or end - pos
        if size < header.header_size or pos + size > end:
            break
        body = pos + header.header_size
        if header.box_type == b"stco":
            count += _shift_table(buf, body, pos + size, ">I", delta)
        elif header.box_type == b"co64":
            count += _shift_table(buf, body, pos + size, ">Q", delta)
        elif header.box_type in _OFFSET_TABLE_PARENTS:
            count += _shift_offsets(buf, body, pos + size, delta)
        pos += size
    return count


def rewrite_chunk_offsets(moov: bytes, delta: int) -> bytes:
    """
    Return a copy of a complete ``moov`` box with every ``stco``/``co64``
    chunk offset moved by ``delta`` bytes.
    """
    buf = bytearray(moov)
    count = _shift_offsets(buf, 0, len(buf), delta)
    logger.debug("[mp4] Shifted %d chunk offsets by %+d", count, delta)
    return bytes(buf)
