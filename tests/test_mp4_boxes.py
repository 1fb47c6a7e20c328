import struct

import pytest

from frameflow.extractor.errors import DemuxError
from frameflow.extractor.mp4_boxes import find_box, find_leading_mdat, read_box_header, rewrite_chunk_offsets


def box(box_type: bytes, *children: bytes) -> bytes:
    payload = b"".join(children)
    return struct.pack(">I4s", 8 + len(payload), box_type) + payload


def offset_table(box_type: bytes, fmt: str, offsets: list[int]) -> bytes:
    entries = b"".join(struct.pack(fmt, o) for o in offsets)
    return box(box_type, b"\x00\x00\x00\x00", struct.pack(">I", len(offsets)), entries)


def moov_with(*tables: bytes, extra: bytes = b"") -> bytes:
    traks = [box(b"trak", box(b"mdia", box(b"minf", box(b"stbl", table)))) for table in tables]
    return box(b"moov", box(b"mvhd", b"\x00" * 20), *traks, extra)


def read_offsets(moov: bytes, box_type: bytes, fmt: str) -> list[int]:
    pos = moov.index(box_type) - 4
    count = struct.unpack_from(">I", moov, pos + 12)[0]
    size = struct.calcsize(fmt)
    return [struct.unpack_from(fmt, moov, pos + 16 + i * size)[0] for i in range(count)]


FTYP = box(b"ftyp", b"isom\x00\x00\x02\x00isomiso2mp41")


def test_read_box_header_handles_large_size():
    data = struct.pack(">I4sQ", 1, b"mdat", 5_000_000_000)

    header = read_box_header(data, 0)

    assert header.box_type == b"mdat"
    assert header.header_size == 16
    assert header.size == 5_000_000_000
    assert read_box_header(data[:12], 0) is None


def test_chunk_offsets_are_shifted_in_every_track():
    moov = moov_with(offset_table(b"stco", ">I", [48, 1048, 4096]), offset_table(b"co64", ">Q", [2**33, 2**33 + 7]))

    rewritten = rewrite_chunk_offsets(moov, 500)

    assert len(rewritten) == len(moov)
    assert read_offsets(rewritten, b"stco", ">I") == [548, 1548, 4596]
    assert read_offsets(rewritten, b"co64", ">Q") == [2**33 + 500, 2**33 + 507]


def test_negative_shift():
    moov = moov_with(offset_table(b"stco", ">I", [1000, 2000]))

    assert read_offsets(rewrite_chunk_offsets(moov, -40), b"stco", ">I") == [960, 1960]


def test_tables_outside_sample_tables_are_left_alone():
    stray = box(b"udta", offset_table(b"stco", ">I", [7]))
    moov = box(b"moov", stray)

    assert rewrite_chunk_offsets(moov, 100) == moov


def test_offset_overflow_is_a_demux_error():
    moov = moov_with(offset_table(b"stco", ">I", [0xFFFFFF00]))

    with pytest.raises(DemuxError):
        rewrite_chunk_offsets(moov, 0x1000)


def test_faststart_layout_needs_no_relayout():
    data = FTYP + moov_with(offset_table(b"stco", ">I", [100])) + box(b"mdat", b"\x00" * 64)

    assert find_leading_mdat(data) == (True, None)


def test_mdat_before_moov_is_found():
    head = FTYP + box(b"free") + struct.pack(">I4s", 1_000_008, b"mdat") + b"\x00" * 100

    complete, mdat = find_leading_mdat(head)

    assert complete
    assert mdat.offset == len(FTYP) + 8
    assert mdat.size == 1_000_008
    assert mdat.end == len(FTYP) + 8 + 1_000_008


def test_more_bytes_needed_to_decide():
    assert find_leading_mdat(FTYP) == (False, None)
    assert find_leading_mdat(FTYP[:5]) == (False, None)


@pytest.mark.parametrize(
    "data",
    [
        b"\x1a\x45\xdf\xa3" + b"\x00" * 60,  # Matroska
        b"\x00" * 64,
        FTYP + struct.pack(">I4s", 0, b"mdat") + b"\x00" * 32,  # runs to end of file
    ],
)
def test_no_relayout_for_other_inputs(data):
    assert find_leading_mdat(data) == (True, None)


def test_find_box():
    moov = moov_with(offset_table(b"stco", ">I", [1]))
    data = box(b"free", b"\x00" * 3) + moov

    header = find_box(data, b"moov")

    assert header.offset == 11
    assert data[header.offset : header.end] == moov
    assert find_box(data, b"mdat") is None
