import pytest

from frameflow.extractor.multipart import FramePackager, MultipartEncoder, generate_boundary

BOUNDARY = "----VideoFrameBoundarytest"


def test_part_layout():
    part = MultipartEncoder(BOUNDARY).encode_part(b"PNGDATA", "frame_0_1.50s.png")
    assert part == (
        b"------VideoFrameBoundarytest\r\n"
        b'Content-Disposition: form-data; name="frame"; filename="frame_0_1.50s.png"\r\n'
        b"Content-Type: image/png\r\n"
        b"\r\n"
        b"PNGDATA\r\n"
    )


def test_end_marker():
    assert MultipartEncoder(BOUNDARY).encode_end() == b"------VideoFrameBoundarytest--\r\n"


def test_content_type_header():
    assert MultipartEncoder(BOUNDARY).content_type == f"multipart/form-data; boundary={BOUNDARY}"


def test_split_on_boundary_recovers_payloads():
    encoder = MultipartEncoder(BOUNDARY)
    payloads = [b"\x89PNG\r\n\x1a\n" + bytes(range(256)), b"", b"\r\n\r\n--not-a-boundary\r\n"]
    body = b"".join(encoder.encode_part(p, f"frame_{i}_0.00s.png") for i, p in enumerate(payloads))
    body += encoder.encode_end()

    pieces = body.split(f"--{BOUNDARY}".encode())
    assert pieces[0] == b""
    assert pieces[-1] == b"--\r\n"

    recovered = []
    for piece in pieces[1:-1]:
        _, _, rest = piece.partition(b"\r\n\r\n")
        assert rest.endswith(b"\r\n")
        recovered.append(rest[:-2])
    assert recovered == payloads


def test_generated_boundaries_are_unique_and_prefixed():
    boundaries = {generate_boundary() for _ in range(100)}
    assert len(boundaries) == 100
    for boundary in boundaries:
        assert boundary.startswith("----VideoFrameBoundary")
        assert len(boundary) == len("----VideoFrameBoundary") + 32


def test_custom_boundary_prefix():
    assert generate_boundary("--frames").startswith("--frames")


@pytest.mark.parametrize("boundary", ["", "abc\r\n", "line\nbreak"])
def test_invalid_boundary_is_rejected(boundary):
    with pytest.raises(ValueError):
        MultipartEncoder(boundary)


def test_packager_numbers_frames_in_emission_order():
    packager = FramePackager(MultipartEncoder(BOUNDARY))
    first = packager.package(b"a", 0.0)
    second = packager.package(b"b", 1.004)
    third = packager.package(b"c", 12.346)

    assert b'filename="frame_0_0.00s.png"' in first
    assert b'filename="frame_1_1.00s.png"' in second
    assert b'filename="frame_2_12.35s.png"' in third
    assert packager.frame_count == 3


def test_packagers_do_not_share_counters():
    encoder = MultipartEncoder(BOUNDARY)
    FramePackager(encoder).package(b"a", 0.0)
    assert b"frame_0_" in FramePackager(encoder).package(b"b", 0.0)
