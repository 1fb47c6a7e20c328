import logging
from collections.abc import AsyncIterator

from frameflow.extractor.demuxer import SourceChunk
from frameflow.extractor.errors import DemuxError
from frameflow.extractor.mp4_boxes import find_box, find_leading_mdat, read_box_header, rewrite_chunk_offsets
from frameflow.utils.http_utils import Streamer

logger = logging.getLogger(__name__)

# Most bytes held back while looking for the first moov or mdat box
_MAX_LEADING_BYTES = 4 * 1024 * 1024


async def open_source(streamer: Streamer, url: str, headers: dict) -> None:
    """Request the source video; raises DownloadError unless the upstream answers with success."""
    await streamer.create_streaming_response(url, headers)
    response = streamer.response
    logger.info(
        "[ingest] Fetching %s (status=%d, content-type=%s, content-length=%s)",
        url,
        response.status_code,
        response.headers.get("content-type", "unknown"),
        response.headers.get("content-length", "unknown"),
    )


async def fetch_trailing_moov(streamer: Streamer, url: str, headers: dict, start: int) -> bytes:
    """Fetch the boxes after the media data and return the complete ``moov`` box among them."""
    tail = await streamer.get_range(url, headers, start)
    header = find_box(tail, b"moov")
    if header is None:
        raise DemuxError(f"No moov box after the media data (searched {len(tail)} bytes from offset {start})")
    if header.size and header.end > len(tail):
        raise DemuxError(f"Truncated moov box: {header.size} bytes declared, {len(tail) - header.offset} available")
    return tail[header.offset : header.end if header.size else len(tail)]


async def _source_in_demux_order(streamer: Streamer, url: str, headers: dict) -> AsyncIterator[bytes]:
    """
    Yield the upstream body in an order the demuxer can read from a pipe.

    An MP4 whose ``moov`` follows ``mdat`` is rearranged as ``ftyp + moov +
    mdat``: the trailing boxes come from a range request and the ``moov``
    chunk offsets are shifted to match. Everything else passes through.
    """
    body = streamer.stream_content()
    try:
        head = bytearray()
        mdat = None
        async for data in body:
            head += data
            complete, mdat = find_leading_mdat(head)
            if complete or len(head) >= _MAX_LEADING_BYTES:
                break

        if mdat is None:
            yield bytes(head)
            async for data in body:
                yield data
            return

        ftyp = bytes(head[: read_box_header(head, 0).size])
        moov = await fetch_trailing_moov(streamer, url, headers, mdat.end)
        moov = rewrite_chunk_offsets(moov, len(ftyp) + len(moov) - mdat.offset)
        logger.info(
            "[ingest] moov after mdat: moved %d-byte moov in front of %d-byte mdat at offset %d",
            len(moov),
            mdat.size,
            mdat.offset,
        )
        yield ftyp + moov

        # The main response stops being read at the end of mdat
        remaining = mdat.size
        leading = bytes(head[mdat.offset : mdat.offset + remaining])
        remaining -= len(leading)
        yield leading
        if remaining > 0:
            async for data in body:
                yield data[:remaining]
                remaining -= len(data)
                if remaining <= 0:
                    break
    finally:
        await body.aclose()


async def iter_source_chunks(streamer: Streamer, url: str, headers: dict) -> AsyncIterator[SourceChunk]:
    """
    Yield the source bytes chunk by chunk, each tagged with the absolute
    offset of its first byte in the stream handed to the demuxer. Nothing is
    retained after a chunk is yielded.
    """
    offset = 0
    async for data in _source_in_demux_order(streamer, url, headers):
        if not data:
            continue
        yield SourceChunk(offset=offset, data=data)
        offset += len(data)
    logger.info("[ingest] Source exhausted after %s", Streamer.format_bytes(offset))
