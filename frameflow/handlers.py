import logging
import math
from typing import Callable
from urllib.parse import urlparse

from fastapi import Request, Response
from fastapi.responses import PlainTextResponse

from .extractor.pipeline import FramePipeline, FrameRequestContext
from .utils.http_utils import FrameStreamingResponse, ProxyRequestHeaders, Streamer, create_httpx_client

logger = logging.getLogger(__name__)

StreamerFactory = Callable[[], Streamer]
PipelineFactory = Callable[[FrameRequestContext, Streamer], FramePipeline]


class RequestInvalid(ValueError):
    """The request cannot be served; answered with 400 before any streaming."""


def setup_streamer() -> Streamer:
    """
    Set up an HTTP client and a streamer for the upstream video.

    Returns:
        Streamer: A streamer owning a fresh httpx.AsyncClient.
    """
    return Streamer(create_httpx_client())


def validate_video_url(url: str | None) -> str:
    """Require an absolute http(s) URL."""
    if not url:
        raise RequestInvalid("Missing video URL parameter")
    parsed = urlparse(url)
    if parsed.scheme not in ("http", "https") or not parsed.netloc:
        raise RequestInvalid("Invalid video URL parameter: an absolute http(s) URL is required")
    return url


def parse_interval(interval: str | None) -> float | None:
    """Parse the optional sampling interval in seconds."""
    if interval is None or interval == "":
        return None
    try:
        value = float(interval)
    except ValueError:
        raise RequestInvalid(f"Invalid interval parameter: {interval!r}")
    if not math.isfinite(value) or value <= 0:
        raise RequestInvalid("Invalid interval parameter: must be a positive number of seconds")
    return value


async def handle_extract_frames(
    request: Request,
    url: str | None,
    interval: str | None,
    proxy_headers: ProxyRequestHeaders,
    streamer_factory: StreamerFactory = setup_streamer,
    pipeline_factory: PipelineFactory = FramePipeline,
) -> Response:
    """
    Validate the request and start streaming frames.

    The response headers go out immediately; frames follow as the video is
    fetched and decoded. Failures after that point abort the stream.

    Args:
        request (Request): The incoming FastAPI request object.
        url (str | None): The URL of the source video.
        interval (str | None): Optional sampling interval in seconds.
        proxy_headers (ProxyRequestHeaders): Headers to be used in the upstream request.
        streamer_factory: Creates the upstream streamer.
        pipeline_factory: Creates the extraction pipeline.

    Returns:
        Response: A 400 plain-text response, or the multipart frame stream.
    """
    try:
        video_url = validate_video_url(url)
        interval_seconds = parse_interval(interval)
    except RequestInvalid as e:
        logger.info(f"Rejected {request.url.path} request: {e}")
        return PlainTextResponse(str(e), status_code=400)

    context = FrameRequestContext.create(video_url, proxy_headers.request, interval_seconds)
    pipeline = pipeline_factory(context, streamer_factory())
    logger.info(f"Extracting frames every {context.interval_seconds:g}s from {video_url}")

    return FrameStreamingResponse(
        pipeline.stream(),
        status_code=200,
        headers={"Content-Type": context.content_type},
    )
