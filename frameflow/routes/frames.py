from typing import Annotated

from fastapi import APIRouter, Depends, Query, Request
from fastapi.responses import Response

from frameflow.const import EXTRACT_FRAMES_PATH
from frameflow.extractor.pipeline import FramePipeline
from frameflow.handlers import PipelineFactory, StreamerFactory, handle_extract_frames, setup_streamer
from frameflow.utils.http_utils import ProxyRequestHeaders, get_proxy_headers

frames_router = APIRouter()


def get_streamer_factory() -> StreamerFactory:
    return setup_streamer


def get_pipeline_factory() -> PipelineFactory:
    return FramePipeline


@frames_router.get(EXTRACT_FRAMES_PATH, summary="Stream periodic frames of a remote video as PNG parts")
async def extract_frames(
    request: Request,
    proxy_headers: Annotated[ProxyRequestHeaders, Depends(get_proxy_headers)],
    streamer_factory: Annotated[StreamerFactory, Depends(get_streamer_factory)],
    pipeline_factory: Annotated[PipelineFactory, Depends(get_pipeline_factory)],
    url: Annotated[str | None, Query(description="Absolute URL of the source video")] = None,
    interval: Annotated[str | None, Query(description="Seconds between extracted frames")] = None,
) -> Response:
    """
    Stream one PNG frame per interval of the video at ``url`` as a
    ``multipart/form-data`` body.
    """
    return await handle_extract_frames(
        request,
        url,
        interval,
        proxy_headers,
        streamer_factory=streamer_factory,
        pipeline_factory=pipeline_factory,
    )
