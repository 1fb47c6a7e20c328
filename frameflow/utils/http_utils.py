import logging
import ssl
import typing
from dataclasses import dataclass
from enum import Enum
from functools import partial

import anyio
import h11
import httpx
from fastapi import Response
from starlette.background import BackgroundTask
from starlette.requests import Request
from starlette.types import Receive, Send, Scope
from tqdm.asyncio import tqdm as tqdm_asyncio

from frameflow.configs import settings
from frameflow.const import SUPPORTED_REQUEST_HEADERS

logger = logging.getLogger(__name__)


class DownloadError(Exception):
    def __init__(self, status_code, message):
        self.status_code = status_code
        self.message = message
        super().__init__(message)


def create_httpx_client(follow_redirects: bool = True, ssl_context: ssl.SSLContext | None = None, **kwargs) -> httpx.AsyncClient:
    """
    Create an HTTPX AsyncClient with the configured transports and timeout.

    Args:
        follow_redirects (bool): Whether to follow 3xx redirects automatically.
        ssl_context (ssl.SSLContext | None): Explicit SSLContext to use. Defaults to the system trust store.
        **kwargs: Additional AsyncClient keyword arguments.

    Returns:
        httpx.AsyncClient: Configured client.
    """
    kwargs.setdefault("mounts", settings.transport_config.get_mounts())
    kwargs.setdefault("timeout", settings.transport_config.timeout)
    return httpx.AsyncClient(
        follow_redirects=follow_redirects,
        verify=ssl_context or ssl.create_default_context(),
        **kwargs,
    )


class Streamer:
    def __init__(self, client):
        """
        Initialize a Streamer with a configured HTTP client.

        Args:
            client (httpx.AsyncClient): The HTTP client to use for streaming.
        """
        self.client = client
        self.response = None
        self.progress_bar = None
        self.bytes_transferred = 0
        self.total_size = 0

    async def create_streaming_response(self, url: str, headers: dict):
        """
        Send the upstream request and check its status. No retries are made:
        any failure is final for the request.

        Args:
            url (str): Source URL for the streaming content.
            headers (dict): Request headers.

        Raises:
            DownloadError: On a non-success status, a timeout or a network error.
        """
        try:
            request = self.client.build_request("GET", url, headers=headers)
            self.response = await self.client.send(request, stream=True, follow_redirects=True)
            self.response.raise_for_status()
        except httpx.TimeoutException:
            logger.warning(f"Timeout while fetching {url}")
            raise DownloadError(409, f"Timeout while fetching {url}")
        except httpx.HTTPStatusError as e:
            logger.error(f"HTTP error {e.response.status_code} while fetching {url}")
            raise DownloadError(
                e.response.status_code,
                f"Failed to fetch video: {e.response.status_code} {e.response.reason_phrase}",
            )
        except httpx.RequestError as e:
            logger.error(f"Error fetching {url}: {e}")
            raise DownloadError(502, f"Error fetching video: {e}")

    async def stream_content(self) -> typing.AsyncGenerator[bytes, None]:
        """
        Stream response content as an async byte generator.
        """
        if not self.response:
            raise RuntimeError("No response available for streaming")

        try:
            self.total_size = int(self.response.headers.get("Content-Length", 0))

            if settings.enable_streaming_progress:
                with tqdm_asyncio(
                    total=self.total_size or None,
                    unit="B",
                    unit_scale=True,
                    unit_divisor=1024,
                    desc="Fetching",
                    ncols=100,
                    mininterval=1,
                ) as self.progress_bar:
                    async for chunk in self.response.aiter_bytes():
                        yield chunk
                        self.bytes_transferred += len(chunk)
                        self.progress_bar.update(len(chunk))
            else:
                async for chunk in self.response.aiter_bytes():
                    yield chunk
                    self.bytes_transferred += len(chunk)

        except httpx.TimeoutException:
            logger.warning("Timeout while streaming")
            raise DownloadError(409, "Timeout while streaming")
        except httpx.RemoteProtocolError as e:
            logger.error(f"Protocol error after {self.bytes_transferred} bytes: {e}")
            raise DownloadError(502, f"Protocol error while streaming: {e}")
        except httpx.RequestError as e:
            logger.error(f"Network error after {self.bytes_transferred} bytes: {e}")
            raise DownloadError(502, f"Network error while streaming: {e}")
        except GeneratorExit:
            logger.info("Upstream read stopped after %s", self.format_bytes(self.bytes_transferred))

    async def get_range(self, url: str, headers: dict, start: int) -> bytes:
        """
        Fetch the bytes of ``url`` from ``start`` to the end with a range request.

        Args:
            url (str): Source URL.
            headers (dict): Request headers; a ``range`` header is added.
            start (int): First byte to fetch.

        Returns:
            bytes: The requested tail of the resource.

        Raises:
            DownloadError: On failure, or when the upstream ignores the range.
        """
        try:
            response = await self.client.get(url, headers={**headers, "range": f"bytes={start}-"})
            response.raise_for_status()
        except httpx.TimeoutException:
            logger.warning(f"Timeout while fetching bytes {start}- of {url}")
            raise DownloadError(409, f"Timeout while fetching {url}")
        except httpx.HTTPStatusError as e:
            logger.error(f"HTTP error {e.response.status_code} on range request to {url}")
            raise DownloadError(
                e.response.status_code,
                f"Failed to fetch video: {e.response.status_code} {e.response.reason_phrase}",
            )
        except httpx.RequestError as e:
            logger.error(f"Error fetching bytes {start}- of {url}: {e}")
            raise DownloadError(502, f"Error fetching video: {e}")

        if response.status_code != 206:
            raise DownloadError(502, f"Upstream does not support range requests (status {response.status_code})")
        return response.content

    @staticmethod
    def format_bytes(size) -> str:
        power = 2**10
        n = 0
        units = {0: "B", 1: "KB", 2: "MB", 3: "GB", 4: "TB"}
        while size > power:
            size /= power
            n += 1
        return f"{size:.2f} {units[n]}"

    async def close(self):
        """
        Close HTTP response and client resources.
        """
        if self.response:
            await self.response.aclose()
        if self.progress_bar:
            self.progress_bar.close()
        await self.client.aclose()


@dataclass
class ProxyRequestHeaders:
    request: dict


def get_proxy_headers(request: Request) -> ProxyRequestHeaders:
    """
    Collect the headers to send upstream: supported incoming headers, then
    ``h_<name>`` query parameters, with the configured User-Agent as default.

    Args:
        request (Request): Incoming HTTP request.

    Returns:
        ProxyRequestHeaders: Headers for the upstream request.
    """
    request_headers = {"user-agent": settings.user_agent}
    request_headers.update({k: v for k, v in request.headers.items() if k in SUPPORTED_REQUEST_HEADERS})
    request_headers.update({k[2:].lower(): v for k, v in request.query_params.items() if k.startswith("h_")})
    return ProxyRequestHeaders(request_headers)


class StreamState(Enum):
    OPEN = "open"
    WRITING = "writing"
    CLOSED = "closed"
    ABORTED = "aborted"


class FrameStreamingResponse(Response):
    """
    Streaming response that ends in exactly one of two ways.

    CLOSED: the body iterator finished and the body was terminated normally.
    ABORTED: the iterator raised or the client went away. No further bytes are
    sent; on an error the exception is re-raised so the server drops the
    connection and the client sees a truncated chunked body.
    """

    body_iterator: typing.AsyncIterable[bytes]

    def __init__(
        self,
        content: typing.AsyncIterable[bytes],
        status_code: int = 200,
        headers: typing.Optional[typing.Mapping[str, str]] = None,
        media_type: typing.Optional[str] = None,
        background: typing.Optional[BackgroundTask] = None,
    ) -> None:
        self.body_iterator = content
        self.status_code = status_code
        self.media_type = self.media_type if media_type is None else media_type
        self.background = background
        self.init_headers(headers)
        self.state = StreamState.OPEN
        self.bytes_sent = 0

    def init_headers(self, headers: typing.Optional[typing.Mapping[str, str]] = None) -> None:
        super().init_headers(headers)
        # The body length is unknown up front; never advertise one
        self.raw_headers = [(k, v) for k, v in self.raw_headers if k != b"content-length"]
        if not any(k == b"transfer-encoding" for k, _ in self.raw_headers):
            self.raw_headers.append((b"transfer-encoding", b"chunked"))

    def _finish(self, state: StreamState) -> None:
        if self.state in (StreamState.CLOSED, StreamState.ABORTED):
            return
        self.state = state
        logger.info("Frame stream %s after %d bytes", state.value, self.bytes_sent)

    @staticmethod
    async def listen_for_disconnect(receive: Receive) -> None:
        """
        Listen for client disconnect events to stop streaming.
        """
        try:
            while True:
                message = await receive()
                if message["type"] == "http.disconnect":
                    logger.debug("Client disconnected")
                    break
        except Exception as e:
            logger.error(f"Error in listen_for_disconnect: {str(e)}")

    async def _close_iterator(self) -> None:
        aclose = getattr(self.body_iterator, "aclose", None)
        if aclose is None:
            return
        # Runs during cancellation too; the iterator releases the upstream reader
        with anyio.CancelScope(shield=True):
            await aclose()

    async def stream_response(self, send: Send) -> None:
        """
        Send the headers at once, then every chunk as soon as it is produced.
        """
        await send({"type": "http.response.start", "status": self.status_code, "headers": self.raw_headers})
        self.state = StreamState.WRITING

        try:
            async for chunk in self.body_iterator:
                try:
                    await send({"type": "http.response.body", "body": chunk, "more_body": True})
                except (ConnectionResetError, anyio.BrokenResourceError, anyio.ClosedResourceError, OSError):
                    logger.info("Client disconnected during streaming")
                    self._finish(StreamState.ABORTED)
                    return
                self.bytes_sent += len(chunk)
        except anyio.get_cancelled_exc_class():
            self._finish(StreamState.ABORTED)
            raise
        except (httpx.RemoteProtocolError, h11.LocalProtocolError) as e:
            logger.warning(f"Protocol error during streaming: {e}")
            self._finish(StreamState.ABORTED)
            raise
        except Exception as e:
            logger.error(f"Aborting frame stream: {e}")
            self._finish(StreamState.ABORTED)
            raise
        finally:
            await self._close_iterator()

        await send({"type": "http.response.body", "body": b"", "more_body": False})
        self._finish(StreamState.CLOSED)

    async def __call__(self, scope: Scope, receive: Receive, send: Send) -> None:
        """
        ASGI entrypoint: run streaming and disconnect listener concurrently.
        """
        async with anyio.create_task_group() as task_group:
            stream_func = partial(self.stream_response, send)
            listen_func = partial(self.listen_for_disconnect, receive)

            async def wrap(func: typing.Callable[[], typing.Awaitable[None]]) -> None:
                try:
                    await func()
                finally:
                    task_group.cancel_scope.cancel()

            task_group.start_soon(wrap, stream_func)
            await wrap(listen_func)

        if self.background is not None:
            await self.background()
