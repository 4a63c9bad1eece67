import logging
import secrets
import string
import typing
from functools import partial
from urllib import parse
from urllib.parse import urlencode

import anyio
import h11
import httpx
from fastapi import Response
from starlette.background import BackgroundTask
from starlette.concurrency import iterate_in_threadpool
from starlette.requests import Request
from starlette.types import Receive, Send, Scope
from tenacity import retry, stop_after_attempt, wait_exponential, retry_if_exception
from tqdm.asyncio import tqdm as tqdm_asyncio

from mirrorflow_proxy.configs import settings
from mirrorflow_proxy.const import ORIGIN_COOKIE_NAME, SUPPORTED_REQUEST_HEADERS

logger = logging.getLogger(__name__)


class DownloadError(Exception):
    kind = "upstream_error"

    def __init__(self, status_code, message):
        self.status_code = status_code
        self.message = message
        super().__init__(message)


class UpstreamTimeout(DownloadError):
    kind = "upstream_timeout"

    def __init__(self, url: str):
        super().__init__(504, f"Timeout while requesting {url}")
        self.url = url


class UpstreamHttpError(DownloadError):
    kind = "upstream_http_error"

    def __init__(self, status_code: int, url: str):
        super().__init__(status_code, f"HTTP error {status_code} while requesting {url}")
        self.url = url


def _is_transient(exc: BaseException) -> bool:
    if isinstance(exc, UpstreamTimeout):
        return True
    return isinstance(exc, DownloadError) and exc.status_code >= 500


def create_httpx_client(follow_redirects: bool = True, **kwargs) -> httpx.AsyncClient:
    """
    Create an HTTPX AsyncClient honouring the configured transport routes.

    Args:
        follow_redirects (bool): Whether to follow 3xx redirects automatically.
        **kwargs: Additional AsyncClient keyword arguments.

    Returns:
        httpx.AsyncClient: Configured client.
    """
    mounts = settings.transport_config.get_mounts()
    kwargs.setdefault("timeout", settings.transport_config.timeout)
    return httpx.AsyncClient(mounts=mounts, follow_redirects=follow_redirects, **kwargs)


@retry(
    stop=stop_after_attempt(3),
    wait=wait_exponential(multiplier=0.5, min=0.5, max=4),
    retry=retry_if_exception(_is_transient),
    reraise=True,
)
async def fetch_with_retry(client, method, url, headers, follow_redirects=True, **kwargs):
    """
    Fetch a URL with retry logic.

    Timeouts and 5xx responses are retried, everything else is raised immediately.

    Args:
        client (httpx.AsyncClient): HTTP client to use for the request.
        method (str): HTTP method (e.g., GET, POST).
        url (str): Target URL.
        headers (dict): Request headers.
        follow_redirects (bool): Whether to follow redirects.
        **kwargs: Additional request arguments.

    Returns:
        httpx.Response: HTTP response.

    Raises:
        DownloadError: If the request fails after retries.
    """
    try:
        response = await client.request(method, url, headers=headers, follow_redirects=follow_redirects, **kwargs)
        response.raise_for_status()
        return response
    except httpx.TimeoutException:
        logger.warning(f"Timeout while downloading {url}")
        raise UpstreamTimeout(url)
    except httpx.HTTPStatusError as e:
        logger.error(f"HTTP error {e.response.status_code} while downloading {url}")
        raise UpstreamHttpError(e.response.status_code, url)
    except httpx.RequestError as e:
        logger.error(f"Error downloading {url}: {e}")
        raise DownloadError(502, f"Error downloading {url}: {e}")


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
        self.start_byte = 0
        self.end_byte = 0
        self.total_size = 0

    @retry(
        stop=stop_after_attempt(2),
        wait=wait_exponential(multiplier=0.5, min=0.5, max=2),
        retry=retry_if_exception(_is_transient),
        reraise=True,
    )
    async def create_streaming_response(
        self,
        url: str,
        headers: dict,
        method: str = "GET",
        url_guard: typing.Optional[typing.Callable[[str], typing.Any]] = None,
        max_redirects: int = 5,
    ):
        """
        Create and send a streaming request.

        Redirects are followed one hop at a time so ``url_guard`` sees every
        target before it is requested; it rejects a hop by raising.

        Args:
            url (str): Source URL for the streaming content.
            headers (dict): Request headers.
            method (str): GET or HEAD.
            url_guard (callable, optional): Called with each redirect target.
            max_redirects (int): Hops followed before giving up.
        """
        try:
            for _ in range(max_redirects + 1):
                request = self.client.build_request(method, url, headers=headers)
                self.response = await self.client.send(request, stream=True, follow_redirects=False)
                if not self.response.is_redirect:
                    self.response.raise_for_status()
                    return

                await self.response.aclose()
                url = parse.urljoin(str(self.response.url), self.response.headers["location"])
                logger.debug(f"Following redirect to {url}")
                if url_guard:
                    url_guard(url)
            raise DownloadError(502, f"Too many redirects while requesting {url}")
        except httpx.TimeoutException:
            logger.warning("Timeout while creating streaming response")
            raise UpstreamTimeout(url)
        except httpx.HTTPStatusError as e:
            logger.error(f"HTTP error {e.response.status_code} while creating streaming response")
            await e.response.aclose()
            raise UpstreamHttpError(e.response.status_code, url)
        except httpx.RequestError as e:
            logger.error(f"Error creating streaming response: {e}")
            raise DownloadError(502, f"Error creating streaming response: {e}")

    async def stream_content(self) -> typing.AsyncGenerator[bytes, None]:
        """
        Stream response content as an async byte generator.
        """
        if not self.response:
            raise RuntimeError("No response available for streaming")

        try:
            self.parse_content_range()

            if settings.enable_streaming_progress:
                with tqdm_asyncio(
                    total=self.total_size,
                    initial=self.start_byte,
                    unit="B",
                    unit_scale=True,
                    unit_divisor=1024,
                    desc="Streaming",
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
            raise UpstreamTimeout(str(self.response.url))
        except httpx.RemoteProtocolError as e:
            if self.bytes_transferred > 0:
                logger.warning(
                    f"Remote server closed connection after {self.bytes_transferred} bytes: {e}"
                )
                return
            raise DownloadError(502, f"Protocol error while streaming: {e}")
        except GeneratorExit:
            logger.info("Streaming session stopped by the client")

    def parse_content_range(self):
        """
        Parse Content-Range/Content-Length headers to compute byte positions and total size.
        """
        content_range = self.response.headers.get("Content-Range", "")
        if content_range:
            range_info = content_range.split()[-1]
            span, _, total = range_info.partition("/")
            start, _, end = span.partition("-")
            try:
                self.start_byte, self.end_byte = int(start), int(end)
                self.total_size = int(total) if total.isdigit() else 0
            except ValueError:
                self.start_byte = self.end_byte = self.total_size = 0
        else:
            self.start_byte = 0
            self.total_size = int(self.response.headers.get("Content-Length", 0) or 0)
            self.end_byte = self.total_size - 1 if self.total_size > 0 else 0

    async def read_text(self) -> str:
        """Read the whole (already opened) response body as text."""
        await self.response.aread()
        return self.response.text

    async def close(self):
        """
        Close HTTP response and client resources.
        """
        if self.response:
            await self.response.aclose()
        if self.progress_bar:
            self.progress_bar.close()
        await self.client.aclose()


def encode_proxy_url(proxy_url: str, destination_url: str, cookie: typing.Optional[str] = None) -> str:
    """
    Encode a manifest proxy URL carrying the absolute upstream target and the forwarded cookie.

    Args:
        proxy_url (str): Absolute URL of the manifest proxy endpoint.
        destination_url (str): Absolute upstream URL.
        cookie (str, optional): Raw cookie string to forward upstream.

    Returns:
        str: Proxy URL with ``u`` and, if given, ``c`` query parameters.
    """
    query_params = {"u": destination_url}
    if cookie:
        query_params["c"] = cookie
    return f"{proxy_url.rstrip('?')}?{urlencode(query_params)}"


def is_host_allowed(url: str, patterns: typing.Iterable[str]) -> bool:
    """
    Check the host of ``url`` against an allow-list.

    A pattern is either an exact host, ``*.example.com`` (the domain and every
    subdomain of it) or ``*`` (any host).
    """
    host = (parse.urlsplit(url).hostname or "").lower()
    if not host:
        return False
    for pattern in patterns:
        pattern = pattern.strip().lower()
        if pattern == "*":
            return True
        if pattern.startswith("*."):
            suffix = pattern[2:]
            if host == suffix or host.endswith("." + suffix):
                return True
        elif host == pattern:
            return True
    return False


def generate_origin_cookie(length: int = 16) -> str:
    """Random value for the origin's bot-mitigation cookie, e.g. ``__ddg2_=Ab12...``."""
    alphabet = string.ascii_letters + string.digits
    return f"{ORIGIN_COOKIE_NAME}={''.join(secrets.choice(alphabet) for _ in range(length))}"


def get_forwarded_headers(request: Request) -> dict:
    """Client request headers that are passed on to the upstream (Range and friends)."""
    return {k: v for k, v in request.headers.items() if k.lower() in SUPPORTED_REQUEST_HEADERS}


def get_original_scheme(request: Request) -> str:
    """
    Determine the original scheme (http or https) of the incoming request.

    Args:
        request (Request): Incoming HTTP request.

    Returns:
        str: 'http' or 'https'
    """
    forwarded_proto = request.headers.get("X-Forwarded-Proto")
    if forwarded_proto:
        return forwarded_proto

    if (
        request.url.scheme == "https"
        or request.headers.get("X-Forwarded-Ssl") == "on"
        or request.headers.get("X-Forwarded-Protocol") == "https"
        or request.headers.get("X-Url-Scheme") == "https"
    ):
        return "https"

    return "http"


class EnhancedStreamingResponse(Response):
    body_iterator: typing.AsyncIterable[typing.Any]

    def __init__(
        self,
        content: typing.Union[typing.AsyncIterable[typing.Any], typing.Iterable[typing.Any]],
        status_code: int = 200,
        headers: typing.Optional[typing.Mapping[str, str]] = None,
        media_type: typing.Optional[str] = None,
        background: typing.Optional[BackgroundTask] = None,
    ) -> None:
        if isinstance(content, typing.AsyncIterable):
            self.body_iterator = content
        else:
            self.body_iterator = iterate_in_threadpool(content)
        self.status_code = status_code
        self.media_type = self.media_type if media_type is None else media_type
        self.background = background
        self.init_headers(headers)
        self.actual_content_length = 0

    @staticmethod
    async def listen_for_disconnect(receive: Receive) -> None:
        """
        Listen for client disconnect events to stop streaming gracefully.
        """
        while True:
            message = await receive()
            if message["type"] == "http.disconnect":
                logger.debug("Client disconnected")
                break

    async def stream_response(self, send: Send) -> None:
        """
        Stream the response body in chunks, finalising the response if upstream drops mid-stream.
        """
        await send({"type": "http.response.start", "status": self.status_code, "headers": self.raw_headers})

        data_sent = False
        try:
            async for chunk in self.body_iterator:
                if not isinstance(chunk, (bytes, memoryview)):
                    chunk = chunk.encode(self.charset)
                try:
                    await send({"type": "http.response.body", "body": chunk, "more_body": True})
                except (ConnectionResetError, anyio.BrokenResourceError):
                    logger.info("Client disconnected during streaming")
                    return
                data_sent = True
                self.actual_content_length += len(chunk)
        except (httpx.RemoteProtocolError, h11.LocalProtocolError, DownloadError) as e:
            if not data_sent:
                raise
            logger.warning(
                f"Upstream error after {self.actual_content_length} bytes were streamed, finalising response: {e}"
            )

        await send({"type": "http.response.body", "body": b"", "more_body": False})

    async def __call__(self, scope: Scope, receive: Receive, send: Send) -> None:
        """
        ASGI entrypoint: run streaming and disconnect listener concurrently.
        """
        async with anyio.create_task_group() as task_group:

            async def wrap(func: typing.Callable[[], typing.Awaitable[None]]) -> None:
                await func()
                task_group.cancel_scope.cancel()

            task_group.start_soon(wrap, partial(self.stream_response, send))
            await wrap(partial(self.listen_for_disconnect, receive))

        if self.background is not None:
            await self.background()
