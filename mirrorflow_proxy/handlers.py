import logging
from urllib.parse import urlsplit

import httpx
from fastapi import Request, Response
from fastapi.responses import JSONResponse
from starlette.background import BackgroundTask

from .configs import settings
from .const import (
    CORS_HEADERS,
    MANIFEST_ACCEPT,
    MANIFEST_CONTENT_TYPE,
    MANIFEST_EXTENSIONS,
    SEGMENT_ACCEPT,
    SUPPORTED_RESPONSE_HEADERS,
)
from .extractors.base import ExtractorError, HostNotAllowed, InvalidUrl
from .schemas import ManifestProxyParams
from .utils.base64_utils import process_potential_base64_url
from .utils.http_utils import (
    DownloadError,
    EnhancedStreamingResponse,
    Streamer,
    create_httpx_client,
    get_original_scheme,
    is_host_allowed,
)
from .utils.m3u8_processor import M3U8Processor, RewriteContext

logger = logging.getLogger(__name__)


def handle_exceptions(exception: Exception) -> Response:
    """
    Handle exceptions and return structured JSON error responses.

    Args:
        exception (Exception): The exception that was raised.

    Returns:
        Response: An HTTP response carrying the error kind, a message and triage context.
    """
    if isinstance(exception, ExtractorError):
        logger.error(f"Extraction failed ({exception.kind}): {exception}")
        status_code, kind, context = exception.status_code, exception.kind, exception.context
    elif isinstance(exception, DownloadError):
        logger.error(f"Upstream error: {exception}")
        status_code, kind, context = exception.status_code, exception.kind, {}
    else:
        logger.exception(f"Internal server error while handling request: {exception}")
        status_code, kind, context = 502, "internal_error", {}

    return JSONResponse(
        status_code=status_code,
        content={"error": kind, "detail": str(exception), "context": context},
        headers=CORS_HEADERS,
    )


def prepare_response_headers(original_headers: httpx.Headers) -> dict:
    """
    Keep the upstream caching, range and type headers and add the CORS ones.

    Args:
        original_headers (httpx.Headers): The original headers from the upstream response.

    Returns:
        dict: The prepared headers for the proxy response.
    """
    response_headers = {k: v for k, v in original_headers.multi_items() if k.lower() in SUPPORTED_RESPONSE_HEADERS}
    response_headers.update(CORS_HEADERS)
    return response_headers


def is_manifest_url(url: str) -> bool:
    return urlsplit(url).path.lower().endswith(MANIFEST_EXTENSIONS)


def validate_destination(destination: str) -> str:
    """
    Decode and gate the upstream target.

    Raises:
        InvalidUrl: When the target is not an absolute http(s) URL.
        HostNotAllowed: When its host is not on the allow-list.
    """
    return check_destination(process_potential_base64_url(destination.strip()))


def check_destination(destination: str) -> str:
    """Gate one upstream URL, the initial target or a redirect hop."""
    parts = urlsplit(destination)
    if parts.scheme not in ("http", "https") or not parts.hostname:
        raise InvalidUrl(f"Not an absolute http(s) URL: {destination[:200]}")
    if not is_host_allowed(destination, settings.allowed_hosts):
        raise HostNotAllowed(f"Host {parts.hostname} is not allowed", context={"host": parts.hostname})
    return destination


def build_upstream_headers(destination: str, cookie: str | None, forwarded: dict) -> dict:
    referer = settings.mirror_host.rstrip("/") + "/"
    headers = {
        "user-agent": settings.user_agent,
        "referer": referer,
        "origin": settings.mirror_host.rstrip("/"),
    }
    if is_manifest_url(destination):
        headers["accept"] = MANIFEST_ACCEPT
        # a partial manifest cannot be rewritten
        forwarded = {k: v for k, v in forwarded.items() if k.lower() not in ("range", "if-range")}
    else:
        headers["accept"] = SEGMENT_ACCEPT
    headers.update(forwarded)
    if cookie:
        headers["cookie"] = cookie
    return headers


async def handle_manifest_proxy(
    request: Request, params: ManifestProxyParams, forwarded_headers: dict, method: str = "GET"
) -> Response:
    """
    Proxy a manifest, segment or key.

    Manifests are fetched whole and every reference in them is rewritten to come
    back through this endpoint. Everything else is streamed through unchanged
    with its range and caching headers.

    Args:
        request (Request): The incoming FastAPI request object.
        params (ManifestProxyParams): Upstream target and cookie to forward.
        forwarded_headers (dict): Client headers to pass upstream (Range...).
        method (str): GET or HEAD.

    Returns:
        Union[Response, EnhancedStreamingResponse]: Either a rewritten playlist or a streaming response.
    """
    try:
        destination = validate_destination(params.destination)
    except ExtractorError as e:
        return handle_exceptions(e)

    content_range = forwarded_headers.get("range", "")
    if "nan" in content_range.casefold():
        # Handle invalid range requests "bytes=NaN-NaN"
        return Response(status_code=416, content="Invalid Range Header", headers=CORS_HEADERS)

    upstream_headers = build_upstream_headers(destination, params.cookie, forwarded_headers)
    streamer = Streamer(create_httpx_client(follow_redirects=False, timeout=httpx.Timeout(settings.proxy_timeout)))

    try:
        await streamer.create_streaming_response(
            destination, upstream_headers, method=method, url_guard=check_destination
        )
        content_type = streamer.response.headers.get("content-type", "").lower()

        if method == "GET" and (is_manifest_url(destination) or "mpegurl" in content_type):
            content = await streamer.read_text()
            final_url = str(streamer.response.url)
            await streamer.close()
            return rewrite_manifest_response(request, content, final_url, params.cookie)

        response_headers = prepare_response_headers(streamer.response.headers)
        if method == "HEAD":
            await streamer.close()
            return Response(headers=response_headers, status_code=streamer.response.status_code)

        return EnhancedStreamingResponse(
            streamer.stream_content(),
            status_code=streamer.response.status_code,
            headers=response_headers,
            background=BackgroundTask(streamer.close),
        )
    except Exception as e:
        await streamer.close()
        return handle_exceptions(e)


def rewrite_manifest_response(request: Request, content: str, base_url: str, cookie: str | None) -> Response:
    proxy_url = str(request.url_for("manifest_proxy").replace(scheme=get_original_scheme(request)))
    processor = M3U8Processor(proxy_url, RewriteContext(base_url=base_url, forwarded_cookie=cookie))
    response_headers = {
        "content-disposition": "inline",
        "accept-ranges": "none",
        "cache-control": "no-cache",
    }
    response_headers.update(CORS_HEADERS)
    return Response(
        content=processor.process_m3u8(content),
        media_type=MANIFEST_CONTENT_TYPE,
        headers=response_headers,
    )
