from abc import ABC, abstractmethod
from typing import Any, Dict, Optional

import asyncio
import httpx
import logging

from mirrorflow_proxy.configs import settings
from mirrorflow_proxy.utils.http_utils import (
    create_httpx_client,
    DownloadError,
    UpstreamHttpError,
    UpstreamTimeout,
)

logger = logging.getLogger(__name__)


class ExtractorError(Exception):
    """Base exception for all extractors.

    ``context`` carries triage data (attempted candidates, stage counts) that the
    route layer returns alongside the error kind.
    """

    kind = "extraction_failed"
    status_code = 502

    def __init__(self, message: str, context: Optional[Dict[str, Any]] = None):
        super().__init__(message)
        self.message = message
        self.context = context or {}


class NoMirrorsFound(ExtractorError):
    kind = "no_mirrors_found"


class NoMirrorAfterFilters(ExtractorError):
    kind = "no_mirror_after_filters"
    status_code = 422


class MirrorFetchFailed(ExtractorError):
    kind = "mirror_fetch_failed"


class NoCandidatesFound(ExtractorError):
    kind = "no_candidates_found"


class NoManifestCandidates(ExtractorError):
    kind = "no_manifest_candidates"


class NoViableVideoPlaylist(ExtractorError):
    kind = "no_viable_video_playlist"


class HostNotAllowed(ExtractorError):
    kind = "host_not_allowed"
    status_code = 403


class InvalidUrl(ExtractorError):
    kind = "invalid_url"
    status_code = 400


class BaseExtractor(ABC):
    """Base class for URL extractors.

    - Built-in retry/backoff for transient network errors
    - Per-request timeouts
    - Timeouts and HTTP statuses surface as distinct error types
    """

    def __init__(self, request_headers: Optional[dict] = None):
        self.base_headers = {
            "user-agent": settings.user_agent,
        }
        # merge incoming headers (e.g. Cookie / Referer) with default base headers
        self.base_headers.update(request_headers or {})

    async def _make_request(
        self,
        url: str,
        method: str = "GET",
        headers: Optional[Dict] = None,
        timeout: Optional[float] = None,
        retries: int = 3,
        backoff_factor: float = 0.5,
        **kwargs,
    ) -> httpx.Response:
        """
        Make HTTP request with retry and timeout support.

        Parameters
        ----------
        timeout : float | None
            Seconds to wait for the request. Defaults to ``settings.page_timeout``.
        retries : int
            Number of attempts for transient errors.
        backoff_factor : float
            Base for exponential backoff between retries.
        """
        attempt = 0
        last_exc = None

        request_headers = self.base_headers.copy()
        if headers:
            request_headers.update(headers)

        timeout_cfg = httpx.Timeout(timeout or settings.page_timeout)

        while attempt < retries:
            try:
                async with create_httpx_client(timeout=timeout_cfg) as client:
                    response = await client.request(method, url, headers=request_headers, **kwargs)
                    try:
                        response.raise_for_status()
                    except httpx.HTTPStatusError as e:
                        logger.debug(
                            "HTTPStatusError for %s (status=%s) -- body preview: %s",
                            url,
                            e.response.status_code,
                            e.response.text[:500],
                        )
                        raise UpstreamHttpError(e.response.status_code, url)
                    return response

            except DownloadError:
                # explicit HTTP statuses are not retried
                raise
            except httpx.TimeoutException as e:
                last_exc = UpstreamTimeout(url)
                logger.warning("Timeout (attempt %s/%s) for %s: %s", attempt + 1, retries, url, e)
            except httpx.TransportError as e:
                last_exc = DownloadError(502, f"Request failed for URL {url}: {e}")
                logger.warning("Transient network error (attempt %s/%s) for %s: %s", attempt + 1, retries, url, e)

            attempt += 1
            if attempt < retries:
                await asyncio.sleep(backoff_factor * (2 ** (attempt - 1)))

        logger.error("All retries failed for %s: %s", url, last_exc)
        raise last_exc

    @abstractmethod
    async def extract(self, url: str, **kwargs) -> Dict[str, Any]:
        """Extract final URL and required headers."""
        pass
