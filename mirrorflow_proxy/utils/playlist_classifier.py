import asyncio
import logging
from collections import Counter
from dataclasses import dataclass
from enum import Enum
from typing import Dict, Iterable, List, Optional
from urllib.parse import urlsplit

import httpx

from mirrorflow_proxy.configs import settings
from mirrorflow_proxy.const import MANIFEST_ACCEPT
from mirrorflow_proxy.extractors.base import NoViableVideoPlaylist
from mirrorflow_proxy.utils.http_utils import (
    DownloadError,
    UpstreamHttpError,
    UpstreamTimeout,
    create_httpx_client,
    fetch_with_retry,
)

logger = logging.getLogger(__name__)

VIDEO_EXTENSIONS = {"ts", "m4s", "mp4", "m4v", "m4a", "aac", "mp3", "fmp4", "cmfv", "cmfa", "webm"}
IMAGE_EXTENSIONS = {"jpg", "jpeg", "png", "gif", "webp", "bmp"}


class PlaylistKind(str, Enum):
    MASTER = "master"
    VIDEO_MEDIA = "video-media"
    IMAGE_MEDIA = "image-media"
    UNKNOWN_MEDIA = "unknown-media"
    NOT_PLAYLIST = "not-playlist"
    FETCH_ERROR = "fetch-error"


@dataclass
class EvaluatedCandidate:
    url: str
    kind: PlaylistKind
    status_code: Optional[int] = None
    error: Optional[str] = None
    sample: Optional[str] = None

    @property
    def origin(self) -> str:
        parts = urlsplit(self.url)
        return f"{parts.scheme}://{parts.netloc}"

    @property
    def base_url(self) -> str:
        """Directory of the playlist, what relative entries resolve against."""
        return self.url.split("?", 1)[0].rsplit("/", 1)[0] + "/"

    def to_dict(self, debug: bool = False) -> dict:
        data = {"url": self.url, "kind": self.kind.value, "status_code": self.status_code, "error": self.error}
        if debug:
            data["sample"] = self.sample
        return data


def _entry_extension(entry: str) -> str:
    path = urlsplit(entry).path
    name = path.rsplit("/", 1)[-1]
    return name.rsplit(".", 1)[-1].lower() if "." in name else ""


def classify_playlist(text: str) -> PlaylistKind:
    """
    Classify a fetched body.

    Image-only media playlists are decoys served to automated clients, which is
    why they get their own kind instead of passing as media playlists.
    """
    body = (text or "").lstrip("\ufeff \t\r\n")
    if not body.startswith("#EXTM3U"):
        return PlaylistKind.NOT_PLAYLIST
    if "#EXT-X-STREAM-INF" in body:
        return PlaylistKind.MASTER

    extensions = {
        _entry_extension(line.strip())
        for line in body.splitlines()
        if line.strip() and not line.strip().startswith("#")
    }
    if extensions & VIDEO_EXTENSIONS:
        return PlaylistKind.VIDEO_MEDIA
    if extensions and extensions <= IMAGE_EXTENSIONS:
        return PlaylistKind.IMAGE_MEDIA
    return PlaylistKind.UNKNOWN_MEDIA


async def evaluate_candidate(client: httpx.AsyncClient, url: str, headers: dict) -> EvaluatedCandidate:
    """Fetch one candidate and classify it. Failures are recorded, never raised."""
    try:
        response = await fetch_with_retry(client, "GET", url, headers)
    except UpstreamTimeout:
        return EvaluatedCandidate(url, PlaylistKind.FETCH_ERROR, error="timeout")
    except UpstreamHttpError as e:
        return EvaluatedCandidate(
            url, PlaylistKind.FETCH_ERROR, status_code=e.status_code, error=f"HTTP {e.status_code}"
        )
    except DownloadError as e:
        return EvaluatedCandidate(url, PlaylistKind.FETCH_ERROR, error=e.message)

    text = response.text
    return EvaluatedCandidate(url, classify_playlist(text), status_code=response.status_code, sample=text[:300])


async def evaluate_candidates(
    candidates: Iterable[str],
    headers: Optional[dict] = None,
    limit: Optional[int] = None,
    concurrency: Optional[int] = None,
) -> List[EvaluatedCandidate]:
    """
    Fetch and classify up to ``limit`` candidates concurrently.

    Results keep the order of ``candidates``.
    """
    limit = settings.candidate_limit if limit is None else limit
    concurrency = settings.candidate_concurrency if concurrency is None else concurrency
    selected = list(candidates)[:limit]
    if not selected:
        return []

    request_headers = {"user-agent": settings.user_agent, "accept": MANIFEST_ACCEPT}
    request_headers.update(headers or {})
    semaphore = asyncio.Semaphore(max(1, concurrency))

    async with create_httpx_client(timeout=httpx.Timeout(settings.candidate_timeout)) as client:

        async def _bounded(url: str) -> EvaluatedCandidate:
            async with semaphore:
                return await evaluate_candidate(client, url, request_headers)

        results = await asyncio.gather(*(_bounded(url) for url in selected))

    logger.info(f"Evaluated {len(results)} candidates: {summarize(results)}")
    return list(results)


def summarize(evaluated: Iterable[EvaluatedCandidate]) -> Dict[str, int]:
    return dict(Counter(item.kind.value for item in evaluated))


def select_playlist(evaluated: List[EvaluatedCandidate], accept_unknown: Optional[bool] = None) -> EvaluatedCandidate:
    """
    Pick the best playlist: master, then video media, then (optionally) unknown media.

    Raises:
        NoViableVideoPlaylist: When only decoys, non-playlists or errors are left.
    """
    accept_unknown = settings.accept_unknown_media if accept_unknown is None else accept_unknown
    priority = [PlaylistKind.MASTER, PlaylistKind.VIDEO_MEDIA]
    if accept_unknown:
        priority.append(PlaylistKind.UNKNOWN_MEDIA)

    for kind in priority:
        for item in evaluated:
            if item.kind is kind:
                return item

    raise NoViableVideoPlaylist(
        "No master or video playlist among the evaluated candidates",
        context={"attempted": len(evaluated), "kinds": summarize(evaluated)},
    )
