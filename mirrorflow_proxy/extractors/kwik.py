import asyncio
import logging
import re
from typing import Any, Dict, List, Optional, Tuple
from urllib.parse import urljoin, urlsplit

from bs4 import BeautifulSoup, SoupStrainer

from mirrorflow_proxy.configs import settings
from mirrorflow_proxy.const import HTML_ACCEPT
from mirrorflow_proxy.extractors.base import (
    BaseExtractor,
    MirrorFetchFailed,
    NoCandidatesFound,
    NoManifestCandidates,
    NoViableVideoPlaylist,
)
from mirrorflow_proxy.utils.candidates import harvest, resolve_candidates
from mirrorflow_proxy.utils.eval_sandbox import EvalChainExecutor, select_eval_scripts
from mirrorflow_proxy.utils.http_utils import DownloadError, UpstreamTimeout
from mirrorflow_proxy.utils.packed import unpack_all
from mirrorflow_proxy.utils.playlist_classifier import evaluate_candidates, select_playlist, summarize

logger = logging.getLogger(__name__)

META_REFRESH_URL_RE = re.compile(r"url\s*=\s*['\"]?([^'\"\s>;]+)", re.IGNORECASE)


def normalize_mirror_url(url: str) -> str:
    """Absolute mirror URL; scheme-relative links get https, bare paths the default mirror host."""
    url = url.strip()
    if url.startswith("//"):
        return "https:" + url
    if not re.match(r"^https?://", url, re.IGNORECASE):
        return urljoin(settings.mirror_host.rstrip("/") + "/", url.lstrip("/"))
    return url


def extract_scripts(html: str) -> List[str]:
    """Trimmed bodies of every non-empty inline script."""
    soup = BeautifulSoup(html, "lxml", parse_only=SoupStrainer("script"))
    scripts = []
    for element in soup.find_all("script"):
        body = element.get_text().strip()
        if body:
            scripts.append(body)
    return scripts


def find_meta_refresh(html: str, page_url: str) -> Optional[str]:
    soup = BeautifulSoup(html, "lxml", parse_only=SoupStrainer("meta"))
    meta = soup.find("meta", attrs={"http-equiv": re.compile(r"^refresh$", re.IGNORECASE)})
    if not meta or not meta.get("content"):
        return None
    match = META_REFRESH_URL_RE.search(meta["content"])
    if not match:
        return None
    return urljoin(page_url, match.group(1))


class KwikExtractor(BaseExtractor):
    """Finds the playable HLS playlist hidden in a mirror page's obfuscated scripts.

    The static packer decoder and the sandboxed eval chain both feed the
    candidate harvester; candidates are then fetched and classified so decoy
    playlists are never returned.
    """

    def __init__(self, cookie: Optional[str] = None, request_headers: Optional[dict] = None, debug: bool = False):
        super().__init__(request_headers)
        self.cookie = cookie
        self.debug = debug or settings.debug_extraction
        self.base_headers.update({"accept": HTML_ACCEPT, "accept-language": "en-US,en;q=0.9"})
        if cookie:
            self.base_headers["cookie"] = cookie

    async def _fetch_page(self, url: str, referer: str) -> Tuple[str, str]:
        try:
            response = await self._make_request(url, headers={"referer": referer}, timeout=settings.page_timeout)
        except UpstreamTimeout:
            raise
        except DownloadError as e:
            raise MirrorFetchFailed(
                f"Could not fetch mirror page {url}: {e.message}",
                context={"url": url, "upstream_status": e.status_code},
            ) from e
        return response.text, str(response.url)

    async def extract(self, url: str, **kwargs) -> Dict[str, Any]:
        """Extract the playlist URL for mirror ``url``."""
        page_url = normalize_mirror_url(url)
        html, page_url = await self._fetch_page(page_url, settings.origin_host.rstrip("/") + "/")

        refresh_url = find_meta_refresh(html, page_url)
        if refresh_url:
            logger.info(f"Following meta refresh {page_url} -> {refresh_url}")
            html, page_url = await self._fetch_page(refresh_url, page_url)

        scripts = extract_scripts(html)
        decoded = unpack_all(scripts)
        executor = EvalChainExecutor(page_url=page_url)
        chain = await asyncio.to_thread(executor.run, select_eval_scripts(scripts + decoded))

        diagnostics: Dict[str, Any] = {
            "page_url": page_url,
            "total_scripts": len(scripts),
            "packed_decoded": len(decoded),
            "eval_stages": len(chain.stages),
            "eval_captured": len(chain.captured),
            "eval_errors": sum(1 for stage in chain.stages if stage.error),
        }
        if self.debug:
            diagnostics["stages"] = [stage.to_dict() for stage in chain.stages[:6]]
            diagnostics["sample_eval_leaf"] = chain.captured[-1][:400] if chain.captured else None
            diagnostics["sample_code"] = "\n\n".join(scripts)[:600]

        if not scripts:
            raise NoCandidatesFound("Mirror page has no scripts to search", context=diagnostics)

        candidates = resolve_candidates(harvest(*decoded, chain.combined_output, *scripts, html), page_url)
        diagnostics["candidates_found"] = len(candidates)
        if not candidates:
            raise NoManifestCandidates("Playlist source (.m3u8) not discovered in mirror scripts", context=diagnostics)

        parts = urlsplit(page_url)
        fetch_headers = {"referer": page_url, "origin": f"{parts.scheme}://{parts.netloc}"}
        if self.cookie:
            fetch_headers["cookie"] = self.cookie
        evaluated = await evaluate_candidates(candidates, headers=fetch_headers)
        diagnostics["kinds"] = summarize(evaluated)
        diagnostics["attempted"] = [item.to_dict(debug=self.debug) for item in evaluated]

        try:
            selected = select_playlist(evaluated)
        except NoViableVideoPlaylist as e:
            e.context.update(diagnostics)
            raise

        logger.info(f"Selected {selected.kind.value} playlist {selected.url}")
        return {
            "destination_url": selected.url,
            "kind": selected.kind.value,
            "request_headers": {"referer": page_url, "origin": fetch_headers["origin"]},
            "diagnostics": diagnostics,
        }
