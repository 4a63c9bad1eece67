import logging
from typing import Annotated

from fastapi import APIRouter, HTTPException, Query, Request

from mirrorflow_proxy.configs import settings
from mirrorflow_proxy.extractors.base import ExtractorError, NoMirrorAfterFilters
from mirrorflow_proxy.extractors.kwik import KwikExtractor
from mirrorflow_proxy.extractors.play_page import PlayPageExtractor
from mirrorflow_proxy.handlers import handle_exceptions
from mirrorflow_proxy.schemas import PlayParams
from mirrorflow_proxy.utils.http_utils import (
    DownloadError,
    encode_proxy_url,
    generate_origin_cookie,
    get_original_scheme,
)
from mirrorflow_proxy.utils.mirror_selector import choose_button

play_router = APIRouter()
logger = logging.getLogger(__name__)


@play_router.get("/{slug}/{episode_session}")
async def play(
    slug: str,
    episode_session: str,
    request: Request,
    params: Annotated[PlayParams, Query()],
):
    """Pick a mirror for an episode and extract its HLS playlist."""
    if not slug.strip() or not episode_session.strip():
        raise HTTPException(status_code=400, detail="Missing slug or episode session")

    debug = params.debug or settings.debug_extraction
    cookie = generate_origin_cookie()

    try:
        play_page = PlayPageExtractor(cookie)
        page = await play_page.extract(play_page.play_url(slug, episode_session))
        buttons = page["buttons"]

        chosen = choose_button(buttons, audio=params.audio, resolution=params.resolution, strict=params.strict)
        if chosen is None:
            raise NoMirrorAfterFilters("Filters eliminated all mirrors", context={"buttons": len(buttons)})

        response = {
            "slug": slug,
            "episode_session": episode_session,
            "cookie": cookie,
            "chosen": chosen.to_dict(),
            "buttons": [button.to_dict() for button in buttons],
        }
        if params.list_only:
            return response

        result = await KwikExtractor(cookie=cookie, debug=debug).extract(chosen.src)
        proxy_url = str(request.url_for("manifest_proxy").replace(scheme=get_original_scheme(request)))
        response.update(
            {
                "playlist": result["destination_url"],
                "kind": result["kind"],
                "proxied_playlist": encode_proxy_url(proxy_url, result["destination_url"], cookie),
                "diagnostics": result["diagnostics"],
            }
        )
        return response

    except (ExtractorError, DownloadError) as e:
        logger.error(f"Play extraction failed for {slug}/{episode_session}: {e}")
        return handle_exceptions(e)
