from typing import Any, Dict, Optional
from urllib.parse import quote

from mirrorflow_proxy.configs import settings
from mirrorflow_proxy.const import HTML_ACCEPT
from mirrorflow_proxy.extractors.base import BaseExtractor, NoMirrorsFound
from mirrorflow_proxy.utils.mirror_selector import parse_buttons


class PlayPageExtractor(BaseExtractor):
    """Fetches an episode play page and reads its mirror buttons."""

    def __init__(self, cookie: str, request_headers: Optional[dict] = None):
        super().__init__(request_headers)
        self.cookie = cookie
        self.base_headers.update(
            {
                "accept": HTML_ACCEPT,
                "accept-language": "en-US,en;q=0.9",
                "referer": settings.origin_host.rstrip("/") + "/",
                "cookie": cookie,
            }
        )

    @staticmethod
    def play_url(slug: str, episode_session: str) -> str:
        return f"{settings.origin_host.rstrip('/')}/play/{quote(slug, safe='')}/{quote(episode_session, safe='')}"

    async def extract(self, url: str, **kwargs) -> Dict[str, Any]:
        """Fetch the play page at ``url`` and return its mirror buttons."""
        response = await self._make_request(url, timeout=settings.page_timeout)
        buttons = parse_buttons(response.text)
        if not buttons:
            raise NoMirrorsFound("No mirror buttons found on the play page", context={"play_url": url})
        return {"play_url": url, "buttons": buttons}
