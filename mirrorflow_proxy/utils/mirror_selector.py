import logging
import re
from dataclasses import dataclass, field
from typing import Dict, List, Optional

from bs4 import BeautifulSoup, SoupStrainer

from mirrorflow_proxy.extractors.base import NoMirrorAfterFilters

logger = logging.getLogger(__name__)

LEADING_NUMBER_RE = re.compile(r"\s*(\d+)")


def _leading_int(value: Optional[str]) -> int:
    match = LEADING_NUMBER_RE.match(value or "")
    return int(match.group(1)) if match else 0


@dataclass(frozen=True)
class MirrorButton:
    src: str
    resolution: str = ""
    audio: str = ""
    next_gen_codec: bool = False
    raw_attributes: Dict[str, str] = field(default_factory=dict, hash=False, compare=False)

    @property
    def numeric_resolution(self) -> int:
        return _leading_int(self.resolution)

    @property
    def fansub(self) -> str:
        return self.raw_attributes.get("data-fansub", "")

    def to_dict(self) -> dict:
        return {
            "src": self.src,
            "resolution": self.resolution,
            "audio": self.audio,
            "next_gen_codec": self.next_gen_codec,
            "fansub": self.fansub,
            "raw_attributes": dict(self.raw_attributes),
        }


def parse_buttons(html: str) -> List[MirrorButton]:
    """Read the mirror buttons (``<button data-src=...>``) declared by a play page."""
    if not html:
        return []
    soup = BeautifulSoup(html, "lxml", parse_only=SoupStrainer("button"))
    buttons = []
    for element in soup.find_all("button", attrs={"data-src": True}):
        attributes = {
            key: " ".join(value) if isinstance(value, list) else str(value) for key, value in element.attrs.items()
        }
        buttons.append(
            MirrorButton(
                src=attributes["data-src"].strip(),
                resolution=attributes.get("data-resolution", "").strip(),
                audio=attributes.get("data-audio", "").strip(),
                next_gen_codec=attributes.get("data-av1", "").strip() not in ("", "0"),
                raw_attributes=attributes,
            )
        )
    logger.debug(f"Parsed {len(buttons)} mirror buttons")
    return buttons


def _matches_resolution(button: MirrorButton, resolution: str) -> bool:
    if button.resolution == resolution:
        return True
    wanted = _leading_int(resolution)
    return wanted > 0 and button.numeric_resolution == wanted


def choose_button(
    buttons: List[MirrorButton],
    audio: Optional[str] = None,
    resolution: Optional[str] = None,
    strict: bool = False,
) -> Optional[MirrorButton]:
    """
    Pick the mirror to play.

    Audio and resolution filters narrow the list only when something matches;
    a filter matching nothing is ignored, unless ``strict`` is set, in which case
    it raises ``NoMirrorAfterFilters``. Buttons without the next-generation codec
    flag are preferred, then the highest resolution wins.
    """
    if not buttons:
        return None
    candidates = list(buttons)

    if audio:
        by_audio = [b for b in candidates if b.audio == audio]
        if by_audio:
            candidates = by_audio
        elif strict:
            raise NoMirrorAfterFilters(f"No mirror with audio '{audio}'", context={"buttons": len(buttons)})

    if resolution:
        by_resolution = [b for b in candidates if _matches_resolution(b, str(resolution))]
        if by_resolution:
            candidates = by_resolution
        elif strict:
            raise NoMirrorAfterFilters(
                f"No mirror with resolution '{resolution}'", context={"buttons": len(buttons)}
            )

    classic_codec = [b for b in candidates if not b.next_gen_codec]
    if classic_codec:
        candidates = classic_codec

    candidates.sort(key=lambda b: b.numeric_resolution, reverse=True)
    return candidates[0]
