"""
Manifest candidate harvesting.

Each heuristic maps a text corpus to the manifest URLs it can see. ``harvest``
applies all of them to every corpus and unions the results, so no single
heuristic has to be right. New obfuscation variants are handled by appending a
heuristic to ``HEURISTICS``.
"""

import logging
import re
from typing import Callable, Iterable, List, Optional, Tuple
from urllib.parse import urljoin, urlsplit

from mirrorflow_proxy.utils.base64_utils import decode_base64_text

logger = logging.getLogger(__name__)

Heuristic = Callable[[str], Iterable[str]]

MANIFEST_MARKER = ".m3u8"
MAX_BASE64_RUNS = 200

DIRECT_URL_RE = re.compile(r"https?://[^\s\"'`<>\\]+?\.m3u8[^\s\"'`<>\\]*", re.IGNORECASE)

ASSIGNMENT_RES = [
    re.compile(r"\b(?:const|var|let)?\s*\b(?:source|q)\s*=\s*['\"]([^'\"]+\.m3u8[^'\"]*)['\"]", re.IGNORECASE),
    re.compile(r"\bfile\s*:\s*['\"]([^'\"]+\.m3u8[^'\"]*)['\"]", re.IGNORECASE),
    re.compile(r"\bsrc\s*:\s*['\"]([^'\"]+\.m3u8[^'\"]*)['\"]", re.IGNORECASE),
    re.compile(r"\burl\s*[:=]\s*['\"]([^'\"]+\.m3u8[^'\"]*)['\"]", re.IGNORECASE),
    re.compile(r"\bPLAYLIST\s*=\s*['\"]([^'\"]+\.m3u8[^'\"]*)['\"]", re.IGNORECASE),
]

QUOTED_LITERAL_RE = re.compile(r"['\"]([^'\"\s]+\.m3u8[^'\"\s]*)['\"]\s*[,;)]", re.IGNORECASE)

BASE64_RUN_RE = re.compile(r"[A-Za-z0-9+/=]{40,}")

TRAILING_ENTITY_RE = re.compile(r"(?:&(?:quot|apos|gt|lt|#0*34|#0*39|#x2[27]);?)+$", re.IGNORECASE)
TRAILING_JUNK_RE = re.compile(r"[\"')\\]+$")


def sanitize_url(url: str) -> str:
    """Strip HTML-entity, quote and escape artifacts left around a scraped URL."""
    url = url.strip().replace("\\/", "/")
    previous = None
    while previous != url:
        previous = url
        url = TRAILING_ENTITY_RE.sub("", url)
        url = TRAILING_JUNK_RE.sub("", url).strip()
    return url


def direct_url_heuristic(text: str) -> List[str]:
    return DIRECT_URL_RE.findall(text)


def assignment_heuristic(text: str) -> List[str]:
    found = []
    for pattern in ASSIGNMENT_RES:
        found.extend(pattern.findall(text))
    return found


def quoted_literal_heuristic(text: str) -> List[str]:
    return QUOTED_LITERAL_RE.findall(text)


TEXT_HEURISTICS: Tuple[Heuristic, ...] = (
    direct_url_heuristic,
    assignment_heuristic,
    quoted_literal_heuristic,
)


def base64_heuristic(text: str) -> List[str]:
    """Decode long base64 runs and look for manifest URLs in what comes out."""
    found = []
    for run in BASE64_RUN_RE.findall(text)[:MAX_BASE64_RUNS]:
        decoded = decode_base64_text(run)
        if not decoded or MANIFEST_MARKER not in decoded.lower():
            continue
        decoded = decoded.replace("\\/", "/")
        for heuristic in TEXT_HEURISTICS:
            found.extend(heuristic(decoded))
    return found


HEURISTICS: Tuple[Heuristic, ...] = TEXT_HEURISTICS + (base64_heuristic,)


def harvest(*corpora: Optional[str], heuristics: Iterable[Heuristic] = HEURISTICS) -> List[str]:
    """
    Collect manifest candidates from every corpus with every heuristic.

    Args:
        *corpora: Raw HTML, decoded packer output, captured eval strings...
        heuristics: Heuristics to apply, ``HEURISTICS`` by default.

    Returns:
        List[str]: Sanitized, de-duplicated candidates in discovery order.
    """
    heuristics = tuple(heuristics)
    candidates = {}
    for corpus in corpora:
        if not corpus:
            continue
        text = corpus.replace("\\/", "/")
        for heuristic in heuristics:
            for raw in heuristic(text):
                candidate = sanitize_url(raw)
                if candidate and MANIFEST_MARKER in candidate.lower():
                    candidates.setdefault(candidate, None)
    logger.debug(f"Harvested {len(candidates)} manifest candidates from {len(corpora)} corpora")
    return list(candidates)


def resolve_candidates(candidates: Iterable[str], page_url: str) -> List[str]:
    """Make candidates absolute against the page they were found on, dropping non-HTTP ones."""
    resolved = {}
    for candidate in candidates:
        absolute = urljoin(page_url, candidate)
        if urlsplit(absolute).scheme in ("http", "https") and urlsplit(absolute).netloc:
            resolved.setdefault(absolute, None)
    return list(resolved)
