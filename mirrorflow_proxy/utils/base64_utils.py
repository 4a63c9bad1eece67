import base64
import binascii
import logging
from typing import Optional
from urllib.parse import urlparse

logger = logging.getLogger(__name__)

BASE64_CHARS = set("ABCDEFGHIJKLMNOPQRSTUVWXYZabcdefghijklmnopqrstuvwxyz0123456789+/=-_")


def decode_base64_text(encoded: str) -> Optional[str]:
    """
    Decode a (possibly URL-safe, possibly unpadded) base64 string into text.

    Args:
        encoded (str): The base64 string.

    Returns:
        Optional[str]: The decoded text, None if it is not valid base64 or not valid UTF-8.
    """
    normalized = encoded.strip().rstrip("=").replace("-", "+").replace("_", "/")
    if len(normalized) % 4 == 1:
        # one dangling character can never be part of a valid encoding
        normalized = normalized[:-1]
    normalized += "=" * (-len(normalized) % 4)

    try:
        return base64.b64decode(normalized, validate=True).decode("utf-8")
    except (binascii.Error, UnicodeDecodeError, ValueError):
        return None


def is_base64_url(url: str) -> bool:
    """
    Check if a URL appears to be base64 encoded.

    Args:
        url (str): The URL to check.

    Returns:
        bool: True if the URL appears to be base64 encoded, False otherwise.
    """
    if url.startswith(("http://", "https://", "//")):
        return False

    # Too short to be a meaningful base64 encoded URL
    if len(url) < 10:
        return False

    return set(url).issubset(BASE64_CHARS)


def process_potential_base64_url(url: str) -> str:
    """
    Process a URL that might be base64 encoded. If it's base64 encoded, decode it.
    Otherwise, return the original URL.

    Args:
        url (str): The URL to process.

    Returns:
        str: The processed URL (decoded if it was base64, original otherwise).
    """
    if not is_base64_url(url):
        return url

    decoded_url = decode_base64_text(url)
    if decoded_url:
        parsed = urlparse(decoded_url)
        if parsed.scheme and parsed.netloc:
            logger.debug(f"Decoded base64 URL: {url[:50]}... -> {decoded_url}")
            return decoded_url

    logger.warning(f"URL appears to be base64 but failed to decode: {url[:50]}...")
    return url
