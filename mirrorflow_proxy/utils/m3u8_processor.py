import re
from dataclasses import dataclass
from typing import Optional
from urllib import parse

from mirrorflow_proxy.const import URI_TAGS
from mirrorflow_proxy.utils.http_utils import encode_proxy_url

URI_ATTRIBUTE_RE = re.compile(r'URI="([^"]+)"')


@dataclass(frozen=True)
class RewriteContext:
    base_url: str
    forwarded_cookie: Optional[str] = None


def resolve_url(reference: str, base_url: str) -> str:
    """
    Resolve a manifest reference against the manifest's own URL.

    Handles absolute, scheme-relative (``//host/x``), root-relative (``/x``) and
    relative (``x``, ``../x``) references.
    """
    return parse.urljoin(base_url, reference.strip())


class M3U8Processor:
    def __init__(self, proxy_url: str, context: RewriteContext):
        """
        Initializes the M3U8Processor with the proxy endpoint URL and rewrite context.

        Args:
            proxy_url (str): Absolute URL of the manifest proxy endpoint.
            context (RewriteContext): Base URL of the manifest and the cookie to forward.
        """
        self.proxy_url = proxy_url
        self.context = context

    def process_m3u8(self, content: str) -> str:
        """
        Rewrites every reference in the manifest into a proxied URL.

        Line order, blank lines, comments, CRLF endings and the trailing newline
        are kept as they were.

        Args:
            content (str): The m3u8 content to process.

        Returns:
            str: The processed m3u8 content.
        """
        return "\n".join(self.process_line(line) for line in content.split("\n"))

    def process_line(self, line: str) -> str:
        """
        Process a single line from the m3u8 content.

        Args:
            line (str): The line to process.

        Returns:
            str: The processed line.
        """
        body = line[:-1] if line.endswith("\r") else line
        ending = line[len(body):]
        stripped = body.strip()

        if not stripped:
            return line
        if stripped.startswith("#"):
            if stripped.startswith(URI_TAGS) and "URI=" in stripped:
                return self.process_key_line(body) + ending
            return line
        return self.proxy_content_url(stripped) + ending

    def process_key_line(self, line: str) -> str:
        """
        Processes a URI-bearing tag line, proxying the URI attribute.

        Args:
            line (str): The tag line to process.

        Returns:
            str: The processed tag line.
        """
        return URI_ATTRIBUTE_RE.sub(lambda m: f'URI="{self.proxy_content_url(m.group(1))}"', line)

    def proxy_content_url(self, url: str) -> str:
        """
        Resolves a reference and wraps it into a proxy URL.

        Args:
            url (str): The reference found in the manifest.

        Returns:
            str: The proxied URL.
        """
        full_url = resolve_url(url, self.context.base_url)
        # data:, skd: and similar inline references stay untouched
        if parse.urlsplit(full_url).scheme not in ("http", "https"):
            return url
        return encode_proxy_url(self.proxy_url, full_url, self.context.forwarded_cookie)
