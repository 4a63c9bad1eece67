SUPPORTED_RESPONSE_HEADERS = [
    "accept-ranges",
    "content-type",
    "content-length",
    "content-range",
    "last-modified",
    "etag",
    "cache-control",
    "expires",
]

SUPPORTED_REQUEST_HEADERS = [
    "accept-language",
    "range",
    "if-range",
]

CORS_HEADERS = {
    "access-control-allow-origin": "*",
    "access-control-allow-headers": "*",
    "access-control-expose-headers": "content-length, content-range, accept-ranges",
}

MANIFEST_CONTENT_TYPE = "application/vnd.apple.mpegurl"
MANIFEST_EXTENSIONS = (".m3u8", ".m3u")
MANIFEST_ACCEPT = "application/vnd.apple.mpegurl, application/x-mpegURL, */*;q=0.8"
SEGMENT_ACCEPT = "*/*"
HTML_ACCEPT = "text/html,application/xhtml+xml,application/xml;q=0.9,*/*;q=0.8"

# Tags whose URI attribute points at a resource that must go through the proxy as well.
URI_TAGS = (
    "#EXT-X-KEY",
    "#EXT-X-SESSION-KEY",
    "#EXT-X-MAP",
    "#EXT-X-MEDIA",
    "#EXT-X-I-FRAME-STREAM-INF",
)

ORIGIN_COOKIE_NAME = "__ddg2_"
