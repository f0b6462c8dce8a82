from __future__ import annotations

from urllib.parse import quote, urlparse

from ..models import Source

FAVICON_SERVICE = "https://www.google.com/s2/favicons?domain={host}&sz=64"
ICON_PROXY_PREFIX = "/api/icon?url="


def favicon_url(feed_url: str) -> str:
    """Generated favicon lookup for the feed's host, or "" without a host."""
    host = urlparse(feed_url).netloc
    return FAVICON_SERVICE.format(host=host) if host else ""


def proxy_icon_url(icon_url: str) -> str:
    """Route an icon through the presentation layer's proxy. Idempotent."""
    if not icon_url or icon_url.startswith(ICON_PROXY_PREFIX):
        return icon_url
    return ICON_PROXY_PREFIX + quote(icon_url, safe="")


def resolve_icon(source: Source, feed_image: str = "") -> str:
    """Configured icon, then the feed's own image, then the generated favicon."""
    return proxy_icon_url(source.icon or feed_image or favicon_url(source.url))
