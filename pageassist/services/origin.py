"""
Origin domain classification for page URLs.

Shared by the server (session scoping) and the extension bridge (per-domain
session memory), so it takes host names rather than Settings.
"""

from urllib.parse import urlsplit

from pageassist.models.api import OriginDomain


def _host_matches(host: str, base: str) -> bool:
    return host == base or host.endswith(f".{base}")


def classify_origin(url: str, seller_console_host: str, public_site_host: str) -> OriginDomain:
    """
    Map a page URL to its origin domain.

    The seller console host is checked first since it sits under the public
    marketplace host.
    """
    if not url:
        return OriginDomain.UNKNOWN
    if "://" not in url:
        url = f"//{url}"
    host = (urlsplit(url).hostname or "").lower()
    if not host:
        return OriginDomain.UNKNOWN
    if _host_matches(host, seller_console_host.lower()):
        return OriginDomain.SELLER_CONSOLE
    if _host_matches(host, public_site_host.lower()):
        return OriginDomain.PUBLIC_SITE
    return OriginDomain.UNKNOWN
