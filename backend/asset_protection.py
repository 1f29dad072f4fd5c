from typing import Iterable, List, Optional, Tuple
from urllib.parse import urlparse

ASSET_CACHE_HEADERS = {
    "Cache-Control": "public, max-age=31536000, immutable",
    "X-Robots-Tag": "noimageindex, nofollow",
    "X-Content-Type-Options": "nosniff",
}


def parse_allowed_domains(raw_value: Optional[str]) -> List[str]:
    return [
        domain.strip().lower()
        for domain in str(raw_value or "").split(",")
        if domain.strip()
    ]


def check_hotlink(
    referer: Optional[str],
    request_host: Optional[str],
    allowed_domains: Iterable[str] = (),
    enabled: bool = True,
) -> Tuple[bool, Optional[str]]:
    """Return ``(allowed, message)`` for a media request.

    Requests without a referer are allowed so direct visits and privacy
    focused browsers still load images.
    """
    if not enabled:
        return True, None

    normalized_referer = str(referer or "").strip()
    if not normalized_referer:
        return True, None

    try:
        referer_host = (urlparse(normalized_referer).hostname or "").lower()
    except ValueError:
        return False, "Invalid referer"
    if not referer_host:
        return False, "Invalid referer"

    host = str(request_host or "").split(":")[0].lower()
    if referer_host == host:
        return True, None

    for domain in allowed_domains:
        if referer_host == domain or referer_host.endswith(f".{domain}"):
            return True, None

    return False, "Hotlinking is not allowed for media assets"


def apply_asset_headers(response):
    for header, value in ASSET_CACHE_HEADERS.items():
        response.headers[header] = value
    return response
