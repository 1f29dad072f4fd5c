import re
from typing import Dict, List, Optional
from urllib.parse import urljoin, urlparse

DEFAULT_ROBOTS = "index,follow,max-image-preview:large,max-snippet:-1,max-video-preview:-1"
DEFAULT_TWITTER_CARD = "summary_large_image"
DEFAULT_OG_TYPE = "website"
DEFAULT_SOCIAL_IMAGE = "https://placehold.co/1200x630?text=Astra+Attire"
DEFAULT_SITE_URL = "http://localhost:3000"
DEFAULT_STORE_NAME = "Astra Attire"

PREDEFINED_PUBLIC_PAGES = (
    {"key": "home", "label": "Home Page", "path": "/"},
    {"key": "wishlist", "label": "Wishlist Page", "path": "/wishlist"},
    {"key": "cart", "label": "Cart Page", "path": "/cart"},
    {"key": "login", "label": "Login Page", "path": "/login"},
    {"key": "register", "label": "Register Page", "path": "/register"},
    {"key": "checkout", "label": "Checkout Page", "path": "/checkout"},
    {"key": "orders", "label": "Orders Page", "path": "/orders"},
)
PROTECTED_PAGE_KEYS = frozenset(page["key"] for page in PREDEFINED_PUBLIC_PAGES)

# field -> max length
SEO_FIELD_LIMITS = {
    "title": 120,
    "description": 320,
    "keywords": 320,
    "canonicalUrl": 500,
    "robots": 220,
    "ogTitle": 120,
    "ogDescription": 320,
    "ogImage": 1000,
    "ogImageAlt": 420,
    "ogType": 60,
    "twitterCard": 40,
    "twitterTitle": 120,
    "twitterDescription": 200,
    "twitterImage": 1000,
    "twitterImageAlt": 420,
    "twitterSite": 30,
    "twitterCreator": 30,
}

DEFAULT_SEO_META: Dict[str, str] = {field: "" for field in SEO_FIELD_LIMITS}
DEFAULT_SEO_META.update(
    {
        "robots": DEFAULT_ROBOTS,
        "ogType": DEFAULT_OG_TYPE,
        "twitterCard": DEFAULT_TWITTER_CARD,
    }
)

PRODUCT_PATH_PATTERN = re.compile(r"^/products/([^/]+)$")


def trim_value(value) -> str:
    if value is None:
        return ""
    return str(value).strip()


def clamp_text(value, max_length: int) -> str:
    return trim_value(value)[:max_length]


def normalize_path(value) -> str:
    raw = trim_value(value)
    if not raw:
        return "/"
    with_leading_slash = raw if raw.startswith("/") else f"/{raw}"
    if len(with_leading_slash) > 1 and with_leading_slash.endswith("/"):
        return with_leading_slash[:-1]
    return with_leading_slash


def normalize_seo_key(value) -> str:
    normalized = re.sub(r"[^a-z0-9-_]", "-", trim_value(value).lower())
    normalized = re.sub(r"-+", "-", normalized)
    normalized = re.sub(r"^-|-$", "", normalized)
    return normalized[:60]


def sanitize_twitter_handle(value) -> str:
    raw = trim_value(value)
    if not raw:
        return ""
    if raw.startswith("@"):
        return raw[:30]
    return f"@{raw[:29]}"


def sanitize_seo_meta(payload: Optional[Dict] = None, fallback: Optional[Dict] = None) -> Dict[str, str]:
    source = payload if isinstance(payload, dict) else {}
    defaults = fallback if isinstance(fallback, dict) else DEFAULT_SEO_META

    def pick(field: str):
        value = source.get(field)
        if value is None:
            value = defaults.get(field, DEFAULT_SEO_META[field])
        return value

    sanitized: Dict[str, str] = {}
    for field, max_length in SEO_FIELD_LIMITS.items():
        if field in ("twitterSite", "twitterCreator"):
            sanitized[field] = sanitize_twitter_handle(pick(field))
            continue
        sanitized[field] = clamp_text(pick(field), max_length)

    for field, default_value in (
        ("robots", DEFAULT_ROBOTS),
        ("ogType", DEFAULT_OG_TYPE),
        ("twitterCard", DEFAULT_TWITTER_CARD),
    ):
        if not sanitized[field]:
            sanitized[field] = default_value

    return sanitized


def create_default_public_page_meta(page: Dict, store_name: str = DEFAULT_STORE_NAME) -> Dict[str, str]:
    if page["key"] == "home":
        title = f"{store_name} | Premium Fashion Store"
        description = f"Explore {store_name} for premium fashion, fast checkout and secure shopping."
    else:
        title = f"{page['label']} | {store_name}"
        description = f"Browse {page['label'].lower()} on {store_name}."

    return sanitize_seo_meta(
        {
            "title": title,
            "description": description,
            "ogTitle": title,
            "ogDescription": description,
            "ogType": DEFAULT_OG_TYPE,
            "twitterCard": DEFAULT_TWITTER_CARD,
            "twitterTitle": title,
            "twitterDescription": description,
        }
    )


def build_default_public_pages(store_name: str = DEFAULT_STORE_NAME) -> List[Dict]:
    return [
        {
            "key": page["key"],
            "label": page["label"],
            "path": page["path"],
            "meta": create_default_public_page_meta(page, store_name),
        }
        for page in PREDEFINED_PUBLIC_PAGES
    ]


def merge_public_pages(existing_pages=None, store_name: str = DEFAULT_STORE_NAME) -> List[Dict]:
    """Normalize stored pages and make sure every predefined page is present.

    Stored pages keep their position; missing predefined pages are appended.
    Blank fields on a stored predefined page fall back to its defaults.
    """
    normalized_existing: List[Dict] = []
    for page in existing_pages or []:
        if not isinstance(page, dict):
            continue
        key = normalize_seo_key(page.get("key"))
        path = normalize_path(page.get("path"))
        if not key or not path:
            continue
        normalized_existing.append(
            {
                "key": key,
                "label": clamp_text(page.get("label"), 80),
                "path": path,
                "meta": sanitize_seo_meta(page.get("meta") or {}),
            }
        )

    by_key: Dict[str, Dict] = {}
    for page in normalized_existing:
        by_key[page["key"]] = page

    for default_page in build_default_public_pages(store_name):
        current = by_key.get(default_page["key"])
        if not current:
            by_key[default_page["key"]] = default_page
            continue
        by_key[default_page["key"]] = {
            **current,
            "label": current["label"] or default_page["label"],
            "path": current["path"] or default_page["path"],
            "meta": sanitize_seo_meta(
                _drop_blank_values(current["meta"]), default_page["meta"]
            ),
        }

    return list(by_key.values())


def _drop_blank_values(meta: Dict[str, str]) -> Dict[str, str]:
    return {key: value for key, value in meta.items() if value}


def build_absolute_url(origin: Optional[str], value) -> str:
    raw = trim_value(value)
    if not raw:
        return ""
    base = trim_value(origin) or DEFAULT_SITE_URL
    absolute = urljoin(base if base.endswith("/") else f"{base}/", raw)
    parsed = urlparse(absolute)
    if parsed.scheme not in ("http", "https") or not parsed.netloc:
        return ""
    return absolute


def strip_html(value) -> str:
    without_tags = re.sub(r"<[^>]*>", " ", trim_value(value))
    return re.sub(r"\s+", " ", without_tags).strip()


def resolve_seo_for_rendering(
    meta: Optional[Dict] = None,
    fallback_meta: Optional[Dict] = None,
    title_fallback: str = "",
    description_fallback: str = "",
    image_fallback: str = "",
    pathname: str = "/",
    origin: str = DEFAULT_SITE_URL,
    site_name: str = DEFAULT_STORE_NAME,
    type_fallback: str = DEFAULT_OG_TYPE,
) -> Dict[str, str]:
    primary = _drop_blank_values(sanitize_seo_meta(meta or {}))
    fallback = sanitize_seo_meta(fallback_meta or {})
    merged = sanitize_seo_meta(primary, fallback)

    # "website" is the stored default, so only a different value counts as chosen.
    custom_types = [
        value
        for value in (primary.get("ogType"), type_fallback, fallback["ogType"])
        if value and value != DEFAULT_OG_TYPE
    ]
    merged["ogType"] = custom_types[0] if custom_types else DEFAULT_OG_TYPE

    origin_value = trim_value(origin).rstrip("/") or DEFAULT_SITE_URL
    canonical_url = build_absolute_url(
        origin_value, merged["canonicalUrl"] or normalize_path(pathname)
    ) or f"{origin_value}{normalize_path(pathname)}"
    title = merged["title"] or title_fallback or site_name
    description = merged["description"] or description_fallback or f"{site_name} official page"
    og_image = build_absolute_url(
        origin_value, merged["ogImage"] or image_fallback or DEFAULT_SOCIAL_IMAGE
    )
    twitter_image = build_absolute_url(
        origin_value,
        merged["twitterImage"] or merged["ogImage"] or image_fallback or DEFAULT_SOCIAL_IMAGE,
    )

    return {
        **merged,
        "title": title,
        "description": description,
        "canonicalUrl": canonical_url,
        "ogTitle": merged["ogTitle"] or title,
        "ogDescription": merged["ogDescription"] or description,
        "ogImage": og_image,
        "ogImageAlt": merged["ogImageAlt"] or title,
        "twitterTitle": merged["twitterTitle"] or merged["ogTitle"] or title,
        "twitterDescription": merged["twitterDescription"]
        or merged["ogDescription"]
        or description,
        "twitterImage": twitter_image,
        "twitterImageAlt": merged["twitterImageAlt"] or merged["ogImageAlt"] or title,
        "siteName": site_name,
    }


def match_product_path(pathname: str) -> Optional[str]:
    match = PRODUCT_PATH_PATTERN.match(normalize_path(pathname))
    return match.group(1) if match else None
