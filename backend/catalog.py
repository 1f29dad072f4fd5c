import json
import math
import re
from datetime import datetime
from typing import Dict, List, Optional, Tuple

DEFAULT_PRODUCT_IMAGE = "https://placehold.co/600x400?text=Product"
DEFAULT_BRAND = "Generic"
DEFAULT_PAGE_SIZE = 12
MAX_PAGE_SIZE = 100

SORT_OPTIONS = {
    "newest": [("created_at", -1), ("_id", -1)],
    "price_asc": [("price", 1), ("_id", 1)],
    "price_desc": [("price", -1), ("_id", -1)],
    "rating": [("rating", -1), ("num_reviews", -1), ("_id", -1)],
}

# query parameter -> document field, "All" means no filter
EXACT_MATCH_FILTERS = {
    "category": "category",
    "gender": "gender",
    "brand": "brand",
    "material": "material",
    "fit": "fit",
}
SEARCH_FIELDS = ("name", "brand", "category", "material", "fit")


def to_number(value) -> Optional[float]:
    if isinstance(value, bool) or value is None:
        return None
    if isinstance(value, str) and not value.strip():
        return None
    try:
        numeric = float(value)
    except (TypeError, ValueError):
        return None
    return numeric if math.isfinite(numeric) else None


def normalize_list(value) -> List[str]:
    if isinstance(value, list):
        return [str(item).strip() for item in value if str(item).strip()]
    if isinstance(value, str):
        return [item.strip() for item in value.split(",") if item.strip()]
    return []


def normalize_image_list(value) -> List[str]:
    if isinstance(value, list):
        return [str(item).strip() for item in value if item and str(item).strip()]

    if isinstance(value, str):
        trimmed = value.strip()
        if not trimmed:
            return []
        if trimmed.startswith("[") and trimmed.endswith("]"):
            try:
                parsed = json.loads(trimmed)
            except ValueError:
                parsed = None
            if isinstance(parsed, list):
                return [str(item).strip() for item in parsed if item and str(item).strip()]
        return [trimmed]

    return []


def normalize_variants(value) -> List[Dict]:
    """Clean an incoming variant list.

    Variants without a size, or with a negative or non numeric price or stock,
    are dropped. Only the first variant of each size/color pair is kept.
    """
    parsed = value
    if not value:
        return []
    if isinstance(value, str):
        try:
            parsed = json.loads(value)
        except ValueError:
            return []
    if not isinstance(parsed, list):
        return []

    variants: List[Dict] = []
    seen_keys = set()
    for entry in parsed:
        if not isinstance(entry, dict):
            continue

        size = str(entry.get("size") or "").strip()
        color = str(entry.get("color") or "").strip()
        price = to_number(entry.get("price"))
        stock = to_number(entry.get("stock"))
        if not size or price is None or price < 0 or stock is None or stock < 0:
            continue

        combination = (size.lower(), color.lower())
        if combination in seen_keys:
            continue
        seen_keys.add(combination)

        purchase_price = to_number(
            entry.get("purchasePrice", entry.get("purchase_price"))
        )
        variants.append(
            {
                "sku": str(entry.get("sku") or "").strip()[:80],
                "size": size,
                "color": color,
                "price": round(price, 2),
                "purchase_price": round(purchase_price, 2)
                if purchase_price is not None and purchase_price >= 0
                else 0.0,
                "stock": int(stock),
                "images": normalize_image_list(entry.get("images")),
            }
        )

    return variants


def get_variant_meta(variants: Optional[List[Dict]]) -> Optional[Dict]:
    if not variants:
        return None

    sizes: List[str] = []
    colors: List[str] = []
    for variant in variants:
        if variant["size"] not in sizes:
            sizes.append(variant["size"])
        if variant["color"] and variant["color"] not in colors:
            colors.append(variant["color"])

    return {
        "sizes": sizes,
        "colors": colors,
        "count_in_stock": sum(int(variant.get("stock") or 0) for variant in variants),
        "min_price": min(variant["price"] for variant in variants),
    }


def resolve_primary_image(images, variants, fallback_image) -> Tuple[str, List[str]]:
    normalized_images = normalize_image_list(images)
    normalized_fallback = str(fallback_image or "").strip()
    first_variant_image = ""
    for variant in variants or []:
        variant_images = variant.get("images") or []
        if variant_images:
            first_variant_image = variant_images[0]
            break

    primary_image = (
        (normalized_images[0] if normalized_images else "")
        or normalized_fallback
        or first_variant_image
        or DEFAULT_PRODUCT_IMAGE
    )
    final_images = normalized_images or [primary_image]
    return primary_image, final_images


def natural_sort_key(value: str):
    return [
        (0, int(chunk), "") if chunk.isdigit() else (1, 0, chunk.lower())
        for chunk in re.split(r"(\d+)", value)
        if chunk
    ]


def sort_values(values) -> List[str]:
    cleaned = {str(value or "").strip() for value in values or []}
    return sorted((value for value in cleaned if value), key=natural_sort_key)


def find_variant(product_document: Dict, size: str, color: str) -> Tuple[int, Optional[Dict]]:
    wanted_size = str(size or "").strip().lower()
    wanted_color = str(color or "").strip().lower()
    for index, variant in enumerate(product_document.get("variants") or []):
        if (
            str(variant.get("size") or "").strip().lower() == wanted_size
            and str(variant.get("color") or "").strip().lower() == wanted_color
        ):
            return index, variant
    return -1, None


def build_product_query(args) -> Tuple[Dict, List, int, int]:
    """Translate listing query parameters into a Mongo filter, sort and paging."""
    filters: Dict[str, object] = {}

    search = str(args.get("search") or "").strip()
    if search:
        pattern = re.compile(re.escape(search), re.IGNORECASE)
        filters["$or"] = [{field: pattern} for field in SEARCH_FIELDS]

    for param, field in EXACT_MATCH_FILTERS.items():
        value = str(args.get(param) or "").strip()
        if value and value != "All":
            filters[field] = value

    size = str(args.get("size") or "").strip()
    if size:
        filters["sizes"] = {"$in": [size]}
    color = str(args.get("color") or "").strip()
    if color:
        filters["colors"] = {"$in": [color]}

    availability = str(args.get("availability") or "").strip()
    if availability == "in_stock":
        filters["count_in_stock"] = {"$gt": 0}
    elif availability == "out_of_stock":
        filters["count_in_stock"] = {"$lte": 0}

    price_filter: Dict[str, float] = {}
    min_price = to_number(args.get("minPrice"))
    max_price = to_number(args.get("maxPrice"))
    if min_price is not None:
        price_filter["$gte"] = min_price
    if max_price is not None:
        price_filter["$lte"] = max_price
    if price_filter:
        filters["price"] = price_filter

    sort_spec = SORT_OPTIONS.get(str(args.get("sort") or "newest"), SORT_OPTIONS["newest"])

    try:
        page = int(str(args.get("page") or "1"))
    except ValueError:
        page = 1
    try:
        limit = int(str(args.get("limit") or DEFAULT_PAGE_SIZE))
    except ValueError:
        limit = DEFAULT_PAGE_SIZE
    page = page if page > 0 else 1
    limit = min(limit, MAX_PAGE_SIZE) if limit > 0 else DEFAULT_PAGE_SIZE

    return filters, sort_spec, page, limit


def paginate(total_items: int, page: int, limit: int) -> Dict[str, int]:
    total_pages = max(1, math.ceil(total_items / limit))
    current_page = min(page, total_pages)
    return {
        "page": current_page,
        "limit": limit,
        "skip": (current_page - 1) * limit,
        "totalItems": total_items,
        "totalPages": total_pages,
        "hasNextPage": current_page < total_pages,
        "hasPrevPage": current_page > 1,
    }


def isoformat(value) -> Optional[str]:
    if isinstance(value, datetime):
        return f"{value.isoformat()}Z"
    return None


def serialize_variant(variant: Dict) -> Dict:
    return {
        "sku": variant.get("sku", "") or "",
        "size": variant.get("size", "") or "",
        "color": variant.get("color", "") or "",
        "price": float(variant.get("price") or 0),
        "purchasePrice": float(variant.get("purchase_price") or 0),
        "stock": int(variant.get("stock") or 0),
        "images": list(variant.get("images") or []),
    }


def serialize_product(product_document: Dict, include_cost: bool = False) -> Dict:
    variants = product_document.get("variants") or []
    primary_image, images = resolve_primary_image(
        product_document.get("images"), variants, product_document.get("image")
    )
    serialized = {
        "id": str(product_document["_id"]),
        "name": product_document.get("name", "") or "",
        "description": product_document.get("description", "") or "",
        "image": primary_image,
        "images": images,
        "brand": product_document.get("brand") or DEFAULT_BRAND,
        "category": product_document.get("category", "") or "",
        "gender": product_document.get("gender", "") or "",
        "sizes": list(product_document.get("sizes") or []),
        "colors": list(product_document.get("colors") or []),
        "variants": [serialize_variant(variant) for variant in variants],
        "material": product_document.get("material", "") or "",
        "fit": product_document.get("fit", "") or "",
        "price": float(product_document.get("price") or 0),
        "countInStock": int(product_document.get("count_in_stock") or 0),
        "rating": float(product_document.get("rating") or 0),
        "numReviews": int(product_document.get("num_reviews") or 0),
        "createdAt": isoformat(product_document.get("created_at")),
        "updatedAt": isoformat(product_document.get("updated_at")),
    }
    if include_cost:
        serialized["purchasePrice"] = float(product_document.get("purchase_price") or 0)
    else:
        for variant in serialized["variants"]:
            variant.pop("purchasePrice", None)
    return serialized
