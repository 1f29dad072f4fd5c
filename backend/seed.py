"""Replace users and products with an admin account and a sample catalog.

Run with ``python seed.py``; the database comes from ``MONGO_URI``.
"""
from datetime import datetime, timedelta
from typing import Dict, List

import bcrypt

import catalog
import seo

ADMIN_NAME = "Admin User"
ADMIN_EMAIL = "admin@example.com"
ADMIN_PASSWORD = "admin123"

SAMPLE_PRODUCTS: List[Dict] = [
    {
        "name": "Classic Oxford Shirt",
        "description": "Crisp cotton oxford shirt with a button-down collar.",
        "brand": "Astra",
        "category": "Shirts",
        "gender": "Men",
        "material": "Cotton",
        "fit": "Regular",
        "image": "https://placehold.co/600x800?text=Oxford+Shirt",
        "purchasePrice": 620,
        "rating": 4.5,
        "numReviews": 18,
        "variants": [
            {"sku": "OXF-S-WHT", "size": "S", "color": "White", "price": 1299, "purchasePrice": 620, "stock": 8},
            {"sku": "OXF-M-WHT", "size": "M", "color": "White", "price": 1299, "purchasePrice": 620, "stock": 12},
            {"sku": "OXF-L-BLU", "size": "L", "color": "Blue", "price": 1349, "purchasePrice": 640, "stock": 6},
        ],
    },
    {
        "name": "Relaxed Linen Trousers",
        "description": "Breathable linen trousers with an elastic waist.",
        "brand": "Astra",
        "category": "Trousers",
        "gender": "Women",
        "material": "Linen",
        "fit": "Relaxed",
        "image": "https://placehold.co/600x800?text=Linen+Trousers",
        "purchasePrice": 900,
        "rating": 4.2,
        "numReviews": 9,
        "variants": [
            {"sku": "LIN-28-SND", "size": "28", "color": "Sand", "price": 1899, "purchasePrice": 900, "stock": 5},
            {"sku": "LIN-30-SND", "size": "30", "color": "Sand", "price": 1899, "purchasePrice": 900, "stock": 7},
            {"sku": "LIN-32-OLV", "size": "32", "color": "Olive", "price": 1949, "purchasePrice": 930, "stock": 4},
        ],
    },
    {
        "name": "Everyday Crew Tee",
        "description": "Soft combed cotton tee for daily wear.",
        "brand": "Northline",
        "category": "T-Shirts",
        "gender": "Unisex",
        "material": "Cotton",
        "fit": "Slim",
        "image": "https://placehold.co/600x800?text=Crew+Tee",
        "price": 499,
        "purchasePrice": 210,
        "countInStock": 40,
        "sizes": ["S", "M", "L", "XL"],
        "colors": ["Black"],
        "rating": 4.0,
        "numReviews": 31,
    },
    {
        "name": "Wool Blend Overcoat",
        "description": "Tailored overcoat in a warm wool blend.",
        "brand": "Northline",
        "category": "Outerwear",
        "gender": "Men",
        "material": "Wool",
        "fit": "Tailored",
        "image": "https://placehold.co/600x800?text=Overcoat",
        "price": 5999,
        "purchasePrice": 3100,
        "countInStock": 0,
        "sizes": ["M", "L"],
        "colors": ["Charcoal"],
        "rating": 4.8,
        "numReviews": 4,
    },
]


def build_product_document(sample: Dict, created_at: datetime) -> Dict:
    variants = catalog.normalize_variants(sample.get("variants"))
    variant_meta = catalog.get_variant_meta(variants)
    primary_image, images = catalog.resolve_primary_image(
        sample.get("images"), variants, sample.get("image")
    )
    document = {
        "name": sample["name"],
        "description": sample["description"],
        "brand": sample.get("brand") or catalog.DEFAULT_BRAND,
        "category": sample["category"],
        "gender": sample.get("gender", ""),
        "material": sample.get("material", ""),
        "fit": sample.get("fit", ""),
        "image": primary_image,
        "images": images,
        "variants": variants,
        "price": float(sample.get("price") or 0),
        "purchase_price": float(sample.get("purchasePrice") or 0),
        "count_in_stock": int(sample.get("countInStock") or 0),
        "sizes": catalog.normalize_list(sample.get("sizes")),
        "colors": catalog.normalize_list(sample.get("colors")),
        "rating": float(sample.get("rating") or 0),
        "num_reviews": int(sample.get("numReviews") or 0),
        "seo": seo.sanitize_seo_meta({}),
        "created_at": created_at,
        "updated_at": created_at,
    }
    if variant_meta:
        document["sizes"] = variant_meta["sizes"]
        document["colors"] = variant_meta["colors"]
        document["price"] = variant_meta["min_price"]
        document["count_in_stock"] = variant_meta["count_in_stock"]
    return document


def seed_database(db, bcrypt_rounds: int = 12) -> Dict[str, int]:
    db.users.delete_many({})
    db.products.delete_many({})

    now = datetime.utcnow()
    db.users.insert_one(
        {
            "name": ADMIN_NAME,
            "email": ADMIN_EMAIL,
            "password": bcrypt.hashpw(
                ADMIN_PASSWORD.encode("utf-8"), bcrypt.gensalt(rounds=bcrypt_rounds)
            ),
            "phone": "",
            "is_admin": True,
            "created_at": now,
            "updated_at": now,
        }
    )

    # Stagger timestamps so "newest" sorting follows the list order.
    products = [
        build_product_document(sample, now - timedelta(minutes=index))
        for index, sample in enumerate(SAMPLE_PRODUCTS)
    ]
    db.products.insert_many(products)
    return {"users": 1, "products": len(products)}


def main() -> None:
    from app import create_app

    app = create_app()
    with app.app_context():
        counts = seed_database(app.db, app.config["BCRYPT_LOG_ROUNDS"])
        app.logger.info(
            "Seeded %s users and %s products", counts["users"], counts["products"]
        )
    print(f"Seeded admin {ADMIN_EMAIL} and {counts['products']} products")


if __name__ == "__main__":
    main()
