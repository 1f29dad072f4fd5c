"""
Shared pytest fixtures for the Astra Attire backend.

MongoDB is replaced by mongomock, injected through ``create_app(database=...)``.
"""
from datetime import datetime

import mongomock
import pytest

from app import create_app

TEST_CONFIG = {
    "TESTING": True,
    "APP_ENV": "test",
    "JWT_SECRET_KEY": "test-jwt-secret",
    "SETTINGS_ENCRYPTION_SECRET": "test-settings-secret",
    "BCRYPT_LOG_ROUNDS": 4,
    "DEFAULT_ADMIN_EMAIL": "",
    "RESEND_API_KEY": "",
    "COD_CHARGE_PER_PRODUCT": 25.0,
    "SITE_URL": "https://shop.example.com",
    "ENABLE_HOTLINK_PROTECTION": True,
    "HOTLINK_ALLOWED_DOMAINS": ["partner.example"],
    "MEDIA_CDN_BASE_URL": "",
    "MEDIA_PUBLIC_BASE_PATH": "/storage/media",
}


@pytest.fixture
def db():
    """
    Provides an empty in-memory database per test
    """
    return mongomock.MongoClient().astra_attire_test


@pytest.fixture
def make_app(db, tmp_path):
    """
    Builds an app against the test database with optional config overrides
    """

    def factory(**overrides):
        config = {**TEST_CONFIG, "MEDIA_STORAGE_DIR": str(tmp_path / "media"), **overrides}
        return create_app(config, database=db)

    return factory


@pytest.fixture
def app(make_app):
    return make_app()


@pytest.fixture
def client(app):
    return app.test_client()


def auth_headers(token):
    return {"Authorization": f"Bearer {token}"}


def register(client, name="Test Shopper", email="shopper@example.com", password="secret123"):
    response = client.post(
        "/api/auth/register", json={"name": name, "email": email, "password": password}
    )
    assert response.status_code == 201, response.get_json()
    return response.get_json()


@pytest.fixture
def user(client):
    """
    Registered shopper with a token
    """
    return register(client)


@pytest.fixture
def user_headers(user):
    return auth_headers(user["token"])


@pytest.fixture
def admin(client, db):
    """
    Registered user promoted to admin
    """
    account = register(client, name="Store Admin", email="admin@example.com", password="admin123")
    db.users.update_one({"email": "admin@example.com"}, {"$set": {"is_admin": True}})
    return account


@pytest.fixture
def admin_headers(admin):
    return auth_headers(admin["token"])


@pytest.fixture
def product_factory(db):
    """
    Inserts a product document directly and returns it with its ``_id``
    """

    def factory(**fields):
        now = datetime.utcnow()
        document = {
            "name": "Everyday Crew Tee",
            "description": "Soft cotton tee",
            "brand": "Northline",
            "category": "T-Shirts",
            "gender": "Unisex",
            "material": "Cotton",
            "fit": "Slim",
            "image": "https://cdn.example.com/tee.jpg",
            "images": ["https://cdn.example.com/tee.jpg"],
            "variants": [],
            "sizes": ["M"],
            "colors": ["Black"],
            "price": 500.0,
            "purchase_price": 200.0,
            "count_in_stock": 10,
            "rating": 4.0,
            "num_reviews": 3,
            "created_at": now,
            "updated_at": now,
        }
        document.update(fields)
        document["_id"] = db.products.insert_one(document).inserted_id
        return document

    return factory


@pytest.fixture
def variant_product(product_factory):
    return product_factory(
        name="Classic Oxford Shirt",
        category="Shirts",
        price=1299.0,
        count_in_stock=9,
        sizes=["S", "M"],
        colors=["White"],
        variants=[
            {"sku": "OXF-S", "size": "S", "color": "White", "price": 1299.0,
             "purchase_price": 600.0, "stock": 4, "images": []},
            {"sku": "OXF-M", "size": "M", "color": "White", "price": 1349.0,
             "purchase_price": 650.0, "stock": 5, "images": ["https://cdn.example.com/oxf-m.jpg"]},
        ],
    )


SHIPPING_ADDRESS = {
    "fullName": "Asha Rao",
    "phone": "9876543210",
    "email": "asha@example.com",
    "street": "12 MG Road",
    "city": "Bengaluru",
    "state": "Karnataka",
    "postalCode": "560001",
}


def order_payload(*items, **extra):
    payload = {
        "items": list(items),
        "shippingAddress": dict(SHIPPING_ADDRESS),
        "paymentMethod": "Cash on Delivery",
        "codChargesAccepted": True,
    }
    payload.update(extra)
    return payload
