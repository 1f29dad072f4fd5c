import logging
import math
import os
import re
import time
from datetime import datetime, timedelta
from typing import Dict, List, Optional, Tuple

import bcrypt
import resend
from bson import ObjectId
from bson.errors import InvalidId
from dotenv import load_dotenv
from flask import Flask, g, jsonify, request, send_from_directory
from flask_cors import CORS
from flask_jwt_extended import (
    JWTManager,
    create_access_token,
    get_current_user,
    jwt_required,
)
from flask_pymongo import PyMongo
from pymongo import ReturnDocument
from pymongo.errors import DuplicateKeyError, PyMongoError
from werkzeug.exceptions import HTTPException
from werkzeug.middleware.proxy_fix import ProxyFix

import catalog
import payments
import reports
import seo
from asset_protection import apply_asset_headers, check_hotlink, parse_allowed_domains
from media_storage import (
    MediaStorageError,
    delete_media_file,
    get_public_base,
    is_data_image_url,
    is_valid_image_url,
    resolve_absolute_storage_path,
    save_image_data_url,
)

load_dotenv()

DEFAULT_STORE_NAME = seo.DEFAULT_STORE_NAME
DEFAULT_FOOTER_TEXT = "Premium everyday clothing, delivered across India."
SETTINGS_SINGLETON_KEY = "default"
PAYMENT_METHOD_COD = "Cash on Delivery"
PAYMENT_METHOD_RAZORPAY = "Razorpay"

# api name -> (stored name, max length)
ADDRESS_FIELDS = {
    "fullName": ("full_name", 120),
    "phone": ("phone", 30),
    "email": ("email", 180),
    "street": ("street", 220),
    "addressLine2": ("address_line2", 220),
    "city": ("city", 120),
    "state": ("state", 120),
    "postalCode": ("postal_code", 30),
    "country": ("country", 120),
}
ADDRESS_REQUIRED_FIELDS = ("street", "city", "state", "postal_code", "country")
DEFAULT_COUNTRY = "India"
TAX_TEXT_FIELDS = {
    "businessName": ("business_name", 160),
    "gstin": ("gstin", 30),
    "pan": ("pan", 20),
    "purchaseOrderNumber": ("purchase_order_number", 80),
    "notes": ("notes", 500),
}

# api name -> (stored name, default)
THEME_COLOR_FIELDS = {
    "primaryColor": ("primary_color", "#1b3557"),
    "secondaryColor": ("secondary_color", "#b54d66"),
    "backgroundDefault": ("background_default", "#f6f3ef"),
    "backgroundPaper": ("background_paper", "#ffffff"),
    "textPrimary": ("text_primary", "#1d2230"),
    "textSecondary": ("text_secondary", "#5e6472"),
}
THEME_FONT_FIELDS = {
    "bodyFontFamily": ("body_font_family", "Manrope"),
    "headingFontFamily": ("heading_font_family", "Playfair Display"),
}
HEX_COLOR_PATTERN = re.compile(r"^#(?:[0-9a-fA-F]{3}|[0-9a-fA-F]{6})$")


def env_flag(name: str, default: str = "true") -> bool:
    return str(os.getenv(name, default) or default).strip().lower() in ("1", "true", "yes", "on")


def create_app(test_config: Optional[Dict] = None, database=None) -> Flask:
    """Create and configure the Flask application."""
    app = Flask(__name__)

    # Honor proxy headers so hotlink checks and generated links see the public host.
    trusted_proxy_hops_raw = os.getenv("TRUSTED_PROXY_HOPS", "1")
    try:
        trusted_proxy_hops = max(0, int(trusted_proxy_hops_raw))
    except (TypeError, ValueError):
        trusted_proxy_hops = 1
    if trusted_proxy_hops:
        app.wsgi_app = ProxyFix(
            app.wsgi_app,
            x_for=trusted_proxy_hops,
            x_proto=trusted_proxy_hops,
            x_host=trusted_proxy_hops,
            x_port=trusted_proxy_hops,
        )

    # --- Configuration ---
    jwt_secret = (
        os.getenv("JWT_SECRET") or os.getenv("JWT_SECRET_KEY") or "change-me-in-production"
    )
    app.config["APP_ENV"] = (os.getenv("APP_ENV") or "development").strip().lower()
    app.config["JWT_SECRET_KEY"] = jwt_secret
    app.config["JWT_ACCESS_TOKEN_EXPIRES"] = timedelta(
        days=int(os.getenv("JWT_EXPIRES_DAYS", "7"))
    )
    app.config["MONGO_URI"] = os.getenv(
        "MONGO_URI", "mongodb://localhost:27017/astra_attire"
    )
    max_upload_mb = int(os.getenv("MAX_UPLOAD_SIZE_MB", "100"))
    app.config["MAX_CONTENT_LENGTH"] = max_upload_mb * 1024 * 1024
    app.config["BCRYPT_LOG_ROUNDS"] = int(os.getenv("BCRYPT_LOG_ROUNDS", "12"))
    app.config["MEDIA_STORAGE_DIR"] = os.path.abspath(
        os.getenv("MEDIA_STORAGE_DIR") or os.path.join(os.getcwd(), "storage", "media")
    )
    app.config["MEDIA_PUBLIC_BASE_PATH"] = os.getenv("MEDIA_PUBLIC_BASE_PATH", "/storage/media")
    app.config["MEDIA_CDN_BASE_URL"] = os.getenv("MEDIA_CDN_BASE_URL", "")
    app.config["ENABLE_HOTLINK_PROTECTION"] = env_flag("ENABLE_HOTLINK_PROTECTION")
    app.config["HOTLINK_ALLOWED_DOMAINS"] = parse_allowed_domains(
        os.getenv("HOTLINK_ALLOWED_DOMAINS")
    )
    app.config["SETTINGS_ENCRYPTION_SECRET"] = (
        os.getenv("SETTINGS_ENCRYPTION_SECRET") or jwt_secret
    )
    app.config["COD_CHARGE_PER_PRODUCT"] = float(os.getenv("COD_CHARGE_PER_PRODUCT", "25"))
    app.config["SITE_URL"] = (os.getenv("SITE_URL") or seo.DEFAULT_SITE_URL).rstrip("/")
    app.config["DEFAULT_ADMIN_EMAIL"] = (os.getenv("DEFAULT_ADMIN_EMAIL") or "").strip().lower()
    app.config["RESEND_API_KEY"] = (os.getenv("RESEND_API_KEY") or "").strip()
    app.config["ORDER_EMAIL_SENDER"] = (
        os.getenv("ORDER_EMAIL_SENDER") or "orders@astraattire.store"
    ).strip()
    app.config["LOG_LEVEL"] = (os.getenv("LOG_LEVEL") or "INFO").strip().upper()

    if test_config:
        app.config.update(test_config)

    app.logger.setLevel(getattr(logging, app.config["LOG_LEVEL"], logging.INFO))

    # --- Initialize extensions ---
    allowed_origins = [
        "http://localhost:5173",
        "http://localhost:4173",
        "http://localhost:3000",
        app.config["SITE_URL"],
    ]
    cors_extra = os.getenv("CORS_ALLOWED_ORIGINS", "")
    if cors_extra:
        for origin in cors_extra.split(","):
            trimmed = origin.strip()
            if trimmed:
                allowed_origins.append(trimmed)
    allowed_origins = [origin for origin in allowed_origins if origin]

    CORS(app, supports_credentials=True, origins=allowed_origins or "*")

    jwt = JWTManager(app)
    db = database if database is not None else PyMongo(app).db
    app.db = db

    for collection, keys, options in (
        (db.users, [("email", 1)], {"unique": True}),
        (db.orders, [("user", 1), ("created_at", -1)], {}),
        (db.orders, [("payment_result.razorpay_payment_id", 1)], {"unique": True, "sparse": True}),
        (db.payment_checkouts, [("razorpay_order_id", 1)], {"unique": True}),
        (db.products, [("created_at", -1)], {}),
        (db.media_assets, [("updated_at", -1)], {}),
        (db.store_settings, [("singleton_key", 1)], {"unique": True}),
        (db.seo_settings, [("singleton_key", 1)], {"unique": True}),
    ):
        try:
            collection.create_index(keys, **options)
        except PyMongoError as exc:
            app.logger.warning("Unable to ensure index on %s: %s", collection.name, exc)

    @jwt.unauthorized_loader
    def handle_missing_token(_reason):
        return jsonify({"message": "Not authorized, token missing"}), 401

    @jwt.invalid_token_loader
    def handle_invalid_token(_reason):
        return jsonify({"message": "Not authorized, token invalid"}), 401

    @jwt.expired_token_loader
    def handle_expired_token(_jwt_header, _jwt_payload):
        return jsonify({"message": "Not authorized, token expired"}), 401

    @jwt.user_lookup_loader
    def load_token_user(_jwt_header, jwt_data):
        user_id = parse_object_id(jwt_data.get("sub"))
        if not user_id:
            return None
        return db.users.find_one({"_id": user_id}, {"password": 0})

    @jwt.user_lookup_error_loader
    def handle_missing_user(_jwt_header, _jwt_data):
        return jsonify({"message": "Not authorized, user missing"}), 401

    # --- Request logging and errors ---

    @app.before_request
    def start_request_timer():
        g.request_started_at = time.perf_counter()

    @app.after_request
    def log_request(response):
        if app.config["APP_ENV"] != "production":
            started_at = getattr(g, "request_started_at", None)
            elapsed_ms = (time.perf_counter() - started_at) * 1000 if started_at else 0.0
            app.logger.info(
                "%s %s -> %s (%.1f ms)",
                request.method,
                request.path,
                response.status_code,
                elapsed_ms,
            )
        return response

    @app.errorhandler(404)
    def handle_not_found(_error):
        return jsonify({"message": "Route not found"}), 404

    @app.errorhandler(405)
    def handle_method_not_allowed(_error):
        return jsonify({"message": "Method not allowed"}), 405

    @app.errorhandler(413)
    def handle_payload_too_large(_error):
        return jsonify({"message": "Uploaded payload is too large"}), 413

    @app.errorhandler(Exception)
    def handle_unexpected_error(error):
        if isinstance(error, HTTPException):
            return jsonify({"message": error.description}), error.code
        app.logger.exception("Unhandled error on %s %s", request.method, request.path)
        return jsonify({"message": "Server error"}), 500

    # --- Helpers ---

    email_regex = re.compile(r"^[^@\s]+@[^@\s]+\.[^@\s]+$")

    def normalize_email(value: Optional[str]) -> str:
        return str(value or "").strip().lower()

    def is_valid_email(value: Optional[str]) -> bool:
        normalized = normalize_email(value)
        return bool(normalized and email_regex.match(normalized))

    def clamp(value, max_length: int) -> str:
        return str(value if value is not None else "").strip()[:max_length]

    def parse_object_id(value) -> Optional[ObjectId]:
        try:
            return ObjectId(str(value))
        except (InvalidId, TypeError):
            return None

    def safe_float(value, default=0.0):
        try:
            numeric = float(value)
        except (TypeError, ValueError):
            return default
        if math.isfinite(numeric):
            return numeric
        return default

    def safe_positive_int(value, default=0):
        try:
            numeric = int(float(value))
        except (TypeError, ValueError):
            return default
        return max(default, numeric)

    def parse_whole_number(value) -> Optional[int]:
        numeric = catalog.to_number(value)
        if numeric is None or not float(numeric).is_integer():
            return None
        return int(numeric)

    def parse_iso_date(value: Optional[str], *, end_of_day: bool = False):
        if not value:
            return None
        candidate = str(value).strip()
        if not candidate:
            return None
        normalized = candidate.replace("Z", "+00:00")
        if re.fullmatch(r"\d{4}-\d{2}-\d{2}", candidate):
            normalized = f"{candidate}T00:00:00"
        try:
            parsed = datetime.fromisoformat(normalized)
        except ValueError:
            return None
        parsed = reports.to_naive_utc(parsed)
        if end_of_day:
            # Exclusive upper bound: the whole day for dates, the same millisecond for timestamps.
            if re.fullmatch(r"\d{4}-\d{2}-\d{2}", candidate):
                return parsed + timedelta(days=1)
            return parsed.replace(microsecond=parsed.microsecond // 1000 * 1000) + timedelta(milliseconds=1)
        return parsed

    isoformat = catalog.isoformat

    def is_admin_user(user_document) -> bool:
        if not user_document:
            return False
        admin_email = app.config["DEFAULT_ADMIN_EMAIL"]
        if admin_email and normalize_email(user_document.get("email")) == admin_email:
            return True
        return bool(user_document.get("is_admin"))

    def require_admin_user():
        current_user = get_current_user()
        if is_admin_user(current_user):
            return current_user, None
        return None, (jsonify({"message": "Admin access required"}), 403)

    def hash_password(password: str) -> bytes:
        return bcrypt.hashpw(
            password.encode("utf-8"), bcrypt.gensalt(rounds=app.config["BCRYPT_LOG_ROUNDS"])
        )

    def password_matches(password: str, hashed) -> bool:
        if not hashed:
            return False
        if isinstance(hashed, str):
            hashed = hashed.encode("utf-8")
        try:
            return bcrypt.checkpw(password.encode("utf-8"), hashed)
        except ValueError:
            return False

    def normalize_address_payload(payload: Optional[Dict], *, billing: bool = False) -> Dict:
        source = payload if isinstance(payload, dict) else {}
        normalized: Dict[str, object] = {}
        for api_name, (stored_name, max_length) in ADDRESS_FIELDS.items():
            value = source.get(api_name, source.get(stored_name))
            normalized[stored_name] = clamp(value, max_length)
        normalized["email"] = normalize_email(normalized["email"])
        if not billing and not normalized["country"]:
            normalized["country"] = DEFAULT_COUNTRY
        if billing:
            same_as_shipping = source.get("sameAsShipping", source.get("same_as_shipping"))
            normalized["same_as_shipping"] = True if same_as_shipping is None else bool(same_as_shipping)
        return normalized

    def serialize_address_payload(payload: Optional[Dict], *, billing: bool = False) -> Dict:
        source = payload if isinstance(payload, dict) else {}
        serialized: Dict[str, object] = {
            api_name: source.get(stored_name, "") or ""
            for api_name, (stored_name, _) in ADDRESS_FIELDS.items()
        }
        if billing:
            serialized["sameAsShipping"] = bool(source.get("same_as_shipping", True))
        return serialized

    def normalize_tax_details(payload: Optional[Dict]) -> Dict:
        source = payload if isinstance(payload, dict) else {}
        normalized: Dict[str, object] = {
            "business_purchase": bool(
                source.get("businessPurchase", source.get("business_purchase", False))
            )
        }
        for api_name, (stored_name, max_length) in TAX_TEXT_FIELDS.items():
            normalized[stored_name] = clamp(source.get(api_name, source.get(stored_name)), max_length)
        normalized["gstin"] = str(normalized["gstin"]).upper()
        normalized["pan"] = str(normalized["pan"]).upper()
        return normalized

    def serialize_tax_details(payload: Optional[Dict]) -> Dict:
        source = payload if isinstance(payload, dict) else {}
        serialized: Dict[str, object] = {
            "businessPurchase": bool(source.get("business_purchase", False))
        }
        for api_name, (stored_name, _) in TAX_TEXT_FIELDS.items():
            serialized[api_name] = source.get(stored_name, "") or ""
        return serialized

    def serialize_user_profile(user_document) -> Dict:
        if not user_document:
            return {}
        return {
            "id": str(user_document["_id"]),
            "name": user_document.get("name", "") or "",
            "email": user_document.get("email", "") or "",
            "phone": user_document.get("phone", "") or "",
            "isAdmin": is_admin_user(user_document),
            "defaultShippingAddress": serialize_address_payload(
                user_document.get("default_shipping_address")
            ),
            "defaultBillingDetails": serialize_address_payload(
                user_document.get("default_billing_details"), billing=True
            ),
            "defaultTaxDetails": serialize_tax_details(user_document.get("default_tax_details")),
            "createdAt": isoformat(user_document.get("created_at")),
        }

    def build_auth_response(user_document) -> Dict:
        return {
            "id": str(user_document["_id"]),
            "name": user_document.get("name", "") or "",
            "email": user_document.get("email", "") or "",
            "isAdmin": is_admin_user(user_document),
            "token": create_access_token(identity=str(user_document["_id"])),
        }

    def send_email_via_resend(payload: Dict[str, object], api_key: str):
        configured_api_key = (api_key or "").strip()
        if not configured_api_key:
            return False, "Resend API key is not configured."

        previous_api_key = getattr(resend, "api_key", None)
        resend.api_key = configured_api_key
        try:
            response = resend.Emails.send(payload)
        except Exception as exc:
            return False, str(exc)
        finally:
            resend.api_key = previous_api_key

        if not isinstance(response, dict) or not response.get("id"):
            return False, str(response)

        return True, None

    def build_order_email_html(order_document: Dict, store_name: str) -> str:
        rows = "".join(
            f"<tr><td>{item.get('name')}</td><td>{item.get('quantity')}</td>"
            f"<td>&#8377;{float(item.get('price') or 0):.2f}</td></tr>"
            for item in order_document.get("order_items") or []
        )
        pricing = order_document.get("pricing") or {}
        cod_row = ""
        if pricing.get("cod_charge"):
            cod_row = f"<p>COD charge: &#8377;{float(pricing['cod_charge']):.2f}</p>"
        return (
            f"<h2>Thank you for shopping with {store_name}</h2>"
            f"<p>Order <strong>{order_document['_id']}</strong> is {order_document.get('status')}.</p>"
            f"<table><thead><tr><th>Item</th><th>Qty</th><th>Price</th></tr></thead>"
            f"<tbody>{rows}</tbody></table>"
            f"{cod_row}"
            f"<p><strong>Total: &#8377;{float(order_document.get('total_price') or 0):.2f}</strong></p>"
        )

    def send_order_confirmation_email(order_document: Dict, user_document: Dict) -> None:
        api_key = app.config["RESEND_API_KEY"]
        recipient = normalize_email(
            (order_document.get("shipping_address") or {}).get("email")
            or (user_document or {}).get("email")
        )
        if not api_key or not recipient:
            return

        store_name = get_store_settings().get("store_name") or DEFAULT_STORE_NAME
        payload: Dict[str, object] = {
            "from": f"{store_name} <{app.config['ORDER_EMAIL_SENDER']}>",
            "to": [recipient],
            "subject": f"{store_name} order confirmation",
            "html": build_order_email_html(order_document, store_name),
        }
        sent, error = send_email_via_resend(payload, api_key)
        if not sent:
            app.logger.warning(
                "Order confirmation email failed for %s: %s", order_document["_id"], error
            )

    # --- Store settings helpers ---

    def default_store_settings() -> Dict:
        theme = {stored: default for stored, default in THEME_COLOR_FIELDS.values()}
        theme.update({stored: default for stored, default in THEME_FONT_FIELDS.values()})
        return {
            "store_name": DEFAULT_STORE_NAME,
            "footer_text": DEFAULT_FOOTER_TEXT,
            "theme": theme,
            "payment_gateways": payments.default_gateway_settings(),
            "created_at": datetime.utcnow(),
            "updated_at": datetime.utcnow(),
        }

    def get_store_settings() -> Dict:
        settings_document = db.store_settings.find_one_and_update(
            {"singleton_key": SETTINGS_SINGLETON_KEY},
            {"$setOnInsert": default_store_settings()},
            upsert=True,
            return_document=ReturnDocument.AFTER,
        )
        migrated_gateways = payments.migrate_legacy_razorpay(settings_document)
        if migrated_gateways:
            db.store_settings.update_one(
                {"_id": settings_document["_id"]},
                {"$set": {"payment_gateways": migrated_gateways}},
            )
            settings_document["payment_gateways"] = migrated_gateways
            app.logger.info("Migrated legacy Razorpay credentials into payment gateways")
        return settings_document

    def serialize_theme(theme: Optional[Dict]) -> Dict[str, str]:
        source = theme if isinstance(theme, dict) else {}
        serialized = {}
        for api_name, (stored_name, default) in {**THEME_COLOR_FIELDS, **THEME_FONT_FIELDS}.items():
            serialized[api_name] = source.get(stored_name) or default
        return serialized

    def serialize_public_settings(settings_document: Dict) -> Dict:
        return {
            "storeName": settings_document.get("store_name") or DEFAULT_STORE_NAME,
            "footerText": settings_document.get("footer_text") or DEFAULT_FOOTER_TEXT,
            "theme": serialize_theme(settings_document.get("theme")),
        }

    def serialize_admin_settings(settings_document: Dict) -> Dict:
        return {
            **serialize_public_settings(settings_document),
            "paymentGateways": payments.serialize_gateways_for_admin(
                settings_document.get("payment_gateways")
            ),
            "codCharges": {"perProduct": app.config["COD_CHARGE_PER_PRODUCT"]},
        }

    def normalize_theme_update(payload, current_theme: Optional[Dict]) -> Tuple[Optional[Dict], Optional[str]]:
        if not isinstance(payload, dict):
            return None, "Theme settings must be an object"
        theme = {
            **{stored: default for stored, default in THEME_COLOR_FIELDS.values()},
            **{stored: default for stored, default in THEME_FONT_FIELDS.values()},
            **(current_theme or {}),
        }
        for api_name, (stored_name, _) in THEME_COLOR_FIELDS.items():
            if api_name not in payload:
                continue
            value = str(payload.get(api_name) or "").strip()
            if not HEX_COLOR_PATTERN.match(value):
                return None, f"{api_name} must be a hex color like #1b3557"
            theme[stored_name] = value.lower()
        for api_name, (stored_name, _) in THEME_FONT_FIELDS.items():
            if api_name not in payload:
                continue
            value = str(payload.get(api_name) or "").strip()
            if not value:
                return None, f"{api_name} is required"
            if len(value) > 80:
                return None, f"{api_name} must be 80 characters or less"
            theme[stored_name] = value
        return theme, None

    # --- SEO helpers ---

    def current_store_name() -> str:
        return get_store_settings().get("store_name") or DEFAULT_STORE_NAME

    def get_seo_settings() -> Dict:
        store_name = current_store_name()
        settings_document = db.seo_settings.find_one({"singleton_key": SETTINGS_SINGLETON_KEY})
        if not settings_document:
            settings_document = {
                "singleton_key": SETTINGS_SINGLETON_KEY,
                "defaults": seo.sanitize_seo_meta({}),
                "public_pages": seo.merge_public_pages([], store_name),
                "updated_at": datetime.utcnow(),
            }
            try:
                settings_document["_id"] = db.seo_settings.insert_one(settings_document).inserted_id
            except DuplicateKeyError:
                settings_document = db.seo_settings.find_one(
                    {"singleton_key": SETTINGS_SINGLETON_KEY}
                )
            return settings_document

        merged_pages = seo.merge_public_pages(settings_document.get("public_pages"), store_name)
        updates: Dict[str, object] = {}
        if merged_pages != settings_document.get("public_pages"):
            updates["public_pages"] = merged_pages
        if not settings_document.get("defaults"):
            updates["defaults"] = seo.sanitize_seo_meta({})
        if updates:
            db.seo_settings.update_one({"_id": settings_document["_id"]}, {"$set": updates})
            settings_document.update(updates)
        return settings_document

    def save_seo_settings(settings_document: Dict, **changes) -> Dict:
        changes["updated_at"] = datetime.utcnow()
        db.seo_settings.update_one({"_id": settings_document["_id"]}, {"$set": changes})
        settings_document.update(changes)
        return settings_document

    def serialize_seo_settings(settings_document: Dict) -> Dict:
        return {
            "defaults": seo.sanitize_seo_meta(settings_document.get("defaults") or {}),
            "publicPages": seo.merge_public_pages(
                settings_document.get("public_pages"), current_store_name()
            ),
        }

    def serialize_seo_product(product_document: Dict, include_description: bool = False) -> Dict:
        primary_image, _ = catalog.resolve_primary_image(
            product_document.get("images"),
            product_document.get("variants"),
            product_document.get("image"),
        )
        serialized = {
            "id": str(product_document["_id"]),
            "name": product_document.get("name", "") or "",
            "category": product_document.get("category", "") or "",
            "brand": product_document.get("brand") or catalog.DEFAULT_BRAND,
            "image": primary_image,
            "seo": seo.sanitize_seo_meta(product_document.get("seo") or {}),
        }
        if include_description:
            serialized["description"] = product_document.get("description", "") or ""
        return serialized

    # --- Catalog helpers ---

    def fetch_product(product_id: str):
        object_id = parse_object_id(product_id)
        product_document = db.products.find_one({"_id": object_id}) if object_id else None
        if not product_document:
            return None, (jsonify({"message": "Product not found"}), 404)
        return product_document, None

    def normalize_product_fields(payload: Dict, existing: Optional[Dict] = None):
        """Validate a create or update payload into stored product fields.

        ``existing`` is the stored document on update; only fields present in
        the payload change. Variant products derive sizes, colors, price and
        stock from their variants.
        """
        is_update = existing is not None
        current = existing or {}
        fields: Dict[str, object] = {}

        for field in ("name", "description", "category"):
            if is_update and field not in payload:
                continue
            value = str(payload.get(field) or "").strip()
            if not value:
                return None, "Name, description, category and price are required"
            fields[field] = value

        if "brand" in payload or not is_update:
            fields["brand"] = str(payload.get("brand") or "").strip() or catalog.DEFAULT_BRAND
        for field in ("gender", "material", "fit"):
            if field in payload or not is_update:
                fields[field] = str(payload.get(field) or "").strip()

        if "variants" in payload:
            variants = catalog.normalize_variants(payload.get("variants"))
        else:
            variants = current.get("variants") or []
        fields["variants"] = variants
        variant_meta = catalog.get_variant_meta(variants)

        if "price" in payload:
            price = catalog.to_number(payload.get("price"))
            if price is None or price < 0:
                return None, "Price must be a valid positive number"
            fields["price"] = round(price, 2)
        elif not is_update and not variant_meta:
            return None, "Name, description, category and price are required"

        if "countInStock" in payload:
            stock = parse_whole_number(payload.get("countInStock"))
            if stock is None or stock < 0:
                return None, "Stock must be a whole number of zero or more"
            fields["count_in_stock"] = stock
        elif not is_update:
            fields["count_in_stock"] = 0

        if "purchasePrice" in payload:
            purchase_price = catalog.to_number(payload.get("purchasePrice"))
            if purchase_price is None or purchase_price < 0:
                return None, "Purchase price must be a valid positive number"
            fields["purchase_price"] = round(purchase_price, 2)
        elif not is_update:
            fields["purchase_price"] = 0.0

        if "rating" in payload:
            rating = catalog.to_number(payload.get("rating"))
            if rating is None or not 0 <= rating <= 5:
                return None, "Rating must be between 0 and 5"
            fields["rating"] = round(rating, 1)
        if "numReviews" in payload:
            num_reviews = parse_whole_number(payload.get("numReviews"))
            if num_reviews is None or num_reviews < 0:
                return None, "Review count must be a whole number of zero or more"
            fields["num_reviews"] = num_reviews

        if "sizes" in payload or not is_update:
            fields["sizes"] = catalog.normalize_list(payload.get("sizes"))
        if "colors" in payload or not is_update:
            fields["colors"] = catalog.normalize_list(payload.get("colors"))

        if variant_meta:
            fields["sizes"] = variant_meta["sizes"]
            fields["colors"] = variant_meta["colors"]
            fields["price"] = variant_meta["min_price"]
            fields["count_in_stock"] = variant_meta["count_in_stock"]

        has_image_field = "image" in payload
        has_images_field = "images" in payload
        images = payload.get("images") if has_images_field else current.get("images")
        if has_image_field:
            image_fallback = str(payload.get("image") or "").strip()
        elif has_images_field:
            image_fallback = ""
        else:
            image_fallback = current.get("image")
        primary_image, final_images = catalog.resolve_primary_image(images, variants, image_fallback)
        fields["image"] = primary_image
        fields["images"] = final_images

        return fields, None

    # --- Order helpers ---

    def merge_order_lines(raw_items: List) -> List[Dict]:
        merged: Dict[Tuple[str, str, str], Dict] = {}
        for entry in raw_items:
            source = entry if isinstance(entry, dict) else {}
            product_id = str(source.get("productId") or source.get("product") or "").strip()
            size = str(source.get("selectedSize") or "").strip()
            color = str(source.get("selectedColor") or "").strip()
            quantity = parse_whole_number(source.get("quantity"))
            if quantity is not None and quantity < 1:
                quantity = None

            key = (product_id, size.lower(), color.lower())
            line = merged.get(key)
            if line is None:
                merged[key] = {
                    "product_id": product_id,
                    "selected_size": size,
                    "selected_color": color,
                    "quantity": quantity,
                }
            elif line["quantity"] is not None and quantity is not None:
                line["quantity"] += quantity
            else:
                line["quantity"] = None
        return list(merged.values())

    def prepare_order_lines(raw_items) -> Tuple[Optional[List[Dict]], Optional[Tuple]]:
        """Validate requested lines against the catalog without touching stock."""
        if not isinstance(raw_items, list) or not raw_items:
            return None, (jsonify({"message": "Order items are required"}), 400)

        lines: List[Dict] = []
        for requested in merge_order_lines(raw_items):
            object_id = parse_object_id(requested["product_id"])
            product = db.products.find_one({"_id": object_id}) if object_id else None
            if not product:
                return None, (
                    jsonify({"message": f"Product not found: {requested['product_id']}"}),
                    404,
                )

            quantity = requested["quantity"]
            if quantity is None:
                return None, (jsonify({"message": f"Invalid quantity for {product['name']}"}), 400)

            variant_index = -1
            variant = None
            if product.get("variants"):
                variant_index, variant = catalog.find_variant(
                    product, requested["selected_size"], requested["selected_color"]
                )
                if variant is None:
                    return None, (
                        jsonify(
                            {
                                "message": f"Selected size/color is not available for {product['name']}"
                            }
                        ),
                        400,
                    )
                available = int(variant.get("stock") or 0)
            else:
                available = int(product.get("count_in_stock") or 0)

            if available < quantity:
                return None, (jsonify({"message": f"{product['name']} is out of stock"}), 400)

            primary_image, _ = catalog.resolve_primary_image(
                product.get("images"), product.get("variants"), product.get("image")
            )
            variant_images = (variant or {}).get("images") or []
            lines.append(
                {
                    "product": product["_id"],
                    "name": product["name"],
                    "image": variant_images[0] if variant_images else primary_image,
                    "price": float(variant["price"] if variant else product.get("price") or 0),
                    "purchase_price": float(
                        (variant or {}).get("purchase_price")
                        or product.get("purchase_price")
                        or 0
                    ),
                    "quantity": quantity,
                    "selected_size": variant["size"] if variant else requested["selected_size"],
                    "selected_color": variant["color"] if variant else requested["selected_color"],
                    "sku": (variant or {}).get("sku", "") or "",
                    "variant_index": variant_index,
                }
            )
        return lines, None

    def calculate_pricing(lines: List[Dict], payment_method: str) -> Dict[str, float]:
        items_total = round(sum(line["price"] * line["quantity"] for line in lines), 2)
        cod_charge = 0.0
        if payment_method == PAYMENT_METHOD_COD:
            units = sum(line["quantity"] for line in lines)
            cod_charge = round(app.config["COD_CHARGE_PER_PRODUCT"] * units, 2)
        return {
            "items_total": items_total,
            "cod_charge": cod_charge,
            "final_total": round(items_total + cod_charge, 2),
        }

    def reserve_line_stock(line: Dict) -> bool:
        quantity = line["quantity"]
        index = line["variant_index"]
        if index >= 0:
            query = {
                "_id": line["product"],
                f"variants.{index}.size": line["selected_size"],
                f"variants.{index}.color": line["selected_color"],
                f"variants.{index}.stock": {"$gte": quantity},
            }
            update = {"$inc": {f"variants.{index}.stock": -quantity, "count_in_stock": -quantity}}
        else:
            query = {"_id": line["product"], "count_in_stock": {"$gte": quantity}}
            update = {"$inc": {"count_in_stock": -quantity}}
        update["$set"] = {"updated_at": datetime.utcnow()}
        return db.products.update_one(query, update).modified_count == 1

    def release_line_stock(line: Dict) -> None:
        product = db.products.find_one({"_id": line["product"]})
        if not product:
            app.logger.warning("Skipping stock release for deleted product %s", line["product"])
            return
        quantity = int(line["quantity"])
        update: Dict[str, Dict] = {
            "$inc": {"count_in_stock": quantity},
            "$set": {"updated_at": datetime.utcnow()},
        }
        query: Dict[str, object] = {"_id": product["_id"]}
        if product.get("variants"):
            index, variant = catalog.find_variant(
                product, line.get("selected_size"), line.get("selected_color")
            )
            if variant is None:
                app.logger.warning(
                    "Skipping stock release for missing variant %s/%s of product %s",
                    line.get("selected_size"),
                    line.get("selected_color"),
                    product["_id"],
                )
                return
            query[f"variants.{index}.size"] = variant["size"]
            query[f"variants.{index}.color"] = variant["color"]
            update["$inc"][f"variants.{index}.stock"] = quantity
        db.products.update_one(query, update)

    def reserve_order_stock(lines: List[Dict]) -> Optional[Dict]:
        """Reserve every line or none; returns the line that could not be reserved."""
        reserved: List[Dict] = []
        for line in lines:
            if not reserve_line_stock(line):
                for done in reserved:
                    release_line_stock(done)
                return line
            reserved.append(line)
        return None

    def place_order(
        user_document: Dict,
        payload: Dict,
        payment_method: str,
        *,
        status: str = "pending",
        payment_result: Optional[Dict] = None,
        expected_amount: Optional[int] = None,
    ):
        lines, line_error = prepare_order_lines(payload.get("items"))
        if line_error:
            return None, line_error

        if not payload.get("shippingAddress"):
            return None, (jsonify({"message": "Shipping address is required"}), 400)
        shipping_address = normalize_address_payload(payload.get("shippingAddress"))
        missing = [field for field in ADDRESS_REQUIRED_FIELDS if not shipping_address[field]]
        if missing:
            return None, (jsonify({"message": "Shipping address is incomplete"}), 400)

        billing_details = normalize_address_payload(payload.get("billingDetails"), billing=True)
        if billing_details["same_as_shipping"]:
            billing_details = {**shipping_address, "same_as_shipping": True}

        pricing = calculate_pricing(lines, payment_method)
        if pricing["cod_charge"] > 0 and payload.get("codChargesAccepted") is not True:
            return None, (
                jsonify({"message": "Please accept the Cash on Delivery charges to continue"}),
                400,
            )
        if expected_amount is not None and payments.to_minor_units(pricing["final_total"]) != expected_amount:
            app.logger.error(
                "Order total %.2f does not match paid amount %s for user %s",
                pricing["final_total"],
                expected_amount,
                user_document["_id"],
            )
            return None, (jsonify({"message": "Order total no longer matches the payment"}), 400)

        failed_line = reserve_order_stock(lines)
        if failed_line:
            return None, (jsonify({"message": f"{failed_line['name']} is out of stock"}), 400)

        now = datetime.utcnow()
        order_document = {
            "user": user_document["_id"],
            "order_items": [
                {key: value for key, value in line.items() if key != "variant_index"}
                for line in lines
            ],
            "shipping_address": shipping_address,
            "billing_details": billing_details,
            "tax_details": normalize_tax_details(payload.get("taxDetails")),
            "payment_method": payment_method,
            "payment_result": payment_result or {},
            "paid_at": now if status == "paid" else None,
            "pricing": pricing,
            "total_price": pricing["final_total"],
            "status": status,
            "created_at": now,
            "updated_at": now,
        }
        try:
            order_document["_id"] = db.orders.insert_one(order_document).inserted_id
        except PyMongoError:
            for line in lines:
                release_line_stock(line)
            raise

        app.logger.info(
            "Order %s placed by %s (%s, %.2f)",
            order_document["_id"],
            user_document["_id"],
            payment_method,
            pricing["final_total"],
        )
        send_order_confirmation_email(order_document, user_document)
        return order_document, None

    def serialize_order(order_document: Dict, user_document: Optional[Dict] = None, include_cost: bool = False) -> Dict:
        pricing = order_document.get("pricing") or {}
        items = []
        for item in order_document.get("order_items") or []:
            serialized_item = {
                "product": str(item.get("product") or ""),
                "name": item.get("name", "") or "",
                "image": item.get("image", "") or "",
                "price": float(item.get("price") or 0),
                "quantity": int(item.get("quantity") or 0),
                "selectedSize": item.get("selected_size", "") or "",
                "selectedColor": item.get("selected_color", "") or "",
                "sku": item.get("sku", "") or "",
            }
            if include_cost:
                serialized_item["purchasePrice"] = float(item.get("purchase_price") or 0)
            items.append(serialized_item)

        payment_result = order_document.get("payment_result") or {}
        user_value: object = str(order_document.get("user") or "")
        if user_document is not None:
            user_value = {
                "id": str(user_document["_id"]),
                "name": user_document.get("name", "") or "",
                "email": user_document.get("email", "") or "",
            }

        return {
            "id": str(order_document["_id"]),
            "user": user_value,
            "orderItems": items,
            "shippingAddress": serialize_address_payload(order_document.get("shipping_address")),
            "billingDetails": serialize_address_payload(
                order_document.get("billing_details"), billing=True
            ),
            "taxDetails": serialize_tax_details(order_document.get("tax_details")),
            "paymentMethod": order_document.get("payment_method") or PAYMENT_METHOD_COD,
            "paymentResult": {
                "gateway": payment_result.get("gateway", "") or "",
                "razorpayOrderId": payment_result.get("razorpay_order_id", "") or "",
                "razorpayPaymentId": payment_result.get("razorpay_payment_id", "") or "",
            },
            "paidAt": isoformat(order_document.get("paid_at")),
            "pricing": {
                "itemsTotal": float(pricing.get("items_total") or 0),
                "codCharge": float(pricing.get("cod_charge") or 0),
                "finalTotal": float(pricing.get("final_total") or 0),
            },
            "totalPrice": float(order_document.get("total_price") or 0),
            "status": order_document.get("status") or "pending",
            "createdAt": isoformat(order_document.get("created_at")),
            "updatedAt": isoformat(order_document.get("updated_at")),
        }

    def gateway_settings() -> Dict:
        return get_store_settings().get("payment_gateways") or {}

    def is_cash_on_delivery_enabled() -> bool:
        merged = payments.merge_gateway_settings(gateway_settings())
        return bool(merged["cashOnDelivery"].get("enabled"))

    def place_cash_on_delivery_order(user_document: Dict, payload: Dict):
        if not is_cash_on_delivery_enabled():
            return None, (jsonify({"message": "Cash on Delivery is not available"}), 400)
        return place_order(user_document, payload, PAYMENT_METHOD_COD)

    # --- ROUTES ---

    @app.route("/health")
    @app.route("/api/health")
    def health():
        return jsonify({"ok": True, "timestamp": f"{datetime.utcnow().isoformat()}Z"})

    # Auth
    @app.route("/api/auth/register", methods=["POST"])
    def register():
        payload = request.get_json(silent=True) or {}
        name = clamp(payload.get("name"), 120)
        email = normalize_email(payload.get("email"))
        password = str(payload.get("password") or "")

        if not name or not email or not password:
            return jsonify({"message": "Name, email and password are required"}), 400
        if len(password) < 6:
            return jsonify({"message": "Password must be at least 6 characters"}), 400
        if not is_valid_email(email):
            return jsonify({"message": "Please provide a valid email address"}), 400
        if db.users.find_one({"email": email}):
            return jsonify({"message": "Email already in use"}), 409

        now = datetime.utcnow()
        user_document = {
            "name": name,
            "email": email,
            "password": hash_password(password),
            "phone": "",
            "is_admin": bool(
                app.config["DEFAULT_ADMIN_EMAIL"] and email == app.config["DEFAULT_ADMIN_EMAIL"]
            ),
            "default_shipping_address": normalize_address_payload({}),
            "default_billing_details": normalize_address_payload({}, billing=True),
            "default_tax_details": normalize_tax_details({}),
            "created_at": now,
            "updated_at": now,
        }
        try:
            user_document["_id"] = db.users.insert_one(user_document).inserted_id
        except DuplicateKeyError:
            return jsonify({"message": "Email already in use"}), 409

        app.logger.info("Registered user %s", user_document["_id"])
        return jsonify(build_auth_response(user_document)), 201

    @app.route("/api/auth/login", methods=["POST"])
    def login():
        payload = request.get_json(silent=True) or {}
        email = normalize_email(payload.get("email"))
        password = str(payload.get("password") or "")

        if not email or not password:
            return jsonify({"message": "Email and password are required"}), 400

        user = db.users.find_one({"email": email})
        if not user or not password_matches(password, user.get("password")):
            return jsonify({"message": "Invalid credentials"}), 401

        db.users.update_one({"_id": user["_id"]}, {"$set": {"last_login_at": datetime.utcnow()}})
        return jsonify(build_auth_response(user))

    @app.route("/api/auth/me", methods=["GET"])
    @jwt_required()
    def get_me():
        return jsonify(serialize_user_profile(get_current_user()))

    @app.route("/api/auth/profile", methods=["PUT"])
    @jwt_required()
    def update_profile():
        current_user = get_current_user()
        payload = request.get_json(silent=True) or {}

        updates: Dict[str, object] = {}
        if "name" in payload:
            name = clamp(payload.get("name"), 120)
            if not name:
                return jsonify({"message": "Name is required"}), 400
            updates["name"] = name
        if "phone" in payload:
            updates["phone"] = clamp(payload.get("phone"), 30)
        if "defaultShippingAddress" in payload:
            updates["default_shipping_address"] = normalize_address_payload(
                payload.get("defaultShippingAddress")
            )
        if "defaultBillingDetails" in payload:
            updates["default_billing_details"] = normalize_address_payload(
                payload.get("defaultBillingDetails"), billing=True
            )
        if "defaultTaxDetails" in payload:
            updates["default_tax_details"] = normalize_tax_details(payload.get("defaultTaxDetails"))

        if updates:
            updates["updated_at"] = datetime.utcnow()
            db.users.update_one({"_id": current_user["_id"]}, {"$set": updates})

        refreshed = db.users.find_one({"_id": current_user["_id"]}, {"password": 0})
        return jsonify(serialize_user_profile(refreshed))

    # Products
    @app.route("/api/products", methods=["GET"])
    def list_products():
        filters, sort_spec, page, limit = catalog.build_product_query(request.args)
        total_items = db.products.count_documents(filters)
        paging = catalog.paginate(total_items, page, limit)

        cursor = db.products.find(filters).sort(sort_spec).skip(paging.pop("skip")).limit(limit)
        products = [catalog.serialize_product(document) for document in cursor]
        return jsonify({"products": products, **paging})

    @app.route("/api/products/filters", methods=["GET"])
    def get_product_filters():
        options = {
            key: catalog.sort_values(db.products.distinct(field))
            for key, field in (
                ("categories", "category"),
                ("genders", "gender"),
                ("sizes", "sizes"),
                ("colors", "colors"),
                ("brands", "brand"),
                ("materials", "material"),
                ("fits", "fit"),
            )
        }
        cheapest = db.products.find_one({}, sort=[("price", 1)])
        priciest = db.products.find_one({}, sort=[("price", -1)])
        options["minPrice"] = safe_float((cheapest or {}).get("price"), 0.0)
        options["maxPrice"] = safe_float((priciest or {}).get("price"), 0.0)
        return jsonify(options)

    @app.route("/api/products/<product_id>", methods=["GET"])
    def get_product(product_id: str):
        product_document, load_error = fetch_product(product_id)
        if load_error:
            return load_error
        return jsonify(catalog.serialize_product(product_document))

    @app.route("/api/products", methods=["POST"])
    @jwt_required()
    def create_product():
        current_user, admin_error = require_admin_user()
        if admin_error:
            return admin_error

        payload = request.get_json(silent=True) or {}
        fields, field_error = normalize_product_fields(payload)
        if field_error:
            return jsonify({"message": field_error}), 400

        now = datetime.utcnow()
        product_document = {
            "rating": 0.0,
            "num_reviews": 0,
            **fields,
            "seo": seo.sanitize_seo_meta({}),
            "created_by": current_user["_id"],
            "created_at": now,
            "updated_at": now,
        }
        product_document["_id"] = db.products.insert_one(product_document).inserted_id
        app.logger.info("Product %s created", product_document["_id"])
        return jsonify(catalog.serialize_product(product_document, include_cost=True)), 201

    @app.route("/api/products/<product_id>", methods=["PUT"])
    @jwt_required()
    def update_product(product_id: str):
        _, admin_error = require_admin_user()
        if admin_error:
            return admin_error

        product_document, load_error = fetch_product(product_id)
        if load_error:
            return load_error

        payload = request.get_json(silent=True) or {}
        fields, field_error = normalize_product_fields(payload, existing=product_document)
        if field_error:
            return jsonify({"message": field_error}), 400

        fields["updated_at"] = datetime.utcnow()
        updated = db.products.find_one_and_update(
            {"_id": product_document["_id"]},
            {"$set": fields},
            return_document=ReturnDocument.AFTER,
        )
        return jsonify(catalog.serialize_product(updated, include_cost=True))

    @app.route("/api/products/<product_id>", methods=["DELETE"])
    @jwt_required()
    def delete_product(product_id: str):
        _, admin_error = require_admin_user()
        if admin_error:
            return admin_error

        product_document, load_error = fetch_product(product_id)
        if load_error:
            return load_error

        db.products.delete_one({"_id": product_document["_id"]})
        app.logger.info("Product %s deleted", product_document["_id"])
        return jsonify({"message": "Product deleted"})

    # Orders
    @app.route("/api/orders", methods=["POST"])
    @jwt_required()
    def create_order():
        payload = request.get_json(silent=True) or {}
        payment_method = str(payload.get("paymentMethod") or PAYMENT_METHOD_COD).strip()
        if payment_method.lower() != PAYMENT_METHOD_COD.lower():
            return (
                jsonify({"message": "Online payments must be completed through payment verification"}),
                400,
            )

        order_document, order_error = place_cash_on_delivery_order(get_current_user(), payload)
        if order_error:
            return order_error
        return jsonify(serialize_order(order_document)), 201

    @app.route("/api/orders/my", methods=["GET"])
    @jwt_required()
    def list_my_orders():
        current_user = get_current_user()
        cursor = db.orders.find({"user": current_user["_id"]}).sort(
            [("created_at", -1), ("_id", -1)]
        )
        return jsonify([serialize_order(document) for document in cursor])

    @app.route("/api/orders/my/<order_id>", methods=["GET"])
    @jwt_required()
    def get_my_order(order_id: str):
        current_user = get_current_user()
        object_id = parse_object_id(order_id)
        order_document = db.orders.find_one({"_id": object_id}) if object_id else None
        is_admin = is_admin_user(current_user)
        if not order_document or (
            order_document.get("user") != current_user["_id"] and not is_admin
        ):
            return jsonify({"message": "Order not found"}), 404
        return jsonify(serialize_order(order_document, include_cost=is_admin))

    @app.route("/api/orders", methods=["GET"])
    @jwt_required()
    def list_all_orders():
        _, admin_error = require_admin_user()
        if admin_error:
            return admin_error

        query: Dict[str, object] = {}
        status = str(request.args.get("status") or "").strip().lower()
        if status and status != "all":
            if status not in reports.ORDER_STATUSES:
                return jsonify({"message": "Invalid order status"}), 400
            query["status"] = status

        order_documents = list(db.orders.find(query).sort([("created_at", -1), ("_id", -1)]))
        user_ids = list({document.get("user") for document in order_documents if document.get("user")})
        users = {
            user["_id"]: user
            for user in db.users.find({"_id": {"$in": user_ids}}, {"name": 1, "email": 1})
        }
        return jsonify(
            [
                serialize_order(
                    document,
                    user_document=users.get(document.get("user"))
                    or {"_id": document.get("user") or "", "name": "", "email": ""},
                    include_cost=True,
                )
                for document in order_documents
            ]
        )

    @app.route("/api/orders/<order_id>/status", methods=["PUT"])
    @jwt_required()
    def update_order_status(order_id: str):
        _, admin_error = require_admin_user()
        if admin_error:
            return admin_error

        payload = request.get_json(silent=True) or {}
        next_status = str(payload.get("status") or "").strip().lower()
        if next_status not in reports.ORDER_STATUSES:
            return jsonify({"message": "Invalid order status"}), 400

        object_id = parse_object_id(order_id)
        order_document = db.orders.find_one({"_id": object_id}) if object_id else None
        if not order_document:
            return jsonify({"message": "Order not found"}), 404

        current_status = order_document.get("status") or "pending"
        if current_status == "cancelled" and next_status != "cancelled":
            return jsonify({"message": "Cancelled orders cannot be reopened"}), 400

        updates: Dict[str, object] = {"status": next_status, "updated_at": datetime.utcnow()}
        if next_status == "paid" and not order_document.get("paid_at"):
            updates["paid_at"] = datetime.utcnow()

        # Conditional on the status we read so concurrent cancels restock once.
        result = db.orders.update_one(
            {"_id": order_document["_id"], "status": current_status}, {"$set": updates}
        )
        if result.matched_count == 0:
            return jsonify({"message": "Order was updated by another request, please retry"}), 409

        if next_status == "cancelled" and current_status != "cancelled":
            for item in order_document.get("order_items") or []:
                release_line_stock(item)
            app.logger.info("Order %s cancelled and stock released", order_document["_id"])

        order_document.update(updates)
        return jsonify(serialize_order(order_document, include_cost=True))

    # Payments
    @app.route("/api/orders/payment/options", methods=["GET"])
    @jwt_required()
    def get_payment_options():
        return jsonify(
            payments.build_payment_options(
                gateway_settings(), app.config["COD_CHARGE_PER_PRODUCT"]
            )
        )

    def initiate_razorpay_checkout(user_document: Dict, payload: Dict):
        credentials, credential_error = payments.get_razorpay_credentials(
            gateway_settings(), app.config["SETTINGS_ENCRYPTION_SECRET"]
        )
        if credential_error:
            return jsonify({"message": credential_error}), 400

        lines, line_error = prepare_order_lines(payload.get("items"))
        if line_error:
            return line_error
        if not payload.get("shippingAddress"):
            return jsonify({"message": "Shipping address is required"}), 400

        pricing = calculate_pricing(lines, PAYMENT_METHOD_RAZORPAY)
        user_id = str(user_document["_id"])
        try:
            razorpay_order = payments.create_razorpay_order(
                credentials,
                pricing["final_total"],
                receipt=f"rcpt_{user_id[-8:]}_{int(time.time())}",
                notes={"userId": user_id},
            )
        except payments.PaymentProviderError as exc:
            app.logger.error("Razorpay order creation failed: %s", exc)
            return jsonify({"message": "Unable to start Razorpay payment"}), 502

        # Verification places the order from this record, never from the client's cart.
        db.payment_checkouts.update_one(
            {"razorpay_order_id": razorpay_order["id"]},
            {
                "$set": {
                    "user": user_document["_id"],
                    "checkout": {
                        "items": [
                            {
                                "productId": str(line["product"]),
                                "selectedSize": line["selected_size"],
                                "selectedColor": line["selected_color"],
                                "quantity": line["quantity"],
                            }
                            for line in lines
                        ],
                        "shippingAddress": payload.get("shippingAddress"),
                        "billingDetails": payload.get("billingDetails"),
                        "taxDetails": payload.get("taxDetails"),
                    },
                    "amount": payments.to_minor_units(pricing["final_total"]),
                    "currency": razorpay_order.get("currency", payments.DEFAULT_CURRENCY),
                    "created_at": datetime.utcnow(),
                }
            },
            upsert=True,
        )

        return jsonify(
            {
                "flow": "razorpay",
                "keyId": credentials["key_id"],
                "razorpayOrderId": razorpay_order["id"],
                "amount": razorpay_order.get("amount", payments.to_minor_units(pricing["final_total"])),
                "currency": razorpay_order.get("currency", payments.DEFAULT_CURRENCY),
                "pricing": {
                    "itemsTotal": pricing["items_total"],
                    "codCharge": pricing["cod_charge"],
                    "finalTotal": pricing["final_total"],
                },
            }
        )

    @app.route("/api/orders/payment/initiate", methods=["POST"])
    @jwt_required()
    def initiate_payment():
        payload = request.get_json(silent=True) or {}
        gateway = str(payload.get("gateway") or "").strip().lower()
        current_user = get_current_user()

        if gateway == payments.GATEWAY_CASH_ON_DELIVERY:
            order_document, order_error = place_cash_on_delivery_order(current_user, payload)
            if order_error:
                return order_error
            return jsonify({"flow": "completed", "order": serialize_order(order_document)}), 201

        if gateway == payments.GATEWAY_RAZORPAY:
            return initiate_razorpay_checkout(current_user, payload)

        return jsonify({"message": "Selected payment gateway is not available for checkout"}), 400

    @app.route("/api/orders/razorpay/order", methods=["POST"])
    @jwt_required()
    def create_razorpay_order():
        payload = request.get_json(silent=True) or {}
        return initiate_razorpay_checkout(get_current_user(), payload)

    def checkout_line_keys(raw_items) -> List[Tuple[str, str, str, int]]:
        if not isinstance(raw_items, list):
            return []
        return sorted(
            (
                line["product_id"],
                line["selected_size"].lower(),
                line["selected_color"].lower(),
                line["quantity"] if line["quantity"] is not None else -1,
            )
            for line in merge_order_lines(raw_items)
        )

    def replayed_payment_response(existing: Dict, user_document: Dict):
        if existing.get("user") != user_document["_id"]:
            return jsonify({"message": "Payment has already been used"}), 400
        return jsonify(serialize_order(existing)), 200

    def verify_razorpay_payment(user_document: Dict, body: Dict):
        credentials, credential_error = payments.get_razorpay_credentials(
            gateway_settings(), app.config["SETTINGS_ENCRYPTION_SECRET"]
        )
        if credential_error:
            return jsonify({"message": credential_error}), 400

        razorpay_order_id = str(body.get("razorpayOrderId") or body.get("razorpay_order_id") or "").strip()
        razorpay_payment_id = str(
            body.get("razorpayPaymentId") or body.get("razorpay_payment_id") or ""
        ).strip()
        razorpay_signature = str(
            body.get("razorpaySignature") or body.get("razorpay_signature") or ""
        ).strip()
        if not payments.verify_razorpay_signature(
            razorpay_order_id, razorpay_payment_id, razorpay_signature, credentials["key_secret"]
        ):
            app.logger.warning("Rejected Razorpay payment %s: bad signature", razorpay_payment_id)
            return jsonify({"message": "Payment verification failed"}), 400

        existing = db.orders.find_one({"payment_result.razorpay_payment_id": razorpay_payment_id})
        if existing:
            return replayed_payment_response(existing, user_document)

        session = db.payment_checkouts.find_one({"razorpay_order_id": razorpay_order_id})
        if not session or session.get("user") != user_document["_id"]:
            app.logger.warning(
                "Rejected Razorpay payment %s: no checkout for order %s",
                razorpay_payment_id,
                razorpay_order_id,
            )
            return jsonify({"message": "Payment checkout not found"}), 400
        if session.get("order"):
            return jsonify({"message": "Payment checkout has already been completed"}), 400

        client_checkout = body.get("payload") if isinstance(body.get("payload"), dict) else body
        stored_checkout = session.get("checkout") or {}
        if client_checkout.get("items") is not None and checkout_line_keys(
            client_checkout.get("items")
        ) != checkout_line_keys(stored_checkout.get("items")):
            app.logger.warning(
                "Rejected Razorpay payment %s: cart differs from checkout %s",
                razorpay_payment_id,
                razorpay_order_id,
            )
            return jsonify({"message": "Checkout does not match the payment"}), 400

        try:
            order_document, order_error = place_order(
                user_document,
                stored_checkout,
                PAYMENT_METHOD_RAZORPAY,
                status="paid",
                payment_result={
                    "gateway": payments.GATEWAY_RAZORPAY,
                    "razorpay_order_id": razorpay_order_id,
                    "razorpay_payment_id": razorpay_payment_id,
                    "razorpay_signature": razorpay_signature,
                },
                expected_amount=session.get("amount"),
            )
        except DuplicateKeyError:
            # A concurrent verification inserted this payment first and place_order released our stock.
            existing = db.orders.find_one({"payment_result.razorpay_payment_id": razorpay_payment_id})
            if not existing:
                raise
            return replayed_payment_response(existing, user_document)
        if order_error:
            app.logger.error(
                "Verified Razorpay payment %s could not be turned into an order",
                razorpay_payment_id,
            )
            return order_error
        db.payment_checkouts.update_one(
            {"_id": session["_id"]},
            {"$set": {"order": order_document["_id"], "completed_at": datetime.utcnow()}},
        )
        return jsonify(serialize_order(order_document)), 201

    @app.route("/api/orders/payment/verify", methods=["POST"])
    @jwt_required()
    def verify_payment():
        body = request.get_json(silent=True) or {}
        gateway = str(body.get("gateway") or payments.GATEWAY_RAZORPAY).strip().lower()
        if gateway != payments.GATEWAY_RAZORPAY:
            return jsonify({"message": "Selected payment gateway does not support verification"}), 400
        return verify_razorpay_payment(get_current_user(), body)

    @app.route("/api/orders/razorpay/verify", methods=["POST"])
    @jwt_required()
    def verify_razorpay_order():
        body = request.get_json(silent=True) or {}
        return verify_razorpay_payment(get_current_user(), body)

    # Reports
    @app.route("/api/orders/reports/summary", methods=["GET"])
    @jwt_required()
    def get_order_reports():
        _, admin_error = require_admin_user()
        if admin_error:
            return admin_error

        from_param = request.args.get("from")
        to_param = request.args.get("to")
        start = parse_iso_date(from_param)
        end = parse_iso_date(to_param, end_of_day=True)
        if from_param and not start:
            return jsonify({"message": "Invalid from date"}), 400
        if to_param and not end:
            return jsonify({"message": "Invalid to date"}), 400
        # end is exclusive, so only a from after to leaves an empty range
        if start and end and start >= end:
            return jsonify({"message": "From date cannot be after to date"}), 400

        status = str(request.args.get("status") or "all").strip().lower()
        if status != "all" and status not in reports.ORDER_STATUSES:
            return jsonify({"message": "Invalid order status"}), 400

        interval = str(request.args.get("interval") or "day").strip().lower()
        if interval not in reports.REPORT_INTERVALS:
            return jsonify({"message": "Interval must be day, week or month"}), 400

        payment_method = str(request.args.get("paymentMethod") or "all").strip()

        query: Dict[str, object] = {}
        if start or end:
            created_filter: Dict[str, datetime] = {}
            if start:
                created_filter["$gte"] = start
            if end:
                created_filter["$lt"] = end
            query["created_at"] = created_filter
        if status != "all":
            query["status"] = status
        if payment_method.lower() != "all":
            query["payment_method"] = re.compile(f"^{re.escape(payment_method)}$", re.IGNORECASE)

        report = reports.build_order_report(
            db.orders.find(query),
            interval=interval,
            start=start,
            end=end,
            filters={
                "from": from_param or None,
                "to": to_param or None,
                "status": status,
                "paymentMethod": payment_method,
                "interval": interval,
            },
        )
        return jsonify(report)

    # Store settings
    @app.route("/api/settings", methods=["GET"])
    def get_public_settings():
        return jsonify(serialize_public_settings(get_store_settings()))

    @app.route("/api/settings/admin", methods=["GET"])
    @jwt_required()
    def get_admin_settings():
        _, admin_error = require_admin_user()
        if admin_error:
            return admin_error
        return jsonify(serialize_admin_settings(get_store_settings()))

    @app.route("/api/settings", methods=["PUT"])
    @jwt_required()
    def update_settings():
        _, admin_error = require_admin_user()
        if admin_error:
            return admin_error

        payload = request.get_json(silent=True) or {}
        known_fields = ("storeName", "footerText", "theme", "paymentGateways", "razorpay")
        if not any(field in payload for field in known_fields):
            return jsonify({"message": "No settings fields were provided"}), 400

        settings_document = get_store_settings()
        updates: Dict[str, object] = {}

        if "storeName" in payload:
            store_name = str(payload.get("storeName") or "").strip()
            if not store_name:
                return jsonify({"message": "Store name is required"}), 400
            if len(store_name) > 80:
                return jsonify({"message": "Store name must be 80 characters or less"}), 400
            updates["store_name"] = store_name

        if "footerText" in payload:
            footer_text = str(payload.get("footerText") or "").strip()
            if not footer_text:
                return jsonify({"message": "Footer text is required"}), 400
            if len(footer_text) > 220:
                return jsonify({"message": "Footer text must be 220 characters or less"}), 400
            updates["footer_text"] = footer_text

        if "theme" in payload:
            theme, theme_error = normalize_theme_update(
                payload.get("theme"), settings_document.get("theme")
            )
            if theme_error:
                return jsonify({"message": theme_error}), 400
            updates["theme"] = theme

        gateway_updates = payload.get("paymentGateways") if "paymentGateways" in payload else None
        # Older admin clients send Razorpay keys at the top level.
        if isinstance(payload.get("razorpay"), dict):
            base = gateway_updates if isinstance(gateway_updates, dict) else {}
            gateway_updates = {
                **base,
                "razorpay": {**payload["razorpay"], **(base.get("razorpay") or {})},
            }
        if gateway_updates is not None:
            gateways, gateway_error = payments.apply_gateway_updates(
                settings_document.get("payment_gateways"),
                gateway_updates,
                app.config["SETTINGS_ENCRYPTION_SECRET"],
            )
            if gateway_error:
                return jsonify({"message": gateway_error}), 400
            updates["payment_gateways"] = gateways

        if updates:
            updates["updated_at"] = datetime.utcnow()
            db.store_settings.update_one({"_id": settings_document["_id"]}, {"$set": updates})
            settings_document.update(updates)
            app.logger.info("Store settings updated: %s", ", ".join(sorted(updates)))

        return jsonify(serialize_admin_settings(settings_document))

    # SEO
    @app.route("/api/seo/admin", methods=["GET"])
    @jwt_required()
    def get_seo_admin_data():
        _, admin_error = require_admin_user()
        if admin_error:
            return admin_error
        return jsonify(serialize_seo_settings(get_seo_settings()))

    @app.route("/api/seo/defaults", methods=["PUT"])
    @jwt_required()
    def update_seo_defaults():
        _, admin_error = require_admin_user()
        if admin_error:
            return admin_error

        payload = request.get_json(silent=True) or {}
        settings_document = save_seo_settings(
            get_seo_settings(), defaults=seo.sanitize_seo_meta(payload.get("meta") or {})
        )
        return jsonify(serialize_seo_settings(settings_document))

    @app.route("/api/seo/public-page", methods=["PUT"])
    @jwt_required()
    def upsert_public_page_seo():
        _, admin_error = require_admin_user()
        if admin_error:
            return admin_error

        payload = request.get_json(silent=True) or {}
        key = seo.normalize_seo_key(payload.get("key"))
        label = clamp(payload.get("label"), 80)
        path = seo.normalize_path(payload.get("path"))
        if not key:
            return jsonify({"message": "Page key is required"}), 400
        if not label:
            return jsonify({"message": "Page label is required"}), 400

        settings_document = get_seo_settings()
        pages = seo.merge_public_pages(settings_document.get("public_pages"), current_store_name())
        for page in pages:
            if page["path"] == path and page["key"] != key:
                return jsonify({"message": f'Path already mapped to "{page["label"]}"'}), 400

        entry = {"key": key, "label": label, "path": path, "meta": seo.sanitize_seo_meta(payload.get("meta") or {})}
        for index, page in enumerate(pages):
            if page["key"] == key:
                pages[index] = entry
                break
        else:
            pages.append(entry)

        settings_document = save_seo_settings(settings_document, public_pages=pages)
        return jsonify(serialize_seo_settings(settings_document))

    @app.route("/api/seo/public-page/<key>", methods=["DELETE"])
    @jwt_required()
    def delete_public_page_seo(key: str):
        _, admin_error = require_admin_user()
        if admin_error:
            return admin_error

        normalized_key = seo.normalize_seo_key(key)
        if not normalized_key:
            return jsonify({"message": "Page key is required"}), 400
        if normalized_key in seo.PROTECTED_PAGE_KEYS:
            return jsonify({"message": "Default public pages cannot be deleted"}), 400

        settings_document = get_seo_settings()
        pages = seo.merge_public_pages(settings_document.get("public_pages"), current_store_name())
        remaining = [page for page in pages if page["key"] != normalized_key]
        if len(remaining) == len(pages):
            return jsonify({"message": "SEO page configuration not found"}), 404

        settings_document = save_seo_settings(settings_document, public_pages=remaining)
        return jsonify(serialize_seo_settings(settings_document))

    @app.route("/api/seo/products", methods=["GET"])
    @jwt_required()
    def list_seo_products():
        _, admin_error = require_admin_user()
        if admin_error:
            return admin_error
        cursor = db.products.find({}).sort([("created_at", -1), ("_id", -1)])
        return jsonify([serialize_seo_product(document) for document in cursor])

    @app.route("/api/seo/products/<product_id>", methods=["GET"])
    @jwt_required()
    def get_seo_product(product_id: str):
        _, admin_error = require_admin_user()
        if admin_error:
            return admin_error
        product_document, load_error = fetch_product(product_id)
        if load_error:
            return load_error
        return jsonify(serialize_seo_product(product_document, include_description=True))

    @app.route("/api/seo/products/<product_id>", methods=["PUT"])
    @jwt_required()
    def update_seo_product(product_id: str):
        _, admin_error = require_admin_user()
        if admin_error:
            return admin_error
        product_document, load_error = fetch_product(product_id)
        if load_error:
            return load_error

        payload = request.get_json(silent=True) or {}
        product_seo = seo.sanitize_seo_meta(payload.get("seo") or {})
        db.products.update_one(
            {"_id": product_document["_id"]},
            {"$set": {"seo": product_seo, "updated_at": datetime.utcnow()}},
        )
        product_document["seo"] = product_seo
        return jsonify(serialize_seo_product(product_document))

    @app.route("/api/seo/metadata", methods=["GET"])
    def resolve_page_metadata():
        pathname = seo.normalize_path(request.args.get("path"))
        store_name = current_store_name()
        settings_document = get_seo_settings()
        defaults = settings_document.get("defaults") or {}
        origin = app.config["SITE_URL"]

        product_id = seo.match_product_path(pathname)
        object_id = parse_object_id(product_id) if product_id else None
        product_document = db.products.find_one({"_id": object_id}) if object_id else None
        if product_document:
            primary_image, _ = catalog.resolve_primary_image(
                product_document.get("images"),
                product_document.get("variants"),
                product_document.get("image"),
            )
            return jsonify(
                seo.resolve_seo_for_rendering(
                    meta=product_document.get("seo") or {},
                    fallback_meta=defaults,
                    title_fallback=f"{product_document.get('name', '')} | {store_name}",
                    description_fallback=seo.strip_html(product_document.get("description"))[:160],
                    image_fallback=primary_image,
                    pathname=pathname,
                    origin=origin,
                    site_name=store_name,
                    type_fallback="product",
                )
            )

        pages = seo.merge_public_pages(settings_document.get("public_pages"), store_name)
        page = next((entry for entry in pages if entry["path"] == pathname), None)
        return jsonify(
            seo.resolve_seo_for_rendering(
                meta=page["meta"] if page else defaults,
                fallback_meta=defaults,
                title_fallback=f"{page['label']} | {store_name}" if page else store_name,
                pathname=pathname,
                origin=origin,
                site_name=store_name,
            )
        )

    # Media library
    def media_public_base() -> str:
        return get_public_base(app.config["MEDIA_PUBLIC_BASE_PATH"], app.config["MEDIA_CDN_BASE_URL"])

    def normalize_media_input(payload: Dict) -> Dict[str, str]:
        return {
            "name": clamp(payload.get("name") or "Image", 120) or "Image",
            "alt_text": clamp(payload.get("altText"), 220),
            "url": str(payload.get("url") or "").strip(),
            "mime_type": clamp(payload.get("mimeType"), 120),
            "source": clamp(payload.get("source") or "upload", 40) or "upload",
        }

    def store_media_url(item: Dict) -> Dict:
        if not is_data_image_url(item["url"]):
            return item
        stored = save_image_data_url(item["url"], app.config["MEDIA_STORAGE_DIR"], media_public_base())
        return {
            **item,
            "url": stored["url"],
            "mime_type": stored["mime_type"],
            "storage_path": stored["storage_path"],
            "size_bytes": stored["size_bytes"],
        }

    def serialize_media_asset(asset_document: Dict) -> Dict:
        return {
            "id": str(asset_document["_id"]),
            "name": asset_document.get("name", "") or "",
            "altText": asset_document.get("alt_text", "") or "",
            "url": asset_document.get("url", "") or "",
            "mimeType": asset_document.get("mime_type", "") or "",
            "source": asset_document.get("source") or "upload",
            "sizeBytes": int(asset_document.get("size_bytes") or 0),
            "createdAt": isoformat(asset_document.get("created_at")),
            "updatedAt": isoformat(asset_document.get("updated_at")),
        }

    def fetch_media_asset(asset_id: str):
        object_id = parse_object_id(asset_id)
        asset_document = db.media_assets.find_one({"_id": object_id}) if object_id else None
        if not asset_document:
            return None, (jsonify({"message": "Media asset not found"}), 404)
        return asset_document, None

    def remove_stored_media(storage_path: Optional[str]) -> None:
        try:
            delete_media_file(app.config["MEDIA_STORAGE_DIR"], storage_path)
        except (MediaStorageError, OSError) as exc:
            app.logger.warning("Unable to remove media file %s: %s", storage_path, exc)

    @app.route("/api/media", methods=["GET"])
    @jwt_required()
    def list_media_assets():
        _, admin_error = require_admin_user()
        if admin_error:
            return admin_error

        query_text = str(request.args.get("q") or "").strip()
        limit = safe_positive_int(request.args.get("limit"), 0) or 120
        limit = max(1, min(limit, 500))

        query: Dict[str, object] = {}
        if query_text:
            pattern = re.compile(re.escape(query_text), re.IGNORECASE)
            query["$or"] = [{"name": pattern}, {"alt_text": pattern}, {"url": pattern}]

        cursor = db.media_assets.find(query).sort([("updated_at", -1), ("_id", -1)]).limit(limit)
        return jsonify([serialize_media_asset(document) for document in cursor])

    @app.route("/api/media", methods=["POST"])
    @jwt_required()
    def create_media_assets():
        current_user, admin_error = require_admin_user()
        if admin_error:
            return admin_error

        payload = request.get_json(silent=True) or {}
        raw_items = payload.get("items") if isinstance(payload.get("items"), list) else [payload]
        items = [normalize_media_input(item) for item in raw_items if isinstance(item, dict)]
        if not items:
            return jsonify({"message": "At least one media item is required"}), 400
        for item in items:
            if not is_valid_image_url(item["url"]):
                return (
                    jsonify({"message": "Each media item must have a valid image URL or data URL"}),
                    400,
                )

        stored_items: List[Dict] = []
        try:
            for item in items:
                stored_items.append(store_media_url(item))
        except MediaStorageError as exc:
            for stored in stored_items:
                remove_stored_media(stored.get("storage_path"))
            return jsonify({"message": str(exc)}), 400

        now = datetime.utcnow()
        documents = [
            {**item, "created_by": current_user["_id"], "created_at": now, "updated_at": now}
            for item in stored_items
        ]
        result = db.media_assets.insert_many(documents)
        for document, inserted_id in zip(documents, result.inserted_ids):
            document["_id"] = inserted_id
        app.logger.info("Stored %d media assets", len(documents))
        return jsonify([serialize_media_asset(document) for document in documents]), 201

    @app.route("/api/media/<asset_id>", methods=["PUT"])
    @jwt_required()
    def update_media_asset(asset_id: str):
        _, admin_error = require_admin_user()
        if admin_error:
            return admin_error

        asset_document, load_error = fetch_media_asset(asset_id)
        if load_error:
            return load_error

        payload = request.get_json(silent=True) or {}
        updates: Dict[str, object] = {}
        if "name" in payload:
            name = clamp(payload.get("name"), 120)
            if not name:
                return jsonify({"message": "Media name is required"}), 400
            updates["name"] = name
        if "altText" in payload:
            updates["alt_text"] = clamp(payload.get("altText"), 220)
        if "mimeType" in payload:
            updates["mime_type"] = clamp(payload.get("mimeType"), 120)
        if "source" in payload:
            updates["source"] = clamp(payload.get("source"), 40) or "upload"

        previous_storage_path = asset_document.get("storage_path")
        if "url" in payload:
            url = str(payload.get("url") or "").strip()
            if not is_valid_image_url(url):
                return jsonify({"message": "Media URL must be a valid image URL or data URL"}), 400
            if url != asset_document.get("url"):
                try:
                    stored = store_media_url({"url": url, "mime_type": updates.get("mime_type", "")})
                except MediaStorageError as exc:
                    return jsonify({"message": str(exc)}), 400
                updates["url"] = stored["url"]
                updates["mime_type"] = stored.get("mime_type") or updates.get(
                    "mime_type", asset_document.get("mime_type", "")
                )
                updates["storage_path"] = stored.get("storage_path", "")
                updates["size_bytes"] = stored.get("size_bytes", 0)

        updates["updated_at"] = datetime.utcnow()
        db.media_assets.update_one({"_id": asset_document["_id"]}, {"$set": updates})
        if "storage_path" in updates and previous_storage_path and previous_storage_path != updates["storage_path"]:
            remove_stored_media(previous_storage_path)

        asset_document.update(updates)
        return jsonify(serialize_media_asset(asset_document))

    @app.route("/api/media/<asset_id>", methods=["DELETE"])
    @jwt_required()
    def delete_media_asset(asset_id: str):
        _, admin_error = require_admin_user()
        if admin_error:
            return admin_error

        asset_document, load_error = fetch_media_asset(asset_id)
        if load_error:
            return load_error

        db.media_assets.delete_one({"_id": asset_document["_id"]})
        remove_stored_media(asset_document.get("storage_path"))
        return jsonify({"message": "Media asset deleted"})

    def serve_media_asset(asset_path: str):
        allowed, message = check_hotlink(
            request.headers.get("Referer"),
            request.host,
            app.config["HOTLINK_ALLOWED_DOMAINS"],
            app.config["ENABLE_HOTLINK_PROTECTION"],
        )
        if not allowed:
            return jsonify({"message": message}), 403

        storage_root = os.path.realpath(app.config["MEDIA_STORAGE_DIR"])
        try:
            absolute_path = resolve_absolute_storage_path(storage_root, asset_path)
        except MediaStorageError:
            return jsonify({"message": "Media not found"}), 404
        if not os.path.isfile(absolute_path):
            return jsonify({"message": "Media not found"}), 404

        response = send_from_directory(storage_root, os.path.relpath(absolute_path, storage_root))
        return apply_asset_headers(response)

    media_route_base = get_public_base(app.config["MEDIA_PUBLIC_BASE_PATH"])
    if media_route_base.startswith("/"):
        app.add_url_rule(
            f"{media_route_base}/<path:asset_path>",
            endpoint="serve_media_asset",
            view_func=serve_media_asset,
        )

    return app
