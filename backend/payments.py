import hashlib
import hmac
from datetime import datetime
from typing import Dict, List, Optional, Tuple

import requests

from secure_settings import decrypt_setting_value, encrypt_setting_value

RAZORPAY_API_BASE = "https://api.razorpay.com/v1"
RAZORPAY_TIMEOUT_SECONDS = 15
DEFAULT_CURRENCY = "INR"

GATEWAY_CASH_ON_DELIVERY = "cash_on_delivery"
GATEWAY_RAZORPAY = "razorpay"
CHECKOUT_GATEWAYS = (GATEWAY_CASH_ON_DELIVERY, GATEWAY_RAZORPAY)

# settings key -> public id, label, public fields (api name -> stored name, max length),
# secret fields (api name -> stored encrypted name), allowed environments
GATEWAY_DEFINITIONS: Dict[str, Dict] = {
    "cashOnDelivery": {
        "id": GATEWAY_CASH_ON_DELIVERY,
        "label": "Cash on Delivery",
        "type": "offline",
        "enabled": True,
        "public": {},
        "secrets": {},
        "environments": None,
    },
    "razorpay": {
        "id": GATEWAY_RAZORPAY,
        "label": "Razorpay",
        "type": "online",
        "enabled": True,
        "public": {"keyId": ("key_id", 120)},
        "secrets": {"keySecret": "key_secret_encrypted"},
        "environments": None,
    },
    "stripe": {
        "id": "stripe",
        "label": "Stripe",
        "type": "online",
        "enabled": False,
        "public": {"publishableKey": ("publishable_key", 180)},
        "secrets": {
            "secretKey": "secret_key_encrypted",
            "webhookSecret": "webhook_secret_encrypted",
        },
        "environments": None,
    },
    "paypal": {
        "id": "paypal",
        "label": "PayPal",
        "type": "online",
        "enabled": False,
        "public": {"clientId": ("client_id", 180)},
        "secrets": {"clientSecret": "client_secret_encrypted"},
        "environments": ("sandbox", "live"),
    },
    "payu": {
        "id": "payu",
        "label": "PayU",
        "type": "online",
        "enabled": False,
        "public": {"merchantKey": ("merchant_key", 120)},
        "secrets": {"merchantSalt": "merchant_salt_encrypted"},
        "environments": ("test", "live"),
    },
    "cashfree": {
        "id": "cashfree",
        "label": "Cashfree",
        "type": "online",
        "enabled": False,
        "public": {"appId": ("app_id", 140)},
        "secrets": {"secretKey": "secret_key_encrypted"},
        "environments": ("sandbox", "production"),
    },
    "phonepe": {
        "id": "phonepe",
        "label": "PhonePe",
        "type": "online",
        "enabled": False,
        "public": {
            "merchantId": ("merchant_id", 140),
            "saltIndex": ("salt_index", 20),
        },
        "secrets": {"saltKey": "salt_key_encrypted"},
        "environments": ("sandbox", "production"),
    },
}
GATEWAY_DEFAULT_VALUES = {"salt_index": "1"}


class PaymentProviderError(Exception):
    pass


def default_gateway_settings() -> Dict[str, Dict]:
    settings: Dict[str, Dict] = {}
    for key, definition in GATEWAY_DEFINITIONS.items():
        entry: Dict[str, object] = {"enabled": definition["enabled"]}
        for stored_name, _ in definition["public"].values():
            entry[stored_name] = GATEWAY_DEFAULT_VALUES.get(stored_name, "")
        for stored_name in definition["secrets"].values():
            entry[stored_name] = ""
        if definition["environments"]:
            entry["environment"] = definition["environments"][0]
        if definition["public"] or definition["secrets"]:
            entry["updated_at"] = None
        settings[key] = entry
    return settings


def merge_gateway_settings(stored: Optional[Dict]) -> Dict[str, Dict]:
    merged = default_gateway_settings()
    for key, entry in (stored or {}).items():
        if key in merged and isinstance(entry, dict):
            merged[key].update(entry)
    return merged


def apply_gateway_updates(
    stored: Optional[Dict], updates, secret: Optional[str] = None
) -> Tuple[Optional[Dict], Optional[str]]:
    """Merge admin gateway updates into the stored configuration.

    Blank secrets keep the stored value, non-empty secrets are encrypted.
    Returns ``(settings, error_message)``.
    """
    if not isinstance(updates, dict):
        return None, "Payment gateway settings must be an object"

    merged = merge_gateway_settings(stored)
    now = datetime.utcnow()
    for key, payload in updates.items():
        definition = GATEWAY_DEFINITIONS.get(key)
        if definition is None:
            return None, f"Unknown payment gateway: {key}"
        if not isinstance(payload, dict):
            return None, f"Settings for {definition['label']} must be an object"

        entry = merged[key]
        changed = False
        if "enabled" in payload:
            entry["enabled"] = bool(payload.get("enabled"))

        for api_name, (stored_name, max_length) in definition["public"].items():
            if api_name not in payload:
                continue
            value = str(payload.get(api_name) or "").strip()
            if len(value) > max_length:
                return None, f"{definition['label']} {api_name} must be {max_length} characters or less"
            entry[stored_name] = value or GATEWAY_DEFAULT_VALUES.get(stored_name, "")
            changed = True

        for api_name, stored_name in definition["secrets"].items():
            value = str(payload.get(api_name) or "").strip()
            if value:
                entry[stored_name] = encrypt_setting_value(value, secret)
                changed = True

        if "environment" in payload and definition["environments"]:
            environment = str(payload.get("environment") or "").strip().lower()
            if environment not in definition["environments"]:
                allowed = ", ".join(definition["environments"])
                return None, f"{definition['label']} environment must be one of: {allowed}"
            entry["environment"] = environment
            changed = True

        if changed and "updated_at" in entry:
            entry["updated_at"] = now

    return merged, None


def migrate_legacy_razorpay(settings_document: Dict) -> Optional[Dict]:
    """Return a gateway config with legacy top level Razorpay keys moved in, if needed."""
    legacy = settings_document.get("razorpay") or {}
    gateways = merge_gateway_settings(settings_document.get("payment_gateways"))
    current = gateways["razorpay"]
    if current.get("key_id") or current.get("key_secret_encrypted"):
        return None
    if not legacy.get("key_id") and not legacy.get("key_secret_encrypted"):
        return None

    current["key_id"] = legacy.get("key_id", "") or ""
    current["key_secret_encrypted"] = legacy.get("key_secret_encrypted", "") or ""
    current["updated_at"] = legacy.get("updated_at")
    return gateways


def is_gateway_configured(key: str, entry: Dict) -> bool:
    definition = GATEWAY_DEFINITIONS[key]
    required = [stored for stored, _ in definition["public"].values() if stored != "salt_index"]
    required.extend(definition["secrets"].values())
    return all(entry.get(name) for name in required)


def serialize_gateways_for_admin(stored: Optional[Dict]) -> Dict[str, Dict]:
    merged = merge_gateway_settings(stored)
    serialized: Dict[str, Dict] = {}
    for key, definition in GATEWAY_DEFINITIONS.items():
        entry = merged[key]
        output: Dict[str, object] = {"enabled": bool(entry.get("enabled"))}
        for api_name, (stored_name, _) in definition["public"].items():
            output[api_name] = entry.get(stored_name, "") or ""
        for api_name, stored_name in definition["secrets"].items():
            output[f"{api_name}Configured"] = bool(entry.get(stored_name))
        if definition["environments"]:
            output["environment"] = entry.get("environment")
        if definition["public"] or definition["secrets"]:
            updated_at = entry.get("updated_at")
            output["updatedAt"] = (
                f"{updated_at.isoformat()}Z" if isinstance(updated_at, datetime) else None
            )
            output["configured"] = is_gateway_configured(key, entry)
        serialized[key] = output
    return serialized


def build_payment_options(stored: Optional[Dict], cod_charge_per_product: float) -> Dict:
    merged = merge_gateway_settings(stored)
    methods: List[Dict] = []
    for key, definition in GATEWAY_DEFINITIONS.items():
        entry = merged[key]
        if not entry.get("enabled"):
            continue
        configured = key == "cashOnDelivery" or is_gateway_configured(key, entry)
        method = {
            "id": definition["id"],
            "label": definition["label"],
            "type": definition["type"],
            "configured": configured,
            "checkoutSupported": definition["id"] in CHECKOUT_GATEWAYS,
        }
        if key == "razorpay":
            method["keyId"] = entry.get("key_id", "") or ""
        methods.append(method)

    return {"methods": methods, "codCharges": {"perProduct": cod_charge_per_product}}


def get_razorpay_credentials(stored: Optional[Dict], secret: Optional[str] = None):
    entry = merge_gateway_settings(stored)["razorpay"]
    if not entry.get("enabled"):
        return None, "Razorpay is not enabled"
    key_id = str(entry.get("key_id") or "").strip()
    if not key_id or not entry.get("key_secret_encrypted"):
        return None, "Razorpay is not configured"
    try:
        key_secret = decrypt_setting_value(entry.get("key_secret_encrypted"), secret)
    except ValueError:
        return None, "Razorpay credentials could not be read"
    return {"key_id": key_id, "key_secret": key_secret}, None


def to_minor_units(amount: float) -> int:
    return int(round(float(amount) * 100))


def create_razorpay_order(
    credentials: Dict[str, str],
    amount: float,
    receipt: str,
    notes: Optional[Dict[str, str]] = None,
    currency: str = DEFAULT_CURRENCY,
) -> Dict:
    payload = {
        "amount": to_minor_units(amount),
        "currency": currency,
        "receipt": receipt[:40],
        "notes": notes or {},
    }
    try:
        response = requests.post(
            f"{RAZORPAY_API_BASE}/orders",
            json=payload,
            auth=(credentials["key_id"], credentials["key_secret"]),
            timeout=RAZORPAY_TIMEOUT_SECONDS,
        )
    except requests.RequestException as exc:
        raise PaymentProviderError(f"Unable to reach Razorpay: {exc}") from exc

    try:
        body = response.json()
    except ValueError:
        body = {}
    if response.status_code >= 400 or not isinstance(body, dict) or not body.get("id"):
        description = (body.get("error") or {}).get("description") if isinstance(body, dict) else None
        raise PaymentProviderError(description or f"Razorpay returned HTTP {response.status_code}")

    return body


def build_razorpay_signature(order_id: str, payment_id: str, key_secret: str) -> str:
    message = f"{order_id}|{payment_id}".encode("utf-8")
    return hmac.new(key_secret.encode("utf-8"), message, hashlib.sha256).hexdigest()


def verify_razorpay_signature(order_id, payment_id, signature, key_secret: str) -> bool:
    if not order_id or not payment_id or not signature:
        return False
    expected = build_razorpay_signature(str(order_id), str(payment_id), key_secret)
    return hmac.compare_digest(expected, str(signature))
