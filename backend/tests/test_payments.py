from unittest import mock

import mongomock
import pytest
import requests

import payments
from conftest import auth_headers, order_payload, register
from secure_settings import decrypt_setting_value, encrypt_setting_value

SETTINGS_SECRET = "test-settings-secret"


def razorpay_response(status_code=200, body=None):
    response = mock.Mock()
    response.status_code = status_code
    response.json.return_value = body if body is not None else {
        "id": "order_rzp_1",
        "amount": 100000,
        "currency": "INR",
    }
    return response


@pytest.fixture
def razorpay_enabled(client, admin_headers):
    response = client.put(
        "/api/settings",
        headers=admin_headers,
        json={"paymentGateways": {"razorpay": {"enabled": True, "keyId": "rzp_test_key", "keySecret": "rzp_secret"}}},
    )
    assert response.status_code == 200
    return response.get_json()


def checkout(product, quantity=2):
    payload = order_payload({"productId": str(product["_id"]), "quantity": quantity})
    payload.pop("codChargesAccepted")
    payload["paymentMethod"] = "Razorpay"
    return payload


def start_checkout(client, headers, payload, order_id="order_rzp_1"):
    with mock.patch(
        "payments.requests.post",
        return_value=razorpay_response(body={"id": order_id, "amount": 100000, "currency": "INR"}),
    ):
        response = client.post("/api/orders/razorpay/order", headers=headers, json=payload)
    assert response.status_code == 200, response.get_json()
    return response.get_json()


def paid_body(started, payment_id="pay_1", payload=None):
    order_id = started["razorpayOrderId"]
    body = {
        "gateway": "razorpay",
        "razorpayOrderId": order_id,
        "razorpayPaymentId": payment_id,
        "razorpaySignature": payments.build_razorpay_signature(order_id, payment_id, "rzp_secret"),
    }
    if payload is not None:
        body["payload"] = payload
    return body


def test_payment_options_default(client, user_headers):
    body = client.get("/api/orders/payment/options", headers=user_headers).get_json()
    methods = {method["id"]: method for method in body["methods"]}

    assert set(methods) == {"cash_on_delivery", "razorpay"}
    assert methods["cash_on_delivery"]["configured"] is True
    assert methods["razorpay"]["configured"] is False
    assert methods["razorpay"]["checkoutSupported"] is True
    assert body["codCharges"] == {"perProduct": 25.0}


def test_gateway_secret_is_encrypted_and_never_returned(client, db, razorpay_enabled):
    razorpay = razorpay_enabled["paymentGateways"]["razorpay"]
    stored = db.store_settings.find_one({})["payment_gateways"]["razorpay"]

    assert razorpay["keyId"] == "rzp_test_key"
    assert razorpay["keySecretConfigured"] is True
    assert razorpay["configured"] is True
    assert "rzp_secret" not in str(razorpay_enabled)
    assert stored["key_secret_encrypted"] != "rzp_secret"
    assert decrypt_setting_value(stored["key_secret_encrypted"], SETTINGS_SECRET) == "rzp_secret"


def test_blank_secret_keeps_stored_value(client, db, admin_headers, razorpay_enabled):
    before = db.store_settings.find_one({})["payment_gateways"]["razorpay"]["key_secret_encrypted"]

    client.put(
        "/api/settings",
        headers=admin_headers,
        json={"paymentGateways": {"razorpay": {"keyId": "rzp_new", "keySecret": ""}}},
    )
    after = db.store_settings.find_one({})["payment_gateways"]["razorpay"]

    assert after["key_id"] == "rzp_new"
    assert after["key_secret_encrypted"] == before


def test_initiate_razorpay_creates_provider_order(client, user_headers, product_factory, razorpay_enabled):
    product = product_factory(price=500.0)
    payload = checkout(product)
    payload["gateway"] = "razorpay"

    with mock.patch("payments.requests.post", return_value=razorpay_response()) as post:
        response = client.post("/api/orders/payment/initiate", headers=user_headers, json=payload)
    body = response.get_json()

    assert response.status_code == 200
    assert body["flow"] == "razorpay"
    assert body["keyId"] == "rzp_test_key"
    assert body["razorpayOrderId"] == "order_rzp_1"
    assert body["pricing"]["finalTotal"] == 1000.0
    assert body["pricing"]["codCharge"] == 0.0
    sent = post.call_args
    assert sent.kwargs["json"]["amount"] == 100000
    assert sent.kwargs["auth"] == ("rzp_test_key", "rzp_secret")


def test_initiate_reports_provider_failure(client, user_headers, product_factory, razorpay_enabled):
    payload = checkout(product_factory())
    payload["gateway"] = "razorpay"

    with mock.patch("payments.requests.post", side_effect=requests.ConnectionError("down")):
        unreachable = client.post("/api/orders/payment/initiate", headers=user_headers, json=payload)
    with mock.patch(
        "payments.requests.post",
        return_value=razorpay_response(400, {"error": {"description": "Bad key"}}),
    ):
        rejected = client.post("/api/orders/razorpay/order", headers=user_headers, json=payload)

    assert unreachable.status_code == 502
    assert rejected.status_code == 502


def test_initiate_requires_configured_razorpay(client, user_headers, product_factory):
    payload = checkout(product_factory())
    payload["gateway"] = "razorpay"

    response = client.post("/api/orders/payment/initiate", headers=user_headers, json=payload)

    assert response.status_code == 400
    assert response.get_json()["message"] == "Razorpay is not configured"


def test_initiate_cash_on_delivery_completes_order(client, user_headers, product_factory):
    payload = order_payload({"productId": str(product_factory()["_id"]), "quantity": 1})
    payload["gateway"] = "cash_on_delivery"

    response = client.post("/api/orders/payment/initiate", headers=user_headers, json=payload)
    body = response.get_json()

    assert response.status_code == 201
    assert body["flow"] == "completed"
    assert body["order"]["pricing"]["codCharge"] == 25.0


def test_initiate_unsupported_gateway(client, user_headers, product_factory):
    payload = checkout(product_factory())
    payload["gateway"] = "stripe"

    response = client.post("/api/orders/payment/initiate", headers=user_headers, json=payload)

    assert response.status_code == 400


def test_verify_rejects_bad_signature(client, db, user_headers, product_factory, razorpay_enabled):
    product = product_factory()
    body = {
        "gateway": "razorpay",
        "razorpayOrderId": "order_rzp_1",
        "razorpayPaymentId": "pay_1",
        "razorpaySignature": "forged",
        "payload": checkout(product),
    }

    response = client.post("/api/orders/payment/verify", headers=user_headers, json=body)

    assert response.status_code == 400
    assert db.orders.count_documents({}) == 0


def test_verify_places_paid_order_once(client, db, user_headers, product_factory, razorpay_enabled):
    product = product_factory(count_in_stock=10)
    body = paid_body(start_checkout(client, user_headers, checkout(product)))

    first = client.post("/api/orders/payment/verify", headers=user_headers, json=body)
    repeat = client.post("/api/orders/razorpay/verify", headers=user_headers, json=body)

    assert first.status_code == 201
    assert first.get_json()["status"] == "paid"
    assert first.get_json()["paidAt"].endswith("Z")
    assert first.get_json()["paymentResult"]["razorpayPaymentId"] == "pay_1"
    assert repeat.status_code == 200
    assert repeat.get_json()["id"] == first.get_json()["id"]
    assert db.orders.count_documents({}) == 1
    assert db.products.find_one({"_id": product["_id"]})["count_in_stock"] == 8
    assert db.payment_checkouts.find_one({})["order"] == db.orders.find_one({})["_id"]


def test_verify_rejects_cart_larger_than_payment(client, db, user_headers, product_factory, razorpay_enabled):
    product = product_factory(price=500.0, count_in_stock=10)
    started = start_checkout(client, user_headers, checkout(product, quantity=1))

    response = client.post(
        "/api/orders/payment/verify",
        headers=user_headers,
        json=paid_body(started, payload=checkout(product, quantity=10)),
    )

    assert db.payment_checkouts.find_one({})["amount"] == 50000
    assert response.status_code == 400
    assert response.get_json()["message"] == "Checkout does not match the payment"
    assert db.orders.count_documents({}) == 0
    assert db.products.find_one({"_id": product["_id"]})["count_in_stock"] == 10


def test_verify_places_the_initiated_cart(client, db, user_headers, product_factory, razorpay_enabled):
    product = product_factory(price=500.0, count_in_stock=10)
    started = start_checkout(client, user_headers, checkout(product, quantity=1))

    response = client.post("/api/orders/payment/verify", headers=user_headers, json=paid_body(started))

    assert response.status_code == 201
    assert response.get_json()["totalPrice"] == 500.0
    assert response.get_json()["orderItems"][0]["quantity"] == 1
    assert db.products.find_one({"_id": product["_id"]})["count_in_stock"] == 9


def test_verify_rejects_price_change_after_payment_started(
    client, db, user_headers, product_factory, razorpay_enabled
):
    product = product_factory(price=500.0, count_in_stock=10)
    started = start_checkout(client, user_headers, checkout(product, quantity=1))
    db.products.update_one({"_id": product["_id"]}, {"$set": {"price": 900.0}})

    response = client.post("/api/orders/payment/verify", headers=user_headers, json=paid_body(started))

    assert response.status_code == 400
    assert response.get_json()["message"] == "Order total no longer matches the payment"
    assert db.orders.count_documents({}) == 0
    assert db.products.find_one({"_id": product["_id"]})["count_in_stock"] == 10


def test_verify_requires_own_checkout(client, db, user_headers, product_factory, razorpay_enabled):
    product = product_factory()
    started = start_checkout(client, user_headers, checkout(product))
    other_headers = auth_headers(register(client, name="Other", email="other@example.com")["token"])

    unknown = client.post(
        "/api/orders/payment/verify",
        headers=user_headers,
        json=paid_body({"razorpayOrderId": "order_never_started"}),
    )
    foreign = client.post("/api/orders/payment/verify", headers=other_headers, json=paid_body(started))

    assert unknown.status_code == 400
    assert unknown.get_json()["message"] == "Payment checkout not found"
    assert foreign.status_code == 400
    assert foreign.get_json()["message"] == "Payment checkout not found"
    assert db.orders.count_documents({}) == 0


def test_concurrent_verify_returns_the_first_order(
    client, db, user_headers, product_factory, razorpay_enabled
):
    product = product_factory(count_in_stock=10)
    body = paid_body(start_checkout(client, user_headers, checkout(product)))
    first = client.post("/api/orders/payment/verify", headers=user_headers, json=body)
    db.payment_checkouts.update_one({}, {"$unset": {"order": ""}})

    original_find_one = mongomock.collection.Collection.find_one
    missed = []

    def miss_first_payment_lookup(collection, filter=None, *args, **kwargs):
        if isinstance(filter, dict) and "payment_result.razorpay_payment_id" in filter and not missed:
            missed.append(filter)
            return None
        return original_find_one(collection, filter, *args, **kwargs)

    with mock.patch.object(mongomock.collection.Collection, "find_one", miss_first_payment_lookup):
        second = client.post("/api/orders/payment/verify", headers=user_headers, json=body)

    assert first.status_code == 201
    assert missed
    assert second.status_code == 200
    assert second.get_json()["id"] == first.get_json()["id"]
    assert db.orders.count_documents({}) == 1
    assert db.products.find_one({"_id": product["_id"]})["count_in_stock"] == 8


def test_payment_id_index_is_unique(db, app):
    indexes = db.orders.index_information()
    payment_index = next(
        spec for spec in indexes.values() if spec["key"] == [("payment_result.razorpay_payment_id", 1)]
    )

    assert payment_index["unique"] is True
    assert payment_index["sparse"] is True


def test_legacy_razorpay_settings_are_migrated(client, db, admin_headers):
    db.store_settings.insert_one(
        {
            "singleton_key": "default",
            "store_name": "Astra Attire",
            "razorpay": {
                "key_id": "rzp_legacy",
                "key_secret_encrypted": encrypt_setting_value("legacy_secret", SETTINGS_SECRET),
            },
        }
    )

    body = client.get("/api/settings/admin", headers=admin_headers).get_json()
    stored = db.store_settings.find_one({})

    assert body["paymentGateways"]["razorpay"]["keyId"] == "rzp_legacy"
    assert body["paymentGateways"]["razorpay"]["configured"] is True
    assert stored["payment_gateways"]["razorpay"]["key_id"] == "rzp_legacy"


def test_gateway_update_validation(client, admin_headers):
    unknown = client.put(
        "/api/settings", headers=admin_headers, json={"paymentGateways": {"bitcoin": {}}}
    )
    environment = client.put(
        "/api/settings",
        headers=admin_headers,
        json={"paymentGateways": {"paypal": {"environment": "staging"}}},
    )
    accepted = client.put(
        "/api/settings",
        headers=admin_headers,
        json={"paymentGateways": {"paypal": {"environment": "live", "clientId": "pp_1"}}},
    )

    assert unknown.status_code == 400
    assert environment.status_code == 400
    assert accepted.get_json()["paymentGateways"]["paypal"]["environment"] == "live"
    assert accepted.get_json()["paymentGateways"]["paypal"]["configured"] is False


def test_signature_helpers():
    signature = payments.build_razorpay_signature("order_1", "pay_1", "secret")

    assert payments.verify_razorpay_signature("order_1", "pay_1", signature, "secret")
    assert not payments.verify_razorpay_signature("order_1", "pay_2", signature, "secret")
    assert not payments.verify_razorpay_signature("", "pay_1", signature, "secret")
    assert payments.to_minor_units(12.34) == 1234
