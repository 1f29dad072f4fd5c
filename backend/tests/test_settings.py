def test_public_settings_defaults(client, db):
    body = client.get("/api/settings").get_json()

    assert body["storeName"] == "Astra Attire"
    assert body["theme"]["primaryColor"] == "#1b3557"
    assert body["theme"]["headingFontFamily"] == "Playfair Display"
    assert "paymentGateways" not in body
    assert db.store_settings.count_documents({}) == 1


def test_settings_singleton_is_created_once(client, db):
    client.get("/api/settings")
    client.get("/api/settings")

    assert db.store_settings.count_documents({"singleton_key": "default"}) == 1


def test_admin_updates_store_name_and_theme(client, admin_headers):
    response = client.put(
        "/api/settings",
        headers=admin_headers,
        json={
            "storeName": "Astra Studio",
            "footerText": "Made in Bengaluru",
            "theme": {"primaryColor": "#ABC", "bodyFontFamily": "Inter"},
        },
    )
    public = client.get("/api/settings").get_json()

    assert response.status_code == 200
    assert public["storeName"] == "Astra Studio"
    assert public["footerText"] == "Made in Bengaluru"
    assert public["theme"]["primaryColor"] == "#abc"
    assert public["theme"]["bodyFontFamily"] == "Inter"
    assert public["theme"]["secondaryColor"] == "#b54d66"


def test_settings_validation(client, admin_headers):
    cases = [
        {},
        {"storeName": "   "},
        {"storeName": "x" * 81},
        {"footerText": ""},
        {"theme": "dark"},
        {"theme": {"primaryColor": "blue"}},
        {"theme": {"textPrimary": "#12345"}},
        {"theme": {"headingFontFamily": ""}},
        {"theme": {"headingFontFamily": "F" * 81}},
    ]

    for payload in cases:
        response = client.put("/api/settings", headers=admin_headers, json=payload)
        assert response.status_code == 400, payload


def test_admin_settings_require_admin(client, user_headers):
    assert client.get("/api/settings/admin", headers=user_headers).status_code == 403
    assert client.put(
        "/api/settings", headers=user_headers, json={"storeName": "Mine"}
    ).status_code == 403


def test_admin_settings_lists_all_gateways(client, admin_headers):
    body = client.get("/api/settings/admin", headers=admin_headers).get_json()

    assert set(body["paymentGateways"]) == {
        "cashOnDelivery",
        "razorpay",
        "stripe",
        "paypal",
        "payu",
        "cashfree",
        "phonepe",
    }
    assert body["paymentGateways"]["phonepe"]["saltIndex"] == "1"
    assert body["paymentGateways"]["stripe"]["secretKeyConfigured"] is False
    assert body["codCharges"]["perProduct"] == 25.0


def test_legacy_top_level_razorpay_payload(client, db, admin_headers):
    response = client.put(
        "/api/settings",
        headers=admin_headers,
        json={"razorpay": {"keyId": "rzp_old_client", "keySecret": "shh"}},
    )

    assert response.status_code == 200
    assert response.get_json()["paymentGateways"]["razorpay"]["keySecretConfigured"] is True
    assert db.store_settings.find_one({})["payment_gateways"]["razorpay"]["key_id"] == "rzp_old_client"
