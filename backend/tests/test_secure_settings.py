import pytest

from secure_settings import decrypt_setting_value, encrypt_setting_value, get_encryption_secret


def test_round_trip_uses_fresh_iv():
    first = encrypt_setting_value("rzp_secret", "secret-a")
    second = encrypt_setting_value("rzp_secret", "secret-a")

    assert first != second
    assert len(first.split(":")) == 3
    assert decrypt_setting_value(first, "secret-a") == "rzp_secret"
    assert decrypt_setting_value(second, "secret-a") == "rzp_secret"


def test_empty_values_pass_through():
    assert encrypt_setting_value("", "secret-a") == ""
    assert encrypt_setting_value(None, "secret-a") == ""
    assert decrypt_setting_value("", "secret-a") == ""


def test_wrong_secret_is_rejected():
    encrypted = encrypt_setting_value("rzp_secret", "secret-a")

    with pytest.raises(ValueError, match="could not be decrypted"):
        decrypt_setting_value(encrypted, "secret-b")


def test_tampered_value_is_rejected():
    iv, tag, cipher_text = encrypt_setting_value("rzp_secret", "secret-a").split(":")

    with pytest.raises(ValueError, match="invalid format"):
        decrypt_setting_value(f"{iv}:{cipher_text}", "secret-a")
    with pytest.raises(ValueError):
        decrypt_setting_value(f"{iv}:{tag}:AAAA{cipher_text}", "secret-a")


def test_secret_falls_back_to_environment(monkeypatch):
    monkeypatch.delenv("SETTINGS_ENCRYPTION_SECRET", raising=False)
    monkeypatch.setenv("JWT_SECRET", "jwt-fallback")

    assert get_encryption_secret() == "jwt-fallback"

    monkeypatch.delenv("JWT_SECRET")
    with pytest.raises(RuntimeError):
        get_encryption_secret()
