import base64
import binascii
import hashlib
import os
from typing import Optional

from cryptography.exceptions import InvalidTag
from cryptography.hazmat.primitives.ciphers.aead import AESGCM

IV_SIZE_BYTES = 12
KEY_DERIVATION_SALT = "store-settings:razorpay:v1"


def get_encryption_secret(secret: Optional[str] = None) -> str:
    raw_secret = str(
        secret
        or os.getenv("SETTINGS_ENCRYPTION_SECRET")
        or os.getenv("JWT_SECRET")
        or ""
    ).strip()
    if not raw_secret:
        raise RuntimeError("SETTINGS_ENCRYPTION_SECRET is not configured on server")
    return raw_secret


def get_cipher_key(secret: Optional[str] = None) -> bytes:
    material = f"{KEY_DERIVATION_SALT}:{get_encryption_secret(secret)}"
    return hashlib.sha256(material.encode("utf-8")).digest()


def encrypt_setting_value(value: Optional[str], secret: Optional[str] = None) -> str:
    plain_text = str(value or "")
    if not plain_text:
        return ""

    iv = os.urandom(IV_SIZE_BYTES)
    # AESGCM appends the 16 byte tag to the ciphertext.
    sealed = AESGCM(get_cipher_key(secret)).encrypt(iv, plain_text.encode("utf-8"), None)
    cipher_text, auth_tag = sealed[:-16], sealed[-16:]

    return ":".join(
        base64.b64encode(part).decode("ascii") for part in (iv, auth_tag, cipher_text)
    )


def decrypt_setting_value(encrypted_value: Optional[str], secret: Optional[str] = None) -> str:
    normalized = str(encrypted_value or "").strip()
    if not normalized:
        return ""

    parts = normalized.split(":")
    if len(parts) != 3:
        raise ValueError("Stored secret has an invalid format")

    try:
        iv, auth_tag, cipher_text = (base64.b64decode(part) for part in parts)
        decrypted = AESGCM(get_cipher_key(secret)).decrypt(iv, cipher_text + auth_tag, None)
    except (InvalidTag, binascii.Error, ValueError) as exc:
        raise ValueError("Stored secret could not be decrypted") from exc

    return decrypted.decode("utf-8")
