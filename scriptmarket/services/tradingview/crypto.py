"""
AES-256-GCM sealing for seller TradingView session cookies.
Stored format: base64(iv[12] + ciphertext_with_tag).
"""
import base64
import os

from cryptography.hazmat.primitives.ciphers.aead import AESGCM

from scriptmarket.core.config import settings

IV_LENGTH = 12


def encrypt_cookie(value: str, key: bytes | None = None) -> str:
    aesgcm = AESGCM(key or settings.tradingview_key_bytes)
    iv = os.urandom(IV_LENGTH)
    ciphertext = aesgcm.encrypt(iv, value.encode("utf-8"), None)
    return base64.b64encode(iv + ciphertext).decode("ascii")


def decrypt_cookie(sealed: str, key: bytes | None = None) -> str:
    """Raises cryptography.exceptions.InvalidTag on a wrong key or tampered value."""
    raw = base64.b64decode(sealed)
    aesgcm = AESGCM(key or settings.tradingview_key_bytes)
    return aesgcm.decrypt(raw[:IV_LENGTH], raw[IV_LENGTH:], None).decode("utf-8")
