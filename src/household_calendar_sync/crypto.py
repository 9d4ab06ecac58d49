"""
Symmetric cipher for stored CalDAV passwords.

Ciphertext layout: base64(nonce ‖ AES-256-GCM(ciphertext ‖ tag)), with a
fresh 12-byte nonce per encryption and the key taken as SHA-256 of the
configured secret.
"""

import base64
import binascii
import hashlib
import os

from cryptography.exceptions import InvalidTag
from cryptography.hazmat.primitives.ciphers.aead import AESGCM

from household_calendar_sync.models import CalendarSyncError
from household_calendar_sync.models import ConfigurationError

NONCE_SIZE = 12


class PasswordCipher:
    def __init__(self, secret: str):
        if not secret:
            raise ConfigurationError("CALDAV_ENCRYPTION_KEY is not configured")
        self._aesgcm = AESGCM(hashlib.sha256(secret.encode("utf-8")).digest())

    def encrypt(self, plaintext: str) -> str:
        nonce = os.urandom(NONCE_SIZE)
        ciphertext = self._aesgcm.encrypt(nonce, plaintext.encode("utf-8"), None)
        return base64.b64encode(nonce + ciphertext).decode("ascii")

    def decrypt(self, token: str) -> str:
        """Decrypt a token produced by :meth:`encrypt`.

        Raises CalendarSyncError when the token is not valid base64, is too
        short, or fails authentication (wrong key or tampered data).
        """
        try:
            raw = base64.b64decode(token, validate=True)
        except (binascii.Error, ValueError) as e:
            raise CalendarSyncError(f"Encrypted password is not valid base64: {e}") from e
        if len(raw) <= NONCE_SIZE:
            raise CalendarSyncError("Encrypted password is truncated")
        try:
            plaintext = self._aesgcm.decrypt(raw[:NONCE_SIZE], raw[NONCE_SIZE:], None)
        except InvalidTag as e:
            raise CalendarSyncError("Failed to decrypt password (wrong key or corrupted data)") from e
        return plaintext.decode("utf-8")
