#!/usr/bin/python3
"""Encrypted storage of the portal username and password.

The AES-256-GCM key is derived with PBKDF2-HMAC-SHA256 from a digest of the
installation identifier and a device fingerprint plus a per-installation salt.
The key never leaves memory; only the salt and the ciphertext are persisted.

Blob format (``encryptedCreds`` entry)::

    {"data": base64(nonce[12] + ciphertext + tag[16]), "timestamp": <ms>, "version": "1.0"}
"""

from __future__ import annotations

import base64
import binascii
import hashlib
import json
import logging
import os
import platform
import time
import uuid
from dataclasses import asdict, dataclass
from typing import Dict, Optional, Tuple, Union

from cryptography.exceptions import InvalidTag, UnsupportedAlgorithm
from cryptography.hazmat.primitives import hashes
from cryptography.hazmat.primitives.ciphers.aead import AESGCM
from cryptography.hazmat.primitives.kdf.pbkdf2 import PBKDF2HMAC

from autologin_state import KeyValueStore
from portal_errors import (
    ConfigurationError,
    DecryptionError,
    DecryptionFailure,
    KeyDerivationError,
    StorageError,
    ValidationError,
)

logger = logging.getLogger(__name__)

KEY_LENGTH = 32
NONCE_LENGTH = 12
TAG_LENGTH = 16
SALT_LENGTH = 16
KDF_ITERATIONS = 100_000
FORMAT_VERSION = "1.0"

CREDENTIALS_KEY = "encryptedCreds"
SALT_KEY = "salt"
INSTALLATION_ID_KEY = "installationId"

TEST_USERNAME = "test_user"
TEST_PASSWORD = "test_pass_123"


@dataclass
class EncryptedCredentialBlob:
    data: str
    timestamp: int
    version: str = FORMAT_VERSION

    def to_dict(self) -> Dict[str, Union[str, int]]:
        return asdict(self)

    @classmethod
    def from_dict(cls, raw: Dict) -> "EncryptedCredentialBlob":
        if not isinstance(raw, dict) or not isinstance(raw.get("data"), str) or not raw["data"]:
            raise DecryptionError(DecryptionFailure.CORRUPTED_DATA, "Invalid encrypted data format")
        try:
            timestamp = int(raw.get("timestamp") or 0)
        except (TypeError, ValueError) as exc:
            raise DecryptionError(DecryptionFailure.CORRUPTED_DATA, "Invalid encrypted data timestamp") from exc
        return cls(
            data=raw["data"],
            timestamp=timestamp,
            version=str(raw.get("version") or FORMAT_VERSION),
        )


def device_fingerprint() -> str:
    return "|".join((platform.node(), platform.system(), platform.machine()))


def derive_key(installation_id: str, fingerprint: str, salt: bytes) -> bytes:
    """Derive the 256-bit AES-GCM key from device-bound material and the salt."""
    try:
        base_key = hashlib.sha256((installation_id + fingerprint).encode("utf-8")).digest()
        kdf = PBKDF2HMAC(
            algorithm=hashes.SHA256(),
            length=KEY_LENGTH,
            salt=salt,
            iterations=KDF_ITERATIONS,
        )
        return kdf.derive(base_key)
    except (UnsupportedAlgorithm, ValueError, TypeError) as exc:
        raise KeyDerivationError(f"Key derivation failed: {exc}") from exc


class CredentialVault:
    def __init__(
        self,
        store: KeyValueStore,
        installation_id: Optional[str] = None,
        fingerprint: Optional[str] = None,
    ) -> None:
        self.store = store
        self._installation_id = installation_id
        self.fingerprint = fingerprint if fingerprint is not None else device_fingerprint()
        self._key: Optional[bytes] = None

    @property
    def installation_id(self) -> str:
        if self._installation_id is None:
            stored = self.store.get(INSTALLATION_ID_KEY)
            if not stored:
                stored = uuid.uuid4().hex
                self.store.set({INSTALLATION_ID_KEY: stored})
            self._installation_id = stored
        return self._installation_id

    def get_or_create_salt(self) -> bytes:
        stored = self.store.get(SALT_KEY)
        if isinstance(stored, list) and len(stored) == SALT_LENGTH:
            try:
                return bytes(stored)
            except (TypeError, ValueError):
                logger.warning("Stored salt is malformed, generating a new one")

        salt = os.urandom(SALT_LENGTH)
        # Must be persisted before any key is derived from it.
        self.store.set({SALT_KEY: list(salt)})
        logger.info("Generated new encryption salt")
        return salt

    def encryption_key(self) -> bytes:
        if self._key is None:
            salt = self.get_or_create_salt()
            self._key = derive_key(self.installation_id, self.fingerprint, salt)
        return self._key

    def invalidate(self) -> None:
        self._key = None

    def encrypt_credentials(self, username: str, password: str) -> EncryptedCredentialBlob:
        if not username or not username.strip() or not password:
            raise ValidationError("Username and password are required")

        plaintext = json.dumps(
            {"username": username.strip(), "password": password, "version": FORMAT_VERSION}
        ).encode("utf-8")
        nonce = os.urandom(NONCE_LENGTH)
        ciphertext = AESGCM(self.encryption_key()).encrypt(nonce, plaintext, None)

        return EncryptedCredentialBlob(
            data=base64.b64encode(nonce + ciphertext).decode("ascii"),
            timestamp=int(time.time() * 1000),
        )

    def decrypt_credentials(self, blob: Union[EncryptedCredentialBlob, Dict]) -> Tuple[str, str]:
        if not isinstance(blob, EncryptedCredentialBlob):
            blob = EncryptedCredentialBlob.from_dict(blob)

        try:
            combined = base64.b64decode(blob.data, validate=True)
        except (binascii.Error, ValueError) as exc:
            raise DecryptionError(DecryptionFailure.CORRUPTED_DATA, "Invalid encrypted data format") from exc

        if len(combined) < NONCE_LENGTH + TAG_LENGTH:
            raise DecryptionError(DecryptionFailure.CORRUPTED_DATA, "Encrypted data is too short")

        nonce, ciphertext = combined[:NONCE_LENGTH], combined[NONCE_LENGTH:]
        try:
            plaintext = AESGCM(self.encryption_key()).decrypt(nonce, ciphertext, None)
        except InvalidTag as exc:
            raise DecryptionError(
                DecryptionFailure.AUTH_FAILURE, "Invalid credentials or corrupted data"
            ) from exc

        try:
            credentials = json.loads(plaintext.decode("utf-8"))
        except (UnicodeDecodeError, ValueError) as exc:
            raise DecryptionError(DecryptionFailure.CORRUPTED_DATA, "Corrupted credential data") from exc

        if not isinstance(credentials, dict) or not credentials.get("username") or not credentials.get("password"):
            raise DecryptionError(DecryptionFailure.CORRUPTED_DATA, "Invalid credentials structure")

        return credentials["username"], credentials["password"]

    def has_credentials(self) -> bool:
        return bool(self.store.get(CREDENTIALS_KEY))

    def save_credentials(self, username: str, password: str) -> EncryptedCredentialBlob:
        blob = self.encrypt_credentials(username, password)
        self.store.set({CREDENTIALS_KEY: blob.to_dict()})
        logger.info("Credentials encrypted and saved")
        return blob

    def load_credentials(self) -> Tuple[str, str]:
        raw = self.store.get(CREDENTIALS_KEY)
        if not raw:
            raise ConfigurationError("Credentials not configured")
        credentials = self.decrypt_credentials(raw)
        logger.info("Credentials decrypted successfully")
        return credentials

    def test_encryption(self) -> bool:
        try:
            blob = self.encrypt_credentials(TEST_USERNAME, TEST_PASSWORD)
            success = self.decrypt_credentials(blob) == (TEST_USERNAME, TEST_PASSWORD)
        except Exception:
            logger.exception("Encryption test failed")
            return False
        logger.info("Encryption test: %s", "PASSED" if success else "FAILED")
        return success

    def clear_stored_data(self) -> None:
        try:
            self.store.remove(CREDENTIALS_KEY, SALT_KEY)
        except StorageError:
            logger.error("Failed to clear encryption data")
            raise
        self.invalidate()
        logger.info("Encryption data cleared")
