"""Encrypted storage for Zoho OAuth credentials and access tokens.

Credentials (client ID, client secret, refresh token) are entered once and
kept encrypted in the database. The short-lived access token is cached the
same way together with its expiry timestamp.

Every field is encrypted separately with AES-256-GCM and stored as
base64(nonce + ciphertext). The key is derived from the application
encryption key, else the site secret, else a static fallback that only
obfuscates; the fallback is reported as a weak security mode.
"""

import base64
import hashlib
import json
import logging
import os
import time
from typing import Callable, List, Optional

from cryptography.exceptions import InvalidTag
from cryptography.hazmat.primitives.ciphers.aead import AESGCM

from .config import Settings
from .constants import TOKEN_REFRESH_MARGIN_SECONDS
from .database import Database

logger = logging.getLogger(__name__)

# Hook run before credentials are written (e.g. a live connection check)
CredentialValidator = Callable[[str, str, str], None]


class CredentialStore:
    """Persists OAuth secrets encrypted and tracks access token expiry."""

    CREDENTIALS_SECRET = "zoho_credentials"
    TOKENS_SECRET = "zoho_tokens"

    NONCE_SIZE = 12
    FALLBACK_KEY_MATERIAL = "zoho-books-sync-static-fallback-key"

    def __init__(
        self,
        db: Database,
        settings: Settings,
        clock: Callable[[], float] = time.time,
    ):
        """Initialize the credential store.

        Args:
            db: Database holding the encrypted secrets
            settings: Settings with the key material
            clock: Returns the current epoch time in seconds
        """
        self.db = db
        self._clock = clock
        self._validators: List[CredentialValidator] = []
        self._key, self.key_source = self._derive_key(settings)

        if self.is_weak:
            logger.warning(
                "No ENCRYPTION_KEY or SITE_SECRET configured; credentials are "
                "encrypted with a static fallback key (weak security mode)"
            )

    @classmethod
    def _derive_key(cls, settings: Settings):
        if settings.encryption_key:
            material, source = settings.encryption_key, "encryption_key"
        elif settings.site_secret:
            material, source = settings.site_secret, "site_secret"
        else:
            material, source = cls.FALLBACK_KEY_MATERIAL, "fallback"
        return hashlib.sha256(material.encode("utf-8")).digest(), source

    @property
    def is_weak(self) -> bool:
        """True when the static fallback key is in use."""
        return self.key_source == "fallback"

    @property
    def security_mode(self) -> str:
        return "weak" if self.is_weak else "strong"

    # =========================================================================
    # ENCRYPTION
    # =========================================================================

    def encrypt(self, value: str) -> str:
        """Encrypt a value. Empty values and failures yield an empty string."""
        if not value:
            return ""
        try:
            nonce = os.urandom(self.NONCE_SIZE)
            ciphertext = AESGCM(self._key).encrypt(nonce, value.encode("utf-8"), None)
            return base64.b64encode(nonce + ciphertext).decode("ascii")
        except (TypeError, ValueError) as e:
            logger.error(f"Failed to encrypt value: {e}")
            return ""

    def decrypt(self, value: str) -> str:
        """Decrypt a value. Empty values and failures yield an empty string."""
        if not value:
            return ""
        try:
            raw = base64.b64decode(value, validate=True)
            if len(raw) <= self.NONCE_SIZE:
                return ""
            nonce, ciphertext = raw[:self.NONCE_SIZE], raw[self.NONCE_SIZE:]
            return AESGCM(self._key).decrypt(nonce, ciphertext, None).decode("utf-8")
        except (InvalidTag, ValueError, UnicodeDecodeError) as e:
            logger.warning(f"Failed to decrypt stored secret: {type(e).__name__}")
            return ""

    def _load(self, name: str) -> Optional[dict]:
        raw = self.db.get_secret(name)
        if not raw:
            return None
        try:
            data = json.loads(raw)
        except json.JSONDecodeError:
            logger.warning(f"Stored secret {name} is not valid JSON")
            return None
        return data if isinstance(data, dict) else None

    # =========================================================================
    # CREDENTIALS
    # =========================================================================

    def add_validator(self, validator: CredentialValidator) -> None:
        """Register a hook run before credentials are saved.

        A hook that needs to persist credentials itself must call
        ``save_credentials(..., skip_validation=True)`` so it does not
        trigger the hooks again.
        """
        self._validators.append(validator)

    def get_credentials(self) -> Optional[dict]:
        """Get decrypted credentials.

        Returns:
            Dict with client_id, client_secret and refresh_token, or None if
            nothing is stored or any field is empty
        """
        stored = self._load(self.CREDENTIALS_SECRET)
        if stored is None:
            return None

        credentials = {
            "client_id": self.decrypt(stored.get("client_id", "")),
            "client_secret": self.decrypt(stored.get("client_secret", "")),
            "refresh_token": self.decrypt(stored.get("refresh_token", "")),
        }
        if not all(credentials.values()):
            return None
        return credentials

    def save_credentials(
        self,
        client_id: str,
        client_secret: str,
        refresh_token: str,
        skip_validation: bool = False,
    ) -> bool:
        """Encrypt and store OAuth credentials.

        Args:
            client_id: OAuth client ID
            client_secret: OAuth client secret
            refresh_token: Long-lived refresh token
            skip_validation: Write without running the registered hooks

        Returns:
            True if the credentials were written
        """
        if not skip_validation:
            for validator in self._validators:
                validator(client_id, client_secret, refresh_token)

        encrypted = {
            "client_id": self.encrypt(client_id),
            "client_secret": self.encrypt(client_secret),
            "refresh_token": self.encrypt(refresh_token),
        }
        self.db.set_secret(self.CREDENTIALS_SECRET, json.dumps(encrypted))
        logger.info(f"Saved Zoho credentials ({self.security_mode} encryption)")
        return True

    def get_refresh_token(self) -> Optional[str]:
        credentials = self.get_credentials()
        return credentials["refresh_token"] if credentials else None

    def has_credentials(self) -> bool:
        return self.get_credentials() is not None

    def clear_credentials(self) -> bool:
        self.clear_tokens()
        return self.db.delete_secret(self.CREDENTIALS_SECRET)

    # =========================================================================
    # ACCESS TOKEN
    # =========================================================================

    def get_access_token(self) -> Optional[str]:
        stored = self._load(self.TOKENS_SECRET)
        if not stored or not stored.get("access_token"):
            return None
        return self.decrypt(stored["access_token"]) or None

    def get_access_token_expiry(self) -> Optional[int]:
        """Epoch seconds at which the cached access token expires."""
        stored = self._load(self.TOKENS_SECRET)
        if not stored or stored.get("expires_at") is None:
            return None
        return int(stored["expires_at"])

    def is_token_expired(self) -> bool:
        """Check whether the access token needs refreshing.

        Tokens count as expired five minutes early. A missing expiry also
        counts as expired, so callers always refresh when in doubt.
        """
        expiry = self.get_access_token_expiry()
        if expiry is None:
            return True
        return self._clock() >= expiry - TOKEN_REFRESH_MARGIN_SECONDS

    def save_access_token(self, access_token: str, expires_in: int) -> bool:
        """Store an access token valid for ``expires_in`` seconds from now."""
        tokens = {
            "access_token": self.encrypt(access_token),
            "expires_at": int(self._clock()) + int(expires_in),
        }
        self.db.set_secret(self.TOKENS_SECRET, json.dumps(tokens))
        logger.debug(f"Cached access token, expires in {expires_in}s")
        return True

    def clear_tokens(self) -> bool:
        return self.db.delete_secret(self.TOKENS_SECRET)
