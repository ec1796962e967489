"""SiteInsight: Credential Encryption.

Symmetric Fernet encryption for OAuth tokens. Plaintext tokens never reach
the database or the logs.
"""

from cryptography.fernet import Fernet, InvalidToken

from siteinsight.core.logging import get_logger

logger = get_logger("security")


class TokenCipher:
    """Encrypts and decrypts provider secrets with one shared Fernet key."""

    def __init__(self, key: str):
        if not key:
            raise RuntimeError(
                "TOKEN_ENCRYPTION_KEY is not set. Generate one with "
                "Fernet.generate_key() and export it."
            )
        try:
            self._fernet = Fernet(key.encode("utf-8"))
        except (ValueError, TypeError) as exc:
            raise RuntimeError(
                "TOKEN_ENCRYPTION_KEY must be a URL-safe base64-encoded 32-byte string."
            ) from exc

    def encrypt(self, plaintext: str, *, context: str) -> str:
        """Encrypt a secret before persisting it.

        Args:
            plaintext: Raw secret (access or refresh token).
            context:   Friendly label for logs, e.g. "ga4:cred-1:access".
        """
        if not plaintext:
            raise ValueError("Cannot encrypt empty secret.")
        ciphertext = self._fernet.encrypt(plaintext.encode("utf-8")).decode("utf-8")
        logger.debug(f"Secret encrypted for {context}")
        return ciphertext

    def decrypt(self, ciphertext: str, *, context: str) -> str:
        """Reverse `encrypt`. Raises ValueError if the value cannot be decrypted."""
        if not ciphertext:
            raise ValueError("Cannot decrypt empty secret.")
        try:
            return self._fernet.decrypt(ciphertext.encode("utf-8")).decode("utf-8")
        except InvalidToken as exc:
            logger.error(f"Invalid ciphertext for {context}")
            raise ValueError("Unable to decrypt stored token.") from exc
