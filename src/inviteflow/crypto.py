"""Encryption of OAuth tokens at rest."""

from __future__ import annotations

from cryptography.fernet import Fernet, InvalidToken

from inviteflow.errors import SecretDecryptionError


class TokenCipher:
    """Symmetric cipher for stored OAuth tokens, bound to one Fernet key."""

    def __init__(self, key: str | bytes) -> None:
        raw = key.encode() if isinstance(key, str) else key
        try:
            self._fernet = Fernet(raw)
        except ValueError as exc:
            raise ValueError(
                "TOKEN_ENCRYPTION_KEY must be a url-safe base64-encoded 32-byte key. "
                'Generate with: python -c "from cryptography.fernet import Fernet; '
                'print(Fernet.generate_key().decode())"'
            ) from exc

    def encrypt(self, plaintext: str) -> str:
        """Encrypt a token for storage."""
        return self._fernet.encrypt(plaintext.encode()).decode()

    def decrypt(self, ciphertext: str) -> str:
        """Decrypt a stored token.

        Raises
        ------
        SecretDecryptionError
            When the ciphertext is corrupt or was written under another key.
        """
        try:
            return self._fernet.decrypt(ciphertext.encode()).decode()
        except (InvalidToken, ValueError) as exc:
            raise SecretDecryptionError("Invalid or corrupted encrypted token") from exc

    def encrypt_optional(self, plaintext: str | None) -> str | None:
        if plaintext is None or plaintext == "":
            return None
        return self.encrypt(plaintext)

    def decrypt_optional(self, ciphertext: str | None) -> str | None:
        if ciphertext is None or ciphertext == "":
            return None
        return self.decrypt(ciphertext)
