"""
Token Encryption Module

Provides encryption and decryption for provider access and refresh tokens
using Fernet symmetric encryption, keyed from the application secret key.
"""

import base64
from typing import Optional

from cryptography.fernet import Fernet, InvalidToken

from ledgerly.config import get_settings


class TokenEncryption:
    """
    Encrypt and decrypt OAuth tokens for secure storage in database.

    Tokens are encrypted before storage and decrypted only when a provider
    call needs them.
    """

    def __init__(self, secret_key: Optional[str] = None):
        """
        Initialize encryption cipher.

        The secret key is padded/truncated to 32 bytes and base64-encoded
        to create a valid Fernet key.

        Args:
            secret_key: Key material, defaults to the configured secret_key
        """
        secret_key = secret_key or get_settings().secret_key

        key_bytes = secret_key.encode()[:32].ljust(32, b'0')
        self.cipher = Fernet(base64.urlsafe_b64encode(key_bytes))

    def encrypt(self, token: Optional[str]) -> Optional[str]:
        """
        Encrypt a token for database storage.

        Args:
            token: Plain text token to encrypt

        Returns:
            Fernet token as text, or None when there is nothing to store
        """
        if not token:
            return None

        return self.cipher.encrypt(token.encode()).decode()

    def decrypt(self, encrypted_token: Optional[str]) -> Optional[str]:
        """
        Decrypt a token from database.

        Raises:
            ValueError: If the value was not produced with this key
        """
        if not encrypted_token:
            return None

        try:
            return self.cipher.decrypt(encrypted_token.encode()).decode()
        except InvalidToken as e:
            raise ValueError("Stored token could not be decrypted") from e
