"""Encryption of the persisted session record.

Uses Fernet symmetric encryption so the access token does not sit in
plain text on disk when SESSION_SECRET is configured.

## Key Derivation

The encryption key is derived from the session secret using PBKDF2:
- Salt: SESSION_SALT, derived from the secret when not provided
- Iterations: 480,000 (OWASP recommendation for PBKDF2-HMAC-SHA256)
- Key length: 32 bytes (256 bits)

## Usage

```python
from matrix_calendar_bot.session.encryption import SessionCipher

cipher = SessionCipher(secret, salt)
token = cipher.encrypt(serialized_session)
serialized_session = cipher.decrypt(token)
```
"""

from __future__ import annotations

import base64
import logging

from cryptography.fernet import Fernet, InvalidToken
from cryptography.hazmat.primitives import hashes
from cryptography.hazmat.primitives.kdf.pbkdf2 import PBKDF2HMAC

logger = logging.getLogger(__name__)

PBKDF2_ITERATIONS = 480_000


def _create_fernet(secret: str, salt: str) -> Fernet:
    """Create a Fernet cipher from the secret and salt.

    Uses PBKDF2 to derive a proper encryption key from the secret.

    Args:
        secret: Session secret
        salt: Unique salt for this deployment

    Returns:
        Configured Fernet cipher
    """
    kdf = PBKDF2HMAC(
        algorithm=hashes.SHA256(),
        length=32,  # 256 bits for Fernet
        salt=salt.encode("utf-8"),
        iterations=PBKDF2_ITERATIONS,
    )

    key = base64.urlsafe_b64encode(kdf.derive(secret.encode("utf-8")))
    return Fernet(key)


class SessionCipher:
    """Encrypts and decrypts the serialized session record."""

    def __init__(self, secret: str, salt: str):
        if not secret:
            raise ValueError("Session secret must not be empty")
        self._fernet = _create_fernet(secret, salt)

    def encrypt(self, plaintext: str) -> str:
        """Encrypt a serialized session.

        Returns:
            Base64-encoded Fernet token
        """
        return self._fernet.encrypt(plaintext.encode("utf-8")).decode("utf-8")

    def decrypt(self, ciphertext: str) -> str:
        """Decrypt a stored session.

        Raises:
            ValueError: If decryption fails (corrupted record or wrong key)
        """
        try:
            decrypted = self._fernet.decrypt(ciphertext.strip().encode("utf-8"))
        except InvalidToken as e:
            logger.error("Failed to decrypt session: invalid token or key")
            raise ValueError("Failed to decrypt session") from e
        return decrypted.decode("utf-8")
