"""
Encryption of stored credentials.

Cluster passwords, API token secrets, cached Proxmox tickets and NetApp
controller passwords are stored Fernet-encrypted. The Fernet key is derived
from the application ENCRYPTION_KEY with PBKDF2.
"""
import base64
import logging
from typing import Optional

from cryptography.fernet import Fernet, InvalidToken
from cryptography.hazmat.primitives import hashes
from cryptography.hazmat.primitives.kdf.pbkdf2 import PBKDF2HMAC

from bareprox.core.config import settings

logger = logging.getLogger(__name__)

_SALT = b'bareprox_credential_salt_v1'


class CredentialCipher:
    """Encrypt and decrypt short credential strings."""

    def __init__(self, secret_key: str):
        """
        Args:
            secret_key: Application secret the Fernet key is derived from
        """
        kdf = PBKDF2HMAC(
            algorithm=hashes.SHA256(),
            length=32,
            salt=_SALT,
            iterations=100000,
        )
        self.fernet = Fernet(base64.urlsafe_b64encode(kdf.derive(secret_key.encode())))

    def encrypt(self, plaintext: Optional[str]) -> Optional[str]:
        if plaintext is None:
            return None
        return self.fernet.encrypt(plaintext.encode('utf-8')).decode('utf-8')

    def decrypt(self, token: Optional[str]) -> Optional[str]:
        """
        Decrypt a stored credential.

        Args:
            token: Value produced by :meth:`encrypt`

        Returns:
            The plaintext, or None when ``token`` is empty

        Raises:
            InvalidToken: If the value was encrypted with another key
        """
        if not token:
            return None
        try:
            return self.fernet.decrypt(token.encode('utf-8')).decode('utf-8')
        except InvalidToken:
            logger.error("Failed to decrypt stored credential (wrong ENCRYPTION_KEY?)")
            raise


_cipher: Optional[CredentialCipher] = None


def get_cipher() -> CredentialCipher:
    """Get the process-wide cipher built from settings.ENCRYPTION_KEY."""
    global _cipher
    if _cipher is None:
        if not settings.ENCRYPTION_KEY:
            raise RuntimeError("ENCRYPTION_KEY is not configured")
        _cipher = CredentialCipher(settings.ENCRYPTION_KEY)
    return _cipher
