import logging
from typing import Optional

from cryptography.fernet import Fernet, InvalidToken

logger = logging.getLogger(__name__)


class CredentialDecryptor:
    """Decrypts connection passwords right before a source connects"""

    def __init__(self, encryption_key: Optional[str] = None):
        self._fernet = Fernet(encryption_key.encode()) if encryption_key else None

    def decrypt(self, value: Optional[str]) -> Optional[str]:
        if not value:
            return value
        if self._fernet is None:
            return value
        try:
            return self._fernet.decrypt(value.encode()).decode()
        except InvalidToken:
            logger.warning("Connection password is not a Fernet token; using it as plaintext")
            return value

    def encrypt(self, value: str) -> str:
        if self._fernet is None:
            raise ValueError("No encryption key configured")
        return self._fernet.encrypt(value.encode()).decode()
