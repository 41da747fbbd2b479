import base64
import binascii
import hashlib

from cryptography.exceptions import InvalidTag
from cryptography.hazmat.primitives.ciphers.aead import AESSIV

from deposit_pipeline.domain.exceptions import EncryptionError


class FieldCipher:
    """Deterministic authenticated encryption for stored identifiers.

    AES-SIV maps equal plaintexts to equal tokens, so a UNIQUE constraint on
    an encrypted column still deduplicates and lookups can compare tokens.
    The 512-bit SIV key is derived from the configured secret with SHA-512.
    """

    def __init__(self, key: str):
        if not key:
            raise ValueError("encryption key must not be empty")
        self._aead = AESSIV(hashlib.sha512(key.encode("utf-8")).digest())

    def obscure(self, plaintext: str) -> str:
        token = self._aead.encrypt(plaintext.encode("utf-8"), None)
        return base64.urlsafe_b64encode(token).decode("ascii")

    def reveal(self, token: str) -> str:
        try:
            raw = base64.urlsafe_b64decode(token.encode("ascii"))
            return self._aead.decrypt(raw, None).decode("utf-8")
        except (InvalidTag, binascii.Error, UnicodeError, ValueError) as e:
            raise EncryptionError("Token could not be decrypted with the configured key") from e

    def obscure_optional(self, plaintext: str | None) -> str | None:
        return None if plaintext is None else self.obscure(plaintext)

    def reveal_optional(self, token: str | None) -> str | None:
        return None if token is None else self.reveal(token)
