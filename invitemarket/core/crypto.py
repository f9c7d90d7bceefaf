import json
from cryptography.fernet import Fernet, InvalidToken
from pydantic import SecretStr

from invitemarket.core.config import Settings


class SecretCipher:
    """Fernet wrapper for listing secrets stored at rest."""

    def __init__(self, key: SecretStr | str):
        raw = key.get_secret_value() if isinstance(key, SecretStr) else key
        self._fernet = Fernet(raw.encode("utf-8"))

    def encrypt_json(self, data: dict) -> str:
        raw = json.dumps(data, separators=(",", ":"), ensure_ascii=False).encode("utf-8")
        token = self._fernet.encrypt(raw)
        return token.decode("utf-8")

    def decrypt_json(self, token: str) -> dict:
        raw = self._fernet.decrypt(token.encode("utf-8"))
        return json.loads(raw.decode("utf-8"))


def cipher_from_settings(s: Settings) -> SecretCipher:
    return SecretCipher(s.secrets_encryption_key)


__all__ = ["SecretCipher", "cipher_from_settings", "InvalidToken"]
