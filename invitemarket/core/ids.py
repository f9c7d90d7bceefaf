import secrets
import uuid

SLUG_ALPHABET = "0123456789abcdefghijklmnopqrstuvwxyz"
SLUG_LENGTH = 8


def gen_id(prefix: str) -> str:
    return f"{prefix}_{uuid.uuid4().hex}"


def gen_slug(length: int = SLUG_LENGTH) -> str:
    # URL-safe, lowercase; uniqueness is checked by the caller
    return "".join(secrets.choice(SLUG_ALPHABET) for _ in range(length))
