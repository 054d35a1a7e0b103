import hashlib
import secrets


def token_hash(token: str) -> str:
    return "sha256:" + hashlib.sha256(token.encode("utf-8")).hexdigest()


def verify_token(token: str, stored_hash: str | None) -> bool:
    if not token or not stored_hash:
        return False
    return secrets.compare_digest(token_hash(token), stored_hash)


def generate_bootstrap_token(length: int = 32) -> str:
    return secrets.token_urlsafe(length)
