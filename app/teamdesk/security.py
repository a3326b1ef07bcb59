import secrets

from werkzeug.security import check_password_hash, generate_password_hash


def hash_password(password: str) -> str:
    return generate_password_hash(password)


def verify_password(password: str, password_hash: str) -> bool:
    return bool(password_hash) and check_password_hash(password_hash, password)


def new_session_token() -> str:
    """Opaque 64-char hex token handed to the client."""
    return secrets.token_hex(32)
