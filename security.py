"""Password hashing, password policy and the opaque secrets DarkDrop hands out."""
import re
import secrets
import types
import warnings

import bcrypt

# passlib 1.7.4 reads bcrypt.__about__.__version__, which bcrypt 4 no longer ships
if not hasattr(bcrypt, "__about__"):
    bcrypt.__about__ = types.SimpleNamespace(__version__=getattr(bcrypt, "__version__", "4"))
warnings.filterwarnings("ignore", ".*error reading bcrypt version.*")

from passlib.context import CryptContext  # noqa: E402

pwd_context = CryptContext(schemes=["bcrypt"], deprecated="auto")

MIN_PASSWORD_LENGTH = 8
# bcrypt silently ignores everything past 72 bytes
MAX_PASSWORD_BYTES = 72

PASSWORD_RULES = [
    (re.compile(r"[A-Z]"), "Password must contain at least one uppercase letter"),
    (re.compile(r"[a-z]"), "Password must contain at least one lowercase letter"),
    (re.compile(r"\d"), "Password must contain at least one number"),
]


def hash_password(password: str) -> str:
    return pwd_context.hash(password)


def verify_password(password: str, hashed: str) -> bool:
    """False for a wrong password and for a hash passlib cannot parse."""
    try:
        return pwd_context.verify(password, hashed)
    except (ValueError, TypeError):
        return False


def validate_password_strength(password: str) -> tuple[bool, str]:
    if len(password) < MIN_PASSWORD_LENGTH:
        return False, f"Password must be at least {MIN_PASSWORD_LENGTH} characters"
    if len(password.encode("utf-8")) > MAX_PASSWORD_BYTES:
        return False, f"Password must be at most {MAX_PASSWORD_BYTES} bytes"
    for pattern, message in PASSWORD_RULES:
        if not pattern.search(password):
            return False, message
    return True, ""


# ── Opaque bearer secrets ────────────────────────────────────────────────────

def generate_session_token() -> str:
    return secrets.token_hex(32)


def generate_api_key() -> str:
    return secrets.token_hex(32)


def generate_public_token() -> str:
    return secrets.token_urlsafe(24)
