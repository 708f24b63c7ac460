from datetime import datetime, timedelta, timezone
from typing import Optional
import hashlib
import secrets
from jose import jwt
from fastapi.security import OAuth2PasswordBearer
from argon2 import PasswordHasher
from argon2.exceptions import InvalidHashError, VerificationError, VerifyMismatchError
import bcrypt
import logging

from app.core.config import get_settings

logger = logging.getLogger("uvicorn.error")
settings = get_settings()

SECRET_KEY = settings.SECRET_KEY
ALGORITHM = "HS256"
ACCESS_TOKEN_EXPIRE_MINUTES = settings.ACCESS_TOKEN_EXPIRE_MINUTES

SHARE_CODE_BYTES = 32  # 256 bits of entropy
SHARE_CODE_FINGERPRINT_LENGTH = 16

oauth2_scheme = OAuth2PasswordBearer(tokenUrl="auth/login")

share_code_hasher = PasswordHasher()

def verify_password(plain_password: str, hashed_password: str) -> bool:
    """Verify a password against a hash using bcrypt."""
    try:
        # Encode to bytes and truncate to 72 bytes
        password_bytes = plain_password.encode('utf-8')[:72]
        hashed_bytes = hashed_password.encode('utf-8')

        return bcrypt.checkpw(password_bytes, hashed_bytes)
    except ValueError as e:
        logger.error(f"Password verification failed: {e}")
        return False

def get_password_hash(password: str) -> str:
    """Hash a password using bcrypt."""
    # bcrypt only looks at the first 72 bytes
    password_bytes = password.encode('utf-8')[:72]
    hashed = bcrypt.hashpw(password_bytes, bcrypt.gensalt())
    return hashed.decode('utf-8')

def create_access_token(data: dict, expires_delta: Optional[timedelta] = None):
    to_encode = data.copy()
    if expires_delta:
        expire = datetime.now(timezone.utc) + expires_delta
    else:
        expire = datetime.now(timezone.utc) + timedelta(minutes=ACCESS_TOKEN_EXPIRE_MINUTES)
    to_encode.update({"exp": expire})
    encoded_jwt = jwt.encode(to_encode, SECRET_KEY, algorithm=ALGORITHM)
    return encoded_jwt


def generate_secure_share_code() -> str:
    """32 random bytes, URL-safe base64 without padding (43 chars)."""
    return secrets.token_urlsafe(SHARE_CODE_BYTES)


def hash_share_code(code: str) -> str:
    """Argon2id hash of a plaintext share code. Salt handling is internal to argon2."""
    return share_code_hasher.hash(code)


def verify_share_code(hashed_code: str, code: str) -> bool:
    """
    Check a plaintext code against a stored hash.

    A mismatch returns False. A corrupt hash is logged (without the code) and
    treated as a mismatch so one bad row cannot block redemption of others.
    """
    try:
        return share_code_hasher.verify(hashed_code, code)
    except VerifyMismatchError:
        return False
    except (InvalidHashError, VerificationError) as e:
        logger.warning(f"Share code hash could not be verified: {type(e).__name__}")
        return False


def share_code_fingerprint(code: str) -> str:
    """
    Short, non-secret lookup key for a plaintext code.

    Stored next to the argon2 hash and indexed, so redemption only verifies
    the handful of rows that share the fingerprint.
    """
    return hashlib.sha256(code.encode("utf-8")).hexdigest()[:SHARE_CODE_FINGERPRINT_LENGTH]
