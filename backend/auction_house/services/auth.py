from datetime import datetime, timedelta
from typing import Optional
from jose import JWTError, jwt
import hashlib
import os
import binascii
from fastapi import Depends, HTTPException, status, Query
from fastapi.security import HTTPBearer, HTTPAuthorizationCredentials
from sqlalchemy.exc import IntegrityError
from sqlalchemy.orm import Session
from auction_house.config import settings
from auction_house.models.user import UserCreate
from auction_house.models_sqlalchemy import get_db
from auction_house.models_sqlalchemy.models import User
from auction_house.services.policies import Caller
from auction_house.utils.logger import logger

security = HTTPBearer(auto_error=False)

# Password hashing scheme: PBKDF2-HMAC-SHA256 with salt and iterations.
# Stored format: "pbkdf2_sha256$<iterations>$<salt_hex>$<hash_hex>".
_PBKDF2_ALGO_PREFIX = "pbkdf2_sha256"
_PBKDF2_ITERATIONS = 100_000
_PBKDF2_SALT_BYTES = 16


def get_password_hash(password: str) -> str:
    """Return a PBKDF2-SHA256 hash string for the given password.

    The raw key is derived using a random salt and a fixed number of iterations.
    """
    if not isinstance(password, str):
        raise TypeError("password must be a string")

    salt = os.urandom(_PBKDF2_SALT_BYTES)
    dk = hashlib.pbkdf2_hmac("sha256", password.encode("utf-8"), salt, _PBKDF2_ITERATIONS)
    salt_hex = binascii.hexlify(salt).decode("ascii")
    hash_hex = binascii.hexlify(dk).decode("ascii")
    return f"{_PBKDF2_ALGO_PREFIX}${_PBKDF2_ITERATIONS}${salt_hex}${hash_hex}"


def verify_password(plain_password: str, hashed_password: str) -> bool:
    """Verify a password against a PBKDF2-SHA256 encoded hash.

    Returns False if the hash is malformed.
    """
    if not hashed_password:
        return False
    try:
        prefix, iter_str, salt_hex, hash_hex = hashed_password.split("$", 3)
        if prefix != _PBKDF2_ALGO_PREFIX:
            return False
        iterations = int(iter_str)
        salt = binascii.unhexlify(salt_hex.encode("ascii"))
        expected = binascii.unhexlify(hash_hex.encode("ascii"))
    except (ValueError, binascii.Error):
        return False

    dk = hashlib.pbkdf2_hmac("sha256", plain_password.encode("utf-8"), salt, iterations)
    # Constant-time comparison
    return hashlib.sha256(dk).hexdigest() == hashlib.sha256(expected).hexdigest()


def create_access_token(data: dict, expires_delta: Optional[timedelta] = None):
    to_encode = data.copy()
    if expires_delta:
        expire = datetime.utcnow() + expires_delta
    else:
        expire = datetime.utcnow() + timedelta(minutes=settings.ACCESS_TOKEN_EXPIRE_MINUTES)
    to_encode.update({"exp": expire})
    encoded_jwt = jwt.encode(to_encode, settings.secret_key, algorithm=settings.ALGORITHM)
    return encoded_jwt


def register_user(db: Session, user_data: UserCreate) -> User:
    """Create an identity; the provisioning trigger adds its profile."""

    existing_user = db.query(User).filter(User.email == user_data.email).first()
    if existing_user:
        logger.warning(f"Registration failed: Email already exists - {user_data.email}")
        raise HTTPException(
            status_code=status.HTTP_400_BAD_REQUEST,
            detail="Email already registered"
        )

    user = User(
        email=user_data.email,
        hashed_password=get_password_hash(user_data.password),
        full_name=user_data.full_name,
    )
    db.add(user)
    try:
        db.commit()
    except IntegrityError as e:
        db.rollback()
        logger.error(f"Registration failed for {user_data.email}: {e.orig}")
        raise HTTPException(
            status_code=status.HTTP_400_BAD_REQUEST,
            detail="Could not create user"
        )
    db.refresh(user)
    logger.info(f"New user registered: {user.email}")
    return user


def authenticate_user(db: Session, email: str, password: str) -> Optional[User]:
    user = db.query(User).filter(User.email == email).first()
    if not user:
        logger.warning(f"Authentication failed: User not found - {email}")
        return None

    if not verify_password(password, user.hashed_password):
        logger.warning(f"Authentication failed: Invalid password - {email}")
        return None

    logger.info(f"User authenticated successfully: {email}")
    return user


def _decode_user_id(token: str) -> str:
    credentials_exception = HTTPException(
        status_code=status.HTTP_401_UNAUTHORIZED,
        detail="Could not validate credentials",
        headers={"WWW-Authenticate": "Bearer"},
    )
    try:
        payload = jwt.decode(token, settings.secret_key, algorithms=[settings.ALGORITHM])
        user_id: str = payload.get("sub")
        if user_id is None:
            raise credentials_exception
    except JWTError as e:
        logger.error(f"JWT validation error: {str(e)}")
        raise credentials_exception
    return user_id


async def get_caller(
    credentials: Optional[HTTPAuthorizationCredentials] = Depends(security),
    token: Optional[str] = Query(None, description="JWT token for SSE authentication"),
    db: Session = Depends(get_db),
) -> Caller:
    """Resolve the caller from the Authorization header or ``?token=``.

    Requests without credentials run as the anonymous caller; an invalid
    token is a 401. The query parameter exists for EventSource, which cannot
    send custom headers.
    """
    jwt_token = credentials.credentials if credentials else token
    return resolve_caller(db, jwt_token)


def resolve_caller(db: Session, jwt_token: Optional[str]) -> Caller:
    if not jwt_token:
        return Caller.anonymous()

    user_id = _decode_user_id(jwt_token)
    if db.get(User, user_id) is None:
        logger.error(f"User not found for token: {user_id}")
        raise HTTPException(
            status_code=status.HTTP_401_UNAUTHORIZED,
            detail="Could not validate credentials",
            headers={"WWW-Authenticate": "Bearer"},
        )
    return Caller.authenticated(user_id)


async def get_current_caller(caller: Caller = Depends(get_caller)) -> Caller:
    if not caller.is_authenticated:
        raise HTTPException(
            status_code=status.HTTP_401_UNAUTHORIZED,
            detail="Not authenticated",
            headers={"WWW-Authenticate": "Bearer"},
        )
    return caller
