from datetime import datetime, timedelta, timezone
from typing import Optional

from fastapi import Depends
from fastapi.security import OAuth2PasswordBearer
from jose import JWTError, jwt
from passlib.context import CryptContext
from pydantic import ValidationError as SchemaError

from config import ACCESS_TOKEN_EXPIRE_MINUTES, ALGORITHM, API_PREFIX, BCRYPT_ROUNDS, SECRET_KEY
from errors import AuthError, ForbiddenError
from schemas import Identity

pwd_context = CryptContext(schemes=["bcrypt"], deprecated="auto", bcrypt__rounds=BCRYPT_ROUNDS)
oauth2_scheme = OAuth2PasswordBearer(tokenUrl=f"{API_PREFIX}/users/login", auto_error=False)


def hash_password(password: str) -> str:
    return pwd_context.hash(password)


def verify_password(password: str, hashed: str) -> bool:
    if not hashed:
        return False
    return pwd_context.verify(password, hashed)


def create_access_token(identity: Identity, expires_delta: Optional[timedelta] = None) -> str:
    expire = datetime.now(timezone.utc) + (expires_delta or timedelta(minutes=ACCESS_TOKEN_EXPIRE_MINUTES))
    to_encode = {"sub": identity.id, "type": identity.type, "name": identity.name, "exp": expire}
    return jwt.encode(to_encode, SECRET_KEY, algorithm=ALGORITHM)


def decode_token(token: str) -> Identity:
    try:
        payload = jwt.decode(token, SECRET_KEY, algorithms=[ALGORITHM])
        return Identity(id=payload.get("sub"), type=payload.get("type"), name=payload.get("name"))
    except (JWTError, SchemaError):
        raise AuthError("Invalid token")


async def get_current_identity(token: Optional[str] = Depends(oauth2_scheme)) -> Identity:
    if not token:
        raise AuthError("Unauthorized")
    return decode_token(token)


def require_role(*roles: str):
    """Dependency that admits only callers whose token carries one of ``roles``."""
    async def checker(identity: Identity = Depends(get_current_identity)) -> Identity:
        if identity.type not in roles:
            raise ForbiddenError("Forbidden")
        return identity
    return checker
