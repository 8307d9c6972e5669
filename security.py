import logging
from datetime import datetime, timedelta, timezone
from typing import Optional

from fastapi import Depends, Header, HTTPException
from fastapi.security import OAuth2PasswordBearer
from jose import JWTError, jwt
from passlib.context import CryptContext

import settings
from database import Store, get_store, parse_id

logger = logging.getLogger(__name__)

ROLES = ("admin", "teacher", "student")

pwd_context = CryptContext(schemes=["bcrypt"], deprecated="auto",
                           bcrypt__rounds=settings.BCRYPT_ROUNDS)
oauth2_scheme = OAuth2PasswordBearer(tokenUrl="/api/admin/login", auto_error=False)


# ----------------------- Utility Functions -----------------------

def get_password_hash(password: str) -> str:
    return pwd_context.hash(password)


def verify_password(plain_password: str, hashed_password: str) -> bool:
    if not hashed_password:
        return False
    return pwd_context.verify(plain_password, hashed_password)


def create_access_token(user_id: str, role: str, expires_delta: Optional[timedelta] = None) -> str:
    expire = datetime.now(timezone.utc) + (expires_delta or timedelta(days=settings.ACCESS_TOKEN_EXPIRE_DAYS))
    to_encode = {"sub": str(user_id), "role": role, "exp": expire}
    return jwt.encode(to_encode, settings.SECRET_KEY, algorithm=settings.ALGORITHM)


def decode_access_token(token: str) -> dict:
    return jwt.decode(token, settings.SECRET_KEY, algorithms=[settings.ALGORITHM])


def token_response(user: dict, role: str) -> dict:
    user_id = str(user["_id"])
    return {"token": create_access_token(user_id, role), "token_type": "bearer",
            "role": role, "user_id": user_id}


def login(store: Store, role: str, email: str, password: str) -> dict:
    user = store[role].find_one({"email": email.lower()})
    if not user or not verify_password(password, user.get("password_hash", "")):
        logger.warning("Rejected %s login for %s", role, email)
        raise HTTPException(status_code=400, detail="Invalid credentials")
    return token_response(user, role)


# ----------------------- Auth Helpers -----------------------
def get_current_user(
    bearer: Optional[str] = Depends(oauth2_scheme),
    x_auth_token: Optional[str] = Header(default=None),
    store: Store = Depends(get_store),
) -> dict:
    token = x_auth_token or bearer
    if not token:
        raise HTTPException(status_code=401, detail="No token, authorization denied")
    try:
        payload = decode_access_token(token)
    except JWTError:
        raise HTTPException(status_code=401, detail="Token is not valid")

    role = payload.get("role")
    user_id = payload.get("sub")
    if role not in ROLES or not user_id:
        raise HTTPException(status_code=401, detail="Token is not valid")
    try:
        oid = parse_id(user_id)
    except HTTPException:
        raise HTTPException(status_code=401, detail="Token is not valid")

    user = store[role].find_one({"_id": oid})
    if not user:
        raise HTTPException(status_code=401, detail="User not found")
    user["role"] = role
    user["id"] = str(user["_id"])
    return user


def require_role(*roles: str):
    def dependency(current: dict = Depends(get_current_user)) -> dict:
        if current["role"] not in roles:
            raise HTTPException(status_code=403, detail="Not authorized")
        return current
    return dependency


require_admin = require_role("admin")
require_teacher = require_role("teacher")
require_student = require_role("student")
