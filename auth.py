import os
from datetime import datetime, timedelta
from typing import Optional

import jwt
from fastapi import Cookie, Depends, Response
from fastapi.security import HTTPAuthorizationCredentials, HTTPBearer
from passlib.context import CryptContext

from errors import Forbidden, Unauthenticated
from schemas import SessionUser

# Security/JWT setup
JWT_SECRET = os.getenv("JWT_SECRET", "dev-secret-change-me")
JWT_EXPIRES_MIN = int(os.getenv("JWT_EXPIRES_MIN", str(7 * 24 * 60)))
ADMIN_EMAIL = os.getenv("ADMIN_EMAIL")
SESSION_COOKIE = "session"

security = HTTPBearer(auto_error=False)
password_ctx = CryptContext(schemes=["bcrypt"], deprecated="auto")


def hash_password(password: str) -> str:
    return password_ctx.hash(password)


def verify_password(password: str, hashed: str) -> bool:
    return password_ctx.verify(password, hashed)


def is_admin_email(email: str) -> bool:
    return bool(ADMIN_EMAIL) and email.lower() == ADMIN_EMAIL.lower()


def create_token(user: dict) -> str:
    payload = {
        "sub": str(user["_id"]),
        "email": user.get("email"),
        "name": user.get("name"),
        "is_admin": user.get("is_admin", False),
        "exp": datetime.utcnow() + timedelta(minutes=JWT_EXPIRES_MIN),
        "iat": datetime.utcnow(),
    }
    return jwt.encode(payload, JWT_SECRET, algorithm="HS256")


def decode_token(token: str) -> dict:
    try:
        return jwt.decode(token, JWT_SECRET, algorithms=["HS256"])
    except jwt.ExpiredSignatureError:
        raise Unauthenticated("Session expired")
    except jwt.InvalidTokenError:
        raise Unauthenticated("Invalid session")


def set_session_cookie(response: Response, token: str) -> None:
    response.set_cookie(
        SESSION_COOKIE,
        token,
        max_age=JWT_EXPIRES_MIN * 60,
        httponly=True,
        samesite="lax",
        secure=os.getenv("ENV") == "production",
        path="/",
    )


def clear_session_cookie(response: Response) -> None:
    response.delete_cookie(SESSION_COOKIE, path="/")


def _session_from(credentials: Optional[HTTPAuthorizationCredentials], session: Optional[str]) -> Optional[SessionUser]:
    token = credentials.credentials if credentials else session
    if not token:
        return None
    payload = decode_token(token)
    uid = payload.get("sub")
    if not uid:
        raise Unauthenticated("Invalid session")
    return SessionUser(
        id=uid,
        email=payload.get("email") or "",
        name=payload.get("name") or "",
        is_admin=bool(payload.get("is_admin", False)),
    )


async def get_optional_user(
    credentials: Optional[HTTPAuthorizationCredentials] = Depends(security),
    session: Optional[str] = Cookie(default=None),
) -> Optional[SessionUser]:
    return _session_from(credentials, session)


async def get_current_user(
    credentials: Optional[HTTPAuthorizationCredentials] = Depends(security),
    session: Optional[str] = Cookie(default=None),
) -> SessionUser:
    user = _session_from(credentials, session)
    if user is None:
        raise Unauthenticated()
    return user


async def get_admin_user(user: SessionUser = Depends(get_current_user)) -> SessionUser:
    if not user.is_admin:
        raise Forbidden("Admin only")
    return user
