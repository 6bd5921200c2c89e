# restopos/auth.py
"""Staff accounts: argon2 password hashes and bearer JWTs guarding the back-office API."""
from __future__ import annotations

import os
from datetime import datetime, timedelta, timezone
from typing import Optional

from fastapi import Header, HTTPException
from jose import JWTError, jwt
from passlib.context import CryptContext
from sqlalchemy.orm import Session

from .models import User

pwd = CryptContext(schemes=["argon2"], deprecated="auto")


def _jwt_secret() -> str:
    return os.getenv("JWT_SECRET", "dev-secret-change-me")


def _jwt_alg() -> str:
    return os.getenv("JWT_ALG", "HS256")


def _jwt_expire_minutes() -> int:
    # one shift plus slack
    raw = os.getenv("JWT_EXPIRE_MIN", "720")
    try:
        return int(raw)
    except ValueError:
        return 720


def hash_password(p: str) -> str:
    return pwd.hash(p)


def verify_password(p: str, h: str) -> bool:
    return pwd.verify(p, h)


def create_token(user_id: int) -> str:
    exp = datetime.now(timezone.utc) + timedelta(minutes=_jwt_expire_minutes())
    payload = {"sub": str(user_id), "exp": exp, "scope": "staff"}
    return jwt.encode(payload, _jwt_secret(), algorithm=_jwt_alg())


def decode_token(token: str) -> Optional[int]:
    try:
        data = jwt.decode(token, _jwt_secret(), algorithms=[_jwt_alg()])
        return int(data.get("sub"))
    except (JWTError, TypeError, ValueError):
        return None


def register_user(db: Session, *, name: str, email: str, password: str, phone: Optional[str] = None) -> Optional[User]:
    """Create a staff user. Returns None when the email is already taken."""
    if db.query(User).filter(User.email == email).first():
        return None
    u = User(name=name, email=email, phone=phone, password_hash=hash_password(password))
    db.add(u)
    db.commit()
    db.refresh(u)
    return u


def authenticate(db: Session, *, email: str, password: str) -> Optional[User]:
    u = db.query(User).filter(User.email == email).first()
    if not u or not verify_password(password, u.password_hash):
        return None
    return u


def require_user_id(authorization: str | None = Header(default=None)) -> int:
    if not authorization or not authorization.lower().startswith("bearer "):
        raise HTTPException(status_code=401, detail="Missing Bearer token")

    token = authorization.split(" ", 1)[1].strip()
    uid = decode_token(token)
    if not uid:
        raise HTTPException(status_code=401, detail="Invalid token")
    return uid
