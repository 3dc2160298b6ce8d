"""
Email + password authentication with opaque bearer tokens.

Tokens live in the "session" collection; password reset tokens are stored
hashed in "password_reset" and, since mail delivery is not wired up, are
written to the log for the operator to forward.
"""

import logging
import os
from datetime import timedelta
from hashlib import sha256
from typing import Optional

import bcrypt
from fastapi import Depends, Header

from config import settings
from database import create_document, get_store, now, serialize
from errors import BadRequest, Unauthorized
from rbac import Identity
from schemas import PasswordReset, Role, Session, User

logger = logging.getLogger(__name__)

RESET_REQUESTED_MESSAGE = "If an account with that email exists, a password reset link has been sent."


def _secret(pw: str) -> bytes:
    # bcrypt only looks at the first 72 bytes
    return pw.encode("utf-8")[:72]


def hash_password(pw: str) -> str:
    return bcrypt.hashpw(_secret(pw), bcrypt.gensalt(rounds=settings.bcrypt_rounds)).decode("utf-8")


def verify_password(pw: str, password_hash: str) -> bool:
    try:
        return bcrypt.checkpw(_secret(pw), password_hash.encode("utf-8"))
    except ValueError:
        return False


def new_token() -> str:
    return os.urandom(24).hex()


def public_user(user: dict) -> dict:
    user = serialize(user)
    user.pop("password_hash", None)
    return user


def identity_for(user: dict) -> Identity:
    return Identity(user_id=str(user["_id"]), role=Role(user["role"]), email=user["email"], name=user.get("name", ""))


def signup(store, name: str, email: str, password: str) -> dict:
    if store.find_one("user", {"email": email}):
        raise BadRequest("Email already registered")
    user = User(name=name, email=email, password_hash=hash_password(password), is_active=True, role=Role.USER)
    user_id = create_document(store, "user", user)
    logger.info("User %s signed up", user_id)
    return public_user(store.find_one("user", {"_id": user_id}))


def signin(store, email: str, password: str) -> dict:
    user = store.find_one("user", {"email": email})
    if not user or not verify_password(password, user.get("password_hash", "")):
        raise Unauthorized("Invalid credentials")
    if not user.get("is_active", True):
        raise Unauthorized("Account is disabled")
    token = new_token()
    create_document(store, "session", Session(user_id=str(user["_id"]), token=token))
    return {"user_id": str(user["_id"]), "name": user["name"], "email": user["email"], "role": user["role"], "token": token}


def signout(store, token: str) -> None:
    store.delete_many("session", {"token": token})


def resolve_token(store, token: Optional[str]) -> Optional[Identity]:
    if not token:
        return None
    session = store.find_one("session", {"token": token})
    if not session:
        return None
    user = store.find_one("user", {"_id": session["user_id"]})
    if not user or not user.get("is_active", True):
        return None
    return identity_for(user)


def bearer_token(authorization: Optional[str]) -> Optional[str]:
    if not authorization:
        return None
    scheme, _, token = authorization.partition(" ")
    if scheme.lower() != "bearer" or not token.strip():
        return None
    return token.strip()


def current_identity(
    authorization: Optional[str] = Header(None),
    store=Depends(get_store),
) -> Optional[Identity]:
    """Identity for the request's bearer token, or None when anonymous."""
    return resolve_token(store, bearer_token(authorization))


def request_password_reset(store, email: str) -> str:
    user = store.find_one("user", {"email": email})
    if user:
        user_id = str(user["_id"])
        store.delete_many("password_reset", {"user_id": user_id})
        token = new_token()
        expires_at = now() + timedelta(minutes=settings.reset_token_ttl_minutes)
        create_document(store, "password_reset", PasswordReset(user_id=user_id, token_hash=sha256(token.encode()).hexdigest(), expires_at=expires_at))
        logger.info("Password reset token for user %s: %s", user_id, token)
    return RESET_REQUESTED_MESSAGE


def reset_password(store, token: str, password: str) -> None:
    record = store.find_one("password_reset", {"token_hash": sha256(token.encode()).hexdigest()})
    if not record:
        raise BadRequest("Invalid or expired token.")
    expires_at = record["expires_at"]
    if expires_at.tzinfo is None:
        expires_at = expires_at.replace(tzinfo=now().tzinfo)
    if expires_at < now():
        store.delete_one("password_reset", {"_id": record["_id"]})
        raise BadRequest("Invalid or expired token.")
    with store.transaction() as tx:
        tx.update_one("user", {"_id": record["user_id"]}, values={"password_hash": hash_password(password)})
        tx.delete_many("password_reset", {"user_id": record["user_id"]})
        tx.delete_many("session", {"user_id": record["user_id"]})
    logger.info("Password reset for user %s", record["user_id"])
