"""
auth.py
Admin console accounts: bcrypt hashing, login and password changes.
"""

from __future__ import annotations

import logging

import bcrypt

import db
from errors import ValidationError

logger = logging.getLogger("dues.auth")

MIN_PASSWORD_LENGTH = 8


def _to_bcrypt_secret(password: str) -> bytes:
    # bcrypt only reads the first 72 bytes
    return password.encode("utf-8")[:72]


def hash_password(password: str) -> str:
    hashed = bcrypt.hashpw(_to_bcrypt_secret(password), bcrypt.gensalt(rounds=12))
    return hashed.decode("utf-8")


def verify_password(password: str, password_hash: str) -> bool:
    return bcrypt.checkpw(_to_bcrypt_secret(password), password_hash.encode("utf-8"))


def validate_new_password(new_password: str, confirm: str | None = None) -> None:
    if len(new_password) < MIN_PASSWORD_LENGTH:
        raise ValidationError(f"Password must be at least {MIN_PASSWORD_LENGTH} characters.")
    if confirm is not None and new_password != confirm:
        raise ValidationError("Passwords do not match.")


def get_admin_by_username(username: str):
    return db.fetch_one("SELECT * FROM admin_users WHERE username = ?", (username,))


def create_admin(username: str, password: str) -> int:
    username = (username or "").strip()
    if not username:
        raise ValidationError("Username is required.")
    validate_new_password(password)
    if get_admin_by_username(username):
        raise ValidationError(f"Admin {username!r} already exists.")
    admin_id = db.execute(
        "INSERT INTO admin_users(username, password_hash, created_at) VALUES(?,?,?)",
        (username, hash_password(password), db.utcnow_iso()),
    )
    logger.info("admin_created", extra={"username": username})
    return admin_id


def login(username: str, password: str) -> bool:
    admin = get_admin_by_username(username)
    if not admin or not verify_password(password, admin["password_hash"]):
        logger.warning("admin_login_failed", extra={"username": username})
        return False
    logger.info("admin_logged_in", extra={"username": username})
    return True


def change_password(username: str, new_password: str, confirm: str | None = None) -> None:
    validate_new_password(new_password, confirm)
    db.execute(
        "UPDATE admin_users SET password_hash = ? WHERE username = ?",
        (hash_password(new_password), username),
    )
    db.clear_force_password_change()
    logger.info("admin_password_changed", extra={"username": username})
