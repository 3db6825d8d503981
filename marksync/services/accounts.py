from __future__ import annotations

from flask import current_app

from marksync.extensions import db
from marksync.models import ApiToken, User
from marksync.services.common import clean_text


class AccountError(ValueError):
    def __init__(self, message: str, status_code: int = 400):
        super().__init__(message)
        self.message = message
        self.status_code = status_code


def has_users() -> bool:
    return db.session.query(User.id).first() is not None


def create_account(username, password, is_admin: bool = False) -> User:
    username = clean_text(username)
    password = password or ""
    if not username or not password:
        raise AccountError("username and password are required")
    if User.query.filter_by(username=username).first():
        raise AccountError("username already exists", 409)

    user = User(username=username, is_admin=is_admin, is_active=True)
    user.set_password(password)
    db.session.add(user)
    db.session.commit()
    current_app.logger.info(
        "Created %s account %s", "admin" if is_admin else "user", username
    )
    return user


def authenticate(username, password) -> User | None:
    user = User.query.filter_by(username=clean_text(username)).first()
    if not user or not user.is_active or not user.check_password(password or ""):
        return None
    return user


def issue_api_token(user: User, name: str | None = None) -> tuple[str, ApiToken]:
    token, token_hash = ApiToken.issue_token()
    row = ApiToken(
        user_id=user.id,
        name=clean_text(name) or "Marksync API Token",
        token_hash=token_hash,
    )
    db.session.add(row)
    db.session.commit()
    return token, row
