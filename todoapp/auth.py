"""
auth.py - Accounts and cookie sessions

The browser holds a random bearer token in an HTTP-only cookie; the
database only ever sees its SHA-256 digest. A session is valid while its
row exists and `expires_at` (epoch ms) lies in the future. Expired rows are
removed the first time someone presents them.

Sign-up, sign-in and password change answer with an `AuthResult` carrying
either the user or a message for the form. Only `require_user` raises.
"""

import hashlib
import secrets
from dataclasses import dataclass
from typing import Optional

from sqlalchemy import delete
from sqlalchemy.exc import IntegrityError
from sqlalchemy.orm import Session as DBSession

from .clock import Clock, ms_to_datetime, system_clock
from .cookies import CookieJar
from .errors import AuthRequired
from .logging import get_logger
from .models import User, Session
from .passwords import hash_password, verify_password

logger = get_logger(__name__)

COOKIE_NAME = "todo_session"
SESSION_MAX_AGE_SECONDS = 60 * 60 * 24 * 30

INVALID_CREDENTIALS = "Email or password is incorrect"
EMAIL_TAKEN = "This email is already registered"


@dataclass(frozen=True)
class AuthUser:
    id: int
    email: str


@dataclass(frozen=True)
class AuthResult:
    user: Optional[AuthUser] = None
    error: Optional[str] = None

    @property
    def ok(self) -> bool:
        return self.error is None


def normalize_email(email: str) -> str:
    return email.strip().lower()


def create_session_token() -> str:
    return secrets.token_hex(32)


def hash_session_token(token: str) -> str:
    return hashlib.sha256(token.encode("utf-8")).hexdigest()


class SessionManager:
    def __init__(
        self,
        clock: Clock = system_clock,
        cookie_name: str = COOKIE_NAME,
        max_age_seconds: int = SESSION_MAX_AGE_SECONDS,
    ):
        self.clock = clock
        self.cookie_name = cookie_name
        self.max_age_seconds = max_age_seconds

    # -----------------------------------------------------------------------
    # Sessions
    # -----------------------------------------------------------------------

    def issue_session(self, db: DBSession, jar: CookieJar, user_id: int) -> str:
        """Persist a new session for `user_id` and hand its token to the cookie jar."""
        now = self.clock()
        token = create_session_token()
        db.add(
            Session(
                user_id=user_id,
                token_hash=hash_session_token(token),
                expires_at=now + self.max_age_seconds * 1000,
                created_at=ms_to_datetime(now),
            )
        )
        db.commit()
        jar.set(self.cookie_name, token, self.max_age_seconds)
        return token

    def get_current_user(self, db: DBSession, jar: CookieJar) -> Optional[AuthUser]:
        """Resolve the caller from the session cookie, or None when anonymous."""
        token = jar.get(self.cookie_name)
        if not token:
            return None

        session = db.query(Session).filter(Session.token_hash == hash_session_token(token)).first()
        if session is None or session.user is None:
            jar.clear(self.cookie_name)
            return None

        if session.expires_at <= self.clock():
            logger.info("Removing expired session %s of user %s", session.id, session.user_id)
            db.delete(session)
            db.commit()
            jar.clear(self.cookie_name)
            return None

        return AuthUser(id=session.user.id, email=session.user.email)

    def require_user(self, db: DBSession, jar: CookieJar) -> AuthUser:
        user = self.get_current_user(db, jar)
        if user is None:
            raise AuthRequired()
        return user

    def delete_session(self, db: DBSession, session_id: int) -> None:
        session = db.get(Session, session_id)
        if session is not None:
            db.delete(session)
            db.commit()

    def revoke_user_sessions(self, db: DBSession, user_id: int) -> int:
        result = db.execute(delete(Session).where(Session.user_id == user_id))
        db.commit()
        return result.rowcount or 0

    # -----------------------------------------------------------------------
    # Account flows
    # -----------------------------------------------------------------------

    def sign_up(self, db: DBSession, jar: CookieJar, email: str, password: str) -> AuthResult:
        email = normalize_email(email)
        if db.query(User).filter(User.email == email).first() is not None:
            return AuthResult(error=EMAIL_TAKEN)

        now = ms_to_datetime(self.clock())
        user = User(email=email, password_hash=hash_password(password), created_at=now, updated_at=now)
        db.add(user)
        try:
            db.commit()
        except IntegrityError:
            # registered concurrently between the check and the insert
            db.rollback()
            return AuthResult(error=EMAIL_TAKEN)

        logger.info("New account %s", email)
        self.issue_session(db, jar, user.id)
        return AuthResult(user=AuthUser(id=user.id, email=user.email))

    def sign_in(self, db: DBSession, jar: CookieJar, email: str, password: str) -> AuthResult:
        email = normalize_email(email)
        user = db.query(User).filter(User.email == email).first()
        if user is None or not verify_password(password, user.password_hash):
            logger.info("Failed sign-in for %s", email)
            return AuthResult(error=INVALID_CREDENTIALS)

        self.issue_session(db, jar, user.id)
        return AuthResult(user=AuthUser(id=user.id, email=user.email))

    def sign_out(self, db: DBSession, jar: CookieJar) -> None:
        token = jar.get(self.cookie_name)
        if token:
            removed = db.execute(delete(Session).where(Session.token_hash == hash_session_token(token))).rowcount
            db.commit()
            logger.info("Signed out (%s session(s) removed)", removed)
        jar.clear(self.cookie_name)

    def change_password(
        self,
        db: DBSession,
        jar: CookieJar,
        user: AuthUser,
        current_password: str,
        new_password: str,
    ) -> AuthResult:
        """Swap the password, revoke every session of the user, then re-issue one
        for the current browser."""
        if current_password == new_password:
            return AuthResult(error="New password must differ from the current one")

        record = db.get(User, user.id)
        if record is None:
            return AuthResult(error="User does not exist")
        if not verify_password(current_password, record.password_hash):
            return AuthResult(error="Current password is incorrect")

        record.password_hash = hash_password(new_password)
        record.updated_at = ms_to_datetime(self.clock())
        db.commit()

        revoked = self.revoke_user_sessions(db, user.id)
        logger.info("Password changed for user %s, %d session(s) revoked", user.id, revoked)

        self.issue_session(db, jar, user.id)
        return AuthResult(user=user)
