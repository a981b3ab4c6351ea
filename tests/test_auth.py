import pytest
from sqlalchemy import select

from todoapp.auth import (
    COOKIE_NAME,
    EMAIL_TAKEN,
    INVALID_CREDENTIALS,
    SESSION_MAX_AGE_SECONDS,
    SessionManager,
    hash_session_token,
    normalize_email,
)
from todoapp.cookies import CookieJar
from todoapp.errors import AuthRequired
from todoapp.models import Session, User
from todoapp.passwords import verify_password


@pytest.fixture
def sessions(clock):
    return SessionManager(clock=clock)


def jar_with(token=None):
    return CookieJar(incoming={COOKIE_NAME: token} if token else {})


def issued_token(jar):
    value, max_age = jar.outgoing[COOKIE_NAME]
    assert max_age > 0
    return value


def sign_up(db, sessions, email="a@x.com", password="pw123456"):
    jar = jar_with()
    result = sessions.sign_up(db, jar, email, password)
    assert result.ok, result.error
    return result.user, issued_token(jar)


def test_normalize_email():
    assert normalize_email("  Alice@Example.COM ") == "alice@example.com"


def test_sign_up_creates_user_and_session(db, sessions, clock):
    user, token = sign_up(db, sessions, email=" A@X.com ")
    assert user.email == "a@x.com"

    record = db.get(User, user.id)
    assert verify_password("pw123456", record.password_hash)

    session = db.scalars(select(Session).where(Session.user_id == user.id)).one()
    assert session.token_hash == hash_session_token(token)
    assert session.token_hash != token
    assert session.expires_at == clock() + SESSION_MAX_AGE_SECONDS * 1000
    assert len(token) == 64


def test_sign_up_rejects_existing_email_case_insensitively(db, sessions):
    sign_up(db, sessions, email="a@x.com")
    jar = jar_with()
    result = sessions.sign_up(db, jar, "A@X.COM", "other-pass")
    assert not result.ok
    assert result.error == EMAIL_TAKEN
    assert COOKIE_NAME not in jar.outgoing


def test_sign_in_with_wrong_password_or_unknown_email_is_generic(db, sessions):
    sign_up(db, sessions)
    wrong_password = sessions.sign_in(db, jar_with(), "a@x.com", "nope-nope")
    unknown_email = sessions.sign_in(db, jar_with(), "b@x.com", "pw123456")
    assert wrong_password.error == unknown_email.error == INVALID_CREDENTIALS


def test_sign_in_issues_a_new_resolvable_session(db, sessions):
    user, _ = sign_up(db, sessions)
    jar = jar_with()
    result = sessions.sign_in(db, jar, "  A@x.com", "pw123456")
    assert result.ok
    token = issued_token(jar)
    assert sessions.get_current_user(db, jar_with(token)) == user


def test_anonymous_without_cookie(db, sessions):
    jar = jar_with()
    assert sessions.get_current_user(db, jar) is None
    assert jar.outgoing == {}


def test_unknown_token_clears_cookie(db, sessions):
    jar = jar_with("deadbeef")
    assert sessions.get_current_user(db, jar) is None
    assert jar.outgoing[COOKIE_NAME] == ("", 0)


def test_sign_out_makes_session_unresolvable(db, sessions):
    user, token = sign_up(db, sessions)
    assert sessions.get_current_user(db, jar_with(token)) == user

    jar = jar_with(token)
    sessions.sign_out(db, jar)
    assert jar.outgoing[COOKIE_NAME] == ("", 0)
    assert sessions.get_current_user(db, jar_with(token)) is None


def test_sign_out_without_session_is_noop(db, sessions):
    jar = jar_with()
    sessions.sign_out(db, jar)
    assert jar.outgoing[COOKIE_NAME] == ("", 0)


def test_expired_session_is_removed_on_first_use(db, sessions, clock):
    user, token = sign_up(db, sessions)
    clock.advance(seconds=SESSION_MAX_AGE_SECONDS - 1)
    assert sessions.get_current_user(db, jar_with(token)) == user

    clock.advance(seconds=1)
    jar = jar_with(token)
    assert sessions.get_current_user(db, jar) is None
    assert jar.outgoing[COOKIE_NAME] == ("", 0)
    assert db.scalars(select(Session).where(Session.user_id == user.id)).all() == []
    assert sessions.get_current_user(db, jar_with(token)) is None


def test_require_user_raises_for_anonymous(db, sessions):
    with pytest.raises(AuthRequired):
        sessions.require_user(db, jar_with())


def test_change_password_revokes_all_sessions_and_reissues(db, sessions):
    user, first = sign_up(db, sessions)
    jar = jar_with()
    sessions.sign_in(db, jar, "a@x.com", "pw123456")
    second = issued_token(jar)

    jar = jar_with(second)
    result = sessions.change_password(db, jar, user, "pw123456", "new-secret")
    assert result.ok
    fresh = issued_token(jar)

    assert sessions.get_current_user(db, jar_with(first)) is None
    assert sessions.get_current_user(db, jar_with(second)) is None
    assert sessions.get_current_user(db, jar_with(fresh)) == user
    assert len(db.scalars(select(Session).where(Session.user_id == user.id)).all()) == 1

    assert not sessions.sign_in(db, jar_with(), "a@x.com", "pw123456").ok
    assert sessions.sign_in(db, jar_with(), "a@x.com", "new-secret").ok


def test_change_password_rejects_same_password(db, sessions):
    user, token = sign_up(db, sessions)
    result = sessions.change_password(db, jar_with(token), user, "pw123456", "pw123456")
    assert not result.ok
    assert sessions.get_current_user(db, jar_with(token)) == user


def test_change_password_rejects_wrong_current_password(db, sessions):
    user, token = sign_up(db, sessions)
    result = sessions.change_password(db, jar_with(token), user, "wrong-one", "new-secret")
    assert not result.ok
    assert sessions.get_current_user(db, jar_with(token)) == user


def test_delete_session_by_id(db, sessions):
    user, token = sign_up(db, sessions)
    session = db.scalars(select(Session).where(Session.user_id == user.id)).one()
    sessions.delete_session(db, session.id)
    sessions.delete_session(db, session.id)
    assert sessions.get_current_user(db, jar_with(token)) is None
