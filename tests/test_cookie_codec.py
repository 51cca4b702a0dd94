"""Tests for signing, reading and clearing the session cookie."""

import pytest

from taskgate.service.cookies import SESSION_COOKIE_NAME, SessionCookieCodec
from taskgate.storage.models import SessionClaim


def _cookie_header(set_cookie: str) -> str:
    """Turn a Set-Cookie value into the Cookie header a browser would send."""
    return set_cookie.split(";", 1)[0]


def _attributes(set_cookie: str) -> list:
    return [part.strip().lower() for part in set_cookie.split(";")[1:]]


@pytest.fixture
def codec():
    return SessionCookieCodec(["first-secret-value"], max_age=3600)


class TestEncode:
    def test_encode_sets_cookie_attributes(self, codec):
        header = codec.encode(SessionClaim("user-1", "session-1"))
        assert header.startswith(f"{SESSION_COOKIE_NAME}=")
        attributes = _attributes(header)
        assert "path=/" in attributes
        assert "max-age=3600" in attributes
        assert "httponly" in attributes
        assert "samesite=lax" in attributes
        assert "secure" not in attributes

    def test_secure_flag_when_enabled(self):
        codec = SessionCookieCodec(["s"], secure=True)
        assert "secure" in _attributes(codec.encode(SessionClaim("u", "s")))

    def test_requires_a_secret(self):
        with pytest.raises(ValueError):
            SessionCookieCodec([])


class TestDecode:
    def test_round_trip(self, codec):
        claim = SessionClaim("user-1", "session-1")
        cookie = _cookie_header(codec.encode(claim))
        assert codec.decode(cookie) == claim

    def test_reads_cookie_among_others(self, codec):
        cookie = _cookie_header(codec.encode(SessionClaim("user-1", "session-1")))
        header = f"theme=dark; {cookie}; other=1"
        assert codec.decode(header) == SessionClaim("user-1", "session-1")

    def test_missing_cookie(self, codec):
        assert codec.decode(None) is None
        assert codec.decode("") is None
        assert codec.decode("theme=dark") is None

    def test_tampered_cookie_rejected(self, codec):
        cookie = _cookie_header(codec.encode(SessionClaim("user-1", "session-1")))
        name, value = cookie.split("=", 1)
        tampered = f"{name}={value[:-2]}{'A' if value[-2] != 'A' else 'B'}{value[-1]}"
        assert codec.decode(tampered) is None

    def test_foreign_secret_rejected(self, codec):
        other = SessionCookieCodec(["someone-elses-secret"])
        cookie = _cookie_header(other.encode(SessionClaim("user-1", "session-1")))
        assert codec.decode(cookie) is None

    def test_garbage_value_rejected(self, codec):
        assert codec.decode(f"{SESSION_COOKIE_NAME}=not-a-signed-value") is None

    def test_rotated_secret_still_verifies(self):
        old = SessionCookieCodec(["old-secret"])
        cookie = _cookie_header(old.encode(SessionClaim("user-1", "session-1")))

        rotated = SessionCookieCodec(["new-secret", "old-secret"])
        assert rotated.decode(cookie) == SessionClaim("user-1", "session-1")

        # New cookies are signed with the first secret only
        fresh = _cookie_header(rotated.encode(SessionClaim("user-2", "session-2")))
        assert SessionCookieCodec(["new-secret"]).decode(fresh) is not None
        assert old.decode(fresh) is None

    def test_custom_cookie_name(self):
        codec = SessionCookieCodec(["s"], name="sid")
        cookie = _cookie_header(codec.encode(SessionClaim("u", "s")))
        assert cookie.startswith("sid=")
        assert codec.decode(cookie) == SessionClaim("u", "s")


class TestDestroy:
    def test_destroy_expires_cookie(self, codec):
        header = codec.destroy()
        assert header.startswith(f"{SESSION_COOKIE_NAME}=")
        assert "max-age=0" in _attributes(header)
        assert codec.decode(_cookie_header(header)) is None
