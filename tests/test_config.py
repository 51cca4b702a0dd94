from taskgate.config import DEFAULT_SESSION_TTL_SECONDS, Environment, Settings


def test_defaults():
    settings = Settings(session_secret="s")
    assert settings.session_ttl_seconds == DEFAULT_SESSION_TTL_SECONDS == 15 * 24 * 3600
    assert settings.session_cookie_name == "__auth-session"
    assert settings.login_code_ttl_seconds == 600
    assert settings.environment is Environment.DEVELOPMENT
    assert settings.secure_cookies is False


def test_secure_cookies_follow_environment():
    assert Settings(session_secret="s", environment="PRODUCTION").secure_cookies is True
    assert Settings(session_secret="s", environment="production", cookie_secure="false").secure_cookies is False
    assert Settings(session_secret="s", cookie_secure="").cookie_secure is None


def test_session_secrets_split_for_rotation():
    settings = Settings(session_secret="new-secret, old-secret,")
    assert settings.session_secrets == ["new-secret", "old-secret"]


def test_from_env_reads_named_variables(monkeypatch):
    monkeypatch.setenv("SESSION_SECRET", "from-env")
    monkeypatch.setenv("GOOGLE_CLIENT_ID", "gid")
    monkeypatch.setenv("SESSION_TTL_SECONDS", "120")
    settings = Settings.from_env()
    assert settings.session_secret == "from-env"
    assert settings.oauth_google_client_id == "gid"
    assert settings.session_ttl_seconds == 120


def test_missing_secret_is_generated_and_persisted(monkeypatch, tmp_path):
    monkeypatch.setenv("SHARED_FS_ROOT", str(tmp_path))
    first = Settings()
    assert len(first.session_secret) >= 32
    assert (tmp_path / ".session_secret").read_text().strip() == first.session_secret
    # A restart reuses the persisted secret
    assert Settings().session_secret == first.session_secret
