import threading
import time

import pytest

from lifemaster.core.errors import NotAuthenticated, RefreshFailed, UpstreamProviderError
from lifemaster.db.models import WithingsToken
from lifemaster.db.session import SessionLocal
from lifemaster.services import tokens, withings


def _token_response(access: str = "access-new", refresh: str = "refresh-new", expires_in: int = 10800) -> dict:
    return {
        "status": 0,
        "body": {"access_token": access, "refresh_token": refresh, "expires_in": expires_in},
    }


def test_missing_record_is_not_authenticated(db_session) -> None:
    with pytest.raises(NotAuthenticated) as exc_info:
        tokens.get_valid_access_token(db_session)
    assert exc_info.value.status_code == 401
    assert tokens.is_token_expired(db_session) is True


def test_tokens_are_encrypted_at_rest(db_session, stored_tokens) -> None:
    stored_tokens(access="access-abc")
    row = db_session.query(WithingsToken).one()
    assert "access-abc" not in row.encrypted_access_token
    assert tokens.get_tokens(db_session)["access_token"] == "access-abc"


def test_valid_token_is_returned_without_refresh(db_session, stored_tokens, monkeypatch) -> None:
    stored_tokens(expires_in=3600)

    def fail_request(*args, **kwargs):
        raise AssertionError("refresh should not happen")

    monkeypatch.setattr(withings, "request_token", fail_request)
    assert tokens.get_valid_access_token(db_session) == "access-abc"
    assert tokens.is_token_expired(db_session) is False


def test_expired_token_is_refreshed_and_persisted(db_session, stored_tokens, monkeypatch) -> None:
    stored_tokens(expires_in=0)
    calls = []

    def fake_request(grant_type, **params):
        calls.append((grant_type, params))
        return _token_response()

    monkeypatch.setattr(withings, "request_token", fake_request)

    assert tokens.get_valid_access_token(db_session) == "access-new"
    assert calls == [("refresh_token", {"refresh_token": "refresh-xyz"})]
    stored = tokens.get_tokens(db_session)
    assert stored["refresh_token"] == "refresh-new"
    assert tokens.is_token_expired(db_session) is False


def test_expiry_boundary_counts_as_expired(db_session, stored_tokens, monkeypatch) -> None:
    stored_tokens(expires_in=60)
    expires_at = tokens.get_tokens(db_session)["expires_at"]
    monkeypatch.setattr(tokens, "_now_ms", lambda: expires_at)
    assert tokens.is_token_expired(db_session) is True


def test_refresh_rejected_by_provider(db_session, stored_tokens, monkeypatch) -> None:
    stored_tokens(expires_in=0)
    monkeypatch.setattr(withings, "request_token", lambda grant_type, **params: {"status": 401, "error": "invalid"})

    with pytest.raises(RefreshFailed) as exc_info:
        tokens.get_valid_access_token(db_session)
    assert exc_info.value.status_code == 401


def test_refresh_transport_failure(db_session, stored_tokens, monkeypatch) -> None:
    stored_tokens(expires_in=0)

    def broken(grant_type, **params):
        raise UpstreamProviderError("Withings request timed out")

    monkeypatch.setattr(withings, "request_token", broken)
    with pytest.raises(RefreshFailed):
        tokens.get_valid_access_token(db_session)


def test_exchange_code_stores_tokens(db_session, monkeypatch, load_withings) -> None:
    monkeypatch.setattr(withings, "request_token", lambda grant_type, **params: load_withings("oauth_token"))

    body = tokens.exchange_code(db_session, "code-123")

    assert body["expires_in"] == 10800
    assert tokens.get_tokens(db_session)["access_token"] == body["access_token"]


def test_concurrent_expired_callers_share_one_refresh(db_session, stored_tokens, monkeypatch) -> None:
    stored_tokens(expires_in=0)
    calls = []

    def slow_request(grant_type, **params):
        calls.append(grant_type)
        time.sleep(0.2)
        return _token_response(access="new-a")

    monkeypatch.setattr(withings, "request_token", slow_request)

    workers = 4
    barrier = threading.Barrier(workers)
    results: list[str] = []
    errors: list[Exception] = []

    def worker() -> None:
        db = SessionLocal()
        try:
            barrier.wait()
            results.append(tokens.get_valid_access_token(db))
        except Exception as exc:
            errors.append(exc)
        finally:
            db.close()

    threads = [threading.Thread(target=worker) for _ in range(workers)]
    for thread in threads:
        thread.start()
    for thread in threads:
        thread.join(timeout=10)

    assert errors == []
    assert calls == ["refresh_token"]
    assert results == ["new-a"] * workers
