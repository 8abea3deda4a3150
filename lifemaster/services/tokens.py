import logging
import threading
import time
from typing import Optional

from sqlalchemy.exc import SQLAlchemyError
from sqlalchemy.orm import Session

from lifemaster.core.errors import NotAuthenticated, PersistenceError, RefreshFailed, UpstreamProviderError
from lifemaster.core.security import decrypt_secret, encrypt_secret, mask_secret
from lifemaster.db.models import TOKEN_RECORD_KEY, WithingsToken
from lifemaster.services import withings

logger = logging.getLogger("uvicorn.error")

# Serializes refreshes so concurrent callers that observe the same expired
# token share a single provider round-trip.
_refresh_lock = threading.Lock()


def _now_ms() -> int:
    return int(time.time() * 1000)


def save_tokens(db: Session, access_token: str, refresh_token: str, expires_in: int) -> WithingsToken:
    expires_at = _now_ms() + int(expires_in) * 1000
    try:
        row = db.query(WithingsToken).filter(WithingsToken.key == TOKEN_RECORD_KEY).first()
        if not row:
            row = WithingsToken(key=TOKEN_RECORD_KEY)
            db.add(row)
        row.encrypted_access_token = encrypt_secret(access_token)
        row.encrypted_refresh_token = encrypt_secret(refresh_token)
        row.expires_at = expires_at
        db.commit()
        db.refresh(row)
    except SQLAlchemyError as exc:
        db.rollback()
        native = str(getattr(exc, "orig", None) or exc)
        logger.error("token_save_failed detail=%s", native)
        raise PersistenceError(
            "Failed to save Withings tokens",
            detail={"code": getattr(exc, "code", None), "message": native},
        ) from exc
    logger.info("token_saved access=%s expires_at=%s", mask_secret(access_token), expires_at)
    return row


def get_tokens(db: Session) -> Optional[dict]:
    row = db.query(WithingsToken).filter(WithingsToken.key == TOKEN_RECORD_KEY).first()
    if not row:
        return None
    try:
        return {
            "access_token": decrypt_secret(row.encrypted_access_token),
            "refresh_token": decrypt_secret(row.encrypted_refresh_token),
            "expires_at": row.expires_at,
        }
    except ValueError:
        logger.warning("token_decrypt_failed key=%s", row.key)
        return None


def is_token_expired(db: Session) -> bool:
    tokens = get_tokens(db)
    if not tokens:
        return True
    # Strict comparison: a token at exactly expires_at counts as expired.
    return _now_ms() >= tokens["expires_at"]


def _store_token_response(db: Session, data: dict, failure: type) -> dict:
    if data.get("status") != 0:
        raise failure(f"Withings token request rejected (status={data.get('status')})", detail=data.get("error"))
    body = data.get("body") or {}
    access_token = body.get("access_token")
    refresh_token = body.get("refresh_token")
    expires_in = body.get("expires_in")
    if not access_token or not refresh_token or expires_in is None:
        raise failure("Withings token response is missing fields")
    save_tokens(db, access_token, refresh_token, int(expires_in))
    return body


def exchange_code(db: Session, code: str) -> dict:
    data = withings.request_token("authorization_code", code=code, redirect_uri=withings.WITHINGS_REDIRECT_URI)
    body = _store_token_response(db, data, UpstreamProviderError)
    logger.info("token_exchange_ok expires_in=%s", body.get("expires_in"))
    return body


def _refresh(db: Session, refresh_token: str) -> str:
    logger.info("token_refresh_start")
    try:
        data = withings.request_token("refresh_token", refresh_token=refresh_token)
    except UpstreamProviderError as exc:
        raise RefreshFailed(f"Token refresh failed: {exc.message}", detail=exc.detail) from exc
    body = _store_token_response(db, data, RefreshFailed)
    logger.info("token_refresh_ok expires_in=%s", body.get("expires_in"))
    return body["access_token"]


def get_valid_access_token(db: Session) -> str:
    tokens = get_tokens(db)
    if not tokens:
        raise NotAuthenticated("No Withings tokens found. Authenticate via /auth/withings first.")
    if _now_ms() < tokens["expires_at"]:
        return tokens["access_token"]

    with _refresh_lock:
        # Another request may have refreshed while this one waited.
        db.expire_all()
        current = get_tokens(db)
        if not current:
            raise NotAuthenticated("No Withings tokens found. Authenticate via /auth/withings first.")
        if _now_ms() < current["expires_at"]:
            return current["access_token"]
        return _refresh(db, current["refresh_token"])
