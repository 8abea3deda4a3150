import logging
from typing import Optional

from fastapi import APIRouter, Depends, Query
from fastapi.responses import RedirectResponse
from jose import JWTError
from pydantic import BaseModel
from sqlalchemy.orm import Session

from lifemaster.core.errors import InputValidationError, PersistenceError, UpstreamProviderError
from lifemaster.core.security import create_oauth_state, verify_oauth_state
from lifemaster.db.session import get_db
from lifemaster.services import tokens, withings

logger = logging.getLogger("uvicorn.error")

router = APIRouter(prefix="/auth", tags=["auth"])


class CallbackResponse(BaseModel):
    message: str
    expires_in: int


@router.get("/withings")
def start_withings_auth() -> RedirectResponse:
    return RedirectResponse(url=withings.authorize_url(create_oauth_state()), status_code=302)


@router.get("/withings/callback", response_model=CallbackResponse)
def withings_callback(
    code: Optional[str] = Query(default=None),
    state: Optional[str] = Query(default=None),
    db: Session = Depends(get_db),
) -> CallbackResponse:
    if not code:
        raise InputValidationError("Missing authorization code")
    if not state:
        raise InputValidationError("Missing OAuth state")
    try:
        verify_oauth_state(state)
    except JWTError as exc:
        raise InputValidationError("Invalid or expired OAuth state") from exc

    try:
        body = tokens.exchange_code(db, code)
    except (UpstreamProviderError, PersistenceError) as exc:
        logger.error("withings_callback_failed detail=%s", exc.message)
        raise type(exc)(f"Token exchange failed: {exc.message}", status_code=500, detail=exc.detail) from exc
    return CallbackResponse(message="Withings authorization complete", expires_in=int(body["expires_in"]))
