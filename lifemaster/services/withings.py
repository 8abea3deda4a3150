import logging
import os
from typing import Any, Optional
from urllib.parse import urlencode

import httpx

from lifemaster.core.errors import UpstreamProviderError

logger = logging.getLogger("uvicorn.error")

WITHINGS_API_BASE = os.getenv("WITHINGS_API_BASE", "https://wbsapi.withings.net")
WITHINGS_AUTHORIZE_URL = os.getenv(
    "WITHINGS_AUTHORIZE_URL", "https://account.withings.com/oauth2_user/authorize2"
)
WITHINGS_CLIENT_ID = os.getenv("WITHINGS_CLIENT_ID", "")
WITHINGS_CLIENT_SECRET = os.getenv("WITHINGS_CLIENT_SECRET", "")
WITHINGS_REDIRECT_URI = os.getenv("WITHINGS_REDIRECT_URI", "http://localhost:8000/auth/withings/callback")
WITHINGS_SCOPES = os.getenv("WITHINGS_SCOPES", "user.info,user.metrics,user.activity")
WITHINGS_TIMEOUT_SECONDS = float(os.getenv("WITHINGS_TIMEOUT_SECONDS", "20"))

OAUTH_URL = f"{WITHINGS_API_BASE}/v2/oauth2"
MEASURE_URL = f"{WITHINGS_API_BASE}/measure"
SLEEP_URL = f"{WITHINGS_API_BASE}/v2/sleep"

MEASURE_TYPE_WEIGHT = 1
# Category 1 = real measurements, 2 = user objectives.
MEASURE_CATEGORY_REAL = 1


def _http_timeout() -> httpx.Timeout:
    return httpx.Timeout(WITHINGS_TIMEOUT_SECONDS)


def _post_form(url: str, params: dict[str, Any], headers: Optional[dict[str, str]] = None) -> dict[str, Any]:
    action = params.get("action")
    try:
        response = httpx.post(url, data=params, headers=headers or {}, timeout=_http_timeout())
        response.raise_for_status()
        data = response.json()
    except httpx.TimeoutException as exc:
        raise UpstreamProviderError(f"Withings request timed out (action={action})") from exc
    except httpx.HTTPStatusError as exc:
        status = exc.response.status_code if exc.response is not None else None
        raise UpstreamProviderError(
            f"Withings request failed (action={action}, http_status={status})",
            detail=(exc.response.text or "").strip()[:220] if exc.response is not None else None,
        ) from exc
    except httpx.HTTPError as exc:
        raise UpstreamProviderError(f"Withings request failed (action={action}): {str(exc)[:220]}") from exc
    except ValueError as exc:
        raise UpstreamProviderError(f"Withings returned a non-JSON body (action={action})") from exc
    if not isinstance(data, dict):
        raise UpstreamProviderError(f"Withings returned an unexpected payload (action={action})")
    return data


def form_post(url: str, params: dict[str, Any], access_token: str) -> dict[str, Any]:
    """Bearer-authenticated form POST against the Withings API.

    Returns the decoded ``{status, body}`` envelope untouched; checking
    ``status`` is left to the caller (see ``require_ok``).
    """
    return _post_form(url, params, headers={"Authorization": f"Bearer {access_token}"})


def require_ok(data: dict[str, Any], action: str) -> dict[str, Any]:
    status = data.get("status")
    if status != 0:
        raise UpstreamProviderError(
            f"Withings {action} failed (status={status})",
            detail=data.get("error"),
        )
    body = data.get("body")
    return body if isinstance(body, dict) else {}


def authorize_url(state: str) -> str:
    query = urlencode(
        {
            "response_type": "code",
            "client_id": WITHINGS_CLIENT_ID,
            "scope": WITHINGS_SCOPES,
            "redirect_uri": WITHINGS_REDIRECT_URI,
            "state": state,
        }
    )
    return f"{WITHINGS_AUTHORIZE_URL}?{query}"


def request_token(grant_type: str, **grant_params: str) -> dict[str, Any]:
    """One round-trip to the token endpoint. Raises on transport failure only."""
    params = {
        "action": "requesttoken",
        "grant_type": grant_type,
        "client_id": WITHINGS_CLIENT_ID,
        "client_secret": WITHINGS_CLIENT_SECRET,
        **grant_params,
    }
    return _post_form(OAUTH_URL, params)


def fetch_measure_groups(
    access_token: str, meastypes: list[int], startdate: int, enddate: int
) -> list[dict[str, Any]]:
    data = form_post(
        MEASURE_URL,
        {
            "action": "getmeas",
            "meastypes": ",".join(str(t) for t in meastypes),
            "category": MEASURE_CATEGORY_REAL,
            "startdate": startdate,
            "enddate": enddate,
        },
        access_token,
    )
    body = require_ok(data, "getmeas")
    groups = body.get("measuregrps") or []
    return [grp for grp in groups if isinstance(grp, dict)]


def fetch_sleep_summaries(access_token: str, startdateymd: str, enddateymd: str) -> list[dict[str, Any]]:
    data = form_post(
        SLEEP_URL,
        {
            "action": "getsummary",
            "startdateymd": startdateymd,
            "enddateymd": enddateymd,
            "data_fields": "sleep_score,total_sleep_time,total_timeinbed",
        },
        access_token,
    )
    body = require_ok(data, "getsummary")
    series = body.get("series") or []
    return [item for item in series if isinstance(item, dict)]


def fetch_weight_groups(access_token: str, limit: int = 10) -> list[dict[str, Any]]:
    data = form_post(
        MEASURE_URL,
        {"action": "getmeas", "meastype": MEASURE_TYPE_WEIGHT, "category": MEASURE_CATEGORY_REAL},
        access_token,
    )
    body = require_ok(data, "getmeas")
    groups = [grp for grp in (body.get("measuregrps") or []) if isinstance(grp, dict)]
    groups.sort(key=lambda grp: int(grp.get("date") or 0), reverse=True)
    return groups[:limit]
