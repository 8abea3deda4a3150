from typing import Any

from fastapi import APIRouter, Depends
from sqlalchemy.orm import Session

from lifemaster.core.errors import LifeMasterError, UpstreamProviderError
from lifemaster.db.session import get_db
from lifemaster.services import tokens, withings

router = APIRouter(prefix="/withings", tags=["withings"])

WEIGHT_GROUP_LIMIT = 10


@router.get("/weight")
def get_recent_weight(db: Session = Depends(get_db)) -> dict[str, Any]:
    access_token = tokens.get_valid_access_token(db)
    try:
        groups = withings.fetch_weight_groups(access_token, limit=WEIGHT_GROUP_LIMIT)
    except UpstreamProviderError as exc:
        raise UpstreamProviderError(exc.message, status_code=500, detail=exc.detail) from exc
    if not groups:
        raise LifeMasterError("No weight measurements found", status_code=404)
    return {"count": len(groups), "measuregrps": groups}
