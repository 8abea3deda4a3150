import logging
from typing import Any, Optional

from fastapi import APIRouter, Depends, Query
from sqlalchemy.orm import Session

from lifemaster.core.change_detector import detect_significant_change
from lifemaster.core.config import CoachProfile, get_coach_profile
from lifemaster.core.normalizer import build_daily_health, parse_target_date, resolve_zone
from lifemaster.db.session import get_db
from lifemaster.services import analyzer, progress_store, tokens, withings
from lifemaster.services.llm import ReasoningEngine, get_reasoning_engine

logger = logging.getLogger("uvicorn.error")

router = APIRouter(prefix="/health", tags=["health"])


@router.get("/daily")
def get_daily_health(
    date: Optional[str] = Query(default=None),
    tz: Optional[str] = Query(default=None),
    debug: Optional[str] = Query(default=None),
    db: Session = Depends(get_db),
    engine: ReasoningEngine = Depends(get_reasoning_engine),
    profile: CoachProfile = Depends(get_coach_profile),
) -> dict[str, Any]:
    # Reject bad input before touching the token store or the provider.
    parse_target_date(date, resolve_zone(tz))
    access_token = tokens.get_valid_access_token(db)
    daily = build_daily_health(
        access_token,
        date,
        tz,
        fetch_measures=withings.fetch_measure_groups,
        fetch_sleep=withings.fetch_sleep_summaries,
    )

    previous = progress_store.latest_measurement_entry(db)
    previous_metrics = None
    if previous:
        previous_metrics = progress_store.serialize_entry(previous)["metrics"] or {}
    report = detect_significant_change(daily.snapshot, previous_metrics)

    body: dict[str, Any] = {
        "date": daily.date,
        "window": daily.window.to_dict(),
        "data_points": [point.to_dict() for point in daily.data_points],
        "snapshot": daily.snapshot.to_dict(),
        "agent_trigger": report.to_dict(),
    }
    if report.triggered:
        logger.info("daily_change_triggered date=%s reason=%s", daily.date, report.reason)
        body["agent_analysis"] = analyzer.analyze(
            db,
            engine,
            profile,
            daily.snapshot,
            source=progress_store.EntrySource.withings.value,
            entry_type=progress_store.EntryType.measurement.value,
            entry_date=daily.window.date,
        )
    if debug in {"1", "true", "yes"}:
        body["debug"] = daily.debug
    return body
