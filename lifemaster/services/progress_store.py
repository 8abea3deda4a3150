import json
import logging
from datetime import date, datetime, timezone
from enum import Enum
from typing import Any, Optional

from sqlalchemy.exc import SQLAlchemyError
from sqlalchemy.orm import Session

from lifemaster.core.errors import PersistenceError
from lifemaster.db.models import ProgressEntry

logger = logging.getLogger("uvicorn.error")

STATE_LIMIT = 100


class EntryType(str, Enum):
    measurement = "measurement"
    event = "event"
    insight = "insight"
    adherence = "adherence"
    intervention = "intervention"
    decision = "decision"


class EntrySource(str, Enum):
    withings = "withings"
    manual = "manual"
    agent = "agent"
    user = "user"


def _dump(value: Any) -> Optional[str]:
    if value is None:
        return None
    return json.dumps(value, separators=(",", ":"), default=str)


def _load(raw: Optional[str]) -> Any:
    if not raw:
        return None
    try:
        return json.loads(raw)
    except json.JSONDecodeError:
        return None


def _iso_utc(value: datetime) -> str:
    if value.tzinfo is None:
        value = value.replace(tzinfo=timezone.utc)
    return value.astimezone(timezone.utc).isoformat()


def serialize_entry(row: ProgressEntry) -> dict[str, Any]:
    return {
        "id": row.id,
        "entry_type": row.entry_type,
        "entry_date": row.entry_date.isoformat(),
        "source": row.source,
        "title": row.title,
        "summary": row.summary,
        "notes": row.notes,
        "impact_assessment": row.impact_assessment,
        "confidence": row.confidence,
        "metrics": _load(row.metrics_json),
        "delta_vs_baseline": _load(row.delta_vs_baseline_json),
        "consent": _load(row.consent_json),
        "payload": _load(row.payload_json),
        "entry_ts": _iso_utc(row.entry_ts),
    }


def insert_entry(
    db: Session,
    *,
    entry_type: str,
    entry_date: date,
    source: str,
    title: str,
    summary: Optional[str] = None,
    notes: Optional[str] = None,
    impact_assessment: Optional[str] = None,
    confidence: Optional[str] = None,
    metrics: Optional[dict[str, Any]] = None,
    delta_vs_baseline: Optional[dict[str, Any]] = None,
    consent: Optional[dict[str, Any]] = None,
    payload: Optional[dict[str, Any]] = None,
) -> ProgressEntry:
    row = ProgressEntry(
        entry_type=EntryType(entry_type).value,
        entry_date=entry_date,
        source=EntrySource(source).value,
        title=title,
        summary=summary,
        notes=notes,
        impact_assessment=impact_assessment,
        confidence=confidence,
        metrics_json=_dump(metrics),
        delta_vs_baseline_json=_dump(delta_vs_baseline),
        consent_json=_dump(consent),
        payload_json=_dump(payload),
        entry_ts=datetime.now(timezone.utc).replace(tzinfo=None),
    )
    try:
        db.add(row)
        db.commit()
        db.refresh(row)
    except SQLAlchemyError as exc:
        db.rollback()
        code = getattr(exc, "code", None)
        native = str(getattr(exc, "orig", None) or exc)
        logger.error("progress_entry_insert_failed type=%s code=%s detail=%s", entry_type, code, native)
        raise PersistenceError(
            "Failed to save progress entry",
            detail={"code": code, "message": native},
        ) from exc
    logger.info("progress_entry_saved id=%s type=%s source=%s", row.id, row.entry_type, row.source)
    return row


def _newest_first(query):
    return query.order_by(ProgressEntry.entry_ts.desc(), ProgressEntry.id.desc())


def list_recent(db: Session, limit: int = STATE_LIMIT) -> list[ProgressEntry]:
    return _newest_first(db.query(ProgressEntry)).limit(limit).all()


def list_since(db: Session, since: datetime, limit: int) -> list[ProgressEntry]:
    if since.tzinfo is not None:
        since = since.astimezone(timezone.utc).replace(tzinfo=None)
    query = db.query(ProgressEntry).filter(ProgressEntry.entry_ts >= since)
    return _newest_first(query).limit(limit).all()


def latest_measurement_entry(db: Session) -> Optional[ProgressEntry]:
    query = db.query(ProgressEntry).filter(ProgressEntry.entry_type == EntryType.measurement.value)
    return _newest_first(query).first()


def latest_snapshot_metrics(db: Session) -> Optional[dict[str, Any]]:
    """Metrics of the newest entry that carries at least one non-null value."""
    rows = _newest_first(db.query(ProgressEntry).filter(ProgressEntry.metrics_json.isnot(None))).limit(
        STATE_LIMIT
    )
    for row in rows:
        metrics = _load(row.metrics_json)
        if isinstance(metrics, dict) and any(v is not None for v in metrics.values()):
            return metrics
    return None
