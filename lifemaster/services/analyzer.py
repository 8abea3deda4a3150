import json
import logging
from datetime import date, timedelta
from typing import Any, Optional

from sqlalchemy.orm import Session

from lifemaster.core.config import CoachProfile, local_now
from lifemaster.core.errors import AnalysisError, EngineNotConfigured
from lifemaster.core.normalizer import SNAPSHOT_FIELDS, Snapshot
from lifemaster.services import progress_store
from lifemaster.services.llm import LLMRequestError, ReasoningEngine

logger = logging.getLogger("uvicorn.error")

HISTORY_DAYS = 30
HISTORY_LIMIT = 50
PROMPT_HISTORY_ROWS = 5
TITLE_MAX_CHARS = 100

IMPACT_VALUES = {"positive", "neutral", "negative"}
CONFIDENCE_VALUES = {"low", "medium", "high"}

SYSTEM_PROMPT_TEMPLATE = """
You are the LifeMaster progress analyst. You review a person's daily biometrics
and progress history and judge how today's data relates to their baseline and goals.

Coaching context (JSON):
{profile}

Rules:
- Base every statement on the snapshot and history provided.
- Missing values are unknown, never zero.
- Do not diagnose disease or suggest medication changes.
- Keep the summary under 80 words.

Return strict JSON with keys:
- summary: short prose assessment
- impact_assessment: one of "positive", "neutral", "negative"
- delta_vs_baseline: object mapping weight_kg, heart_pulse_bpm, spo2_pct, hrv,
  sleep_score, sleep_duration_minutes to numeric differences from baseline, or null
- confidence: one of "low", "medium", "high"
"""


def build_system_prompt(profile: CoachProfile) -> str:
    return SYSTEM_PROMPT_TEMPLATE.format(profile=json.dumps(profile.to_prompt_dict(), indent=2))


def _history_row(entry: dict[str, Any]) -> dict[str, Any]:
    return {
        "entry_date": entry["entry_date"],
        "entry_type": entry["entry_type"],
        "source": entry["source"],
        "title": entry["title"],
        "impact_assessment": entry["impact_assessment"],
        "metrics": entry["metrics"],
    }


def build_user_prompt(
    snapshot: Snapshot, history: list[dict[str, Any]], user_message: Optional[str] = None
) -> str:
    recent = [_history_row(row) for row in history[:PROMPT_HISTORY_ROWS]]
    payload: dict[str, Any] = {"snapshot": snapshot.to_dict(), "recent_history": recent}
    if user_message:
        payload = {"user_message": user_message, **payload}
        return "Analyze this user update against today's data.\n" + json.dumps(payload, indent=2)
    return "Analyze today's data against recent history.\n" + json.dumps(payload, indent=2)


def _coerce_delta(raw: Any) -> Optional[dict[str, Optional[float]]]:
    if not isinstance(raw, dict):
        return None
    cleaned: dict[str, Optional[float]] = {}
    for key in SNAPSHOT_FIELDS:
        value = raw.get(key)
        cleaned[key] = float(value) if isinstance(value, (int, float)) and not isinstance(value, bool) else None
    return cleaned


def normalize_analysis(raw: dict[str, Any]) -> dict[str, Any]:
    summary = str(raw.get("summary") or "").strip()
    if not summary:
        raise AnalysisError("Reasoning engine returned an analysis without a summary")

    impact = str(raw.get("impact_assessment") or "").strip().lower()
    if impact not in IMPACT_VALUES:
        logger.warning("analysis_enum_coerced field=impact_assessment value=%s", impact)
        impact = "neutral"
    confidence = str(raw.get("confidence") or "").strip().lower()
    if confidence not in CONFIDENCE_VALUES:
        logger.warning("analysis_enum_coerced field=confidence value=%s", confidence)
        confidence = "low"

    return {
        "summary": summary,
        "impact_assessment": impact,
        "delta_vs_baseline": _coerce_delta(raw.get("delta_vs_baseline")),
        "confidence": confidence,
    }


def analyze(
    db: Session,
    engine: ReasoningEngine,
    profile: CoachProfile,
    snapshot: Snapshot,
    source: str,
    entry_type: str,
    user_message: Optional[str] = None,
    entry_date: Optional[date] = None,
) -> dict[str, Any]:
    now = local_now()
    history_rows = progress_store.list_since(db, now - timedelta(days=HISTORY_DAYS), HISTORY_LIMIT)
    history = [progress_store.serialize_entry(row) for row in history_rows]

    if not engine.configured:
        raise EngineNotConfigured("Reasoning engine credential is not configured")
    try:
        raw = engine.complete_json(build_system_prompt(profile), build_user_prompt(snapshot, history, user_message))
    except LLMRequestError as exc:
        logger.error("analysis_engine_failed provider=%s model=%s detail=%s", exc.provider, exc.model, str(exc))
        raise AnalysisError("Reasoning engine request failed", detail=str(exc)) from exc
    except ValueError as exc:
        raise AnalysisError("Reasoning engine returned invalid JSON") from exc

    analysis = normalize_analysis(raw)
    row = progress_store.insert_entry(
        db,
        entry_type=entry_type,
        entry_date=entry_date or now.date(),
        source=source,
        title=analysis["summary"][:TITLE_MAX_CHARS],
        summary=analysis["summary"],
        notes=user_message,
        impact_assessment=analysis["impact_assessment"],
        confidence=analysis["confidence"],
        metrics=snapshot.to_dict(),
        delta_vs_baseline=analysis["delta_vs_baseline"],
    )
    logger.info(
        "analysis_saved entry_id=%s type=%s source=%s impact=%s",
        row.id,
        entry_type,
        source,
        analysis["impact_assessment"],
    )
    return {"success": True, "entry": progress_store.serialize_entry(row), "analysis": analysis}
