"""Daily snapshot normalization for Withings measurements and sleep sessions.

Raw measurement groups carry ``{type, value, unit}`` readings where the real
value is ``value * 10**unit``. For each metric type only the reading from the
newest group survives; on equal group timestamps the higher ``grpid`` wins.

Sleep summaries are matched against the calendar day window and the session
with the largest overlap is used for ``sleep_score`` and
``sleep_duration_minutes``.
"""
import logging
import os
import re
from dataclasses import asdict, dataclass, field
from datetime import date, datetime, timedelta
from typing import Any, Callable, Optional
from zoneinfo import ZoneInfo, ZoneInfoNotFoundError

from lifemaster.core.config import APP_TIMEZONE
from lifemaster.core.errors import InputValidationError, UpstreamProviderError

logger = logging.getLogger("uvicorn.error")

MEASURE_TYPE_WEIGHT = 1
MEASURE_TYPE_DIASTOLIC = 9
MEASURE_TYPE_SYSTOLIC = 10
MEASURE_TYPE_HEART_PULSE = 11
MEASURE_TYPE_SPO2 = 54
# No public catalog id covers HRV for every device; deployments override it.
MEASURE_TYPE_HRV = int(os.getenv("WITHINGS_HRV_MEASURE_TYPE", "135"))

# type -> (data point key, unit, snapshot slot or None)
MEASURE_TYPE_TABLE: dict[int, tuple[str, str, Optional[str]]] = {
    MEASURE_TYPE_WEIGHT: ("weight_kg", "kg", "weight_kg"),
    MEASURE_TYPE_DIASTOLIC: ("diastolic_bp_mmhg", "mmHg", None),
    MEASURE_TYPE_SYSTOLIC: ("systolic_bp_mmhg", "mmHg", None),
    MEASURE_TYPE_HEART_PULSE: ("heart_pulse_bpm", "bpm", "heart_pulse_bpm"),
    MEASURE_TYPE_SPO2: ("spo2_pct", "%", "spo2_pct"),
    MEASURE_TYPE_HRV: ("hrv", "ms", "hrv"),
}

MEASUREMENT_LOOKBACK_DAYS = 3
DATA_POINT_SOURCE = "withings"

POLICY_STRICT = "strict"
POLICY_LENIENT = "lenient"
MEASUREMENT_FETCH_POLICY = os.getenv("MEASUREMENT_FETCH_POLICY", POLICY_STRICT).strip().lower()

DATE_PATTERN = re.compile(r"^\d{4}-\d{2}-\d{2}$")
INVALID_DATE_MESSAGE = "Invalid date format. Use YYYY-MM-DD or 'today'."


@dataclass
class Snapshot:
    weight_kg: Optional[float] = None
    heart_pulse_bpm: Optional[float] = None
    spo2_pct: Optional[float] = None
    hrv: Optional[float] = None
    sleep_score: Optional[float] = None
    sleep_duration_minutes: Optional[float] = None

    def to_dict(self) -> dict[str, Optional[float]]:
        return asdict(self)

    @classmethod
    def from_dict(cls, raw: Optional[dict[str, Any]]) -> "Snapshot":
        raw = raw or {}
        values: dict[str, Optional[float]] = {}
        for name in SNAPSHOT_FIELDS:
            value = raw.get(name)
            values[name] = float(value) if isinstance(value, (int, float)) and not isinstance(value, bool) else None
        return cls(**values)


SNAPSHOT_FIELDS = tuple(Snapshot.__dataclass_fields__.keys())


@dataclass
class DataPoint:
    key: str
    value: float
    unit: str
    ts: int
    source: str
    raw: dict[str, Any] = field(default_factory=dict)

    def to_dict(self) -> dict[str, Any]:
        return asdict(self)


@dataclass
class DayWindow:
    date: date
    timezone: str
    start: datetime
    end: datetime
    measure_start: datetime

    @property
    def start_ts(self) -> int:
        return int(self.start.timestamp())

    @property
    def end_ts(self) -> int:
        return int(self.end.timestamp())

    @property
    def measure_start_ts(self) -> int:
        return int(self.measure_start.timestamp())

    def to_dict(self) -> dict[str, Any]:
        return {
            "timezone": self.timezone,
            "day_start": self.start.isoformat(),
            "day_end": self.end.isoformat(),
            "day_start_ts": self.start_ts,
            "day_end_ts": self.end_ts,
            "measure_start": self.measure_start.isoformat(),
            "measure_start_ts": self.measure_start_ts,
            "measure_end_ts": self.end_ts,
        }


@dataclass
class DailyHealth:
    date: str
    window: DayWindow
    snapshot: Snapshot
    data_points: list[DataPoint]
    debug: dict[str, Any] = field(default_factory=dict)


def resolve_zone(tz_name: Optional[str]) -> ZoneInfo:
    try:
        return ZoneInfo(tz_name or APP_TIMEZONE)
    except (ZoneInfoNotFoundError, ValueError) as exc:
        raise InputValidationError(f"Unknown timezone: {tz_name}") from exc


def parse_target_date(raw: Optional[str], zone: ZoneInfo) -> date:
    value = (raw or "").strip()
    if not value or value.lower() == "today":
        return datetime.now(zone).date()
    if not DATE_PATTERN.match(value):
        raise InputValidationError(INVALID_DATE_MESSAGE)
    try:
        return date.fromisoformat(value)
    except ValueError as exc:
        raise InputValidationError(INVALID_DATE_MESSAGE) from exc


def day_window(target: date, zone: ZoneInfo) -> DayWindow:
    start = datetime(target.year, target.month, target.day, tzinfo=zone)
    next_day = target + timedelta(days=1)
    # Built from calendar dates so DST transition days keep their real length.
    end = datetime(next_day.year, next_day.month, next_day.day, tzinfo=zone)
    lookback = target - timedelta(days=MEASUREMENT_LOOKBACK_DAYS)
    measure_start = datetime(lookback.year, lookback.month, lookback.day, tzinfo=zone)
    return DayWindow(date=target, timezone=zone.key, start=start, end=end, measure_start=measure_start)


def actual_value(value: Any, unit: Any) -> float:
    return float(value) * (10 ** int(unit))


def _is_newer(candidate_ts: int, candidate_grp: int, best_ts: int, best_grp: int) -> bool:
    if candidate_ts != best_ts:
        return candidate_ts > best_ts
    return candidate_grp > best_grp


def latest_readings(groups: list[dict[str, Any]]) -> dict[int, tuple[int, dict[str, Any], dict[str, Any]]]:
    """Newest reading per measure type as ``type -> (ts, measure, group)``."""
    latest: dict[int, tuple[int, dict[str, Any], dict[str, Any]]] = {}
    for grp in groups:
        ts = int(grp.get("date") or 0)
        grpid = int(grp.get("grpid") or 0)
        for measure in grp.get("measures") or []:
            if not isinstance(measure, dict) or "type" not in measure or "value" not in measure:
                continue
            mtype = int(measure["type"])
            current = latest.get(mtype)
            if current is None or _is_newer(ts, grpid, current[0], int(current[2].get("grpid") or 0)):
                latest[mtype] = (ts, measure, grp)
    return latest


def normalize_measurements(groups: list[dict[str, Any]]) -> tuple[Snapshot, list[DataPoint]]:
    snapshot = Snapshot()
    points: list[DataPoint] = []
    for mtype, (ts, measure, grp) in sorted(latest_readings(groups).items()):
        mapping = MEASURE_TYPE_TABLE.get(mtype)
        if not mapping:
            continue
        key, unit, slot = mapping
        value = actual_value(measure["value"], measure.get("unit", 0))
        points.append(
            DataPoint(
                key=key,
                value=value,
                unit=unit,
                ts=ts,
                source=DATA_POINT_SOURCE,
                raw={"grpid": grp.get("grpid"), "date": grp.get("date"), "measure": measure},
            )
        )
        if slot:
            setattr(snapshot, slot, value)
    return snapshot, points


def session_overlap(session: dict[str, Any], start_ts: int, end_ts: int) -> int:
    try:
        s_start = int(session.get("startdate"))
        s_end = int(session.get("enddate"))
    except (TypeError, ValueError):
        return 0
    return max(0, min(s_end, end_ts) - max(s_start, start_ts))


def select_sleep_session(sessions: list[dict[str, Any]], start_ts: int, end_ts: int) -> Optional[dict[str, Any]]:
    best: Optional[dict[str, Any]] = None
    best_overlap = 0
    for session in sessions:
        overlap = session_overlap(session, start_ts, end_ts)
        # Strictly greater: the first session keeps the slot on ties.
        if overlap > best_overlap:
            best = session
            best_overlap = overlap
    return best


def apply_sleep(snapshot: Snapshot, session: Optional[dict[str, Any]]) -> None:
    if not session:
        return
    data = session.get("data") or {}
    score = data.get("sleep_score")
    if isinstance(score, (int, float)):
        snapshot.sleep_score = float(score)
    seconds = data.get("total_sleep_time")
    if not isinstance(seconds, (int, float)):
        seconds = data.get("total_timeinbed")
    if isinstance(seconds, (int, float)):
        snapshot.sleep_duration_minutes = float(round(seconds / 60))


def build_daily_health(
    access_token: str,
    raw_date: Optional[str],
    tz_name: Optional[str],
    fetch_measures: Callable[[str, list[int], int, int], list[dict[str, Any]]],
    fetch_sleep: Callable[[str, str, str], list[dict[str, Any]]],
    policy: Optional[str] = None,
) -> DailyHealth:
    zone = resolve_zone(tz_name)
    target = parse_target_date(raw_date, zone)
    window = day_window(target, zone)
    mode = (policy or MEASUREMENT_FETCH_POLICY).lower()
    debug: dict[str, Any] = {"measurement_policy": mode}

    try:
        groups = fetch_measures(
            access_token, sorted(MEASURE_TYPE_TABLE), window.measure_start_ts, window.end_ts
        )
    except UpstreamProviderError as exc:
        if mode != POLICY_LENIENT:
            raise
        logger.warning("daily_measurements_tolerated date=%s detail=%s", target, exc.message)
        debug["measurement_error"] = exc.message
        groups = []
    debug["measure_group_count"] = len(groups)

    snapshot, points = normalize_measurements(groups)

    sleep_sessions: list[dict[str, Any]] = []
    try:
        sleep_sessions = fetch_sleep(access_token, target.isoformat(), (target + timedelta(days=1)).isoformat())
    except UpstreamProviderError as exc:
        logger.warning("daily_sleep_tolerated date=%s detail=%s", target, exc.message)
        debug["sleep_error"] = exc.message
    debug["sleep_session_count"] = len(sleep_sessions)

    chosen = select_sleep_session(sleep_sessions, window.start_ts, window.end_ts)
    apply_sleep(snapshot, chosen)
    if chosen:
        debug["sleep_session"] = {
            "startdate": chosen.get("startdate"),
            "enddate": chosen.get("enddate"),
            "overlap_seconds": session_overlap(chosen, window.start_ts, window.end_ts),
        }

    logger.info(
        "daily_snapshot_built date=%s tz=%s points=%s sleep=%s",
        target,
        window.timezone,
        len(points),
        bool(chosen),
    )
    return DailyHealth(date=target.isoformat(), window=window, snapshot=snapshot, data_points=points, debug=debug)
