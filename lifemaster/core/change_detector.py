from dataclasses import dataclass, field
from typing import Any, Optional

from lifemaster.core.normalizer import Snapshot

WEIGHT_THRESHOLD_KG = 0.5
RESTING_HR_THRESHOLD_BPM = 5.0
HRV_THRESHOLD_PCT = 10.0
SLEEP_THRESHOLD_MINUTES = 60.0


@dataclass
class ChangeReport:
    triggered: bool
    reason: Any
    deltas: dict[str, float] = field(default_factory=dict)

    def to_dict(self) -> dict[str, Any]:
        return {"triggered": self.triggered, "reason": self.reason, "deltas": dict(self.deltas)}


def _delta(new: Optional[float], old: Optional[float]) -> float:
    if new is None or old is None:
        return 0.0
    return float(new) - float(old)


def _pct_delta(new: Optional[float], old: Optional[float]) -> float:
    if new is None or old is None or old == 0:
        return 0.0
    return (float(new) - float(old)) / float(old) * 100.0


def compute_deltas(snapshot: Snapshot, previous: Snapshot) -> dict[str, float]:
    return {
        "weight_kg": _delta(snapshot.weight_kg, previous.weight_kg),
        "heart_pulse_bpm": _delta(snapshot.heart_pulse_bpm, previous.heart_pulse_bpm),
        "hrv_pct": _pct_delta(snapshot.hrv, previous.hrv),
        "sleep_duration_minutes": _delta(snapshot.sleep_duration_minutes, previous.sleep_duration_minutes),
    }


def detect_significant_change(
    snapshot: Snapshot, previous_metrics: Optional[dict[str, Any]]
) -> ChangeReport:
    """Decide whether a fresh snapshot warrants a new analysis.

    ``previous_metrics`` is the ``metrics`` of the latest measurement entry, or
    None when no such entry exists yet (cold start always triggers).
    """
    if previous_metrics is None:
        return ChangeReport(triggered=True, reason="cold_start")

    deltas = compute_deltas(snapshot, Snapshot.from_dict(previous_metrics))
    crossed = []
    if abs(deltas["weight_kg"]) >= WEIGHT_THRESHOLD_KG:
        crossed.append("weight_kg")
    if abs(deltas["heart_pulse_bpm"]) >= RESTING_HR_THRESHOLD_BPM:
        crossed.append("heart_pulse_bpm")
    if abs(deltas["hrv_pct"]) >= HRV_THRESHOLD_PCT:
        crossed.append("hrv")
    if abs(deltas["sleep_duration_minutes"]) >= SLEEP_THRESHOLD_MINUTES:
        crossed.append("sleep_duration_minutes")

    if crossed:
        return ChangeReport(triggered=True, reason=crossed, deltas=deltas)
    return ChangeReport(triggered=False, reason="below_threshold", deltas=deltas)
