import json
import os
from dataclasses import dataclass, field
from datetime import date, datetime
from functools import lru_cache
from pathlib import Path
from typing import Any, Optional
from zoneinfo import ZoneInfo

APP_TIMEZONE = os.getenv("APP_TIMEZONE", "Europe/Stockholm")
COACH_PROFILE_PATH = os.getenv("COACH_PROFILE_PATH", "").strip()


def app_zone() -> ZoneInfo:
    return ZoneInfo(APP_TIMEZONE)


def local_now() -> datetime:
    return datetime.now(app_zone())


def local_today() -> date:
    return local_now().date()


@dataclass(frozen=True)
class CoachProfile:
    """Static coaching context handed to the analyzer prompt.

    Loaded once per process and injected where needed, so prompts never carry
    hidden literals about the person being coached.
    """

    name: str = "LifeMaster user"
    baseline: dict[str, Optional[float]] = field(
        default_factory=lambda: {
            "weight_kg": 82.0,
            "heart_pulse_bpm": 60.0,
            "hrv": 45.0,
            "spo2_pct": 97.0,
            "sleep_duration_minutes": 420.0,
            "sleep_score": 80.0,
        }
    )
    goals: tuple[str, ...] = (
        "Reduce body weight gradually while preserving lean mass.",
        "Keep resting heart rate stable or trending down.",
        "Average at least 7 hours of sleep.",
    )
    constraints: tuple[str, ...] = (
        "No diagnosis; coaching guidance only.",
        "Favor small, sustainable changes over aggressive interventions.",
        "Defer to clinicians on medication questions.",
    )

    def to_prompt_dict(self) -> dict[str, Any]:
        return {
            "name": self.name,
            "baseline": dict(self.baseline),
            "goals": list(self.goals),
            "constraints": list(self.constraints),
        }


def _profile_from_dict(raw: dict[str, Any]) -> CoachProfile:
    defaults = CoachProfile()
    baseline = raw.get("baseline")
    goals = raw.get("goals")
    constraints = raw.get("constraints")
    return CoachProfile(
        name=str(raw.get("name") or defaults.name),
        baseline=dict(baseline) if isinstance(baseline, dict) else dict(defaults.baseline),
        goals=tuple(str(g) for g in goals) if isinstance(goals, list) else defaults.goals,
        constraints=tuple(str(c) for c in constraints) if isinstance(constraints, list) else defaults.constraints,
    )


def load_coach_profile(path: Optional[str] = None) -> CoachProfile:
    target = path if path is not None else COACH_PROFILE_PATH
    if not target:
        return CoachProfile()
    raw = json.loads(Path(target).expanduser().read_text(encoding="utf-8"))
    if not isinstance(raw, dict):
        raise ValueError("Coach profile must be a JSON object")
    return _profile_from_dict(raw)


@lru_cache(maxsize=1)
def get_coach_profile() -> CoachProfile:
    return load_coach_profile()
