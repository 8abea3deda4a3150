import json
import os
import tempfile
from enum import Enum
from pathlib import Path
from typing import Any, Callable, Optional

# Bind the default engine somewhere writable before the app modules import.
os.environ.setdefault("DB_PATH", str(Path(tempfile.gettempdir()) / "lifemaster_import.db"))

import pytest  # noqa: E402
from fastapi.testclient import TestClient  # noqa: E402
from sqlalchemy.orm import Session  # noqa: E402

from lifemaster.core.config import CoachProfile, get_coach_profile  # noqa: E402
from lifemaster.db.models import ProgressEntry, WithingsToken  # noqa: E402
from lifemaster.db.session import SessionLocal, configure_database, create_tables  # noqa: E402
from lifemaster.services import tokens  # noqa: E402
from lifemaster.services.llm import LLMRequestError, get_reasoning_engine  # noqa: E402


class AnalysisScenario(str, Enum):
    OK = "OK"
    BAD_ENUMS = "BAD_ENUMS"
    MISSING_SUMMARY = "MISSING_SUMMARY"
    TIMEOUT = "TIMEOUT"


ANALYSIS_OK = {
    "summary": (
        "Weight is trending down slowly while resting heart rate holds steady. Sleep duration is "
        "close to target; keep the current routine and protect the evening wind-down."
    ),
    "impact_assessment": "positive",
    "delta_vs_baseline": {
        "weight_kg": -1.7,
        "heart_pulse_bpm": -2,
        "spo2_pct": None,
        "hrv": 3,
        "sleep_score": 4,
        "sleep_duration_minutes": "n/a",
    },
    "confidence": "medium",
}


def tool_call(call_id: str, name: str, arguments: Any) -> dict[str, Any]:
    raw = arguments if isinstance(arguments, str) else json.dumps(arguments)
    return {"id": call_id, "type": "function", "function": {"name": name, "arguments": raw}}


def assistant_tools(*calls: dict[str, Any]) -> dict[str, Any]:
    return {"role": "assistant", "content": None, "tool_calls": list(calls)}


def assistant_text(text: str) -> dict[str, Any]:
    return {"role": "assistant", "content": text}


class FakeReasoningEngine:
    def __init__(
        self,
        scenario: AnalysisScenario = AnalysisScenario.OK,
        chat_script: Optional[list[dict[str, Any]]] = None,
        configured: bool = True,
    ) -> None:
        self.scenario = scenario
        self.chat_script = list(chat_script or [assistant_text("Noted. Keep it up.")])
        self.configured = configured
        self.json_calls: list[tuple[str, str]] = []
        self.chat_calls: list[list[dict[str, Any]]] = []

    def complete_json(self, system_prompt: str, user_prompt: str) -> dict[str, Any]:
        self.json_calls.append((system_prompt, user_prompt))
        if self.scenario == AnalysisScenario.TIMEOUT:
            raise LLMRequestError(provider="openai", model="fake", message="simulated timeout")
        if self.scenario == AnalysisScenario.MISSING_SUMMARY:
            return {"impact_assessment": "neutral", "confidence": "low"}
        if self.scenario == AnalysisScenario.BAD_ENUMS:
            return {"summary": "Mixed signals today.", "impact_assessment": "great", "confidence": "sure"}
        return dict(ANALYSIS_OK)

    def chat(self, messages: list[dict[str, Any]], tools: list[dict[str, Any]]) -> dict[str, Any]:
        self.chat_calls.append([dict(m) for m in messages])
        if len(self.chat_script) > 1:
            return self.chat_script.pop(0)
        return self.chat_script[0]


@pytest.fixture(scope="session")
def withings_fixture_dir() -> Path:
    return Path(__file__).resolve().parent / "fixtures" / "withings"


@pytest.fixture
def load_withings(withings_fixture_dir: Path) -> Callable[[str], dict]:
    def _load(name: str) -> dict:
        return json.loads((withings_fixture_dir / f"{name}.json").read_text(encoding="utf-8"))

    return _load


@pytest.fixture(scope="session")
def test_db_path(tmp_path_factory: pytest.TempPathFactory) -> Path:
    db_path = tmp_path_factory.mktemp("db") / "lifemaster_test.db"
    configure_database(str(db_path))
    create_tables()
    return db_path


@pytest.fixture(scope="session")
def app(test_db_path: Path):
    from lifemaster.main import app as fastapi_app

    return fastapi_app


@pytest.fixture(autouse=True)
def clean_store(test_db_path: Path):
    db = SessionLocal()
    try:
        db.query(ProgressEntry).delete()
        db.query(WithingsToken).delete()
        db.commit()
    finally:
        db.close()
    yield


@pytest.fixture
def client(app):
    app.dependency_overrides = {}
    with TestClient(app) as test_client:
        yield test_client
    app.dependency_overrides = {}


@pytest.fixture
def db_session(test_db_path: Path):
    db = SessionLocal()
    try:
        yield db
    finally:
        db.close()


@pytest.fixture
def profile() -> CoachProfile:
    return CoachProfile()


@pytest.fixture
def fake_engine_factory() -> Callable[..., FakeReasoningEngine]:
    def _factory(**kwargs: Any) -> FakeReasoningEngine:
        return FakeReasoningEngine(**kwargs)

    return _factory


@pytest.fixture
def override_engine(app):
    def _override(engine: FakeReasoningEngine) -> FakeReasoningEngine:
        app.dependency_overrides[get_reasoning_engine] = lambda: engine
        app.dependency_overrides[get_coach_profile] = lambda: CoachProfile()
        return engine

    return _override


@pytest.fixture
def stored_tokens(db_session: Session):
    def _store(expires_in: int = 3600, access: str = "access-abc", refresh: str = "refresh-xyz") -> None:
        tokens.save_tokens(db_session, access, refresh, expires_in)

    return _store
