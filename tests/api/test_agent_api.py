from datetime import datetime

from conftest import AnalysisScenario, assistant_text, assistant_tools, tool_call


def _event_payload() -> dict:
    return {"entry_date": "2025-01-15", "title": "Morning walk", "notes": "45 minutes", "metrics": {"steps": 5200}}


def test_event_roundtrip_and_state(client) -> None:
    response = client.post("/agent/event", json=_event_payload())
    assert response.status_code == 200
    body = response.json()
    assert body["status"] == "saved"
    entry = body["entry"]
    assert entry["title"] == "Morning walk"
    assert entry["entry_type"] == "event"
    assert entry["source"] == "manual"
    assert entry["metrics"] == {"steps": 5200}
    assert datetime.fromisoformat(entry["entry_ts"]).tzinfo is not None

    state = client.get("/agent/state")
    assert state.status_code == 200
    assert [e["id"] for e in state.json()["entries"]] == [entry["id"]]


def test_event_extra_fields_land_in_payload(client) -> None:
    payload = {**_event_payload(), "mood": "good", "tags": ["outdoor"]}
    response = client.post("/agent/event", json=payload)
    assert response.status_code == 200
    assert response.json()["entry"]["payload"] == {"mood": "good", "tags": ["outdoor"]}


def test_event_validation_errors_are_400(client) -> None:
    response = client.post("/agent/event", json={"title": "No date"})
    assert response.status_code == 400
    assert response.json()["error"] == "Invalid request"

    response = client.post("/agent/event", json={"entry_date": "2025-01-15", "title": "x", "source": "robot"})
    assert response.status_code == 400


def test_state_is_newest_first_and_idempotent(client) -> None:
    for title in ("first", "second", "third"):
        assert client.post("/agent/event", json={"entry_date": "2025-01-15", "title": title}).status_code == 200

    first = client.get("/agent/state").json()
    second = client.get("/agent/state").json()
    assert first == second
    assert [e["title"] for e in first["entries"]] == ["third", "second", "first"]


def test_commit_requires_granted_consent(client) -> None:
    response = client.post(
        "/agent/commit",
        json={"entry_date": "2025-01-15", "title": "Cut caffeine", "consent": {"status": "pending"}},
    )
    assert response.status_code == 403
    assert response.json()["error"] == "Consent not granted"
    assert client.get("/agent/state").json()["entries"] == []


def test_commit_with_consent_is_stored(client) -> None:
    response = client.post(
        "/agent/commit",
        json={
            "entry_date": "2025-01-15",
            "title": "Cut caffeine after noon",
            "consent": {"status": "granted", "scope": "nutrition", "granted_at": "2000-01-01T00:00:00Z"},
        },
    )
    assert response.status_code == 200
    body = response.json()
    assert body["status"] == "committed"
    assert body["entry"]["entry_type"] == "decision"
    assert body["entry"]["source"] == "user"
    assert body["entry"]["consent"]["scope"] == "nutrition"
    assert not body["entry"]["consent"]["granted_at"].startswith("2000")


def test_chat_requires_message(client, override_engine, fake_engine_factory) -> None:
    override_engine(fake_engine_factory())
    assert client.post("/agent/chat", json={}).status_code == 400
    response = client.post("/agent/chat", json={"message": "   "})
    assert response.status_code == 400
    assert response.json()["error"] == "Missing message"


def test_chat_without_engine_credential_is_500(client, override_engine, fake_engine_factory) -> None:
    override_engine(fake_engine_factory(configured=False))
    response = client.post("/agent/chat", json={"message": "How am I doing?"})
    assert response.status_code == 500
    assert "not configured" in response.json()["error"]


def test_chat_turn_logs_event_and_returns_analysis(client, override_engine, fake_engine_factory) -> None:
    engine = override_engine(
        fake_engine_factory(
            chat_script=[
                assistant_tools(
                    tool_call("call_1", "create_agent_event", {"entry_date": "2025-01-15", "title": "Lunch salad"})
                ),
                assistant_text("Logged your lunch."),
            ]
        )
    )

    response = client.post("/agent/chat", json={"message": "I ate a salad for lunch"})

    assert response.status_code == 200
    body = response.json()
    assert body["reply"] == "Logged your lunch."
    assert body["committed"] is False
    assert body["stop_reason"] == "completed"
    assert body["budget_exhausted"] is False
    assert body["tool_trace"] == [
        {"function": "create_agent_event", "arguments": {"entry_date": "2025-01-15", "title": "Lunch salad"}}
    ]
    assert body["analysis"]["entry"]["entry_type"] == "adherence"
    assert len(engine.chat_calls) == 2

    types = sorted(e["entry_type"] for e in client.get("/agent/state").json()["entries"])
    assert types == ["adherence", "event"]


def test_chat_never_commits_without_consent_words(client, override_engine, fake_engine_factory) -> None:
    decision = {"entry_date": "2025-01-15", "title": "Sleep 8h", "consent": {"status": "granted"}}
    override_engine(
        fake_engine_factory(
            chat_script=[
                assistant_tools(tool_call("call_1", "commit_agent_decision", decision)),
                assistant_text("Please confirm first."),
            ]
        )
    )

    body = client.post("/agent/chat", json={"message": "Should I sleep more?"}).json()

    assert body["committed"] is False
    entries = client.get("/agent/state").json()["entries"]
    assert all(e["entry_type"] != "decision" for e in entries)


def test_chat_analysis_failure_is_500(client, override_engine, fake_engine_factory) -> None:
    override_engine(fake_engine_factory(scenario=AnalysisScenario.TIMEOUT))
    response = client.post("/agent/chat", json={"message": "Status?"})
    assert response.status_code == 500
    assert response.json()["error"] == "Reasoning engine request failed"


def test_event_cannot_store_a_decision(client) -> None:
    response = client.post(
        "/agent/event", json={"entry_date": "2025-01-01", "title": "Cut coffee", "entry_type": "decision"}
    )
    assert response.status_code == 400
    assert client.get("/agent/state").json()["entries"] == []


def test_event_cannot_store_a_measurement(client) -> None:
    response = client.post(
        "/agent/event",
        json={"entry_date": "2025-01-01", "title": "Scale", "entry_type": "measurement", "metrics": {"weight_kg": 70.0}},
    )
    assert response.status_code == 400
    assert client.get("/agent/state").json()["entries"] == []


def test_event_with_explicit_event_type_is_saved(client) -> None:
    response = client.post("/agent/event", json={**_event_payload(), "entry_type": "event"})
    assert response.status_code == 200
    entry = response.json()["entry"]
    assert entry["entry_type"] == "event"
    assert entry["consent"] is None
    assert entry["payload"] is None
