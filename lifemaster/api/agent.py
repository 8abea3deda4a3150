import logging
from datetime import date, datetime, timezone
from typing import Any, Literal, Optional

from fastapi import APIRouter, Depends
from pydantic import BaseModel, ConfigDict, Field
from sqlalchemy.orm import Session

from lifemaster.core.config import CoachProfile, get_coach_profile
from lifemaster.core.errors import ConsentDenied, EngineNotConfigured, InputValidationError
from lifemaster.db.session import get_db
from lifemaster.services import progress_store
from lifemaster.services.agent import run_chat_turn
from lifemaster.services.llm import ReasoningEngine, get_reasoning_engine
from lifemaster.services.progress_store import EntrySource, EntryType

logger = logging.getLogger("uvicorn.error")

router = APIRouter(prefix="/agent", tags=["agent"])


class AgentEventRequest(BaseModel):
    model_config = ConfigDict(extra="allow")

    entry_date: date
    title: str = Field(min_length=1, max_length=255)
    notes: Optional[str] = Field(default=None, max_length=4000)
    metrics: Optional[dict[str, Any]] = None
    # Decisions go through /commit and measurements come only from /health/daily.
    entry_type: Literal["event"] = EntryType.event.value
    source: EntrySource = EntrySource.manual


class ConsentInput(BaseModel):
    status: str
    scope: Optional[str] = None
    granted_at: Optional[str] = None


class AgentDecisionRequest(BaseModel):
    entry_date: date
    title: str = Field(min_length=1, max_length=255)
    notes: Optional[str] = Field(default=None, max_length=4000)
    consent: ConsentInput
    source: EntrySource = EntrySource.user


class ChatRequest(BaseModel):
    message: Optional[str] = Field(default=None, max_length=4000)


class EntryListResponse(BaseModel):
    entries: list[dict[str, Any]]


class SavedEntryResponse(BaseModel):
    status: str
    entry: dict[str, Any]


class ChatResponse(BaseModel):
    reply: str
    committed: bool
    tool_trace: list[dict[str, Any]]
    stop_reason: str
    budget_exhausted: bool
    steps: int
    analysis: Optional[dict[str, Any]] = None


@router.get("/state", response_model=EntryListResponse)
def get_agent_state(db: Session = Depends(get_db)) -> EntryListResponse:
    rows = progress_store.list_recent(db, progress_store.STATE_LIMIT)
    return EntryListResponse(entries=[progress_store.serialize_entry(row) for row in rows])


@router.post("/event", response_model=SavedEntryResponse)
def create_agent_event(payload: AgentEventRequest, db: Session = Depends(get_db)) -> SavedEntryResponse:
    row = progress_store.insert_entry(
        db,
        entry_type=EntryType.event.value,
        entry_date=payload.entry_date,
        source=payload.source.value,
        title=payload.title.strip(),
        notes=payload.notes,
        metrics=payload.metrics,
        payload=payload.model_extra or None,
    )
    return SavedEntryResponse(status="saved", entry=progress_store.serialize_entry(row))


@router.post("/commit", response_model=SavedEntryResponse)
def commit_agent_decision(payload: AgentDecisionRequest, db: Session = Depends(get_db)) -> SavedEntryResponse:
    if payload.consent.status != "granted":
        raise ConsentDenied("Consent not granted", detail={"consent_status": payload.consent.status})
    consent = {
        "status": "granted",
        "granted_at": datetime.now(timezone.utc).isoformat(),
        "scope": payload.consent.scope,
    }
    row = progress_store.insert_entry(
        db,
        entry_type=EntryType.decision.value,
        entry_date=payload.entry_date,
        source=payload.source.value,
        title=payload.title.strip(),
        notes=payload.notes,
        consent=consent,
    )
    return SavedEntryResponse(status="committed", entry=progress_store.serialize_entry(row))


@router.post("/chat", response_model=ChatResponse)
def agent_chat(
    payload: ChatRequest,
    db: Session = Depends(get_db),
    engine: ReasoningEngine = Depends(get_reasoning_engine),
    profile: CoachProfile = Depends(get_coach_profile),
) -> ChatResponse:
    message = (payload.message or "").strip()
    if not message:
        raise InputValidationError("Missing message")
    if not engine.configured:
        raise EngineNotConfigured("Reasoning engine credential is not configured")
    try:
        result = run_chat_turn(db, engine, profile, message)
    except Exception:
        logger.exception("agent_chat_turn_failed")
        raise
    return ChatResponse(**result.to_dict())
