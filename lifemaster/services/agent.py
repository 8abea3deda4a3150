"""Consent-gated tool-calling loop for one chat turn.

The consent flag comes only from the raw user message and is fixed for the
whole turn, so nothing the engine says can grant it. Every turn ends with a
progress analysis, and failures there fail the turn.
"""
import json
import logging
import os
import time
from dataclasses import dataclass, field
from datetime import date, datetime, timezone
from typing import Any, Optional

from sqlalchemy.orm import Session

from lifemaster.core.config import CoachProfile
from lifemaster.core.consent import classify_entry_type, has_consent
from lifemaster.core.errors import AnalysisError
from lifemaster.core.normalizer import Snapshot
from lifemaster.services import analyzer, progress_store
from lifemaster.services.llm import LLMRequestError, ReasoningEngine

logger = logging.getLogger("uvicorn.error")

AGENT_MAX_STEPS = int(os.getenv("AGENT_MAX_STEPS", "5"))
AGENT_TURN_TIMEOUT_SECONDS = float(os.getenv("AGENT_TURN_TIMEOUT_SECONDS", "120"))

STOP_COMPLETED = "completed"
STOP_BUDGET_EXHAUSTED = "budget_exhausted"
STOP_DEADLINE = "deadline"

CONSENT_NOT_GRANTED = "consent not granted"

AGENT_SYSTEM_PROMPT = """
You are the LifeMaster coaching agent. You help the user reflect on their health
data and log what happens in their day.

Tools:
- get_agent_state: read recent progress entries before giving advice.
- create_agent_event: log something the user reports (meal, workout, symptom, habit).
- commit_agent_decision: record a decision the user has explicitly approved.

Rules:
- Only call commit_agent_decision when the user clearly approved the decision in
  their own message. If the tool returns an error, tell the user what is needed.
- Dates use YYYY-MM-DD.
- Keep replies short, practical, and supportive. Do not diagnose.
"""

AGENT_TOOLS: list[dict[str, Any]] = [
    {
        "type": "function",
        "function": {
            "name": "get_agent_state",
            "description": "Return up to 100 of the most recent progress entries, newest first.",
            "parameters": {"type": "object", "properties": {}, "additionalProperties": False},
        },
    },
    {
        "type": "function",
        "function": {
            "name": "create_agent_event",
            "description": "Log an event the user reported.",
            "parameters": {
                "type": "object",
                "properties": {
                    "entry_date": {"type": "string", "description": "YYYY-MM-DD"},
                    "title": {"type": "string"},
                    "notes": {"type": "string"},
                    "metrics": {"type": "object"},
                },
                "required": ["entry_date", "title"],
            },
        },
    },
    {
        "type": "function",
        "function": {
            "name": "commit_agent_decision",
            "description": "Record a decision the user explicitly approved.",
            "parameters": {
                "type": "object",
                "properties": {
                    "entry_date": {"type": "string", "description": "YYYY-MM-DD"},
                    "title": {"type": "string"},
                    "notes": {"type": "string"},
                    "consent": {
                        "type": "object",
                        "properties": {
                            "status": {"type": "string"},
                            "scope": {"type": "string"},
                        },
                    },
                },
                "required": ["entry_date", "title", "consent"],
            },
        },
    },
]


@dataclass
class TurnBudget:
    max_steps: int = AGENT_MAX_STEPS
    timeout_seconds: float = AGENT_TURN_TIMEOUT_SECONDS
    steps_used: int = 0
    started_at: float = field(default_factory=time.monotonic)

    @property
    def exhausted(self) -> bool:
        return self.steps_used >= self.max_steps

    @property
    def expired(self) -> bool:
        return time.monotonic() - self.started_at >= self.timeout_seconds

    def consume(self) -> None:
        self.steps_used += 1


@dataclass
class ToolOutcome:
    result: dict[str, Any]
    committed: bool = False


@dataclass
class ChatTurnResult:
    reply: str
    committed: bool
    tool_trace: list[dict[str, Any]]
    stop_reason: str
    steps: int
    analysis: Optional[dict[str, Any]] = None

    @property
    def budget_exhausted(self) -> bool:
        return self.stop_reason != STOP_COMPLETED

    def to_dict(self) -> dict[str, Any]:
        return {
            "reply": self.reply,
            "committed": self.committed,
            "tool_trace": self.tool_trace,
            "stop_reason": self.stop_reason,
            "budget_exhausted": self.budget_exhausted,
            "steps": self.steps,
            "analysis": self.analysis,
        }


def _parse_arguments(raw: Any) -> dict[str, Any]:
    if isinstance(raw, dict):
        return raw
    if not raw:
        return {}
    if not isinstance(raw, str):
        raise ValueError("tool arguments must be a JSON object")
    parsed = json.loads(raw)
    if not isinstance(parsed, dict):
        raise ValueError("tool arguments must be a JSON object")
    return parsed


def _missing(args: dict[str, Any], required: tuple[str, ...]) -> Optional[str]:
    for name in required:
        value = args.get(name)
        if value is None or (isinstance(value, str) and not value.strip()):
            return name
    return None


def _entry_date(raw: Any) -> date:
    return date.fromisoformat(str(raw).strip())


def _tool_get_state(db: Session, args: dict[str, Any]) -> ToolOutcome:
    rows = progress_store.list_recent(db, progress_store.STATE_LIMIT)
    return ToolOutcome({"entries": [progress_store.serialize_entry(row) for row in rows]})


def _tool_create_event(db: Session, args: dict[str, Any]) -> ToolOutcome:
    missing = _missing(args, ("entry_date", "title"))
    if missing:
        return ToolOutcome({"error": f"missing required field: {missing}"})
    try:
        entry_date = _entry_date(args["entry_date"])
    except ValueError:
        return ToolOutcome({"error": "entry_date must be YYYY-MM-DD"})
    metrics = args.get("metrics") if isinstance(args.get("metrics"), dict) else None
    row = progress_store.insert_entry(
        db,
        entry_type=progress_store.EntryType.event.value,
        entry_date=entry_date,
        source=progress_store.EntrySource.agent.value,
        title=str(args["title"]).strip(),
        notes=args.get("notes"),
        metrics=metrics,
    )
    return ToolOutcome({"status": "saved", "entry": progress_store.serialize_entry(row)})


def _tool_commit_decision(db: Session, args: dict[str, Any], consent_granted: bool) -> ToolOutcome:
    if not consent_granted:
        return ToolOutcome({"error": CONSENT_NOT_GRANTED})
    missing = _missing(args, ("entry_date", "title", "consent"))
    if missing:
        return ToolOutcome({"error": f"missing required field: {missing}"})
    if not isinstance(args["consent"], dict):
        return ToolOutcome({"error": "consent must be an object"})
    try:
        entry_date = _entry_date(args["entry_date"])
    except ValueError:
        return ToolOutcome({"error": "entry_date must be YYYY-MM-DD"})
    # Engine-supplied granted_at is discarded; the server stamps its own.
    consent = {
        "status": "granted",
        "granted_at": datetime.now(timezone.utc).isoformat(),
        "scope": args["consent"].get("scope"),
    }
    row = progress_store.insert_entry(
        db,
        entry_type=progress_store.EntryType.decision.value,
        entry_date=entry_date,
        source=progress_store.EntrySource.agent.value,
        title=str(args["title"]).strip(),
        notes=args.get("notes"),
        consent=consent,
    )
    return ToolOutcome({"status": "committed", "entry": progress_store.serialize_entry(row)}, committed=True)


def dispatch_tool(db: Session, name: str, raw_arguments: Any, consent_granted: bool) -> ToolOutcome:
    try:
        args = _parse_arguments(raw_arguments)
    except ValueError:
        return ToolOutcome({"error": "arguments are not valid JSON"})
    if name == "get_agent_state":
        return _tool_get_state(db, args)
    if name == "create_agent_event":
        return _tool_create_event(db, args)
    if name == "commit_agent_decision":
        return _tool_commit_decision(db, args, consent_granted)
    return ToolOutcome({"error": f"unknown tool: {name}"})


def _trace_arguments(raw: Any) -> Any:
    try:
        return _parse_arguments(raw)
    except ValueError:
        return raw


def run_chat_turn(
    db: Session,
    engine: ReasoningEngine,
    profile: CoachProfile,
    message: str,
    budget: Optional[TurnBudget] = None,
) -> ChatTurnResult:
    budget = budget or TurnBudget()
    consent_granted = has_consent(message)
    messages: list[dict[str, Any]] = [
        {"role": "system", "content": AGENT_SYSTEM_PROMPT},
        {"role": "user", "content": message},
    ]
    tool_trace: list[dict[str, Any]] = []
    committed = False
    reply = ""
    stop_reason = STOP_BUDGET_EXHAUSTED

    while not budget.exhausted:
        if budget.expired:
            stop_reason = STOP_DEADLINE
            break
        try:
            assistant = engine.chat(messages, AGENT_TOOLS)
        except LLMRequestError as exc:
            raise AnalysisError("Reasoning engine request failed", detail=str(exc)) from exc
        budget.consume()
        reply = str(assistant.get("content") or "")
        tool_calls = assistant.get("tool_calls") or []
        if not tool_calls:
            stop_reason = STOP_COMPLETED
            break
        if budget.exhausted:
            # The engine would never see these results, so nothing is dispatched.
            logger.warning("agent_tools_skipped count=%s", len(tool_calls))
            break

        messages.append(
            {"role": "assistant", "content": assistant.get("content"), "tool_calls": tool_calls}
        )
        for call in tool_calls:
            function = call.get("function") or {}
            name = str(function.get("name") or "")
            raw_arguments = function.get("arguments")
            tool_trace.append({"function": name, "arguments": _trace_arguments(raw_arguments)})
            outcome = dispatch_tool(db, name, raw_arguments, consent_granted)
            committed = committed or outcome.committed
            logger.info(
                "agent_tool_dispatch tool=%s consent=%s error=%s",
                name,
                consent_granted,
                outcome.result.get("error"),
            )
            messages.append(
                {
                    "role": "tool",
                    "tool_call_id": call.get("id"),
                    "content": json.dumps(outcome.result, default=str),
                }
            )

    if stop_reason != STOP_COMPLETED:
        logger.warning("agent_turn_truncated reason=%s steps=%s", stop_reason, budget.steps_used)

    snapshot = Snapshot.from_dict(progress_store.latest_snapshot_metrics(db))
    analysis = analyzer.analyze(
        db,
        engine,
        profile,
        snapshot,
        source=progress_store.EntrySource.user.value,
        entry_type=classify_entry_type(message),
        user_message=message,
    )
    return ChatTurnResult(
        reply=reply,
        committed=committed,
        tool_trace=tool_trace,
        stop_reason=stop_reason,
        steps=budget.steps_used,
        analysis=analysis,
    )
