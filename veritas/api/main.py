from __future__ import annotations

"""
HTTP surface for the Veritas live assistant.

Design intent:
- Keep API orchestration thin and typed; decisions live in veritas.assistant.
- Expose the stateless decision step for clients that own their session state.
- Host server-side live sessions for clients that only stream transcript entries.
"""

import functools
import logging
from typing import Any, Callable, Optional

from fastapi import FastAPI, HTTPException
from fastapi.middleware.cors import CORSMiddleware
from pydantic import BaseModel, ConfigDict, Field

from veritas.assistant.engine import DecisionEngine
from veritas.internal_core.audit import log_event
from veritas.internal_core.config import LiveConfig, load_config
from veritas.internal_core.contracts import (
    AuditEvent,
    LiveNote,
    PendingConfirmation,
    SessionSnapshot,
    SessionState,
    TranscriptEntry,
)
from veritas.internal_core.session_store import InMemorySessionStore
from veritas.live.session import EvaluationOutcome, LiveSession
from veritas.live.speech import SpeechOutput, build_speech_output
from veritas.procedures.catalogue import (
    Procedure,
    ProcedureCatalogue,
    ProcedureNotFoundError,
    load_default_catalogue,
)


class _CamelModel(BaseModel):
    model_config = ConfigDict(populate_by_name=True)


class ProcedureSummary(_CamelModel):
    id: str
    name: str
    step_count: int = Field(alias="stepCount")


class ProcedureStepView(_CamelModel):
    key: str
    name: str
    time: str
    min_seconds: int = Field(alias="minSeconds")
    max_seconds: int = Field(alias="maxSeconds")
    estimated_seconds: int = Field(alias="estimatedSeconds")


class ProcedureDetail(_CamelModel):
    id: str
    name: str
    steps: list[ProcedureStepView]
    difficulty_rubric: dict[int, str] = Field(default_factory=dict, alias="difficultyRubric")


class EvaluateRequest(_CamelModel):
    transcript: str = Field(max_length=200_000)
    current_state: SessionState = Field(default_factory=SessionState, alias="currentState")
    procedure_id: str = Field(min_length=1, max_length=128, alias="procedureId")
    pending_confirmation: Optional[PendingConfirmation] = Field(default=None, alias="pendingConfirmation")
    last_spoken_message: Optional[str] = Field(default=None, alias="lastSpokenMessage")


class CreateSessionRequest(_CamelModel):
    procedure_id: str = Field(min_length=1, max_length=128, alias="procedureId")
    attending_name: Optional[str] = Field(default=None, max_length=128, alias="attendingName")
    resident_name: Optional[str] = Field(default=None, max_length=128, alias="residentName")


class TickRequest(BaseModel):
    seconds: int = Field(default=1, ge=1, le=3600)


class EndSessionRequest(BaseModel):
    reason: str = Field(default="user_ended", min_length=1, max_length=64)


class SessionOutcomeResponse(_CamelModel):
    status: str
    action: Optional[dict[str, Any]] = None
    spoken: Optional[str] = None
    session: SessionSnapshot


class SessionTranscriptResponse(_CamelModel):
    session_id: str = Field(alias="sessionId")
    transcript: str
    notes: list[LiveNote] = Field(default_factory=list)


class SessionAuditResponse(_CamelModel):
    session_id: str = Field(alias="sessionId")
    events: list[AuditEvent] = Field(default_factory=list)


app = FastAPI(title="veritas live assistant service")
logger = logging.getLogger(__name__)

app.add_middleware(
    CORSMiddleware,
    allow_origins=["*"],
    allow_credentials=True,
    allow_methods=["*"],
    allow_headers=["*"],
)


def _get_config() -> LiveConfig:
    existing = getattr(app.state, "live_config", None)
    if isinstance(existing, LiveConfig):
        return existing
    created = load_config()
    logging.getLogger("veritas").setLevel(created.VERITAS_LOG_LEVEL.upper())
    setattr(app.state, "live_config", created)
    return created


def _get_catalogue() -> ProcedureCatalogue:
    existing = getattr(app.state, "procedure_catalogue", None)
    if isinstance(existing, ProcedureCatalogue):
        return existing
    created = load_default_catalogue()
    setattr(app.state, "procedure_catalogue", created)
    return created


def _get_engine() -> DecisionEngine:
    existing = getattr(app.state, "decision_engine", None)
    if isinstance(existing, DecisionEngine):
        return existing
    created = DecisionEngine.from_config(_get_config())
    setattr(app.state, "decision_engine", created)
    return created


def _get_session_store() -> InMemorySessionStore:
    existing = getattr(app.state, "live_session_store", None)
    if isinstance(existing, InMemorySessionStore):
        return existing
    created = InMemorySessionStore(ttl_seconds=_get_config().VERITAS_SESSION_TTL_SECONDS)
    setattr(app.state, "live_session_store", created)
    return created


def _build_speech_output() -> SpeechOutput:
    factory: Callable[[], SpeechOutput] | None = getattr(app.state, "speech_output_factory", None)
    if callable(factory):
        return factory()
    return build_speech_output(_get_config().VERITAS_SPEECH_ENABLED)


def _get_procedure(procedure_id: str) -> Procedure:
    try:
        return _get_catalogue().get_procedure(procedure_id)
    except ProcedureNotFoundError as exc:
        raise HTTPException(status_code=404, detail=str(exc)) from exc


def _get_live_session(session_id: str) -> LiveSession:
    try:
        return _get_session_store().get_runner(session_id)
    except KeyError as exc:
        raise HTTPException(status_code=404, detail=f"Unknown session_id: {session_id}") from exc


def _outcome_response(session: LiveSession, outcome: EvaluationOutcome) -> SessionOutcomeResponse:
    return SessionOutcomeResponse(
        status=outcome.status,
        action=outcome.action.to_wire() if outcome.action is not None else None,
        spoken=outcome.spoken,
        session=session.snapshot(),
    )


def _window_from_transcript(transcript: str, window_size: int) -> str:
    lines = [line for line in (transcript or "").splitlines() if line.strip()]
    return "\n".join(lines[-window_size:])


@app.get("/healthz")
async def healthz() -> dict[str, str]:
    return {"status": "ok"}


@app.get("/procedures", response_model=list[ProcedureSummary])
async def procedures_list() -> list[ProcedureSummary]:
    return [
        ProcedureSummary(id=procedure.id, name=procedure.name, step_count=len(procedure.steps))
        for procedure in _get_catalogue().list_procedures()
    ]


@app.get("/procedures/{procedure_id}", response_model=ProcedureDetail)
async def procedures_detail(procedure_id: str) -> ProcedureDetail:
    procedure = _get_procedure(procedure_id)
    return ProcedureDetail(
        id=procedure.id,
        name=procedure.name,
        steps=[
            ProcedureStepView(
                key=step.key,
                name=step.name,
                time=step.time_range_label,
                min_seconds=step.min_seconds,
                max_seconds=step.max_seconds,
                estimated_seconds=step.estimated_seconds,
            )
            for step in procedure.steps
        ],
        difficulty_rubric=dict(procedure.difficulty_rubric),
    )


@app.post("/assistant/evaluate")
def assistant_evaluate(payload: EvaluateRequest) -> dict[str, Any]:
    procedure = _get_procedure(payload.procedure_id)
    config = _get_config()
    state = payload.current_state
    if payload.last_spoken_message and not state.last_spoken_text:
        state = state.model_copy(update={"last_spoken_text": payload.last_spoken_message})
    window = _window_from_transcript(payload.transcript, config.VERITAS_TRANSCRIPT_WINDOW)
    action = _get_engine().evaluate(window, state, procedure, payload.pending_confirmation)
    logger.info("Stateless evaluation procedure=%s step=%s -> %s", procedure.id, state.current_step_key, action.action)
    return action.to_wire()


@app.post("/sessions", response_model=SessionOutcomeResponse)
def sessions_create(payload: CreateSessionRequest) -> SessionOutcomeResponse:
    procedure = _get_procedure(payload.procedure_id)
    config = _get_config()
    store = _get_session_store()
    expired = store.cleanup_expired_sessions()
    if expired:
        logger.info("Removed %d expired live sessions", expired)

    session_id = store.create_session()
    session = LiveSession(
        session_id,
        procedure,
        _get_engine(),
        speech=_build_speech_output(),
        window_size=config.VERITAS_TRANSCRIPT_WINDOW,
        audit=functools.partial(log_event, store, session_id),
        attending_name=payload.attending_name,
        resident_name=payload.resident_name,
    )
    store.set_runner(session_id, session)
    log_event(store, session_id, "SESSION_CREATED", "created", f"procedure={procedure.id}")
    outcome = session.start()
    return _outcome_response(session, outcome)


@app.get("/sessions/{session_id}", response_model=SessionSnapshot)
async def sessions_get(session_id: str) -> SessionSnapshot:
    return _get_live_session(session_id).snapshot()


@app.post("/sessions/{session_id}/transcript", response_model=SessionOutcomeResponse)
def sessions_transcript_append(session_id: str, payload: TranscriptEntry) -> SessionOutcomeResponse:
    session = _get_live_session(session_id)
    outcome = session.submit_entry(payload)
    return _outcome_response(session, outcome)


@app.post("/sessions/{session_id}/tick", response_model=SessionOutcomeResponse)
def sessions_tick(session_id: str, payload: TickRequest) -> SessionOutcomeResponse:
    session = _get_live_session(session_id)
    outcome = session.tick(payload.seconds)
    return _outcome_response(session, outcome)


@app.post("/sessions/{session_id}/end", response_model=SessionSnapshot)
def sessions_end(session_id: str, payload: EndSessionRequest) -> SessionSnapshot:
    session = _get_live_session(session_id)
    session.end(payload.reason)
    return session.snapshot()


@app.get("/sessions/{session_id}/transcript", response_model=SessionTranscriptResponse)
async def sessions_transcript_get(session_id: str) -> SessionTranscriptResponse:
    session = _get_live_session(session_id)
    return SessionTranscriptResponse(
        session_id=session_id,
        transcript=session.full_transcript(),
        notes=session.notes,
    )


@app.get("/sessions/{session_id}/audit", response_model=SessionAuditResponse)
async def sessions_audit(session_id: str) -> SessionAuditResponse:
    _get_live_session(session_id)
    return SessionAuditResponse(session_id=session_id, events=_get_session_store().get_audit_events(session_id))


@app.delete("/sessions/{session_id}")
def sessions_destroy(session_id: str) -> dict[str, str]:
    store = _get_session_store()
    if not store.has_session(session_id):
        raise HTTPException(status_code=404, detail=f"Unknown session_id: {session_id}")
    store.destroy_session(session_id, reason="user_deleted")
    return {"status": "destroyed", "session_id": session_id}
