from __future__ import annotations

from typing import Any, Dict, List, Literal, Optional

from pydantic import BaseModel, ConfigDict, Field

ActionType = Literal[
    "NONE",
    "START_TIMEOUT",
    "SPEAK",
    "COMPLETE_TIMEOUT",
    "CHANGE_STEP",
    "SPEAK_AND_CONFIRM",
    "REVERT_STEP",
    "CORRECT_AND_BACKFILL",
    "CHECK_IN",
    "LOG_NOTE",
]

ALLOWED_ACTIONS: frozenset[str] = frozenset(
    {
        "NONE",
        "START_TIMEOUT",
        "SPEAK",
        "COMPLETE_TIMEOUT",
        "CHANGE_STEP",
        "SPEAK_AND_CONFIRM",
        "REVERT_STEP",
        "CORRECT_AND_BACKFILL",
        "CHECK_IN",
        "LOG_NOTE",
    }
)

# Actions that commit a new current step.
STEP_COMMIT_ACTIONS: frozenset[str] = frozenset(
    {"CHANGE_STEP", "CORRECT_AND_BACKFILL", "COMPLETE_TIMEOUT"}
)

ActionSource = Literal["rule", "model", "clock", "fallback"]

TIMEOUT_STEP_KEY = "timeout"


class PendingConfirmation(BaseModel):
    model_config = ConfigDict(extra="forbid", populate_by_name=True)

    proposed_step_key: str = Field(alias="proposedStepKey")
    prior_step_key: str = Field(alias="priorStepKey")
    message: str = ""


class SessionState(BaseModel):
    # Clients send extra display keys (e.g. currentStepName) alongside the state.
    model_config = ConfigDict(extra="ignore", populate_by_name=True)

    current_step_key: str = Field(default="", alias="currentStepKey")
    time_elapsed_in_step: int = Field(default=0, ge=0, alias="timeElapsedInStep")
    time_elapsed_in_session: int = Field(default=0, ge=0, alias="timeElapsedInSession")
    last_checkin_time: Optional[int] = Field(default=None, alias="lastCheckinTime")
    pending_confirmation: Optional[PendingConfirmation] = Field(
        default=None, alias="pendingConfirmation"
    )
    attending_name: Optional[str] = Field(default=None, alias="attendingName")
    silenced: bool = False
    last_spoken_text: Optional[str] = Field(default=None, alias="lastSpokenText")

    @property
    def in_timeout(self) -> bool:
        return self.current_step_key == TIMEOUT_STEP_KEY

    @property
    def checkin_fired(self) -> bool:
        return self.last_checkin_time is not None


class AssistantAction(BaseModel):
    model_config = ConfigDict(extra="forbid")

    action: ActionType = "NONE"
    payload: Dict[str, Any] = Field(default_factory=dict)
    speak: Optional[str] = None
    source: ActionSource = "rule"

    @property
    def is_silent(self) -> bool:
        return not (self.speak or "").strip()

    def to_wire(self) -> Dict[str, Any]:
        wire: Dict[str, Any] = {"action": self.action}
        if self.payload:
            wire["payload"] = dict(self.payload)
        if self.speak:
            wire["speak"] = self.speak
        return wire


def none_action(source: ActionSource = "fallback", **payload: Any) -> AssistantAction:
    return AssistantAction(action="NONE", payload=dict(payload), source=source)


class TranscriptEntry(BaseModel):
    model_config = ConfigDict(extra="forbid", populate_by_name=True)

    speaker: str = Field(min_length=1, max_length=64)
    text: str = Field(max_length=4000)
    is_final: bool = Field(default=True, alias="isFinal")
    timestamp: Optional[int] = None


class LiveNote(BaseModel):
    model_config = ConfigDict(extra="forbid", populate_by_name=True)

    note: str
    step_key: str = Field(alias="stepKey")
    session_second: int = Field(ge=0, alias="sessionSecond")
    source: ActionSource = "rule"


LiveSessionStatus = Literal["created", "active", "ended"]


AuditEventType = Literal[
    "SESSION_CREATED",
    "SESSION_STARTED",
    "EVALUATION_SKIPPED",
    "ACTION_APPLIED",
    "ACTION_DROPPED",
    "COMPLETION_FAILED",
    "SPEECH_FAILED",
    "SESSION_ENDED",
    "ERROR",
]


class AuditEvent(BaseModel):
    model_config = ConfigDict(extra="forbid")

    ts_iso: str
    session_id: str
    type: AuditEventType
    code: str
    detail: str
    duration_ms: Optional[int] = None


class SessionSnapshot(BaseModel):
    model_config = ConfigDict(extra="forbid", populate_by_name=True)

    session_id: str = Field(alias="sessionId")
    procedure_id: str = Field(alias="procedureId")
    status: LiveSessionStatus
    end_reason: Optional[str] = Field(default=None, alias="endReason")
    state: SessionState
    notes: List[LiveNote] = Field(default_factory=list)
    last_action: Optional[Dict[str, Any]] = Field(default=None, alias="lastAction")
