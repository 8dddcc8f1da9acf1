from __future__ import annotations

"""
Live session runner: one transcript, one state, one evaluation at a time.

Design intent:
- Serialize every state mutation (reducer or clock) behind one lock.
- Run the decision engine outside the lock and never more than one evaluation per session.
- Drop results that come back after the session ended or restarted.
- Keep speech output failures out of session state.
"""

import logging
import time
from dataclasses import dataclass
from threading import RLock
from typing import Callable, List, Literal, Optional

from veritas.assistant.engine import DecisionEngine
from veritas.assistant.reducer import apply_action, tick_clock
from veritas.assistant.triggers import SESSION_START_TOKEN
from veritas.internal_core.contracts import (
    AssistantAction,
    AuditEventType,
    LiveNote,
    LiveSessionStatus,
    SessionSnapshot,
    SessionState,
    TranscriptEntry,
)
from veritas.live.speech import NullSpeechOutput, SpeechOutput
from veritas.procedures.catalogue import Procedure
from veritas.transcript.buffer import ASSISTANT_SPEAKER, TranscriptBuffer

logger = logging.getLogger(__name__)

OutcomeStatus = Literal["applied", "buffered", "interim", "skipped", "dropped_stale", "ended"]
AuditSink = Callable[[AuditEventType, str, str, Optional[int]], None]


@dataclass(frozen=True)
class EvaluationOutcome:
    status: OutcomeStatus
    state: SessionState
    action: AssistantAction | None = None
    spoken: str | None = None


def _noop_audit(event_type: AuditEventType, code: str, detail: str, duration_ms: Optional[int] = None) -> None:
    return None


class LiveSession:
    def __init__(
        self,
        session_id: str,
        procedure: Procedure,
        engine: DecisionEngine,
        *,
        speech: SpeechOutput | None = None,
        window_size: int = 15,
        audit: AuditSink | None = None,
        attending_name: str | None = None,
        resident_name: str | None = None,
    ) -> None:
        self.session_id = session_id
        self.procedure = procedure
        self.engine = engine
        self.speech = speech or NullSpeechOutput()
        self.resident_name = resident_name
        self._audit = audit or _noop_audit
        self._lock = RLock()
        self._buffer = TranscriptBuffer(window_size=window_size)
        self._state = SessionState(attending_name=attending_name)
        self._notes: List[LiveNote] = []
        self._status: LiveSessionStatus = "created"
        self._end_reason: str | None = None
        self._generation = 0
        self._in_flight = False
        self._followup = False
        self._last_action: AssistantAction | None = None

    # -- read side -------------------------------------------------------

    @property
    def status(self) -> LiveSessionStatus:
        with self._lock:
            return self._status

    @property
    def state(self) -> SessionState:
        with self._lock:
            return self._state

    @property
    def notes(self) -> List[LiveNote]:
        with self._lock:
            return list(self._notes)

    @property
    def in_flight(self) -> bool:
        with self._lock:
            return self._in_flight

    def full_transcript(self) -> str:
        with self._lock:
            return self._buffer.full_text()

    def snapshot(self) -> SessionSnapshot:
        with self._lock:
            return SessionSnapshot(
                session_id=self.session_id,
                procedure_id=self.procedure.id,
                status=self._status,
                end_reason=self._end_reason,
                state=self._state,
                notes=list(self._notes),
                last_action=self._last_action.to_wire() if self._last_action else None,
            )

    # -- lifecycle -------------------------------------------------------

    def start(self) -> EvaluationOutcome:
        """Begin (or restart) the session with the pre-operative time-out."""
        with self._lock:
            if self._status == "ended":
                return EvaluationOutcome(status="ended", state=self._state)
            if self._status == "active":
                # Restart: results of the previous generation become stale.
                attending = self._state.attending_name
                self._generation += 1
                self._buffer.clear()
                self._notes = []
                self._state = SessionState(attending_name=attending)
                self._in_flight = False
                self._followup = False
            self._status = "active"
        self._audit("SESSION_STARTED", "started", f"procedure={self.procedure.id}", None)
        return self._evaluate(window_override=SESSION_START_TOKEN)

    def end(self, reason: str = "user_ended") -> SessionState:
        with self._lock:
            if self._status == "ended":
                return self._state
            self._status = "ended"
            self._end_reason = reason
            state = self._state
        self._audit("SESSION_ENDED", reason, f"step={state.current_step_key}", None)
        return state

    # -- inputs ----------------------------------------------------------

    def submit_entry(self, entry: TranscriptEntry) -> EvaluationOutcome:
        with self._lock:
            if self._status != "active":
                return EvaluationOutcome(status="ended" if self._status == "ended" else "skipped", state=self._state)
            result = self._buffer.append(entry)
            if not result.finalized:
                return EvaluationOutcome(status="interim", state=self._state)
            if entry.speaker == ASSISTANT_SPEAKER:
                return EvaluationOutcome(status="skipped", state=self._state)
        return self._evaluate()

    def tick(self, seconds: int = 1) -> EvaluationOutcome:
        """Advance the clock; a due check-in fires here without a model call."""
        with self._lock:
            if self._status != "active":
                return EvaluationOutcome(status="ended" if self._status == "ended" else "skipped", state=self._state)
            self._state = tick_clock(self._state, seconds)
            action = None if self._in_flight else self.engine.clock_action(self._state, self.procedure)
            if action is None:
                return EvaluationOutcome(status="skipped", state=self._state)
            spoken = self._apply_locked(action)
            state = self._state
        self._audit("ACTION_APPLIED", action.action, f"source=clock step={state.current_step_key}", None)
        self._dispatch_speech(spoken)
        return EvaluationOutcome(status="applied", state=state, action=action, spoken=spoken)

    # -- evaluation ------------------------------------------------------

    def _evaluate(self, window_override: str | None = None) -> EvaluationOutcome:
        outcome = self._evaluate_once(window_override)
        while outcome.status == "applied":
            with self._lock:
                if not self._followup or self._status != "active":
                    break
                self._followup = False
            outcome = self._evaluate_once(None)
        return outcome

    def _evaluate_once(self, window_override: str | None) -> EvaluationOutcome:
        with self._lock:
            if self._in_flight:
                self._followup = True
                self._audit("EVALUATION_SKIPPED", "in_flight", "entry buffered", None)
                return EvaluationOutcome(status="buffered", state=self._state)
            self._in_flight = True
            generation = self._generation
            state = self._state
            window = window_override if window_override is not None else self._buffer.window_text()
            notes = list(self._notes)

        started = time.perf_counter()
        try:
            action = self.engine.evaluate(
                window, state, self.procedure, state.pending_confirmation, notes=notes
            )
        except Exception as exc:
            with self._lock:
                if generation == self._generation:
                    self._in_flight = False
            self._audit("ERROR", "evaluation_failed", type(exc).__name__, None)
            raise
        duration_ms = int((time.perf_counter() - started) * 1000)

        spoken: str | None = None
        with self._lock:
            if generation == self._generation:
                self._in_flight = False
            stale = (
                self._status != "active"
                or generation != self._generation
                or (action.action == "CHECK_IN" and self._state.checkin_fired)
            )
            if stale:
                current = self._state
            else:
                spoken = self._apply_locked(action)
                current = self._state

        if stale:
            logger.info("Dropped stale %s for session %s", action.action, self.session_id)
            self._audit("ACTION_DROPPED", action.action, "session ended or restarted", duration_ms)
            return EvaluationOutcome(status="dropped_stale", state=current, action=action)

        self._audit(
            "ACTION_APPLIED",
            action.action,
            f"source={action.source} step={current.current_step_key}",
            duration_ms,
        )
        if action.source == "fallback":
            self._audit("COMPLETION_FAILED", "fallback_none", "completion unavailable or invalid", duration_ms)
        if action.payload.get("caseComplete"):
            self._audit("SESSION_ENDED", "case_complete", f"step={current.current_step_key}", None)
        self._dispatch_speech(spoken)
        return EvaluationOutcome(status="applied", state=current, action=action, spoken=spoken)

    def _apply_locked(self, action: AssistantAction) -> str | None:
        self._state = apply_action(self._state, action)
        self._last_action = action
        if action.action == "LOG_NOTE":
            note = str(action.payload.get("note") or "").strip()
            if note:
                self._notes.append(
                    LiveNote(
                        note=note,
                        step_key=self._state.current_step_key,
                        session_second=self._state.time_elapsed_in_session,
                        source=action.source,
                    )
                )
        spoken = None if action.is_silent else action.speak
        if spoken:
            self._buffer.append_assistant(spoken)
        if action.payload.get("caseComplete"):
            self._status = "ended"
            self._end_reason = "case_complete"
        return spoken

    def _dispatch_speech(self, text: str | None) -> None:
        if not text:
            return
        try:
            self.speech.speak(text)
        except Exception as exc:
            logger.warning("Speech output via %s failed: %s", self.speech.name(), exc)
            self._audit("SPEECH_FAILED", type(exc).__name__, self.speech.name(), None)
