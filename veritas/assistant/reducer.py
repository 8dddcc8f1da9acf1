from __future__ import annotations

"""
Pure session-state reducer.

Design intent:
- Apply one validated action to one state and return a new state; never mutate the input.
- Keep the clock independent: only tick_clock advances time, actions only reset or back-fill it.
- Commit step changes only through CHANGE_STEP, CORRECT_AND_BACKFILL, COMPLETE_TIMEOUT and REVERT_STEP.
"""

from typing import Any, Dict

from veritas.internal_core.contracts import (
    TIMEOUT_STEP_KEY,
    AssistantAction,
    PendingConfirmation,
    SessionState,
)


def _enter_step(state: SessionState, step_key: str, *, elapsed: int = 0) -> Dict[str, Any]:
    return {
        "current_step_key": step_key,
        "time_elapsed_in_step": max(0, int(elapsed)),
        "last_checkin_time": None,
        "pending_confirmation": None,
    }


def _speech_update(action: AssistantAction) -> Dict[str, Any]:
    if action.is_silent:
        return {}
    return {"silenced": False, "last_spoken_text": action.speak}


def apply_action(state: SessionState, action: AssistantAction) -> SessionState:
    """Return the state that results from applying action to state."""
    payload = action.payload or {}
    update: Dict[str, Any] = {}

    if action.action == "NONE":
        if payload.get("silence"):
            update["silenced"] = True
        return state.model_copy(update=update) if update else state

    if action.action == "START_TIMEOUT":
        update.update(_enter_step(state, TIMEOUT_STEP_KEY))

    elif action.action == "COMPLETE_TIMEOUT":
        step_key = str(payload.get("stepKey") or "")
        if step_key:
            update.update(_enter_step(state, step_key))

    elif action.action == "CHANGE_STEP":
        step_key = str(payload.get("stepKey") or "")
        if step_key and step_key != state.current_step_key:
            update.update(_enter_step(state, step_key))
        else:
            update["pending_confirmation"] = None

    elif action.action == "SPEAK_AND_CONFIRM":
        step_key = str(payload.get("stepKey") or "")
        if step_key:
            update["pending_confirmation"] = PendingConfirmation(
                proposed_step_key=step_key,
                prior_step_key=state.current_step_key,
                message=action.speak or "",
            )

    elif action.action == "REVERT_STEP":
        pending = state.pending_confirmation
        step_key = str(payload.get("stepKey") or (pending.prior_step_key if pending else "") or "")
        if step_key and step_key != state.current_step_key:
            # Step time is not reset: the restored step was already underway.
            update["current_step_key"] = step_key
            update["last_checkin_time"] = None
        update["pending_confirmation"] = None

    elif action.action == "CORRECT_AND_BACKFILL":
        step_key = str(payload.get("correctStepKey") or "")
        if step_key:
            seconds_ago = int(payload.get("startSecondsAgo") or 0)
            elapsed = min(max(0, seconds_ago), state.time_elapsed_in_session)
            update.update(_enter_step(state, step_key, elapsed=elapsed))

    elif action.action == "CHECK_IN":
        update["last_checkin_time"] = state.time_elapsed_in_session

    elif action.action == "SPEAK":
        if payload.get("role") == "attending" and payload.get("name"):
            update["attending_name"] = str(payload["name"])

    # LOG_NOTE leaves the state alone; the runner records the note.

    update.update(_speech_update(action))
    return state.model_copy(update=update) if update else state


def tick_clock(state: SessionState, seconds: int = 1) -> SessionState:
    """Advance both clocks; the step clock only runs once a step (or the time-out) is active."""
    seconds = max(0, int(seconds))
    if seconds == 0:
        return state
    update: Dict[str, Any] = {"time_elapsed_in_session": state.time_elapsed_in_session + seconds}
    if state.current_step_key:
        update["time_elapsed_in_step"] = state.time_elapsed_in_step + seconds
    return state.model_copy(update=update)
