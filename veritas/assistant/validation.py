from __future__ import annotations

"""
Validation and gating of assistant actions.

Design intent:
- Constrain model output to the closed action set and known payload shapes.
- Resolve every step reference through the catalogue; fail closed to NONE otherwise.
- Never let the model speak a duration that session state cannot back.
- Apply the same silence and repetition gates to rule and model actions alike.
"""

import logging
import math
import re
from typing import Any, Mapping

from veritas.assistant.timefmt import (
    describe_time_ago,
    format_clock,
    format_spoken_duration,
    mentioned_durations,
    parse_time_ago_description,
)
from veritas.assistant.triggers import (
    MSG_COMPLETE_TIMEOUT,
    Utterance,
    build_checkin_action,
    checkin_due,
)
from veritas.internal_core.contracts import (
    ALLOWED_ACTIONS,
    AssistantAction,
    PendingConfirmation,
    SessionState,
    none_action,
)
from veritas.procedures.catalogue import Procedure, resolve_step_key

logger = logging.getLogger(__name__)

# Actions whose only effect is speech; gating turns them into NONE instead of stripping text.
SPEECH_ONLY_ACTIONS: frozenset[str] = frozenset({"SPEAK", "SPEAK_AND_CONFIRM", "CHECK_IN"})
UNADDRESSED_ACTIONS: frozenset[str] = frozenset({"NONE", "LOG_NOTE", "SPEAK_AND_CONFIRM"})

_FORMAT_TIME_RE = re.compile(
    r"\$\{\s*formatTime\(\s*(?:currentState\.)?(timeElapsedInStep|timeElapsedInSession)\s*\)\s*\}"
)
_LEGACY_STEP_NAME_RE = re.compile(r"\$\{\s*(?:currentState\.)?currentStepName\s*\}")
_NAMED_PLACEHOLDER_RE = re.compile(r"\{(step_name|step_elapsed|session_elapsed|step_clock|session_clock|attending_name)\}")
_LEFTOVER_PLACEHOLDER_RE = re.compile(r"\$\{[^}]*\}|\{[A-Za-z_][A-Za-z0-9_.]*\}")
_QUANTITY_UNIT_RE = re.compile(r"(\d+)\s*([hms])")


class ActionRejected(ValueError):
    """Raised internally when model output cannot be turned into a safe action."""


def _step_display_name(state: SessionState, procedure: Procedure) -> str:
    if state.in_timeout:
        return "the time-out"
    return procedure.step_name(state.current_step_key)


def _attending_last_name(state: SessionState) -> str:
    parts = (state.attending_name or "").split()
    return parts[-1] if parts else "Attending"


def resolve_placeholders(text: str, state: SessionState, procedure: Procedure) -> str:
    """Fill state placeholders; raise ActionRejected if any placeholder is left over."""
    values = {
        "step_name": _step_display_name(state, procedure),
        "step_elapsed": format_spoken_duration(state.time_elapsed_in_step),
        "session_elapsed": format_spoken_duration(state.time_elapsed_in_session),
        "step_clock": format_clock(state.time_elapsed_in_step),
        "session_clock": format_clock(state.time_elapsed_in_session),
        "attending_name": _attending_last_name(state),
    }

    def _format_time(match: re.Match[str]) -> str:
        if match.group(1) == "timeElapsedInStep":
            return values["step_clock"]
        return values["session_clock"]

    resolved = _FORMAT_TIME_RE.sub(_format_time, text)
    resolved = _LEGACY_STEP_NAME_RE.sub(values["step_name"], resolved)
    resolved = _NAMED_PLACEHOLDER_RE.sub(lambda m: values[m.group(1)], resolved)
    if _LEFTOVER_PLACEHOLDER_RE.search(resolved):
        raise ActionRejected(f"unresolved placeholder in speech: {resolved!r}")
    return resolved


def _normalize_duration(mention: str) -> str:
    """'08:21' -> '8:21'; '8 Minutes' -> '8m'."""
    text = mention.strip().lower()
    if ":" in text:
        minutes, seconds = text.split(":", 1)
        return f"{int(minutes)}:{seconds}"
    match = _QUANTITY_UNIT_RE.match(text)
    if not match:
        return text
    return f"{int(match.group(1))}{match.group(2)}"


def _backed_durations(state: SessionState) -> set[str]:
    backed: set[str] = set()
    for seconds in (state.time_elapsed_in_step, state.time_elapsed_in_session):
        for rendered in (format_clock(seconds), format_spoken_duration(seconds)):
            backed.update(_normalize_duration(item) for item in mentioned_durations(rendered))
    return backed


def check_durations_backed(text: str, state: SessionState) -> None:
    backed = _backed_durations(state)
    for mention in mentioned_durations(text):
        if _normalize_duration(mention) not in backed:
            raise ActionRejected(f"speech mentions a duration not derived from state: {mention!r}")


def _payload_step(procedure: Procedure, payload: Mapping[str, Any], *keys: str) -> str | None:
    for key in keys:
        value = payload.get(key)
        if isinstance(value, str) and value.strip():
            resolved = resolve_step_key(procedure, value)
            if resolved is None:
                raise ActionRejected(f"unresolvable step reference {value!r}")
            return resolved
    return None


def _clean_speak(raw: Any, state: SessionState, procedure: Procedure) -> str | None:
    if raw is None:
        return None
    if not isinstance(raw, str):
        raise ActionRejected("speak must be a string")
    text = raw.strip()
    if not text:
        return None
    text = resolve_placeholders(text, state, procedure)
    check_durations_backed(text, state)
    return text


def _build_model_action(
    data: Mapping[str, Any],
    *,
    state: SessionState,
    procedure: Procedure,
    utterance: Utterance,
    pending: PendingConfirmation | None,
    checkin_ratio: float,
) -> AssistantAction:
    action = str(data.get("action") or "").strip().upper()
    if action not in ALLOWED_ACTIONS:
        raise ActionRejected(f"unknown action {data.get('action')!r}")
    payload = data.get("payload") or {}
    if not isinstance(payload, Mapping):
        raise ActionRejected("payload must be an object")

    if action == "NONE":
        return none_action(source="model")

    if not utterance.addressed and action not in UNADDRESSED_ACTIONS:
        if not (pending is not None and action in {"CHANGE_STEP", "REVERT_STEP"}):
            raise ActionRejected(f"{action} without a wake word or direct address")

    speak = _clean_speak(data.get("speak"), state, procedure)
    current_key = state.current_step_key

    if action == "START_TIMEOUT":
        raise ActionRejected("START_TIMEOUT is only issued at session start")

    if action == "COMPLETE_TIMEOUT":
        if not state.in_timeout:
            raise ActionRejected("COMPLETE_TIMEOUT outside the time-out")
        return AssistantAction(
            action="COMPLETE_TIMEOUT",
            payload={"stepKey": procedure.first_step.key},
            speak=MSG_COMPLETE_TIMEOUT,
            source="model",
        )

    if action == "CHANGE_STEP":
        step_key = _payload_step(procedure, payload, "stepKey", "step", "stepName")
        if step_key is None and pending is not None:
            step_key = pending.proposed_step_key
        if step_key is None or step_key == current_key:
            raise ActionRejected("CHANGE_STEP without a new step")
        return AssistantAction(
            action="CHANGE_STEP",
            payload={"stepKey": step_key},
            speak=speak or f"Acknowledged. Starting {procedure.step_name(step_key)}.",
            source="model",
        )

    if action == "SPEAK_AND_CONFIRM":
        step_key = _payload_step(procedure, payload, "stepKey", "step", "stepName")
        if step_key is None or not procedure.is_after(step_key, current_key):
            raise ActionRejected("SPEAK_AND_CONFIRM must propose a later step")
        if pending is not None and pending.proposed_step_key == step_key:
            raise ActionRejected("step already proposed")
        name = procedure.step_name(step_key)
        return AssistantAction(
            action="SPEAK_AND_CONFIRM",
            payload={"stepKey": step_key},
            speak=speak or f"It looks like we are moving to '{name}'. Please confirm.",
            source="model",
        )

    if action == "REVERT_STEP":
        step_key = _payload_step(procedure, payload, "stepKey", "step", "stepName")
        if step_key is None:
            if pending is not None:
                step_key = pending.prior_step_key
            else:
                previous = procedure.previous_step(current_key)
                step_key = previous.key if previous is not None else None
        if step_key is None or procedure.is_after(step_key, current_key):
            raise ActionRejected("REVERT_STEP must restore the current or an earlier step")
        return AssistantAction(
            action="REVERT_STEP",
            payload={"stepKey": step_key},
            speak=speak or f"Understood. Reverting to {procedure.step_name(step_key)}.",
            source="model",
        )

    if action == "CORRECT_AND_BACKFILL":
        step_key = _payload_step(procedure, payload, "correctStepKey", "stepKey")
        if step_key is None:
            raise ActionRejected("CORRECT_AND_BACKFILL without a step")
        seconds_ago = payload.get("startSecondsAgo")
        if not isinstance(seconds_ago, (int, float)) or isinstance(seconds_ago, bool):
            seconds_ago = parse_time_ago_description(str(payload.get("startTimeAgo") or ""))
        if seconds_ago is None:
            raise ActionRejected("CORRECT_AND_BACKFILL without a start offset")
        if not math.isfinite(seconds_ago):
            raise ActionRejected(f"non-finite start offset {seconds_ago!r}")
        seconds_ago = min(max(0, int(seconds_ago)), state.time_elapsed_in_session)
        approx = describe_time_ago(seconds_ago)
        return AssistantAction(
            action="CORRECT_AND_BACKFILL",
            payload={"correctStepKey": step_key, "startTimeAgo": approx, "startSecondsAgo": seconds_ago},
            speak=f"Understood. Updating to '{procedure.step_name(step_key)}', which started {approx} ago.",
            source="model",
        )

    if action == "CHECK_IN":
        if not checkin_due(state, procedure, checkin_ratio):
            raise ActionRejected("CHECK_IN before the threshold or after it already fired")
        return build_checkin_action(state, procedure).model_copy(update={"source": "model"})

    if action == "LOG_NOTE":
        note = payload.get("note")
        if not isinstance(note, str) or not note.strip():
            raise ActionRejected("LOG_NOTE without a note")
        return AssistantAction(action="LOG_NOTE", payload={"note": note.strip()}, source="model")

    # SPEAK
    if not speak:
        raise ActionRejected("SPEAK without text")
    return AssistantAction(action="SPEAK", speak=speak, source="model")


def validate_model_output(
    data: Mapping[str, Any] | None,
    *,
    state: SessionState,
    procedure: Procedure,
    utterance: Utterance,
    pending: PendingConfirmation | None = None,
    checkin_ratio: float = 0.75,
) -> AssistantAction:
    """Turn a parsed completion object into a safe action; anything invalid becomes NONE."""
    if data is None:
        logger.warning("Completion output was not a JSON action object; using NONE.")
        return none_action()
    try:
        return _build_model_action(
            data,
            state=state,
            procedure=procedure,
            utterance=utterance,
            pending=pending,
            checkin_ratio=checkin_ratio,
        )
    except ActionRejected as exc:
        logger.warning("Dropped model action %r: %s", data.get("action"), exc)
        return none_action()
    except (ValueError, TypeError, OverflowError) as exc:
        logger.warning("Malformed model action %r: %s", data.get("action"), exc)
        return none_action()


def gate_action(action: AssistantAction, *, state: SessionState, utterance: Utterance) -> AssistantAction:
    """Apply silence and repetition gates shared by rule and model actions."""
    if action.is_silent:
        return action
    if state.silenced and not utterance.addressed:
        if action.action in SPEECH_ONLY_ACTIONS and not action.payload.get("caseComplete"):
            return none_action(source=action.source)
        return action.model_copy(update={"speak": None})
    if action.action in {"SPEAK", "SPEAK_AND_CONFIRM"} and action.speak == state.last_spoken_text:
        logger.info("Suppressed repeated speech: %s", action.speak)
        return none_action(source=action.source)
    return action
