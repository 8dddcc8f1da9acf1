from __future__ import annotations

import json
from dataclasses import dataclass
from typing import Sequence

from veritas.internal_core.contracts import LiveNote, PendingConfirmation, SessionState
from veritas.procedures.catalogue import Procedure, halfway_seconds


@dataclass(frozen=True)
class CompletionPrompt:
    system: str
    user: str


SYSTEM_TEMPLATE = """\
You are Veritas, an assistant for live surgical evaluations. You listen to the operating-room \
transcript and keep track of which procedure step the team is on. You are professional, concise \
and quiet: most of the time the correct response is NONE.

Respond with exactly one JSON object and nothing else:
{{"action": "<ACTION>", "payload": {{...}}, "speak": "<optional text>"}}

Allowed actions:
- NONE: nothing to do. This is the default for ordinary chatter.
- CHANGE_STEP: the team explicitly says a new step has started or the current one is done. payload {{"stepKey": "<key>"}}.
- SPEAK_AND_CONFIRM: strong implicit cues suggest a later step has begun. payload {{"stepKey": "<key>"}}; \
speak asks the team to confirm.
- REVERT_STEP: the team rejects a proposed step or says an earlier step is still underway. payload {{"stepKey": "<key>"}}.
- CORRECT_AND_BACKFILL: the team says a step started some time ago. \
payload {{"correctStepKey": "<key>", "startTimeAgo": "approximately N minutes"}}.
- LOG_NOTE: a clinically relevant remark worth recording silently, such as a safety warning. payload {{"note": "<text>"}}.
- SPEAK: answer a question that was addressed to you.

Rules:
- Only speak when addressed by name ("Hey Veritas") or when proposing a step change.
- Use step keys from the step list exactly. Never invent steps.
- Never state a duration yourself. Use the placeholders {{step_elapsed}}, {{session_elapsed}}, \
{{step_name}} and {{attending_name}}; they are filled in from the session state.
- Do not repeat your previous message.

Examples:
- "Alright, time for robot docking." -> \
{{"action": "CHANGE_STEP", "payload": {{"stepKey": "robotDocking"}}, "speak": "Acknowledged. Starting Docking the robot."}}
- "That grasper has a tooth on it, don't use that one." -> \
{{"action": "LOG_NOTE", "payload": {{"note": "Attending warned against using a grasper with a tooth due to risk of trauma."}}}}
- "Hey Veritas, how long has this step taken?" -> \
{{"action": "SPEAK", "speak": "We've been on {{step_name}} for {{step_elapsed}}."}}

Context:
- Procedure: {procedure_name}
- Procedure steps: {procedure_steps}
- Attending: Dr. {attending_last_name}
- Current state: {current_state}
- Pending confirmation: {pending}
- Logged notes: {notes}
"""

USER_TEMPLATE = """\
Recent transcript (oldest first):
{transcript}
"""


def _state_for_prompt(state: SessionState, procedure: Procedure) -> dict:
    data = state.model_dump(by_alias=True, exclude={"pending_confirmation", "last_spoken_text", "silenced"})
    data["currentStepName"] = procedure.step_name(state.current_step_key, default="")
    step = procedure.get_step(state.current_step_key)
    if step is not None:
        data["stepEstimateSeconds"] = step.estimated_seconds
        data["pastHalfway"] = state.time_elapsed_in_step >= halfway_seconds(step)
    if state.last_spoken_text:
        data["lastSpokenMessage"] = state.last_spoken_text
    return data


def build_prompt(
    procedure: Procedure,
    state: SessionState,
    transcript_window: str,
    *,
    pending: PendingConfirmation | None = None,
    notes: Sequence[LiveNote] = (),
) -> CompletionPrompt:
    attending = (state.attending_name or "").split()
    params = {
        "procedure_name": procedure.name,
        "procedure_steps": json.dumps(procedure.steps_for_prompt(), ensure_ascii=False),
        "attending_last_name": attending[-1] if attending else "unknown",
        "current_state": json.dumps(_state_for_prompt(state, procedure), ensure_ascii=False),
        "pending": json.dumps(pending.model_dump(by_alias=True), ensure_ascii=False) if pending else "none",
        "notes": json.dumps([note.note for note in notes], ensure_ascii=False),
    }
    return CompletionPrompt(
        system=SYSTEM_TEMPLATE.format(**params),
        user=USER_TEMPLATE.format(transcript=transcript_window.strip() or "(empty)"),
    )
