from __future__ import annotations

"""
Deterministic live-assistant triggers.

Each rule inspects the latest utterance plus session state and either returns
an action or None. Rules run in a fixed order; the first hit wins.

Design intent:
- Handle session start, time-out, time queries, silence, confirmations and explicit
  step statements identically every time, independent of model variance.
- Compute every spoken duration from session state, never from transcript content.
- Resolve step references through the catalogue; unresolvable references never fire.
"""

import re
from dataclasses import dataclass
from typing import Callable, Sequence

from veritas.assistant.timefmt import (
    describe_time_ago,
    format_clock,
    format_spoken_duration,
    parse_time_ago,
)
from veritas.internal_core.contracts import (
    AssistantAction,
    PendingConfirmation,
    SessionState,
)
from veritas.procedures.catalogue import (
    Procedure,
    ProcedureStep,
    checkin_threshold_seconds,
    resolve_step_key,
    step_reference_tokens,
    step_tokens,
)
from veritas.transcript.buffer import ASSISTANT_SPEAKER, split_entry_line

SESSION_START_TOKEN = "SESSION_START"
ASSISTANT_NAME = "Veritas"

MSG_START_TIMEOUT = "Time-out initiated. Please state your name and role, starting with the attending surgeon."
MSG_ATTENDING_INTRODUCED = "Thank you. Can the resident now please state their name and role?"
MSG_COMPLETE_TIMEOUT = "Time-out complete. Ready to begin."
MSG_ASSISTANT_NAME = f"I am {ASSISTANT_NAME}."

_WS_RE = re.compile(r"\s+")
_ATTENDING_RE = re.compile(r"\b(attending(?: surgeon)?|staff surgeon|consultant)\b", re.IGNORECASE)
_RESIDENT_RE = re.compile(r"\b(resident|fellow|trainee|pgy[\s-]?\d)\b", re.IGNORECASE)
_NAME_LEADIN_RE = re.compile(
    r"^(?:(?:hi|hello|hey|okay|ok|so|and)\b)?[\s,]*(?:(?:i'm|i am|my name is|this is|it's|name's)\b)?\s*",
    re.IGNORECASE,
)
_NAME_TRAILER_RE = re.compile(r"[\s,]*(?:\b(?:the|your|as|and|i'm|i am|here))?\s*$", re.IGNORECASE)
_TITLE_RE = re.compile(r"^(?:dr\.?|doctor)\s+", re.IGNORECASE)

_SILENCE_RE = re.compile(
    r"\b(shut up|be quiet|quiet please|stop talking|stay quiet|go quiet|no more talking|mute yourself|silence yourself)\b",
    re.IGNORECASE,
)
# Bare forms; honoured only when addressed.
_ADDRESSED_SILENCE_RE = re.compile(r"\b(silence|mute)\b", re.IGNORECASE)
_NEGATION_LEAD_RE = re.compile(r"^\W*(no|nope|nah|negative|not yet)\b", re.IGNORECASE)
_REJECT_RE = re.compile(
    r"\b(not yet|still (?:on|doing|in|working|removing|dissecting|placing|closing)|"
    r"we're still|we are still|go back|revert|cancel that|wrong step|not moving on)\b",
    re.IGNORECASE,
)
_AFFIRM_RE = re.compile(
    r"^\W*(?:yes|yeah|yep|yup|correct|confirm(?:ed)?|affirmative|that's right|that is right|"
    r"right|sure|go ahead|do it|sounds good)\b"
    r"|\bconfirm(?:ed)?\b"
    r"|\b(?:we've|we have|we're|we are)\s+(?:moved|moving)\s+on\b",
    re.IGNORECASE,
)
_REASSERT_RE = re.compile(
    r"\b(?:(?:we're|we are|we were)\s+still\s+(?:(?:on|doing|in|at)\s+)?|still\s+(?:on|doing|in|at)\s+)"
    r"(?P<ref>[^,.;!?]+)",
    re.IGNORECASE,
)
_STEP_QUESTION_RE = re.compile(r"\b(?:which|what) step\b", re.IGNORECASE)
_GO_BACK_RE = re.compile(
    r"\b(?:go back(?:\s+to\s+(?P<target>[^,.;!?]+))?|revert(?:\s+to\s+(?P<target2>[^,.;!?]+))?|"
    r"(?:we're|we are)\s+not\s+(?:on|doing|at)\s+(?P<not_ref>[^,.;!?]+?)\s+yet)\b",
    re.IGNORECASE,
)
_NAME_QUERY_RE = re.compile(
    r"\b(what(?:'s| is| was) (?:your|the) name|who are you|name of (?:the )?(?:ai|assistant))\b",
    re.IGNORECASE,
)
_TIME_QUERY_RE = re.compile(
    r"\b(how long|how much time|what(?:'s| is) (?:the|our) time|time elapsed|elapsed time)\b",
    re.IGNORECASE,
)
_SESSION_SCOPE_RE = re.compile(
    r"\b(total|overall|whole|entire|session|case|surgery|procedure|operation|altogether)\b",
    re.IGNORECASE,
)
_STEP_SCOPE_RE = re.compile(r"\b(this step|the step|current step|this part|this phase)\b", re.IGNORECASE)
_BACKFILL_VERB_RE = re.compile(
    r"\b(finished|completed|done|started|began|moved on|switched)\b",
    re.IGNORECASE,
)
_BACKFILL_NOW_RE = re.compile(
    r"\b(?:and\s+)?(?:(?:we're|we are|are)\s+)?(?:now|currently)\s+(?P<ref>[^.;!?]+)",
    re.IGNORECASE,
)
_DONE_WITH_RE = re.compile(
    r"\b(?:done with|finished(?: with)?|completed|wrapped up|through with)\s+(?P<ref>[^,.;!?]+)",
    re.IGNORECASE,
)
_IS_DONE_RE = re.compile(
    r"(?P<ref>[^,.;!?]+?)\s+(?:is|are)\s+(?:done|complete|completed|finished)\b",
    re.IGNORECASE,
)
_START_STEP_RE = re.compile(
    r"\b(?:start(?:ed|ing)?|begin(?:ning)?|began|moving\s+(?:on\s+)?to|move\s+(?:on\s+)?to|"
    r"on\s+to|onto|time\s+for|proceed(?:ing)?\s+(?:with|to)|let's\s+(?:start|begin|do))\s+"
    r"(?:with\s+)?(?P<ref>[^,.;!?]+)",
    re.IGNORECASE,
)
_THIS_STEP_RE = re.compile(r"^\s*(?:this|that|it|here|this step|that step|the current step)\s*$", re.IGNORECASE)
_END_OF_CASE_RE = re.compile(
    r"\b(last stitch|case (?:is )?(?:done|complete|over)|(?:we're|we are) done here|that's a wrap|"
    r"procedure (?:is )?(?:done|complete|over)|all done)\b",
    re.IGNORECASE,
)
_REQUEST_RE = re.compile(
    r"^\W*(?:(?:can|could|may)\s+(?:i|we)\s+(?:get|have)\s+|pass\s+(?:me\s+)?|hand\s+(?:me\s+)?)?"
    r"(?:(?:the|a|an|some)\s+)?(?P<item>[a-z][a-z' -]{1,40}?),?\s+please\W*$",
    re.IGNORECASE,
)


@dataclass(frozen=True)
class StepCue:
    pattern: re.Pattern[str]
    description: str
    step_keys: tuple[str, ...] = ()
    next_step: bool = False


STEP_CUES: tuple[StepCue, ...] = (
    StepCue(
        re.compile(r"\b(?:drive|bring|move|roll|wheel)\b[^.?!]*\brobot\b|\brobot\b[^.?!]*\b(?:closer|in here|over here)\b", re.IGNORECASE),
        "requests to move the robot",
        ("robotDocking",),
    ),
    StepCue(
        re.compile(r"\b(?:get|have|need|pass|hand)\b[^.?!]*\binstruments\b|\binstruments,? please\b", re.IGNORECASE),
        "requests for instruments",
        ("instrumentPlacement",),
    ),
    StepCue(
        re.compile(r"\bclip applier\b|\bclips?,? please\b", re.IGNORECASE),
        "requests for the clip applier",
        ("cysticArteryDuctClipping",),
    ),
    StepCue(
        re.compile(r"\bcritical view\b", re.IGNORECASE),
        "identification of the cystic artery and duct",
        ("cysticArteryDuctClipping",),
    ),
    StepCue(
        re.compile(r"\b(?:specimen|retrieval|endo ?catch)\s+bag\b", re.IGNORECASE),
        "requests for the specimen bag",
        ("specimenRemoval", "specimenExtraction"),
    ),
    StepCue(
        re.compile(r"\bmesh\b[^.?!]*\b(?:please|ready|open|in)\b|\b(?:open|get|pass)\b[^.?!]*\bmesh\b", re.IGNORECASE),
        "requests for the mesh",
        ("meshPlacement",),
    ),
    StepCue(
        re.compile(r"\bundock\b", re.IGNORECASE),
        "undocking of the robot",
        ("undocking",),
    ),
    StepCue(
        re.compile(r"\b(?:skin stapler|subcuticular|monocryl|dermabond)\b", re.IGNORECASE),
        "requests for skin closure materials",
        ("skinClosure",),
    ),
    StepCue(
        re.compile(r"\bgas off\b[^.?!]*\blights on\b|\blights on\b[^.?!]*\bgas off\b|\bgas off\b", re.IGNORECASE),
        "gas off and lights on",
        next_step=True,
    ),
)


@dataclass(frozen=True)
class Utterance:
    speaker: str
    text: str
    wake_word: bool
    addressed: bool


@dataclass(frozen=True)
class TriggerContext:
    utterance: Utterance
    state: SessionState
    procedure: Procedure
    pending: PendingConfirmation | None
    checkin_ratio: float = 0.75


def _wake_pattern(wake_words: Sequence[str]) -> re.Pattern[str]:
    names = "|".join(re.escape(word) for word in wake_words if word)
    return re.compile(r"\b(?:hey|hi|ok|okay)\W+(?:" + names + r")\b", re.IGNORECASE)


def _vocative_pattern(wake_words: Sequence[str]) -> re.Pattern[str]:
    names = "|".join(re.escape(word) for word in wake_words if word)
    return re.compile(
        r"^\W*(?:" + names + r")\b[,!:]|[,]\s*(?:" + names + r")\W*$|\b(?:the ai|the assistant)\b",
        re.IGNORECASE,
    )


def parse_latest_utterance(transcript_window: str, wake_words: Sequence[str]) -> Utterance:
    """Pick the latest non-assistant line of the window and classify how it was addressed."""
    speaker, text = "", ""
    for line in reversed((transcript_window or "").splitlines()):
        if not line.strip():
            continue
        line_speaker, line_text = split_entry_line(line)
        if line_speaker == ASSISTANT_SPEAKER:
            continue
        speaker, text = line_speaker, line_text
        break
    wake = bool(_wake_pattern(wake_words).search(text)) if text else False
    addressed = wake or (bool(_vocative_pattern(wake_words).search(text)) if text else False)
    return Utterance(speaker=speaker, text=text, wake_word=wake, addressed=addressed)


def _current_step(ctx: TriggerContext) -> ProcedureStep | None:
    return ctx.procedure.get_step(ctx.state.current_step_key)


def _current_step_name(ctx: TriggerContext) -> str:
    if ctx.state.in_timeout:
        return "the time-out"
    return ctx.procedure.step_name(ctx.state.current_step_key)


def _resolve_ref(ctx: TriggerContext, ref: str) -> str | None:
    ref = (ref or "").strip()
    if not ref:
        return None
    if _THIS_STEP_RE.match(ref):
        step = _current_step(ctx)
        return step.key if step is not None else None
    return resolve_step_key(ctx.procedure, ref)


def _extract_person_name(text: str, role_match: re.Match[str]) -> str:
    before = text[: role_match.start()]
    before = _NAME_LEADIN_RE.sub("", before.strip())
    before = _NAME_TRAILER_RE.sub("", before)
    before = _TITLE_RE.sub("", before.strip(" ,.-"))
    return _WS_RE.sub(" ", before).strip(" ,.-")


def session_start_rule(ctx: TriggerContext) -> AssistantAction | None:
    if ctx.utterance.text.strip() != SESSION_START_TOKEN:
        return None
    return AssistantAction(action="START_TIMEOUT", speak=MSG_START_TIMEOUT)


def timeout_introduction_rule(ctx: TriggerContext) -> AssistantAction | None:
    if not ctx.state.in_timeout:
        return None
    text = ctx.utterance.text
    resident = _RESIDENT_RE.search(text)
    if resident:
        payload = {"stepKey": ctx.procedure.first_step.key, "role": "resident"}
        name = _extract_person_name(text, resident)
        if name:
            payload["name"] = name
        return AssistantAction(action="COMPLETE_TIMEOUT", payload=payload, speak=MSG_COMPLETE_TIMEOUT)
    attending = _ATTENDING_RE.search(text)
    if attending:
        payload = {"role": "attending"}
        name = _extract_person_name(text, attending)
        if name:
            payload["name"] = name
        return AssistantAction(action="SPEAK", payload=payload, speak=MSG_ATTENDING_INTRODUCED)
    return None


def silence_rule(ctx: TriggerContext) -> AssistantAction | None:
    text = ctx.utterance.text
    if not _SILENCE_RE.search(text) and not (ctx.utterance.addressed and _ADDRESSED_SILENCE_RE.search(text)):
        return None
    return AssistantAction(action="NONE", payload={"silence": True})


def matched_cues(ctx: TriggerContext) -> list[tuple[StepCue, ProcedureStep]]:
    """Every cue in the utterance paired with its target step in this procedure, in table order."""
    text = ctx.utterance.text
    current_key = ctx.state.current_step_key
    found: list[tuple[StepCue, ProcedureStep]] = []
    for cue in STEP_CUES:
        if not cue.pattern.search(text):
            continue
        if cue.next_step:
            if _current_step(ctx) is None:
                continue
            target = ctx.procedure.next_step(current_key)
            if target is not None:
                found.append((cue, target))
            continue
        for key in cue.step_keys:
            target = ctx.procedure.get_step(key)
            if target is not None:
                found.append((cue, target))
                break
    return found


def confirmation_rule(ctx: TriggerContext) -> AssistantAction | None:
    pending = ctx.pending
    if pending is None:
        return None
    proposed = ctx.procedure.get_step(pending.proposed_step_key)
    if proposed is None:
        return None
    text = ctx.utterance.text
    prior_name = ctx.procedure.step_name(pending.prior_step_key)

    if _NEGATION_LEAD_RE.search(text) or _REJECT_RE.search(text):
        if _NEGATION_LEAD_RE.search(text):
            speak = f"Understood. Reverting to {prior_name}."
        else:
            speak = f"Acknowledged. Resuming {prior_name}."
        return AssistantAction(action="REVERT_STEP", payload={"stepKey": pending.prior_step_key}, speak=speak)

    cue_confirms = any(target.key == proposed.key for _, target in matched_cues(ctx))
    if _AFFIRM_RE.search(text) or cue_confirms:
        return AssistantAction(
            action="CHANGE_STEP",
            payload={"stepKey": proposed.key},
            speak=f"Acknowledged. Starting {proposed.name}.",
        )
    return None


def reassertion_rule(ctx: TriggerContext) -> AssistantAction | None:
    """'We're still on X' without a pending proposal.

    Only answers when addressed or when the last spoken line asked which step we are on.
    X resumes the current step; reverting to an earlier step requires direct address.
    """
    current = _current_step(ctx)
    if current is None:
        return None
    addressed = ctx.utterance.addressed
    if not addressed and not _STEP_QUESTION_RE.search(ctx.state.last_spoken_text or ""):
        return None
    match = _REASSERT_RE.search(ctx.utterance.text)
    if not match:
        return None
    ref = match.group("ref")
    index = ctx.procedure.step_index(current.key) or 0
    key = resolve_step_key(ctx.procedure, ref, candidates=ctx.procedure.steps[: index + 1])
    if key is None and (_THIS_STEP_RE.match(ref) or step_reference_tokens(ref) & step_tokens(current)):
        key = current.key
    if key is None:
        return None
    if key == current.key:
        return AssistantAction(
            action="REVERT_STEP",
            payload={"stepKey": key},
            speak=f"Acknowledged. Resuming {ctx.procedure.step_name(key)}.",
        )
    if addressed and ctx.procedure.is_after(ctx.state.current_step_key, key):
        return AssistantAction(
            action="REVERT_STEP",
            payload={"stepKey": key},
            speak=f"Understood. Reverting to {ctx.procedure.step_name(key)}.",
        )
    return None


def go_back_rule(ctx: TriggerContext) -> AssistantAction | None:
    if not ctx.utterance.addressed or _current_step(ctx) is None:
        return None
    match = _GO_BACK_RE.search(ctx.utterance.text)
    if not match:
        return None
    current_key = ctx.state.current_step_key
    target_ref = match.group("target") or match.group("target2")
    target_key = _resolve_ref(ctx, target_ref) if target_ref else None
    if target_key is None:
        previous = ctx.procedure.previous_step(current_key)
        if previous is None:
            return None
        target_key = previous.key
    if not ctx.procedure.is_after(current_key, target_key):
        return None
    return AssistantAction(
        action="REVERT_STEP",
        payload={"stepKey": target_key},
        speak=f"Understood. Reverting to {ctx.procedure.step_name(target_key)}.",
    )


def assistant_name_rule(ctx: TriggerContext) -> AssistantAction | None:
    if not ctx.utterance.addressed or not _NAME_QUERY_RE.search(ctx.utterance.text):
        return None
    return AssistantAction(action="SPEAK", speak=MSG_ASSISTANT_NAME)


def build_time_answer(state: SessionState, step_name: str, *, step: bool = True, session: bool = False) -> str:
    step_text = format_spoken_duration(state.time_elapsed_in_step)
    session_text = format_spoken_duration(state.time_elapsed_in_session)
    if step and session:
        return f"We've been on {step_name} for {step_text}, and in this case for {session_text}."
    if session:
        return f"We've been in this case for {session_text}."
    return f"We've been on {step_name} for {step_text}."


def time_query_rule(ctx: TriggerContext) -> AssistantAction | None:
    text = ctx.utterance.text
    if not ctx.utterance.addressed or not _TIME_QUERY_RE.search(text):
        return None
    wants_session = bool(_SESSION_SCOPE_RE.search(text))
    wants_step = bool(_STEP_SCOPE_RE.search(text)) or not wants_session
    if not ctx.state.current_step_key:
        wants_step, wants_session = False, True
    speak = build_time_answer(ctx.state, _current_step_name(ctx), step=wants_step, session=wants_session)
    return AssistantAction(action="SPEAK", speak=speak)


def backfill_rule(ctx: TriggerContext) -> AssistantAction | None:
    text = ctx.utterance.text
    if _current_step(ctx) is None or not _BACKFILL_VERB_RE.search(text):
        return None
    seconds_ago = parse_time_ago(text)
    if seconds_ago is None:
        return None
    now_clause = _BACKFILL_NOW_RE.search(text)
    if not now_clause:
        return None
    key = _resolve_ref(ctx, now_clause.group("ref"))
    if key is None:
        return None
    seconds_ago = min(seconds_ago, ctx.state.time_elapsed_in_session)
    approx = describe_time_ago(seconds_ago)
    return AssistantAction(
        action="CORRECT_AND_BACKFILL",
        payload={"correctStepKey": key, "startTimeAgo": approx, "startSecondsAgo": seconds_ago},
        speak=f"Understood. Updating to '{ctx.procedure.step_name(key)}', which started {approx} ago.",
    )


def end_of_case_rule(ctx: TriggerContext) -> AssistantAction | None:
    step = _current_step(ctx)
    if step is None or not ctx.procedure.is_last_step(step.key):
        return None
    if not _END_OF_CASE_RE.search(ctx.utterance.text):
        return None
    return AssistantAction(
        action="SPEAK",
        payload={"caseComplete": True},
        speak=f"{step.name} is the final step in this procedure. Case complete.",
    )


def done_with_step_rule(ctx: TriggerContext) -> AssistantAction | None:
    if _current_step(ctx) is None:
        return None
    text = ctx.utterance.text
    match = _DONE_WITH_RE.search(text) or _IS_DONE_RE.search(text)
    if not match:
        return None
    finished_key = _resolve_ref(ctx, match.group("ref"))
    if finished_key is None:
        return None
    finished = ctx.procedure.get_step(finished_key)
    following = ctx.procedure.next_step(finished_key)
    if finished is None:
        return None
    if following is None:
        return AssistantAction(
            action="SPEAK",
            payload={"caseComplete": True},
            speak=f"{finished.name} is the final step in this procedure. Case complete.",
        )
    if following.key == ctx.state.current_step_key:
        return None
    return AssistantAction(
        action="CHANGE_STEP",
        payload={"stepKey": following.key},
        speak=f"{finished.name} complete, starting {following.name}.",
    )


def start_step_rule(ctx: TriggerContext) -> AssistantAction | None:
    if ctx.state.in_timeout or not ctx.state.current_step_key:
        return None
    match = _START_STEP_RE.search(ctx.utterance.text)
    if not match:
        return None
    key = _resolve_ref(ctx, match.group("ref"))
    if key is None or key == ctx.state.current_step_key:
        return None
    return AssistantAction(
        action="CHANGE_STEP",
        payload={"stepKey": key},
        speak=f"Acknowledged. Starting {ctx.procedure.step_name(key)}.",
    )


def implicit_cue_rule(ctx: TriggerContext) -> AssistantAction | None:
    if _current_step(ctx) is None:
        return None
    for cue, target in matched_cues(ctx):
        if not ctx.procedure.is_after(target.key, ctx.state.current_step_key):
            continue
        if ctx.pending is not None and ctx.pending.proposed_step_key == target.key:
            return None
        return AssistantAction(
            action="SPEAK_AND_CONFIRM",
            payload={"stepKey": target.key},
            speak=(
                f"Observing {cue.description}. It looks like we are moving to '{target.name}'. Please confirm."
            ),
        )
    return None


def instrument_request_rule(ctx: TriggerContext) -> AssistantAction | None:
    match = _REQUEST_RE.match(ctx.utterance.text)
    if not match:
        return None
    item = _WS_RE.sub(" ", match.group("item")).strip(" -'").lower()
    if not item or len(item.split()) > 4:
        return None
    return AssistantAction(action="LOG_NOTE", payload={"note": f"User requested {item}."})


def checkin_due(state: SessionState, procedure: Procedure, ratio: float = 0.75) -> bool:
    step = procedure.get_step(state.current_step_key)
    if step is None or state.checkin_fired:
        return False
    return state.time_elapsed_in_step >= checkin_threshold_seconds(step, ratio)


def build_checkin_action(state: SessionState, procedure: Procedure) -> AssistantAction:
    name = procedure.step_name(state.current_step_key)
    return AssistantAction(
        action="CHECK_IN",
        speak=(
            f"We've been on {name} for {format_clock(state.time_elapsed_in_step)}. "
            "Attending, how is the resident progressing?"
        ),
    )


def checkin_rule(ctx: TriggerContext) -> AssistantAction | None:
    if not checkin_due(ctx.state, ctx.procedure, ctx.checkin_ratio):
        return None
    return build_checkin_action(ctx.state, ctx.procedure)


RULES: tuple[Callable[[TriggerContext], AssistantAction | None], ...] = (
    session_start_rule,
    timeout_introduction_rule,
    silence_rule,
    confirmation_rule,
    go_back_rule,
    reassertion_rule,
    assistant_name_rule,
    time_query_rule,
    backfill_rule,
    end_of_case_rule,
    done_with_step_rule,
    start_step_rule,
    implicit_cue_rule,
    instrument_request_rule,
    checkin_rule,
)


def run_rules(ctx: TriggerContext) -> AssistantAction | None:
    for rule in RULES:
        action = rule(ctx)
        if action is not None:
            return action
    return None
