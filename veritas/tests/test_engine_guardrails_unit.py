import pytest

from veritas.assistant.completion import CompletionService, ScriptedCompletionService
from veritas.assistant.engine import DecisionEngine
from veritas.assistant.triggers import Utterance
from veritas.assistant.validation import validate_model_output
from veritas.internal_core.contracts import AssistantAction, SessionState
from veritas.procedures.catalogue import load_default_catalogue

ROBOTIC = load_default_catalogue().get_procedure("robotic-cholecystectomy")
DEBUG = load_default_catalogue().get_procedure("DEBUGGING-USE-ONLY-robotic-cholecystectomy")


def _evaluate(transcript: str, state: SessionState, responses, **engine_kwargs) -> tuple[AssistantAction, ScriptedCompletionService]:
    completion = ScriptedCompletionService(responses)
    engine = DecisionEngine(completion=completion, **engine_kwargs)
    try:
        return engine.evaluate(transcript, state, ROBOTIC), completion
    finally:
        engine.shutdown()


def _port_placement_state(**extra) -> SessionState:
    base = {
        "current_step_key": "portPlacement",
        "time_elapsed_in_step": 501,
        "time_elapsed_in_session": 501,
        "last_checkin_time": 400,
    }
    base.update(extra)
    return SessionState(**base)


def test_unknown_model_action_becomes_none() -> None:
    action, completion = _evaluate(
        "Hey Veritas, anything to flag?", _port_placement_state(), ['{"action": "DANCE"}']
    )
    assert action.action == "NONE"
    assert action.source == "fallback"
    assert len(completion.prompts) == 1


def test_malformed_model_output_becomes_none() -> None:
    action, _ = _evaluate(
        "Hey Veritas, anything to flag?", _port_placement_state(), ["I think we should move on."]
    )
    assert action.action == "NONE"


def test_fenced_model_output_is_accepted() -> None:
    action, _ = _evaluate(
        "The field looks dry now.",
        _port_placement_state(),
        ['```json\n{"action": "LOG_NOTE", "payload": {"note": "Hemostasis confirmed."}}\n```'],
    )
    assert action.action == "LOG_NOTE"
    assert action.payload == {"note": "Hemostasis confirmed."}
    assert action.source == "model"


def test_model_cannot_speak_unaddressed() -> None:
    action, _ = _evaluate(
        "The field looks clean.", _port_placement_state(), ['{"action": "SPEAK", "speak": "Looks good."}']
    )
    assert action.action == "NONE"


def test_model_cannot_invent_steps() -> None:
    action, _ = _evaluate(
        "Hey Veritas, update the record.",
        _port_placement_state(),
        ['{"action": "CHANGE_STEP", "payload": {"stepKey": "hyperdrive"}}'],
    )
    assert action.action == "NONE"


def test_model_step_names_resolve_to_keys() -> None:
    action, _ = _evaluate(
        "Hey Veritas, update the record.",
        _port_placement_state(),
        ['{"action": "CHANGE_STEP", "payload": {"stepKey": "Docking the robot"}}'],
    )
    assert action.action == "CHANGE_STEP"
    assert action.payload == {"stepKey": "robotDocking"}
    assert action.speak == "Acknowledged. Starting Docking the robot."


def test_model_durations_must_come_from_state() -> None:
    action, _ = _evaluate(
        "Hey Veritas, anything to flag?",
        _port_placement_state(),
        ['{"action": "SPEAK", "speak": "We\'ve been on Port Placement for 12 minutes."}'],
    )
    assert action.action == "NONE"


def test_model_placeholders_are_filled_from_state() -> None:
    action, _ = _evaluate(
        "Hey Veritas, give me a status update.",
        _port_placement_state(),
        [
            '{"action": "SPEAK", "speak": '
            '"We\'ve been on ${currentState.currentStepName} for ${formatTime(currentState.timeElapsedInStep)}."}'
        ],
    )
    assert action.action == "SPEAK"
    assert action.speak == "We've been on Port Placement for 08:21."


def test_unknown_placeholder_is_rejected() -> None:
    action, _ = _evaluate(
        "Hey Veritas, give me a status update.",
        _port_placement_state(),
        ['{"action": "SPEAK", "speak": "We are on {mystery_value}."}'],
    )
    assert action.action == "NONE"


def test_model_backfill_with_invented_duration_in_speech_is_rejected() -> None:
    state = SessionState(
        current_step_key="cysticArteryDuctClipping", time_elapsed_in_step=100, time_elapsed_in_session=2000
    )
    action, _ = _evaluate(
        "Hey Veritas, update the record.",
        state,
        [
            '{"action": "CORRECT_AND_BACKFILL", "payload": '
            '{"correctStepKey": "gallbladderDissection", "startTimeAgo": "approximately 10 minutes"}, '
            '"speak": "Sure, it started 25 minutes ago."}'
        ],
    )
    assert action.action == "NONE"


def test_model_backfill_uses_state_derived_speech() -> None:
    state = SessionState(
        current_step_key="cysticArteryDuctClipping", time_elapsed_in_step=100, time_elapsed_in_session=2000
    )
    action, _ = _evaluate(
        "Hey Veritas, update the record.",
        state,
        [
            '{"action": "CORRECT_AND_BACKFILL", "payload": '
            '{"correctStepKey": "gallbladderDissection", "startTimeAgo": "approximately 10 minutes"}}'
        ],
    )
    assert action.action == "CORRECT_AND_BACKFILL"
    assert action.payload == {
        "correctStepKey": "gallbladderDissection",
        "startTimeAgo": "approximately 10 minutes",
        "startSecondsAgo": 600,
    }
    assert action.speak == (
        "Understood. Updating to 'Gallbladder Dissection of the Liver', which started approximately 10 minutes ago."
    )


def test_model_checkin_before_threshold_is_rejected() -> None:
    state = SessionState(current_step_key="portPlacement", time_elapsed_in_step=30, time_elapsed_in_session=30)
    action, _ = _evaluate("Hey Veritas, check in.", state, ['{"action": "CHECK_IN"}'])
    assert action.action == "NONE"


def test_model_cannot_start_timeout_or_complete_it_outside_timeout() -> None:
    start, _ = _evaluate("Hey Veritas, update the record.", _port_placement_state(), ['{"action": "START_TIMEOUT"}'])
    complete, _ = _evaluate(
        "Hey Veritas, update the record.", _port_placement_state(), ['{"action": "COMPLETE_TIMEOUT"}']
    )
    assert start.action == "NONE"
    assert complete.action == "NONE"


def test_model_cannot_propose_an_earlier_step() -> None:
    state = SessionState(current_step_key="gallbladderDissection", time_elapsed_in_step=60, time_elapsed_in_session=900)
    action, _ = _evaluate(
        "The anatomy looks tricky.",
        state,
        ['{"action": "SPEAK_AND_CONFIRM", "payload": {"stepKey": "portPlacement"}}'],
    )
    assert action.action == "NONE"


def test_completion_error_degrades_to_none() -> None:
    action, _ = _evaluate("Hey Veritas, anything to flag?", _port_placement_state(), [RuntimeError("backend down")])
    assert action.action == "NONE"
    assert action.source == "fallback"


def test_completion_timeout_degrades_to_none() -> None:
    completion = ScriptedCompletionService(
        ['{"action": "LOG_NOTE", "payload": {"note": "late"}}'], delay_sec=0.5
    )
    engine = DecisionEngine(completion=completion, completion_timeout_sec=0.05)
    try:
        action = engine.evaluate("The field looks dry now.", _port_placement_state(), ROBOTIC)
    finally:
        engine.shutdown()
    assert action.action == "NONE"
    assert action.source == "fallback"


def test_without_completion_service_unmatched_text_is_none() -> None:
    action = DecisionEngine().evaluate("The field looks dry now.", _port_placement_state(), ROBOTIC)
    assert action.action == "NONE"
    assert action.source == "rule"


def test_silence_command_and_gating() -> None:
    engine = DecisionEngine()
    calot = SessionState(current_step_key="calotTriangleDissection", time_elapsed_in_step=240, time_elapsed_in_session=1800)

    silence = engine.evaluate("Veritas, shut up.", calot, ROBOTIC)
    assert silence.action == "NONE"
    assert silence.payload == {"silence": True}

    silenced = calot.model_copy(update={"silenced": True})
    proposal = engine.evaluate("Clip applier, please.", silenced, ROBOTIC)
    assert proposal.action == "NONE"

    answer = engine.evaluate("Hey Veritas, how long have we been on this step?", silenced, ROBOTIC)
    assert answer.action == "SPEAK"
    assert answer.speak == "We've been on Dissection of Calot's Triangle for 4 minutes."


def test_silenced_step_change_applies_without_speech() -> None:
    state = SessionState(
        current_step_key="undocking", time_elapsed_in_step=300, time_elapsed_in_session=4500, silenced=True
    )
    action = DecisionEngine().evaluate("Now proceeding with skin closure.", state, ROBOTIC)
    assert action.action == "CHANGE_STEP"
    assert action.payload == {"stepKey": "skinClosure"}
    assert action.speak is None


def test_repeated_proposal_is_suppressed() -> None:
    message = (
        "Observing requests to move the robot. It looks like we are moving to 'Docking the robot'. Please confirm."
    )
    state = SessionState(
        current_step_key="portPlacement",
        time_elapsed_in_step=150,
        time_elapsed_in_session=180,
        last_spoken_text=message,
    )
    action = DecisionEngine().evaluate("Can you drive the robot in now?", state, ROBOTIC)
    assert action.action == "NONE"


def test_checkin_fires_once_per_step() -> None:
    state = SessionState(
        current_step_key="calotTriangleDissection",
        time_elapsed_in_step=136,
        time_elapsed_in_session=586,
        last_checkin_time=580,
    )
    engine = DecisionEngine()
    action = engine.evaluate("Just keep working that tissue plane.", state, DEBUG)
    assert action.action == "NONE"
    assert engine.clock_action(state, DEBUG) is None


def test_clock_action_checks_in_without_transcript() -> None:
    engine = DecisionEngine()
    state = SessionState(current_step_key="portPlacement", time_elapsed_in_step=90, time_elapsed_in_session=200)

    action = engine.clock_action(state, DEBUG)
    assert action is not None
    assert action.action == "CHECK_IN"
    assert action.source == "clock"
    assert action.speak == "We've been on Port Placement for 01:30. Attending, how is the resident progressing?"

    assert engine.clock_action(state.model_copy(update={"silenced": True}), DEBUG) is None
    assert engine.clock_action(state.model_copy(update={"time_elapsed_in_step": 89}), DEBUG) is None


def test_prompt_carries_procedure_state_and_window() -> None:
    completion = ScriptedCompletionService()
    engine = DecisionEngine(completion=completion)
    try:
        engine.evaluate("[Attending] The field looks dry now.", _port_placement_state(attending_name="James Harris"), ROBOTIC)
    finally:
        engine.shutdown()

    prompt = completion.prompts[0]
    assert "Robotic Cholecystectomy" in prompt.system
    assert '"key": "robotDocking"' in prompt.system
    assert "Dr. Harris" in prompt.system
    assert '"currentStepName": "Port Placement"' in prompt.system
    assert '"pastHalfway": true' in prompt.system
    assert "[Attending] The field looks dry now." in prompt.user


class _OutageService(CompletionService):
    name = "outage"

    def complete(self, prompt):
        raise ConnectionError("provider outage")


def test_unwrapped_backend_exception_degrades_to_none() -> None:
    engine = DecisionEngine(completion=_OutageService())
    try:
        action = engine.evaluate("[Attending] Hey Veritas, tell me a joke.", _port_placement_state(), ROBOTIC)
    finally:
        engine.shutdown()
    assert action.action == "NONE"
    assert action.source == "fallback"


def test_model_output_wrapped_in_prose_becomes_none() -> None:
    action, _ = _evaluate(
        "Hey Veritas, any advice?",
        _port_placement_state(),
        ['Sure thing! {"action":"SPEAK","speak":"Keep going, team."} Hope that helps.'],
    )
    assert action.action == "NONE"
    assert action.source == "fallback"


@pytest.mark.parametrize("offset", ["Infinity", "-Infinity", "NaN"])
def test_non_finite_backfill_offset_from_model_becomes_none(offset: str) -> None:
    state = SessionState(
        current_step_key="instrumentPlacement", time_elapsed_in_step=30, time_elapsed_in_session=900
    )
    action, _ = _evaluate(
        "Hey Veritas, update the record.",
        state,
        [
            '{"action": "CORRECT_AND_BACKFILL", "payload": '
            '{"correctStepKey": "robotDocking", "startSecondsAgo": ' + offset + "}}"
        ],
    )
    assert action.action == "NONE"


@pytest.mark.parametrize("offset", [float("inf"), float("-inf"), float("nan")])
def test_validation_rejects_non_finite_backfill_offset(offset: float) -> None:
    state = SessionState(
        current_step_key="instrumentPlacement", time_elapsed_in_step=30, time_elapsed_in_session=900
    )
    utterance = Utterance(speaker="Attending", text="Hey Veritas, update the record.", wake_word=True, addressed=True)
    action = validate_model_output(
        {"action": "CORRECT_AND_BACKFILL", "payload": {"correctStepKey": "robotDocking", "startSecondsAgo": offset}},
        state=state,
        procedure=ROBOTIC,
        utterance=utterance,
    )
    assert action.action == "NONE"


def _instrument_placement_state(**extra) -> SessionState:
    base = {"current_step_key": "instrumentPlacement", "time_elapsed_in_step": 10, "time_elapsed_in_session": 900}
    base.update(extra)
    return SessionState(**base)


@pytest.mark.parametrize(
    "transcript",
    [
        "We're still bleeding a bit from the port site.",
        "It's still oozing near the robot arm.",
        "We're still on port placement.",
    ],
)
def test_unaddressed_still_chatter_does_not_revert(transcript: str) -> None:
    action = DecisionEngine().evaluate(transcript, _instrument_placement_state(), ROBOTIC)
    assert action.action == "NONE"
    assert action.speak is None


def test_still_after_step_question_only_resumes_current_step() -> None:
    asked = _instrument_placement_state(last_spoken_text="Understood. Please state which step we are currently on.")
    engine = DecisionEngine()

    earlier = engine.evaluate("We're still bleeding a bit from the port site.", asked, ROBOTIC)
    assert earlier.action == "NONE"

    current = engine.evaluate("We're still doing instrument placement.", asked, ROBOTIC)
    assert current.action == "REVERT_STEP"
    assert current.payload == {"stepKey": "instrumentPlacement"}
    assert current.speak == "Acknowledged. Resuming Instrument Placement."


def test_addressed_still_on_earlier_step_reverts() -> None:
    action = DecisionEngine().evaluate(
        "Hey Veritas, we're still on port placement.", _instrument_placement_state(), ROBOTIC
    )
    assert action.action == "REVERT_STEP"
    assert action.payload == {"stepKey": "portPlacement"}
    assert action.speak == "Understood. Reverting to Port Placement."


def test_bare_silence_only_mutes_when_addressed() -> None:
    engine = DecisionEngine()
    alarm = engine.evaluate("Silence the suction alarm.", _port_placement_state(), ROBOTIC)
    assert "silence" not in alarm.payload

    muted = engine.evaluate("Veritas, silence.", _port_placement_state(), ROBOTIC)
    assert muted.action == "NONE"
    assert muted.payload == {"silence": True}
