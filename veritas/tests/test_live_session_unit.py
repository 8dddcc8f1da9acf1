import threading

from veritas.assistant.completion import CompletionService, ScriptedCompletionService
from veritas.assistant.engine import DecisionEngine
from veritas.internal_core.contracts import TranscriptEntry
from veritas.live.session import LiveSession
from veritas.live.speech import RecordingSpeechOutput, SpeechOutput, SpeechOutputError
from veritas.procedures.catalogue import load_default_catalogue

ROBOTIC = load_default_catalogue().get_procedure("robotic-cholecystectomy")
DEBUG = load_default_catalogue().get_procedure("DEBUGGING-USE-ONLY-robotic-cholecystectomy")


class AuditRecorder:
    def __init__(self) -> None:
        self.events: list[tuple[str, str]] = []

    def __call__(self, event_type, code, detail, duration_ms=None) -> None:
        self.events.append((event_type, code))

    def types(self) -> list[str]:
        return [event_type for event_type, _ in self.events]


def _say(session: LiveSession, speaker: str, text: str):
    return session.submit_entry(TranscriptEntry(speaker=speaker, text=text))


def _start_through_timeout(session: LiveSession) -> None:
    session.start()
    _say(session, "Attending", "James Harris attending.")
    _say(session, "Resident", "Sam Lee resident.")


def test_start_runs_timeout_and_introductions() -> None:
    speech = RecordingSpeechOutput()
    audit = AuditRecorder()
    session = LiveSession("s1", ROBOTIC, DecisionEngine(), speech=speech, audit=audit)

    outcome = session.start()
    assert outcome.status == "applied"
    assert outcome.action is not None and outcome.action.action == "START_TIMEOUT"
    assert session.status == "active"
    assert session.state.in_timeout is True

    attending = _say(session, "Attending", "James Harris attending.")
    assert attending.action.action == "SPEAK"
    assert session.state.attending_name == "James Harris"

    resident = _say(session, "Resident", "Sam Lee resident.")
    assert resident.action.action == "COMPLETE_TIMEOUT"
    assert session.state.current_step_key == "portPlacement"

    assert speech.spoken == [
        "Time-out initiated. Please state your name and role, starting with the attending surgeon.",
        "Thank you. Can the resident now please state their name and role?",
        "Time-out complete. Ready to begin.",
    ]
    transcript = session.full_transcript()
    assert "[Veritas] Time-out initiated." in transcript
    assert "[Attending] James Harris attending." in transcript
    assert audit.types()[0] == "SESSION_STARTED"
    assert audit.types().count("ACTION_APPLIED") == 3


def test_notes_record_step_and_session_time() -> None:
    session = LiveSession("s1", ROBOTIC, DecisionEngine())
    _start_through_timeout(session)
    session.tick(75)

    outcome = _say(session, "Attending", "Scalpel, please.")
    assert outcome.action.action == "LOG_NOTE"
    assert outcome.spoken is None

    notes = session.notes
    assert len(notes) == 1
    assert notes[0].note == "User requested scalpel."
    assert notes[0].step_key == "portPlacement"
    assert notes[0].session_second == 75
    assert session.snapshot().last_action == {"action": "LOG_NOTE", "payload": {"note": "User requested scalpel."}}


def test_interim_and_assistant_entries_do_not_evaluate() -> None:
    completion = ScriptedCompletionService()
    engine = DecisionEngine(completion=completion)
    session = LiveSession("s1", ROBOTIC, engine)
    try:
        _start_through_timeout(session)
        interim = session.submit_entry(TranscriptEntry(speaker="Attending", text="Scal", is_final=False))
        echoed = _say(session, "Veritas", "Time-out complete.")
    finally:
        engine.shutdown()

    assert interim.status == "interim"
    assert echoed.status == "skipped"
    assert completion.prompts == []


def test_entries_during_an_evaluation_are_buffered_then_reevaluated() -> None:
    entered = threading.Event()
    release = threading.Event()

    def responder(prompt):
        entered.set()
        release.wait(2)
        return '{"action": "NONE"}'

    completion = ScriptedCompletionService(responder)
    engine = DecisionEngine(completion=completion, completion_timeout_sec=5)
    audit = AuditRecorder()
    session = LiveSession("s1", ROBOTIC, engine, audit=audit)
    session.start()

    results = []
    worker = threading.Thread(target=lambda: results.append(_say(session, "Attending", "The field looks dry.")))
    try:
        worker.start()
        assert entered.wait(2)
        assert session.in_flight is True

        buffered = _say(session, "Resident", "Looks good to me.")
        assert buffered.status == "buffered"

        release.set()
        worker.join(5)
    finally:
        release.set()
        engine.shutdown()

    assert results[0].status == "applied"
    assert len(completion.prompts) == 2
    assert "Looks good to me." in completion.prompts[1].user
    assert "EVALUATION_SKIPPED" in audit.types()
    assert session.in_flight is False


def test_result_arriving_after_end_is_dropped() -> None:
    entered = threading.Event()
    release = threading.Event()

    def responder(prompt):
        entered.set()
        release.wait(2)
        return '{"action": "LOG_NOTE", "payload": {"note": "Bleeding controlled."}}'

    completion = ScriptedCompletionService(responder)
    engine = DecisionEngine(completion=completion, completion_timeout_sec=5)
    audit = AuditRecorder()
    session = LiveSession("s1", ROBOTIC, engine, audit=audit)
    session.start()

    results = []
    worker = threading.Thread(target=lambda: results.append(_say(session, "Attending", "The field looks dry.")))
    try:
        worker.start()
        assert entered.wait(2)
        session.end("user_ended")
        release.set()
        worker.join(5)
    finally:
        release.set()
        engine.shutdown()

    assert results[0].status == "dropped_stale"
    assert session.notes == []
    assert session.status == "ended"
    assert session.snapshot().end_reason == "user_ended"
    assert ("ACTION_DROPPED", "LOG_NOTE") in audit.events
    assert _say(session, "Attending", "Scalpel, please.").status == "ended"


def test_speech_failure_does_not_block_state_update() -> None:
    class BrokenSpeech(SpeechOutput):
        def speak(self, text: str) -> None:
            raise SpeechOutputError("device_busy", "audio device busy", "broken")

        def name(self) -> str:
            return "broken"

    audit = AuditRecorder()
    session = LiveSession("s1", ROBOTIC, DecisionEngine(), speech=BrokenSpeech(), audit=audit)
    outcome = session.start()

    assert outcome.status == "applied"
    assert session.state.in_timeout is True
    assert ("SPEECH_FAILED", "SpeechOutputError") in audit.events


def test_case_complete_ends_the_session() -> None:
    audit = AuditRecorder()
    session = LiveSession("s1", ROBOTIC, DecisionEngine(), audit=audit)
    _start_through_timeout(session)

    moved = _say(session, "Attending", "Now proceeding with skin closure.")
    assert moved.action.action == "CHANGE_STEP"
    assert session.state.current_step_key == "skinClosure"

    done = _say(session, "Attending", "Alright, last stitch is in. We're done here.")
    assert done.action.payload == {"caseComplete": True}
    assert session.status == "ended"
    assert session.snapshot().end_reason == "case_complete"
    assert ("SESSION_ENDED", "case_complete") in audit.events
    assert _say(session, "Attending", "Thanks everyone.").status == "ended"


def test_tick_fires_a_single_checkin() -> None:
    speech = RecordingSpeechOutput()
    session = LiveSession("s1", DEBUG, DecisionEngine(), speech=speech)
    _start_through_timeout(session)

    assert session.tick(89).status == "skipped"
    fired = session.tick(1)
    assert fired.status == "applied"
    assert fired.action.action == "CHECK_IN"
    assert fired.action.source == "clock"
    assert speech.spoken[-1] == "We've been on Port Placement for 01:30. Attending, how is the resident progressing?"
    assert session.state.last_checkin_time == session.state.time_elapsed_in_session

    assert session.tick(30).status == "skipped"
    assert session.state.time_elapsed_in_step == 120


def test_silenced_session_skips_clock_checkin() -> None:
    session = LiveSession("s1", DEBUG, DecisionEngine())
    _start_through_timeout(session)
    _say(session, "Attending", "Veritas, be quiet.")

    assert session.state.silenced is True
    assert session.tick(120).status == "skipped"
    assert session.state.last_checkin_time is None


def test_restart_resets_state_and_transcript() -> None:
    session = LiveSession("s1", ROBOTIC, DecisionEngine())
    _start_through_timeout(session)
    _say(session, "Attending", "Scalpel, please.")
    session.tick(40)

    outcome = session.start()
    assert outcome.action.action == "START_TIMEOUT"
    assert session.state.in_timeout is True
    assert session.state.time_elapsed_in_session == 0
    assert session.state.attending_name == "James Harris"
    assert session.notes == []
    assert "Scalpel" not in session.full_transcript()


class _RefusingService(CompletionService):
    name = "refusing"

    def complete(self, prompt):
        raise ConnectionError("provider outage")


def test_backend_outage_keeps_session_silent_and_active() -> None:
    speech = RecordingSpeechOutput()
    audit = AuditRecorder()
    engine = DecisionEngine(completion=_RefusingService())
    session = LiveSession("s-outage", ROBOTIC, engine, speech=speech, audit=audit)
    try:
        _start_through_timeout(session)
        outcome = _say(session, "Attending", "Hey Veritas, tell me a joke.")
    finally:
        engine.shutdown()

    assert outcome.action is not None and outcome.action.action == "NONE"
    assert outcome.spoken is None
    assert session.status == "active"
    assert "ERROR" not in audit.types()
    assert len(speech.spoken) == 3
