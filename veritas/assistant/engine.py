from __future__ import annotations

"""
Decision engine for the live surgical-session assistant.

Design intent:
- One evaluation maps (recent transcript window, session state, procedure) to exactly one action.
- Deterministic triggers run first; the completion service is consulted only when none fire.
- Every failure path (timeout, backend error, malformed or unsafe output) degrades to NONE.
"""

import logging
from concurrent.futures import ThreadPoolExecutor
from concurrent.futures import TimeoutError as FuturesTimeoutError
from typing import Sequence

from veritas.assistant.completion import CompletionService, CompletionServiceError, build_completion_service
from veritas.assistant.parsing import parse_completion_output
from veritas.assistant.prompts import build_prompt
from veritas.assistant.triggers import (
    TriggerContext,
    Utterance,
    build_checkin_action,
    checkin_due,
    parse_latest_utterance,
    run_rules,
)
from veritas.assistant.validation import gate_action, validate_model_output
from veritas.internal_core.config import DEFAULT_WAKE_WORDS, LiveConfig
from veritas.internal_core.contracts import (
    AssistantAction,
    LiveNote,
    PendingConfirmation,
    SessionState,
    none_action,
)
from veritas.procedures.catalogue import Procedure

logger = logging.getLogger(__name__)


class DecisionEngine:
    def __init__(
        self,
        *,
        completion: CompletionService | None = None,
        wake_words: Sequence[str] = DEFAULT_WAKE_WORDS,
        checkin_ratio: float = 0.75,
        completion_timeout_sec: float = 8.0,
        max_workers: int = 4,
    ) -> None:
        self.completion = completion
        self.wake_words = tuple(wake_words) or DEFAULT_WAKE_WORDS
        self.checkin_ratio = float(checkin_ratio)
        self.completion_timeout_sec = float(completion_timeout_sec)
        self._executor = (
            ThreadPoolExecutor(max_workers=max_workers, thread_name_prefix="veritas-completion")
            if completion is not None
            else None
        )

    @classmethod
    def from_config(cls, config: LiveConfig, *, completion: CompletionService | None = None) -> "DecisionEngine":
        return cls(
            completion=completion if completion is not None else build_completion_service(config),
            wake_words=config.VERITAS_WAKE_WORDS,
            checkin_ratio=config.VERITAS_CHECKIN_RATIO,
            completion_timeout_sec=config.VERITAS_COMPLETION_TIMEOUT_SEC,
        )

    def shutdown(self) -> None:
        if self._executor is not None:
            self._executor.shutdown(wait=False)

    def evaluate(
        self,
        transcript_window: str,
        state: SessionState,
        procedure: Procedure,
        pending_confirmation: PendingConfirmation | None = None,
        *,
        notes: Sequence[LiveNote] = (),
    ) -> AssistantAction:
        pending = pending_confirmation or state.pending_confirmation
        utterance = parse_latest_utterance(transcript_window, self.wake_words)
        ctx = TriggerContext(
            utterance=utterance,
            state=state,
            procedure=procedure,
            pending=pending,
            checkin_ratio=self.checkin_ratio,
        )

        action = run_rules(ctx)
        if action is None:
            if utterance.text and self.completion is not None:
                action = self._consult_model(transcript_window, state, procedure, utterance, pending, notes)
            else:
                action = none_action(source="rule")

        gated = gate_action(action, state=state, utterance=utterance)
        logger.debug(
            "Evaluated utterance=%r step=%s -> %s (source=%s)",
            utterance.text,
            state.current_step_key,
            gated.action,
            gated.source,
        )
        return gated

    def clock_action(self, state: SessionState, procedure: Procedure) -> AssistantAction | None:
        """Check-in fired by the clock alone, without a transcript or a model call."""
        if state.silenced or not checkin_due(state, procedure, self.checkin_ratio):
            return None
        return build_checkin_action(state, procedure).model_copy(update={"source": "clock"})

    def _consult_model(
        self,
        transcript_window: str,
        state: SessionState,
        procedure: Procedure,
        utterance: Utterance,
        pending: PendingConfirmation | None,
        notes: Sequence[LiveNote],
    ) -> AssistantAction:
        assert self.completion is not None and self._executor is not None
        prompt = build_prompt(procedure, state, transcript_window, pending=pending, notes=notes)
        future = self._executor.submit(self.completion.complete, prompt)
        try:
            raw = future.result(timeout=self.completion_timeout_sec)
        except FuturesTimeoutError:
            future.cancel()
            logger.warning(
                "Completion via %s exceeded %.1fs; using NONE.", self.completion.name, self.completion_timeout_sec
            )
            return none_action()
        except CompletionServiceError as exc:
            logger.warning("Completion via %s failed: %s", self.completion.name, exc)
            return none_action()
        except Exception as exc:
            logger.warning(
                "Completion via %s raised %s: %s; using NONE.", self.completion.name, type(exc).__name__, exc
            )
            return none_action()

        return validate_model_output(
            parse_completion_output(raw),
            state=state,
            procedure=procedure,
            utterance=utterance,
            pending=pending,
            checkin_ratio=self.checkin_ratio,
        )
