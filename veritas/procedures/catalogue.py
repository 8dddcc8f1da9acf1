from __future__ import annotations

"""
Read-only procedure catalogue.

Design intent:
- Resolve procedure ids to ordered step lists; unknown ids fail fast.
- Resolve informal step references ("dissecting the gallbladder") to stable keys.
- Refuse to guess: ambiguous or unmatched step references resolve to None.
"""

import re
from abc import ABC, abstractmethod
from dataclasses import dataclass, field
from typing import Any, Iterable, Mapping, Sequence

from veritas.procedures.definitions import PROCEDURE_DEFINITIONS

_RANGE_RE = re.compile(
    r"^\s*(\d+(?:\.\d+)?)\s*(?:-|–|to)?\s*(\d+(?:\.\d+)?)?\s*(sec|secs|seconds?|s|min|mins|minutes?|m|hr|hrs|hours?|h)?\s*$",
    re.IGNORECASE,
)
_CAMEL_RE = re.compile(r"(?<=[a-z])(?=[A-Z])")
_TOKEN_RE = re.compile(r"[a-z0-9]+")
_STOPWORDS: frozenset[str] = frozenset(
    {
        "a", "an", "and", "are", "as", "at", "be", "by", "for", "from", "had", "has",
        "have", "here", "in", "into", "is", "it", "its", "now", "of", "on", "onto",
        "our", "the", "this", "that", "to", "up", "us", "was", "we", "were", "with",
        "step", "phase", "part", "doing", "just", "still", "okay", "alright",
    }
)
_SUFFIXES: tuple[str, ...] = ("ations", "ation", "ings", "ing", "ions", "ion", "ment", "ed", "es", "al", "s")


class ProcedureNotFoundError(KeyError):
    """Raised when a procedure id is not present in the catalogue."""

    def __init__(self, procedure_id: str):
        super().__init__(procedure_id)
        self.procedure_id = procedure_id

    def __str__(self) -> str:
        return f"Unknown procedure id: {self.procedure_id}"


def parse_duration_range(raw: str) -> tuple[int, int]:
    """Parse "5-10 min" style ranges into (min_seconds, max_seconds)."""
    match = _RANGE_RE.match(raw or "")
    if not match:
        raise ValueError(f"Unparseable duration range: {raw!r}")
    low = float(match.group(1))
    high = float(match.group(2)) if match.group(2) else low
    unit = (match.group(3) or "min").lower()
    if unit.startswith("s"):
        scale = 1
    elif unit.startswith("h"):
        scale = 3600
    else:
        scale = 60
    low_sec, high_sec = int(round(low * scale)), int(round(high * scale))
    if high_sec < low_sec:
        low_sec, high_sec = high_sec, low_sec
    return low_sec, high_sec


@dataclass(frozen=True)
class ProcedureStep:
    key: str
    name: str
    min_seconds: int
    max_seconds: int

    @property
    def estimated_seconds(self) -> int:
        return (self.min_seconds + self.max_seconds) // 2

    @property
    def time_range_label(self) -> str:
        return f"{self.min_seconds // 60}-{self.max_seconds // 60} min"


@dataclass(frozen=True)
class Procedure:
    id: str
    name: str
    steps: tuple[ProcedureStep, ...]
    difficulty_rubric: Mapping[int, str] = field(default_factory=dict)

    def __post_init__(self) -> None:
        if not self.steps:
            raise ValueError(f"Procedure {self.id!r} has no steps.")
        keys = [step.key for step in self.steps]
        if len(set(keys)) != len(keys):
            raise ValueError(f"Procedure {self.id!r} has duplicate step keys.")

    @property
    def first_step(self) -> ProcedureStep:
        return self.steps[0]

    @property
    def last_step(self) -> ProcedureStep:
        return self.steps[-1]

    def get_step(self, key: str) -> ProcedureStep | None:
        for step in self.steps:
            if step.key == key:
                return step
        return None

    def step_index(self, key: str) -> int | None:
        for i, step in enumerate(self.steps):
            if step.key == key:
                return i
        return None

    def step_name(self, key: str, default: str = "the current step") -> str:
        step = self.get_step(key)
        return step.name if step is not None else default

    def next_step(self, key: str) -> ProcedureStep | None:
        index = self.step_index(key)
        if index is None:
            # Before the first step (empty key or time-out) the next step is the first one.
            return self.first_step
        if index + 1 >= len(self.steps):
            return None
        return self.steps[index + 1]

    def previous_step(self, key: str) -> ProcedureStep | None:
        index = self.step_index(key)
        if index is None or index == 0:
            return None
        return self.steps[index - 1]

    def is_last_step(self, key: str) -> bool:
        return self.last_step.key == key

    def is_after(self, candidate_key: str, reference_key: str) -> bool:
        candidate = self.step_index(candidate_key)
        if candidate is None:
            return False
        reference = self.step_index(reference_key)
        if reference is None:
            return True
        return candidate > reference

    def steps_for_prompt(self) -> list[dict[str, str]]:
        return [
            {"key": step.key, "name": step.name, "time": step.time_range_label}
            for step in self.steps
        ]


def build_procedure(procedure_id: str, definition: Mapping[str, Any]) -> Procedure:
    steps = []
    for key, name, time_range in definition["steps"]:
        low, high = parse_duration_range(time_range)
        steps.append(ProcedureStep(key=key, name=name, min_seconds=low, max_seconds=high))
    return Procedure(
        id=procedure_id,
        name=str(definition["name"]),
        steps=tuple(steps),
        difficulty_rubric=dict(definition.get("difficulty") or {}),
    )


class ProcedureCatalogue(ABC):
    @abstractmethod
    def get_procedure(self, procedure_id: str) -> Procedure: ...

    @abstractmethod
    def list_procedures(self) -> list[Procedure]: ...


class StaticProcedureCatalogue(ProcedureCatalogue):
    def __init__(self, procedures: Iterable[Procedure]):
        self._procedures: dict[str, Procedure] = {}
        for procedure in procedures:
            if procedure.id in self._procedures:
                raise ValueError(f"Duplicate procedure id: {procedure.id}")
            self._procedures[procedure.id] = procedure

    @classmethod
    def from_definitions(cls, definitions: Mapping[str, Mapping[str, Any]]) -> "StaticProcedureCatalogue":
        return cls(build_procedure(pid, definition) for pid, definition in definitions.items())

    def get_procedure(self, procedure_id: str) -> Procedure:
        procedure = self._procedures.get(procedure_id)
        if procedure is None:
            raise ProcedureNotFoundError(procedure_id)
        return procedure

    def list_procedures(self) -> list[Procedure]:
        return list(self._procedures.values())


def load_default_catalogue() -> StaticProcedureCatalogue:
    return StaticProcedureCatalogue.from_definitions(PROCEDURE_DEFINITIONS)


def checkin_threshold_seconds(step: ProcedureStep, ratio: float = 0.75) -> int:
    return int(step.estimated_seconds * ratio)


def halfway_seconds(step: ProcedureStep) -> int:
    return step.estimated_seconds // 2


def _stem(word: str) -> str:
    # Two passes so plurals of derived forms ("instruments") meet their singular stem.
    for _ in range(2):
        for suffix in _SUFFIXES:
            if word.endswith(suffix) and len(word) - len(suffix) >= 4:
                word = word[: -len(suffix)]
                break
        else:
            break
    if len(word) >= 4 and word[-1] == word[-2] and word[-1] not in "lsz":
        word = word[:-1]
    return word


def step_reference_tokens(text: str) -> set[str]:
    spaced = _CAMEL_RE.sub(" ", text or "")
    lowered = spaced.lower().replace("'s", "").replace("’s", "")
    tokens = set()
    for raw in _TOKEN_RE.findall(lowered):
        if raw in _STOPWORDS or len(raw) < 3:
            continue
        tokens.add(_stem(raw))
    return tokens


def step_tokens(step: ProcedureStep) -> set[str]:
    return step_reference_tokens(step.name) | step_reference_tokens(step.key)


def resolve_step_key(
    procedure: Procedure,
    text: str,
    *,
    candidates: Sequence[ProcedureStep] | None = None,
) -> str | None:
    """
    Resolve a key, display name or informal reference to a step key.

    Returns None when nothing matches or when the best match is tied.
    """
    raw = (text or "").strip()
    if not raw:
        return None
    pool = list(candidates) if candidates is not None else list(procedure.steps)

    for step in pool:
        if step.key == raw:
            return step.key
    lowered = raw.lower()
    for step in pool:
        if step.key.lower() == lowered or step.name.lower() == lowered:
            return step.key

    query = step_reference_tokens(raw)
    if not query:
        return None

    scored: list[tuple[int, float, str]] = []
    for step in pool:
        tokens = step_tokens(step)
        shared = len(query & tokens)
        if shared == 0:
            continue
        scored.append((shared, shared / max(1, len(tokens)), step.key))
    if not scored:
        return None
    scored.sort(reverse=True)
    if len(scored) > 1 and scored[0][:2] == scored[1][:2]:
        return None
    return scored[0][2]
